"""
A single state: its event handlers, enter/exit hooks and optional timeout.
"""

import logging
from typing import Callable, Dict, Hashable, List, Optional

from typing_extensions import TypeAlias

from .errors import ConfigurationError
from .events import Event, Transition

logger = logging.getLogger(__name__)

Handler: TypeAlias = Callable[[Event], Optional[Transition]]
Hook: TypeAlias = Callable[[Hashable], None]


class State:
    """
    Reacts to events while it is the machine's current state.

    Handlers map an event type to a callable returning ``None`` (handled, stay
    put) or a :class:`Transition`. Hooks receive the state id they run for.
    Wire everything up before handing the state to a machine.
    """

    def __init__(self, timeout: Optional[float] = None, verbose: bool = False):
        """
        Args:
            timeout: Seconds without a transition before the machine injects
                its timeout event. ``None`` disables the timer for this state.
            verbose: Log unhandled events at INFO and handler failures at ERROR
                instead of DEBUG.
        """
        if timeout is not None and timeout <= 0:
            raise ConfigurationError(f"State timeout must be positive, got {timeout!r}")
        self.timeout = timeout
        self.verbose = verbose
        self._handlers: Dict[Hashable, Handler] = {}
        self.enter_hooks: List[Hook] = []
        self.exit_hooks: List[Hook] = []

    def add_handler(self, event_type: Hashable, handler: Handler):
        """Register the handler for ``event_type``, replacing any previous one"""
        self._handlers[event_type] = handler

    def add_enter_hook(self, hook: Hook):
        self.enter_hooks.append(hook)

    def add_exit_hook(self, hook: Hook):
        self.exit_hooks.append(hook)

    def handles(self, event_type: Hashable) -> bool:
        return event_type in self._handlers

    def handled_events(self) -> List[Hashable]:
        """Event types with a registered handler, in registration order"""
        return list(self._handlers)

    def handle_event(self,
                     event: Event,
                     state_name: str = "",
                     catch_exceptions: bool = False,
                     on_error: Optional[Callable[[Event, Exception], None]] = None) -> Optional[Transition]:
        """
        Run the handler registered for ``event.type``.

        Args:
            event: The event to dispatch
            state_name: Name of the owning state, for log messages
            catch_exceptions: Log handler failures and return None instead
                of raising
            on_error: Called with the event and exception for every
                swallowed failure

        Returns:
            The handler's transition, or None if there is no handler, the
            handler requested no change, or it raised in catch mode.
        """
        handler = self._handlers.get(event.type)
        if handler is None:
            self._log(f"No handler for event {label(event.type)} in state {state_name}")
            return None

        if catch_exceptions:
            try:
                result = handler(event)
            except Exception as e:
                # Handler failures never reach the engine in catch mode
                if on_error is not None:
                    on_error(event, e)
                _log_failure(f"Error in handler for event {label(event.type)} in state {state_name}",
                             self.verbose)
                return None
        else:
            result = handler(event)

        if result is not None and not isinstance(result, Transition):
            raise TypeError(
                f"Handler for event {label(event.type)} in state {state_name} returned "
                f"{type(result).__name__}, expected Transition or None"
            )
        return result

    def run_enter_hooks(self, state_id: Hashable, catch_exceptions: bool = False):
        run_hooks(self.enter_hooks, state_id, "enter", catch_exceptions, self.verbose)

    def run_exit_hooks(self, state_id: Hashable, catch_exceptions: bool = False):
        run_hooks(self.exit_hooks, state_id, "exit", catch_exceptions, self.verbose)

    def _log(self, message: str):
        if self.verbose:
            logger.info(message)
        else:
            logger.debug(message)

    def __repr__(self):
        return (f"State(timeout={self.timeout!r}, "
                f"events={[label(e) for e in self._handlers]!r})")


def label(value: Hashable) -> str:
    """Readable name for an enum member or plain id"""
    return getattr(value, "name", None) or str(value)


def run_hooks(hooks: List[Hook],
              state_id: Hashable,
              kind: str,
              catch_exceptions: bool = False,
              verbose: bool = False):
    """Run hooks in registration order, logging failures in catch mode"""
    for hook in hooks:
        if not catch_exceptions:
            hook(state_id)
            continue
        try:
            hook(state_id)
        except Exception:
            _log_failure(f"Error in {kind} hook {hook!r} for state {label(state_id)}", verbose)


def _log_failure(message: str, verbose: bool):
    if verbose:
        logger.exception(message)
    else:
        logger.debug(message, exc_info=True)
