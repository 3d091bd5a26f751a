"""
State machine engine: event dispatch, transitions, hooks and state timers.
"""

import asyncio
import logging
from collections import deque
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Callable, Deque, Dict, Hashable, List, Mapping, Optional

from prometheus_client import CollectorRegistry

from .config import DEBUG_MODE_ENV, VERBOSE_ENV, env_flag
from .errors import ConfigurationError, UnknownStateError
from .events import Event
from .metrics import MachineMetrics
from .state import Hook, State, label, run_hooks

logger = logging.getLogger(__name__)

ERROR_TRIGGER = 'error'


class StateMachine:
    """
    A single-current-state machine with optional per-state timeouts.

    Features:
    - Handlers decide transitions; the engine runs exit hooks, swaps the
      current state, runs enter hooks and re-arms the state timer
    - Events are processed one at a time to completion; events raised from
      inside handlers or hooks are queued behind the current one
    - State timers run on an asyncio event loop and inject ``timeout_event``
    - Prometheus metrics and a bounded transition history

    The machine is owned by its event loop's thread. Other threads must use
    :meth:`post_event`. Handlers and hooks run synchronously, so one that
    blocks stalls the whole machine.
    """

    def __init__(self,
                 initial_state: Hashable,
                 states: Mapping[Hashable, State],
                 timeout_event: Optional[Hashable] = None,
                 error_state: Optional[Hashable] = None,
                 verbose: Optional[bool] = None,
                 debug_mode: Optional[bool] = None,
                 catch_exceptions: bool = True,
                 name: str = "fsm",
                 loop: Optional[asyncio.AbstractEventLoop] = None,
                 metrics_registry: Optional[CollectorRegistry] = None,
                 history_size: int = 20):
        """
        Initialize state machine.

        Args:
            initial_state: State id the machine starts in
            states: State table mapping state ids to wired ``State`` objects
            timeout_event: Event type injected when a state's timer expires
            error_state: State entered by :meth:`transition_to_error`
            verbose: Log dispatch details at INFO (default: ``FSM_VERBOSE``)
            debug_mode: Never arm state timers (default: ``FSM_DEBUG_MODE``)
            catch_exceptions: Contain handler and hook failures instead of
                raising them to the caller
            name: Machine name used in logs and metric names
            loop: Event loop for timers and :meth:`post_event`; defaults to
                the loop running at construction time
            metrics_registry: Registry for this machine's metrics
            history_size: Number of transitions kept by :meth:`get_history`

        Raises:
            ConfigurationError: The state table is empty, two state ids share
                a name, ``initial_state`` or ``error_state`` is not in it,
                or timers are needed and there is no event loop to run them on.
        """
        if not states:
            raise ConfigurationError("State table is empty")
        if initial_state not in states:
            raise ConfigurationError(f"Initial state {label(initial_state)} not found in state table")
        if error_state is not None and error_state not in states:
            raise ConfigurationError(f"Error state {label(error_state)} not found in state table")
        labels = [label(s) for s in states]
        if len(set(labels)) != len(labels):
            raise ConfigurationError(f"State ids must have distinct names, got {labels}")

        self.name = name
        self._states: Mapping[Hashable, State] = MappingProxyType(dict(states))
        self._current_state = initial_state
        self.timeout_event = timeout_event
        self.error_state = error_state
        self.verbose = env_flag(VERBOSE_ENV) if verbose is None else verbose
        self.debug_mode = env_flag(DEBUG_MODE_ENV) if debug_mode is None else debug_mode
        self.catch_exceptions = catch_exceptions

        # Machine-level hooks, run after the State's own hooks
        self._enter_hooks: Dict[Hashable, List[Hook]] = {}
        self._exit_hooks: Dict[Hashable, List[Hook]] = {}

        self._timer: Optional[asyncio.TimerHandle] = None
        self._timeout_id = 0
        self._shut_down = False

        self._dispatching = False
        self._pending: Deque[Callable[[], None]] = deque()
        self._history: Deque[Dict[str, Any]] = deque(maxlen=history_size)

        self._loop = loop if loop is not None else _running_loop()
        if self._loop is None and self._needs_timers():
            raise ConfigurationError(
                f"{name}: state timers need an event loop; construct the machine "
                f"inside a running loop, pass loop=..., or enable debug_mode"
            )

        self.metrics = MachineMetrics(name, labels, metrics_registry)
        self.metrics.entered(label(initial_state))

        self._log(f"{name} initialized in state {label(initial_state)}")
        self._start_timer(initial_state)

    # Public API

    @property
    def current_state(self) -> Hashable:
        return self._current_state

    @property
    def states(self) -> Mapping[Hashable, State]:
        """Read-only view of the state table"""
        return self._states

    @property
    def is_shut_down(self) -> bool:
        return self._shut_down

    @property
    def timer_active(self) -> bool:
        """Whether a state timer is currently armed"""
        return self._timer is not None

    def add_enter_hook(self, state: Hashable, hook: Hook):
        """Add a hook that runs when entering ``state``"""
        self._check_known(state)
        self._enter_hooks.setdefault(state, []).append(hook)

    def add_exit_hook(self, state: Hashable, hook: Hook):
        """Add a hook that runs when exiting ``state``"""
        self._check_known(state)
        self._exit_hooks.setdefault(state, []).append(hook)

    def handle_event(self, event: Event):
        """
        Deliver an event to the current state and apply its transition.

        Must be called on the machine's own thread. Calls made while another
        event is being processed are queued and handled after it.

        Raises:
            UnknownStateError: A handler returned a transition to a state
                that is not in the state table.
        """
        self._run_serialized(lambda: self._dispatch(event))

    def post_event(self, event: Event):
        """Thread-safe :meth:`handle_event`, run on the machine's event loop"""
        if self._loop is None:
            raise ConfigurationError(f"{self.name}: post_event needs an event loop")
        self._loop.call_soon_threadsafe(self.handle_event, event)

    def transition_to_error(self, cause: Any = None):
        """
        Move straight to the error state, bypassing handlers.

        Runs the current state's exit hooks and the error state's enter hooks
        but does not arm a timer. Does nothing when no error state is set.
        """
        if self.error_state is None:
            self._log(f"No error state configured, ignoring error: {cause}")
            return
        self._run_serialized(lambda: self._enter_error_state(cause))

    def shutdown(self):
        """Cancel the state timer; no timer is armed after this. Idempotent."""
        if self._shut_down:
            return
        self._shut_down = True
        self._cancel_timer()
        self._log(f"{self.name} shutdown complete")

    def state_names(self) -> List[str]:
        """Names of all states in the table, in table order"""
        return [label(s) for s in self._states]

    def available_events(self) -> List[Hashable]:
        """Event types the current state has handlers for"""
        return self._states[self._current_state].handled_events()

    def get_history(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Get the most recent transitions, oldest first"""
        if limit <= 0:
            return []
        return list(self._history)[-limit:]

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()
        return False

    def __repr__(self):
        return f"StateMachine(name={self.name!r}, current_state={label(self._current_state)})"

    # Dispatch

    def _run_serialized(self, step: Callable[[], None]):
        self._pending.append(step)
        if self._dispatching:
            return

        self._dispatching = True
        try:
            while self._pending:
                self._pending.popleft()()
        except BaseException:
            if self._pending:
                logger.warning(f"{self.name}: dropping {len(self._pending)} queued event(s) after error")
                self._pending.clear()
            raise
        finally:
            self._dispatching = False

    def _dispatch(self, event: Event):
        current = self._current_state
        state = self._states[current]

        if not state.handles(event.type):
            self.metrics.unhandled_events.labels(state=label(current), event=label(event.type)).inc()

        transition = state.handle_event(
            event,
            state_name=label(current),
            catch_exceptions=self.catch_exceptions,
            on_error=self._record_handler_error
        )
        if transition is None:
            return

        if transition.to_state == current:
            self._log(f"Same-state transition to {label(current)} on {label(event.type)} ignored")
            return

        self._apply_transition(transition.to_state, event.type)

    def _apply_transition(self, target: Hashable, trigger: Hashable):
        old_state = self._current_state
        new_state = self._states.get(target)
        if new_state is None:
            raise UnknownStateError(
                target,
                f"{self.name}: transition from {label(old_state)} on {label(trigger)} "
                f"targets unknown state {target!r}"
            )

        self._cancel_timer()
        try:
            self._run_exit_hooks(old_state)

            self._current_state = target
            self._record_transition(old_state, target, trigger)

            self._run_enter_hooks(target)
            self._log(f"Transitioned: {label(old_state)} -> {label(target)} via {label(trigger)}")
        finally:
            # Re-arm for whichever state a raising hook left the machine in
            self._start_timer(self._current_state)

    def _enter_error_state(self, cause: Any):
        old_state = self._current_state

        self._cancel_timer()
        try:
            self._run_exit_hooks(old_state)
        except BaseException:
            self._start_timer(old_state)
            raise

        self._current_state = self.error_state
        self._record_transition(old_state, self.error_state, ERROR_TRIGGER)

        message = (f"Transitioning from {label(old_state)} to error state "
                   f"{label(self.error_state)} due to: {cause}")
        if self.verbose:
            logger.warning(message)
        else:
            logger.debug(message)

        self._run_enter_hooks(self.error_state)

    def _run_enter_hooks(self, state: Hashable):
        self._states[state].run_enter_hooks(state, self.catch_exceptions)
        run_hooks(self._enter_hooks.get(state, []), state, "enter", self.catch_exceptions, self.verbose)

    def _run_exit_hooks(self, state: Hashable):
        self._states[state].run_exit_hooks(state, self.catch_exceptions)
        run_hooks(self._exit_hooks.get(state, []), state, "exit", self.catch_exceptions, self.verbose)

    def _record_transition(self, from_state: Hashable, to_state: Hashable, trigger: Hashable):
        self.metrics.transitioned(label(from_state), label(to_state), label(trigger))
        self._history.append({
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'from': from_state,
            'to': to_state,
            'trigger': trigger,
        })

    def _record_handler_error(self, event: Event, error: Exception):
        self.metrics.handler_errors.labels(
            state=label(self._current_state),
            event=label(event.type)
        ).inc()

    # Timers

    def _needs_timers(self) -> bool:
        if self.timeout_event is None or self.debug_mode:
            return False
        return any(state.timeout is not None for state in self._states.values())

    def _start_timer(self, state: Hashable):
        if self._shut_down:
            return
        if self.debug_mode:
            self._log(f"Debug mode: skipping timer for state {label(state)}")
            return

        # At most one timer is ever outstanding
        self._cancel_timer()

        timeout = self._states[state].timeout
        if timeout is None or self.timeout_event is None:
            return

        self._timeout_id += 1
        self._timer = self._loop.call_later(timeout, self._on_timeout, self._timeout_id, state)
        logger.debug(f"{self.name}: armed {timeout}s timer for state {label(state)}")

    def _cancel_timer(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        # Invalidates any callback that already left the loop's timer queue
        self._timeout_id += 1

    def _on_timeout(self, timeout_id: int, state: Hashable):
        if self._shut_down or timeout_id != self._timeout_id:
            return
        self._timer = None

        self.metrics.timeouts.labels(state=label(state)).inc()
        self._log(f"State {label(state)} timed out after {self._states[state].timeout}s")
        self.handle_event(Event(self.timeout_event))

    def _check_known(self, state: Hashable):
        if state not in self._states:
            raise UnknownStateError(state)

    def _log(self, message: str):
        if self.verbose:
            logger.info(message)
        else:
            logger.debug(message)


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None
