"""
Declarative machine definitions loaded from YAML.

A definition names the states, their timeouts and their static transitions
(``event -> target state``). Embedders can still attach handlers and hooks to
the built ``State`` objects before constructing the machine.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Hashable, Optional, Type, Union

import yaml

from .config import VERBOSE_ENV, env_flag
from .core import StateMachine
from .errors import ConfigurationError
from .events import Event, Transition
from .state import State

logger = logging.getLogger(__name__)

_BOOL_TAG = "tag:yaml.org,2002:bool"


class _DefinitionLoader(yaml.SafeLoader):
    """
    ``SafeLoader`` that reads only ``true``/``false`` as booleans.

    YAML 1.1 also resolves ``on``, ``off``, ``yes`` and ``no``, which are common
    state and event names.
    """


_DefinitionLoader.yaml_implicit_resolvers = {
    first: [(tag, regexp) for tag, regexp in resolvers if tag != _BOOL_TAG]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}
_DefinitionLoader.add_implicit_resolver(
    _BOOL_TAG,
    re.compile(r"^(?:true|True|TRUE|false|False|FALSE)$"),
    list("tTfF")
)


@dataclass
class StateDefinition:
    """One state of a declarative machine"""
    name: Hashable
    timeout: Optional[float] = None
    transitions: Dict[Hashable, Hashable] = field(default_factory=dict)  # event -> target


@dataclass
class MachineDefinition:
    """Declarative state machine"""
    name: str
    initial_state: Hashable
    states: Dict[Hashable, StateDefinition] = field(default_factory=dict)
    timeout_event: Optional[Hashable] = None
    error_state: Optional[Hashable] = None
    verbose: Optional[bool] = None
    debug_mode: Optional[bool] = None

    def build_states(self) -> Dict[Hashable, State]:
        """Create fresh ``State`` objects with the static transitions wired in"""
        verbose = env_flag(VERBOSE_ENV) if self.verbose is None else self.verbose
        states = {}
        for state_id, definition in self.states.items():
            state = State(timeout=definition.timeout, verbose=verbose)
            for event_type, target in definition.transitions.items():
                state.add_handler(event_type, _goto(target))
            states[state_id] = state
        return states

    def build(self, states: Optional[Dict[Hashable, State]] = None, **overrides) -> StateMachine:
        """
        Construct a ``StateMachine`` from this definition.

        Args:
            states: Pre-built states (e.g. from :meth:`build_states` with extra
                handlers attached); built fresh when omitted
            **overrides: Keyword arguments passed to ``StateMachine``, taking
                precedence over the definition's own settings
        """
        kwargs = {
            'name': self.name,
            'timeout_event': self.timeout_event,
            'error_state': self.error_state,
            'verbose': self.verbose,
            'debug_mode': self.debug_mode,
        }
        kwargs.update(overrides)
        return StateMachine(
            self.initial_state,
            states if states is not None else self.build_states(),
            **kwargs
        )


class MachineLoader:
    """Parser for declarative machine definitions"""

    @staticmethod
    def from_file(filepath: Union[str, Path],
                  state_type: Optional[Type[Enum]] = None,
                  event_type: Optional[Type[Enum]] = None) -> MachineDefinition:
        """Load a machine definition from a YAML file"""
        filepath = Path(filepath)

        try:
            with open(filepath, 'r') as f:
                data = yaml.load(f, Loader=_DefinitionLoader)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {filepath}: {e}") from e

        logger.debug(f"Loaded machine definition from {filepath}")
        return MachineLoader.from_dict(data, state_type, event_type)

    @staticmethod
    def from_dict(data: Dict[str, Any],
                  state_type: Optional[Type[Enum]] = None,
                  event_type: Optional[Type[Enum]] = None) -> MachineDefinition:
        """
        Parse a machine definition from a dictionary.

        ``state_type`` and ``event_type`` map names in the document onto enum
        members by value; without them ids stay plain strings.
        """
        if not isinstance(data, dict):
            raise ConfigurationError("Machine definition must be a mapping")

        for key in ('initial_state', 'states'):
            if key not in data:
                raise ConfigurationError(f"Machine definition is missing '{key}'")

        states_data = data['states']
        if not isinstance(states_data, dict) or not states_data:
            raise ConfigurationError("'states' must be a non-empty mapping")

        for key in ('verbose', 'debug_mode'):
            if not isinstance(data.get(key), (bool, type(None))):
                raise ConfigurationError(f"'{key}' must be true or false, got {data[key]!r}")

        definition = MachineDefinition(
            name=str(data.get('name', 'fsm')),
            initial_state=_coerce(data['initial_state'], state_type, 'state'),
            timeout_event=_coerce_optional(data.get('timeout_event'), event_type, 'event'),
            error_state=_coerce_optional(data.get('error_state'), state_type, 'state'),
            verbose=data.get('verbose'),
            debug_mode=data.get('debug_mode'),
        )

        for name, state_data in states_data.items():
            state = MachineLoader._parse_state(name, state_data or {}, state_type, event_type)
            definition.states[state.name] = state

        MachineLoader._validate(definition)
        return definition

    @staticmethod
    def _parse_state(name: Any,
                     data: Dict[str, Any],
                     state_type: Optional[Type[Enum]],
                     event_type: Optional[Type[Enum]]) -> StateDefinition:
        """Parse a single state definition"""
        if not isinstance(data, dict):
            raise ConfigurationError(f"State '{name}' must be a mapping")

        timeout = data.get('timeout')
        if timeout is not None:
            if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
                raise ConfigurationError(f"State '{name}' has invalid timeout: {timeout!r}")
            timeout = float(timeout)

        transitions = {}
        for event_name, target in (data.get('transitions') or {}).items():
            transitions[_coerce(event_name, event_type, 'event')] = _coerce(target, state_type, 'state')

        return StateDefinition(
            name=_coerce(name, state_type, 'state'),
            timeout=timeout,
            transitions=transitions
        )

    @staticmethod
    def _validate(definition: MachineDefinition):
        """Check that every referenced state is defined"""
        known = definition.states
        if definition.initial_state not in known:
            raise ConfigurationError(f"Initial state '{definition.initial_state}' is not defined")
        if definition.error_state is not None and definition.error_state not in known:
            raise ConfigurationError(f"Error state '{definition.error_state}' is not defined")

        # Handler code can target anything; only static transitions are checked
        for state in known.values():
            for event_type, target in state.transitions.items():
                if target not in known:
                    raise ConfigurationError(
                        f"State '{state.name}' transitions on '{event_type}' "
                        f"to undefined state '{target}'"
                    )


def _goto(target: Hashable):
    def handler(event: Event) -> Transition:
        return Transition(target)
    return handler


def _coerce(value: Any, enum_type: Optional[Type[Enum]], kind: str) -> Hashable:
    if isinstance(value, bool):
        raise ConfigurationError(
            f"{kind.capitalize()} name {value!r} was read as a boolean; quote it in YAML"
        )
    if enum_type is None:
        return str(value)
    try:
        return enum_type(value)
    except ValueError:
        pass
    try:
        return enum_type[str(value)]
    except KeyError:
        raise ConfigurationError(f"Unknown {kind} '{value}' for {enum_type.__name__}") from None


def _coerce_optional(value: Any, enum_type: Optional[Type[Enum]], kind: str) -> Optional[Hashable]:
    if value is None:
        return None
    return _coerce(value, enum_type, kind)
