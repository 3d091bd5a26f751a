"""
Timed FSM

An embeddable finite state machine engine with per-state timeouts.
"""

__version__ = "0.1.0"

from .core import StateMachine
from .errors import (
    FSMError,
    ConfigurationError,
    UnknownStateError,
    EventPayloadError,
)
from .events import Event, Transition
from .loader import MachineDefinition, MachineLoader, StateDefinition
from .state import State

__all__ = [
    "StateMachine",
    "State",
    "Event",
    "Transition",
    "MachineLoader",
    "MachineDefinition",
    "StateDefinition",
    "FSMError",
    "ConfigurationError",
    "UnknownStateError",
    "EventPayloadError",
]
