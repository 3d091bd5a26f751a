"""
Exception types raised by the state machine engine.
"""


class FSMError(Exception):
    """Base class for all state machine errors"""
    pass


class ConfigurationError(FSMError):
    """The machine or one of its states was wired incorrectly"""
    pass


class UnknownStateError(FSMError, KeyError):
    """A state id is not present in the machine's state table"""

    def __init__(self, state, message: str = ""):
        self.state = state
        super().__init__(message or f"State {state!r} not found in state table")

    def __str__(self):
        return self.args[0]


class EventPayloadError(FSMError, ValueError):
    """An event argument is missing or has an unexpected type"""
    pass
