"""
Event and transition values exchanged between the engine and state handlers.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Hashable, Mapping, Optional, Sequence, Tuple, Type

from .errors import EventPayloadError

MISSING: Any = object()


@dataclass(frozen=True)
class Event:
    """
    An event delivered to the state machine.

    ``args`` and ``kwargs`` carry an arbitrary payload. The engine never looks
    inside them; handlers pull values out with :meth:`arg` and :meth:`kwarg`.
    Events compare by value; hashing one raises ``TypeError`` unless every
    payload value is hashable.
    """
    type: Hashable
    args: Tuple[Any, ...] = ()
    kwargs: Mapping[str, Any] = field(default_factory=dict)

    def __init__(self,
                 type: Hashable,
                 args: Sequence[Any] = (),
                 kwargs: Optional[Mapping[str, Any]] = None):
        object.__setattr__(self, "type", type)
        object.__setattr__(self, "args", tuple(args))
        object.__setattr__(self, "kwargs", MappingProxyType(dict(kwargs or {})))

    def arg(self, index: int, expected_type: Optional[Type] = None) -> Any:
        """Get positional argument ``index``, optionally checking its type"""
        try:
            value = self.args[index]
        except IndexError:
            raise EventPayloadError(
                f"Event {self.type!r} has no positional argument {index} "
                f"({len(self.args)} given)"
            ) from None
        return _check_type(self, f"argument {index}", value, expected_type)

    def kwarg(self, name: str, expected_type: Optional[Type] = None,
              default: Any = MISSING) -> Any:
        """Get keyword argument ``name``, optionally checking its type"""
        if name not in self.kwargs:
            if default is not MISSING:
                return default
            raise EventPayloadError(f"Event {self.type!r} has no keyword argument {name!r}")
        return _check_type(self, f"keyword argument {name!r}", self.kwargs[name], expected_type)

    def __repr__(self):
        return f"Event(type={self.type!r}, args={self.args!r}, kwargs={dict(self.kwargs)!r})"

    def __hash__(self):
        return hash((self.type, self.args, tuple(sorted(self.kwargs.items(), key=repr))))


@dataclass(frozen=True)
class Transition:
    """A handler's request to move the machine to ``to_state``"""
    to_state: Hashable


def _check_type(event: Event, what: str, value: Any, expected_type: Optional[Type]) -> Any:
    if expected_type is None:
        return value
    if not isinstance(value, expected_type):
        raise EventPayloadError(
            f"Event {event.type!r} {what} is {type(value).__name__}, "
            f"expected {expected_type!r}"
        )
    return value
