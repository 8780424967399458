"""
Result values for calls that may fall back to a deterministic path.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar, Union

T = TypeVar("T")


class FallbackReason(str, Enum):
    """Why an external call did not produce a usable value."""
    UNAVAILABLE = "unavailable"
    TIMEOUT = "timeout"
    UNPARSABLE = "unparsable"
    INVALID_PAYLOAD = "invalid_payload"


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful outcome."""
    value: T

    @property
    def is_ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    """Failed outcome; callers select their fallback path."""
    reason: FallbackReason
    detail: str = ""

    @property
    def is_ok(self) -> bool:
        return False


Result = Union[Ok[Any], Err]
