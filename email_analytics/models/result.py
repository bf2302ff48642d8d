"""
Explicit success/failure values for parsing and date resolution.

Functions that can fail on bad input return ``Result[T]`` instead of raising or
returning a sentinel, so callers branch on the outcome visibly:

    result = parse_date(raw)
    if isinstance(result, Err):
        logger.debug(f"Skipping row: {result.reason}")
    else:
        sent = result.value
"""

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful outcome carrying a value."""
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    """Failed outcome carrying a human-readable reason."""
    reason: str

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Err]


__all__ = ["Ok", "Err", "Result"]
