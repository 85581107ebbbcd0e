"""
Three-way operation outcome.

Resilient operations return ``Ok(value)``, ``Degraded(...)`` when a
fallback was applied, or ``Failed(classified_error)`` when nothing safe
could be done. Callers branch on the variant instead of catching
exceptions for degraded modes.
"""
from dataclasses import dataclass
from typing import Generic, Optional, Tuple, TypeVar, Union

from vector_resilience.schemas.classification import ClassifiedError, FallbackStrategy

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    is_ok = True
    is_degraded = False
    is_failed = False

    def value_or(self, default):
        return self.value


@dataclass(frozen=True)
class Degraded(Generic[T]):
    """
    Completed with a fallback. ``value`` holds whatever partial result is
    usable (may be None); ``issues`` are the classified causes.
    """
    fallback: FallbackStrategy
    description: str
    value: Optional[T] = None
    issues: Tuple[ClassifiedError, ...] = ()

    is_ok = False
    is_degraded = True
    is_failed = False

    def value_or(self, default):
        return default if self.value is None else self.value


@dataclass(frozen=True)
class Failed:
    error: ClassifiedError

    is_ok = False
    is_degraded = False
    is_failed = True

    def value_or(self, default):
        return default

    def raise_error(self):
        """Re-raise the typed exception behind the classification."""
        raise self.error.error


Result = Union[Ok[T], Degraded[T], Failed]
