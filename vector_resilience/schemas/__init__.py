"""Value types exchanged between components."""

from .classification import (
    ClassifiedError,
    ErrorKind,
    FallbackStrategy,
    ImpactScope,
    Severity
)
from .health import HealthStatus, IndexHealth
from .results import Degraded, Failed, Ok, Result

__all__ = [
    "ClassifiedError",
    "ErrorKind",
    "FallbackStrategy",
    "ImpactScope",
    "Severity",
    "HealthStatus",
    "IndexHealth",
    "Degraded",
    "Failed",
    "Ok",
    "Result"
]
