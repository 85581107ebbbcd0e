"""
Index health report types.
"""
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List


class HealthStatus(str, Enum):
    """Overall health of a vector index."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"


@dataclass
class IndexHealth:
    """Derived health of one vector index; computed on demand, never stored."""
    index_name: str
    total_vectors: int
    corrupted_count: int
    orphaned_count: int
    missing_count: int
    status: HealthStatus
    corruption_ratio: float
    orphan_ratio: float
    issues: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    @property
    def needs_rebuild(self) -> bool:
        return self.status == HealthStatus.CRITICAL

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data
