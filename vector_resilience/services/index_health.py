"""
Vector index health evaluation.
"""
from typing import Optional

from vector_resilience.core.common import get_service_logger
from vector_resilience.core.config import config
from vector_resilience.schemas.health import HealthStatus, IndexHealth


class IndexHealthEvaluator:
    """
    Derives an :class:`IndexHealth` from record counts.

    Corruption at or above ``critical_ratio`` is critical and calls for a
    rebuild; at or above ``warning_ratio`` the index is degraded. Orphans
    above ``orphan_warning_ratio`` also degrade it. Missing embeddings are
    reported but never count as corruption.
    """

    def __init__(
        self,
        critical_ratio: Optional[float] = None,
        warning_ratio: Optional[float] = None,
        orphan_warning_ratio: Optional[float] = None
    ):
        health_config = config.health_config
        self.critical_ratio = critical_ratio if critical_ratio is not None else health_config["corruption_critical_ratio"]
        self.warning_ratio = warning_ratio if warning_ratio is not None else health_config["corruption_warning_ratio"]
        self.orphan_warning_ratio = (
            orphan_warning_ratio if orphan_warning_ratio is not None else health_config["orphan_warning_ratio"]
        )
        self.logger = get_service_logger("index_health")

    def evaluate(
        self,
        index_name: str,
        total_vectors: int,
        corrupted_count: int,
        orphaned_count: int = 0,
        missing_count: int = 0
    ) -> IndexHealth:
        issues = []
        recommendations = []

        if total_vectors <= 0:
            return IndexHealth(
                index_name=index_name,
                total_vectors=0,
                corrupted_count=0,
                orphaned_count=0,
                missing_count=missing_count,
                status=HealthStatus.HEALTHY,
                corruption_ratio=0.0,
                orphan_ratio=0.0,
                issues=["Index is empty"],
                recommendations=["Index content to populate vectors"]
            )

        corruption_ratio = corrupted_count / total_vectors
        orphan_ratio = orphaned_count / total_vectors
        status = HealthStatus.HEALTHY

        if corruption_ratio >= self.critical_ratio:
            status = HealthStatus.CRITICAL
            issues.append(f"High corruption: {corruption_ratio:.1%} of vectors are unreadable")
            recommendations.append("Rebuild the index immediately")
            recommendations.append("Regenerate embeddings for corrupted items")
        elif corruption_ratio >= self.warning_ratio:
            status = HealthStatus.DEGRADED
            issues.append(f"Corruption detected: {corruption_ratio:.1%} of vectors are unreadable")
            recommendations.append("Schedule an index rebuild")
        elif corrupted_count:
            issues.append(f"{corrupted_count} corrupted vectors found")
            recommendations.append("Regenerate embeddings for corrupted items")

        if orphan_ratio >= self.orphan_warning_ratio:
            if status == HealthStatus.HEALTHY:
                status = HealthStatus.DEGRADED
            issues.append(f"{orphaned_count} orphaned vectors ({orphan_ratio:.1%}) reference removed items")
            recommendations.append("Delete orphaned vectors")
        elif orphaned_count:
            issues.append(f"{orphaned_count} orphaned vectors found")

        if missing_count:
            issues.append(f"{missing_count} items have no embedding")
            recommendations.append("Regenerate missing embeddings")

        health = IndexHealth(
            index_name=index_name,
            total_vectors=total_vectors,
            corrupted_count=corrupted_count,
            orphaned_count=orphaned_count,
            missing_count=missing_count,
            status=status,
            corruption_ratio=round(corruption_ratio, 6),
            orphan_ratio=round(orphan_ratio, 6),
            issues=issues,
            recommendations=recommendations
        )

        log = self.logger.info if status == HealthStatus.HEALTHY else self.logger.warning
        log(
            "index_health_evaluated",
            index_name=index_name,
            status=status.value,
            corruption_ratio=health.corruption_ratio,
            orphan_ratio=health.orphan_ratio
        )
        return health
