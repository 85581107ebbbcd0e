"""
Degradation reporting service.
Builds audience-aware messages and status reports from classified errors
and tracks which issues are currently active.
"""
import threading
import time
import uuid
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from vector_resilience.core.common import get_service_logger
from vector_resilience.core.config import config
from vector_resilience.schemas.classification import (
    ClassifiedError,
    ErrorKind,
    FallbackStrategy,
    Severity,
)

MESSAGE_TEMPLATES: Dict[str, Dict[str, str]] = {
    "embedding_service_unavailable": {
        "title": "AI Search Temporarily Unavailable",
        "message": (
            "Our AI-powered search is taking a short break. We've switched to traditional "
            "text search to keep you searching smoothly."
        ),
        "icon": "warning",
        "action": "Continue searching with text-based results.",
    },
    "vector_search_degraded": {
        "title": "Smart Search in Limited Mode",
        "message": (
            "Semantic search features are temporarily limited. Your searches will still work, "
            "but may be less contextually aware."
        ),
        "icon": "info",
        "action": "Results are still accurate using traditional search methods.",
    },
    "partial_batch_failure": {
        "title": "Content Update Partially Complete",
        "message": (
            "Most of your content has been processed successfully. Some items are being retried "
            "in the background."
        ),
        "icon": "warning",
        "action": "Search functionality remains fully available.",
    },
    "cache_degraded": {
        "title": "Search Performance Temporarily Slower",
        "message": "Our search cache is being refreshed. You might notice slightly slower response times.",
        "icon": "info",
        "action": "All features remain available, just a bit slower.",
    },
    "rate_limit_exceeded": {
        "title": "High Search Volume Detected",
        "message": "We're experiencing high search traffic. Results may take a moment longer to appear.",
        "icon": "warning",
        "action": "Please wait a moment before searching again.",
    },
    "configuration_degraded": {
        "title": "Advanced Features Temporarily Disabled",
        "message": "Some advanced search features are temporarily unavailable due to configuration updates.",
        "icon": "warning",
        "action": "Basic search functionality remains fully operational.",
    },
    "queue_degraded": {
        "title": "Background Processing Delayed",
        "message": (
            "Content updates are being processed more slowly than usual. Your current search "
            "results remain accurate."
        ),
        "icon": "info",
        "action": "New content may take longer to appear in search results.",
    },
    "circuit_breaker_open": {
        "title": "Service Protection Mode Active",
        "message": "We've temporarily disabled some features to protect system stability during high load.",
        "icon": "warning",
        "action": "Core search functionality continues to work normally.",
    },
    "temporary_failure": {
        "title": "Search Service Retrying",
        "message": "A search service hit a temporary problem and is retrying automatically.",
        "icon": "info",
        "action": "Results should be back to normal shortly.",
    },
    "index_repair": {
        "title": "Search Index Being Repaired",
        "message": "The search index is being rebuilt. Text search keeps working while this happens.",
        "icon": "warning",
        "action": "Continue searching; results will improve once the repair is done.",
    },
    "reduced_capacity": {
        "title": "Processing in Smaller Batches",
        "message": "The system is handling a large workload and is processing content in smaller batches.",
        "icon": "info",
        "action": "Search is unaffected; new content may take longer to appear.",
    },
    "read_only": {
        "title": "Updates Temporarily Paused",
        "message": "Changes to the search index cannot be saved right now. Searching still works.",
        "icon": "warning",
        "action": "Try your update again in a few minutes.",
    },
    "slow_queries": {
        "title": "Simplified Search Results",
        "message": "Search is slower than usual, so simplified results are shown to keep things responsive.",
        "icon": "info",
        "action": "Narrow your search for faster, more precise results.",
    },
    "limited_access": {
        "title": "Some Features Unavailable",
        "message": "Some search features are not available with the current access level.",
        "icon": "info",
        "action": "Contact your administrator if you need these features.",
    },
}

DEFAULT_TEMPLATE = {
    "title": "Search Service Notice",
    "message": "We're experiencing a temporary issue with our search service. Functionality may be limited.",
    "icon": "warning",
    "action": "Please try again in a few moments.",
}

TEMPLATE_BY_STRATEGY = {
    FallbackStrategy.TEXT_SEARCH_ONLY: "embedding_service_unavailable",
    FallbackStrategy.TEXT_SEARCH_FALLBACK: "vector_search_degraded",
    FallbackStrategy.CONTINUE_WITH_PARTIAL_RESULTS: "partial_batch_failure",
    FallbackStrategy.DIRECT_PROCESSING: "cache_degraded",
    FallbackStrategy.RATE_LIMIT_BACKOFF: "rate_limit_exceeded",
    FallbackStrategy.BASIC_FUNCTIONALITY_ONLY: "configuration_degraded",
    FallbackStrategy.SYNCHRONOUS_PROCESSING: "queue_degraded",
    FallbackStrategy.CIRCUIT_BREAKER_FALLBACK: "circuit_breaker_open",
    FallbackStrategy.RETRY_WITH_BACKOFF: "temporary_failure",
    FallbackStrategy.TEXT_SEARCH_WITH_REINDEX_QUEUE: "index_repair",
    FallbackStrategy.BATCH_SIZE_REDUCTION: "reduced_capacity",
    FallbackStrategy.READ_ONLY_MODE: "read_only",
    FallbackStrategy.SIMPLIFIED_SEARCH_WITH_CACHING: "slow_queries",
    FallbackStrategy.LIMITED_FUNCTIONALITY: "limited_access",
}

CONTEXT_VARIATIONS = {
    "time_of_day": {
        "business_hours": "Our team is working to restore full functionality.",
        "after_hours": (
            "This will be automatically resolved, or our team will address it first thing in the morning."
        ),
        "weekend": "Our automated systems are working to resolve this. Full functionality should return soon.",
    },
    "user_impact": {
        "minimal": "This shouldn't significantly affect your search experience.",
        "moderate": "You may notice some differences in search behavior.",
        "high": "Your search experience may be temporarily limited.",
    },
    "duration_estimate": {
        "short": "This should be resolved within a few minutes.",
        "medium": "We expect this to be resolved within the hour.",
        "long": "This may take several hours to fully resolve.",
        "unknown": "We're working to resolve this as quickly as possible.",
    },
}

IMPACT_BY_STRATEGY = {
    FallbackStrategy.DIRECT_PROCESSING: "minimal",
    FallbackStrategy.TEXT_SEARCH_FALLBACK: "minimal",
    FallbackStrategy.RATE_LIMIT_BACKOFF: "moderate",
    FallbackStrategy.TEXT_SEARCH_ONLY: "moderate",
    FallbackStrategy.BASIC_FUNCTIONALITY_ONLY: "high",
    FallbackStrategy.CIRCUIT_BREAKER_FALLBACK: "high",
}

DURATION_BY_STRATEGY = {
    FallbackStrategy.TEXT_SEARCH_ONLY: "medium",
    FallbackStrategy.RATE_LIMIT_BACKOFF: "short",
    FallbackStrategy.DIRECT_PROCESSING: "short",
    FallbackStrategy.RETRY_WITH_BACKOFF: "short",
    FallbackStrategy.CIRCUIT_BREAKER_FALLBACK: "medium",
    FallbackStrategy.BASIC_FUNCTIONALITY_ONLY: "long",
    FallbackStrategy.TEXT_SEARCH_WITH_REINDEX_QUEUE: "long",
}

ALTERNATIVES_BY_STRATEGY = {
    FallbackStrategy.TEXT_SEARCH_ONLY: [
        "Try using more specific keywords",
        "Use exact phrases in quotes for precise matches",
        "Check back in a few minutes for AI search",
    ],
    FallbackStrategy.RATE_LIMIT_BACKOFF: [
        "Wait a moment before searching again",
        "Try refining your search terms",
        "Browse categories instead of searching",
    ],
    FallbackStrategy.CIRCUIT_BREAKER_FALLBACK: [
        "Use simpler search terms",
        "Try browsing by category",
        "Check back in a few minutes",
    ],
}

DEFAULT_ALTERNATIVES = [
    "Try refreshing the page",
    "Use simpler search terms",
    "Contact support if the issue persists",
]

SEARCH_TIP_STRATEGIES = frozenset({
    FallbackStrategy.TEXT_SEARCH_ONLY,
    FallbackStrategy.TEXT_SEARCH_FALLBACK,
    FallbackStrategy.BASIC_FUNCTIONALITY_ONLY,
})

SEARCH_TIPS = [
    "Use specific keywords rather than full sentences",
    "Put exact phrases in quotation marks",
    "Try different synonyms for your search terms",
    "Use AND, OR, NOT operators for complex searches",
    "Check spelling and try simpler terms",
]

FEATURE_BY_STRATEGY = {
    FallbackStrategy.TEXT_SEARCH_ONLY: "AI Search",
    FallbackStrategy.TEXT_SEARCH_FALLBACK: "Vector Search",
    FallbackStrategy.RATE_LIMIT_BACKOFF: "API Services",
    FallbackStrategy.RETRY_WITH_BACKOFF: "API Services",
    FallbackStrategy.DIRECT_PROCESSING: "Search Cache",
    FallbackStrategy.BASIC_FUNCTIONALITY_ONLY: "Advanced Features",
    FallbackStrategy.SYNCHRONOUS_PROCESSING: "Background Processing",
    FallbackStrategy.TEXT_SEARCH_WITH_REINDEX_QUEUE: "Search Index",
    FallbackStrategy.CONTINUE_WITH_PARTIAL_RESULTS: "Content Indexing",
    FallbackStrategy.READ_ONLY_MODE: "Index Updates",
}

STATUS_TITLES = {
    "degraded": "Search Services Significantly Impacted",
    "partial": "Some Search Features Limited",
    "minor": "Minor Search Service Issues",
}

STATUS_ICONS = {"degraded": "error", "partial": "warning", "minor": "info"}

STRATEGY_STATUS_MESSAGES = {
    FallbackStrategy.TEXT_SEARCH_FALLBACK: {
        "text": "Search results using traditional text matching",
        "type": "info",
        "icon": "info",
        "dismissible": True,
        "actions": [],
    },
    FallbackStrategy.CIRCUIT_BREAKER_FALLBACK: {
        "text": "Some search features temporarily unavailable",
        "type": "warning",
        "icon": "warning",
        "dismissible": True,
        "actions": [{"text": "Try again", "action": "reload"}],
    },
    FallbackStrategy.RATE_LIMIT_BACKOFF: {
        "text": "Search processing slower than usual due to high demand",
        "type": "info",
        "icon": "clock",
        "dismissible": False,
        "actions": [],
    },
}


@dataclass
class AudienceContext:
    """Who a message is for and what they are allowed to see."""
    role: str = "user"
    show_technical_details: bool = False
    search_terms: Optional[str] = None
    trace_id: Optional[str] = None

    @property
    def is_privileged(self) -> bool:
        return self.role == "administrator"


class DegradationMessageService:
    """
    Audience-aware messages for degraded operation.

    End users only ever see template text and the classified user message.
    Technical details are added for administrators who ask for them.
    """

    def __init__(
        self,
        degraded_issue_count: Optional[int] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.degraded_issue_count = degraded_issue_count or config.reporting_config["degraded_issue_count"]
        self._clock = clock
        self.logger = get_service_logger("degradation_messages")

    def generate_message(
        self,
        classified: ClassifiedError,
        audience: Optional[AudienceContext] = None
    ) -> Dict[str, Any]:
        audience = audience or AudienceContext()
        strategy = classified.fallback_strategy
        template = MESSAGE_TEMPLATES.get(TEMPLATE_BY_STRATEGY.get(strategy), DEFAULT_TEMPLATE)
        impact_level = self.assess_impact_level(classified)

        message = dict(template)
        message.update({
            "user_message": classified.user_message,
            "additional_info": CONTEXT_VARIATIONS["time_of_day"][self._time_context()],
            "impact_level": impact_level,
            "impact_message": CONTEXT_VARIATIONS["user_impact"][impact_level],
            "estimated_resolution": self.estimate_resolution(classified),
            "alternatives": list(ALTERNATIVES_BY_STRATEGY.get(strategy, DEFAULT_ALTERNATIVES)),
        })

        if audience.role == "administrator":
            message["admin_note"] = "Check the system logs for more detailed information about this degradation."
        elif audience.role == "editor":
            message["editor_note"] = "Content editing and publishing are not affected by this search issue."

        if strategy in SEARCH_TIP_STRATEGIES:
            message["search_tips"] = self._search_tips(audience.search_terms)

        if audience.is_privileged and audience.show_technical_details:
            message["technical_details"] = self._technical_details(classified, audience)

        return message

    def generate_status_report(self, errors: Sequence[ClassifiedError]) -> Dict[str, Any]:
        """
        Summary of all concurrent issues.

        ``degraded`` when any issue has high impact or there are at least
        ``degraded_issue_count`` of them, ``partial`` for any moderate issue
        or two issues, otherwise ``minor``.
        """
        if not errors:
            return {
                "status": "healthy",
                "title": "All Systems Operational",
                "message": "Search services are running normally.",
                "icon": "success",
                "affected_features": [],
                "total_issues": 0,
                "estimated_resolution": None,
            }

        impact_levels = [self.assess_impact_level(error) for error in errors]
        features = list(dict.fromkeys(self.feature_name(error) for error in errors))
        total = len(errors)

        if "high" in impact_levels or total >= self.degraded_issue_count:
            status = "degraded"
        elif "moderate" in impact_levels or total >= 2:
            status = "partial"
        else:
            status = "minor"

        self.logger.info("status_report_generated", status=status, total_issues=total)
        return {
            "status": status,
            "title": STATUS_TITLES[status],
            "message": self._status_text(status, features, total),
            "icon": STATUS_ICONS[status],
            "affected_features": features,
            "total_issues": total,
            "estimated_resolution": self._worst_case_resolution(errors),
        }

    def build_help_message(self, classified: ClassifiedError, search_terms: Optional[str] = None) -> str:
        """One-line notice for a results page."""
        text = classified.user_message
        if search_terms:
            text += f' Your search for "{search_terms}" will still return results.'
        return text

    def get_status_message(
        self,
        strategy: FallbackStrategy,
        user_message: Optional[str] = None,
        result_count: Optional[int] = None
    ) -> Dict[str, Any]:
        """Banner shown above search results for a fallback strategy."""
        message = STRATEGY_STATUS_MESSAGES.get(strategy)
        if message is None:
            return {
                "text": user_message or "Search functionality is running in limited mode",
                "type": "info",
                "icon": "info",
                "dismissible": True,
                "actions": [],
            }

        message = {**message, "actions": list(message["actions"])}
        if result_count:
            noun = "result" if result_count == 1 else "results"
            message["text"] += f" ({result_count} {noun} found)"
        return message

    def get_admin_summary(self, errors: Sequence[ClassifiedError]) -> Dict[str, Any]:
        return {
            "total_issues": len(errors),
            "by_kind": dict(Counter(error.kind.value for error in errors)),
            "by_severity": dict(Counter(error.severity.value for error in errors)),
            "by_impact_scope": dict(Counter(error.impact_scope.value for error in errors)),
            "escalations": [
                {"kind": error.kind.value, "severity": error.severity.value, "message": error.message}
                for error in errors
                if error.escalation_required
            ],
            "logged": sum(1 for error in errors if error.should_log),
        }

    @staticmethod
    def assess_impact_level(classified: ClassifiedError) -> str:
        if classified.severity == Severity.CRITICAL:
            return "high"
        return IMPACT_BY_STRATEGY.get(classified.fallback_strategy, "moderate")

    @staticmethod
    def feature_name(classified: ClassifiedError) -> str:
        return FEATURE_BY_STRATEGY.get(classified.fallback_strategy, "Search Service")

    @staticmethod
    def estimate_resolution(classified: ClassifiedError) -> str:
        if classified.retry_after:
            minutes = max(1, round(classified.retry_after / 60))
            return f"This should be resolved within about {minutes} minute{'s' if minutes > 1 else ''}."
        duration = DURATION_BY_STRATEGY.get(classified.fallback_strategy, "unknown")
        return CONTEXT_VARIATIONS["duration_estimate"][duration]

    def _worst_case_resolution(self, errors: Sequence[ClassifiedError]) -> str:
        durations = {DURATION_BY_STRATEGY.get(error.fallback_strategy, "unknown") for error in errors}
        for duration in ("long", "medium", "unknown"):
            if duration in durations:
                return CONTEXT_VARIATIONS["duration_estimate"][duration]
        return CONTEXT_VARIATIONS["duration_estimate"]["short"]

    @staticmethod
    def _status_text(status: str, features: List[str], total: int) -> str:
        feature_list = ", ".join(features)
        if total > 1:
            prefix = f"Multiple issues ({total}) are affecting search: {feature_list}."
            if status == "degraded":
                return prefix + " Core search functionality remains available."
            return prefix + " Most functionality continues to work normally."
        if status == "degraded":
            return f"Search features are currently limited: {feature_list}. Core search functionality remains available."
        if status == "partial":
            return f"Some search features are temporarily limited: {feature_list}. Most functionality continues to work normally."
        return f"Minor issues detected with: {feature_list}. Impact on search experience should be minimal."

    def _time_context(self) -> str:
        now = self._clock()
        if now.weekday() >= 5:
            return "weekend"
        if 9 <= now.hour <= 17:
            return "business_hours"
        return "after_hours"

    @staticmethod
    def _search_tips(search_terms: Optional[str]) -> List[str]:
        tips = list(SEARCH_TIPS)
        if search_terms:
            tips.insert(0, f'Your search for "{search_terms}" will still return text matches')
        return tips

    def _technical_details(self, classified: ClassifiedError, audience: AudienceContext) -> Dict[str, Any]:
        return {
            "exception_type": classified.exception_type,
            "kind": classified.kind.value,
            "fallback_strategy": classified.fallback_strategy.value,
            "severity": classified.severity.value,
            "impact_scope": classified.impact_scope.value,
            "error_code": classified.error_code,
            "message": classified.message,
            "should_log": classified.should_log,
            "context": dict(classified.context),
            "timestamp": self._clock().isoformat(),
            "trace_id": audience.trace_id or f"trace_{uuid.uuid4().hex[:12]}",
        }


class DegradationTracker:
    """
    Remembers recent classified errors, one per kind, so status reports
    reflect every concurrent issue. Entries older than ``window`` seconds
    are no longer active.
    """

    def __init__(self, window: Optional[float] = None, clock: Callable[[], float] = time.time):
        self.window = window or config.reporting_config["active_window"]
        self._clock = clock
        self._issues: Dict[ErrorKind, ClassifiedError] = {}
        self._seen_at: Dict[ErrorKind, float] = {}
        self._lock = threading.Lock()

    def record(self, classified: ClassifiedError) -> None:
        with self._lock:
            self._issues[classified.kind] = classified
            self._seen_at[classified.kind] = self._clock()

    def resolve(self, kind: ErrorKind) -> bool:
        with self._lock:
            self._seen_at.pop(kind, None)
            return self._issues.pop(kind, None) is not None

    def active_issues(self) -> List[ClassifiedError]:
        cutoff = self._clock() - self.window
        with self._lock:
            for kind in [k for k, seen in self._seen_at.items() if seen < cutoff]:
                del self._issues[kind]
                del self._seen_at[kind]
            return list(self._issues.values())

    def clear(self) -> None:
        with self._lock:
            self._issues.clear()
            self._seen_at.clear()
