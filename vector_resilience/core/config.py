"""
Core configuration module with environment variable validation.
Follows fail-fast principle - validates all config at startup.
"""
from typing import Optional, Dict, Any
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, validator, ValidationError
import sys


class Settings(BaseSettings):
    """Application settings with validation."""

    # Application settings
    APP_NAME: str = Field(default="Vector Resilience", description="Application name")
    APP_VERSION: str = Field(default="1.0.0", description="Application version")
    DEBUG: bool = Field(default=False, description="Debug mode")

    # Management API settings
    API_HOST: str = Field(default="0.0.0.0", description="API host")
    API_PORT: int = Field(default=8000, description="API port", ge=1, le=65535)
    API_PREFIX: str = Field(default="", description="API prefix")

    # Database settings
    DATABASE_URL: Optional[str] = Field(
        default=None,
        description="SQLAlchemy connection URL (PostgreSQL in production, SQLite for development)"
    )
    DB_POOL_SIZE: int = Field(default=10, description="Connection pool size", ge=1)
    DB_MAX_OVERFLOW: int = Field(default=20, description="Connection pool overflow", ge=0)

    # In-process cache settings
    CACHE_ENABLED: bool = Field(default=True, description="Enable embedding cache")
    CACHE_BACKEND: str = Field(default="memory", description="Cache backend (memory, database, tiered)")
    CACHE_DEFAULT_TTL: int = Field(default=3600, description="Memory cache TTL in seconds (0 = never)", ge=0)
    CACHE_MAX_ENTRIES: int = Field(default=1000, description="Memory cache entry ceiling", ge=1)
    CACHE_CLEANUP_THRESHOLD: float = Field(
        default=0.9,
        description="Fraction of max entries to shrink to when evicting"
    )

    # Persistent cache settings
    PERSISTENT_CACHE_TABLE: str = Field(default="embedding_cache", description="Persistent cache table name")
    PERSISTENT_CACHE_DEFAULT_TTL: int = Field(
        default=2592000,
        description="Persistent cache TTL in seconds (0 = never)",
        ge=0
    )
    PERSISTENT_CACHE_MAX_ENTRIES: int = Field(default=100000, description="Persistent cache entry ceiling", ge=1)
    PERSISTENT_CACHE_CLEANUP_PROBABILITY: float = Field(
        default=0.01,
        description="Chance that a write triggers a maintenance sweep",
        ge=0.0,
        le=1.0
    )
    PERSISTENT_CACHE_COMPRESSION: bool = Field(default=True, description="Compress stored embeddings")

    # Embedding validation
    EMBEDDING_MAX_DIMENSIONS: int = Field(default=16384, description="Hard cap on embedding length", ge=1)

    # Embedding provider settings
    EMBEDDING_PROVIDER: str = Field(default="openai", description="Provider (openai, azure_openai, local)")
    EMBEDDING_MODEL: str = Field(default="text-embedding-ada-002", description="Embedding model")
    EMBEDDING_DIMENSION: int = Field(default=1536, description="Embedding dimension", ge=1)
    EMBEDDING_BATCH_SIZE: int = Field(default=10, description="Texts per provider request", ge=1)
    EMBEDDING_PROVIDER_MAX_BATCH: int = Field(default=2048, description="Provider request ceiling", ge=1)
    EMBEDDING_TIMEOUT: float = Field(default=30.0, description="Provider call timeout in seconds", gt=0)
    EMBEDDING_MAX_RETRIES: int = Field(default=3, description="Retries for retryable provider errors", ge=0)
    EMBEDDING_RETRY_BASE_DELAY_MS: int = Field(default=1000, description="Backoff base delay", ge=0)
    EMBEDDING_REQUESTS_PER_MINUTE: int = Field(
        default=0,
        description="Client side provider request ceiling, 0 disables",
        ge=0
    )
    EMBEDDING_INDIVIDUAL_FALLBACK: bool = Field(
        default=True,
        description="Retry a failed batch one text at a time"
    )
    EMBEDDING_INDIVIDUAL_DELAY_MS: int = Field(default=100, description="Delay between single retries", ge=0)
    EMBEDDING_FAILURE_THRESHOLD: float = Field(
        default=0.5,
        description="Failure ratio above which indexing is reported as degraded",
        ge=0.0,
        le=1.0
    )
    OPENAI_API_KEY: Optional[str] = Field(default=None, description="OpenAI API key")
    AZURE_OPENAI_API_KEY: Optional[str] = Field(default=None, description="Azure OpenAI API key")
    AZURE_OPENAI_ENDPOINT: Optional[str] = Field(default=None, description="Azure OpenAI endpoint")
    AZURE_OPENAI_DEPLOYMENT: Optional[str] = Field(default=None, description="Azure deployment name")
    AZURE_OPENAI_API_VERSION: str = Field(default="2024-02-01", description="Azure API version")

    # Cost estimation
    EMBEDDING_TOKENS_PER_CALL: int = Field(default=500, description="Assumed tokens per embedding call", ge=0)
    EMBEDDING_TOKEN_RATIO: float = Field(default=0.25, description="Billable share of assumed tokens", ge=0.0)
    EMBEDDING_COST_PER_1K_TOKENS: float = Field(default=0.0001, description="USD per 1,000 tokens", ge=0.0)

    # Vector index settings
    VECTOR_INDEX_METHOD: str = Field(default="ivfflat", description="ANN index method (ivfflat, hnsw)")
    VECTOR_DISTANCE_METRIC: str = Field(default="cosine", description="Distance metric (cosine, l2, inner_product)")
    VECTOR_IVFFLAT_LISTS: int = Field(default=100, description="IVFFlat list count", ge=1)
    VECTOR_HNSW_M: int = Field(default=16, description="HNSW connections per layer", ge=2)
    VECTOR_HNSW_EF_CONSTRUCTION: int = Field(default=64, description="HNSW construction effort", ge=4)
    VECTOR_BATCH_SIZE: int = Field(default=1000, description="Records per insert chunk", ge=1)
    VECTOR_SCAN_CHUNK_SIZE: int = Field(default=5000, description="Rows per scan chunk", ge=1)
    VECTOR_DEADLOCK_RETRIES: int = Field(default=2, description="Extra attempts on deadlock", ge=0)
    VECTOR_SIMILARITY_THRESHOLD: float = Field(default=0.5, description="Default similarity cut", ge=0.0, le=1.0)
    VECTOR_CALIBRATION_PERCENTILE: float = Field(
        default=25.0,
        description="Percentile of top-k scores used as calibrated threshold",
        ge=0.0,
        le=100.0
    )
    USE_PGVECTOR: bool = Field(default=True, description="Use pgvector when the database supports it")

    # Index health thresholds
    INDEX_CORRUPTION_CRITICAL_RATIO: float = Field(default=0.15, description="Critical corruption ratio", gt=0.0, le=1.0)
    INDEX_CORRUPTION_WARNING_RATIO: float = Field(default=0.05, description="Degraded corruption ratio", gt=0.0, le=1.0)
    INDEX_ORPHAN_WARNING_RATIO: float = Field(default=0.10, description="Degraded orphan ratio", gt=0.0, le=1.0)

    # Memory guard for batch operations
    MEMORY_WARNING_PERCENT: float = Field(default=80.0, description="System memory warning level", gt=0.0, le=100.0)
    MEMORY_CRITICAL_PERCENT: float = Field(default=90.0, description="System memory level that blocks batches", gt=0.0, le=100.0)
    MEMORY_PROCESS_LIMIT_MB: Optional[float] = Field(default=None, description="Process RSS ceiling in MB", gt=0.0)

    # Hybrid search weights
    HYBRID_TEXT_WEIGHT: float = Field(default=0.7, description="Full-text score weight", ge=0.0, le=1.0)
    HYBRID_VECTOR_WEIGHT: float = Field(default=0.3, description="Vector score weight", ge=0.0, le=1.0)

    # Degradation reporting
    STATUS_DEGRADED_ISSUE_COUNT: int = Field(
        default=3,
        description="Concurrent issue count that escalates a status report to degraded",
        ge=2
    )
    DEGRADATION_ACTIVE_WINDOW: int = Field(default=900, description="Seconds an issue stays active", ge=1)
    QUERY_PERFORMANCE_THRESHOLD_MS: int = Field(default=5000, description="Slow query threshold", ge=1)

    # Circuit breaker
    CIRCUIT_BREAKER_FAILURE_THRESHOLD: int = Field(default=5, description="Failures before opening", ge=1)
    CIRCUIT_BREAKER_RESET_TIMEOUT: float = Field(default=60.0, description="Seconds before half-open", gt=0)

    # Logging settings
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_FORMAT: str = Field(default="json", description="Log format (json, text)")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="forbid",  # Fail on unknown .env entries
        validate_default=True,
        use_enum_values=True
    )

    @validator("DATABASE_URL")
    def validate_database_url(cls, v):
        """Validate connection URL scheme."""
        if v and not v.startswith(("postgresql://", "postgres://", "postgresql+psycopg2://", "sqlite://")):
            raise ValueError("Database URL must be a PostgreSQL or SQLite connection string")
        return v

    @validator("CACHE_BACKEND")
    def validate_cache_backend(cls, v):
        if v not in ("memory", "database", "tiered"):
            raise ValueError(f"Unknown cache backend: {v}")
        return v

    @validator("CACHE_CLEANUP_THRESHOLD")
    def validate_cleanup_threshold(cls, v):
        if not 0.0 < v <= 1.0:
            raise ValueError("Cleanup threshold must be in (0, 1]")
        return v

    @validator("EMBEDDING_PROVIDER")
    def validate_provider(cls, v):
        if v not in ("openai", "azure_openai", "local"):
            raise ValueError(f"Unknown embedding provider: {v}")
        return v

    @validator("EMBEDDING_DIMENSION")
    def validate_embedding_dimension(cls, v, values):
        """Ensure model dimension fits under the hard cap."""
        cap = values.get("EMBEDDING_MAX_DIMENSIONS", 16384)
        if v > cap:
            raise ValueError(f"Embedding dimension ({v}) exceeds maximum ({cap})")
        return v

    @validator("VECTOR_INDEX_METHOD")
    def validate_index_method(cls, v):
        if v not in ("ivfflat", "hnsw"):
            raise ValueError(f"Unsupported index method: {v}")
        return v

    @validator("VECTOR_DISTANCE_METRIC")
    def validate_distance_metric(cls, v):
        if v not in ("cosine", "l2", "inner_product"):
            raise ValueError(f"Unsupported distance metric: {v}")
        return v

    @validator("INDEX_CORRUPTION_WARNING_RATIO")
    def validate_corruption_ratios(cls, v, values):
        """Ensure warning ratio sits below the critical ratio."""
        critical = values.get("INDEX_CORRUPTION_CRITICAL_RATIO", 0.15)
        if v >= critical:
            raise ValueError(f"Warning ratio ({v}) must be below critical ratio ({critical})")
        return v

    @validator("HYBRID_VECTOR_WEIGHT")
    def validate_hybrid_weights(cls, v, values):
        """Ensure hybrid weights sum to one."""
        text_weight = values.get("HYBRID_TEXT_WEIGHT", 0.7)
        if abs(text_weight + v - 1.0) > 1e-6:
            raise ValueError(f"Hybrid weights must sum to 1.0 (got {text_weight} + {v})")
        return v

    def validate_embedding_health(self) -> Dict[str, Any]:
        """
        Centralized embedding provider configuration check.
        Used by startup validation and the management API health endpoint.
        """
        if self.EMBEDDING_PROVIDER == "openai":
            has_key = bool(self.OPENAI_API_KEY)
        elif self.EMBEDDING_PROVIDER == "azure_openai":
            has_key = bool(self.AZURE_OPENAI_API_KEY and self.AZURE_OPENAI_ENDPOINT)
        else:
            has_key = True

        return {
            "status": "healthy" if has_key else "unhealthy",
            "provider": self.EMBEDDING_PROVIDER,
            "model": self.EMBEDDING_MODEL,
            "api_key_configured": has_key,
            "message": "Embedding provider is configured" if has_key else "Embedding provider credentials not configured"
        }

    def validate_critical_startup_config(self) -> None:
        """
        Validates critical configuration at startup.
        Raises ConfigurationError if validation fails.
        """
        from vector_resilience.core.exceptions import ConfigurationError

        if self.CACHE_BACKEND in ("database", "tiered") and not self.DATABASE_URL:
            raise ConfigurationError(
                f"DATABASE_URL is required for the '{self.CACHE_BACKEND}' cache backend",
                field="DATABASE_URL"
            )

        embedding_health = self.validate_embedding_health()
        if embedding_health["status"] != "healthy":
            raise ConfigurationError(
                f"Credentials are required for the '{self.EMBEDDING_PROVIDER}' embedding provider",
                field="EMBEDDING_PROVIDER"
            )

    @staticmethod
    def create_health_response(
        service_name: str,
        is_healthy: bool,
        details: Dict[str, Any],
        message: Optional[str] = None
    ) -> Dict[str, Any]:
        """Standardized health check response factory."""
        status = "healthy" if is_healthy else "unhealthy"
        default_message = f"{service_name} is {'operational' if is_healthy else 'experiencing issues'}"

        return {
            "status": status,
            "message": message or default_message,
            "details": details
        }


def load_settings() -> Settings:
    """
    Load and validate settings.
    Fails fast if configuration is invalid.
    """
    try:
        settings = Settings()
        return settings
    except ValidationError as e:
        print("Configuration Error - Invalid settings detected:")
        for error in e.errors():
            field = " -> ".join(str(x) for x in error["loc"])
            msg = error["msg"]
            print(f"  - {field}: {msg}")
        print("\nPlease check your .env file and environment variables")
        sys.exit(1)


# ============================================================================
# CONFIGURATION ACCESS PATTERNS
# ============================================================================

class ConfigAccessor:
    """
    Centralized configuration accessor.
    Provides grouped, typed access to configuration values.
    """

    def __init__(self, settings_instance: Settings):
        self._settings = settings_instance

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def database_config(self) -> Dict[str, Any]:
        """Get database configuration."""
        return {
            "url": self._settings.DATABASE_URL,
            "pool_size": self._settings.DB_POOL_SIZE,
            "max_overflow": self._settings.DB_MAX_OVERFLOW,
            "echo": self._settings.DEBUG
        }

    @property
    def cache_config(self) -> Dict[str, Any]:
        """Get in-process cache configuration."""
        return {
            "enabled": self._settings.CACHE_ENABLED,
            "backend": self._settings.CACHE_BACKEND,
            "default_ttl": self._settings.CACHE_DEFAULT_TTL,
            "max_entries": self._settings.CACHE_MAX_ENTRIES,
            "cleanup_threshold": self._settings.CACHE_CLEANUP_THRESHOLD,
            "max_dimensions": self._settings.EMBEDDING_MAX_DIMENSIONS
        }

    @property
    def persistent_cache_config(self) -> Dict[str, Any]:
        """Get persistent cache configuration."""
        return {
            "table_name": self._settings.PERSISTENT_CACHE_TABLE,
            "default_ttl": self._settings.PERSISTENT_CACHE_DEFAULT_TTL,
            "max_entries": self._settings.PERSISTENT_CACHE_MAX_ENTRIES,
            "cleanup_probability": self._settings.PERSISTENT_CACHE_CLEANUP_PROBABILITY,
            "cleanup_threshold": self._settings.CACHE_CLEANUP_THRESHOLD,
            "enable_compression": self._settings.PERSISTENT_CACHE_COMPRESSION,
            "max_dimensions": self._settings.EMBEDDING_MAX_DIMENSIONS
        }

    @property
    def embedding_config(self) -> Dict[str, Any]:
        """Get embedding provider configuration."""
        return {
            "provider": self._settings.EMBEDDING_PROVIDER,
            "model": self._settings.EMBEDDING_MODEL,
            "dimension": self._settings.EMBEDDING_DIMENSION,
            "timeout": self._settings.EMBEDDING_TIMEOUT,
            "requests_per_minute": self._settings.EMBEDDING_REQUESTS_PER_MINUTE,
            "max_batch_size": self._settings.EMBEDDING_PROVIDER_MAX_BATCH,
            "openai_api_key": self._settings.OPENAI_API_KEY,
            "azure_api_key": self._settings.AZURE_OPENAI_API_KEY,
            "azure_endpoint": self._settings.AZURE_OPENAI_ENDPOINT,
            "azure_deployment": self._settings.AZURE_OPENAI_DEPLOYMENT,
            "azure_api_version": self._settings.AZURE_OPENAI_API_VERSION
        }

    @property
    def resilience_config(self) -> Dict[str, Any]:
        """Get retry, batching and circuit breaker configuration."""
        return {
            "max_retries": self._settings.EMBEDDING_MAX_RETRIES,
            "base_retry_delay_ms": self._settings.EMBEDDING_RETRY_BASE_DELAY_MS,
            "batch_size": self._settings.EMBEDDING_BATCH_SIZE,
            "individual_fallback": self._settings.EMBEDDING_INDIVIDUAL_FALLBACK,
            "individual_delay_ms": self._settings.EMBEDDING_INDIVIDUAL_DELAY_MS,
            "failure_threshold": self._settings.EMBEDDING_FAILURE_THRESHOLD,
            "timeout": self._settings.EMBEDDING_TIMEOUT,
            "breaker_failure_threshold": self._settings.CIRCUIT_BREAKER_FAILURE_THRESHOLD,
            "breaker_reset_timeout": self._settings.CIRCUIT_BREAKER_RESET_TIMEOUT,
            "requests_per_minute": self._settings.EMBEDDING_REQUESTS_PER_MINUTE
        }

    @property
    def vector_index_config(self) -> Dict[str, Any]:
        """Get vector index configuration."""
        return {
            "dimension": self._settings.EMBEDDING_DIMENSION,
            "method": self._settings.VECTOR_INDEX_METHOD,
            "metric": self._settings.VECTOR_DISTANCE_METRIC,
            "ivfflat_lists": self._settings.VECTOR_IVFFLAT_LISTS,
            "hnsw_m": self._settings.VECTOR_HNSW_M,
            "hnsw_ef_construction": self._settings.VECTOR_HNSW_EF_CONSTRUCTION,
            "batch_size": self._settings.VECTOR_BATCH_SIZE,
            "scan_chunk_size": self._settings.VECTOR_SCAN_CHUNK_SIZE,
            "deadlock_retries": self._settings.VECTOR_DEADLOCK_RETRIES,
            "similarity_threshold": self._settings.VECTOR_SIMILARITY_THRESHOLD,
            "calibration_percentile": self._settings.VECTOR_CALIBRATION_PERCENTILE,
            "use_pgvector": self._settings.USE_PGVECTOR,
            "failure_threshold": self._settings.EMBEDDING_FAILURE_THRESHOLD
        }

    @property
    def health_config(self) -> Dict[str, Any]:
        """Get index health thresholds."""
        return {
            "corruption_critical_ratio": self._settings.INDEX_CORRUPTION_CRITICAL_RATIO,
            "corruption_warning_ratio": self._settings.INDEX_CORRUPTION_WARNING_RATIO,
            "orphan_warning_ratio": self._settings.INDEX_ORPHAN_WARNING_RATIO
        }

    @property
    def memory_config(self) -> Dict[str, Any]:
        """Get memory guard thresholds."""
        return {
            "warning_percent": self._settings.MEMORY_WARNING_PERCENT,
            "critical_percent": self._settings.MEMORY_CRITICAL_PERCENT,
            "process_limit_mb": self._settings.MEMORY_PROCESS_LIMIT_MB
        }

    @property
    def hybrid_config(self) -> Dict[str, Any]:
        """Get hybrid search weights."""
        return {
            "text_weight": self._settings.HYBRID_TEXT_WEIGHT,
            "vector_weight": self._settings.HYBRID_VECTOR_WEIGHT
        }

    @property
    def reporting_config(self) -> Dict[str, Any]:
        """Get degradation reporting configuration."""
        return {
            "degraded_issue_count": self._settings.STATUS_DEGRADED_ISSUE_COUNT,
            "active_window": self._settings.DEGRADATION_ACTIVE_WINDOW,
            "query_performance_threshold_ms": self._settings.QUERY_PERFORMANCE_THRESHOLD_MS
        }

    @property
    def cost_config(self) -> Dict[str, Any]:
        """Get cost estimation assumptions."""
        return {
            "tokens_per_call": self._settings.EMBEDDING_TOKENS_PER_CALL,
            "token_ratio": self._settings.EMBEDDING_TOKEN_RATIO,
            "cost_per_1k_tokens": self._settings.EMBEDDING_COST_PER_1K_TOKENS
        }

    @property
    def api_config(self) -> Dict[str, Any]:
        """Get management API configuration."""
        return {
            "host": self._settings.API_HOST,
            "port": self._settings.API_PORT,
            "prefix": self._settings.API_PREFIX,
            "debug": self._settings.DEBUG
        }


# Create a singleton instance
settings = load_settings()

# Create configuration accessor
config = ConfigAccessor(settings)
