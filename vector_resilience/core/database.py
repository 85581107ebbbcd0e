"""
Database connection abstraction layer.
Provides synchronous SQLAlchemy engine access with circuit breaker
protection and health checks for the persistent cache and vector tables.
"""
import re
from contextlib import contextmanager
from datetime import datetime
from typing import Optional, Dict, Any, Iterator, Sequence

from sqlalchemy import Table, create_engine, text, inspect
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DBAPIError, DisconnectionError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from vector_resilience.core.config import settings, config
from vector_resilience.core.logging import get_logger
from vector_resilience.core.exceptions import ConfigurationError, DatabaseConnectionError
from vector_resilience.core.common import calculate_content_hash
from vector_resilience.core.reliability import CircuitBreaker, CircuitBreakerConfig

logger = get_logger(__name__)


LOCK_ERROR_PATTERN = re.compile(
    r"deadlock|lock wait timeout|could not serialize|database is locked|serialization failure",
    re.IGNORECASE
)
CONNECTION_SQLSTATE_CLASS = "08"
CONNECTION_ERROR_PATTERN = re.compile(
    r"could not connect|connection refused|connection reset|connection timed out|"
    r"server closed the connection|terminating connection|lost connection|"
    r"could not translate host name|no route to host|host.*unreachable|unable to open database",
    re.IGNORECASE
)


def is_transient_lock_error(error: BaseException) -> bool:
    """True for deadlock and lock contention errors worth retrying."""
    return isinstance(error, DBAPIError) and bool(LOCK_ERROR_PATTERN.search(str(error)))


def _sqlstate(error: DBAPIError) -> Optional[str]:
    orig = error.orig
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    return str(code) if code else None


def is_connection_error(error: BaseException) -> bool:
    """
    True for errors meaning the database could not be reached.

    Resource failures such as "out of memory" also arrive as
    OperationalError; they are not connectivity and never count against
    the circuit breaker. SQLSTATE class 08 is authoritative when the
    driver reports one, the message is checked otherwise.
    """
    if isinstance(error, (DisconnectionError, InterfaceError)):
        return True
    if not isinstance(error, DBAPIError):
        return False
    if error.connection_invalidated:
        return True
    code = _sqlstate(error)
    if code is not None:
        return code.startswith(CONNECTION_SQLSTATE_CLASS)
    return isinstance(error, OperationalError) and bool(CONNECTION_ERROR_PATTERN.search(str(error)))


_UPSERT_INSERTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}


def build_upsert(dialect_name: str, table: Table, key_columns: Sequence[str], overrides: Optional[Dict[str, Any]] = None):
    """
    INSERT ... ON CONFLICT (keys) DO UPDATE for dialects that support it.

    Non-key columns take the incoming values unless ``overrides`` says
    otherwise. Returns None for other dialects; callers then delete and
    insert inside one transaction.
    """
    insert = _UPSERT_INSERTS.get(dialect_name)
    if insert is None:
        return None

    stmt = insert(table)
    set_ = {
        column.name: stmt.excluded[column.name]
        for column in table.columns
        if column.name not in key_columns
    }
    set_.update(overrides or {})
    return stmt.on_conflict_do_update(index_elements=list(key_columns), set_=set_)


class DatabaseManager:
    """
    Owns the SQLAlchemy engine for one database.

    Collaborators reach the engine through :attr:`engine`; transactional
    work goes through :meth:`begin` so connectivity failures are counted by
    the circuit breaker.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        echo: bool = False,
        breaker_config: Optional[CircuitBreakerConfig] = None
    ):
        database_config = config.database_config
        self._url = url or database_config["url"]
        self._echo = echo
        self._pool_size = database_config["pool_size"]
        self._max_overflow = database_config["max_overflow"]
        self._engine: Optional[Engine] = None
        self._initialized = False

        self._circuit_breaker = CircuitBreaker(
            "database",
            breaker_config or CircuitBreakerConfig(
                failure_threshold=settings.CIRCUIT_BREAKER_FAILURE_THRESHOLD,
                reset_timeout=settings.CIRCUIT_BREAKER_RESET_TIMEOUT,
                half_open_max_calls=3
            )
        )
        self._connection_stats = {
            "transactions": 0,
            "failed_transactions": 0,
            "last_connection_test": None
        }

    def initialize(self) -> None:
        """Create the engine and verify connectivity."""
        if self._initialized:
            return

        if not self._url:
            raise ConfigurationError(
                "Database URL not configured. Please set DATABASE_URL in your environment.",
                field="DATABASE_URL"
            )

        try:
            if self._url.startswith("sqlite"):
                self._engine = create_engine(
                    self._url,
                    echo=self._echo,
                    connect_args={"check_same_thread": False},
                    poolclass=StaticPool if self._url in ("sqlite://", "sqlite:///:memory:") else None,
                )
            else:
                self._engine = create_engine(
                    self._url,
                    echo=self._echo,
                    pool_size=self._pool_size,
                    max_overflow=self._max_overflow,
                    pool_timeout=30,
                    pool_recycle=3600,
                    pool_pre_ping=True,
                )
        except SQLAlchemyError as e:
            raise ConfigurationError(f"Database initialization failed: {str(e)}") from e

        self._initialized = True
        self._test_connection()
        logger.info("database_initialized", dialect=self.dialect_name)

    def _test_connection(self) -> None:
        with self.begin() as conn:
            conn.execute(text("SELECT 1"))
        self._connection_stats["last_connection_test"] = datetime.now().isoformat()

    @property
    def engine(self) -> Engine:
        """The underlying engine; initializes lazily."""
        if not self._initialized:
            self.initialize()
        return self._engine

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    @property
    def is_postgresql(self) -> bool:
        return self.dialect_name == "postgresql"

    @property
    def fingerprint(self) -> str:
        """Stable identifier of the connection target (credentials excluded)."""
        url = self.engine.url
        return calculate_content_hash(
            f"{url.get_backend_name()}://{url.host or ''}:{url.port or ''}/{url.database or ''}".encode("utf-8")
        )

    @contextmanager
    def begin(self) -> Iterator[Connection]:
        """
        Transactional connection: commits on success, rolls back on error.

        Raises:
            DatabaseConnectionError: recent connectivity failures opened the breaker
        """
        engine = self.engine
        if not self._circuit_breaker.is_available():
            logger.error("database_circuit_breaker_blocked")
            raise DatabaseConnectionError(
                "Database circuit breaker is open",
                context={"service_name": "database", "circuit_breaker": self._circuit_breaker.state.value}
            )

        self._connection_stats["transactions"] += 1
        try:
            with engine.begin() as conn:
                yield conn
        except SQLAlchemyError as e:
            self._connection_stats["failed_transactions"] += 1
            if is_connection_error(e):
                self._circuit_breaker.record_failure()
            raise
        self._circuit_breaker.record_success()

    @contextmanager
    def autocommit(self) -> Iterator[Connection]:
        """Connection outside a transaction, for VACUUM and similar statements."""
        with self.engine.connect() as conn:
            yield conn.execution_options(isolation_level="AUTOCOMMIT")

    def table_exists(self, table_name: str) -> bool:
        return inspect(self.engine).has_table(table_name)

    def health_check(self) -> Dict[str, Any]:
        """Connectivity health in the common health response shape."""
        try:
            self._test_connection()
        except (SQLAlchemyError, DatabaseConnectionError, ConfigurationError) as e:
            return settings.create_health_response(
                "Database",
                False,
                {"error": str(e), "circuit_breaker": self._circuit_breaker.get_status()}
            )
        return settings.create_health_response(
            "Database",
            True,
            {
                "dialect": self.dialect_name,
                "circuit_breaker": self._circuit_breaker.get_status(),
                **self._connection_stats
            }
        )

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
        self._initialized = False
        logger.info("database_closed")


_database_manager: Optional[DatabaseManager] = None


def get_database_manager() -> DatabaseManager:
    """Process-wide manager for the configured DATABASE_URL."""
    global _database_manager
    if _database_manager is None:
        _database_manager = DatabaseManager(echo=config.database_config["echo"])
    return _database_manager
