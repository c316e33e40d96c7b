"""
Database Module - Async MySQL/MariaDB access for the member record store.

Provides async database operations with:
- Native async connection pooling via asyncmy
- Circuit breaker pattern for fault tolerance
- Bounded retry on timeouts and pool exhaustion
- Query logging that never exposes parameter values
- A process-wide shutdown flag checked before every query

API Overview:
- initialize_db_pool() / close_db_pool(): pool lifecycle tied to the bot
- run_db_query(): execute a single query with fetch options
- set_shutting_down() / is_shutting_down(): stop accepting new store work
"""

import asyncio
import contextlib
import re
import time
from typing import Optional, Any

from asyncmy import pool  # type: ignore
from asyncmy.errors import (  # type: ignore
    Error as AsyncMyError,
    DataError,
    IntegrityError,
    OperationalError,
    ProgrammingError,
)

from . import config
from .core.logger import ComponentLogger

# #################################################################################### #
#                            Database Pool Initialization
# #################################################################################### #
db_pool: Optional[pool.Pool] = None
_logger = ComponentLogger("database")
_shutting_down = False

async def initialize_db_pool() -> bool:
    """
    Initialize async MySQL/MariaDB connection pool with configuration settings.

    Returns:
        True if pool initialization succeeded, False otherwise
    """
    global db_pool
    try:
        db_pool = await pool.create_pool(
            user=config.get_db_user(),
            password=config.get_db_password(),
            host=config.get_db_host(),
            port=config.get_db_port(),
            db=config.get_db_name(),
            minsize=1,
            maxsize=config.get_db_pool_size(),
            connect_timeout=config.get_db_timeout(),
            pool_recycle=3600,
            echo=config.get_debug(),
            charset="utf8mb4",
            autocommit=True,
        )
        _logger.info("pool_initialized",
            pool_size=config.get_db_pool_size(),
            timeout=config.get_db_timeout()
        )
        return True
    except AsyncMyError as e:
        _logger.critical("pool_init_failed",
            error_type=type(e).__name__,
            error_msg=str(e)
        )
        return False
    except OSError as e:
        _logger.critical("pool_init_unreachable",
            error_type=type(e).__name__,
            error_msg=str(e)
        )
        return False

async def close_db_pool():
    """
    Close the database pool and all connections.
    """
    global db_pool
    if db_pool:
        db_pool.close()
        await db_pool.wait_closed()
        db_pool = None
        _logger.info("pool_closed")

def set_shutting_down(value: bool = True) -> None:
    """Mark the process as shutting down so no new store query is issued."""
    global _shutting_down
    _shutting_down = value
    if value:
        _logger.info("store_shutdown_flag_set")

def is_shutting_down() -> bool:
    return _shutting_down

# #################################################################################### #
#                            Query Logging Utilities
# #################################################################################### #
def _mask_query(query: str, max_length: int) -> str:
    safe_query = re.sub(r"VALUES\s*\([^)]+\)", "VALUES(...)", query)
    safe_query = re.sub(r"IN\s*\([^)]+\)", "IN(...)", safe_query)
    safe_query = re.sub(r"'[^']*'", "'?'", safe_query)
    safe_query = re.sub(r"\s+", " ", safe_query).strip()
    return safe_query[:max_length] + "..." if len(safe_query) > max_length else safe_query

def safe_log_query(query: str, params: tuple):
    """
    Log query execution safely without exposing sensitive data.
    """
    _logger.debug("query_executing",
        param_count=len(params) if params else 0,
        query_preview=_mask_query(query, 100)
    )

def safe_log_error(error: Exception, query: str):
    """
    Log query errors safely without exposing sensitive data.
    """
    _logger.error("query_failed",
        error_type=type(error).__name__,
        query_preview=_mask_query(query, 50)
    )

# #################################################################################### #
#                            Circuit Breaker Pattern
# #################################################################################### #
class CircuitBreaker:
    """Circuit breaker to prevent cascading failures when database is unavailable."""

    def __init__(self, failure_threshold: Optional[int] = None, timeout: int = 60):
        """
        Initialize circuit breaker with failure threshold and timeout.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Timeout in seconds before attempting to close circuit
        """
        self.failure_threshold = failure_threshold or 5
        self.timeout = timeout
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "CLOSED"

    def is_open(self) -> bool:
        """
        Check if circuit breaker is open (blocking requests).
        """
        if self.state == "OPEN":
            if (
                self.last_failure_time
                and time.monotonic() - self.last_failure_time > self.timeout
            ):
                self.state = "HALF_OPEN"
                _logger.info("circuit_breaker_half_open")
                return False
            return True
        return False

    def record_success(self):
        if self.state == "HALF_OPEN":
            _logger.info("circuit_breaker_closed", reason="db_recovered")
        self.failure_count = 0
        self.state = "CLOSED"

    def record_failure(self):
        self.failure_count += 1
        self.last_failure_time = time.monotonic()
        if self.failure_count >= self.failure_threshold:
            if self.state != "OPEN":
                _logger.warning("circuit_breaker_open",
                    failure_count=self.failure_count,
                    reason="db_temporarily_unavailable"
                )
            self.state = "OPEN"

# #################################################################################### #
#                            Database Connection Manager
# #################################################################################### #
class DatabaseManager:
    """Manages async database connections with native pooling and timeout handling."""

    def __init__(self):
        self.active_connections = 0
        self.waiting_queue = 0

    @contextlib.asynccontextmanager
    async def get_connection_with_timeout(self):
        """
        Get async database connection with timeout and proper resource management.

        Raises:
            asyncio.TimeoutError: If connection acquisition times out
            DBQueryError: If pool is not initialized
        """
        if not db_pool:
            raise DBQueryError("Database pool not initialized")

        self.waiting_queue += 1
        try:
            conn = await asyncio.wait_for(
                db_pool.acquire(), timeout=config.get_db_timeout()
            )
            try:
                self.active_connections += 1
                yield conn
            finally:
                self.active_connections -= 1
                await db_pool.release(conn)
        finally:
            self.waiting_queue -= 1

class DBQueryError(Exception):
    """
    Custom exception for database query errors.
    """
    pass

db_circuit_breaker = CircuitBreaker()
db_manager = DatabaseManager()

def configure_circuit_breaker() -> None:
    """Apply the configured failure threshold to the global circuit breaker."""
    db_circuit_breaker.failure_threshold = config.get_db_circuit_breaker_threshold()

# #################################################################################### #
#                            Main Database Query Function
# #################################################################################### #
async def run_db_query(
    query: str,
    params: tuple = (),
    commit: bool = False,
    fetch_one: bool = False,
    fetch_all: bool = False,
) -> Optional[Any]:
    """
    Execute database query with resilience patterns and proper error handling.

    Args:
        query: SQL query string
        params: Query parameters tuple (default: empty)
        commit: Whether to commit the transaction (default: False)
        fetch_one: Whether to fetch one row (default: False)
        fetch_all: Whether to fetch all rows (default: False)

    Returns:
        Query result or None depending on fetch parameters

    Raises:
        DBQueryError: If query execution fails or the process is shutting down
    """
    if _shutting_down:
        raise DBQueryError("Database access refused during shutdown")

    if db_circuit_breaker.is_open():
        _logger.warning("query_blocked_circuit_open")
        raise DBQueryError("Database temporarily unavailable (circuit breaker open)")

    safe_log_query(query, params)

    async def _execute():
        async with db_manager.get_connection_with_timeout() as conn:
            async with conn.cursor() as cursor:
                try:
                    await cursor.execute(query, params)

                    result = None
                    if commit:
                        await conn.commit()
                    elif fetch_one:
                        result = await cursor.fetchone()
                    elif fetch_all:
                        result = await cursor.fetchall()

                    db_circuit_breaker.record_success()
                    return result

                except (DataError, IntegrityError) as e:
                    safe_log_error(e, query)
                    raise DBQueryError(f"Database constraint error: {type(e).__name__}")
                except OperationalError as e:
                    safe_log_error(e, query)
                    db_circuit_breaker.record_failure()
                    raise DBQueryError("Database connection error")
                except ProgrammingError as e:
                    safe_log_error(e, query)
                    raise DBQueryError(f"Database query error: {type(e).__name__}")
                except AsyncMyError as e:
                    safe_log_error(e, query)
                    db_circuit_breaker.record_failure()
                    raise DBQueryError(f"Database error: {type(e).__name__}")

    max_attempts = 3
    for attempt in range(max_attempts):
        try:
            return await asyncio.wait_for(_execute(), timeout=config.get_db_timeout())
        except asyncio.TimeoutError:
            _logger.warning("query_timeout",
                attempt=attempt + 1,
                max_attempts=max_attempts
            )
            if attempt == max_attempts - 1:
                db_circuit_breaker.record_failure()
                raise DBQueryError("Query timeout after multiple attempts")
            await asyncio.sleep(0.5 * (attempt + 1))
        except DBQueryError:
            raise
        except OSError as e:
            safe_log_error(e, query)
            db_circuit_breaker.record_failure()
            if attempt == max_attempts - 1:
                raise DBQueryError(f"Database unreachable: {type(e).__name__}")
            await asyncio.sleep(0.5 * (attempt + 1))
    return None
