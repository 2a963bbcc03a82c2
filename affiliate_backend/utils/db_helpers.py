"""
Database helper utilities.

These functions wrap Supabase calls with retry logic and classify the errors
PostgREST surfaces, either as ``APIError`` codes or as plain exception
messages.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

# Postgres / PostgREST error codes
_TRANSIENT_CODES = {"57014", "57P01", "08000", "08003", "08006", "PGRST000", "PGRST001", "PGRST002"}
_MISSING_TABLE_CODES = {"42P01", "PGRST205"}
_MISSING_COLUMN_CODES = {"42703", "PGRST204"}

_TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "temporarily unavailable",
    "connection refused",
    "connection reset",
    "server disconnected",
    "name or service not known",
    "bad gateway",
    "gateway timeout",
    "service unavailable",
    "502",
    "503",
    "504",
)

_RETRY_BASE_DELAY_S = 0.15
_RETRY_MAX_DELAY_S = 2.0


def _error_code(exc: Exception) -> str:
    return str(getattr(exc, "code", "") or "").strip().upper()


# ==================== ERROR DETECTION ====================
def is_transient_db_error(exc: Exception) -> bool:
    """Check if an exception is a transient database error that may be retried."""
    if _error_code(exc) in _TRANSIENT_CODES:
        return True
    s = str(exc or "").lower()
    return any(m in s for m in _TRANSIENT_MARKERS)


def is_missing_table_or_schema_error(exc: Exception, table_name: str) -> bool:
    """Check if an exception indicates a missing table or schema."""
    t = (table_name or "").lower()
    if not t:
        return False
    s = str(exc or "").lower()
    if _error_code(exc) in _MISSING_TABLE_CODES:
        return t in s
    markers = ("does not exist", "undefined table", "could not find the table", "schema cache")
    return t in s and any(m in s for m in markers)


def is_missing_column_error(exc: Exception) -> bool:
    """Check if a write referenced a column the table does not have yet."""
    if _error_code(exc) in _MISSING_COLUMN_CODES:
        return True
    s = str(exc or "").lower()
    return "column" in s and ("does not exist" in s or "could not find" in s)


def is_supabase_not_configured_error(exc: Exception) -> bool:
    """Check if an exception indicates Supabase is not configured."""
    s = str(exc or "").lower()
    return "supabase não configurado" in s or "supabase nao configurado" in s


# ==================== RETRY LOGIC ====================
def db_call_with_retry(op_name: str, fn: Callable[[], Any], max_attempts: int = 4) -> Any:
    """
    Execute a database call with retry logic for transient errors.

    Inside a running event loop the call is attempted once: blocking sleeps
    there would stall every other request.

    Args:
        op_name: Name of the operation (for logging)
        fn: Function to execute
        max_attempts: Maximum number of attempts outside an event loop

    Returns:
        Result of the function call

    Raises:
        Exception: If all attempts fail or a non-transient error occurs
    """
    try:
        asyncio.get_running_loop()
        attempts = 1
    except RuntimeError:
        attempts = max(1, max_attempts)

    last_exc: Optional[Exception] = None
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except Exception as e:
            last_exc = e
            if attempt >= attempts or not is_transient_db_error(e):
                raise
            delay = min(_RETRY_MAX_DELAY_S, _RETRY_BASE_DELAY_S * (2 ** (attempt - 1)))
            logger.warning(f"db.retry op={op_name} attempt={attempt}/{attempts} code={_error_code(e) or '-'} error={e}")
            time.sleep(delay)
    raise last_exc or Exception(f"{op_name} falhou")
