"""Database failure classification and bounded retry for status writes."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# SQLSTATE -> (retryable, category, reason)
_SQLSTATE_TABLE: dict[str, tuple[bool, str, str]] = {
  "40001": (True, "serialization_conflict", "Serialization failure - transaction conflict"),
  "40P01": (True, "deadlock", "Deadlock detected"),
  "55P03": (False, "lock_timeout", "Lock not available (NOWAIT)"),
  "57014": (False, "query_timeout", "Query canceled (timeout)"),
  "57P01": (True, "connectivity_error", "Server shutting down (admin shutdown)"),
  "08000": (True, "connectivity_error", "Connection exception"),
  "08003": (True, "connectivity_error", "Connection does not exist"),
  "08006": (True, "connectivity_error", "Connection failure"),
}

_SQLSTATE_CLASS_TABLE: dict[str, tuple[bool, str, str]] = {
  "23": (False, "integrity_error", "Integrity violation"),
  "42": (False, "schema_error", "Schema/SQL error (undefined table/column, syntax error)"),
  "28": (False, "permission_error", "Authentication/permission error"),
  "08": (True, "connectivity_error", "Connection exception"),
}

_CONNECTIVITY_HINTS = ("connection", "timeout", "reset", "network", "broken pipe", "lost connection", "could not connect")


@dataclass(frozen=True)
class DBFailureClassification:
  """Classification result for a database failure."""

  retryable: bool
  reason: str
  sqlstate: str | None
  category: str


def _extract_sqlstate(exc: BaseException) -> str | None:
  """Extract the Postgres SQLSTATE from a SQLAlchemy exception."""
  if isinstance(exc, DBAPIError) and exc.orig is not None:
    for attr in ("pgcode", "sqlstate"):
      value = getattr(exc.orig, attr, None)
      if value:
        return str(value)
  return None


def classify_db_failure(exc: BaseException) -> DBFailureClassification:
  """Classify a database failure as retryable (transient) or permanent.

  SQLSTATE is the primary signal; exception type and message patterns are the fallback.
  """
  sqlstate = _extract_sqlstate(exc)
  if sqlstate:
    entry = _SQLSTATE_TABLE.get(sqlstate) or _SQLSTATE_CLASS_TABLE.get(sqlstate[:2])
    if entry is not None:
      retryable, category, reason = entry
      return DBFailureClassification(retryable=retryable, reason=reason, sqlstate=sqlstate, category=category)

  if isinstance(exc, IntegrityError):
    return DBFailureClassification(retryable=False, reason="Integrity constraint violation (detected by exception type)", sqlstate=sqlstate, category="integrity_error")

  if isinstance(exc, (OperationalError, InterfaceError)):
    error_msg = str(exc).lower()
    if any(pattern in error_msg for pattern in _CONNECTIVITY_HINTS):
      return DBFailureClassification(retryable=True, reason="Transient connection/network error", sqlstate=sqlstate, category="connectivity_error")
    # Unknown operational error - be conservative
    return DBFailureClassification(retryable=False, reason="Operational error (unknown cause)", sqlstate=sqlstate, category="operational_error_unknown")

  if isinstance(exc, (ConnectionError, TimeoutError)):
    return DBFailureClassification(retryable=True, reason=f"Transient connection error: {type(exc).__name__}", sqlstate=sqlstate, category="connectivity_error")

  return DBFailureClassification(retryable=False, reason=f"Unknown error type: {type(exc).__name__}", sqlstate=sqlstate, category="unknown_error")


async def execute_with_retry(*, operation_name: str, func: Callable[[], Awaitable[T]], max_attempts: int = 3, initial_backoff_ms: int = 100, max_backoff_ms: int = 2000, jitter: bool = True) -> T:
  """Run an idempotent database operation, retrying transient failures with exponential backoff."""
  attempt = 0
  while True:
    attempt += 1
    try:
      result = await func()
    except Exception as exc:
      classification = classify_db_failure(exc)
      logger.warning(
        "DB operation failed: operation=%s, attempt=%d/%d, category=%s, sqlstate=%s, retryable=%s, reason=%s",
        operation_name,
        attempt,
        max_attempts,
        classification.category,
        classification.sqlstate or "none",
        classification.retryable,
        classification.reason,
        exc_info=(not classification.retryable),
      )
      if not classification.retryable or attempt >= max_attempts:
        raise

      backoff_ms = min(initial_backoff_ms * (2 ** (attempt - 1)), max_backoff_ms)
      if jitter:
        # +/-25% jitter to avoid thundering herd
        jitter_range = backoff_ms * 0.25
        backoff_ms += random.uniform(-jitter_range, jitter_range)

      logger.info("Retrying DB operation after backoff: operation=%s, attempt=%d/%d, backoff_ms=%.1f", operation_name, attempt, max_attempts, backoff_ms)
      await asyncio.sleep(backoff_ms / 1000.0)
      continue

    if attempt > 1:
      logger.info("DB operation succeeded after retry: operation=%s, attempt=%d/%d", operation_name, attempt, max_attempts)
    return result
