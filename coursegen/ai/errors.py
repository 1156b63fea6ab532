"""Error taxonomy and rate-limit classification for upstream generation calls."""

from __future__ import annotations

import math
import re
from collections.abc import Iterable, Mapping
from typing import Any, Literal

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from sqlalchemy.exc import SQLAlchemyError

from coursegen.utils.db_retry import classify_db_failure

FailureCategory = Literal["rate_limit", "infrastructure", "malformed_output", "ownership", "timeout", "generation"]

# HTTP-equivalent codes upstream providers use for throttling and capacity problems.
RATE_LIMIT_STATUS_CODES: frozenset[int] = frozenset({429, 503, 520, 521, 522, 524, 529})

# Phrases every provider uses for throttling.
_COMMON_PATTERNS: tuple[str, ...] = ("rate limit exceeded", "rate_limit_exceeded", "too many requests", "quota exceeded")

# Provider-specific phrases, matched case-insensitively against the error message.
RATE_LIMIT_PATTERNS: dict[str, tuple[str, ...]] = {
  "openai": ("insufficient_quota", "rate limit reached", "requests per min", "tokens per min"),
  "anthropic": ("rate_limit_error", "overloaded_error", "overloaded"),
  "google": ("resource_exhausted", "resource exhausted", "quotaexceeded", "ratelimitexceeded"),
  "openrouter": ("rate-limited upstream", "temporarily rate-limited", "no capacity"),
}

_PROVIDER_ALIASES: dict[str, str] = {"gemini": "google", "vertex": "google", "vertexai": "google", "claude": "anthropic", "azure": "openai", "azure-openai": "openai"}

_RETRY_PHRASE = re.compile(
  r"(?:retry|try again)[\s_-]*(?:after|in)\s*:?\s*(\d+(?:\.\d+)?)\s*(ms\b|milliseconds?|s\b|secs?\b|seconds?|mins?\b|minutes?|m\b)?",
  re.IGNORECASE,
)


class PipelineError(RuntimeError):
  """Base class for classified pipeline failures."""

  category: FailureCategory = "generation"


class RateLimitCondition(PipelineError):
  """Upstream is throttling (provider, model); retry once the window passes."""

  category: FailureCategory = "rate_limit"

  def __init__(self, provider: str, model_id: str, retry_after: int | None = None, message: str | None = None) -> None:
    self.provider = provider
    self.model_id = model_id
    self.retry_after = retry_after
    detail = message or f"Rate limit active for {provider}:{model_id}"
    if retry_after is not None:
      detail = f"{detail} (retry after {retry_after}s)"
    super().__init__(detail)


class TransientInfrastructureError(PipelineError):
  """A store, queue or network dependency was unreachable."""

  category: FailureCategory = "infrastructure"


class MalformedOutputError(PipelineError):
  """Model output could not be recovered into the expected structure."""

  category: FailureCategory = "malformed_output"

  def __init__(self, message: str, *, raw_excerpt: str | None = None) -> None:
    self.raw_excerpt = raw_excerpt
    super().__init__(message)


class OwnershipError(PipelineError):
  """A payload references an entity that does not belong where expected."""

  category: FailureCategory = "ownership"


class GenerationTimeoutError(PipelineError):
  """The generation call exceeded its time bound."""

  category: FailureCategory = "timeout"


class GenerationError(PipelineError):
  """The generator could not produce output and retrying will not help."""


def normalize_provider(provider: str | None) -> str:
  key = (provider or "").strip().lower()
  return _PROVIDER_ALIASES.get(key, key)


def patterns_for(provider: str | None) -> tuple[str, ...]:
  """Return the common patterns plus any provider-specific ones."""
  return _COMMON_PATTERNS + RATE_LIMIT_PATTERNS.get(normalize_provider(provider), ())


def _coerce_status(value: Any) -> int | None:
  if isinstance(value, bool):
    return None
  if isinstance(value, int):
    return value
  if isinstance(value, str) and value.strip().isdigit():
    return int(value.strip())
  return None


def _status_codes(err: BaseException) -> set[int]:
  """Collect HTTP-like status codes from the error and its attached response."""
  codes: set[int] = set()
  for attr in ("status_code", "status", "code", "http_status"):
    code = _coerce_status(getattr(err, attr, None))
    if code is not None:
      codes.add(code)

  response = getattr(err, "response", None)
  if response is not None:
    code = _coerce_status(getattr(response, "status_code", None))
    if code is not None:
      codes.add(code)

  return codes


def _error_text(err: BaseException) -> str:
  """Message plus any string error code, lowercased."""
  parts = [str(err)]
  for attr in ("code", "type"):
    value = getattr(err, attr, None)
    if isinstance(value, str):
      parts.append(value)
  return " ".join(parts).lower()


def _match_hint(message: str, hints: Iterable[str]) -> bool:
  """Return True when any hint appears in the message."""
  return any(hint.lower() in message for hint in hints)


def is_rate_limit_error(err: BaseException, provider: str | None) -> bool:
  """Return True when the error signals throttling or capacity exhaustion."""
  if isinstance(err, RateLimitCondition):
    return True

  if _status_codes(err) & RATE_LIMIT_STATUS_CODES:
    return True

  return _match_hint(_error_text(err), patterns_for(provider))


def _headers_of(err: BaseException) -> Mapping[str, Any] | None:
  headers = getattr(err, "headers", None)
  if headers is None:
    response = getattr(err, "response", None)
    headers = getattr(response, "headers", None) if response is not None else None
  if headers is None or not hasattr(headers, "items"):
    return None
  return headers


def _header_retry_after(headers: Mapping[str, Any]) -> int | None:
  for key, value in headers.items():
    if str(key).lower() != "retry-after":
      continue
    raw = str(value).strip()
    if raw.isdigit():
      return int(raw)
    return None
  return None


def extract_retry_after(err: BaseException) -> int | None:
  """Return the suggested retry delay in whole seconds, or None when no hint exists."""
  if isinstance(err, RateLimitCondition) and err.retry_after is not None:
    return err.retry_after

  headers = _headers_of(err)
  if headers is not None:
    hinted = _header_retry_after(headers)
    if hinted is not None:
      return hinted

  match = _RETRY_PHRASE.search(str(err))
  if match is None:
    return None

  amount = float(match.group(1))
  unit = (match.group(2) or "s").lower()
  if unit == "ms" or unit.startswith("milli"):
    amount = amount / 1000.0
  elif unit.startswith("m"):
    amount = amount * 60
  return max(1, math.ceil(amount))


def classify_failure(exc: BaseException) -> FailureCategory:
  """Map any exception onto the pipeline failure taxonomy."""
  if isinstance(exc, PipelineError):
    return exc.category

  if isinstance(exc, (RedisConnectionError, RedisTimeoutError)):
    return "infrastructure"

  if isinstance(exc, SQLAlchemyError):
    return "infrastructure" if classify_db_failure(exc).retryable else "generation"

  if isinstance(exc, (ConnectionError, TimeoutError)):
    return "infrastructure"

  return "generation"


def is_retryable_category(category: FailureCategory) -> bool:
  return category in {"rate_limit", "infrastructure"}


def failure_message(exc: BaseException) -> str:
  """Render the entity-facing error as `<category>: <message>`."""
  detail = str(exc).strip() or type(exc).__name__
  return f"{classify_failure(exc)}: {detail}"
