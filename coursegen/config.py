"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

_STORAGE_BACKENDS = {"postgres", "memory"}


@dataclass(frozen=True)
class Settings:
  """Typed settings for the course generation pipeline."""

  environment: str
  debug: bool
  log_dir: str
  log_max_bytes: int
  log_backup_count: int
  log_http_4xx: bool
  pg_dsn: str | None
  pg_connect_timeout: int
  redis_url: str
  storage_backend: str
  rate_limit_prefix: str
  rate_limit_default_seconds: int
  backoff_base_ms: int
  backoff_max_ms: int
  backoff_rate_limit_floor_ms: int
  queue_max_attempts: int
  queue_enqueue_delay_ms: int
  queue_lock_seconds: int
  queue_completed_retention_seconds: int
  queue_completed_retention_count: int
  queue_failed_retention_seconds: int
  queue_failed_retention_count: int
  worker_concurrency: int
  worker_poll_seconds: float
  worker_maintenance_seconds: float
  worker_embedded: bool
  generation_timeout_seconds: float
  ai_provider: str
  ai_model: str
  ai_base_url: str | None
  openai_api_key: str | None
  quiz_article_questions: tuple[int, int]
  quiz_section_questions: tuple[int, int]
  quiz_final_exam_questions: tuple[int, int]
  quiz_final_bank_questions: int
  quiz_final_bank_essays: int
  quiz_pass_mark: int
  quiz_final_exam_cooldown_hours: int
  admin_token: str | None


@dataclass(frozen=True)
class DatabaseSettings:
  """Typed settings for database connectivity."""

  debug: bool
  pg_dsn: str | None
  pg_connect_timeout: int


def _parse_bool(raw: str | None) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return False

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _positive_int(name: str, default: str) -> int:
  value = int(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive integer.")
  return value


def _non_negative_int(name: str, default: str) -> int:
  value = int(os.getenv(name, default))
  if value < 0:
    raise ValueError(f"{name} must be zero or a positive integer.")
  return value


def _positive_float(name: str, default: str) -> float:
  value = float(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive number.")
  return value


def _parse_range(name: str, default: str) -> tuple[int, int]:
  """Parse a `min,max` pair used for question count bounds."""
  raw = os.getenv(name, default)
  parts = [part.strip() for part in raw.split(",") if part.strip()]
  if len(parts) != 2:
    raise ValueError(f"{name} must be formatted as 'min,max'.")

  low, high = int(parts[0]), int(parts[1])
  if low <= 0 or high < low:
    raise ValueError(f"{name} must satisfy 0 < min <= max.")

  return low, high


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("COURSEGEN_ENV", "development").lower()

  # Toggle SQL echo and verbose diagnostics in non-production environments.
  debug = _parse_bool(os.getenv("COURSEGEN_DEBUG"))

  storage_backend = os.getenv("COURSEGEN_STORAGE_BACKEND", "postgres").strip().lower()
  if storage_backend not in _STORAGE_BACKENDS:
    raise ValueError(f"COURSEGEN_STORAGE_BACKEND must be one of {sorted(_STORAGE_BACKENDS)}.")

  pg_dsn = _optional_str(os.getenv("COURSEGEN_PG_DSN")) or _optional_str(os.getenv("DATABASE_URL"))
  if storage_backend == "postgres" and not pg_dsn:
    raise ValueError("COURSEGEN_PG_DSN must be set when COURSEGEN_STORAGE_BACKEND=postgres.")

  backoff_base_ms = _positive_int("COURSEGEN_BACKOFF_BASE_MS", "10000")
  backoff_max_ms = _positive_int("COURSEGEN_BACKOFF_MAX_MS", "300000")
  if backoff_max_ms < backoff_base_ms:
    raise ValueError("COURSEGEN_BACKOFF_MAX_MS must be greater than or equal to COURSEGEN_BACKOFF_BASE_MS.")

  final_bank_questions = _positive_int("COURSEGEN_QUIZ_FINAL_BANK_QUESTIONS", "30")
  final_bank_essays = _non_negative_int("COURSEGEN_QUIZ_FINAL_BANK_ESSAYS", "3")
  if final_bank_essays >= final_bank_questions:
    raise ValueError("COURSEGEN_QUIZ_FINAL_BANK_ESSAYS must be smaller than COURSEGEN_QUIZ_FINAL_BANK_QUESTIONS.")

  pass_mark = _positive_int("COURSEGEN_QUIZ_PASS_MARK", "65")
  if pass_mark > 100:
    raise ValueError("COURSEGEN_QUIZ_PASS_MARK must be between 1 and 100.")

  return Settings(
    environment=environment,
    debug=debug,
    log_dir=os.getenv("COURSEGEN_LOG_DIR", "./logs").strip(),
    log_max_bytes=_positive_int("COURSEGEN_LOG_MAX_BYTES", "5242880"),
    log_backup_count=_non_negative_int("COURSEGEN_LOG_BACKUP_COUNT", "10"),
    log_http_4xx=_parse_bool(os.getenv("COURSEGEN_LOG_HTTP_4XX")),
    pg_dsn=pg_dsn,
    pg_connect_timeout=_positive_int("COURSEGEN_PG_CONNECT_TIMEOUT", "5"),
    redis_url=os.getenv("COURSEGEN_REDIS_URL", "redis://localhost:6379/0").strip(),
    storage_backend=storage_backend,
    rate_limit_prefix=os.getenv("COURSEGEN_RATE_LIMIT_PREFIX", "ai_rate_limit:"),
    rate_limit_default_seconds=_positive_int("COURSEGEN_RATE_LIMIT_DEFAULT_SECONDS", "60"),
    backoff_base_ms=backoff_base_ms,
    backoff_max_ms=backoff_max_ms,
    backoff_rate_limit_floor_ms=_non_negative_int("COURSEGEN_BACKOFF_RATE_LIMIT_FLOOR_MS", "5000"),
    queue_max_attempts=_positive_int("COURSEGEN_QUEUE_MAX_ATTEMPTS", "5"),
    queue_enqueue_delay_ms=_non_negative_int("COURSEGEN_QUEUE_ENQUEUE_DELAY_MS", "1000"),
    queue_lock_seconds=_positive_int("COURSEGEN_QUEUE_LOCK_SECONDS", "900"),
    queue_completed_retention_seconds=_positive_int("COURSEGEN_QUEUE_COMPLETED_RETENTION_SECONDS", "604800"),
    queue_completed_retention_count=_non_negative_int("COURSEGEN_QUEUE_COMPLETED_RETENTION_COUNT", "50"),
    queue_failed_retention_seconds=_positive_int("COURSEGEN_QUEUE_FAILED_RETENTION_SECONDS", "1209600"),
    queue_failed_retention_count=_non_negative_int("COURSEGEN_QUEUE_FAILED_RETENTION_COUNT", "100"),
    worker_concurrency=_positive_int("COURSEGEN_WORKER_CONCURRENCY", "1"),
    worker_poll_seconds=_positive_float("COURSEGEN_WORKER_POLL_SECONDS", "1.0"),
    worker_maintenance_seconds=_positive_float("COURSEGEN_WORKER_MAINTENANCE_SECONDS", "30"),
    worker_embedded=_parse_bool(os.getenv("COURSEGEN_WORKER_EMBEDDED")),
    generation_timeout_seconds=_positive_float("COURSEGEN_GENERATION_TIMEOUT_SECONDS", "300"),
    ai_provider=os.getenv("COURSEGEN_AI_PROVIDER", "openai").strip().lower(),
    ai_model=os.getenv("COURSEGEN_AI_MODEL", "gpt-4o-mini").strip(),
    ai_base_url=_optional_str(os.getenv("COURSEGEN_AI_BASE_URL")),
    openai_api_key=_optional_str(os.getenv("OPENAI_API_KEY")),
    quiz_article_questions=_parse_range("COURSEGEN_QUIZ_ARTICLE_QUESTIONS", "3,5"),
    quiz_section_questions=_parse_range("COURSEGEN_QUIZ_SECTION_QUESTIONS", "5,8"),
    quiz_final_exam_questions=_parse_range("COURSEGEN_QUIZ_FINAL_EXAM_QUESTIONS", "15,25"),
    quiz_final_bank_questions=final_bank_questions,
    quiz_final_bank_essays=final_bank_essays,
    quiz_pass_mark=pass_mark,
    quiz_final_exam_cooldown_hours=_non_negative_int("COURSEGEN_QUIZ_FINAL_EXAM_COOLDOWN_HOURS", "24"),
    admin_token=_optional_str(os.getenv("COURSEGEN_ADMIN_TOKEN")),
  )


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
  """Load database settings without requiring worker or API configuration."""
  # Keep database configuration isolated so migrations don't require unrelated env vars.
  debug = _parse_bool(os.getenv("COURSEGEN_DEBUG"))
  pg_connect_timeout = _positive_int("COURSEGEN_PG_CONNECT_TIMEOUT", "5")
  pg_dsn = _optional_str(os.getenv("COURSEGEN_PG_DSN")) or _optional_str(os.getenv("DATABASE_URL"))
  return DatabaseSettings(debug=debug, pg_dsn=pg_dsn, pg_connect_timeout=pg_connect_timeout)
