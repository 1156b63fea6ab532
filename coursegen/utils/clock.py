"""Time helpers shared by the queue and rate-limit store."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], datetime]


def utc_now() -> datetime:
  return datetime.now(UTC)


def to_iso(value: datetime) -> str:
  return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_iso(raw: str) -> datetime:
  """Parse an ISO-8601 timestamp, treating naive values as UTC."""
  parsed = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
  if parsed.tzinfo is None:
    parsed = parsed.replace(tzinfo=UTC)
  return parsed
