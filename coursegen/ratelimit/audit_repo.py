"""Durable rate-limit audit records used by operational tooling."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Protocol


@dataclass(frozen=True)
class RateLimitAuditRecord:
  """Mirror of rate-limit events for one (provider, model) pair."""

  provider: str
  model_id: str
  is_active: bool
  timeout_until: datetime
  hit_count: int
  first_hit_at: datetime
  last_hit_at: datetime
  cleared_at: datetime | None = None


class RateLimitAuditRepository(Protocol):
  """Repository contract for the rate-limit audit trail."""

  async def record_hit(self, *, provider: str, model_id: str, timeout_until: datetime, hit_at: datetime) -> RateLimitAuditRecord:
    """Upsert the record for the pair, incrementing the hit counter."""

  async def mark_inactive(self, *, provider: str, model_id: str, cleared_at: datetime) -> int:
    """Deactivate the active record for the pair; returns rows changed."""

  async def mark_all_inactive(self, *, cleared_at: datetime) -> int:
    """Deactivate every active record."""

  async def mark_expired(self, *, now: datetime) -> int:
    """Deactivate active records whose deadline has passed, clearing them at that deadline."""

  async def list_recent(self, *, limit: int = 50) -> list[RateLimitAuditRecord]:
    """Return records ordered by most recent hit."""


class InMemoryRateLimitAuditRepository(RateLimitAuditRepository):
  """Dict-backed audit repository for the memory storage mode and tests."""

  def __init__(self) -> None:
    self.records: dict[tuple[str, str], RateLimitAuditRecord] = {}

  async def record_hit(self, *, provider: str, model_id: str, timeout_until: datetime, hit_at: datetime) -> RateLimitAuditRecord:
    existing = self.records.get((provider, model_id))
    if existing is None:
      record = RateLimitAuditRecord(provider=provider, model_id=model_id, is_active=True, timeout_until=timeout_until, hit_count=1, first_hit_at=hit_at, last_hit_at=hit_at)
    else:
      record = replace(existing, is_active=True, timeout_until=timeout_until, hit_count=existing.hit_count + 1, last_hit_at=hit_at, cleared_at=None)
    self.records[(provider, model_id)] = record
    return record

  async def mark_inactive(self, *, provider: str, model_id: str, cleared_at: datetime) -> int:
    existing = self.records.get((provider, model_id))
    if existing is None or not existing.is_active:
      return 0
    self.records[(provider, model_id)] = replace(existing, is_active=False, cleared_at=cleared_at)
    return 1

  async def mark_all_inactive(self, *, cleared_at: datetime) -> int:
    changed = 0
    for key, record in list(self.records.items()):
      if record.is_active:
        self.records[key] = replace(record, is_active=False, cleared_at=cleared_at)
        changed += 1
    return changed

  async def mark_expired(self, *, now: datetime) -> int:
    changed = 0
    for key, record in list(self.records.items()):
      if record.is_active and record.timeout_until <= now:
        self.records[key] = replace(record, is_active=False, cleared_at=record.timeout_until)
        changed += 1
    return changed

  async def list_recent(self, *, limit: int = 50) -> list[RateLimitAuditRecord]:
    ordered = sorted(self.records.values(), key=lambda record: record.last_hit_at, reverse=True)
    return ordered[:limit]
