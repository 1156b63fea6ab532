from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from coursegen.core.database import Base


class AIRateLimit(Base):
  __tablename__ = "ai_rate_limits"
  __table_args__ = (UniqueConstraint("provider", "model_id", name="ux_ai_rate_limits_provider_model"), Index("ix_ai_rate_limits_active", "is_active"))

  id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
  provider: Mapped[str] = mapped_column(String, nullable=False)
  model_id: Mapped[str] = mapped_column(String, nullable=False)
  is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
  timeout_until: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
  hit_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
  first_hit_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
  last_hit_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
  cleared_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
