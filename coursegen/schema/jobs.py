from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Index, Integer, String, Text, func, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from coursegen.core.database import Base


class PipelineJob(Base):
  __tablename__ = "pipeline_jobs"
  __table_args__ = (
    Index("ix_pipeline_jobs_ready", "state", "next_run_at", "seq"),
    Index("ux_pipeline_jobs_live_idempotency", "idempotency_key", unique=True, postgresql_where=text("idempotency_key IS NOT NULL AND state IN ('waiting', 'delayed', 'active')")),
  )

  seq: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
  job_id: Mapped[str] = mapped_column(String, nullable=False, unique=True)
  job_type: Mapped[str] = mapped_column(String, nullable=False, index=True)
  workflow_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  payload_json: Mapped[dict] = mapped_column(JSONB, nullable=False)
  state: Mapped[str] = mapped_column(String, nullable=False)
  attempts_made: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
  next_run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
  locked_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
  result_json: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
  idempotency_key: Mapped[str | None] = mapped_column(String, nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
