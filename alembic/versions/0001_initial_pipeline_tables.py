"""Create pipeline job, rate-limit audit and course tables.

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None

_LIVE_JOB_STATES = sa.text("idempotency_key IS NOT NULL AND state IN ('waiting', 'delayed', 'active')")


def upgrade() -> None:
  """Upgrade schema."""
  op.create_table(
    "pipeline_jobs",
    sa.Column("seq", sa.BigInteger(), autoincrement=True, nullable=False),
    sa.Column("job_id", sa.String(), nullable=False),
    sa.Column("job_type", sa.String(), nullable=False),
    sa.Column("workflow_id", sa.String(), nullable=False),
    sa.Column("payload_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    sa.Column("state", sa.String(), nullable=False),
    sa.Column("attempts_made", sa.Integer(), nullable=False),
    sa.Column("max_attempts", sa.Integer(), nullable=False),
    sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("locked_until", sa.DateTime(timezone=True), nullable=True),
    sa.Column("last_error", sa.Text(), nullable=True),
    sa.Column("result_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column("idempotency_key", sa.String(), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
    sa.PrimaryKeyConstraint("seq"),
    sa.UniqueConstraint("job_id"),
  )
  op.create_index(op.f("ix_pipeline_jobs_job_type"), "pipeline_jobs", ["job_type"], unique=False)
  op.create_index(op.f("ix_pipeline_jobs_workflow_id"), "pipeline_jobs", ["workflow_id"], unique=False)
  op.create_index("ix_pipeline_jobs_ready", "pipeline_jobs", ["state", "next_run_at", "seq"], unique=False)
  op.create_index("ux_pipeline_jobs_live_idempotency", "pipeline_jobs", ["idempotency_key"], unique=True, postgresql_where=_LIVE_JOB_STATES)

  op.create_table(
    "ai_rate_limits",
    sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
    sa.Column("provider", sa.String(), nullable=False),
    sa.Column("model_id", sa.String(), nullable=False),
    sa.Column("is_active", sa.Boolean(), nullable=False),
    sa.Column("timeout_until", sa.DateTime(timezone=True), nullable=False),
    sa.Column("hit_count", sa.Integer(), nullable=False),
    sa.Column("first_hit_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("last_hit_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("cleared_at", sa.DateTime(timezone=True), nullable=True),
    sa.PrimaryKeyConstraint("id"),
    sa.UniqueConstraint("provider", "model_id", name="ux_ai_rate_limits_provider_model"),
  )
  op.create_index("ix_ai_rate_limits_active", "ai_rate_limits", ["is_active"], unique=False)
  op.create_index(op.f("ix_ai_rate_limits_last_hit_at"), "ai_rate_limits", ["last_hit_at"], unique=False)

  op.create_table(
    "courses",
    sa.Column("course_id", sa.String(), nullable=False),
    sa.Column("title", sa.String(), nullable=False),
    sa.Column("slug", sa.String(), nullable=False),
    sa.Column("description", sa.Text(), nullable=False),
    sa.Column("level", sa.String(), nullable=False),
    sa.Column("generation_status", sa.String(), nullable=False),
    sa.Column("generation_error", sa.Text(), nullable=True),
    sa.Column("generation_started_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("generation_completed_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.PrimaryKeyConstraint("course_id"),
  )
  op.create_index(op.f("ix_courses_slug"), "courses", ["slug"], unique=False)
  op.create_index(op.f("ix_courses_generation_status"), "courses", ["generation_status"], unique=False)

  op.create_table(
    "course_sections",
    sa.Column("section_id", sa.String(), nullable=False),
    sa.Column("course_id", sa.String(), nullable=False),
    sa.Column("title", sa.String(), nullable=False),
    sa.Column("slug", sa.String(), nullable=False),
    sa.Column("description", sa.Text(), nullable=False),
    sa.Column("order_index", sa.Integer(), nullable=False),
    sa.ForeignKeyConstraint(["course_id"], ["courses.course_id"], ondelete="CASCADE"),
    sa.PrimaryKeyConstraint("section_id"),
  )
  op.create_index(op.f("ix_course_sections_course_id"), "course_sections", ["course_id"], unique=False)

  op.create_table(
    "course_articles",
    sa.Column("article_id", sa.String(), nullable=False),
    sa.Column("section_id", sa.String(), nullable=False),
    sa.Column("title", sa.String(), nullable=False),
    sa.Column("slug", sa.String(), nullable=False),
    sa.Column("description", sa.Text(), nullable=False),
    sa.Column("order_index", sa.Integer(), nullable=False),
    sa.Column("content", sa.Text(), nullable=True),
    sa.Column("is_generated", sa.Boolean(), nullable=False),
    sa.Column("generated_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("enriched_at", sa.DateTime(timezone=True), nullable=True),
    sa.ForeignKeyConstraint(["section_id"], ["course_sections.section_id"], ondelete="CASCADE"),
    sa.PrimaryKeyConstraint("article_id"),
  )
  op.create_index(op.f("ix_course_articles_section_id"), "course_articles", ["section_id"], unique=False)

  op.create_table(
    "course_quizzes",
    sa.Column("quiz_id", sa.String(), nullable=False),
    sa.Column("quiz_type", sa.String(), nullable=False),
    sa.Column("owner_id", sa.String(), nullable=False),
    sa.Column("course_id", sa.String(), nullable=False),
    sa.Column("title", sa.String(), nullable=False),
    sa.Column("description", sa.Text(), nullable=False),
    sa.Column("pass_mark", sa.Integer(), nullable=False),
    sa.Column("time_limit_minutes", sa.Integer(), nullable=True),
    sa.Column("cooldown_hours", sa.Integer(), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.ForeignKeyConstraint(["course_id"], ["courses.course_id"], ondelete="CASCADE"),
    sa.PrimaryKeyConstraint("quiz_id"),
    sa.UniqueConstraint("quiz_type", "owner_id", name="ux_course_quizzes_type_owner"),
  )
  op.create_index(op.f("ix_course_quizzes_owner_id"), "course_quizzes", ["owner_id"], unique=False)
  op.create_index(op.f("ix_course_quizzes_course_id"), "course_quizzes", ["course_id"], unique=False)

  op.create_table(
    "course_quiz_questions",
    sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
    sa.Column("quiz_id", sa.String(), nullable=False),
    sa.Column("question_type", sa.String(), nullable=False),
    sa.Column("question", sa.Text(), nullable=False),
    sa.Column("options_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    sa.Column("correct_answer", sa.Text(), nullable=False),
    sa.Column("explanation", sa.Text(), nullable=True),
    sa.Column("points", sa.Integer(), nullable=False),
    sa.Column("order_index", sa.Integer(), nullable=False),
    sa.ForeignKeyConstraint(["quiz_id"], ["course_quizzes.quiz_id"], ondelete="CASCADE"),
    sa.PrimaryKeyConstraint("id"),
  )
  op.create_index(op.f("ix_course_quiz_questions_quiz_id"), "course_quiz_questions", ["quiz_id"], unique=False)

  op.create_table(
    "final_exam_questions",
    sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
    sa.Column("course_id", sa.String(), nullable=False),
    sa.Column("question_type", sa.String(), nullable=False),
    sa.Column("question", sa.Text(), nullable=False),
    sa.Column("options_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    sa.Column("correct_answer", sa.Text(), nullable=False),
    sa.Column("explanation", sa.Text(), nullable=True),
    sa.Column("points", sa.Integer(), nullable=False),
    sa.Column("order_index", sa.Integer(), nullable=False),
    sa.ForeignKeyConstraint(["course_id"], ["courses.course_id"], ondelete="CASCADE"),
    sa.PrimaryKeyConstraint("id"),
  )
  op.create_index(op.f("ix_final_exam_questions_course_id"), "final_exam_questions", ["course_id"], unique=False)


def downgrade() -> None:
  """Downgrade schema."""
  op.drop_index(op.f("ix_final_exam_questions_course_id"), table_name="final_exam_questions")
  op.drop_table("final_exam_questions")
  op.drop_index(op.f("ix_course_quiz_questions_quiz_id"), table_name="course_quiz_questions")
  op.drop_table("course_quiz_questions")
  op.drop_index(op.f("ix_course_quizzes_course_id"), table_name="course_quizzes")
  op.drop_index(op.f("ix_course_quizzes_owner_id"), table_name="course_quizzes")
  op.drop_table("course_quizzes")
  op.drop_index(op.f("ix_course_articles_section_id"), table_name="course_articles")
  op.drop_table("course_articles")
  op.drop_index(op.f("ix_course_sections_course_id"), table_name="course_sections")
  op.drop_table("course_sections")
  op.drop_index(op.f("ix_courses_generation_status"), table_name="courses")
  op.drop_index(op.f("ix_courses_slug"), table_name="courses")
  op.drop_table("courses")
  op.drop_index(op.f("ix_ai_rate_limits_last_hit_at"), table_name="ai_rate_limits")
  op.drop_index("ix_ai_rate_limits_active", table_name="ai_rate_limits")
  op.drop_table("ai_rate_limits")
  op.drop_index("ux_pipeline_jobs_live_idempotency", table_name="pipeline_jobs")
  op.drop_index("ix_pipeline_jobs_ready", table_name="pipeline_jobs")
  op.drop_index(op.f("ix_pipeline_jobs_workflow_id"), table_name="pipeline_jobs")
  op.drop_index(op.f("ix_pipeline_jobs_job_type"), table_name="pipeline_jobs")
  op.drop_table("pipeline_jobs")
