from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from coursegen.core.database import Base


class Course(Base):
  __tablename__ = "courses"

  course_id: Mapped[str] = mapped_column(String, primary_key=True)
  title: Mapped[str] = mapped_column(String, nullable=False)
  slug: Mapped[str] = mapped_column(String, nullable=False, index=True)
  description: Mapped[str] = mapped_column(Text, nullable=False, default="")
  level: Mapped[str] = mapped_column(String, nullable=False, default="beginner")
  generation_status: Mapped[str] = mapped_column(String, nullable=False, default="PENDING", index=True)
  generation_error: Mapped[str | None] = mapped_column(Text, nullable=True)
  generation_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  generation_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class CourseSection(Base):
  __tablename__ = "course_sections"

  section_id: Mapped[str] = mapped_column(String, primary_key=True)
  course_id: Mapped[str] = mapped_column(ForeignKey("courses.course_id", ondelete="CASCADE"), nullable=False, index=True)
  title: Mapped[str] = mapped_column(String, nullable=False)
  slug: Mapped[str] = mapped_column(String, nullable=False)
  description: Mapped[str] = mapped_column(Text, nullable=False, default="")
  order_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class CourseArticle(Base):
  __tablename__ = "course_articles"

  article_id: Mapped[str] = mapped_column(String, primary_key=True)
  section_id: Mapped[str] = mapped_column(ForeignKey("course_sections.section_id", ondelete="CASCADE"), nullable=False, index=True)
  title: Mapped[str] = mapped_column(String, nullable=False)
  slug: Mapped[str] = mapped_column(String, nullable=False)
  description: Mapped[str] = mapped_column(Text, nullable=False, default="")
  order_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  content: Mapped[str | None] = mapped_column(Text, nullable=True)
  is_generated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  generated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  enriched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class CourseQuiz(Base):
  __tablename__ = "course_quizzes"
  __table_args__ = (UniqueConstraint("quiz_type", "owner_id", name="ux_course_quizzes_type_owner"),)

  quiz_id: Mapped[str] = mapped_column(String, primary_key=True)
  quiz_type: Mapped[str] = mapped_column(String, nullable=False)
  owner_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  course_id: Mapped[str] = mapped_column(ForeignKey("courses.course_id", ondelete="CASCADE"), nullable=False, index=True)
  title: Mapped[str] = mapped_column(String, nullable=False)
  description: Mapped[str] = mapped_column(Text, nullable=False, default="")
  pass_mark: Mapped[int] = mapped_column(Integer, nullable=False)
  time_limit_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
  cooldown_hours: Mapped[int | None] = mapped_column(Integer, nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class CourseQuizQuestion(Base):
  __tablename__ = "course_quiz_questions"

  id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
  quiz_id: Mapped[str] = mapped_column(ForeignKey("course_quizzes.quiz_id", ondelete="CASCADE"), nullable=False, index=True)
  question_type: Mapped[str] = mapped_column(String, nullable=False)
  question: Mapped[str] = mapped_column(Text, nullable=False)
  options_json: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
  correct_answer: Mapped[str] = mapped_column(Text, nullable=False, default="")
  explanation: Mapped[str | None] = mapped_column(Text, nullable=True)
  points: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
  order_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class FinalExamQuestion(Base):
  __tablename__ = "final_exam_questions"

  id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
  course_id: Mapped[str] = mapped_column(ForeignKey("courses.course_id", ondelete="CASCADE"), nullable=False, index=True)
  question_type: Mapped[str] = mapped_column(String, nullable=False)
  question: Mapped[str] = mapped_column(Text, nullable=False)
  options_json: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
  correct_answer: Mapped[str] = mapped_column(Text, nullable=False, default="")
  explanation: Mapped[str | None] = mapped_column(Text, nullable=True)
  points: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
  order_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
