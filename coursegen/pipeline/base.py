"""Shared collaborators and lookups for pipeline stage handlers."""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Any

from coursegen.ai.errors import OwnershipError
from coursegen.ai.gateway import GenerationGateway
from coursegen.jobs.queue import JobQueue
from coursegen.pipeline.contracts import QuestionDraft
from coursegen.storage.courses_repo import ArticleRecord, CourseRecord, CourseStore, NewQuestion, SectionRecord
from coursegen.utils.clock import Clock, utc_now


@dataclass(frozen=True)
class QuizSettings:
  article_questions: tuple[int, int] = (3, 5)
  section_questions: tuple[int, int] = (5, 8)
  final_exam_questions: tuple[int, int] = (15, 25)
  final_bank_questions: int = 30
  final_bank_essays: int = 3
  pass_mark: int = 65
  final_exam_cooldown_hours: int = 24


@dataclass
class StageDeps:
  """Everything a stage handler touches, injected by the runtime."""

  courses: CourseStore
  queue: JobQueue
  gateway: GenerationGateway
  quiz: QuizSettings = field(default_factory=QuizSettings)
  clock: Clock = utc_now
  rng: random.Random = field(default_factory=random.Random)


async def require_course(courses: CourseStore, course_id: str) -> CourseRecord:
  course = await courses.get_course(course_id)
  if course is None:
    raise OwnershipError(f"Course not found: {course_id}")
  return course


async def require_article(courses: CourseStore, article_id: str, workflow_id: str) -> ArticleRecord:
  """Load an article and confirm it belongs to the workflow's course."""
  article = await courses.get_article(article_id)
  if article is None:
    raise OwnershipError(f"Article not found: {article_id}")
  if article.course_id != workflow_id:
    raise OwnershipError(f"Article {article_id} belongs to course {article.course_id}, not {workflow_id}")
  return article


async def require_section(courses: CourseStore, section_id: str, workflow_id: str) -> SectionRecord:
  section = await courses.get_section(section_id)
  if section is None:
    raise OwnershipError(f"Section not found: {section_id}")
  if section.course_id != workflow_id:
    raise OwnershipError(f"Section {section_id} belongs to course {section.course_id}, not {workflow_id}")
  return section


def article_context(course: CourseRecord, section: SectionRecord | None, article: ArticleRecord) -> dict[str, Any]:
  """Prompt hints carried in article job payloads."""
  return {
    "course_title": course.title,
    "course_description": course.description[:1000],
    "course_level": course.level,
    "section_title": section.title if section else "",
    "section_description": section.description[:1000] if section else "",
    "article_title": article.title,
    "article_description": article.description[:1000],
  }


def to_questions(drafts: list[QuestionDraft], *, start_index: int = 0) -> list[NewQuestion]:
  questions: list[NewQuestion] = []
  for offset, draft in enumerate(drafts):
    filled = draft.with_defaults()
    questions.append(
      NewQuestion(
        question_type=filled.question_type,
        question=filled.question,
        options=list(filled.options),
        correct_answer=filled.correct_answer,
        explanation=filled.explanation,
        points=filled.points,
        order_index=start_index + offset,
      )
    )
  return questions
