"""Course entity store contract and an in-memory implementation.

The pipeline reads and writes only the fields it needs: generation status, outline
structure, article content, quizzes and the final exam question bank.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Literal, Protocol

from coursegen.pipeline.contracts import CourseOutline
from coursegen.utils.slug import slugify

GenerationStatus = Literal["PENDING", "IN_PROGRESS", "COMPLETED", "FAILED"]
QuizType = Literal["article", "section", "final_exam"]


@dataclass
class CourseRecord:
  course_id: str
  title: str
  slug: str
  description: str = ""
  level: str = "beginner"
  generation_status: GenerationStatus = "PENDING"
  generation_error: str | None = None
  generation_started_at: datetime | None = None
  generation_completed_at: datetime | None = None


@dataclass
class ArticleRecord:
  article_id: str
  section_id: str
  course_id: str
  title: str
  slug: str
  description: str = ""
  order_index: int = 0
  content: str | None = None
  is_generated: bool = False
  generated_at: datetime | None = None
  enriched_at: datetime | None = None


@dataclass
class SectionRecord:
  section_id: str
  course_id: str
  title: str
  slug: str
  description: str = ""
  order_index: int = 0
  articles: list[ArticleRecord] = field(default_factory=list)


@dataclass(frozen=True)
class NewQuestion:
  question_type: str
  question: str
  options: list[str]
  correct_answer: str
  explanation: str | None = None
  points: int = 1
  order_index: int = 0


@dataclass(frozen=True)
class NewQuiz:
  quiz_type: QuizType
  owner_id: str
  course_id: str
  title: str
  description: str
  pass_mark: int
  questions: list[NewQuestion]
  time_limit_minutes: int | None = None
  cooldown_hours: int | None = None


@dataclass(frozen=True)
class QuizRecord:
  quiz_id: str
  quiz_type: QuizType
  owner_id: str
  course_id: str
  title: str
  description: str
  pass_mark: int
  questions: list[NewQuestion]
  created_at: datetime
  time_limit_minutes: int | None = None
  cooldown_hours: int | None = None


class CourseStore(Protocol):
  """CRUD surface the pipeline consumes from the course entity store."""

  async def create_course(self, *, title: str, description: str = "", level: str = "beginner", course_id: str | None = None) -> CourseRecord:
    """Create a PENDING course."""

  async def get_course(self, course_id: str) -> CourseRecord | None:
    """Fetch a course."""

  async def mark_in_progress(self, course_id: str, *, now: datetime) -> bool:
    """Set IN_PROGRESS unless the course is FAILED or missing; returns whether it was set."""

  async def set_status(self, course_id: str, status: GenerationStatus, *, error: str | None = None, now: datetime) -> None:
    """Write status and error; COMPLETED stamps the completion time."""

  async def update_course_details(self, course_id: str, *, title: str | None, description: str | None) -> None:
    """Apply outline-generated title/description."""

  async def save_outline(self, course_id: str, outline: CourseOutline, *, replace_existing: bool) -> list[ArticleRecord]:
    """Persist sections/articles; reuses existing structure unless replace_existing."""

  async def list_sections(self, course_id: str) -> list[SectionRecord]:
    """Sections with their articles, in order."""

  async def get_section(self, section_id: str) -> SectionRecord | None:
    """Fetch a section with its articles."""

  async def get_article(self, article_id: str) -> ArticleRecord | None:
    """Fetch an article with its course id."""

  async def save_article_content(self, article_id: str, *, content: str, generated_at: datetime) -> None:
    """Store generated markdown and mark the article generated."""

  async def save_article_enrichment(self, article_id: str, *, content: str, enriched_at: datetime) -> None:
    """Store enriched markdown and stamp enrichment."""

  async def find_quiz(self, quiz_type: QuizType, owner_id: str) -> QuizRecord | None:
    """Existence check for the quiz idempotency guard."""

  async def insert_quiz_if_absent(self, quiz: NewQuiz, *, now: datetime) -> tuple[QuizRecord, bool]:
    """Insert unless one exists for (type, owner); returns (quiz, created)."""

  async def replace_quiz(self, quiz: NewQuiz, *, now: datetime) -> QuizRecord:
    """Atomically delete any quiz for (type, owner) and insert the new one."""

  async def count_final_exam_questions(self, course_id: str) -> int:
    """Size of the final exam question bank."""

  async def store_final_exam_bank(self, course_id: str, questions: list[NewQuestion], *, replace_existing: bool) -> int:
    """Insert the bank (replacing when asked); returns rows stored, 0 when skipped."""


class InMemoryCourseStore(CourseStore):
  """Process-local course store for the memory storage mode and tests."""

  def __init__(self) -> None:
    self.courses: dict[str, CourseRecord] = {}
    self.sections: dict[str, SectionRecord] = {}
    self.articles: dict[str, ArticleRecord] = {}
    self.quizzes: dict[tuple[str, str], QuizRecord] = {}
    self.final_exam_bank: dict[str, list[NewQuestion]] = {}
    self.status_history: list[tuple[str, GenerationStatus, str | None]] = []
    self._lock = asyncio.Lock()

  async def create_course(self, *, title: str, description: str = "", level: str = "beginner", course_id: str | None = None) -> CourseRecord:
    course = CourseRecord(course_id=course_id or str(uuid.uuid4()), title=title, slug=slugify(title), description=description, level=level)
    self.courses[course.course_id] = course
    return replace(course)

  async def get_course(self, course_id: str) -> CourseRecord | None:
    course = self.courses.get(course_id)
    return replace(course) if course else None

  async def mark_in_progress(self, course_id: str, *, now: datetime) -> bool:
    course = self.courses.get(course_id)
    if course is None or course.generation_status == "FAILED":
      return False
    if course.generation_status != "IN_PROGRESS":
      course.generation_status = "IN_PROGRESS"
      course.generation_error = None
      course.generation_started_at = course.generation_started_at or now
      self.status_history.append((course_id, "IN_PROGRESS", None))
    return True

  async def set_status(self, course_id: str, status: GenerationStatus, *, error: str | None = None, now: datetime) -> None:
    course = self.courses.get(course_id)
    if course is None:
      raise LookupError(f"Course not found: {course_id}")
    course.generation_status = status
    course.generation_error = error
    if status == "COMPLETED":
      course.generation_completed_at = now
    if status == "PENDING":
      course.generation_started_at = None
      course.generation_completed_at = None
    self.status_history.append((course_id, status, error))

  async def update_course_details(self, course_id: str, *, title: str | None, description: str | None) -> None:
    course = self.courses.get(course_id)
    if course is None:
      raise LookupError(f"Course not found: {course_id}")
    if title:
      course.title = title
    if description:
      course.description = description

  async def save_outline(self, course_id: str, outline: CourseOutline, *, replace_existing: bool) -> list[ArticleRecord]:
    async with self._lock:
      course = self.courses.get(course_id)
      if course is None:
        raise LookupError(f"Course not found: {course_id}")

      existing = [section for section in self.sections.values() if section.course_id == course_id]
      if existing and not replace_existing:
        return self._articles_for(course_id)

      for section in existing:
        for article in section.articles:
          self.articles.pop(article.article_id, None)
          self.quizzes.pop(("article", article.article_id), None)
        self.quizzes.pop(("section", section.section_id), None)
        del self.sections[section.section_id]

      for section_index, planned_section in enumerate(outline.sections):
        section = SectionRecord(section_id=str(uuid.uuid4()), course_id=course_id, title=planned_section.title, slug=f"{course.slug}-{slugify(planned_section.title)}", description=planned_section.description, order_index=section_index)
        for article_index, planned_article in enumerate(planned_section.articles):
          article = ArticleRecord(
            article_id=str(uuid.uuid4()),
            section_id=section.section_id,
            course_id=course_id,
            title=planned_article.title,
            slug=f"{course.slug}-{slugify(planned_article.title)}",
            description=planned_article.description,
            order_index=article_index,
          )
          section.articles.append(article)
          self.articles[article.article_id] = article
        self.sections[section.section_id] = section

      return self._articles_for(course_id)

  def _articles_for(self, course_id: str) -> list[ArticleRecord]:
    ordered: list[ArticleRecord] = []
    for section in sorted((item for item in self.sections.values() if item.course_id == course_id), key=lambda item: item.order_index):
      ordered.extend(replace(article) for article in sorted(section.articles, key=lambda item: item.order_index))
    return ordered

  async def list_sections(self, course_id: str) -> list[SectionRecord]:
    sections = sorted((item for item in self.sections.values() if item.course_id == course_id), key=lambda item: item.order_index)
    return [replace(section, articles=[replace(article) for article in section.articles]) for section in sections]

  async def get_section(self, section_id: str) -> SectionRecord | None:
    section = self.sections.get(section_id)
    if section is None:
      return None
    return replace(section, articles=[replace(article) for article in section.articles])

  async def get_article(self, article_id: str) -> ArticleRecord | None:
    article = self.articles.get(article_id)
    return replace(article) if article else None

  async def save_article_content(self, article_id: str, *, content: str, generated_at: datetime) -> None:
    article = self._require_article(article_id)
    article.content = content
    article.is_generated = True
    article.generated_at = generated_at
    article.enriched_at = None

  async def save_article_enrichment(self, article_id: str, *, content: str, enriched_at: datetime) -> None:
    article = self._require_article(article_id)
    article.content = content
    article.enriched_at = enriched_at

  def _require_article(self, article_id: str) -> ArticleRecord:
    article = self.articles.get(article_id)
    if article is None:
      raise LookupError(f"Article not found: {article_id}")
    return article

  async def find_quiz(self, quiz_type: QuizType, owner_id: str) -> QuizRecord | None:
    return self.quizzes.get((quiz_type, owner_id))

  async def insert_quiz_if_absent(self, quiz: NewQuiz, *, now: datetime) -> tuple[QuizRecord, bool]:
    async with self._lock:
      existing = self.quizzes.get((quiz.quiz_type, quiz.owner_id))
      if existing is not None:
        return existing, False
      record = self._to_record(quiz, now)
      self.quizzes[(quiz.quiz_type, quiz.owner_id)] = record
      return record, True

  async def replace_quiz(self, quiz: NewQuiz, *, now: datetime) -> QuizRecord:
    async with self._lock:
      record = self._to_record(quiz, now)
      self.quizzes[(quiz.quiz_type, quiz.owner_id)] = record
      return record

  def _to_record(self, quiz: NewQuiz, now: datetime) -> QuizRecord:
    return QuizRecord(
      quiz_id=str(uuid.uuid4()),
      quiz_type=quiz.quiz_type,
      owner_id=quiz.owner_id,
      course_id=quiz.course_id,
      title=quiz.title,
      description=quiz.description,
      pass_mark=quiz.pass_mark,
      questions=list(quiz.questions),
      created_at=now,
      time_limit_minutes=quiz.time_limit_minutes,
      cooldown_hours=quiz.cooldown_hours,
    )

  async def count_final_exam_questions(self, course_id: str) -> int:
    return len(self.final_exam_bank.get(course_id, []))

  async def store_final_exam_bank(self, course_id: str, questions: list[NewQuestion], *, replace_existing: bool) -> int:
    async with self._lock:
      if self.final_exam_bank.get(course_id) and not replace_existing:
        return 0
      self.final_exam_bank[course_id] = list(questions)
      return len(questions)
