"""Postgres-backed course store using SQLAlchemy."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from coursegen.core.database import SessionFactory
from coursegen.pipeline.contracts import CourseOutline
from coursegen.schema.courses import Course, CourseArticle, CourseQuiz, CourseQuizQuestion, CourseSection, FinalExamQuestion
from coursegen.storage.courses_repo import ArticleRecord, CourseRecord, CourseStore, GenerationStatus, NewQuestion, NewQuiz, QuizRecord, QuizType, SectionRecord
from coursegen.utils.db_retry import execute_with_retry
from coursegen.utils.slug import slugify


class PostgresCourseStore(CourseStore):
  """Read and write the pipeline-owned course fields in Postgres."""

  def __init__(self, session_factory: SessionFactory) -> None:
    self._session_factory = session_factory

  async def create_course(self, *, title: str, description: str = "", level: str = "beginner", course_id: str | None = None) -> CourseRecord:
    async with self._session_factory() as session:
      row = Course(course_id=course_id or str(uuid.uuid4()), title=title, slug=slugify(title), description=description, level=level, generation_status="PENDING")
      session.add(row)
      await session.commit()
      return self._course_to_record(row)

  async def get_course(self, course_id: str) -> CourseRecord | None:
    async with self._session_factory() as session:
      row = await session.get(Course, course_id)
      return self._course_to_record(row) if row else None

  async def mark_in_progress(self, course_id: str, *, now: datetime) -> bool:
    async def _write() -> bool:
      async with self._session_factory() as session:
        stmt = (
          update(Course)
          .where(Course.course_id == course_id, Course.generation_status != "FAILED")
          .values(generation_status="IN_PROGRESS", generation_error=None, generation_started_at=func.coalesce(Course.generation_started_at, now))
        )
        result = await session.execute(stmt)
        await session.commit()
        return bool(result.rowcount)

    return await execute_with_retry(operation_name="course_mark_in_progress", func=_write)

  async def set_status(self, course_id: str, status: GenerationStatus, *, error: str | None = None, now: datetime) -> None:
    values: dict[str, object] = {"generation_status": status, "generation_error": error}
    if status == "COMPLETED":
      values["generation_completed_at"] = now
    if status == "PENDING":
      values["generation_started_at"] = None
      values["generation_completed_at"] = None

    async def _write() -> None:
      async with self._session_factory() as session:
        result = await session.execute(update(Course).where(Course.course_id == course_id).values(**values))
        await session.commit()
        if not result.rowcount:
          raise LookupError(f"Course not found: {course_id}")

    await execute_with_retry(operation_name=f"course_set_status_{status.lower()}", func=_write)

  async def update_course_details(self, course_id: str, *, title: str | None, description: str | None) -> None:
    values = {key: value for key, value in (("title", title), ("description", description)) if value}
    if not values:
      return
    async with self._session_factory() as session:
      await session.execute(update(Course).where(Course.course_id == course_id).values(**values))
      await session.commit()

  async def save_outline(self, course_id: str, outline: CourseOutline, *, replace_existing: bool) -> list[ArticleRecord]:
    async with self._session_factory() as session:
      # Lock the course row so concurrent outline executions serialize here.
      course = (await session.execute(select(Course).where(Course.course_id == course_id).with_for_update())).scalar_one_or_none()
      if course is None:
        raise LookupError(f"Course not found: {course_id}")

      existing = (await session.execute(select(CourseSection.section_id).where(CourseSection.course_id == course_id))).scalars().all()
      if existing and not replace_existing:
        await session.commit()
        return await self._list_articles(session, course_id)

      if existing:
        article_ids = select(CourseArticle.article_id).where(CourseArticle.section_id.in_(existing))
        await session.execute(delete(CourseQuiz).where(CourseQuiz.quiz_type == "article", CourseQuiz.owner_id.in_(article_ids)))
        await session.execute(delete(CourseQuiz).where(CourseQuiz.quiz_type == "section", CourseQuiz.owner_id.in_(existing)))
        await session.execute(delete(CourseSection).where(CourseSection.course_id == course_id))

      for section_index, planned_section in enumerate(outline.sections):
        section = CourseSection(section_id=str(uuid.uuid4()), course_id=course_id, title=planned_section.title, slug=f"{course.slug}-{slugify(planned_section.title)}", description=planned_section.description, order_index=section_index)
        session.add(section)
        for article_index, planned_article in enumerate(planned_section.articles):
          session.add(
            CourseArticle(
              article_id=str(uuid.uuid4()),
              section_id=section.section_id,
              title=planned_article.title,
              slug=f"{course.slug}-{slugify(planned_article.title)}",
              description=planned_article.description,
              order_index=article_index,
            )
          )

      await session.commit()
      return await self._list_articles(session, course_id)

  async def _list_articles(self, session: AsyncSession, course_id: str) -> list[ArticleRecord]:
    stmt = (
      select(CourseArticle, CourseSection.course_id)
      .join(CourseSection, CourseSection.section_id == CourseArticle.section_id)
      .where(CourseSection.course_id == course_id)
      .order_by(CourseSection.order_index, CourseArticle.order_index)
    )
    result = await session.execute(stmt)
    return [self._article_to_record(article, owner) for article, owner in result.all()]

  async def list_sections(self, course_id: str) -> list[SectionRecord]:
    async with self._session_factory() as session:
      rows = (await session.execute(select(CourseSection).where(CourseSection.course_id == course_id).order_by(CourseSection.order_index))).scalars().all()
      articles = await self._list_articles(session, course_id)
      return [self._section_to_record(row, [article for article in articles if article.section_id == row.section_id]) for row in rows]

  async def get_section(self, section_id: str) -> SectionRecord | None:
    async with self._session_factory() as session:
      row = await session.get(CourseSection, section_id)
      if row is None:
        return None
      articles = (await session.execute(select(CourseArticle).where(CourseArticle.section_id == section_id).order_by(CourseArticle.order_index))).scalars().all()
      return self._section_to_record(row, [self._article_to_record(article, row.course_id) for article in articles])

  async def get_article(self, article_id: str) -> ArticleRecord | None:
    async with self._session_factory() as session:
      stmt = select(CourseArticle, CourseSection.course_id).join(CourseSection, CourseSection.section_id == CourseArticle.section_id).where(CourseArticle.article_id == article_id)
      found = (await session.execute(stmt)).first()
      if found is None:
        return None
      article, course_id = found
      return self._article_to_record(article, course_id)

  async def save_article_content(self, article_id: str, *, content: str, generated_at: datetime) -> None:
    await self._update_article(article_id, content=content, is_generated=True, generated_at=generated_at, enriched_at=None)

  async def save_article_enrichment(self, article_id: str, *, content: str, enriched_at: datetime) -> None:
    await self._update_article(article_id, content=content, enriched_at=enriched_at)

  async def _update_article(self, article_id: str, **values: object) -> None:
    async with self._session_factory() as session:
      result = await session.execute(update(CourseArticle).where(CourseArticle.article_id == article_id).values(**values))
      await session.commit()
      if not result.rowcount:
        raise LookupError(f"Article not found: {article_id}")

  async def find_quiz(self, quiz_type: QuizType, owner_id: str) -> QuizRecord | None:
    async with self._session_factory() as session:
      return await self._find_quiz(session, quiz_type, owner_id)

  async def _find_quiz(self, session: AsyncSession, quiz_type: str, owner_id: str) -> QuizRecord | None:
    row = (await session.execute(select(CourseQuiz).where(CourseQuiz.quiz_type == quiz_type, CourseQuiz.owner_id == owner_id))).scalar_one_or_none()
    if row is None:
      return None
    questions = (await session.execute(select(CourseQuizQuestion).where(CourseQuizQuestion.quiz_id == row.quiz_id).order_by(CourseQuizQuestion.order_index))).scalars().all()
    return self._quiz_to_record(row, [self._question_to_record(question) for question in questions])

  async def insert_quiz_if_absent(self, quiz: NewQuiz, *, now: datetime) -> tuple[QuizRecord, bool]:
    async with self._session_factory() as session:
      quiz_id = await self._insert_quiz(session, quiz, now=now)
      await session.commit()
      record = await self._find_quiz(session, quiz.quiz_type, quiz.owner_id)
      if record is None:
        raise RuntimeError(f"Quiz disappeared after insert for {quiz.quiz_type}:{quiz.owner_id}")
      return record, quiz_id is not None

  async def replace_quiz(self, quiz: NewQuiz, *, now: datetime) -> QuizRecord:
    async with self._session_factory() as session:
      # Delete and insert in one transaction so readers never see a gap or a duplicate.
      await session.execute(delete(CourseQuiz).where(CourseQuiz.quiz_type == quiz.quiz_type, CourseQuiz.owner_id == quiz.owner_id))
      await self._insert_quiz(session, quiz, now=now)
      await session.commit()
      record = await self._find_quiz(session, quiz.quiz_type, quiz.owner_id)
      if record is None:
        raise RuntimeError(f"Quiz disappeared after replace for {quiz.quiz_type}:{quiz.owner_id}")
      return record

  async def _insert_quiz(self, session: AsyncSession, quiz: NewQuiz, *, now: datetime) -> str | None:
    """Insert quiz + questions; returns None when (type, owner) already exists."""
    quiz_id = str(uuid.uuid4())
    stmt = (
      insert(CourseQuiz)
      .values(
        quiz_id=quiz_id,
        quiz_type=quiz.quiz_type,
        owner_id=quiz.owner_id,
        course_id=quiz.course_id,
        title=quiz.title,
        description=quiz.description,
        pass_mark=quiz.pass_mark,
        time_limit_minutes=quiz.time_limit_minutes,
        cooldown_hours=quiz.cooldown_hours,
        created_at=now,
      )
      .on_conflict_do_nothing(constraint="ux_course_quizzes_type_owner")
      .returning(CourseQuiz.quiz_id)
    )
    inserted = (await session.execute(stmt)).scalar_one_or_none()
    if inserted is None:
      return None
    session.add_all(self._question_rows(CourseQuizQuestion, quiz.questions, quiz_id=quiz_id))
    await session.flush()
    return inserted

  async def count_final_exam_questions(self, course_id: str) -> int:
    async with self._session_factory() as session:
      result = await session.execute(select(func.count()).select_from(FinalExamQuestion).where(FinalExamQuestion.course_id == course_id))
      return int(result.scalar_one())

  async def store_final_exam_bank(self, course_id: str, questions: list[NewQuestion], *, replace_existing: bool) -> int:
    async with self._session_factory() as session:
      # Serialize bank writers on the course row.
      await session.execute(select(Course.course_id).where(Course.course_id == course_id).with_for_update())
      existing = int((await session.execute(select(func.count()).select_from(FinalExamQuestion).where(FinalExamQuestion.course_id == course_id))).scalar_one())
      if existing and not replace_existing:
        await session.commit()
        return 0
      await session.execute(delete(FinalExamQuestion).where(FinalExamQuestion.course_id == course_id))
      session.add_all(self._question_rows(FinalExamQuestion, questions, course_id=course_id))
      await session.commit()
      return len(questions)

  def _question_rows(self, model: type[CourseQuizQuestion] | type[FinalExamQuestion], questions: list[NewQuestion], **owner: str) -> list:
    return [
      model(
        question_type=question.question_type,
        question=question.question,
        options_json=list(question.options),
        correct_answer=question.correct_answer,
        explanation=question.explanation,
        points=question.points,
        order_index=question.order_index,
        **owner,
      )
      for question in questions
    ]

  def _course_to_record(self, row: Course) -> CourseRecord:
    return CourseRecord(
      course_id=row.course_id,
      title=row.title,
      slug=row.slug,
      description=row.description,
      level=row.level,
      generation_status=row.generation_status,  # type: ignore[arg-type]
      generation_error=row.generation_error,
      generation_started_at=row.generation_started_at,
      generation_completed_at=row.generation_completed_at,
    )

  def _section_to_record(self, row: CourseSection, articles: list[ArticleRecord]) -> SectionRecord:
    return SectionRecord(section_id=row.section_id, course_id=row.course_id, title=row.title, slug=row.slug, description=row.description, order_index=row.order_index, articles=articles)

  def _article_to_record(self, row: CourseArticle, course_id: str) -> ArticleRecord:
    return ArticleRecord(
      article_id=row.article_id,
      section_id=row.section_id,
      course_id=course_id,
      title=row.title,
      slug=row.slug,
      description=row.description,
      order_index=row.order_index,
      content=row.content,
      is_generated=row.is_generated,
      generated_at=row.generated_at,
      enriched_at=row.enriched_at,
    )

  def _question_to_record(self, row: CourseQuizQuestion) -> NewQuestion:
    return NewQuestion(
      question_type=row.question_type,
      question=row.question,
      options=list(row.options_json or []),
      correct_answer=row.correct_answer,
      explanation=row.explanation,
      points=row.points,
      order_index=row.order_index,
    )

  def _quiz_to_record(self, row: CourseQuiz, questions: list[NewQuestion]) -> QuizRecord:
    return QuizRecord(
      quiz_id=row.quiz_id,
      quiz_type=row.quiz_type,  # type: ignore[arg-type]
      owner_id=row.owner_id,
      course_id=row.course_id,
      title=row.title,
      description=row.description,
      pass_mark=row.pass_mark,
      questions=questions,
      created_at=row.created_at,
      time_limit_minutes=row.time_limit_minutes,
      cooldown_hours=row.cooldown_hours,
    )
