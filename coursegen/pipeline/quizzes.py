"""Quiz stages for articles, sections, the final exam and its question bank.

Every quiz stage checks for an existing quiz before generating and inserts with
insert-if-absent, so re-delivered jobs never create duplicates. Regeneration replaces
the quiz atomically instead.
"""

from __future__ import annotations

import logging
from typing import Any

from coursegen.ai.errors import MalformedOutputError, OwnershipError
from coursegen.ai.json_parser import parse_model_output
from coursegen.ai.prompts import render_quiz_prompt
from coursegen.jobs.models import ArticleQuizPayload, FinalExamBankPayload, FinalExamPayload, JobRecord, SectionQuizPayload
from coursegen.pipeline.base import StageDeps, require_article, require_course, require_section, to_questions
from coursegen.pipeline.contracts import QUESTION_TYPES, QuestionDraft, QuizDraft
from coursegen.storage.courses_repo import NewQuiz, QuizRecord, QuizType, SectionRecord

logger = logging.getLogger(__name__)

_OBJECTIVE_TYPES = tuple(item for item in QUESTION_TYPES if item != "ESSAY")
_MATERIAL_CHARS_PER_ARTICLE = 1500


def _section_material(sections: list[SectionRecord]) -> list[str]:
  material: list[str] = []
  for section in sections:
    for article in section.articles:
      if article.content:
        material.append(f"# {section.title} / {article.title}\n{article.content[:_MATERIAL_CHARS_PER_ARTICLE]}")
  return material


class _QuizStage:
  quiz_type: QuizType

  def __init__(self, deps: StageDeps) -> None:
    self._deps = deps

  async def _existing(self, owner_id: str, regenerate: bool) -> dict[str, Any] | None:
    existing = await self._deps.courses.find_quiz(self.quiz_type, owner_id)
    if existing is None or regenerate:
      return None
    logger.info("Quiz %s already exists for %s %s; skipping", existing.quiz_id, self.quiz_type, owner_id)
    return {"quiz_id": existing.quiz_id, "skipped": "quiz_exists"}

  def _question_count(self, bounds: tuple[int, int]) -> int:
    low, high = bounds
    return self._deps.rng.randint(low, high)

  async def _generate_draft(self, *, job: JobRecord, title: str, question_count: int, material: list[str]) -> QuizDraft:
    prompt = render_quiz_prompt(scope=self.quiz_type.replace("_", " "), title=title, question_count=question_count, material=material)
    raw = await self._deps.gateway.generate("quiz_generation", prompt, {"quiz_type": self.quiz_type, "job_id": job.job_id})
    return parse_model_output(raw, QuizDraft, label=f"{self.quiz_type} quiz")

  async def _store(self, quiz: NewQuiz, regenerate: bool) -> tuple[QuizRecord, bool]:
    now = self._deps.clock()
    if regenerate:
      return await self._deps.courses.replace_quiz(quiz, now=now), True
    return await self._deps.courses.insert_quiz_if_absent(quiz, now=now)

  @staticmethod
  def _summary(record: QuizRecord, created: bool) -> dict[str, Any]:
    return {"quiz_id": record.quiz_id, "questions": len(record.questions), "created": created}


class ArticleQuizStage(_QuizStage):
  job_type = "quiz_article"
  quiz_type: QuizType = "article"

  async def process(self, job: JobRecord, payload: ArticleQuizPayload) -> dict[str, Any]:
    article = await require_article(self._deps.courses, payload.stage_target_id, payload.workflow_id)
    if not article.content:
      raise OwnershipError(f"Article {article.article_id} has no content to quiz on")
    skipped = await self._existing(article.article_id, payload.regenerate)
    if skipped:
      return skipped

    count = self._question_count(self._deps.quiz.article_questions)
    draft = await self._generate_draft(job=job, title=f"{article.title} Quiz", question_count=count, material=[article.content])
    quiz = NewQuiz(
      quiz_type=self.quiz_type,
      owner_id=article.article_id,
      course_id=payload.workflow_id,
      title=draft.title or f"{article.title} Quiz",
      description=draft.description,
      pass_mark=self._deps.quiz.pass_mark,
      questions=to_questions(draft.questions),
    )
    record, created = await self._store(quiz, payload.regenerate)
    return self._summary(record, created)


class SectionQuizStage(_QuizStage):
  job_type = "quiz_section"
  quiz_type: QuizType = "section"

  async def process(self, job: JobRecord, payload: SectionQuizPayload) -> dict[str, Any]:
    section = await require_section(self._deps.courses, payload.stage_target_id, payload.workflow_id)
    material = _section_material([section])
    if not material:
      raise OwnershipError(f"Section {section.section_id} has no generated articles to quiz on")
    skipped = await self._existing(section.section_id, payload.regenerate)
    if skipped:
      return skipped

    count = self._question_count(self._deps.quiz.section_questions)
    draft = await self._generate_draft(job=job, title=f"{section.title} Review", question_count=count, material=material)
    quiz = NewQuiz(
      quiz_type=self.quiz_type,
      owner_id=section.section_id,
      course_id=payload.workflow_id,
      title=draft.title or f"{section.title} Review",
      description=draft.description,
      pass_mark=self._deps.quiz.pass_mark,
      questions=to_questions(draft.questions),
    )
    record, created = await self._store(quiz, payload.regenerate)
    return self._summary(record, created)


class FinalExamStage(_QuizStage):
  job_type = "quiz_final_exam"
  quiz_type: QuizType = "final_exam"

  async def process(self, job: JobRecord, payload: FinalExamPayload) -> dict[str, Any]:
    course = await require_course(self._deps.courses, payload.workflow_id)
    material = _section_material(await self._deps.courses.list_sections(course.course_id))
    if not material:
      raise OwnershipError(f"Course {course.course_id} has no generated articles for a final exam")
    skipped = await self._existing(course.course_id, payload.regenerate)
    if skipped:
      return skipped

    count = self._question_count(self._deps.quiz.final_exam_questions)
    draft = await self._generate_draft(job=job, title=f"{course.title} Final Exam", question_count=count, material=material)
    questions = to_questions(draft.questions)
    quiz = NewQuiz(
      quiz_type=self.quiz_type,
      owner_id=course.course_id,
      course_id=course.course_id,
      title=draft.title or f"{course.title} Final Exam",
      description=draft.description,
      pass_mark=self._deps.quiz.pass_mark,
      questions=questions,
      time_limit_minutes=max(60, len(questions) * 3),
      cooldown_hours=self._deps.quiz.final_exam_cooldown_hours,
    )
    record, created = await self._store(quiz, payload.regenerate)
    return self._summary(record, created)


class FinalExamBankStage(_QuizStage):
  """Build the pool final exams draw from: objective questions plus a few essays."""

  job_type = "quiz_final_bank"
  quiz_type: QuizType = "final_exam"

  async def process(self, job: JobRecord, payload: FinalExamBankPayload) -> dict[str, Any]:
    courses = self._deps.courses
    course = await require_course(courses, payload.workflow_id)
    existing = await courses.count_final_exam_questions(course.course_id)
    if existing and not payload.regenerate:
      return {"course_id": course.course_id, "skipped": "bank_exists", "questions": existing}

    material = _section_material(await courses.list_sections(course.course_id))
    if not material:
      raise OwnershipError(f"Course {course.course_id} has no generated articles for a question bank")

    settings = self._deps.quiz
    essay_count = min(settings.final_bank_essays, settings.final_bank_questions)
    objective_count = settings.final_bank_questions - essay_count
    title = f"{course.title} Final Exam Bank"

    objective = await self._generate_bank_part(job, title=title, count=objective_count, material=material, question_types=_OBJECTIVE_TYPES)
    objective = [item for item in objective if item.question_type != "ESSAY"]
    essays = await self._generate_bank_part(job, title=title, count=essay_count, material=material, question_types=("ESSAY",))
    essays = [item.model_copy(update={"question_type": "ESSAY", "options": []}) for item in essays]
    if not objective and not essays:
      raise MalformedOutputError(f"Final exam bank for course {course.course_id} came back empty")

    questions = to_questions(objective) + to_questions(essays, start_index=len(objective))
    stored = await courses.store_final_exam_bank(course.course_id, questions, replace_existing=payload.regenerate)
    logger.info("Stored %d final exam bank question(s) for course %s", stored, course.course_id)
    return {"course_id": course.course_id, "questions": stored, "essays": len(essays)}

  async def _generate_bank_part(self, job: JobRecord, *, title: str, count: int, material: list[str], question_types: tuple[str, ...]) -> list[QuestionDraft]:
    if count <= 0:
      return []
    prompt = render_quiz_prompt(scope="final exam bank", title=title, question_count=count, material=material, question_types=question_types)
    raw = await self._deps.gateway.generate("final_exam_bank_generation", prompt, {"quiz_type": "final_exam_bank", "job_id": job.job_id})
    return parse_model_output(raw, QuizDraft, label="final exam bank").questions
