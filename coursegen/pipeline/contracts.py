"""Pydantic contracts for structured model output consumed by the stages."""

from __future__ import annotations

import logging
from typing import Any, Final, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

QUESTION_TYPES: Final[tuple[str, ...]] = ("MULTIPLE_CHOICE", "TRUE_FALSE", "FILL_IN_BLANK", "ESSAY")
_QUESTION_TYPE_ALIASES: Final[dict[str, str]] = {
  "FILL_IN_THE_BLANK": "FILL_IN_BLANK",
  "FILL_BLANK": "FILL_IN_BLANK",
  "TRUE_OR_FALSE": "TRUE_FALSE",
  "TRUEFALSE": "TRUE_FALSE",
  "MCQ": "MULTIPLE_CHOICE",
  "MULTIPLECHOICE": "MULTIPLE_CHOICE",
  "LONG_ANSWER": "ESSAY",
}

Placement = Literal["introduction", "middle", "conclusion", "supplement"]
PLACEMENTS: Final[tuple[str, ...]] = ("introduction", "middle", "conclusion", "supplement")
MAX_ENRICHMENT_RESOURCES: Final[int] = 5


class _Lenient(BaseModel):
  model_config = ConfigDict(extra="ignore", populate_by_name=True, str_strip_whitespace=True)


class OutlineArticle(_Lenient):
  title: str = Field(min_length=1)
  description: str = ""


class OutlineSection(_Lenient):
  title: str = Field(min_length=1)
  description: str = ""
  articles: list[OutlineArticle] = Field(min_length=1)


class CourseOutline(_Lenient):
  title: str = ""
  description: str = ""
  sections: list[OutlineSection] = Field(min_length=1)

  @property
  def article_count(self) -> int:
    return sum(len(section.articles) for section in self.sections)


def normalize_question_type(raw: Any) -> str:
  """Map model spellings onto the supported types; unknown values become MULTIPLE_CHOICE."""
  key = str(raw or "").strip().upper().replace(" ", "_").replace("-", "_").replace("/", "_")
  key = _QUESTION_TYPE_ALIASES.get(key, key)
  if key in QUESTION_TYPES:
    return key
  logger.warning("Unknown question type %r; defaulting to MULTIPLE_CHOICE", raw)
  return "MULTIPLE_CHOICE"


class QuestionDraft(_Lenient):
  question_type: str = Field(default="MULTIPLE_CHOICE", validation_alias=AliasChoices("question_type", "questionType", "type"))
  question: str = Field(min_length=1, validation_alias=AliasChoices("question", "prompt", "text"))
  options: list[str] = Field(default_factory=list)
  correct_answer: str = Field(default="", validation_alias=AliasChoices("correct_answer", "correctAnswer", "answer"))
  explanation: str | None = None
  points: int = Field(default=1, ge=1)

  @field_validator("question_type", mode="before")
  @classmethod
  def _normalize_type(cls, value: Any) -> str:
    return normalize_question_type(value)

  @field_validator("options", mode="before")
  @classmethod
  def _coerce_options(cls, value: Any) -> list[str]:
    if value is None:
      return []
    if isinstance(value, dict):
      return [str(item) for item in value.values()]
    return [str(item) for item in value]

  @field_validator("correct_answer", mode="before")
  @classmethod
  def _coerce_answer(cls, value: Any) -> str:
    if value is None:
      return ""
    if isinstance(value, list):
      return ", ".join(str(item) for item in value)
    return str(value)

  def with_defaults(self) -> QuestionDraft:
    """Fill options that the question type implies."""
    if self.question_type == "TRUE_FALSE" and not self.options:
      return self.model_copy(update={"options": ["True", "False"]})
    return self


class QuizDraft(_Lenient):
  title: str = ""
  description: str = ""
  questions: list[QuestionDraft] = Field(min_length=1)


class EnrichmentResource(_Lenient):
  title: str = Field(min_length=1)
  description: str = ""
  search_query: str | None = Field(default=None, validation_alias=AliasChoices("search_query", "searchQuery", "query"))
  url: str | None = None
  placement: Placement = "supplement"

  @field_validator("placement", mode="before")
  @classmethod
  def _normalize_placement(cls, value: Any) -> str:
    key = str(value or "").strip().lower()
    return key if key in PLACEMENTS else "supplement"


class EnrichmentPlan(_Lenient):
  should_enrich: bool = Field(default=True, validation_alias=AliasChoices("should_enrich", "shouldEnrich", "enrich"))
  explanation: str = ""
  resources: list[EnrichmentResource] = Field(default_factory=list)

  @field_validator("resources", mode="before")
  @classmethod
  def _cap_resources(cls, value: Any) -> Any:
    if isinstance(value, list):
      return value[:MAX_ENRICHMENT_RESOURCES]
    return value
