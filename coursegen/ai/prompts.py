"""Prompt builders for each pipeline stage."""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from typing import Any

from coursegen.pipeline.contracts import PLACEMENTS, QUESTION_TYPES

_OUTLINE_SHAPE = {"title": "string", "description": "string", "sections": [{"title": "string", "description": "string", "articles": [{"title": "string", "description": "string"}]}]}
_QUIZ_SHAPE = {
  "title": "string",
  "description": "string",
  "questions": [{"question_type": "|".join(QUESTION_TYPES), "question": "string", "options": ["string"], "correct_answer": "string", "explanation": "string", "points": 1}],
}
_ENRICHMENT_SHAPE = {
  "should_enrich": True,
  "explanation": "string",
  "resources": [{"title": "string", "description": "string", "search_query": "string", "placement": "|".join(PLACEMENTS)}],
}


def _shape(shape: Mapping[str, Any]) -> str:
  """Serialize the expected JSON shape deterministically."""
  return json.dumps(shape, ensure_ascii=True, indent=2)


def _value(context: Mapping[str, Any], key: str, default: str = "-") -> str:
  raw = context.get(key)
  if raw is None or raw == "":
    return default
  return str(raw)


def render_outline_prompt(context: Mapping[str, Any]) -> str:
  return (
    f"Design the outline for a {_value(context, 'course_level', 'beginner')} level course.\n"
    f"Course title: {_value(context, 'course_title')}\n"
    f"Course description: {_value(context, 'course_description')}\n\n"
    "Plan 3-8 sections with 2-6 articles each, progressing from fundamentals to applied topics.\n"
    "Respond with JSON only, matching this shape:\n"
    f"{_shape(_OUTLINE_SHAPE)}"
  )


def render_article_prompt(context: Mapping[str, Any]) -> str:
  return (
    f"Write the article '{_value(context, 'article_title')}' for the course '{_value(context, 'course_title')}'.\n"
    f"Section: {_value(context, 'section_title')} ({_value(context, 'section_description')})\n"
    f"Article focus: {_value(context, 'article_description')}\n"
    f"Audience level: {_value(context, 'course_level', 'beginner')}\n\n"
    "Write 800-1500 words of Markdown with ## headings, worked examples and a short summary. "
    "Respond with the Markdown body only."
  )


def render_enrichment_prompt(*, article_title: str, course_title: str, content: str) -> str:
  excerpt = content[:4000]
  return (
    f"Suggest up to 3 supplementary learning resources for the article '{article_title}' in the course '{course_title}'.\n"
    "Only suggest resources when they add real value; otherwise set should_enrich to false.\n"
    "Placement decides where each resource is inserted: introduction, middle, conclusion or supplement.\n\n"
    f"Article excerpt:\n{excerpt}\n\n"
    "Respond with JSON only, matching this shape:\n"
    f"{_shape(_ENRICHMENT_SHAPE)}"
  )


def render_quiz_prompt(*, scope: str, title: str, question_count: int, material: Sequence[str], question_types: Sequence[str] = QUESTION_TYPES) -> str:
  joined = "\n\n---\n\n".join(item[:3000] for item in material if item)
  return (
    f"Write a {scope} quiz titled '{title}' with exactly {question_count} questions.\n"
    f"Allowed question types: {', '.join(question_types)}.\n"
    "MULTIPLE_CHOICE questions need 4 options; TRUE_FALSE answers are 'True' or 'False'; "
    "ESSAY questions put grading guidance in correct_answer.\n\n"
    f"Source material:\n{joined or '-'}\n\n"
    "Respond with JSON only, matching this shape:\n"
    f"{_shape(_QUIZ_SHAPE)}"
  )
