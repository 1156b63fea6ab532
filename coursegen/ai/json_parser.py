"""Forgiving recovery of JSON payloads from free-text model output.

Each repair step is idempotent and can be composed independently:

- `strip_wrapper` removes a fence that wraps the entire response.
- `trim_trailing_commas` drops commas that directly precede a closing brace/bracket.
- `balance_delimiters` closes an unterminated string and any unclosed braces/brackets.

`sanitize` isolates the candidate payload and `repair` applies the syntax fixes;
`sanitize(repair(text))` is a fixed point.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from coursegen.ai.errors import MalformedOutputError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_FENCE = "```"
_FENCE_OPEN_RE = re.compile(r"^```[A-Za-z0-9_+.-]*[ \t]*\n?")
_CLOSERS = {"{": "}", "[": "]"}


def strip_wrapper(raw: str) -> str:
  """Remove a fence wrapping the whole response unless the body holds nested fences."""
  text = raw.strip()
  if len(text) < 2 * len(_FENCE) or not (text.startswith(_FENCE) and text.endswith(_FENCE)):
    return text

  opening = _FENCE_OPEN_RE.match(text)
  body = text[opening.end() if opening else len(_FENCE) : -len(_FENCE)]
  # A nested fence means the outer markers are not a wrapper we can safely drop.
  if _FENCE in body:
    return text

  return body.strip()


def _next_significant(text: str, index: int) -> str | None:
  """Return the next char that is neither whitespace nor a comma."""
  while index < len(text):
    char = text[index]
    if not char.isspace() and char != ",":
      return char
    index += 1
  return None


def trim_trailing_commas(text: str) -> str:
  """Drop commas (outside strings) that are followed only by whitespace/commas and a closer."""
  output: list[str] = []
  in_string = False
  escape = False

  for index, char in enumerate(text):
    if in_string:
      output.append(char)
      if escape:
        escape = False
      elif char == "\\":
        escape = True
      elif char == '"':
        in_string = False
      continue

    if char == '"':
      in_string = True
    elif char == "," and _next_significant(text, index + 1) in ("}", "]"):
      continue

    output.append(char)

  return "".join(output)


def balance_delimiters(text: str) -> str:
  """Append the closers needed for every unclosed string, brace and bracket."""
  stack: list[str] = []
  in_string = False
  escape = False

  for char in text:
    if in_string:
      if escape:
        escape = False
      elif char == "\\":
        escape = True
      elif char == '"':
        in_string = False
      continue

    if char == '"':
      in_string = True
    elif char in _CLOSERS:
      stack.append(char)
    elif char in "}]" and stack:
      stack.pop()

  suffix: list[str] = []
  if in_string:
    # A dangling backslash would escape the closing quote.
    if escape:
      suffix.append("\\")
    suffix.append('"')
  suffix.extend(_CLOSERS[opener] for opener in reversed(stack))
  return text + "".join(suffix)


def _payload_start(text: str) -> int | None:
  """Index where the payload opens: the first object, or an earlier array that encloses it."""
  first_object: int | None = None
  first_array: int | None = None
  in_string = False
  escape = False

  for index, char in enumerate(text):
    if in_string:
      if escape:
        escape = False
      elif char == "\\":
        escape = True
      elif char == '"':
        in_string = False
      continue

    if char == '"':
      in_string = True
    elif char == "{":
      first_object = index
      break
    elif char == "[" and first_array is None:
      first_array = index

  if first_object is not None and first_array is not None:
    # An earlier array that encloses the object is the payload itself.
    array_end = _balanced_end(text, first_array)
    if array_end is None or array_end > first_object:
      return first_array

  return first_object if first_object is not None else first_array


def _balanced_end(text: str, start: int) -> int | None:
  """Index where the payload opened at `start` closes, or None when it never does."""
  depth = 0
  in_string = False
  escape = False

  for index in range(start, len(text)):
    char = text[index]
    if in_string:
      if escape:
        escape = False
      elif char == "\\":
        escape = True
      elif char == '"':
        in_string = False
      continue

    if char == '"':
      in_string = True
    elif char in "{[":
      depth += 1
    elif char in "}]":
      depth -= 1
      if depth == 0:
        return index

  return None


def sanitize(raw: str) -> str:
  """Isolate the JSON candidate from wrapper fences and surrounding prose."""
  text = strip_wrapper(raw)
  start = _payload_start(text)
  if start is None:
    return text

  end = _balanced_end(text, start)
  # Truncated payloads keep their surrounding text until repair closes them.
  if end is None:
    return text

  return text[start : end + 1]


def repair(text: str) -> str:
  """Apply the syntax repairs; balancing first exposes commas left before appended closers."""
  return trim_trailing_commas(balance_delimiters(text))


def parse_model_json(raw: str, *, label: str = "model") -> Any:
  """Parse model output into JSON, raising MalformedOutputError when recovery fails."""
  if not raw or not raw.strip():
    raise MalformedOutputError(f"Empty {label} output.")

  candidate = sanitize(raw)
  # Prefer strict parsing so valid payloads are never mutated.
  try:
    return json.loads(candidate)
  except json.JSONDecodeError:
    pass

  repaired = sanitize(repair(candidate))
  try:
    parsed = json.loads(repaired)
  except json.JSONDecodeError as exc:
    logger.warning("Unrecoverable %s output (len=%d): %s at pos %d", label, len(raw), exc.msg, exc.pos)
    raise MalformedOutputError(f"Could not parse {label} output as JSON: {exc.msg} (pos {exc.pos})", raw_excerpt=raw[:200]) from exc

  logger.info("Recovered %s output with JSON repair.", label)
  return parsed


def parse_model_output(raw: str, model: type[ModelT], *, label: str = "model") -> ModelT:
  """Parse and validate model output against a pydantic contract."""
  payload = parse_model_json(raw, label=label)
  try:
    return model.model_validate(payload)
  except ValidationError as exc:
    logger.warning("%s output failed validation: %s", label, exc.errors(include_input=False))
    raise MalformedOutputError(f"{label} output did not match the expected structure: {exc.error_count()} validation error(s)", raw_excerpt=raw[:200]) from exc
