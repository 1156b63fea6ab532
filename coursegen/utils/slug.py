"""Slug helpers for generated sections and articles."""

from __future__ import annotations

import re
import unicodedata

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


def slugify(value: str, *, max_length: int = 80) -> str:
  normalized = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii").lower()
  slug = _NON_ALNUM_RE.sub("-", normalized).strip("-")
  return slug[:max_length].rstrip("-") or "untitled"
