from __future__ import annotations

import httpx
import openai
import pytest
from fakes import UpstreamError
from redis.exceptions import ConnectionError as RedisConnectionError

from coursegen.ai.errors import (
  MalformedOutputError,
  OwnershipError,
  RateLimitCondition,
  classify_failure,
  extract_retry_after,
  failure_message,
  is_rate_limit_error,
  is_retryable_category,
)


def _openai_rate_limit(headers: dict[str, str]) -> openai.RateLimitError:
  request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
  response = httpx.Response(429, headers=headers, request=request)
  return openai.RateLimitError("Rate limit reached for requests", response=response, body=None)


@pytest.mark.parametrize(
  ("error", "provider", "expected"),
  [
    (UpstreamError("boom", status_code=429), "openai", True),
    (UpstreamError("upstream overloaded", status_code=529), "anthropic", True),
    (UpstreamError("origin unreachable", status_code=522), None, True),
    (UpstreamError("internal error", status_code=500), "openai", False),
    (UpstreamError("Too Many Requests"), "mystery-llm", True),
    (UpstreamError("quota exceeded for project"), None, True),
    (UpstreamError("RESOURCE_EXHAUSTED: try later"), "gemini", True),
    (UpstreamError("overloaded_error"), "anthropic", True),
    (UpstreamError("overloaded_error"), "openai", False),
    (UpstreamError("insufficient_quota"), "mystery-llm", False),
    (UpstreamError("model produced invalid JSON"), "openai", False),
    (RateLimitCondition("openai", "gpt-test"), None, True),
  ],
)
def test_is_rate_limit_error_matches_codes_and_provider_patterns(error: BaseException, provider: str | None, expected: bool) -> None:
  assert is_rate_limit_error(error, provider) is expected


def test_openai_rate_limit_error_is_detected_from_response_status() -> None:
  error = _openai_rate_limit({})
  assert is_rate_limit_error(error, "openai")


@pytest.mark.parametrize(
  ("error", "expected"),
  [
    (RateLimitCondition("openai", "gpt-test", retry_after=9), 9),
    (UpstreamError("Rate limit exceeded, retry after 40 seconds"), 40),
    (UpstreamError("Please retry in 250ms"), 1),
    (UpstreamError("Rate limited. Retry after 1.5s"), 2),
    (UpstreamError("Please retry in 2 minutes"), 120),
    (UpstreamError("Rate limit reached for gpt-4o. Please try again in 20s."), 20),
    (UpstreamError("retry_after: 12"), 12),
    (UpstreamError("Upstream failed after retrying 3 times"), None),
    (UpstreamError("rate limit exceeded"), None),
  ],
)
def test_extract_retry_after_reads_message_hints(error: BaseException, expected: int | None) -> None:
  assert extract_retry_after(error) == expected


def test_extract_retry_after_prefers_response_header() -> None:
  error = _openai_rate_limit({"Retry-After": "17"})
  assert extract_retry_after(error) == 17


def test_extract_retry_after_ignores_http_date_header() -> None:
  error = _openai_rate_limit({"Retry-After": "Wed, 21 Oct 2026 07:28:00 GMT"})
  assert extract_retry_after(error) is None


@pytest.mark.parametrize(
  ("error", "category", "retryable"),
  [
    (RateLimitCondition("openai", "gpt-test"), "rate_limit", True),
    (RedisConnectionError("connection refused"), "infrastructure", True),
    (ConnectionResetError("peer reset"), "infrastructure", True),
    (MalformedOutputError("bad json"), "malformed_output", False),
    (OwnershipError("article belongs elsewhere"), "ownership", False),
    (ValueError("unexpected"), "generation", False),
  ],
)
def test_classify_failure_maps_onto_taxonomy(error: BaseException, category: str, retryable: bool) -> None:
  assert classify_failure(error) == category
  assert is_retryable_category(classify_failure(error)) is retryable


def test_failure_message_prefixes_category() -> None:
  assert failure_message(OwnershipError("Article a-1 not found")) == "ownership: Article a-1 not found"
  assert failure_message(KeyError()) == "generation: KeyError"
