from __future__ import annotations

import json
from collections.abc import Iterator
from pathlib import Path

import pytest

from coursegen import cli
from coursegen.config import get_settings


@pytest.fixture
def env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[pytest.MonkeyPatch]:
  get_settings.cache_clear()
  monkeypatch.setenv("COURSEGEN_STORAGE_BACKEND", "memory")
  monkeypatch.setenv("COURSEGEN_LOG_DIR", str(tmp_path))
  monkeypatch.delenv("COURSEGEN_PG_DSN", raising=False)
  monkeypatch.delenv("DATABASE_URL", raising=False)
  yield monkeypatch
  get_settings.cache_clear()


def test_defaults_match_pipeline_constants(env: pytest.MonkeyPatch) -> None:
  settings = get_settings()

  assert settings.rate_limit_default_seconds == 60
  assert (settings.backoff_base_ms, settings.backoff_max_ms, settings.backoff_rate_limit_floor_ms) == (10000, 300000, 5000)
  assert settings.queue_enqueue_delay_ms == 1000
  assert settings.quiz_article_questions == (3, 5)
  assert settings.quiz_final_exam_questions == (15, 25)
  assert settings.quiz_pass_mark == 65
  assert settings.admin_token is None


def test_postgres_backend_requires_dsn(env: pytest.MonkeyPatch) -> None:
  env.setenv("COURSEGEN_STORAGE_BACKEND", "postgres")

  with pytest.raises(ValueError, match="COURSEGEN_PG_DSN"):
    get_settings()


@pytest.mark.parametrize(
  ("name", "value"),
  [
    ("COURSEGEN_STORAGE_BACKEND", "sqlite"),
    ("COURSEGEN_BACKOFF_MAX_MS", "5000"),
    ("COURSEGEN_QUIZ_ARTICLE_QUESTIONS", "5,3"),
    ("COURSEGEN_QUIZ_SECTION_QUESTIONS", "7"),
    ("COURSEGEN_QUIZ_FINAL_BANK_ESSAYS", "30"),
    ("COURSEGEN_QUIZ_PASS_MARK", "101"),
    ("COURSEGEN_WORKER_CONCURRENCY", "0"),
  ],
)
def test_invalid_values_are_rejected(env: pytest.MonkeyPatch, name: str, value: str) -> None:
  env.setenv(name, value)

  with pytest.raises(ValueError):
    get_settings()


def test_blank_optional_values_become_none(env: pytest.MonkeyPatch) -> None:
  env.setenv("COURSEGEN_ADMIN_TOKEN", "   ")
  env.setenv("OPENAI_API_KEY", "")

  settings = get_settings()

  assert settings.admin_token is None
  assert settings.openai_api_key is None


def test_cli_requires_a_command() -> None:
  with pytest.raises(SystemExit):
    cli.main([])


def test_cli_job_commands_against_memory_backend(env: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
  env.setattr(cli, "initialize_logging", lambda settings, *, process_name: None)

  assert cli.main(["jobs", "counts"]) == 0
  counts = json.loads(capsys.readouterr().out)
  assert counts == {"active": 0, "completed": 0, "delayed": 0, "failed": 0, "waiting": 0}

  assert cli.main(["jobs", "retry", "missing"]) == 1
  assert "Job not found" in capsys.readouterr().err

  assert cli.main(["jobs", "purge"]) == 0
  assert "Requeued 0 stalled job(s); purged 0 expired job(s)." in capsys.readouterr().out
