from __future__ import annotations

from collections.abc import AsyncIterator, Callable

import pytest
from fakes import ScriptedGenerator, UpstreamError
from httpx import ASGITransport, AsyncClient

from coursegen.core.runtime import PipelineRuntime
from coursegen.main import create_app

ADMIN = {"Authorization": "Bearer test-admin-token"}


@pytest.fixture
async def client(runtime: PipelineRuntime) -> AsyncIterator[AsyncClient]:
  # ASGITransport skips the lifespan; the runtime fixture is already open.
  app = create_app(runtime)
  async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
    yield http


async def _create_course(client: AsyncClient, title: str = "Python Basics") -> str:
  response = await client.post("/v1/courses", json={"title": title, "description": "Learn the core language."})
  assert response.status_code == 201
  return response.json()["course_id"]


@pytest.mark.anyio
async def test_health_echoes_request_id(client: AsyncClient) -> None:
  response = await client.get("/health", headers={"x-request-id": "req-123"})

  assert response.status_code == 200
  assert response.json()["status"] == "ok"
  assert response.headers["x-request-id"] == "req-123"


@pytest.mark.anyio
async def test_generate_then_status_reports_completion(client: AsyncClient, runtime: PipelineRuntime) -> None:
  course_id = await _create_course(client)

  started = await client.post(f"/v1/courses/{course_id}/generate", json={"context": {"tone": "friendly"}})
  assert started.status_code == 202
  assert started.json()["job_type"] == "outline"
  assert started.json()["state"] == "waiting"

  await runtime.workers.drain()

  status = await client.get(f"/v1/courses/{course_id}/status")
  assert status.status_code == 200
  body = status.json()
  assert body["status"] == "COMPLETED"
  assert (body["articles_total"], body["articles_generated"], body["articles_enriched"]) == (2, 2, 2)
  assert body["jobs"]["completed"] == 5


@pytest.mark.anyio
async def test_quiz_and_bank_triggers_return_jobs(client: AsyncClient, runtime: PipelineRuntime) -> None:
  course_id = await _create_course(client)
  await client.post(f"/v1/courses/{course_id}/generate", json={})
  await runtime.workers.drain()

  quizzes = await client.post(f"/v1/courses/{course_id}/quizzes", json={"include_final_exam": False})
  assert quizzes.status_code == 202
  assert sorted(job["job_type"] for job in quizzes.json()["jobs"]) == ["quiz_article", "quiz_article", "quiz_section"]

  bank = await client.post(f"/v1/courses/{course_id}/final-exam-bank", params={"regenerate": "true"})
  assert bank.status_code == 202
  assert bank.json()["job_type"] == "quiz_final_bank"


@pytest.mark.anyio
async def test_workflow_errors_map_to_status_codes(client: AsyncClient) -> None:
  missing = await client.get("/v1/courses/unknown/status", headers={"x-request-id": "req-404"})
  assert missing.status_code == 404
  assert missing.json()["requestId"] == "req-404"

  course_id = await _create_course(client)
  conflict = await client.post(f"/v1/courses/{course_id}/content", json={})
  assert conflict.status_code == 409

  bad_stage = await client.post(f"/v1/courses/{course_id}/regenerate", json={"stage": "podcast"})
  assert bad_stage.status_code == 422


@pytest.mark.anyio
async def test_invalid_course_body_is_rejected(client: AsyncClient) -> None:
  response = await client.post("/v1/courses", json={"title": "", "unexpected": True})

  assert response.status_code == 422
  detail = response.json()["detail"]
  assert isinstance(detail, list)
  assert all("input" not in error for error in detail)


@pytest.mark.anyio
async def test_unopened_runtime_returns_503(make_runtime: Callable[..., PipelineRuntime]) -> None:
  app = create_app(make_runtime())
  async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
    response = await http.get("/v1/courses/any/status")

  assert response.status_code == 503
  assert response.json()["detail"] == "Internal Server Error"


@pytest.mark.anyio
async def test_admin_routes_require_bearer_token(client: AsyncClient) -> None:
  assert (await client.get("/admin/jobs")).status_code == 403
  assert (await client.get("/admin/jobs", headers={"Authorization": "Bearer wrong"})).status_code == 403
  assert (await client.get("/admin/jobs", headers=ADMIN)).status_code == 200


@pytest.mark.anyio
async def test_admin_surface_closed_without_configured_token(make_runtime: Callable[..., PipelineRuntime]) -> None:
  runtime = make_runtime(admin_token=None)
  await runtime.open()
  try:
    app = create_app(runtime)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
      response = await http.get("/admin/rate-limits", headers=ADMIN)
  finally:
    await runtime.close()

  assert response.status_code == 403


@pytest.mark.anyio
async def test_admin_job_operations(client: AsyncClient, runtime: PipelineRuntime) -> None:
  course_id = await _create_course(client)
  started = (await client.post(f"/v1/courses/{course_id}/generate", json={})).json()

  listed = await client.get("/admin/jobs", params={"state": "waiting", "workflow_id": course_id}, headers=ADMIN)
  assert [job["job_id"] for job in listed.json()["jobs"]] == [started["job_id"]]

  detail = await client.get(f"/admin/jobs/{started['job_id']}", headers=ADMIN)
  assert detail.json()["payload"]["workflow_id"] == course_id

  counts = await client.get("/admin/jobs/counts", params={"workflow_id": course_id}, headers=ADMIN)
  assert counts.json()["waiting"] == 1

  assert (await client.post(f"/admin/jobs/{started['job_id']}/retry", headers=ADMIN)).status_code == 409
  assert (await client.post("/admin/jobs/missing/retry", headers=ADMIN)).status_code == 404
  assert (await client.get("/admin/jobs/missing", headers=ADMIN)).status_code == 404

  assert (await client.delete(f"/admin/jobs/{started['job_id']}", headers=ADMIN)).status_code == 204
  assert await runtime.queue.get(started["job_id"]) is None
  assert (await client.delete(f"/admin/jobs/{started['job_id']}", headers=ADMIN)).status_code == 404


@pytest.mark.anyio
async def test_admin_retry_revives_failed_job(client: AsyncClient, runtime: PipelineRuntime, generator: ScriptedGenerator) -> None:
  generator.script("course_outline_generation", UpstreamError("schema mismatch"))
  course_id = await _create_course(client)
  job_id = (await client.post(f"/v1/courses/{course_id}/generate", json={})).json()["job_id"]
  await runtime.workers.drain()
  assert (await runtime.queue.get(job_id)).state == "failed"

  retried = await client.post(f"/admin/jobs/{job_id}/retry", headers=ADMIN)

  assert retried.status_code == 200
  assert (retried.json()["state"], retried.json()["attempts_made"]) == ("waiting", 0)
  assert (await runtime.courses.get_course(course_id)).generation_status == "PENDING"

  # The revived job reaches the model again instead of being skipped for the failed course.
  await runtime.workers.drain()

  job = await runtime.queue.get(job_id)
  assert job.state == "completed"
  assert job.result != {"skipped": "workflow_failed"}
  assert generator.count("course_outline_generation") == 2
  course = await runtime.courses.get_course(course_id)
  assert course.generation_status == "COMPLETED"
  assert course.generation_error is None


@pytest.mark.anyio
async def test_admin_rate_limit_operations(client: AsyncClient, runtime: PipelineRuntime) -> None:
  await runtime.rate_limits.set("openai", "gpt-test", 30)
  await runtime.rate_limits.set("together", "meta/llama-3", 45)

  active = await client.get("/admin/rate-limits", headers=ADMIN)
  assert sorted((entry["provider"], entry["model_id"]) for entry in active.json()) == [("openai", "gpt-test"), ("together", "meta/llama-3")]

  history = await client.get("/admin/rate-limits/history", headers=ADMIN)
  assert {entry["model_id"] for entry in history.json()} == {"gpt-test", "meta/llama-3"}

  assert (await client.delete("/admin/rate-limits/together/meta/llama-3", headers=ADMIN)).status_code == 204
  assert not (await runtime.rate_limits.check("together", "meta/llama-3")).is_rate_limited

  cleared = await client.delete("/admin/rate-limits", headers=ADMIN)
  assert cleared.json() == {"removed": 1}
  assert (await client.get("/admin/rate-limits", headers=ADMIN)).json() == []
