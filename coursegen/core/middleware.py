from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Awaitable, Callable

from fastapi import Request, Response

logger = logging.getLogger("coursegen.core.middleware")

_REQUEST_ID_HEADER = "x-request-id"


async def request_logging_middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
  """Tag each request with an id and log method, path, status and latency."""
  request_id = request.headers.get(_REQUEST_ID_HEADER) or uuid.uuid4().hex
  request.state.request_id = request_id
  started = time.perf_counter()
  response = await call_next(request)
  elapsed_ms = (time.perf_counter() - started) * 1000
  response.headers[_REQUEST_ID_HEADER] = request_id
  # Health probes are frequent; keep them out of the info log.
  level = logging.DEBUG if request.url.path == "/health" else logging.INFO
  logger.log(level, "%s %s status=%d duration_ms=%.1f request_id=%s", request.method, request.url.path, response.status_code, elapsed_ms, request_id)
  return response
