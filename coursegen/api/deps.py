from __future__ import annotations

import logging
import secrets
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status

from coursegen.core.runtime import PipelineRuntime
from coursegen.services.workflows import WorkflowService

logger = logging.getLogger(__name__)


def get_runtime(request: Request) -> PipelineRuntime:
  """Return the runtime opened by the application lifespan."""
  runtime: PipelineRuntime | None = getattr(request.app.state, "runtime", None)
  if runtime is None or not runtime.is_open:
    raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Pipeline runtime is not ready.")
  return runtime


def get_workflows(runtime: Annotated[PipelineRuntime, Depends(get_runtime)]) -> WorkflowService:
  return runtime.workflows


def require_admin(runtime: Annotated[PipelineRuntime, Depends(get_runtime)], authorization: str | None = Header(default=None)) -> None:
  """Guard queue and rate-limit operations behind the configured admin token."""
  # Secure-by-default: without a configured token the admin surface stays closed.
  token = runtime.settings.admin_token
  if not token:
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin authentication is not configured.")
  if not secrets.compare_digest(authorization or "", f"Bearer {token}"):
    logger.warning("Unauthorized admin request")
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid admin token.")
