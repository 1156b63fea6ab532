from __future__ import annotations

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError

from coursegen import __version__
from coursegen.api.routes import admin, workflows
from coursegen.core.exceptions import global_exception_handler, http_exception_handler, request_validation_exception_handler, workflow_exception_handler
from coursegen.core.lifespan import lifespan
from coursegen.core.middleware import request_logging_middleware
from coursegen.core.runtime import PipelineRuntime
from coursegen.jobs.models import InvalidJobPayloadError
from coursegen.services.workflows import WorkflowNotFoundError, WorkflowStateError


def create_app(runtime: PipelineRuntime | None = None) -> FastAPI:
  """Build the API; a pre-built runtime skips environment-driven wiring."""
  app = FastAPI(title="coursegen", version=__version__, lifespan=lifespan)
  if runtime is not None:
    app.state.runtime = runtime

  app.add_exception_handler(Exception, global_exception_handler)
  app.add_exception_handler(HTTPException, http_exception_handler)
  app.add_exception_handler(RequestValidationError, request_validation_exception_handler)
  for domain_error in (WorkflowNotFoundError, WorkflowStateError, InvalidJobPayloadError):
    app.add_exception_handler(domain_error, workflow_exception_handler)

  app.middleware("http")(request_logging_middleware)

  @app.get("/health", include_in_schema=False)
  async def health_check() -> dict[str, str]:
    """Return a simple health status."""
    return {"status": "ok", "version": __version__}

  app.include_router(workflows.router, prefix="/v1/courses", tags=["workflows"])
  app.include_router(admin.router, prefix="/admin", tags=["admin"])
  return app


app = create_app()
