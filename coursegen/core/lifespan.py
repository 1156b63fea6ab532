from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from coursegen.config import get_settings
from coursegen.core.logging import initialize_logging
from coursegen.core.runtime import PipelineRuntime


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Open the pipeline runtime for the API process and close it on shutdown."""
  logger = logging.getLogger("coursegen.core.lifespan")

  # A runtime may be pre-attached (tests, embedding); otherwise build it from the environment.
  runtime: PipelineRuntime | None = getattr(app.state, "runtime", None)
  if runtime is None:
    settings = get_settings()
    initialize_logging(settings, process_name="api")
    runtime = PipelineRuntime.from_settings(settings)
    app.state.runtime = runtime

  await runtime.open()
  if runtime.settings.worker_embedded:
    runtime.workers.start()
    logger.info("Embedded worker pool started in the API process.")
  logger.info("Startup complete environment=%s", runtime.settings.environment)

  try:
    yield
  finally:
    await runtime.close()
    logger.info("Shutdown complete.")
