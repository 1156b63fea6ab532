"""Redis client construction for the ephemeral rate-limit store."""

from __future__ import annotations

import logging

import redis.asyncio as redis

logger = logging.getLogger(__name__)


def build_redis_client(redis_url: str) -> redis.Redis:
  """Create a string-decoding async client; connections are opened lazily."""
  client = redis.from_url(redis_url, decode_responses=True, socket_connect_timeout=5, socket_timeout=5)
  logger.info("Redis client configured for %s", redis_url.rsplit("@", 1)[-1])
  return client
