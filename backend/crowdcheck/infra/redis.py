"""Shared Redis client.

Modules import the module-level ``redis_client`` proxy once; the concrete client
behind it can be replaced at runtime (fakeredis in tests) without those imports
going stale. Submission locks and notification de-duplication both go through it.
"""

from __future__ import annotations

import logging

import redis.asyncio as redis
from redis.exceptions import RedisError

from crowdcheck.settings import settings

logger = logging.getLogger(__name__)


class RedisProxy:
	"""Forward attribute access to whichever client is currently installed."""

	def __init__(self, client: redis.Redis):
		self._client: redis.Redis = client

	@property
	def client(self) -> redis.Redis:
		return self._client

	def set_client(self, client: redis.Redis) -> None:
		self._client = client

	def __getattr__(self, item):
		return getattr(self._client, item)


redis_client: RedisProxy = RedisProxy(redis.from_url(settings.redis_url, decode_responses=True))


def set_redis_client(client: redis.Redis) -> None:
	redis_client.set_client(client)


async def ping() -> bool:
	try:
		return bool(await redis_client.ping())
	except (RedisError, OSError) as exc:
		logger.warning("redis ping failed", extra={"error": str(exc)})
		return False


async def close() -> None:
	await redis_client.client.aclose()
