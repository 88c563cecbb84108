"""Process-wide asyncpg pool used by the verification repositories."""

from __future__ import annotations

import logging
from typing import Optional

import asyncpg

from crowdcheck.settings import settings

logger = logging.getLogger(__name__)

_pool: Optional[asyncpg.Pool] = None


async def init_pool() -> asyncpg.Pool:
	"""Create the pool on first use; later calls return the same pool."""
	global _pool
	if _pool is None:
		_pool = await asyncpg.create_pool(
			dsn=settings.postgres_url,
			min_size=settings.postgres_min_pool_size,
			max_size=settings.postgres_max_pool_size,
		)
		logger.info(
			"postgres pool ready",
			extra={"min_size": settings.postgres_min_pool_size, "max_size": settings.postgres_max_pool_size},
		)
	return _pool


async def ping() -> bool:
	if _pool is None:
		return False
	try:
		async with _pool.acquire() as conn:
			await conn.fetchval("SELECT 1")
	except (asyncpg.PostgresError, OSError) as exc:
		logger.warning("postgres ping failed", extra={"error": str(exc)})
		return False
	return True


async def close_pool() -> None:
	global _pool
	if _pool is not None:
		await _pool.close()
		_pool = None
