import json

from loguru import logger
from redis.asyncio import Redis

from app.settings import REDIS_URL

_redis: Redis | None = None
AVAILABLE_JOBS_KEY = "jobs:available"
AVAILABLE_JOBS_TTL = 30  # seconds; accept/create invalidate explicitly


def get_redis() -> Redis:
    global _redis
    if _redis is None:
        _redis = Redis.from_url(REDIS_URL, decode_responses=True)
    return _redis


async def get_available_jobs_cache() -> list | None:
    try:
        data = await get_redis().get(AVAILABLE_JOBS_KEY)
        return json.loads(data) if data else None
    except Exception:
        logger.warning("Redis get failed, skipping available jobs cache", exc_info=True)
        return None


async def set_available_jobs_cache(jobs: list) -> None:
    try:
        await get_redis().setex(AVAILABLE_JOBS_KEY, AVAILABLE_JOBS_TTL, json.dumps(jobs))
    except Exception:
        logger.warning("Redis set failed, skipping available jobs cache", exc_info=True)


async def invalidate_available_jobs_cache() -> None:
    try:
        await get_redis().delete(AVAILABLE_JOBS_KEY)
    except Exception:
        logger.warning("Redis invalidate failed for available jobs cache", exc_info=True)
