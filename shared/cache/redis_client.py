"""
Cliente Redis compartido (redis.asyncio)

Guarda el mapeo idempotency key -> orden y responde al readiness check.
Los valores dict/list se serializan a JSON; el resto se guarda como string.
"""
from typing import Any, Optional
import json
import logging

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from app.core.config import settings

logger = logging.getLogger(__name__)

redis_client: Optional[redis.Redis] = None
redis_pool: Optional[ConnectionPool] = None


def _build_pool() -> ConnectionPool:
    return ConnectionPool.from_url(
        settings.REDIS_URL,
        password=settings.REDIS_PASSWORD or None,
        max_connections=settings.REDIS_MAX_CONNECTIONS,
        decode_responses=True,
        socket_connect_timeout=5,
        retry_on_timeout=True,
        health_check_interval=30,
    )


async def init_redis():
    """Crear el pool; un Redis caído solo se registra (el cache es opcional)"""
    global redis_client, redis_pool

    if redis_client is not None:
        return

    redis_pool = _build_pool()
    redis_client = redis.Redis(connection_pool=redis_pool)

    try:
        await redis_client.ping()
        logger.info(f"Redis conectado (max_connections={settings.REDIS_MAX_CONNECTIONS})")
    except Exception as e:
        logger.error(f"Redis no disponible al iniciar: {e}")


async def get_redis() -> redis.Redis:
    if redis_client is None:
        await init_redis()
    return redis_client


async def close_redis():
    global redis_client, redis_pool
    if redis_client is not None:
        await redis_client.aclose()
        redis_client = None
    if redis_pool is not None:
        await redis_pool.disconnect()
        redis_pool = None
    logger.info("Redis desconectado")


def _encode(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def _decode(raw: Optional[str]) -> Optional[Any]:
    if raw is None or raw == "":
        return None
    if raw[:1] in ("{", "["):
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            pass
    return raw


async def cache_get(key: str) -> Optional[Any]:
    conn = await get_redis()
    return _decode(await conn.get(key))


async def cache_set(key: str, value: Any, expire: int = 3600):
    """SETEX con TTL en segundos"""
    conn = await get_redis()
    await conn.setex(key, expire, _encode(value))


async def cache_delete(key: str):
    conn = await get_redis()
    await conn.delete(key)
