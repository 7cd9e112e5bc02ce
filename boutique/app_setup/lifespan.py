"""
Lifespan FastAPI: ressources partagées du service checkout.

Démarrage:
- FastAPILimiter sur Redis (rate limiting des endpoints de checkout)
Arrêt:
- fermeture du limiter et du client Redis de la file de tâches

Variables d'environnement:
- DISABLE_FASTAPI_LIMITER_INIT_FOR_TESTS=1: pas de rate limiting Redis (tests)
- USE_FAKE_REDIS_FOR_TESTS=1: limiter sur fakeredis (tests)
- LOCAL_RATE_LIMIT_FALLBACK=1: compteur mémoire si Redis est injoignable
- RATE_LIMIT_REDIS_URL: Redis du rate limiting (par défaut redis://127.0.0.1:6379/0)
"""
import os
import logging
from contextlib import asynccontextmanager
import redis.asyncio as aioredis
from redis.exceptions import RedisError
from fastapi import FastAPI
from fastapi_limiter import FastAPILimiter

from boutique.dispatch import queue

logger = logging.getLogger("uvicorn.error")


def _limiter_redis():
    if os.getenv("USE_FAKE_REDIS_FOR_TESTS") == "1":
        from fakeredis.aioredis import FakeRedis
        return FakeRedis(decode_responses=True)
    redis_url = os.getenv("RATE_LIMIT_REDIS_URL", "redis://127.0.0.1:6379/0")
    return aioredis.from_url(redis_url, encoding="utf-8", decode_responses=True)


async def _init_rate_limit(app: FastAPI) -> None:
    """Renseigne app.state.rate_limit_enabled selon l'état effectif de Redis."""
    if os.getenv("DISABLE_FASTAPI_LIMITER_INIT_FOR_TESTS") == "1":
        app.state.rate_limit_enabled = False
        logger.info("checkout: rate limiting désactivé (tests)")
        return
    try:
        await FastAPILimiter.init(_limiter_redis())
        app.state.rate_limit_enabled = True
        logger.info("checkout: rate limiting actif")
    except (RedisError, OSError) as e:
        fallback = os.getenv("LOCAL_RATE_LIMIT_FALLBACK") == "1"
        app.state.rate_limit_enabled = fallback
        logger.warning("checkout: Redis du rate limiting injoignable (%s), fallback mémoire=%s", e, fallback)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await _init_rate_limit(app)

    yield

    if getattr(app.state, "rate_limit_enabled", False) and FastAPILimiter.redis is not None:
        await FastAPILimiter.close()
    queue.close_redis()
