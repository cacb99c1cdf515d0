"""
Per-client fixed-window rate limiting backed by Redis.

Counters live at ``ratelimit:{bucket}:{client}:{window}`` and expire with
the window. When Redis is not configured or errors, requests pass.
"""
import time
from typing import Awaitable, Callable, Dict

import structlog
from fastapi import Depends, HTTPException, Request, status

from orderflow.config import Settings
from orderflow.container import Container, get_container
from orderflow.monitoring.metrics import metrics

from .dependencies import client_ip

logger = structlog.get_logger(__name__)

REDIS_PREFIX = "ratelimit:"


def bucket_limits(settings: Settings) -> Dict[str, int]:
    return {
        "payment": settings.rate_limit_payment,
        "webhook": settings.rate_limit_webhook,
        "checkout": settings.rate_limit_checkout,
        "cart": settings.rate_limit_cart,
    }


def rate_limit(bucket: str) -> Callable[..., Awaitable[None]]:
    """
    Build a dependency enforcing the named bucket's limit.

    Raises:
        HTTPException: 429 once the client exceeds the limit for the window
    """

    async def _check(request: Request, container: Container = Depends(get_container)) -> None:
        redis = container.redis_client
        if redis is None:
            return

        settings = container.settings
        limit = bucket_limits(settings)[bucket]
        window_seconds = settings.rate_limit_window_seconds
        window = int(time.time() // window_seconds)
        client = client_ip(request) or "unknown"
        key = f"{REDIS_PREFIX}{bucket}:{client}:{window}"

        try:
            count = await redis.incr(key)
            if count == 1:
                await redis.expire(key, window_seconds)
        except Exception as e:
            logger.warning("rate_limit_check_failed", bucket=bucket, error=str(e))
            return

        if count > limit:
            metrics.record_rate_limit_rejection(bucket)
            logger.warning("rate_limit_exceeded", bucket=bucket, client=client, count=count, limit=limit)
            retry_after = window_seconds - int(time.time()) % window_seconds
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail={
                    "error": "rate_limit_exceeded",
                    "message": f"Rate limit exceeded: {limit} requests per {window_seconds}s",
                },
                headers={"Retry-After": str(retry_after)},
            )

    return _check
