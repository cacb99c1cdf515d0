"""
Health checks for liveness/readiness probes.

- database: required; a failure makes the service unhealthy
- redis: optional; idempotency and rate limiting degrade without it
- gateway: an open circuit breaker degrades payments but not carts
"""
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orderflow.integrations.gateway import PaymentGateway

logger = structlog.get_logger(__name__)

HEALTHY = "healthy"
DEGRADED = "degraded"
UNHEALTHY = "unhealthy"


class HealthCheckError(Exception):
    """Raised when a dependency check fails."""


class HealthCheck:
    """Probe the pipeline's dependencies."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis_client: Optional[aioredis.Redis] = None,
        gateway: Optional[PaymentGateway] = None,
    ) -> None:
        self.session_factory = session_factory
        self.redis_client = redis_client
        self.gateway = gateway

    async def check_database(self) -> Dict[str, Any]:
        try:
            async with self.session_factory() as db:
                await db.execute(text("SELECT 1"))
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {e}") from e
        return {"status": HEALTHY, "message": "Database connection successful"}

    async def check_redis(self) -> Dict[str, Any]:
        if self.redis_client is None:
            return {"status": HEALTHY, "message": "Redis not configured"}
        try:
            await self.redis_client.ping()
        except Exception as e:
            logger.warning("redis_health_check_failed", error=str(e))
            return {"status": DEGRADED, "message": f"Redis unavailable, using database fallback: {e}"}
        return {"status": HEALTHY, "message": "Redis connection successful"}

    async def check_gateway(self) -> Dict[str, Any]:
        """Local view of the gateway: the circuit breaker state, no network call."""
        if self.gateway is None:
            return {"status": HEALTHY, "message": "Gateway not configured"}
        state = self.gateway.circuit_state
        return {
            "status": DEGRADED if state == "open" else HEALTHY,
            "gateway": self.gateway.name,
            "circuit_state": state,
        }

    async def _run(self, name: str, check: Callable[[], Awaitable[Dict[str, Any]]]) -> Dict[str, Any]:
        start = time.perf_counter()
        try:
            result = await check()
        except HealthCheckError as e:
            result = {"status": UNHEALTHY, "error": str(e)}
        result["service"] = name
        result["duration_ms"] = round((time.perf_counter() - start) * 1000, 2)
        return result

    async def check_all(self) -> Dict[str, Any]:
        """Run every check; overall status is the worst of them."""
        checks = {
            "database": await self._run("database", self.check_database),
            "redis": await self._run("redis", self.check_redis),
            "gateway": await self._run("gateway", self.check_gateway),
        }
        statuses = {check["status"] for check in checks.values()}
        if UNHEALTHY in statuses:
            overall = UNHEALTHY
        elif DEGRADED in statuses:
            overall = DEGRADED
        else:
            overall = HEALTHY
        return {"status": overall, "checks": checks}

    async def liveness(self) -> Dict[str, Any]:
        """Process is up; dependencies are not consulted."""
        return {"status": "alive", "message": "Application is running"}

    async def readiness(self) -> Dict[str, Any]:
        """Ready unless a required dependency (the database) is down."""
        return await self.check_all()
