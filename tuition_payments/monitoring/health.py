"""
Health checks for Kubernetes readiness/liveness probes.

The ledger database is required. Redis only backs the applied-order fast
path, so it is reported but never makes the service unready when the
cache is not configured.
"""
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tuition_payments.config import Settings, get_settings
from tuition_payments.database.connection import get_session_factory

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when a dependency check fails."""


class HealthCheck:
    """Probes the ledger database and the applied-order cache."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._session_factory = session_factory

    async def check_database(self) -> str:
        """
        Run a trivial query against the ledger database.

        Raises:
            HealthCheckError: If the database cannot be queried
        """
        try:
            session_factory = self._session_factory or get_session_factory()
            async with session_factory() as session:
                await session.execute(text("SELECT 1"))
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}") from e
        return "Ledger database reachable"

    async def check_redis(self) -> str:
        """
        Ping the applied-order cache when one is configured.

        Raises:
            HealthCheckError: If Redis is configured but unreachable
        """
        if not self.settings.redis_url:
            return "Applied-order cache not configured"

        client = aioredis.from_url(self.settings.redis_url, decode_responses=True)
        try:
            await client.ping()
        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {str(e)}") from e
        finally:
            await client.aclose()
        return "Applied-order cache reachable"

    @staticmethod
    async def _run(name: str, check: Callable[[], Awaitable[str]]) -> Dict[str, Any]:
        start = time.perf_counter()
        try:
            message = await check()
        except HealthCheckError as e:
            return {"status": "unhealthy", "service": name, "error": str(e)}
        return {
            "status": "healthy",
            "service": name,
            "message": message,
            "latency_ms": round((time.perf_counter() - start) * 1000, 2),
        }

    async def check_all(self) -> Dict[str, Any]:
        """Run every dependency check and aggregate the result."""
        checks = {
            "database": await self._run("database", self.check_database),
            "redis": await self._run("redis", self.check_redis),
        }
        healthy = all(check["status"] == "healthy" for check in checks.values())
        return {"status": "healthy" if healthy else "unhealthy", "checks": checks}

    async def liveness(self) -> Dict[str, Any]:
        """Process is up; external dependencies are not consulted."""
        return {"status": "alive", "message": "Application is running"}

    async def readiness(self) -> Dict[str, Any]:
        """Ready to reconcile payments only when every dependency is healthy."""
        return await self.check_all()
