"""
Health checks for liveness/readiness probes.

Checks:
- Database connectivity
- Redis connectivity (webhook replay cache, optional)
- Pub/sub hub reachability (reported, never fails readiness)
"""
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from qris_reconciler.config import Settings, get_settings
from qris_reconciler.database.connection import get_session_factory
from qris_reconciler.integrations.hub_client import HubClient

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Provides:
    - Database connectivity check
    - Redis connectivity check
    - Hub status check
    - Overall system health status
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        hub: Optional[HubClient] = None,
    ) -> None:
        """Initialize health check service."""
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.hub = hub or HubClient(self.settings)

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Returns:
            Dict[str, Any]: Database health status

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            session_factory = self.session_factory or get_session_factory()
            async with session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()

                return {
                    "status": "healthy",
                    "service": "database",
                    "message": "Database connection successful",
                }

        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")

    async def check_redis(self) -> Dict[str, Any]:
        """
        Check Redis connectivity.

        Redis only backs the webhook replay cache, so an unset ``redis_url``
        is reported as disabled rather than unhealthy.

        Raises:
            HealthCheckError: If Redis is configured but unreachable
        """
        if not self.settings.redis_url:
            return {
                "status": "disabled",
                "service": "redis",
                "message": "Webhook replay cache not configured",
            }

        redis_client: aioredis.Redis | None = None
        try:
            redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            await redis_client.ping()

            return {
                "status": "healthy",
                "service": "redis",
                "message": "Redis connection successful",
            }

        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {str(e)}")

        finally:
            if redis_client:
                await redis_client.aclose()

    async def check_hub(self) -> Dict[str, Any]:
        status = await self.hub.get_status()
        if status is None:
            return {"status": "unreachable", "service": "hub"}
        return {"status": "healthy", "service": "hub", "details": status}

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks = {}
        all_healthy = True

        try:
            checks["database"] = await self.check_database()
        except HealthCheckError as e:
            checks["database"] = {
                "status": "unhealthy",
                "service": "database",
                "error": str(e),
            }
            all_healthy = False

        try:
            checks["redis"] = await self.check_redis()
        except HealthCheckError as e:
            checks["redis"] = {
                "status": "unhealthy",
                "service": "redis",
                "error": str(e),
            }
            all_healthy = False

        # Publishing is best-effort, an unreachable hub does not block traffic
        checks["hub"] = await self.check_hub()

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness probe endpoint.

        Does not check external dependencies.
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe: all required dependencies reachable."""
        return await self.check_all()
