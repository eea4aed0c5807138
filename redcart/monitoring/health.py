"""
Health checks for liveness/readiness probes.

Checks:
- Database connectivity
- M-Pesa configuration (reported, never fatal)
"""
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from redcart.config import get_settings
from redcart.database.connection import get_session_factory

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """Health check service for monitoring system dependencies."""

    def __init__(
        self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None
    ) -> None:
        self.settings = get_settings()
        self._session_factory = session_factory

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            session_factory = self._session_factory or get_session_factory()
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

    def check_mpesa(self) -> Dict[str, Any]:
        """Report whether STK push is enabled; does not call the provider."""
        return {
            "status": "healthy",
            "service": "mpesa",
            "enabled": self.settings.mpesa_enabled,
            "mode": self.settings.mpesa_env,
        }

    async def liveness(self) -> Dict[str, Any]:
        return {"status": "healthy", "message": "Service is alive"}

    async def readiness(self) -> Dict[str, Any]:
        """Ready when the database answers."""
        try:
            database = await self.check_database()
        except HealthCheckError as e:
            return {"status": "unhealthy", "checks": {"database": str(e)}}
        return {"status": "healthy", "checks": {"database": database}}

    async def check_all(self) -> Dict[str, Any]:
        checks: Dict[str, Any] = {"mpesa": self.check_mpesa()}
        overall = "healthy"
        try:
            checks["database"] = await self.check_database()
        except HealthCheckError as e:
            checks["database"] = {"status": "unhealthy", "message": str(e)}
            overall = "unhealthy"
        return {"status": overall, "checks": checks}
