"""
Health check system for readiness and liveness probes.

Provides:
- Liveness probe: Is the process alive? (no I/O)
- Readiness probe: Can the ledger store take traffic? (database ping)
- Detailed health with component breakdown (ledger, AI provider, Stripe)

A ledger store failure makes the service unready; staging and billing
operations answer 503 in that state rather than guess at balances.
Missing AI or Stripe credentials only degrade the service.
"""

import time
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from magicstage import __version__
from magicstage.observability.logging import get_logger

logger = get_logger(__name__)


class HealthStatus(str, Enum):
    """Health status enumeration."""

    HEALTHY = "healthy"  # All checks passed
    DEGRADED = "degraded"  # Some non-critical checks failed
    UNHEALTHY = "unhealthy"  # Critical checks failed


class ComponentHealth(BaseModel):
    """Health status of a single component."""

    name: str = Field(description="Component name")
    status: HealthStatus = Field(description="Component health status")
    message: str | None = Field(default=None, description="Status message")
    latency_ms: float | None = Field(
        default=None, description="Health check latency in milliseconds"
    )
    last_check: datetime = Field(description="Last health check timestamp")
    metadata: dict[str, Any] | None = Field(default=None)


class HealthCheckResponse(BaseModel):
    status: HealthStatus
    timestamp: datetime
    uptime_seconds: float
    version: str
    components: list[ComponentHealth]


class LivenessResponse(BaseModel):
    status: str = Field(default="alive")
    timestamp: datetime


class ReadinessResponse(BaseModel):
    status: HealthStatus
    timestamp: datetime
    ready: bool = Field(description="Whether service is ready to accept traffic")
    components: list[ComponentHealth]


class HealthChecker:
    """
    Health check coordinator.

    Detailed health is cached for a short TTL so dashboards polling
    /health do not hammer the database.
    """

    def __init__(self, cache_ttl_seconds: float = 5.0):
        self.start_time = time.time()
        self.version = __version__

        self._health_cache: HealthCheckResponse | None = None
        self._health_cache_time: float = 0.0
        self._health_cache_ttl = cache_ttl_seconds

    def get_uptime_seconds(self) -> float:
        return time.time() - self.start_time

    async def check_liveness(self) -> LivenessResponse:
        """Liveness probe: only fails if the process is dead."""
        return LivenessResponse(status="alive", timestamp=datetime.now(UTC))

    async def check_readiness(self, ledger_db=None) -> ReadinessResponse:
        """
        Readiness probe: is the ledger store reachable?

        Returns:
            ReadinessResponse: ready is False when the ledger store is down
        """
        components: list[ComponentHealth] = []
        overall_status = HealthStatus.HEALTHY

        db_health = await self._check_database_health(ledger_db)
        components.append(db_health)
        if db_health.status == HealthStatus.UNHEALTHY:
            overall_status = HealthStatus.UNHEALTHY

        return ReadinessResponse(
            status=overall_status,
            timestamp=datetime.now(UTC),
            ready=overall_status != HealthStatus.UNHEALTHY,
            components=components,
        )

    async def check_health(self, ledger_db=None, settings=None) -> HealthCheckResponse:
        """
        Comprehensive health check with all components.

        Returns:
            HealthCheckResponse: Detailed health status
        """
        cache_age = time.time() - self._health_cache_time
        if self._health_cache and cache_age < self._health_cache_ttl:
            logger.debug("Health check cache hit", cache_age_ms=cache_age * 1000)
            return self._health_cache

        components: list[ComponentHealth] = []
        overall_status = HealthStatus.HEALTHY

        db_health = await self._check_database_health(ledger_db)
        components.append(db_health)
        if db_health.status == HealthStatus.UNHEALTHY:
            overall_status = HealthStatus.UNHEALTHY

        if settings is not None:
            for component in (
                self._check_configured(
                    "ai_provider",
                    settings.ai.has_api_key,
                    "AI provider configured",
                    "AI provider key missing (jobs will fail and refund)",
                ),
                self._check_configured(
                    "stripe",
                    settings.stripe.is_configured and settings.stripe.webhooks_enabled,
                    "Stripe configured",
                    "Stripe API key or webhook secret missing",
                ),
            ):
                components.append(component)
                if (
                    component.status == HealthStatus.DEGRADED
                    and overall_status == HealthStatus.HEALTHY
                ):
                    overall_status = HealthStatus.DEGRADED

        response = HealthCheckResponse(
            status=overall_status,
            timestamp=datetime.now(UTC),
            uptime_seconds=self.get_uptime_seconds(),
            version=self.version,
            components=components,
        )

        self._health_cache = response
        self._health_cache_time = time.time()

        return response

    async def _check_database_health(self, ledger_db) -> ComponentHealth:
        start_time = time.perf_counter()

        if ledger_db is None:
            return ComponentHealth(
                name="ledger_database",
                status=HealthStatus.UNHEALTHY,
                message="Ledger database not initialized",
                last_check=datetime.now(UTC),
            )

        try:
            await ledger_db.ping()
        except Exception as e:
            latency_ms = (time.perf_counter() - start_time) * 1000
            logger.error("Ledger database health check failed", error=str(e))
            return ComponentHealth(
                name="ledger_database",
                status=HealthStatus.UNHEALTHY,
                message=f"Database check failed: {e}",
                latency_ms=round(latency_ms, 2),
                last_check=datetime.now(UTC),
            )

        latency_ms = (time.perf_counter() - start_time) * 1000
        return ComponentHealth(
            name="ledger_database",
            status=HealthStatus.HEALTHY,
            message="Database responsive",
            latency_ms=round(latency_ms, 2),
            last_check=datetime.now(UTC),
        )

    @staticmethod
    def _check_configured(
        name: str, configured: bool, ok_message: str, missing_message: str
    ) -> ComponentHealth:
        return ComponentHealth(
            name=name,
            status=HealthStatus.HEALTHY if configured else HealthStatus.DEGRADED,
            message=ok_message if configured else missing_message,
            last_check=datetime.now(UTC),
            metadata={"configured": configured},
        )


_health_checker: HealthChecker | None = None


def get_health_checker() -> HealthChecker:
    global _health_checker
    if _health_checker is None:
        _health_checker = HealthChecker()
    return _health_checker
