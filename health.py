"""
Health Check Module
Health reporting for the corridor pipeline components.

This module provides:
- A registry of per-component health probes with a timeout
- Aggregate pipeline status (worst component wins)
- Probe factories for circuit breakers, the cache and the ledger client
"""

import asyncio
import time
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Any
from dataclasses import dataclass, field
from enum import Enum
from datetime import timedelta

from circuit_breaker import CircuitBreakerRegistry, HalfOpen

logger = logging.getLogger("CorridorScope.health")

HealthProbe = Callable[[], Awaitable["ComponentHealth"]]


class HealthStatus(Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


# UNKNOWN ranks with DEGRADED: an unanswered probe should not take the pipeline down
_SEVERITY = {
    HealthStatus.HEALTHY: 0,
    HealthStatus.UNKNOWN: 1,
    HealthStatus.DEGRADED: 1,
    HealthStatus.UNHEALTHY: 2,
}


@dataclass
class ComponentHealth:
    """Result of one probe"""
    name: str
    status: HealthStatus
    message: str = ""
    checked_at: float = field(default_factory=time.time)
    duration_ms: float = 0.0
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "message": self.message,
            "checked_at": self.checked_at,
            "duration_ms": round(self.duration_ms, 2),
            "details": self.details
        }


@dataclass
class PipelineHealth:
    """Every component result plus the worst-of status"""
    status: HealthStatus
    components: List[ComponentHealth]
    uptime_seconds: float
    checked_at: float = field(default_factory=time.time)

    @property
    def is_healthy(self) -> bool:
        return self.status is HealthStatus.HEALTHY

    @property
    def is_ready(self) -> bool:
        """Degraded pipelines still serve (possibly stale) results"""
        return self.status is not HealthStatus.UNHEALTHY

    def component(self, name: str) -> Optional[ComponentHealth]:
        return next((c for c in self.components if c.name == name), None)

    def to_dict(self) -> Dict[str, Any]:
        uptime = int(self.uptime_seconds)
        return {
            "status": self.status.value,
            "is_healthy": self.is_healthy,
            "is_ready": self.is_ready,
            "uptime_seconds": uptime,
            "uptime_human": str(timedelta(seconds=uptime)),
            "checked_at": self.checked_at,
            "components": [component.to_dict() for component in self.components]
        }


def _overall_status(components: List[ComponentHealth]) -> HealthStatus:
    if not components:
        return HealthStatus.HEALTHY
    worst = max(components, key=lambda c: _SEVERITY[c.status]).status
    return HealthStatus.DEGRADED if worst is HealthStatus.UNKNOWN else worst


class HealthChecker:
    """
    Runs registered health probes.

    Usage:
        checker = HealthChecker()
        checker.register("circuit_breakers", create_circuit_breaker_health_check(breakers))
        checker.register("cache", create_cache_health_check(cache))

        health = await checker.check_all()
        print(health.to_dict())
    """

    def __init__(self, start_time: Optional[float] = None, check_timeout: float = 5.0):
        self._start_time = start_time or time.time()
        self._probes: Dict[str, HealthProbe] = {}
        self._results: Dict[str, ComponentHealth] = {}
        self._check_timeout = check_timeout

    def register(self, name: str, check_func: HealthProbe):
        """
        Register a health probe.

        Args:
            name: Component name
            check_func: Zero-argument coroutine function returning ComponentHealth
        """
        self._probes[name] = check_func

    def unregister(self, name: str):
        self._probes.pop(name, None)

    @property
    def registered(self) -> List[str]:
        return list(self._probes)

    async def check_component(self, name: str) -> ComponentHealth:
        probe = self._probes.get(name)
        if probe is None:
            return ComponentHealth(name=name, status=HealthStatus.UNKNOWN, message=f"no probe registered for {name}")

        started = time.monotonic()
        try:
            result = await asyncio.wait_for(probe(), timeout=self._check_timeout)
        except asyncio.TimeoutError:
            result = ComponentHealth(
                name=name,
                status=HealthStatus.UNHEALTHY,
                message=f"probe timed out after {self._check_timeout}s"
            )
        except Exception as e:
            logger.warning(f"Health probe {name} raised: {e}")
            result = ComponentHealth(
                name=name,
                status=HealthStatus.UNHEALTHY,
                message=f"probe raised {type(e).__name__}: {e}"
            )
        result.duration_ms = (time.monotonic() - started) * 1000

        self._results[name] = result
        return result

    async def check_all(self) -> PipelineHealth:
        """Run every probe concurrently"""
        components = list(await asyncio.gather(*map(self.check_component, self._probes)))
        return PipelineHealth(
            status=_overall_status(components),
            components=components,
            uptime_seconds=self.uptime_seconds
        )

    def get_last_result(self, name: str) -> Optional[ComponentHealth]:
        return self._results.get(name)

    @property
    def uptime_seconds(self) -> float:
        return time.time() - self._start_time


# =============================================================================
# PROBE FACTORIES
# =============================================================================

def create_circuit_breaker_health_check(breakers: CircuitBreakerRegistry) -> HealthProbe:
    """Any open or half-open breaker degrades health; every breaker open is unhealthy"""

    async def check() -> ComponentHealth:
        open_ops = [op for op, cb in breakers.items() if cb.is_open]
        probing_ops = [op for op, cb in breakers.items() if isinstance(cb.state, HalfOpen)]

        if not open_ops and not probing_ops:
            status, message = HealthStatus.HEALTHY, "all circuits closed"
        elif len(open_ops) == len(breakers):
            status, message = HealthStatus.UNHEALTHY, "every upstream operation is short-circuited"
        else:
            status = HealthStatus.DEGRADED
            message = f"open: {sorted(open_ops) or '-'}, half-open: {sorted(probing_ops) or '-'}"

        return ComponentHealth(
            name="circuit_breakers",
            status=status,
            message=message,
            details={"states": breakers.snapshot(), "open_count": len(open_ops)}
        )

    return check


def create_cache_health_check(cache_manager) -> HealthProbe:
    """Reports cache statistics; a stopped sweeper is a degradation"""

    async def check() -> ComponentHealth:
        stats = cache_manager.get_stats()
        if stats["sweeper_running"]:
            status = HealthStatus.HEALTHY
            message = "Cache sweeper running"
        else:
            status = HealthStatus.DEGRADED
            message = "Cache sweeper not running; expired entries only removed on access"

        return ComponentHealth(name="cache", status=status, message=message, details=stats)

    return check


def create_ledger_client_health_check(client) -> HealthProbe:
    """Connection state plus the upstream quota seen by the rate limiter"""

    async def check() -> ComponentHealth:
        stats = client.get_stats()
        if client.is_connected:
            status = HealthStatus.HEALTHY
            message = f"Connected to {client.base_url}"
        else:
            status = HealthStatus.UNHEALTHY
            message = "Ledger API client not connected"

        return ComponentHealth(
            name="ledger_client",
            status=status,
            message=message,
            details={"base_url": stats["base_url"], "rate_limiter": stats["rate_limiter"]}
        )

    return check


def create_pipeline_health_checker(service, start_time: Optional[float] = None) -> HealthChecker:
    """HealthChecker with every probe registered for a CorridorService"""
    checker = HealthChecker(start_time=start_time)
    checker.register("circuit_breakers", create_circuit_breaker_health_check(service.client.breakers))
    checker.register("cache", create_cache_health_check(service.cache))
    checker.register("ledger_client", create_ledger_client_health_check(service.client))
    return checker
