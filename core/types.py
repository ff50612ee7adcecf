"""
Deckforge - Core Type Definitions

Shared type aliases, health-status value objects and the base service
contract every container-managed service implements.

Usage:
    from core.types import BaseService, HealthState, ServiceHealthStatus

    class CardIndex(BaseService):
        name = "CardIndex"

        async def health_check(self) -> ServiceHealthStatus:
            return ServiceHealthStatus(HealthState.HEALTHY, metrics={"cards": 42})
"""
from __future__ import annotations

from abc import ABC
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

# =============================================================================
# TYPE ALIASES
# =============================================================================

# Closed set of JSON-like values carried in contexts, metadata and payloads
JSONScalar = Union[str, int, float, bool, None]
JSONValue = Union[JSONScalar, List[Any], Dict[str, Any]]
Metadata = Dict[str, JSONValue]
Tags = Dict[str, str]

MillisecondsDuration = float
SecondsDuration = float


# =============================================================================
# HEALTH
# =============================================================================


class HealthState(Enum):
    """Self-reported operational state of a service."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class ServiceHealthStatus:
    """Result of a single service health check."""

    status: HealthState
    message: Optional[str] = None
    metrics: Dict[str, JSONScalar] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_healthy(self) -> bool:
        return self.status == HealthState.HEALTHY

    @classmethod
    def unhealthy(cls, message: str) -> "ServiceHealthStatus":
        return cls(status=HealthState.UNHEALTHY, message=message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "message": self.message,
            "metrics": dict(self.metrics),
            "timestamp": self.timestamp.isoformat(),
        }


# =============================================================================
# SERVICE CONTRACT
# =============================================================================


class BaseService(ABC):
    """
    Base class for services managed by the ServiceContainer.

    The container is the only caller of ``initialize`` and ``shutdown``.
    Defaults are no-ops so leaf services override only what they need.
    """

    name: str = "BaseService"
    version: str = "1.0.0"

    async def initialize(self) -> None:
        """Acquire resources and start background work."""

    async def shutdown(self) -> None:
        """Release resources and stop background work."""

    async def health_check(self) -> ServiceHealthStatus:
        """Report current operational state."""
        return ServiceHealthStatus(status=HealthState.HEALTHY)
