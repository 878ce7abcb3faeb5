from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    UNKNOWN = "unknown"
    RATE_LIMITED = "rate_limited"
    UNHEALTHY = "unhealthy"


# Candidate ordering: lower rank sorts first
HEALTH_RANK = {
    HealthStatus.HEALTHY: 0,
    HealthStatus.UNKNOWN: 1,
    HealthStatus.RATE_LIMITED: 2,
    HealthStatus.UNHEALTHY: 3,
}


@dataclass
class KeyConfig:
    name: str
    token: str


@dataclass(frozen=True)
class AuthConfig:
    header: str = "Authorization"
    scheme: str = "Bearer"
    in_: Literal["header", "query"] = "header"
    query_param: str = "key"


@dataclass(frozen=True)
class RetryConfig:
    # same-key retries after the first attempt
    max_retries: int = 2
    # linear backoff: backoff_base * (attempt + 1) seconds
    backoff_base: float = 1.0
    # selection attempts when replacing a failed key
    failover_attempts: int = 3
    # upstream statuses that are never retried with the same key
    terminal_statuses: frozenset[int] = field(default_factory=lambda: frozenset({400, 401, 403}))


@dataclass(frozen=True)
class BalancerConfig:
    strategy: str = "adaptive"
    cursor_name: str = "round_robin_index"
    # seconds; None keeps the cursor forever
    cursor_ttl: float | None = None


@dataclass
class UpstreamResult:
    status: int
    data: Any = None
    latency_ms: float = 0.0
