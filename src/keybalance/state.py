import time
from dataclasses import dataclass, field
from typing import Any

from .types import HEALTH_RANK, HealthStatus

# Consecutive failures that force a key unhealthy
UNHEALTHY_THRESHOLD = 3
# Latency EMA: new = old * LATENCY_DECAY + latest * LATENCY_SAMPLE_WEIGHT
LATENCY_DECAY = 0.9
LATENCY_SAMPLE_WEIGHT = 0.1
RATE_LIMITED_STATUS = 429


@dataclass
class KeyState:
    id: int
    secret: str
    name: str = ""
    enabled: bool = True
    health_status: HealthStatus = HealthStatus.UNKNOWN
    total_requests: int = 0
    successful_requests: int = 0
    success_rate: float = 0.0
    avg_response_time_ms: float = 0.0
    consecutive_failures: int = 0
    last_check_time: float | None = None
    created_at: float = field(default_factory=time.time)

    def __post_init__(self):
        if not self.name:
            self.name = f"key-{self.id}"
        # backends may hand back plain strings from their rows
        try:
            self.health_status = HealthStatus(self.health_status)
        except ValueError:
            self.health_status = HealthStatus.UNKNOWN

    def sort_key(self) -> tuple:
        return (
            HEALTH_RANK.get(self.health_status, len(HEALTH_RANK)),
            -self.success_rate,
            self.avg_response_time_ms,
            self.id,
        )

    def apply_outcome(
        self,
        success: bool,
        latency_ms: float,
        status_code: int | None = None,
        now: float | None = None,
    ) -> dict[str, Any]:
        """Compute the metric fields produced by one feedback event.

        Does not modify the key; the caller writes the returned fields back
        to storage in a single update.
        """
        total = self.total_requests + 1
        successful = self.successful_requests + (1 if success else 0)
        if self.avg_response_time_ms == 0:
            avg = float(latency_ms)
        else:
            avg = self.avg_response_time_ms * LATENCY_DECAY + latency_ms * LATENCY_SAMPLE_WEIGHT

        if success:
            failures = 0
            status = HealthStatus.HEALTHY
        else:
            failures = self.consecutive_failures + 1
            if failures >= UNHEALTHY_THRESHOLD:
                status = HealthStatus.UNHEALTHY
            elif status_code == RATE_LIMITED_STATUS:
                status = HealthStatus.RATE_LIMITED
            else:
                status = HealthStatus.UNKNOWN

        return {
            "total_requests": total,
            "successful_requests": successful,
            "success_rate": successful / total,
            "avg_response_time_ms": avg,
            "consecutive_failures": failures,
            "health_status": status,
            "last_check_time": time.time() if now is None else now,
        }

    def snapshot(self) -> dict[str, Any]:
        """Read-only view for reporting; the secret is masked."""
        return {
            "id": self.id,
            "name": self.name,
            "secret": mask_secret(self.secret),
            "enabled": self.enabled,
            "health_status": self.health_status.value,
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "success_rate": self.success_rate,
            "avg_response_time_ms": self.avg_response_time_ms,
            "consecutive_failures": self.consecutive_failures,
            "last_check_time": self.last_check_time,
        }


def mask_secret(secret: str) -> str:
    if len(secret) <= 8:
        return "*" * len(secret)
    return f"{secret[:4]}...{secret[-4:]}"
