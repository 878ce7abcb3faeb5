from .state import KeyState
from .types import HealthStatus

HEALTH_WEIGHT = 40
SUCCESS_WEIGHT = 35
LATENCY_WEIGHT = 25
# Points lost per second of average latency
LATENCY_PENALTY_PER_SECOND = 5

HEALTH_POINTS = {
    HealthStatus.HEALTHY: HEALTH_WEIGHT,
    HealthStatus.UNKNOWN: 20,
    HealthStatus.RATE_LIMITED: 5,
    HealthStatus.UNHEALTHY: 0,
}


def health_component(key: KeyState) -> float:
    return float(HEALTH_POINTS.get(key.health_status, 0))


def success_component(key: KeyState) -> float:
    return (key.success_rate or 0.0) * SUCCESS_WEIGHT


def latency_component(key: KeyState) -> float:
    if key.avg_response_time_ms <= 0:
        # no latency data yet
        return float(LATENCY_WEIGHT)
    penalty = key.avg_response_time_ms / 1000 * LATENCY_PENALTY_PER_SECOND
    return max(0.0, LATENCY_WEIGHT - penalty)


def score(key: KeyState) -> float:
    """Fitness of a key in [0, 100]; higher is better. Pure."""
    return health_component(key) + success_component(key) + latency_component(key)


def score_breakdown(key: KeyState) -> dict[str, float]:
    return {
        "health": health_component(key),
        "success": success_component(key),
        "latency": latency_component(key),
        "total": score(key),
    }
