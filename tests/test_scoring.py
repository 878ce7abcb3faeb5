from keybalance import HealthStatus, KeyState, score
from keybalance.scoring import latency_component, score_breakdown, success_component


def _key(**fields):
    return KeyState(id=fields.pop("id", 1), secret="s", **fields)


def test_fresh_key_gets_full_latency_and_zero_success():
    k = _key()
    assert k.total_requests == 0
    assert latency_component(k) == 25
    assert success_component(k) == 0
    # unknown health (20) + full latency (25)
    assert score(k) == 45


def test_health_weights():
    expected = {
        HealthStatus.HEALTHY: 40,
        HealthStatus.UNKNOWN: 20,
        HealthStatus.RATE_LIMITED: 5,
        HealthStatus.UNHEALTHY: 0,
    }
    for status, points in expected.items():
        assert score_breakdown(_key(health_status=status))["health"] == points


def test_best_possible_key_scores_100():
    k = _key(health_status=HealthStatus.HEALTHY, success_rate=1.0)
    assert score(k) == 100


def test_latency_penalty_is_linear_and_floored():
    assert latency_component(_key(avg_response_time_ms=1000)) == 20
    assert latency_component(_key(avg_response_time_ms=2500)) == 12.5
    assert latency_component(_key(avg_response_time_ms=60_000)) == 0


def test_monotonic_in_success_rate_and_latency():
    rates = [0.0, 0.25, 0.5, 0.9, 1.0]
    by_rate = [score(_key(success_rate=r, avg_response_time_ms=800)) for r in rates]
    assert by_rate == sorted(by_rate)

    latencies = [0, 1, 200, 1500, 4000, 9000]
    by_latency = [score(_key(success_rate=0.7, avg_response_time_ms=ms)) for ms in latencies]
    assert by_latency == sorted(by_latency, reverse=True)


def test_score_is_pure():
    k = _key(health_status=HealthStatus.HEALTHY, success_rate=0.5, avg_response_time_ms=300)
    before = k.snapshot()
    assert score(k) == score(k)
    assert k.snapshot() == before
