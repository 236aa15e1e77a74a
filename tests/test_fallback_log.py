from openrouter_assistant.errors import FailureKind
from openrouter_assistant.fallback_log import FallbackLog, FallbackReason, reason_for


class FakeClock:
    def __init__(self, now: float = 100_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_reason_for_maps_failure_kinds():
    assert reason_for(FailureKind.NETWORK_ERROR, "timeout after 30000ms") is FallbackReason.TIMEOUT
    assert reason_for(FailureKind.NETWORK_ERROR, "connection refused") is FallbackReason.API_ERROR
    assert reason_for(FailureKind.RATE_LIMIT) is FallbackReason.RATE_LIMIT
    assert reason_for(FailureKind.AUTH_ERROR) is FallbackReason.QUOTA
    assert reason_for(FailureKind.QUOTA_EXCEEDED) is FallbackReason.QUOTA
    assert reason_for(FailureKind.EMPTY_RESPONSE) is FallbackReason.MODEL_UNAVAILABLE
    assert reason_for(FailureKind.SERVER_ERROR) is FallbackReason.API_ERROR
    assert reason_for(None) is FallbackReason.UNKNOWN


def test_recent_returns_newest_events_last():
    log = FallbackLog(clock=FakeClock())
    for i in range(5):
        log.record(primary_model="a", fallback_model=f"b{i}", reason=FallbackReason.RATE_LIMIT)

    recent = log.recent(2)
    assert [e.fallback_model for e in recent] == ["b3", "b4"]
    assert log.recent(0) == []


def test_log_is_bounded():
    log = FallbackLog(max_events=3, clock=FakeClock())
    for i in range(10):
        log.record(primary_model="a", fallback_model=f"b{i}", reason=FallbackReason.API_ERROR)
    assert [e.fallback_model for e in log.recent(10)] == ["b7", "b8", "b9"]
    assert log.stats()["total"] == 3


def test_stats_counts_by_reason_and_last_day():
    clock = FakeClock()
    log = FallbackLog(clock=clock)
    log.record(primary_model="a", fallback_model="b", reason=FallbackReason.QUOTA)
    clock.now += 25 * 60 * 60
    log.record(primary_model="a", fallback_model="b", reason=FallbackReason.TIMEOUT, channel="whatsapp")
    log.record(primary_model="a", fallback_model="c", reason=FallbackReason.TIMEOUT)

    stats = log.stats()
    assert stats["total"] == 3
    assert stats["last_24_hours"] == 2
    assert stats["by_reason"]["timeout"] == 2
    assert stats["by_reason"]["quota"] == 1
    assert stats["by_reason"]["rate_limit"] == 0

    log.clear()
    assert log.stats()["total"] == 0
