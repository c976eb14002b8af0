from movie_chat.core.metrics import metrics
from movie_chat.core.rate_limiter import RateLimiter


class _Clock:
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now


def test_rate_limiter_allows_max_requests_then_rejects_until_window_elapses():
    clock = _Clock()
    limiter = RateLimiter(max_requests=3, window_ms=1000, clock=clock)

    assert [limiter.is_rate_limited("s1") for _ in range(3)] == [False, False, False]
    assert limiter.is_rate_limited("s1") is True

    clock.now += 1.001
    assert limiter.is_rate_limited("s1") is False


def test_rate_limiter_does_not_record_rejected_requests():
    clock = _Clock()
    limiter = RateLimiter(max_requests=1, window_ms=1000, clock=clock)

    assert limiter.is_rate_limited("s1") is False
    clock.now = 100.9
    assert limiter.is_rate_limited("s1") is True
    clock.now = 101.0
    assert limiter.is_rate_limited("s1") is False


def test_rate_limiter_tracks_sessions_independently():
    limiter = RateLimiter(max_requests=1, window_ms=30000, clock=_Clock())

    assert limiter.is_rate_limited("a") is False
    assert limiter.is_rate_limited("a") is True
    assert limiter.is_rate_limited("b") is False


def test_rate_limiter_remaining_and_clear_session():
    clock = _Clock()
    limiter = RateLimiter(max_requests=3, window_ms=1000, clock=clock)

    assert limiter.remaining("s1") == 3
    limiter.is_rate_limited("s1")
    limiter.is_rate_limited("s1")
    assert limiter.remaining("s1") == 1

    limiter.clear_session("s1")
    assert limiter.remaining("s1") == 3
    assert limiter.is_rate_limited("s1") is False


def test_rate_limiter_sweep_drops_expired_sessions():
    clock = _Clock()
    limiter = RateLimiter(max_requests=2, window_ms=1000, clock=clock)
    limiter.is_rate_limited("old")
    clock.now += 5
    limiter.is_rate_limited("fresh")

    assert limiter.sweep() == 1
    assert limiter.remaining("fresh") == 1


def test_rate_limiter_counts_rejections_in_metrics():
    limiter = RateLimiter(max_requests=1, window_ms=1000, clock=_Clock())
    limiter.is_rate_limited("s1")
    limiter.is_rate_limited("s1")

    assert metrics.snapshot().get("chat_rate_limited_total") == 1
