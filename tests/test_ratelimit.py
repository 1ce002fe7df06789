import pytest

from dataset_gateway.ratelimit import RateLimiter, TokenBucket, parse_rate_limit


class ManualClock:
    def __init__(self):
        self.t = 100.0

    def __call__(self):
        return self.t


@pytest.mark.parametrize(
    "spec,expected",
    [
        ("30/m", (30.0, 0.5)),
        ("10/s", (10.0, 10.0)),
        ("3600/h", (3600.0, 1.0)),
        (" 6 / minute ", (6.0, 0.1)),
    ],
)
def test_parse_rate_limit(spec, expected):
    cap, per_sec = parse_rate_limit(spec)
    assert cap == expected[0]
    assert per_sec == pytest.approx(expected[1])


@pytest.mark.parametrize("spec", ["", "30", "0/m", "-1/s", "5/fortnight", "abc/s"])
def test_parse_rate_limit_rejects(spec):
    with pytest.raises(ValueError):
        parse_rate_limit(spec)


def test_token_bucket_refills():
    bucket = TokenBucket.new(capacity=2, refill_rate_per_sec=1.0, now=0.0)
    assert bucket.allow(0.0)
    assert bucket.allow(0.0)
    assert not bucket.allow(0.0)
    assert bucket.allow(1.0)
    assert not bucket.allow(1.0)


def test_limiter_is_per_key():
    clock = ManualClock()
    limiter = RateLimiter(capacity=1, refill_rate_per_sec=0.1, clock=clock)
    assert limiter.allow("r:alice")
    assert not limiter.allow("r:alice")
    assert limiter.allow("r:bob")

    clock.t += 10.0
    assert limiter.allow("r:alice")


def test_limiter_evicts_full_buckets_at_capacity():
    clock = ManualClock()
    limiter = RateLimiter(capacity=1, refill_rate_per_sec=1.0, max_keys=2, clock=clock)
    assert limiter.allow("a")
    assert limiter.allow("b")
    # Both buckets are empty: no room for a third key
    assert not limiter.allow("c")

    clock.t += 5.0
    assert limiter.allow("c")


def test_limiter_from_spec():
    limiter = RateLimiter.from_spec("2/m", clock=ManualClock())
    assert limiter.allow("k")
    assert limiter.allow("k")
    assert not limiter.allow("k")


def test_limiter_rejects_non_positive_settings():
    with pytest.raises(ValueError):
        RateLimiter(capacity=0, refill_rate_per_sec=1.0)
