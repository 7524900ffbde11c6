from __future__ import annotations

from ingestion.rate_limiter import BucketConfig, TokenBucket


class FakeTime:
    def __init__(self) -> None:
        self.now = 100.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def test_bucket_spaces_requests_by_min_interval():
    fake = FakeTime()
    bucket = TokenBucket(
        BucketConfig.from_interval(0.5, name="test"), monotonic=fake.monotonic, sleep=fake.sleep
    )

    bucket.acquire()
    bucket.acquire()
    bucket.acquire()

    assert fake.sleeps == [0.5, 0.5]
    assert bucket.stats == {"total_requests": 3, "total_waits": 2}


def test_try_acquire_refills_over_time():
    fake = FakeTime()
    bucket = TokenBucket(BucketConfig(tokens_per_second=2.0), monotonic=fake.monotonic, sleep=fake.sleep)

    assert bucket.try_acquire()
    assert not bucket.try_acquire()
    fake.now += 0.5
    assert bucket.try_acquire()
