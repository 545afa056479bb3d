import pytest

import support  # noqa: F401

from services.deduplication import RequestDeduplicator
from services.errors import DuplicateRequestError


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def test_second_request_inside_window_is_rejected():
    clock = FakeClock()
    dedup = RequestDeduplicator(window_seconds=3, ttl_seconds=5, clock=clock)

    dedup.register("120-80-Cotton", "req-1")
    clock.now += 1.5
    with pytest.raises(DuplicateRequestError) as exc_info:
        dedup.register("120-80-Cotton", "req-2")

    assert exc_info.value.retry_after == 3
    assert exc_info.value.status_code == 429
    assert exc_info.value.to_payload()["retryAfter"] == 3
    # Different configuration is unaffected
    dedup.register("120-80-Linen", "req-3")


def test_stale_entry_no_longer_blocks():
    clock = FakeClock()
    dedup = RequestDeduplicator(window_seconds=3, ttl_seconds=5, clock=clock)

    dedup.register("k", "req-1")
    clock.now += 3.5
    dedup.register("k", "req-2")

    clock.now += 6
    dedup.prune()
    assert "k" not in dedup


def test_release_only_removes_own_entry():
    dedup = RequestDeduplicator(clock=FakeClock())
    dedup.register("k", "req-1")

    dedup.release("k", "someone-else")
    assert "k" in dedup

    dedup.release("k", "req-1")
    assert "k" not in dedup
    dedup.release("k")


def test_over_capacity_evicts_oldest_slice():
    clock = FakeClock()
    dedup = RequestDeduplicator(max_entries=10, evict_fraction=0.2, ttl_seconds=1000, clock=clock)
    for i in range(11):
        clock.now += 0.01
        dedup.register(f"key-{i}", f"req-{i}")

    clock.now += 0.01
    dedup.register("key-new", "req-new")

    assert "key-0" not in dedup
    assert "key-1" not in dedup
    assert "key-2" in dedup
    assert len(dedup) == 10
