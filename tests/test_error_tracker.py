import asyncio
import json

import support  # noqa: F401

from services.error_tracker import ErrorTracker


class RecordingStorage:
    def __init__(self, fail=False):
        self.entries = []
        self.fail = fail

    async def log_action(self, action, message, product_id=None, variant_id=None, error_details=None):
        if self.fail:
            raise RuntimeError("db down")
        self.entries.append((action, message, error_details))
        return True


def test_third_error_in_window_raises_one_alarm():
    async def scenario():
        storage = RecordingStorage()
        now = {"t": 1000.0}
        tracker = ErrorTracker(storage, window_seconds=300, threshold=3, clock=lambda: now["t"])

        assert await tracker.track_error(RuntimeError("a"), {"variantId": "1"}) is False
        now["t"] += 10
        assert await tracker.track_error("b") is False
        now["t"] += 10
        assert await tracker.track_error(RuntimeError("c")) is True

        alarms = [e for e in storage.entries if e[0] == "alarm"]
        assert len(alarms) == 1
        details = json.loads(alarms[0][2])
        assert [e["error"] for e in details] == ["a", "b", "c"]
        assert details[0]["context"] == {"variantId": "1"}

    asyncio.run(scenario())


def test_errors_outside_window_do_not_count():
    async def scenario():
        storage = RecordingStorage()
        now = {"t": 1000.0}
        tracker = ErrorTracker(storage, window_seconds=300, threshold=3, clock=lambda: now["t"])

        await tracker.track_error("a")
        await tracker.track_error("b")
        now["t"] += 301
        assert await tracker.track_error("c") is False
        assert len(tracker.recent_errors) == 1
        assert storage.entries == []

    asyncio.run(scenario())


def test_saturated_window_fires_again_on_each_error():
    async def scenario():
        storage = RecordingStorage()
        tracker = ErrorTracker(storage, window_seconds=300, threshold=3, clock=lambda: 1000.0)
        for name in ("a", "b", "c", "d"):
            await tracker.track_error(name)
        assert len([e for e in storage.entries if e[0] == "alarm"]) == 2

    asyncio.run(scenario())


def test_alarm_write_failure_does_not_raise():
    async def scenario():
        tracker = ErrorTracker(RecordingStorage(fail=True), threshold=1, clock=lambda: 1000.0)
        assert await tracker.track_error("boom") is True

    asyncio.run(scenario())
