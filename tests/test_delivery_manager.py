"""Delivery manager tests: publish, drop, dedup, retry and dead-letter routing."""

import json
import threading
import time
from datetime import timedelta

import pytest

from vibration_processor.consumer import PartitionProgress
from vibration_processor.delivery import DeliveryManager, Outcome
from vibration_processor.exceptions import ComputationError
from vibration_processor.models import ConsumedMessage, ProcessingStatus
from vibration_processor.pipeline import VibrationPipeline
from vibration_processor.state import InMemoryStateStore, RetryPolicy, StateTracker
from vibration_processor.writer import MockPublisher

from conftest import BASE_TIME, sine

PROCESSED = "vibration_processed"
RETRY = "vibration_retry"
DEAD_LETTER = "vibration_dead_letter"
RECORD_ID = "press-01:2024-01-15T10:30:00+00:00"


@pytest.fixture
def store():
    return InMemoryStateStore()


@pytest.fixture
def publisher(config):
    return MockPublisher(config)


@pytest.fixture
def stop_event():
    return threading.Event()


@pytest.fixture
def manager(config, publisher, store, stop_event):
    tracker = StateTracker(store, RetryPolicy.from_config(config), config)
    return DeliveryManager(config, VibrationPipeline(config), publisher, tracker, stop_event)


@pytest.fixture
def consumed(encode):
    def _consumed(message, offset=0, topic="vibration_raw", key=None):
        value = message if isinstance(message, bytes) else encode(message)
        return ConsumedMessage(topic=topic, partition=0, offset=offset, value=value, key=key)

    return _consumed


def _redeliver_retry(publisher, consumed, index=-1):
    """Consume the latest retry envelope the way the retry channel would"""
    retry = publisher.get_messages(RETRY)[index]
    return consumed(json.dumps(retry["value"]).encode("utf-8"), topic=RETRY, key=retry["key"])


class TestHappyPath:
    def test_valid_record_is_published(self, manager, publisher, store, consumed, make_message):
        outcome = manager.handle(consumed(make_message()))

        assert outcome is Outcome.PUBLISHED
        messages = publisher.get_messages(PROCESSED)
        assert len(messages) == 1
        assert messages[0]["key"] == RECORD_ID

        record = messages[0]["value"]
        assert record["record_id"] == RECORD_ID
        assert set(record) == {
            "record_id",
            "raw_data",
            "outlier_check",
            "features",
            "reduced_features",
            "quality_metrics",
        }
        assert record["raw_data"]["SourceId"] == "press-01"
        assert record["outlier_check"] == {"is_valid": True, "outlier_score": 0.0}
        assert len(record["reduced_features"]["principal_components"]) == 3
        assert 0.0 <= record["quality_metrics"]["data_quality_score"] <= 1.0
        assert store.get(RECORD_ID).state is ProcessingStatus.COMPLETED

    def test_duplicate_is_skipped(self, manager, publisher, consumed, make_message):
        assert manager.handle(consumed(make_message(), offset=0)) is Outcome.PUBLISHED
        assert manager.handle(consumed(make_message(), offset=1)) is Outcome.DUPLICATE

        assert len(publisher.get_messages(PROCESSED)) == 1
        assert manager.get_stats()["duplicate"] == 1

    def test_outlier_is_dropped(self, manager, publisher, store, consumed, make_message):
        x = sine(5.0)
        for index in range(0, 64, 2):
            x[index] = 5000.0

        outcome = manager.handle(consumed(make_message(x=x)))

        assert outcome is Outcome.REJECTED
        assert publisher.get_messages(PROCESSED) == []
        assert publisher.get_messages(RETRY) == []
        assert publisher.get_messages(DEAD_LETTER) == []
        assert store.get(RECORD_ID).state is ProcessingStatus.COMPLETED


class TestRetryRouting:
    def test_decode_failure_is_retried(self, manager, publisher, store, consumed):
        outcome = manager.handle(consumed(b"{broken", offset=5))

        assert outcome is Outcome.RETRY_SCHEDULED
        retries = publisher.get_messages(RETRY)
        assert len(retries) == 1

        envelope = retries[0]["value"]
        assert envelope["original_message"] == "{broken"
        assert envelope["retry"]["record_id"] == "vibration_raw-0-5"
        assert envelope["retry"]["retry_count"] == 1
        assert envelope["retry"]["last_error"].startswith("decode_error")

        state = store.get("vibration_raw-0-5")
        assert state.state is ProcessingStatus.PENDING
        assert state.retry_count == 1

    def test_exhausted_record_is_dead_lettered_once(
        self, manager, publisher, store, consumed, make_message
    ):
        message = make_message(StatusCode="Wobbly")

        outcomes = [manager.handle(consumed(message))]
        while outcomes[-1] is Outcome.RETRY_SCHEDULED:
            outcomes.append(manager.handle(_redeliver_retry(publisher, consumed)))

        assert outcomes == [
            Outcome.RETRY_SCHEDULED,
            Outcome.RETRY_SCHEDULED,
            Outcome.DEAD_LETTERED,
        ]
        retry_counts = [m["value"]["retry"]["retry_count"] for m in publisher.get_messages(RETRY)]
        assert retry_counts == [1, 2]

        dead_letters = publisher.get_messages(DEAD_LETTER)
        assert len(dead_letters) == 1
        entry = dead_letters[0]["value"]
        assert entry["record_id"] == RECORD_ID
        assert entry["error_count"] == 3
        assert entry["original_message"] == message
        assert "Unknown status code" in entry["last_error"]

        assert store.get(RECORD_ID).state is ProcessingStatus.DEAD_LETTERED
        assert publisher.get_messages(PROCESSED) == []

    def test_redelivered_dead_letter_is_duplicate(
        self, manager, publisher, consumed, make_message
    ):
        message = make_message(StatusCode="Wobbly")
        outcome = manager.handle(consumed(message))
        while outcome is Outcome.RETRY_SCHEDULED:
            outcome = manager.handle(_redeliver_retry(publisher, consumed))

        assert manager.handle(consumed(message)) is Outcome.DUPLICATE
        assert len(publisher.get_messages(DEAD_LETTER)) == 1

    def test_publish_failure_is_retried_then_delivered(
        self, manager, publisher, store, consumed, make_message
    ):
        publisher.fail_next = 1

        assert manager.handle(consumed(make_message())) is Outcome.RETRY_SCHEDULED
        assert publisher.get_messages(PROCESSED) == []

        assert manager.handle(_redeliver_retry(publisher, consumed)) is Outcome.PUBLISHED
        assert list(publisher.latest_by_key(PROCESSED)) == [RECORD_ID]

        state = store.get(RECORD_ID)
        assert state.state is ProcessingStatus.COMPLETED
        assert state.retry_count == 1

    def test_retry_keeps_source_key(self, manager, publisher, consumed, make_message):
        message = make_message(StatusCode="Wobbly")
        del message["SourceId"]

        manager.handle(consumed(message, key="sensor-9"))
        envelope = publisher.get_messages(RETRY)[0]["value"]

        assert envelope["retry"]["source_key"] == "sensor-9"
        assert envelope["retry"]["record_id"].startswith("sensor-9:")


class _FailTogetherPipeline(VibrationPipeline):
    """Fails every run once all parties have reached it"""

    def __init__(self, config, parties):
        super().__init__(config)
        self.barrier = threading.Barrier(parties)

    def run(self, batch, record_id):
        self.barrier.wait(timeout=5)
        raise ComputationError("spectrum undefined", record_id=record_id)


class TestConcurrentCopies:
    @pytest.mark.parametrize(
        "max_retries, routed, channel",
        [(1, Outcome.DEAD_LETTERED, DEAD_LETTER), (3, Outcome.RETRY_SCHEDULED, RETRY)],
    )
    def test_only_one_copy_routes_a_shared_failure(
        self, config, publisher, store, consumed, make_message, max_retries, routed, channel
    ):
        config["retry"]["max_retries"] = max_retries
        tracker = StateTracker(store, RetryPolicy.from_config(config), config)
        manager = DeliveryManager(
            config, _FailTogetherPipeline(config, parties=2), publisher, tracker
        )
        message = make_message()
        outcomes = []

        threads = [
            threading.Thread(
                target=lambda o=offset: outcomes.append(manager.handle(consumed(message, offset=o)))
            )
            for offset in (0, 1)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert sorted(outcome.value for outcome in outcomes) == sorted(
            [routed.value, Outcome.DUPLICATE.value]
        )
        assert len(publisher.get_messages(channel)) == 1
        assert store.get(RECORD_ID).retry_count == 1
        assert manager.get_stats()["failures"] == 1

    def test_copy_waits_for_failure_owner(
        self, manager, publisher, consumed, make_message
    ):
        manager.tracker.admit(RECORD_ID)
        manager.tracker.record_failure(RECORD_ID, "delivery_error: timeout")
        result = []

        copy = threading.Thread(
            target=lambda: result.append(manager.handle(consumed(make_message(), offset=1)))
        )
        copy.start()
        time.sleep(0.05)
        assert result == []

        assert manager.tracker.mark_pending(RECORD_ID)
        copy.join(timeout=5)

        assert result == [Outcome.DUPLICATE]
        assert publisher.get_messages(RETRY) == []

    def test_stale_failure_is_taken_over(
        self, config, publisher, store, consumed, make_message
    ):
        now = [BASE_TIME]
        tracker = StateTracker(
            store, RetryPolicy.from_config(config), config, clock=lambda: now[0]
        )
        manager = DeliveryManager(config, VibrationPipeline(config), publisher, tracker)
        tracker.admit(RECORD_ID)
        tracker.record_failure(RECORD_ID, "delivery_error: timeout")

        now[0] = BASE_TIME + timedelta(seconds=tracker.takeover_after.total_seconds() + 1)

        assert manager.handle(consumed(make_message())) is Outcome.RETRY_SCHEDULED
        envelope = publisher.get_messages(RETRY)[0]["value"]
        assert envelope["retry"]["retry_count"] == 1
        assert store.get(RECORD_ID).state is ProcessingStatus.PENDING

    def test_failed_dead_letter_publish_keeps_ownership(
        self, config, publisher, store, consumed, make_message
    ):
        config["retry"]["max_retries"] = 1
        tracker = StateTracker(store, RetryPolicy.from_config(config), config)
        manager = DeliveryManager(config, VibrationPipeline(config), publisher, tracker)
        touched = []
        real_touch = tracker.touch_failed
        tracker.touch_failed = lambda record_id: touched.append(record_id) or real_touch(record_id)
        publisher.fail_next = 1

        outcome = manager.handle(consumed(make_message(StatusCode="Wobbly")))

        assert outcome is Outcome.DEAD_LETTERED
        assert touched == [RECORD_ID]
        assert len(publisher.get_messages(DEAD_LETTER)) == 1


class TestUnhandledErrors:
    def test_unidentifiable_message_is_routed_by_position(
        self, manager, publisher, store, consumed, make_message, monkeypatch
    ):
        def broken(envelope, message):
            raise RuntimeError("record id lookup exploded")

        monkeypatch.setattr(manager.decoder, "record_id_for", broken)
        message = make_message()

        outcome = manager.handle(consumed(message, offset=7))

        assert outcome is Outcome.RETRY_SCHEDULED
        envelope = publisher.get_messages(RETRY)[0]["value"]
        assert envelope["retry"]["record_id"] == "vibration_raw-0-7"
        assert envelope["retry"]["last_error"].startswith("unexpected_error: RuntimeError")
        assert json.loads(envelope["original_message"]) == message
        assert store.get("vibration_raw-0-7").state is ProcessingStatus.PENDING


class TestShutdown:
    def test_stop_abandons_unresolved_record(
        self, config, manager, publisher, store, stop_event, consumed, make_message
    ):
        publisher.available = False
        stop_event.set()

        assert manager.handle(consumed(make_message())) is Outcome.ABANDONED
        assert not Outcome.ABANDONED.resolved

        state = store.get(RECORD_ID)
        assert state.state is ProcessingStatus.PENDING
        assert state.retry_count == 1
        assert publisher.get_messages(RETRY) == []

        # A fresh worker reprocesses the pending record without recounting
        restarted_publisher = MockPublisher(config)
        tracker = StateTracker(store, RetryPolicy.from_config(config), config)
        restarted = DeliveryManager(
            config, VibrationPipeline(config), restarted_publisher, tracker
        )

        assert restarted.handle(consumed(make_message())) is Outcome.PUBLISHED
        assert store.get(RECORD_ID).retry_count == 1
        assert store.get(RECORD_ID).state is ProcessingStatus.COMPLETED
        assert list(restarted_publisher.latest_by_key(PROCESSED)) == [RECORD_ID]


class TestPartitionOrder:
    def test_publishes_follow_consumption_order(
        self, manager, publisher, consumed, make_message
    ):
        progress = PartitionProgress("vibration_raw", 0)
        first = consumed(make_message(seconds=0), offset=0)
        second = consumed(make_message(seconds=1), offset=1)
        first_seq = progress.track(first.offset)
        second_seq = progress.track(second.offset)

        results = {}
        later = threading.Thread(
            target=lambda: results.setdefault(
                "second", manager.handle(second, progress, second_seq)
            )
        )
        later.start()
        results["first"] = manager.handle(first, progress, first_seq)
        later.join(timeout=10)

        assert results == {"first": Outcome.PUBLISHED, "second": Outcome.PUBLISHED}
        keys = [m["key"] for m in publisher.get_messages(PROCESSED)]
        assert keys == [
            "press-01:2024-01-15T10:30:00+00:00",
            "press-01:2024-01-15T10:30:01+00:00",
        ]

    def test_failure_releases_turn(self, manager, publisher, consumed, make_message):
        progress = PartitionProgress("vibration_raw", 0)
        broken = consumed(b"{broken", offset=0)
        valid = consumed(make_message(), offset=1)
        broken_seq = progress.track(broken.offset)
        valid_seq = progress.track(valid.offset)

        assert manager.handle(broken, progress, broken_seq) is Outcome.RETRY_SCHEDULED
        assert manager.handle(valid, progress, valid_seq) is Outcome.PUBLISHED
