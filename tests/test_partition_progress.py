"""Partition offset bookkeeping unit tests."""

import threading

import pytest

from vibration_processor.consumer import PartitionProgress


@pytest.fixture
def progress():
    return PartitionProgress("vibration_raw", 0)


class TestCommitProgress:
    def test_nothing_committable_initially(self, progress):
        assert progress.take_commit() is None

    def test_commit_waits_for_contiguous_prefix(self, progress):
        for offset in (10, 11, 12):
            progress.track(offset)

        progress.mark_done(11)
        assert progress.take_commit() is None

        progress.mark_done(10)
        assert progress.take_commit() == 12

        progress.mark_done(12)
        assert progress.take_commit() == 13
        assert progress.in_flight == 0

    def test_confirmed_commit_is_not_repeated(self, progress):
        progress.track(0)
        progress.mark_done(0)
        progress.confirm_commit(progress.take_commit())
        assert progress.take_commit() is None

    def test_unconfirmed_commit_is_offered_again(self, progress):
        progress.track(0)
        progress.mark_done(0)
        assert progress.take_commit() == 1
        assert progress.take_commit() == 1

    def test_offsets_must_increase(self, progress):
        progress.track(5)
        with pytest.raises(ValueError):
            progress.track(5)

    def test_unknown_offset_is_ignored(self, progress):
        progress.track(1)
        progress.mark_done(99)
        assert progress.take_commit() is None


class TestPublishTurns:
    def test_sequence_numbers(self, progress):
        assert [progress.track(offset) for offset in (3, 4, 7)] == [0, 1, 2]

    def test_first_turn_is_immediate(self, progress):
        seq = progress.track(0)
        assert progress.wait_turn(seq, threading.Event())

    def test_out_of_order_finish(self, progress):
        for offset in range(3):
            progress.track(offset)

        progress.finish_turn(1)
        progress.finish_turn(0)

        assert progress.wait_turn(2, threading.Event(), poll=0.01)

    def test_finish_is_idempotent(self, progress):
        progress.track(0)
        progress.track(1)
        progress.finish_turn(0)
        progress.finish_turn(0)
        assert progress.wait_turn(1, threading.Event(), poll=0.01)

    def test_stop_event_interrupts_wait(self, progress):
        progress.track(0)
        seq = progress.track(1)
        stop_event = threading.Event()
        stop_event.set()
        assert progress.wait_turn(seq, stop_event, poll=0.01) is False

    def test_waiter_wakes_when_turn_comes(self, progress):
        first = progress.track(0)
        second = progress.track(1)
        result = []

        waiter = threading.Thread(
            target=lambda: result.append(progress.wait_turn(second, threading.Event()))
        )
        waiter.start()
        progress.finish_turn(first)
        waiter.join(timeout=5)

        assert result == [True]
