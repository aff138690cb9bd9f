"""
Partition Progress
Tracks in-flight offsets of one partition and the publish turn order
"""

import threading
from collections import OrderedDict
from typing import Optional, Set


class PartitionProgress:
    """
    In-flight bookkeeping for one assigned partition

    Offsets are tracked in consumption order. The committable offset only
    advances over a contiguous prefix of resolved records, so no commit
    ever passes an unresolved one. Each tracked record also receives a
    sequence number; ``wait_turn`` lets records publish in that order.
    """

    def __init__(self, topic: str, partition: int):
        self.topic = topic
        self.partition = partition
        self._cond = threading.Condition()
        self._pending: "OrderedDict[int, bool]" = OrderedDict()
        self._last_tracked: Optional[int] = None
        self._committable: Optional[int] = None
        self._committed: Optional[int] = None
        self._next_seq = 0
        self._turn = 0
        self._finished: Set[int] = set()

    def track(self, offset: int) -> int:
        """
        Register a consumed offset

        Returns:
            The record's publish sequence number
        """
        with self._cond:
            if self._last_tracked is not None and offset <= self._last_tracked:
                raise ValueError(
                    f"Offset {offset} not after {self._last_tracked} on "
                    f"{self.topic}[{self.partition}]"
                )
            self._last_tracked = offset
            self._pending[offset] = False
            seq = self._next_seq
            self._next_seq += 1
            return seq

    def mark_done(self, offset: int):
        with self._cond:
            if offset not in self._pending:
                return
            self._pending[offset] = True
            while self._pending:
                first, done = next(iter(self._pending.items()))
                if not done:
                    break
                self._pending.popitem(last=False)
                self._committable = first + 1

    def take_commit(self) -> Optional[int]:
        """Next offset to commit, or None if nothing new is committable"""
        with self._cond:
            if self._committable is None or self._committable == self._committed:
                return None
            return self._committable

    def confirm_commit(self, offset: int):
        with self._cond:
            if self._committed is None or offset > self._committed:
                self._committed = offset

    @property
    def in_flight(self) -> int:
        with self._cond:
            return len(self._pending)

    def wait_turn(self, seq: int, stop_event: threading.Event, poll: float = 0.2) -> bool:
        """
        Block until every earlier record has finished its turn

        Returns:
            False if ``stop_event`` was set before the turn came
        """
        with self._cond:
            while self._turn < seq:
                if stop_event.is_set():
                    return False
                self._cond.wait(poll)
            return True

    def finish_turn(self, seq: int):
        """Mark a turn finished; may be called before the turn has come"""
        with self._cond:
            if seq < self._turn:
                return
            self._finished.add(seq)
            while self._turn in self._finished:
                self._finished.remove(self._turn)
                self._turn += 1
            self._cond.notify_all()
