"""
State Tracker
Retry / dead-letter state machine over the shared state store

    PENDING -> PROCESSING -> COMPLETED
                          -> FAILED -> PENDING        (retry_count < max_retries)
                                    -> DEAD_LETTERED  (retry_count >= max_retries, terminal)

The worker whose call moves a record into FAILED owns the routing of that
failure. Other copies of the record wait for it; they take over only once
the FAILED state has not been touched for ``failed_takeover_seconds``.
"""

import logging
import time
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from ..exceptions import DeliveryError, StateStoreError
from ..models import ProcessingState, ProcessingStatus
from .retry_policy import RetryPolicy
from .state_store import StateStore, TransitionFn

logger = logging.getLogger(__name__)


class Admission(Enum):
    """What a worker should do with a consumed record"""

    PROCESS = "process"
    DUPLICATE = "duplicate"
    RESUME_FAILED = "resume_failed"
    FAILED_ELSEWHERE = "failed_elsewhere"


class StateTracker:
    """Owns every mutation of ProcessingState"""

    def __init__(
        self,
        store: StateStore,
        policy: RetryPolicy,
        config: Optional[Dict] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize state tracker

        Args:
            store: Backing state store
            policy: Retry budget
            config: Configuration dictionary
            clock: Source for last_updated timestamps
        """
        config = config or {}
        store_config = config.get("state_store", {})

        self.store = store
        self.policy = policy
        self.max_attempts = max(int(store_config.get("max_attempts", 3)), 1)
        self.retry_delay = float(store_config.get("retry_delay_seconds", 0.1))
        self.takeover_after = timedelta(
            seconds=float(store_config.get("failed_takeover_seconds", 120.0))
        )
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def get(self, record_id: str) -> Optional[ProcessingState]:
        return self._call(record_id, lambda: self.store.get(record_id))

    def admit(self, record_id: str) -> Tuple[Admission, ProcessingState]:
        """
        Claim a record for processing

        New and PENDING records move to PROCESSING. A record already in
        PROCESSING is reclaimed (its previous owner crashed or lost the
        partition). COMPLETED and DEAD_LETTERED records are duplicates.
        A FAILED record is claimed for routing without being reprocessed
        when its owner has gone quiet, and is FAILED_ELSEWHERE otherwise.
        """
        now = self.clock()
        claimed: List[bool] = []

        def _admit(current: Optional[ProcessingState]) -> Optional[ProcessingState]:
            claimed.clear()
            if current is None:
                return ProcessingState(
                    record_id=record_id,
                    state=ProcessingStatus.PROCESSING,
                    last_updated=now,
                )
            if current.state in (ProcessingStatus.PENDING, ProcessingStatus.PROCESSING):
                return current.evolve(state=ProcessingStatus.PROCESSING, last_updated=now)
            return self._claim_failed(current, now, claimed)

        state = self._transition(record_id, _admit)

        if state.state is ProcessingStatus.PROCESSING:
            return Admission.PROCESS, state
        if state.state is ProcessingStatus.FAILED:
            return (Admission.RESUME_FAILED if claimed else Admission.FAILED_ELSEWHERE), state
        return Admission.DUPLICATE, state

    def resume_failed(self, record_id: str) -> Tuple[Admission, Optional[ProcessingState]]:
        """
        Re-check a record another worker is routing

        Returns:
            RESUME_FAILED if the owner went quiet and this caller took over,
            FAILED_ELSEWHERE while the owner is still active, DUPLICATE once
            the failure has been routed
        """
        now = self.clock()
        claimed: List[bool] = []

        def _resume(current: Optional[ProcessingState]) -> Optional[ProcessingState]:
            claimed.clear()
            if current is None:
                return None
            return self._claim_failed(current, now, claimed)

        state = self._transition_or_none(record_id, _resume)

        if state is not None and state.state is ProcessingStatus.FAILED:
            return (Admission.RESUME_FAILED if claimed else Admission.FAILED_ELSEWHERE), state
        return Admission.DUPLICATE, state

    def touch_failed(self, record_id: str) -> None:
        """Keep ownership of a FAILED record while its routing is slow"""
        now = self.clock()

        def _touch(current: Optional[ProcessingState]) -> Optional[ProcessingState]:
            if current is not None and current.state is ProcessingStatus.FAILED:
                return current.evolve(last_updated=now)
            return None

        self._transition_or_none(record_id, _touch)

    def _claim_failed(
        self, current: ProcessingState, now: datetime, claimed: List[bool]
    ) -> Optional[ProcessingState]:
        if current.state is not ProcessingStatus.FAILED:
            return None
        if current.last_updated is not None and now - current.last_updated < self.takeover_after:
            return None
        claimed.append(True)
        return current.evolve(last_updated=now)

    def mark_completed(self, record_id: str) -> ProcessingState:
        now = self.clock()

        def _complete(current: Optional[ProcessingState]) -> Optional[ProcessingState]:
            if current is None or current.state is ProcessingStatus.PROCESSING:
                return ProcessingState(
                    record_id=record_id,
                    state=ProcessingStatus.COMPLETED,
                    retry_count=current.retry_count if current else 0,
                    last_error=current.last_error if current else None,
                    last_updated=now,
                )
            return None

        return self._transition(record_id, _complete)

    def record_failure(
        self, record_id: str, error: str, admitted_at: Optional[datetime] = None
    ) -> Tuple[ProcessingState, bool]:
        """
        Move a record to FAILED, incrementing retry_count exactly once

        Args:
            record_id: Record that failed
            error: Error description stored as last_error
            admitted_at: ``last_updated`` of the state returned by ``admit``;
                a failure from an attempt that was since reclaimed is ignored

        Returns:
            The stored state, and whether this call made the move. Only the
            caller that made it may route the failure; use
            ``policy.exhausted(state.retry_count)`` to choose between retry
            and dead-letter.
        """
        now = self.clock()
        failed: List[bool] = []

        def _fail(current: Optional[ProcessingState]) -> Optional[ProcessingState]:
            failed.clear()
            if current is None:
                failed.append(True)
                return ProcessingState(
                    record_id=record_id,
                    state=ProcessingStatus.FAILED,
                    retry_count=1,
                    last_error=error,
                    last_updated=now,
                )
            if current.state is ProcessingStatus.PROCESSING and (
                admitted_at is None or current.last_updated == admitted_at
            ):
                failed.append(True)
                return current.evolve(
                    state=ProcessingStatus.FAILED,
                    retry_count=current.retry_count + 1,
                    last_error=error,
                    last_updated=now,
                )
            return None

        state = self._transition(record_id, _fail)
        if failed:
            logger.info(
                f"Record {record_id} failed (retry_count={state.retry_count}/"
                f"{self.policy.max_retries}): {error}"
            )
        return state, bool(failed)

    def mark_pending(self, record_id: str) -> bool:
        """
        FAILED with retries left -> PENDING, before the retry is enqueued

        Returns:
            True only for the call that performed the transition
        """
        now = self.clock()
        transitioned: List[bool] = []

        def _pending(current: Optional[ProcessingState]) -> Optional[ProcessingState]:
            transitioned.clear()
            if (
                current is not None
                and current.state is ProcessingStatus.FAILED
                and not self.policy.exhausted(current.retry_count)
            ):
                transitioned.append(True)
                return current.evolve(state=ProcessingStatus.PENDING, last_updated=now)
            return None

        self._transition_or_none(record_id, _pending)
        return bool(transitioned)

    def mark_dead_lettered(self, record_id: str) -> bool:
        """
        FAILED with no retries left -> DEAD_LETTERED

        Returns:
            True only for the call that performed the transition
        """
        now = self.clock()
        transitioned: List[bool] = []

        def _dead_letter(current: Optional[ProcessingState]) -> Optional[ProcessingState]:
            transitioned.clear()
            if (
                current is not None
                and current.state is ProcessingStatus.FAILED
                and self.policy.exhausted(current.retry_count)
            ):
                transitioned.append(True)
                return current.evolve(
                    state=ProcessingStatus.DEAD_LETTERED, last_updated=now
                )
            return None

        self._transition_or_none(record_id, _dead_letter)
        return bool(transitioned)

    def _transition_or_none(
        self, record_id: str, fn: TransitionFn
    ) -> Optional[ProcessingState]:
        return self._call(
            record_id, lambda: self.store.atomically_transition(record_id, fn)
        )

    def _transition(self, record_id: str, fn: TransitionFn) -> ProcessingState:
        state = self._transition_or_none(record_id, fn)
        if state is None:
            raise DeliveryError(
                f"State store returned no state for {record_id}", record_id=record_id
            )
        return state

    def _call(self, record_id: str, operation):
        """Run a store operation with bounded local retries"""
        last_error: Optional[StateStoreError] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                return operation()
            except StateStoreError as e:
                last_error = e
                logger.warning(
                    f"State store error for {record_id} "
                    f"(attempt {attempt}/{self.max_attempts}): {e}"
                )
                if attempt < self.max_attempts:
                    time.sleep(self.retry_delay * attempt)

        raise DeliveryError(
            f"State store unavailable after {self.max_attempts} attempts: {last_error}",
            record_id=record_id,
        )
