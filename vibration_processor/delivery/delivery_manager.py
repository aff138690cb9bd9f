"""
Delivery Manager
Runs one consumed record through the pipeline and resolves it exactly once:
published, dropped as an outlier, skipped as a duplicate, re-enqueued on the
retry channel or emitted to the dead-letter channel
"""

import logging
import threading
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Optional, Tuple, TypeVar

from ..consumer.batch_decoder import (
    RETRY_ENVELOPE_KEY,
    RETRY_METADATA_KEY,
    BatchDecoder,
    Envelope,
    position_id,
)
from ..consumer.partition_progress import PartitionProgress
from ..exceptions import DeliveryError, OutlierRejected, ProcessingError
from ..models import ConsumedMessage, ProcessingState
from ..state.state_tracker import Admission, StateTracker
from ..utils.config_loader import topic_names

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Outcome(Enum):
    """How a consumed record was resolved"""

    PUBLISHED = "published"
    REJECTED = "rejected"
    DUPLICATE = "duplicate"
    RETRY_SCHEDULED = "retry_scheduled"
    DEAD_LETTERED = "dead_lettered"
    ABANDONED = "abandoned"

    @property
    def resolved(self) -> bool:
        """Whether the input offset may be committed"""
        return self is not Outcome.ABANDONED


class _Abandoned(Exception):
    """Shutdown interrupted a record before it was resolved"""


class _Turn:
    """Publish slot of one record within its partition"""

    def __init__(
        self,
        progress: Optional[PartitionProgress],
        seq: Optional[int],
        stop_event: threading.Event,
    ):
        self.progress = progress
        self.seq = seq
        self.stop_event = stop_event
        self.released = False

    def wait(self) -> bool:
        if self.progress is None:
            return True
        return self.progress.wait_turn(self.seq, self.stop_event)

    def release(self):
        if self.progress is not None and not self.released:
            self.released = True
            self.progress.finish_turn(self.seq)


class DeliveryManager:
    """Commit-after-publish delivery with retry and dead-letter routing"""

    def __init__(
        self,
        config: Dict,
        pipeline,
        publisher,
        tracker: StateTracker,
        stop_event: Optional[threading.Event] = None,
    ):
        """
        Initialize delivery manager

        Args:
            config: Configuration dictionary
            pipeline: VibrationPipeline running stages decode..score
            publisher: KafkaRecordPublisher or MockPublisher
            tracker: State tracker for retry bookkeeping
            stop_event: Set on shutdown to interrupt waits
        """
        self.pipeline = pipeline
        self.decoder: BatchDecoder = pipeline.decoder
        self.publisher = publisher
        self.tracker = tracker
        self.policy = tracker.policy
        self.stop_event = stop_event or threading.Event()

        topics = topic_names(config)
        self.processed_topic = topics["processed"]
        self.retry_topic = topics["retry"]
        self.dead_letter_topic = topics["dead_letter"]

        proc_config = config.get("processing", {})
        self.store_backoff = float(proc_config.get("state_store_backoff_seconds", 1.0))
        self.failed_poll = float(proc_config.get("failed_poll_seconds", 1.0))

        self.stats = {outcome.value: 0 for outcome in Outcome}
        self.stats["failures"] = 0
        self._stats_lock = threading.Lock()

    def handle(
        self,
        message: ConsumedMessage,
        progress: Optional[PartitionProgress] = None,
        seq: Optional[int] = None,
    ) -> Outcome:
        """
        Process one consumed message to a final outcome

        Args:
            message: Consumed input or retry message
            progress: Partition bookkeeping, for in-order publishing
            seq: Sequence number assigned by ``progress.track``

        Returns:
            The outcome; the input offset may be committed unless it is
            ABANDONED
        """
        turn = _Turn(progress, seq, self.stop_event)
        try:
            outcome = self._handle(message, turn)
        except _Abandoned:
            outcome = self._abandoned(message)
        except Exception as e:
            turn.release()
            logger.error(
                f"Unexpected error handling {position_id(message)}: {e}", exc_info=True
            )
            try:
                outcome = self._fail_unhandled(message, e)
            except _Abandoned:
                outcome = self._abandoned(message)
        finally:
            turn.release()

        self._count(outcome.value)
        return outcome

    def _handle(self, message: ConsumedMessage, turn: _Turn) -> Outcome:
        envelope = self.decoder.unwrap(message.value)
        record_id = self.decoder.record_id_for(envelope, message)
        source_key = envelope.source_key or message.key

        admission, state = self._with_store(lambda: self.tracker.admit(record_id))

        if admission is Admission.FAILED_ELSEWHERE:
            turn.release()
            admission, state = self._await_failure_owner(record_id)

        if admission is Admission.DUPLICATE:
            status = state.state.value if state is not None else "gone"
            logger.info(f"Skipping {record_id}: already {status}")
            return Outcome.DUPLICATE

        if admission is Admission.RESUME_FAILED:
            turn.release()
            return self._route_failure(envelope, record_id, source_key, state)

        try:
            batch = self.decoder.decode(envelope.message, key=source_key)
            record = self.pipeline.run(batch, record_id)
        except OutlierRejected as e:
            turn.release()
            logger.info(f"Dropped {record_id}: {e}")
            self._with_store(lambda: self.tracker.mark_completed(record_id))
            return Outcome.REJECTED
        except ProcessingError as e:
            turn.release()
            logger.warning(f"Processing failed for {record_id}: {e}")
            return self._fail(
                envelope, record_id, source_key, e.error_type, str(e), state.last_updated
            )
        except Exception as e:
            turn.release()
            logger.error(f"Unexpected error processing {record_id}: {e}", exc_info=True)
            return self._fail(
                envelope, record_id, source_key, "unexpected_error", str(e), state.last_updated
            )

        if not turn.wait():
            raise _Abandoned()

        try:
            self.publisher.publish(self.processed_topic, record_id, record.to_dict())
        except DeliveryError as e:
            turn.release()
            logger.warning(f"Publish failed for {record_id}: {e}")
            return self._fail(
                envelope, record_id, source_key, e.error_type, str(e), state.last_updated
            )

        turn.release()
        self._with_store(lambda: self.tracker.mark_completed(record_id))
        return Outcome.PUBLISHED

    def _await_failure_owner(
        self, record_id: str
    ) -> Tuple[Admission, Optional[ProcessingState]]:
        """Wait until another worker routes the failure, or take it over"""
        logger.info(f"Record {record_id} is being routed by another worker; waiting")
        while True:
            if self.stop_event.wait(self.failed_poll):
                raise _Abandoned()
            admission, state = self._with_store(
                lambda: self.tracker.resume_failed(record_id)
            )
            if admission is not Admission.FAILED_ELSEWHERE:
                if admission is Admission.RESUME_FAILED:
                    logger.warning(f"Taking over routing of stale failure {record_id}")
                return admission, state

    def _fail_unhandled(self, message: ConsumedMessage, error: Exception) -> Outcome:
        """Route a message that could not even be identified, keyed by position"""
        raw = message.value
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8", errors="replace")
        return self._fail(
            Envelope(message=raw),
            position_id(message),
            message.key,
            "unexpected_error",
            f"{type(error).__name__}: {error}",
        )

    def _abandoned(self, message: ConsumedMessage) -> Outcome:
        logger.info(
            f"Abandoned {message.topic}[{message.partition}]@{message.offset} "
            f"on shutdown; it will be redelivered"
        )
        return Outcome.ABANDONED

    def _fail(
        self,
        envelope: Envelope,
        record_id: str,
        source_key: Optional[str],
        error_type: str,
        error: str,
        admitted_at: Optional[datetime] = None,
    ) -> Outcome:
        state, failed = self._with_store(
            lambda: self.tracker.record_failure(
                record_id, f"{error_type}: {error}", admitted_at
            )
        )
        if not failed:
            logger.info(
                f"Failure of {record_id} not recorded: another copy already "
                f"moved it to {state.state.value}"
            )
            return Outcome.DUPLICATE

        self._count("failures")
        return self._route_failure(envelope, record_id, source_key, state)

    def _route_failure(
        self,
        envelope: Envelope,
        record_id: str,
        source_key: Optional[str],
        state: ProcessingState,
    ) -> Outcome:
        """Called only by the worker that owns the FAILED state"""
        if self.policy.exhausted(state.retry_count):
            return self._dead_letter(envelope, record_id, state)

        # PENDING before the envelope exists; the input offset stays
        # uncommitted until the envelope is acknowledged
        if not self._with_store(lambda: self.tracker.mark_pending(record_id)):
            logger.info(f"Retry of {record_id} already scheduled by another worker")
            return Outcome.DUPLICATE

        delay = self.policy.delay_for(state.retry_count)
        logger.info(
            f"Retrying {record_id} in {delay:.2f}s "
            f"(attempt {state.retry_count + 1}/{self.policy.max_retries})"
        )
        if self.stop_event.wait(delay):
            raise _Abandoned()

        retry_message = {
            RETRY_ENVELOPE_KEY: envelope.message,
            RETRY_METADATA_KEY: {
                "record_id": record_id,
                "retry_count": state.retry_count,
                "last_error": state.last_error,
                "last_error_time": _isoformat(state.last_updated),
                "source_key": source_key,
            },
        }
        self._publish_until_acked(self.retry_topic, record_id, retry_message)
        return Outcome.RETRY_SCHEDULED

    def _dead_letter(
        self, envelope: Envelope, record_id: str, state: ProcessingState
    ) -> Outcome:
        entry = {
            "original_message": envelope.message,
            "error_count": state.retry_count,
            "last_error_time": _isoformat(state.last_updated),
            "last_error": state.last_error,
            "record_id": record_id,
        }
        self._publish_until_acked(
            self.dead_letter_topic,
            record_id,
            entry,
            keep_claim=lambda: self.tracker.touch_failed(record_id),
        )

        if self._with_store(lambda: self.tracker.mark_dead_lettered(record_id)):
            logger.error(
                f"Dead-lettered {record_id} after {state.retry_count} failures: "
                f"{state.last_error}"
            )
        return Outcome.DEAD_LETTERED

    def _publish_until_acked(
        self,
        topic: str,
        key: str,
        value: Dict,
        keep_claim: Optional[Callable[[], None]] = None,
    ):
        """Retry channel publishes hold their slot until the broker acknowledges"""
        attempt = 0
        while True:
            try:
                self.publisher.publish(topic, key, value)
                return
            except DeliveryError as e:
                attempt += 1
                delay = self.policy.delay_for(attempt)
                logger.warning(
                    f"Publish to {topic} failed for {key} (attempt {attempt}), "
                    f"waiting {delay:.2f}s: {e}"
                )
                if self.stop_event.wait(delay):
                    raise _Abandoned()
                if keep_claim is not None:
                    self._with_store(keep_claim)

    def _with_store(self, operation: Callable[[], T]) -> T:
        """Keep the record in flight while the state store is unreachable"""
        while True:
            try:
                return operation()
            except DeliveryError as e:
                logger.error(f"{e}; retrying in {self.store_backoff:.2f}s")
                if self.stop_event.wait(self.store_backoff):
                    raise _Abandoned()

    def _count(self, name: str):
        with self._stats_lock:
            self.stats[name] += 1

    def get_stats(self) -> Dict[str, int]:
        with self._stats_lock:
            return dict(self.stats)


def _isoformat(timestamp: Optional[datetime]) -> str:
    return (timestamp or datetime.now(timezone.utc)).isoformat()
