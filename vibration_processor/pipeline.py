"""
Stream Processing Pipeline
Orchestrates data flow from the input channel to the processed channel with
feature engineering, bounded concurrency and commit-after-publish
"""

import logging
import queue
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set, Tuple

from .consumer.batch_decoder import BatchDecoder, derive_record_id
from .consumer.kafka_consumer import InMemoryBroker, MockConsumer, VibrationBatchConsumer
from .consumer.partition_progress import PartitionProgress
from .delivery.delivery_manager import DeliveryManager, Outcome
from .exceptions import OutlierRejected
from .features.dimensionality_reducer import DimensionalityReducer
from .features.feature_extractor import FeatureExtractor
from .features.outlier_gate import OutlierGate
from .features.quality_scorer import QualityScorer
from .models import ConsumedMessage, ProcessingRecord, RawVibrationBatch
from .state.retry_policy import RetryPolicy
from .state.state_store import InMemoryStateStore, RedisStateStore, StateStore
from .state.state_tracker import StateTracker
from .writer.kafka_publisher import KafkaRecordPublisher, MockPublisher

logger = logging.getLogger(__name__)

PartitionKey = Tuple[str, int]

# How long aborted records get to notice the abort before the pool is dropped
ABANDON_TIMEOUT_SECONDS = 5.0


class VibrationPipeline:
    """
    Composes the pure processing stages

    Decoder -> Outlier Gate -> Feature Extractor -> Dimensionality Reducer
    -> Quality Scorer. Each stage returns a new immutable value; none of
    them touches shared state.
    """

    def __init__(self, config: Dict, clock: Optional[Callable[[], datetime]] = None):
        self.decoder = BatchDecoder(config)
        self.outlier_gate = OutlierGate(config)
        self.feature_extractor = FeatureExtractor(config)
        self.reducer = DimensionalityReducer.from_config(config)
        self.quality_scorer = QualityScorer(config, clock=clock)

    def run(self, batch: RawVibrationBatch, record_id: str) -> ProcessingRecord:
        """
        Run stages after decoding

        Raises:
            OutlierRejected: If the outlier gate flags the batch
        """
        verdict = self.outlier_gate.evaluate(batch)
        if not verdict.is_valid:
            raise OutlierRejected(
                verdict.outlier_score,
                self.outlier_gate.max_outlier_ratio,
                record_id=record_id,
            )

        features = self.feature_extractor.extract(batch)
        reduced = self.reducer.transform(features)
        quality = self.quality_scorer.score(batch, features, verdict)

        return ProcessingRecord(
            record_id=record_id,
            raw_data=batch,
            outlier_check=verdict,
            features=features,
            reduced_features=reduced,
            quality_metrics=quality,
        )

    def process(self, value, key: Optional[str] = None) -> ProcessingRecord:
        """Decode a raw message and run every stage"""
        batch = self.decoder.decode(value, key=key)
        return self.run(batch, derive_record_id(batch.source_id, batch.source_timestamp))


class StreamProcessor:
    """Main stream processing worker"""

    def __init__(
        self,
        config: Dict,
        mock_mode: bool = False,
        consumer=None,
        publisher=None,
        state_store: Optional[StateStore] = None,
        broker: Optional[InMemoryBroker] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize stream processor

        Args:
            config: Configuration dictionary
            mock_mode: Use in-memory broker, publisher and state store
            consumer: Pre-built consumer (overrides mock_mode)
            publisher: Pre-built publisher (overrides mock_mode)
            state_store: Pre-built state store (overrides mock_mode)
            broker: In-memory broker shared by mock consumer and publisher
            clock: Wall-clock source for processing timestamps
        """
        self.config = config
        self.mock_mode = mock_mode

        # Processing settings
        proc_config = config.get("processing", {})
        self.num_workers = int(proc_config.get("num_workers", 4))
        self.max_in_flight = int(proc_config.get("max_in_flight", 64))
        self.poll_timeout_ms = int(proc_config.get("poll_timeout_ms", 500))
        self.commit_interval = float(proc_config.get("commit_interval_seconds", 5.0))
        self.shutdown_timeout = float(proc_config.get("shutdown_timeout_seconds", 30.0))
        self.stats_interval = float(proc_config.get("stats_interval_seconds", 30.0))

        self.broker = broker
        if self.broker is None and mock_mode:
            self.broker = InMemoryBroker(
                partitions=int(config.get("kafka", {}).get("mock_partitions", 1))
            )

        # Initialize components
        self._init_consumer(consumer)
        self._init_publisher(publisher)
        self._init_state_store(state_store)

        self.pipeline = VibrationPipeline(config, clock=clock)
        self.tracker = StateTracker(
            self.state_store, RetryPolicy.from_config(config), config
        )

        # Set once the drain deadline passes; interrupts every wait in flight
        self.abort_event = threading.Event()
        self._stop_requested = threading.Event()

        self.delivery = DeliveryManager(
            config, self.pipeline, self.publisher, self.tracker, self.abort_event
        )

        self._partitions: Dict[PartitionKey, PartitionProgress] = {}
        self._futures: Set[Future] = set()
        self._completed: "queue.Queue[Tuple[Future, PartitionProgress, int]]" = queue.Queue()
        self._executor: Optional[ThreadPoolExecutor] = None

        # Statistics
        self.stats = {
            "messages_consumed": 0,
            "max_in_flight_observed": 0,
            "commits": 0,
            "consumer_lag": None,
            "start_time": None,
        }

        self.running = False
        self.consumer.set_rebalance_callbacks(self._on_revoked, self._on_assigned)

        logger.info(
            f"Stream processor initialized. "
            f"Mock mode: {mock_mode}, Workers: {self.num_workers}, "
            f"Max in flight: {self.max_in_flight}"
        )

    def _init_consumer(self, consumer):
        """Initialize input consumer"""
        if consumer is not None:
            self.consumer = consumer
        elif self.mock_mode:
            self.consumer = MockConsumer(self.config, broker=self.broker)
            logger.info("Using mock Kafka consumer")
        else:
            self.consumer = VibrationBatchConsumer(self.config)
            logger.info("Using real Kafka consumer")

    def _init_publisher(self, publisher):
        """Initialize output publisher"""
        if publisher is not None:
            self.publisher = publisher
        elif self.mock_mode:
            self.publisher = MockPublisher(self.config, broker=self.broker)
            logger.info("Using mock Kafka publisher")
        else:
            self.publisher = KafkaRecordPublisher(self.config)
            logger.info("Using real Kafka publisher")

    def _init_state_store(self, state_store: Optional[StateStore]):
        """Initialize state store"""
        backend = self.config.get("state_store", {}).get("backend", "redis")
        if state_store is not None:
            self.state_store = state_store
        elif self.mock_mode or backend == "memory":
            self.state_store = InMemoryStateStore()
            logger.info("Using in-memory state store")
        else:
            self.state_store = RedisStateStore(self.config)
            logger.info("Using Redis state store")

    def _on_assigned(self, partitions: List[PartitionKey]):
        for tp in partitions:
            if tp not in self._partitions:
                self._partitions[tp] = PartitionProgress(*tp)

    def _on_revoked(self, partitions: List[PartitionKey]):
        """Commit what is resolved, then forget the partitions"""
        self._drain_completed()
        self._commit(partitions)
        for tp in partitions:
            self._partitions.pop(tp, None)

    def _dispatch(self, message: ConsumedMessage):
        tp = message.topic_partition
        progress = self._partitions.get(tp)
        if progress is None:
            progress = self._partitions[tp] = PartitionProgress(*tp)

        seq = progress.track(message.offset)
        future = self._executor.submit(self.delivery.handle, message, progress, seq)
        self._futures.add(future)
        future.add_done_callback(
            lambda f, p=progress, o=message.offset: self._completed.put((f, p, o))
        )

        self.stats["messages_consumed"] += 1
        self.stats["max_in_flight_observed"] = max(
            self.stats["max_in_flight_observed"], len(self._futures)
        )

    def _resolve(self, future: Future, progress: PartitionProgress, offset: int):
        self._futures.discard(future)
        try:
            outcome = future.result()
        except Exception as e:
            logger.error(
                f"Worker crashed on {progress.topic}[{progress.partition}]@{offset}: {e}",
                exc_info=True,
            )
            # The offset stays uncommitted and is redelivered after a restart
            return

        if outcome.resolved:
            progress.mark_done(offset)

    def _drain_completed(self):
        """Mark finished records as resolved, in the consumer thread"""
        while True:
            try:
                completion = self._completed.get_nowait()
            except queue.Empty:
                return
            self._resolve(*completion)

    def _await_completion(self, timeout: float) -> bool:
        """Block until one in-flight record reports back"""
        try:
            completion = self._completed.get(timeout=max(timeout, 0.001))
        except queue.Empty:
            return False
        self._resolve(*completion)
        self._drain_completed()
        return True

    def _await_all(self, deadline: float):
        while self._futures:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            self._await_completion(min(remaining, 0.5))

    def _commit(self, partitions: Optional[List[PartitionKey]] = None):
        """Commit every partition whose resolved prefix advanced"""
        offsets = {}
        for tp, progress in self._partitions.items():
            if partitions is not None and tp not in partitions:
                continue
            offset = progress.take_commit()
            if offset is not None:
                offsets[tp] = offset

        if offsets and self.consumer.commit(offsets):
            for tp, offset in offsets.items():
                self._partitions[tp].confirm_commit(offset)
            self.stats["commits"] += 1

    def _poll(self, paused: bool) -> Tuple[List[ConsumedMessage], bool]:
        """Fetch new input while there is capacity, otherwise keep the group alive"""
        capacity = self.max_in_flight - len(self._futures)

        if capacity <= 0:
            if not paused:
                logger.warning(
                    f"{len(self._futures)} records in flight, pausing consumption"
                )
                paused = True
            self.consumer.pause_all()
            stray = self.consumer.poll(max_records=1, timeout_ms=self.poll_timeout_ms)
            if stray:
                # Partitions assigned during this poll are not paused yet
                self.consumer.rewind(stray)
            return [], paused

        if paused:
            logger.info("Capacity available, resuming consumption")
            self.consumer.resume_all()
            paused = False

        messages = self.consumer.poll(
            max_records=capacity, timeout_ms=self.poll_timeout_ms
        )
        return messages, paused

    def start(self, stop_when_idle: bool = False):
        """
        Start stream processing; blocks until stop() is called

        Args:
            stop_when_idle: Return once all input is resolved and the
                consumer has no lag (used for replay and tests)
        """
        if self.running:
            logger.warning("Processor already running")
            return

        self.running = True
        self.stats["start_time"] = time.time()
        self._executor = ThreadPoolExecutor(
            max_workers=self.num_workers, thread_name_prefix="vibration-worker"
        )

        logger.info("Starting stream processor...")

        paused = False
        last_commit = last_stats = time.monotonic()

        try:
            while not self._stop_requested.is_set():
                self._drain_completed()

                messages, paused = self._poll(paused)
                for message in messages:
                    self._dispatch(message)

                now = time.monotonic()
                if now - last_commit >= self.commit_interval:
                    self._commit()
                    last_commit = now

                if now - last_stats >= self.stats_interval:
                    self.stats["consumer_lag"] = self.consumer.lag()
                    self._log_progress()
                    last_stats = now

                if stop_when_idle and not messages and not self._futures:
                    if not self.consumer.lag():
                        logger.info("Input drained, stopping")
                        break

                if self._futures and not messages:
                    self._await_completion(self.poll_timeout_ms / 1000)

        except KeyboardInterrupt:
            logger.info("Received interrupt signal")

        finally:
            self._shutdown()

    def stop(self):
        """Request a graceful stop; safe to call from any thread"""
        self._stop_requested.set()

    def _shutdown(self):
        """Drain in-flight records up to the deadline, commit, close"""
        logger.info("Stopping stream processor...")

        self._drain_completed()
        if self._futures:
            logger.info(
                f"Draining {len(self._futures)} in-flight records "
                f"(deadline {self.shutdown_timeout}s)..."
            )
            self._await_all(time.monotonic() + self.shutdown_timeout)

        # Remaining records give up their waits and will be redelivered
        self.abort_event.set()
        if self._futures:
            logger.warning(f"Abandoning {len(self._futures)} records past the deadline")
            self._await_all(time.monotonic() + ABANDON_TIMEOUT_SECONDS)

        # Final commit of fully acknowledged records only
        self._commit()

        if self._executor:
            self._executor.shutdown(wait=False, cancel_futures=True)

        self.consumer.close()
        self.publisher.close()
        self.state_store.close()
        self.running = False

        self._print_statistics()
        logger.info("Stream processor stopped")

    def get_stats(self) -> Dict:
        """Counters for external monitoring"""
        stats = {
            "messages_consumed": self.stats["messages_consumed"],
            "in_flight": len(self._futures),
            "max_in_flight_observed": self.stats["max_in_flight_observed"],
            "commits": self.stats["commits"],
            "consumer_lag": self.stats["consumer_lag"],
        }
        delivery_stats = self.delivery.get_stats()
        stats.update(
            {
                "processed": delivery_stats[Outcome.PUBLISHED.value],
                "rejected": delivery_stats[Outcome.REJECTED.value],
                "duplicates": delivery_stats[Outcome.DUPLICATE.value],
                "failures": delivery_stats["failures"],
                "retries_scheduled": delivery_stats[Outcome.RETRY_SCHEDULED.value],
                "dead_lettered": delivery_stats[Outcome.DEAD_LETTERED.value],
                "abandoned": delivery_stats[Outcome.ABANDONED.value],
            }
        )
        return stats

    def _log_progress(self):
        stats = self.get_stats()
        logger.info(
            f"Consumed {stats['messages_consumed']}, processed {stats['processed']}, "
            f"failures {stats['failures']}, dead-lettered {stats['dead_lettered']}, "
            f"in flight {stats['in_flight']}, lag {stats['consumer_lag']}"
        )

    def _print_statistics(self):
        """Print processing statistics"""
        stats = self.get_stats()
        elapsed_time = time.time() - (self.stats["start_time"] or time.time())

        logger.info("=" * 50)
        logger.info("Stream Processing Statistics")
        logger.info("=" * 50)
        for name, value in stats.items():
            logger.info(f"{name.replace('_', ' ').capitalize()}: {value}")
        logger.info(f"Elapsed time: {elapsed_time:.2f} seconds")

        if elapsed_time > 0:
            throughput = stats["processed"] / elapsed_time
            logger.info(f"Throughput: {throughput:.2f} messages/sec")

        logger.info("=" * 50)
