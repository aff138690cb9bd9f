"""
Kafka Consumer for the Vibration Processor
Consumes raw and retry batches with manual, per-partition offset commits
"""

import logging
import threading
import time
import zlib
from collections import defaultdict
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from kafka import ConsumerRebalanceListener, KafkaConsumer, TopicPartition
from kafka.errors import KafkaError
from kafka.structs import OffsetAndMetadata

from ..models import ConsumedMessage
from ..utils.config_loader import topic_names

logger = logging.getLogger(__name__)

PartitionKey = Tuple[str, int]
RebalanceCallback = Callable[[List[PartitionKey]], None]


def _offset_and_metadata(offset: int) -> OffsetAndMetadata:
    # kafka-python >= 2.1 added leader_epoch to OffsetAndMetadata
    if len(OffsetAndMetadata._fields) == 3:
        return OffsetAndMetadata(offset, "", -1)
    return OffsetAndMetadata(offset, "")


class _RebalanceListener(ConsumerRebalanceListener):
    def __init__(self, owner: "VibrationBatchConsumer"):
        self.owner = owner

    def on_partitions_revoked(self, revoked):
        partitions = [(tp.topic, tp.partition) for tp in revoked]
        logger.info(f"Partitions revoked: {partitions}")
        if self.owner.on_revoked:
            self.owner.on_revoked(partitions)

    def on_partitions_assigned(self, assigned):
        partitions = [(tp.topic, tp.partition) for tp in assigned]
        logger.info(f"Partitions assigned: {partitions}")
        if self.owner.on_assigned:
            self.owner.on_assigned(partitions)


class VibrationBatchConsumer:
    """Consumes the input and retry channels of one consumer group"""

    def __init__(self, config: Dict):
        """
        Initialize Kafka consumer

        Args:
            config: Configuration dictionary
        """
        self.config = config
        kafka_config = config.get("kafka", {})
        consumer_config = kafka_config.get("consumer", {})
        topics = topic_names(config)

        self.bootstrap_servers = kafka_config.get(
            "bootstrap_servers", ["localhost:9092"]
        )
        self.group_id = consumer_config.get("group_id", "vibration-processor-group")
        self.topics = [topics["input"], topics["retry"]]

        self.on_revoked: Optional[RebalanceCallback] = None
        self.on_assigned: Optional[RebalanceCallback] = None

        self.consumer: Optional[KafkaConsumer] = None
        self.messages_consumed = 0
        self.errors_count = 0

        self._init_consumer(consumer_config)

    def _init_consumer(self, consumer_config: Dict):
        """Initialize Kafka consumer"""
        try:
            self.consumer = KafkaConsumer(
                bootstrap_servers=self.bootstrap_servers,
                group_id=self.group_id,
                auto_offset_reset=consumer_config.get("auto_offset_reset", "earliest"),
                enable_auto_commit=False,
                max_poll_interval_ms=consumer_config.get(
                    "max_poll_interval_ms", 300000
                ),
                session_timeout_ms=consumer_config.get("session_timeout_ms", 30000),
                heartbeat_interval_ms=consumer_config.get(
                    "heartbeat_interval_ms", 10000
                ),
                fetch_max_wait_ms=consumer_config.get("fetch_max_wait_ms", 500),
                max_partition_fetch_bytes=consumer_config.get(
                    "max_partition_fetch_bytes", 1048576
                ),
                key_deserializer=lambda k: k.decode("utf-8") if k else None,
            )
            self.consumer.subscribe(self.topics, listener=_RebalanceListener(self))
            logger.info(
                f"Kafka consumer initialized. Topics: {self.topics}, Group: {self.group_id}"
            )
        except KafkaError as e:
            logger.error(f"Failed to initialize Kafka consumer: {e}")
            self.consumer = None

    def set_rebalance_callbacks(
        self, on_revoked: RebalanceCallback, on_assigned: RebalanceCallback
    ):
        self.on_revoked = on_revoked
        self.on_assigned = on_assigned

    def poll(self, max_records: int, timeout_ms: int = 500) -> List[ConsumedMessage]:
        """
        Fetch up to ``max_records`` messages in partition order

        Values are returned as raw bytes; decoding belongs to the pipeline.
        """
        if not self.consumer:
            logger.error("Consumer not initialized")
            return []

        messages = []
        try:
            batch = self.consumer.poll(timeout_ms=timeout_ms, max_records=max_records)
        except KafkaError as e:
            self.errors_count += 1
            logger.error(f"Error polling Kafka: {e}")
            return []

        for topic_partition, records in batch.items():
            for record in records:
                messages.append(
                    ConsumedMessage(
                        topic=topic_partition.topic,
                        partition=topic_partition.partition,
                        offset=record.offset,
                        key=record.key,
                        value=record.value,
                    )
                )

        self.messages_consumed += len(messages)
        return messages

    def commit(self, offsets: Dict[PartitionKey, int]) -> bool:
        """
        Commit the next offset to read for each partition

        Returns:
            True if the commit succeeded
        """
        if not self.consumer or not offsets:
            return False

        try:
            self.consumer.commit(
                {
                    TopicPartition(topic, partition): _offset_and_metadata(offset)
                    for (topic, partition), offset in offsets.items()
                }
            )
            logger.debug(f"Committed offsets: {offsets}")
            return True
        except KafkaError as e:
            self.errors_count += 1
            logger.error(f"Failed to commit offsets: {e}")
            return False

    def rewind(self, messages: List[ConsumedMessage]):
        """Seek back so unaccepted messages are fetched again"""
        if not self.consumer:
            return
        earliest: Dict[PartitionKey, int] = {}
        for message in messages:
            tp = message.topic_partition
            earliest[tp] = min(earliest.get(tp, message.offset), message.offset)
        for (topic, partition), offset in earliest.items():
            self.consumer.seek(TopicPartition(topic, partition), offset)

    def pause_all(self):
        if self.consumer:
            self.consumer.pause(*self.consumer.assignment())

    def resume_all(self):
        if self.consumer:
            self.consumer.resume(*self.consumer.paused())

    def assignment(self) -> Set[PartitionKey]:
        if not self.consumer:
            return set()
        return {(tp.topic, tp.partition) for tp in self.consumer.assignment()}

    def lag(self) -> Optional[int]:
        """Messages between the fetch position and the high watermark"""
        if not self.consumer:
            return None

        total = 0
        try:
            for tp in self.consumer.assignment():
                highwater = self.consumer.highwater(tp)
                if highwater is None:
                    continue
                total += max(highwater - self.consumer.position(tp), 0)
        except KafkaError as e:
            logger.warning(f"Could not compute consumer lag: {e}")
            return None
        return total

    def close(self):
        """Close consumer and clean up"""
        if self.consumer:
            try:
                self.consumer.close(autocommit=False)
                logger.info(
                    f"Consumer closed. Total messages: {self.messages_consumed}, "
                    f"Errors: {self.errors_count}"
                )
            except KafkaError as e:
                logger.error(f"Error closing consumer: {e}")

    def get_stats(self) -> Dict:
        """Get consumer statistics"""
        return {
            "messages_consumed": self.messages_consumed,
            "errors_count": self.errors_count,
            "topics": self.topics,
            "group_id": self.group_id,
            "is_connected": self.consumer is not None,
        }


class InMemoryBroker:
    """Partitioned in-memory log shared by MockConsumer and MockPublisher"""

    def __init__(self, partitions: int = 1):
        self.default_partitions = max(partitions, 1)
        self._logs: Dict[str, List[List[Tuple[Optional[str], bytes]]]] = {}
        self._committed: Dict[PartitionKey, int] = {}
        self._round_robin: Dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()

    def create_topic(self, topic: str, partitions: Optional[int] = None):
        with self._lock:
            if topic not in self._logs:
                count = partitions or self.default_partitions
                self._logs[topic] = [[] for _ in range(count)]

    def partitions_for(self, topic: str) -> List[PartitionKey]:
        self.create_topic(topic)
        return [(topic, index) for index in range(len(self._logs[topic]))]

    def append(
        self,
        topic: str,
        key: Optional[str],
        value: bytes,
        partition: Optional[int] = None,
    ) -> Tuple[int, int]:
        self.create_topic(topic)
        with self._lock:
            log = self._logs[topic]
            if partition is None:
                if key:
                    partition = zlib.crc32(key.encode("utf-8")) % len(log)
                else:
                    partition = self._round_robin[topic] % len(log)
                    self._round_robin[topic] += 1
            log[partition].append((key, value))
            return partition, len(log[partition]) - 1

    def read(self, topic: str, partition: int, offset: int, limit: int):
        with self._lock:
            return list(self._logs[topic][partition][offset : offset + limit])

    def end_offset(self, topic: str, partition: int) -> int:
        with self._lock:
            return len(self._logs[topic][partition])

    def commit(self, offsets: Dict[PartitionKey, int]):
        with self._lock:
            self._committed.update(offsets)

    def committed(self, topic: str, partition: int) -> int:
        with self._lock:
            return self._committed.get((topic, partition), 0)


class MockConsumer:
    """Mock consumer reading from an InMemoryBroker"""

    def __init__(
        self,
        config: Dict,
        broker: Optional[InMemoryBroker] = None,
        partitions: Optional[Iterable[PartitionKey]] = None,
    ):
        """
        Args:
            config: Configuration dictionary
            broker: Shared broker (default: a private empty broker)
            partitions: Assigned partitions (default: every partition of the
                input and retry topics)
        """
        self.config = config
        self.broker = broker or InMemoryBroker()
        topics = topic_names(config)
        self.topics = [topics["input"], topics["retry"]]

        if partitions is None:
            partitions = [
                tp for topic in self.topics for tp in self.broker.partitions_for(topic)
            ]
        self._assignment = list(partitions)
        self._positions = {
            tp: self.broker.committed(*tp) for tp in self._assignment
        }
        self._paused: Set[PartitionKey] = set()
        self.messages_consumed = 0
        self.commits: List[Dict[PartitionKey, int]] = []
        self.on_revoked: Optional[RebalanceCallback] = None
        self.on_assigned: Optional[RebalanceCallback] = None
        logger.info("Mock consumer initialized (Kafka not required)")

    def set_rebalance_callbacks(
        self, on_revoked: RebalanceCallback, on_assigned: RebalanceCallback
    ):
        self.on_revoked = on_revoked
        self.on_assigned = on_assigned
        on_assigned(list(self._assignment))

    def poll(self, max_records: int, timeout_ms: int = 0) -> List[ConsumedMessage]:
        messages: List[ConsumedMessage] = []
        for tp in self._assignment:
            if tp in self._paused or len(messages) >= max_records:
                continue
            position = self._positions[tp]
            for index, (key, value) in enumerate(
                self.broker.read(tp[0], tp[1], position, max_records - len(messages))
            ):
                messages.append(
                    ConsumedMessage(
                        topic=tp[0],
                        partition=tp[1],
                        offset=position + index,
                        key=key,
                        value=value,
                    )
                )
            self._positions[tp] = position + sum(
                1 for message in messages if message.topic_partition == tp
            )

        if not messages and timeout_ms:
            # Emulate a blocking fetch so callers do not spin
            time.sleep(timeout_ms / 1000)

        self.messages_consumed += len(messages)
        return messages

    def commit(self, offsets: Dict[PartitionKey, int]) -> bool:
        if not offsets:
            return False
        self.broker.commit(offsets)
        self.commits.append(dict(offsets))
        return True

    def rewind(self, messages: List[ConsumedMessage]):
        for message in messages:
            tp = message.topic_partition
            self._positions[tp] = min(self._positions[tp], message.offset)

    def pause_all(self):
        self._paused = set(self._assignment)

    def resume_all(self):
        self._paused.clear()

    def assignment(self) -> Set[PartitionKey]:
        return set(self._assignment)

    def lag(self) -> Optional[int]:
        return sum(
            max(self.broker.end_offset(*tp) - self._positions[tp], 0)
            for tp in self._assignment
        )

    def close(self):
        logger.info(f"[MOCK] Consumer closed. Total messages: {self.messages_consumed}")

    def get_stats(self) -> Dict:
        return {
            "messages_consumed": self.messages_consumed,
            "errors_count": 0,
            "is_connected": True,
        }
