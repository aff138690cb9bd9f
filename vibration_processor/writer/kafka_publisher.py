"""
Kafka Publisher
Publishes processed records, retry envelopes and dead-letter entries
"""

import json
import logging
import threading
from collections import defaultdict
from typing import Dict, List, Optional

from kafka import KafkaProducer
from kafka.errors import KafkaError, KafkaTimeoutError

from ..exceptions import DeliveryError

logger = logging.getLogger(__name__)


class KafkaRecordPublisher:
    """Publishes JSON records to Kafka and waits for broker acknowledgement"""

    def __init__(self, config: Dict):
        """
        Initialize Kafka publisher

        Args:
            config: Configuration dictionary
        """
        self.config = config
        kafka_settings = config.get("kafka", {})
        producer_config = kafka_settings.get("producer", {})
        proc_config = config.get("processing", {})

        self.bootstrap_servers = kafka_settings.get(
            "bootstrap_servers", ["localhost:9092"]
        )
        self.publish_timeout = float(proc_config.get("publish_timeout_seconds", 10.0))

        self.producer: Optional[KafkaProducer] = None
        self.messages_sent = 0
        self.errors_count = 0
        self.last_error: Optional[str] = None
        self._stats_lock = threading.Lock()

        self._init_producer(producer_config)

    def _init_producer(self, producer_config: Dict):
        """Initialize Kafka producer"""
        try:
            self.producer = KafkaProducer(
                bootstrap_servers=self.bootstrap_servers,
                value_serializer=lambda v: json.dumps(v).encode("utf-8"),
                key_serializer=lambda k: k.encode("utf-8") if k else None,
                acks=producer_config.get("acks", "all"),
                retries=producer_config.get("retries", 3),
                max_in_flight_requests_per_connection=producer_config.get(
                    "max_in_flight_requests_per_connection", 1
                ),
                compression_type=producer_config.get("compression_type", "gzip"),
                linger_ms=producer_config.get("linger_ms", 5),
                max_block_ms=producer_config.get("max_block_ms", 10000),
                request_timeout_ms=producer_config.get("request_timeout_ms", 30000),
            )
            logger.info(
                f"Kafka producer initialized. Bootstrap servers: {self.bootstrap_servers}"
            )
        except KafkaError as e:
            logger.error(f"Failed to initialize Kafka producer: {e}")
            self.producer = None

    def publish(self, topic: str, key: Optional[str], value: Dict) -> Dict:
        """
        Publish one record and block until it is acknowledged

        Args:
            topic: Destination topic
            key: Message key (record id, keeps one record on one partition)
            value: JSON-serialisable payload

        Returns:
            Acknowledgement metadata (topic, partition, offset)

        Raises:
            DeliveryError: If the producer is unavailable, the broker
                rejects the record or no acknowledgement arrives in time
        """
        if not self.producer:
            self._record_error("Kafka producer not initialized")
            raise DeliveryError("Kafka producer not initialized", record_id=key)

        try:
            future = self.producer.send(topic, key=key, value=value)
            record_metadata = future.get(timeout=self.publish_timeout)
        except KafkaTimeoutError as e:
            self._record_error(str(e))
            raise DeliveryError(
                f"Publish to {topic} not acknowledged within "
                f"{self.publish_timeout}s: {e}",
                record_id=key,
            )
        except KafkaError as e:
            self._record_error(str(e))
            raise DeliveryError(f"Failed to publish to {topic}: {e}", record_id=key)

        with self._stats_lock:
            self.messages_sent += 1

        return {
            "topic": record_metadata.topic,
            "partition": record_metadata.partition,
            "offset": record_metadata.offset,
        }

    def _record_error(self, message: str):
        with self._stats_lock:
            self.errors_count += 1
            self.last_error = message
        logger.error(f"Publish error: {message}")

    def flush(self, timeout: Optional[float] = None):
        """Flush any pending messages"""
        if self.producer:
            self.producer.flush(timeout=timeout)
            logger.debug("Flushed pending messages")

    def close(self, timeout: Optional[float] = None):
        """Close the producer and clean up resources"""
        if self.producer:
            try:
                self.producer.flush(timeout=timeout)
                self.producer.close(timeout=timeout)
            except KafkaError as e:
                logger.error(f"Error closing Kafka producer: {e}")
            logger.info(
                f"Kafka producer closed. Total messages sent: {self.messages_sent}, "
                f"Errors: {self.errors_count}"
            )

    def get_stats(self) -> Dict:
        """Get publisher statistics"""
        return {
            "messages_sent": self.messages_sent,
            "errors_count": self.errors_count,
            "last_error": self.last_error,
            "is_connected": self.producer is not None,
        }


class MockPublisher:
    """
    Mock publisher for running without Kafka

    Stores messages in memory and, when given an InMemoryBroker, appends
    them to its topics so that a MockConsumer can read them back. Setting
    ``available = False`` simulates an unreachable broker.
    """

    def __init__(self, config: Dict, broker=None):
        self.config = config
        self.broker = broker
        self.available = True
        self.fail_next = 0
        self.messages: Dict[str, List[Dict]] = defaultdict(list)
        self.messages_sent = 0
        self.errors_count = 0
        self._lock = threading.Lock()
        logger.info("Mock publisher initialized (Kafka not required)")

    def publish(self, topic: str, key: Optional[str], value: Dict) -> Dict:
        with self._lock:
            if not self.available or self.fail_next > 0:
                if self.fail_next > 0:
                    self.fail_next -= 1
                self.errors_count += 1
                raise DeliveryError(f"[MOCK] {topic} unreachable", record_id=key)

            # Round-trip through JSON like the real serializer
            payload = json.loads(json.dumps(value))
            self.messages[topic].append({"key": key, "value": payload})
            self.messages_sent += 1
            offset = len(self.messages[topic]) - 1

        partition = 0
        if self.broker is not None:
            partition, offset = self.broker.append(topic, key, json.dumps(payload).encode("utf-8"))

        return {"topic": topic, "partition": partition, "offset": offset}

    def get_messages(self, topic: str) -> List[Dict]:
        """Get all stored messages for a topic (for testing)"""
        with self._lock:
            return list(self.messages[topic])

    def latest_by_key(self, topic: str) -> Dict[str, Dict]:
        """What a consumer deduplicating by key would retain"""
        return {message["key"]: message["value"] for message in self.get_messages(topic)}

    def flush(self, timeout: Optional[float] = None):
        """Mock flush"""
        pass

    def close(self, timeout: Optional[float] = None):
        logger.info(f"[MOCK] Publisher closed. Total messages: {self.messages_sent}")

    def get_stats(self) -> Dict:
        return {
            "messages_sent": self.messages_sent,
            "errors_count": self.errors_count,
            "last_error": None,
            "is_connected": self.available,
        }
