"""
Input Channel Module
"""

from .batch_decoder import BatchDecoder, Envelope, derive_record_id
from .kafka_consumer import InMemoryBroker, MockConsumer, VibrationBatchConsumer
from .partition_progress import PartitionProgress

__all__ = [
    "BatchDecoder",
    "Envelope",
    "derive_record_id",
    "VibrationBatchConsumer",
    "MockConsumer",
    "InMemoryBroker",
    "PartitionProgress",
]
