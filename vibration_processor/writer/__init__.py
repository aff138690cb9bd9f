"""
Output Channel Module
"""

from .kafka_publisher import KafkaRecordPublisher, MockPublisher

__all__ = ["KafkaRecordPublisher", "MockPublisher"]
