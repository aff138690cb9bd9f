"""
Processing Exceptions
Error taxonomy shared by every pipeline stage

ProcessingError (base)
├── ConfigurationError
├── DecodeError          malformed input, routed to retry / dead-letter
├── OutlierRejected      data-quality drop, never retried
├── ComputationError     guarded to null output inside feature code
├── DeliveryError        publish / broker failure, routed to retry
└── StateStoreError      atomic update failure, escalated to DeliveryError
"""

from typing import Optional


class ProcessingError(Exception):
    """Base class for all processor errors"""

    error_type = "processing_error"

    def __init__(self, message: str, record_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.record_id = record_id

    def to_dict(self) -> dict:
        return {
            "error_type": self.error_type,
            "message": self.message,
            "record_id": self.record_id,
        }


class ConfigurationError(ProcessingError):
    """Invalid or missing configuration"""

    error_type = "configuration_error"


class DecodeError(ProcessingError):
    """Raw batch message could not be decoded"""

    error_type = "decode_error"

    def __init__(
        self, message: str, field: Optional[str] = None, record_id: Optional[str] = None
    ):
        super().__init__(message, record_id=record_id)
        self.field = field


class OutlierRejected(ProcessingError):
    """Batch excluded by the outlier gate. Not a failure."""

    error_type = "outlier_rejected"

    def __init__(
        self, outlier_score: float, threshold: float, record_id: Optional[str] = None
    ):
        super().__init__(
            f"Outlier score {outlier_score:.3f} exceeds threshold {threshold:.3f}",
            record_id=record_id,
        )
        self.outlier_score = outlier_score
        self.threshold = threshold


class ComputationError(ProcessingError):
    """Numeric computation produced an undefined value"""

    error_type = "computation_error"


class DeliveryError(ProcessingError):
    """Publish to a downstream channel failed or timed out"""

    error_type = "delivery_error"


class StateStoreError(ProcessingError):
    """State store read or atomic update failed"""

    error_type = "state_store_error"
