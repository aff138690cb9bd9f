"""
Data Models
Immutable records passed between pipeline stages
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

AXES = ("x", "y", "z")

AXIS_FIELDS = {
    "x": "VibrationXBatch",
    "y": "VibrationYBatch",
    "z": "VibrationZBatch",
}

AXIS_FEATURE_NAMES = ("rms", "peak", "kurtosis", "crest_factor")

# Order of the flattened feature vector fed to the dimensionality reducer
FEATURE_ORDER: Tuple[str, ...] = tuple(
    f"{axis}_{name}" for axis in AXES for name in AXIS_FEATURE_NAMES
) + ("dominant_freq", "spectral_energy")


@dataclass(frozen=True)
class ConsumedMessage:
    """A message pulled from an input partition, not yet committed"""

    topic: str
    partition: int
    offset: int
    value: Any
    key: Optional[str] = None

    @property
    def topic_partition(self) -> Tuple[str, int]:
        return (self.topic, self.partition)


@dataclass(frozen=True)
class RawVibrationBatch:
    """Decoded three-axis amplitude batch"""

    x: Tuple[float, ...]
    y: Tuple[float, ...]
    z: Tuple[float, ...]
    server_timestamp: datetime
    source_timestamp: datetime
    status_code: str
    source_id: str

    def axis(self, name: str) -> Tuple[float, ...]:
        return getattr(self, name)

    @property
    def length(self) -> int:
        return len(self.x)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            AXIS_FIELDS[axis]: list(self.axis(axis)) for axis in AXES
        }
        data.update(
            {
                "ServerTimestamp": self.server_timestamp.isoformat(),
                "SourceTimestamp": self.source_timestamp.isoformat(),
                "StatusCode": self.status_code,
                "SourceId": self.source_id,
            }
        )
        return data


@dataclass(frozen=True)
class OutlierVerdict:
    is_valid: bool
    outlier_score: float

    def to_dict(self) -> Dict[str, Any]:
        return {"is_valid": self.is_valid, "outlier_score": self.outlier_score}


@dataclass(frozen=True)
class AxisFeatures:
    """Time- and frequency-domain statistics of one axis. None when undefined."""

    rms: Optional[float] = None
    peak: Optional[float] = None
    mean: Optional[float] = None
    variance: Optional[float] = None
    kurtosis: Optional[float] = None
    crest_factor: Optional[float] = None
    dominant_freq: Optional[float] = None
    spectral_energy: Optional[float] = None

    def time_domain(self) -> Dict[str, Optional[float]]:
        return {
            "rms": self.rms,
            "peak": self.peak,
            "kurtosis": self.kurtosis,
            "crest_factor": self.crest_factor,
        }

    def frequency_domain(self) -> Dict[str, Optional[float]]:
        return {
            "dominant_freq": self.dominant_freq,
            "spectral_energy": self.spectral_energy,
        }


@dataclass(frozen=True)
class FeatureVector:
    x: AxisFeatures = field(default_factory=AxisFeatures)
    y: AxisFeatures = field(default_factory=AxisFeatures)
    z: AxisFeatures = field(default_factory=AxisFeatures)
    dominant_freq: Optional[float] = None
    spectral_energy: Optional[float] = None

    def axis(self, name: str) -> AxisFeatures:
        return getattr(self, name)

    def values(self) -> List[Optional[float]]:
        """Feature values in FEATURE_ORDER"""
        values: List[Optional[float]] = []
        for axis in AXES:
            axis_features = self.axis(axis)
            values.extend(getattr(axis_features, name) for name in AXIS_FEATURE_NAMES)
        values.append(self.dominant_freq)
        values.append(self.spectral_energy)
        return values

    def to_dict(self) -> Dict[str, Any]:
        frequency_domain: Dict[str, Any] = {
            "dominant_freq": self.dominant_freq,
            "spectral_energy": self.spectral_energy,
        }
        frequency_domain["axes"] = {
            axis: self.axis(axis).frequency_domain() for axis in AXES
        }
        return {
            "time_domain": {axis: self.axis(axis).time_domain() for axis in AXES},
            "frequency_domain": frequency_domain,
        }


@dataclass(frozen=True)
class ReducedFeatureVector:
    principal_components: Tuple[Optional[float], ...]

    def __len__(self) -> int:
        return len(self.principal_components)

    def to_dict(self) -> Dict[str, Any]:
        return {"principal_components": list(self.principal_components)}


@dataclass(frozen=True)
class QualityMetrics:
    score: float
    completeness: float
    consistency: bool
    processing_version: str
    processing_timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data_quality_score": self.score,
            "completeness": self.completeness,
            "consistency": self.consistency,
            "processing_version": self.processing_version,
            "processing_timestamp": self.processing_timestamp.isoformat(),
        }


@dataclass(frozen=True)
class ProcessingRecord:
    """Enriched output record, published once per processed batch"""

    record_id: str
    raw_data: RawVibrationBatch
    outlier_check: OutlierVerdict
    features: FeatureVector
    reduced_features: ReducedFeatureVector
    quality_metrics: QualityMetrics

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "raw_data": self.raw_data.to_dict(),
            "outlier_check": self.outlier_check.to_dict(),
            "features": self.features.to_dict(),
            "reduced_features": self.reduced_features.to_dict(),
            "quality_metrics": self.quality_metrics.to_dict(),
        }


class ProcessingStatus(Enum):
    """Per-record lifecycle state"""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    DEAD_LETTERED = "DEAD_LETTERED"


@dataclass(frozen=True)
class ProcessingState:
    record_id: str
    state: ProcessingStatus
    retry_count: int = 0
    last_error: Optional[str] = None
    last_updated: Optional[datetime] = None

    def evolve(self, **changes) -> "ProcessingState":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "state": self.state.value,
            "retry_count": self.retry_count,
            "last_error": self.last_error,
            "last_updated": self.last_updated.isoformat()
            if self.last_updated
            else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProcessingState":
        last_updated = data.get("last_updated")
        return cls(
            record_id=data["record_id"],
            state=ProcessingStatus(data["state"]),
            retry_count=int(data.get("retry_count", 0)),
            last_error=data.get("last_error"),
            last_updated=datetime.fromisoformat(last_updated) if last_updated else None,
        )
