"""
Quality Scorer
Composite data-quality verdict for a processed batch
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from .. import __version__
from ..consumer.batch_decoder import StatusSeverity, status_severity
from ..exceptions import DecodeError
from ..models import (
    FeatureVector,
    OutlierVerdict,
    QualityMetrics,
    RawVibrationBatch,
)

logger = logging.getLogger(__name__)

DEFAULT_WEIGHTS = {"completeness": 0.5, "consistency": 0.3, "outlier": 0.2}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class QualityScorer:
    """Scores completeness, consistency and outlier-freeness"""

    def __init__(self, config: Dict, clock: Optional[Callable[[], datetime]] = None):
        """
        Initialize quality scorer

        Args:
            config: Configuration dictionary
            clock: Wall-clock source for processing_timestamp
        """
        dq_config = config.get("data_quality", {})
        quality_config = dq_config.get("quality", {})
        proc_config = config.get("processing", {})

        weights_config = quality_config.get("weights", {})
        weights = {
            name: float(weights_config.get(name, default))
            for name, default in DEFAULT_WEIGHTS.items()
        }
        total = sum(weights.values())
        if total <= 0:
            weights, total = dict(DEFAULT_WEIGHTS), sum(DEFAULT_WEIGHTS.values())
        self.weights = {name: value / total for name, value in weights.items()}

        self.max_clock_skew = timedelta(
            seconds=float(quality_config.get("max_clock_skew_seconds", 5.0))
        )
        self.processing_version = str(
            proc_config.get("processing_version", __version__)
        )
        self.clock = clock or utc_now

    def completeness(self, features: FeatureVector) -> float:
        """Fraction of expected feature fields that are non-null"""
        values = features.values()
        return sum(value is not None for value in values) / len(values)

    def is_consistent(self, batch: RawVibrationBatch) -> bool:
        """
        Source timestamp must not be later than the server timestamp (within
        the allowed clock skew) and the status code must be Good
        """
        if batch.source_timestamp > batch.server_timestamp + self.max_clock_skew:
            return False

        try:
            return status_severity(batch.status_code) is StatusSeverity.GOOD
        except DecodeError:
            return False

    def score(
        self,
        batch: RawVibrationBatch,
        features: FeatureVector,
        verdict: OutlierVerdict,
    ) -> QualityMetrics:
        completeness = self.completeness(features)
        consistency = self.is_consistent(batch)

        score = (
            self.weights["completeness"] * completeness
            + self.weights["consistency"] * (1.0 if consistency else 0.0)
            + self.weights["outlier"] * (1.0 - verdict.outlier_score)
        )

        return QualityMetrics(
            score=round(min(max(score, 0.0), 1.0), 6),
            completeness=round(completeness, 6),
            consistency=consistency,
            processing_version=self.processing_version,
            processing_timestamp=self.clock(),
        )
