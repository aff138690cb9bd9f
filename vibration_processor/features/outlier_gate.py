"""
Outlier Gate
Scores amplitude and statistical anomalies before feature computation
"""

import logging
from typing import Dict, Optional

import numpy as np

from ..exceptions import ConfigurationError
from ..models import AXES, OutlierVerdict, RawVibrationBatch

logger = logging.getLogger(__name__)

# Scales the MAD to a standard deviation for normally distributed data
MAD_SCALE = 0.6745
MEAN_AD_SCALE = 1.253314


class OutlierGate:
    """Flags batches whose fraction of anomalous samples is too high"""

    def __init__(self, config: Dict):
        """
        Initialize outlier gate

        Args:
            config: Configuration dictionary
        """
        dq_config = config.get("data_quality", {})
        outlier_config = dq_config.get("outlier_detection", {})

        self.enabled = outlier_config.get("enabled", True)
        self.method = outlier_config.get("method", "iqr")
        self.threshold = float(outlier_config.get("threshold", 3.0))
        self.max_outlier_ratio = float(outlier_config.get("max_outlier_ratio", 0.2))
        self.min_samples = int(outlier_config.get("min_samples", 4))

        amplitude_limit = outlier_config.get("amplitude_limit", 1000.0)
        self.amplitude_limit: Optional[float] = (
            float(amplitude_limit) if amplitude_limit is not None else None
        )

        if self.method not in ("iqr", "zscore"):
            raise ConfigurationError(f"Unknown outlier method: {self.method!r}")

        logger.info(
            f"Outlier gate initialized. Enabled: {self.enabled}, "
            f"Method: {self.method}, Max ratio: {self.max_outlier_ratio}"
        )

    def evaluate(self, batch: RawVibrationBatch) -> OutlierVerdict:
        """
        Compute the composite outlier score of a batch

        Returns:
            OutlierVerdict; the score is the worst per-axis fraction of
            flagged samples, in [0, 1]
        """
        if not self.enabled:
            return OutlierVerdict(is_valid=True, outlier_score=0.0)

        score = max(self.axis_score(batch.axis(axis)) for axis in AXES)
        return OutlierVerdict(
            is_valid=score <= self.max_outlier_ratio, outlier_score=score
        )

    def axis_score(self, values) -> float:
        arr = np.asarray(values, dtype=float)
        if arr.size == 0:
            return 0.0

        flagged = np.zeros(arr.size, dtype=bool)
        if self.amplitude_limit is not None:
            flagged |= np.abs(arr) > self.amplitude_limit

        if arr.size >= self.min_samples:
            if self.method == "iqr":
                flagged |= self._iqr_outliers(arr)
            else:
                flagged |= self._zscore_outliers(arr)

        return float(np.count_nonzero(flagged)) / arr.size

    def _iqr_outliers(self, arr: np.ndarray) -> np.ndarray:
        q1 = np.percentile(arr, 25)
        q3 = np.percentile(arr, 75)
        iqr = q3 - q1

        lower_bound = q1 - self.threshold * iqr
        upper_bound = q3 + self.threshold * iqr

        return (arr < lower_bound) | (arr > upper_bound)

    def _zscore_outliers(self, arr: np.ndarray) -> np.ndarray:
        median = np.median(arr)
        deviation = np.abs(arr - median)
        mad = np.median(deviation)

        if mad > 0:
            return MAD_SCALE * deviation / mad > self.threshold

        # More than half the samples sit on the median
        mean_deviation = np.mean(deviation)
        if mean_deviation == 0:
            return np.zeros(arr.size, dtype=bool)
        return deviation / (MEAN_AD_SCALE * mean_deviation) > self.threshold
