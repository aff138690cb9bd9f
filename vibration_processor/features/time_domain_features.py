"""
Time-Domain Feature Engineering
Statistical amplitude features of a single vibration axis
"""

import logging
import math
from typing import Dict, Optional, Sequence

import numpy as np
from scipy import stats

from ..exceptions import ComputationError

logger = logging.getLogger(__name__)

TIME_DOMAIN_FIELDS = ("rms", "peak", "mean", "variance", "kurtosis", "crest_factor")


def finite_or_none(value) -> Optional[float]:
    """Convert a numpy scalar to float, mapping NaN/Infinity to None"""
    if value is None:
        return None
    value = float(value)
    return value if math.isfinite(value) else None


class TimeDomainFeatures:
    """Extracts time-domain features from one axis"""

    def __init__(self, config: Dict):
        """
        Initialize feature extractor

        Args:
            config: Configuration dictionary
        """
        self.config = config
        fe_config = config.get("feature_engineering", {})
        td_config = fe_config.get("time_domain", {})

        # Variance at or below this is treated as zero
        self.variance_epsilon = float(td_config.get("variance_epsilon", 0.0))

    def extract_features(self, signal: Sequence[float]) -> Dict[str, Optional[float]]:
        """
        Compute RMS, peak, mean, variance, excess kurtosis and crest factor

        Args:
            signal: Amplitude samples of one axis

        Returns:
            Dictionary with every field of TIME_DOMAIN_FIELDS; a field is None
            when it is undefined for the input (empty axis, zero variance,
            zero RMS) or not finite
        """
        features: Dict[str, Optional[float]] = dict.fromkeys(TIME_DOMAIN_FIELDS)

        arr = np.asarray(signal, dtype=float)
        if arr.size == 0:
            return features

        with np.errstate(all="ignore"):
            features["rms"] = finite_or_none(np.sqrt(np.mean(arr**2)))
            features["peak"] = finite_or_none(np.max(np.abs(arr)))
            features["mean"] = finite_or_none(np.mean(arr))
            features["variance"] = finite_or_none(np.var(arr))

        try:
            features["kurtosis"] = self._kurtosis(arr, features["variance"])
        except ComputationError as e:
            logger.warning(f"Kurtosis undefined: {e}")

        rms = features["rms"]
        peak = features["peak"]
        if rms is not None and rms > 0 and peak is not None:
            features["crest_factor"] = finite_or_none(peak / rms)

        return features

    def _kurtosis(self, arr: np.ndarray, variance: Optional[float]) -> Optional[float]:
        """Population excess kurtosis, defined only for positive variance"""
        if variance is None or variance <= self.variance_epsilon:
            return None

        with np.errstate(all="ignore"):
            value = stats.kurtosis(arr, fisher=True, bias=True)

        result = finite_or_none(value)
        if result is None:
            raise ComputationError(f"non-finite kurtosis for variance {variance}")
        return result
