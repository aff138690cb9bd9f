"""
Feature Extractor
Combines time- and frequency-domain features for all three axes
"""

import logging
from typing import Dict

from ..models import AXES, AxisFeatures, FeatureVector, RawVibrationBatch
from .frequency_domain_features import FrequencyDomainFeatures
from .time_domain_features import TimeDomainFeatures

logger = logging.getLogger(__name__)


class FeatureExtractor:
    """Builds a FeatureVector from a decoded batch"""

    def __init__(self, config: Dict):
        self.time_features = TimeDomainFeatures(config)
        self.freq_features = FrequencyDomainFeatures(config)

    def extract_axis(self, signal) -> AxisFeatures:
        return AxisFeatures(
            **self.time_features.extract_features(signal),
            **self.freq_features.extract_features(signal),
        )

    def extract(self, batch: RawVibrationBatch) -> FeatureVector:
        """
        Extract per-axis features plus the vector-level spectrum summary

        The vector-level dominant frequency is taken from the axis with the
        most spectral energy; the vector-level energy is the sum over axes.
        """
        axes = {axis: self.extract_axis(batch.axis(axis)) for axis in AXES}

        energies = {
            axis: features.spectral_energy
            for axis, features in axes.items()
            if features.spectral_energy is not None
        }

        spectral_energy = sum(energies.values()) if energies else None
        dominant_freq = None
        if energies:
            loudest = max(energies, key=energies.get)
            dominant_freq = axes[loudest].dominant_freq

        return FeatureVector(
            x=axes["x"],
            y=axes["y"],
            z=axes["z"],
            dominant_freq=dominant_freq,
            spectral_energy=spectral_energy,
        )
