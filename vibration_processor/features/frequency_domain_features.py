"""
Frequency-Domain Feature Engineering
Dominant frequency and spectral energy of a single vibration axis
"""

import logging
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
from scipy import signal as sp_signal
from scipy.fft import rfft, rfftfreq

from ..exceptions import ComputationError, ConfigurationError
from .time_domain_features import finite_or_none

logger = logging.getLogger(__name__)

SUPPORTED_TRANSFORMS = ("fft", "welch")


class FrequencyDomainFeatures:
    """Extracts frequency-domain features using FFT or Welch's method"""

    def __init__(self, config: Dict):
        """
        Initialize spectral feature extractor

        Args:
            config: Configuration dictionary
        """
        self.config = config
        fe_config = config.get("feature_engineering", {})
        fft_config = fe_config.get("frequency_domain", {})

        self.transform = fft_config.get("transform", "fft")
        self.sampling_rate = float(fft_config.get("sampling_rate", 1.0))
        self.window = fft_config.get("window", "hann")
        self.nperseg = int(fft_config.get("nperseg", 256))

        if self.transform not in SUPPORTED_TRANSFORMS:
            raise ConfigurationError(
                f"Unsupported frequency transform {self.transform!r}, "
                f"expected one of {SUPPORTED_TRANSFORMS}"
            )
        if self.sampling_rate <= 0:
            raise ConfigurationError("frequency_domain.sampling_rate must be positive")

        logger.info(
            f"Spectral feature extractor initialized. "
            f"Transform: {self.transform}, Sampling rate: {self.sampling_rate}Hz"
        )

    def extract_features(self, signal_data: Sequence[float]) -> Dict[str, Optional[float]]:
        """
        Extract dominant frequency and spectral energy

        Args:
            signal_data: Amplitude samples of one axis

        Returns:
            Dictionary with dominant_freq and spectral_energy, None when
            undefined (fewer than two samples, flat spectrum)
        """
        features: Dict[str, Optional[float]] = {
            "dominant_freq": None,
            "spectral_energy": None,
        }

        arr = np.asarray(signal_data, dtype=float)
        if arr.size < 2:
            return features

        try:
            freqs, power = self._spectrum(arr)
        except (ValueError, ComputationError) as e:
            logger.warning(f"Error computing {self.transform} spectrum: {e}")
            return features

        if power.size == 0:
            return features

        with np.errstate(all="ignore"):
            spectral_energy = finite_or_none(np.sum(power))
        features["spectral_energy"] = spectral_energy

        if spectral_energy is not None and spectral_energy > 0:
            dominant_idx = int(np.argmax(power))
            features["dominant_freq"] = finite_or_none(freqs[dominant_idx])

        return features

    def _spectrum(self, arr: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Power per frequency bin with the DC component removed

        Returns:
            (frequencies, power) arrays of equal length
        """
        with np.errstate(all="ignore"):
            if self.transform == "welch":
                nperseg = min(self.nperseg, arr.size)
                freqs, psd = sp_signal.welch(
                    arr, fs=self.sampling_rate, window=self.window, nperseg=nperseg
                )
                df = freqs[1] - freqs[0] if freqs.size > 1 else 0.0
                power = psd * df
            else:
                windowed = arr * sp_signal.get_window(self.window, arr.size)
                magnitude = np.abs(rfft(windowed))
                freqs = rfftfreq(arr.size, 1 / self.sampling_rate)
                power = magnitude**2

        if not np.all(np.isfinite(power)):
            raise ComputationError("non-finite spectral power")

        # Skip DC component
        return freqs[1:], power[1:]
