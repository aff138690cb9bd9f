"""Feature extraction unit tests."""

import numpy as np
import pytest

from vibration_processor.consumer.batch_decoder import BatchDecoder
from vibration_processor.exceptions import ConfigurationError
from vibration_processor.features import (
    FeatureExtractor,
    FrequencyDomainFeatures,
    TimeDomainFeatures,
)
from vibration_processor.models import FEATURE_ORDER

from conftest import sine

SAMPLES = [9, 19, -68, -29, 27, 74, -35, -11, 23, 3]


class TestTimeDomain:
    def test_rms_and_peak(self, config):
        features = TimeDomainFeatures(config).extract_features(SAMPLES)
        assert features["rms"] == pytest.approx(37.41, abs=0.01)
        assert features["peak"] == pytest.approx(74.0)

    def test_mean_variance_crest_factor(self, config):
        features = TimeDomainFeatures(config).extract_features(SAMPLES)
        arr = np.asarray(SAMPLES, dtype=float)
        assert features["mean"] == pytest.approx(arr.mean())
        assert features["variance"] == pytest.approx(arr.var())
        assert features["crest_factor"] == pytest.approx(74.0 / features["rms"])

    def test_population_excess_kurtosis(self, config):
        features = TimeDomainFeatures(config).extract_features(SAMPLES)
        arr = np.asarray(SAMPLES, dtype=float)
        centred = arr - arr.mean()
        expected = np.mean(centred**4) / np.mean(centred**2) ** 2 - 3.0
        assert features["kurtosis"] == pytest.approx(expected)

    def test_empty_axis_is_all_null(self, config):
        features = TimeDomainFeatures(config).extract_features([])
        assert all(value is None for value in features.values())

    def test_constant_signal(self, config):
        features = TimeDomainFeatures(config).extract_features([2.0] * 16)
        assert features["variance"] == 0.0
        assert features["kurtosis"] is None
        assert features["crest_factor"] == pytest.approx(1.0)

    def test_all_zero_signal(self, config):
        features = TimeDomainFeatures(config).extract_features([0.0] * 16)
        assert features["rms"] == 0.0
        assert features["crest_factor"] is None
        assert features["kurtosis"] is None


class TestFrequencyDomain:
    def test_dominant_frequency_fft(self, config):
        features = FrequencyDomainFeatures(config).extract_features(sine(5.0))
        assert features["dominant_freq"] == pytest.approx(5.0)
        assert features["spectral_energy"] > 0

    def test_dominant_frequency_welch(self, config):
        config["feature_engineering"]["frequency_domain"].update(
            {"transform": "welch", "sampling_rate": 100.0, "nperseg": 256}
        )
        signal = sine(10.0, amp=1.0, n=1000, fs=100.0)
        features = FrequencyDomainFeatures(config).extract_features(signal)
        assert features["dominant_freq"] == pytest.approx(10.0, abs=0.5)
        # Power summed over bins approximates the signal variance
        assert features["spectral_energy"] == pytest.approx(0.5, rel=0.1)

    def test_frequency_scales_with_sampling_rate(self, config):
        config["feature_engineering"]["frequency_domain"]["sampling_rate"] = 128.0
        features = FrequencyDomainFeatures(config).extract_features(sine(5.0))
        assert features["dominant_freq"] == pytest.approx(10.0)

    def test_too_short_signal(self, config):
        extractor = FrequencyDomainFeatures(config)
        for signal in ([], [1.0]):
            features = extractor.extract_features(signal)
            assert features == {"dominant_freq": None, "spectral_energy": None}

    def test_flat_spectrum_has_no_dominant_frequency(self, config):
        features = FrequencyDomainFeatures(config).extract_features([0.0] * 32)
        assert features["spectral_energy"] == 0.0
        assert features["dominant_freq"] is None

    def test_unsupported_transform(self, config):
        config["feature_engineering"]["frequency_domain"]["transform"] = "wavelet"
        with pytest.raises(ConfigurationError):
            FrequencyDomainFeatures(config)

    def test_non_positive_sampling_rate(self, config):
        config["feature_engineering"]["frequency_domain"]["sampling_rate"] = 0
        with pytest.raises(ConfigurationError):
            FrequencyDomainFeatures(config)


class TestFeatureExtractor:
    def test_vector_level_spectrum_follows_loudest_axis(self, config, make_message):
        message = make_message(
            x=sine(5.0, amp=1.0), y=sine(12.0, amp=10.0), z=[0.0] * 64
        )
        batch = BatchDecoder(config).decode(message)
        features = FeatureExtractor(config).extract(batch)

        assert features.dominant_freq == pytest.approx(12.0)
        assert features.x.dominant_freq == pytest.approx(5.0)
        assert features.z.dominant_freq is None
        assert features.spectral_energy == pytest.approx(
            features.x.spectral_energy + features.y.spectral_energy + features.z.spectral_energy
        )

    def test_values_follow_feature_order(self, config, make_message):
        batch = BatchDecoder(config).decode(make_message())
        features = FeatureExtractor(config).extract(batch)

        values = features.values()
        assert len(values) == len(FEATURE_ORDER)
        assert values[0] == features.x.rms
        assert values[FEATURE_ORDER.index("z_crest_factor")] == features.z.crest_factor
        assert values[-1] == features.spectral_energy

    def test_empty_batch_yields_null_features(self, config, make_message):
        batch = BatchDecoder(config).decode(make_message(x=[], y=[], z=[]))
        features = FeatureExtractor(config).extract(batch)
        assert all(value is None for value in features.values())

    def test_serialised_layout(self, config, make_message):
        batch = BatchDecoder(config).decode(make_message())
        data = FeatureExtractor(config).extract(batch).to_dict()

        assert set(data["time_domain"]) == {"x", "y", "z"}
        assert set(data["time_domain"]["x"]) == {"rms", "peak", "kurtosis", "crest_factor"}
        assert "dominant_freq" in data["frequency_domain"]
        assert "spectral_energy" in data["frequency_domain"]
