"""Quality scorer unit tests."""

from datetime import datetime, timezone

import pytest

from vibration_processor.consumer.batch_decoder import BatchDecoder
from vibration_processor.features import FeatureExtractor, QualityScorer
from vibration_processor.models import FeatureVector, OutlierVerdict

FIXED_NOW = datetime(2024, 1, 15, 11, 0, tzinfo=timezone.utc)
CLEAN = OutlierVerdict(is_valid=True, outlier_score=0.0)


@pytest.fixture
def scorer(config):
    return QualityScorer(config, clock=lambda: FIXED_NOW)


@pytest.fixture
def score_message(config, scorer):
    decoder = BatchDecoder(config)
    extractor = FeatureExtractor(config)

    def _score(message, verdict=CLEAN):
        batch = decoder.decode(message)
        return scorer.score(batch, extractor.extract(batch), verdict)

    return _score


class TestQualityScorer:
    def test_perfect_batch(self, score_message, make_message):
        metrics = score_message(make_message())

        assert metrics.score == 1.0
        assert metrics.completeness == 1.0
        assert metrics.consistency is True
        assert metrics.processing_version == "test-1.0"
        assert metrics.processing_timestamp == FIXED_NOW

    def test_bad_status_is_inconsistent(self, score_message, make_message):
        metrics = score_message(make_message(status="BadSensorFailure"))
        assert metrics.consistency is False
        assert metrics.score == pytest.approx(0.7)

    def test_uncertain_status_is_inconsistent(self, score_message, make_message):
        assert score_message(make_message(status="0x40000000")).consistency is False

    def test_source_after_server_beyond_skew(self, score_message, make_message):
        metrics = score_message(make_message(server_delay=-10.0))
        assert metrics.consistency is False

    def test_source_after_server_within_skew(self, score_message, make_message):
        metrics = score_message(make_message(server_delay=-2.0))
        assert metrics.consistency is True

    def test_outlier_score_lowers_quality(self, score_message, make_message):
        metrics = score_message(make_message(), OutlierVerdict(True, 0.1))
        assert metrics.score == pytest.approx(0.98)

    def test_null_features_lower_completeness(self, config, scorer, make_message):
        batch = BatchDecoder(config).decode(make_message())
        metrics = scorer.score(batch, FeatureVector(), CLEAN)

        assert metrics.completeness == 0.0
        assert metrics.score == pytest.approx(0.5)

    def test_score_in_unit_interval(self, score_message, make_message):
        metrics = score_message(
            make_message(status="Bad", x=[], y=[], z=[]), OutlierVerdict(False, 1.0)
        )
        assert 0.0 <= metrics.score <= 1.0
        assert metrics.score == 0.0

    def test_weights_are_normalised(self, config, make_message):
        config["data_quality"]["quality"]["weights"] = {
            "completeness": 2.0,
            "consistency": 2.0,
            "outlier": 0.0,
        }
        scorer = QualityScorer(config)
        assert scorer.weights == {"completeness": 0.5, "consistency": 0.5, "outlier": 0.0}

        batch = BatchDecoder(config).decode(make_message(status="Bad"))
        metrics = scorer.score(batch, FeatureExtractor(config).extract(batch), CLEAN)
        assert metrics.score == pytest.approx(0.5)

    def test_serialised_metrics(self, score_message, make_message):
        data = score_message(make_message()).to_dict()
        assert data["data_quality_score"] == 1.0
        assert data["processing_timestamp"] == FIXED_NOW.isoformat()
