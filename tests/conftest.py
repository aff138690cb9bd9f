"""Shared fixtures for vibration processor tests."""

import copy
import json
import math
from datetime import datetime, timedelta, timezone

import pytest

from vibration_processor.models import FEATURE_ORDER

BASE_TIME = datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)

BASE_CONFIG = {
    "kafka": {
        "topics": {
            "input": "vibration_raw",
            "processed": "vibration_processed",
            "retry": "vibration_retry",
            "dead_letter": "vibration_dead_letter",
        },
        "mock_partitions": 1,
    },
    "state_store": {"backend": "memory", "max_attempts": 2, "retry_delay_seconds": 0.0},
    "processing": {
        "num_workers": 4,
        "max_in_flight": 8,
        "poll_timeout_ms": 10,
        "commit_interval_seconds": 0.05,
        "shutdown_timeout_seconds": 2.0,
        "stats_interval_seconds": 60.0,
        "state_store_backoff_seconds": 0.01,
        "failed_poll_seconds": 0.01,
        "default_source_id": "unknown",
        "processing_version": "test-1.0",
    },
    "retry": {
        "max_retries": 3,
        "base_delay_seconds": 0.0,
        "multiplier": 2.0,
        "max_delay_seconds": 0.0,
        "jitter": 0.0,
    },
    "data_quality": {
        "outlier_detection": {
            "enabled": True,
            "method": "iqr",
            "threshold": 3.0,
            "max_outlier_ratio": 0.2,
            "min_samples": 4,
            "amplitude_limit": 1000.0,
        },
        "quality": {"max_clock_skew_seconds": 5.0},
    },
    "feature_engineering": {
        "frequency_domain": {"transform": "fft", "sampling_rate": 64.0},
    },
    "dimensionality_reduction": {
        # Picks x_rms, y_rms and z_rms
        "components": [
            [1.0 if name == f"{axis}_rms" else 0.0 for name in FEATURE_ORDER]
            for axis in ("x", "y", "z")
        ],
        "mean": [0.0] * len(FEATURE_ORDER),
    },
}


def sine(freq: float, amp: float = 10.0, n: int = 64, fs: float = 64.0):
    return [round(amp * math.sin(2 * math.pi * freq * i / fs), 6) for i in range(n)]


@pytest.fixture
def config():
    return copy.deepcopy(BASE_CONFIG)


@pytest.fixture
def make_message():
    """Factory for raw batch messages (as dicts)"""

    def _make(
        source_id="press-01",
        seconds=0,
        x=None,
        y=None,
        z=None,
        status="Good",
        server_delay=0.5,
        **overrides,
    ):
        source_ts = BASE_TIME + timedelta(seconds=seconds)
        message = {
            "VibrationXBatch": x if x is not None else sine(5.0, amp=10.0),
            "VibrationYBatch": y if y is not None else sine(8.0, amp=6.0),
            "VibrationZBatch": z if z is not None else sine(3.0, amp=4.0),
            "ServerTimestamp": (source_ts + timedelta(seconds=server_delay)).isoformat(),
            "SourceTimestamp": source_ts.isoformat(),
            "StatusCode": status,
            "SourceId": source_id,
        }
        message.update(overrides)
        return message

    return _make


@pytest.fixture
def encode():
    def _encode(message) -> bytes:
        return json.dumps(message).encode("utf-8")

    return _encode
