"""
Feature Engineering Module
Outlier gate, feature extraction, dimensionality reduction and quality scoring
"""

from .time_domain_features import TimeDomainFeatures
from .frequency_domain_features import FrequencyDomainFeatures
from .feature_extractor import FeatureExtractor
from .outlier_gate import OutlierGate
from .dimensionality_reducer import DimensionalityReducer
from .quality_scorer import QualityScorer

__all__ = [
    "TimeDomainFeatures",
    "FrequencyDomainFeatures",
    "FeatureExtractor",
    "OutlierGate",
    "DimensionalityReducer",
    "QualityScorer",
]
