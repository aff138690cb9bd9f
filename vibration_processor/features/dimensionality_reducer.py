"""
Dimensionality Reducer
Applies a pre-fitted linear projection (e.g. PCA) to the feature vector
"""

import logging
import pickle
from typing import Dict, Optional, Sequence

import joblib
import numpy as np

from ..exceptions import ConfigurationError
from ..models import FEATURE_ORDER, FeatureVector, ReducedFeatureVector
from .time_domain_features import finite_or_none

logger = logging.getLogger(__name__)


class DimensionalityReducer:
    """Mean-centres the feature vector and projects it onto k components"""

    def __init__(
        self,
        components: Sequence[Sequence[float]],
        mean: Optional[Sequence[float]] = None,
        scale: Optional[Sequence[float]] = None,
        n_components: Optional[int] = None,
    ):
        """
        Initialize reducer

        Args:
            components: Projection matrix, shape (k, n_features)
            mean: Per-feature centring vector (default: zeros)
            scale: Optional per-feature divisor applied after centring
            n_components: Keep only the first n rows of the projection
        """
        n_features = len(FEATURE_ORDER)

        self.components = np.asarray(components, dtype=float)
        if self.components.ndim != 2 or self.components.shape[1] != n_features:
            raise ConfigurationError(
                f"Projection must have shape (k, {n_features}), "
                f"got {self.components.shape}"
            )

        if n_components is not None:
            if not 0 < n_components <= self.components.shape[0]:
                raise ConfigurationError(
                    f"n_components={n_components} but projection has "
                    f"{self.components.shape[0]} rows"
                )
            self.components = self.components[:n_components]

        self.mean = (
            np.zeros(n_features) if mean is None else np.asarray(mean, dtype=float)
        )
        if self.mean.shape != (n_features,):
            raise ConfigurationError(
                f"Projection mean must have {n_features} values, got {self.mean.shape}"
            )

        self.scale = None
        if scale is not None:
            self.scale = np.asarray(scale, dtype=float)
            if self.scale.shape != (n_features,) or np.any(self.scale <= 0):
                raise ConfigurationError(
                    f"Projection scale must have {n_features} positive values"
                )

        if not (np.all(np.isfinite(self.components)) and np.all(np.isfinite(self.mean))):
            raise ConfigurationError("Projection parameters must be finite")

    @property
    def n_components(self) -> int:
        return self.components.shape[0]

    @classmethod
    def from_config(cls, config: Dict) -> "DimensionalityReducer":
        """
        Build from the ``dimensionality_reduction`` config section

        Either ``artifact_path`` (joblib file) or inline ``components`` /
        ``mean`` / ``scale`` must be present.
        """
        dr_config = config.get("dimensionality_reduction", {})
        n_components = dr_config.get("n_components")

        artifact_path = dr_config.get("artifact_path")
        if artifact_path:
            reducer = cls.from_artifact(artifact_path, n_components=n_components)
        elif dr_config.get("components") is not None:
            reducer = cls(
                components=dr_config["components"],
                mean=dr_config.get("mean"),
                scale=dr_config.get("scale"),
                n_components=n_components,
            )
        else:
            raise ConfigurationError(
                "dimensionality_reduction needs artifact_path or components"
            )

        logger.info(
            f"Dimensionality reducer initialized. "
            f"Components: {reducer.n_components}, Features: {len(FEATURE_ORDER)}"
        )
        return reducer

    @classmethod
    def from_artifact(
        cls, filepath: str, n_components: Optional[int] = None
    ) -> "DimensionalityReducer":
        """
        Load projection parameters saved with joblib

        The artifact is either a dict with ``components`` / ``mean`` /
        ``scale`` keys or a fitted scikit-learn PCA.
        """
        try:
            artifact = joblib.load(filepath)
        except (OSError, EOFError, ValueError, pickle.UnpicklingError) as e:
            raise ConfigurationError(f"Cannot load projection artifact {filepath}: {e}")

        if isinstance(artifact, dict):
            if artifact.get("components") is None:
                raise ConfigurationError(
                    f"Projection artifact {filepath} has no components"
                )
            return cls(
                components=artifact["components"],
                mean=artifact.get("mean"),
                scale=artifact.get("scale"),
                n_components=n_components,
            )

        if hasattr(artifact, "components_") and hasattr(artifact, "mean_"):
            if getattr(artifact, "whiten", False):
                scale_rows = np.sqrt(artifact.explained_variance_)[:, np.newaxis]
                components = artifact.components_ / scale_rows
            else:
                components = artifact.components_
            return cls(
                components=components,
                mean=artifact.mean_,
                n_components=n_components,
            )

        raise ConfigurationError(
            f"Unsupported projection artifact type: {type(artifact).__name__}"
        )

    def transform(self, features: FeatureVector) -> ReducedFeatureVector:
        """
        Project a feature vector

        Null features are imputed with the projection mean, so they
        contribute nothing after centring.
        """
        values = np.array(
            [np.nan if value is None else value for value in features.values()],
            dtype=float,
        )

        with np.errstate(all="ignore"):
            centred = values - self.mean
            centred[~np.isfinite(centred)] = 0.0
            if self.scale is not None:
                centred = centred / self.scale
            scores = self.components @ centred

        return ReducedFeatureVector(
            principal_components=tuple(finite_or_none(score) for score in scores)
        )
