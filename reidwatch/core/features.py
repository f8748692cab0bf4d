"""Appearance feature vectors produced by the re-identification engine."""

from __future__ import annotations

from collections.abc import Iterable

import numpy as np

DEFAULT_FEATURE_DIM = 512
DEFAULT_MIN_VARIANCE = 1e-5


class FeatureVector:
    """Immutable fixed-length float32 descriptor.

    Derived operations never mutate the source vector; `normalize()` returns a
    new instance.
    """

    __slots__ = ("_values",)

    def __init__(self, values: Iterable[float] | np.ndarray) -> None:
        arr = np.array(values, dtype=np.float32).reshape(-1)
        if arr.size == 0:
            raise ValueError("feature vector cannot be empty")
        arr.setflags(write=False)
        self._values = arr

    @property
    def values(self) -> np.ndarray:
        """Read-only view of the underlying array."""

        return self._values

    @property
    def dimension(self) -> int:
        return int(self._values.shape[0])

    def __len__(self) -> int:
        return self.dimension

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FeatureVector):
            return NotImplemented
        return self.dimension == other.dimension and bool(np.array_equal(self._values, other._values))

    def __hash__(self) -> int:
        return hash(self._values.tobytes())

    def __repr__(self) -> str:
        return f"FeatureVector(dim={self.dimension})"

    def _check_dim(self, other: FeatureVector) -> None:
        if other.dimension != self.dimension:
            raise ValueError("vectors must have the same dimension")

    def cosine_similarity(self, other: FeatureVector) -> float:
        self._check_dim(other)
        a = self._values.astype(np.float64)
        b = other._values.astype(np.float64)
        norm_a = float(np.linalg.norm(a))
        norm_b = float(np.linalg.norm(b))
        if norm_a < 1e-10 or norm_b < 1e-10:
            return 0.0
        return float(np.dot(a, b) / (norm_a * norm_b))

    def euclidean_distance(self, other: FeatureVector) -> float:
        self._check_dim(other)
        diff = self._values.astype(np.float64) - other._values.astype(np.float64)
        return float(np.sqrt(np.dot(diff, diff)))

    def normalize(self) -> FeatureVector:
        """Return an L2-normalized copy (a zero vector is returned as-is)."""

        norm = float(np.linalg.norm(self._values))
        if norm == 0.0:
            return self
        return FeatureVector(self._values / norm)

    def blend(self, other: FeatureVector, alpha: float) -> FeatureVector:
        """Return `self * (1 - alpha) + other * alpha` as a new vector."""

        self._check_dim(other)
        return FeatureVector(self._values * (1.0 - alpha) + other._values * alpha)

    def is_valid(
        self,
        expected_dim: int | None = DEFAULT_FEATURE_DIM,
        min_variance: float = DEFAULT_MIN_VARIANCE,
    ) -> bool:
        """Finite values, expected length and a minimum spread."""

        if expected_dim is not None and self.dimension != expected_dim:
            return False
        if not bool(np.all(np.isfinite(self._values))):
            return False
        values = self._values.astype(np.float64)
        variance = float(np.mean(values * values) - np.mean(values) ** 2)
        return variance >= min_variance

    def to_list(self) -> list[float]:
        return [float(v) for v in self._values]
