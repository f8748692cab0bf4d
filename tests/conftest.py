from __future__ import annotations

import numpy as np
import pytest

from reidwatch.core.features import FeatureVector


class FakeClock:
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def unit_vector(seed: int, dim: int = 512) -> np.ndarray:
    rng = np.random.default_rng(seed)
    v = rng.normal(size=dim)
    return v / np.linalg.norm(v)


def offset_vector(base: np.ndarray, distance: float, seed: int) -> np.ndarray:
    """`base` moved by exactly `distance` (euclidean) in a random direction."""

    direction = unit_vector(seed, base.shape[0])
    return base + direction * distance


@pytest.fixture
def make_features():
    def _make(seed: int = 0, dim: int = 512) -> FeatureVector:
        return FeatureVector(unit_vector(seed, dim))

    return _make


@pytest.fixture
def blank_frame() -> np.ndarray:
    return np.zeros((480, 640, 3), dtype=np.uint8)
