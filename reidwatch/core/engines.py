"""Engine capability interfaces.

The pipelines only see two capabilities: a person detector and an appearance
feature extractor. Concrete variants (YOLO, OSNet) live in their own modules and
are configured with the plain dataclasses below.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

import numpy as np

from reidwatch.core.features import FeatureVector
from reidwatch.core.types import BoundingBox, Detection


@dataclass(frozen=True)
class DetectionConfig:
    """Detector knobs shared by every detection backend."""

    model_path: str = "yolo11s.pt"
    confidence_threshold: float = 0.25
    nms_threshold: float = 0.45
    input_size: int = 640
    min_width: int = 12
    min_height: int = 25

    def is_large_enough(self, detection: Detection) -> bool:
        return detection.box.width >= self.min_width and detection.box.height >= self.min_height


@dataclass(frozen=True)
class ReIdConfig:
    """Preprocessing contract for appearance models (OSNet defaults)."""

    model_path: str = "models/osnet_x1_0.onnx"
    input_width: int = 128
    input_height: int = 256
    feature_dim: int = 512
    mean: tuple[float, float, float] = (0.485, 0.456, 0.406)
    std: tuple[float, float, float] = (0.229, 0.224, 0.225)


class DetectionEngine(Protocol):
    """Anything that can localize persons in a BGR frame.

    Implementations apply NMS themselves and only return the person class.
    """

    def detect(self, frame: np.ndarray, config: DetectionConfig | None = None) -> list[Detection]:
        ...


class ReIdEngine(Protocol):
    """Anything that turns a person crop into a feature vector."""

    def extract_features(
        self,
        frame: np.ndarray,
        box: BoundingBox,
        config: ReIdConfig | None = None,
    ) -> FeatureVector | None:
        ...

    def extract_features_batch(
        self,
        frame: np.ndarray,
        boxes: Sequence[BoundingBox],
        config: ReIdConfig | None = None,
    ) -> list[FeatureVector | None]:
        ...


def crop_box(frame: np.ndarray, box: BoundingBox, padding: int = 0) -> np.ndarray | None:
    """Return the (optionally padded) region of `frame` under `box`.

    The region is clamped to the frame; `None` is returned when nothing is left.
    """

    h, w = frame.shape[:2]
    x1 = max(0, box.x - padding)
    y1 = max(0, box.y - padding)
    x2 = min(w, box.right + padding)
    y2 = min(h, box.bottom + padding)
    if x2 <= x1 or y2 <= y1:
        return None
    return frame[y1:y2, x1:x2]
