"""Shared type definitions used across reidwatch.

This module centralizes small, stable types (boxes, detections, tracked
persons) so engine/resolver/pipeline code can stay strongly typed.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field

import numpy as np

from reidwatch.core.features import FeatureVector

Frame = np.ndarray

Point = tuple[float, float]


@dataclass(frozen=True)
class BoundingBox:
    """Integer pixel box in (x, y, width, height) form."""

    x: int
    y: int
    width: int
    height: int

    def __post_init__(self) -> None:
        if self.width <= 0:
            raise ValueError("width must be positive")
        if self.height <= 0:
            raise ValueError("height must be positive")
        # Negative origins come out of letterboxed detectors; clamp them.
        object.__setattr__(self, "x", max(0, int(self.x)))
        object.__setattr__(self, "y", max(0, int(self.y)))
        object.__setattr__(self, "width", int(self.width))
        object.__setattr__(self, "height", int(self.height))

    @classmethod
    def from_xyxy(cls, x1: float, y1: float, x2: float, y2: float) -> BoundingBox:
        """Build a box from corner coordinates, rounding to whole pixels."""

        left, top = int(round(x1)), int(round(y1))
        return cls(left, top, max(1, int(round(x2)) - left), max(1, int(round(y2)) - top))

    @property
    def right(self) -> int:
        return self.x + self.width

    @property
    def bottom(self) -> int:
        return self.y + self.height

    @property
    def area(self) -> int:
        return self.width * self.height

    @property
    def center(self) -> Point:
        return (self.x + self.width / 2.0, self.y + self.height / 2.0)

    @property
    def aspect_ratio(self) -> float:
        return self.height / self.width

    def center_distance(self, other: BoundingBox) -> float:
        """Euclidean distance between the two box centers, in pixels."""

        ax, ay = self.center
        bx, by = other.center
        return math.hypot(ax - bx, ay - by)

    def intersects(self, other: BoundingBox) -> bool:
        return (
            self.x < other.right
            and self.right > other.x
            and self.y < other.bottom
            and self.bottom > other.y
        )

    def iou(self, other: BoundingBox) -> float:
        """Compute the intersection-over-union (IoU) of two boxes."""

        x1 = max(self.x, other.x)
        y1 = max(self.y, other.y)
        x2 = min(self.right, other.right)
        y2 = min(self.bottom, other.bottom)
        inter = max(0, x2 - x1) * max(0, y2 - y1)
        if inter == 0:
            return 0.0
        return inter / float(self.area + other.area - inter)

    def clamp_to(self, max_width: int, max_height: int) -> BoundingBox:
        """Return a copy that lies fully inside a `max_width` x `max_height` frame."""

        x = max(0, min(self.x, max_width - 1))
        y = max(0, min(self.y, max_height - 1))
        width = min(self.width, max_width - x)
        height = min(self.height, max_height - y)
        return BoundingBox(x, y, max(1, width), max(1, height))

    def as_tuple(self) -> tuple[int, int, int, int]:
        return (self.x, self.y, self.width, self.height)


@dataclass
class Detection:
    """Raw detector output for the person class."""

    box: BoundingBox
    confidence: float


@dataclass
class TrackedPerson:
    """One person as published by a live camera pipeline."""

    identity_id: uuid.UUID
    box: BoundingBox
    confidence: float
    track_id: int = 0
    features: FeatureVector | None = None
    is_new: bool = False
    has_reid_match: bool = False

    @property
    def short_id(self) -> str:
        return self.identity_id.hex[:8]


@dataclass
class DetectionUpdate:
    """Per-cycle payload pushed to the event sink by a camera pipeline."""

    camera_id: int
    count: int
    unique_count: int
    today_unique_count: int
    timestamp: float
    fps: float
    persons: list[dict] = field(default_factory=list)
