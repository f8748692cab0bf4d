"""Identity matching scoped to a single uploaded video.

Each video job gets its own `VideoIdentityMatcher` so that identities never
leak between jobs or into the live-camera catalog. Matching uses cosine
similarity plus a spatial-consistency veto for short frame gaps.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

import numpy as np

from reidwatch.core.features import FeatureVector
from reidwatch.core.types import BoundingBox

logger = logging.getLogger(__name__)


@dataclass
class _VideoIdentity:
    identity_id: uuid.UUID
    features: FeatureVector
    sighting_count: int
    last_box: BoundingBox
    last_seen_frame: int


def has_usable_features(features: FeatureVector | None) -> bool:
    """Loose validity check used for video jobs: some spread and some energy."""

    if features is None or features.dimension == 0:
        return False
    values = features.values
    return float(values.max() - values.min()) > 0.01 and float(np.abs(values).sum()) > 0.1


class VideoIdentityMatcher:
    """Cosine-similarity matcher with per-frame exclusivity.

    An identity matched (or minted) in a frame is not offered again in that same
    frame, so two people in one frame never collapse into one identity.
    """

    def __init__(
        self,
        similarity_threshold: float = 0.70,
        feature_alpha: float = 0.3,
        max_veto_frames: int = 3,
        min_spatial_budget_px: float = 250.0,
        spatial_budget_per_frame_px: float = 60.0,
    ) -> None:
        self.similarity_threshold = similarity_threshold
        self.feature_alpha = feature_alpha
        self.max_veto_frames = max_veto_frames
        self.min_spatial_budget_px = min_spatial_budget_px
        self.spatial_budget_per_frame_px = spatial_budget_per_frame_px
        self._identities: list[_VideoIdentity] = []
        self._used_in_frame: set[uuid.UUID] = set()
        self._current_frame = -1

    @property
    def unique_count(self) -> int:
        return len(self._identities)

    def begin_frame(self, frame_number: int) -> None:
        if frame_number != self._current_frame:
            self._used_in_frame.clear()
            self._current_frame = frame_number

    def match(
        self,
        features: FeatureVector | None,
        box: BoundingBox,
        frame_number: int,
    ) -> tuple[uuid.UUID, FeatureVector | None]:
        """Return `(identity_id, current_features)` for one detection.

        Unusable features still yield a fresh identity, but it is not kept as a
        match candidate and `None` is returned for the features.
        """

        self.begin_frame(frame_number)

        if not has_usable_features(features):
            logger.warning("Unusable features in frame %d; minting a new identity", frame_number)
            return self._create(None, box, frame_number), None

        best: _VideoIdentity | None = None
        best_similarity = 0.0
        for identity in self._identities:
            if identity.identity_id in self._used_in_frame:
                continue
            similarity = features.cosine_similarity(identity.features)
            if similarity > best_similarity:
                best_similarity = similarity
                best = identity

        if best is None or best_similarity < self.similarity_threshold:
            return self._create(features, box, frame_number), features

        frames_elapsed = frame_number - best.last_seen_frame
        distance = best.last_box.center_distance(box)
        budget = max(self.min_spatial_budget_px, frames_elapsed * self.spatial_budget_per_frame_px)
        if frames_elapsed <= self.max_veto_frames and distance > budget:
            logger.info(
                "Rejected match to %s: similarity %.3f but moved %.0fpx (budget %.0fpx) in %d frames",
                best.identity_id.hex[:6],
                best_similarity,
                distance,
                budget,
                frames_elapsed,
            )
            return self._create(features, box, frame_number), features

        best.sighting_count += 1
        best.last_box = box
        best.last_seen_frame = frame_number
        best.features = best.features.blend(features, self.feature_alpha)
        self._used_in_frame.add(best.identity_id)
        return best.identity_id, best.features

    def _create(self, features: FeatureVector | None, box: BoundingBox, frame_number: int) -> uuid.UUID:
        identity_id = uuid.uuid4()
        if features is not None:
            self._identities.append(
                _VideoIdentity(
                    identity_id=identity_id,
                    features=features,
                    sighting_count=1,
                    last_box=box,
                    last_seen_frame=frame_number,
                )
            )
        self._used_in_frame.add(identity_id)
        logger.debug("New video identity %s (total %d)", identity_id.hex[:6], len(self._identities))
        return identity_id
