"""Short-horizon spatial tracker for live cameras.

Bridges frames where re-identification was skipped or failed: a detection that
lands close to an existing track (position and size continuity) inherits the
identity bound to that track instead of minting a new one.
"""

from __future__ import annotations

import itertools
import threading
import time
import uuid
from collections.abc import Callable, Collection
from dataclasses import dataclass

from reidwatch.core.features import FeatureVector
from reidwatch.core.types import BoundingBox


@dataclass
class StableTrack:
    """Internal tracker state for one person."""

    track_id: int
    identity_id: uuid.UUID
    last_box: BoundingBox
    last_seen: float
    consecutive_frames: int = 0
    features: FeatureVector | None = None
    last_confidence: float = 0.0


def size_ratio(a: BoundingBox, b: BoundingBox) -> float:
    """Product of the width and height similarity ratios (1.0 means same size)."""

    return min(a.width / b.width, b.width / a.width) * min(a.height / b.height, b.height / a.height)


class StableTrackManager:
    """Per-camera table of stable tracks. Thread-safe."""

    def __init__(
        self,
        max_movement_px: float = 120.0,
        timeout_seconds: float = 2.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_movement_px = max_movement_px
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._tracks: dict[int, StableTrack] = {}
        self._id_iter = itertools.count(1)

    def __len__(self) -> int:
        with self._lock:
            return len(self._tracks)

    def next_track_id(self) -> int:
        with self._lock:
            return next(self._id_iter)

    def find_existing_track(
        self,
        box: BoundingBox,
        exclude: Collection[int] = (),
    ) -> StableTrack | None:
        """Return the closest track within `max_movement_px`, favoring similar sizes.

        Score is center distance divided by the size ratio (floored at 0.5);
        the lowest score wins.
        """

        best: StableTrack | None = None
        best_score = float("inf")
        with self._lock:
            for track in self._tracks.values():
                if track.track_id in exclude:
                    continue
                distance = box.center_distance(track.last_box)
                if distance > self.max_movement_px:
                    continue
                score = distance / max(size_ratio(box, track.last_box), 0.5)
                if score < best_score:
                    best_score = score
                    best = track
        return best

    def update_track(
        self,
        track_id: int,
        identity_id: uuid.UUID,
        box: BoundingBox,
        confidence: float,
        features: FeatureVector | None = None,
        now: float | None = None,
    ) -> StableTrack:
        """Insert or refresh a track; missing features keep the last known ones."""

        ts = self._clock() if now is None else now
        with self._lock:
            track = self._tracks.get(track_id)
            if track is None:
                track = StableTrack(track_id=track_id, identity_id=identity_id, last_box=box, last_seen=ts)
                self._tracks[track_id] = track
            track.identity_id = identity_id
            track.last_box = box
            track.last_seen = ts
            track.consecutive_frames += 1
            if features is not None:
                track.features = features
            track.last_confidence = confidence
            return track

    def cleanup(self, now: float | None = None) -> int:
        """Discard tracks idle beyond `timeout_seconds`; return how many were dropped."""

        ts = self._clock() if now is None else now
        with self._lock:
            stale = [tid for tid, t in self._tracks.items() if ts - t.last_seen > self.timeout_seconds]
            for tid in stale:
                del self._tracks[tid]
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._tracks.clear()
