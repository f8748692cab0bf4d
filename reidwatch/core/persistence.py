"""Persistence collaborator.

The core only talks to storage through the `Persistence` protocol. The bundled
`InMemoryPersistence` is what the API and CLI use by default; a database-backed
store can be dropped in without touching the pipelines.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from reidwatch.core.features import FeatureVector
from reidwatch.core.types import TrackedPerson

if TYPE_CHECKING:
    from reidwatch.core.video.jobs import VideoJob

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PersistenceConfig:
    """Throttling policy for the live persist stage."""

    save_to_storage: bool = True
    save_interval_seconds: float = 10.0
    only_on_count_change: bool = True
    min_count_change_threshold: int = 1


@dataclass
class StoredIdentity:
    """Identity row as returned by `load_recent_identities`."""

    identity_id: uuid.UUID
    storage_id: int
    features: list[float]
    first_seen: float
    last_seen: float
    first_camera_id: int
    last_camera_id: int
    total_sightings: int = 1


class Persistence(Protocol):
    def save_detection_batch(self, source_id: str, persons: Sequence[TrackedPerson]) -> None:
        ...

    def upsert_identity(self, identity_id: uuid.UUID, features: FeatureVector, camera_id: int) -> int:
        ...

    def load_recent_identities(self, since_hours: int) -> list[StoredIdentity]:
        ...

    def count_unique_since(self, since: float) -> int:
        ...

    def save_video_results(self, job: VideoJob) -> None:
        ...


class SaveThrottle:
    """Decides when the live persist stage may write a batch.

    A save is due once `save_interval_seconds` have elapsed and, with
    `only_on_count_change`, the person count moved by at least
    `min_count_change_threshold`. An empty scene is saved once after people
    leave and then suppressed.
    """

    def __init__(self, config: PersistenceConfig) -> None:
        self.config = config
        self._last_saved_at: float | None = None
        self._last_saved_count = 0

    def should_save(self, count: int, now: float) -> bool:
        cfg = self.config
        if not cfg.save_to_storage:
            return False
        if count <= 0 and self._last_saved_count == 0:
            return False
        if self._last_saved_at is not None and now - self._last_saved_at < cfg.save_interval_seconds:
            return False
        if cfg.only_on_count_change and self._last_saved_at is not None:
            return abs(count - self._last_saved_count) >= cfg.min_count_change_threshold
        return True

    def mark_saved(self, count: int, now: float) -> None:
        self._last_saved_at = now
        self._last_saved_count = count


@dataclass
class _IdentityRow:
    storage_id: int
    features: list[float]
    first_seen: float
    last_seen: float
    first_camera_id: int
    last_camera_id: int
    total_sightings: int = 1


@dataclass
class _Batch:
    source_id: str
    saved_at: float
    persons: list[dict[str, Any]] = field(default_factory=list)


class InMemoryPersistence:
    """Process-local store implementing `Persistence`."""

    def __init__(self, max_batches: int = 1000) -> None:
        self._lock = threading.Lock()
        self._identities: dict[uuid.UUID, _IdentityRow] = {}
        self._batches: list[_Batch] = []
        self._video_results: dict[uuid.UUID, dict[str, Any]] = {}
        self._next_id = 1
        self._max_batches = max_batches

    def save_detection_batch(self, source_id: str, persons: Sequence[TrackedPerson]) -> None:
        batch = _Batch(
            source_id=str(source_id),
            saved_at=time.time(),
            persons=[
                {
                    "identity_id": str(p.identity_id),
                    "box": p.box.as_tuple(),
                    "confidence": float(p.confidence),
                    "track_id": p.track_id,
                }
                for p in persons
            ],
        )
        with self._lock:
            self._batches.append(batch)
            if len(self._batches) > self._max_batches:
                del self._batches[: len(self._batches) - self._max_batches]

    def upsert_identity(self, identity_id: uuid.UUID, features: FeatureVector, camera_id: int) -> int:
        now = time.time()
        with self._lock:
            row = self._identities.get(identity_id)
            if row is None:
                row = _IdentityRow(
                    storage_id=self._next_id,
                    features=features.to_list(),
                    first_seen=now,
                    last_seen=now,
                    first_camera_id=camera_id,
                    last_camera_id=camera_id,
                )
                self._next_id += 1
                self._identities[identity_id] = row
            else:
                row.features = features.to_list()
                row.last_seen = now
                row.last_camera_id = camera_id
                row.total_sightings += 1
            return row.storage_id

    def load_recent_identities(self, since_hours: int) -> list[StoredIdentity]:
        cutoff = time.time() - since_hours * 3600 if since_hours > 0 else float("-inf")
        with self._lock:
            return [
                StoredIdentity(
                    identity_id=identity_id,
                    storage_id=row.storage_id,
                    features=list(row.features),
                    first_seen=row.first_seen,
                    last_seen=row.last_seen,
                    first_camera_id=row.first_camera_id,
                    last_camera_id=row.last_camera_id,
                    total_sightings=row.total_sightings,
                )
                for identity_id, row in self._identities.items()
                if row.last_seen >= cutoff
            ]

    def count_unique_since(self, since: float) -> int:
        with self._lock:
            return sum(
                1 for row in self._identities.values() if row.first_seen >= since or row.last_seen >= since
            )

    def save_video_results(self, job: VideoJob) -> None:
        with self._lock:
            self._video_results[job.job_id] = job.to_summary()

    def video_results(self, job_id: uuid.UUID) -> dict[str, Any] | None:
        with self._lock:
            return self._video_results.get(job_id)

    def batches(self, source_id: str | None = None) -> list[_Batch]:
        with self._lock:
            if source_id is None:
                return list(self._batches)
            return [b for b in self._batches if b.source_id == str(source_id)]
