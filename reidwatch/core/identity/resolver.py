"""Global identity resolution for live cameras.

`IdentityResolver` owns the catalog of known persons and decides, for every
observation, whether it belongs to an existing identity or a new one. Matching
combines Euclidean feature distance with temporal, entry-zone and confidence
heuristics; confirmation and expiry policies decide which identities count.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from reidwatch.core.features import DEFAULT_MIN_VARIANCE, FeatureVector
from reidwatch.core.persistence import Persistence
from reidwatch.core.types import BoundingBox

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IdentityConfig:
    """Matching, confirmation and retention knobs for `IdentityResolver`."""

    distance_threshold: float = 0.25
    cross_camera_threshold: float = 0.20
    min_distance_for_new_identity: float = 0.15
    min_separation_ratio: float = 1.05

    # Temporal matching
    active_window_seconds: float = 15.0
    recent_window_seconds: float = 60.0
    stale_after_seconds: float = 50.0
    require_recent_activity: bool = True
    stale_penalty: float = 0.50

    # Entry zone
    enable_entry_zone: bool = True
    entry_zone_margin_percent: float = 25.0
    entry_zone_bonus_distance: float = 0.15

    high_confidence_threshold: float = 0.85
    high_confidence_deduction: float = 0.02

    match_stability_frames: int = 1
    stability_reset_seconds: float = 2.0
    stability_tracker_ttl_seconds: float = 30.0

    # Confirmation
    enable_confidence_confirmation: bool = True
    min_confidence_for_confirmation: float = 0.25
    instant_confirm_confidence: float = 0.30
    enable_fast_walker_mode: bool = True
    confidence_window_seconds: float = 10.0

    update_vector_on_match: bool = False
    vector_update_alpha: float = 0.3

    min_crop_width: int = 12
    min_crop_height: int = 25
    feature_dim: int = 512
    min_feature_variance: float = DEFAULT_MIN_VARIANCE

    max_identities_in_memory: int = 500
    load_from_storage_on_startup: bool = False
    storage_load_hours: int = 0

    active_count_window_seconds: float = 30.0
    today_count_cache_seconds: float = 10.0


@dataclass
class ConfidenceRecord:
    timestamp: float
    confidence: float
    camera_id: int


@dataclass
class GlobalIdentity:
    """One physical person as known to the resolver."""

    identity_id: uuid.UUID
    features: FeatureVector
    first_seen: float
    last_seen: float
    last_active: float
    first_camera_id: int
    last_camera_id: int
    cameras_seen: set[int] = field(default_factory=set)
    match_count: int = 1
    confirmed: bool = False
    confirmed_by_confidence: bool = False
    confidence_history: list[ConfidenceRecord] = field(default_factory=list)
    max_confidence: float = 0.0
    high_confidence_count: int = 0
    last_box: BoundingBox | None = None
    storage_id: int = 0
    from_storage: bool = False


@dataclass
class _StabilityTracker:
    current_id: uuid.UUID | None
    pending_id: uuid.UUID | None = None
    pending_count: int = 0
    last_update: float = 0.0


@dataclass
class _MatchResult:
    identity_id: uuid.UUID | None = None
    raw_distance: float = float("inf")
    ambiguous: bool = False
    stale: bool = False

    @property
    def matched(self) -> bool:
        return self.identity_id is not None


class IdentityResolver:
    """Thread-safe catalog of global identities.

    `resolve()` never performs I/O; the only external call (today's unique count)
    happens outside the catalog lock.
    """

    def __init__(
        self,
        config: IdentityConfig | None = None,
        persistence: Persistence | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or IdentityConfig()
        self._persistence = persistence
        self._clock = clock
        self._lock = threading.RLock()
        self._identities: dict[uuid.UUID, GlobalIdentity] = {}
        self._camera_active: dict[int, dict[uuid.UUID, float]] = {}
        self._stability: dict[tuple[int, int], _StabilityTracker] = {}
        self._frame_dims: dict[int, tuple[int, int]] = {}
        self._session_start = clock()
        self._session_persons: dict[uuid.UUID, float] = {}
        self._today_count = 0
        self._today_count_at: float | None = None

    # ------------------------------------------------------------------ resolve

    def set_frame_dimensions(self, camera_id: int, width: int, height: int) -> None:
        """Record the frame size used for entry-zone checks on `camera_id`."""

        if width <= 0 or height <= 0:
            raise ValueError("frame dimensions must be positive")
        with self._lock:
            self._frame_dims[camera_id] = (int(width), int(height))

    def resolve(
        self,
        features: FeatureVector,
        camera_id: int,
        box: BoundingBox | None = None,
        confidence: float = 0.0,
        track_id: int = 0,
    ) -> uuid.UUID | None:
        """Map one observation to a global identity.

        Returns `None` when the observation is rejected (undersized crop or
        invalid feature vector).
        """

        cfg = self.config
        if box is not None and not self._is_sufficient_size(box):
            if not (cfg.enable_fast_walker_mode and confidence >= cfg.min_confidence_for_confirmation):
                return None

        if not features.is_valid(cfg.feature_dim, cfg.min_feature_variance):
            return None

        with self._lock:
            now = self._clock()
            in_entry_zone = self._is_in_entry_zone(camera_id, box)
            result = self._match(features, camera_id, in_entry_zone, confidence, now)
            identity_id = self._apply_stability(track_id, camera_id, result, now)

            if identity_id is not None and identity_id in self._identities:
                self._update_on_match(identity_id, features, camera_id, box, confidence, now)
            else:
                identity_id = self._create_identity(features, camera_id, box, confidence, in_entry_zone, now)
                tracker = self._stability.get((camera_id, track_id))
                if tracker is not None:
                    tracker.current_id = identity_id
            self._track_active(identity_id, camera_id, now)
            return identity_id

    def _is_sufficient_size(self, box: BoundingBox) -> bool:
        cfg = self.config
        min_area = cfg.min_crop_width * cfg.min_crop_height
        return box.area >= min_area * 0.6 or (
            box.width >= cfg.min_crop_width and box.height >= cfg.min_crop_height
        )

    def _is_in_entry_zone(self, camera_id: int, box: BoundingBox | None) -> bool:
        if box is None or not self.config.enable_entry_zone:
            return False
        dims = self._frame_dims.get(camera_id)
        if dims is None:
            return False
        width, height = dims
        margin_x = width * self.config.entry_zone_margin_percent / 100.0
        margin_y = height * self.config.entry_zone_margin_percent / 100.0
        cx, cy = box.center
        return cx < margin_x or cx > width - margin_x or cy < margin_y or cy > height - margin_y

    def _temporal_penalty(self, idle: float) -> float:
        cfg = self.config
        if idle <= cfg.active_window_seconds:
            return 0.0
        span = cfg.recent_window_seconds - cfg.active_window_seconds
        if span <= 0:
            return cfg.stale_penalty
        return cfg.stale_penalty * min(1.0, (idle - cfg.active_window_seconds) / span)

    def _match(
        self,
        features: FeatureVector,
        camera_id: int,
        in_entry_zone: bool,
        confidence: float,
        now: float,
    ) -> _MatchResult:
        cfg = self.config
        scored: list[tuple[float, float, float, GlobalIdentity]] = []
        for identity in self._identities.values():
            idle = now - identity.last_active
            # Identities outside the recent window are gone, never merged.
            if idle > cfg.recent_window_seconds:
                continue
            if identity.features.dimension != features.dimension:
                continue
            raw = features.euclidean_distance(identity.features)
            scored.append((raw + self._temporal_penalty(idle), raw, idle, identity))

        if not scored:
            return _MatchResult()

        scored.sort(key=lambda item: item[0])
        best_adj, best_raw, best_idle, best = scored[0]
        second_adj = scored[1][0] if len(scored) > 1 else None

        cross_camera = camera_id > 0 and best.last_camera_id != camera_id
        threshold = cfg.cross_camera_threshold if cross_camera else cfg.distance_threshold
        if in_entry_zone:
            threshold -= cfg.entry_zone_bonus_distance
        if confidence >= cfg.high_confidence_threshold:
            threshold -= cfg.high_confidence_deduction

        short_id = best.identity_id.hex[:8]
        logger.debug(
            "Match candidate %s raw=%.3f adj=%.3f thresh=%.3f entry=%s",
            short_id,
            best_raw,
            best_adj,
            threshold,
            in_entry_zone,
        )

        if best_adj > threshold:
            return _MatchResult(raw_distance=best_raw)

        stale = cfg.require_recent_activity and best_idle > cfg.stale_after_seconds
        if stale:
            logger.info("Rejecting stale match to %s (idle %.1fs)", short_id, best_idle)
            return _MatchResult(raw_distance=best_raw, stale=True)

        ambiguous = False
        if second_adj is not None and second_adj < threshold:
            ratio = second_adj / max(best_adj, 0.001)
            if ratio < cfg.min_separation_ratio:
                ambiguous = True
                if best_raw > cfg.min_distance_for_new_identity:
                    logger.info("Ambiguous match rejected for %s", short_id)
                    return _MatchResult(raw_distance=best_raw, ambiguous=True)

        if in_entry_zone and best_raw > cfg.min_distance_for_new_identity * 1.5:
            logger.info("Entry zone: new identity instead of weak match to %s", short_id)
            return _MatchResult(raw_distance=best_raw)

        return _MatchResult(identity_id=best.identity_id, raw_distance=best_raw, ambiguous=ambiguous)

    def _apply_stability(
        self,
        track_id: int,
        camera_id: int,
        result: _MatchResult,
        now: float,
    ) -> uuid.UUID | None:
        cfg = self.config
        if track_id <= 0 or cfg.match_stability_frames <= 1:
            return result.identity_id

        key = (camera_id, track_id)
        tracker = self._stability.get(key)
        if tracker is None:
            self._stability[key] = _StabilityTracker(current_id=result.identity_id, last_update=now)
            return result.identity_id

        if now - tracker.last_update > cfg.stability_reset_seconds:
            tracker.current_id = result.identity_id
            tracker.pending_id = None
            tracker.pending_count = 0
        tracker.last_update = now

        candidate = result.identity_id
        if candidate == tracker.current_id:
            tracker.pending_id = None
            tracker.pending_count = 0
            return tracker.current_id

        if candidate == tracker.pending_id:
            tracker.pending_count += 1
            if tracker.pending_count >= cfg.match_stability_frames:
                logger.info(
                    "Stable identity change on track %s: %s -> %s",
                    track_id,
                    tracker.current_id.hex[:8] if tracker.current_id else "none",
                    candidate.hex[:8] if candidate else "new",
                )
                tracker.current_id = candidate
                tracker.pending_id = None
                tracker.pending_count = 0
                return candidate
        else:
            tracker.pending_id = candidate
            tracker.pending_count = 1
        return tracker.current_id

    def _create_identity(
        self,
        features: FeatureVector,
        camera_id: int,
        box: BoundingBox | None,
        confidence: float,
        in_entry_zone: bool,
        now: float,
    ) -> uuid.UUID:
        cfg = self.config
        identity = GlobalIdentity(
            identity_id=uuid.uuid4(),
            features=features,
            first_seen=now,
            last_seen=now,
            last_active=now,
            first_camera_id=camera_id,
            last_camera_id=camera_id,
            last_box=box,
            max_confidence=confidence,
        )
        if confidence > 0:
            identity.confidence_history.append(ConfidenceRecord(now, confidence, camera_id))
            if confidence >= cfg.min_confidence_for_confirmation:
                identity.high_confidence_count = 1
        if camera_id > 0:
            identity.cameras_seen.add(camera_id)

        if confidence >= cfg.instant_confirm_confidence or (
            cfg.enable_confidence_confirmation and confidence >= cfg.min_confidence_for_confirmation
        ):
            identity.confirmed = True
            identity.confirmed_by_confidence = True

        self._identities[identity.identity_id] = identity
        logger.info(
            "New identity %s on camera %s (entry=%s, confirmed=%s, total=%d)",
            identity.identity_id.hex[:8],
            camera_id,
            in_entry_zone,
            identity.confirmed,
            len(self._identities),
        )
        return identity.identity_id

    def _update_on_match(
        self,
        identity_id: uuid.UUID,
        features: FeatureVector,
        camera_id: int,
        box: BoundingBox | None,
        confidence: float,
        now: float,
    ) -> None:
        cfg = self.config
        identity = self._identities[identity_id]
        identity.last_seen = now
        identity.last_active = now
        identity.last_box = box
        identity.match_count += 1
        if camera_id > 0:
            identity.last_camera_id = camera_id
            identity.cameras_seen.add(camera_id)

        if confidence > 0:
            identity.max_confidence = max(identity.max_confidence, confidence)
            identity.confidence_history.append(ConfidenceRecord(now, confidence, camera_id))
            window_start = now - cfg.confidence_window_seconds
            identity.confidence_history = [
                r for r in identity.confidence_history if r.timestamp >= window_start
            ]
            if confidence >= cfg.min_confidence_for_confirmation:
                identity.high_confidence_count += 1
                if cfg.enable_confidence_confirmation:
                    identity.confirmed_by_confidence = True

        if cfg.update_vector_on_match:
            identity.features = identity.features.blend(features, cfg.vector_update_alpha).normalize()

        if not identity.confirmed:
            identity.confirmed = True
            logger.info(
                "Confirmed identity %s (matches=%d, conf=%.2f)",
                identity_id.hex[:8],
                identity.match_count,
                confidence,
            )

    def _track_active(self, identity_id: uuid.UUID, camera_id: int, now: float) -> None:
        if camera_id <= 0:
            return
        self._camera_active.setdefault(camera_id, {})[identity_id] = now
        self._session_persons[identity_id] = now

    # ------------------------------------------------------------------ storage

    def mark_persisted(self, identity_id: uuid.UUID, storage_id: int) -> None:
        """Bind an identity to its storage row; stored identities never expire."""

        with self._lock:
            identity = self._identities.get(identity_id)
            if identity is not None:
                identity.storage_id = storage_id
                identity.from_storage = True

    def storage_id(self, identity_id: uuid.UUID) -> int:
        with self._lock:
            identity = self._identities.get(identity_id)
            return identity.storage_id if identity is not None else 0

    def load_from_persistence(self) -> int:
        """Pre-seed the catalog with recently stored identities (if enabled)."""

        cfg = self.config
        if not cfg.load_from_storage_on_startup or self._persistence is None:
            return 0
        try:
            stored = self._persistence.load_recent_identities(cfg.storage_load_hours)
        except Exception:
            logger.exception("Failed to load identities from storage")
            return 0

        stored = sorted(stored, key=lambda s: (s.last_seen, s.total_sightings), reverse=True)
        loaded = 0
        with self._lock:
            for record in stored[: cfg.max_identities_in_memory]:
                features = FeatureVector(record.features)
                if features.dimension != cfg.feature_dim:
                    continue
                self._identities[record.identity_id] = GlobalIdentity(
                    identity_id=record.identity_id,
                    features=features,
                    first_seen=record.first_seen,
                    last_seen=record.last_seen,
                    last_active=record.last_seen,
                    first_camera_id=record.first_camera_id,
                    last_camera_id=record.last_camera_id,
                    cameras_seen={record.first_camera_id, record.last_camera_id},
                    match_count=record.total_sightings,
                    confirmed=True,
                    confirmed_by_confidence=True,
                    storage_id=record.storage_id,
                    from_storage=True,
                )
                loaded += 1
        logger.info("Loaded %d identities from storage", loaded)
        return loaded

    # ------------------------------------------------------------------ queries

    def get_identity(self, identity_id: uuid.UUID) -> GlobalIdentity | None:
        with self._lock:
            return self._identities.get(identity_id)

    def is_confirmed(self, identity_id: uuid.UUID) -> bool:
        with self._lock:
            identity = self._identities.get(identity_id)
            return identity is not None and identity.confirmed

    def total_count(self) -> int:
        with self._lock:
            return len(self._identities)

    def confirmed_count(self) -> int:
        with self._lock:
            return sum(1 for i in self._identities.values() if i.confirmed)

    def camera_confirmed_count(self, camera_id: int) -> int:
        with self._lock:
            return sum(
                1 for i in self._identities.values() if i.confirmed and camera_id in i.cameras_seen
            )

    def currently_active_count(self, camera_id: int) -> int:
        with self._lock:
            active = self._camera_active.get(camera_id)
            if not active:
                return 0
            cutoff = self._clock() - self.config.active_count_window_seconds
            return sum(1 for ts in active.values() if ts >= cutoff)

    def session_unique_count(self) -> int:
        with self._lock:
            return sum(1 for ts in self._session_persons.values() if ts >= self._session_start)

    def detailed_counts(self) -> dict[str, int]:
        with self._lock:
            confirmed = [i for i in self._identities.values() if i.confirmed]
            high = sum(
                1
                for i in confirmed
                if i.confirmed_by_confidence or len(i.cameras_seen) > 1 or i.match_count >= 3
            )
            return {"total": len(self._identities), "confirmed": len(confirmed), "high_confidence": high}

    def today_unique_count(self) -> int:
        """Unique persons seen since UTC midnight, cached briefly.

        Served from persistence when available; falls back to the in-memory
        catalog when there is no store or the store fails.
        """

        now = self._clock()
        with self._lock:
            if (
                self._today_count_at is not None
                and now - self._today_count_at <= self.config.today_count_cache_seconds
            ):
                return self._today_count

        day_start = (
            datetime.fromtimestamp(now, tz=timezone.utc)
            .replace(hour=0, minute=0, second=0, microsecond=0)
            .timestamp()
        )
        count: int | None = None
        if self._persistence is not None:
            try:
                count = int(self._persistence.count_unique_since(day_start))
            except Exception:
                logger.warning("Today count query failed; using in-memory catalog", exc_info=True)
        with self._lock:
            if count is None:
                count = sum(
                    1
                    for i in self._identities.values()
                    if i.first_seen >= day_start or i.last_seen >= day_start
                )
            self._today_count = count
            self._today_count_at = now
            return count

    def statistics(self) -> dict[str, Any]:
        with self._lock:
            now = self._clock()
            identities = list(self._identities.values())
            return {
                "total_identities": len(identities),
                "confirmed_identities": sum(1 for i in identities if i.confirmed),
                "confidence_confirmed": sum(1 for i in identities if i.confirmed_by_confidence),
                "from_storage": sum(1 for i in identities if i.from_storage),
                "currently_active": sum(
                    1 for i in identities if now - i.last_active < self.config.recent_window_seconds
                ),
                "active_cameras": len(self._camera_active),
                "session_unique": sum(
                    1 for ts in self._session_persons.values() if ts >= self._session_start
                ),
            }

    # ------------------------------------------------------------------ retention

    def cleanup_expired(self, max_idle_seconds: float) -> int:
        """Drop unconfirmed, unstored identities idle longer than `max_idle_seconds`.

        Returns the number of removed identities.
        """

        with self._lock:
            now = self._clock()
            cutoff = now - max_idle_seconds
            expired = [
                identity_id
                for identity_id, identity in self._identities.items()
                if not identity.confirmed and not identity.from_storage and identity.last_seen < cutoff
            ]
            for identity_id in expired:
                del self._identities[identity_id]

            ttl = self.config.stability_tracker_ttl_seconds
            for key in [k for k, t in self._stability.items() if now - t.last_update > ttl]:
                del self._stability[key]

            for active in self._camera_active.values():
                for identity_id in [i for i, ts in active.items() if ts < cutoff]:
                    del active[identity_id]

        if expired:
            logger.info("Cleaned %d unconfirmed identities", len(expired))
        return len(expired)

    def clear_all(self) -> None:
        with self._lock:
            self._identities.clear()
            self._camera_active.clear()
            self._session_persons.clear()
            self._stability.clear()
            self._today_count = 0
            self._today_count_at = None
        logger.warning("Cleared all identities")

    def clear_camera(self, camera_id: int) -> None:
        with self._lock:
            removed = self._camera_active.pop(camera_id, None)
            self._frame_dims.pop(camera_id, None)
            for key in [k for k in self._stability if k[0] == camera_id]:
                del self._stability[key]
        if removed:
            logger.info("Cleared camera %s tracking (%d entries)", camera_id, len(removed))

    def start_new_session(self) -> None:
        with self._lock:
            self._session_start = self._clock()
            self._session_persons.clear()
            self._stability.clear()
        logger.info("New identity session started")
