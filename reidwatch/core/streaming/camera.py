"""Per-camera live pipeline.

One `CameraPipeline` runs four background threads over shared, lock-protected
state:

- capture: reads frames at the target rate and publishes the latest JPEG
  (last writer wins)
- detect: runs detection, stable-track lookup, throttled re-identification
  and identity resolution, then publishes the tracked-person list
- annotate: draws overlays on the latest frame and pushes it into a bounded
  drop-oldest output queue
- persist: periodically hands persons with features to the persistence
  collaborator

Stages are deliberately not frame-synchronized: annotate may draw a newer frame
than the one detection last used.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from enum import Enum
from queue import Empty, Full, Queue
from typing import Any

import cv2
import numpy as np

from reidwatch.core.engines import DetectionConfig, DetectionEngine, ReIdConfig, ReIdEngine
from reidwatch.core.events import EventSink, emit
from reidwatch.core.identity.resolver import IdentityResolver
from reidwatch.core.overlay.draw import draw_overlays
from reidwatch.core.persistence import Persistence, PersistenceConfig, SaveThrottle
from reidwatch.core.trackers.stable_tracker import StableTrackManager
from reidwatch.core.types import DetectionUpdate, TrackedPerson
from reidwatch.core.video_sources.base import VideoSource, open_stream_source

logger = logging.getLogger(__name__)


class StreamState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ERROR = "error"


@dataclass(frozen=True)
class StreamConfig:
    """Timing, retry and confirmation knobs for a live camera."""

    target_fps: int = 25
    detection_interval_ms: int = 50
    reid_every_n_frames: int = 1
    reconnect_delay_ms: int = 3000
    max_reconnect_attempts: int = 5
    max_consecutive_errors: int = 30
    jpeg_quality: int = 80
    frame_buffer_size: int = 3
    lock_timeout_ms: int = 100
    min_reid_crop_area: int = 20 * 40

    # Live confirmation buffer
    confirmation_frames: int = 2
    elevated_confidence: float = 0.55
    instant_confidence: float = 0.75
    max_pending_age: int = 8
    pending_idle_seconds: float = 3.0

    stage_join_timeout: float = 5.0


@dataclass
class _PendingPerson:
    first_seen: float
    last_seen: float
    frame_count: int = 0
    has_features: bool = False
    max_confidence: float = 0.0


class ConfirmationBuffer:
    """Decides when an identity seen on this camera counts toward the unique total."""

    def __init__(self, config: StreamConfig) -> None:
        self.config = config
        self._lock = threading.Lock()
        self._pending: dict[uuid.UUID, _PendingPerson] = {}
        self._seen: set[uuid.UUID] = set()

    @property
    def seen_count(self) -> int:
        with self._lock:
            return len(self._seen)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def is_seen(self, identity_id: uuid.UUID) -> bool:
        with self._lock:
            return identity_id in self._seen

    def observe(self, identity_id: uuid.UUID, confidence: float, has_features: bool, now: float) -> bool:
        """Record one sighting; return True exactly when it confirms the identity."""

        with self._lock:
            return self._observe(identity_id, confidence, has_features, now)

    def _observe(self, identity_id: uuid.UUID, confidence: float, has_features: bool, now: float) -> bool:
        if identity_id in self._seen:
            return False
        cfg = self.config
        pending = self._pending.get(identity_id)
        if pending is None:
            pending = _PendingPerson(first_seen=now, last_seen=now)
            self._pending[identity_id] = pending
        pending.frame_count += 1
        pending.last_seen = now
        pending.has_features = pending.has_features or has_features
        pending.max_confidence = max(pending.max_confidence, confidence)

        confirm = (
            (pending.frame_count >= cfg.confirmation_frames and pending.has_features)
            or (pending.frame_count >= cfg.confirmation_frames and pending.max_confidence >= cfg.elevated_confidence)
            or (confidence >= cfg.instant_confidence and has_features)
        )
        if confirm:
            self._seen.add(identity_id)
            del self._pending[identity_id]
            logger.info(
                "Counted %s (frames=%d, conf=%.2f, features=%s)",
                identity_id.hex[:8],
                pending.frame_count,
                pending.max_confidence,
                pending.has_features,
            )
        return confirm

    def prune(self, seen_this_cycle: set[uuid.UUID], now: float) -> None:
        """Drop pending entries absent from this cycle, too old, or idle."""

        cfg = self.config
        with self._lock:
            stale = [
                identity_id
                for identity_id, p in self._pending.items()
                if identity_id not in seen_this_cycle
                or p.frame_count > cfg.max_pending_age
                or now - p.last_seen > cfg.pending_idle_seconds
            ]
            for identity_id in stale:
                del self._pending[identity_id]

    def clear(self) -> None:
        with self._lock:
            self._pending.clear()
            self._seen.clear()


def _acquire(lock: threading.Lock, timeout: float) -> bool:
    return lock.acquire(timeout=timeout)


class CameraPipeline:
    """Connects to one camera and runs the four live stages."""

    def __init__(
        self,
        camera_id: int,
        detector: DetectionEngine,
        reid: ReIdEngine | None,
        resolver: IdentityResolver,
        config: StreamConfig | None = None,
        detection_config: DetectionConfig | None = None,
        reid_config: ReIdConfig | None = None,
        persistence: Persistence | None = None,
        persistence_config: PersistenceConfig | None = None,
        event_sink: EventSink | None = None,
        source_factory: Callable[[str], VideoSource] = open_stream_source,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.camera_id = camera_id
        self.detector = detector
        self.reid = reid
        self.resolver = resolver
        self.config = config or StreamConfig()
        self.detection_config = detection_config or DetectionConfig()
        self.reid_config = reid_config or ReIdConfig()
        self.persistence = persistence
        self.persistence_config = persistence_config or PersistenceConfig()
        self.event_sink = event_sink
        self._source_factory = source_factory
        self._clock = clock

        self.url: str | None = None
        self.last_error: str | None = None
        self._state = StreamState.DISCONNECTED
        self._state_change_lock = threading.Lock()
        self._session_lock = threading.Lock()
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

        self._capture_lock = threading.Lock()
        self._source: VideoSource | None = None

        self._frame_lock = threading.Lock()
        self._latest_jpeg: bytes | None = None
        self._frame_seq = 0
        self._frame_dims: tuple[int, int] | None = None
        self._fps = 0.0
        self._fps_window_start: float | None = None
        self._fps_frames = 0

        self._persons_lock = threading.Lock()
        self._persons: list[TrackedPerson] = []
        self._unique_count = 0

        self.tracks = StableTrackManager(clock=clock)
        self.confirmations = ConfirmationBuffer(self.config)
        self._throttle = SaveThrottle(self.persistence_config)
        self._frames_since_reid = 0
        self._last_detected_seq = -1

        self._output: Queue[bytes] = Queue(maxsize=max(1, self.config.frame_buffer_size))

    # ------------------------------------------------------------------ state

    @property
    def state(self) -> StreamState:
        with self._state_change_lock:
            return self._state

    @property
    def is_connected(self) -> bool:
        return self.state == StreamState.CONNECTED

    def _set_state(self, state: StreamState, message: str = "") -> None:
        with self._state_change_lock:
            changed = self._state != state
            self._state = state
        if changed or state == StreamState.ERROR:
            logger.info("Camera %s -> %s %s", self.camera_id, state.value, message)
            emit(self.event_sink, "stream_state_changed", self.camera_id, state.value, message)

    @property
    def _lock_timeout(self) -> float:
        return self.config.lock_timeout_ms / 1000.0

    # ------------------------------------------------------------------ lifecycle

    def connect(self, url: str) -> bool:
        """Open the capture with bounded retries and start every stage.

        Returns False (and stays disconnected) when all attempts fail.
        """

        with self._session_lock:
            if self.is_connected:
                return True
            self.url = url
            self._stop = threading.Event()
            self._set_state(StreamState.CONNECTING)
            if not self._open_with_retries(url, self._stop):
                self.last_error = f"Failed to connect after {self.config.max_reconnect_attempts} attempts"
                self._set_state(StreamState.ERROR, self.last_error)
                self._set_state(StreamState.DISCONNECTED)
                return False

            self.last_error = None
            self._set_state(StreamState.CONNECTED)
            self._start_stages()
            logger.info("Camera %s connected to %s", self.camera_id, url)
            return True

    def _open_with_retries(self, url: str, stop: threading.Event) -> bool:
        cfg = self.config
        attempts = max(1, cfg.max_reconnect_attempts)
        for attempt in range(1, attempts + 1):
            if stop.is_set():
                return False
            try:
                self._open_capture(url)
                return True
            except Exception:
                logger.warning(
                    "Camera %s connection attempt %d/%d failed",
                    self.camera_id,
                    attempt,
                    attempts,
                    exc_info=True,
                )
            if attempt < attempts and stop.wait(cfg.reconnect_delay_ms / 1000.0):
                return False
        return False

    def _open_capture(self, url: str) -> None:
        source = self._source_factory(url)
        with self._capture_lock:
            old, self._source = self._source, source
        if old is not None:
            old.close()

    def _release_capture(self) -> None:
        with self._capture_lock:
            source, self._source = self._source, None
        if source is not None:
            source.close()
            logger.debug("Camera %s capture released", self.camera_id)

    def _start_stages(self) -> None:
        stop = self._stop
        self._threads = [
            threading.Thread(target=self._capture_loop, args=(stop,), name=f"cam{self.camera_id}-capture", daemon=True),
            threading.Thread(target=self._detect_loop, args=(stop,), name=f"cam{self.camera_id}-detect", daemon=True),
            threading.Thread(target=self._annotate_loop, args=(stop,), name=f"cam{self.camera_id}-annotate", daemon=True),
            threading.Thread(target=self._persist_loop, args=(stop,), name=f"cam{self.camera_id}-persist", daemon=True),
        ]
        for thread in self._threads:
            thread.start()

    def disconnect(self) -> None:
        """Cancel every stage, wait for them, and release the capture once."""

        with self._session_lock:
            self._stop.set()
            current = threading.current_thread()
            for thread in self._threads:
                if thread is not current and thread.is_alive():
                    thread.join(timeout=self.config.stage_join_timeout)
            self._threads = []
            self._release_capture()
            self.tracks.clear()
            self._set_state(StreamState.DISCONNECTED)
        logger.info("Camera %s disconnected", self.camera_id)

    def _reconnect(self, stop: threading.Event) -> bool:
        """Called from the capture stage after too many read failures."""

        self._set_state(StreamState.RECONNECTING)
        self._release_capture()
        if self.url is not None and self._open_with_retries(self.url, stop):
            self._set_state(StreamState.CONNECTED)
            return True
        if stop.is_set():
            return False
        self.last_error = "Reconnect attempts exhausted"
        self._set_state(StreamState.ERROR, self.last_error)
        stop.set()
        self._release_capture()
        self._set_state(StreamState.DISCONNECTED)
        return False

    # ------------------------------------------------------------------ capture

    def _capture_loop(self, stop: threading.Event) -> None:
        logger.debug("Camera %s capture loop started", self.camera_id)
        interval = 1.0 / max(1, self.config.target_fps)
        errors = 0
        while not stop.is_set():
            started = time.perf_counter()
            frame = None
            if not _acquire(self._capture_lock, self._lock_timeout):
                continue
            try:
                source = self._source
            finally:
                self._capture_lock.release()

            # Only this thread reads or replaces the source while stages run.
            try:
                if source is not None:
                    frame = source.read()
            except Exception:
                logger.warning("Camera %s read failed", self.camera_id, exc_info=True)
                frame = None

            if frame is None:
                errors += 1
                if errors > self.config.max_consecutive_errors:
                    if not self._reconnect(stop):
                        break
                    errors = 0
                    continue
                stop.wait(0.05)
                continue
            errors = 0

            try:
                self._publish_frame(frame)
            except Exception:
                logger.exception("Camera %s failed to publish frame", self.camera_id)

            remaining = interval - (time.perf_counter() - started)
            if remaining > 0:
                stop.wait(remaining)
        logger.debug("Camera %s capture loop ended", self.camera_id)

    def _publish_frame(self, frame: np.ndarray) -> None:
        h, w = frame.shape[:2]
        if self._frame_dims != (w, h):
            self._frame_dims = (w, h)
            self.resolver.set_frame_dimensions(self.camera_id, w, h)

        ok, buf = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), self.config.jpeg_quality])
        if not ok:
            return
        jpeg = buf.tobytes()
        now = time.perf_counter()
        with self._frame_lock:
            self._latest_jpeg = jpeg
            self._frame_seq += 1
            if self._fps_window_start is None:
                self._fps_window_start = now
            self._fps_frames += 1
            elapsed = now - self._fps_window_start
            if elapsed >= 1.0:
                self._fps = self._fps_frames / elapsed
                self._fps_frames = 0
                self._fps_window_start = now

    # ------------------------------------------------------------------ detect

    def _detect_loop(self, stop: threading.Event) -> None:
        logger.debug("Camera %s detect loop started", self.camera_id)
        interval = self.config.detection_interval_ms / 1000.0
        while not stop.wait(interval):
            try:
                self._detect_cycle()
            except Exception:
                logger.exception("Camera %s detection cycle failed", self.camera_id)

    def _detect_cycle(self) -> None:
        if not _acquire(self._frame_lock, self._lock_timeout):
            return
        try:
            jpeg, seq, fps = self._latest_jpeg, self._frame_seq, self._fps
        finally:
            self._frame_lock.release()
        if jpeg is None or seq == self._last_detected_seq:
            return
        self._last_detected_seq = seq

        frame = cv2.imdecode(np.frombuffer(jpeg, dtype=np.uint8), cv2.IMREAD_COLOR)
        if frame is None:
            return

        cfg = self.config
        found = self.detector.detect(frame, self.detection_config)
        detections = [d for d in found if self.detection_config.is_large_enough(d)]

        self._frames_since_reid += 1
        run_reid = (
            self.reid is not None
            and bool(detections)
            and self._frames_since_reid >= max(1, cfg.reid_every_n_frames)
        )

        now = self._clock()
        self.tracks.cleanup(now)
        persons: list[TrackedPerson] = []
        claimed: set[int] = set()
        seen: set[uuid.UUID] = set()

        for det in detections:
            existing = self.tracks.find_existing_track(det.box, exclude=claimed)
            track_id = existing.track_id if existing is not None else self.tracks.next_track_id()
            claimed.add(track_id)
            features = existing.features if existing is not None else None

            identity_id: uuid.UUID | None = None
            has_match = False
            if run_reid and det.box.area >= cfg.min_reid_crop_area:
                try:
                    vector = self.reid.extract_features(frame, det.box, self.reid_config)
                    if vector is not None:
                        features = vector
                        identity_id = self.resolver.resolve(
                            vector, self.camera_id, det.box, det.confidence, track_id
                        )
                        has_match = identity_id is not None
                except Exception:
                    logger.warning("Re-identification failed for track %d", track_id, exc_info=True)

            if identity_id is None and existing is not None:
                identity_id = existing.identity_id
            if identity_id is None:
                identity_id = uuid.uuid4()
                logger.debug("New track %d -> %s", track_id, identity_id.hex[:8])

            self.tracks.update_track(track_id, identity_id, det.box, det.confidence, features, now)
            is_new = self.confirmations.observe(identity_id, det.confidence, features is not None, now)
            seen.add(identity_id)
            persons.append(
                TrackedPerson(
                    identity_id=identity_id,
                    box=det.box,
                    confidence=det.confidence,
                    track_id=track_id,
                    features=features,
                    is_new=is_new,
                    has_reid_match=has_match,
                )
            )

        if run_reid:
            self._frames_since_reid = 0
            self.confirmations.prune(seen, now)

        unique = self.confirmations.seen_count
        if not _acquire(self._persons_lock, self._lock_timeout):
            return
        try:
            self._persons = persons
            self._unique_count = unique
        finally:
            self._persons_lock.release()

        update = DetectionUpdate(
            camera_id=self.camera_id,
            count=len(persons),
            unique_count=unique,
            today_unique_count=self.resolver.today_unique_count(),
            timestamp=now,
            fps=fps,
            persons=[
                {
                    "id": p.short_id,
                    "confidence": p.confidence,
                    "is_new": p.is_new,
                    "has_reid": p.has_reid_match,
                    "track_id": p.track_id,
                }
                for p in persons
            ],
        )
        emit(self.event_sink, "detection_update", update)

    # ------------------------------------------------------------------ annotate

    def _annotate_loop(self, stop: threading.Event) -> None:
        logger.debug("Camera %s annotate loop started", self.camera_id)
        interval = 1.0 / max(1, self.config.target_fps)
        while not stop.wait(interval):
            try:
                self._annotate_cycle()
            except Exception:
                logger.exception("Camera %s annotate cycle failed", self.camera_id)

    def _annotate_cycle(self) -> None:
        if not _acquire(self._frame_lock, self._lock_timeout):
            return
        try:
            jpeg, fps = self._latest_jpeg, self._fps
        finally:
            self._frame_lock.release()
        if jpeg is None:
            return
        persons = self.current_persons()

        frame = cv2.imdecode(np.frombuffer(jpeg, dtype=np.uint8), cv2.IMREAD_COLOR)
        if frame is None:
            return
        annotated = draw_overlays(frame, persons, self.resolver.today_unique_count(), fps)
        ok, buf = cv2.imencode(".jpg", annotated, [int(cv2.IMWRITE_JPEG_QUALITY), self.config.jpeg_quality])
        if ok:
            self._push_output(buf.tobytes())

    def _push_output(self, data: bytes) -> None:
        # Live view favors recency: drop the oldest buffered frame when full.
        if self._output.full():
            try:
                self._output.get_nowait()
            except Empty:
                pass
        try:
            self._output.put_nowait(data)
        except Full:
            logger.debug("Camera %s output queue full; frame dropped", self.camera_id)

    # ------------------------------------------------------------------ persist

    def _persist_loop(self, stop: threading.Event) -> None:
        logger.debug("Camera %s persist loop started", self.camera_id)
        while not stop.wait(self.persistence_config.save_interval_seconds):
            try:
                self._persist_cycle()
            except Exception:
                logger.exception("Camera %s persist cycle failed", self.camera_id)

    def _persist_cycle(self) -> None:
        if self.persistence is None:
            return
        persons = [p for p in self.current_persons() if p.features is not None]
        now = self._clock()
        if not self._throttle.should_save(len(persons), now):
            return
        try:
            self.persistence.save_detection_batch(str(self.camera_id), persons)
            for person in persons:
                storage_id = self.persistence.upsert_identity(person.identity_id, person.features, self.camera_id)
                self.resolver.mark_persisted(person.identity_id, storage_id)
        except Exception:
            logger.warning("Camera %s persistence batch failed", self.camera_id, exc_info=True)
            return
        self._throttle.mark_saved(len(persons), now)
        logger.debug("Camera %s saved %d persons", self.camera_id, len(persons))

    # ------------------------------------------------------------------ readers

    def current_persons(self) -> list[TrackedPerson]:
        """Latest tracked-person list (empty on lock timeout)."""

        if not _acquire(self._persons_lock, self._lock_timeout):
            return []
        try:
            return list(self._persons)
        finally:
            self._persons_lock.release()

    def latest_frame(self) -> bytes | None:
        """Latest raw JPEG published by the capture stage."""

        with self._frame_lock:
            return self._latest_jpeg

    def get_frame(self, timeout: float = 0.5) -> bytes | None:
        """Pop the next annotated JPEG from the output queue."""

        try:
            return self._output.get(timeout=timeout)
        except Empty:
            return None

    def frames(self, timeout: float = 0.5) -> Iterator[bytes]:
        """Yield annotated frames until the session stops."""

        stop = self._stop
        while not stop.is_set():
            data = self.get_frame(timeout)
            if data is not None:
                yield data

    def status(self) -> dict[str, Any]:
        with self._frame_lock:
            fps = self._fps
        with self._persons_lock:
            count = len(self._persons)
            unique = self._unique_count
        return {
            "camera_id": self.camera_id,
            "url": self.url,
            "state": self.state.value,
            "connected": self.is_connected,
            "fps": round(fps, 1),
            "current_count": count,
            "unique_count": unique,
            "active_count": self.resolver.currently_active_count(self.camera_id),
            "last_error": self.last_error,
        }
