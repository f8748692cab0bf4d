"""Video job records.

A `VideoJob` is created on submission, mutated only by the worker that
processes it, and read concurrently by pollers; every mutation and every
snapshot goes through the job's lock.
"""

from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from reidwatch.core.features import FeatureVector
from reidwatch.core.types import BoundingBox


class JobState(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED})


@dataclass
class PersonTrackingInfo:
    """Per-identity aggregate over one video."""

    identity_id: uuid.UUID
    first_appearance: float
    last_appearance: float
    total_appearances: int = 0
    total_confidence: float = 0.0
    best_confidence: float = 0.0
    best_box: BoundingBox | None = None
    best_frame_number: int = 0
    thumbnail: bytes | None = None
    features: FeatureVector | None = None

    @property
    def average_confidence(self) -> float:
        if self.total_appearances == 0:
            return 0.0
        return self.total_confidence / self.total_appearances

    def record(self, timestamp: float, confidence: float, box: BoundingBox, frame_number: int) -> bool:
        """Add one sighting; return True when it is the new best-confidence sighting."""

        self.last_appearance = timestamp
        self.total_appearances += 1
        self.total_confidence += confidence
        if confidence > self.best_confidence:
            self.best_confidence = confidence
            self.best_box = box
            self.best_frame_number = frame_number
            return True
        return False

    def to_timeline(self) -> dict[str, Any]:
        return {
            "identity_id": str(self.identity_id),
            "short_id": self.identity_id.hex[:6],
            "first_appearance": round(self.first_appearance, 3),
            "last_appearance": round(self.last_appearance, 3),
            "total_appearances": self.total_appearances,
            "average_confidence": self.average_confidence,
            "best_confidence": self.best_confidence,
            "best_frame_number": self.best_frame_number,
            "has_thumbnail": self.thumbnail is not None,
        }


@dataclass
class FrameDetections:
    frame_number: int
    timestamp: float
    person_count: int
    persons: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class VideoJob:
    job_id: uuid.UUID
    file_path: str
    file_name: str
    frame_skip: int = 5
    extract_features: bool = True
    state: JobState = JobState.QUEUED
    total_frames: int = 0
    processed_frames: int = 0
    total_persons_detected: int = 0
    fps: float = 30.0
    duration: float = 0.0
    created_at: float = field(default_factory=time.time)
    started_at: float | None = None
    completed_at: float | None = None
    processing_seconds: float = 0.0
    error: str | None = None
    detections: list[FrameDetections] = field(default_factory=list)
    persons: dict[uuid.UUID, PersonTrackingInfo] = field(default_factory=dict)
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def progress(self) -> int:
        """Percent of expected sampled frames processed, capped at 100."""

        expected = self.total_frames / self.frame_skip if self.frame_skip > 0 else 0
        if expected <= 0:
            return 0
        return min(100, int(self.processed_frames / expected * 100))

    # ------------------------------------------------------------------ worker side

    def mark_processing(self) -> None:
        with self.lock:
            self.state = JobState.PROCESSING
            self.started_at = time.time()

    def set_source_info(self, total_frames: int, fps: float) -> None:
        with self.lock:
            self.total_frames = total_frames
            self.fps = fps
            self.duration = total_frames / fps if fps > 0 else 0.0

    def record_sighting(
        self,
        identity_id: uuid.UUID,
        timestamp: float,
        confidence: float,
        box: BoundingBox,
        frame_number: int,
        features: FeatureVector | None = None,
    ) -> bool:
        """Aggregate one detection; return True when the best sighting improved."""

        with self.lock:
            info = self.persons.get(identity_id)
            if info is None:
                info = PersonTrackingInfo(identity_id, first_appearance=timestamp, last_appearance=timestamp)
                self.persons[identity_id] = info
            if features is not None and info.features is None:
                info.features = features
            self.total_persons_detected += 1
            return info.record(timestamp, confidence, box, frame_number)

    def set_thumbnail(self, identity_id: uuid.UUID, thumbnail: bytes) -> None:
        with self.lock:
            info = self.persons.get(identity_id)
            if info is not None:
                info.thumbnail = thumbnail

    def add_frame(self, frame: FrameDetections) -> int:
        with self.lock:
            self.detections.append(frame)
            self.processed_frames += 1
            return self.processed_frames

    def finish(self, state: JobState, error: str | None = None) -> None:
        with self.lock:
            self.state = state
            self.error = error
            self.completed_at = time.time()
            if self.started_at is not None:
                self.processing_seconds = self.completed_at - self.started_at

    # ------------------------------------------------------------------ reader side

    def unique_persons(self) -> int:
        with self.lock:
            return len(self.persons)

    def to_status(self, recent_detections: int = 100) -> dict[str, Any]:
        with self.lock:
            recent = self.detections[-recent_detections:] if recent_detections > 0 else []
            return {
                "job_id": str(self.job_id),
                "file_name": self.file_name,
                "state": self.state.value,
                "total_frames": self.total_frames,
                "processed_frames": self.processed_frames,
                "progress": self.progress,
                "total_persons_detected": self.total_persons_detected,
                "unique_persons": len(self.persons),
                "started_at": self.started_at,
                "completed_at": self.completed_at,
                "error": self.error,
                "recent_detections": [
                    {
                        "frame_number": d.frame_number,
                        "timestamp": round(d.timestamp, 3),
                        "person_count": d.person_count,
                        "persons": list(d.persons),
                    }
                    for d in recent
                ],
            }

    def to_summary(self) -> dict[str, Any]:
        with self.lock:
            counts = [d.person_count for d in self.detections]
            timelines = sorted(self.persons.values(), key=lambda p: p.first_appearance)
            return {
                "job_id": str(self.job_id),
                "file_name": self.file_name,
                "status": self.state.value,
                "video_duration": self.duration,
                "processed_frames": self.processed_frames,
                "total_persons_detected": self.total_persons_detected,
                "unique_persons": len(self.persons),
                "average_persons_per_frame": sum(counts) / len(counts) if counts else 0.0,
                "peak_persons_in_frame": max(counts) if counts else 0,
                "processing_seconds": self.processing_seconds,
                "timelines": [p.to_timeline() for p in timelines],
            }
