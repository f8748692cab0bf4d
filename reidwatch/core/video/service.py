"""Batch processing of uploaded videos.

Jobs go through a bounded FIFO queue into a single worker thread. `submit`
blocks while the queue is full, so producers feel backpressure instead of
losing jobs. Each job gets its own `VideoIdentityMatcher`; nothing is shared
with the live-camera identity catalog.
"""

from __future__ import annotations

import logging
import os
import queue
import threading
import time
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

import cv2
import numpy as np

from reidwatch.core.engines import DetectionConfig, DetectionEngine, ReIdConfig, ReIdEngine, crop_box
from reidwatch.core.events import EventSink, emit
from reidwatch.core.features import FeatureVector
from reidwatch.core.identity.video_matcher import VideoIdentityMatcher
from reidwatch.core.persistence import Persistence
from reidwatch.core.types import BoundingBox, Detection
from reidwatch.core.video.jobs import FrameDetections, JobState, VideoJob
from reidwatch.core.video_sources.base import VideoSource, open_video_file

logger = logging.getLogger(__name__)

SourceFactory = Callable[[str], VideoSource]


@dataclass(frozen=True)
class VideoConfig:
    queue_capacity: int = 10
    default_frame_skip: int = 5
    similarity_threshold: float = 0.70
    feature_alpha: float = 0.3
    detection: DetectionConfig = field(default_factory=lambda: DetectionConfig(confidence_threshold=0.4))
    reid: ReIdConfig = field(default_factory=ReIdConfig)
    progress_every: int = 5
    recent_detections: int = 100
    thumbnail_padding: int = 10
    thumbnail_width: int = 128
    thumbnail_height: int = 256
    thumbnail_quality: int = 85
    default_fps: float = 30.0


def make_thumbnail(frame: np.ndarray, box: BoundingBox, config: VideoConfig) -> bytes | None:
    """Padded person crop resized to the thumbnail size, JPEG encoded."""

    crop = crop_box(frame, box, padding=config.thumbnail_padding)
    if crop is None or crop.size == 0:
        return None
    resized = cv2.resize(crop, (config.thumbnail_width, config.thumbnail_height), interpolation=cv2.INTER_AREA)
    ok, buf = cv2.imencode(".jpg", resized, [int(cv2.IMWRITE_JPEG_QUALITY), config.thumbnail_quality])
    if not ok:
        return None
    return buf.tobytes()


class VideoProcessingService:
    """Job submission boundary plus the worker that drains the queue."""

    def __init__(
        self,
        detector: DetectionEngine,
        reid: ReIdEngine | None = None,
        persistence: Persistence | None = None,
        event_sink: EventSink | None = None,
        config: VideoConfig | None = None,
        source_factory: SourceFactory = open_video_file,
    ) -> None:
        self.detector = detector
        self.reid = reid
        self.persistence = persistence
        self.event_sink = event_sink
        self.config = config or VideoConfig()
        self._source_factory = source_factory

        self._queue: queue.Queue[VideoJob] = queue.Queue(maxsize=self.config.queue_capacity)
        self._jobs: dict[uuid.UUID, VideoJob] = {}
        self._matchers: dict[uuid.UUID, VideoIdentityMatcher] = {}
        self._lock = threading.Lock()
        self._shutdown = threading.Event()
        self._worker: threading.Thread | None = None
        self._current: VideoJob | None = None

    # ------------------------------------------------------------------ lifecycle

    def start(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            return
        self._shutdown.clear()
        self._worker = threading.Thread(target=self._worker_loop, name="video-worker", daemon=True)
        self._worker.start()
        logger.info("Video worker started (queue capacity %d)", self.config.queue_capacity)

    def stop(self, timeout: float = 5.0) -> None:
        self._shutdown.set()
        current = self._current
        if current is not None:
            current.cancel_event.set()
        worker = self._worker
        if worker is not None:
            worker.join(timeout=timeout)
        self._worker = None

    @property
    def queue_size(self) -> int:
        return self._queue.qsize()

    def _worker_loop(self) -> None:
        while not self._shutdown.is_set():
            try:
                job = self._queue.get(timeout=0.5)
            except queue.Empty:
                continue
            try:
                self._current = job
                self.process_job(job)
            except Exception:
                logger.exception("Video job %s crashed the worker cycle", job.job_id)
            finally:
                self._current = None
                self._queue.task_done()

    # ------------------------------------------------------------------ boundary

    def create_job(
        self,
        file_path: str,
        frame_skip: int | None = None,
        extract_features: bool = True,
        file_name: str | None = None,
    ) -> VideoJob:
        """Build an unregistered job record (`submit` registers and queues it)."""

        skip = self.config.default_frame_skip if frame_skip is None else int(frame_skip)
        if skip < 1:
            raise ValueError("frame_skip must be >= 1")
        return VideoJob(
            job_id=uuid.uuid4(),
            file_path=file_path,
            file_name=file_name or os.path.basename(file_path),
            frame_skip=skip,
            extract_features=extract_features,
            fps=self.config.default_fps,
        )

    def submit(
        self,
        file_path: str,
        frame_skip: int | None = None,
        extract_features: bool = True,
        file_name: str | None = None,
    ) -> uuid.UUID:
        """Register a job and enqueue it; blocks while the queue is full."""

        job = self.create_job(file_path, frame_skip, extract_features, file_name)
        with self._lock:
            self._jobs[job.job_id] = job
        self._queue.put(job)
        logger.info("Queued video job %s (%s, skip=%d)", job.job_id, job.file_name, job.frame_skip)
        return job.job_id

    def get_job(self, job_id: uuid.UUID) -> VideoJob | None:
        with self._lock:
            return self._jobs.get(job_id)

    def get_status(self, job_id: uuid.UUID) -> dict[str, Any] | None:
        job = self.get_job(job_id)
        if job is None:
            return None
        return job.to_status(self.config.recent_detections)

    def get_summary(self, job_id: uuid.UUID) -> dict[str, Any] | None:
        """Summary of a completed job; `None` for unknown or unfinished jobs."""

        job = self.get_job(job_id)
        if job is None or job.state is not JobState.COMPLETED:
            return None
        return job.to_summary()

    def list_jobs(self) -> list[dict[str, Any]]:
        with self._lock:
            jobs = sorted(self._jobs.values(), key=lambda j: j.created_at)
        return [
            {
                "job_id": str(job.job_id),
                "file_name": job.file_name,
                "state": job.state.value,
                "progress": job.progress,
                "unique_persons": job.unique_persons(),
                "created_at": job.created_at,
            }
            for job in jobs
        ]

    def cancel(self, job_id: uuid.UUID) -> bool:
        job = self.get_job(job_id)
        if job is None:
            return False
        with job.lock:
            if job.is_terminal:
                return False
            job.cancel_event.set()
            if job.state is JobState.QUEUED:
                job.finish(JobState.CANCELLED)
                summary = job.to_summary()
            else:
                summary = None
        logger.info("Cancel requested for video job %s", job_id)
        if summary is not None:
            emit(self.event_sink, "video_completed", job.job_id, summary)
        return True

    def cleanup_job(self, job_id: uuid.UUID) -> bool:
        """Forget a job and its matcher; a running job is cancelled first."""

        with self._lock:
            job = self._jobs.pop(job_id, None)
            self._matchers.pop(job_id, None)
        if job is None:
            return False
        job.cancel_event.set()
        return True

    # ------------------------------------------------------------------ processing

    def process_job(self, job: VideoJob, matcher: VideoIdentityMatcher | None = None) -> VideoJob:
        """Run one job to a terminal state on the calling thread."""

        with job.lock:
            if job.is_terminal:
                return job
            if job.cancel_event.is_set():
                job.finish(JobState.CANCELLED)
                cancelled_before_start = True
            else:
                job.mark_processing()
                cancelled_before_start = False
        if cancelled_before_start:
            logger.info("Video job %s cancelled before start", job.job_id)
            emit(self.event_sink, "video_completed", job.job_id, job.to_summary())
            return job

        matcher = matcher or VideoIdentityMatcher(
            similarity_threshold=self.config.similarity_threshold,
            feature_alpha=self.config.feature_alpha,
        )
        with self._lock:
            self._matchers[job.job_id] = matcher

        try:
            self._run(job, matcher)
        except Exception as exc:
            logger.exception("Video job %s failed", job.job_id)
            job.finish(JobState.FAILED, error=str(exc))
        else:
            final = JobState.CANCELLED if job.cancel_event.is_set() else JobState.COMPLETED
            job.finish(final)
            self._flush(job)
        finally:
            with self._lock:
                self._matchers.pop(job.job_id, None)

        summary = job.to_summary()
        logger.info(
            "Video job %s %s: %d frames, %d unique persons in %.1fs",
            job.job_id,
            job.state.value,
            job.processed_frames,
            summary["unique_persons"],
            job.processing_seconds,
        )
        emit(self.event_sink, "video_completed", job.job_id, summary)
        return job

    def _run(self, job: VideoJob, matcher: VideoIdentityMatcher) -> None:
        source = self._source_factory(job.file_path)
        try:
            fps = source.fps if source.fps > 0 else self.config.default_fps
            job.set_source_info(source.frame_count, fps)
            frame_number = 0
            while not job.cancel_event.is_set():
                frame = source.read()
                if frame is None:
                    break
                frame_number += 1
                if frame_number % job.frame_skip != 0:
                    continue
                processed = self._process_frame(job, matcher, frame, frame_number, fps)
                if processed % self.config.progress_every == 0:
                    emit(
                        self.event_sink,
                        "video_progress",
                        job.job_id,
                        {
                            "progress": job.progress,
                            "processed_frames": processed,
                            "unique_persons": job.unique_persons(),
                        },
                    )
        finally:
            source.close()

    def _process_frame(
        self,
        job: VideoJob,
        matcher: VideoIdentityMatcher,
        frame: np.ndarray,
        frame_number: int,
        fps: float,
    ) -> int:
        timestamp = frame_number / fps
        detections = self._detect(frame, frame_number)
        features = self._extract(job, frame, [d.box for d in detections], frame_number)

        matcher.begin_frame(frame_number)
        persons: list[dict[str, Any]] = []
        for detection, feats in zip(detections, features):
            identity_id, current = matcher.match(feats, detection.box, frame_number)
            improved = job.record_sighting(
                identity_id,
                timestamp,
                detection.confidence,
                detection.box,
                frame_number,
                features=current,
            )
            if improved:
                thumbnail = make_thumbnail(frame, detection.box, self.config)
                if thumbnail is not None:
                    job.set_thumbnail(identity_id, thumbnail)
            persons.append(
                {
                    "identity_id": str(identity_id),
                    "short_id": identity_id.hex[:6],
                    "box": list(detection.box.as_tuple()),
                    "confidence": detection.confidence,
                }
            )

        return job.add_frame(
            FrameDetections(
                frame_number=frame_number,
                timestamp=timestamp,
                person_count=len(persons),
                persons=persons,
            )
        )

    def _detect(self, frame: np.ndarray, frame_number: int) -> list[Detection]:
        try:
            detections = self.detector.detect(frame, self.config.detection)
        except Exception:
            logger.warning("Detection failed on frame %d; skipping its detections", frame_number, exc_info=True)
            return []
        return [d for d in detections if self.config.detection.is_large_enough(d)]

    def _extract(
        self,
        job: VideoJob,
        frame: np.ndarray,
        boxes: Sequence[BoundingBox],
        frame_number: int,
    ) -> list[FeatureVector | None]:
        if not boxes or self.reid is None or not job.extract_features:
            return [None] * len(boxes)
        try:
            features = list(self.reid.extract_features_batch(frame, boxes, self.config.reid))
        except Exception:
            logger.warning("Re-id failed on frame %d; using fresh identities", frame_number, exc_info=True)
            return [None] * len(boxes)
        if len(features) != len(boxes):
            logger.warning("Re-id returned %d vectors for %d boxes", len(features), len(boxes))
            return [None] * len(boxes)
        return features

    def _flush(self, job: VideoJob) -> None:
        if self.persistence is None:
            return
        started = time.perf_counter()
        try:
            self.persistence.save_video_results(job)
        except Exception:
            logger.warning("Failed to persist results of video job %s", job.job_id, exc_info=True)
            return
        logger.debug("Persisted video job %s in %.3fs", job.job_id, time.perf_counter() - started)
