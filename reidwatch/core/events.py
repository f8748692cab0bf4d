"""Event sink collaborator.

Pipelines report detection updates, stream-state changes and video-job
progress here. Delivery is best-effort: a failing sink never breaks a pipeline.
`EventHub` additionally pushes every event to per-camera and per-job
subscribers (the websocket routes).
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import asdict
from queue import Empty, Full, Queue
from typing import Any, Protocol

from reidwatch.core.types import DetectionUpdate

logger = logging.getLogger(__name__)


class EventSink(Protocol):
    def detection_update(self, update: DetectionUpdate) -> None:
        ...

    def stream_state_changed(self, camera_id: int, state: str, message: str = "") -> None:
        ...

    def video_progress(self, job_id: uuid.UUID, progress: dict[str, Any]) -> None:
        ...

    def video_completed(self, job_id: uuid.UUID, summary: dict[str, Any]) -> None:
        ...


class NullEventSink:
    """Discards every event."""

    def detection_update(self, update: DetectionUpdate) -> None:
        return None

    def stream_state_changed(self, camera_id: int, state: str, message: str = "") -> None:
        return None

    def video_progress(self, job_id: uuid.UUID, progress: dict[str, Any]) -> None:
        return None

    def video_completed(self, job_id: uuid.UUID, summary: dict[str, Any]) -> None:
        return None


class LoggingEventSink:
    """Writes events to the module logger (default sink of the API)."""

    def detection_update(self, update: DetectionUpdate) -> None:
        logger.debug(
            "camera=%s count=%d unique=%d fps=%.1f",
            update.camera_id,
            update.count,
            update.unique_count,
            update.fps,
        )

    def stream_state_changed(self, camera_id: int, state: str, message: str = "") -> None:
        logger.info("camera=%s state=%s %s", camera_id, state, message)

    def video_progress(self, job_id: uuid.UUID, progress: dict[str, Any]) -> None:
        logger.info("video job %s progress %.1f%%", job_id, float(progress.get("progress", 0.0)))

    def video_completed(self, job_id: uuid.UUID, summary: dict[str, Any]) -> None:
        logger.info(
            "video job %s finished status=%s unique=%s",
            job_id,
            summary.get("status"),
            summary.get("unique_persons"),
        )


def emit(sink: EventSink | None, method: str, *args: Any) -> None:
    """Call `sink.<method>(*args)`, logging (not raising) delivery failures."""

    if sink is None:
        return
    try:
        getattr(sink, method)(*args)
    except Exception:
        logger.warning("Event sink %s failed", method, exc_info=True)


def camera_topic(camera_id: int) -> str:
    return f"camera:{camera_id}"


def video_topic(job_id: uuid.UUID) -> str:
    return f"video:{job_id}"


def video_completed_event(job_id: uuid.UUID, summary: dict[str, Any]) -> dict[str, Any]:
    return {**summary, "type": "video_completed", "job_id": str(job_id)}


class Subscription:
    """Bounded mailbox of one subscriber; the oldest event is dropped when full."""

    def __init__(self, hub: EventHub, topic: str, maxsize: int) -> None:
        self.topic = topic
        self.dropped = 0
        self._hub = hub
        self._queue: Queue[dict[str, Any]] = Queue(maxsize=max(1, maxsize))

    def put(self, event: dict[str, Any]) -> None:
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except Full:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except Empty:
                    pass

    def get(self, timeout: float = 0.5) -> dict[str, Any] | None:
        try:
            return self._queue.get(timeout=timeout)
        except Empty:
            return None

    def close(self) -> None:
        self._hub.unsubscribe(self)


class EventHub:
    """Event sink that fans events out to live subscribers.

    Every event is first handed to `inner` (logging by default), then copied
    as a JSON-ready dict into the mailbox of each subscriber of its topic:
    `camera:<id>` for detection updates and stream states, `video:<job id>`
    for job progress and completion. Publishing never blocks on a slow
    subscriber.
    """

    def __init__(self, inner: EventSink | None = None, queue_size: int = 64) -> None:
        self.inner = inner
        self.queue_size = queue_size
        self._subscribers: dict[str, list[Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, topic: str) -> Subscription:
        sub = Subscription(self, topic, self.queue_size)
        with self._lock:
            self._subscribers.setdefault(topic, []).append(sub)
        logger.debug("Subscribed to %s", topic)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subscribers.get(sub.topic, [])
            if sub in subs:
                subs.remove(sub)
            if not subs:
                self._subscribers.pop(sub.topic, None)

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._subscribers.get(topic, []))

    def publish(self, topic: str, event: dict[str, Any]) -> None:
        with self._lock:
            subs = list(self._subscribers.get(topic, []))
        for sub in subs:
            sub.put(event)

    def detection_update(self, update: DetectionUpdate) -> None:
        emit(self.inner, "detection_update", update)
        self.publish(camera_topic(update.camera_id), {"type": "detection_update", **asdict(update)})

    def stream_state_changed(self, camera_id: int, state: str, message: str = "") -> None:
        emit(self.inner, "stream_state_changed", camera_id, state, message)
        self.publish(
            camera_topic(camera_id),
            {"type": "stream_state", "camera_id": camera_id, "state": state, "message": message},
        )

    def video_progress(self, job_id: uuid.UUID, progress: dict[str, Any]) -> None:
        emit(self.inner, "video_progress", job_id, progress)
        self.publish(video_topic(job_id), {**progress, "type": "video_progress", "job_id": str(job_id)})

    def video_completed(self, job_id: uuid.UUID, summary: dict[str, Any]) -> None:
        emit(self.inner, "video_completed", job_id, summary)
        self.publish(video_topic(job_id), video_completed_event(job_id, summary))
