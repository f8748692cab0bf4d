"""Camera session boundary: start/stop cameras and read their streams."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from typing import Any

from reidwatch.core.identity.resolver import IdentityResolver
from reidwatch.core.streaming.camera import CameraPipeline

logger = logging.getLogger(__name__)

PipelineFactory = Callable[[int], CameraPipeline]


class CameraManager:
    """Owns one `CameraPipeline` per active camera id.

    All pipelines share the same `IdentityResolver`, which is what makes
    identities global across cameras.
    """

    def __init__(self, resolver: IdentityResolver, pipeline_factory: PipelineFactory) -> None:
        self.resolver = resolver
        self._factory = pipeline_factory
        self._lock = threading.Lock()
        self._pipelines: dict[int, CameraPipeline] = {}
        self._camera_locks: dict[int, threading.Lock] = {}

    def _camera_lock(self, camera_id: int) -> threading.Lock:
        # Serializes start/stop of one camera; held across the connect retries.
        with self._lock:
            return self._camera_locks.setdefault(camera_id, threading.Lock())

    def start(self, camera_id: int, url: str) -> bool:
        """Connect `camera_id` to `url`; an already connected camera is restarted on a new url."""

        with self._camera_lock(camera_id):
            with self._lock:
                pipeline = self._pipelines.get(camera_id)
            if pipeline is not None:
                if pipeline.is_connected and pipeline.url == url:
                    return True
                pipeline.disconnect()
            else:
                pipeline = self._factory(camera_id)

            connected = pipeline.connect(url)
            with self._lock:
                if connected:
                    self._pipelines[camera_id] = pipeline
                else:
                    self._pipelines.pop(camera_id, None)
        if not connected:
            logger.error("Failed to start camera %s (%s)", camera_id, url)
        return connected

    def stop(self, camera_id: int) -> bool:
        """Disconnect a camera; waits for a start of the same camera in progress."""

        with self._camera_lock(camera_id):
            with self._lock:
                pipeline = self._pipelines.pop(camera_id, None)
            if pipeline is None:
                return False
            pipeline.disconnect()
        self.resolver.clear_camera(camera_id)
        return True

    def stop_all(self) -> None:
        with self._lock:
            camera_ids = sorted(set(self._camera_locks) | set(self._pipelines))
        for camera_id in camera_ids:
            try:
                self.stop(camera_id)
            except Exception:
                logger.exception("Failed to stop camera %s", camera_id)

    def get(self, camera_id: int) -> CameraPipeline | None:
        with self._lock:
            return self._pipelines.get(camera_id)

    def list_cameras(self) -> list[dict[str, Any]]:
        with self._lock:
            pipelines = list(self._pipelines.values())
        return [p.status() for p in pipelines]

    def get_stream(self, camera_id: int) -> Iterator[bytes] | None:
        """Annotated frames of a camera; ends when the session stops."""

        pipeline = self.get(camera_id)
        if pipeline is None:
            return None
        return pipeline.frames()

    def active_identity_count(self) -> int:
        return self.resolver.total_count()

    def reset_all_identities(self) -> None:
        """Operator reset: clears the shared catalog and every camera's counters."""

        self.resolver.clear_all()
        with self._lock:
            pipelines = list(self._pipelines.values())
        for pipeline in pipelines:
            pipeline.tracks.clear()
            pipeline.confirmations.clear()
