"""In-process singletons shared by the FastAPI routes.

Engines are loaded lazily on first use; `stop_all()` tears everything down on
application shutdown.
"""

from __future__ import annotations

import logging
import os
import threading
from threading import RLock

from reidwatch.core.config.settings import (
    Settings,
    detection_config_from_settings,
    identity_config_from_settings,
    load_settings,
    persistence_config_from_settings,
    reid_config_from_settings,
    stream_config_from_settings,
    video_config_from_settings,
)
from reidwatch.core.engines import DetectionEngine, ReIdEngine
from reidwatch.core.events import EventHub, LoggingEventSink
from reidwatch.core.identity.resolver import IdentityResolver
from reidwatch.core.persistence import InMemoryPersistence
from reidwatch.core.streaming.camera import CameraPipeline
from reidwatch.core.streaming.manager import CameraManager
from reidwatch.core.video.service import VideoProcessingService

logger = logging.getLogger(__name__)

_settings: Settings | None = None
_persistence: InMemoryPersistence | None = None
_resolver: IdentityResolver | None = None
_detector: DetectionEngine | None = None
_reid: ReIdEngine | None = None
_reid_loaded = False
_camera_manager: CameraManager | None = None
_video_service: VideoProcessingService | None = None
_cleanup_thread: threading.Thread | None = None
_cleanup_stop = threading.Event()
_event_hub: EventHub | None = None
_lock = RLock()


def get_settings() -> Settings:
    """Return cached settings, loading them on first use."""

    global _settings
    with _lock:
        if _settings is None:
            _settings = load_settings()
    return _settings


def get_persistence() -> InMemoryPersistence:
    global _persistence
    with _lock:
        if _persistence is None:
            _persistence = InMemoryPersistence()
    return _persistence


def get_event_hub() -> EventHub:
    """Event fan-out shared by pipelines, the video service and websocket routes."""

    global _event_hub
    with _lock:
        if _event_hub is None:
            _event_hub = EventHub(LoggingEventSink())
    return _event_hub


def get_resolver() -> IdentityResolver:
    """Shared live-camera identity catalog; starts the expiry thread on creation."""

    global _resolver
    with _lock:
        if _resolver is None:
            _resolver = IdentityResolver(identity_config_from_settings(get_settings()), get_persistence())
            loaded = _resolver.load_from_persistence()
            if loaded:
                logger.info("Pre-seeded %d identities from storage", loaded)
            _start_cleanup(_resolver)
    return _resolver


def get_detector() -> DetectionEngine:
    global _detector
    with _lock:
        if _detector is None:
            from reidwatch.core.detectors.yolo import YoloPersonDetector

            _detector = YoloPersonDetector(detection_config_from_settings(get_settings()))
    return _detector


def get_reid() -> ReIdEngine | None:
    """OSNet engine, or `None` (stable tracks only) when no model file is present."""

    global _reid, _reid_loaded
    with _lock:
        if not _reid_loaded:
            _reid_loaded = True
            settings = get_settings()
            if not os.path.exists(settings.reid_model_path):
                logger.warning("Re-id model %s not found; running without re-id", settings.reid_model_path)
            else:
                from reidwatch.core.reid.osnet import OSNetReIdEngine

                _reid = OSNetReIdEngine(reid_config_from_settings(settings), use_gpu=settings.reid_use_gpu)
    return _reid


def _make_pipeline(camera_id: int) -> CameraPipeline:
    settings = get_settings()
    return CameraPipeline(
        camera_id,
        detector=get_detector(),
        reid=get_reid(),
        resolver=get_resolver(),
        config=stream_config_from_settings(settings),
        detection_config=detection_config_from_settings(settings),
        reid_config=reid_config_from_settings(settings),
        persistence=get_persistence(),
        persistence_config=persistence_config_from_settings(settings),
        event_sink=get_event_hub(),
    )


def get_camera_manager() -> CameraManager:
    global _camera_manager
    with _lock:
        if _camera_manager is None:
            _camera_manager = CameraManager(get_resolver(), _make_pipeline)
    return _camera_manager


def get_video_service() -> VideoProcessingService:
    """Return the singleton video service, creating and starting it if needed."""

    global _video_service
    with _lock:
        if _video_service is None:
            _video_service = VideoProcessingService(
                get_detector(),
                get_reid(),
                persistence=get_persistence(),
                event_sink=get_event_hub(),
                config=video_config_from_settings(get_settings()),
            )
            _video_service.start()
    return _video_service


def _cleanup_loop(resolver: IdentityResolver, interval: float, max_idle: float) -> None:
    while not _cleanup_stop.wait(interval):
        try:
            resolver.cleanup_expired(max_idle)
        except Exception:
            logger.exception("Identity cleanup failed")


def _start_cleanup(resolver: IdentityResolver) -> None:
    global _cleanup_thread
    settings = get_settings()
    _cleanup_stop.clear()
    _cleanup_thread = threading.Thread(
        target=_cleanup_loop,
        args=(resolver, settings.cleanup_interval_seconds, settings.cache_expiration_minutes * 60.0),
        name="identity-cleanup",
        daemon=True,
    )
    _cleanup_thread.start()


def stop_all() -> None:
    """Stop cameras, the video worker and the cleanup thread, then drop singletons."""

    global _camera_manager, _video_service, _resolver, _cleanup_thread
    with _lock:
        if _camera_manager is not None:
            _camera_manager.stop_all()
            _camera_manager = None
        if _video_service is not None:
            _video_service.stop()
            _video_service = None
        _cleanup_stop.set()
        if _cleanup_thread is not None:
            _cleanup_thread.join(timeout=2.0)
            _cleanup_thread = None
        _resolver = None
