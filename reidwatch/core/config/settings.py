"""Runtime configuration.

Settings are loaded from YAML defaults and overridden by environment variables
prefixed with `RW_`.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from reidwatch.core.engines import DetectionConfig, ReIdConfig
from reidwatch.core.identity.resolver import IdentityConfig
from reidwatch.core.persistence import PersistenceConfig
from reidwatch.core.streaming.camera import StreamConfig
from reidwatch.core.video.service import VideoConfig

_UNIT_FIELDS = (
    "detection_confidence",
    "video_detection_confidence",
    "nms_threshold",
    "min_confidence_for_confirmation",
    "instant_confirm_confidence",
    "high_confidence_threshold",
    "video_similarity_threshold",
    "video_feature_alpha",
)

_POSITIVE_INT_FIELDS = (
    "inference_size",
    "reid_feature_dim",
    "min_crop_width",
    "min_crop_height",
    "max_identities_in_memory",
    "match_stability_frames",
    "target_fps",
    "detection_interval_ms",
    "reid_every_n_frames",
    "max_reconnect_attempts",
    "max_consecutive_errors",
    "frame_buffer_size",
    "video_queue_capacity",
    "default_frame_skip",
)


class Settings(BaseSettings):
    """Runtime configuration loaded from YAML defaults and `RW_` env overrides."""

    log_level: str = Field("INFO", description="DEBUG|INFO|WARNING|ERROR")

    # Detection
    model_name: str = Field("yolo11s.pt", description="Ultralytics model path/name (.pt or .onnx)")
    detection_confidence: float = 0.25
    video_detection_confidence: float = 0.4
    nms_threshold: float = 0.45
    inference_size: int = 640
    min_detection_width: int = 12
    min_detection_height: int = 25

    # Re-identification
    reid_model_path: str = "models/osnet_x1_0.onnx"
    reid_feature_dim: int = 512
    reid_use_gpu: bool = False

    # Identity resolution
    distance_threshold: float = 0.25
    cross_camera_threshold: float = 0.20
    min_distance_for_new_identity: float = 0.15
    min_separation_ratio: float = 1.05
    active_window_seconds: float = 15.0
    recent_window_seconds: float = 60.0
    stale_after_seconds: float = 50.0
    require_recent_activity: bool = True
    stale_penalty: float = 0.50
    enable_entry_zone: bool = True
    entry_zone_margin_percent: float = 25.0
    entry_zone_bonus_distance: float = 0.15
    high_confidence_threshold: float = 0.85
    high_confidence_deduction: float = 0.02
    match_stability_frames: int = 1
    enable_confidence_confirmation: bool = True
    min_confidence_for_confirmation: float = 0.25
    instant_confirm_confidence: float = 0.30
    enable_fast_walker_mode: bool = True
    confidence_window_seconds: float = 10.0
    update_vector_on_match: bool = False
    min_crop_width: int = 12
    min_crop_height: int = 25
    max_identities_in_memory: int = 500
    load_from_storage_on_startup: bool = False
    storage_load_hours: int = 0
    cache_expiration_minutes: float = 10.0
    cleanup_interval_seconds: float = 60.0

    # Live streaming
    target_fps: int = 25
    detection_interval_ms: int = 50
    reid_every_n_frames: int = 1
    reconnect_delay_ms: int = 3000
    max_reconnect_attempts: int = 5
    max_consecutive_errors: int = 30
    jpeg_quality: int = 80
    frame_buffer_size: int = 3
    lock_timeout_ms: int = 100

    # Persistence
    save_to_storage: bool = True
    save_interval_seconds: float = 10.0
    only_on_count_change: bool = True
    min_count_change_threshold: int = 1

    # Video jobs
    video_queue_capacity: int = 10
    default_frame_skip: int = 5
    video_similarity_threshold: float = 0.70
    video_feature_alpha: float = 0.3
    upload_dir: str = "uploads"

    model_config = SettingsConfigDict(env_prefix="RW_", validate_assignment=True)

    @field_validator(*_UNIT_FIELDS)
    @classmethod
    def _validate_unit_interval(cls, v: float) -> float:
        if not 0.0 <= float(v) <= 1.0:
            raise ValueError("value must be in [0, 1]")
        return float(v)

    @field_validator(*_POSITIVE_INT_FIELDS)
    @classmethod
    def _validate_positive(cls, v: int) -> int:
        if int(v) <= 0:
            raise ValueError("value must be >= 1")
        return int(v)

    @field_validator("jpeg_quality")
    @classmethod
    def _validate_jpeg_quality(cls, v: int) -> int:
        if not 1 <= int(v) <= 100:
            raise ValueError("jpeg_quality must be in [1, 100]")
        return int(v)

    @field_validator("entry_zone_margin_percent")
    @classmethod
    def _validate_margin(cls, v: float) -> float:
        if not 0.0 <= float(v) < 50.0:
            raise ValueError("entry_zone_margin_percent must be in [0, 50)")
        return float(v)

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, v: str) -> str:
        level = str(v).strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError("log_level must be DEBUG|INFO|WARNING|ERROR|CRITICAL")
        return level

    @field_validator("recent_window_seconds")
    @classmethod
    def _validate_recent_window(cls, v: float) -> float:
        if float(v) <= 0:
            raise ValueError("recent_window_seconds must be > 0")
        return float(v)


def settings_to_dict(settings: Settings) -> dict[str, Any]:
    """Convert settings to a plain dict."""

    return settings.model_dump()


def _config_path() -> Path:
    """Return the YAML configuration path (defaults to config/reidwatch.config.yml)."""

    return Path(os.getenv("RW_CONFIG", "config/reidwatch.config.yml"))


def load_settings() -> Settings:
    """Load settings from YAML and environment variables.

    YAML provides defaults; environment variables override.
    """

    data: dict[str, Any] = {}
    path = _config_path()
    if path.exists():
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

    env_settings = Settings()
    env_overrides: dict[str, Any] = {
        name: getattr(env_settings, name) for name in env_settings.model_fields_set
    }

    merged = {**data, **env_overrides}
    return Settings(**merged)


def detection_config_from_settings(settings: Settings, video: bool = False) -> DetectionConfig:
    """Build the detector config; `video=True` uses the batch confidence threshold."""

    return DetectionConfig(
        model_path=settings.model_name,
        confidence_threshold=(
            settings.video_detection_confidence if video else settings.detection_confidence
        ),
        nms_threshold=settings.nms_threshold,
        input_size=settings.inference_size,
        min_width=settings.min_detection_width,
        min_height=settings.min_detection_height,
    )


def reid_config_from_settings(settings: Settings) -> ReIdConfig:
    return ReIdConfig(model_path=settings.reid_model_path, feature_dim=settings.reid_feature_dim)


def identity_config_from_settings(settings: Settings) -> IdentityConfig:
    return IdentityConfig(
        distance_threshold=settings.distance_threshold,
        cross_camera_threshold=settings.cross_camera_threshold,
        min_distance_for_new_identity=settings.min_distance_for_new_identity,
        min_separation_ratio=settings.min_separation_ratio,
        active_window_seconds=settings.active_window_seconds,
        recent_window_seconds=settings.recent_window_seconds,
        stale_after_seconds=settings.stale_after_seconds,
        require_recent_activity=settings.require_recent_activity,
        stale_penalty=settings.stale_penalty,
        enable_entry_zone=settings.enable_entry_zone,
        entry_zone_margin_percent=settings.entry_zone_margin_percent,
        entry_zone_bonus_distance=settings.entry_zone_bonus_distance,
        high_confidence_threshold=settings.high_confidence_threshold,
        high_confidence_deduction=settings.high_confidence_deduction,
        match_stability_frames=settings.match_stability_frames,
        enable_confidence_confirmation=settings.enable_confidence_confirmation,
        min_confidence_for_confirmation=settings.min_confidence_for_confirmation,
        instant_confirm_confidence=settings.instant_confirm_confidence,
        enable_fast_walker_mode=settings.enable_fast_walker_mode,
        confidence_window_seconds=settings.confidence_window_seconds,
        update_vector_on_match=settings.update_vector_on_match,
        min_crop_width=settings.min_crop_width,
        min_crop_height=settings.min_crop_height,
        feature_dim=settings.reid_feature_dim,
        max_identities_in_memory=settings.max_identities_in_memory,
        load_from_storage_on_startup=settings.load_from_storage_on_startup,
        storage_load_hours=settings.storage_load_hours,
    )


def stream_config_from_settings(settings: Settings) -> StreamConfig:
    return StreamConfig(
        target_fps=settings.target_fps,
        detection_interval_ms=settings.detection_interval_ms,
        reid_every_n_frames=settings.reid_every_n_frames,
        reconnect_delay_ms=settings.reconnect_delay_ms,
        max_reconnect_attempts=settings.max_reconnect_attempts,
        max_consecutive_errors=settings.max_consecutive_errors,
        jpeg_quality=settings.jpeg_quality,
        frame_buffer_size=settings.frame_buffer_size,
        lock_timeout_ms=settings.lock_timeout_ms,
    )


def persistence_config_from_settings(settings: Settings) -> PersistenceConfig:
    return PersistenceConfig(
        save_to_storage=settings.save_to_storage,
        save_interval_seconds=settings.save_interval_seconds,
        only_on_count_change=settings.only_on_count_change,
        min_count_change_threshold=settings.min_count_change_threshold,
    )


def video_config_from_settings(settings: Settings) -> VideoConfig:
    return VideoConfig(
        queue_capacity=settings.video_queue_capacity,
        default_frame_skip=settings.default_frame_skip,
        similarity_threshold=settings.video_similarity_threshold,
        feature_alpha=settings.video_feature_alpha,
        detection=detection_config_from_settings(settings, video=True),
        reid=reid_config_from_settings(settings),
    )
