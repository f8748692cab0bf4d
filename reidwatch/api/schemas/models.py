"""Pydantic models for the HTTP API."""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator


class CameraStartRequest(BaseModel):
    """Camera URL: device index digits, an `rtsp://` URL or a local video path."""

    url: str

    @field_validator("url")
    @classmethod
    def _validate_url(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("url must not be empty")
        return v


class CameraStatusSchema(BaseModel):
    camera_id: int
    url: str | None = None
    state: str
    connected: bool
    fps: float = 0.0
    current_count: int = 0
    unique_count: int = 0
    active_count: int = 0
    last_error: str | None = None


class CameraActionSchema(BaseModel):
    camera_id: int
    success: bool
    state: str | None = None


class IdentityCountSchema(BaseModel):
    total: int
    confirmed: int
    high_confidence: int
    today_unique: int


class VideoSubmitRequest(BaseModel):
    """Reference to a file already placed in the upload directory."""

    file_name: str
    frame_skip: int | None = Field(default=None, ge=1)
    extract_features: bool = True

    @field_validator("file_name")
    @classmethod
    def _validate_basename(cls, v: str) -> str:
        if not v or "/" in v or "\\" in v or v in {".", ".."}:
            raise ValueError("file_name must be a plain file name")
        return v


class VideoSubmitResponse(BaseModel):
    job_id: str
    state: str


class FramePersonSchema(BaseModel):
    identity_id: str
    short_id: str
    box: list[int]
    confidence: float


class FrameDetectionsSchema(BaseModel):
    frame_number: int
    timestamp: float
    person_count: int
    persons: list[FramePersonSchema]


class VideoStatusSchema(BaseModel):
    job_id: str
    file_name: str
    state: str
    total_frames: int
    processed_frames: int
    progress: int = Field(ge=0, le=100)
    total_persons_detected: int
    unique_persons: int
    started_at: float | None = None
    completed_at: float | None = None
    error: str | None = None
    recent_detections: list[FrameDetectionsSchema] = []


class VideoJobSchema(BaseModel):
    job_id: str
    file_name: str
    state: str
    progress: int
    unique_persons: int
    created_at: float


class PersonTimelineSchema(BaseModel):
    identity_id: str
    short_id: str
    first_appearance: float
    last_appearance: float
    total_appearances: int
    average_confidence: float
    best_confidence: float
    best_frame_number: int
    has_thumbnail: bool


class VideoSummarySchema(BaseModel):
    job_id: str
    file_name: str
    status: str
    video_duration: float
    processed_frames: int
    total_persons_detected: int
    unique_persons: int
    average_persons_per_frame: float
    peak_persons_in_frame: int
    processing_seconds: float
    timelines: list[PersonTimelineSchema]
