"""Video job endpoints.

Jobs reference files in the configured upload directory, either placed there
beforehand (only plain basenames are accepted so requests cannot reach
outside it) or stored by the multipart upload endpoint.
"""

from __future__ import annotations

import logging
import shutil
import uuid
from pathlib import Path

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from fastapi.responses import Response

from reidwatch.api.schemas.models import (
    VideoJobSchema,
    VideoStatusSchema,
    VideoSubmitRequest,
    VideoSubmitResponse,
    VideoSummarySchema,
)
from reidwatch.api.services.state import get_settings, get_video_service
from reidwatch.core.video.jobs import JobState
from reidwatch.core.video.service import VideoProcessingService

ALLOWED_VIDEO_SUFFIXES = {".mp4", ".mov", ".mkv", ".avi", ".webm"}

router = APIRouter(prefix="/videos", tags=["videos"])

logger = logging.getLogger(__name__)


def _upload_dir() -> Path:
    return Path(get_settings().upload_dir)


def _resolve_upload(file_name: str, upload_dir: Path) -> Path:
    path = upload_dir / file_name
    if path.suffix.lower() not in ALLOWED_VIDEO_SUFFIXES:
        raise HTTPException(status_code=400, detail="Unsupported video format")
    if not path.is_file():
        raise HTTPException(status_code=404, detail="Video file not found")
    return path


@router.post("", response_model=VideoSubmitResponse, status_code=202)
def submit_video(
    body: VideoSubmitRequest,
    service: VideoProcessingService = Depends(get_video_service),
    upload_dir: Path = Depends(_upload_dir),
) -> VideoSubmitResponse:
    """Queue a job; waits while the job queue is full."""

    path = _resolve_upload(body.file_name, upload_dir)
    job_id = service.submit(
        str(path),
        frame_skip=body.frame_skip,
        extract_features=body.extract_features,
        file_name=body.file_name,
    )
    return VideoSubmitResponse(job_id=str(job_id), state=JobState.QUEUED.value)


@router.post("/upload", response_model=VideoSubmitResponse, status_code=202)
def upload_video(
    file: UploadFile = File(...),
    frame_skip: int | None = Form(default=None, ge=1),
    extract_features: bool = Form(default=True),
    service: VideoProcessingService = Depends(get_video_service),
    upload_dir: Path = Depends(_upload_dir),
) -> VideoSubmitResponse:
    """Store an uploaded video under a generated name and queue it."""

    original = Path(file.filename or "").name
    suffix = Path(original).suffix.lower()
    if suffix not in ALLOWED_VIDEO_SUFFIXES:
        raise HTTPException(status_code=400, detail="Unsupported video format")

    upload_dir.mkdir(parents=True, exist_ok=True)
    path = upload_dir / f"{uuid.uuid4().hex}{suffix}"
    with path.open("wb") as out:
        shutil.copyfileobj(file.file, out)
    logger.info("Stored upload %s as %s", original, path.name)

    job_id = service.submit(
        str(path),
        frame_skip=frame_skip,
        extract_features=extract_features,
        file_name=original,
    )
    return VideoSubmitResponse(job_id=str(job_id), state=JobState.QUEUED.value)


@router.get("", response_model=list[VideoJobSchema])
def list_videos(service: VideoProcessingService = Depends(get_video_service)) -> list[VideoJobSchema]:
    return [VideoJobSchema(**job) for job in service.list_jobs()]


@router.get("/{job_id}", response_model=VideoStatusSchema)
def video_status(job_id: uuid.UUID, service: VideoProcessingService = Depends(get_video_service)):
    status = service.get_status(job_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Unknown job")
    return VideoStatusSchema(**status)


@router.get("/{job_id}/summary", response_model=VideoSummarySchema)
def video_summary(job_id: uuid.UUID, service: VideoProcessingService = Depends(get_video_service)):
    job = service.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Unknown job")
    summary = service.get_summary(job_id)
    if summary is None:
        raise HTTPException(status_code=409, detail=f"Job is {job.state.value}")
    return VideoSummarySchema(**summary)


@router.get("/{job_id}/persons/{identity_id}/thumbnail")
def person_thumbnail(
    job_id: uuid.UUID,
    identity_id: uuid.UUID,
    service: VideoProcessingService = Depends(get_video_service),
) -> Response:
    job = service.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Unknown job")
    with job.lock:
        info = job.persons.get(identity_id)
        thumbnail = info.thumbnail if info is not None else None
    if thumbnail is None:
        raise HTTPException(status_code=404, detail="No thumbnail")
    return Response(content=thumbnail, media_type="image/jpeg")


@router.post("/{job_id}/cancel")
def cancel_video(job_id: uuid.UUID, service: VideoProcessingService = Depends(get_video_service)):
    if service.get_job(job_id) is None:
        raise HTTPException(status_code=404, detail="Unknown job")
    return {"job_id": str(job_id), "cancelled": service.cancel(job_id)}


@router.delete("/{job_id}")
def delete_video(job_id: uuid.UUID, service: VideoProcessingService = Depends(get_video_service)):
    if not service.cleanup_job(job_id):
        raise HTTPException(status_code=404, detail="Unknown job")
    return {"job_id": str(job_id), "deleted": True}
