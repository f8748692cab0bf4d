"""Live camera endpoints: session control, identity counters and MJPEG output."""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from reidwatch.api.schemas.models import (
    CameraActionSchema,
    CameraStartRequest,
    CameraStatusSchema,
    IdentityCountSchema,
)
from reidwatch.api.services.state import get_camera_manager
from reidwatch.core.streaming.camera import StreamState
from reidwatch.core.streaming.manager import CameraManager

router = APIRouter(prefix="/cameras", tags=["cameras"])

logger = logging.getLogger(__name__)


@router.get("/identities/count", response_model=IdentityCountSchema)
def identity_count(manager: CameraManager = Depends(get_camera_manager)) -> IdentityCountSchema:
    counts = manager.resolver.detailed_counts()
    return IdentityCountSchema(
        total=manager.active_identity_count(),
        confirmed=counts["confirmed"],
        high_confidence=counts["high_confidence"],
        today_unique=manager.resolver.today_unique_count(),
    )


@router.post("/identities/reset")
def reset_identities(manager: CameraManager = Depends(get_camera_manager)) -> dict[str, bool]:
    manager.reset_all_identities()
    logger.info("Identity catalog reset via API")
    return {"success": True}


@router.get("", response_model=list[CameraStatusSchema])
def list_cameras(manager: CameraManager = Depends(get_camera_manager)) -> list[CameraStatusSchema]:
    return [CameraStatusSchema(**status) for status in manager.list_cameras()]


@router.post("/{camera_id}/start", response_model=CameraActionSchema)
def start_camera(
    camera_id: int,
    body: CameraStartRequest,
    manager: CameraManager = Depends(get_camera_manager),
) -> CameraActionSchema:
    """Connect a camera; blocks through the connection retries."""

    ok = manager.start(camera_id, body.url)
    pipeline = manager.get(camera_id)
    return CameraActionSchema(
        camera_id=camera_id,
        success=ok,
        state=pipeline.state.value if pipeline is not None else StreamState.DISCONNECTED.value,
    )


@router.post("/{camera_id}/stop", response_model=CameraActionSchema)
def stop_camera(camera_id: int, manager: CameraManager = Depends(get_camera_manager)) -> CameraActionSchema:
    if not manager.stop(camera_id):
        raise HTTPException(status_code=404, detail="Camera not active")
    return CameraActionSchema(camera_id=camera_id, success=True, state=StreamState.DISCONNECTED.value)


@router.get("/{camera_id}/stream")
async def stream_camera(camera_id: int, manager: CameraManager = Depends(get_camera_manager)):
    pipeline = manager.get(camera_id)
    if pipeline is None:
        raise HTTPException(status_code=404, detail="Camera not active")

    async def generator():
        while manager.get(camera_id) is pipeline and pipeline.state is not StreamState.DISCONNECTED:
            frame = await asyncio.to_thread(pipeline.get_frame, 0.5)
            if frame is None:
                continue
            yield (
                b"--frame\r\nContent-Type: image/jpeg\r\n"
                + f"Content-Length: {len(frame)}\r\n\r\n".encode("ascii")
                + frame
                + b"\r\n"
            )

    return StreamingResponse(
        generator(),
        media_type="multipart/x-mixed-replace; boundary=frame",
        headers={
            "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
            "Pragma": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )
