"""Websocket push of camera and video-job events.

A connection subscribes to one topic of the shared event hub before the
handshake completes, so nothing published after `connect` returns is missed.
"""

from __future__ import annotations

import asyncio
import logging
import uuid

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder

from reidwatch.api.services.state import get_event_hub, get_video_service
from reidwatch.core.events import EventHub, Subscription, camera_topic, video_completed_event, video_topic
from reidwatch.core.video.service import VideoProcessingService

router = APIRouter(tags=["events"])

logger = logging.getLogger(__name__)

POLL_SECONDS = 0.2


async def _poll_disconnect(ws: WebSocket) -> None:
    # Client messages are ignored; reading is how a disconnect surfaces.
    try:
        await asyncio.wait_for(ws.receive_text(), timeout=0.001)
    except asyncio.TimeoutError:
        return
    except KeyError:
        # binary frame
        return


async def _pump(ws: WebSocket, sub: Subscription, final_type: str | None = None) -> None:
    """Forward events until the client leaves, or after an event of `final_type`."""

    try:
        while True:
            await _poll_disconnect(ws)
            event = await asyncio.to_thread(sub.get, POLL_SECONDS)
            if event is None:
                continue
            await ws.send_json(jsonable_encoder(event))
            if final_type is not None and event.get("type") == final_type:
                await ws.close()
                return
    except WebSocketDisconnect:
        return
    except Exception:
        logger.exception("Event websocket crashed on %s", sub.topic)
        try:
            await ws.close(code=1011)
        except RuntimeError:
            logger.debug("Websocket already closed")
    finally:
        sub.close()


@router.websocket("/cameras/{camera_id}/events")
async def camera_events(ws: WebSocket, camera_id: int, hub: EventHub = Depends(get_event_hub)):
    sub = hub.subscribe(camera_topic(camera_id))
    await ws.accept()
    await _pump(ws, sub)


@router.websocket("/videos/{job_id}/events")
async def video_events(
    ws: WebSocket,
    job_id: uuid.UUID,
    hub: EventHub = Depends(get_event_hub),
    service: VideoProcessingService = Depends(get_video_service),
):
    """Progress of one job; the socket closes after the completion event."""

    sub = hub.subscribe(video_topic(job_id))
    job = service.get_job(job_id)
    if job is None:
        sub.close()
        await ws.close(code=1008)
        return
    await ws.accept()
    if job.is_terminal:
        sub.close()
        await ws.send_json(video_completed_event(job_id, job.to_summary()))
        await ws.close()
        return
    await _pump(ws, sub, final_type="video_completed")
