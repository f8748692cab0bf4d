"""FastAPI application entrypoint."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from reidwatch.api.routes import cameras, events, health, videos
from reidwatch.api.services.state import get_settings


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler.

    Stops camera sessions, the video worker and identity cleanup on shutdown.
    """

    from reidwatch.api.services.state import stop_all

    logging.basicConfig(
        level=get_settings().log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    yield
    stop_all()


app = FastAPI(title="reidwatch API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(cameras.router)
app.include_router(videos.router)
app.include_router(events.router)


if __name__ == "__main__":
    uvicorn.run("reidwatch.api.main:app", host="0.0.0.0", port=8000)
