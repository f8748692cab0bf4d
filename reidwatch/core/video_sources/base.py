"""Video source abstractions.

Pipelines consume frames through a small interface (`VideoSource`) so the
capture implementation (webcam/file/RTSP) can be swapped without affecting the
detection or identity code.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod

import cv2

from reidwatch.core.types import Frame

logger = logging.getLogger(__name__)


class VideoSource(ABC):
    """Base interface for anything that can produce video frames."""

    @abstractmethod
    def read(self) -> Frame | None:
        """Return the next frame, or `None` when unavailable."""

        raise NotImplementedError

    @abstractmethod
    def close(self) -> None:
        """Release any underlying resources."""

        raise NotImplementedError

    @property
    def fps(self) -> float:
        return 0.0

    @property
    def frame_count(self) -> int:
        return 0


class OpenCVSource(VideoSource):
    """A `VideoSource` backed by `cv2.VideoCapture`."""

    def __init__(self, source: str | int) -> None:
        self.cap = cv2.VideoCapture(source)
        if not self.cap.isOpened():
            raise RuntimeError(f"Failed to open video source: {source}")

    def read(self) -> Frame | None:
        """Read the next frame from the underlying OpenCV capture."""

        ok, frame = self.cap.read()
        if not ok:
            return None
        return frame

    def close(self) -> None:
        """Release the underlying OpenCV capture."""

        self.cap.release()

    @property
    def fps(self) -> float:
        value = float(self.cap.get(cv2.CAP_PROP_FPS) or 0.0)
        return value if value > 0.0 else 0.0

    @property
    def frame_count(self) -> int:
        return max(0, int(self.cap.get(cv2.CAP_PROP_FRAME_COUNT) or 0))


class WebcamSource(OpenCVSource):
    """Local camera by device index, tuned for low latency."""

    def __init__(self, index: int = 0) -> None:
        super().__init__(index)
        # Supported by some backends/drivers; ignored by others.
        self.cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
        logger.info("Opened camera index=%s", index)


class FileSource(OpenCVSource):
    """Video file played in real time and looped at EOF (live-camera simulation)."""

    def __init__(self, path: str) -> None:
        self._path = path
        self._start_perf: float | None = None
        self._frame_index = 0
        super().__init__(path)
        self._source_fps = super().fps

    def _pace(self) -> None:
        # Play in seconds, not decode-as-fast-as-possible.
        if self._source_fps <= 0.0 or self._start_perf is None:
            return
        expected = self._frame_index / self._source_fps
        delay = expected - (time.perf_counter() - self._start_perf)
        if delay > 0:
            time.sleep(delay)

    def read(self) -> Frame | None:
        """Read the next frame in real-time; when EOF is reached, rewind and continue."""

        if self._start_perf is None:
            self._start_perf = time.perf_counter()
            self._frame_index = 0

        ok, frame = self.cap.read()
        if not ok:
            if not self.cap.set(cv2.CAP_PROP_POS_FRAMES, 0):
                return None
            self._start_perf = time.perf_counter()
            self._frame_index = 0
            ok, frame = self.cap.read()
            if not ok:
                return None
        self._frame_index += 1
        self._pace()
        return frame


class RTSPSource(OpenCVSource):
    """RTSP stream source."""

    def __init__(self, url: str) -> None:
        # RTSP is often more reliable when explicitly using the FFmpeg backend.
        self.cap = None
        candidates: list[int | None] = [getattr(cv2, "CAP_FFMPEG", None), None]
        for backend in candidates:
            cap = cv2.VideoCapture(url) if backend is None else cv2.VideoCapture(url, backend)
            if cap.isOpened():
                self.cap = cap
                break
            cap.release()

        if self.cap is None:
            raise RuntimeError(f"Failed to open RTSP source: {url}")

        self.cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
        # Avoid long hangs when a stream is unreachable (supported on some OpenCV builds).
        for prop, value in (
            (getattr(cv2, "CAP_PROP_OPEN_TIMEOUT_MSEC", None), 5000),
            (getattr(cv2, "CAP_PROP_READ_TIMEOUT_MSEC", None), 5000),
        ):
            if prop is not None:
                self.cap.set(int(prop), float(value))


def open_stream_source(url: str) -> VideoSource:
    """Open a live source from a camera URL.

    Digits select a local device, `rtsp://` uses the RTSP backend, an existing
    file path is looped in real time and anything else goes to OpenCV as-is.
    """

    text = str(url).strip()
    if text.isdigit():
        return WebcamSource(int(text))
    if text.lower().startswith("rtsp://"):
        return RTSPSource(text)
    if "://" not in text:
        return FileSource(text)
    return OpenCVSource(text)


def open_video_file(path: str) -> VideoSource:
    """Open an uploaded video for batch processing (sequential, unpaced)."""

    return OpenCVSource(path)
