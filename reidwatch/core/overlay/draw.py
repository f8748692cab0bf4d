"""Overlay drawing helpers (OpenCV).

Used by the annotate stage of a live camera pipeline.
"""

from __future__ import annotations

import random
import time
import uuid
from collections.abc import Sequence

import cv2
import numpy as np

from reidwatch.core.types import TrackedPerson

TEXT_COLOR = (255, 255, 255)
LABEL_TEXT_COLOR = (0, 0, 0)
INFO_BG_COLOR = (0, 0, 0)
CURRENT_COLOR = (0, 255, 255)  # yellow
UNIQUE_COLOR = (0, 255, 0)  # green

CORNER_LENGTH = 18
BOX_THICKNESS = 2
FONT = cv2.FONT_HERSHEY_SIMPLEX


def _make_palette(size: int = 100, seed: int = 42) -> list[tuple[int, int, int]]:
    rng = random.Random(seed)
    return [(rng.randint(100, 254), rng.randint(100, 254), rng.randint(100, 254)) for _ in range(size)]


PERSON_COLORS = _make_palette()


def color_for(identity_id: uuid.UUID) -> tuple[int, int, int]:
    """Stable color for an identity (same id, same color across frames)."""

    return PERSON_COLORS[identity_id.int % len(PERSON_COLORS)]


def person_label(person: TrackedPerson) -> str:
    return f"P-{person.identity_id.hex[:6]} {person.confidence * 100:.0f}%"


def draw_corner_box(
    img: np.ndarray,
    x: int,
    y: int,
    w: int,
    h: int,
    color: tuple[int, int, int],
    thickness: int = BOX_THICKNESS,
    length: int = CORNER_LENGTH,
) -> None:
    """Draw only the four corners of a box (cheaper and less cluttered than a rectangle)."""

    x2, y2 = x + w, y + h
    length = max(1, min(length, min(w, h) // 3))
    for (px, py), dx, dy in (
        ((x, y), 1, 1),
        ((x2, y), -1, 1),
        ((x, y2), 1, -1),
        ((x2, y2), -1, -1),
    ):
        cv2.line(img, (px, py), (px + dx * length, py), color, thickness)
        cv2.line(img, (px, py), (px, py + dy * length), color, thickness)


def draw_info_panel(img: np.ndarray, current: int, today_unique: int, fps: float, now: float | None = None) -> None:
    """Top-left status box: current count, unique today, wall clock and FPS."""

    ts = time.strftime("%H:%M:%S", time.localtime(time.time() if now is None else now))
    cv2.rectangle(img, (5, 5), (180, 67), INFO_BG_COLOR, -1)
    cv2.putText(img, f"Current: {current}", (10, 20), FONT, 0.48, CURRENT_COLOR, 1, cv2.LINE_AA)
    cv2.putText(img, f"Unique Today: {today_unique}", (10, 40), FONT, 0.52, UNIQUE_COLOR, 1, cv2.LINE_AA)
    cv2.putText(img, f"{ts} | {fps:.0f} FPS", (10, 58), FONT, 0.38, TEXT_COLOR, 1, cv2.LINE_AA)


def draw_overlays(
    frame: np.ndarray,
    persons: Sequence[TrackedPerson],
    today_unique: int = 0,
    fps: float = 0.0,
) -> np.ndarray:
    """Return a copy of `frame` with person markers and the status panel drawn."""

    img = frame.copy()
    for person in persons:
        box = person.box
        color = color_for(person.identity_id)
        draw_corner_box(img, box.x, box.y, box.width, box.height, color)

        label = person_label(person)
        label_y = max(18, box.y - 6)
        (tw, th), _ = cv2.getTextSize(label, FONT, 0.45, 1)
        cv2.rectangle(img, (box.x - 1, label_y - th - 2), (box.x + tw + 1, label_y + 2), color, -1)
        cv2.putText(img, label, (box.x, label_y), FONT, 0.45, LABEL_TEXT_COLOR, 1, cv2.LINE_AA)

    draw_info_panel(img, len(persons), today_unique, fps)
    return img
