"""Ultralytics YOLO person detector.

Works with Torch `.pt` weights and ONNX exports. Torch is imported lazily so
ONNX deployments do not need it.
"""

from __future__ import annotations

import importlib
import logging
import os
from contextlib import nullcontext
from typing import Any

import numpy as np
from ultralytics import YOLO

from reidwatch.core.engines import DetectionConfig
from reidwatch.core.types import BoundingBox, Detection

logger = logging.getLogger(__name__)

PERSON_CLASS_ID = 0


def _to_numpy(value: Any) -> np.ndarray:
    if hasattr(value, "cpu"):
        value = value.cpu()
    return value.numpy() if hasattr(value, "numpy") else np.asarray(value)


class YoloPersonDetector:
    """`DetectionEngine` backed by Ultralytics YOLO, restricted to the person class.

    Ultralytics applies NMS inside `predict`, so the returned boxes are final.
    CPU threading can be tuned with `RW_TORCH_THREADS`.
    """

    _torch_threads_configured: bool = False

    def __init__(self, config: DetectionConfig | None = None, device: str = "cpu") -> None:
        self.config = config or DetectionConfig()
        self._configure_torch_threads_from_env()

        self.is_onnx = self.config.model_path.lower().endswith(".onnx")
        self.device = device
        self._inference_mode: Any | None = None
        if not self.is_onnx:
            try:
                self._inference_mode = importlib.import_module("torch").inference_mode
            except ImportError:
                self._inference_mode = None

        self.model = YOLO(self.config.model_path)
        if not self.is_onnx:
            # ONNX exports reject .to(); Torch weights get pinned and fused.
            self.model.to(self.device)
            try:
                self.model.fuse()
            except (AttributeError, TypeError):
                logger.debug("Model %s does not support fuse()", self.config.model_path)
        logger.info("Loaded detector %s on %s", self.config.model_path, self.device)

    @classmethod
    def _configure_torch_threads_from_env(cls) -> None:
        if cls._torch_threads_configured:
            return
        cls._torch_threads_configured = True
        threads = os.getenv("RW_TORCH_THREADS")
        if not threads or not threads.strip():
            return
        try:
            importlib.import_module("torch").set_num_threads(max(1, int(threads)))
        except (ImportError, ValueError, RuntimeError):
            logger.warning("Ignoring RW_TORCH_THREADS=%r", threads)

    def _predict_kwargs(self, config: DetectionConfig) -> dict[str, Any]:
        return {
            "conf": config.confidence_threshold,
            "iou": config.nms_threshold,
            "imgsz": config.input_size,
            "classes": [PERSON_CLASS_ID],
            "device": self.device,
            "verbose": False,
        }

    def detect(self, frame: np.ndarray, config: DetectionConfig | None = None) -> list[Detection]:
        """Run one frame through the model and return person detections in frame pixels."""

        config = config or self.config
        ctx = self._inference_mode() if self._inference_mode is not None else nullcontext()
        with ctx:
            results = self.model.predict(frame, **self._predict_kwargs(config))
        if not results:
            return []

        boxes = getattr(results[0], "boxes", None)
        if boxes is None or len(boxes) == 0:
            return []

        # Boxes.data rows are (x1, y1, x2, y2, conf, cls).
        data = _to_numpy(boxes.data)
        if data.ndim != 2 or data.shape[1] < 5:
            return []

        out: list[Detection] = []
        for x1, y1, x2, y2, conf in data[:, :5]:
            if x2 <= x1 or y2 <= y1:
                continue
            out.append(Detection(BoundingBox.from_xyxy(x1, y1, x2, y2), float(conf)))
        return out
