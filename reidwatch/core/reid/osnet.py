"""OSNet appearance features through ONNX Runtime."""

from __future__ import annotations

import logging
from collections.abc import Sequence

import cv2
import numpy as np
import onnxruntime as ort

from reidwatch.core.engines import ReIdConfig, crop_box
from reidwatch.core.features import FeatureVector
from reidwatch.core.types import BoundingBox

logger = logging.getLogger(__name__)


def select_providers(use_gpu: bool) -> list[str]:
    available = ort.get_available_providers()
    if use_gpu and "CUDAExecutionProvider" in available:
        return ["CUDAExecutionProvider", "CPUExecutionProvider"]
    return ["CPUExecutionProvider"]


def preprocess_crop(crop: np.ndarray, config: ReIdConfig) -> np.ndarray:
    """BGR crop -> normalized CHW float32 at the model's input size."""

    resized = cv2.resize(crop, (config.input_width, config.input_height), interpolation=cv2.INTER_LINEAR)
    rgb = cv2.cvtColor(resized, cv2.COLOR_BGR2RGB).astype(np.float32) / 255.0
    rgb = (rgb - np.asarray(config.mean, dtype=np.float32)) / np.asarray(config.std, dtype=np.float32)
    return np.transpose(rgb, (2, 0, 1))


class OSNetReIdEngine:
    """`ReIdEngine` running an OSNet ONNX export.

    Outputs are L2-normalized so euclidean distance and cosine similarity agree
    on ordering.
    """

    def __init__(self, config: ReIdConfig | None = None, use_gpu: bool = False) -> None:
        self.config = config or ReIdConfig()
        providers = select_providers(use_gpu)
        self.session = ort.InferenceSession(self.config.model_path, providers=providers)
        model_input = self.session.get_inputs()[0]
        self._input_name = model_input.name
        # Exports with a fixed batch axis of 1 must be fed one crop at a time.
        self._single_batch = model_input.shape[0] == 1
        logger.info("Loaded re-id model %s (providers=%s)", self.config.model_path, providers)

    def _run(self, batch: np.ndarray) -> np.ndarray:
        if self._single_batch and batch.shape[0] > 1:
            return np.concatenate([self._run(batch[i : i + 1]) for i in range(batch.shape[0])], axis=0)
        (output,) = self.session.run(None, {self._input_name: batch})[:1]
        return np.asarray(output, dtype=np.float32).reshape(batch.shape[0], -1)

    def _to_feature(self, row: np.ndarray, config: ReIdConfig) -> FeatureVector | None:
        if row.shape[0] != config.feature_dim:
            logger.warning("Re-id output has %d dims, expected %d", row.shape[0], config.feature_dim)
            return None
        return FeatureVector(row).normalize()

    def extract_features(
        self,
        frame: np.ndarray,
        box: BoundingBox,
        config: ReIdConfig | None = None,
    ) -> FeatureVector | None:
        return self.extract_features_batch(frame, [box], config)[0]

    def extract_features_batch(
        self,
        frame: np.ndarray,
        boxes: Sequence[BoundingBox],
        config: ReIdConfig | None = None,
    ) -> list[FeatureVector | None]:
        """One inference call for every crop; boxes with no pixels map to `None`."""

        config = config or self.config
        results: list[FeatureVector | None] = [None] * len(boxes)
        indices: list[int] = []
        tensors: list[np.ndarray] = []
        for i, box in enumerate(boxes):
            crop = crop_box(frame, box)
            if crop is None or crop.size == 0:
                continue
            indices.append(i)
            tensors.append(preprocess_crop(crop, config))
        if not tensors:
            return results

        outputs = self._run(np.stack(tensors, axis=0))
        for i, row in zip(indices, outputs):
            results[i] = self._to_feature(row, config)
        return results
