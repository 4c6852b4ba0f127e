"""
SCRFD Face Detector using ONNX Runtime.
Finds face boxes and 5-point landmarks in a BGR frame.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

import cv2
import numpy as np
import onnxruntime as ort

from ..core.exceptions import DetectionPassError, ModelLoadError


logger = logging.getLogger(__name__)


@dataclass
class RawFace:
    """Detector output for one face, before embedding."""
    bbox: np.ndarray  # [x1, y1, x2, y2]
    score: float
    landmarks: Optional[np.ndarray]  # (5, 2): eyes, nose, mouth corners


def select_providers() -> List[str]:
    """Prefer CUDA when present, always keep the CPU provider."""
    available = ort.get_available_providers()
    providers = []
    if "CUDAExecutionProvider" in available:
        providers.append("CUDAExecutionProvider")
    providers.append("CPUExecutionProvider")
    return providers


class SCRFDDetector:
    """SCRFD face detector (anchor-free, three FPN strides, two anchors per cell)."""

    STRIDES = (8, 16, 32)
    NUM_ANCHORS = 2

    def __init__(
        self,
        model_path: str,
        input_size: tuple = (640, 640),
        conf_threshold: float = 0.5,
        nms_threshold: float = 0.4,
    ):
        self.model_path = model_path
        self.input_size = input_size
        self.conf_threshold = conf_threshold
        self.nms_threshold = nms_threshold

        try:
            self._session = ort.InferenceSession(model_path, providers=select_providers())
        except Exception as e:
            raise ModelLoadError(f"Failed to load face detector from {model_path}: {e}") from e

        self._input_name = self._session.get_inputs()[0].name
        self._output_names = [o.name for o in self._session.get_outputs()]
        self._center_cache: dict = {}

        logger.info(f"Loaded SCRFD detector from {model_path} ({self._session.get_providers()})")

    def _preprocess(self, image: np.ndarray) -> tuple:
        """Letterbox into the input size. Returns (blob, scale)."""
        h, w = image.shape[:2]
        target_h, target_w = self.input_size
        scale = min(target_w / w, target_h / h)

        resized = cv2.resize(image, (int(w * scale), int(h * scale)))
        padded = cv2.copyMakeBorder(
            resized,
            0, target_h - resized.shape[0],
            0, target_w - resized.shape[1],
            cv2.BORDER_CONSTANT, value=(0, 0, 0),
        )
        blob = cv2.dnn.blobFromImage(
            padded, 1.0 / 128.0, (target_w, target_h),
            (127.5, 127.5, 127.5), swapRB=True,
        )
        return blob, scale

    def _anchor_centers(self, stride: int) -> np.ndarray:
        if stride not in self._center_cache:
            rows = self.input_size[0] // stride
            cols = self.input_size[1] // stride
            grid = np.stack(np.mgrid[:rows, :cols][::-1], axis=-1).astype(np.float32)
            centers = (grid * stride).reshape(-1, 2)
            centers = np.repeat(centers, self.NUM_ANCHORS, axis=0)
            self._center_cache[stride] = centers
        return self._center_cache[stride]

    def _decode(self, outputs: list, scale: float, frame_shape: tuple) -> List[RawFace]:
        n = len(self.STRIDES)
        has_kps = len(outputs) >= n * 3

        all_scores, all_boxes, all_kps = [], [], []
        for i, stride in enumerate(self.STRIDES):
            scores = outputs[i].reshape(-1)
            keep = np.where(scores >= self.conf_threshold)[0]
            if keep.size == 0:
                continue

            centers = self._anchor_centers(stride)[keep]
            dist = outputs[i + n].reshape(-1, 4)[keep] * stride
            boxes = np.concatenate([centers - dist[:, :2], centers + dist[:, 2:]], axis=1)

            all_scores.append(scores[keep])
            all_boxes.append(boxes)

            if has_kps:
                kps = outputs[i + 2 * n].reshape(-1, 5, 2)[keep] * stride
                all_kps.append(kps + centers[:, None, :])

        if not all_scores:
            return []

        scores = np.concatenate(all_scores)
        boxes = np.concatenate(all_boxes) / scale
        kps = np.concatenate(all_kps) / scale if all_kps else None

        h, w = frame_shape[:2]
        boxes[:, [0, 2]] = np.clip(boxes[:, [0, 2]], 0, w)
        boxes[:, [1, 3]] = np.clip(boxes[:, [1, 3]], 0, h)

        return [
            RawFace(
                bbox=boxes[i],
                score=float(scores[i]),
                landmarks=kps[i] if kps is not None else None,
            )
            for i in self._nms(boxes, scores)
        ]

    def _nms(self, boxes: np.ndarray, scores: np.ndarray) -> List[int]:
        """Greedy non-maximum suppression."""
        areas = (boxes[:, 2] - boxes[:, 0]) * (boxes[:, 3] - boxes[:, 1])
        order = scores.argsort()[::-1]

        keep = []
        while order.size > 0:
            best, rest = order[0], order[1:]
            keep.append(int(best))

            xx1 = np.maximum(boxes[best, 0], boxes[rest, 0])
            yy1 = np.maximum(boxes[best, 1], boxes[rest, 1])
            xx2 = np.minimum(boxes[best, 2], boxes[rest, 2])
            yy2 = np.minimum(boxes[best, 3], boxes[rest, 3])
            inter = np.maximum(0, xx2 - xx1) * np.maximum(0, yy2 - yy1)
            iou = inter / (areas[best] + areas[rest] - inter + 1e-9)

            order = rest[iou <= self.nms_threshold]

        return keep

    def detect(self, image: np.ndarray) -> List[RawFace]:
        """
        Detect faces in a BGR image.

        Raises:
            DetectionPassError: inference failed for this frame
        """
        blob, scale = self._preprocess(image)
        try:
            outputs = self._session.run(self._output_names, {self._input_name: blob})
        except Exception as e:
            raise DetectionPassError(f"Face detector inference failed: {e}") from e
        return self._decode(outputs, scale, image.shape)
