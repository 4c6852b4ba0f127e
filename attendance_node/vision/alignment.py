"""
Face alignment for the embedding model.
Warps a detected face onto the canonical 5-point template.
"""

from typing import Optional

import cv2
import numpy as np


# Canonical landmark positions for a 112x112 crop
FACE_TEMPLATE = np.array(
    [
        [38.2946, 51.6963],  # left eye
        [73.5318, 51.5014],  # right eye
        [56.0252, 71.7366],  # nose tip
        [41.5493, 92.3655],  # left mouth corner
        [70.7299, 92.2041],  # right mouth corner
    ],
    dtype=np.float32,
)

TEMPLATE_SIZE = (112, 112)


def similarity_transform(src: np.ndarray, dst: np.ndarray) -> np.ndarray:
    """
    Least-squares similarity transform (Umeyama) mapping src points onto dst.

    Returns:
        2x3 affine matrix
    """
    n = src.shape[0]
    src_mean = src.mean(axis=0)
    dst_mean = dst.mean(axis=0)
    src_c = src - src_mean
    dst_c = dst - dst_mean

    cov = (dst_c.T @ src_c) / n
    U, S, Vt = np.linalg.svd(cov)

    d = np.ones(2)
    if np.linalg.det(U @ Vt) < 0:
        d[1] = -1.0
    R = U @ np.diag(d) @ Vt

    scale = float(np.sum(S * d) / ((src_c ** 2).sum() / n))
    t = dst_mean - scale * (R @ src_mean)

    M = np.zeros((2, 3), dtype=np.float32)
    M[:, :2] = scale * R
    M[:, 2] = t
    return M


def align_face(
    image: np.ndarray,
    landmarks: Optional[np.ndarray],
    size: tuple = TEMPLATE_SIZE,
) -> Optional[np.ndarray]:
    """Warp the face to the template. None when landmarks are missing."""
    if landmarks is None or len(landmarks) < 5:
        return None

    src = np.asarray(landmarks[:5], dtype=np.float32).reshape(5, 2)
    template = FACE_TEMPLATE * (np.array(size, dtype=np.float32) / np.array(TEMPLATE_SIZE, dtype=np.float32))
    M = similarity_transform(src, template)
    return cv2.warpAffine(
        image, M, size,
        flags=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=(0, 0, 0),
    )


def crop_face(image: np.ndarray, bbox, size: tuple = TEMPLATE_SIZE) -> Optional[np.ndarray]:
    """Plain bbox crop resized to the model input. None for an empty box."""
    h, w = image.shape[:2]
    x1, y1 = max(0, int(bbox[0])), max(0, int(bbox[1]))
    x2, y2 = min(w, int(bbox[2])), min(h, int(bbox[3]))
    if x2 <= x1 or y2 <= y1:
        return None
    return cv2.resize(image[y1:y2, x1:x2], size)


def prepare_face(image: np.ndarray, bbox, landmarks, size: tuple = TEMPLATE_SIZE) -> Optional[np.ndarray]:
    """Aligned crop when landmarks exist, bbox crop otherwise."""
    aligned = align_face(image, landmarks, size)
    if aligned is not None:
        return aligned
    return crop_face(image, bbox, size)
