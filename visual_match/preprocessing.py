"""
Image decoding and quality assessment for fingerprinting.

Uploaded photos arrive as raw bytes of unknown provenance: studio shots,
dim phone snapshots, screenshots. Everything downstream expects an RGB
uint8 array, and the quality score decides how much the fingerprint can
be trusted.
"""

import os
import logging
from typing import Iterable, Optional

import cv2
import numpy as np

logger = logging.getLogger(__name__)

# Laplacian variance at or above which an image counts as fully sharp
SHARPNESS_REFERENCE = float(os.environ.get("QUALITY_SHARPNESS_REF", "300"))
# Pixel count at or above which resolution stops adding to quality (~1MP)
RESOLUTION_REFERENCE = float(os.environ.get("QUALITY_RESOLUTION_REF", "1000000"))

# Quality score blend: sharpness, resolution, extractor confidence
QUALITY_WEIGHTS = (0.45, 0.30, 0.25)


def decode_image(image_bytes: bytes) -> Optional[np.ndarray]:
    """
    Decode raw image bytes into an RGB uint8 array.

    Returns:
        RGB image, or None if the bytes are not a readable image.
    """
    if not image_bytes:
        return None
    buffer = np.frombuffer(image_bytes, dtype=np.uint8)
    image = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
    if image is None:
        logger.warning(f"Could not decode image ({len(image_bytes)} bytes)")
        return None
    return cv2.cvtColor(image, cv2.COLOR_BGR2RGB)


def normalize_image(image_np: np.ndarray) -> np.ndarray:
    """Ensure image is uint8 RGB format."""
    if image_np.dtype != np.uint8:
        if image_np.max() <= 1.0:
            image_np = (image_np * 255).astype(np.uint8)
        else:
            image_np = np.clip(image_np, 0, 255).astype(np.uint8)
    if image_np.ndim == 2:
        image_np = cv2.cvtColor(image_np, cv2.COLOR_GRAY2RGB)
    return image_np


def extract_center_patch(image_np: np.ndarray, fraction: float = 0.8) -> np.ndarray:
    """
    Crop the central region of the photo.

    Lost-item photos usually frame the object in the middle; trimming the
    border drops most of the table, floor or hand it was shot against.

    Args:
        image_np: RGB uint8 image.
        fraction: Side length of the patch relative to the image.

    Returns:
        Cropped image patch (the whole image if it is tiny).
    """
    h, w = image_np.shape[:2]
    ph, pw = max(1, int(h * fraction)), max(1, int(w * fraction))
    if ph < 16 or pw < 16:
        return image_np
    y1 = (h - ph) // 2
    x1 = (w - pw) // 2
    return image_np[y1:y1 + ph, x1:x1 + pw]


def estimate_sharpness(image_np: np.ndarray) -> float:
    """Variance of the Laplacian; low values mean a blurry photo."""
    image_np = normalize_image(image_np)
    gray = cv2.cvtColor(image_np, cv2.COLOR_RGB2GRAY)
    return float(cv2.Laplacian(gray, cv2.CV_64F).var())


def compute_quality_score(image_np: np.ndarray,
                          confidences: Iterable[float] = ()) -> float:
    """
    Score photo quality from resolution, blur and extractor confidence.

    Each factor is mapped to 0-1 and blended with QUALITY_WEIGHTS.
    Extractors that did not run contribute nothing to the confidence
    average; with no confidences at all the factor defaults to 0.5.

    Args:
        image_np: RGB uint8 image.
        confidences: Confidence values (0-1) reported by the extractors.

    Returns:
        Quality score in 0-100, rounded to one decimal.
    """
    h, w = image_np.shape[:2]
    resolution = min(1.0, (h * w) / RESOLUTION_REFERENCE)
    sharpness = min(1.0, estimate_sharpness(image_np) / SHARPNESS_REFERENCE)

    confidences = [min(1.0, max(0.0, c)) for c in confidences]
    confidence = float(np.mean(confidences)) if confidences else 0.5

    w_sharp, w_res, w_conf = QUALITY_WEIGHTS
    score = 100 * (w_sharp * sharpness + w_res * resolution + w_conf * confidence)
    return round(float(score), 1)
