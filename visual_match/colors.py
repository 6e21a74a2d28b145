"""
Dominant-color fingerprints and color similarity.

Each pixel of the central patch is classified into a named color from its
HSV value; the most frequent names form the dominant palette. A coarse
Hue x Saturation histogram (CLAHE-equalized V channel) is kept alongside
for a finer comparison.

Named colors tolerate lighting changes well: a blue wallet shot in a dim
room is still mostly "blue" or "navy", even though its raw saturation
differs from the studio photo.
"""

import os
import logging
from typing import Dict, Optional

import cv2
import numpy as np

from .features import ColorFingerprint, DominantColor
from .preprocessing import normalize_image, extract_center_patch

logger = logging.getLogger(__name__)

H_BINS = int(os.environ.get("HSV_H_BINS", "8"))
S_BINS = int(os.environ.get("HSV_S_BINS", "8"))
HIST_DIM = H_BINS * S_BINS

MAX_DOMINANT_COLORS = 5
# Colors covering less than this share of the patch are ignored
MIN_COLOR_SHARE = 3.0

COLOR_ABBREVIATIONS = {
    "red": "RED", "orange": "ORG", "yellow": "YEL", "lime": "LIM",
    "green": "GRN", "cyan": "CYN", "blue": "BLU", "purple": "PUR",
    "pink": "PNK", "brown": "BRN", "black": "BLK", "white": "WHT",
    "gray": "GRY", "gold": "GLD", "silver": "SLV", "beige": "BGE",
    "maroon": "MRN", "navy": "NVY", "teal": "TEL", "olive": "OLV",
}

# Hue boundaries on the OpenCV 0-180 scale
_HUE_NAMES = (
    (5, "red"), (18, "orange"), (33, "yellow"), (45, "lime"),
    (78, "green"), (95, "cyan"), (130, "blue"), (150, "purple"),
    (170, "pink"), (181, "red"),
)


def classify_color(h: float, s: float, v: float) -> str:
    """
    Name one HSV color (OpenCV scales: H 0-180, S and V 0-255).
    """
    if v < 45:
        return "black"
    if s < 35:
        if v > 200:
            return "white"
        if v > 150:
            return "silver"
        return "gray"

    # Dark or washed-out warm hues read as brown/beige, not orange
    if 5 <= h < 25:
        if v < 150:
            return "brown"
        if s < 90:
            return "beige"
    if 18 <= h < 33 and v < 170 and s > 90:
        return "gold" if v > 110 else "olive"
    if 95 <= h < 130 and v < 110:
        return "navy"
    if 78 <= h < 95 and v < 130:
        return "teal"
    if (h < 5 or h >= 170) and v < 110:
        return "maroon"

    for upper, name in _HUE_NAMES:
        if h < upper:
            return name
    return "red"


def extract_color_fingerprint(image_np: np.ndarray) -> ColorFingerprint:
    """
    Build the color fingerprint of a photo.

    Args:
        image_np: RGB uint8 image.

    Returns:
        ColorFingerprint with up to MAX_DOMINANT_COLORS named colors,
        a two-color code (e.g. "BLU.BLK") and an L2-normalized histogram.
    """
    image_np = normalize_image(image_np)
    patch = extract_center_patch(image_np)

    # Classify a downsampled copy; per-pixel naming is the slow part
    small = cv2.resize(patch, (64, 64), interpolation=cv2.INTER_AREA)
    hsv_small = cv2.cvtColor(small, cv2.COLOR_RGB2HSV).reshape(-1, 3)

    counts: Dict[str, int] = {}
    for h, s, v in hsv_small:
        name = classify_color(float(h), float(s), float(v))
        counts[name] = counts.get(name, 0) + 1

    pixel_count = len(hsv_small)
    ranked = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
    dominant = []
    for name, count in ranked[:MAX_DOMINANT_COLORS]:
        share = round(100.0 * count / pixel_count, 1)
        if share < MIN_COLOR_SHARE:
            continue
        dominant.append(DominantColor(
            name=name,
            abbreviation=COLOR_ABBREVIATIONS.get(name, name[:3].upper()),
            percentage=share,
        ))

    color_code = ".".join(c.abbreviation for c in dominant[:2])
    histogram = hue_saturation_histogram(patch)

    return ColorFingerprint(
        dominant_colors=tuple(dominant),
        color_code=color_code,
        histogram=tuple(float(x) for x in histogram),
    )


def hue_saturation_histogram(patch: np.ndarray) -> np.ndarray:
    """L2-normalized H x S histogram with CLAHE on the V channel."""
    hsv = cv2.cvtColor(patch, cv2.COLOR_RGB2HSV)

    # CLAHE equalization on V channel for lighting normalization
    h_ch, s_ch, v_ch = cv2.split(hsv)
    clahe = cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8))
    hsv = cv2.merge((h_ch, s_ch, clahe.apply(v_ch)))

    hist = cv2.calcHist([hsv], [0, 1], None,
                        [H_BINS, S_BINS], [0, 180, 0, 256])
    hist_flat = hist.flatten().astype(np.float32)
    norm = np.linalg.norm(hist_flat)
    if norm > 0:
        hist_flat = hist_flat / norm
    return hist_flat


def color_similarity(a: Optional[ColorFingerprint],
                     b: Optional[ColorFingerprint]) -> Optional[float]:
    """
    Histogram intersection between two color fingerprints.

    The dominant-color distributions are intersected (sum of per-color
    minimum shares). When both sides also carry a hue/saturation
    histogram, its intersection over L1-normalized bins is averaged in.

    Returns:
        Score in 0-100, or None if either side has no color data.
    """
    if a is None or b is None or a.empty or b.empty:
        return None

    parts = []

    dist_a, dist_b = a.distribution(), b.distribution()
    if dist_a and dist_b:
        shared = set(dist_a) & set(dist_b)
        parts.append(sum(min(dist_a[c], dist_b[c]) for c in sorted(shared)))

    if a.histogram and b.histogram and len(a.histogram) == len(b.histogram):
        hist_a = np.asarray(a.histogram, dtype=np.float64)
        hist_b = np.asarray(b.histogram, dtype=np.float64)
        sum_a, sum_b = hist_a.sum(), hist_b.sum()
        if sum_a > 0 and sum_b > 0:
            parts.append(float(np.minimum(hist_a / sum_a, hist_b / sum_b).sum()))

    if not parts:
        return None
    return 100.0 * float(np.mean(parts))


def shared_colors(a: Optional[ColorFingerprint],
                  b: Optional[ColorFingerprint]) -> list:
    """Names of dominant colors present in both fingerprints."""
    if a is None or b is None:
        return []
    names_a = {c.name for c in a.dominant_colors}
    return sorted(names_a & {c.name for c in b.dominant_colors})
