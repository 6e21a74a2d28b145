"""
Feature extractor contract and the built-in extractors.

An extractor turns one photo into one signal. OCR, object labels, face
descriptors and the neural embedding come from external models and are
plugged in by the host application; hashes, colors and a lightweight
image embedding are computed locally with OpenCV and ImageHash.

Extractors must degrade gracefully: "no text in the photo" is an empty
result with confidence 0, not an exception. Exceptions are reserved for
genuine failures and are caught by the builder.

A face extractor returns the descriptor of the most prominent face as its
signal and the detection confidence; a photo without a face is an empty
result. No face model ships with the package.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol

import cv2
import numpy as np

from .colors import extract_color_fingerprint, hue_saturation_histogram
from .features import EmbeddingResult, ExtractorResult, ENTITY_UNKNOWN
from .hashing import compute_hash_triplet
from .preprocessing import decode_image, normalize_image, extract_center_patch

logger = logging.getLogger(__name__)


class PhotoInput:
    """Raw photo bytes with a lazily decoded RGB array."""

    def __init__(self, data: bytes, array: Optional[np.ndarray] = None):
        self.data = data
        self._array = array
        self._decoded = array is not None

    @property
    def array(self) -> Optional[np.ndarray]:
        if not self._decoded:
            self._array = decode_image(self.data)
            self._decoded = True
        return self._array


class FeatureExtractor(Protocol):
    """Anything with a name and an extract(photo) -> ExtractorResult."""

    name: str

    def extract(self, photo: PhotoInput) -> ExtractorResult:
        ...


class HashExtractor:
    """Perceptual/average/difference hash triplet."""

    name = "hashes"

    def extract(self, photo: PhotoInput) -> ExtractorResult:
        image = photo.array
        if image is None:
            return ExtractorResult()
        return ExtractorResult(compute_hash_triplet(image), 1.0)


class ColorExtractor:
    """Dominant colors and hue/saturation histogram."""

    name = "colors"

    def extract(self, photo: PhotoInput) -> ExtractorResult:
        image = photo.array
        if image is None:
            return ExtractorResult()
        fingerprint = extract_color_fingerprint(image)
        if fingerprint.empty:
            return ExtractorResult()
        top_share = fingerprint.dominant_colors[0].percentage if fingerprint.dominant_colors else 0
        return ExtractorResult(fingerprint, min(1.0, top_share / 100.0 + 0.5))


class ThumbnailEmbeddingExtractor:
    """
    Model-free image embedding used when no neural model is configured.

    Concatenates a mean-centered 16x16 grayscale thumbnail with the
    hue/saturation histogram and L2-normalizes the result. Far weaker than
    a learned embedding, but deterministic and cheap, so the cascade and
    scorer have a vector to work with in tests and small deployments.
    Entity type is always unknown.
    """

    name = "embedding"
    THUMB_SIZE = 16

    def extract(self, photo: PhotoInput) -> ExtractorResult:
        image = photo.array
        if image is None:
            return ExtractorResult()

        patch = extract_center_patch(normalize_image(image))
        gray = cv2.cvtColor(patch, cv2.COLOR_RGB2GRAY)
        thumb = cv2.resize(gray, (self.THUMB_SIZE, self.THUMB_SIZE),
                           interpolation=cv2.INTER_AREA).astype(np.float32)
        thumb = (thumb - thumb.mean()).flatten()
        thumb_norm = np.linalg.norm(thumb)
        if thumb_norm > 0:
            thumb = thumb / thumb_norm

        vector = np.concatenate([thumb, hue_saturation_histogram(patch)])
        norm = np.linalg.norm(vector)
        if norm > 0:
            vector = vector / norm

        return ExtractorResult(
            EmbeddingResult(vector.astype(np.float32), ENTITY_UNKNOWN, 0.0), 0.5)


class NullExtractor:
    """Placeholder for a signal with no model configured."""

    def __init__(self, name: str):
        self.name = name

    def extract(self, photo: PhotoInput) -> ExtractorResult:
        return ExtractorResult()


@dataclass
class ExtractorSet:
    """The extractor plugged into each fingerprint slot."""

    hashes: FeatureExtractor
    colors: FeatureExtractor
    ocr: FeatureExtractor
    labels: FeatureExtractor
    embedding: FeatureExtractor
    face: FeatureExtractor = field(default_factory=lambda: NullExtractor("face"))

    @classmethod
    def default(cls, ocr: Optional[FeatureExtractor] = None,
                labels: Optional[FeatureExtractor] = None,
                embedding: Optional[FeatureExtractor] = None,
                face: Optional[FeatureExtractor] = None) -> "ExtractorSet":
        """Local extractors, with external models where provided."""
        return cls(
            hashes=HashExtractor(),
            colors=ColorExtractor(),
            ocr=ocr or NullExtractor("ocr"),
            labels=labels or NullExtractor("labels"),
            embedding=embedding or ThumbnailEmbeddingExtractor(),
            face=face or NullExtractor("face"),
        )
