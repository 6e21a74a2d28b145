"""
Fixed-shape records for per-photo signals.

Every extractor output has an explicit slot here. A signal that could not
be extracted is ``None`` (or an empty collection), so the scorer can treat
absence as a typed fact instead of probing loosely shaped dicts.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Optional, Tuple

import numpy as np

ENTITY_UNKNOWN = "unknown"
ENTITY_ITEM = "item"
ENTITY_PERSON = "person"

# Catch-all classes: they say nothing about what the object is
GENERIC_ENTITY_TYPES = frozenset({ENTITY_UNKNOWN, ENTITY_ITEM, "other"})

STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

QUALITY_POOR = "poor"
QUALITY_FAIR = "fair"
QUALITY_GOOD = "good"
QUALITY_EXCELLENT = "excellent"


def utcnow() -> datetime:
    """Naive UTC timestamp, the form SQLite hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class ExtractorResult:
    """Output contract of every feature extractor."""

    signal: Any = None
    confidence: float = 0.0

    @property
    def present(self) -> bool:
        if self.signal is None:
            return False
        if isinstance(self.signal, (str, list, tuple, set, frozenset, dict)):
            return len(self.signal) > 0
        if isinstance(self.signal, np.ndarray):
            return self.signal.size > 0
        return True


@dataclass(frozen=True)
class HashTriplet:
    """Hex-encoded perceptual, average and difference hashes."""

    perceptual: Optional[str] = None
    average: Optional[str] = None
    difference: Optional[str] = None

    def as_dict(self) -> Dict[str, Optional[str]]:
        return {
            "perceptual": self.perceptual,
            "average": self.average,
            "difference": self.difference,
        }

    @property
    def empty(self) -> bool:
        return not (self.perceptual or self.average or self.difference)


@dataclass(frozen=True)
class DominantColor:
    name: str
    abbreviation: str
    percentage: float


@dataclass(frozen=True)
class ColorFingerprint:
    """Dominant colors (most frequent first) and a hue/saturation histogram."""

    dominant_colors: Tuple[DominantColor, ...] = ()
    color_code: str = ""
    histogram: Optional[Tuple[float, ...]] = None

    @property
    def empty(self) -> bool:
        return not self.dominant_colors and not self.histogram

    def distribution(self) -> Dict[str, float]:
        """Dominant color shares normalized to sum 1."""
        total = sum(c.percentage for c in self.dominant_colors)
        if total <= 0:
            return {}
        return {c.name: c.percentage / total for c in self.dominant_colors}

    def as_dict(self) -> Dict[str, Any]:
        return {
            "dominant_colors": [
                {"name": c.name, "abbreviation": c.abbreviation,
                 "percentage": c.percentage}
                for c in self.dominant_colors
            ],
            "color_code": self.color_code,
            "histogram": list(self.histogram) if self.histogram else None,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["ColorFingerprint"]:
        if not data:
            return None
        colors = tuple(
            DominantColor(c["name"], c["abbreviation"], float(c["percentage"]))
            for c in data.get("dominant_colors") or []
        )
        histogram = data.get("histogram")
        return cls(
            dominant_colors=colors,
            color_code=data.get("color_code") or "",
            histogram=tuple(float(v) for v in histogram) if histogram else None,
        )


@dataclass(frozen=True)
class EmbeddingResult:
    """Neural extractor output: vector plus its entity classification."""

    vector: np.ndarray
    entity_type: str = ENTITY_UNKNOWN
    entity_confidence: float = 0.0


@dataclass(frozen=True, eq=False)
class VisualFingerprint:
    """Immutable per-photo visual DNA record."""

    id: str
    photo_id: str
    case_id: str
    processing_status: str = STATUS_PENDING
    entity_type: str = ENTITY_UNKNOWN
    entity_confidence: float = 0.0
    hash_triplet: Optional[HashTriplet] = None
    color_fingerprint: Optional[ColorFingerprint] = None
    ocr_text: Optional[str] = None
    detected_labels: FrozenSet[str] = frozenset()
    neural_embedding: Optional[np.ndarray] = None
    embedding_hash: Optional[str] = None
    face_embedding: Optional[np.ndarray] = None
    quality_score: float = 0.0
    quality_tier: str = QUALITY_POOR
    human_readable_id: Optional[str] = None
    case_category: Optional[str] = None
    image_width: Optional[int] = None
    image_height: Optional[int] = None
    processing_error: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def completed(self) -> bool:
        return self.processing_status == STATUS_COMPLETED

    @property
    def has_embedding(self) -> bool:
        return self.neural_embedding is not None and self.neural_embedding.size > 0

    @property
    def has_face(self) -> bool:
        return self.face_embedding is not None and self.face_embedding.size > 0

    @property
    def has_hashes(self) -> bool:
        return self.hash_triplet is not None and not self.hash_triplet.empty


@dataclass
class ExtractedSignals:
    """Mutable scratch record filled in by the builder, one slot per extractor."""

    hash_triplet: Optional[HashTriplet] = None
    color_fingerprint: Optional[ColorFingerprint] = None
    ocr_text: Optional[str] = None
    ocr_confidence: float = 0.0
    detected_labels: FrozenSet[str] = frozenset()
    labels_confidence: float = 0.0
    embedding: Optional[EmbeddingResult] = None
    face_embedding: Optional[np.ndarray] = None
    face_confidence: float = 0.0
    failures: Dict[str, str] = field(default_factory=dict)
