"""
Fingerprint builder: turns one uploaded photo into a VisualFingerprint.

Each extractor runs independently. A failing or empty extractor leaves its
slot absent and the fingerprint still completes; the build only fails when
both core signals (hash triplet and embedding) are missing, which in
practice means the image could not be read at all.

The human-readable id has the form

    ENT-COL.COL-SHAPE-<embedding hash>-<phash>-Q<quality>

e.g. ``BAG-BLU.BLK-HORZ-7f3a91c2-c4d2a1b0-Q85``. It is for debugging and
search only, never a key.
"""

import uuid
import hashlib
import logging
from typing import Iterable, Optional, Tuple

import numpy as np

from .config import ENTITY_CONFIDENCE_FLOOR
from .errors import ExtractionFailure, FingerprintBuildFailure
from .extractors import ExtractorSet, FeatureExtractor, PhotoInput
from .features import (
    ColorFingerprint, EmbeddingResult, ExtractedSignals, ExtractorResult,
    HashTriplet, VisualFingerprint, ENTITY_ITEM, ENTITY_PERSON, ENTITY_UNKNOWN,
    STATUS_COMPLETED, STATUS_FAILED, QUALITY_EXCELLENT, QUALITY_FAIR, QUALITY_GOOD,
    QUALITY_POOR, utcnow,
)
from .hashing import hash_prefix
from .ocr_text import extract_identifiers
from .preprocessing import compute_quality_score

logger = logging.getLogger(__name__)

ENTITY_ABBREVIATIONS = {
    "pet": "PET",
    "person": "PER",
    "vehicle": "VEH",
    "document": "DOC",
    "electronics": "ELC",
    "jewelry": "JWL",
    "bag": "BAG",
    "item": "ITM",
    "unknown": "UNK",
}

# Keyword fallback when the embedding model gives no confident class.
# Order matters: the first group with a hit wins.
ENTITY_KEYWORDS = (
    ("pet", {"dog", "cat", "bird", "horse", "rabbit", "puppy", "kitten", "pet"}, 0.85),
    ("vehicle", {"car", "motorcycle", "bus", "truck", "bicycle", "scooter"}, 0.85),
    ("electronics", {"phone", "cell phone", "laptop", "tablet", "headphones",
                     "earbuds", "camera", "watch", "keyboard", "remote"}, 0.75),
    ("jewelry", {"ring", "necklace", "bracelet", "earring", "jewelry", "pendant"}, 0.75),
    ("bag", {"wallet", "purse", "handbag", "backpack", "bag", "suitcase"}, 0.75),
    ("document", {"book", "passport", "id card", "card", "document", "paper"}, 0.7),
)

SHAPE_HORIZONTAL = "HORZ"
SHAPE_VERTICAL = "VERT"
SHAPE_SQUARE = "SQR"
SHAPE_UNKNOWN = "UNK"


def quality_tier(score: float) -> str:
    if score >= 80:
        return QUALITY_EXCELLENT
    if score >= 60:
        return QUALITY_GOOD
    if score >= 40:
        return QUALITY_FAIR
    return QUALITY_POOR


def shape_code(width: Optional[int], height: Optional[int]) -> str:
    """Orientation code from the aspect ratio."""
    if not width or not height:
        return SHAPE_UNKNOWN
    aspect = width / height
    if aspect > 1.3:
        return SHAPE_HORIZONTAL
    if aspect < 0.77:
        return SHAPE_VERTICAL
    return SHAPE_SQUARE


def embedding_hash(vector: np.ndarray) -> str:
    """Short stable digest of an embedding, for bucketing and ids."""
    rounded = np.round(np.asarray(vector, dtype=np.float32), 4)
    return hashlib.sha1(rounded.tobytes()).hexdigest()[:16]


def classify_entity(embedding: Optional[EmbeddingResult],
                    labels: Iterable[str],
                    ocr_text: Optional[str],
                    floor: float = ENTITY_CONFIDENCE_FLOOR,
                    face_confidence: float = 0.0) -> Tuple[str, float]:
    """
    Decide the entity type of a photo.

    A detected face makes the photo a person. Otherwise the embedding
    model's class wins when it is confident, then the detected labels are
    matched against keyword groups, and a photo whose only signal is text
    with identifiers is treated as a document. Labels matching no group
    give the generic "item" class.
    """
    if face_confidence > 0 and face_confidence >= floor:
        return ENTITY_PERSON, float(face_confidence)
    if (embedding is not None and embedding.entity_type != ENTITY_UNKNOWN
            and embedding.entity_confidence >= floor):
        return embedding.entity_type, float(embedding.entity_confidence)

    labels = {label.lower() for label in labels}
    for entity_type, keywords, confidence in ENTITY_KEYWORDS:
        if labels & keywords:
            return entity_type, confidence

    if labels:
        return ENTITY_ITEM, 0.6
    if ocr_text and len(ocr_text) > 50 and extract_identifiers(ocr_text):
        return "document", 0.6
    if embedding is not None and embedding.entity_type != ENTITY_UNKNOWN:
        return embedding.entity_type, float(embedding.entity_confidence)
    return ENTITY_UNKNOWN, 0.0


def build_human_readable_id(entity_type: str,
                            colors: Optional[ColorFingerprint],
                            width: Optional[int], height: Optional[int],
                            emb_hash: Optional[str],
                            hashes: Optional[HashTriplet],
                            quality: float) -> str:
    entity_code = ENTITY_ABBREVIATIONS.get(entity_type, entity_type[:3].upper() or "UNK")
    color_code = colors.color_code if colors and colors.color_code else "UNK"
    neural = emb_hash[:8] if emb_hash else "noml0000"
    return (f"{entity_code}-{color_code}-{shape_code(width, height)}-"
            f"{neural}-{hash_prefix(hashes)}-Q{int(round(quality))}")


class FingerprintBuilder:
    """
    Runs the extractors for a photo and assembles its VisualFingerprint.

    Args:
        extractors: Extractor per signal slot. Defaults to the local
            extractors with no OCR or label model.
        store: Optional object with ``save_fingerprint(fp)``; when given,
            every built fingerprint (completed or failed) is persisted.
    """

    def __init__(self, extractors: Optional[ExtractorSet] = None, store=None):
        self.extractors = extractors or ExtractorSet.default()
        self.store = store

    def build(self, photo_id: str, case_id: str, image_bytes: bytes,
              case_category: Optional[str] = None,
              fingerprint_id: Optional[str] = None) -> VisualFingerprint:
        """
        Build (and optionally persist) the fingerprint of one photo.

        Never raises for bad input: an unreadable image yields a record
        with processing_status "failed" and the reason in processing_error.
        """
        fingerprint_id = fingerprint_id or str(uuid.uuid4())
        photo = PhotoInput(image_bytes)

        try:
            fingerprint = self._assemble(fingerprint_id, photo_id, case_id,
                                         photo, case_category)
        except FingerprintBuildFailure as e:
            logger.error(f"Fingerprint build failed for photo {photo_id}: {e}")
            fingerprint = VisualFingerprint(
                id=fingerprint_id,
                photo_id=photo_id,
                case_id=case_id,
                processing_status=STATUS_FAILED,
                processing_error=str(e),
                case_category=case_category,
                created_at=utcnow(),
            )

        if self.store is not None:
            fingerprint = self.store.save_fingerprint(fingerprint)
        return fingerprint

    def _run(self, extractor: FeatureExtractor, photo: PhotoInput,
             signals: ExtractedSignals) -> ExtractorResult:
        try:
            return extractor.extract(photo)
        except Exception as e:
            failure = ExtractionFailure(extractor.name, str(e) or type(e).__name__)
            logger.warning(f"Extractor failed, signal recorded as absent: {failure}")
            signals.failures[extractor.name] = str(failure)
            return ExtractorResult()

    def _extract_all(self, photo: PhotoInput) -> ExtractedSignals:
        signals = ExtractedSignals()
        ex = self.extractors

        result = self._run(ex.hashes, photo, signals)
        if result.present and isinstance(result.signal, HashTriplet) \
                and not result.signal.empty:
            signals.hash_triplet = result.signal

        result = self._run(ex.colors, photo, signals)
        if result.present and isinstance(result.signal, ColorFingerprint):
            signals.color_fingerprint = result.signal

        result = self._run(ex.ocr, photo, signals)
        if result.present:
            signals.ocr_text = str(result.signal).strip() or None
            signals.ocr_confidence = result.confidence

        result = self._run(ex.labels, photo, signals)
        if result.present:
            signals.detected_labels = frozenset(
                str(label).strip().lower() for label in result.signal if str(label).strip())
            signals.labels_confidence = result.confidence

        result = self._run(ex.embedding, photo, signals)
        if result.present:
            signals.embedding = self._validated_embedding(result.signal, signals)

        result = self._run(ex.face, photo, signals)
        if result.present:
            vector = np.asarray(result.signal, dtype=np.float32).ravel()
            if vector.size and np.all(np.isfinite(vector)) and np.any(vector):
                signals.face_embedding = vector
                signals.face_confidence = result.confidence
            else:
                failure = ExtractionFailure("face", "empty or non-finite descriptor")
                logger.warning(f"Discarding face descriptor: {failure}")
                signals.failures["face"] = str(failure)

        return signals

    def _validated_embedding(self, signal, signals: ExtractedSignals
                             ) -> Optional[EmbeddingResult]:
        if not isinstance(signal, EmbeddingResult):
            signal = EmbeddingResult(np.asarray(signal, dtype=np.float32))
        vector = np.asarray(signal.vector, dtype=np.float32).ravel()
        if vector.size == 0 or not np.all(np.isfinite(vector)) or not np.any(vector):
            failure = ExtractionFailure("embedding", "empty or non-finite vector")
            logger.warning(f"Discarding embedding: {failure}")
            signals.failures["embedding"] = str(failure)
            return None
        return EmbeddingResult(vector, signal.entity_type, signal.entity_confidence)

    def _assemble(self, fingerprint_id: str, photo_id: str, case_id: str,
                  photo: PhotoInput, case_category: Optional[str]) -> VisualFingerprint:
        signals = self._extract_all(photo)

        if signals.hash_triplet is None and signals.embedding is None:
            reason = "image unreadable" if photo.array is None else "no core signal"
            details = "; ".join(f"{k}: {v}" for k, v in sorted(signals.failures.items()))
            raise FingerprintBuildFailure(f"{reason}{' (' + details + ')' if details else ''}")

        image = photo.array
        width = height = None
        quality = 0.0
        if image is not None:
            height, width = image.shape[:2]
            confidences = [c for c in (signals.ocr_confidence, signals.labels_confidence,
                                              signals.face_confidence)
                           if c > 0]
            if signals.embedding is not None and signals.embedding.entity_confidence > 0:
                confidences.append(signals.embedding.entity_confidence)
            quality = compute_quality_score(image, confidences)

        entity_type, entity_confidence = classify_entity(
            signals.embedding, signals.detected_labels, signals.ocr_text,
            face_confidence=signals.face_confidence)

        vector = signals.embedding.vector if signals.embedding is not None else None
        emb_hash = embedding_hash(vector) if vector is not None else None

        fingerprint = VisualFingerprint(
            id=fingerprint_id,
            photo_id=photo_id,
            case_id=case_id,
            processing_status=STATUS_COMPLETED,
            entity_type=entity_type,
            entity_confidence=entity_confidence,
            hash_triplet=signals.hash_triplet,
            color_fingerprint=signals.color_fingerprint,
            ocr_text=signals.ocr_text,
            detected_labels=signals.detected_labels,
            neural_embedding=vector,
            embedding_hash=emb_hash,
            face_embedding=signals.face_embedding,
            quality_score=quality,
            quality_tier=quality_tier(quality),
            human_readable_id=build_human_readable_id(
                entity_type, signals.color_fingerprint, width, height,
                emb_hash, signals.hash_triplet, quality),
            case_category=case_category,
            image_width=width,
            image_height=height,
            processing_error="; ".join(signals.failures.values()) or None,
            created_at=utcnow(),
        )

        logger.info(
            f"Fingerprint {fingerprint.human_readable_id} built for photo {photo_id} "
            f"({len(signals.failures)} extractor failures)"
        )
        return fingerprint
