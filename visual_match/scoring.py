"""
Pairwise multi-signal scoring of two visual fingerprints.

Seven independent components, each 0-100:
    hash      Hamming similarity over the perceptual/average/difference hashes
    color     dominant-color and hue/saturation histogram intersection
    ocr       token overlap, lifted by shared serial numbers / card digits
    neural    embedding cosine similarity rescaled from [-1, 1]
    face      face descriptor cosine, negative similarity clipped to 0
    entity    100 if both photos confidently classify to the same specific
              entity type, else 0; absent for catch-all classes ("item")
    category  100 if both cases were filed under the same category, else 0

A component is *absent* (None) when either side lacks the signal. The
overall score is the weighted sum of the present components with the
weights renormalized over them, so a pair is never penalized for a
signal that structurally does not exist (no text on a dog photo).

Every function here is pure: the same fingerprints and the same weight
profile always give the same score, in either argument order.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Tuple

import numpy as np

from .colors import color_similarity, shared_colors
from .config import (
    ENTITY_CONFIDENCE_FLOOR, OCR_IDENTIFIER_FLOOR, MatchThresholds, ThresholdConfig,
)
from .errors import ScoringRefused
from .features import VisualFingerprint, GENERIC_ENTITY_TYPES
from .hashing import triplet_similarity
from .ocr_text import ocr_similarity, shared_identifiers, shared_tokens
from .weights import COMPONENTS, GLOBAL_PROFILE, WeightProfile, WeightProfileProvider

logger = logging.getLogger(__name__)

MATCH_HIGH_CONFIDENCE = "high_confidence"
MATCH_PROBABLE = "probable"
MATCH_POSSIBLE = "possible"

# Component levels at which a signal is worth listing as a match reason
VISUAL_REASON_MIN = 80.0
NEURAL_REASON_MIN = 90.0
FACE_REASON_MIN = 50.0


@dataclass(frozen=True)
class ComponentScores:
    """Per-signal similarity, None where the signal is absent on either side."""

    hash: Optional[float] = None
    color: Optional[float] = None
    ocr: Optional[float] = None
    neural: Optional[float] = None
    entity: Optional[float] = None
    category: Optional[float] = None
    face: Optional[float] = None

    def as_dict(self) -> Dict[str, Optional[float]]:
        return {c: getattr(self, c) for c in COMPONENTS}

    @property
    def available(self) -> List[str]:
        return [c for c in COMPONENTS if getattr(self, c) is not None]

    @property
    def entity_match(self) -> bool:
        return self.entity is not None and self.entity >= 100.0

    @property
    def category_match(self) -> Optional[bool]:
        return None if self.category is None else self.category >= 100.0


@dataclass(frozen=True)
class PairScore:
    """Result of scoring one candidate pair."""

    source_id: str
    target_id: str
    components: ComponentScores
    overall: float
    match_type: Optional[str]
    profile: WeightProfile
    thresholds: MatchThresholds
    reasons: Tuple[Dict[str, str], ...] = field(default_factory=tuple)

    @property
    def qualifies(self) -> bool:
        return self.match_type is not None


def _cosine(a: Optional[np.ndarray], b: Optional[np.ndarray]) -> Optional[float]:
    if a is None or b is None or a.size == 0 or a.shape != b.shape:
        return None
    norm = float(np.linalg.norm(a)) * float(np.linalg.norm(b))
    if norm == 0:
        return None
    cosine = float(np.dot(a.astype(np.float64), b.astype(np.float64))) / norm
    return min(1.0, max(-1.0, cosine))


def neural_similarity(a: Optional[np.ndarray], b: Optional[np.ndarray]) -> Optional[float]:
    """Cosine similarity rescaled from [-1, 1] to [0, 100]."""
    cosine = _cosine(a, b)
    return None if cosine is None else (cosine + 1.0) * 50.0


def face_similarity(a: Optional[np.ndarray], b: Optional[np.ndarray]) -> Optional[float]:
    """Face descriptor cosine as a percentage; unrelated faces score 0."""
    cosine = _cosine(a, b)
    return None if cosine is None else max(0.0, cosine) * 100.0


def entity_is_confident(fp: VisualFingerprint,
                        floor: float = ENTITY_CONFIDENCE_FLOOR) -> bool:
    """A specific entity class at or above the floor; catch-all classes never are."""
    return fp.entity_type not in GENERIC_ENTITY_TYPES and fp.entity_confidence >= floor


def entity_component(a: VisualFingerprint, b: VisualFingerprint,
                     floor: float = ENTITY_CONFIDENCE_FLOOR) -> Optional[float]:
    """100/0 when both classifications are confident, None if either is ambiguous."""
    if not (entity_is_confident(a, floor) and entity_is_confident(b, floor)):
        return None
    return 100.0 if a.entity_type == b.entity_type else 0.0


def category_component(a: VisualFingerprint, b: VisualFingerprint) -> Optional[float]:
    if not a.case_category or not b.case_category:
        return None
    return 100.0 if a.case_category.lower() == b.case_category.lower() else 0.0


def compute_components(a: VisualFingerprint, b: VisualFingerprint,
                       entity_floor: float = ENTITY_CONFIDENCE_FLOOR,
                       identifier_floor: float = OCR_IDENTIFIER_FLOOR
                       ) -> ComponentScores:
    return ComponentScores(
        hash=triplet_similarity(a.hash_triplet, b.hash_triplet),
        color=color_similarity(a.color_fingerprint, b.color_fingerprint),
        ocr=ocr_similarity(a.ocr_text, b.ocr_text, identifier_floor),
        neural=neural_similarity(a.neural_embedding, b.neural_embedding),
        entity=entity_component(a, b, entity_floor),
        category=category_component(a, b),
        face=face_similarity(a.face_embedding, b.face_embedding),
    )


def combine_components(components: Mapping[str, Optional[float]],
                       weights: Mapping[str, float]) -> Optional[float]:
    """
    Weighted sum over the present components, weights renormalized.

    Args:
        components: component -> score (0-100) or None when absent.
        weights: component -> weight; need not sum to 1.

    Returns:
        Overall score in 0-100, or None if no present component carries
        any weight.
    """
    total_weight = 0.0
    weighted = 0.0
    for component in COMPONENTS:
        value = components.get(component)
        weight = float(weights.get(component, 0.0))
        if value is None or weight <= 0:
            continue
        weighted += weight * float(value)
        total_weight += weight
    if total_weight == 0:
        return None
    return max(0.0, min(100.0, weighted / total_weight))


def classify_match(overall: float, thresholds: MatchThresholds) -> Optional[str]:
    """Tier label for an overall score, None below the minimum."""
    if overall >= thresholds.high_confidence:
        return MATCH_HIGH_CONFIDENCE
    if overall >= thresholds.probable:
        return MATCH_PROBABLE
    if overall >= thresholds.min_match:
        return MATCH_POSSIBLE
    return None


def explain_match(a: VisualFingerprint, b: VisualFingerprint,
                  components: ComponentScores) -> Tuple[Dict[str, str], ...]:
    """Structured list of why two photos were matched, strongest evidence first."""
    reasons = []
    for identifier in shared_identifiers(a.ocr_text, b.ocr_text):
        reasons.append({"type": "identifier", "value": identifier})
    identifiers = {r["value"].lower() for r in reasons}
    for token in shared_tokens(a.ocr_text, b.ocr_text):
        if token not in identifiers:
            reasons.append({"type": "ocr_token", "value": token})
    for label in sorted(a.detected_labels & b.detected_labels):
        reasons.append({"type": "label", "value": label})
    if components.entity_match:
        reasons.append({"type": "entity", "value": a.entity_type})
    for color in shared_colors(a.color_fingerprint, b.color_fingerprint):
        reasons.append({"type": "color", "value": color})
    if components.hash is not None and components.hash >= VISUAL_REASON_MIN:
        reasons.append({"type": "visual", "value": f"hash:{components.hash:.0f}"})
    if components.neural is not None and components.neural >= NEURAL_REASON_MIN:
        reasons.append({"type": "neural", "value": f"neural:{components.neural:.0f}"})
    if components.face is not None and components.face >= FACE_REASON_MIN:
        reasons.append({"type": "face", "value": f"face:{components.face:.0f}"})
    return tuple(reasons)


def _check_scorable(fp: VisualFingerprint) -> None:
    if not fp.completed:
        raise ScoringRefused(
            f"Fingerprint {fp.id} (photo {fp.photo_id}) is {fp.processing_status}, "
            f"not completed")


def score_pair(a: VisualFingerprint, b: VisualFingerprint,
               profile: WeightProfile,
               thresholds: Optional[MatchThresholds] = None,
               entity_floor: float = ENTITY_CONFIDENCE_FLOOR,
               identifier_floor: float = OCR_IDENTIFIER_FLOOR) -> PairScore:
    """
    Score two completed fingerprints with an explicit weight profile.

    Raises:
        ScoringRefused: Either fingerprint is not completed, or the pair
            shares no signal to compare. A refused pair never gets a score.
    """
    _check_scorable(a)
    _check_scorable(b)
    thresholds = thresholds or MatchThresholds()

    components = compute_components(a, b, entity_floor, identifier_floor)
    overall = combine_components(components.as_dict(), profile.weights)
    if overall is None:
        raise ScoringRefused(
            f"No shared signal between fingerprints {a.id} and {b.id}")

    overall = round(overall, 2)
    return PairScore(
        source_id=a.id,
        target_id=b.id,
        components=components,
        overall=overall,
        match_type=classify_match(overall, thresholds),
        profile=profile,
        thresholds=thresholds,
        reasons=explain_match(a, b, components),
    )


def profile_key(a: VisualFingerprint, b: VisualFingerprint,
                entity_floor: float = ENTITY_CONFIDENCE_FLOOR) -> str:
    """
    Entity type whose category profile applies to the pair.

    Symmetric: a shared confident type, else the one confident side's type
    when the other is ambiguous, else "global".
    """
    conf_a = entity_is_confident(a, entity_floor)
    conf_b = entity_is_confident(b, entity_floor)
    if conf_a and conf_b:
        return a.entity_type if a.entity_type == b.entity_type else GLOBAL_PROFILE
    if conf_a:
        return a.entity_type
    if conf_b:
        return b.entity_type
    return GLOBAL_PROFILE


class PairwiseScorer:
    """
    Scores pairs with the active profile for their entity type.

    Args:
        provider: Source of active weight profiles.
        threshold_config: Global and per-category thresholds; see config.
    """

    def __init__(self, provider: WeightProfileProvider, threshold_config=None,
                 entity_floor: float = ENTITY_CONFIDENCE_FLOOR):
        self.provider = provider
        self.threshold_config = threshold_config or ThresholdConfig.from_env()
        self.entity_floor = entity_floor

    def thresholds_for(self, entity_type: str) -> MatchThresholds:
        profile = self.provider.resolve(entity_type)
        return self.threshold_config.resolve(entity_type, profile.thresholds)

    def score(self, a: VisualFingerprint, b: VisualFingerprint) -> PairScore:
        key = profile_key(a, b, self.entity_floor)
        profile = self.provider.resolve(key)
        thresholds = self.threshold_config.resolve(key, profile.thresholds)
        return score_pair(a, b, profile, thresholds, self.entity_floor)


def rank_results(results: list) -> list:
    """
    Sort matches by overall score (primary) and candidate creation time,
    newest first (tiebreaker; fresher reports win).

    Args:
        results: Objects with ``overall_score`` and ``created_at``.

    Returns:
        Sorted list (highest score first).
    """
    newest_first = sorted(results, key=lambda r: r.created_at or datetime.min,
                          reverse=True)
    return sorted(newest_first, key=lambda r: -r.overall_score)
