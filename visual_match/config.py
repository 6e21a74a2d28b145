"""
Runtime configuration for the matching engine.

Every tunable is read from the environment once at import time, with a
generic default. Callers may pass explicit values instead; nothing in the
scorer reads the environment directly.

Threshold precedence for a given entity type:
    1. per-category override from MATCH_CATEGORY_THRESHOLDS
    2. thresholds stored in the active weight profile
    3. global thresholds below
"""

import os
import json
import logging
from dataclasses import dataclass, field, replace
from typing import Dict, Optional

logger = logging.getLogger(__name__)

# Match score thresholds (0-100)
MIN_MATCH_SCORE = float(os.environ.get("MATCH_MIN_SCORE", "60"))
PROBABLE_MATCH_SCORE = float(os.environ.get("MATCH_PROBABLE_SCORE", "75"))
HIGH_CONFIDENCE_SCORE = float(os.environ.get("MATCH_HIGH_CONFIDENCE_SCORE", "85"))

# Entity classification below this confidence is treated as ambiguous
ENTITY_CONFIDENCE_FLOOR = float(os.environ.get("ENTITY_CONFIDENCE_FLOOR", "0.5"))

# A shared serial number / plate lifts the OCR score to at least this value
OCR_IDENTIFIER_FLOOR = float(os.environ.get("OCR_IDENTIFIER_FLOOR", "90"))

# Cascade bucketing
CASCADE_NPROBE = int(os.environ.get("CASCADE_NPROBE", "2"))
CASCADE_MIN_CANDIDATES = int(os.environ.get("CASCADE_MIN_CANDIDATES", "50"))
CASCADE_EXPANSION_STEP = int(os.environ.get("CASCADE_EXPANSION_STEP", "2"))
CASCADE_MAX_EXPANSIONS = int(os.environ.get("CASCADE_MAX_EXPANSIONS", "2"))
BUCKET_MIN_POPULATION = int(os.environ.get("BUCKET_MIN_POPULATION", "256"))

# Weight profile cache lifetime in seconds
WEIGHT_CACHE_TTL = float(os.environ.get("WEIGHT_CACHE_TTL", "300"))

DATABASE_URL = os.environ.get("MATCH_DATABASE_URL", "sqlite:///visual_match.db")
FINGERPRINT_WORKERS = int(os.environ.get("FINGERPRINT_WORKERS", "4"))
MIN_TRAINING_SAMPLES_PER_CLASS = int(
    os.environ.get("MIN_TRAINING_SAMPLES_PER_CLASS", "20"))


def _load_category_overrides(raw: Optional[str]) -> Dict[str, Dict[str, float]]:
    """Parse the MATCH_CATEGORY_THRESHOLDS JSON blob."""
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except ValueError as e:
        logger.error(f"Ignoring malformed MATCH_CATEGORY_THRESHOLDS: {e}")
        return {}
    if not isinstance(data, dict):
        logger.error("Ignoring MATCH_CATEGORY_THRESHOLDS: expected a JSON object")
        return {}
    return {
        str(category): {k: float(v) for k, v in values.items()}
        for category, values in data.items()
        if isinstance(values, dict)
    }


CATEGORY_THRESHOLD_OVERRIDES = _load_category_overrides(
    os.environ.get("MATCH_CATEGORY_THRESHOLDS"))


@dataclass(frozen=True)
class MatchThresholds:
    """Score cut-offs separating the match tiers."""

    min_match: float = MIN_MATCH_SCORE
    probable: float = PROBABLE_MATCH_SCORE
    high_confidence: float = HIGH_CONFIDENCE_SCORE

    def merged(self, values: Optional[Dict[str, float]]) -> "MatchThresholds":
        if not values:
            return self
        known = {k: float(v) for k, v in values.items()
                 if k in ("min_match", "probable", "high_confidence")}
        return replace(self, **known)


@dataclass(frozen=True)
class ThresholdConfig:
    """Global thresholds plus per-category overrides."""

    default: MatchThresholds = field(default_factory=MatchThresholds)
    category_overrides: Optional[Dict[str, Dict[str, float]]] = None

    @classmethod
    def from_env(cls) -> "ThresholdConfig":
        return cls(MatchThresholds(), dict(CATEGORY_THRESHOLD_OVERRIDES))

    def resolve(self, category: Optional[str],
                profile_thresholds: Optional[Dict[str, float]] = None
                ) -> MatchThresholds:
        """Resolve the thresholds for one entity type."""
        resolved = self.default.merged(profile_thresholds)
        overrides = self.category_overrides or {}
        if category and category in overrides:
            resolved = resolved.merged(overrides[category])
        return resolved
