"""
Validation and snapshots for user feedback on a match.

Feedback is the training signal for weight tuning, so each record keeps a
copy of the component scores and the weight profile the user was shown;
later changes to the match or the profile never alter a stored label.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Tuple

from .errors import ValidationError
from .lifecycle import VALID_VERDICTS, VERDICT_REJECTED

VALID_REJECTION_REASONS = (
    "wrong_color",
    "wrong_size",
    "wrong_location",
    "wrong_brand",
    "different_item_type",
    "wrong_pattern",
    "wrong_shape",
    "other",
)

MAX_EXPLANATION_LENGTH = 2000


@dataclass(frozen=True)
class FeedbackRequest:
    verdict: str
    reasons: Tuple[str, ...] = ()
    explanation: Optional[str] = None


def validate_feedback(verdict: str, reasons: Optional[Iterable[str]] = None,
                      explanation: Optional[str] = None) -> FeedbackRequest:
    """
    Check a verdict, its rejection reasons and the free-text explanation
    before anything is stored. Reasons only apply to rejections; an
    explanation is kept for any verdict.

    Raises:
        ValidationError: Unknown verdict, a rejection without reasons,
            unknown reason codes, or an explanation over
            MAX_EXPLANATION_LENGTH characters.
    """
    if verdict not in VALID_VERDICTS:
        raise ValidationError(f"Unknown feedback type '{verdict}'", VALID_VERDICTS)

    codes = tuple(dict.fromkeys(r.strip() for r in (reasons or ()) if r and r.strip()))
    if verdict == VERDICT_REJECTED:
        if not codes:
            raise ValidationError("Rejection requires at least one reason",
                                  VALID_REJECTION_REASONS)
        unknown = [c for c in codes if c not in VALID_REJECTION_REASONS]
        if unknown:
            raise ValidationError(f"Unknown rejection reasons: {', '.join(unknown)}",
                                  VALID_REJECTION_REASONS)
    else:
        codes = ()

    explanation = (explanation or "").strip() or None
    if explanation and len(explanation) > MAX_EXPLANATION_LENGTH:
        raise ValidationError(
            f"Explanation is {len(explanation)} characters, "
            f"limit is {MAX_EXPLANATION_LENGTH}")

    return FeedbackRequest(verdict, codes, explanation)


def scores_snapshot(match) -> Dict:
    """Component scores of a match row as shown to the user."""
    category = None if match.category_match is None else (100.0 if match.category_match else 0.0)
    return {
        "hash": match.hash_score,
        "color": match.color_score,
        "ocr": match.ocr_score,
        "neural": match.neural_score,
        "face": match.face_score,
        "entity": match.entity_score,
        "category": category,
        "overall": match.overall_score,
        "match_type": match.match_type,
    }


def weights_snapshot(match) -> Dict:
    return {
        "name": match.weight_profile_name,
        "version": match.weight_profile_version,
        "weights": dict(match.weights_used or {}),
    }
