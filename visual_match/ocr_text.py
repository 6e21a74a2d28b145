"""
OCR text normalization and overlap scoring.

OCR on phone photos is noisy, so comparison works on normalized tokens
rather than raw strings. Serial numbers, card digits and plates are the
strongest evidence two photos show the same object; a single shared
identifier is enough to lift the OCR score to OCR_IDENTIFIER_FLOOR.
"""

import re
import logging
from typing import FrozenSet, List, Optional

from .config import OCR_IDENTIFIER_FLOOR

logger = logging.getLogger(__name__)

MIN_TOKEN_LENGTH = 2
MIN_IDENTIFIER_LENGTH = 4

_TOKEN_RE = re.compile(r"[a-z0-9]+")

# Serial numbers and plates, applied to the upper-cased raw text
_IDENTIFIER_PATTERNS = (
    re.compile(r"\b[A-Z]{2,3}-?\d{5,10}\b"),
    re.compile(r"\b\d{2,4}-\d{4,6}-\d{2,4}\b"),
    re.compile(r"\b(?=[A-Z0-9]*\d)(?=[A-Z0-9]*[A-Z])[A-Z0-9]{8,15}\b"),
    re.compile(r"\b[A-Z]{2,3}\s?\d{1,4}\s?[A-Z]{1,3}\b"),
)


def tokenize(text: Optional[str]) -> FrozenSet[str]:
    """Lower-cased alphanumeric tokens of at least MIN_TOKEN_LENGTH chars."""
    if not text:
        return frozenset()
    return frozenset(
        t for t in _TOKEN_RE.findall(text.lower()) if len(t) >= MIN_TOKEN_LENGTH
    )


def extract_identifiers(text: Optional[str]) -> FrozenSet[str]:
    """
    Pull identifier-like strings out of OCR text.

    Covers serial-number and license-plate shapes plus any standalone token
    containing a digit with at least MIN_IDENTIFIER_LENGTH characters (card
    last-4 digits, model numbers). Whitespace and dashes are stripped and
    the result upper-cased so "ab-12345" and "AB12345" compare equal.
    """
    if not text:
        return frozenset()

    upper = text.upper()
    found = set()
    for pattern in _IDENTIFIER_PATTERNS:
        for match in pattern.findall(upper):
            found.add(re.sub(r"[\s-]+", "", match))

    for token in tokenize(text):
        if len(token) >= MIN_IDENTIFIER_LENGTH and any(ch.isdigit() for ch in token):
            found.add(token.upper())

    return frozenset(found)


def ocr_similarity(text_a: Optional[str], text_b: Optional[str],
                   identifier_floor: float = OCR_IDENTIFIER_FLOOR
                   ) -> Optional[float]:
    """
    Token-overlap similarity of two OCR texts.

    Returns:
        100 x Jaccard index of the token sets, raised to identifier_floor
        when an identifier is shared. None if either side has no tokens.
    """
    tokens_a, tokens_b = tokenize(text_a), tokenize(text_b)
    if not tokens_a or not tokens_b:
        return None

    score = 100.0 * len(tokens_a & tokens_b) / len(tokens_a | tokens_b)
    if shared_identifiers(text_a, text_b):
        score = max(score, identifier_floor)
    return score


def shared_identifiers(text_a: Optional[str], text_b: Optional[str]) -> List[str]:
    return sorted(extract_identifiers(text_a) & extract_identifiers(text_b))


def shared_tokens(text_a: Optional[str], text_b: Optional[str]) -> List[str]:
    return sorted(tokenize(text_a) & tokenize(text_b))
