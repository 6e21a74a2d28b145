"""
Perceptual hash triplet extraction and comparison.

Three complementary 64-bit hashes are computed per photo:
    perceptual  (pHash): DCT low frequencies, robust to recompression
    average     (aHash): mean-threshold, cheap, sensitive to lighting
    difference  (dHash): gradient direction, robust to brightness shifts

Similarity is Hamming-distance based. Two unrelated photos disagree on
about half their bits, so the similarity is scaled to reach 0 at chance
level rather than at full disagreement.
"""

import logging
from typing import Optional

import imagehash
import numpy as np
from PIL import Image

from .features import HashTriplet
from .preprocessing import normalize_image

logger = logging.getLogger(__name__)

HASH_SIZE = 8
HASH_BITS = HASH_SIZE * HASH_SIZE

# Relative trust in each hash type when combining
HASH_TYPE_WEIGHTS = {
    "perceptual": 0.5,
    "difference": 0.3,
    "average": 0.2,
}


def compute_hash_triplet(image_np: np.ndarray) -> HashTriplet:
    """
    Compute the perceptual, average and difference hashes of an image.

    Args:
        image_np: RGB uint8 image.

    Returns:
        HashTriplet of 16-character hex strings.
    """
    pil_image = Image.fromarray(normalize_image(image_np))
    return HashTriplet(
        perceptual=str(imagehash.phash(pil_image, hash_size=HASH_SIZE)),
        average=str(imagehash.average_hash(pil_image, hash_size=HASH_SIZE)),
        difference=str(imagehash.dhash(pil_image, hash_size=HASH_SIZE)),
    )


def hamming_distance(hash_a: str, hash_b: str) -> Optional[int]:
    """Bit distance between two hex hashes, or None if incomparable."""
    if not hash_a or not hash_b or len(hash_a) != len(hash_b):
        return None
    try:
        return int(imagehash.hex_to_hash(hash_a) - imagehash.hex_to_hash(hash_b))
    except (ValueError, TypeError) as e:
        logger.debug(f"Incomparable hashes {hash_a!r} / {hash_b!r}: {e}")
        return None


def hash_similarity(hash_a: str, hash_b: str) -> Optional[float]:
    """
    Similarity of two hex hashes in 0-1.

    Identical hashes give 1.0; a distance of half the bits (what two
    unrelated images typically produce) or more gives 0.0.
    """
    distance = hamming_distance(hash_a, hash_b)
    if distance is None:
        return None
    bits = len(hash_a) * 4
    return max(0.0, 1.0 - 2.0 * distance / bits)


def triplet_similarity(a: Optional[HashTriplet],
                       b: Optional[HashTriplet]) -> Optional[float]:
    """
    Weighted similarity over the hash types present on both sides.

    Returns:
        Score in 0-100, or None when no hash type is shared.
    """
    if a is None or b is None:
        return None

    left, right = a.as_dict(), b.as_dict()
    weighted = 0.0
    total_weight = 0.0
    for hash_type, weight in HASH_TYPE_WEIGHTS.items():
        similarity = hash_similarity(left[hash_type], right[hash_type])
        if similarity is None:
            continue
        weighted += weight * similarity
        total_weight += weight

    if total_weight == 0:
        return None
    return 100.0 * weighted / total_weight


def hash_prefix(triplet: Optional[HashTriplet], length: int = 8) -> str:
    """Leading hex digits of the perceptual hash, for readable ids."""
    if triplet is None or not triplet.perceptual:
        return "0" * length
    return triplet.perceptual[:length]
