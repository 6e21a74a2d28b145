"""Shared test fixtures for visual matching tests."""

from datetime import datetime, timedelta

import numpy as np
import cv2
import pytest

from visual_match.config import MatchThresholds
from visual_match.db import init_db, make_engine, make_session_factory
from visual_match.features import (
    ColorFingerprint, DominantColor, HashTriplet, VisualFingerprint,
    STATUS_COMPLETED,
)
from visual_match.scoring import ComponentScores, PairScore
from visual_match.weights import DEFAULT_PROFILES

BASE_HASH = "c4d2a1b00f0f3c3c"
BASE_TIME = datetime(2024, 5, 1, 12, 0, 0)


def flip_bits(hex_hash: str, n: int) -> str:
    """Flip the lowest n bits of a hex hash."""
    value = int(hex_hash, 16) ^ ((1 << n) - 1)
    return f"{value:0{len(hex_hash)}x}"


def triplet(flipped: int = 0) -> HashTriplet:
    h = flip_bits(BASE_HASH, flipped) if flipped else BASE_HASH
    return HashTriplet(perceptual=h, average=h, difference=h)


def colors(**shares) -> ColorFingerprint:
    dominant = tuple(
        DominantColor(name, name[:3].upper(), float(pct))
        for name, pct in sorted(shares.items(), key=lambda kv: -kv[1])
    )
    return ColorFingerprint(dominant_colors=dominant,
                            color_code=".".join(c.abbreviation for c in dominant[:2]))


def unit_pair(cosine: float):
    """Two 2-d unit vectors with the given cosine similarity."""
    a = np.array([1.0, 0.0], dtype=np.float32)
    b = np.array([cosine, np.sqrt(1.0 - cosine ** 2)], dtype=np.float32)
    return a, b


def make_fingerprint(fid: str = "fp-1", case_id: str = "case-1", **overrides) -> VisualFingerprint:
    fields = dict(
        id=fid,
        photo_id=f"photo-{fid}",
        case_id=case_id,
        processing_status=STATUS_COMPLETED,
        created_at=BASE_TIME,
    )
    fields.update(overrides)
    return VisualFingerprint(**fields)


def encode_png(image_rgb: np.ndarray) -> bytes:
    ok, buffer = cv2.imencode(".png", cv2.cvtColor(image_rgb, cv2.COLOR_RGB2BGR))
    assert ok
    return buffer.tobytes()


@pytest.fixture
def red_square_image():
    """Generate a 200x200 red square on white background."""
    img = np.ones((200, 200, 3), dtype=np.uint8) * 255
    img[40:160, 40:160] = [200, 30, 30]  # Red square
    return img


@pytest.fixture
def blue_circle_image():
    """Generate a 200x200 blue circle on white background."""
    img = np.ones((200, 200, 3), dtype=np.uint8) * 255
    cv2.circle(img, (100, 100), 60, (30, 30, 200), -1)
    return img


@pytest.fixture
def wide_textured_image():
    """Generate a 300x150 checkerboard (landscape)."""
    img = np.ones((150, 300, 3), dtype=np.uint8) * 200
    for y in range(0, 150, 15):
        for x in range(0, 300, 15):
            if (x // 15 + y // 15) % 2 == 0:
                img[y:y+15, x:x+15] = [50, 50, 50]
    return img


@pytest.fixture
def noise_image():
    """Generate a 200x200 random noise image."""
    rng = np.random.RandomState(42)
    return rng.randint(0, 255, (200, 200, 3), dtype=np.uint8)


@pytest.fixture
def blue_wallet_pair():
    """Same blue wallet photographed twice: lost report vs found report."""
    emb_a, emb_b = unit_pair(0.92)
    lost = make_fingerprint(
        "lost-1", "case-lost",
        entity_type="bag", entity_confidence=0.8,
        hash_triplet=triplet(),
        color_fingerprint=colors(blue=70, black=30),
        ocr_text="CARD 4821 VISA",
        neural_embedding=emb_a,
    )
    found = make_fingerprint(
        "found-1", "case-found",
        entity_type="bag", entity_confidence=0.9,
        hash_triplet=triplet(6),
        color_fingerprint=colors(blue=40, navy=30, black=30),
        ocr_text="visa 4821",
        neural_embedding=emb_b,
    )
    return lost, found


@pytest.fixture
def brown_wallet_pair():
    """Two different brown wallets: similar color, different everything else."""
    emb_a, emb_b = unit_pair(0.4)
    lost = make_fingerprint(
        "lost-2", "case-lost-2",
        entity_type="bag", entity_confidence=0.8,
        hash_triplet=triplet(),
        color_fingerprint=colors(brown=85, beige=15),
        neural_embedding=emb_a,
    )
    found = make_fingerprint(
        "found-2", "case-found-2",
        entity_type="bag", entity_confidence=0.8,
        hash_triplet=triplet(32),
        color_fingerprint=colors(brown=100),
        neural_embedding=emb_b,
    )
    return lost, found


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'matches.db'}")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


class FakeCaseStore:
    """Case ownership: user id -> case ids, case id -> category."""

    def __init__(self, owners=None, categories=None):
        self.owners = owners or {}
        self.categories = categories or {}

    def case_ids_for_user(self, user_id):
        return list(self.owners.get(user_id, []))

    def category_of(self, case_id):
        return self.categories.get(case_id)


class FakePhotoStore:
    def __init__(self, photos=None):
        self.photos = photos or {}

    def get_bytes(self, photo_id):
        if photo_id not in self.photos:
            raise KeyError(photo_id)
        return self.photos[photo_id]


def later(minutes: int) -> datetime:
    return BASE_TIME + timedelta(minutes=minutes)


def scored_pair(overall: float, match_type: str = "probable", **components) -> PairScore:
    """A PairScore as the scorer would hand it to MatchRepository.upsert."""
    components = components or {"hash": overall, "neural": overall}
    return PairScore(
        source_id="a", target_id="b",
        components=ComponentScores(**components),
        overall=overall, match_type=match_type,
        profile=DEFAULT_PROFILES["global"], thresholds=MatchThresholds(),
    )
