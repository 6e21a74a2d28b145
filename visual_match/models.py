"""
SQLAlchemy rows for fingerprints, matches, feedback and weight profiles.

Rows are storage only; repository.py converts them to and from the
in-memory records in features.py and weights.py.
"""

import uuid

from sqlalchemy import (
    Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, JSON,
    LargeBinary, String, Text, UniqueConstraint, text,
)

from .db import Base
from .features import utcnow


def _uuid() -> str:
    return str(uuid.uuid4())


class FingerprintRow(Base):
    __tablename__ = "visual_fingerprints"

    id = Column(String(36), primary_key=True, default=_uuid)
    photo_id = Column(String(64), nullable=False, unique=True)
    case_id = Column(String(64), nullable=False, index=True)
    case_category = Column(String(64), nullable=True)

    processing_status = Column(String(16), nullable=False, default="pending", index=True)
    processing_error = Column(Text, nullable=True)

    entity_type = Column(String(32), nullable=False, default="unknown", index=True)
    entity_confidence = Column(Float, nullable=False, default=0.0)

    # Hex strings, 64-bit each
    perceptual_hash = Column(String(32), nullable=True)
    average_hash = Column(String(32), nullable=True)
    difference_hash = Column(String(32), nullable=True)

    color_fingerprint = Column(JSON, nullable=True)
    ocr_text = Column(Text, nullable=True)
    detected_labels = Column(JSON, nullable=True)

    # float32 bytes
    neural_embedding = Column(LargeBinary, nullable=True)
    embedding_dim = Column(Integer, nullable=True)
    embedding_hash = Column(String(16), nullable=True, index=True)
    face_embedding = Column(LargeBinary, nullable=True)

    quality_score = Column(Float, nullable=False, default=0.0)
    quality_tier = Column(String(16), nullable=False, default="poor")
    human_readable_id = Column(String(96), nullable=True, index=True)
    image_width = Column(Integer, nullable=True)
    image_height = Column(Integer, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return (f"<FingerprintRow(id={self.id}, photo_id={self.photo_id}, "
                f"status='{self.processing_status}')>")


class PhotoMatchRow(Base):
    """
    One row per unordered pair of cases; source/target are ordered by
    case id. Never deleted: a rejected match stays as a negative label.
    """
    __tablename__ = "photo_matches"
    __table_args__ = (
        UniqueConstraint("source_case_id", "target_case_id", name="uq_photo_match_case_pair"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    source_photo_id = Column(String(64), nullable=False)
    target_photo_id = Column(String(64), nullable=False)
    source_case_id = Column(String(64), nullable=False, index=True)
    target_case_id = Column(String(64), nullable=False, index=True)

    hash_score = Column(Float, nullable=True)
    color_score = Column(Float, nullable=True)
    ocr_score = Column(Float, nullable=True)
    neural_score = Column(Float, nullable=True)
    face_score = Column(Float, nullable=True)
    entity_score = Column(Float, nullable=True)
    entity_match = Column(Boolean, nullable=False, default=False)
    category_match = Column(Boolean, nullable=True)
    overall_score = Column(Float, nullable=False)
    match_type = Column(String(24), nullable=False)
    matched_identifiers = Column(JSON, nullable=True)

    weight_profile_name = Column(String(64), nullable=True)
    weight_profile_version = Column(Integer, nullable=True)
    weights_used = Column(JSON, nullable=True)

    # pending, viewed, confirmed, rejected, unsure
    status = Column(String(16), nullable=False, default="pending", index=True)
    source_feedback = Column(String(16), nullable=True)
    target_feedback = Column(String(16), nullable=True)
    viewed_at = Column(DateTime, nullable=True)
    resolved_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return (f"<PhotoMatchRow(id={self.id}, cases={self.source_case_id}/"
                f"{self.target_case_id}, score={self.overall_score}, status='{self.status}')>")


class MatchFeedbackRow(Base):
    """Append-only user verdict on a match, with the scores it was shown."""
    __tablename__ = "match_feedback"

    id = Column(String(36), primary_key=True, default=_uuid)
    photo_match_id = Column(String(36), ForeignKey("photo_matches.id"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    is_source_user = Column(Boolean, nullable=False)

    feedback_type = Column(String(16), nullable=False, index=True)
    rejection_reasons = Column(JSON, nullable=True)
    explanation = Column(Text, nullable=True)

    scores_snapshot = Column(JSON, nullable=False)
    weights_snapshot = Column(JSON, nullable=True)

    # pending, exported, trained
    training_status = Column(String(16), nullable=False, default="pending", index=True)
    training_batch_id = Column(String(36), nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return (f"<MatchFeedbackRow(id={self.id}, match={self.photo_match_id}, "
                f"type='{self.feedback_type}')>")


class WeightProfileRow(Base):
    __tablename__ = "weight_profiles"
    __table_args__ = (
        UniqueConstraint("config_name", "version", name="uq_weight_profile_version"),
        Index(
            "uq_weight_profile_active", "config_name", unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    config_name = Column(String(64), nullable=False, index=True)
    version = Column(Integer, nullable=False)
    config_data = Column(JSON, nullable=False)
    is_active = Column(Boolean, nullable=False, default=False)

    accuracy = Column(Float, nullable=True)
    precision = Column(Float, nullable=True)
    recall = Column(Float, nullable=True)
    f1_score = Column(Float, nullable=True)
    training_samples = Column(Integer, nullable=True)
    trained_at = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)
    parent_config_id = Column(String(36), ForeignKey("weight_profiles.id"), nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return (f"<WeightProfileRow(name='{self.config_name}', v{self.version}, "
                f"active={self.is_active})>")
