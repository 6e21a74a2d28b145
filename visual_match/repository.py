"""
Persistence for fingerprints, matches, feedback and weight profiles.

Each repository method runs in its own transaction (db.session_scope) and
returns detached records, so callers never hold a session open.

Two writes are concurrency-sensitive:
    - match creation is a single INSERT ... ON CONFLICT DO UPDATE that only
      overwrites a stored match with a strictly higher score, so concurrent
      searches over the same case pair leave exactly one row;
    - weight promotion locks every version of the profile name, then swaps
      the active flag inside one transaction.
"""

import uuid
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
from sqlalchemy import func, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import sessionmaker

from .db import session_scope
from .errors import (
    FingerprintNotFound, MatchNotFound, PermissionDenied, ValidationError,
    WeightPromotionConflict,
)
from .feedback import FeedbackRequest, scores_snapshot, weights_snapshot
from .features import (
    ColorFingerprint, HashTriplet, VisualFingerprint, STATUS_COMPLETED,
    STATUS_FAILED, STATUS_PENDING, utcnow,
)
from .lifecycle import (
    STATUS_CONFIRMED, STATUS_PENDING as MATCH_PENDING, STATUS_REJECTED,
    apply_verdict, can_submit, mark_viewed, side_for_cases, SIDE_SOURCE,
)
from .models import FingerprintRow, MatchFeedbackRow, PhotoMatchRow, WeightProfileRow
from .scoring import PairScore
from .weights import DEFAULT_PROFILES, WeightProfile, normalize_weights

logger = logging.getLogger(__name__)

TRAINING_PENDING = "pending"
TRAINING_EXPORTED = "exported"
TRAINING_TRAINED = "trained"


# ----------------------------------------------------------------------
# Fingerprints
# ----------------------------------------------------------------------

def fingerprint_from_row(row: FingerprintRow) -> VisualFingerprint:
    triplet = HashTriplet(row.perceptual_hash, row.average_hash, row.difference_hash)
    embedding = None
    if row.neural_embedding:
        embedding = np.frombuffer(row.neural_embedding, dtype=np.float32).copy()
    face = None
    if row.face_embedding:
        face = np.frombuffer(row.face_embedding, dtype=np.float32).copy()
    return VisualFingerprint(
        id=row.id,
        photo_id=row.photo_id,
        case_id=row.case_id,
        processing_status=row.processing_status,
        entity_type=row.entity_type,
        entity_confidence=row.entity_confidence or 0.0,
        hash_triplet=None if triplet.empty else triplet,
        color_fingerprint=ColorFingerprint.from_dict(row.color_fingerprint),
        ocr_text=row.ocr_text,
        detected_labels=frozenset(row.detected_labels or ()),
        neural_embedding=embedding,
        embedding_hash=row.embedding_hash,
        face_embedding=face,
        quality_score=row.quality_score or 0.0,
        quality_tier=row.quality_tier,
        human_readable_id=row.human_readable_id,
        case_category=row.case_category,
        image_width=row.image_width,
        image_height=row.image_height,
        processing_error=row.processing_error,
        created_at=row.created_at,
    )


def _fill_row(row: FingerprintRow, fp: VisualFingerprint) -> None:
    triplet = fp.hash_triplet or HashTriplet()
    row.case_id = fp.case_id
    row.case_category = fp.case_category
    row.processing_status = fp.processing_status
    row.processing_error = fp.processing_error
    row.entity_type = fp.entity_type
    row.entity_confidence = fp.entity_confidence
    row.perceptual_hash = triplet.perceptual
    row.average_hash = triplet.average
    row.difference_hash = triplet.difference
    row.color_fingerprint = fp.color_fingerprint.as_dict() if fp.color_fingerprint else None
    row.ocr_text = fp.ocr_text
    row.detected_labels = sorted(fp.detected_labels)
    if fp.has_embedding:
        vector = np.asarray(fp.neural_embedding, dtype=np.float32)
        row.neural_embedding = vector.tobytes()
        row.embedding_dim = int(vector.size)
    else:
        row.neural_embedding = None
        row.embedding_dim = None
    row.embedding_hash = fp.embedding_hash
    row.face_embedding = (np.asarray(fp.face_embedding, dtype=np.float32).tobytes()
                          if fp.has_face else None)
    row.quality_score = fp.quality_score
    row.quality_tier = fp.quality_tier
    row.human_readable_id = fp.human_readable_id
    row.image_width = fp.image_width
    row.image_height = fp.image_height


class FingerprintRepository:
    """One fingerprint per photo; completed fingerprints are never overwritten."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def create_pending(self, photo_id: str, case_id: str,
                       case_category: Optional[str] = None) -> VisualFingerprint:
        """Pending placeholder for a photo, or the existing record if any."""
        with session_scope(self.session_factory) as session:
            row = session.execute(
                select(FingerprintRow).where(FingerprintRow.photo_id == photo_id)
            ).scalar_one_or_none()
            if row is None:
                row = FingerprintRow(photo_id=photo_id, case_id=case_id,
                                     case_category=case_category,
                                     processing_status=STATUS_PENDING)
                session.add(row)
                session.flush()
            return fingerprint_from_row(row)

    def save_fingerprint(self, fp: VisualFingerprint) -> VisualFingerprint:
        """
        Store a built fingerprint, keyed by photo id.

        Replaces a pending or failed record for the same photo (keeping its
        id); a completed record is left untouched and returned instead.
        """
        with session_scope(self.session_factory) as session:
            row = session.execute(
                select(FingerprintRow).where(FingerprintRow.photo_id == fp.photo_id)
            ).scalar_one_or_none()
            if row is None:
                row = FingerprintRow(id=fp.id, photo_id=fp.photo_id,
                                     created_at=fp.created_at or utcnow())
                session.add(row)
            elif row.processing_status == STATUS_COMPLETED:
                logger.warning(f"Photo {fp.photo_id} already has a completed "
                               f"fingerprint {row.id}; keeping it")
                return fingerprint_from_row(row)
            _fill_row(row, fp)
            session.flush()
            return fingerprint_from_row(row)

    def get(self, fingerprint_id: str) -> VisualFingerprint:
        with session_scope(self.session_factory) as session:
            row = session.get(FingerprintRow, fingerprint_id)
            if row is None:
                raise FingerprintNotFound(f"No fingerprint {fingerprint_id}")
            return fingerprint_from_row(row)

    def get_by_photo(self, photo_id: str) -> Optional[VisualFingerprint]:
        with session_scope(self.session_factory) as session:
            row = session.execute(
                select(FingerprintRow).where(FingerprintRow.photo_id == photo_id)
            ).scalar_one_or_none()
            return fingerprint_from_row(row) if row is not None else None

    def list_completed(self, exclude_case_id: Optional[str] = None) -> List[VisualFingerprint]:
        with session_scope(self.session_factory) as session:
            query = select(FingerprintRow).where(
                FingerprintRow.processing_status == STATUS_COMPLETED)
            if exclude_case_id is not None:
                query = query.where(FingerprintRow.case_id != exclude_case_id)
            rows = session.execute(query.order_by(FingerprintRow.created_at)).scalars()
            return [fingerprint_from_row(r) for r in rows]

    def list_failed(self) -> List[VisualFingerprint]:
        with session_scope(self.session_factory) as session:
            rows = session.execute(
                select(FingerprintRow).where(FingerprintRow.processing_status == STATUS_FAILED)
            ).scalars()
            return [fingerprint_from_row(r) for r in rows]

    def count_completed(self) -> int:
        with session_scope(self.session_factory) as session:
            return session.execute(
                select(func.count()).select_from(FingerprintRow)
                .where(FingerprintRow.processing_status == STATUS_COMPLETED)
            ).scalar_one()

    def population_version(self) -> Tuple[int, Optional[datetime]]:
        """Completed count and latest update; changes whenever the candidate set does."""
        with session_scope(self.session_factory) as session:
            count, latest = session.execute(
                select(func.count(), func.max(FingerprintRow.updated_at))
                .where(FingerprintRow.processing_status == STATUS_COMPLETED)
            ).one()
            return int(count), latest


# ----------------------------------------------------------------------
# Matches and feedback
# ----------------------------------------------------------------------

def _insert_for(dialect_name: str):
    if dialect_name == "sqlite":
        return sqlite.insert
    if dialect_name == "postgresql":
        return postgresql.insert
    raise NotImplementedError(f"Match upsert not supported on {dialect_name}")


def match_values(source: VisualFingerprint, target: VisualFingerprint,
                 pair: PairScore) -> Dict:
    """Column values for a scored pair, ordered by case id."""
    if source.case_id > target.case_id:
        source, target = target, source
    c = pair.components
    return {
        "source_photo_id": source.photo_id,
        "target_photo_id": target.photo_id,
        "source_case_id": source.case_id,
        "target_case_id": target.case_id,
        "hash_score": c.hash,
        "color_score": c.color,
        "ocr_score": c.ocr,
        "neural_score": c.neural,
        "face_score": c.face,
        "entity_score": c.entity,
        "entity_match": c.entity_match,
        "category_match": c.category_match,
        "overall_score": pair.overall,
        "match_type": pair.match_type,
        "matched_identifiers": [dict(r) for r in pair.reasons],
        "weight_profile_name": pair.profile.name,
        "weight_profile_version": pair.profile.version,
        "weights_used": dict(pair.profile.weights),
    }


UPSERT_UPDATED_COLUMNS = (
    "source_photo_id", "target_photo_id", "hash_score", "color_score",
    "ocr_score", "neural_score", "face_score", "entity_score", "entity_match",
    "category_match", "overall_score", "match_type", "matched_identifiers",
    "weight_profile_name", "weight_profile_version", "weights_used",
)


class MatchRepository:
    """PhotoMatch rows: one per unordered case pair, never deleted."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def upsert(self, source: VisualFingerprint, target: VisualFingerprint,
               pair: PairScore) -> PhotoMatchRow:
        """
        Create the match for a case pair, or raise its score.

        A single statement: an existing row is only updated when the new
        overall score is strictly higher, and its review state is kept.
        """
        if source.case_id == target.case_id:
            raise ValidationError("A case cannot be matched with itself")
        values = match_values(source, target, pair)
        values["id"] = str(uuid.uuid4())
        values["status"] = MATCH_PENDING
        now = utcnow()
        values["created_at"] = now
        values["updated_at"] = now

        with session_scope(self.session_factory) as session:
            insert = _insert_for(session.get_bind().dialect.name)
            stmt = insert(PhotoMatchRow).values(**values)
            excluded = stmt.excluded
            updates = {col: getattr(excluded, col) for col in UPSERT_UPDATED_COLUMNS}
            updates["updated_at"] = excluded.updated_at
            stmt = stmt.on_conflict_do_update(
                index_elements=[PhotoMatchRow.source_case_id, PhotoMatchRow.target_case_id],
                set_=updates,
                where=PhotoMatchRow.overall_score < excluded.overall_score,
            )
            session.execute(stmt)
            row = session.execute(
                select(PhotoMatchRow).where(
                    PhotoMatchRow.source_case_id == values["source_case_id"],
                    PhotoMatchRow.target_case_id == values["target_case_id"],
                )
            ).scalar_one()

        logger.debug(f"Upserted match {row.id} ({row.source_case_id}/{row.target_case_id}) "
                     f"score {row.overall_score}")
        return row

    def get(self, match_id: str) -> PhotoMatchRow:
        with session_scope(self.session_factory) as session:
            row = session.get(PhotoMatchRow, match_id)
            if row is None:
                raise MatchNotFound(f"No match {match_id}")
            return row

    def for_cases(self, case_ids: Iterable[str],
                  statuses: Optional[Sequence[str]] = None) -> List[PhotoMatchRow]:
        """Matches touching any of the cases, best first."""
        case_ids = list(case_ids)
        if not case_ids:
            return []
        with session_scope(self.session_factory) as session:
            query = select(PhotoMatchRow).where(or_(
                PhotoMatchRow.source_case_id.in_(case_ids),
                PhotoMatchRow.target_case_id.in_(case_ids),
            ))
            if statuses:
                query = query.where(PhotoMatchRow.status.in_(list(statuses)))
            query = query.order_by(PhotoMatchRow.overall_score.desc(),
                                   PhotoMatchRow.created_at.desc())
            return list(session.execute(query).scalars())

    def count(self) -> int:
        with session_scope(self.session_factory) as session:
            return session.execute(
                select(func.count()).select_from(PhotoMatchRow)).scalar_one()

    def mark_viewed(self, match_id: str, owned_case_ids: Iterable[str]) -> PhotoMatchRow:
        with session_scope(self.session_factory) as session:
            row = self._locked(session, match_id)
            if side_for_cases(row, owned_case_ids) is None:
                raise PermissionDenied(f"User does not own a case of match {match_id}")
            if mark_viewed(row):
                logger.info(f"Match {match_id} viewed")
            return row

    def record_feedback(self, match_id: str, user_id: str,
                        owned_case_ids: Iterable[str],
                        request: FeedbackRequest) -> Tuple[MatchFeedbackRow, PhotoMatchRow]:
        """
        Append a feedback record and update the match, in one transaction.

        Raises:
            MatchNotFound: Unknown match id.
            PermissionDenied: The user owns neither case.
            ValidationError: The user's side already gave a final verdict.
        """
        with session_scope(self.session_factory) as session:
            row = self._locked(session, match_id)
            side = side_for_cases(row, owned_case_ids)
            if side is None:
                raise PermissionDenied(f"User {user_id} does not own a case of match {match_id}")
            if not can_submit(row, side):
                raise ValidationError(
                    f"Feedback for match {match_id} is final for the {side} side")

            feedback = MatchFeedbackRow(
                photo_match_id=row.id,
                user_id=user_id,
                is_source_user=(side == SIDE_SOURCE),
                feedback_type=request.verdict,
                rejection_reasons=list(request.reasons) or None,
                explanation=request.explanation,
                scores_snapshot=scores_snapshot(row),
                weights_snapshot=weights_snapshot(row),
                training_status=TRAINING_PENDING,
            )
            session.add(feedback)
            apply_verdict(row, side, request.verdict)
            session.flush()
            return feedback, row

    def feedback_for_match(self, match_id: str) -> List[MatchFeedbackRow]:
        with session_scope(self.session_factory) as session:
            return list(session.execute(
                select(MatchFeedbackRow)
                .where(MatchFeedbackRow.photo_match_id == match_id)
                .order_by(MatchFeedbackRow.created_at)
            ).scalars())

    def stats_for_cases(self, case_ids: Iterable[str]) -> Dict[str, int]:
        """Pending / confirmed / rejected / total counts over the cases' matches."""
        counts = {"pending": 0, "confirmed": 0, "rejected": 0, "total": 0}
        for row in self.for_cases(case_ids):
            counts["total"] += 1
            if row.status == STATUS_CONFIRMED:
                counts["confirmed"] += 1
            elif row.status == STATUS_REJECTED:
                counts["rejected"] += 1
            else:
                counts["pending"] += 1
        return counts

    @staticmethod
    def _locked(session, match_id: str) -> PhotoMatchRow:
        row = session.execute(
            select(PhotoMatchRow).where(PhotoMatchRow.id == match_id).with_for_update()
        ).scalar_one_or_none()
        if row is None:
            raise MatchNotFound(f"No match {match_id}")
        return row


# ----------------------------------------------------------------------
# Weight profiles
# ----------------------------------------------------------------------

def profile_from_row(row: WeightProfileRow) -> WeightProfile:
    data = row.config_data or {}
    metrics = {
        k: getattr(row, k) for k in ("accuracy", "precision", "recall", "f1_score")
        if getattr(row, k) is not None
    }
    if row.training_samples is not None:
        metrics["training_samples"] = row.training_samples
    return WeightProfile(
        name=row.config_name,
        weights=dict(data.get("weights") or {}),
        version=row.version,
        thresholds=data.get("thresholds"),
        id=row.id,
        is_active=bool(row.is_active),
        parent_id=row.parent_config_id,
        metrics=metrics,
        trained_at=row.trained_at,
    )


class WeightProfileRepository:
    """Versioned weight profiles with exactly one active version per name."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def get_active(self, name: str) -> Optional[WeightProfile]:
        with session_scope(self.session_factory) as session:
            row = session.execute(
                select(WeightProfileRow).where(
                    WeightProfileRow.config_name == name,
                    WeightProfileRow.is_active.is_(True),
                )
            ).scalar_one_or_none()
            return profile_from_row(row) if row is not None else None

    def get(self, profile_id: str) -> WeightProfile:
        with session_scope(self.session_factory) as session:
            row = session.get(WeightProfileRow, profile_id)
            if row is None:
                raise ValidationError(f"No weight profile {profile_id}")
            return profile_from_row(row)

    def versions(self, name: str) -> List[WeightProfile]:
        with session_scope(self.session_factory) as session:
            rows = session.execute(
                select(WeightProfileRow).where(WeightProfileRow.config_name == name)
                .order_by(WeightProfileRow.version)
            ).scalars()
            return [profile_from_row(r) for r in rows]

    def create_version(self, name: str, weights: Dict[str, float],
                       thresholds: Optional[Dict[str, float]] = None,
                       metrics: Optional[Dict[str, float]] = None,
                       parent_id: Optional[str] = None,
                       notes: Optional[str] = None,
                       trained: bool = False,
                       activate: bool = False) -> WeightProfile:
        """
        Add the next version of a profile. New versions are inactive unless
        ``activate`` is set and no version of the name is active yet.
        """
        weights = normalize_weights(weights)
        metrics = metrics or {}
        with session_scope(self.session_factory) as session:
            latest = session.execute(
                select(func.max(WeightProfileRow.version))
                .where(WeightProfileRow.config_name == name)
            ).scalar()
            has_active = session.execute(
                select(func.count()).select_from(WeightProfileRow).where(
                    WeightProfileRow.config_name == name,
                    WeightProfileRow.is_active.is_(True),
                )
            ).scalar_one() > 0

            data = {"weights": weights}
            if thresholds:
                data["thresholds"] = dict(thresholds)
            row = WeightProfileRow(
                config_name=name,
                version=(latest or 0) + 1,
                config_data=data,
                is_active=activate and not has_active,
                accuracy=metrics.get("accuracy"),
                precision=metrics.get("precision"),
                recall=metrics.get("recall"),
                f1_score=metrics.get("f1_score"),
                training_samples=metrics.get("training_samples"),
                trained_at=utcnow() if trained else None,
                notes=notes,
                parent_config_id=parent_id,
            )
            session.add(row)
            session.flush()
            logger.info(f"Created weight profile {name} v{row.version} "
                        f"({'active' if row.is_active else 'inactive'})")
            return profile_from_row(row)

    def seed_defaults(self, defaults: Optional[Dict[str, WeightProfile]] = None) -> int:
        """Store version 1 of every default profile that has no versions yet."""
        created = 0
        for name, profile in (defaults or DEFAULT_PROFILES).items():
            if self.versions(name):
                continue
            self.create_version(name, dict(profile.weights), profile.thresholds,
                                notes="default", activate=True)
            created += 1
        return created

    def promote(self, profile_id: str) -> WeightProfile:
        """
        Make one version the active version of its name.

        All versions of the name are locked for the duration, so a reader
        sees either the old or the new active version, never none or two.

        Raises:
            WeightPromotionConflict: A newer version is already active.
        """
        with session_scope(self.session_factory) as session:
            target = session.execute(
                select(WeightProfileRow).where(WeightProfileRow.id == profile_id)
                .with_for_update()
            ).scalar_one_or_none()
            if target is None:
                raise ValidationError(f"No weight profile {profile_id}")

            rows = session.execute(
                select(WeightProfileRow)
                .where(WeightProfileRow.config_name == target.config_name)
                .with_for_update()
            ).scalars().all()
            current = next((r for r in rows if r.is_active), None)

            if current is not None and current.id == target.id:
                return profile_from_row(target)
            if current is not None and current.version > target.version:
                raise WeightPromotionConflict(
                    f"Cannot promote {target.config_name} v{target.version}: "
                    f"v{current.version} is already active")

            session.execute(
                update(WeightProfileRow)
                .where(WeightProfileRow.config_name == target.config_name,
                       WeightProfileRow.is_active.is_(True))
                .values(is_active=False)
            )
            session.execute(
                update(WeightProfileRow)
                .where(WeightProfileRow.id == target.id)
                .values(is_active=True)
            )
            session.refresh(target)
            logger.info(
                f"Promoted weight profile {target.config_name} v{target.version}"
                f"{f' (replacing v{current.version})' if current is not None else ''}")
            return profile_from_row(target)
