"""
Offline weight tuning from user feedback.

Confirmed and rejected verdicts are labeled examples: the component scores
the user saw, and whether the pair really was the same object. Training
searches the weight simplex for the combination whose overall score best
separates the two labels at the match threshold, evaluates it on a
held-out slice, and stores it as a new, inactive profile version. Nothing
changes for live matching until the version is promoted.

Training works on a copy of the feedback taken up front and never holds
a database transaction open while it runs.

Labels move pending -> exported -> trained. Export hands a batch of
pending labels to a trainer outside this process; retraining here marks
every label it used as trained.
"""

import uuid
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence

import numpy as np
from sqlalchemy import func, select, update
from sqlalchemy.orm import sessionmaker

from .config import MIN_MATCH_SCORE, MIN_TRAINING_SAMPLES_PER_CLASS
from .db import session_scope
from .errors import InsufficientTrainingData
from .lifecycle import VERDICT_CONFIRMED, VERDICT_REJECTED, VERDICT_UNSURE
from .models import MatchFeedbackRow
from .repository import (
    TRAINING_EXPORTED, TRAINING_PENDING, TRAINING_TRAINED, WeightProfileRepository,
)
from .weights import COMPONENTS, DEFAULT_PROFILES, GLOBAL_PROFILE, normalize_weights

logger = logging.getLogger(__name__)

DEFAULT_ROUNDS = 25
DEFAULT_STEP = 0.05
MIN_STEP = 0.005


@dataclass(frozen=True)
class LabeledPair:
    feedback_id: str
    components: Mapping[str, Optional[float]]
    label: bool
    profile_name: Optional[str] = None


@dataclass
class TrainingResult:
    weights: Dict[str, float]
    metrics: Dict[str, float]
    train_samples: int
    holdout_samples: int
    history: List[float] = field(default_factory=list)


@dataclass
class ExportBatch:
    """Labels handed out together under one training batch id."""

    batch_id: Optional[str]
    pairs: List[LabeledPair]


def _labeled_pair(row: MatchFeedbackRow) -> LabeledPair:
    return LabeledPair(
        feedback_id=row.id,
        components={c: (row.scores_snapshot or {}).get(c) for c in COMPONENTS},
        label=row.feedback_type == VERDICT_CONFIRMED,
        profile_name=(row.weights_snapshot or {}).get("name"),
    )


def collect_labeled_pairs(session_factory: sessionmaker,
                          profile_name: Optional[str] = None,
                          include_trained: bool = True) -> List[LabeledPair]:
    """
    Copy confirmed/rejected feedback into plain records.

    Args:
        profile_name: Only feedback on matches scored with this profile;
            None (or "global") takes all feedback.
        include_trained: Also return feedback used by an earlier training run.
    """
    with session_scope(session_factory) as session:
        query = select(MatchFeedbackRow).where(
            MatchFeedbackRow.feedback_type.in_([VERDICT_CONFIRMED, VERDICT_REJECTED]))
        if not include_trained:
            query = query.where(MatchFeedbackRow.training_status != TRAINING_TRAINED)
        rows = session.execute(query.order_by(MatchFeedbackRow.created_at)).scalars().all()
        pairs = [_labeled_pair(row) for row in rows]

    if profile_name and profile_name != GLOBAL_PROFILE:
        pairs = [p for p in pairs if p.profile_name == profile_name]
    return pairs


def export_pending_pairs(session_factory: sessionmaker, limit: int = 1000,
                         batch_id: Optional[str] = None) -> ExportBatch:
    """
    Hand pending confirmed/rejected labels to an external trainer.

    Up to ``limit`` of the oldest pending labels are copied out and marked
    exported under one batch id, in the same transaction, so two exports
    never return the same label. Exported labels still count for
    retraining here; a retrain marks them trained.
    """
    with session_scope(session_factory) as session:
        rows = session.execute(
            select(MatchFeedbackRow)
            .where(MatchFeedbackRow.feedback_type.in_([VERDICT_CONFIRMED, VERDICT_REJECTED]),
                   MatchFeedbackRow.training_status == TRAINING_PENDING)
            .order_by(MatchFeedbackRow.created_at)
            .limit(limit)
            .with_for_update()
        ).scalars().all()
        if not rows:
            return ExportBatch(None, [])

        batch_id = batch_id or str(uuid.uuid4())
        pairs = [_labeled_pair(row) for row in rows]
        session.execute(
            update(MatchFeedbackRow)
            .where(MatchFeedbackRow.id.in_([p.feedback_id for p in pairs]),
                   MatchFeedbackRow.training_status == TRAINING_PENDING)
            .values(training_status=TRAINING_EXPORTED, training_batch_id=batch_id)
        )

    logger.info(f"Exported {len(pairs)} labels as batch {batch_id}")
    return ExportBatch(batch_id, pairs)


def _score_matrix(pairs: Sequence[LabeledPair]):
    scores = np.array(
        [[np.nan if p.components.get(c) is None else float(p.components[c])
          for c in COMPONENTS] for p in pairs],
        dtype=np.float64,
    ).reshape(len(pairs), len(COMPONENTS))
    present = ~np.isnan(scores)
    return np.nan_to_num(scores), present


def _overall(scores: np.ndarray, present: np.ndarray, w: np.ndarray) -> np.ndarray:
    """Vectorized combine_components: weights renormalized over present components."""
    weight_sum = present.astype(np.float64) @ w
    weighted = scores @ w
    with np.errstate(invalid="ignore", divide="ignore"):
        overall = np.where(weight_sum > 0, weighted / weight_sum, 0.0)
    return overall


def _agreement(scores, present, labels, w, threshold) -> float:
    if labels.size == 0:
        return 0.0
    predicted = _overall(scores, present, w) >= threshold
    return float(np.mean(predicted == labels))


def evaluate(scores, present, labels, w, threshold) -> Dict[str, float]:
    """Accuracy, precision, recall and F1 of the thresholded overall score."""
    predicted = _overall(scores, present, w) >= threshold
    tp = int(np.sum(predicted & labels))
    fp = int(np.sum(predicted & ~labels))
    fn = int(np.sum(~predicted & labels))
    n = int(labels.size)
    accuracy = float(np.mean(predicted == labels)) if n else 0.0
    precision = tp / (tp + fp) if tp + fp else 0.0
    recall = tp / (tp + fn) if tp + fn else 0.0
    f1 = 2 * precision * recall / (precision + recall) if precision + recall else 0.0
    return {
        "accuracy": round(accuracy, 4),
        "precision": round(precision, 4),
        "recall": round(recall, 4),
        "f1_score": round(f1, 4),
    }


def train_weights(pairs: Sequence[LabeledPair],
                  base_weights: Mapping[str, float],
                  threshold: float = MIN_MATCH_SCORE,
                  holdout_fraction: float = 0.2,
                  seed: int = 0,
                  rounds: int = DEFAULT_ROUNDS,
                  step: float = DEFAULT_STEP,
                  progress: Optional[Callable[[int, float, Dict[str, float]], None]] = None
                  ) -> TrainingResult:
    """
    Coordinate ascent over the weight simplex.

    Each round tries moving every component's weight up and down by
    ``step`` (renormalizing), keeping any move that raises training
    agreement. A round with no improvement halves the step. Same pairs and
    seed give the same weights.

    Args:
        pairs: Labeled examples (copied, never mutated).
        base_weights: Starting point, usually the active profile's weights.
        threshold: Overall score at which a pair counts as predicted match.
        holdout_fraction: Share of pairs held out for evaluation.
        seed: Seed for the train/holdout split.
        progress: Called after every round with (round, agreement, weights).
    """
    pairs = list(pairs)
    n = len(pairs)
    order = np.random.default_rng(seed).permutation(n)
    n_holdout = int(round(n * holdout_fraction)) if n > 1 else 0
    holdout_idx, train_idx = order[:n_holdout], order[n_holdout:]

    scores, present = _score_matrix(pairs)
    labels = np.array([p.label for p in pairs], dtype=bool)
    train = (scores[train_idx], present[train_idx], labels[train_idx])

    normalized = normalize_weights(base_weights)
    w = np.array([normalized[c] for c in COMPONENTS], dtype=np.float64)
    best = _agreement(*train, w, threshold)
    history = [best]

    for round_no in range(1, rounds + 1):
        improved = False
        for i in range(len(COMPONENTS)):
            for delta in (step, -step):
                candidate = w.copy()
                candidate[i] = max(0.0, candidate[i] + delta)
                total = candidate.sum()
                if total <= 0:
                    continue
                candidate /= total
                agreement = _agreement(*train, candidate, threshold)
                if agreement > best:
                    best, w, improved = agreement, candidate, True
        history.append(best)
        if progress is not None:
            progress(round_no, best, dict(zip(COMPONENTS, w.tolist())))
        if not improved:
            step /= 2
            if step < MIN_STEP:
                break

    if n_holdout:
        metrics = evaluate(scores[holdout_idx], present[holdout_idx], labels[holdout_idx],
                           w, threshold)
    else:
        metrics = evaluate(*train, w, threshold)
    metrics["training_samples"] = int(len(train_idx))

    weights = {c: round(float(v), 4) for c, v in zip(COMPONENTS, w)}
    logger.info(f"Training finished: agreement {best:.3f} on {len(train_idx)} pairs, "
                f"holdout accuracy {metrics['accuracy']:.3f} on {n_holdout}")
    return TrainingResult(weights, metrics, len(train_idx), n_holdout, history)


def training_stats(session_factory: sessionmaker,
                   min_per_class: int = MIN_TRAINING_SAMPLES_PER_CLASS) -> Dict:
    """Label counts and whether there is enough data to retrain."""
    with session_scope(session_factory) as session:
        by_type = dict(session.execute(
            select(MatchFeedbackRow.feedback_type, func.count())
            .group_by(MatchFeedbackRow.feedback_type)
        ).all())
        by_status = dict(session.execute(
            select(MatchFeedbackRow.training_status, func.count())
            .group_by(MatchFeedbackRow.training_status)
        ).all())

    confirmed = by_type.get(VERDICT_CONFIRMED, 0)
    rejected = by_type.get(VERDICT_REJECTED, 0)
    return {
        "confirmed": confirmed,
        "rejected": rejected,
        "unsure": by_type.get(VERDICT_UNSURE, 0),
        "pending": by_status.get(TRAINING_PENDING, 0),
        "exported": by_status.get(TRAINING_EXPORTED, 0),
        "trained": by_status.get(TRAINING_TRAINED, 0),
        "min_per_class": min_per_class,
        "ready": confirmed >= min_per_class and rejected >= min_per_class,
    }


class WeightTuner:
    """
    Retrains a named profile from the stored feedback.

    The result is a new inactive version linked to the version it started
    from; promote it through WeightProfileRepository.promote.
    """

    def __init__(self, session_factory: sessionmaker,
                 profiles: Optional[WeightProfileRepository] = None,
                 min_per_class: int = MIN_TRAINING_SAMPLES_PER_CLASS,
                 threshold: float = MIN_MATCH_SCORE):
        self.session_factory = session_factory
        self.profiles = profiles or WeightProfileRepository(session_factory)
        self.min_per_class = min_per_class
        self.threshold = threshold

    def retrain(self, name: str = GLOBAL_PROFILE, seed: int = 0,
                holdout_fraction: float = 0.2,
                progress: Optional[Callable[[int, float, Dict[str, float]], None]] = None,
                notes: Optional[str] = None):
        pairs = collect_labeled_pairs(self.session_factory, name)
        positives = sum(1 for p in pairs if p.label)
        negatives = len(pairs) - positives
        if positives < self.min_per_class or negatives < self.min_per_class:
            raise InsufficientTrainingData(
                f"Need {self.min_per_class} confirmed and {self.min_per_class} rejected "
                f"labels for {name}, have {positives} and {negatives}")

        active = self.profiles.get_active(name)
        base = active or DEFAULT_PROFILES.get(name) or DEFAULT_PROFILES[GLOBAL_PROFILE]

        result = train_weights(pairs, base.weights, self.threshold,
                               holdout_fraction=holdout_fraction, seed=seed,
                               progress=progress)

        profile = self.profiles.create_version(
            name, result.weights,
            thresholds=base.thresholds,
            metrics=result.metrics,
            parent_id=active.id if active is not None else None,
            notes=notes or f"retrained on {len(pairs)} labels",
            trained=True,
        )

        batch_id = str(uuid.uuid4())
        with session_scope(self.session_factory) as session:
            session.execute(
                update(MatchFeedbackRow)
                .where(MatchFeedbackRow.id.in_([p.feedback_id for p in pairs]))
                .values(training_status=TRAINING_TRAINED, training_batch_id=batch_id)
            )

        logger.info(f"Retrained {name}: v{profile.version} (inactive), batch {batch_id}, "
                    f"metrics {result.metrics}")
        return profile
