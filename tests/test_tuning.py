"""Tests for feedback-driven weight tuning and profile promotion."""

import threading

import pytest
from sqlalchemy import select

from conftest import make_fingerprint, scored_pair
from visual_match.db import session_scope
from visual_match.errors import InsufficientTrainingData, WeightPromotionConflict
from visual_match.feedback import validate_feedback
from visual_match.models import MatchFeedbackRow
from visual_match.repository import MatchRepository, WeightProfileRepository
from visual_match.tuning import (
    LabeledPair, WeightTuner, collect_labeled_pairs, export_pending_pairs, train_weights,
    training_stats,
)
from visual_match.weights import DEFAULT_PROFILES

GLOBAL_WEIGHTS = DEFAULT_PROFILES["global"].weights

# Matches with a high hash score but a weak embedding were wrong; the
# embedding separates the labels, the hash misleads.
POSITIVE = {"hash": 20.0, "neural": 90.0}
NEGATIVE = {"hash": 95.0, "neural": 42.0}


def labeled(n_positive, n_negative):
    pairs = [LabeledPair(f"pos-{i}", POSITIVE, True) for i in range(n_positive)]
    pairs += [LabeledPair(f"neg-{i}", NEGATIVE, False) for i in range(n_negative)]
    return pairs


def seed_feedback(session_factory, n_positive, n_negative, unsure=0):
    matches = MatchRepository(session_factory)
    plan = ([("confirmed", POSITIVE)] * n_positive + [("rejected", NEGATIVE)] * n_negative
            + [("unsure", POSITIVE)] * unsure)
    for i, (verdict, components) in enumerate(plan):
        a = make_fingerprint(f"a{i}", f"case-{i:03d}-a")
        b = make_fingerprint(f"b{i}", f"case-{i:03d}-b")
        match = matches.upsert(a, b, scored_pair(70, **components))
        reasons = ["different_item_type"] if verdict == "rejected" else None
        matches.record_feedback(match.id, f"user-{i}", [a.case_id],
                                validate_feedback(verdict, reasons))


class TestTrainWeights:
    def test_moves_weight_to_separating_component(self):
        result = train_weights(labeled(20, 20), GLOBAL_WEIGHTS, threshold=60,
                               holdout_fraction=0.25)
        assert result.weights["hash"] < GLOBAL_WEIGHTS["hash"]
        assert result.weights["neural"] > result.weights["hash"]
        assert sum(result.weights.values()) == pytest.approx(1.0, abs=1e-3)
        assert result.metrics["accuracy"] == 1.0
        assert result.history[-1] > result.history[0]

    def test_holdout_split(self):
        result = train_weights(labeled(10, 10), GLOBAL_WEIGHTS, threshold=60,
                               holdout_fraction=0.2)
        assert result.holdout_samples == 4
        assert result.train_samples == 16
        assert result.metrics["training_samples"] == 16

    def test_no_holdout_evaluates_on_training_set(self):
        result = train_weights(labeled(5, 5), GLOBAL_WEIGHTS, threshold=60,
                               holdout_fraction=0.0)
        assert result.holdout_samples == 0
        assert result.metrics["accuracy"] == 1.0

    def test_deterministic(self):
        first = train_weights(labeled(12, 9), GLOBAL_WEIGHTS, threshold=60, seed=3)
        second = train_weights(labeled(12, 9), GLOBAL_WEIGHTS, threshold=60, seed=3)
        assert first.weights == second.weights
        assert first.metrics == second.metrics

    def test_progress_reported_per_round(self):
        rounds = []
        train_weights(labeled(6, 6), GLOBAL_WEIGHTS, threshold=60, rounds=3,
                      progress=lambda r, agreement, w: rounds.append((r, agreement)))
        assert [r for r, _ in rounds] == [1, 2, 3]
        assert all(0.0 <= a <= 1.0 for _, a in rounds)

    def test_input_not_mutated(self):
        pairs = labeled(4, 4)
        base = dict(GLOBAL_WEIGHTS)
        train_weights(pairs, base, threshold=60)
        assert base == dict(GLOBAL_WEIGHTS)
        assert pairs == labeled(4, 4)


class TestCollectLabeledPairs:
    def test_only_confirmed_and_rejected(self, session_factory):
        seed_feedback(session_factory, 2, 3, unsure=2)
        pairs = collect_labeled_pairs(session_factory)
        assert len(pairs) == 5
        assert sum(p.label for p in pairs) == 2
        positive = next(p for p in pairs if p.label)
        assert positive.components["neural"] == 90.0
        assert positive.components["ocr"] is None

    def test_filter_by_profile_name(self, session_factory):
        seed_feedback(session_factory, 2, 2)
        assert len(collect_labeled_pairs(session_factory, "global")) == 4
        assert collect_labeled_pairs(session_factory, "pet") == []

    def test_stats(self, session_factory):
        seed_feedback(session_factory, 3, 1, unsure=1)
        stats = training_stats(session_factory, min_per_class=2)
        assert stats["confirmed"] == 3
        assert stats["rejected"] == 1
        assert stats["unsure"] == 1
        assert stats["pending"] == 5
        assert stats["ready"] is False


class TestWeightTuner:
    def test_insufficient_data(self, session_factory):
        seed_feedback(session_factory, 5, 2)
        tuner = WeightTuner(session_factory, min_per_class=3, threshold=60)
        with pytest.raises(InsufficientTrainingData):
            tuner.retrain("global")

    def test_retrain_creates_inactive_child_version(self, session_factory):
        profiles = WeightProfileRepository(session_factory)
        profiles.seed_defaults()
        v1 = profiles.get_active("global")
        seed_feedback(session_factory, 6, 6)

        tuner = WeightTuner(session_factory, profiles, min_per_class=3, threshold=60)
        v2 = tuner.retrain("global", seed=1)

        assert v2.version == 2
        assert not v2.is_active
        assert v2.parent_id == v1.id
        assert v2.trained_at is not None
        assert "accuracy" in v2.metrics
        assert profiles.get_active("global").id == v1.id

        stats = training_stats(session_factory, min_per_class=3)
        assert stats["trained"] == 12
        assert stats["pending"] == 0

    def test_retrain_without_stored_profile(self, session_factory):
        seed_feedback(session_factory, 3, 3)
        profile = WeightTuner(session_factory, min_per_class=3, threshold=60).retrain("global")
        assert profile.version == 1
        assert profile.parent_id is None
        assert not profile.is_active


class TestPromotion:
    def make_versions(self, session_factory, count):
        profiles = WeightProfileRepository(session_factory)
        profiles.seed_defaults()
        created = [profiles.get_active("global")]
        for i in range(count):
            created.append(profiles.create_version(
                "global", {"neural": 0.5 + 0.1 * i, "hash": 0.5}, parent_id=created[-1].id))
        return profiles, created

    def test_seed_defaults_once(self, session_factory):
        profiles = WeightProfileRepository(session_factory)
        assert profiles.seed_defaults() == len(DEFAULT_PROFILES)
        assert profiles.seed_defaults() == 0
        assert profiles.get_active("pet").version == 1

    def test_promote_swaps_active(self, session_factory):
        profiles, (v1, v2) = self.make_versions(session_factory, 1)
        promoted = profiles.promote(v2.id)
        assert promoted.is_active
        assert profiles.get_active("global").id == v2.id
        assert [p.is_active for p in profiles.versions("global")] == [False, True]

    def test_promote_active_is_noop(self, session_factory):
        profiles, (v1,) = self.make_versions(session_factory, 0)
        assert profiles.promote(v1.id).id == v1.id

    def test_rollback_to_older_version_conflicts(self, session_factory):
        profiles, (v1, v2, v3) = self.make_versions(session_factory, 2)
        profiles.promote(v3.id)
        with pytest.raises(WeightPromotionConflict):
            profiles.promote(v2.id)
        assert profiles.get_active("global").id == v3.id

    def test_concurrent_promotions_leave_one_active(self, session_factory):
        profiles, (v1, v2, v3) = self.make_versions(session_factory, 2)
        barrier = threading.Barrier(2)
        errors = []

        def promote(profile_id):
            barrier.wait()
            try:
                profiles.promote(profile_id)
            except WeightPromotionConflict as e:
                errors.append(e)

        threads = [threading.Thread(target=promote, args=(p.id,)) for p in (v2, v3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        active = [p for p in profiles.versions("global") if p.is_active]
        assert [p.id for p in active] == [v3.id]
        assert len(errors) <= 1


class TestExportPendingPairs:
    def test_pending_labels_exported_once(self, session_factory):
        seed_feedback(session_factory, 2, 3, unsure=1)
        batch = export_pending_pairs(session_factory)
        assert batch.batch_id is not None
        assert len(batch.pairs) == 5
        assert sum(p.label for p in batch.pairs) == 2

        stats = training_stats(session_factory)
        assert stats["exported"] == 5
        assert stats["pending"] == 1

        again = export_pending_pairs(session_factory)
        assert again.batch_id is None
        assert again.pairs == []

    def test_batch_id_stored_on_exported_rows(self, session_factory):
        seed_feedback(session_factory, 2, 2)
        batch = export_pending_pairs(session_factory, batch_id="batch-7")
        with session_scope(session_factory) as session:
            rows = session.execute(select(MatchFeedbackRow)).scalars().all()
            assert {r.training_batch_id for r in rows} == {"batch-7"}
            assert {r.training_status for r in rows} == {"exported"}
        assert batch.batch_id == "batch-7"

    def test_limit_splits_batches(self, session_factory):
        seed_feedback(session_factory, 3, 3)
        first = export_pending_pairs(session_factory, limit=4)
        second = export_pending_pairs(session_factory, limit=4)
        assert len(first.pairs) == 4
        assert len(second.pairs) == 2
        assert first.batch_id != second.batch_id
        ids = [p.feedback_id for p in first.pairs + second.pairs]
        assert len(set(ids)) == 6

    def test_exported_labels_still_train(self, session_factory):
        seed_feedback(session_factory, 3, 3)
        export_pending_pairs(session_factory)
        assert len(collect_labeled_pairs(session_factory, include_trained=False)) == 6

        WeightTuner(session_factory, min_per_class=3, threshold=60).retrain("global")
        stats = training_stats(session_factory)
        assert stats["exported"] == 0
        assert stats["trained"] == 6
        assert collect_labeled_pairs(session_factory, include_trained=False) == []
