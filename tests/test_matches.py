"""Tests for match persistence, deduplication and the review lifecycle."""

import threading
from types import SimpleNamespace

import pytest

from conftest import make_fingerprint, scored_pair, triplet
from visual_match.errors import MatchNotFound, PermissionDenied, ValidationError
from visual_match.feedback import validate_feedback
from visual_match.lifecycle import (
    STATUS_CONFIRMED, STATUS_PENDING, STATUS_REJECTED, STATUS_UNSURE, STATUS_VIEWED,
    aggregate_status, apply_verdict, can_submit, mark_viewed, status_for_user,
)
from visual_match.repository import MatchRepository


def match_row(**fields):
    row = dict(id="m1", status=STATUS_PENDING, source_feedback=None,
               target_feedback=None, viewed_at=None, resolved_at=None,
               source_case_id="case-a", target_case_id="case-b")
    row.update(fields)
    return SimpleNamespace(**row)


@pytest.fixture
def fingerprints():
    return (make_fingerprint("fa", "case-a", hash_triplet=triplet()),
            make_fingerprint("fb", "case-b", hash_triplet=triplet()))


class TestUpsert:
    def test_canonical_order(self, session_factory, fingerprints):
        a, b = fingerprints
        repo = MatchRepository(session_factory)
        row = repo.upsert(b, a, scored_pair(70))
        assert (row.source_case_id, row.target_case_id) == ("case-a", "case-b")
        assert row.source_photo_id == a.photo_id
        assert row.status == STATUS_PENDING

    def test_one_row_per_case_pair(self, session_factory, fingerprints):
        a, b = fingerprints
        repo = MatchRepository(session_factory)
        first = repo.upsert(a, b, scored_pair(70))
        second = repo.upsert(b, a, scored_pair(65))
        assert first.id == second.id
        assert repo.count() == 1

    def test_lower_score_never_overwrites(self, session_factory, fingerprints):
        a, b = fingerprints
        repo = MatchRepository(session_factory)
        repo.upsert(a, b, scored_pair(80))
        row = repo.upsert(a, b, scored_pair(65))
        assert row.overall_score == 80

    def test_higher_score_updates_but_keeps_review_state(self, session_factory, fingerprints):
        a, b = fingerprints
        repo = MatchRepository(session_factory)
        created = repo.upsert(a, b, scored_pair(70))
        repo.mark_viewed(created.id, ["case-a"])
        row = repo.upsert(a, b, scored_pair(90, "high_confidence"))
        assert row.overall_score == 90
        assert row.match_type == "high_confidence"
        assert row.status == STATUS_VIEWED

    def test_stores_profile_used(self, session_factory, fingerprints):
        a, b = fingerprints
        row = MatchRepository(session_factory).upsert(a, b, scored_pair(70))
        assert row.weight_profile_name == "global"
        assert row.weights_used["neural"] == pytest.approx(0.35)

    def test_same_case_rejected(self, session_factory):
        a = make_fingerprint("x", "case-a")
        b = make_fingerprint("y", "case-a")
        with pytest.raises(ValidationError):
            MatchRepository(session_factory).upsert(a, b, scored_pair(70))

    def test_concurrent_upserts_keep_highest(self, session_factory, fingerprints):
        a, b = fingerprints
        repo = MatchRepository(session_factory)
        scores = [61.0, 88.5, 70.0, 92.25, 65.0, 79.0, 90.0, 84.0]
        errors = []
        barrier = threading.Barrier(len(scores))

        def worker(i, score):
            try:
                barrier.wait()
                source, target = (a, b) if i % 2 else (b, a)
                repo.upsert(source, target, scored_pair(score))
            except Exception as e:  # surfaced by the assertion below
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(i, s)) for i, s in enumerate(scores)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert repo.count() == 1
        assert repo.for_cases(["case-a"])[0].overall_score == 92.25


class TestAggregateStatus:
    def test_both_rejected(self):
        assert aggregate_status("rejected", "rejected") == STATUS_REJECTED

    def test_confirmed_without_rejection(self):
        assert aggregate_status("confirmed", None) == STATUS_CONFIRMED
        assert aggregate_status("confirmed", "confirmed") == STATUS_CONFIRMED
        assert aggregate_status("confirmed", "unsure") == STATUS_CONFIRMED

    def test_conflict_is_unsure(self):
        assert aggregate_status("confirmed", "rejected") == STATUS_UNSURE
        assert aggregate_status("unsure", "rejected") == STATUS_UNSURE
        assert aggregate_status(None, "unsure") == STATUS_UNSURE

    def test_single_rejection_stays_open(self):
        assert aggregate_status("rejected", None) == STATUS_VIEWED

    def test_no_verdicts_keeps_current(self):
        assert aggregate_status(None, None, STATUS_PENDING) == STATUS_PENDING


class TestTransitions:
    def test_mark_viewed_once(self):
        row = match_row()
        assert mark_viewed(row)
        first_seen = row.viewed_at
        assert row.status == STATUS_VIEWED
        assert not mark_viewed(row)
        assert row.viewed_at == first_seen

    def test_mark_viewed_does_not_reopen(self):
        row = match_row(status=STATUS_CONFIRMED)
        assert not mark_viewed(row)
        assert row.status == STATUS_CONFIRMED

    def test_resolution_sets_resolved_at(self):
        row = match_row(status=STATUS_VIEWED)
        apply_verdict(row, "source", "confirmed")
        assert row.status == STATUS_CONFIRMED
        assert row.resolved_at is not None

    def test_conflict_clears_resolution(self):
        row = match_row(status=STATUS_VIEWED)
        apply_verdict(row, "source", "confirmed")
        apply_verdict(row, "target", "rejected")
        assert row.status == STATUS_UNSURE
        assert row.resolved_at is None

    def test_resubmit_only_from_empty_or_unsure(self):
        row = match_row()
        assert can_submit(row, "source")
        apply_verdict(row, "source", "unsure")
        assert can_submit(row, "source")
        apply_verdict(row, "source", "confirmed")
        assert not can_submit(row, "source")

    def test_conflict_stays_open_for_both_sides(self):
        row = match_row(status=STATUS_VIEWED)
        apply_verdict(row, "source", "confirmed")
        apply_verdict(row, "target", "rejected")
        assert row.status == STATUS_UNSURE
        assert can_submit(row, "source")
        assert can_submit(row, "target")

    def test_conflict_settles_when_confirming_side_rejects(self):
        row = match_row(status=STATUS_VIEWED)
        apply_verdict(row, "source", "confirmed")
        apply_verdict(row, "target", "rejected")
        apply_verdict(row, "source", "rejected")
        assert row.status == STATUS_REJECTED
        assert row.resolved_at is not None
        assert not can_submit(row, "source")
        assert not can_submit(row, "target")

    def test_conflict_settles_when_rejecting_side_confirms(self):
        row = match_row(status=STATUS_VIEWED)
        apply_verdict(row, "source", "confirmed")
        apply_verdict(row, "target", "rejected")
        apply_verdict(row, "target", "confirmed")
        assert row.status == STATUS_CONFIRMED
        assert status_for_user(row, "target") == STATUS_CONFIRMED

    def test_rejecting_side_sees_rejected(self):
        row = match_row(status=STATUS_VIEWED)
        apply_verdict(row, "source", "rejected")
        assert row.status == STATUS_VIEWED
        assert status_for_user(row, "source") == STATUS_REJECTED
        assert status_for_user(row, "target") == STATUS_VIEWED


class TestRecordFeedback:
    def test_snapshot_kept(self, session_factory, fingerprints):
        a, b = fingerprints
        repo = MatchRepository(session_factory)
        match = repo.upsert(a, b, scored_pair(77))
        request = validate_feedback("rejected", ["wrong_color"], "mine has a strap")
        feedback, row = repo.record_feedback(match.id, "user-a", ["case-a"], request)

        assert feedback.is_source_user
        assert row.source_feedback == "rejected"
        stored = repo.feedback_for_match(match.id)
        assert len(stored) == 1
        assert stored[0].rejection_reasons == ["wrong_color"]
        assert stored[0].scores_snapshot["overall"] == 77
        assert stored[0].weights_snapshot["name"] == "global"

    def test_final_verdict_cannot_change(self, session_factory, fingerprints):
        a, b = fingerprints
        repo = MatchRepository(session_factory)
        match = repo.upsert(a, b, scored_pair(77))
        repo.record_feedback(match.id, "user-b", ["case-b"], validate_feedback("confirmed"))
        with pytest.raises(ValidationError):
            repo.record_feedback(match.id, "user-b", ["case-b"],
                                 validate_feedback("rejected", ["other"]))
        assert len(repo.feedback_for_match(match.id)) == 1

    def test_stranger_denied(self, session_factory, fingerprints):
        a, b = fingerprints
        repo = MatchRepository(session_factory)
        match = repo.upsert(a, b, scored_pair(77))
        with pytest.raises(PermissionDenied):
            repo.record_feedback(match.id, "user-z", ["case-z"], validate_feedback("confirmed"))
        assert repo.feedback_for_match(match.id) == []

    def test_unknown_match(self, session_factory):
        with pytest.raises(MatchNotFound):
            MatchRepository(session_factory).record_feedback(
                "missing", "user-a", ["case-a"], validate_feedback("confirmed"))

    def test_stats(self, session_factory, fingerprints):
        a, b = fingerprints
        c = make_fingerprint("fc", "case-c", hash_triplet=triplet())
        repo = MatchRepository(session_factory)
        first = repo.upsert(a, b, scored_pair(77))
        repo.upsert(a, c, scored_pair(66))
        repo.record_feedback(first.id, "user-a", ["case-a"], validate_feedback("confirmed"))
        stats = repo.stats_for_cases(["case-a"])
        assert stats == {"pending": 1, "confirmed": 1, "rejected": 0, "total": 2}
