"""End-to-end tests for MatchingService over a SQLite database."""

import pytest

from conftest import FakeCaseStore, FakePhotoStore, encode_png
from visual_match.engine import STATUS_NO_CANDIDATES, STATUS_OK
from visual_match.errors import (
    PermissionDenied, ScoringRefused, ValidationError, WeightProfileNotFound,
)
from visual_match.features import STATUS_COMPLETED, STATUS_FAILED
from visual_match.lifecycle import (
    STATUS_CONFIRMED, STATUS_PENDING, STATUS_REJECTED, STATUS_UNSURE, STATUS_VIEWED,
)
from visual_match.service import MatchingService

WAIT = 60


@pytest.fixture
def case_store():
    return FakeCaseStore(
        owners={"alice": ["case-a"], "bob": ["case-b"], "carol": ["case-c"]},
        categories={"case-a": "wallet", "case-b": "wallet", "case-c": "keys"},
    )


@pytest.fixture
def photo_store():
    return FakePhotoStore()


@pytest.fixture
def service(session_factory, case_store, photo_store):
    svc = MatchingService(session_factory, case_store, photo_store, max_workers=2)
    yield svc
    svc.shutdown()


@pytest.fixture
def matched(service, red_square_image):
    """The same photo reported in case-a and case-b, with the match recorded."""
    png = encode_png(red_square_image)
    fid_a = service.build_fingerprint("photo-a", "case-a", png)
    fid_b = service.build_fingerprint("photo-b", "case-b", png)
    service.wait_for(fid_a, WAIT)
    service.wait_for(fid_b, WAIT)
    outcome = service.find_matches_for_fingerprint(fid_a)
    return outcome, service.get_matches_for_case("case-a")[0]


class TestFingerprints:
    def test_build_in_background(self, service, red_square_image):
        fid = service.build_fingerprint("photo-a", "case-a", encode_png(red_square_image))
        fp = service.wait_for(fid, WAIT)
        assert fp.processing_status == STATUS_COMPLETED
        assert fp.case_category == "wallet"
        assert fp.has_hashes

    def test_build_is_idempotent_per_photo(self, service, red_square_image):
        png = encode_png(red_square_image)
        fid = service.build_fingerprint("photo-a", "case-a", png)
        service.wait_for(fid, WAIT)
        assert service.build_fingerprint("photo-a", "case-a", png) == fid
        assert service.fingerprints.count_completed() == 1

    def test_bytes_read_from_photo_store(self, service, photo_store, blue_circle_image):
        photo_store.photos["photo-a"] = encode_png(blue_circle_image)
        fid = service.build_fingerprint("photo-a", "case-a")
        assert service.wait_for(fid, WAIT).processing_status == STATUS_COMPLETED

    def test_retry_failed(self, service, photo_store, blue_circle_image):
        fid = service.build_fingerprint("photo-a", "case-a")
        failed = service.wait_for(fid, WAIT)
        assert failed.processing_status == STATUS_FAILED
        assert "photo unavailable" in failed.processing_error

        photo_store.photos["photo-a"] = encode_png(blue_circle_image)
        assert service.retry_failed() == [fid]
        rebuilt = service.wait_for(fid, WAIT)
        assert rebuilt.processing_status == STATUS_COMPLETED
        assert rebuilt.processing_error is None

    def test_retry_needs_photo_store(self, session_factory, case_store):
        svc = MatchingService(session_factory, case_store, max_workers=1)
        try:
            with pytest.raises(ValidationError):
                svc.retry_failed()
        finally:
            svc.shutdown()


class TestSearch:
    def test_identical_photos_match(self, matched):
        outcome, match = matched
        assert outcome.status == STATUS_OK
        assert outcome.matches[0].case_id == "case-b"
        assert outcome.matches[0].match_type == "high_confidence"
        assert match.source_case_id == "case-a"
        assert match.category_match is True
        assert match.status == STATUS_PENDING

    def test_repeated_search_keeps_one_match(self, service, matched):
        outcome, match = matched
        fid_b = service.fingerprints.get_by_photo("photo-b").id
        service.find_matches_for_fingerprint(fid_b)
        rows = service.get_matches_for_case("case-b")
        assert [r.id for r in rows] == [match.id]

    def test_no_other_cases(self, service, red_square_image):
        fid = service.build_fingerprint("photo-a", "case-a", encode_png(red_square_image))
        service.wait_for(fid, WAIT)
        assert service.find_matches_for_fingerprint(fid).status == STATUS_NO_CANDIDATES

    def test_failed_fingerprint_refused(self, service):
        fid = service.build_fingerprint("photo-a", "case-a", b"not an image")
        service.wait_for(fid, WAIT)
        with pytest.raises(ScoringRefused):
            service.find_matches_for_fingerprint(fid)

    def test_sees_fingerprints_built_by_another_instance(self, service, session_factory,
                                                         case_store, red_square_image):
        png = encode_png(red_square_image)
        fid_a = service.build_fingerprint("photo-a", "case-a", png)
        fid_b = service.build_fingerprint("photo-b", "case-b", png)
        service.wait_for(fid_a, WAIT)
        service.wait_for(fid_b, WAIT)
        first = service.find_matches_for_fingerprint(fid_a, persist=False)
        assert [m.case_id for m in first.matches] == ["case-b"]

        other = MatchingService(session_factory, case_store, max_workers=1)
        try:
            fid_c = other.build_fingerprint("photo-c", "case-c", png)
            other.wait_for(fid_c, WAIT)
        finally:
            other.shutdown()

        second = service.find_matches_for_fingerprint(fid_a, persist=False)
        assert sorted(m.case_id for m in second.matches) == ["case-b", "case-c"]

    def test_dry_run_does_not_persist(self, service, red_square_image):
        png = encode_png(red_square_image)
        fid_a = service.build_fingerprint("photo-a", "case-a", png)
        fid_b = service.build_fingerprint("photo-b", "case-b", png)
        service.wait_for(fid_a, WAIT)
        service.wait_for(fid_b, WAIT)
        outcome = service.find_matches_for_fingerprint(fid_a, persist=False)
        assert outcome.matches
        assert service.get_matches_for_case("case-a") == []


class TestReview:
    def test_mark_viewed(self, service, matched):
        _, match = matched
        assert service.mark_viewed(match.id, "alice").status == STATUS_VIEWED
        with pytest.raises(PermissionDenied):
            service.mark_viewed(match.id, "carol")

    def test_confirmation(self, service, matched):
        _, match = matched
        result = service.submit_feedback(match.id, "alice", "confirmed")
        assert result["status"] == STATUS_CONFIRMED
        assert result["user_status"] == STATUS_CONFIRMED
        stats = service.get_match_stats_for_user("bob")
        assert stats == {"pending": 0, "confirmed": 1, "rejected": 0, "total": 1}

    def test_conflicting_verdicts(self, service, matched):
        _, match = matched
        service.submit_feedback(match.id, "alice", "confirmed")
        result = service.submit_feedback(match.id, "bob", "rejected", ["wrong_size"])
        assert result["status"] == STATUS_UNSURE
        assert result["user_status"] == STATUS_REJECTED

        [bob_view] = service.get_matches_for_user("bob", [STATUS_REJECTED])
        assert bob_view.side == "target"
        [alice_view] = service.get_matches_for_user("alice")
        assert alice_view.status == STATUS_UNSURE

    def test_conflict_can_be_settled(self, service, matched):
        _, match = matched
        service.submit_feedback(match.id, "alice", "confirmed")
        service.submit_feedback(match.id, "bob", "rejected", ["wrong_size"])
        result = service.submit_feedback(match.id, "alice", "rejected", ["wrong_size"])
        assert result["status"] == STATUS_REJECTED
        assert len(service.matches.feedback_for_match(match.id)) == 3
        with pytest.raises(ValidationError):
            service.submit_feedback(match.id, "bob", "confirmed")

    def test_both_reject(self, service, matched):
        _, match = matched
        service.submit_feedback(match.id, "alice", "rejected", ["wrong_color"])
        result = service.submit_feedback(match.id, "bob", "rejected", ["other"], "not mine")
        assert result["status"] == STATUS_REJECTED
        assert service.get_matches_for_case("case-a")[0].resolved_at is not None

    def test_final_verdict_locked(self, service, matched):
        _, match = matched
        service.submit_feedback(match.id, "alice", "confirmed")
        with pytest.raises(ValidationError):
            service.submit_feedback(match.id, "alice", "unsure")

    def test_unsure_can_be_revised(self, service, matched):
        _, match = matched
        service.submit_feedback(match.id, "alice", "unsure")
        assert service.submit_feedback(match.id, "alice", "confirmed")["status"] == STATUS_CONFIRMED

    def test_stranger_denied(self, service, matched):
        _, match = matched
        with pytest.raises(PermissionDenied):
            service.submit_feedback(match.id, "carol", "confirmed")
        with pytest.raises(PermissionDenied):
            service.submit_feedback(match.id, "nobody", "confirmed")

    def test_invalid_reason_rejected_before_storage(self, service, matched):
        _, match = matched
        with pytest.raises(ValidationError):
            service.submit_feedback(match.id, "alice", "rejected", ["ugly"])
        assert service.matches.feedback_for_match(match.id) == []
        assert service.training_stats()["pending"] == 0


class TestWeights:
    def test_defaults_without_stored_profiles(self, service):
        profile = service.get_active_weight_profile("global")
        assert profile.name == "global"
        assert profile.version == 0

    def test_unknown_profile_name_raises(self, service):
        with pytest.raises(WeightProfileNotFound):
            service.get_active_weight_profile("nonexistent")

    def test_named_profile_not_replaced_by_global(self, service):
        assert service.get_active_weight_profile("pet").name == "pet"
        service.profiles.seed_defaults()
        assert service.get_active_weight_profile("person").version == 1

    def test_promotion_visible_immediately(self, service):
        service.profiles.seed_defaults()
        assert service.get_active_weight_profile("global").version == 1
        v2 = service.profiles.create_version("global", {"neural": 0.7, "hash": 0.3})
        assert service.get_active_weight_profile("global").version == 1

        service.promote_weight_profile(v2.id)
        active = service.get_active_weight_profile("global")
        assert active.version == 2
        assert active.weights["neural"] == pytest.approx(0.7)

    def test_export_training_pairs(self, service, matched):
        _, match = matched
        service.submit_feedback(match.id, "alice", "confirmed", explanation="same wallet")
        batch = service.export_training_pairs()
        assert [p.label for p in batch.pairs] == [True]
        assert batch.pairs[0].components["hash"] == 100.0
        stats = service.training_stats()
        assert stats["exported"] == 1
        assert stats["pending"] == 0
        assert service.export_training_pairs().pairs == []

    def test_retrain_needs_labels(self, service):
        stats = service.training_stats()
        assert stats["ready"] is False
        with pytest.raises(ValidationError):
            service.retrain_weights("global")
