"""
MatchingService: the operations the rest of the platform calls.

    build_fingerprint         queue a photo for fingerprinting, return its id
    retry_failed              re-queue every failed fingerprint
    find_matches_for_fingerprint   cascade search + match persistence
    get_matches_for_case / get_matches_for_user / get_match_stats_for_user
    mark_viewed / submit_feedback
    get_active_weight_profile / promote_weight_profile
    retrain_weights / training_stats / export_training_pairs

Cases and photo bytes live elsewhere; the service reaches them through the
CaseStore and PhotoStore protocols below.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Protocol

from sqlalchemy.orm import sessionmaker

from .config import FINGERPRINT_WORKERS, MIN_TRAINING_SAMPLES_PER_CLASS, ThresholdConfig
from .engine import CascadeSearchEngine, SearchOutcome
from .errors import PermissionDenied, ValidationError
from .extractors import ExtractorSet
from .features import STATUS_FAILED, VisualFingerprint, utcnow
from .fingerprint import FingerprintBuilder
from .feedback import validate_feedback
from .index_builder import CandidatePopulation
from .lifecycle import side_for_cases, status_for_user
from .models import PhotoMatchRow
from .repository import FingerprintRepository, MatchRepository, WeightProfileRepository
from .scoring import PairwiseScorer
from .tuning import ExportBatch, WeightTuner, export_pending_pairs, training_stats
from .weights import WeightProfile, WeightProfileProvider

logger = logging.getLogger(__name__)


class CaseStore(Protocol):
    def case_ids_for_user(self, user_id: str) -> List[str]:
        ...

    def category_of(self, case_id: str) -> Optional[str]:
        ...


class PhotoStore(Protocol):
    def get_bytes(self, photo_id: str) -> bytes:
        ...


@dataclass
class UserMatch:
    """A match as one of its case owners sees it."""

    match: PhotoMatchRow
    side: Optional[str]
    status: str


class MatchingService:
    """
    Args:
        session_factory: Bound sessionmaker (see db.make_session_factory).
        case_store: Case ownership and categories.
        photo_store: Photo bytes, needed for retries and id-only builds.
        extractors: Extractor set for the fingerprint builder.
        threshold_config: Global and per-category thresholds.
        max_workers: Fingerprint build threads.
    """

    def __init__(self, session_factory: sessionmaker, case_store: CaseStore,
                 photo_store: Optional[PhotoStore] = None,
                 extractors: Optional[ExtractorSet] = None,
                 threshold_config: Optional[ThresholdConfig] = None,
                 engine_options: Optional[Dict] = None,
                 max_workers: int = FINGERPRINT_WORKERS,
                 min_training_samples: int = MIN_TRAINING_SAMPLES_PER_CLASS):
        self.session_factory = session_factory
        self.case_store = case_store
        self.photo_store = photo_store

        self.fingerprints = FingerprintRepository(session_factory)
        self.matches = MatchRepository(session_factory)
        self.profiles = WeightProfileRepository(session_factory)

        self.provider = WeightProfileProvider(loader=self.profiles.get_active)
        self.scorer = PairwiseScorer(self.provider, threshold_config)
        self.engine = CascadeSearchEngine(self.scorer, **(engine_options or {}))
        self.builder = FingerprintBuilder(extractors, store=self.fingerprints)
        self.tuner = WeightTuner(session_factory, self.profiles, min_training_samples)

        self._executor = ThreadPoolExecutor(max_workers=max_workers,
                                            thread_name_prefix="fingerprint")
        self._futures: Dict[str, Future] = {}
        self._population: Optional[CandidatePopulation] = None
        self._population_version = None
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Fingerprints
    # ------------------------------------------------------------------

    def build_fingerprint(self, photo_id: str, case_id: str,
                          image_bytes: Optional[bytes] = None,
                          case_category: Optional[str] = None) -> str:
        """
        Store a pending fingerprint and build it in the background.

        Returns the fingerprint id immediately. Without ``image_bytes`` the
        photo is read from the photo store by the worker.
        """
        if case_category is None:
            case_category = self.case_store.category_of(case_id)
        pending = self.fingerprints.create_pending(photo_id, case_id, case_category)
        if pending.completed:
            logger.info(f"Photo {photo_id} already fingerprinted as {pending.id}")
            return pending.id
        self._submit(pending.id, photo_id, case_id, image_bytes, case_category)
        return pending.id

    def wait_for(self, fingerprint_id: str, timeout: Optional[float] = None) -> VisualFingerprint:
        """Block until a queued build finishes; return the stored fingerprint."""
        with self._lock:
            future = self._futures.get(fingerprint_id)
        if future is not None:
            future.result(timeout=timeout)
        return self.fingerprints.get(fingerprint_id)

    def retry_failed(self) -> List[str]:
        """Queue every failed fingerprint for another build."""
        if self.photo_store is None:
            raise ValidationError("Retrying failed fingerprints needs a photo store")
        failed = self.fingerprints.list_failed()
        for fp in failed:
            self._submit(fp.id, fp.photo_id, fp.case_id, None, fp.case_category)
        logger.info(f"Re-queued {len(failed)} failed fingerprints")
        return [fp.id for fp in failed]

    def _submit(self, fingerprint_id: str, photo_id: str, case_id: str,
                image_bytes: Optional[bytes], case_category: Optional[str]) -> None:
        future = self._executor.submit(self._build_job, fingerprint_id, photo_id,
                                       case_id, image_bytes, case_category)
        with self._lock:
            self._futures[fingerprint_id] = future
        future.add_done_callback(lambda _f: self._forget(fingerprint_id, _f))

    def _forget(self, fingerprint_id: str, future: Future) -> None:
        with self._lock:
            if self._futures.get(fingerprint_id) is future:
                del self._futures[fingerprint_id]

    def _build_job(self, fingerprint_id: str, photo_id: str, case_id: str,
                   image_bytes: Optional[bytes], case_category: Optional[str]) -> VisualFingerprint:
        if image_bytes is None:
            try:
                image_bytes = self.photo_store.get_bytes(photo_id)
            except Exception as e:
                logger.error(f"Could not read photo {photo_id}: {e}")
                return self.fingerprints.save_fingerprint(VisualFingerprint(
                    id=fingerprint_id, photo_id=photo_id, case_id=case_id,
                    processing_status=STATUS_FAILED,
                    processing_error=f"photo unavailable: {e}",
                    case_category=case_category, created_at=utcnow(),
                ))

        return self.builder.build(photo_id, case_id, image_bytes,
                                  case_category, fingerprint_id=fingerprint_id)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def _candidate_population(self) -> CandidatePopulation:
        """
        Completed fingerprints as a search population, cached per version.

        The version is read from the database on every search, so builds
        finished by other processes or service instances are picked up.
        """
        version = self.fingerprints.population_version()
        with self._lock:
            if self._population is not None and self._population_version == version:
                return self._population
        population = CandidatePopulation(self.fingerprints.list_completed())
        # A build finished while listing; serve this one uncached
        if self.fingerprints.population_version() == version:
            with self._lock:
                self._population = population
                self._population_version = version
        else:
            logger.debug("Candidate set changed while listing; not caching")
        return population

    def find_matches_for_fingerprint(self, fingerprint_id: str,
                                     max_results: int = 20,
                                     persist: bool = True) -> SearchOutcome:
        """
        Run the cascade for a stored fingerprint and record every match.

        Raises:
            FingerprintNotFound: Unknown fingerprint id.
            ScoringRefused: The fingerprint is not completed.
        """
        query = self.fingerprints.get(fingerprint_id)
        outcome = self.engine.search(query, self._candidate_population(), max_results)

        if persist:
            for match in outcome.matches:
                target = self.fingerprints.get(match.fingerprint_id)
                self.matches.upsert(query, target, match.score)
            if outcome.matches:
                logger.info(f"Recorded {len(outcome.matches)} matches for "
                            f"fingerprint {fingerprint_id}")
        return outcome

    # ------------------------------------------------------------------
    # Matches
    # ------------------------------------------------------------------

    def get_matches_for_case(self, case_id: str) -> List[PhotoMatchRow]:
        return self.matches.for_cases([case_id])

    def get_matches_for_user(self, user_id: str,
                             statuses: Optional[Iterable[str]] = None) -> List[UserMatch]:
        """Every match touching one of the user's cases, with the status they see."""
        case_ids = self.case_store.case_ids_for_user(user_id)
        views = []
        for row in self.matches.for_cases(case_ids):
            side = side_for_cases(row, case_ids)
            views.append(UserMatch(row, side, status_for_user(row, side)))
        if statuses:
            wanted = set(statuses)
            views = [v for v in views if v.status in wanted]
        return views

    def get_match_stats_for_user(self, user_id: str) -> Dict[str, int]:
        return self.matches.stats_for_cases(self.case_store.case_ids_for_user(user_id))

    def mark_viewed(self, match_id: str, user_id: str) -> PhotoMatchRow:
        return self.matches.mark_viewed(match_id, self.case_store.case_ids_for_user(user_id))

    def submit_feedback(self, match_id: str, user_id: str, verdict: str,
                        reasons: Optional[Iterable[str]] = None,
                        explanation: Optional[str] = None) -> Dict:
        """
        Record one user's verdict on a match.

        Raises:
            ValidationError: Bad verdict or reasons, or the side's verdict
                is already final.
            PermissionDenied: The user owns neither case.
            MatchNotFound: Unknown match id.
        """
        request = validate_feedback(verdict, reasons, explanation)
        owned = self.case_store.case_ids_for_user(user_id)
        if not owned:
            raise PermissionDenied(f"User {user_id} owns no cases")
        feedback, match = self.matches.record_feedback(match_id, user_id, owned, request)
        side = side_for_cases(match, owned)
        return {
            "feedback_id": feedback.id,
            "match_id": match.id,
            "status": match.status,
            "user_status": status_for_user(match, side),
        }

    # ------------------------------------------------------------------
    # Weights
    # ------------------------------------------------------------------

    def get_active_weight_profile(self, name: str) -> WeightProfile:
        """
        Active version of a named profile.

        Raises:
            WeightProfileNotFound: No profile by that name; scoring falls
                back to global, lookups by name do not.
        """
        return self.provider.require(name)

    def promote_weight_profile(self, profile_id: str) -> WeightProfile:
        profile = self.profiles.promote(profile_id)
        self.provider.invalidate(profile.name)
        return profile

    def retrain_weights(self, name: str, **kwargs) -> WeightProfile:
        return self.tuner.retrain(name, **kwargs)

    def training_stats(self) -> Dict:
        return training_stats(self.session_factory, self.tuner.min_per_class)

    def export_training_pairs(self, limit: int = 1000) -> ExportBatch:
        return export_pending_pairs(self.session_factory, limit)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
