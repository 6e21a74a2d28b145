"""
Cascade search over existing fingerprints.

Narrows a candidate population down to a ranked shortlist without scoring
every pair, cheapest filter first:
    1. Entity gate: drop candidates confidently classified as a different
       kind of object; ambiguous classifications on either side pass.
    2. Coarse buckets: only candidates in the embedding buckets nearest to
       the query go on; widen to neighboring buckets when too few remain.
       Candidates without a comparable embedding always pass.
    3. Full pairwise score for the survivors.
    4. Threshold, best photo per case, rank, truncate.

Bucket expansion trade-off: the query probes its CASCADE_NPROBE nearest
buckets, then CASCADE_EXPANSION_STEP more per round, for at most
CASCADE_MAX_EXPANSIONS rounds while fewer than CASCADE_MIN_CANDIDATES
candidates have been found. A true match sitting just across a bucket
boundary is recovered as long as its bucket is among the nearest
nprobe + step * rounds centroids. Populations under BUCKET_MIN_POPULATION
use a single bucket, so small deployments lose no recall at all.

Search is read-only; any number of searches may run concurrently.
"""

import time
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Set, Union

from .config import (
    CASCADE_EXPANSION_STEP, CASCADE_MAX_EXPANSIONS, CASCADE_MIN_CANDIDATES,
    CASCADE_NPROBE, ENTITY_CONFIDENCE_FLOOR,
)
from .errors import ScoringRefused
from .features import VisualFingerprint
from .index_builder import CandidatePopulation
from .scoring import (
    ComponentScores, PairwiseScorer, PairScore, entity_is_confident, rank_results,
)

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_NO_CANDIDATES = "no_candidates"
STATUS_NO_MATCHES = "no_matches"


@dataclass
class SearchMatch:
    """One ranked result: the best-scoring photo of a target case."""

    case_id: str
    fingerprint_id: str
    photo_id: str
    overall_score: float
    match_type: str
    components: ComponentScores
    reasons: tuple
    created_at: Optional[datetime]
    score: PairScore


@dataclass
class SearchOutcome:
    status: str
    matches: List[SearchMatch] = field(default_factory=list)
    message: str = ""
    stats: Dict[str, float] = field(default_factory=dict)


class CascadeSearchEngine:
    """
    Multi-stage candidate search for one query fingerprint.

    Args:
        scorer: Pairwise scorer holding the weight profiles and thresholds.
        nprobe: Buckets probed before any expansion.
        min_candidates: Expansion continues while fewer candidates survive.
        expansion_step: Extra buckets probed per expansion round.
        max_expansions: Upper bound on expansion rounds.
    """

    def __init__(self, scorer: PairwiseScorer,
                 nprobe: int = CASCADE_NPROBE,
                 min_candidates: int = CASCADE_MIN_CANDIDATES,
                 expansion_step: int = CASCADE_EXPANSION_STEP,
                 max_expansions: int = CASCADE_MAX_EXPANSIONS,
                 entity_floor: float = ENTITY_CONFIDENCE_FLOOR):
        self.scorer = scorer
        self.nprobe = nprobe
        self.min_candidates = min_candidates
        self.expansion_step = expansion_step
        self.max_expansions = max_expansions
        self.entity_floor = entity_floor

    def search(self, query: VisualFingerprint,
               candidates: Union[CandidatePopulation, Sequence[VisualFingerprint]],
               max_results: int = 20) -> SearchOutcome:
        """
        Find the cases whose photos most likely show the query's object.

        Args:
            query: Completed fingerprint of the new photo.
            candidates: Existing fingerprints, or a prebuilt population.
            max_results: Maximum number of cases returned.

        Returns:
            SearchOutcome with matches ranked by overall score, ties broken
            by the newest candidate first.

        Raises:
            ScoringRefused: The query fingerprint is not completed.
        """
        start = time.perf_counter()
        if not query.completed:
            raise ScoringRefused(
                f"Query fingerprint {query.id} is {query.processing_status}; "
                f"search requires a completed fingerprint")

        population = candidates if isinstance(candidates, CandidatePopulation) \
            else CandidatePopulation(candidates)
        stats: Dict[str, float] = {"population": len(population)}

        eligible = [
            i for i, fp in enumerate(population.fingerprints)
            if fp.completed and fp.id != query.id and fp.case_id != query.case_id
        ]
        stats["eligible"] = len(eligible)
        if not eligible:
            return SearchOutcome(STATUS_NO_CANDIDATES,
                                 message="No candidate fingerprints to compare against",
                                 stats=stats)

        # Stage 1: entity gate
        gated = [i for i in eligible if self._passes_entity_gate(query, population.fingerprints[i])]
        stats["after_entity_gate"] = len(gated)

        # Stage 2: coarse buckets
        shortlist = self._bucket_filter(query, population, gated, stats)
        stats["after_buckets"] = len(shortlist)

        # Stage 3: full pairwise score
        best_per_case: Dict[str, SearchMatch] = {}
        refused = 0
        for position in shortlist:
            candidate = population.fingerprints[position]
            try:
                pair = self.scorer.score(query, candidate)
            except ScoringRefused as e:
                refused += 1
                logger.debug(f"Skipping candidate {candidate.id}: {e}")
                continue

            # Stage 4: threshold
            if not pair.qualifies:
                continue

            match = SearchMatch(
                case_id=candidate.case_id,
                fingerprint_id=candidate.id,
                photo_id=candidate.photo_id,
                overall_score=pair.overall,
                match_type=pair.match_type,
                components=pair.components,
                reasons=pair.reasons,
                created_at=candidate.created_at,
                score=pair,
            )
            current = best_per_case.get(candidate.case_id)
            if current is None or rank_results([match, current])[0] is match:
                best_per_case[candidate.case_id] = match

        stats["scored"] = len(shortlist) - refused
        stats["refused"] = refused

        matches = rank_results(list(best_per_case.values()))[:max_results]
        stats["matched"] = len(matches)
        stats["elapsed_ms"] = round((time.perf_counter() - start) * 1000, 2)

        logger.info(
            f"Search complete: {len(eligible)} candidates -> {len(gated)} gated -> "
            f"{len(shortlist)} bucketed -> {len(matches)} results"
        )

        if not matches:
            return SearchOutcome(STATUS_NO_MATCHES,
                                 message="No candidate cleared the match threshold",
                                 stats=stats)
        return SearchOutcome(STATUS_OK, matches,
                             message=f"Found {len(matches)} potential matches",
                             stats=stats)

    def _passes_entity_gate(self, query: VisualFingerprint,
                            candidate: VisualFingerprint) -> bool:
        if not (entity_is_confident(query, self.entity_floor)
                and entity_is_confident(candidate, self.entity_floor)):
            return True
        return query.entity_type == candidate.entity_type

    def _bucket_filter(self, query: VisualFingerprint, population: CandidatePopulation,
                       gated: List[int], stats: Dict[str, float]) -> List[int]:
        stats["buckets_probed"] = 0
        if not query.has_embedding:
            return gated

        dim = query.neural_embedding.shape[0]
        index = population.bucket_index(dim)
        if index is None:
            return gated

        gated_set = set(gated)
        passthrough = [
            i for i in gated
            if not population.fingerprints[i].has_embedding
            or population.fingerprints[i].neural_embedding.shape != (dim,)
        ]

        selected: Set[int] = set()
        probe = self.nprobe
        rounds = 0
        while True:
            buckets = index.nearest_buckets(query.neural_embedding, probe)
            for bucket in buckets:
                selected.update(p for p in index.members(bucket) if p in gated_set)
            stats["buckets_probed"] = len(buckets)

            enough = len(selected) + len(passthrough) >= self.min_candidates
            exhausted = len(buckets) >= index.n_buckets
            if enough or exhausted or rounds >= self.max_expansions:
                break
            rounds += 1
            probe += self.expansion_step

        stats["expansions"] = rounds
        return sorted(selected) + passthrough
