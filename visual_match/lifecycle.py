"""
PhotoMatch state machine.

    pending --view--> viewed --feedback--> confirmed | rejected | unsure

Each case owner gives their own verdict. The match status is derived from
both verdicts:

    both rejected                          -> rejected
    any confirmed, no rejection            -> confirmed
    any unsure, or confirmed vs rejected   -> unsure
    one side rejected, other side silent   -> viewed (still open)

A side may change its verdict while it is empty or unsure, and either
side may revise while the match as a whole is unsure, so a confirm/reject
conflict can still settle. Otherwise a confirmed or rejected verdict is
final. A user who rejected a match always sees it as rejected,
whatever the other side says.

Functions here mutate a match row in memory; committing is the caller's
job (repository.py).
"""

import logging
from typing import Iterable, Optional

from .features import utcnow

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_VIEWED = "viewed"
STATUS_CONFIRMED = "confirmed"
STATUS_REJECTED = "rejected"
STATUS_UNSURE = "unsure"

VERDICT_CONFIRMED = "confirmed"
VERDICT_REJECTED = "rejected"
VERDICT_UNSURE = "unsure"
VALID_VERDICTS = (VERDICT_CONFIRMED, VERDICT_REJECTED, VERDICT_UNSURE)

RESOLVED_STATUSES = (STATUS_CONFIRMED, STATUS_REJECTED)

SIDE_SOURCE = "source"
SIDE_TARGET = "target"


def side_for_cases(match, owned_case_ids: Iterable[str]) -> Optional[str]:
    """Which side of the match the owner of ``owned_case_ids`` is on."""
    owned = set(owned_case_ids)
    if match.source_case_id in owned:
        return SIDE_SOURCE
    if match.target_case_id in owned:
        return SIDE_TARGET
    return None


def verdict_of(match, side: str) -> Optional[str]:
    return match.source_feedback if side == SIDE_SOURCE else match.target_feedback


def can_submit(match, side: str) -> bool:
    """A side may (re)submit while its own verdict or the match is open."""
    if match.status == STATUS_UNSURE:
        return True
    return verdict_of(match, side) in (None, VERDICT_UNSURE)


def aggregate_status(source: Optional[str], target: Optional[str],
                     current: str = STATUS_VIEWED) -> str:
    """Match status derived from the two per-side verdicts."""
    verdicts = [v for v in (source, target) if v is not None]
    if not verdicts:
        return current

    rejections = verdicts.count(VERDICT_REJECTED)
    if rejections == 2:
        return STATUS_REJECTED
    if VERDICT_CONFIRMED in verdicts and rejections == 0:
        return STATUS_CONFIRMED
    if VERDICT_UNSURE in verdicts or VERDICT_CONFIRMED in verdicts:
        return STATUS_UNSURE
    return STATUS_VIEWED


def mark_viewed(match) -> bool:
    """Move a pending match to viewed. Returns False if nothing changed."""
    if match.status != STATUS_PENDING:
        return False
    match.status = STATUS_VIEWED
    match.viewed_at = utcnow()
    return True


def apply_verdict(match, side: str, verdict: str) -> str:
    """
    Record one side's verdict and recompute the status.

    Callers check ``can_submit`` first. Returns the new status.
    """
    if side == SIDE_SOURCE:
        match.source_feedback = verdict
    else:
        match.target_feedback = verdict

    if match.viewed_at is None:
        match.viewed_at = utcnow()

    previous = match.status
    base = STATUS_VIEWED if previous in (STATUS_PENDING,) + RESOLVED_STATUSES else previous
    match.status = aggregate_status(match.source_feedback, match.target_feedback, base)

    if match.status in RESOLVED_STATUSES:
        if previous != match.status or match.resolved_at is None:
            match.resolved_at = utcnow()
    else:
        match.resolved_at = None

    if previous != match.status:
        logger.info(f"Match {match.id}: {previous} -> {match.status} "
                    f"({side} said {verdict})")
    return match.status


def status_for_user(match, side: Optional[str]) -> str:
    """The status shown to one side of the match."""
    if side is not None and verdict_of(match, side) == VERDICT_REJECTED:
        return STATUS_REJECTED
    return match.status
