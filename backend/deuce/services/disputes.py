"""Dispute & walkover ledger.

A dispute is opened when the opposing side rejects a submitted result. The
match is rolled back to SCHEDULED in the same transaction and stays unrated
until an administrator resolves the dispute.
"""

import logging
import uuid
from typing import Any, Dict, List, Mapping, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..exceptions import (
    DisputeAlreadyOpen,
    DisputeNotFound,
    DisputeNotOpen,
    InvalidScore,
    InvalidState,
    ValidationError,
)
from ..models import (
    DisputeCategory,
    DisputeResolutionAction,
    DisputeStatus,
    FinalSetFormat,
    Match,
    MatchDispute,
    MatchOutcome,
    MatchStatus,
    ResultSource,
    Sport,
    WalkoverReason,
)
from ..time_utils import utcnow
from . import outbox, results
from .eligibility import ACTIVE_DISPUTE_STATUSES, get_open_dispute, load_participants
from .validation import score_kwargs, validate_result

logger = logging.getLogger(__name__)

__all__ = [
    "get_open_dispute",
    "list_disputes",
    "open_dispute",
    "resolve_dispute",
    "submission_snapshot",
]


async def submission_snapshot(session: AsyncSession, match: Match) -> Dict[str, Any]:
    """Capture the result being rejected so it can be restored later."""

    entries = await results.load_score_entries(session, match.id)
    return {
        "submittedBy": match.result_submitted_by,
        "submittedAt": (
            match.result_submitted_at.isoformat() if match.result_submitted_at else None
        ),
        "proposedOutcome": (
            MatchOutcome(match.proposed_outcome).value if match.proposed_outcome else None
        ),
        "sideAScore": match.side_a_score,
        "sideBScore": match.side_b_score,
        "units": [
            {
                "A": e.side_a,
                "B": e.side_b,
                "tiebreakA": e.side_a_tiebreak,
                "tiebreakB": e.side_b_tiebreak,
            }
            for e in entries
        ],
        "kind": entries[0].kind.value if entries else None,
    }


async def open_dispute(
    session: AsyncSession,
    match: Match,
    *,
    raised_by: str,
    category: DisputeCategory,
    reason: Optional[str],
    disputed_result: Dict[str, Any],
    disputer_scores: Optional[List[Mapping[str, Any]]] = None,
) -> MatchDispute:
    if await get_open_dispute(session, match.id) is not None:
        raise DisputeAlreadyOpen(match.id)

    dispute = MatchDispute(
        id=uuid.uuid4().hex,
        match_id=match.id,
        raised_by=raised_by,
        category=category,
        reason=reason,
        status=DisputeStatus.OPEN,
        disputed_result=disputed_result,
        disputer_scores=[dict(u) for u in disputer_scores] if disputer_scores else None,
        created_at=utcnow(),
    )
    session.add(dispute)
    outbox.emit(
        session,
        outbox.MATCH_DISPUTED,
        match.id,
        {
            "matchId": match.id,
            "disputeId": dispute.id,
            "raisedBy": raised_by,
            "category": DisputeCategory(category).value,
        },
    )
    logger.info("Dispute %s opened on match %s by %s", dispute.id, match.id, raised_by)
    return dispute


async def get_dispute(session: AsyncSession, dispute_id: str) -> MatchDispute:
    dispute = await session.get(MatchDispute, dispute_id)
    if dispute is None:
        raise DisputeNotFound(dispute_id)
    return dispute


async def list_disputes(
    session: AsyncSession, status: Optional[DisputeStatus] = None
) -> List[MatchDispute]:
    stmt = select(MatchDispute)
    if status is not None:
        stmt = stmt.where(MatchDispute.status == status)
    stmt = stmt.order_by(MatchDispute.created_at, MatchDispute.id)
    return list((await session.execute(stmt)).scalars().all())


async def resolve_dispute(
    session: AsyncSession,
    dispute_id: str,
    admin_id: str,
    action: DisputeResolutionAction,
    *,
    outcome: Optional[MatchOutcome] = None,
    set_scores: Optional[List[Mapping[str, Any]]] = None,
    game_scores: Optional[List[Mapping[str, Any]]] = None,
    defaulting_player_id: Optional[str] = None,
    walkover_reason: WalkoverReason = WalkoverReason.NO_SHOW,
    notes: Optional[str] = None,
) -> MatchDispute:
    """Close a dispute and move its match to the state ``action`` calls for.

    Forced results are stored with ``ResultSource.ADMIN_FORCED`` so that
    recalculation can tell them apart from confirmed ones.
    """

    dispute = await get_dispute(session, dispute_id)
    if dispute.status not in ACTIVE_DISPUTE_STATUSES:
        raise DisputeNotOpen(dispute_id, DisputeStatus(dispute.status).value)

    match = await results.load_match(session, dispute.match_id)
    if match.status != MatchStatus.SCHEDULED:
        raise InvalidState(match.id, MatchStatus(match.status).value, "resolve a dispute on")
    participants = await load_participants(session, match.id)
    sport = Sport(match.sport)

    # Work out the forced result before touching anything.
    forced = None
    forced_outcome: Optional[MatchOutcome] = None
    if action in (DisputeResolutionAction.UPHOLD_ORIGINAL, DisputeResolutionAction.REJECT):
        units = dispute.disputed_result.get("units") or []
        if not units:
            raise InvalidScore("the disputed submission has no scores to uphold")
        forced = _validate_units(match, sport, units)
    elif action == DisputeResolutionAction.UPHOLD_DISPUTER:
        if not dispute.disputer_scores:
            raise InvalidScore("the disputer did not supply alternative scores")
        forced = _validate_units(match, sport, dispute.disputer_scores)
    elif action == DisputeResolutionAction.CUSTOM_SCORE:
        if set_scores or game_scores:
            forced = validate_result(
                sport,
                set_scores=set_scores,
                game_scores=game_scores,
                best_of=match.best_of,
                final_set_format=FinalSetFormat(match.final_set_format),
            )
        elif outcome is not None:
            forced_outcome = MatchOutcome(outcome)
        else:
            raise ValidationError("a custom resolution needs scores or an outcome")
    elif action == DisputeResolutionAction.AWARD_WALKOVER:
        if not defaulting_player_id:
            raise ValidationError("awarding a walkover needs the defaulting player")
        results.accepted_participant(match, participants, defaulting_player_id)

    now = utcnow()
    dispute.status = (
        DisputeStatus.REJECTED
        if action == DisputeResolutionAction.REJECT
        else DisputeStatus.RESOLVED
    )
    dispute.resolution_action = action
    dispute.resolved_by = admin_id
    dispute.resolved_at = now
    dispute.resolution_notes = notes

    if forced is not None:
        await results.replace_score_entries(session, match, forced.kind, forced.units)
        results.apply_validated(match, forced)
        forced_outcome = forced.outcome

    if forced_outcome is not None:
        results.complete_match(
            session,
            match,
            participants,
            outcome=forced_outcome,
            source=ResultSource.ADMIN_FORCED,
            confirmed_by=admin_id,
            now=now,
        )
    elif action == DisputeResolutionAction.AWARD_WALKOVER:
        await results.record_walkover(
            session,
            match,
            participants,
            reporter_id=admin_id,
            defaulting_player_id=defaulting_player_id,
            reason=walkover_reason,
            reason_detail=notes,
            now=now,
        )
    elif action == DisputeResolutionAction.VOID_MATCH:
        results.cancel(session, match, admin_id)
    # RESUBMIT leaves the match SCHEDULED for the participants to retry.

    outbox.emit(
        session,
        outbox.DISPUTE_RESOLVED,
        match.id,
        {
            "matchId": match.id,
            "disputeId": dispute.id,
            "action": DisputeResolutionAction(action).value,
            "resolvedBy": admin_id,
        },
    )
    await session.flush()
    logger.info(
        "Dispute %s on match %s resolved by %s with %s",
        dispute.id,
        match.id,
        admin_id,
        DisputeResolutionAction(action).value,
    )
    return dispute


def _validate_units(match: Match, sport: Sport, units: Sequence[Mapping[str, Any]]):
    return validate_result(
        sport,
        best_of=match.best_of,
        final_set_format=FinalSetFormat(match.final_set_format),
        **score_kwargs(sport, units),
    )
