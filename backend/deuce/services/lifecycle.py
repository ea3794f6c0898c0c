"""Match lifecycle state machine.

SCHEDULED -> ONGOING -> COMPLETED, SCHEDULED -> CANCELLED, SCHEDULED ->
UNFINISHED and SCHEDULED/ONGOING -> WALKOVER. Every guard runs before the
first mutation, so a rejected command leaves the match untouched.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, List, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import AUTO_APPROVE_AFTER_HOURS
from ..exceptions import DisputePending, InvalidState, SelfConfirmation
from ..models import (
    DisputeCategory,
    FinalSetFormat,
    GameType,
    Match,
    MatchDispute,
    MatchOutcome,
    MatchStatus,
    ResultSource,
    Side,
    Sport,
    WalkoverReason,
)
from ..time_utils import utcnow
from . import outbox, results
from .disputes import open_dispute, submission_snapshot
from .eligibility import (
    ACTIVE_DISPUTE_STATUSES,
    accepted_sides,
    get_open_dispute,
    load_participants,
)
from .validation import (
    score_kwargs,
    unit_kind,
    validate_participants_for_format,
    validate_partial_result,
    validate_result,
)

logger = logging.getLogger(__name__)

AUTO_APPROVE_AFTER = timedelta(hours=AUTO_APPROVE_AFTER_HOURS)


def _require_status(match: Match, action: str, *allowed: MatchStatus) -> None:
    if match.status not in allowed:
        raise InvalidState(match.id, MatchStatus(match.status).value, action)


async def _ensure_no_open_dispute(session: AsyncSession, match: Match) -> None:
    if await get_open_dispute(session, match.id) is not None:
        raise DisputePending(match.id)


async def submit_result(
    session: AsyncSession,
    match_id: str,
    submitter_id: str,
    set_scores: Optional[List[Mapping[str, Any]]] = None,
    game_scores: Optional[List[Mapping[str, Any]]] = None,
    is_unfinished: bool = False,
) -> Match:
    """Record a participant's result and wait for the other side to confirm.

    With ``is_unfinished`` the units are stored as played so far and the
    match ends UNFINISHED; no outcome is derived and nothing is rated.
    """

    match = await results.load_match(session, match_id)
    _require_status(match, "submit a result for", MatchStatus.SCHEDULED)
    participants = await load_participants(session, match_id)
    results.accepted_participant(match, participants, submitter_id)
    await _ensure_no_open_dispute(session, match)
    validate_participants_for_format(
        GameType(match.game_type), accepted_sides(participants)
    )

    sport = Sport(match.sport)
    now = utcnow()
    if is_unfinished:
        units = validate_partial_result(
            sport, set_scores=set_scores, game_scores=game_scores, best_of=match.best_of
        )
        kind = unit_kind(sport)
        await results.replace_score_entries(session, match, kind, units)
        match.status = MatchStatus.UNFINISHED
        match.result_submitted_by = submitter_id
        match.result_submitted_at = now
        outbox.emit(
            session,
            outbox.MATCH_UNFINISHED,
            match.id,
            {"matchId": match.id, "submittedBy": submitter_id, "units": len(units)},
        )
        logger.info("Match %s recorded as unfinished by %s", match.id, submitter_id)
    else:
        result = validate_result(
            sport,
            set_scores=set_scores,
            game_scores=game_scores,
            best_of=match.best_of,
            final_set_format=FinalSetFormat(match.final_set_format),
        )
        await results.replace_score_entries(session, match, result.kind, result.units)
        results.apply_validated(match, result)
        match.proposed_outcome = result.outcome
        match.result_submitted_by = submitter_id
        match.result_submitted_at = now
        match.status = MatchStatus.ONGOING
        outbox.emit(
            session,
            outbox.RESULT_SUBMITTED,
            match.id,
            {"matchId": match.id, "submittedBy": submitter_id, **result.as_payload()},
        )
        logger.info(
            "Result submitted for match %s by %s (%s %d-%d)",
            match.id,
            submitter_id,
            result.outcome.value,
            result.side_a_score,
            result.side_b_score,
        )

    await session.flush()
    return match


async def confirm_result(
    session: AsyncSession,
    match_id: str,
    confirmer_id: str,
    accept: bool,
    *,
    dispute_category: DisputeCategory = DisputeCategory.OTHER,
    dispute_reason: Optional[str] = None,
    disputer_scores: Optional[List[Mapping[str, Any]]] = None,
) -> Match:
    """Accept or reject the pending result.

    Accepting completes the match and queues it for rating. Rejecting opens
    a dispute and rolls the match back to SCHEDULED with the submission
    cleared.
    """

    match = await results.load_match(session, match_id)
    _require_status(match, "confirm the result of", MatchStatus.ONGOING)
    participants = await load_participants(session, match_id)
    confirmer = results.accepted_participant(match, participants, confirmer_id)

    if confirmer_id == match.result_submitted_by:
        raise SelfConfirmation(match.id, confirmer_id)
    submitter_side = next(
        (
            Side(p.side)
            for p in participants
            if p.player_id == match.result_submitted_by
        ),
        None,
    )
    if submitter_side is not None and Side(confirmer.side) == submitter_side:
        raise SelfConfirmation(match.id, confirmer_id)

    if accept:
        results.complete_match(
            session,
            match,
            participants,
            outcome=MatchOutcome(match.proposed_outcome),
            source=ResultSource.PARTICIPANTS,
            confirmed_by=confirmer_id,
        )
    else:
        sport = Sport(match.sport)
        if disputer_scores:
            # The alternative line must itself be a valid result.
            validate_result(
                sport,
                best_of=match.best_of,
                final_set_format=FinalSetFormat(match.final_set_format),
                **score_kwargs(sport, disputer_scores),
            )
        snapshot = await submission_snapshot(session, match)
        await open_dispute(
            session,
            match,
            raised_by=confirmer_id,
            category=dispute_category,
            reason=dispute_reason,
            disputed_result=snapshot,
            disputer_scores=disputer_scores,
        )
        await results.clear_score_entries(session, match)
        results.clear_submission(match)
        match.status = MatchStatus.SCHEDULED
        match.is_disputed = True
        logger.info(
            "Result of match %s rejected by %s; match back to scheduled",
            match.id,
            confirmer_id,
        )

    await session.flush()
    return match


async def submit_walkover(
    session: AsyncSession,
    match_id: str,
    reporter_id: str,
    defaulting_player_id: str,
    reason: WalkoverReason,
    reason_detail: Optional[str] = None,
) -> Match:
    match = await results.load_match(session, match_id)
    _require_status(
        match, "record a walkover for", MatchStatus.SCHEDULED, MatchStatus.ONGOING
    )
    participants = await load_participants(session, match_id)
    results.accepted_participant(match, participants, reporter_id)
    results.accepted_participant(match, participants, defaulting_player_id)
    await _ensure_no_open_dispute(session, match)

    await results.record_walkover(
        session,
        match,
        participants,
        reporter_id=reporter_id,
        defaulting_player_id=defaulting_player_id,
        reason=reason,
        reason_detail=reason_detail,
    )
    await session.flush()
    return match


async def cancel_match(session: AsyncSession, match_id: str, actor_id: str) -> Match:
    match = await results.load_match(session, match_id)
    _require_status(match, "cancel", MatchStatus.SCHEDULED)
    results.cancel(session, match, actor_id)
    await session.flush()
    logger.info("Match %s cancelled by %s", match.id, actor_id)
    return match


async def auto_approve_results(
    session: AsyncSession,
    now: Optional[datetime] = None,
    older_than: timedelta = AUTO_APPROVE_AFTER,
) -> List[str]:
    """Complete results nobody confirmed or rejected within ``older_than``."""

    now = now or utcnow()
    cutoff = now - older_than
    open_disputes = select(MatchDispute.match_id).where(
        MatchDispute.status.in_(ACTIVE_DISPUTE_STATUSES)
    )
    rows = await session.execute(
        select(Match)
        .where(
            Match.status == MatchStatus.ONGOING,
            Match.result_submitted_at.is_not(None),
            Match.result_submitted_at <= cutoff,
            Match.id.not_in(open_disputes),
        )
        .order_by(Match.match_date, Match.id)
        .with_for_update()
    )
    approved: List[str] = []
    for match in rows.scalars().all():
        participants = await load_participants(session, match.id)
        results.complete_match(
            session,
            match,
            participants,
            outcome=MatchOutcome(match.proposed_outcome),
            source=ResultSource.AUTO_APPROVED,
            confirmed_by=None,
            now=now,
        )
        approved.append(match.id)
    await session.flush()
    if approved:
        logger.info("Auto-approved %d result(s)", len(approved))
    return approved
