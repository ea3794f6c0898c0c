"""Shared steps for finalising match results.

Used by the lifecycle commands and by dispute resolution so that every path
to COMPLETED or WALKOVER records the same fields and enqueues rating work in
the same transaction.
"""

import logging
import uuid
from datetime import datetime
from typing import Iterable, Mapping, Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..exceptions import MatchNotFound, NotParticipant
from ..models import (
    InvitationStatus,
    Match,
    MatchOutcome,
    MatchParticipant,
    MatchStatus,
    MatchWalkover,
    RatingTask,
    ResultSource,
    ScoreEntry,
    ScoreUnitKind,
    Side,
    WalkoverReason,
)
from ..time_utils import utcnow
from . import outbox
from .eligibility import ineligibility_reason
from .validation import ValidatedResult

logger = logging.getLogger(__name__)


async def load_match(session: AsyncSession, match_id: str, *, for_update: bool = True) -> Match:
    stmt = select(Match).where(Match.id == match_id)
    if for_update:
        stmt = stmt.with_for_update()
    match = (await session.execute(stmt)).scalars().first()
    if match is None:
        raise MatchNotFound(match_id)
    return match


def accepted_participant(
    match: Match, participants: Sequence[MatchParticipant], player_id: str
) -> MatchParticipant:
    for participant in participants:
        if (
            participant.player_id == player_id
            and participant.invitation_status == InvitationStatus.ACCEPTED
        ):
            return participant
    raise NotParticipant(match.id, player_id)


async def replace_score_entries(
    session: AsyncSession,
    match: Match,
    kind: ScoreUnitKind,
    units: Iterable[Mapping[str, Optional[int]]],
) -> None:
    await clear_score_entries(session, match)
    for number, unit in enumerate(units, start=1):
        session.add(
            ScoreEntry(
                id=uuid.uuid4().hex,
                match_id=match.id,
                unit_number=number,
                kind=kind,
                side_a=unit["A"],
                side_b=unit["B"],
                side_a_tiebreak=unit.get("tiebreakA"),
                side_b_tiebreak=unit.get("tiebreakB"),
            )
        )


async def clear_score_entries(session: AsyncSession, match: Match) -> None:
    await session.execute(delete(ScoreEntry).where(ScoreEntry.match_id == match.id))


async def load_score_entries(session: AsyncSession, match_id: str) -> list[ScoreEntry]:
    rows = await session.execute(
        select(ScoreEntry)
        .where(ScoreEntry.match_id == match_id)
        .order_by(ScoreEntry.unit_number)
    )
    return list(rows.scalars().all())


def apply_validated(match: Match, result: ValidatedResult) -> None:
    match.side_a_score = result.side_a_score
    match.side_b_score = result.side_b_score
    match.side_a_points = result.side_a_points
    match.side_b_points = result.side_b_points


def clear_submission(match: Match) -> None:
    match.side_a_score = None
    match.side_b_score = None
    match.side_a_points = None
    match.side_b_points = None
    match.proposed_outcome = None
    match.result_submitted_by = None
    match.result_submitted_at = None
    match.result_confirmed_by = None
    match.result_confirmed_at = None
    match.result_source = None


def enqueue_rating_task(
    session: AsyncSession, match: Match, participants: Sequence[MatchParticipant]
) -> Optional[RatingTask]:
    """Queue rating work for ``match`` when it counts towards ratings."""

    reason = ineligibility_reason(match, participants)
    if reason is not None:
        logger.info("Match %s not queued for rating: %s", match.id, reason)
        return None
    task = RatingTask(
        id=uuid.uuid4().hex,
        match_id=match.id,
        season_id=match.season_id,
        sport=match.sport,
        game_type=match.game_type,
        match_date=match.match_date,
        attempts=0,
    )
    session.add(task)
    return task


def complete_match(
    session: AsyncSession,
    match: Match,
    participants: Sequence[MatchParticipant],
    *,
    outcome: MatchOutcome,
    source: ResultSource,
    confirmed_by: Optional[str],
    now: Optional[datetime] = None,
) -> Optional[RatingTask]:
    now = now or utcnow()
    match.status = MatchStatus.COMPLETED
    match.outcome = outcome
    match.result_source = source
    match.result_confirmed_by = confirmed_by
    match.result_confirmed_at = now
    match.is_auto_approved = source == ResultSource.AUTO_APPROVED
    task = enqueue_rating_task(session, match, participants)
    outbox.emit(
        session,
        outbox.MATCH_COMPLETED,
        match.id,
        {
            "matchId": match.id,
            "outcome": MatchOutcome(outcome).value,
            "source": ResultSource(source).value,
            "sideAScore": match.side_a_score,
            "sideBScore": match.side_b_score,
        },
    )
    logger.info(
        "Match %s completed (%s, source=%s)",
        match.id,
        MatchOutcome(outcome).value,
        ResultSource(source).value,
    )
    return task


async def record_walkover(
    session: AsyncSession,
    match: Match,
    participants: Sequence[MatchParticipant],
    *,
    reporter_id: str,
    defaulting_player_id: str,
    reason: WalkoverReason,
    reason_detail: Optional[str] = None,
    now: Optional[datetime] = None,
) -> MatchWalkover:
    now = now or utcnow()
    defaulting = accepted_participant(match, participants, defaulting_player_id)
    winning_side = Side(defaulting.side).other
    units_to_win = match.best_of // 2 + 1 if match.best_of else 1

    await clear_score_entries(session, match)
    clear_submission(match)
    match.status = MatchStatus.WALKOVER
    match.outcome = MatchOutcome(winning_side.value)
    match.is_walkover = True
    match.result_source = ResultSource.WALKOVER
    match.result_submitted_by = reporter_id
    match.result_submitted_at = now
    match.result_confirmed_at = now
    if winning_side is Side.A:
        match.side_a_score, match.side_b_score = units_to_win, 0
    else:
        match.side_a_score, match.side_b_score = 0, units_to_win

    walkover = MatchWalkover(
        id=uuid.uuid4().hex,
        match_id=match.id,
        reason=reason,
        reason_detail=reason_detail,
        defaulting_player_id=defaulting_player_id,
        reported_by=reporter_id,
        created_at=now,
    )
    session.add(walkover)
    enqueue_rating_task(session, match, participants)
    outbox.emit(
        session,
        outbox.WALKOVER_RECORDED,
        match.id,
        {
            "matchId": match.id,
            "winningSide": winning_side.value,
            "defaultingPlayerId": defaulting_player_id,
            "reason": WalkoverReason(reason).value,
        },
    )
    logger.info(
        "Walkover recorded for match %s: %s defaulted (%s)",
        match.id,
        defaulting_player_id,
        WalkoverReason(reason).value,
    )
    return walkover


def cancel(session: AsyncSession, match: Match, actor_id: str) -> None:
    match.status = MatchStatus.CANCELLED
    outbox.emit(
        session, outbox.MATCH_CANCELLED, match.id, {"matchId": match.id, "by": actor_id}
    )
