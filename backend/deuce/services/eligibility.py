"""Decide whether a match feeds the rating pipeline."""

from typing import Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import (
    DisputeStatus,
    GameType,
    InvitationStatus,
    Match,
    MatchDispute,
    MatchParticipant,
    MatchStatus,
    Side,
    TERMINAL_SUCCESS_STATUSES,
)
from .validation import PLAYERS_PER_SIDE

ACTIVE_DISPUTE_STATUSES = (DisputeStatus.OPEN, DisputeStatus.UNDER_REVIEW)


def accepted_sides(participants: Sequence[MatchParticipant]) -> Dict[str, List[str]]:
    sides: Dict[str, List[str]] = {"A": [], "B": []}
    for participant in participants:
        if participant.invitation_status == InvitationStatus.ACCEPTED:
            sides[Side(participant.side).value].append(participant.player_id)
    for players in sides.values():
        players.sort()
    return sides


def ineligibility_reason(
    match: Match, participants: Sequence[MatchParticipant]
) -> Optional[str]:
    """Return why ``match`` cannot be rated, or ``None`` when it can.

    Open disputes are checked separately since they are a consistency
    concern rather than a property of the match.
    """

    if match.status not in TERMINAL_SUCCESS_STATUSES:
        return f"status is {MatchStatus(match.status).value}"
    if match.outcome is None:
        return "no outcome recorded"
    if match.is_friendly:
        return "friendly match"
    if not match.season_id:
        return "match has no season"

    required = PLAYERS_PER_SIDE[GameType(match.game_type)]
    sides = accepted_sides(participants)
    for side, players in sides.items():
        if len(players) != required:
            return f"side {side} has {len(players)} accepted player(s), needs {required}"
    return None


def is_rating_eligible(
    match: Match,
    participants: Sequence[MatchParticipant],
    open_dispute=None,
) -> bool:
    return not open_dispute and ineligibility_reason(match, participants) is None


async def load_participants(
    session: AsyncSession, match_id: str
) -> List[MatchParticipant]:
    rows = await session.execute(
        select(MatchParticipant)
        .where(MatchParticipant.match_id == match_id)
        .order_by(MatchParticipant.side, MatchParticipant.player_id)
    )
    return list(rows.scalars().all())


async def get_open_dispute(
    session: AsyncSession, match_id: str
) -> Optional[MatchDispute]:
    rows = await session.execute(
        select(MatchDispute)
        .where(
            MatchDispute.match_id == match_id,
            MatchDispute.status.in_(ACTIVE_DISPUTE_STATUSES),
        )
        .order_by(MatchDispute.created_at.desc())
        .limit(1)
    )
    return rows.scalars().first()
