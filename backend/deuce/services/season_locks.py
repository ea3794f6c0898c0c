"""Season rating locks.

A locked season rejects administrative adjustments and recalculations; it is
taken once every match of the season is final and every rating task drained.
"""

import logging
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..exceptions import SeasonLocked, StateConflictError
from ..models import Match, MatchStatus, RatingTask, RatingTaskStatus, SeasonLock
from ..time_utils import utcnow
from . import outbox

logger = logging.getLogger(__name__)

OPEN_MATCH_STATUSES = (MatchStatus.SCHEDULED, MatchStatus.ONGOING)


async def is_season_locked(session: AsyncSession, season_id: Optional[str]) -> bool:
    if not season_id:
        return False
    lock = await session.get(SeasonLock, season_id)
    return bool(lock and lock.is_locked)


async def ensure_unlocked(session: AsyncSession, season_id: Optional[str]) -> None:
    if await is_season_locked(session, season_id):
        raise SeasonLocked(season_id)


async def lock_season(
    session: AsyncSession, season_id: str, admin_id: str, notes: Optional[str] = None
) -> SeasonLock:
    lock = await session.get(SeasonLock, season_id)
    if lock is not None and lock.is_locked:
        raise SeasonLocked(season_id)

    open_matches = (
        await session.execute(
            select(func.count(Match.id)).where(
                Match.season_id == season_id, Match.status.in_(OPEN_MATCH_STATUSES)
            )
        )
    ).scalar_one()
    if open_matches:
        raise StateConflictError(
            f"season '{season_id}' still has {open_matches} unfinished match(es)",
            code="season_has_open_matches",
            title="Season not final",
        )

    pending_tasks = (
        await session.execute(
            select(func.count(RatingTask.id)).where(
                RatingTask.season_id == season_id,
                RatingTask.status.in_((RatingTaskStatus.PENDING, RatingTaskStatus.BLOCKED)),
            )
        )
    ).scalar_one()
    if pending_tasks:
        raise StateConflictError(
            f"season '{season_id}' still has {pending_tasks} pending rating task(s)",
            code="season_has_pending_ratings",
            title="Season not final",
        )

    if lock is None:
        lock = SeasonLock(season_id=season_id)
        session.add(lock)
    lock.is_locked = True
    lock.locked_by = admin_id
    lock.locked_at = utcnow()
    lock.notes = notes
    outbox.emit(session, outbox.SEASON_LOCKED, season_id, {"lockedBy": admin_id})
    logger.info("Season %s ratings locked by %s", season_id, admin_id)
    return lock


async def unlock_season(session: AsyncSession, season_id: str, admin_id: str) -> SeasonLock:
    lock = await session.get(SeasonLock, season_id)
    if lock is None or not lock.is_locked:
        raise StateConflictError(
            f"season '{season_id}' is not locked",
            code="season_not_locked",
            title="Season not locked",
        )
    lock.is_locked = False
    lock.notes = f"unlocked by {admin_id}"
    outbox.emit(session, outbox.SEASON_UNLOCKED, season_id, {"unlockedBy": admin_id})
    logger.info("Season %s ratings unlocked by %s", season_id, admin_id)
    return lock
