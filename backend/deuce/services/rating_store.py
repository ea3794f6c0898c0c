"""Persistence boundary for player ratings and their append-only history.

All writes happen inside the caller's transaction. A match's full set of
rating rows and history entries is flushed together so either every player
moves or none does.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from ..config import RatingParameters
from ..db_errors import is_serialization_failure
from ..exceptions import RatingNotFound, TransactionFailure
from ..models import (
    GameType,
    PlayerRating,
    RatingChangeReason,
    RatingHistory,
    Sport,
)

logger = logging.getLogger(__name__)

CHAIN_TOLERANCE = 1e-6


@dataclass
class ChainCheck:
    """Result of walking a rating's history from the default rating."""

    rating: float
    rd: float
    volatility: float
    matches_played: int
    entries: int
    breaks: List[int] = field(default_factory=list)
    # Live PlayerRating fields that disagree with the replayed state.
    mismatches: List[str] = field(default_factory=list)

    @property
    def consistent(self) -> bool:
        return not self.breaks and not self.mismatches


def replay_chain(
    entries: Sequence[RatingHistory], params: RatingParameters
) -> ChainCheck:
    """Sum the deltas of ``entries`` (ordered by id) from the default rating.

    Entry ids whose ``rating_before`` does not match the running value are
    reported as breaks.
    """

    rating = params.default_rating
    rd = params.default_rd
    volatility = params.default_volatility
    matches_played = 0
    breaks: List[int] = []
    for entry in entries:
        if abs(entry.rating_before - rating) > CHAIN_TOLERANCE:
            breaks.append(entry.id)
        rating = entry.rating_before + entry.delta
        if abs(rating - entry.rating_after) > CHAIN_TOLERANCE:
            breaks.append(entry.id)
        rating = entry.rating_after
        rd = entry.rd_after
        volatility = entry.volatility_after
        matches_played = entry.matches_played_after
    return ChainCheck(
        rating=rating,
        rd=rd,
        volatility=volatility,
        matches_played=matches_played,
        entries=len(entries),
        breaks=breaks,
    )


class RatingStore:
    def __init__(self, params: RatingParameters | None = None) -> None:
        self.params = params or RatingParameters()

    def new_rating(
        self,
        player_id: str,
        season_id: str,
        sport: Sport,
        game_type: GameType,
        division_id: Optional[str] = None,
    ) -> PlayerRating:
        p = self.params
        return PlayerRating(
            id=uuid.uuid4().hex,
            player_id=player_id,
            season_id=season_id,
            division_id=division_id,
            sport=sport,
            game_type=game_type,
            current_rating=p.default_rating,
            rating_deviation=p.default_rd,
            volatility=p.default_volatility,
            matches_played=0,
            is_provisional=True,
            peak_rating=p.default_rating,
            lowest_rating=p.default_rating,
        )

    async def get(
        self,
        session: AsyncSession,
        player_id: str,
        season_id: str,
        sport: Sport,
        game_type: GameType,
        *,
        for_update: bool = False,
    ) -> Optional[PlayerRating]:
        stmt = select(PlayerRating).where(
            PlayerRating.player_id == player_id,
            PlayerRating.season_id == season_id,
            PlayerRating.sport == sport,
            PlayerRating.game_type == game_type,
        )
        if for_update:
            stmt = stmt.with_for_update()
        return (await session.execute(stmt)).scalars().first()

    async def get_or_create(
        self,
        session: AsyncSession,
        player_id: str,
        season_id: str,
        sport: Sport,
        game_type: GameType,
        division_id: Optional[str] = None,
    ) -> PlayerRating:
        rating = await self.get(
            session, player_id, season_id, sport, game_type, for_update=True
        )
        if rating is None:
            rating = self.new_rating(player_id, season_id, sport, game_type, division_id)
            session.add(rating)
        return rating

    async def load_for_update(
        self,
        session: AsyncSession,
        player_ids: Iterable[str],
        season_id: str,
        sport: Sport,
        game_type: GameType,
    ) -> Dict[str, PlayerRating]:
        """Lock and return the existing ratings of ``player_ids`` in one scope."""

        ids = sorted(set(player_ids))
        rows = await session.execute(
            select(PlayerRating)
            .where(
                PlayerRating.player_id.in_(ids),
                PlayerRating.season_id == season_id,
                PlayerRating.sport == sport,
                PlayerRating.game_type == game_type,
            )
            .order_by(PlayerRating.player_id)
            .with_for_update()
        )
        return {r.player_id: r for r in rows.scalars().all()}

    def save(self, session: AsyncSession, rating: PlayerRating) -> None:
        session.add(rating)

    def append(self, session: AsyncSession, entry: RatingHistory) -> None:
        if entry.id is not None:
            raise ValueError("rating history entries are append-only")
        session.add(entry)

    async def flush(self, session: AsyncSession, context: str) -> None:
        """Flush pending writes, translating storage conflicts."""

        try:
            await session.flush()
        except (StaleDataError, IntegrityError) as exc:
            logger.warning("Rating write conflict during %s: %s", context, exc)
            raise TransactionFailure(f"{context}: concurrent rating update") from exc
        except DBAPIError as exc:
            if not is_serialization_failure(exc):
                raise
            logger.warning("Serialization failure during %s: %s", context, exc)
            raise TransactionFailure(f"{context}: serialization failure") from exc

    async def persist(
        self,
        session: AsyncSession,
        application,
        existing: Dict[str, PlayerRating],
        *,
        recalculation_id: Optional[str] = None,
    ) -> List[RatingHistory]:
        """Write every rating and history row of one match application."""

        match = application.match
        created = False
        for draft in application.history:
            if draft.player_id not in existing:
                rating = self.new_rating(
                    draft.player_id,
                    match.season_id,
                    match.sport,
                    match.game_type,
                    match.division_id,
                )
                session.add(rating)
                existing[draft.player_id] = rating
                created = True
        if created:
            # History rows reference the new ratings by foreign key.
            await self.flush(session, f"match {match.match_id}")

        entries: List[RatingHistory] = []
        for draft in application.history:
            rating = existing[draft.player_id]
            apply_state(rating, application.updated[draft.player_id])
            self.save(session, rating)
            entry = draft.to_entry(rating.id, recalculation_id=recalculation_id)
            self.append(session, entry)
            entries.append(entry)

        await self.flush(session, f"match {match.match_id}")
        return entries

    async def has_active_match_entry(self, session: AsyncSession, match_id: str) -> bool:
        row = await session.execute(
            select(RatingHistory.id)
            .where(
                RatingHistory.match_id == match_id,
                RatingHistory.superseded_by_recalculation_id.is_(None),
                RatingHistory.reason != RatingChangeReason.ADJUSTMENT,
            )
            .limit(1)
        )
        return row.first() is not None

    async def get_by_id(self, session: AsyncSession, rating_id: str) -> Optional[PlayerRating]:
        return await session.get(PlayerRating, rating_id)

    async def list_player_ratings(
        self, session: AsyncSession, player_id: str, season_id: Optional[str] = None
    ) -> List[PlayerRating]:
        stmt = select(PlayerRating).where(PlayerRating.player_id == player_id)
        if season_id is not None:
            stmt = stmt.where(PlayerRating.season_id == season_id)
        stmt = stmt.order_by(
            PlayerRating.season_id, PlayerRating.sport, PlayerRating.game_type
        )
        return list((await session.execute(stmt)).scalars().all())

    async def history_chain(
        self, session: AsyncSession, rating_id: str
    ) -> List[RatingHistory]:
        rows = await session.execute(
            select(RatingHistory)
            .where(RatingHistory.player_rating_id == rating_id)
            .order_by(RatingHistory.id)
        )
        return list(rows.scalars().all())

    async def history_for_player(
        self,
        session: AsyncSession,
        player_id: str,
        *,
        season_id: Optional[str] = None,
        sport: Optional[Sport] = None,
        game_type: Optional[GameType] = None,
        include_superseded: bool = True,
    ) -> List[RatingHistory]:
        stmt = (
            select(RatingHistory)
            .join(PlayerRating, PlayerRating.id == RatingHistory.player_rating_id)
            .where(PlayerRating.player_id == player_id)
        )
        if season_id is not None:
            stmt = stmt.where(PlayerRating.season_id == season_id)
        if sport is not None:
            stmt = stmt.where(PlayerRating.sport == sport)
        if game_type is not None:
            stmt = stmt.where(PlayerRating.game_type == game_type)
        if not include_superseded:
            stmt = stmt.where(RatingHistory.superseded_by_recalculation_id.is_(None))
        stmt = stmt.order_by(RatingHistory.id)
        return list((await session.execute(stmt)).scalars().all())

    async def history_for_match(
        self, session: AsyncSession, match_id: str, *, include_superseded: bool = False
    ) -> List[RatingHistory]:
        stmt = select(RatingHistory).where(RatingHistory.match_id == match_id)
        if not include_superseded:
            stmt = stmt.where(RatingHistory.superseded_by_recalculation_id.is_(None))
        stmt = stmt.order_by(RatingHistory.id)
        return list((await session.execute(stmt)).scalars().all())

    async def verify_chain(self, session: AsyncSession, rating_id: str) -> ChainCheck:
        rating = await self.get_by_id(session, rating_id)
        if rating is None:
            raise RatingNotFound(rating_id)
        check = replay_chain(await self.history_chain(session, rating_id), self.params)
        for name, replayed, live in (
            ("current_rating", check.rating, rating.current_rating),
            ("rating_deviation", check.rd, rating.rating_deviation),
            ("volatility", check.volatility, rating.volatility),
        ):
            if abs(replayed - live) > CHAIN_TOLERANCE:
                check.mismatches.append(name)
        if check.matches_played != rating.matches_played:
            check.mismatches.append("matches_played")
        return check


def apply_state(rating: PlayerRating, state) -> None:
    """Copy a computed :class:`RatingState` onto its ORM row."""

    rating.current_rating = state.rating
    rating.rating_deviation = state.rd
    rating.volatility = state.volatility
    rating.matches_played = state.matches_played
    rating.is_provisional = state.is_provisional
    rating.peak_rating = state.peak_rating
    rating.peak_rating_date = state.peak_rating_date
    rating.lowest_rating = state.lowest_rating
    rating.last_match_id = state.last_match_id
    rating.last_match_date = state.last_match_date


