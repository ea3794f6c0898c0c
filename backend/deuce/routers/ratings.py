# backend/deuce/routers/ratings.py
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..container import Services
from ..db import get_session
from ..exceptions import RatingNotFound, ValidationError
from ..models import (
    GameType,
    PlayerRating,
    RatingAdjustment,
    RatingHistory,
    RatingTask,
    SeasonLock,
    Sport,
)
from ..schemas import (
    AdjustmentIn,
    AdjustmentOut,
    PlayerRatingOut,
    RatingHistoryOut,
    RatingTaskOut,
    SeasonLockIn,
    SeasonLockOut,
    WinProbabilityOut,
)
from ..services import season_locks
from ..services.adjustments import adjust_rating
from ..services.glicko import Glicko, confidence_interval, win_probability
from .deps import get_services, require_admin

router = APIRouter(prefix="/ratings", tags=["ratings"])


def player_rating_out(rating: PlayerRating) -> PlayerRatingOut:
    low, high = confidence_interval(rating.current_rating, rating.rating_deviation)
    return PlayerRatingOut(
        id=rating.id,
        playerId=rating.player_id,
        seasonId=rating.season_id,
        divisionId=rating.division_id,
        sport=rating.sport,
        gameType=rating.game_type,
        rating=rating.current_rating,
        ratingDeviation=rating.rating_deviation,
        volatility=rating.volatility,
        confidenceLow=low,
        confidenceHigh=high,
        matchesPlayed=rating.matches_played,
        isProvisional=bool(rating.is_provisional),
        peakRating=rating.peak_rating,
        peakRatingDate=rating.peak_rating_date,
        lowestRating=rating.lowest_rating,
        lastMatchId=rating.last_match_id,
        lastMatchDate=rating.last_match_date,
    )


def rating_history_out(entry: RatingHistory) -> RatingHistoryOut:
    return RatingHistoryOut(
        id=entry.id,
        ratingId=entry.player_rating_id,
        matchId=entry.match_id,
        adjustmentId=entry.adjustment_id,
        recalculationId=entry.recalculation_id,
        supersededByRecalculationId=entry.superseded_by_recalculation_id,
        reason=entry.reason,
        ratingBefore=entry.rating_before,
        ratingAfter=entry.rating_after,
        delta=entry.delta,
        rdBefore=entry.rd_before,
        rdAfter=entry.rd_after,
        volatilityBefore=entry.volatility_before,
        volatilityAfter=entry.volatility_after,
        matchesPlayedAfter=entry.matches_played_after,
        effectiveAt=entry.effective_at,
        createdAt=entry.created_at,
        notes=entry.notes,
    )


def _adjustment_out(adjustment: RatingAdjustment) -> AdjustmentOut:
    return AdjustmentOut(
        id=adjustment.id,
        ratingId=adjustment.player_rating_id,
        adminId=adjustment.admin_id,
        reason=adjustment.reason,
        ratingBefore=adjustment.rating_before,
        ratingAfter=adjustment.rating_after,
        delta=adjustment.delta,
        createdAt=adjustment.created_at,
    )


def _task_out(task: RatingTask) -> RatingTaskOut:
    return RatingTaskOut(
        id=task.id,
        matchId=task.match_id,
        seasonId=task.season_id,
        matchDate=task.match_date,
        status=task.status,
        attempts=task.attempts,
        lastError=task.last_error,
        processedAt=task.processed_at,
    )


def _lock_out(lock: SeasonLock) -> SeasonLockOut:
    return SeasonLockOut(
        seasonId=lock.season_id,
        isLocked=bool(lock.is_locked),
        lockedBy=lock.locked_by,
        lockedAt=lock.locked_at,
        notes=lock.notes,
    )


@router.get("/players/{player_id}", response_model=list[PlayerRatingOut])
async def list_player_ratings(
    player_id: str,
    season_id: Optional[str] = Query(None, alias="seasonId"),
    session: AsyncSession = Depends(get_session),
    services: Services = Depends(get_services),
):
    ratings = await services.store.list_player_ratings(session, player_id, season_id)
    return [player_rating_out(r) for r in ratings]


# Registered before the scoped lookup so "history" is not read as a season id.
@router.get("/players/{player_id}/history", response_model=list[RatingHistoryOut])
async def player_rating_history(
    player_id: str,
    season_id: Optional[str] = Query(None, alias="seasonId"),
    sport: Optional[Sport] = None,
    game_type: Optional[GameType] = Query(None, alias="gameType"),
    include_superseded: bool = Query(True, alias="includeSuperseded"),
    session: AsyncSession = Depends(get_session),
    services: Services = Depends(get_services),
):
    entries = await services.store.history_for_player(
        session,
        player_id,
        season_id=season_id,
        sport=sport,
        game_type=game_type,
        include_superseded=include_superseded,
    )
    return [rating_history_out(e) for e in entries]


@router.get(
    "/players/{player_id}/{season_id}/{sport}/{game_type}",
    response_model=PlayerRatingOut,
)
async def get_player_rating(
    player_id: str,
    season_id: str,
    sport: Sport,
    game_type: GameType,
    session: AsyncSession = Depends(get_session),
    services: Services = Depends(get_services),
):
    rating = await services.store.get(session, player_id, season_id, sport, game_type)
    if rating is None:
        raise RatingNotFound(
            f"{player_id}/{season_id}/{sport.value}/{game_type.value}"
        )
    return player_rating_out(rating)


@router.post(
    "/{rating_id}/adjustments", response_model=AdjustmentOut, status_code=201
)
async def create_adjustment(
    rating_id: str,
    body: AdjustmentIn,
    session: AsyncSession = Depends(get_session),
    services: Services = Depends(get_services),
    admin_id: str = Depends(require_admin),
):
    adjustment = await adjust_rating(
        session, services.store, rating_id, body.newRating, admin_id, body.reason
    )
    await session.commit()
    return _adjustment_out(adjustment)


@router.get("/win-probability", response_model=WinProbabilityOut)
async def get_win_probability(
    player_rating_id: str = Query(..., alias="playerRatingId"),
    opponent_rating_id: str = Query(..., alias="opponentRatingId"),
    session: AsyncSession = Depends(get_session),
    services: Services = Depends(get_services),
):
    player = await services.store.get_by_id(session, player_rating_id)
    if player is None:
        raise RatingNotFound(player_rating_id)
    opponent = await services.store.get_by_id(session, opponent_rating_id)
    if opponent is None:
        raise RatingNotFound(opponent_rating_id)
    if (player.season_id, player.sport, player.game_type) != (
        opponent.season_id,
        opponent.sport,
        opponent.game_type,
    ):
        raise ValidationError(
            "win probability needs two ratings from the same season, sport and game type",
            code="rating_scope_mismatch",
        )

    probability = win_probability(
        services.model,
        Glicko(player.current_rating, player.rating_deviation, player.volatility),
        Glicko(opponent.current_rating, opponent.rating_deviation, opponent.volatility),
    )
    return WinProbabilityOut(
        playerId=player.player_id,
        opponentId=opponent.player_id,
        probability=probability,
    )


@router.post("/seasons/{season_id}/lock", response_model=SeasonLockOut)
async def lock_season(
    season_id: str,
    body: SeasonLockIn | None = None,
    session: AsyncSession = Depends(get_session),
    admin_id: str = Depends(require_admin),
):
    lock = await season_locks.lock_season(
        session, season_id, admin_id, body.notes if body else None
    )
    await session.commit()
    return _lock_out(lock)


@router.delete("/seasons/{season_id}/lock", response_model=SeasonLockOut)
async def unlock_season(
    season_id: str,
    session: AsyncSession = Depends(get_session),
    admin_id: str = Depends(require_admin),
):
    lock = await season_locks.unlock_season(session, season_id, admin_id)
    await session.commit()
    return _lock_out(lock)


@router.post("/tasks/{task_id}/requeue", response_model=RatingTaskOut)
async def requeue_rating_task(
    task_id: str,
    services: Services = Depends(get_services),
    admin_id: str = Depends(require_admin),
):
    task = await services.worker.requeue(task_id, admin_id)
    return _task_out(task)
