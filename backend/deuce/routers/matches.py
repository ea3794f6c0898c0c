# backend/deuce/routers/matches.py
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..container import Services
from ..db import get_session
from ..models import Match
from ..schemas import (
    ConfirmIn,
    MatchStateOut,
    RatingHistoryOut,
    ResultSubmitIn,
    WalkoverIn,
)
from ..services import lifecycle, results
from .deps import get_actor_id, get_services
from .ratings import rating_history_out

# Resource-only prefix; versioning is added in main.py
router = APIRouter(prefix="/matches", tags=["matches"])


def match_state_out(match: Match) -> MatchStateOut:
    return MatchStateOut(
        id=match.id,
        status=match.status,
        proposedOutcome=match.proposed_outcome,
        outcome=match.outcome,
        sideAScore=match.side_a_score,
        sideBScore=match.side_b_score,
        isDisputed=bool(match.is_disputed),
        isWalkover=bool(match.is_walkover),
        isAutoApproved=bool(match.is_auto_approved),
        resultSource=match.result_source,
        resultSubmittedBy=match.result_submitted_by,
        resultSubmittedAt=match.result_submitted_at,
        resultConfirmedBy=match.result_confirmed_by,
        resultConfirmedAt=match.result_confirmed_at,
    )


@router.post("/{mid}/result", response_model=MatchStateOut)
async def submit_result(
    mid: str,
    body: ResultSubmitIn,
    session: AsyncSession = Depends(get_session),
    actor_id: str = Depends(get_actor_id),
):
    match = await lifecycle.submit_result(
        session, mid, actor_id, is_unfinished=body.isUnfinished, **body.units()
    )
    await session.commit()
    return match_state_out(match)


@router.post("/{mid}/confirm", response_model=MatchStateOut)
async def confirm_result(
    mid: str,
    body: ConfirmIn,
    session: AsyncSession = Depends(get_session),
    actor_id: str = Depends(get_actor_id),
):
    disputer_scores = (
        [u.model_dump() for u in body.disputerScores] if body.disputerScores else None
    )
    match = await lifecycle.confirm_result(
        session,
        mid,
        actor_id,
        body.accept,
        dispute_category=body.disputeCategory,
        dispute_reason=body.disputeReason,
        disputer_scores=disputer_scores,
    )
    await session.commit()
    return match_state_out(match)


@router.post("/{mid}/walkover", response_model=MatchStateOut)
async def submit_walkover(
    mid: str,
    body: WalkoverIn,
    session: AsyncSession = Depends(get_session),
    actor_id: str = Depends(get_actor_id),
):
    match = await lifecycle.submit_walkover(
        session,
        mid,
        actor_id,
        body.defaultingPlayerId,
        body.reason,
        body.reasonDetail,
    )
    await session.commit()
    return match_state_out(match)


@router.post("/{mid}/cancel", response_model=MatchStateOut)
async def cancel_match(
    mid: str,
    session: AsyncSession = Depends(get_session),
    actor_id: str = Depends(get_actor_id),
):
    match = await lifecycle.cancel_match(session, mid, actor_id)
    await session.commit()
    return match_state_out(match)


@router.get("/{mid}/rating-history", response_model=list[RatingHistoryOut])
async def match_rating_history(
    mid: str,
    include_superseded: bool = Query(False, alias="includeSuperseded"),
    session: AsyncSession = Depends(get_session),
    services: Services = Depends(get_services),
):
    await results.load_match(session, mid, for_update=False)
    entries = await services.store.history_for_match(
        session, mid, include_superseded=include_superseded
    )
    return [rating_history_out(e) for e in entries]
