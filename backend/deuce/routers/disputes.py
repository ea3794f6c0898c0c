# backend/deuce/routers/disputes.py
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import get_session
from ..models import DisputeStatus, MatchDispute
from ..schemas import DisputeOut, DisputeResolveIn
from ..services import disputes
from .deps import require_admin

router = APIRouter(prefix="/disputes", tags=["disputes"])


def dispute_out(dispute: MatchDispute) -> DisputeOut:
    return DisputeOut(
        id=dispute.id,
        matchId=dispute.match_id,
        raisedBy=dispute.raised_by,
        category=dispute.category,
        reason=dispute.reason,
        status=dispute.status,
        disputedResult=dispute.disputed_result,
        disputerScores=dispute.disputer_scores,
        resolutionAction=dispute.resolution_action,
        resolvedBy=dispute.resolved_by,
        resolvedAt=dispute.resolved_at,
        resolutionNotes=dispute.resolution_notes,
        createdAt=dispute.created_at,
    )


@router.get("", response_model=list[DisputeOut])
async def list_disputes(
    status: Optional[DisputeStatus] = None,
    session: AsyncSession = Depends(get_session),
):
    rows = await disputes.list_disputes(session, status)
    return [dispute_out(d) for d in rows]


@router.post("/{dispute_id}/resolve", response_model=DisputeOut)
async def resolve_dispute(
    dispute_id: str,
    body: DisputeResolveIn,
    session: AsyncSession = Depends(get_session),
    admin_id: str = Depends(require_admin),
):
    set_scores = [s.model_dump() for s in body.setScores] if body.setScores else None
    game_scores = [g.model_dump() for g in body.gameScores] if body.gameScores else None
    dispute = await disputes.resolve_dispute(
        session,
        dispute_id,
        admin_id,
        body.action,
        outcome=body.outcome,
        set_scores=set_scores,
        game_scores=game_scores,
        defaulting_player_id=body.defaultingPlayerId,
        walkover_reason=body.walkoverReason,
        notes=body.notes,
    )
    await session.commit()
    return dispute_out(dispute)
