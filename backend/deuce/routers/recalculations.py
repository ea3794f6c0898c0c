# backend/deuce/routers/recalculations.py
import logging

from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..container import Services
from ..db import get_session
from ..exceptions import RecalculationImmutable
from ..models import RatingRecalculation
from ..schemas import RecalculationIn, RecalculationOut
from ..services.recalculation import RecalculationOrchestrator
from .deps import get_services, require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/recalculations", tags=["recalculations"])


def recalculation_out(job: RatingRecalculation) -> RecalculationOut:
    return RecalculationOut(
        id=job.id,
        scope=job.scope,
        targetId=job.target_id,
        seasonId=job.season_id,
        requestedBy=job.requested_by,
        status=job.status,
        affectedPlayerCount=job.affected_player_count,
        affectedMatchCount=job.affected_match_count,
        preview=job.preview,
        error=job.error,
        createdAt=job.created_at,
        previewAt=job.preview_at,
        appliedAt=job.applied_at,
        failedAt=job.failed_at,
        cancelledAt=job.cancelled_at,
    )


async def _preview_in_background(
    orchestrator: RecalculationOrchestrator, job_id: str
) -> None:
    try:
        await orchestrator.build_preview(job_id)
    except RecalculationImmutable as exc:
        # Cancelled before the preview started.
        logger.info("Skipping preview of recalculation %s: %s", job_id, exc)


@router.post("", response_model=RecalculationOut, status_code=202)
async def request_recalculation(
    body: RecalculationIn,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    services: Services = Depends(get_services),
    admin_id: str = Depends(require_admin),
):
    job = await services.recalculations.request(
        session, body.scope, body.targetId, admin_id, season_id=body.seasonId
    )
    await session.commit()
    background_tasks.add_task(_preview_in_background, services.recalculations, job.id)
    return recalculation_out(job)


@router.get("/{job_id}", response_model=RecalculationOut)
async def get_recalculation(
    job_id: str,
    session: AsyncSession = Depends(get_session),
    services: Services = Depends(get_services),
):
    job = await services.recalculations.get(session, job_id)
    return recalculation_out(job)


@router.post("/{job_id}/apply", response_model=RecalculationOut)
async def apply_recalculation(
    job_id: str,
    services: Services = Depends(get_services),
    admin_id: str = Depends(require_admin),
):
    job = await services.recalculations.apply(job_id, admin_id)
    return recalculation_out(job)


@router.post("/{job_id}/cancel", response_model=RecalculationOut)
async def cancel_recalculation(
    job_id: str,
    session: AsyncSession = Depends(get_session),
    services: Services = Depends(get_services),
    admin_id: str = Depends(require_admin),
):
    job = await services.recalculations.cancel(session, job_id, admin_id)
    await session.commit()
    return recalculation_out(job)
