import logging
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..exceptions import RatingNotFound, ValidationError
from ..models import PlayerRating, RatingAdjustment, RatingChangeReason
from ..time_utils import utcnow
from . import outbox
from .rating_engine import HistoryDraft, RatingState
from .rating_store import RatingStore, apply_state
from .season_locks import ensure_unlocked

logger = logging.getLogger(__name__)


async def adjust_rating(
    session: AsyncSession,
    store: RatingStore,
    rating_id: str,
    new_rating: float,
    admin_id: str,
    reason: str,
) -> RatingAdjustment:
    """Set a rating by hand, recording the change in the history chain.

    The deviation and volatility are left alone; only the rating and its
    peak/lowest bookkeeping move.
    """

    if not reason or not reason.strip():
        raise ValidationError("an adjustment needs a reason", code="adjustment_reason_required")

    rating = (
        await session.execute(
            select(PlayerRating).where(PlayerRating.id == rating_id).with_for_update()
        )
    ).scalars().first()
    if rating is None:
        raise RatingNotFound(rating_id)
    await ensure_unlocked(session, rating.season_id)

    now = utcnow()
    state = RatingState.from_model(rating)
    adjusted = state.with_rating(float(new_rating), now)
    adjustment = RatingAdjustment(
        id=uuid.uuid4().hex,
        player_rating_id=rating.id,
        admin_id=admin_id,
        reason=reason.strip(),
        rating_before=state.rating,
        rating_after=adjusted.rating,
        delta=adjusted.rating - state.rating,
        created_at=now,
    )
    session.add(adjustment)

    draft = HistoryDraft(
        player_id=rating.player_id,
        match_id=None,
        reason=RatingChangeReason.ADJUSTMENT,
        rating_before=state.rating,
        rating_after=adjusted.rating,
        rd_before=state.rd,
        rd_after=state.rd,
        volatility_before=state.volatility,
        volatility_after=state.volatility,
        matches_played_after=state.matches_played,
        effective_at=now,
        adjustment_id=adjustment.id,
        notes=adjustment.reason,
    )
    apply_state(rating, adjusted)
    store.save(session, rating)
    store.append(session, draft.to_entry(rating.id))
    outbox.emit(
        session,
        outbox.RATING_ADJUSTED,
        rating.id,
        {
            "ratingId": rating.id,
            "playerId": rating.player_id,
            "adminId": admin_id,
            "ratingBefore": adjustment.rating_before,
            "ratingAfter": adjustment.rating_after,
        },
    )
    await store.flush(session, f"adjustment of rating {rating.id}")
    logger.info(
        "Rating %s of player %s adjusted by %s: %.1f -> %.1f",
        rating.id,
        rating.player_id,
        admin_id,
        adjustment.rating_before,
        adjustment.rating_after,
    )
    return adjustment
