"""Transactional outbox for domain events.

Core services append events with :func:`emit` inside the same transaction as
their writes; :class:`OutboxDispatcher` later hands committed events to a
:class:`NotificationSink`. Delivery failures never affect the core write.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from ..models import OutboxEvent
from ..time_utils import utcnow

logger = logging.getLogger(__name__)

RESULT_SUBMITTED = "result_submitted"
MATCH_UNFINISHED = "match_unfinished"
MATCH_COMPLETED = "match_completed"
MATCH_DISPUTED = "match_disputed"
DISPUTE_RESOLVED = "dispute_resolved"
WALKOVER_RECORDED = "walkover_recorded"
MATCH_CANCELLED = "match_cancelled"
RATING_UPDATED = "rating_updated"
RATING_ADJUSTED = "rating_adjusted"
RECALCULATION_PREVIEW_READY = "recalculation_preview_ready"
RECALCULATION_APPLIED = "recalculation_applied"
RECALCULATION_FAILED = "recalculation_failed"
RECALCULATION_CANCELLED = "recalculation_cancelled"
SEASON_LOCKED = "season_locked"
SEASON_UNLOCKED = "season_unlocked"

MAX_DISPATCH_ATTEMPTS = 10


def emit(
    session: AsyncSession,
    event_type: str,
    aggregate_id: str,
    payload: Optional[Dict[str, Any]] = None,
) -> OutboxEvent:
    """Queue an event in the caller's transaction."""

    event = OutboxEvent(
        event_type=event_type,
        aggregate_id=aggregate_id,
        payload=payload or {},
        created_at=utcnow(),
        attempts=0,
    )
    session.add(event)
    return event


class NotificationSink(Protocol):
    async def deliver(self, event: OutboxEvent) -> None:
        ...


class LoggingNotificationSink:
    """Default sink: records each event in the application log."""

    async def deliver(self, event: OutboxEvent) -> None:
        logger.info(
            "Domain event %s for %s: %s",
            event.event_type,
            event.aggregate_id,
            event.payload,
        )


class OutboxDispatcher:
    def __init__(
        self,
        session_factory: sessionmaker,
        sink: Optional[NotificationSink] = None,
        *,
        batch_size: int = 100,
        poll_interval: float = 2.0,
    ) -> None:
        self.session_factory = session_factory
        self.sink = sink or LoggingNotificationSink()
        self.batch_size = batch_size
        self.poll_interval = poll_interval

    async def dispatch_pending(self) -> int:
        """Deliver undispatched events in order; return how many succeeded."""

        delivered = 0
        async with self.session_factory() as session:
            rows = await session.execute(
                select(OutboxEvent)
                .where(
                    OutboxEvent.dispatched_at.is_(None),
                    OutboxEvent.attempts < MAX_DISPATCH_ATTEMPTS,
                )
                .order_by(OutboxEvent.id)
                .limit(self.batch_size)
            )
            events: List[OutboxEvent] = list(rows.scalars().all())
            for event in events:
                try:
                    await self.sink.deliver(event)
                except Exception as exc:
                    event.attempts += 1
                    event.last_error = str(exc)
                    logger.warning(
                        "Failed to deliver %s event %s (attempt %s)",
                        event.event_type,
                        event.id,
                        event.attempts,
                        exc_info=True,
                    )
                    continue
                event.attempts += 1
                event.dispatched_at = utcnow()
                delivered += 1
            await session.commit()
        return delivered

    async def run_forever(self, stop: asyncio.Event) -> None:
        logger.info("Outbox dispatcher started")
        while not stop.is_set():
            try:
                await self.dispatch_pending()
            except Exception:
                logger.exception("Outbox dispatch pass failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Outbox dispatcher stopped")
