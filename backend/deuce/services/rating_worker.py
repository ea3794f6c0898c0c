"""Background consumer of the durable rating queue.

Tasks are grouped into partitions of (season, sport, game type). Each
partition is drained sequentially in ``(match_date, match_id)`` order, the
order replays use, so the engine sees matches chronologically; partitions
run concurrently. A task that trips a consistency check is parked as
BLOCKED and holds its partition until a recalculation replays the match or
an administrator requeues it.
"""

import asyncio
import logging
from collections import Counter, OrderedDict
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from ..config import RATING_TASK_MAX_ATTEMPTS, RATING_WORKER_POLL_SECONDS
from ..exceptions import (
    AlreadyProcessed,
    ConsistencyViolation,
    NotFound,
    NotRatingEligible,
    RatingTaskNotFound,
    RatingTaskNotRequeueable,
    TransactionFailure,
)
from ..models import GameType, RatingTask, RatingTaskStatus, Sport
from ..time_utils import utcnow
from ..utils.sentry import alert_operators
from .rating_engine import RatingEngine

logger = logging.getLogger(__name__)

DONE = "done"
SKIPPED = "skipped"
BLOCKED = "blocked"
FAILED = "failed"


class RatingWorker:
    def __init__(
        self,
        session_factory: sessionmaker,
        engine: RatingEngine,
        *,
        max_attempts: int = RATING_TASK_MAX_ATTEMPTS,
        poll_interval: float = RATING_WORKER_POLL_SECONDS,
        retry_backoff: float = 0.25,
    ) -> None:
        self.session_factory = session_factory
        self.engine = engine
        self.max_attempts = max_attempts
        self.poll_interval = poll_interval
        self.retry_backoff = retry_backoff

    async def pending_partitions(self) -> "OrderedDict[Tuple[str, str, str], List[str]]":
        """Return the PENDING task ids of every partition that is not held."""

        async with self.session_factory() as session:
            rows = await session.execute(
                select(
                    RatingTask.id,
                    RatingTask.season_id,
                    RatingTask.sport,
                    RatingTask.game_type,
                    RatingTask.status,
                )
                .where(
                    RatingTask.status.in_(
                        (RatingTaskStatus.PENDING, RatingTaskStatus.BLOCKED)
                    )
                )
                .order_by(
                    RatingTask.match_date,
                    RatingTask.match_id,
                    RatingTask.created_at,
                    RatingTask.id,
                )
            )
            partitions: "OrderedDict[Tuple[str, str, str], List[str]]" = OrderedDict()
            held = set()
            for task_id, season_id, sport, game_type, status in rows.all():
                key = (season_id, Sport(sport).value, GameType(game_type).value)
                if RatingTaskStatus(status) == RatingTaskStatus.BLOCKED:
                    held.add(key)
                    continue
                partitions.setdefault(key, []).append(task_id)
        for key in held:
            if partitions.pop(key, None):
                logger.debug("Rating partition %s held by a blocked task", "/".join(key))
        return partitions

    async def process_pending(self) -> Dict[str, int]:
        """Drain every PENDING task once; return counts per outcome."""

        partitions = await self.pending_partitions()
        if not partitions:
            return {}
        lanes = await asyncio.gather(
            *(self._drain(key, ids) for key, ids in partitions.items())
        )
        totals: Counter = Counter()
        for lane in lanes:
            totals.update(lane)
        return dict(totals)

    async def _drain(self, partition: Tuple[str, str, str], task_ids: List[str]) -> Counter:
        counts: Counter = Counter()
        for task_id in task_ids:
            outcome = await self.process_task(task_id)
            if outcome is None:
                continue
            counts[outcome] += 1
            if outcome == BLOCKED:
                # Later matches of this partition must wait for the blocked one.
                logger.warning(
                    "Rating partition %s halted at task %s", "/".join(partition), task_id
                )
                break
        return counts

    async def process_task(self, task_id: str) -> Optional[str]:
        """Apply one task in its own transaction, retrying transient failures."""

        while True:
            async with self.session_factory() as session:
                task = await session.get(RatingTask, task_id)
                if task is None or task.status != RatingTaskStatus.PENDING:
                    return None
                match_id = task.match_id
                try:
                    await self.engine.apply(session, match_id)
                    task.status = RatingTaskStatus.DONE
                    task.attempts += 1
                    task.last_error = None
                    task.processed_at = utcnow()
                    await session.commit()
                    return DONE
                except AlreadyProcessed:
                    await session.rollback()
                    await self._finish(task_id, RatingTaskStatus.DONE, None)
                    return DONE
                except (NotRatingEligible, NotFound) as exc:
                    await session.rollback()
                    logger.info("Rating task %s skipped: %s", task_id, exc)
                    await self._finish(task_id, RatingTaskStatus.SKIPPED, str(exc))
                    return SKIPPED
                except ConsistencyViolation as exc:
                    await session.rollback()
                    logger.error(
                        "Consistency violation rating match %s (task %s): %s",
                        match_id,
                        task_id,
                        exc,
                    )
                    alert_operators(exc, task_id=task_id, match_id=match_id, code=exc.code)
                    await self._block(task_id, str(exc))
                    return BLOCKED
                except TransactionFailure as exc:
                    await session.rollback()
                    failure = exc

            attempts = await self._record_error(task_id, str(failure))
            if attempts >= self.max_attempts:
                logger.error(
                    "Rating task %s for match %s failed after %d attempts: %s",
                    task_id,
                    match_id,
                    attempts,
                    failure,
                )
                alert_operators(failure, task_id=task_id, match_id=match_id, attempts=attempts)
                await self._finish(task_id, RatingTaskStatus.FAILED, str(failure))
                return FAILED
            delay = self.retry_backoff * (2 ** (attempts - 1))
            logger.warning(
                "Retrying rating task %s in %.2fs (attempt %d): %s",
                task_id,
                delay,
                attempts,
                failure,
            )
            await asyncio.sleep(delay)

    async def _finish(
        self, task_id: str, status: RatingTaskStatus, error: Optional[str]
    ) -> None:
        async with self.session_factory() as session:
            task = await session.get(RatingTask, task_id)
            task.status = status
            task.last_error = error
            task.processed_at = utcnow()
            await session.commit()

    async def _block(self, task_id: str, error: str) -> None:
        async with self.session_factory() as session:
            task = await session.get(RatingTask, task_id)
            task.status = RatingTaskStatus.BLOCKED
            task.last_error = error
            await session.commit()

    async def requeue(self, task_id: str, admin_id: Optional[str] = None) -> RatingTask:
        """Put a BLOCKED or FAILED task back in the queue with a fresh budget."""

        async with self.session_factory() as session:
            task = await session.get(RatingTask, task_id)
            if task is None:
                raise RatingTaskNotFound(task_id)
            status = RatingTaskStatus(task.status)
            if status not in (RatingTaskStatus.BLOCKED, RatingTaskStatus.FAILED):
                raise RatingTaskNotRequeueable(task_id, status.value)
            task.status = RatingTaskStatus.PENDING
            task.attempts = 0
            task.processed_at = None
            await session.commit()
            logger.info(
                "Rating task %s requeued from %s by %s", task_id, status.value, admin_id
            )
            return task

    async def _record_error(self, task_id: str, error: str) -> int:
        async with self.session_factory() as session:
            task = await session.get(RatingTask, task_id)
            task.attempts += 1
            task.last_error = error
            attempts = task.attempts
            await session.commit()
        return attempts

    async def run_forever(self, stop: asyncio.Event) -> None:
        logger.info("Rating worker started")
        while not stop.is_set():
            try:
                await self.process_pending()
            except Exception:
                logger.exception("Rating worker pass failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Rating worker stopped")
