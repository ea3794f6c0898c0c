"""Scoped, restartable replays of rating history.

A job moves PENDING -> PREVIEW_READY -> APPLIED, or ends FAILED/CANCELLED.
Planning works per (season, sport, game type) partition: it finds every
rating whose history depends on the target, the date from which each one
must be replayed (its *cut*) and the state it had just before that date
(its *baseline*). The preview replays into memory inside a session that is
always rolled back; apply repeats the plan against locked live rows and
rewrites the affected history suffixes in a single transaction.

Superseded entries are never deleted. They are marked with the applying
job's id, and a RECALCULATION entry per rating bridges from the live value
to the baseline so the full chain stays continuous.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from functools import partial
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from ..config import RECALCULATION_PREVIEW_TIMEOUT_SECONDS
from ..exceptions import (
    FatalRecalculationError,
    RecalculationImmutable,
    RecalculationNotFound,
    TargetNotFound,
    ValidationError,
)
from ..models import (
    GameType,
    Match,
    MatchDispute,
    MatchParticipant,
    PlayerRating,
    RatingChangeReason,
    RatingHistory,
    RatingRecalculation,
    RatingTask,
    RatingTaskStatus,
    RecalculationScope,
    RecalculationStatus,
    ResultSource,
    Sport,
    TERMINAL_SUCCESS_STATUSES,
)
from ..time_utils import utcnow
from ..utils.sentry import alert_operators
from . import outbox
from .eligibility import ACTIVE_DISPUTE_STATUSES, accepted_sides, is_rating_eligible
from .rating_engine import HistoryDraft, RatedMatch, RatingEngine, RatingState
from .rating_store import apply_state
from .season_locks import ensure_unlocked

logger = logging.getLogger(__name__)

PartitionKey = Tuple[str, Sport, GameType]
Cut = Optional[datetime]  # None replays from the start of the season

MATCH_EVENT = 0
ADJUSTMENT_EVENT = 1
CANCEL_CHECK_EVERY = 25
MATCH_ENTRY_REASONS = (
    RatingChangeReason.MATCH_WIN,
    RatingChangeReason.MATCH_LOSS,
    RatingChangeReason.MATCH_DRAW,
    RatingChangeReason.WALKOVER_WIN,
    RatingChangeReason.WALKOVER_LOSS,
)
MUTABLE_STATUSES = (RecalculationStatus.PENDING, RecalculationStatus.PREVIEW_READY)


class RecalculationCancelled(Exception):
    """The job was cancelled while its preview was being built."""


def _at_or_after(when: datetime, cut: Cut) -> bool:
    return cut is None or when >= cut


def _earlier(a: Cut, b: Cut) -> Cut:
    if a is None or b is None:
        return None
    return min(a, b)


def _key_sort(key: PartitionKey) -> Tuple[str, str, str]:
    return key[0], key[1].value, key[2].value


@dataclass(frozen=True)
class ReplayEvent:
    at: datetime
    kind: int
    key: str
    match: Optional[RatedMatch] = None
    entry: Optional[RatingHistory] = None
    player_id: Optional[str] = None

    @property
    def sort_key(self) -> Tuple[datetime, int, str]:
        return self.at, self.kind, self.key


@dataclass
class PartitionPlan:
    season_id: str
    sport: Sport
    game_type: GameType
    cuts: Dict[str, Cut]
    ratings: Dict[str, PlayerRating]
    chains: Dict[str, List[RatingHistory]]
    splits: Dict[str, int]
    baselines: Dict[str, RatingState]
    events: List[ReplayEvent]

    def superseded(self, player_id: str) -> List[RatingHistory]:
        return self.chains.get(player_id, [])[self.splits.get(player_id, 0):]

    @property
    def matches(self) -> List[RatedMatch]:
        return [e.match for e in self.events if e.match is not None]


@dataclass
class Replay:
    plan: PartitionPlan
    final: Dict[str, RatingState]
    drafts: List[HistoryDraft] = field(default_factory=list)
    adjustments: int = 0

    @property
    def match_count(self) -> int:
        return len(self.plan.matches)

    @property
    def forced_results(self) -> int:
        return sum(
            1 for m in self.plan.matches if m.result_source == ResultSource.ADMIN_FORCED
        )


def baseline_from_chain(
    player_id: str, entries: Iterable[RatingHistory], params
) -> RatingState:
    """Rebuild a player's state from an active history prefix."""

    state = RatingState.initial(player_id, params)
    for entry in entries:
        state = replace(
            state.with_rating(entry.rating_after, entry.effective_at),
            rd=entry.rd_after,
            volatility=entry.volatility_after,
            matches_played=entry.matches_played_after,
            is_provisional=entry.matches_played_after < params.provisional_threshold,
        )
        if entry.match_id is not None and entry.reason in MATCH_ENTRY_REASONS:
            state = replace(
                state, last_match_id=entry.match_id, last_match_date=entry.effective_at
            )
    return state


class RecalculationOrchestrator:
    def __init__(
        self,
        session_factory: sessionmaker,
        engine: RatingEngine,
        *,
        preview_timeout: float = RECALCULATION_PREVIEW_TIMEOUT_SECONDS,
    ) -> None:
        self.session_factory = session_factory
        self.engine = engine
        self.store = engine.store
        self.params = engine.params
        self.preview_timeout = preview_timeout

    # -- job commands -----------------------------------------------------

    async def request(
        self,
        session: AsyncSession,
        scope: RecalculationScope,
        target_id: str,
        requested_by: str,
        season_id: Optional[str] = None,
    ) -> RatingRecalculation:
        scope = RecalculationScope(scope)
        seasons = await self._target_seasons(session, scope, target_id, season_id)
        for season in seasons:
            await ensure_unlocked(session, season)

        job = RatingRecalculation(
            id=uuid.uuid4().hex,
            scope=scope,
            target_id=target_id,
            season_id=season_id or (seasons[0] if len(seasons) == 1 else None),
            requested_by=requested_by,
            status=RecalculationStatus.PENDING,
            created_at=utcnow(),
        )
        session.add(job)
        await session.flush()
        logger.info(
            "Recalculation %s requested by %s: %s %s",
            job.id,
            requested_by,
            scope.value,
            target_id,
        )
        return job

    async def get(self, session: AsyncSession, job_id: str) -> RatingRecalculation:
        job = await session.get(RatingRecalculation, job_id)
        if job is None:
            raise RecalculationNotFound(job_id)
        return job

    async def cancel(
        self, session: AsyncSession, job_id: str, admin_id: str
    ) -> RatingRecalculation:
        job = await self._get_for_update(session, job_id)
        if job.status not in MUTABLE_STATUSES:
            raise RecalculationImmutable(
                job_id, RecalculationStatus(job.status).value, "cancel"
            )
        job.status = RecalculationStatus.CANCELLED
        job.cancelled_at = utcnow()
        outbox.emit(
            session,
            outbox.RECALCULATION_CANCELLED,
            job.id,
            {"recalculationId": job.id, "cancelledBy": admin_id},
        )
        await session.flush()
        logger.info("Recalculation %s cancelled by %s", job.id, admin_id)
        return job

    async def build_preview(self, job_id: str) -> RatingRecalculation:
        """Replay the job into scratch state and store a summary.

        Nothing live is written apart from the job row itself. The job fails
        when planning raises or exceeds the preview timeout; a cancel
        issued meanwhile is honoured between replay steps.
        """

        async with self.session_factory() as session:
            job = await self.get(session, job_id)
            if job.status != RecalculationStatus.PENDING:
                raise RecalculationImmutable(
                    job_id, RecalculationStatus(job.status).value, "preview"
                )

        try:
            summary = await asyncio.wait_for(
                self._preview(job_id), timeout=self.preview_timeout
            )
        except RecalculationCancelled:
            logger.info("Recalculation %s cancelled during preview", job_id)
            return await self._load(job_id)
        except asyncio.TimeoutError:
            logger.warning(
                "Recalculation %s preview exceeded %.1fs", job_id, self.preview_timeout
            )
            return await self._mark_failed(
                job_id, f"preview exceeded {self.preview_timeout:.1f}s"
            )
        except Exception as exc:
            logger.exception("Recalculation %s preview failed", job_id)
            return await self._mark_failed(job_id, str(exc))

        async with self.session_factory() as session:
            job = await self._get_for_update(session, job_id)
            if job.status != RecalculationStatus.PENDING:
                return job
            job.status = RecalculationStatus.PREVIEW_READY
            job.preview = summary
            job.affected_player_count = summary["playersAffected"]
            job.affected_match_count = summary["matchesReplayed"]
            job.preview_at = utcnow()
            job.error = None
            outbox.emit(
                session,
                outbox.RECALCULATION_PREVIEW_READY,
                job.id,
                {
                    "recalculationId": job.id,
                    "playersAffected": summary["playersAffected"],
                    "matchesReplayed": summary["matchesReplayed"],
                },
            )
            await session.commit()
        logger.info(
            "Recalculation %s preview ready: %d player(s), %d match(es)",
            job_id,
            summary["playersAffected"],
            summary["matchesReplayed"],
        )
        return job

    async def apply(self, job_id: str, admin_id: Optional[str] = None) -> RatingRecalculation:
        """Rewrite live ratings for a previewed job in one transaction."""

        async with self.session_factory() as session:
            job = await self._get_for_update(session, job_id)
            if job.status != RecalculationStatus.PREVIEW_READY:
                raise RecalculationImmutable(
                    job_id, RecalculationStatus(job.status).value, "apply"
                )
            try:
                seasons = await self._target_seasons(
                    session, RecalculationScope(job.scope), job.target_id, job.season_id
                )
                for season in seasons:
                    await ensure_unlocked(session, season)
                replays = await self._replay_job(session, job, lock=True)
                await self._write(session, job, replays)

                job.status = RecalculationStatus.APPLIED
                job.applied_at = utcnow()
                job.error = None
                job.affected_player_count = sum(len(r.plan.cuts) for r in replays)
                job.affected_match_count = sum(r.match_count for r in replays)
                outbox.emit(
                    session,
                    outbox.RECALCULATION_APPLIED,
                    job.id,
                    {
                        "recalculationId": job.id,
                        "appliedBy": admin_id,
                        "playersAffected": job.affected_player_count,
                        "matchesReplayed": job.affected_match_count,
                    },
                )
                await session.commit()
            except Exception as exc:
                await self._abort_apply(session, job_id, exc)
                raise

        logger.info(
            "Recalculation %s applied by %s: %d player(s), %d match(es)",
            job_id,
            admin_id,
            job.affected_player_count,
            job.affected_match_count,
        )
        return job

    # -- job bookkeeping --------------------------------------------------

    async def _get_for_update(
        self, session: AsyncSession, job_id: str
    ) -> RatingRecalculation:
        job = (
            await session.execute(
                select(RatingRecalculation)
                .where(RatingRecalculation.id == job_id)
                .with_for_update()
            )
        ).scalars().first()
        if job is None:
            raise RecalculationNotFound(job_id)
        return job

    async def _load(self, job_id: str) -> RatingRecalculation:
        async with self.session_factory() as session:
            return await self.get(session, job_id)

    async def _mark_failed(self, job_id: str, error: str) -> RatingRecalculation:
        async with self.session_factory() as session:
            job = await self._get_for_update(session, job_id)
            if job.status not in MUTABLE_STATUSES:
                return job
            job.status = RecalculationStatus.FAILED
            job.failed_at = utcnow()
            job.error = error
            outbox.emit(
                session,
                outbox.RECALCULATION_FAILED,
                job.id,
                {"recalculationId": job.id, "error": error},
            )
            await session.commit()
        return job

    async def _abort_apply(
        self, session: AsyncSession, job_id: str, exc: Exception
    ) -> None:
        try:
            await session.rollback()
        except Exception as rollback_exc:
            logger.critical(
                "Recalculation %s could not be rolled back after %r",
                job_id,
                exc,
                exc_info=True,
            )
            fatal = FatalRecalculationError(job_id, f"rollback failed: {rollback_exc}")
            try:
                await self._mark_failed(job_id, str(fatal))
            except Exception:
                logger.exception("Could not mark recalculation %s as failed", job_id)
            alert_operators(
                fatal, level="fatal", job_id=job_id, cause=repr(exc)
            )
            raise fatal from rollback_exc

        logger.warning("Recalculation %s apply rolled back: %s", job_id, exc)
        async with self.session_factory() as other:
            job = await self.get(other, job_id)
            job.error = str(exc) or exc.__class__.__name__
            await other.commit()

    async def _check_cancel(self, session: AsyncSession, job_id: str) -> None:
        status = (
            await session.execute(
                select(RatingRecalculation.status).where(RatingRecalculation.id == job_id)
            )
        ).scalar_one()
        if status == RecalculationStatus.CANCELLED:
            raise RecalculationCancelled(job_id)

    async def _preview(self, job_id: str) -> dict:
        async with self.session_factory() as scratch:
            try:
                job = await self.get(scratch, job_id)
                replays = await self._replay_job(
                    scratch,
                    job,
                    lock=False,
                    check_cancel=partial(self._check_cancel, scratch, job_id),
                )
                return self._summary(replays)
            finally:
                await scratch.rollback()

    def _summary(self, replays: List[Replay]) -> dict:
        players = []
        for replay in replays:
            plan = replay.plan
            for pid in sorted(plan.cuts):
                rating = plan.ratings.get(pid)
                current = (
                    rating.current_rating if rating is not None else self.params.default_rating
                )
                projected = replay.final[pid].rating
                players.append(
                    {
                        "playerId": pid,
                        "seasonId": plan.season_id,
                        "sport": plan.sport.value,
                        "gameType": plan.game_type.value,
                        "currentRating": current,
                        "projectedRating": projected,
                        "delta": projected - current,
                        "replayFrom": plan.cuts[pid].isoformat() if plan.cuts[pid] else None,
                    }
                )
        deltas = [p["delta"] for p in players]
        return {
            "partitions": [
                {
                    "seasonId": r.plan.season_id,
                    "sport": r.plan.sport.value,
                    "gameType": r.plan.game_type.value,
                }
                for r in replays
            ],
            "playersAffected": len(players),
            "matchesReplayed": sum(r.match_count for r in replays),
            "adjustmentsReplayed": sum(r.adjustments for r in replays),
            "adminForcedResults": sum(r.forced_results for r in replays),
            "averageDelta": sum(deltas) / len(deltas) if deltas else 0.0,
            "players": players,
        }

    # -- targets ----------------------------------------------------------

    async def _target_seasons(
        self,
        session: AsyncSession,
        scope: RecalculationScope,
        target_id: str,
        season_id: Optional[str],
    ) -> List[str]:
        """Seasons the job touches; raises when the target does not exist."""

        if scope == RecalculationScope.MATCH:
            match = await session.get(Match, target_id)
            if match is None:
                raise TargetNotFound(scope.value, target_id)
            if not match.season_id:
                raise ValidationError(
                    f"match '{target_id}' has no season and carries no ratings",
                    code="match_without_season",
                )
            return [match.season_id]

        if scope == RecalculationScope.PLAYER:
            if not season_id:
                raise ValidationError(
                    "player recalculations need a season", code="season_required"
                )
            if not await self._player_partitions(session, target_id, season_id):
                raise TargetNotFound(scope.value, target_id)
            return [season_id]

        if scope == RecalculationScope.DIVISION:
            rows = await session.execute(
                select(Match.season_id)
                .where(Match.division_id == target_id, Match.season_id.is_not(None))
                .distinct()
            )
            seasons = {r[0] for r in rows.all()}
            rows = await session.execute(
                select(PlayerRating.season_id)
                .where(PlayerRating.division_id == target_id)
                .distinct()
            )
            seasons.update(r[0] for r in rows.all())
            if season_id is not None:
                seasons &= {season_id}
            if not seasons:
                raise TargetNotFound(scope.value, target_id)
            return sorted(seasons)

        if not await self._season_partitions(session, target_id):
            raise TargetNotFound(scope.value, target_id)
        return [target_id]

    async def _player_partitions(
        self, session: AsyncSession, player_id: str, season_id: str
    ) -> Set[PartitionKey]:
        keys: Set[PartitionKey] = set()
        rows = await session.execute(
            select(PlayerRating.season_id, PlayerRating.sport, PlayerRating.game_type)
            .where(
                PlayerRating.player_id == player_id,
                PlayerRating.season_id == season_id,
            )
        )
        keys.update((s, Sport(sp), GameType(gt)) for s, sp, gt in rows.all())
        rows = await session.execute(
            select(Match.season_id, Match.sport, Match.game_type)
            .join(MatchParticipant, MatchParticipant.match_id == Match.id)
            .where(
                MatchParticipant.player_id == player_id,
                Match.season_id == season_id,
                Match.status.in_(TERMINAL_SUCCESS_STATUSES),
            )
            .distinct()
        )
        keys.update((s, Sport(sp), GameType(gt)) for s, sp, gt in rows.all())
        return keys

    async def _season_partitions(
        self, session: AsyncSession, season_id: str
    ) -> Set[PartitionKey]:
        keys: Set[PartitionKey] = set()
        rows = await session.execute(
            select(PlayerRating.season_id, PlayerRating.sport, PlayerRating.game_type)
            .where(PlayerRating.season_id == season_id)
            .distinct()
        )
        keys.update((s, Sport(sp), GameType(gt)) for s, sp, gt in rows.all())
        rows = await session.execute(
            select(Match.season_id, Match.sport, Match.game_type)
            .where(
                Match.season_id == season_id,
                Match.status.in_(TERMINAL_SUCCESS_STATUSES),
            )
            .distinct()
        )
        keys.update((s, Sport(sp), GameType(gt)) for s, sp, gt in rows.all())
        return keys

    async def _seeds(
        self, session: AsyncSession, job: RatingRecalculation
    ) -> Tuple[Dict[PartitionKey, Dict[str, Cut]], bool]:
        """Initial players and cut dates per partition for ``job``'s scope.

        The flag is true when every eligible match of a partition replays.
        """

        scope = RecalculationScope(job.scope)
        seeds: Dict[PartitionKey, Dict[str, Cut]] = {}

        if scope == RecalculationScope.MATCH:
            match = await session.get(Match, job.target_id)
            if match is None:
                raise TargetNotFound(scope.value, job.target_id)
            key = (match.season_id, Sport(match.sport), GameType(match.game_type))
            rows = await session.execute(
                select(MatchParticipant).where(MatchParticipant.match_id == match.id)
            )
            sides = accepted_sides(list(rows.scalars().all()))
            players = {pid: match.match_date for pid in sides["A"] + sides["B"]}
            holders = await session.execute(
                select(PlayerRating.player_id)
                .join(RatingHistory, RatingHistory.player_rating_id == PlayerRating.id)
                .where(
                    RatingHistory.match_id == match.id,
                    RatingHistory.superseded_by_recalculation_id.is_(None),
                )
            )
            for (pid,) in holders.all():
                players.setdefault(pid, match.match_date)
            seeds[key] = players
            return seeds, False

        if scope == RecalculationScope.PLAYER:
            for key in await self._player_partitions(session, job.target_id, job.season_id):
                seeds[key] = {job.target_id: None}
            return seeds, False

        if scope == RecalculationScope.DIVISION:
            stmt = select(Match).where(
                Match.division_id == job.target_id,
                Match.season_id.is_not(None),
                Match.status.in_(TERMINAL_SUCCESS_STATUSES),
                Match.is_friendly.is_(False),
            )
            if job.season_id:
                stmt = stmt.where(Match.season_id == job.season_id)
            matches = list((await session.execute(stmt)).scalars().all())
            first: Dict[PartitionKey, datetime] = {}
            members: Dict[PartitionKey, Set[str]] = {}
            participants = await self._participants_by_match(session, [m.id for m in matches])
            for match in matches:
                key = (match.season_id, Sport(match.sport), GameType(match.game_type))
                if key not in first or match.match_date < first[key]:
                    first[key] = match.match_date
                sides = accepted_sides(participants.get(match.id, []))
                members.setdefault(key, set()).update(sides["A"] + sides["B"])

            stmt = select(PlayerRating).where(PlayerRating.division_id == job.target_id)
            if job.season_id:
                stmt = stmt.where(PlayerRating.season_id == job.season_id)
            for rating in (await session.execute(stmt)).scalars().all():
                key = (rating.season_id, Sport(rating.sport), GameType(rating.game_type))
                members.setdefault(key, set()).add(rating.player_id)

            for key, players in members.items():
                cut = first.get(key)
                seeds[key] = {pid: cut for pid in players}
            return seeds, False

        for key in await self._season_partitions(session, job.target_id):
            rows = await session.execute(
                select(PlayerRating.player_id).where(
                    PlayerRating.season_id == key[0],
                    PlayerRating.sport == key[1],
                    PlayerRating.game_type == key[2],
                )
            )
            seeds[key] = {pid: None for (pid,) in rows.all()}
        return seeds, True

    # -- planning ---------------------------------------------------------

    async def _participants_by_match(
        self, session: AsyncSession, match_ids: List[str]
    ) -> Dict[str, List[MatchParticipant]]:
        grouped: Dict[str, List[MatchParticipant]] = {}
        if not match_ids:
            return grouped
        rows = await session.execute(
            select(MatchParticipant).where(MatchParticipant.match_id.in_(match_ids))
        )
        for participant in rows.scalars().all():
            grouped.setdefault(participant.match_id, []).append(participant)
        return grouped

    async def _eligible_matches(
        self, session: AsyncSession, key: PartitionKey
    ) -> List[RatedMatch]:
        season_id, sport, game_type = key
        rows = await session.execute(
            select(Match)
            .where(
                Match.season_id == season_id,
                Match.sport == sport,
                Match.game_type == game_type,
                Match.status.in_(TERMINAL_SUCCESS_STATUSES),
            )
            .order_by(Match.match_date, Match.id)
        )
        matches = list(rows.scalars().all())
        participants = await self._participants_by_match(session, [m.id for m in matches])
        disputed = set()
        if matches:
            rows = await session.execute(
                select(MatchDispute.match_id).where(
                    MatchDispute.match_id.in_([m.id for m in matches]),
                    MatchDispute.status.in_(ACTIVE_DISPUTE_STATUSES),
                )
            )
            disputed = {r[0] for r in rows.all()}

        rated: List[RatedMatch] = []
        for match in matches:
            parts = participants.get(match.id, [])
            if not is_rating_eligible(match, parts, match.id in disputed):
                continue
            rated.append(RatedMatch.from_match(match, parts))
        return rated

    async def _plan_partition(
        self,
        session: AsyncSession,
        key: PartitionKey,
        seeds: Dict[str, Cut],
        *,
        replay_all: bool,
        lock: bool,
    ) -> PartitionPlan:
        season_id, sport, game_type = key
        matches = await self._eligible_matches(session, key)

        stmt = select(PlayerRating).where(
            PlayerRating.season_id == season_id,
            PlayerRating.sport == sport,
            PlayerRating.game_type == game_type,
        )
        if lock:
            stmt = stmt.order_by(PlayerRating.player_id).with_for_update()
        ratings = {r.player_id: r for r in (await session.execute(stmt)).scalars().all()}
        by_rating_id = {r.id: r.player_id for r in ratings.values()}

        chains: Dict[str, List[RatingHistory]] = {}
        if by_rating_id:
            rows = await session.execute(
                select(RatingHistory)
                .where(
                    RatingHistory.player_rating_id.in_(list(by_rating_id)),
                    RatingHistory.superseded_by_recalculation_id.is_(None),
                )
                .order_by(RatingHistory.id)
            )
            for entry in rows.scalars().all():
                chains.setdefault(by_rating_id[entry.player_rating_id], []).append(entry)

        cuts: Dict[str, Cut] = dict(seeds)
        if replay_all:
            for match in matches:
                for pid in match.player_ids:
                    cuts[pid] = None

        while True:
            self._close_cuts(cuts, matches)
            splits = {pid: self._split(chains.get(pid, []), cut) for pid, cut in cuts.items()}
            lowered = False
            for pid, cut in list(cuts.items()):
                if cut is None:
                    continue
                for entry in chains.get(pid, [])[splits[pid]:]:
                    # A match entry applied out of date order after the cut
                    # must also be replayed, so the cut moves back to it.
                    if entry.reason in MATCH_ENTRY_REASONS and entry.effective_at < cuts[pid]:
                        cuts[pid] = entry.effective_at
                        lowered = True
            if not lowered:
                break

        baselines = {
            pid: baseline_from_chain(pid, chains.get(pid, [])[: splits[pid]], self.params)
            for pid in cuts
        }

        events: List[ReplayEvent] = [
            ReplayEvent(at=m.match_date, kind=MATCH_EVENT, key=m.match_id, match=m)
            for m in matches
            if any(pid in cuts and _at_or_after(m.match_date, cuts[pid]) for pid in m.player_ids)
        ]
        for pid in cuts:
            for entry in chains.get(pid, [])[splits[pid]:]:
                if entry.reason == RatingChangeReason.ADJUSTMENT:
                    events.append(
                        ReplayEvent(
                            at=entry.effective_at,
                            kind=ADJUSTMENT_EVENT,
                            key=f"{entry.id:012d}",
                            entry=entry,
                            player_id=pid,
                        )
                    )
        events.sort(key=lambda e: e.sort_key)

        return PartitionPlan(
            season_id=season_id,
            sport=sport,
            game_type=game_type,
            cuts=cuts,
            ratings={pid: ratings[pid] for pid in cuts if pid in ratings},
            chains={pid: chains.get(pid, []) for pid in cuts},
            splits=splits,
            baselines=baselines,
            events=events,
        )

    @staticmethod
    def _close_cuts(cuts: Dict[str, Cut], matches: List[RatedMatch]) -> None:
        """Pull in every participant of a match that replays, to a fixpoint."""

        changed = True
        while changed:
            changed = False
            for match in matches:
                replays = any(
                    pid in cuts and _at_or_after(match.match_date, cuts[pid])
                    for pid in match.player_ids
                )
                if not replays:
                    continue
                for pid in match.player_ids:
                    if pid not in cuts:
                        cuts[pid] = match.match_date
                        changed = True
                    else:
                        lowered = _earlier(cuts[pid], match.match_date)
                        if lowered != cuts[pid]:
                            cuts[pid] = lowered
                            changed = True

    @staticmethod
    def _split(chain: List[RatingHistory], cut: Cut) -> int:
        for index, entry in enumerate(chain):
            if _at_or_after(entry.effective_at, cut):
                return index
        return len(chain)

    async def _replay(
        self,
        plan: PartitionPlan,
        check_cancel: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> Replay:
        states: Dict[str, RatingState] = dict(plan.baselines)
        replay = Replay(plan=plan, final=states)
        for index, event in enumerate(plan.events):
            if check_cancel is not None and index % CANCEL_CHECK_EVERY == 0:
                await check_cancel()
            if event.match is not None:
                application = self.engine.compute(
                    event.match, {pid: states[pid] for pid in event.match.player_ids}
                )
                states.update(application.updated)
                replay.drafts.extend(application.history)
                continue

            entry = event.entry
            state = states[event.player_id]
            adjusted = state.with_rating(state.rating + entry.delta, event.at)
            replay.drafts.append(
                HistoryDraft(
                    player_id=event.player_id,
                    match_id=None,
                    reason=RatingChangeReason.ADJUSTMENT,
                    rating_before=state.rating,
                    rating_after=adjusted.rating,
                    rd_before=state.rd,
                    rd_after=state.rd,
                    volatility_before=state.volatility,
                    volatility_after=state.volatility,
                    matches_played_after=state.matches_played,
                    effective_at=event.at,
                    adjustment_id=entry.adjustment_id,
                    notes=entry.notes,
                )
            )
            states[event.player_id] = adjusted
            replay.adjustments += 1
        if check_cancel is not None:
            await check_cancel()
        return replay

    async def _replay_job(
        self,
        session: AsyncSession,
        job: RatingRecalculation,
        *,
        lock: bool,
        check_cancel: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> List[Replay]:
        seeds, replay_all = await self._seeds(session, job)
        replays = []
        for key in sorted(seeds, key=_key_sort):
            plan = await self._plan_partition(
                session, key, seeds[key], replay_all=replay_all, lock=lock
            )
            replays.append(await self._replay(plan, check_cancel))
        return replays

    # -- live write -------------------------------------------------------

    async def _write(
        self, session: AsyncSession, job: RatingRecalculation, replays: List[Replay]
    ) -> None:
        now = utcnow()
        replayed_matches: List[str] = []
        for replay in replays:
            plan = replay.plan
            first_event: Dict[str, datetime] = {}
            for draft in replay.drafts:
                first_event.setdefault(draft.player_id, draft.effective_at)

            for pid in sorted(plan.cuts):
                for entry in plan.superseded(pid):
                    entry.superseded_by_recalculation_id = job.id
                rating = plan.ratings.get(pid)
                if rating is None:
                    continue
                base = plan.baselines[pid]
                rebase = HistoryDraft(
                    player_id=pid,
                    match_id=None,
                    reason=RatingChangeReason.RECALCULATION,
                    rating_before=rating.current_rating,
                    rating_after=base.rating,
                    rd_before=rating.rating_deviation,
                    rd_after=base.rd,
                    volatility_before=rating.volatility,
                    volatility_after=base.volatility,
                    matches_played_after=base.matches_played,
                    effective_at=plan.cuts[pid] or first_event.get(pid, now),
                    notes=f"rebased by recalculation {job.id}",
                )
                self.store.append(
                    session, rebase.to_entry(rating.id, recalculation_id=job.id)
                )

            for match in plan.matches:
                replayed_matches.append(match.match_id)
                for pid in match.player_ids:
                    if pid not in plan.ratings:
                        rating = await self.store.get_or_create(
                            session,
                            pid,
                            plan.season_id,
                            plan.sport,
                            plan.game_type,
                            match.division_id,
                        )
                        plan.ratings[pid] = rating
            await self.store.flush(session, f"recalculation {job.id} rebase")

            for draft in replay.drafts:
                rating = plan.ratings[draft.player_id]
                self.store.append(
                    session, draft.to_entry(rating.id, recalculation_id=job.id)
                )
            for pid, rating in plan.ratings.items():
                apply_state(rating, replay.final[pid])
                self.store.save(session, rating)

        if replayed_matches:
            await session.execute(
                update(RatingTask)
                .where(
                    RatingTask.match_id.in_(replayed_matches),
                    RatingTask.status.in_(
                        (RatingTaskStatus.PENDING, RatingTaskStatus.BLOCKED)
                    ),
                )
                .values(status=RatingTaskStatus.DONE, processed_at=now)
                .execution_options(synchronize_session=False)
            )
        await self.store.flush(session, f"recalculation {job.id}")
