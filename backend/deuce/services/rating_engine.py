"""Per-match rating updates.

:meth:`RatingEngine.compute` is a pure function of a finalised match and the
participants' current states. :meth:`RatingEngine.apply` wraps it with the
persistence guards: eligibility, open disputes, idempotency per match and
chronological order per player.

Walkover policy: a walkover carries no margin-of-victory bonus, and the
defaulting side's capped loss is scaled by ``walkover_loss_factor`` (0.5 by
default). A no-show therefore always costs strictly less than a competitive
loss at the same deviation, while the winner is credited with
``walkover_win_factor`` of a normal win.
"""

import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Dict, Mapping, Optional, Sequence, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from ..config import RatingParameters
from ..exceptions import (
    AlreadyProcessed,
    DisputePending,
    MatchNotFound,
    NotRatingEligible,
    OutOfOrderApply,
)
from ..models import (
    GameType,
    Match,
    MatchOutcome,
    MatchParticipant,
    PlayerRating,
    RatingChangeReason,
    RatingHistory,
    ResultSource,
    Sport,
)
from . import outbox
from .eligibility import (
    accepted_sides,
    get_open_dispute,
    ineligibility_reason,
    load_participants,
)
from .glicko import Glicko, Glicko2Model, SkillModel
from .rating_store import RatingStore

logger = logging.getLogger(__name__)


def chronological_key(match_date: datetime, match_id: Optional[str]) -> Tuple[datetime, str]:
    """Total order of rating work inside a partition."""

    return match_date, match_id or ""


@dataclass(frozen=True)
class RatingState:
    player_id: str
    rating: float
    rd: float
    volatility: float
    matches_played: int
    is_provisional: bool
    peak_rating: float
    peak_rating_date: Optional[datetime]
    lowest_rating: float
    last_match_id: Optional[str] = None
    last_match_date: Optional[datetime] = None

    @classmethod
    def initial(cls, player_id: str, params: RatingParameters) -> "RatingState":
        return cls(
            player_id=player_id,
            rating=params.default_rating,
            rd=params.default_rd,
            volatility=params.default_volatility,
            matches_played=0,
            is_provisional=True,
            peak_rating=params.default_rating,
            peak_rating_date=None,
            lowest_rating=params.default_rating,
        )

    @classmethod
    def from_model(cls, rating: PlayerRating) -> "RatingState":
        return cls(
            player_id=rating.player_id,
            rating=rating.current_rating,
            rd=rating.rating_deviation,
            volatility=rating.volatility,
            matches_played=rating.matches_played,
            is_provisional=rating.is_provisional,
            peak_rating=rating.peak_rating,
            peak_rating_date=rating.peak_rating_date,
            lowest_rating=rating.lowest_rating,
            last_match_id=rating.last_match_id,
            last_match_date=rating.last_match_date,
        )

    @property
    def glicko(self) -> Glicko:
        return Glicko(self.rating, self.rd, self.volatility)

    def with_rating(self, rating: float, when: Optional[datetime]) -> "RatingState":
        """Move to ``rating`` keeping peak/lowest bookkeeping in step."""

        peak, peak_date = self.peak_rating, self.peak_rating_date
        if rating > peak:
            peak, peak_date = rating, when
        return replace(
            self,
            rating=rating,
            peak_rating=peak,
            peak_rating_date=peak_date,
            lowest_rating=min(self.lowest_rating, rating),
        )


@dataclass(frozen=True)
class RatedMatch:
    """Snapshot of a finalised match as the engine sees it."""

    match_id: str
    match_date: datetime
    season_id: str
    division_id: Optional[str]
    sport: Sport
    game_type: GameType
    side_a: Tuple[str, ...]
    side_b: Tuple[str, ...]
    outcome: MatchOutcome
    is_walkover: bool = False
    side_a_score: Optional[int] = None
    side_b_score: Optional[int] = None
    side_a_points: Optional[int] = None
    side_b_points: Optional[int] = None
    result_source: Optional[ResultSource] = None

    def __post_init__(self) -> None:
        if not self.side_a or not self.side_b:
            raise ValueError("both sides need at least one player")
        if set(self.side_a) & set(self.side_b):
            raise ValueError("a player cannot be on both sides")
        if self.is_walkover and self.outcome == MatchOutcome.TIE:
            raise ValueError("a walkover cannot end in a tie")

    @classmethod
    def from_match(
        cls, match: Match, participants: Sequence[MatchParticipant]
    ) -> "RatedMatch":
        sides = accepted_sides(participants)
        return cls(
            match_id=match.id,
            match_date=match.match_date,
            season_id=match.season_id,
            division_id=match.division_id,
            sport=Sport(match.sport),
            game_type=GameType(match.game_type),
            side_a=tuple(sides["A"]),
            side_b=tuple(sides["B"]),
            outcome=MatchOutcome(match.outcome),
            is_walkover=bool(match.is_walkover),
            side_a_score=match.side_a_score,
            side_b_score=match.side_b_score,
            side_a_points=match.side_a_points,
            side_b_points=match.side_b_points,
            result_source=ResultSource(match.result_source) if match.result_source else None,
        )

    @property
    def player_ids(self) -> Tuple[str, ...]:
        return self.side_a + self.side_b


@dataclass(frozen=True)
class HistoryDraft:
    player_id: str
    match_id: Optional[str]
    reason: RatingChangeReason
    rating_before: float
    rating_after: float
    rd_before: float
    rd_after: float
    volatility_before: float
    volatility_after: float
    matches_played_after: int
    effective_at: datetime
    adjustment_id: Optional[str] = None
    notes: Optional[str] = None

    @property
    def delta(self) -> float:
        return self.rating_after - self.rating_before

    def to_entry(
        self, player_rating_id: str, *, recalculation_id: Optional[str] = None
    ) -> RatingHistory:
        return RatingHistory(
            player_rating_id=player_rating_id,
            match_id=self.match_id,
            adjustment_id=self.adjustment_id,
            recalculation_id=recalculation_id,
            reason=self.reason,
            rating_before=self.rating_before,
            rating_after=self.rating_after,
            delta=self.delta,
            rd_before=self.rd_before,
            rd_after=self.rd_after,
            volatility_before=self.volatility_before,
            volatility_after=self.volatility_after,
            matches_played_after=self.matches_played_after,
            effective_at=self.effective_at,
            notes=self.notes,
        )


@dataclass(frozen=True)
class MatchApplication:
    match: RatedMatch
    updated: Dict[str, RatingState]
    history: Tuple[HistoryDraft, ...]
    score_factor: float = 1.0


def _team(states: Sequence[Glicko]) -> Glicko:
    n = len(states)
    return Glicko(
        rating=sum(s.rating for s in states) / n,
        rd=math.sqrt(sum(s.rd**2 for s in states) / n),
        volatility=sum(s.volatility for s in states) / n,
    )


class RatingEngine:
    def __init__(
        self,
        model: Optional[SkillModel] = None,
        params: Optional[RatingParameters] = None,
        store: Optional[RatingStore] = None,
    ) -> None:
        self.params = params or RatingParameters()
        self.model = model or Glicko2Model(self.params)
        self.store = store or RatingStore(self.params)

    # -- pure computation -------------------------------------------------

    def score_factor(self, match: RatedMatch) -> float:
        """Margin-of-victory multiplier, at least 1."""

        if match.is_walkover or match.outcome == MatchOutcome.TIE:
            return 1.0
        if match.side_a_score is None or match.side_b_score is None:
            return 1.0

        p = self.params
        a_won = match.outcome == MatchOutcome.A
        w_units, l_units = (
            (match.side_a_score, match.side_b_score)
            if a_won
            else (match.side_b_score, match.side_a_score)
        )
        set_factor = (w_units - l_units) / max(w_units + l_units, 3)

        point_factor = 0.0
        if match.side_a_points is not None and match.side_b_points is not None:
            w_pts, l_pts = (
                (match.side_a_points, match.side_b_points)
                if a_won
                else (match.side_b_points, match.side_a_points)
            )
            if w_pts + l_pts > 0:
                point_factor = (w_pts - l_pts) / (w_pts + l_pts)

        factor = 1 + (p.set_weight * set_factor + p.point_weight * point_factor) * 0.5
        return max(1.0, factor)

    def idle_periods(self, state: RatingState, match_date: datetime) -> int:
        if state.last_match_date is None:
            return 0
        gap = match_date - state.last_match_date
        return max(0, gap.days // self.params.inactivity_days)

    def _cap(self, delta: float, rd: float) -> float:
        p = self.params
        limit = min(p.cap_fraction_of_rd * rd, p.max_delta)
        return max(-limit, min(limit, delta))

    def _partner_rd(self, player_rd: float, team_rd_before: float, team_rd_after: float) -> float:
        p = self.params
        blend = p.partner_rd_blend
        if team_rd_before - team_rd_after > 0:
            variance_new_info = (team_rd_before**2) * blend
            variance_post = 1 / (1 / (player_rd**2) + 1 / variance_new_info)
            new_rd = math.sqrt(variance_post)
        else:
            new_rd = (1 - blend) * player_rd + blend * team_rd_after
        return max(p.min_rd, min(p.max_rd, new_rd))

    def _reason(self, match: RatedMatch, won: Optional[bool]) -> RatingChangeReason:
        if won is None:
            return RatingChangeReason.MATCH_DRAW
        if match.is_walkover:
            return RatingChangeReason.WALKOVER_WIN if won else RatingChangeReason.WALKOVER_LOSS
        return RatingChangeReason.MATCH_WIN if won else RatingChangeReason.MATCH_LOSS

    def compute(
        self, match: RatedMatch, current: Mapping[str, RatingState]
    ) -> MatchApplication:
        """Return the new states and history drafts for ``match``.

        Matches are ordered by ``(match_date, match_id)``, the same order
        replays use. Raises :class:`OutOfOrderApply` when the match sorts
        before any participant's last applied match; nothing is computed in
        that case.
        """

        p = self.params
        key = chronological_key(match.match_date, match.match_id)
        for pid in match.player_ids:
            state = current[pid]
            if state.last_match_date is None:
                continue
            if key < chronological_key(state.last_match_date, state.last_match_id):
                raise OutOfOrderApply(
                    match.match_id,
                    pid,
                    match.match_date,
                    state.last_match_date,
                    state.last_match_id,
                )

        pre: Dict[str, Glicko] = {
            pid: self.model.inflate(
                current[pid].glicko, self.idle_periods(current[pid], match.match_date)
            )
            for pid in match.player_ids
        }

        if match.outcome == MatchOutcome.TIE:
            scores = {"A": 0.5, "B": 0.5}
        elif match.outcome == MatchOutcome.A:
            scores = {"A": 1.0, "B": 0.0}
        else:
            scores = {"A": 0.0, "B": 1.0}

        sides = {"A": match.side_a, "B": match.side_b}
        teams = {side: _team([pre[pid] for pid in ids]) for side, ids in sides.items()}
        factor = self.score_factor(match)
        multiplier = math.sqrt(factor) * p.dampening

        updated: Dict[str, RatingState] = {}
        drafts = []
        for side, ids in sides.items():
            opponent = teams["B" if side == "A" else "A"]
            team_before = teams[side]
            team_after = self.model.update(team_before, opponent, scores[side])
            team_delta = (team_after.rating - team_before.rating) * multiplier
            won = None if scores[side] == 0.5 else scores[side] == 1.0
            rd_sum = sum(pre[pid].rd for pid in ids)

            for pid in ids:
                state = current[pid]
                player_pre = pre[pid]
                if len(ids) == 1:
                    delta = team_delta
                    new_rd = team_after.rd
                    new_vol = team_after.volatility
                else:
                    delta = team_delta * (player_pre.rd / rd_sum)
                    new_rd = self._partner_rd(player_pre.rd, team_before.rd, team_after.rd)
                    new_vol = (
                        (1 - p.partner_volatility_blend) * player_pre.volatility
                        + p.partner_volatility_blend * team_after.volatility
                    )

                delta = self._cap(delta, player_pre.rd)
                if match.is_walkover:
                    delta *= p.walkover_win_factor if won else p.walkover_loss_factor

                matches_played = state.matches_played + 1
                new_state = replace(
                    state.with_rating(state.rating + delta, match.match_date),
                    rd=new_rd,
                    volatility=new_vol,
                    matches_played=matches_played,
                    is_provisional=matches_played < p.provisional_threshold,
                    last_match_id=match.match_id,
                    last_match_date=match.match_date,
                )
                updated[pid] = new_state
                drafts.append(
                    HistoryDraft(
                        player_id=pid,
                        match_id=match.match_id,
                        reason=self._reason(match, won),
                        rating_before=state.rating,
                        rating_after=new_state.rating,
                        rd_before=state.rd,
                        rd_after=new_state.rd,
                        volatility_before=state.volatility,
                        volatility_after=new_state.volatility,
                        matches_played_after=matches_played,
                        effective_at=match.match_date,
                    )
                )

        return MatchApplication(
            match=match, updated=updated, history=tuple(drafts), score_factor=factor
        )

    # -- guarded apply ----------------------------------------------------

    async def load_rated_match(self, session: AsyncSession, match_id: str) -> RatedMatch:
        """Load ``match_id`` and check it may be rated right now."""

        match = await session.get(Match, match_id)
        if match is None:
            raise MatchNotFound(match_id)
        if await get_open_dispute(session, match_id) is not None:
            raise DisputePending(match_id)
        participants = await load_participants(session, match_id)
        reason = ineligibility_reason(match, participants)
        if reason is not None:
            raise NotRatingEligible(match_id, reason)
        return RatedMatch.from_match(match, participants)

    async def apply(self, session: AsyncSession, match_id: str) -> MatchApplication:
        """Rate ``match_id`` inside the caller's transaction."""

        rated = await self.load_rated_match(session, match_id)
        if await self.store.has_active_match_entry(session, match_id):
            raise AlreadyProcessed(match_id)

        existing = await self.store.load_for_update(
            session, rated.player_ids, rated.season_id, rated.sport, rated.game_type
        )
        current = {
            pid: (
                RatingState.from_model(existing[pid])
                if pid in existing
                else RatingState.initial(pid, self.params)
            )
            for pid in rated.player_ids
        }
        application = self.compute(rated, current)
        await self.store.persist(session, application, existing)

        outbox.emit(
            session,
            outbox.RATING_UPDATED,
            match_id,
            {
                "matchId": match_id,
                "seasonId": rated.season_id,
                "changes": [
                    {
                        "playerId": d.player_id,
                        "reason": d.reason.value,
                        "ratingBefore": d.rating_before,
                        "ratingAfter": d.rating_after,
                    }
                    for d in application.history
                ],
            },
        )
        logger.info(
            "Rated match %s (%s, factor=%.3f): %s",
            match_id,
            rated.outcome.value,
            application.score_factor,
            ", ".join(f"{d.player_id}{d.delta:+.2f}" for d in application.history),
        )
        return application
