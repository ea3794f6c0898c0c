from typing import Any, Dict, List, Optional
from datetime import datetime
from pydantic import BaseModel, Field, model_validator, field_validator, ConfigDict

from .models import (
    DisputeCategory,
    DisputeResolutionAction,
    DisputeStatus,
    GameType,
    MatchOutcome,
    MatchStatus,
    RatingChangeReason,
    RatingTaskStatus,
    RecalculationScope,
    RecalculationStatus,
    ResultSource,
    Sport,
    WalkoverReason,
)


class SetScoreIn(BaseModel):
    """Games per side for one set, with tiebreak points where one was played."""

    A: int
    B: int
    tiebreakA: Optional[int] = None
    tiebreakB: Optional[int] = None

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="before")
    def _coerce(cls, value: Any) -> Dict[str, Any]:
        """Allow set scores to be provided as objects or 2/4-item lists."""
        if isinstance(value, dict):
            return value
        if isinstance(value, (list, tuple)) and len(value) in (2, 4):
            keys = ("A", "B", "tiebreakA", "tiebreakB")
            return dict(zip(keys, value))
        raise TypeError("Set scores must be a mapping or a 2/4-item list.")


class GameScoreIn(BaseModel):
    """Points per side for one pickleball game."""

    A: int
    B: int

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="before")
    def _coerce(cls, value: Any) -> Dict[str, Any]:
        if isinstance(value, dict):
            return value
        if isinstance(value, (list, tuple)) and len(value) == 2:
            return {"A": value[0], "B": value[1]}
        raise TypeError("Game scores must be a mapping or 2-item list.")


def _dump_units(units: Optional[List[BaseModel]]) -> Optional[List[Dict[str, Any]]]:
    if units is None:
        return None
    return [u.model_dump() for u in units]


class ResultSubmitIn(BaseModel):
    setScores: Optional[List[SetScoreIn]] = None
    gameScores: Optional[List[GameScoreIn]] = None
    isUnfinished: bool = False

    @model_validator(mode="after")
    def _one_kind(self) -> "ResultSubmitIn":
        if self.setScores and self.gameScores:
            raise ValueError("provide setScores or gameScores, not both")
        if not self.setScores and not self.gameScores:
            raise ValueError("setScores or gameScores is required")
        return self

    def units(self) -> Dict[str, Optional[List[Dict[str, Any]]]]:
        return {
            "set_scores": _dump_units(self.setScores),
            "game_scores": _dump_units(self.gameScores),
        }


class ConfirmIn(BaseModel):
    accept: bool
    disputeCategory: DisputeCategory = DisputeCategory.OTHER
    disputeReason: Optional[str] = Field(default=None, max_length=2000)
    disputerScores: Optional[List[SetScoreIn]] = None

    @field_validator("disputeReason", mode="before")
    @classmethod
    def _strip_reason(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        if not isinstance(value, str):
            raise TypeError("disputeReason must be a string")
        return value.strip() or None


class WalkoverIn(BaseModel):
    defaultingPlayerId: str = Field(..., min_length=1)
    reason: WalkoverReason
    reasonDetail: Optional[str] = Field(default=None, max_length=2000)


class DisputeResolveIn(BaseModel):
    action: DisputeResolutionAction
    outcome: Optional[MatchOutcome] = None
    setScores: Optional[List[SetScoreIn]] = None
    gameScores: Optional[List[GameScoreIn]] = None
    defaultingPlayerId: Optional[str] = None
    walkoverReason: WalkoverReason = WalkoverReason.NO_SHOW
    notes: Optional[str] = Field(default=None, max_length=2000)

    @model_validator(mode="after")
    def _check_action_inputs(self) -> "DisputeResolveIn":
        if (
            self.action == DisputeResolutionAction.AWARD_WALKOVER
            and not self.defaultingPlayerId
        ):
            raise ValueError("defaultingPlayerId is required to award a walkover")
        if self.setScores and self.gameScores:
            raise ValueError("provide setScores or gameScores, not both")
        return self


class AdjustmentIn(BaseModel):
    newRating: float = Field(..., gt=0, lt=5000)
    reason: str = Field(..., min_length=1, max_length=2000)


class SeasonLockIn(BaseModel):
    notes: Optional[str] = Field(default=None, max_length=2000)


class RecalculationIn(BaseModel):
    scope: RecalculationScope
    targetId: str = Field(..., min_length=1)
    seasonId: Optional[str] = None

    @model_validator(mode="after")
    def _player_needs_season(self) -> "RecalculationIn":
        if self.scope == RecalculationScope.PLAYER and not self.seasonId:
            raise ValueError("seasonId is required for PLAYER recalculations")
        return self


class MatchStateOut(BaseModel):
    """Lifecycle view of a match after a command."""

    id: str
    status: MatchStatus
    proposedOutcome: Optional[MatchOutcome] = None
    outcome: Optional[MatchOutcome] = None
    sideAScore: Optional[int] = None
    sideBScore: Optional[int] = None
    isDisputed: bool = False
    isWalkover: bool = False
    isAutoApproved: bool = False
    resultSource: Optional[ResultSource] = None
    resultSubmittedBy: Optional[str] = None
    resultSubmittedAt: Optional[datetime] = None
    resultConfirmedBy: Optional[str] = None
    resultConfirmedAt: Optional[datetime] = None


class DisputeOut(BaseModel):
    id: str
    matchId: str
    raisedBy: str
    category: DisputeCategory
    reason: Optional[str] = None
    status: DisputeStatus
    disputedResult: Dict[str, Any]
    disputerScores: Optional[List[Dict[str, Any]]] = None
    resolutionAction: Optional[DisputeResolutionAction] = None
    resolvedBy: Optional[str] = None
    resolvedAt: Optional[datetime] = None
    resolutionNotes: Optional[str] = None
    createdAt: datetime


class PlayerRatingOut(BaseModel):
    id: str
    playerId: str
    seasonId: str
    divisionId: Optional[str] = None
    sport: Sport
    gameType: GameType
    rating: float
    ratingDeviation: float
    volatility: float
    confidenceLow: float
    confidenceHigh: float
    matchesPlayed: int
    isProvisional: bool
    peakRating: float
    peakRatingDate: Optional[datetime] = None
    lowestRating: float
    lastMatchId: Optional[str] = None
    lastMatchDate: Optional[datetime] = None


class RatingHistoryOut(BaseModel):
    id: int
    ratingId: str
    matchId: Optional[str] = None
    adjustmentId: Optional[str] = None
    recalculationId: Optional[str] = None
    supersededByRecalculationId: Optional[str] = None
    reason: RatingChangeReason
    ratingBefore: float
    ratingAfter: float
    delta: float
    rdBefore: float
    rdAfter: float
    volatilityBefore: float
    volatilityAfter: float
    matchesPlayedAfter: int
    effectiveAt: datetime
    createdAt: datetime
    notes: Optional[str] = None


class AdjustmentOut(BaseModel):
    id: str
    ratingId: str
    adminId: str
    reason: str
    ratingBefore: float
    ratingAfter: float
    delta: float
    createdAt: datetime


class WinProbabilityOut(BaseModel):
    playerId: str
    opponentId: str
    probability: float


class SeasonLockOut(BaseModel):
    seasonId: str
    isLocked: bool
    lockedBy: Optional[str] = None
    lockedAt: Optional[datetime] = None
    notes: Optional[str] = None


class RatingTaskOut(BaseModel):
    id: str
    matchId: str
    seasonId: str
    matchDate: datetime
    status: RatingTaskStatus
    attempts: int
    lastError: Optional[str] = None
    processedAt: Optional[datetime] = None


class RecalculationOut(BaseModel):
    id: str
    scope: RecalculationScope
    targetId: str
    seasonId: Optional[str] = None
    requestedBy: str
    status: RecalculationStatus
    affectedPlayerCount: Optional[int] = None
    affectedMatchCount: Optional[int] = None
    preview: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    createdAt: datetime
    previewAt: Optional[datetime] = None
    appliedAt: Optional[datetime] = None
    failedAt: Optional[datetime] = None
    cancelledAt: Optional[datetime] = None
