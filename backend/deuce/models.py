import enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB

from .db import Base
from .time_utils import utcnow


class Sport(str, enum.Enum):
    TENNIS = "tennis"
    PADEL = "padel"
    PICKLEBALL = "pickleball"


class GameType(str, enum.Enum):
    SINGLES = "SINGLES"
    DOUBLES = "DOUBLES"


class MatchStatus(str, enum.Enum):
    SCHEDULED = "SCHEDULED"
    ONGOING = "ONGOING"
    COMPLETED = "COMPLETED"
    WALKOVER = "WALKOVER"
    UNFINISHED = "UNFINISHED"
    CANCELLED = "CANCELLED"


class Side(str, enum.Enum):
    A = "A"
    B = "B"

    @property
    def other(self) -> "Side":
        return Side.B if self is Side.A else Side.A


class MatchOutcome(str, enum.Enum):
    A = "A"
    B = "B"
    TIE = "TIE"


class FinalSetFormat(str, enum.Enum):
    MATCH_TIEBREAK = "MATCH_TIEBREAK"
    FULL_SET = "FULL_SET"


class ParticipantRole(str, enum.Enum):
    CREATOR = "CREATOR"
    PARTNER = "PARTNER"
    OPPONENT = "OPPONENT"


class InvitationStatus(str, enum.Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"


class ResultSource(str, enum.Enum):
    PARTICIPANTS = "PARTICIPANTS"
    AUTO_APPROVED = "AUTO_APPROVED"
    ADMIN_FORCED = "ADMIN_FORCED"
    WALKOVER = "WALKOVER"


class ScoreUnitKind(str, enum.Enum):
    SET = "SET"
    GAME = "GAME"


class DisputeStatus(str, enum.Enum):
    OPEN = "OPEN"
    UNDER_REVIEW = "UNDER_REVIEW"
    RESOLVED = "RESOLVED"
    REJECTED = "REJECTED"


class DisputeCategory(str, enum.Enum):
    WRONG_SCORE = "WRONG_SCORE"
    NO_SHOW = "NO_SHOW"
    BEHAVIOR = "BEHAVIOR"
    OTHER = "OTHER"


class DisputeResolutionAction(str, enum.Enum):
    UPHOLD_ORIGINAL = "UPHOLD_ORIGINAL"
    UPHOLD_DISPUTER = "UPHOLD_DISPUTER"
    CUSTOM_SCORE = "CUSTOM_SCORE"
    RESUBMIT = "RESUBMIT"
    VOID_MATCH = "VOID_MATCH"
    AWARD_WALKOVER = "AWARD_WALKOVER"
    REJECT = "REJECT"


class WalkoverReason(str, enum.Enum):
    NO_SHOW = "NO_SHOW"
    LATE_CANCELLATION = "LATE_CANCELLATION"
    INJURY = "INJURY"
    PERSONAL_EMERGENCY = "PERSONAL_EMERGENCY"
    OTHER = "OTHER"


class RatingChangeReason(str, enum.Enum):
    MATCH_WIN = "MATCH_WIN"
    MATCH_LOSS = "MATCH_LOSS"
    MATCH_DRAW = "MATCH_DRAW"
    WALKOVER_WIN = "WALKOVER_WIN"
    WALKOVER_LOSS = "WALKOVER_LOSS"
    ADJUSTMENT = "ADJUSTMENT"
    RECALCULATION = "RECALCULATION"


class RecalculationScope(str, enum.Enum):
    MATCH = "MATCH"
    PLAYER = "PLAYER"
    DIVISION = "DIVISION"
    SEASON = "SEASON"


class RecalculationStatus(str, enum.Enum):
    PENDING = "PENDING"
    PREVIEW_READY = "PREVIEW_READY"
    APPLIED = "APPLIED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class RatingTaskStatus(str, enum.Enum):
    PENDING = "PENDING"
    # Consistency violation; waits for a recalculation or an admin requeue.
    BLOCKED = "BLOCKED"
    DONE = "DONE"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


TERMINAL_SUCCESS_STATUSES = (MatchStatus.COMPLETED, MatchStatus.WALKOVER)


def _enum(enum_cls):
    return Enum(
        enum_cls,
        native_enum=False,
        length=32,
        validate_strings=True,
        values_callable=lambda members: [m.value for m in members],
    )


_JSON = JSON().with_variant(JSONB, "postgresql")


class Match(Base):
    __tablename__ = "match"
    id = Column(String, primary_key=True)
    sport = Column(_enum(Sport), nullable=False)
    game_type = Column(_enum(GameType), nullable=False)
    season_id = Column(String, nullable=True)
    division_id = Column(String, nullable=True)
    match_date = Column(DateTime, nullable=False)
    best_of = Column(Integer, nullable=True, default=3)
    final_set_format = Column(
        _enum(FinalSetFormat), nullable=False, default=FinalSetFormat.MATCH_TIEBREAK
    )
    status = Column(_enum(MatchStatus), nullable=False, default=MatchStatus.SCHEDULED)
    side_a_score = Column(Integer, nullable=True)
    side_b_score = Column(Integer, nullable=True)
    # Games (tennis/padel) or points (pickleball) won across all units.
    side_a_points = Column(Integer, nullable=True)
    side_b_points = Column(Integer, nullable=True)
    proposed_outcome = Column(_enum(MatchOutcome), nullable=True)
    outcome = Column(_enum(MatchOutcome), nullable=True)
    is_friendly = Column(Boolean, nullable=False, default=False)
    is_walkover = Column(Boolean, nullable=False, default=False)
    is_disputed = Column(Boolean, nullable=False, default=False)
    is_auto_approved = Column(Boolean, nullable=False, default=False)
    result_source = Column(_enum(ResultSource), nullable=True)
    result_submitted_by = Column(String, nullable=True)
    result_submitted_at = Column(DateTime, nullable=True)
    result_confirmed_by = Column(String, nullable=True)
    result_confirmed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        CheckConstraint(
            "(status IN ('COMPLETED', 'WALKOVER') AND outcome IS NOT NULL)"
            " OR (status NOT IN ('COMPLETED', 'WALKOVER') AND outcome IS NULL)",
            name="ck_match_outcome_iff_final",
        ),
        Index("ix_match_season_date", "season_id", "match_date"),
        Index("ix_match_division_date", "division_id", "match_date"),
    )


class MatchParticipant(Base):
    __tablename__ = "match_participant"
    id = Column(String, primary_key=True)
    match_id = Column(String, ForeignKey("match.id"), nullable=False)
    player_id = Column(String, nullable=False)
    role = Column(_enum(ParticipantRole), nullable=False)
    side = Column(_enum(Side), nullable=False)
    invitation_status = Column(
        _enum(InvitationStatus), nullable=False, default=InvitationStatus.PENDING
    )

    __table_args__ = (
        UniqueConstraint(
            "match_id", "player_id", name="uq_match_participant_match_id_player_id"
        ),
        Index("ix_match_participant_player_id", "player_id"),
    )


class ScoreEntry(Base):
    __tablename__ = "score_entry"
    id = Column(String, primary_key=True)
    match_id = Column(String, ForeignKey("match.id"), nullable=False)
    unit_number = Column(Integer, nullable=False)
    kind = Column(_enum(ScoreUnitKind), nullable=False)
    side_a = Column(Integer, nullable=False)
    side_b = Column(Integer, nullable=False)
    side_a_tiebreak = Column(Integer, nullable=True)
    side_b_tiebreak = Column(Integer, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "match_id", "unit_number", name="uq_score_entry_match_id_unit_number"
        ),
    )


class MatchDispute(Base):
    __tablename__ = "match_dispute"
    id = Column(String, primary_key=True)
    match_id = Column(String, ForeignKey("match.id"), nullable=False)
    raised_by = Column(String, nullable=False)
    category = Column(_enum(DisputeCategory), nullable=False)
    reason = Column(Text, nullable=True)
    status = Column(_enum(DisputeStatus), nullable=False, default=DisputeStatus.OPEN)
    disputed_result = Column(_JSON, nullable=False)
    disputer_scores = Column(_JSON, nullable=True)
    resolution_action = Column(_enum(DisputeResolutionAction), nullable=True)
    resolved_by = Column(String, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    resolution_notes = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (Index("ix_match_dispute_match_status", "match_id", "status"),)


class MatchWalkover(Base):
    __tablename__ = "match_walkover"
    id = Column(String, primary_key=True)
    match_id = Column(String, ForeignKey("match.id"), nullable=False, unique=True)
    reason = Column(_enum(WalkoverReason), nullable=False)
    reason_detail = Column(Text, nullable=True)
    defaulting_player_id = Column(String, nullable=False)
    reported_by = Column(String, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class PlayerRating(Base):
    """Current rating snapshot for a player in one season/sport/game type."""

    __tablename__ = "player_rating"
    id = Column(String, primary_key=True)
    player_id = Column(String, nullable=False)
    season_id = Column(String, nullable=False)
    division_id = Column(String, nullable=True)
    sport = Column(_enum(Sport), nullable=False)
    game_type = Column(_enum(GameType), nullable=False)
    current_rating = Column(Float, nullable=False)
    rating_deviation = Column(Float, nullable=False)
    volatility = Column(Float, nullable=False)
    matches_played = Column(Integer, nullable=False, default=0)
    is_provisional = Column(Boolean, nullable=False, default=True)
    peak_rating = Column(Float, nullable=False)
    peak_rating_date = Column(DateTime, nullable=True)
    lowest_rating = Column(Float, nullable=False)
    last_match_id = Column(String, nullable=True)
    last_match_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        UniqueConstraint(
            "player_id",
            "season_id",
            "sport",
            "game_type",
            name="uq_player_rating_scope",
        ),
        Index("ix_player_rating_division_id", "division_id"),
    )


class RatingHistory(Base):
    """Append-only ledger of rating transitions.

    ``id`` is monotonically increasing and orders each rating's chain.
    Rows are never updated apart from ``superseded_by_recalculation_id``,
    written once when an applied recalculation replaces the entry.
    """

    __tablename__ = "rating_history"
    id = Column(Integer, primary_key=True, autoincrement=True)
    player_rating_id = Column(String, ForeignKey("player_rating.id"), nullable=False)
    match_id = Column(String, ForeignKey("match.id"), nullable=True)
    adjustment_id = Column(String, ForeignKey("rating_adjustment.id"), nullable=True)
    recalculation_id = Column(
        String, ForeignKey("rating_recalculation.id"), nullable=True
    )
    superseded_by_recalculation_id = Column(
        String, ForeignKey("rating_recalculation.id"), nullable=True
    )
    reason = Column(_enum(RatingChangeReason), nullable=False)
    rating_before = Column(Float, nullable=False)
    rating_after = Column(Float, nullable=False)
    delta = Column(Float, nullable=False)
    rd_before = Column(Float, nullable=False)
    rd_after = Column(Float, nullable=False)
    volatility_before = Column(Float, nullable=False)
    volatility_after = Column(Float, nullable=False)
    matches_played_after = Column(Integer, nullable=False)
    effective_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    notes = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_rating_history_rating_id", "player_rating_id", "id"),
        Index("ix_rating_history_match_id", "match_id"),
    )


class RatingAdjustment(Base):
    __tablename__ = "rating_adjustment"
    id = Column(String, primary_key=True)
    player_rating_id = Column(String, ForeignKey("player_rating.id"), nullable=False)
    admin_id = Column(String, nullable=False)
    reason = Column(Text, nullable=False)
    rating_before = Column(Float, nullable=False)
    rating_after = Column(Float, nullable=False)
    delta = Column(Float, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class RatingRecalculation(Base):
    __tablename__ = "rating_recalculation"
    id = Column(String, primary_key=True)
    scope = Column(_enum(RecalculationScope), nullable=False)
    target_id = Column(String, nullable=False)
    season_id = Column(String, nullable=True)
    requested_by = Column(String, nullable=False)
    status = Column(
        _enum(RecalculationStatus), nullable=False, default=RecalculationStatus.PENDING
    )
    affected_player_count = Column(Integer, nullable=True)
    affected_match_count = Column(Integer, nullable=True)
    preview = Column(_JSON, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    preview_at = Column(DateTime, nullable=True)
    applied_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)


class SeasonLock(Base):
    __tablename__ = "season_lock"
    season_id = Column(String, primary_key=True)
    is_locked = Column(Boolean, nullable=False, default=False)
    locked_by = Column(String, nullable=True)
    locked_at = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)


class RatingTask(Base):
    """Durable queue entry written in the same transaction as a final result."""

    __tablename__ = "rating_task"
    id = Column(String, primary_key=True)
    match_id = Column(String, ForeignKey("match.id"), nullable=False)
    season_id = Column(String, nullable=False)
    sport = Column(_enum(Sport), nullable=False)
    game_type = Column(_enum(GameType), nullable=False)
    match_date = Column(DateTime, nullable=False)
    status = Column(
        _enum(RatingTaskStatus), nullable=False, default=RatingTaskStatus.PENDING
    )
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_rating_task_pending", "status", "match_date"),
        Index("ix_rating_task_match_id", "match_id"),
    )


class OutboxEvent(Base):
    __tablename__ = "outbox_event"
    id = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String, nullable=False)
    aggregate_id = Column(String, nullable=False)
    payload = Column(_JSON, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    dispatched_at = Column(DateTime, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    __table_args__ = (Index("ix_outbox_event_pending", "dispatched_at", "id"),)
