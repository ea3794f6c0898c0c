"""create match lifecycle and rating tables

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-17 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None

_JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _enum_col(name: str, nullable: bool = False) -> sa.Column:
    # Enums are stored as their string values (native_enum=False).
    return sa.Column(name, sa.String(length=32), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "match",
        sa.Column("id", sa.String(), nullable=False),
        _enum_col("sport"),
        _enum_col("game_type"),
        sa.Column("season_id", sa.String(), nullable=True),
        sa.Column("division_id", sa.String(), nullable=True),
        sa.Column("match_date", sa.DateTime(), nullable=False),
        sa.Column("best_of", sa.Integer(), nullable=True),
        _enum_col("final_set_format"),
        _enum_col("status"),
        sa.Column("side_a_score", sa.Integer(), nullable=True),
        sa.Column("side_b_score", sa.Integer(), nullable=True),
        sa.Column("side_a_points", sa.Integer(), nullable=True),
        sa.Column("side_b_points", sa.Integer(), nullable=True),
        _enum_col("proposed_outcome", nullable=True),
        _enum_col("outcome", nullable=True),
        sa.Column("is_friendly", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_walkover", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_disputed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "is_auto_approved", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        _enum_col("result_source", nullable=True),
        sa.Column("result_submitted_by", sa.String(), nullable=True),
        sa.Column("result_submitted_at", sa.DateTime(), nullable=True),
        sa.Column("result_confirmed_by", sa.String(), nullable=True),
        sa.Column("result_confirmed_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "(status IN ('COMPLETED', 'WALKOVER') AND outcome IS NOT NULL)"
            " OR (status NOT IN ('COMPLETED', 'WALKOVER') AND outcome IS NULL)",
            name="ck_match_outcome_iff_final",
        ),
    )
    op.create_index("ix_match_season_date", "match", ["season_id", "match_date"])
    op.create_index("ix_match_division_date", "match", ["division_id", "match_date"])

    op.create_table(
        "match_participant",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("match_id", sa.String(), sa.ForeignKey("match.id"), nullable=False),
        sa.Column("player_id", sa.String(), nullable=False),
        _enum_col("role"),
        _enum_col("side"),
        _enum_col("invitation_status"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "match_id", "player_id", name="uq_match_participant_match_id_player_id"
        ),
    )
    op.create_index(
        "ix_match_participant_player_id", "match_participant", ["player_id"]
    )

    op.create_table(
        "score_entry",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("match_id", sa.String(), sa.ForeignKey("match.id"), nullable=False),
        sa.Column("unit_number", sa.Integer(), nullable=False),
        _enum_col("kind"),
        sa.Column("side_a", sa.Integer(), nullable=False),
        sa.Column("side_b", sa.Integer(), nullable=False),
        sa.Column("side_a_tiebreak", sa.Integer(), nullable=True),
        sa.Column("side_b_tiebreak", sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "match_id", "unit_number", name="uq_score_entry_match_id_unit_number"
        ),
    )

    op.create_table(
        "match_dispute",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("match_id", sa.String(), sa.ForeignKey("match.id"), nullable=False),
        sa.Column("raised_by", sa.String(), nullable=False),
        _enum_col("category"),
        sa.Column("reason", sa.Text(), nullable=True),
        _enum_col("status"),
        sa.Column("disputed_result", _JSON, nullable=False),
        sa.Column("disputer_scores", _JSON, nullable=True),
        _enum_col("resolution_action", nullable=True),
        sa.Column("resolved_by", sa.String(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(), nullable=True),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_match_dispute_match_status", "match_dispute", ["match_id", "status"]
    )

    op.create_table(
        "match_walkover",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("match_id", sa.String(), sa.ForeignKey("match.id"), nullable=False),
        _enum_col("reason"),
        sa.Column("reason_detail", sa.Text(), nullable=True),
        sa.Column("defaulting_player_id", sa.String(), nullable=False),
        sa.Column("reported_by", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("match_id"),
    )

    op.create_table(
        "player_rating",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("player_id", sa.String(), nullable=False),
        sa.Column("season_id", sa.String(), nullable=False),
        sa.Column("division_id", sa.String(), nullable=True),
        _enum_col("sport"),
        _enum_col("game_type"),
        sa.Column("current_rating", sa.Float(), nullable=False),
        sa.Column("rating_deviation", sa.Float(), nullable=False),
        sa.Column("volatility", sa.Float(), nullable=False),
        sa.Column("matches_played", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "is_provisional", sa.Boolean(), nullable=False, server_default=sa.true()
        ),
        sa.Column("peak_rating", sa.Float(), nullable=False),
        sa.Column("peak_rating_date", sa.DateTime(), nullable=True),
        sa.Column("lowest_rating", sa.Float(), nullable=False),
        sa.Column("last_match_id", sa.String(), nullable=True),
        sa.Column("last_match_date", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "player_id", "season_id", "sport", "game_type", name="uq_player_rating_scope"
        ),
    )
    op.create_index("ix_player_rating_division_id", "player_rating", ["division_id"])

    op.create_table(
        "rating_adjustment",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column(
            "player_rating_id",
            sa.String(),
            sa.ForeignKey("player_rating.id"),
            nullable=False,
        ),
        sa.Column("admin_id", sa.String(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("rating_before", sa.Float(), nullable=False),
        sa.Column("rating_after", sa.Float(), nullable=False),
        sa.Column("delta", sa.Float(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "rating_recalculation",
        sa.Column("id", sa.String(), nullable=False),
        _enum_col("scope"),
        sa.Column("target_id", sa.String(), nullable=False),
        sa.Column("season_id", sa.String(), nullable=True),
        sa.Column("requested_by", sa.String(), nullable=False),
        _enum_col("status"),
        sa.Column("affected_player_count", sa.Integer(), nullable=True),
        sa.Column("affected_match_count", sa.Integer(), nullable=True),
        sa.Column("preview", _JSON, nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("preview_at", sa.DateTime(), nullable=True),
        sa.Column("applied_at", sa.DateTime(), nullable=True),
        sa.Column("failed_at", sa.DateTime(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "rating_history",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column(
            "player_rating_id",
            sa.String(),
            sa.ForeignKey("player_rating.id"),
            nullable=False,
        ),
        sa.Column("match_id", sa.String(), sa.ForeignKey("match.id"), nullable=True),
        sa.Column(
            "adjustment_id",
            sa.String(),
            sa.ForeignKey("rating_adjustment.id"),
            nullable=True,
        ),
        sa.Column(
            "recalculation_id",
            sa.String(),
            sa.ForeignKey("rating_recalculation.id"),
            nullable=True,
        ),
        sa.Column(
            "superseded_by_recalculation_id",
            sa.String(),
            sa.ForeignKey("rating_recalculation.id"),
            nullable=True,
        ),
        _enum_col("reason"),
        sa.Column("rating_before", sa.Float(), nullable=False),
        sa.Column("rating_after", sa.Float(), nullable=False),
        sa.Column("delta", sa.Float(), nullable=False),
        sa.Column("rd_before", sa.Float(), nullable=False),
        sa.Column("rd_after", sa.Float(), nullable=False),
        sa.Column("volatility_before", sa.Float(), nullable=False),
        sa.Column("volatility_after", sa.Float(), nullable=False),
        sa.Column("matches_played_after", sa.Integer(), nullable=False),
        sa.Column("effective_at", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_rating_history_rating_id", "rating_history", ["player_rating_id", "id"]
    )
    op.create_index("ix_rating_history_match_id", "rating_history", ["match_id"])

    op.create_table(
        "season_lock",
        sa.Column("season_id", sa.String(), nullable=False),
        sa.Column("is_locked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("locked_by", sa.String(), nullable=True),
        sa.Column("locked_at", sa.DateTime(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("season_id"),
    )

    op.create_table(
        "rating_task",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("match_id", sa.String(), sa.ForeignKey("match.id"), nullable=False),
        sa.Column("season_id", sa.String(), nullable=False),
        _enum_col("sport"),
        _enum_col("game_type"),
        sa.Column("match_date", sa.DateTime(), nullable=False),
        _enum_col("status"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_rating_task_pending", "rating_task", ["status", "match_date"])
    op.create_index("ix_rating_task_match_id", "rating_task", ["match_id"])

    op.create_table(
        "outbox_event",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("aggregate_id", sa.String(), nullable=False),
        sa.Column("payload", _JSON, nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("dispatched_at", sa.DateTime(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_outbox_event_pending", "outbox_event", ["dispatched_at", "id"]
    )


def downgrade() -> None:
    op.drop_index("ix_outbox_event_pending", table_name="outbox_event")
    op.drop_table("outbox_event")
    op.drop_index("ix_rating_task_match_id", table_name="rating_task")
    op.drop_index("ix_rating_task_pending", table_name="rating_task")
    op.drop_table("rating_task")
    op.drop_table("season_lock")
    op.drop_index("ix_rating_history_match_id", table_name="rating_history")
    op.drop_index("ix_rating_history_rating_id", table_name="rating_history")
    op.drop_table("rating_history")
    op.drop_table("rating_recalculation")
    op.drop_table("rating_adjustment")
    op.drop_index("ix_player_rating_division_id", table_name="player_rating")
    op.drop_table("player_rating")
    op.drop_table("match_walkover")
    op.drop_index("ix_match_dispute_match_status", table_name="match_dispute")
    op.drop_table("match_dispute")
    op.drop_table("score_entry")
    op.drop_index("ix_match_participant_player_id", table_name="match_participant")
    op.drop_table("match_participant")
    op.drop_index("ix_match_division_date", table_name="match")
    op.drop_index("ix_match_season_date", table_name="match")
    op.drop_table("match")
