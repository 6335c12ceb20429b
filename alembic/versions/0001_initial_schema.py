"""Initial schema for raceweek.

Revision ID: 0001
Revises:
Create Date: 2026-10-12

This migration creates all the core tables for the betting cycle:
- Competitors, Races, RaceResults (rating collaborator input)
- BettingWeeks with the status state machine and podium
- CompetitorOdds (one row per competitor per week)
- Users, Bets, BetPicks
- BettorRankings, UserStreaks (monthly leaderboard)
- CompetitorMonthlyStats, CompetitorEloSnapshots, SeasonArchives
- JobRuns for task audit logging
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    # Competitors
    op.create_table(
        "competitors",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("rating", sa.Float(), nullable=False, server_default="1500"),
        sa.Column("rd", sa.Float(), nullable=False, server_default="350"),
        sa.Column("vol", sa.Float(), nullable=False, server_default="0.06"),
        sa.Column("race_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("current_month_race_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "total_lifetime_races",
            sa.Integer(),
            nullable=False,
            server_default="0",
            comment="Never reset",
        ),
        sa.Column("is_active_this_week", sa.Boolean(), nullable=True, server_default=sa.false()),
        sa.Column("win_streak", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )

    # Betting weeks (created before races, which reference them)
    op.create_table(
        "betting_weeks",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("week_number", sa.Integer(), nullable=False),
        sa.Column("season_week_number", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "status",
            sa.String(length=20),
            nullable=False,
            server_default="open",
            comment="'calibration', 'open', 'closed', 'finalized', 'cancelled'",
        ),
        sa.Column("is_calibration_week", sa.Boolean(), nullable=True, server_default=sa.false()),
        sa.Column("podium_first_id", sa.Integer(), nullable=True),
        sa.Column("podium_second_id", sa.Integer(), nullable=True),
        sa.Column("podium_third_id", sa.Integer(), nullable=True),
        sa.Column("finalized_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["podium_first_id"], ["competitors.id"]),
        sa.ForeignKeyConstraint(["podium_second_id"], ["competitors.id"]),
        sa.ForeignKeyConstraint(["podium_third_id"], ["competitors.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("year", "week_number", name="uq_betting_week"),
    )
    op.create_index("idx_betting_weeks_status", "betting_weeks", ["status"])

    # Races and results
    op.create_table(
        "races",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("raced_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("betting_week_id", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["betting_week_id"], ["betting_weeks.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_races_raced_at", "races", ["raced_at"])

    op.create_table(
        "race_results",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("race_id", sa.Integer(), nullable=False),
        sa.Column("competitor_id", sa.Integer(), nullable=False),
        sa.Column("rank", sa.Integer(), nullable=False),
        sa.Column("rating_delta", sa.Float(), nullable=True),
        sa.ForeignKeyConstraint(["race_id"], ["races.id"]),
        sa.ForeignKeyConstraint(["competitor_id"], ["competitors.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("race_id", "competitor_id", name="uq_race_result"),
    )
    op.create_index("idx_race_results_competitor", "race_results", ["competitor_id"])

    # Odds: one row per competitor per week, replaced on recalculation
    op.create_table(
        "competitor_odds",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("competitor_id", sa.Integer(), nullable=False),
        sa.Column("betting_week_id", sa.Integer(), nullable=False),
        sa.Column("odd_first", sa.Float(), nullable=False),
        sa.Column("odd_second", sa.Float(), nullable=False),
        sa.Column("odd_third", sa.Float(), nullable=False),
        sa.Column("probability", sa.Float(), nullable=False),
        sa.Column("form_factor", sa.Float(), nullable=False, server_default="1.0"),
        sa.Column("calculated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.ForeignKeyConstraint(["competitor_id"], ["competitors.id"]),
        sa.ForeignKeyConstraint(["betting_week_id"], ["betting_weeks.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "competitor_id", "betting_week_id", name="uq_competitor_week_odds"
        ),
    )
    op.create_index("idx_competitor_odds_week", "competitor_odds", ["betting_week_id"])

    # Users and bets
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("username", sa.String(length=100), nullable=False),
        sa.Column("last_boost_used_month", sa.Integer(), nullable=True),
        sa.Column("last_boost_used_year", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("username"),
    )

    op.create_table(
        "bets",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("betting_week_id", sa.Integer(), nullable=False),
        sa.Column("placed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "status",
            sa.String(length=20),
            nullable=False,
            server_default="pending",
            comment="'pending', 'won', 'lost', 'void'",
        ),
        sa.Column("is_finalized", sa.Boolean(), nullable=True, server_default=sa.false()),
        sa.Column("points_earned", sa.Float(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["betting_week_id"], ["betting_weeks.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "betting_week_id", name="uq_user_week_bet"),
    )
    op.create_index("idx_bets_week", "bets", ["betting_week_id"])

    op.create_table(
        "bet_picks",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("bet_id", sa.Integer(), nullable=False),
        sa.Column("competitor_id", sa.Integer(), nullable=False),
        sa.Column("position", sa.String(length=10), nullable=False),
        sa.Column("odd_at_bet", sa.Float(), nullable=False),
        sa.Column("has_boost", sa.Boolean(), nullable=True, server_default=sa.false()),
        sa.Column("is_correct", sa.Boolean(), nullable=True),
        sa.Column("points_earned", sa.Float(), nullable=True),
        sa.Column("final_odd", sa.Float(), nullable=True),
        sa.Column("used_best_odds", sa.Boolean(), nullable=True, server_default=sa.false()),
        sa.ForeignKeyConstraint(["bet_id"], ["bets.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["competitor_id"], ["competitors.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("bet_id", "competitor_id", name="uq_bet_pick_competitor"),
        sa.UniqueConstraint("bet_id", "position", name="uq_bet_pick_position"),
    )

    # Monthly leaderboard
    op.create_table(
        "bettor_rankings",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("total_points", sa.Float(), nullable=False, server_default="0"),
        sa.Column("bets_placed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("bets_won", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("perfect_bets", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("boosts_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rank", sa.Integer(), nullable=True),
        sa.Column("previous_rank", sa.Integer(), nullable=True),
        sa.Column("previous_week_rank", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "month", "year", name="uq_bettor_ranking_period"),
    )
    op.create_index("idx_bettor_rankings_period", "bettor_rankings", ["year", "month"])

    op.create_table(
        "user_streaks",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("current_monthly_streak", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("best_monthly_streak", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("current_win_streak", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("best_win_streak", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_settled_week_id", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id"),
    )

    # Archives and history
    op.create_table(
        "competitor_monthly_stats",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("competitor_id", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("final_rating", sa.Float(), nullable=False),
        sa.Column("final_rd", sa.Float(), nullable=False),
        sa.Column("final_vol", sa.Float(), nullable=False),
        sa.Column("race_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("win_streak", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["competitor_id"], ["competitors.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("competitor_id", "month", "year", name="uq_competitor_month"),
    )

    op.create_table(
        "competitor_elo_snapshots",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("competitor_id", sa.Integer(), nullable=False),
        sa.Column("snapshot_date", sa.Date(), nullable=False),
        sa.Column("rating", sa.Float(), nullable=False),
        sa.Column("rd", sa.Float(), nullable=False),
        sa.Column("vol", sa.Float(), nullable=False),
        sa.Column("race_count", sa.Integer(), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(["competitor_id"], ["competitors.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("competitor_id", "snapshot_date", name="uq_elo_snapshot_day"),
    )

    op.create_table(
        "season_archives",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("champion_user_id", sa.Integer(), nullable=True),
        sa.Column("rankings", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("month", "year", name="uq_season_archive"),
    )

    # Job runs for task audit logging
    op.create_table(
        "job_runs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_name", sa.String(length=100), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "status",
            sa.String(length=20),
            nullable=False,
            comment="'success', 'failed', 'skipped', 'disabled'",
        ),
        sa.Column("attempts", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("records_processed", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_job_runs_name_started", "job_runs", ["job_name", "started_at"])


def downgrade() -> None:
    op.drop_index("idx_job_runs_name_started", table_name="job_runs")
    op.drop_table("job_runs")
    op.drop_table("season_archives")
    op.drop_table("competitor_elo_snapshots")
    op.drop_table("competitor_monthly_stats")
    op.drop_table("user_streaks")
    op.drop_index("idx_bettor_rankings_period", table_name="bettor_rankings")
    op.drop_table("bettor_rankings")
    op.drop_table("bet_picks")
    op.drop_index("idx_bets_week", table_name="bets")
    op.drop_table("bets")
    op.drop_table("users")
    op.drop_index("idx_competitor_odds_week", table_name="competitor_odds")
    op.drop_table("competitor_odds")
    op.drop_index("idx_race_results_competitor", table_name="race_results")
    op.drop_table("race_results")
    op.drop_index("idx_races_raced_at", table_name="races")
    op.drop_table("races")
    op.drop_index("idx_betting_weeks_status", table_name="betting_weeks")
    op.drop_table("betting_weeks")
    op.drop_table("competitors")
