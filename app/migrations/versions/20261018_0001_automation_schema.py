"""Initial schema for MatchFlow.

Revision ID: 0001
Revises:
Create Date: 2026-10-18

Creates the fixture calendar tables read by the automation engine
(leagues, venues, teams, fixtures, predictions, match_analysis) and the
automation tables it owns:
- automation_config: singleton row, seeded here
- automation_logs: audit trail; dispatch rows start as pending claims
- automation_log_fixtures: fixture membership of each audit entry, the
  lookup behind "already triggered" and the unique claim per fixture
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
    # Leagues
    op.create_table(
        "leagues",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("api_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("country", sa.String(length=100), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True, server_default=sa.true()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("api_id"),
    )
    op.create_index(
        "idx_leagues_active",
        "leagues",
        ["is_active"],
        postgresql_where=sa.text("is_active = true"),
    )

    op.create_table(
        "venues",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("api_id", sa.Integer(), nullable=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("city", sa.String(length=100), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("api_id"),
    )

    op.create_table(
        "teams",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("api_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("api_id"),
    )

    # Fixtures (status = API-Football short code)
    op.create_table(
        "fixtures",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("api_id", sa.Integer(), nullable=False),
        sa.Column("league_id", sa.Integer(), nullable=False),
        sa.Column("season", sa.Integer(), nullable=True),
        sa.Column("round", sa.String(length=100), nullable=True),
        sa.Column("home_team_id", sa.Integer(), nullable=False),
        sa.Column("away_team_id", sa.Integer(), nullable=False),
        sa.Column("venue_id", sa.Integer(), nullable=True),
        sa.Column("match_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=10), nullable=False, server_default="NS"),
        sa.Column("goals_home", sa.Integer(), nullable=True),
        sa.Column("goals_away", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["league_id"], ["leagues.id"]),
        sa.ForeignKeyConstraint(["home_team_id"], ["teams.id"]),
        sa.ForeignKeyConstraint(["away_team_id"], ["teams.id"]),
        sa.ForeignKeyConstraint(["venue_id"], ["venues.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("api_id"),
    )
    op.create_index("idx_fixtures_status_date", "fixtures", ["status", "match_date"])
    op.create_index("idx_fixtures_league", "fixtures", ["league_id"])

    op.create_table(
        "predictions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("fixture_id", sa.Integer(), nullable=False),
        sa.Column("prediction_result", sa.String(length=5), nullable=True),
        sa.Column("model_version", sa.String(length=100), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=True,
        ),
        sa.ForeignKeyConstraint(["fixture_id"], ["fixtures.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("fixture_id"),
    )

    op.create_table(
        "match_analysis",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("fixture_id", sa.Integer(), nullable=False),
        sa.Column("prediction_correct", sa.Boolean(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=True,
        ),
        sa.ForeignKeyConstraint(["fixture_id"], ["fixtures.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("fixture_id"),
    )

    # Automation config (singleton)
    automation_config = op.create_table(
        "automation_config",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("pre_match_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("prediction_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("live_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("post_match_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("analysis_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("pre_match_minutes_before", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("prediction_minutes_before", sa.Integer(), nullable=False, server_default="25"),
        sa.Column(
            "post_match_hours_after",
            sa.Numeric(precision=4, scale=2),
            nullable=False,
            server_default="4",
        ),
        sa.Column(
            "analysis_hours_after",
            sa.Numeric(precision=4, scale=2),
            nullable=False,
            server_default="4.25",
        ),
        sa.Column("live_interval_minutes", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("pre_match_webhook_url", sa.Text(), nullable=True),
        sa.Column("prediction_webhook_url", sa.Text(), nullable=True),
        sa.Column("live_webhook_url", sa.Text(), nullable=True),
        sa.Column("post_match_webhook_url", sa.Text(), nullable=True),
        sa.Column("analysis_webhook_url", sa.Text(), nullable=True),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_run_status", sa.String(length=20), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.bulk_insert(automation_config, [{"id": 1}])

    # Automation audit log
    op.create_table(
        "automation_logs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("trigger_type", sa.String(length=20), nullable=False),
        sa.Column("run_id", sa.String(length=36), nullable=False),
        sa.Column("league_id", sa.Integer(), nullable=True),
        sa.Column(
            "fixture_ids",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("fixture_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("webhook_url", sa.Text(), nullable=True),
        sa.Column("webhook_status_code", sa.Integer(), nullable=True),
        sa.Column("webhook_duration_ms", sa.Integer(), nullable=True),
        sa.Column("webhook_response", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("outcome", sa.String(length=20), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("triggered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("details", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.ForeignKeyConstraint(["league_id"], ["leagues.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "outcome IN ('pending', 'success', 'error', 'skipped', 'no-action')",
            name="ck_automation_logs_outcome",
        ),
    )
    op.create_index(
        "idx_automation_logs_triggered_at",
        "automation_logs",
        [sa.text("triggered_at DESC")],
    )
    op.create_index(
        "idx_automation_logs_type_date",
        "automation_logs",
        ["trigger_type", sa.text("triggered_at DESC")],
    )
    op.create_index("idx_automation_logs_run", "automation_logs", ["run_id"])
    op.create_index("idx_automation_logs_outcome", "automation_logs", ["outcome"])
    op.create_index(
        "idx_automation_logs_league", "automation_logs", ["league_id", "trigger_type"]
    )

    op.create_table(
        "automation_log_fixtures",
        sa.Column("log_id", sa.Integer(), nullable=False),
        sa.Column("fixture_id", sa.Integer(), nullable=False),
        sa.Column("trigger_type", sa.String(length=20), nullable=False),
        sa.Column("outcome", sa.String(length=20), nullable=False),
        sa.Column("triggered_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["log_id"], ["automation_logs.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("log_id", "fixture_id"),
    )
    # At most one pending or successful claim per (phase, fixture); live recurs
    op.create_index(
        "uq_log_fixtures_claim",
        "automation_log_fixtures",
        ["trigger_type", "fixture_id"],
        unique=True,
        postgresql_where=sa.text(
            "outcome IN ('success', 'pending') AND trigger_type <> 'live'"
        ),
    )


def downgrade() -> None:
    op.drop_table("automation_log_fixtures")
    op.drop_table("automation_logs")
    op.drop_table("automation_config")
    op.drop_table("match_analysis")
    op.drop_table("predictions")
    op.drop_table("fixtures")
    op.drop_table("teams")
    op.drop_table("venues")
    op.drop_table("leagues")
