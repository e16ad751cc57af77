"""Domain models for MatchFlow.

Fixtures, leagues, teams, predictions and analyses are owned by the data
ingestion and prediction services; the automation engine only reads them.
The automation tables (automation_config, automation_logs,
automation_log_fixtures) are owned here.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, JSONType, TimestampMixin


class League(Base):
    """
    Competition tracked by the dashboard.

    Only active leagues take part in automation.
    """

    __tablename__ = "leagues"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    api_id: Mapped[int] = mapped_column(Integer, unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    country: Mapped[str | None] = mapped_column(String(100), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    fixtures: Mapped[list["Fixture"]] = relationship("Fixture", back_populates="league")

    __table_args__ = (
        Index("idx_leagues_active", "is_active", postgresql_where=(is_active == True)),
    )

    def __repr__(self) -> str:
        return f"<League {self.name} (active={self.is_active})>"


class Venue(Base):
    """Stadium."""

    __tablename__ = "venues"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    api_id: Mapped[int | None] = mapped_column(Integer, unique=True, nullable=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    city: Mapped[str | None] = mapped_column(String(100), nullable=True)


class Team(Base):
    """Club."""

    __tablename__ = "teams"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    api_id: Mapped[int] = mapped_column(Integer, unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)

    def __repr__(self) -> str:
        return f"<Team {self.name}>"


class Fixture(Base, TimestampMixin):
    """
    Single match.

    match_date is the kickoff time. status holds the API-Football short
    code (NS, 1H, HT, FT, ...) and is updated by the ingestion service.
    """

    __tablename__ = "fixtures"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    api_id: Mapped[int] = mapped_column(Integer, unique=True, nullable=False)
    league_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("leagues.id"), nullable=False
    )
    season: Mapped[int | None] = mapped_column(Integer, nullable=True)
    round: Mapped[str | None] = mapped_column(String(100), nullable=True)
    home_team_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("teams.id"), nullable=False
    )
    away_team_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("teams.id"), nullable=False
    )
    venue_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("venues.id"), nullable=True
    )
    match_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    status: Mapped[str] = mapped_column(String(10), default="NS", nullable=False)
    goals_home: Mapped[int | None] = mapped_column(Integer, nullable=True)
    goals_away: Mapped[int | None] = mapped_column(Integer, nullable=True)

    league: Mapped["League"] = relationship("League", back_populates="fixtures")
    home_team: Mapped["Team"] = relationship("Team", foreign_keys=[home_team_id])
    away_team: Mapped["Team"] = relationship("Team", foreign_keys=[away_team_id])
    venue: Mapped["Venue | None"] = relationship("Venue")

    __table_args__ = (
        Index("idx_fixtures_status_date", "status", "match_date"),
        Index("idx_fixtures_league", "league_id"),
    )

    def __repr__(self) -> str:
        return f"<Fixture {self.id} {self.status} @ {self.match_date}>"


class Prediction(Base):
    """AI prediction for a fixture (written by the prediction workflow)."""

    __tablename__ = "predictions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    fixture_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("fixtures.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    prediction_result: Mapped[str | None] = mapped_column(String(5), nullable=True)
    model_version: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class MatchAnalysis(Base):
    """Post-match analysis for a fixture (written by the analysis workflow)."""

    __tablename__ = "match_analysis"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    fixture_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("fixtures.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    prediction_correct: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class AutomationConfig(Base, TimestampMixin):
    """
    Singleton automation configuration row.

    Enable flags, thresholds and webhook overrides are edited by admins.
    last_run_at / last_run_status are written only by the orchestrator.
    """

    __tablename__ = "automation_config"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    pre_match_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    prediction_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    live_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    post_match_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    analysis_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    pre_match_minutes_before: Mapped[int] = mapped_column(Integer, default=30, nullable=False)
    prediction_minutes_before: Mapped[int] = mapped_column(Integer, default=25, nullable=False)
    post_match_hours_after: Mapped[Decimal] = mapped_column(
        Numeric(4, 2), default=Decimal("4"), nullable=False
    )
    analysis_hours_after: Mapped[Decimal] = mapped_column(
        Numeric(4, 2), default=Decimal("4.25"), nullable=False
    )
    live_interval_minutes: Mapped[int] = mapped_column(Integer, default=5, nullable=False)

    pre_match_webhook_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    prediction_webhook_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    live_webhook_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    post_match_webhook_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    analysis_webhook_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    last_run_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_run_status: Mapped[str | None] = mapped_column(
        String(20), nullable=True, doc="'running', 'success', 'error' or NULL"
    )

    def __repr__(self) -> str:
        return f"<AutomationConfig enabled={self.is_enabled} last={self.last_run_status}>"


class AutomationLog(Base):
    """
    Automation audit log.

    One row per dispatch decision (including no-action and the run
    summary). Dispatch rows are written as a pending claim before the
    webhook call and resolved once it returns; rows with outcome
    'success' are the record of what has already been triggered.
    """

    __tablename__ = "automation_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    trigger_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        doc="'pre-match', 'prediction', 'live', 'post-match', 'analysis', 'run-summary'",
    )
    run_id: Mapped[str] = mapped_column(String(36), nullable=False)
    league_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("leagues.id", ondelete="SET NULL"), nullable=True
    )
    fixture_ids: Mapped[list[int]] = mapped_column(JSONType, nullable=False, default=list)
    fixture_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    webhook_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    webhook_status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    webhook_duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    webhook_response: Mapped[Any | None] = mapped_column(JSONType, nullable=True)

    outcome: Mapped[str] = mapped_column(
        String(20), nullable=False, doc="'pending', 'success', 'error', 'skipped', 'no-action'"
    )
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    triggered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    details: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    league: Mapped["League | None"] = relationship("League")
    fixtures: Mapped[list["AutomationLogFixture"]] = relationship(
        "AutomationLogFixture", back_populates="log", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("idx_automation_logs_triggered_at", triggered_at.desc()),
        Index("idx_automation_logs_type_date", "trigger_type", triggered_at.desc()),
        Index("idx_automation_logs_run", "run_id"),
        Index("idx_automation_logs_outcome", "outcome"),
        Index("idx_automation_logs_league", "league_id", "trigger_type"),
    )

    def __repr__(self) -> str:
        return f"<AutomationLog {self.trigger_type} run={self.run_id} outcome={self.outcome}>"


# Rows that hold a (phase, fixture) claim
CLAIM_WHERE = "outcome IN ('success', 'pending') AND trigger_type <> 'live'"


class AutomationLogFixture(Base):
    """
    Fixture membership of an audit log entry.

    trigger_type, outcome and triggered_at are copied from the parent entry
    so the "already triggered" check is a single indexed lookup. The unique
    partial index allows at most one live claim (pending or success) per
    (phase, fixture); live is excluded because it recurs every interval.
    """

    __tablename__ = "automation_log_fixtures"

    log_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("automation_logs.id", ondelete="CASCADE"), primary_key=True
    )
    fixture_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    trigger_type: Mapped[str] = mapped_column(String(20), nullable=False)
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)
    triggered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    log: Mapped["AutomationLog"] = relationship("AutomationLog", back_populates="fixtures")

    __table_args__ = (
        Index(
            "uq_log_fixtures_claim",
            "trigger_type",
            "fixture_id",
            unique=True,
            postgresql_where=text(CLAIM_WHERE),
            sqlite_where=text(CLAIM_WHERE),
        ),
    )
