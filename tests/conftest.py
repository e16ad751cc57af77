"""Pytest configuration and fixtures for MatchFlow tests."""

import inspect
import itertools
import json
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.config import Settings
from app.config.automation import AutomationDefaults, Outcome, Phase
from app.models.base import Base
from app.models.domain import (
    AutomationConfig,
    AutomationLog,
    AutomationLogFixture,
    Fixture,
    League,
    MatchAnalysis,
    Prediction,
    Team,
    Venue,
)
from app.services.automation.config_store import RunConfig

# Saturday afternoon, mid-season
NOW = datetime(2026, 3, 14, 15, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def settings():
    """Settings pointing every webhook at a fake n8n host."""
    return Settings(
        database_url="sqlite+aiosqlite://",
        n8n_webhook_base_url="http://n8n.test/webhook",
        n8n_prediction_webhook="http://n8n.test/webhook/football-prediction",
        n8n_analysis_webhook="http://n8n.test/webhook/post-match-analysis",
        n8n_webhook_secret="s3cret",
        site_url="http://site.test",
        admin_api_key="test-admin-key",
    )


@pytest.fixture
def defaults():
    return AutomationDefaults()


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """File-backed SQLite database with the full schema."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'matchflow.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


class CalendarSeeder:
    """Builds leagues, fixtures and audit history for a test."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory
        self._ids = itertools.count(1000)

    async def _add(self, obj):
        async with self.session_factory() as session:
            session.add(obj)
            await session.commit()
            await session.refresh(obj)
        return obj

    async def config(self, **overrides) -> AutomationConfig:
        values = {
            "id": 1,
            "is_enabled": True,
            "pre_match_enabled": True,
            "prediction_enabled": True,
            "live_enabled": True,
            "post_match_enabled": True,
            "analysis_enabled": True,
            "pre_match_minutes_before": 30,
            "prediction_minutes_before": 25,
            "post_match_hours_after": Decimal("4"),
            "analysis_hours_after": Decimal("4.25"),
            "live_interval_minutes": 5,
        }
        values.update(overrides)
        return await self._add(AutomationConfig(**values))

    async def league(self, name: str = "Serie B", is_active: bool = True) -> League:
        return await self._add(
            League(api_id=next(self._ids), name=name, country="Italy", is_active=is_active)
        )

    async def fixture(
        self,
        league: League,
        kickoff: datetime,
        status: str = "NS",
        home: str = "Palermo",
        away: str = "Bari",
        goals: tuple[int, int] | None = None,
    ) -> Fixture:
        home_team = await self._add(Team(api_id=next(self._ids), name=home))
        away_team = await self._add(Team(api_id=next(self._ids), name=away))
        venue = await self._add(Venue(api_id=next(self._ids), name=f"{home} Stadium"))
        return await self._add(
            Fixture(
                api_id=next(self._ids),
                league_id=league.id,
                season=2025,
                round="Regular Season - 28",
                home_team_id=home_team.id,
                away_team_id=away_team.id,
                venue_id=venue.id,
                match_date=kickoff,
                status=status,
                goals_home=goals[0] if goals else None,
                goals_away=goals[1] if goals else None,
            )
        )

    async def prediction(self, fixture: Fixture) -> Prediction:
        return await self._add(
            Prediction(fixture_id=fixture.id, prediction_result="1", model_version="test")
        )

    async def analysis(self, fixture: Fixture) -> MatchAnalysis:
        return await self._add(MatchAnalysis(fixture_id=fixture.id, prediction_correct=True))

    async def audit(
        self,
        phase: Phase,
        fixture_ids: list[int],
        triggered_at: datetime,
        outcome: Outcome = Outcome.SUCCESS,
        league_id: int | None = None,
    ) -> AutomationLog:
        log = AutomationLog(
            trigger_type=phase.value,
            run_id="00000000-0000-0000-0000-000000000000",
            league_id=league_id,
            fixture_ids=fixture_ids,
            fixture_count=len(fixture_ids),
            outcome=outcome.value,
            triggered_at=triggered_at,
            completed_at=None if outcome == Outcome.PENDING else triggered_at,
        )
        log.fixtures = [
            AutomationLogFixture(
                fixture_id=fixture_id,
                trigger_type=phase.value,
                outcome=outcome.value,
                triggered_at=triggered_at,
            )
            for fixture_id in fixture_ids
        ]
        return await self._add(log)


@pytest_asyncio.fixture
async def seed(session_factory):
    return CalendarSeeder(session_factory)


Responder = Callable[[httpx.Request], httpx.Response | Awaitable[httpx.Response]]


class FakeN8n:
    """Records webhook calls and answers per URL."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.responders: dict[str, Responder] = {}

    def respond(self, fragment: str, responder: Responder):
        """
        Route requests whose URL contains ``fragment`` to ``responder``.

        The responder may be a coroutine function, to hold a call open.
        """
        self.responders[fragment] = responder

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for fragment, responder in self.responders.items():
            if fragment in str(request.url):
                response = responder(request)
                if inspect.isawaitable(response):
                    response = await response
                return response
        return httpx.Response(200, json={"ok": True})

    def calls_to(self, fragment: str) -> list[httpx.Request]:
        return [r for r in self.requests if fragment in str(r.url)]

    def payloads_to(self, fragment: str) -> list[dict]:
        return [json.loads(r.content) for r in self.calls_to(fragment)]

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def n8n():
    return FakeN8n()


@pytest.fixture
def run_config():
    """Factory for RunConfig snapshots with the stock thresholds."""

    def make(**overrides) -> RunConfig:
        values = dict(
            is_enabled=True,
            phase_enabled={phase: True for phase in Phase},
            pre_match_minutes_before=30,
            prediction_minutes_before=25,
            post_match_hours_after=4.0,
            analysis_hours_after=4.25,
            live_interval_minutes=5,
        )
        values.update(overrides)
        return RunConfig(**values)

    return make
