"""Phase window evaluation.

One read-only query per lifecycle phase, each parameterised by ``now`` and
the phase threshold from the run's config snapshot. Window edges are
inclusive at both ends.

Every query also drops fixtures that already have a successful audit entry
for the same phase, or a pending claim from a run whose call is still in
flight, so a fixture whose window spans two scheduler runs is dispatched
once. Pending claims older than the phase timeout plus grace are ignored. Live is recurring: a league is re-triggered at most once
per live interval.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from sqlalchemy import Select, and_, exists, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from app.config.automation import (
    AutomationDefaults,
    Outcome,
    Phase,
    get_automation_defaults,
)
from app.models.domain import (
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

logger = structlog.get_logger(__name__)

# Scheduler jitter allowance when deduplicating recurring live triggers
LIVE_DEDUPE_GRACE = timedelta(minutes=1)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class FixtureCandidate:
    """A fixture eligible for a phase, with the fields payloads need."""

    id: int
    api_id: int
    league_id: int
    league_name: str
    match_date: datetime
    status: str
    home_team: str | None = None
    away_team: str | None = None
    venue: str | None = None
    round: str | None = None
    goals_home: int | None = None
    goals_away: int | None = None

    def to_payload(self, include_score: bool = False) -> dict[str, Any]:
        payload = {
            "id": self.id,
            "api_id": self.api_id,
            "home_team": self.home_team,
            "away_team": self.away_team,
            "match_date": ensure_utc(self.match_date).isoformat(),
            "venue": self.venue,
            "round": self.round,
        }
        if include_score:
            payload["goals_home"] = self.goals_home
            payload["goals_away"] = self.goals_away
            payload["score"] = f"{self.goals_home or 0}-{self.goals_away or 0}"
        return payload


@dataclass
class LeagueCandidates:
    """Candidate fixtures of one league."""

    league_id: int
    league_name: str
    fixtures: list[FixtureCandidate] = field(default_factory=list)

    @property
    def fixture_ids(self) -> list[int]:
        return [f.id for f in self.fixtures]

    @property
    def fixture_count(self) -> int:
        return len(self.fixtures)


def group_by_league(fixtures: list[FixtureCandidate]) -> list[LeagueCandidates]:
    """Group fixtures by league, keeping first-seen order."""
    leagues: dict[int, LeagueCandidates] = {}
    for fixture in fixtures:
        if fixture.league_id not in leagues:
            leagues[fixture.league_id] = LeagueCandidates(
                league_id=fixture.league_id,
                league_name=fixture.league_name,
            )
        leagues[fixture.league_id].fixtures.append(fixture)
    return list(leagues.values())


def count_candidates(candidates: list) -> int:
    """Number of fixtures in a phase's candidate set."""
    return sum(
        c.fixture_count if isinstance(c, LeagueCandidates) else 1 for c in candidates
    )


class WindowEvaluator:
    """
    Finds the fixtures (or leagues) eligible for each phase right now.

    Holds one session; do not share an evaluator across concurrent tasks.
    """

    def __init__(
        self,
        session: AsyncSession,
        defaults: AutomationDefaults | None = None,
    ):
        self.session = session
        self.defaults = defaults or get_automation_defaults()
        self.statuses = self.defaults.statuses

    async def evaluate(
        self, phase: Phase, now: datetime, config: RunConfig
    ) -> list[FixtureCandidate] | list[LeagueCandidates]:
        """Run the query for one phase."""
        if phase == Phase.PRE_MATCH:
            return await self.pre_match(now, config)
        if phase == Phase.PREDICTION:
            return await self.prediction(now, config)
        if phase == Phase.LIVE:
            return await self.live(now, config)
        if phase == Phase.POST_MATCH:
            return await self.post_match(now, config)
        if phase == Phase.ANALYSIS:
            return await self.analysis(now, config)
        raise ValueError(f"Unknown phase: {phase}")

    # ------------------------------------------------------------------
    # Window bounds
    # ------------------------------------------------------------------

    def kickoff_window(
        self, phase: Phase, now: datetime, config: RunConfig
    ) -> tuple[datetime, datetime]:
        """
        Inclusive kickoff range for a timed phase.

        Before kickoff: [now + (threshold - tol), now + (threshold + tol)].
        After kickoff: [now - threshold - tol, now - threshold].
        """
        window = self.defaults.window(phase)
        tolerance = timedelta(minutes=window.tolerance_minutes)

        if phase in (Phase.PRE_MATCH, Phase.PREDICTION):
            threshold = timedelta(minutes=config.threshold_minutes(phase))
            return now + threshold - tolerance, now + threshold + tolerance

        if phase == Phase.POST_MATCH:
            threshold = timedelta(minutes=config.threshold_minutes(phase))
            return now - threshold - tolerance, now - threshold

        if phase == Phase.ANALYSIS:
            # Never earlier than the post-match threshold plus the fixed offset
            minutes = max(
                config.threshold_minutes(Phase.ANALYSIS),
                config.threshold_minutes(Phase.POST_MATCH) + window.offset_minutes,
            )
            threshold = timedelta(minutes=minutes)
            return now - threshold - tolerance, now - threshold

        raise ValueError(f"Phase {phase.value} has no kickoff window")

    # ------------------------------------------------------------------
    # Phase queries
    # ------------------------------------------------------------------

    async def pre_match(self, now: datetime, config: RunConfig) -> list[LeagueCandidates]:
        """Not-started fixtures in the pre-match window, grouped by league."""
        start, end = self.kickoff_window(Phase.PRE_MATCH, now, config)
        query = self._fixture_query().where(
            Fixture.status.in_(sorted(self.statuses.not_started)),
            Fixture.match_date >= start,
            Fixture.match_date <= end,
            self._not_claimed(Phase.PRE_MATCH, now),
        )
        fixtures = await self._fetch(query)
        self._log_window(Phase.PRE_MATCH, start, end, len(fixtures))
        return group_by_league(fixtures)

    async def prediction(self, now: datetime, config: RunConfig) -> list[FixtureCandidate]:
        """Not-started fixtures in the prediction window without a prediction."""
        start, end = self.kickoff_window(Phase.PREDICTION, now, config)
        query = self._fixture_query().where(
            Fixture.status.in_(sorted(self.statuses.not_started)),
            Fixture.match_date >= start,
            Fixture.match_date <= end,
            ~exists().where(Prediction.fixture_id == Fixture.id),
            self._not_claimed(Phase.PREDICTION, now),
        )
        fixtures = await self._fetch(query)
        self._log_window(Phase.PREDICTION, start, end, len(fixtures))
        return fixtures

    async def live(self, now: datetime, config: RunConfig) -> list[LeagueCandidates]:
        """Leagues with in-play fixtures, not triggered within the live interval."""
        cutoff = now - timedelta(minutes=config.live_interval_minutes) + LIVE_DEDUPE_GRACE
        recently_triggered = exists().where(
            AutomationLog.league_id == Fixture.league_id,
            AutomationLog.trigger_type == Phase.LIVE.value,
            AutomationLog.outcome.in_([Outcome.SUCCESS.value, Outcome.PENDING.value]),
            AutomationLog.triggered_at > cutoff,
        )
        query = self._fixture_query().where(
            Fixture.status.in_(sorted(self.statuses.live)),
            ~recently_triggered,
        )
        fixtures = await self._fetch(query)
        leagues = group_by_league(fixtures)
        logger.debug(
            "live_window_checked",
            leagues=len(leagues),
            fixtures=len(fixtures),
        )
        return leagues

    async def post_match(self, now: datetime, config: RunConfig) -> list[LeagueCandidates]:
        """Leagues with fixtures that finished in the post-match window."""
        start, end = self.kickoff_window(Phase.POST_MATCH, now, config)
        query = self._fixture_query().where(
            Fixture.status.in_(sorted(self.statuses.finished)),
            Fixture.match_date >= start,
            Fixture.match_date <= end,
            self._not_claimed(Phase.POST_MATCH, now),
        )
        fixtures = await self._fetch(query)
        self._log_window(Phase.POST_MATCH, start, end, len(fixtures))
        return group_by_league(fixtures)

    async def analysis(self, now: datetime, config: RunConfig) -> list[FixtureCandidate]:
        """Finished fixtures past the analysis threshold without an analysis."""
        start, end = self.kickoff_window(Phase.ANALYSIS, now, config)
        conditions = [
            Fixture.status.in_(sorted(self.statuses.finished)),
            Fixture.match_date >= start,
            Fixture.match_date <= end,
            ~exists().where(MatchAnalysis.fixture_id == Fixture.id),
            self._not_claimed(Phase.ANALYSIS, now),
        ]
        if self.defaults.window(Phase.ANALYSIS).require_prediction:
            conditions.append(exists().where(Prediction.fixture_id == Fixture.id))

        fixtures = await self._fetch(self._fixture_query().where(*conditions))
        self._log_window(Phase.ANALYSIS, start, end, len(fixtures))
        return fixtures

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _fixture_query(self) -> Select:
        home = aliased(Team)
        away = aliased(Team)
        return (
            select(Fixture, League.name, home.name, away.name, Venue.name)
            .join(League, Fixture.league_id == League.id)
            .outerjoin(home, Fixture.home_team_id == home.id)
            .outerjoin(away, Fixture.away_team_id == away.id)
            .outerjoin(Venue, Fixture.venue_id == Venue.id)
            .where(League.is_active == True)
            .order_by(Fixture.match_date, Fixture.id)
        )

    async def _fetch(self, query: Select) -> list[FixtureCandidate]:
        result = await self.session.execute(query)
        return [
            FixtureCandidate(
                id=fixture.id,
                api_id=fixture.api_id,
                league_id=fixture.league_id,
                league_name=league_name or "Unknown",
                match_date=fixture.match_date,
                status=fixture.status,
                home_team=home_name,
                away_team=away_name,
                venue=venue_name,
                round=fixture.round,
                goals_home=fixture.goals_home,
                goals_away=fixture.goals_away,
            )
            for fixture, league_name, home_name, away_name, venue_name in result.all()
        ]

    def _log_window(
        self, phase: Phase, start: datetime, end: datetime, found: int
    ) -> None:
        logger.debug(
            "phase_window_checked",
            trigger_type=phase.value,
            window_start=start.isoformat(),
            window_end=end.isoformat(),
            candidates=found,
        )

    def _not_claimed(self, phase: Phase, now: datetime):
        """Exclude fixtures triggered for this phase or claimed by an in-flight call."""
        stale_before = now - timedelta(seconds=self.defaults.claim_ttl_seconds(phase))
        return ~exists().where(
            AutomationLogFixture.fixture_id == Fixture.id,
            AutomationLogFixture.trigger_type == phase.value,
            or_(
                AutomationLogFixture.outcome == Outcome.SUCCESS.value,
                and_(
                    AutomationLogFixture.outcome == Outcome.PENDING.value,
                    AutomationLogFixture.triggered_at >= stale_before,
                ),
            ),
        )
