"""Match phase estimation.

Classifies where the fixture calendar currently stands (week before,
matchday, live, ...) and recommends which data to refresh and when to
check again. Advisory only: nothing here dispatches or writes.
"""

import math
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from enum import Enum
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config.automation import (
    AutomationDefaults,
    Phase,
    StatusFamilies,
    get_automation_defaults,
)
from app.models.domain import Fixture, League
from app.services.automation.config_store import RunConfig
from app.services.automation.windows import ensure_utc

# Finished fixtures count as recently completed for this long
RECENT_HOURS = 24
POST_MATCH_HOURS = 2

# Calendar range loaded for estimation
LOOKBACK_DAYS = 3
LOOKAHEAD_DAYS = 7


class MatchPhase(str, Enum):
    NO_MATCHES = "no-matches"
    WEEK_BEFORE = "week-before"
    DAY_BEFORE = "day-before"
    MATCHDAY_MORNING = "matchday-morning"
    PRE_MATCH = "pre-match"
    IMMINENT = "imminent"
    LIVE = "live"
    POST_MATCH = "post-match"
    DAY_AFTER = "day-after"


class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class Recommendation:
    """What to refresh in a phase and how often to re-check."""

    required: tuple[str, ...]
    optional: tuple[str, ...]
    skip: tuple[str, ...]
    next_check_minutes: int
    description: str
    urgency: Urgency


RECOMMENDATIONS: dict[MatchPhase, Recommendation] = {
    MatchPhase.NO_MATCHES: Recommendation(
        required=(),
        optional=("standings", "injuries"),
        skip=("fixtures", "lineups", "odds", "statistics", "events"),
        next_check_minutes=360,
        description="No matches in the next week. Minimal data sync needed.",
        urgency=Urgency.LOW,
    ),
    MatchPhase.WEEK_BEFORE: Recommendation(
        required=("team-stats",),
        optional=("injuries", "standings", "h2h"),
        skip=("lineups", "live-scores"),
        next_check_minutes=240,
        description="Matches coming up this week. Sync team stats and injuries.",
        urgency=Urgency.LOW,
    ),
    MatchPhase.DAY_BEFORE: Recommendation(
        required=("injuries", "odds"),
        optional=("fixtures", "weather", "team-stats"),
        skip=("lineups", "statistics"),
        next_check_minutes=120,
        description="Match tomorrow. Sync odds and final injury updates.",
        urgency=Urgency.LOW,
    ),
    MatchPhase.MATCHDAY_MORNING: Recommendation(
        required=("fixtures", "injuries", "odds"),
        optional=("weather",),
        skip=("team-stats", "standings"),
        next_check_minutes=60,
        description="Matchday. Sync odds and check for late injury news.",
        urgency=Urgency.MEDIUM,
    ),
    MatchPhase.PRE_MATCH: Recommendation(
        required=("lineups", "odds"),
        optional=("weather", "injuries"),
        skip=("team-stats", "standings", "statistics"),
        next_check_minutes=30,
        description="Match starting soon. Lineups should be available.",
        urgency=Urgency.HIGH,
    ),
    MatchPhase.IMMINENT: Recommendation(
        required=("lineups",),
        optional=("odds",),
        skip=("team-stats", "standings", "injuries"),
        next_check_minutes=15,
        description="Match starting very soon. Final lineup check.",
        urgency=Urgency.CRITICAL,
    ),
    MatchPhase.LIVE: Recommendation(
        required=("live-scores",),
        optional=("events",),
        skip=("lineups", "odds", "team-stats", "injuries"),
        next_check_minutes=1,
        description="Match in progress. Live score updates.",
        urgency=Urgency.CRITICAL,
    ),
    MatchPhase.POST_MATCH: Recommendation(
        required=("statistics", "events", "fixtures"),
        optional=("lineups", "standings"),
        skip=("odds", "weather", "injuries"),
        next_check_minutes=30,
        description="Match just finished. Sync full statistics.",
        urgency=Urgency.MEDIUM,
    ),
    MatchPhase.DAY_AFTER: Recommendation(
        required=("standings", "statistics"),
        optional=("events", "team-stats"),
        skip=("lineups", "odds", "weather"),
        next_check_minutes=120,
        description="Processing yesterday's results. Update standings.",
        urgency=Urgency.LOW,
    ),
}


class FixtureLike(Protocol):
    id: int
    match_date: datetime
    status: str


@dataclass
class PhaseEstimate:
    """Estimated calendar phase and refresh advice."""

    phase: MatchPhase
    recommendation: Recommendation
    next_check_minutes: int
    live_matches: int = 0
    upcoming_today: int = 0
    recently_completed: int = 0
    next_fixture_id: int | None = None
    next_match_time: datetime | None = None
    hours_until_next: float | None = None
    next_boundary: datetime | None = None

    @property
    def urgency(self) -> Urgency:
        return self.recommendation.urgency

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "urgency": self.urgency.value,
            "description": self.recommendation.description,
            "nextCheckMinutes": self.next_check_minutes,
            "liveMatches": self.live_matches,
            "upcomingToday": self.upcoming_today,
            "recentlyCompleted": self.recently_completed,
            "nextFixtureId": self.next_fixture_id,
            "nextMatchTime": self.next_match_time.isoformat() if self.next_match_time else None,
            "hoursUntilNext": (
                round(self.hours_until_next, 2) if self.hours_until_next is not None else None
            ),
            "nextWindowBoundary": self.next_boundary.isoformat() if self.next_boundary else None,
            "recommendation": {
                "required": list(self.recommendation.required),
                "optional": list(self.recommendation.optional),
                "skip": list(self.recommendation.skip),
            },
        }


def estimate_phase(
    fixtures: list[FixtureLike],
    now: datetime,
    config: RunConfig | None = None,
    defaults: AutomationDefaults | None = None,
) -> PhaseEstimate:
    """
    Classify the calendar around ``now``.

    next_check_minutes starts from the phase cadence and is shortened to
    the next automation window opening, never below one minute.
    """
    defaults = defaults or get_automation_defaults()
    statuses = defaults.statuses
    now = ensure_utc(now)
    today_start = datetime.combine(now.date(), time.min, tzinfo=timezone.utc)
    today_end = today_start + timedelta(days=1)
    recent_cutoff = now - timedelta(hours=RECENT_HOURS)

    live = [f for f in fixtures if statuses.is_live(f.status)]
    upcoming = sorted(
        (
            f
            for f in fixtures
            if statuses.is_not_started(f.status) and ensure_utc(f.match_date) > now
        ),
        key=lambda f: ensure_utc(f.match_date),
    )
    upcoming_today = [
        f for f in upcoming if today_start <= ensure_utc(f.match_date) < today_end
    ]
    recent = [
        f
        for f in fixtures
        if statuses.is_finished(f.status) and ensure_utc(f.match_date) >= recent_cutoff
    ]

    next_fixture = upcoming[0] if upcoming else None
    next_time = ensure_utc(next_fixture.match_date) if next_fixture else None
    hours_until = (next_time - now).total_seconds() / 3600 if next_time else None

    if live:
        phase = MatchPhase.LIVE
    elif hours_until is not None and 0 < hours_until <= 1:
        phase = MatchPhase.IMMINENT
    elif hours_until is not None and 1 < hours_until <= 3:
        phase = MatchPhase.PRE_MATCH
    elif upcoming_today and hours_until is not None and hours_until > 3:
        phase = MatchPhase.MATCHDAY_MORNING
    elif recent and not upcoming_today:
        hours_since = min(
            min(abs((now - ensure_utc(f.match_date)).total_seconds()) / 3600 for f in recent),
            RECENT_HOURS,
        )
        phase = MatchPhase.POST_MATCH if hours_since <= POST_MATCH_HOURS else MatchPhase.DAY_AFTER
    elif hours_until is not None and hours_until <= 24:
        phase = MatchPhase.DAY_BEFORE
    elif hours_until is not None and hours_until <= 168:
        phase = MatchPhase.WEEK_BEFORE
    else:
        phase = MatchPhase.NO_MATCHES

    recommendation = RECOMMENDATIONS[phase]
    boundary = next_window_boundary(fixtures, now, config, defaults)
    next_check = recommendation.next_check_minutes
    if boundary is not None:
        until_boundary = math.ceil((boundary - now).total_seconds() / 60)
        next_check = min(next_check, until_boundary)

    return PhaseEstimate(
        phase=phase,
        recommendation=recommendation,
        next_check_minutes=max(1, next_check),
        live_matches=len(live),
        upcoming_today=len(upcoming_today),
        recently_completed=len(recent),
        next_fixture_id=next_fixture.id if next_fixture else None,
        next_match_time=next_time,
        hours_until_next=hours_until,
        next_boundary=boundary,
    )


def next_window_boundary(
    fixtures: list[FixtureLike],
    now: datetime,
    config: RunConfig | None = None,
    defaults: AutomationDefaults | None = None,
) -> datetime | None:
    """
    Earliest future instant at which a fixture enters an automation window.

    Pre-match/prediction windows open (threshold + tolerance) before
    kickoff; post-match/analysis windows open threshold after kickoff.
    """
    defaults = defaults or get_automation_defaults()
    thresholds = _thresholds(config, defaults)
    statuses: StatusFamilies = defaults.statuses

    boundaries: list[datetime] = []
    for fixture in fixtures:
        kickoff = ensure_utc(fixture.match_date)

        if statuses.is_not_started(fixture.status):
            for phase in (Phase.PRE_MATCH, Phase.PREDICTION):
                tolerance = defaults.window(phase).tolerance_minutes
                boundaries.append(
                    kickoff - timedelta(minutes=thresholds[phase] + tolerance)
                )

        if not statuses.is_postponed(fixture.status):
            for phase in (Phase.POST_MATCH, Phase.ANALYSIS):
                boundaries.append(kickoff + timedelta(minutes=thresholds[phase]))

    future = [b for b in boundaries if b > now]
    return min(future) if future else None


def _thresholds(
    config: RunConfig | None, defaults: AutomationDefaults
) -> dict[Phase, float]:
    if config is None:
        thresholds = {
            Phase.PRE_MATCH: 30.0,
            Phase.PREDICTION: 25.0,
            Phase.POST_MATCH: 240.0,
            Phase.ANALYSIS: 255.0,
        }
    else:
        thresholds = {
            phase: config.threshold_minutes(phase)
            for phase in (Phase.PRE_MATCH, Phase.PREDICTION, Phase.POST_MATCH, Phase.ANALYSIS)
        }

    thresholds[Phase.ANALYSIS] = max(
        thresholds[Phase.ANALYSIS],
        thresholds[Phase.POST_MATCH] + defaults.window(Phase.ANALYSIS).offset_minutes,
    )
    return thresholds


async def load_calendar(session: AsyncSession, now: datetime) -> list[Fixture]:
    """Fixtures of active leagues from a few days back to a week ahead."""
    result = await session.execute(
        select(Fixture)
        .join(League, Fixture.league_id == League.id)
        .where(
            League.is_active == True,
            Fixture.match_date >= now - timedelta(days=LOOKBACK_DAYS),
            Fixture.match_date <= now + timedelta(days=LOOKAHEAD_DAYS),
        )
        .order_by(Fixture.match_date)
    )
    return list(result.scalars().all())
