"""Automation configuration store.

Reads and partially updates the singleton automation_config row. Each run
takes an immutable RunConfig snapshot at start and passes it down, so no
phase ever sees a config changed mid-run.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config.automation import Phase
from app.models.domain import AutomationConfig

logger = structlog.get_logger(__name__)

# Columns an update may touch
EDITABLE_FIELDS = frozenset(
    {
        "is_enabled",
        "pre_match_enabled",
        "prediction_enabled",
        "live_enabled",
        "post_match_enabled",
        "analysis_enabled",
        "pre_match_minutes_before",
        "prediction_minutes_before",
        "post_match_hours_after",
        "analysis_hours_after",
        "live_interval_minutes",
        "pre_match_webhook_url",
        "prediction_webhook_url",
        "live_webhook_url",
        "post_match_webhook_url",
        "analysis_webhook_url",
        "last_run_at",
        "last_run_status",
    }
)


class AutomationConfigNotFound(Exception):
    """The automation_config row does not exist."""


@dataclass(frozen=True)
class RunConfig:
    """Immutable snapshot of automation_config for one run."""

    is_enabled: bool
    phase_enabled: dict[Phase, bool]
    pre_match_minutes_before: int
    prediction_minutes_before: int
    post_match_hours_after: float
    analysis_hours_after: float
    live_interval_minutes: int
    webhook_urls: dict[Phase, str | None] = field(default_factory=dict)
    last_run_at: datetime | None = None
    last_run_status: str | None = None

    def enabled(self, phase: Phase) -> bool:
        return self.is_enabled and self.phase_enabled.get(phase, False)

    def threshold_minutes(self, phase: Phase) -> float:
        """
        Configured threshold in minutes.

        Minutes before kickoff for pre-match/prediction, minutes after
        kickoff for post-match/analysis. Live has no threshold.
        """
        if phase == Phase.PRE_MATCH:
            return float(self.pre_match_minutes_before)
        if phase == Phase.PREDICTION:
            return float(self.prediction_minutes_before)
        if phase == Phase.POST_MATCH:
            return self.post_match_hours_after * 60
        if phase == Phase.ANALYSIS:
            return self.analysis_hours_after * 60
        return 0.0

    def to_public_dict(self) -> dict[str, Any]:
        """Flags and thresholds in the shape the admin API returns."""
        return {
            "pre_match_enabled": self.phase_enabled.get(Phase.PRE_MATCH, False),
            "prediction_enabled": self.phase_enabled.get(Phase.PREDICTION, False),
            "live_enabled": self.phase_enabled.get(Phase.LIVE, False),
            "post_match_enabled": self.phase_enabled.get(Phase.POST_MATCH, False),
            "analysis_enabled": self.phase_enabled.get(Phase.ANALYSIS, False),
            "pre_match_minutes_before": self.pre_match_minutes_before,
            "prediction_minutes_before": self.prediction_minutes_before,
            "post_match_hours_after": self.post_match_hours_after,
            "analysis_hours_after": self.analysis_hours_after,
            "live_interval_minutes": self.live_interval_minutes,
        }

    @classmethod
    def from_row(cls, row: AutomationConfig) -> "RunConfig":
        return cls(
            is_enabled=bool(row.is_enabled),
            phase_enabled={
                Phase.PRE_MATCH: bool(row.pre_match_enabled),
                Phase.PREDICTION: bool(row.prediction_enabled),
                Phase.LIVE: bool(row.live_enabled),
                Phase.POST_MATCH: bool(row.post_match_enabled),
                Phase.ANALYSIS: bool(row.analysis_enabled),
            },
            pre_match_minutes_before=int(row.pre_match_minutes_before),
            prediction_minutes_before=int(row.prediction_minutes_before),
            post_match_hours_after=float(row.post_match_hours_after),
            analysis_hours_after=float(row.analysis_hours_after),
            live_interval_minutes=int(row.live_interval_minutes),
            webhook_urls={
                Phase.PRE_MATCH: row.pre_match_webhook_url,
                Phase.PREDICTION: row.prediction_webhook_url,
                Phase.LIVE: row.live_webhook_url,
                Phase.POST_MATCH: row.post_match_webhook_url,
                Phase.ANALYSIS: row.analysis_webhook_url,
            },
            last_run_at=row.last_run_at,
            last_run_status=row.last_run_status,
        )


class AutomationConfigStore:
    """Get / partial-update access to the automation_config singleton."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get(self) -> RunConfig:
        """
        Load the current configuration.

        Raises:
            AutomationConfigNotFound: if the singleton row is missing
        """
        async with self.session_factory() as session:
            row = await _load_row(session)
            if row is None:
                raise AutomationConfigNotFound("Automation config not found")
            return RunConfig.from_row(row)

    async def update(self, **changes: Any) -> RunConfig:
        """
        Merge the given fields into the config row.

        Only the supplied columns are written, in a single UPDATE.

        Raises:
            ValueError: if a field is not an editable column
            AutomationConfigNotFound: if the singleton row is missing
        """
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown automation config fields: {sorted(unknown)}")

        async with self.session_factory() as session:
            row_id = await session.scalar(
                select(AutomationConfig.id).order_by(AutomationConfig.id).limit(1)
            )
            if row_id is None:
                raise AutomationConfigNotFound("Automation config not found")

            if changes:
                await session.execute(
                    update(AutomationConfig)
                    .where(AutomationConfig.id == row_id)
                    .values(**changes)
                )
                await session.commit()

            logger.debug("automation_config_updated", fields=sorted(changes))

        return await self.get()


async def _load_row(session: AsyncSession) -> AutomationConfig | None:
    result = await session.execute(
        select(AutomationConfig).order_by(AutomationConfig.id).limit(1)
    )
    return result.scalar_one_or_none()
