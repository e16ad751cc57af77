"""Automation run orchestrator.

One run, triggered by Celery beat or the admin API:

    idle -> loading-config -> (aborted | skipped | phases) -> aggregating -> done

The five phases run concurrently, each in its own task with its own
database session, strictly evaluate -> dispatch -> log. A failing phase
never stops the others; only a missing configuration row aborts a run.
Any other failure marks the run as errored (status and run summary) and
then propagates to the caller.
The orchestrator alone owns the run summary counters.
"""

import asyncio
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings, get_settings
from app.config.automation import (
    RUN_SUMMARY,
    AutomationDefaults,
    Outcome,
    Phase,
    RunStatus,
    get_automation_defaults,
)
from app.services.automation.audit import AuditLogger
from app.services.automation.config_store import (
    AutomationConfigNotFound,
    AutomationConfigStore,
    RunConfig,
)
from app.services.automation.dispatcher import (
    PhaseDispatcher,
    TriggerResult,
    WebhookClient,
)
from app.services.automation.live_refresh import active_league_ids, refresh_live_fixtures
from app.services.automation.run_lock import RunLock
from app.services.automation.windows import WindowEvaluator, count_candidates

logger = structlog.get_logger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunState(str, Enum):
    """Terminal state of a run."""
    ABORTED = "aborted"
    SKIPPED = "skipped"
    DONE = "done"


@dataclass
class PhaseSummary:
    """Per-phase counters for one run."""

    checked: int = 0
    triggered: int = 0
    errors: int = 0
    skipped: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = {"checked": self.checked, "triggered": self.triggered, "errors": self.errors}
        if self.skipped:
            data["skipped"] = True
        return data


@dataclass
class PhaseRun:
    """What one phase task produced."""

    phase: Phase
    summary: PhaseSummary
    results: list[TriggerResult] = field(default_factory=list)
    failed: bool = False


@dataclass
class RunReport:
    """Result of one automation run."""

    run_id: str
    state: RunState
    started_at: datetime
    duration_ms: int = 0
    status: RunStatus | None = None
    summary: dict[Phase, PhaseSummary] = field(default_factory=dict)
    results: list[TriggerResult] = field(default_factory=list)
    message: str | None = None
    error: str | None = None

    def summary_dict(self) -> dict[str, dict[str, Any]]:
        return {phase.key: s.to_dict() for phase, s in self.summary.items()}

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "state": self.state.value,
            "status": self.status.value if self.status else None,
            "started_at": self.started_at.isoformat(),
            "duration_ms": self.duration_ms,
            "summary": self.summary_dict(),
            "results": [r.to_dict() for r in self.results],
            "message": self.message,
            "error": self.error,
        }


class AutomationOrchestrator:
    """Runs one automation cycle end to end."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        webhook_client: WebhookClient,
        settings: Settings | None = None,
        defaults: AutomationDefaults | None = None,
        run_lock: RunLock | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.client = webhook_client
        self.settings = settings or get_settings()
        self.defaults = defaults or get_automation_defaults()
        self.run_lock = run_lock
        self.clock = clock

        self.config_store = AutomationConfigStore(session_factory)
        self.audit = AuditLogger(session_factory, clock=clock)
        self.dispatcher = PhaseDispatcher(
            webhook_client,
            self.audit,
            settings=self.settings,
            defaults=self.defaults,
            clock=clock,
        )

    async def run(self) -> RunReport:
        """Execute one run and return its report."""
        run_id = str(uuid.uuid4())
        now = self.clock()
        started = time.monotonic()
        log = logger.bind(run_id=run_id)
        log.info("automation_run_started")

        try:
            config = await self.config_store.get()
        except AutomationConfigNotFound as e:
            log.error("automation_run_aborted", error=str(e))
            await self.audit.log_event(
                run_id,
                RUN_SUMMARY,
                Outcome.ERROR,
                "Automation run aborted",
                error_message=str(e),
                triggered_at=now,
            )
            return RunReport(
                run_id=run_id,
                state=RunState.ABORTED,
                started_at=now,
                duration_ms=_elapsed_ms(started),
                error=str(e),
            )

        if not config.is_enabled:
            return await self._skip(run_id, now, started, "Automation is disabled")

        if self.run_lock is not None and not await self.run_lock.acquire():
            return await self._skip(
                run_id, now, started, "Another automation run is in progress"
            )

        try:
            return await self._run_phases(run_id, config, now, started)
        finally:
            if self.run_lock is not None:
                await self.run_lock.release()

    async def _skip(
        self, run_id: str, now: datetime, started: float, message: str
    ) -> RunReport:
        logger.info("automation_run_skipped", run_id=run_id, reason=message)
        await self.audit.log_event(
            run_id, RUN_SUMMARY, Outcome.SKIPPED, message, triggered_at=now
        )
        return RunReport(
            run_id=run_id,
            state=RunState.SKIPPED,
            started_at=now,
            duration_ms=_elapsed_ms(started),
            message=message,
        )

    async def _run_phases(
        self, run_id: str, config: RunConfig, now: datetime, started: float
    ) -> RunReport:
        try:
            return await self._execute(run_id, config, now, started)
        except Exception as e:
            logger.error("automation_run_failed", run_id=run_id, error=str(e))
            await self._record_failure(run_id, now, started, e)
            raise

    async def _execute(
        self, run_id: str, config: RunConfig, now: datetime, started: float
    ) -> RunReport:
        await self.config_store.update(
            last_run_status=RunStatus.RUNNING.value, last_run_at=now
        )

        phases = list(Phase)
        outcomes = await asyncio.gather(
            *(self._run_phase(phase, run_id, config, now, started) for phase in phases),
            return_exceptions=True,
        )

        # Aggregating
        summary: dict[Phase, PhaseSummary] = {}
        results: list[TriggerResult] = []
        failed = False
        for phase, outcome in zip(phases, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(
                    "phase_failed",
                    run_id=run_id,
                    trigger_type=phase.value,
                    error=str(outcome),
                )
                summary[phase] = PhaseSummary(errors=1)
                failed = True
                continue
            summary[phase] = outcome.summary
            results.extend(outcome.results)
            failed = failed or outcome.failed or outcome.summary.errors > 0

        status = RunStatus.ERROR if failed else RunStatus.SUCCESS
        duration_ms = _elapsed_ms(started)
        report = RunReport(
            run_id=run_id,
            state=RunState.DONE,
            started_at=now,
            duration_ms=duration_ms,
            status=status,
            summary=summary,
            results=results,
        )

        await self.config_store.update(last_run_status=status.value, last_run_at=now)
        await self.audit.log_event(
            run_id,
            RUN_SUMMARY,
            Outcome.ERROR if failed else Outcome.SUCCESS,
            _summary_message(summary),
            details={"summary": report.summary_dict(), "duration_ms": duration_ms},
            triggered_at=now,
        )

        logger.info(
            "automation_run_complete",
            run_id=run_id,
            status=status.value,
            duration_ms=duration_ms,
            triggered=sum(s.triggered for s in summary.values()),
            errors=sum(s.errors for s in summary.values()),
        )
        return report

    async def _record_failure(
        self, run_id: str, now: datetime, started: float, error: Exception
    ) -> None:
        """Leave the run marked as failed; the original error still propagates."""
        try:
            await self.config_store.update(
                last_run_status=RunStatus.ERROR.value, last_run_at=now
            )
        except Exception as e:
            logger.error("run_status_write_failed", run_id=run_id, error=str(e))

        try:
            await self.audit.log_event(
                run_id,
                RUN_SUMMARY,
                Outcome.ERROR,
                "Automation run failed",
                error_message=str(error) or error.__class__.__name__,
                details={"duration_ms": _elapsed_ms(started)},
                triggered_at=now,
            )
        except Exception as e:
            logger.error("run_summary_write_failed", run_id=run_id, error=str(e))

    async def _run_phase(
        self,
        phase: Phase,
        run_id: str,
        config: RunConfig,
        now: datetime,
        started: float,
    ) -> PhaseRun:
        """Evaluate, dispatch and log a single phase."""
        if not config.enabled(phase):
            return PhaseRun(phase=phase, summary=PhaseSummary(skipped=True))

        summary = PhaseSummary()
        log = logger.bind(run_id=run_id, trigger_type=phase.value)

        try:
            if phase == Phase.LIVE:
                await self._refresh_live()
            async with self.session_factory() as session:
                evaluator = WindowEvaluator(session, self.defaults)
                candidates = await evaluator.evaluate(phase, now, config)
        except Exception as e:
            log.error("phase_evaluation_failed", error=str(e))
            await self.audit.log_event(
                run_id,
                phase.value,
                Outcome.ERROR,
                f"{phase.value} window evaluation failed",
                error_message=str(e),
            )
            summary.errors = 1
            return PhaseRun(phase=phase, summary=summary, failed=True)

        summary.checked = count_candidates(candidates)
        if not candidates:
            await self.audit.log_no_action(run_id, phase)
            log.debug("phase_no_action")
            return PhaseRun(phase=phase, summary=summary)

        deadline = started + self.defaults.budget_seconds(phase)
        results = await self.dispatcher.dispatch(
            phase, candidates, run_id, config, deadline=deadline
        )

        summary.triggered = sum(r.fixture_count for r in results if r.ok)
        summary.errors = sum(1 for r in results if r.status == Outcome.ERROR)
        return PhaseRun(phase=phase, summary=summary, results=results)

    async def _refresh_live(self) -> None:
        """Refresh live statuses before the live query; never fails the phase."""
        try:
            async with self.session_factory() as session:
                league_ids = await active_league_ids(session)
            await refresh_live_fixtures(
                self.client,
                league_ids,
                self.defaults.live_refresh_timeout_seconds,
                settings=self.settings,
            )
        except Exception as e:
            logger.warning("live_refresh_skipped", error=str(e))


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _summary_message(summary: dict[Phase, PhaseSummary]) -> str:
    parts = []
    for phase, s in summary.items():
        if s.skipped:
            parts.append(f"{phase.value}: disabled")
        else:
            parts.append(f"{phase.value}: {s.triggered}/{s.checked} triggered, {s.errors} errors")
    return "Automation run complete. " + "; ".join(parts)
