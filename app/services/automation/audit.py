"""Automation audit log.

Writer and read queries for automation_logs. Events (no-action, run
summary, skipped units) are inserted once, fully resolved. Webhook calls
are written twice: a pending claim before the call, which the unique
claim index refuses if another run already holds the fixtures, then the
outcome and completed_at once the call returns.
"""

from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config.automation import Outcome, Phase
from app.models.domain import AutomationLog, AutomationLogFixture, League

logger = structlog.get_logger(__name__)

MAX_LOG_LIMIT = 200
DEFAULT_LOG_LIMIT = 50

CLAIM_EXPIRED = "claim expired"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AuditEntry:
    """One dispatch decision, ready to be written."""

    run_id: str
    trigger_type: str
    outcome: Outcome
    triggered_at: datetime
    completed_at: datetime | None = None
    message: str | None = None
    error_message: str | None = None
    league_id: int | None = None
    fixture_ids: list[int] = field(default_factory=list)
    webhook_url: str | None = None
    webhook_status_code: int | None = None
    webhook_duration_ms: int | None = None
    webhook_response: Any = None
    details: dict[str, Any] | None = None

    @property
    def fixture_count(self) -> int:
        return len(self.fixture_ids)


@dataclass
class LogFilters:
    """Read-side filters for the audit trail."""

    trigger_type: str | None = None
    outcome: str | None = None
    day: date | None = None
    run_id: str | None = None
    limit: int = DEFAULT_LOG_LIMIT


class AuditLogger:
    """Writes and reads automation audit entries."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.clock = clock

    async def record(self, entry: AuditEntry) -> int:
        """
        Insert one resolved audit entry and its fixture membership rows.

        fixture_count is always len(fixture_ids), league-batched phases
        included. Returns the new entry id.
        """
        log = self._build_log(entry, completed_at=entry.completed_at or self.clock())

        async with self.session_factory() as session:
            session.add(log)
            try:
                await session.commit()
            except Exception as e:
                await session.rollback()
                logger.error(
                    "audit_log_write_failed",
                    run_id=entry.run_id,
                    trigger_type=entry.trigger_type,
                    outcome=entry.outcome.value,
                    error=str(e),
                )
                raise

        logger.debug(
            "audit_log_recorded",
            run_id=entry.run_id,
            trigger_type=entry.trigger_type,
            outcome=entry.outcome.value,
            fixtures=log.fixture_count,
        )
        return log.id

    async def claim(self, entry: AuditEntry, stale_before: datetime) -> int | None:
        """
        Insert a pending entry claiming its fixtures before the webhook call.

        Pending claims on the same fixtures triggered before ``stale_before``
        belong to a run that died mid-call; they are resolved as errors
        first so their fixtures can be claimed again.

        Returns:
            The pending entry id, or None if another run already holds a
            pending or successful claim on any of the fixtures
        """
        pending = replace(
            entry,
            outcome=Outcome.PENDING,
            message=f"{entry.trigger_type} call in progress",
            error_message=None,
        )
        log = self._build_log(pending, completed_at=None)
        fixture_ids = list(dict.fromkeys(entry.fixture_ids))

        async with self.session_factory() as session:
            try:
                result = await session.execute(
                    select(AutomationLogFixture.log_id).where(
                        AutomationLogFixture.trigger_type == entry.trigger_type,
                        AutomationLogFixture.fixture_id.in_(fixture_ids),
                        AutomationLogFixture.outcome == Outcome.PENDING.value,
                        AutomationLogFixture.triggered_at < stale_before,
                    )
                )
                stale_ids = sorted(set(result.scalars().all()))
                if stale_ids:
                    await self._resolve(
                        session,
                        stale_ids,
                        Outcome.ERROR,
                        completed_at=self.clock(),
                        error_message=CLAIM_EXPIRED,
                    )
                    logger.warning(
                        "stale_claims_expired",
                        run_id=entry.run_id,
                        trigger_type=entry.trigger_type,
                        log_ids=stale_ids,
                    )

                session.add(log)
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info(
                    "dispatch_claim_refused",
                    run_id=entry.run_id,
                    trigger_type=entry.trigger_type,
                    fixture_ids=fixture_ids,
                )
                return None
            except Exception as e:
                await session.rollback()
                logger.error(
                    "audit_claim_failed",
                    run_id=entry.run_id,
                    trigger_type=entry.trigger_type,
                    error=str(e),
                )
                raise

        return log.id

    async def complete(self, log_id: int, entry: AuditEntry) -> None:
        """Resolve a pending claim with the outcome of its webhook call."""
        async with self.session_factory() as session:
            try:
                await self._resolve(
                    session,
                    [log_id],
                    entry.outcome,
                    completed_at=entry.completed_at or self.clock(),
                    message=entry.message,
                    error_message=entry.error_message,
                    webhook_url=entry.webhook_url,
                    webhook_status_code=entry.webhook_status_code,
                    webhook_duration_ms=entry.webhook_duration_ms,
                    webhook_response=entry.webhook_response,
                )
                await session.commit()
            except Exception as e:
                await session.rollback()
                logger.error(
                    "audit_log_write_failed",
                    run_id=entry.run_id,
                    trigger_type=entry.trigger_type,
                    outcome=entry.outcome.value,
                    log_id=log_id,
                    error=str(e),
                )
                raise

        logger.debug(
            "audit_log_completed",
            run_id=entry.run_id,
            trigger_type=entry.trigger_type,
            outcome=entry.outcome.value,
            log_id=log_id,
        )

    async def _resolve(
        self,
        session: AsyncSession,
        log_ids: list[int],
        outcome: Outcome,
        **values: Any,
    ) -> None:
        await session.execute(
            update(AutomationLog)
            .where(AutomationLog.id.in_(log_ids))
            .values(outcome=outcome.value, **values)
        )
        await session.execute(
            update(AutomationLogFixture)
            .where(AutomationLogFixture.log_id.in_(log_ids))
            .values(outcome=outcome.value)
        )

    def _build_log(self, entry: AuditEntry, completed_at: datetime | None) -> AutomationLog:
        log = AutomationLog(
            trigger_type=entry.trigger_type,
            run_id=entry.run_id,
            league_id=entry.league_id,
            fixture_ids=list(entry.fixture_ids),
            fixture_count=entry.fixture_count,
            webhook_url=entry.webhook_url,
            webhook_status_code=entry.webhook_status_code,
            webhook_duration_ms=entry.webhook_duration_ms,
            webhook_response=entry.webhook_response,
            outcome=entry.outcome.value,
            message=entry.message,
            error_message=entry.error_message,
            triggered_at=entry.triggered_at,
            completed_at=completed_at,
            details=entry.details,
        )
        log.fixtures = [
            AutomationLogFixture(
                fixture_id=fixture_id,
                trigger_type=entry.trigger_type,
                outcome=entry.outcome.value,
                triggered_at=entry.triggered_at,
            )
            for fixture_id in dict.fromkeys(entry.fixture_ids)
        ]
        return log

    async def log_no_action(self, run_id: str, phase: Phase) -> int:
        """Record that a phase window was empty."""
        now = self.clock()
        return await self.record(
            AuditEntry(
                run_id=run_id,
                trigger_type=phase.value,
                outcome=Outcome.NO_ACTION,
                triggered_at=now,
                completed_at=now,
                message=f"No fixtures in {phase.value} window",
            )
        )

    async def log_event(
        self,
        run_id: str,
        trigger_type: str,
        outcome: Outcome,
        message: str,
        error_message: str | None = None,
        details: dict[str, Any] | None = None,
        triggered_at: datetime | None = None,
    ) -> int:
        """Record a non-dispatch event (run summary, skipped run, phase error)."""
        now = self.clock()
        return await self.record(
            AuditEntry(
                run_id=run_id,
                trigger_type=trigger_type,
                outcome=outcome,
                triggered_at=triggered_at or now,
                completed_at=now,
                message=message,
                error_message=error_message,
                details=details,
            )
        )

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    async def query_logs(self, filters: LogFilters) -> list[dict[str, Any]]:
        """List audit entries, newest first."""
        limit = max(1, min(filters.limit, MAX_LOG_LIMIT))
        query = (
            select(AutomationLog, League.name)
            .outerjoin(League, AutomationLog.league_id == League.id)
            .order_by(AutomationLog.triggered_at.desc(), AutomationLog.id.desc())
            .limit(limit)
        )

        if filters.trigger_type:
            query = query.where(AutomationLog.trigger_type == filters.trigger_type)
        if filters.outcome:
            query = query.where(AutomationLog.outcome == filters.outcome)
        if filters.run_id:
            query = query.where(AutomationLog.run_id == filters.run_id)
        if filters.day:
            start = datetime.combine(filters.day, time.min, tzinfo=timezone.utc)
            query = query.where(
                AutomationLog.triggered_at >= start,
                AutomationLog.triggered_at < start + timedelta(days=1),
            )

        async with self.session_factory() as session:
            result = await session.execute(query)
            return [
                _log_to_dict(log, league_name) for log, league_name in result.all()
            ]

    async def today_stats(self, now: datetime | None = None) -> dict[Phase, dict[str, Any]]:
        """
        Per-phase success/error counts since UTC midnight.

        lastTriggered is the newest entry that was not a no-action.
        """
        now = now or self.clock()
        day_start = datetime.combine(now.date(), time.min, tzinfo=timezone.utc)
        stats = {
            phase: {"successToday": 0, "errorToday": 0, "lastTriggered": None}
            for phase in Phase
        }

        async with self.session_factory() as session:
            result = await session.execute(
                select(
                    AutomationLog.trigger_type,
                    AutomationLog.outcome,
                    AutomationLog.triggered_at,
                )
                .where(
                    AutomationLog.triggered_at >= day_start,
                    AutomationLog.trigger_type.in_([p.value for p in Phase]),
                )
                .order_by(AutomationLog.triggered_at.desc())
            )
            rows = result.all()

        for trigger_type, outcome, triggered_at in rows:
            entry = stats[Phase(trigger_type)]
            if outcome == Outcome.SUCCESS.value:
                entry["successToday"] += 1
            elif outcome == Outcome.ERROR.value:
                entry["errorToday"] += 1
            if entry["lastTriggered"] is None and outcome != Outcome.NO_ACTION.value:
                entry["lastTriggered"] = triggered_at

        return stats


def _log_to_dict(log: AutomationLog, league_name: str | None) -> dict[str, Any]:
    return {
        "id": log.id,
        "trigger_type": log.trigger_type,
        "run_id": log.run_id,
        "league_id": log.league_id,
        "league_name": league_name,
        "fixture_ids": log.fixture_ids or [],
        "fixture_count": log.fixture_count,
        "webhook_url": log.webhook_url,
        "webhook_status_code": log.webhook_status_code,
        "webhook_duration_ms": log.webhook_duration_ms,
        "webhook_response": log.webhook_response,
        "outcome": log.outcome,
        "message": log.message,
        "error_message": log.error_message,
        "triggered_at": log.triggered_at,
        "completed_at": log.completed_at,
        "details": log.details,
    }
