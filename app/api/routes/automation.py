"""Automation API endpoints.

Manual trigger, status, audit log and admin configuration for the match
lifecycle automation engine. Every endpoint requires the admin/service key.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Any

import redis.asyncio as redis
import structlog
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.api.dependencies import (
    get_redis,
    get_session_factory,
    get_webhook_client,
    require_admin,
)
from app.config import get_settings
from app.config.automation import Phase, get_automation_defaults
from app.services.automation import (
    AuditLogger,
    AutomationConfigNotFound,
    AutomationConfigStore,
    AutomationOrchestrator,
    LogFilters,
    RunConfig,
    RunLock,
    RunState,
    WebhookClient,
)
from app.services.automation.audit import DEFAULT_LOG_LIMIT, MAX_LOG_LIMIT
from app.services.automation.phase_estimator import estimate_phase, load_calendar
from app.services.automation.webhooks import (
    DEFAULT_WEBHOOKS,
    WEBHOOK_URL_FIELDS,
    InvalidWebhookURL,
    resolve_webhook_url,
    validate_webhook_url,
)
from app.services.automation.windows import ensure_utc

logger = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/api/automation",
    tags=["automation"],
    dependencies=[Depends(require_admin)],
)

# camelCase keys used by the status payload
STATUS_KEYS = {
    Phase.PRE_MATCH: "preMatch",
    Phase.PREDICTION: "prediction",
    Phase.LIVE: "live",
    Phase.POST_MATCH: "postMatch",
    Phase.ANALYSIS: "analysis",
}


class ConfigUpdate(BaseModel):
    """Partial update of enable flags and thresholds."""

    is_enabled: bool | None = None
    pre_match_enabled: bool | None = None
    prediction_enabled: bool | None = None
    live_enabled: bool | None = None
    post_match_enabled: bool | None = None
    analysis_enabled: bool | None = None
    pre_match_minutes_before: int | None = Field(default=None, ge=1, le=1440)
    prediction_minutes_before: int | None = Field(default=None, ge=1, le=1440)
    post_match_hours_after: float | None = Field(default=None, gt=0, le=72)
    analysis_hours_after: float | None = Field(default=None, gt=0, le=72)
    live_interval_minutes: int | None = Field(default=None, ge=1, le=120)


class WebhookUpdate(BaseModel):
    """Per-phase webhook URL overrides; null or empty resets to default."""

    pre_match_webhook_url: str | None = None
    prediction_webhook_url: str | None = None
    live_webhook_url: str | None = None
    post_match_webhook_url: str | None = None
    analysis_webhook_url: str | None = None


def _iso(value: datetime | None) -> str | None:
    return ensure_utc(value).isoformat() if value else None


def _next_cron_run(config: RunConfig) -> str | None:
    """Expected next scheduled run: last run plus the scheduler cadence."""
    if config.last_run_at is None:
        return None
    cadence = timedelta(minutes=get_automation_defaults().cadence_minutes)
    return _iso(config.last_run_at + cadence)


@router.post("/trigger")
async def trigger_run(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    webhook_client: WebhookClient = Depends(get_webhook_client),
    redis_client: redis.Redis = Depends(get_redis),
):
    """
    Run one automation cycle now.

    Same path as the scheduled run, including the run lock.
    """
    settings = get_settings()
    defaults = get_automation_defaults()
    orchestrator = AutomationOrchestrator(
        session_factory,
        webhook_client,
        settings=settings,
        defaults=defaults,
        run_lock=RunLock(
            redis_client,
            key=defaults.run_lock_key,
            ttl_seconds=defaults.run_lock_ttl_seconds,
        ),
    )
    report = await orchestrator.run()
    timestamp = report.started_at.isoformat()

    if report.state == RunState.ABORTED:
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": report.error, "runId": report.run_id},
        )

    if report.state == RunState.SKIPPED:
        return {
            "success": True,
            "runId": report.run_id,
            "timestamp": timestamp,
            "message": report.message,
            "results": None,
        }

    return {
        "success": True,
        "runId": report.run_id,
        "timestamp": timestamp,
        "duration": report.duration_ms,
        "status": report.status.value if report.status else None,
        "summary": report.summary_dict(),
        "results": [
            {
                "triggerType": r.trigger_type,
                "status": r.status.value,
                "fixtureCount": r.fixture_count,
                "error": r.error,
            }
            for r in report.results
        ],
    }


@router.get("/trigger")
async def get_trigger_state(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    """Enabled flag, last run and expected next run."""
    try:
        config = await AutomationConfigStore(session_factory).get()
    except AutomationConfigNotFound as e:
        raise HTTPException(status_code=500, detail=str(e))

    defaults = get_automation_defaults()
    return {
        "isEnabled": config.is_enabled,
        "lastCronRun": _iso(config.last_run_at),
        "lastCronStatus": config.last_run_status,
        "nextCronRun": _next_cron_run(config),
        "processing": {
            "maxPredictionsPerRun": defaults.strategy(Phase.PREDICTION).max_units_per_run,
            "maxAnalysesPerRun": defaults.strategy(Phase.ANALYSIS).max_units_per_run,
            "batchSize": defaults.strategy(Phase.PREDICTION).max_concurrency,
        },
        "config": config.to_public_dict(),
    }


@router.get("/status")
async def get_status(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    """Today's per-phase counts, next run and the calendar phase estimate."""
    try:
        config = await AutomationConfigStore(session_factory).get()
    except AutomationConfigNotFound as e:
        raise HTTPException(status_code=500, detail=str(e))

    now = datetime.now(timezone.utc)
    stats = await AuditLogger(session_factory).today_stats(now)

    triggers: dict[str, dict[str, Any]] = {}
    for phase, key in STATUS_KEYS.items():
        entry = stats[phase]
        triggers[key] = {
            "successToday": entry["successToday"],
            "errorToday": entry["errorToday"],
            "lastTriggered": _iso(entry["lastTriggered"]),
            "enabled": config.phase_enabled.get(phase, False),
        }

    async with session_factory() as session:
        fixtures = await load_calendar(session, now)
    estimate = estimate_phase(fixtures, now, config)

    return {
        "isEnabled": config.is_enabled,
        "lastCronRun": _iso(config.last_run_at),
        "lastCronStatus": config.last_run_status,
        "nextCronRun": _next_cron_run(config),
        "triggers": triggers,
        "errorsToday": sum(t["errorToday"] for t in triggers.values()),
        "phase": estimate.to_dict(),
        "config": config.to_public_dict(),
    }


@router.get("/logs")
async def get_logs(
    trigger_type: str | None = None,
    status: str | None = None,
    date: str | None = None,
    run_id: str | None = None,
    limit: str | None = None,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    """Query the automation audit trail, newest first."""
    filters = LogFilters(
        trigger_type=trigger_type,
        outcome=status,
        day=_parse_date(date),
        run_id=run_id,
        limit=_parse_limit(limit),
    )
    logs = await AuditLogger(session_factory).query_logs(filters)
    return {"logs": logs, "count": len(logs)}


def _parse_date(raw: str | None) -> date | None:
    if not raw:
        return None
    try:
        if len(raw) != 10:
            raise ValueError(raw)
        return date.fromisoformat(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid date format. Use YYYY-MM-DD")


def _parse_limit(raw: str | None) -> int:
    if raw is None or raw == "":
        return DEFAULT_LOG_LIMIT
    try:
        limit = int(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail="limit must be an integer")
    if limit < 1 or limit > MAX_LOG_LIMIT:
        raise HTTPException(
            status_code=400, detail=f"limit must be between 1 and {MAX_LOG_LIMIT}"
        )
    return limit


@router.patch("/config")
async def update_config(
    body: ConfigUpdate,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    """Partially update enable flags and thresholds."""
    changes = body.model_dump(exclude_unset=True, exclude_none=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No valid fields to update")

    try:
        config = await AutomationConfigStore(session_factory).update(**changes)
    except AutomationConfigNotFound as e:
        raise HTTPException(status_code=500, detail=str(e))

    logger.info("automation_config_changed", fields=sorted(changes))
    return {
        "success": True,
        "isEnabled": config.is_enabled,
        "config": config.to_public_dict(),
    }


@router.get("/webhooks")
async def get_webhooks(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    """Resolved per-phase webhook URLs and whether each is an override."""
    try:
        config = await AutomationConfigStore(session_factory).get()
    except AutomationConfigNotFound as e:
        raise HTTPException(status_code=500, detail=str(e))

    return {
        **_webhook_view(config),
        "is_custom": {phase.key: bool(config.webhook_urls.get(phase)) for phase in Phase},
        "defaults": {phase.key: url for phase, url in DEFAULT_WEBHOOKS.items()},
    }


@router.patch("/webhooks")
async def update_webhooks(
    body: WebhookUpdate,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    """
    Set or reset per-phase webhook URLs.

    The shared secret is environment-only and cannot be set here.
    """
    changes: dict[str, str | None] = {}
    for field_name, value in body.model_dump(exclude_unset=True).items():
        if value is None or value == "":
            changes[field_name] = None
            continue
        try:
            changes[field_name] = validate_webhook_url(value)
        except InvalidWebhookURL as e:
            raise HTTPException(status_code=400, detail=str(e))

    if not changes:
        raise HTTPException(status_code=400, detail="No valid fields to update")

    try:
        config = await AutomationConfigStore(session_factory).update(**changes)
    except AutomationConfigNotFound as e:
        raise HTTPException(status_code=500, detail=str(e))

    logger.info("automation_webhooks_changed", fields=sorted(changes))
    return {
        "success": True,
        "message": "Webhook configuration updated",
        "config": _webhook_view(config),
    }


def _webhook_view(config: RunConfig) -> dict[str, Any]:
    settings = get_settings()
    view: dict[str, Any] = {
        WEBHOOK_URL_FIELDS[phase]: resolve_webhook_url(phase, config, settings)
        for phase in Phase
    }
    view["webhook_secret_set"] = settings.webhook_secret_set
    return view
