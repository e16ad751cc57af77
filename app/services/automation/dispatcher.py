"""Webhook dispatch.

Turns a phase's candidates into webhook calls according to the phase's
DispatchStrategy: one call per league (pre-match, live, post-match) or one
call per fixture (prediction, analysis). Calls run concurrently under a
per-phase semaphore, each with its own timeout. A failing unit never
affects its siblings: every exception becomes an error TriggerResult.
"""

import asyncio
import json
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

import httpx
import structlog

from app.config import Settings, get_settings
from app.config.automation import (
    AutomationDefaults,
    BatchingUnit,
    DispatchStrategy,
    Outcome,
    Phase,
    get_automation_defaults,
)
from app.services.automation.audit import AuditEntry, AuditLogger
from app.services.automation.config_store import RunConfig
from app.services.automation.webhooks import resolve_webhook_url, webhook_headers
from app.services.automation.windows import (
    FixtureCandidate,
    LeagueCandidates,
    group_by_league,
)

logger = structlog.get_logger(__name__)

BUDGET_EXCEEDED = "run budget exceeded"
ALREADY_CLAIMED = "already claimed by another run"

# Phases whose payload carries the final score
SCORED_PHASES = (Phase.POST_MATCH, Phase.ANALYSIS)

# Phases whose payload carries the LLM model name
MODEL_PHASES = (Phase.PREDICTION, Phase.ANALYSIS)


class WebhookErrorType(Enum):
    """Classification of webhook call failures."""

    TIMEOUT = "TIMEOUT"
    HTTP_ERROR = "HTTP_ERROR"
    MALFORMED = "MALFORMED"
    NETWORK = "NETWORK"


class WebhookDispatchError(Exception):
    """A webhook call failed."""

    def __init__(
        self,
        message: str,
        error_type: WebhookErrorType,
        status_code: int | None = None,
        duration_ms: int | None = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.status_code = status_code
        self.duration_ms = duration_ms


@dataclass
class WebhookResponse:
    """A successful webhook call."""

    status_code: int
    duration_ms: int
    body: Any = None


@dataclass
class TriggerResult:
    """Outcome of one dispatch unit."""

    trigger_type: str
    status: Outcome
    fixture_count: int
    error: str | None = None
    league_id: int | None = None
    fixture_ids: list[int] = field(default_factory=list)
    status_code: int | None = None
    duration_ms: int | None = None
    response: Any = None

    @property
    def ok(self) -> bool:
        return self.status == Outcome.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "trigger_type": self.trigger_type,
            "status": self.status.value,
            "fixture_count": self.fixture_count,
            "error": self.error,
            "league_id": self.league_id,
            "fixture_ids": self.fixture_ids,
            "status_code": self.status_code,
            "duration_ms": self.duration_ms,
        }


@dataclass
class WorkUnit:
    """One webhook call's worth of fixtures."""

    phase: Phase
    fixtures: list[FixtureCandidate]
    league_id: int | None = None
    league_name: str | None = None

    @property
    def fixture_ids(self) -> list[int]:
        return [f.id for f in self.fixtures]


class WebhookClient:
    """
    Outbound JSON POST client for n8n webhooks.

    Use as an async context manager; one client is shared by all phases of
    a run. Every call gets its own timeout, applied to the whole call
    (connect, send and the full response body).
    """

    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or get_settings()
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "WebhookClient":
        self._http_client = httpx.AsyncClient(transport=self._transport)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(transport=self._transport)
        return self._http_client

    async def post(
        self,
        url: str,
        payload: dict[str, Any] | None,
        timeout: float,
        headers: dict[str, str] | None = None,
    ) -> WebhookResponse:
        """
        POST a JSON payload.

        Raises:
            WebhookDispatchError: on timeout, non-2xx, malformed body or
                transport failure
        """
        client = await self._get_client()
        request_headers = headers if headers is not None else webhook_headers(self.settings)
        started = time.monotonic()

        try:
            # httpx timeouts are per read; the deadline bounds the whole call
            async with asyncio.timeout(timeout):
                response = await client.post(
                    url,
                    json=payload,
                    headers=request_headers,
                    timeout=httpx.Timeout(timeout),
                )
        except (httpx.TimeoutException, TimeoutError) as e:
            raise WebhookDispatchError(
                "timeout",
                WebhookErrorType.TIMEOUT,
                duration_ms=_elapsed_ms(started),
            ) from e
        except httpx.HTTPError as e:
            raise WebhookDispatchError(
                str(e) or e.__class__.__name__,
                WebhookErrorType.NETWORK,
                duration_ms=_elapsed_ms(started),
            ) from e

        duration_ms = _elapsed_ms(started)

        if not response.is_success:
            raise WebhookDispatchError(
                f"HTTP {response.status_code}",
                WebhookErrorType.HTTP_ERROR,
                status_code=response.status_code,
                duration_ms=duration_ms,
            )

        body = None
        if response.content.strip():
            try:
                body = response.json()
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise WebhookDispatchError(
                    "malformed response",
                    WebhookErrorType.MALFORMED,
                    status_code=response.status_code,
                    duration_ms=duration_ms,
                ) from e

        return WebhookResponse(
            status_code=response.status_code,
            duration_ms=duration_ms,
            body=body,
        )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PhaseDispatcher:
    """Dispatches one phase's candidates and logs each unit."""

    def __init__(
        self,
        webhook_client: WebhookClient,
        audit_logger: AuditLogger,
        settings: Settings | None = None,
        defaults: AutomationDefaults | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.client = webhook_client
        self.audit = audit_logger
        self.settings = settings or get_settings()
        self.defaults = defaults or get_automation_defaults()
        self.clock = clock

    def build_units(
        self,
        phase: Phase,
        candidates: list[FixtureCandidate] | list[LeagueCandidates],
    ) -> list[WorkUnit]:
        """Split candidates into webhook calls per the phase strategy."""
        strategy = self.defaults.strategy(phase)
        units: list[WorkUnit] = []

        if strategy.unit == BatchingUnit.LEAGUE:
            for league in _as_leagues(candidates):
                units.append(
                    WorkUnit(
                        phase=phase,
                        fixtures=list(league.fixtures),
                        league_id=league.league_id,
                        league_name=league.league_name,
                    )
                )
        else:
            for fixture in _as_fixtures(candidates):
                units.append(
                    WorkUnit(
                        phase=phase,
                        fixtures=[fixture],
                        league_id=fixture.league_id,
                        league_name=fixture.league_name,
                    )
                )

        return units

    def build_payload(self, unit: WorkUnit, run_id: str) -> dict[str, Any]:
        """JSON body for one unit."""
        include_score = unit.phase in SCORED_PHASES
        payload: dict[str, Any] = {
            "trigger_type": unit.phase.value,
            "run_id": run_id,
            "league_id": unit.league_id,
            "league_name": unit.league_name,
            "fixture_count": len(unit.fixtures),
            "fixtures": [f.to_payload(include_score=include_score) for f in unit.fixtures],
        }

        if len(unit.fixtures) == 1 and unit.phase in (Phase.PREDICTION, Phase.ANALYSIS):
            payload["fixture_id"] = unit.fixtures[0].id

        if unit.phase in MODEL_PHASES:
            payload["model"] = self.settings.prediction_model

        return payload

    async def dispatch(
        self,
        phase: Phase,
        candidates: list[FixtureCandidate] | list[LeagueCandidates],
        run_id: str,
        config: RunConfig,
        deadline: float | None = None,
    ) -> list[TriggerResult]:
        """
        Dispatch every unit of a phase and log each one.

        Units not started before ``deadline`` (a time.monotonic() value)
        are skipped and logged as errors; their fixtures stay eligible.
        Each unit claims its fixtures before the call; a unit whose claim is
        refused (another run holds it) is logged as skipped and not called.
        Units beyond max_units_per_run are left for the next run.

        Returns:
            One TriggerResult per unit, in unit order
        """
        strategy = self.defaults.strategy(phase)
        units = self.build_units(phase, candidates)

        if strategy.max_units_per_run is not None and len(units) > strategy.max_units_per_run:
            logger.info(
                "dispatch_units_capped",
                run_id=run_id,
                trigger_type=phase.value,
                units=len(units),
                max_units=strategy.max_units_per_run,
            )
            units = units[: strategy.max_units_per_run]

        url = resolve_webhook_url(phase, config, self.settings)
        semaphore = asyncio.Semaphore(max(1, strategy.max_concurrency))

        async def run_unit(unit: WorkUnit) -> TriggerResult:
            async with semaphore:
                return await self._dispatch_unit(unit, url, run_id, strategy, deadline)

        results = await asyncio.gather(
            *(run_unit(unit) for unit in units), return_exceptions=True
        )

        resolved: list[TriggerResult] = []
        for unit, result in zip(units, results):
            if isinstance(result, BaseException):
                logger.error(
                    "dispatch_unit_failed",
                    run_id=run_id,
                    trigger_type=phase.value,
                    league_id=unit.league_id,
                    error=str(result),
                )
                result = TriggerResult(
                    trigger_type=phase.value,
                    status=Outcome.ERROR,
                    fixture_count=len(unit.fixtures),
                    error=str(result) or result.__class__.__name__,
                    league_id=unit.league_id,
                    fixture_ids=unit.fixture_ids,
                )
            resolved.append(result)

        logger.info(
            "phase_dispatched",
            run_id=run_id,
            trigger_type=phase.value,
            units=len(resolved),
            succeeded=sum(1 for r in resolved if r.ok),
            failed=sum(1 for r in resolved if r.status == Outcome.ERROR),
            skipped=sum(1 for r in resolved if r.status == Outcome.SKIPPED),
        )
        return resolved

    async def _dispatch_unit(
        self,
        unit: WorkUnit,
        url: str,
        run_id: str,
        strategy: DispatchStrategy,
        deadline: float | None,
    ) -> TriggerResult:
        triggered_at = self.clock()
        result = TriggerResult(
            trigger_type=unit.phase.value,
            status=Outcome.ERROR,
            fixture_count=len(unit.fixtures),
            league_id=unit.league_id,
            fixture_ids=unit.fixture_ids,
        )

        if deadline is not None and time.monotonic() >= deadline:
            result.error = BUDGET_EXCEEDED
            logger.warning(
                "dispatch_unit_skipped",
                run_id=run_id,
                trigger_type=unit.phase.value,
                league_id=unit.league_id,
                reason=BUDGET_EXCEEDED,
            )
            await self.audit.record(self._entry(unit, result, run_id, None, triggered_at))
            return result

        stale_before = triggered_at - timedelta(
            seconds=self.defaults.claim_ttl_seconds(unit.phase)
        )
        log_id = await self.audit.claim(
            self._entry(unit, result, run_id, url, triggered_at), stale_before
        )
        if log_id is None:
            result.status = Outcome.SKIPPED
            result.error = ALREADY_CLAIMED
            logger.info(
                "dispatch_unit_skipped",
                run_id=run_id,
                trigger_type=unit.phase.value,
                league_id=unit.league_id,
                fixture_ids=unit.fixture_ids,
                reason=ALREADY_CLAIMED,
            )
            await self.audit.record(self._entry(unit, result, run_id, url, triggered_at))
            return result

        payload = self.build_payload(unit, run_id)
        try:
            response = await self.client.post(url, payload, timeout=strategy.timeout_seconds)
        except WebhookDispatchError as e:
            result.error = str(e)
            result.status_code = e.status_code
            result.duration_ms = e.duration_ms
            logger.warning(
                "webhook_call_failed",
                run_id=run_id,
                trigger_type=unit.phase.value,
                league_id=unit.league_id,
                fixtures=len(unit.fixtures),
                error_type=e.error_type.value,
                error=result.error,
                status_code=e.status_code,
            )
        except Exception as e:
            # Release the claim before the error reaches dispatch()
            result.error = str(e) or e.__class__.__name__
            await self.audit.complete(
                log_id, self._entry(unit, result, run_id, url, triggered_at)
            )
            raise
        else:
            result.status = Outcome.SUCCESS
            result.status_code = response.status_code
            result.duration_ms = response.duration_ms
            result.response = response.body
            logger.info(
                "webhook_call_succeeded",
                run_id=run_id,
                trigger_type=unit.phase.value,
                league_id=unit.league_id,
                fixtures=len(unit.fixtures),
                status_code=response.status_code,
                duration_ms=response.duration_ms,
            )

        await self.audit.complete(log_id, self._entry(unit, result, run_id, url, triggered_at))
        return result

    def _entry(
        self,
        unit: WorkUnit,
        result: TriggerResult,
        run_id: str,
        url: str | None,
        triggered_at: datetime,
    ) -> AuditEntry:
        if result.ok:
            message = _success_message(unit)
        elif result.status == Outcome.SKIPPED:
            message = f"{unit.phase.value} skipped: {ALREADY_CLAIMED}"
        else:
            message = f"{unit.phase.value} trigger failed"

        return AuditEntry(
            run_id=run_id,
            trigger_type=unit.phase.value,
            outcome=result.status,
            triggered_at=triggered_at,
            completed_at=self.clock(),
            message=message,
            error_message=result.error,
            league_id=unit.league_id,
            fixture_ids=unit.fixture_ids,
            webhook_url=url,
            webhook_status_code=result.status_code,
            webhook_duration_ms=result.duration_ms,
            webhook_response=result.response,
            details={"fixtures": [f.to_payload() for f in unit.fixtures]},
        )


def _success_message(unit: WorkUnit) -> str:
    count = len(unit.fixtures)
    if unit.phase in (Phase.PREDICTION, Phase.ANALYSIS) and count == 1:
        fixture = unit.fixtures[0]
        return f"{unit.phase.value} triggered for {fixture.home_team} vs {fixture.away_team}"
    return f"{unit.phase.value} triggered for {count} fixture(s) in {unit.league_name}"


def _as_leagues(
    candidates: list[FixtureCandidate] | list[LeagueCandidates],
) -> list[LeagueCandidates]:
    if candidates and isinstance(candidates[0], FixtureCandidate):
        return group_by_league(candidates)
    return list(candidates)


def _as_fixtures(
    candidates: list[FixtureCandidate] | list[LeagueCandidates],
) -> list[FixtureCandidate]:
    fixtures: list[FixtureCandidate] = []
    for candidate in candidates:
        if isinstance(candidate, LeagueCandidates):
            fixtures.extend(candidate.fixtures)
        else:
            fixtures.append(candidate)
    return fixtures
