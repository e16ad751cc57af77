"""Unit tests for the automation run orchestrator.

CRITICAL TESTS:
- Running twice never dispatches the same (fixture, phase) twice, even
  when the runs overlap
- A run that fails outside its phases is left marked as errored
- An empty window writes exactly one no-action entry and no webhook call
- A missing config aborts the run before any phase is evaluated
- One failing phase never stops the others
"""

import asyncio
from dataclasses import replace
from datetime import timedelta

import httpx
import pytest
from sqlalchemy import select

from app.config.automation import (
    RUN_SUMMARY,
    AutomationDefaults,
    Outcome,
    Phase,
    RunStatus,
)
from app.models.domain import AutomationConfig, AutomationLog, AutomationLogFixture
from app.services.automation.audit import AuditLogger
from app.services.automation.config_store import AutomationConfigStore
from app.services.automation.dispatcher import BUDGET_EXCEEDED, WebhookClient
from app.services.automation.orchestrator import AutomationOrchestrator, RunState
from app.services.automation.windows import WindowEvaluator


async def run_once(session_factory, settings, n8n, now, defaults=None, run_lock=None):
    async with WebhookClient(settings, transport=n8n.transport) as client:
        orchestrator = AutomationOrchestrator(
            session_factory,
            client,
            settings=settings,
            defaults=defaults or AutomationDefaults(),
            run_lock=run_lock,
            clock=lambda: now,
        )
        return await orchestrator.run()


async def logs(session_factory, **filters) -> list[AutomationLog]:
    query = select(AutomationLog).order_by(AutomationLog.id)
    for column, value in filters.items():
        query = query.where(getattr(AutomationLog, column) == value)
    async with session_factory() as session:
        return list((await session.execute(query)).scalars().all())


class TestRunLifecycle:
    """Test terminal states and config status writes."""

    @pytest.mark.asyncio
    async def test_missing_config_aborts(self, session_factory, settings, n8n, now):
        report = await run_once(session_factory, settings, n8n, now)

        assert report.state == RunState.ABORTED
        assert report.error == "Automation config not found"
        assert n8n.requests == []

        entries = await logs(session_factory)
        assert [(e.trigger_type, e.outcome) for e in entries] == [(RUN_SUMMARY, "error")]

    @pytest.mark.asyncio
    async def test_disabled_run_is_skipped(self, seed, session_factory, settings, n8n, now):
        await seed.config(is_enabled=False)
        league = await seed.league()
        await seed.fixture(league, now + timedelta(minutes=30))

        report = await run_once(session_factory, settings, n8n, now)

        assert report.state == RunState.SKIPPED
        assert report.message == "Automation is disabled"
        assert n8n.requests == []
        entries = await logs(session_factory)
        assert [(e.trigger_type, e.outcome) for e in entries] == [(RUN_SUMMARY, "skipped")]

    @pytest.mark.asyncio
    async def test_run_lock_held_elsewhere_skips(
        self, seed, session_factory, settings, n8n, now
    ):
        await seed.config()

        class HeldLock:
            released = False

            async def acquire(self):
                return False

            async def release(self):
                self.released = True

        report = await run_once(session_factory, settings, n8n, now, run_lock=HeldLock())

        assert report.state == RunState.SKIPPED
        assert report.message == "Another automation run is in progress"

    @pytest.mark.asyncio
    async def test_successful_run_updates_config(
        self, seed, session_factory, settings, n8n, now
    ):
        await seed.config()

        report = await run_once(session_factory, settings, n8n, now)

        assert report.state == RunState.DONE
        assert report.status == RunStatus.SUCCESS
        config = await AutomationConfigStore(session_factory).get()
        assert config.last_run_status == "success"
        assert config.last_run_at.replace(tzinfo=None) == now.replace(tzinfo=None)

    @pytest.mark.asyncio
    async def test_lock_released_after_run(self, seed, session_factory, settings, n8n, now):
        await seed.config()

        class FreeLock:
            released = False

            async def acquire(self):
                return True

            async def release(self):
                self.released = True

        lock = FreeLock()
        await run_once(session_factory, settings, n8n, now, run_lock=lock)

        assert lock.released


class TestPhaseExecution:
    """Test the evaluate -> dispatch -> log path across phases."""

    @pytest.mark.asyncio
    async def test_empty_windows_log_no_action(self, seed, session_factory, settings, n8n, now):
        await seed.config()

        report = await run_once(session_factory, settings, n8n, now)

        no_action = await logs(session_factory, outcome="no-action")
        assert sorted(e.trigger_type for e in no_action) == sorted(p.value for p in Phase)
        assert n8n.calls_to("n8n.test") == []
        assert all(s.checked == 0 and s.triggered == 0 for s in report.summary.values())

    @pytest.mark.asyncio
    async def test_disabled_phase_is_not_evaluated(
        self, seed, session_factory, settings, n8n, now
    ):
        await seed.config(pre_match_enabled=False)
        league = await seed.league()
        await seed.fixture(league, now + timedelta(minutes=30))

        report = await run_once(session_factory, settings, n8n, now)

        assert report.summary[Phase.PRE_MATCH].skipped
        assert n8n.calls_to("/trigger/pre-match") == []
        assert await logs(session_factory, trigger_type="pre-match") == []

    @pytest.mark.asyncio
    async def test_dispatches_every_phase(self, seed, session_factory, settings, n8n, now):
        await seed.config()
        league = await seed.league()
        await seed.fixture(league, now + timedelta(minutes=33))  # pre-match only
        await seed.fixture(league, now + timedelta(minutes=22))  # prediction only
        await seed.fixture(league, now - timedelta(minutes=30), status="1H")
        await seed.fixture(league, now - timedelta(hours=4, minutes=5), status="FT")
        analysed = await seed.fixture(
            league, now - timedelta(hours=4, minutes=25), status="FT", goals=(1, 0)
        )
        await seed.prediction(analysed)

        report = await run_once(session_factory, settings, n8n, now)

        assert report.status == RunStatus.SUCCESS
        summary = report.summary_dict()
        assert summary["pre_match"] == {"checked": 1, "triggered": 1, "errors": 0}
        assert summary["prediction"] == {"checked": 1, "triggered": 1, "errors": 0}
        assert summary["live"] == {"checked": 1, "triggered": 1, "errors": 0}
        assert summary["post_match"] == {"checked": 1, "triggered": 1, "errors": 0}
        assert summary["analysis"] == {"checked": 1, "triggered": 1, "errors": 0}

        assert len(n8n.calls_to("/trigger/pre-match")) == 1
        assert len(n8n.calls_to("football-prediction")) == 1
        assert len(n8n.calls_to("/trigger/live")) == 1
        assert len(n8n.calls_to("/trigger/post-match")) == 1
        assert len(n8n.calls_to("post-match-analysis")) == 1

    @pytest.mark.asyncio
    async def test_live_status_refreshed_before_live_query(
        self, seed, session_factory, settings, n8n, now
    ):
        await seed.config()
        league = await seed.league()

        await run_once(session_factory, settings, n8n, now)

        refresh = n8n.calls_to("site.test/api/data/refresh/fixtures")
        assert len(refresh) == 1
        assert refresh[0].url.params["league_id"] == str(league.id)
        assert refresh[0].url.params["mode"] == "live"
        assert refresh[0].headers["x-api-key"] == "test-admin-key"

    @pytest.mark.asyncio
    async def test_live_refresh_failure_does_not_fail_phase(
        self, seed, session_factory, settings, n8n, now
    ):
        await seed.config()
        league = await seed.league()
        await seed.fixture(league, now - timedelta(minutes=30), status="2H")

        def refresh_down(request):
            raise httpx.ConnectError("refused", request=request)

        n8n.respond("site.test", refresh_down)

        report = await run_once(session_factory, settings, n8n, now)

        assert report.summary[Phase.LIVE].triggered == 1
        assert report.status == RunStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_running_twice_is_idempotent(
        self, seed, session_factory, settings, n8n, now
    ):
        await seed.config()
        league = await seed.league()
        pre_match = await seed.fixture(league, now + timedelta(minutes=30))
        prediction = await seed.fixture(league, now + timedelta(minutes=25))
        await seed.fixture(league, now - timedelta(minutes=30), status="1H")

        await run_once(session_factory, settings, n8n, now)
        second = await run_once(session_factory, settings, n8n, now + timedelta(seconds=30))

        assert second.summary[Phase.PRE_MATCH].checked == 0
        assert second.summary[Phase.PREDICTION].checked == 0
        assert second.summary[Phase.LIVE].checked == 0

        for fixture in (pre_match, prediction):
            for phase in (Phase.PRE_MATCH, Phase.PREDICTION):
                successes = [
                    e
                    for e in await logs(session_factory, trigger_type=phase.value, outcome="success")
                    if fixture.id in e.fixture_ids
                ]
                assert len(successes) <= 1

    @pytest.mark.asyncio
    async def test_overlapping_runs_dispatch_once(
        self, seed, session_factory, settings, n8n, now
    ):
        """A second run starting while the first waits on n8n must not re-send."""
        await seed.config()
        league = await seed.league()
        fixture = await seed.fixture(league, now + timedelta(minutes=22))

        async def slow_prediction(request):
            await asyncio.sleep(0.5)
            return httpx.Response(200, json={"ok": True})

        n8n.respond("football-prediction", slow_prediction)

        async def delayed_run():
            await asyncio.sleep(0.2)
            return await run_once(session_factory, settings, n8n, now + timedelta(seconds=10))

        first, second = await asyncio.gather(
            run_once(session_factory, settings, n8n, now), delayed_run()
        )

        assert len(n8n.calls_to("football-prediction")) == 1
        runs = (first.summary[Phase.PREDICTION], second.summary[Phase.PREDICTION])
        assert sum(s.triggered for s in runs) == 1
        assert sum(s.errors for s in runs) == 0

        async with session_factory() as session:
            claims = (
                await session.execute(
                    select(AutomationLogFixture).where(
                        AutomationLogFixture.fixture_id == fixture.id,
                        AutomationLogFixture.trigger_type == Phase.PREDICTION.value,
                        AutomationLogFixture.outcome == Outcome.SUCCESS.value,
                    )
                )
            ).scalars().all()
        assert len(claims) == 1

    @pytest.mark.asyncio
    async def test_failed_dispatch_is_retried_next_run(
        self, seed, session_factory, settings, n8n, now
    ):
        await seed.config()
        league = await seed.league()
        await seed.fixture(league, now + timedelta(minutes=30))
        n8n.respond("/trigger/pre-match", lambda r: httpx.Response(502))

        first = await run_once(session_factory, settings, n8n, now)
        n8n.responders.clear()
        second = await run_once(session_factory, settings, n8n, now + timedelta(minutes=2))

        assert first.summary[Phase.PRE_MATCH].errors == 1
        assert second.summary[Phase.PRE_MATCH].triggered == 1


class TestAggregation:
    """Test summary counters and overall status."""

    @pytest.mark.asyncio
    async def test_phase_error_marks_run_error(self, seed, session_factory, settings, n8n, now):
        """pre-match: 2 ok, prediction: 1 error -> run error."""
        await seed.config()
        serie_b = await seed.league("Serie B")
        ligue_2 = await seed.league("Ligue 2")
        await seed.fixture(serie_b, now + timedelta(minutes=31))
        await seed.fixture(ligue_2, now + timedelta(minutes=31), home="Metz", away="Caen")
        await seed.fixture(serie_b, now + timedelta(minutes=21), home="Cesena", away="Modena")
        n8n.respond("football-prediction", lambda r: httpx.Response(500))

        report = await run_once(session_factory, settings, n8n, now)

        summary = report.summary_dict()
        assert summary["pre_match"] == {"checked": 2, "triggered": 2, "errors": 0}
        assert summary["prediction"] == {"checked": 1, "triggered": 0, "errors": 1}
        assert report.status == RunStatus.ERROR

        config = await AutomationConfigStore(session_factory).get()
        assert config.last_run_status == "error"

        run_summary = await logs(session_factory, trigger_type=RUN_SUMMARY)
        assert len(run_summary) == 1
        assert run_summary[0].outcome == "error"
        assert run_summary[0].details["summary"]["prediction"]["errors"] == 1

        # Successful phase entries stand
        assert len(await logs(session_factory, trigger_type="pre-match", outcome="success")) == 2

    @pytest.mark.asyncio
    async def test_evaluation_failure_is_isolated(
        self, seed, session_factory, settings, n8n, now, monkeypatch
    ):
        await seed.config()
        league = await seed.league()
        await seed.fixture(league, now + timedelta(minutes=30))

        original = WindowEvaluator.evaluate

        async def broken_for_live(self, phase, when, config):
            if phase == Phase.LIVE:
                raise RuntimeError("live query exploded")
            return await original(self, phase, when, config)

        monkeypatch.setattr(WindowEvaluator, "evaluate", broken_for_live)

        report = await run_once(session_factory, settings, n8n, now)

        assert report.summary[Phase.LIVE].errors == 1
        assert report.summary[Phase.PRE_MATCH].triggered == 1
        assert report.status == RunStatus.ERROR
        live_errors = await logs(session_factory, trigger_type="live", outcome="error")
        assert live_errors[0].error_message == "live query exploded"

    @pytest.mark.asyncio
    async def test_budget_exceeded_skips_units(
        self, seed, session_factory, settings, n8n, now
    ):
        await seed.config()
        league = await seed.league()
        await seed.fixture(league, now + timedelta(minutes=30))
        defaults = replace(AutomationDefaults(), light_budget_seconds=0, heavy_budget_seconds=0)

        report = await run_once(session_factory, settings, n8n, now, defaults=defaults)

        assert report.summary[Phase.PRE_MATCH].errors == 1
        assert report.status == RunStatus.ERROR
        assert n8n.calls_to("/trigger/pre-match") == []
        errors = await logs(session_factory, trigger_type="pre-match", outcome="error")
        assert errors[0].error_message == BUDGET_EXCEEDED

    @pytest.mark.asyncio
    async def test_report_serialises(self, seed, session_factory, settings, n8n, now):
        await seed.config()

        report = await run_once(session_factory, settings, n8n, now)
        data = report.to_dict()

        assert data["state"] == "done"
        assert data["status"] == "success"
        assert set(data["summary"]) == {p.key for p in Phase}


class TestConfigRow:
    """Test the running status written at run start."""

    @pytest.mark.asyncio
    async def test_running_status_written_before_phases(
        self, seed, session_factory, settings, n8n, now, monkeypatch
    ):
        await seed.config()
        seen = []
        original = WindowEvaluator.evaluate

        async def spy(self, phase, when, config):
            async with session_factory() as session:
                row = (await session.execute(select(AutomationConfig))).scalar_one()
                seen.append(row.last_run_status)
            return await original(self, phase, when, config)

        monkeypatch.setattr(WindowEvaluator, "evaluate", spy)

        await run_once(session_factory, settings, n8n, now)

        assert seen and set(seen) == {"running"}


class TestRunFailure:
    """Test that a failure outside the phases never leaves the run 'running'."""

    @pytest.mark.asyncio
    async def test_final_status_write_failure(
        self, seed, session_factory, settings, n8n, now, monkeypatch
    ):
        await seed.config()
        original = AutomationConfigStore.update

        async def flaky_update(self, **changes):
            if changes.get("last_run_status") == RunStatus.SUCCESS.value:
                raise RuntimeError("database went away")
            return await original(self, **changes)

        monkeypatch.setattr(AutomationConfigStore, "update", flaky_update)

        with pytest.raises(RuntimeError, match="database went away"):
            await run_once(session_factory, settings, n8n, now)

        config = await AutomationConfigStore(session_factory).get()
        assert config.last_run_status == "error"
        run_summary = await logs(session_factory, trigger_type=RUN_SUMMARY)
        assert [(e.outcome, e.error_message) for e in run_summary] == [
            ("error", "database went away")
        ]

    @pytest.mark.asyncio
    async def test_run_summary_write_failure(
        self, seed, session_factory, settings, n8n, now, monkeypatch
    ):
        await seed.config()
        original = AuditLogger.log_event

        async def flaky_log_event(self, run_id, trigger_type, outcome, *args, **kwargs):
            if trigger_type == RUN_SUMMARY and outcome == Outcome.SUCCESS:
                raise RuntimeError("audit insert failed")
            return await original(self, run_id, trigger_type, outcome, *args, **kwargs)

        monkeypatch.setattr(AuditLogger, "log_event", flaky_log_event)

        with pytest.raises(RuntimeError, match="audit insert failed"):
            await run_once(session_factory, settings, n8n, now)

        config = await AutomationConfigStore(session_factory).get()
        assert config.last_run_status == "error"
        run_summary = await logs(session_factory, trigger_type=RUN_SUMMARY)
        assert [e.outcome for e in run_summary] == ["error"]

    @pytest.mark.asyncio
    async def test_lock_released_after_failure(
        self, seed, session_factory, settings, n8n, now, monkeypatch
    ):
        await seed.config()

        class FreeLock:
            released = False

            async def acquire(self):
                return True

            async def release(self):
                self.released = True

        async def broken_update(self, **changes):
            raise RuntimeError("unreachable database")

        monkeypatch.setattr(AutomationConfigStore, "update", broken_update)
        lock = FreeLock()

        with pytest.raises(RuntimeError, match="unreachable database"):
            await run_once(session_factory, settings, n8n, now, run_lock=lock)

        assert lock.released
        run_summary = await logs(session_factory, trigger_type=RUN_SUMMARY)
        assert [e.outcome for e in run_summary] == ["error"]
