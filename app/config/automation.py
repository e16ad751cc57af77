"""Automation engine configuration.

Defines the lifecycle phases, their window tolerances, fixture status
families and per-phase dispatch strategy. Values are read from the
``automation`` section of defaults.yaml with in-code fallbacks.

Per-phase enable flags and thresholds are NOT here: they live in the
automation_config table and are edited by admins at runtime.
"""

from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from typing import Any

from app.config.settings import get_settings


class Phase(str, Enum):
    """Fixture lifecycle phases, in kickoff order."""
    PRE_MATCH = "pre-match"
    PREDICTION = "prediction"
    LIVE = "live"
    POST_MATCH = "post-match"
    ANALYSIS = "analysis"

    @property
    def key(self) -> str:
        """Snake-case key used in config columns and run summaries."""
        return self.value.replace("-", "_")


RUN_SUMMARY = "run-summary"


class Outcome(str, Enum):
    """Audit log outcomes."""
    PENDING = "pending"  # claimed, webhook call in flight
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"
    NO_ACTION = "no-action"


class RunStatus(str, Enum):
    """Values of automation_config.last_run_status."""
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


class BatchingUnit(str, Enum):
    """What one webhook call covers."""
    LEAGUE = "league"    # one call per league, batching its fixtures
    FIXTURE = "fixture"  # one call per fixture


@dataclass(frozen=True)
class PhaseWindow:
    """Tolerance around a phase threshold."""
    tolerance_minutes: int
    offset_minutes: int = 0
    require_prediction: bool = False


@dataclass(frozen=True)
class DispatchStrategy:
    """How a phase turns candidates into webhook calls."""
    unit: BatchingUnit
    timeout_seconds: float
    max_concurrency: int = 5
    max_units_per_run: int | None = None
    budget: str = "light"


@dataclass(frozen=True)
class StatusFamilies:
    """API-Football short status codes grouped by lifecycle state."""
    not_started: frozenset[str] = frozenset({"NS", "TBD"})
    live: frozenset[str] = frozenset({"1H", "HT", "2H", "ET", "BT", "P", "INT", "LIVE"})
    finished: frozenset[str] = frozenset({"FT", "AET", "PEN"})
    postponed: frozenset[str] = frozenset({"PST", "SUSP", "CANC", "ABD", "AWD", "WO"})

    def is_live(self, status: str) -> bool:
        return status in self.live

    def is_finished(self, status: str) -> bool:
        return status in self.finished

    def is_not_started(self, status: str) -> bool:
        return status in self.not_started

    def is_postponed(self, status: str) -> bool:
        return status in self.postponed


def _default_windows() -> dict[Phase, PhaseWindow]:
    return {
        Phase.PRE_MATCH: PhaseWindow(tolerance_minutes=5),
        Phase.PREDICTION: PhaseWindow(tolerance_minutes=5),
        Phase.POST_MATCH: PhaseWindow(tolerance_minutes=20),
        Phase.ANALYSIS: PhaseWindow(
            tolerance_minutes=20, offset_minutes=15, require_prediction=True
        ),
    }


def _default_strategies() -> dict[Phase, DispatchStrategy]:
    return {
        Phase.PRE_MATCH: DispatchStrategy(BatchingUnit.LEAGUE, timeout_seconds=30),
        Phase.PREDICTION: DispatchStrategy(
            BatchingUnit.FIXTURE,
            timeout_seconds=300,
            max_concurrency=3,
            max_units_per_run=9,
            budget="heavy",
        ),
        Phase.LIVE: DispatchStrategy(BatchingUnit.LEAGUE, timeout_seconds=30),
        Phase.POST_MATCH: DispatchStrategy(BatchingUnit.LEAGUE, timeout_seconds=30),
        Phase.ANALYSIS: DispatchStrategy(
            BatchingUnit.FIXTURE,
            timeout_seconds=300,
            max_concurrency=3,
            max_units_per_run=9,
            budget="heavy",
        ),
    }


@dataclass(frozen=True)
class AutomationDefaults:
    """Complete static automation configuration."""

    cadence_minutes: int = 5
    windows: dict[Phase, PhaseWindow] = field(default_factory=_default_windows)
    strategies: dict[Phase, DispatchStrategy] = field(default_factory=_default_strategies)
    statuses: StatusFamilies = field(default_factory=StatusFamilies)
    light_budget_seconds: float = 120.0
    heavy_budget_seconds: float = 840.0
    live_refresh_timeout_seconds: float = 30.0
    claim_grace_seconds: float = 60.0
    run_lock_ttl_seconds: int = 1260
    run_lock_key: str = "lock:automation:run"

    def window(self, phase: Phase) -> PhaseWindow:
        """Get the window for a phase (live has no time window)."""
        return self.windows.get(phase, PhaseWindow(tolerance_minutes=0))

    def strategy(self, phase: Phase) -> DispatchStrategy:
        return self.strategies[phase]

    def budget_seconds(self, phase: Phase) -> float:
        """Wall-clock budget for a phase, measured from run start."""
        if self.strategy(phase).budget == "heavy":
            return self.heavy_budget_seconds
        return self.light_budget_seconds

    def claim_ttl_seconds(self, phase: Phase) -> float:
        """
        How long a pending claim blocks its fixtures.

        A claim older than its call timeout plus grace belongs to a run that
        died mid-call; its fixtures become eligible again.
        """
        return self.strategy(phase).timeout_seconds + self.claim_grace_seconds

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AutomationDefaults":
        """Build from the ``automation`` section of defaults.yaml."""
        fallback = cls()

        windows = dict(fallback.windows)
        for name, raw in (data.get("windows") or {}).items():
            phase = _phase_from_key(name)
            windows[phase] = PhaseWindow(
                tolerance_minutes=int(raw.get("tolerance_minutes", 0)),
                offset_minutes=int(raw.get("offset_minutes", 0)),
                require_prediction=bool(raw.get("require_prediction", False)),
            )

        strategies = dict(fallback.strategies)
        for name, raw in (data.get("dispatch") or {}).items():
            phase = _phase_from_key(name)
            max_units = raw.get("max_units_per_run")
            strategies[phase] = DispatchStrategy(
                unit=BatchingUnit(raw.get("unit", "league")),
                timeout_seconds=float(raw.get("timeout_seconds", 30)),
                max_concurrency=int(raw.get("max_concurrency", 5)),
                max_units_per_run=int(max_units) if max_units is not None else None,
                budget=raw.get("budget", "light"),
            )

        raw_statuses = data.get("statuses") or {}
        statuses = StatusFamilies(
            **{
                family: frozenset(str(code) for code in codes)
                for family, codes in raw_statuses.items()
                if family in ("not_started", "live", "finished", "postponed")
            }
        )

        budgets = data.get("budgets") or {}
        live_refresh = data.get("live_refresh") or {}
        run_lock = data.get("run_lock") or {}
        claims = data.get("claims") or {}

        return cls(
            cadence_minutes=int(data.get("cadence_minutes", fallback.cadence_minutes)),
            windows=windows,
            strategies=strategies,
            statuses=statuses,
            light_budget_seconds=float(
                budgets.get("light_seconds", fallback.light_budget_seconds)
            ),
            heavy_budget_seconds=float(
                budgets.get("heavy_seconds", fallback.heavy_budget_seconds)
            ),
            live_refresh_timeout_seconds=float(
                live_refresh.get("timeout_seconds", fallback.live_refresh_timeout_seconds)
            ),
            claim_grace_seconds=float(
                claims.get("grace_seconds", fallback.claim_grace_seconds)
            ),
            run_lock_ttl_seconds=int(run_lock.get("ttl_seconds", fallback.run_lock_ttl_seconds)),
            run_lock_key=run_lock.get("key", fallback.run_lock_key),
        )


def _phase_from_key(key: str) -> Phase:
    return Phase(key.replace("_", "-"))


@lru_cache
def get_automation_defaults() -> AutomationDefaults:
    """Get the automation defaults loaded from defaults.yaml."""
    settings = get_settings()
    return AutomationDefaults.from_dict(
        settings.load_defaults_config().get("automation", {})
    )
