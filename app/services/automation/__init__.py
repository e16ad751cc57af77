"""Match lifecycle automation engine."""

from app.services.automation.audit import AuditEntry, AuditLogger, LogFilters
from app.services.automation.config_store import (
    AutomationConfigNotFound,
    AutomationConfigStore,
    RunConfig,
)
from app.services.automation.dispatcher import (
    PhaseDispatcher,
    TriggerResult,
    WebhookClient,
    WebhookDispatchError,
)
from app.services.automation.orchestrator import (
    AutomationOrchestrator,
    RunReport,
    RunState,
)
from app.services.automation.phase_estimator import PhaseEstimate, estimate_phase
from app.services.automation.run_lock import RunLock
from app.services.automation.windows import WindowEvaluator

__all__ = [
    "AuditEntry",
    "AuditLogger",
    "LogFilters",
    "AutomationConfigNotFound",
    "AutomationConfigStore",
    "RunConfig",
    "PhaseDispatcher",
    "TriggerResult",
    "WebhookClient",
    "WebhookDispatchError",
    "AutomationOrchestrator",
    "RunReport",
    "RunState",
    "PhaseEstimate",
    "estimate_phase",
    "RunLock",
    "WindowEvaluator",
]
