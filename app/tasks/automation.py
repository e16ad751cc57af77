"""Scheduled automation run.

Celery beat fires this every five minutes. Each invocation is one
automation run: evaluate every phase window, dispatch the n8n webhooks
and write the audit trail.
"""

import asyncio
from typing import Any

import redis.asyncio as redis
import structlog

from app.config import get_settings
from app.config.automation import get_automation_defaults
from app.models.base import get_task_session_factory
from app.services.automation import AutomationOrchestrator, RunLock, WebhookClient
from app.tasks import celery_app

logger = structlog.get_logger(__name__)


@celery_app.task(name="app.tasks.automation.run_automation", bind=True)
def run_automation(self) -> dict[str, Any]:
    """
    Scheduled: every 5 minutes

    Process:
    1. Load the automation config (abort if missing, skip if disabled)
    2. Take the best-effort run lock
    3. Evaluate the five phase windows concurrently
    4. Dispatch webhooks per phase strategy, audit each call
    5. Write the run summary and last-run status
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(_run_automation_async(self))
    finally:
        loop.close()


async def _run_automation_async(task) -> dict[str, Any]:
    """Async implementation of the automation run."""
    settings = get_settings()
    defaults = get_automation_defaults()
    redis_client = redis.from_url(settings.redis_url)

    try:
        async with get_task_session_factory() as session_factory:
            async with WebhookClient(settings) as client:
                orchestrator = AutomationOrchestrator(
                    session_factory,
                    client,
                    settings=settings,
                    defaults=defaults,
                    run_lock=RunLock(
                        redis_client,
                        key=defaults.run_lock_key,
                        ttl_seconds=defaults.run_lock_ttl_seconds,
                    ),
                )
                report = await orchestrator.run()
    except Exception as e:
        logger.error(
            "automation_task_failed",
            error=str(e),
            task_id=task.request.id,
        )
        raise
    finally:
        await redis_client.aclose()

    logger.info(
        "automation_task_complete",
        run_id=report.run_id,
        state=report.state.value,
        status=report.status.value if report.status else None,
        duration_ms=report.duration_ms,
    )
    return report.to_dict()
