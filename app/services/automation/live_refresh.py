"""Live fixture status refresh.

Before the live phase is evaluated, every active league's fixture statuses
are refreshed through the site's data-refresh endpoint so the live query
sees current statuses. Each league call is bounded by its own timeout and
failures are logged and ignored: stale data is better than no live phase.
"""

import asyncio

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, get_settings
from app.models.domain import League
from app.services.automation.dispatcher import WebhookClient, WebhookDispatchError

logger = structlog.get_logger(__name__)


def refresh_url(site_url: str, league_id: int) -> str:
    return (
        f"{site_url.rstrip('/')}/api/data/refresh/fixtures"
        f"?mode=live&stream=false&league_id={league_id}"
    )


async def active_league_ids(session: AsyncSession) -> list[int]:
    result = await session.execute(
        select(League.id).where(League.is_active == True).order_by(League.id)
    )
    return list(result.scalars().all())


async def refresh_live_fixtures(
    client: WebhookClient,
    league_ids: list[int],
    timeout_seconds: float,
    settings: Settings | None = None,
) -> dict[str, int]:
    """
    Refresh live fixture statuses for the given leagues concurrently.

    Returns:
        Counts of refreshed and failed leagues
    """
    settings = settings or get_settings()
    headers = {
        "Content-Type": "application/json",
        "x-api-key": settings.admin_api_key,
    }

    async def refresh_one(league_id: int) -> bool:
        try:
            await client.post(
                refresh_url(settings.site_url, league_id),
                None,
                timeout=timeout_seconds,
                headers=headers,
            )
            return True
        except WebhookDispatchError as e:
            logger.warning(
                "live_refresh_failed",
                league_id=league_id,
                error_type=e.error_type.value,
                error=str(e),
            )
            return False

    outcomes = await asyncio.gather(*(refresh_one(league_id) for league_id in league_ids))
    stats = {
        "leagues": len(league_ids),
        "refreshed": sum(1 for ok in outcomes if ok),
        "failed": sum(1 for ok in outcomes if not ok),
    }
    logger.info("live_refresh_complete", **stats)
    return stats
