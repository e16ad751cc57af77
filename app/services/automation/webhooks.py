"""Webhook URL resolution and validation.

Per-phase URLs resolve in order: admin override stored in
automation_config, environment, built-in default. The shared secret is
environment-only and never stored in the database.
"""

import ipaddress
from urllib.parse import urlparse

from app.config import Settings, get_settings
from app.config.automation import Phase
from app.services.automation.config_store import RunConfig

# Local n8n defaults, used when nothing else is configured
DEFAULT_WEBHOOKS: dict[Phase, str] = {
    Phase.PRE_MATCH: "http://localhost:5678/webhook/trigger/pre-match",
    Phase.PREDICTION: "http://localhost:5678/webhook/football-prediction",
    Phase.LIVE: "http://localhost:5678/webhook/trigger/live",
    Phase.POST_MATCH: "http://localhost:5678/webhook/trigger/post-match",
    Phase.ANALYSIS: "http://localhost:5678/webhook/post-match-analysis",
}

WEBHOOK_URL_FIELDS: dict[Phase, str] = {
    phase: f"{phase.key}_webhook_url" for phase in Phase
}

BLOCKED_HOSTNAMES = ("metadata", "metadata.google.internal", "instance-data")
LOCALHOST_NAMES = ("localhost", "127.0.0.1", "::1", "0.0.0.0")


class InvalidWebhookURL(ValueError):
    """A webhook URL was rejected."""


def resolve_webhook_url(
    phase: Phase,
    config: RunConfig | None = None,
    settings: Settings | None = None,
) -> str:
    """Get the URL a phase dispatches to."""
    settings = settings or get_settings()

    if config is not None and config.webhook_urls.get(phase):
        return config.webhook_urls[phase]

    if phase == Phase.PREDICTION and settings.n8n_prediction_webhook:
        return settings.n8n_prediction_webhook
    if phase == Phase.ANALYSIS and settings.n8n_analysis_webhook:
        return settings.n8n_analysis_webhook
    if (
        phase in (Phase.PRE_MATCH, Phase.LIVE, Phase.POST_MATCH)
        and settings.n8n_webhook_base_url
    ):
        return f"{settings.n8n_webhook_base_url.rstrip('/')}/trigger/{phase.value}"

    return DEFAULT_WEBHOOKS[phase]


def webhook_headers(settings: Settings | None = None) -> dict[str, str]:
    """Headers for outbound webhook calls."""
    settings = settings or get_settings()
    headers = {
        "Content-Type": "application/json",
        "Accept": "application/json",
    }
    if settings.n8n_webhook_secret:
        headers["X-Webhook-Secret"] = settings.n8n_webhook_secret
    return headers


def internal_url_reason(url: str) -> str | None:
    """
    Check whether a URL points at an internal service.

    Returns the rejection reason, or None if the URL is acceptable.
    """
    try:
        parsed = urlparse(url)
    except ValueError:
        return "Invalid URL"

    hostname = (parsed.hostname or "").lower()
    if not hostname:
        return "Invalid URL"

    if hostname in LOCALHOST_NAMES:
        return "Localhost addresses are not allowed"

    try:
        address = ipaddress.ip_address(hostname)
    except ValueError:
        address = None

    if address is not None:
        if address.is_loopback:
            return "Localhost addresses are not allowed"
        if address.is_link_local:
            return "Link-local/metadata IP (169.254.x.x) not allowed"
        if address.is_private:
            return f"Private IP range ({hostname}) not allowed"

    if any(blocked in hostname for blocked in BLOCKED_HOSTNAMES):
        return "Cloud metadata endpoints not allowed"

    return None


def validate_webhook_url(url: str) -> str:
    """
    Validate an admin-supplied webhook URL.

    Raises:
        InvalidWebhookURL: on a bad scheme or an internal target
    """
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise InvalidWebhookURL("Invalid URL protocol. Must be http or https.")

    reason = internal_url_reason(url)
    if reason:
        raise InvalidWebhookURL(f"Invalid webhook URL: {reason}")
    return url
