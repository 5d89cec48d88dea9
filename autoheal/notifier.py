"""
Notification fan-out for run reports.

Sends notifications to Slack, PagerDuty, and a custom webhook.
All methods are fire-and-forget: errors are logged, never raised.
"""

import json
from datetime import datetime, timezone
from typing import Optional

import httpx
import structlog
from jinja2 import Template

from .config import settings

logger = structlog.get_logger(__name__)

SEVERITY_ORDER = {"info": 0, "success": 0, "warning": 2, "critical": 4}
SLACK_COLORS = {
    "info": "#439fe0",
    "success": "#36a64f",
    "warning": "#ff9900",
    "critical": "#ff0000",
}
PAGERDUTY_SEVERITY = {
    "info": "info",
    "success": "info",
    "warning": "warning",
    "critical": "critical",
}


async def send_slack(message: str, severity: str = "info", title: Optional[str] = None) -> bool:
    """Post a message to Slack via webhook."""
    if not settings.slack_webhook_url:
        logger.debug("slack_webhook_url not configured, skipping")
        return False

    color = SLACK_COLORS.get(severity, SLACK_COLORS["info"])
    payload = {
        "channel": settings.notification_channel,
        "attachments": [
            {
                "color": color,
                "title": title or f"Auto-Heal [{severity.upper()}]",
                "text": message,
                "ts": int(datetime.now(timezone.utc).timestamp()),
            }
        ],
    }

    try:
        async with httpx.AsyncClient(timeout=10) as client:
            resp = await client.post(settings.slack_webhook_url, json=payload)
            resp.raise_for_status()
            logger.info("slack_notification_sent", severity=severity)
            return True
    except Exception as exc:
        logger.error("slack_notification_failed", error=str(exc))
        return False


async def send_pagerduty(message: str, severity: str = "critical", title: Optional[str] = None) -> bool:
    """Create an event in PagerDuty via Events API v2.

    Args:
        message: Event details.
        severity: Maps to PagerDuty severity.
        title: Event summary; defaults to the message.

    Returns:
        True if event was accepted, False otherwise.
    """
    if not settings.pagerduty_integration_key:
        logger.debug("pagerduty_integration_key not configured, skipping")
        return False

    pd_severity = PAGERDUTY_SEVERITY.get(severity, "warning")
    payload = {
        "routing_key": settings.pagerduty_integration_key,
        "event_action": "trigger",
        "payload": {
            "summary": (title or message)[:1024],
            "severity": pd_severity,
            "source": "autoheal",
            "component": "kubernetes",
            "group": "auto-heal",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "custom_details": {"message": message},
        },
    }

    try:
        async with httpx.AsyncClient(timeout=10) as client:
            resp = await client.post(
                "https://events.pagerduty.com/v2/enqueue",
                json=payload,
            )
            resp.raise_for_status()
            logger.info("pagerduty_event_sent", severity=severity)
            return True
    except Exception as exc:
        logger.error("pagerduty_event_failed", error=str(exc))
        return False


def render_webhook_body(message: str, severity: str, title: Optional[str] = None) -> Optional[str]:
    """Render the configured Jinja2 payload template, if any."""
    if not settings.custom_webhook_template:
        return None
    return Template(settings.custom_webhook_template).render(
        message=message,
        severity=severity,
        title=title or "",
        source="autoheal",
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


async def send_custom_webhook(message: str, severity: str = "info", title: Optional[str] = None) -> bool:
    """Send notification to a custom webhook endpoint.

    Supports configurable URL, method, headers, and Jinja2 payload template.

    Args:
        message: Notification text.
        severity: Severity level.
        title: Notification title.

    Returns:
        True if the webhook responded with 2xx, False otherwise.
    """
    if not settings.custom_webhook_url:
        logger.debug("custom_webhook_url not configured, skipping")
        return False

    try:
        headers = json.loads(settings.custom_webhook_headers) if settings.custom_webhook_headers else {}
    except json.JSONDecodeError:
        headers = {}

    try:
        body = render_webhook_body(message, severity, title)
        async with httpx.AsyncClient(timeout=10) as client:
            if not headers.get("Content-Type"):
                headers["Content-Type"] = "application/json"
            if body is not None:
                resp = await client.request(
                    method=settings.custom_webhook_method,
                    url=settings.custom_webhook_url,
                    content=body,
                    headers=headers,
                )
            else:
                resp = await client.request(
                    method=settings.custom_webhook_method,
                    url=settings.custom_webhook_url,
                    json={
                        "title": title,
                        "message": message,
                        "severity": severity,
                        "source": "autoheal",
                        "timestamp": datetime.now(timezone.utc).isoformat(),
                    },
                    headers=headers,
                )
            resp.raise_for_status()
            logger.info("custom_webhook_sent", severity=severity, url=settings.custom_webhook_url)
            return True
    except Exception as exc:
        logger.error("custom_webhook_failed", error=str(exc))
        return False


async def notify_all(message: str, severity: str = "info", title: Optional[str] = None) -> dict[str, bool]:
    """Dispatch notification to all enabled channels respecting severity filters.

    PagerDuty only receives warning and above. All channels are
    fire-and-forget.

    Returns:
        Dict mapping channel name to success/failure boolean.
    """
    results: dict[str, bool] = {}
    sev_level = SEVERITY_ORDER.get(severity, 0)

    # Slack - always enabled if configured
    if settings.slack_webhook_url:
        results["slack"] = await send_slack(message, severity, title)

    # PagerDuty - only for warning+
    if settings.pagerduty_integration_key and sev_level >= SEVERITY_ORDER["warning"]:
        results["pagerduty"] = await send_pagerduty(message, severity, title)

    # Custom webhook
    if settings.custom_webhook_url:
        results["custom_webhook"] = await send_custom_webhook(message, severity, title)

    logger.info(
        "notify_all_dispatched",
        severity=severity,
        channels=list(results.keys()),
        successes=sum(1 for v in results.values() if v),
    )

    return results
