"""Operator alerts for auth failures that must not reach the user.

A failed alert is logged and dropped; callers never see it. Discord and
Slack webhook URLs get their native message shape, anything else gets a
plain JSON document.
"""

import json
import logging
from datetime import UTC, datetime
from typing import Any

import httpx

from authcore.core.config import settings

logger = logging.getLogger(__name__)

_WEBHOOK_TIMEOUT = 5.0

# Chat services cap message size; details are cut to fit
_MAX_DETAILS_CHARS = 1500

_SEVERITY_MARKERS = {"info": "ℹ️", "warning": "⚠️", "critical": "🚨"}


async def send_alert(
    title: str,
    message: str,
    severity: str = "warning",
    details: dict[str, Any] | None = None,
) -> None:
    """Post an alert to ``ALERT_WEBHOOK_URL`` if one is configured.

    Args:
        title: Short alert title
        message: Alert description
        severity: One of "info", "warning", "critical"
        details: Extra context, rendered as JSON
    """
    webhook_url = settings.alert_webhook_url
    if not webhook_url:
        return

    payload = _build_payload(title, message, severity, details, webhook_url)

    try:
        async with httpx.AsyncClient(timeout=_WEBHOOK_TIMEOUT) as client:
            response = await client.post(webhook_url, json=payload)
            if response.status_code >= 400:
                logger.warning(f"Alert {title!r} rejected by webhook: HTTP {response.status_code}")
    except Exception as e:
        logger.warning(f"Alert {title!r} not delivered: {e}")


async def alert_persistence_failure(operation: str, error: Exception) -> None:
    """``on_failure`` hook for best-effort writes that exhausted their retries."""
    await send_alert(
        title="Best-effort write failed",
        message=f"{operation} failed after retries; the login itself succeeded.",
        severity="warning",
        details={"operation": operation, "error": str(error), "type": type(error).__name__},
    )


async def alert_unlink_failure(provider: str, member_id: int, failures: list[str]) -> None:
    """A withdrawn member's provider tokens could not be revoked upstream."""
    await send_alert(
        title=f"{provider} unlink failed",
        message=(
            f"Member {member_id} withdrew but their {provider} tokens were not revoked; "
            "the link has to be removed by hand."
        ),
        severity="warning",
        details={"provider": provider, "member_id": member_id, "failures": failures},
    )


def _format_details(details: dict[str, Any]) -> str:
    return json.dumps(details, indent=2, default=str)[:_MAX_DETAILS_CHARS]


def _build_payload(
    title: str,
    message: str,
    severity: str,
    details: dict[str, Any] | None,
    webhook_url: str,
) -> dict[str, Any]:
    marker = _SEVERITY_MARKERS.get(severity, "❓")
    heading = f"[{settings.environment}] {title}"

    if "discord.com/api/webhooks" in webhook_url:
        content = f"{marker} **{heading}**\n{message}"
        if details:
            content += f"\n```json\n{_format_details(details)}\n```"
        return {"content": content}

    if "hooks.slack.com" in webhook_url:
        text = f"{marker} *{heading}*\n{message}"
        if details:
            text += f"\n```{_format_details(details)}```"
        return {"text": text}

    return {
        "title": title,
        "message": message,
        "severity": severity,
        "environment": settings.environment,
        "details": details or {},
        "timestamp": datetime.now(UTC).isoformat(),
        "source": settings.app_name,
    }
