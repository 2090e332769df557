"""
Webhook notifier.

Sends one best-effort JSON POST per event to the configured webhook URL:

    {"event": "user.created", "timestamp": "<ISO-8601 UTC>", "data": {...}}

No retry, no backoff. Delivery problems, including failing to read the
configured URL, are logged and never raised to the caller.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict

import httpx

from app.persistence import PersistenceError, get_store

logger = logging.getLogger(__name__)

WEBHOOK_EVENTS = {"user.created", "user.updated", "redemption.created"}


def build_payload(event: str, data: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "event": event,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "data": data,
    }


def send_webhook(event: str, data: Dict[str, Any]) -> None:
    """Notify the configured webhook of an event, if one is configured."""
    if event not in WEBHOOK_EVENTS:
        raise ValueError(f"Unknown webhook event '{event}'")

    try:
        webhook_url = get_store().get_webhook_url()
    except PersistenceError as e:
        logger.error(f"❌ Could not load webhook URL for event {event}: {e}")
        return
    if not webhook_url:
        return

    timeout = float(os.getenv("WEBHOOK_TIMEOUT", "10"))
    try:
        response = httpx.post(webhook_url, json=build_payload(event, data), timeout=timeout)
    except httpx.HTTPError as e:
        logger.error(f"❌ Webhook delivery failed for event {event}: {e}")
        return

    if response.is_success:
        logger.info(f"Webhook sent successfully for event {event}.")
    else:
        logger.error(
            f"❌ Webhook failed for event {event}. Status: {response.status_code} "
            f"{response.reason_phrase}. Body: {response.text[:500]}"
        )
