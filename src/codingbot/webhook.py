"""Webhook receiver: FastAPI endpoint for tracker webhook delivery.

Parses the payload and enqueues it for the Event Router, then responds
200 immediately so slow processing never triggers tracker retries.
Processing errors never surface here; only a body that is not a JSON
object is rejected.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, Header, Request, Response

from codingbot.models import TrackerEvent

if TYPE_CHECKING:
    import asyncio

logger = logging.getLogger(__name__)

router = APIRouter()

# Set during server startup (see server.py)
_event_queue: asyncio.Queue[TrackerEvent] | None = None


def configure(event_queue: asyncio.Queue[TrackerEvent]) -> None:
    """Wire the webhook endpoint to the event queue."""
    global _event_queue
    _event_queue = event_queue


@router.post("/webhook")
async def handle_webhook(
    request: Request,
    linear_delivery: str | None = Header(default=None),
) -> Response:
    """Receive and enqueue a tracker webhook event."""
    body = await request.body()
    try:
        payload = json.loads(body)
    except ValueError:
        logger.warning("Webhook body is not valid JSON (delivery=%s)", linear_delivery)
        return Response(status_code=400, content="Invalid JSON")
    if not isinstance(payload, dict):
        logger.warning("Webhook body is not a JSON object (delivery=%s)", linear_delivery)
        return Response(status_code=400, content="Expected a JSON object")

    event = TrackerEvent(delivery_id=linear_delivery, payload=payload)

    logger.info(
        "Webhook received: %s.%s (delivery=%s, session=%s)",
        event.event_type,
        event.action,
        linear_delivery,
        event.session_id,
    )

    if _event_queue is not None:
        await _event_queue.put(event)
    else:
        logger.error("Event queue not configured — dropping event %s", event.dedup_key)

    return Response(status_code=200, content="ok")
