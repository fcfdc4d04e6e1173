"""
Order-created notification dispatch.

Calls the SMS notification function with the new order's details. Dispatch
is fire-and-forget: the webhook handler schedules a detached task and
returns without awaiting it, and every failure (non-2xx, timeout, transport
error) is logged inside the task. The already-committed order is never
affected, and nothing is retried.

Environment variables
---------------------
NOTIFICATION_URL              Dispatcher endpoint. Defaults to the
                              send-notification-sms function of SUPABASE_URL.
NOTIFICATION_TIMEOUT_SECONDS  Request timeout (default: 10).
SUPABASE_SERVICE_KEY          Sent as the bearer token.
"""

import asyncio
import logging
import os
from typing import Optional

import httpx

from app.services.errors import NotificationFailed

logger = logging.getLogger(__name__)

NOTIFICATION_TYPE_ORDER_CREATED = "order_created"

_DEFAULT_TIMEOUT_SECONDS = 10.0

# Strong references to in-flight tasks; the event loop only keeps weak ones
_pending_tasks: set[asyncio.Task] = set()


def get_notification_url() -> Optional[str]:
    url = os.getenv("NOTIFICATION_URL", "").strip()
    if url:
        return url
    supabase_url = os.getenv("SUPABASE_URL", "").strip().rstrip("/")
    if supabase_url:
        return f"{supabase_url}/functions/v1/send-notification-sms"
    return None


def _get_timeout() -> float:
    raw = os.getenv("NOTIFICATION_TIMEOUT_SECONDS", "").strip()
    try:
        return float(raw) if raw else _DEFAULT_TIMEOUT_SECONDS
    except ValueError:
        return _DEFAULT_TIMEOUT_SECONDS


def build_notification_payload(
    phone: str,
    order_number: Optional[str],
    client_name: Optional[str],
    product_name: Optional[str],
    amount: float,
    delivery_address: Optional[str],
) -> dict:
    return {
        "phone": phone,
        "type": NOTIFICATION_TYPE_ORDER_CREATED,
        "channel": "sms",
        "data": {
            "order_number": order_number,
            "client_name": client_name,
            "product_name": product_name,
            "amount": amount,
            "delivery_address": delivery_address,
        },
    }


async def send_order_created_notification(
    url: str,
    payload: dict,
    timeout: Optional[float] = None,
) -> dict:
    """
    POST the notification request.

    Raises:
        NotificationFailed on transport errors or a non-2xx response.
    """
    headers = {"Content-Type": "application/json"}
    service_key = os.getenv("SUPABASE_SERVICE_KEY")
    if service_key:
        headers["Authorization"] = f"Bearer {service_key}"

    try:
        async with httpx.AsyncClient(timeout=timeout or _get_timeout()) as client:
            response = await client.post(url, json=payload, headers=headers)
    except httpx.HTTPError as exc:
        raise NotificationFailed(f"Notification request failed: {exc!r}") from exc

    if response.status_code >= 400:
        raise NotificationFailed(
            f"Notification dispatcher returned HTTP {response.status_code}: {response.text[:200]}"
        )

    try:
        body = response.json()
    except ValueError:
        return {}
    # Only an object carries the dispatcher's "sent" / "error" fields
    return body if isinstance(body, dict) else {}


async def _dispatch(url: str, payload: dict) -> None:
    order_number = payload["data"].get("order_number")
    try:
        body = await send_order_created_notification(url, payload)
    except NotificationFailed as exc:
        logger.warning(f"Notification for order {order_number} failed: {exc.message}")
        return
    except Exception as exc:
        logger.warning(f"Notification for order {order_number} failed unexpectedly: {exc!r}")
        return

    if body.get("sent") is False:
        logger.warning(f"Notification for order {order_number} not sent: {body.get('error')}")
    else:
        logger.info(f"Notification dispatched for order {order_number}")


def schedule_order_notification(
    phone: str,
    order_number: Optional[str],
    client_name: Optional[str],
    product_name: Optional[str],
    amount: float,
    delivery_address: Optional[str],
) -> Optional[asyncio.Task]:
    """
    Start the notification in a detached task and return immediately.

    Returns the task (callers must not await it on the request path), or
    None when no dispatcher URL is configured.
    """
    url = get_notification_url()
    if not url:
        logger.info("No notification dispatcher configured; skipping order notification")
        return None

    payload = build_notification_payload(
        phone=phone,
        order_number=order_number,
        client_name=client_name,
        product_name=product_name,
        amount=amount,
        delivery_address=delivery_address,
    )
    task = asyncio.get_running_loop().create_task(_dispatch(url, payload))
    _pending_tasks.add(task)
    task.add_done_callback(_pending_tasks.discard)
    return task
