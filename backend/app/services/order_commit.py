"""
Order commit: client find-or-create, product lookup, order insert.

The Supabase client is synchronous, so every store call is pushed to the
thread pool with run_in_threadpool; the event loop keeps serving other
webhook requests while a lookup or insert is in flight.

Client dedup is read-then-insert on the normalized phone. Two concurrent
first-time submissions for the same phone can both miss the lookup and both
insert; only a unique constraint on clients.phone in the database prevents
that, and a conflict there surfaces as PersistenceFailed.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from fastapi.concurrency import run_in_threadpool

from app.models.order import OrderFields
from app.services.errors import PersistenceFailed

logger = logging.getLogger(__name__)

ORDER_STATUS_PENDING = "pending"
PLACEHOLDER_CLIENT_NAME = "Webhook Client"
CLIENT_IMPORT_NOTE = "Client imported from webhook"


def _escape_like(value: str) -> str:
    """Escape LIKE wildcards so a product name matches literally."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class OrderStore:
    """
    Thin synchronous adapter over the Supabase tables the pipeline touches.

    Every failure is re-raised as PersistenceFailed with the store's error
    text on ``detail`` (for logs) and a generic caller-facing message.
    """

    def __init__(self, client: Any):
        if client is None:
            raise PersistenceFailed(detail="SUPABASE_SERVICE_KEY is not configured")
        self._client = client

    def find_client_by_phone(self, phone: str) -> Optional[dict]:
        try:
            result = (
                self._client.table("clients")
                .select("id, full_name")
                .eq("phone", phone)
                .limit(1)
                .execute()
            )
        except Exception as e:
            raise PersistenceFailed(detail=f"client lookup failed: {e}") from e
        return result.data[0] if result.data else None

    def create_client(self, fields: OrderFields) -> dict:
        row = {
            "full_name": fields.client_name or PLACEHOLDER_CLIENT_NAME,
            "phone": fields.client_phone,
            "address": fields.client_address,
            "city": fields.client_city,
            "notes": CLIENT_IMPORT_NOTE,
        }
        try:
            result = self._client.table("clients").insert(row).execute()
        except Exception as e:
            raise PersistenceFailed(detail=f"client insert failed: {e}") from e
        if not result.data:
            raise PersistenceFailed(detail="client insert returned no data")
        return result.data[0]

    def find_product_by_name(self, name: str) -> Optional[dict]:
        """Case-insensitive partial match; the first row wins."""
        try:
            result = (
                self._client.table("products")
                .select("id, name, price")
                .ilike("name", f"%{_escape_like(name)}%")
                .limit(1)
                .execute()
            )
        except Exception as e:
            raise PersistenceFailed(detail=f"product lookup failed: {e}") from e
        return result.data[0] if result.data else None

    def create_order(self, row: dict) -> dict:
        try:
            result = self._client.table("orders").insert(row).execute()
        except Exception as e:
            raise PersistenceFailed(detail=f"order insert failed: {e}") from e
        if not result.data:
            raise PersistenceFailed(detail="order insert returned no data")
        return result.data[0]


@dataclass
class CommitResult:
    order: dict
    client_id: str
    client_name: str
    product_name: str
    total_amount: float


async def resolve_client(fields: OrderFields, store: OrderStore) -> dict:
    """Return the client row for the order's phone, creating it when absent."""
    existing = await run_in_threadpool(store.find_client_by_phone, fields.client_phone)
    if existing:
        logger.info(f"Found existing client {existing['id']}")
        return existing

    created = await run_in_threadpool(store.create_client, fields)
    logger.info(f"Created new client {created['id']}")
    return created


async def resolve_product(fields: OrderFields, store: OrderStore) -> Optional[dict]:
    """
    Best-effort product lookup.

    No match and lookup errors both mean "no product": the order still goes
    through with the caller-declared price.
    """
    try:
        product = await run_in_threadpool(store.find_product_by_name, fields.product_name)
    except PersistenceFailed as e:
        logger.warning(f"Product lookup failed, continuing without product: {e.detail}")
        return None

    if product:
        logger.info(f"Matched product {product['id']} for {fields.product_name!r}")
    else:
        logger.info(f"No product matches {fields.product_name!r}; order has no product reference")
    return product


async def commit_order(fields: OrderFields, store: OrderStore) -> CommitResult:
    """
    Persist one validated order.

    Steps run strictly in order; a PersistenceFailed from the client step
    means no order is inserted.
    """
    client = await resolve_client(fields, store)
    product = await resolve_product(fields, store)

    unit_price = fields.unit_price
    total_amount = fields.total_amount
    if product and not unit_price:
        # Caller sent no price: fall back to the catalogue price
        catalogue_price = product.get("price") or 0
        if catalogue_price:
            unit_price = float(catalogue_price)
            if not total_amount:
                total_amount = round(unit_price * fields.quantity, 2)

    order_row = {
        "client_id": client["id"],
        "product_id": product["id"] if product else None,
        "quantity": fields.quantity,
        "unit_price": unit_price,
        "total_amount": total_amount,
        "delivery_address": fields.client_address,
        "delivery_notes": fields.notes,
        "status": ORDER_STATUS_PENDING,
    }
    order = await run_in_threadpool(store.create_order, order_row)
    logger.info(f"Order created: id={order.get('id')} number={order.get('order_number')}")

    return CommitResult(
        order=order,
        client_id=client["id"],
        client_name=client.get("full_name") or fields.client_name or PLACEHOLDER_CLIENT_NAME,
        product_name=(product or {}).get("name") or fields.product_name,
        total_amount=total_amount,
    )
