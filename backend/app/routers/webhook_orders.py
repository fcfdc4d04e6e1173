"""
Inbound order webhook router.

Accepts order submissions from external form builders and e-commerce
plugins, and commits them as pending orders.

Pipeline (strict order, each step short-circuits on failure):
  1. Rate limit by caller IP                       429
  2. Read the raw body once (size ceiling)         413
  3. Verify the HMAC signature when configured     401
  4. Normalize the body into a nested tree         400
  5. Resolve + validate canonical fields           400
  6. Find or create the client by phone            500 on store failure
  7. Best-effort product lookup
  8. Insert the order (status "pending")           500 on store failure
  9. Schedule the order-created notification (fire-and-forget)

Environment variables
---------------------
WEBHOOK_SECRET           HMAC-SHA256 shared secret. When unset no signature
                         verification is performed at all.
WEBHOOK_MAX_BODY_BYTES   Request body ceiling (default: 1 MiB).

Endpoints:
  POST    /                      — order webhook (auth: HMAC signature)
  OPTIONS /                      — CORS preflight, any origin
  POST    /rate-limits/reset     — forget one identifier (auth: X-Admin-Token)
  DELETE  /rate-limits           — clear limiter state (auth: X-Admin-Token)
"""

import logging
import os
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from starlette.datastructures import Headers

from app.auth import check_rate_limit, get_rate_limiter, verify_admin_token
from app.db import supabase_admin
from app.models.order import (
    CreatedOrder,
    ErrorResponse,
    OrderFields,
    OrderWebhookResponse,
    RateLimitResetRequest,
)
from app.services.errors import (
    MalformedPayload,
    PayloadTooLarge,
    PersistenceFailed,
    RateLimited,
    Unauthenticated,
    ValidationFailed,
    WebhookError,
)
from app.services.field_resolver import resolve_order_fields
from app.services.notifier import schedule_order_notification
from app.services.order_commit import CommitResult, OrderStore, commit_order
from app.services.payload_normalizer import is_multipart, normalize_payload
from app.services.signature import (
    SHARED_SECRET_HEADER,
    extract_signature,
    timing_safe_equal,
    verify,
    verify_timestamp,
)

logger = logging.getLogger(__name__)

router = APIRouter()

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_DEFAULT_MAX_BODY_BYTES = 1024 * 1024

# Preflight answer: any third-party site may post orders here
CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": (
        "authorization, x-client-info, apikey, content-type, "
        "x-webhook-secret, x-webhook-signature, x-hub-signature-256, "
        "x-signature, x-signature-256"
    ),
    "Access-Control-Max-Age": "86400",
}


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

def _get_webhook_secret() -> str:
    return os.getenv("WEBHOOK_SECRET", "").strip()


def _get_max_body_bytes() -> int:
    raw = os.getenv("WEBHOOK_MAX_BODY_BYTES", "").strip()
    try:
        return int(raw) if raw else _DEFAULT_MAX_BODY_BYTES
    except ValueError:
        return _DEFAULT_MAX_BODY_BYTES


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

def _error_response(exc: WebhookError, headers: Optional[dict] = None) -> JSONResponse:
    content = ErrorResponse(error=exc.message).model_dump()
    if isinstance(exc, RateLimited):
        content["retry_after"] = exc.retry_after
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


# ---------------------------------------------------------------------------
# Pipeline steps
# ---------------------------------------------------------------------------

async def _read_body(request: Request) -> bytes:
    """Read the raw body exactly once, enforcing the size ceiling."""
    limit = _get_max_body_bytes()

    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > limit:
        raise PayloadTooLarge()

    # Chunked uploads carry no Content-Length; stop as soon as the ceiling is passed
    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > limit:
            raise PayloadTooLarge()
    return bytes(body)


def _verify_signature(body: bytes, content_type: Optional[str], headers: Headers) -> bool:
    """
    Apply the signature policy.

    Returns True only when the body itself was HMAC-verified (so fields in
    it, such as a timestamp, are authenticated). Raises Unauthenticated when
    a secret is configured and the request carries no valid credential.

    Multipart bodies cannot be reconstructed byte-exactly by most form
    builders, so they are accepted unsigned with a warning.
    """
    secret = _get_webhook_secret()
    if not secret:
        return False

    if is_multipart(content_type):
        logger.warning("Multipart webhook accepted without signature verification")
        return False

    signature = extract_signature(headers)
    if signature:
        if not verify(body, signature, secret):
            logger.warning("Webhook rejected: invalid signature")
            raise Unauthenticated("Invalid webhook signature")
        return True

    shared_secret = headers.get(SHARED_SECRET_HEADER)
    if shared_secret:
        if not timing_safe_equal(shared_secret.strip(), secret):
            logger.warning("Webhook rejected: invalid shared secret")
            raise Unauthenticated("Invalid webhook signature")
        return False

    logger.warning("Webhook rejected: no signature header")
    raise Unauthenticated("Missing webhook signature")


async def _normalize(request: Request, body: bytes, content_type: Optional[str]) -> dict:
    if not is_multipart(content_type):
        return normalize_payload(body, content_type)

    async def replay() -> dict:
        return {"type": "http.request", "body": body, "more_body": False}

    # The stream is already consumed; parse the form from the buffered bytes
    try:
        form = await Request(request.scope, replay).form()
    except Exception as exc:
        raise MalformedPayload("Malformed multipart payload") from exc
    try:
        return normalize_payload(body, content_type, form_items=form.multi_items())
    finally:
        await form.close()


def _resolve_fields(tree: dict) -> OrderFields:
    try:
        return resolve_order_fields(tree)
    except ValidationFailed as exc:
        logger.warning(f"Webhook order rejected: {exc.message}")
        raise


async def _commit(fields: OrderFields) -> CommitResult:
    try:
        store = OrderStore(supabase_admin)
        return await commit_order(fields, store)
    except PersistenceFailed as exc:
        logger.error(f"Failed to commit webhook order: {exc.detail}")
        raise


async def _process_order_request(request: Request) -> OrderWebhookResponse:
    content_type = request.headers.get("content-type")

    body = await _read_body(request)
    signed = _verify_signature(body, content_type, request.headers)

    tree = await _normalize(request, body, content_type)

    if signed and "timestamp" in tree and not verify_timestamp(tree["timestamp"]):
        raise Unauthenticated("Webhook timestamp outside allowed window")

    fields = _resolve_fields(tree)
    result = await _commit(fields)

    created = CreatedOrder(**result.order)
    task = schedule_order_notification(
        phone=fields.client_phone,
        order_number=created.order_number,
        client_name=result.client_name,
        product_name=result.product_name,
        amount=result.total_amount,
        delivery_address=fields.client_address,
    )

    return OrderWebhookResponse(
        order=created,
        client_id=result.client_id,
        external_order_id=fields.external_order_id,
        notification_triggered=task is not None,
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.options("")
async def order_webhook_preflight() -> Response:
    """Answer CORS preflight for any origin."""
    return Response(status_code=200, headers=CORS_HEADERS)


@router.post("")
async def receive_order_webhook(request: Request) -> JSONResponse:
    """
    Inbound order webhook.

    Accepts application/json, application/x-www-form-urlencoded and
    multipart/form-data (other content types are tried as JSON, then as
    form-encoded). Returns 200 with the created order, or a JSON error body
    {"success": false, "error": "..."} with 400/401/413/429/500.
    """
    rate = check_rate_limit(request, "webhook")
    if not rate.allowed:
        throttled = RateLimited(
            get_rate_limiter(request, "webhook").config.message,
            retry_after=rate.retry_after_seconds,
        )
        return _error_response(throttled, headers=rate.headers())

    try:
        response = await _process_order_request(request)
    except WebhookError as exc:
        return _error_response(exc)

    logger.info(
        f"Webhook order accepted: order={response.order.id} client={response.client_id} "
        f"external={response.external_order_id}"
    )
    return JSONResponse(status_code=200, content=response.model_dump())


@router.post("/rate-limits/reset")
async def reset_rate_limit(
    body: RateLimitResetRequest,
    request: Request,
    _: None = Depends(verify_admin_token),
) -> dict:
    """Forget one identifier in one limiter (e.g. a blocked partner IP)."""
    limiters = request.app.state.rate_limiters
    if body.limiter not in limiters:
        raise HTTPException(status_code=404, detail=f"Unknown limiter {body.limiter!r}")

    removed = limiters[body.limiter].reset(body.identifier)
    logger.info(f"Rate limit reset for {body.identifier!r} on '{body.limiter}' (tracked={removed})")
    return {"limiter": body.limiter, "identifier": body.identifier, "reset": removed}


@router.delete("/rate-limits")
async def clear_rate_limits(
    request: Request,
    limiter: Optional[str] = None,
    _: None = Depends(verify_admin_token),
) -> dict:
    """Clear one limiter, or every limiter when ``limiter`` is omitted."""
    limiters = request.app.state.rate_limiters
    if limiter is not None and limiter not in limiters:
        raise HTTPException(status_code=404, detail=f"Unknown limiter {limiter!r}")

    names = [limiter] if limiter else list(limiters)
    for name in names:
        limiters[name].clear_all()
    logger.info(f"Rate limits cleared: {names}")
    return {"cleared": names}
