"""
Error taxonomy for the inbound order webhook pipeline.

Every rejection the endpoint can produce is one of these exceptions. The
router turns them into ``{"success": false, "error": <message>}`` with the
exception's status code, so ``message`` must always be safe to show to an
untrusted caller.

  RateLimited         429  transient, retry after the advertised delay
  Unauthenticated     401  signature / shared secret missing or wrong
  PayloadTooLarge     413  body exceeds WEBHOOK_MAX_BODY_BYTES
  MalformedPayload    400  body could not be parsed into any known shape
  ValidationFailed    400  parsed, but a mandatory field is missing/invalid
  PersistenceFailed   500  the store rejected a lookup or insert
  NotificationFailed       downstream dispatch failed; logged, never surfaced
"""

from typing import Optional


class WebhookError(Exception):
    """Base class for pipeline rejections."""

    status_code = 500
    default_message = "Internal error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class RateLimited(WebhookError):
    status_code = 429
    default_message = "Too many requests, please try again later"

    def __init__(self, message: Optional[str] = None, retry_after: int = 1):
        super().__init__(message)
        self.retry_after = retry_after


class Unauthenticated(WebhookError):
    status_code = 401
    default_message = "Invalid webhook signature"


class PayloadTooLarge(WebhookError):
    status_code = 413
    default_message = "Payload too large"


class MalformedPayload(WebhookError):
    status_code = 400
    default_message = "Malformed payload"


class ValidationFailed(WebhookError):
    """A canonical field is missing or invalid. ``field`` names the culprit."""

    status_code = 400
    default_message = "Invalid order data"

    def __init__(self, message: Optional[str] = None, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class PersistenceFailed(WebhookError):
    """
    The store rejected an operation.

    ``message`` is the generic caller-facing text; the raw store error is kept
    on ``detail`` for logging only.
    """

    status_code = 500
    default_message = "Failed to create order"

    def __init__(self, message: Optional[str] = None, detail: Optional[str] = None):
        super().__init__(message)
        self.detail = detail


class NotificationFailed(WebhookError):
    """Raised and handled inside the notification task; never sent to the caller."""

    default_message = "Notification dispatch failed"
