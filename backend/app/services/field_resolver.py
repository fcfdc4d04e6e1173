"""
Canonical field resolution and validation for inbound orders.

Upstream integrations name the same field differently: a lead form posts
``phone``, Elementor posts ``form[fields][phone]``, WooCommerce posts
``billing_phone`` or ``billing.phone``. Each canonical field therefore has an
ordered chain of accessors; the first one that yields a non-empty value wins.
Adding a new integration means adding an accessor to a chain, never a new
code path.

Chain order for every field:
  1. top-level generic keys        phone, client_phone, ...
  2. form builder nesting          form.fields.<key>
  3. flat form builder nesting     fields.<key>
  4. e-commerce aliases            billing_phone, billing.phone, line_items[0]...

After resolution every string is sanitized, then validated. The first
failing field raises ValidationFailed; there is no partial acceptance.
"""

import logging
import re
from typing import Any, Callable, Iterable, Optional, Sequence

from app.models.order import OrderFields
from app.services.errors import ValidationFailed

logger = logging.getLogger(__name__)

Accessor = Callable[[Any], Any]

# ---------------------------------------------------------------------------
# Limits
# ---------------------------------------------------------------------------

MIN_QUANTITY = 1
MAX_QUANTITY = 10000
MAX_UNIT_PRICE = 1_000_000
MAX_TOTAL_AMOUNT = 10_000_000

_MAX_LENGTHS = {
    "client_name": 200,
    "client_city": 100,
    "client_address": 500,
    "product_name": 200,
    "notes": 1000,
    "external_order_id": 100,
}

# Loose international format on the raw value, then a strict check on the
# normalized digits.
_PHONE_RAW_RE = re.compile(r"^[0-9+\s().-]{8,20}$")
_PHONE_NORMALIZED_RE = re.compile(r"^\+?[0-9]{8,15}$")

_UNSAFE_CHARS_RE = re.compile(r"[<>\"'`]")
_JS_PROTOCOL_RE = re.compile(r"javascript:", re.IGNORECASE)
_EVENT_HANDLER_RE = re.compile(r"\bon\w+\s*=", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Tree access
# ---------------------------------------------------------------------------

def lookup(tree: Any, dotted_path: str) -> Any:
    """
    Walk ``tree`` along a dotted path.

    List nodes are indexed by numeric segments; dict nodes are looked up by
    key, so ``line_items.0.name`` works for a JSON array as well as for the
    ``{"0": {...}}`` dict that bracket-expanded form keys produce.
    """
    node = tree
    for segment in dotted_path.split("."):
        if isinstance(node, dict):
            node = node.get(segment)
        elif isinstance(node, list) and segment.isdigit():
            index = int(segment)
            node = node[index] if index < len(node) else None
        else:
            return None
        if node is None:
            return None
    return node


def _unwrap(value: Any) -> Any:
    # Some form builders post {"id": ..., "value": ...} per field
    if isinstance(value, dict) and "value" in value:
        return value["value"]
    return value


def _is_empty(value: Any) -> bool:
    # Containers never hold a usable scalar, so they do not stop a chain
    if value is None or isinstance(value, (dict, list)):
        return True
    if isinstance(value, str):
        return not value.strip()
    return False


def path(dotted_path: str) -> Accessor:
    """Accessor reading a single dotted path."""
    return lambda tree: _unwrap(lookup(tree, dotted_path))


def joined(*dotted_paths: str, sep: str = " ") -> Accessor:
    """
    Accessor concatenating several paths, skipping empty parts.

    Only the first path is required: billing_first_name alone yields a name,
    billing_last_name alone does not.
    """
    def accessor(tree: Any) -> Optional[str]:
        first = _as_text(_unwrap(lookup(tree, dotted_paths[0])))
        if not first:
            return None
        parts = [first]
        for dotted_path in dotted_paths[1:]:
            text = _as_text(_unwrap(lookup(tree, dotted_path)))
            if text:
                parts.append(text)
        return sep.join(parts)
    return accessor


def form_variants(*keys: str) -> list[Accessor]:
    """Accessors for ``keys`` at the top level, under form.fields, then under fields."""
    accessors = [path(key) for key in keys]
    accessors += [path(f"form.fields.{key}") for key in keys]
    accessors += [path(f"fields.{key}") for key in keys]
    return accessors


def first_non_empty(tree: Any, candidates: Iterable[Accessor]) -> Any:
    """Evaluate accessors in order and return the first non-empty result."""
    for accessor in candidates:
        value = accessor(tree)
        if not _is_empty(value):
            return value
    return None


# ---------------------------------------------------------------------------
# Fallback chains
# ---------------------------------------------------------------------------

FIELD_CHAINS: dict[str, Sequence[Accessor]] = {
    "client_phone": [
        *form_variants("phone", "client_phone", "telephone", "tel"),
        path("billing_phone"),
        path("billing.phone"),
    ],
    "client_name": [
        *form_variants("name", "client_name", "customer_name", "full_name"),
        joined("billing_first_name", "billing_last_name"),
        joined("billing.first_name", "billing.last_name"),
    ],
    "client_city": [
        *form_variants("city", "client_city"),
        path("billing_city"),
        path("billing.city"),
    ],
    "client_address": [
        *form_variants("address", "client_address"),
        joined("billing_address_1", "billing_address_2", sep=", "),
        joined("billing.address_1", "billing.address_2", sep=", "),
    ],
    "product_name": [
        *form_variants("product_name", "product"),
        path("line_items.0.name"),
        path("form_name"),
        path("form.name"),
    ],
    "quantity": [
        *form_variants("quantity", "qty"),
        path("line_items.0.quantity"),
    ],
    "unit_price": [
        *form_variants("unit_price", "price"),
        path("line_items.0.price"),
    ],
    "total_amount": [
        *form_variants("total_amount", "total", "order_total"),
    ],
    "notes": [
        *form_variants("notes", "order_notes", "customer_note", "message"),
    ],
    "external_order_id": [
        path("id"),
        path("order_id"),
        path("order_number"),
    ],
}


def resolve_raw(tree: dict, field: str) -> Any:
    return first_non_empty(tree, FIELD_CHAINS[field])


# ---------------------------------------------------------------------------
# Sanitization and coercion
# ---------------------------------------------------------------------------

def _as_text(value: Any) -> Optional[str]:
    """Scalar -> str; containers and booleans -> None."""
    if value is None or isinstance(value, (bool, dict, list)):
        return None
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def sanitize_string(value: Any) -> Optional[str]:
    """
    Strip markup-significant characters and trim.

    Removes angle brackets, quotes, backticks, ``javascript:`` and inline
    event handler prefixes (``onclick=``). Not an HTML sanitizer; output
    encoding downstream still applies. Returns None for empty results.
    """
    text = _as_text(value)
    if text is None:
        return None
    text = _UNSAFE_CHARS_RE.sub("", text)
    text = _JS_PROTOCOL_RE.sub("", text)
    text = _EVENT_HANDLER_RE.sub("", text)
    text = text.strip()
    return text or None


def normalize_phone(phone: str) -> str:
    """Keep digits and a single leading '+': '+225 07-00 (00) 00' -> '+22507000000'."""
    digits = re.sub(r"[^0-9]", "", phone)
    return f"+{digits}" if phone.strip().startswith("+") else digits


def parse_number(value: Any) -> Optional[float]:
    """
    Coerce a JSON number or numeric string to float.

    Thousands separators and spaces are dropped ("1 500", "1,500.00").
    Returns None when the value is not numeric.
    """
    if value is None or isinstance(value, (bool, dict, list)):
        return None
    if isinstance(value, (int, float)):
        raw = value
    else:
        raw = str(value).replace(",", "").replace(" ", "").strip()
        if not raw:
            return None
    try:
        number = float(raw)
    except (ValueError, OverflowError):
        # Integers too large for a float (a 400-digit quantity) are not numbers here
        return None
    if number != number or number in (float("inf"), float("-inf")):
        return None
    return number


def _check_length(field: str, value: Optional[str]) -> None:
    limit = _MAX_LENGTHS[field]
    if value is not None and len(value) > limit:
        raise ValidationFailed(f"{field} must be at most {limit} characters", field=field)


# ---------------------------------------------------------------------------
# Field validators
# ---------------------------------------------------------------------------

def validate_phone(raw: Any) -> str:
    phone = sanitize_string(raw)
    if not phone:
        raise ValidationFailed("Missing required field: client_phone", field="client_phone")
    if not _PHONE_RAW_RE.match(phone):
        raise ValidationFailed("Invalid phone number format", field="client_phone")
    normalized = normalize_phone(phone)
    if not _PHONE_NORMALIZED_RE.match(normalized):
        raise ValidationFailed("Invalid phone number format", field="client_phone")
    return normalized


def validate_quantity(raw: Any) -> int:
    if _is_empty(raw):
        return MIN_QUANTITY
    number = parse_number(raw)
    if number is None or not number.is_integer():
        raise ValidationFailed("quantity must be an integer", field="quantity")
    quantity = int(number)
    if quantity < MIN_QUANTITY or quantity > MAX_QUANTITY:
        raise ValidationFailed(
            f"quantity must be between {MIN_QUANTITY} and {MAX_QUANTITY}",
            field="quantity",
        )
    return quantity


def validate_unit_price(raw: Any) -> float:
    if _is_empty(raw):
        return 0.0
    price = parse_number(raw)
    if price is None or price < 0:
        raise ValidationFailed("unit_price must be a non-negative number", field="unit_price")
    if price > MAX_UNIT_PRICE:
        raise ValidationFailed(f"unit_price must not exceed {MAX_UNIT_PRICE}", field="unit_price")
    return price


def resolve_total(raw: Any, unit_price: float, quantity: int) -> float:
    """Caller total when positive, otherwise unit_price * quantity."""
    total = parse_number(raw)
    if total is None or total <= 0:
        return round(unit_price * quantity, 2)
    if total > MAX_TOTAL_AMOUNT:
        raise ValidationFailed(
            f"total_amount must not exceed {MAX_TOTAL_AMOUNT}", field="total_amount"
        )
    return total


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def resolve_order_fields(tree: dict) -> OrderFields:
    """
    Resolve, sanitize and validate canonical order fields from a normalized tree.

    Raises:
        ValidationFailed identifying the first invalid field.
    """
    client_phone = validate_phone(resolve_raw(tree, "client_phone"))

    product_name = sanitize_string(resolve_raw(tree, "product_name"))
    if not product_name:
        raise ValidationFailed("Missing required field: product_name", field="product_name")
    _check_length("product_name", product_name)

    quantity = validate_quantity(resolve_raw(tree, "quantity"))
    unit_price = validate_unit_price(resolve_raw(tree, "unit_price"))
    total_amount = resolve_total(resolve_raw(tree, "total_amount"), unit_price, quantity)

    client_name = sanitize_string(resolve_raw(tree, "client_name"))
    client_city = sanitize_string(resolve_raw(tree, "client_city"))
    client_address = sanitize_string(resolve_raw(tree, "client_address"))
    external_order_id = sanitize_string(resolve_raw(tree, "external_order_id"))
    notes = sanitize_string(resolve_raw(tree, "notes"))
    if notes is None and external_order_id:
        notes = f"Webhook order #{external_order_id}"

    for field, value in (
        ("client_name", client_name),
        ("client_city", client_city),
        ("client_address", client_address),
        ("notes", notes),
        ("external_order_id", external_order_id),
    ):
        _check_length(field, value)

    return OrderFields(
        client_name=client_name,
        client_phone=client_phone,
        client_city=client_city,
        client_address=client_address,
        product_name=product_name,
        quantity=quantity,
        unit_price=unit_price,
        total_amount=total_amount,
        notes=notes,
        external_order_id=external_order_id,
    )
