"""
Payload normalization for the inbound order webhook.

Turns a raw request body into one nested tree of dicts, lists and scalars so
the field resolver never needs to know how the order was transported:

  application/json                   parsed as-is (top level must be an object)
  application/x-www-form-urlencoded  flat pairs, then bracket keys expanded
  multipart/form-data                string fields only, then bracket keys expanded
  anything else / missing            JSON first, urlencoded as a fallback

Bracket expansion folds ``form[fields][phone]=x`` into
``{"form": {"fields": {"phone": "x"}}}`` so it resolves exactly like the
same field sent as nested JSON. ``items[]`` appends to a list.

No semantic validation happens here: a body with the wrong shape simply
yields a tree without the expected fields, and the resolver reports them as
missing.
"""

import json
import logging
import re
from typing import Any, Iterable, Optional
from urllib.parse import parse_qsl

from app.services.errors import MalformedPayload

logger = logging.getLogger(__name__)

JSON_TYPE = "application/json"
FORM_TYPE = "application/x-www-form-urlencoded"
MULTIPART_TYPE = "multipart/form-data"

_BRACKET_SEGMENT_RE = re.compile(r"\[([^\[\]]*)\]")


def media_type(content_type: Optional[str]) -> str:
    """'application/json; charset=utf-8' -> 'application/json'."""
    if not content_type:
        return ""
    return content_type.split(";", 1)[0].strip().lower()


def is_multipart(content_type: Optional[str]) -> bool:
    return media_type(content_type) == MULTIPART_TYPE


# ---------------------------------------------------------------------------
# Bracket notation
# ---------------------------------------------------------------------------

def split_bracket_key(key: str) -> list[str]:
    """
    Split a form key into path segments.

      "phone"                -> ["phone"]
      "form[fields][phone]"  -> ["form", "fields", "phone"]
      "items[]"              -> ["items", ""]

    A key whose brackets do not parse cleanly is treated as a flat key.
    """
    head, sep, rest = key.partition("[")
    if not sep or not head:
        return [key]

    rest = "[" + rest
    segments = _BRACKET_SEGMENT_RE.findall(rest)
    if "".join(f"[{s}]" for s in segments) != rest:
        return [key]
    return [head] + segments


def _insert_path(tree: dict, segments: list[str], value: Any) -> None:
    """Set ``value`` at ``segments`` inside ``tree``, creating branches as needed."""
    node: Any = tree
    for i, segment in enumerate(segments):
        last = i == len(segments) - 1
        next_is_append = not last and segments[i + 1] == ""

        if isinstance(node, list):
            # Only reachable through "key[]" followed by more segments
            # ("items[][name]"): each occurrence starts a new element.
            if last:
                node.append(value)
                return
            child: Any = [] if next_is_append else {}
            node.append(child)
            node = child
            continue

        if last:
            if isinstance(node.get(segment), (dict, list)):
                # Keep the structure; a stray scalar does not clobber a branch
                logger.debug(f"Ignoring scalar for nested form key {segment!r}")
                return
            node[segment] = value
            return

        child = node.get(segment)
        if next_is_append:
            if not isinstance(child, list):
                child = []
                node[segment] = child
        elif not isinstance(child, dict):
            child = {}
            node[segment] = child
        node = child


def expand_bracket_keys(pairs: Iterable[tuple[str, Any]]) -> dict:
    """
    Build a nested tree from flat (key, value) pairs.

    Repeated flat keys keep the last value; ``key[]`` keys collect every
    value into a list in arrival order.
    """
    tree: dict = {}
    for key, value in pairs:
        if not key:
            continue
        _insert_path(tree, split_bracket_key(key), value)
    return tree


# ---------------------------------------------------------------------------
# Per-transport parsers
# ---------------------------------------------------------------------------

def _decode(body: bytes) -> str:
    return body.decode("utf-8", errors="replace")


def parse_json(body: bytes) -> dict:
    try:
        parsed = json.loads(_decode(body))
    except (ValueError, RecursionError) as exc:
        # RecursionError: nesting deeper than the decoder can follow
        raise MalformedPayload("Malformed JSON payload") from exc

    if not isinstance(parsed, dict):
        raise MalformedPayload("JSON payload must be an object")
    return parsed


def parse_urlencoded(body: bytes) -> dict:
    pairs = parse_qsl(_decode(body), keep_blank_values=True)
    return expand_bracket_keys(pairs)


def parse_form_items(items: Iterable[tuple[str, Any]]) -> dict:
    """
    Expand multipart form items, keeping only string values.

    File parts (UploadFile or anything that is not a str) carry no order data
    and are dropped.
    """
    return expand_bracket_keys(
        (key, value) for key, value in items if isinstance(value, str)
    )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def normalize_payload(
    body: bytes,
    content_type: Optional[str],
    form_items: Optional[Iterable[tuple[str, Any]]] = None,
) -> dict:
    """
    Normalize a webhook body into a nested tree.

    Args:
        body:         raw request body.
        content_type: the request's Content-Type header (may be None).
        form_items:   multipart fields as parsed by Starlette; required when
                      content_type is multipart/form-data.

    Raises:
        MalformedPayload when the body cannot be read as any supported shape.
    """
    kind = media_type(content_type)

    if kind == MULTIPART_TYPE:
        if form_items is None:
            raise MalformedPayload("Malformed multipart payload")
        return parse_form_items(form_items)

    if not body or not body.strip():
        raise MalformedPayload("Empty request body")

    if kind == JSON_TYPE or kind.endswith("+json"):
        return parse_json(body)

    if kind == FORM_TYPE:
        return parse_urlencoded(body)

    # Unknown or missing content type: JSON first, then urlencoded
    try:
        return parse_json(body)
    except MalformedPayload:
        logger.debug(f"Body with content type {kind or 'none'!r} is not JSON; trying form encoding")

    tree = parse_urlencoded(body)
    if not tree:
        raise MalformedPayload("Unsupported payload format")
    return tree
