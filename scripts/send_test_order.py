#!/usr/bin/env python3
"""
Dev helper: send a test order webhook to the local Order Intake backend.

Builds a sample order in one of the payload shapes the endpoint accepts,
signs the exact body bytes with WEBHOOK_SECRET (when set) and POST-s it to
/api/webhook-orders.

Usage
-----
# Basic: flat JSON order, targeting localhost:8000
python scripts/send_test_order.py

# Form builder style: form[fields][phone]=... (urlencoded, bracket keys)
python scripts/send_test_order.py --format nested-form

# WooCommerce style: billing_* fields and line_items
python scripts/send_test_order.py --format woocommerce

# Flat urlencoded form
python scripts/send_test_order.py --format form

# Custom phone / product
python scripts/send_test_order.py --phone "+225 07 00 00 00" --product "Savon"

# Generate a new shared secret for WEBHOOK_SECRET
python scripts/send_test_order.py --generate-secret

Environment / .env
------------------
WEBHOOK_SECRET   Shared HMAC secret. When empty the request is sent unsigned
                 (only accepted by a backend with no secret configured).

The script reads .env files with python-dotenv (project root, then backend/).
"""

import argparse
import hashlib
import hmac
import json
import os
import secrets
import sys
import textwrap
import time
from pathlib import Path
from urllib.parse import urlencode

import httpx
from dotenv import load_dotenv


# ---------------------------------------------------------------------------
# Payload builders
# ---------------------------------------------------------------------------

def _build_json(args: argparse.Namespace) -> tuple[bytes, str]:
    payload = {
        "client_name": args.name,
        "phone": args.phone,
        "city": args.city,
        "address": args.address,
        "product_name": args.product,
        "quantity": args.quantity,
        "unit_price": args.price,
        "order_id": args.order_id,
        "timestamp": int(time.time()),
    }
    return json.dumps(payload).encode(), "application/json"


def _build_form(args: argparse.Namespace) -> tuple[bytes, str]:
    pairs = {
        "client_name": args.name,
        "phone": args.phone,
        "city": args.city,
        "address": args.address,
        "product_name": args.product,
        "quantity": args.quantity,
        "unit_price": args.price,
        "order_id": args.order_id,
    }
    return urlencode(pairs).encode(), "application/x-www-form-urlencoded"


def _build_nested_form(args: argparse.Namespace) -> tuple[bytes, str]:
    """Elementor-style form keys: form[fields][<id>]=value."""
    pairs = {
        "form[name]": "Order form",
        "form[fields][name]": args.name,
        "form[fields][phone]": args.phone,
        "form[fields][city]": args.city,
        "form[fields][address]": args.address,
        "form[fields][product_name]": args.product,
        "form[fields][quantity]": args.quantity,
        "form[fields][price]": args.price,
    }
    return urlencode(pairs).encode(), "application/x-www-form-urlencoded"


def _build_woocommerce(args: argparse.Namespace) -> tuple[bytes, str]:
    first, _, last = args.name.partition(" ")
    payload = {
        "id": args.order_id,
        "billing_first_name": first,
        "billing_last_name": last,
        "billing_phone": args.phone,
        "billing_city": args.city,
        "billing_address_1": args.address,
        "line_items": [
            {"name": args.product, "quantity": args.quantity, "price": args.price}
        ],
        "total": str(round(args.quantity * args.price, 2)),
        "customer_note": "Sent by send_test_order.py",
    }
    return json.dumps(payload).encode(), "application/json"


_PAYLOAD_BUILDERS = {
    "json": _build_json,
    "form": _build_form,
    "nested-form": _build_nested_form,
    "woocommerce": _build_woocommerce,
}


# ---------------------------------------------------------------------------
# Pretty printer
# ---------------------------------------------------------------------------

def _print_response(response: httpx.Response) -> None:
    status = response.status_code
    symbol = "OK" if status == 200 else "FAIL"
    print(f"\n[{symbol}] HTTP {status}")
    try:
        body = response.json()
        print(json.dumps(body, indent=2))
    except ValueError:
        print(response.text)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main() -> int:
    # Locate project root (scripts/ lives one level below the root)
    project_root = Path(__file__).resolve().parent.parent
    load_dotenv(project_root / ".env")
    load_dotenv(project_root / "backend" / ".env")

    parser = argparse.ArgumentParser(
        prog="send_test_order.py",
        description=textwrap.dedent("""\
            Send a test order webhook to the Order Intake backend.

            Reads WEBHOOK_SECRET from the environment or a .env file and
            signs the body with it (X-Webhook-Signature).
        """),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            Examples:
              python scripts/send_test_order.py
              python scripts/send_test_order.py --format woocommerce
              python scripts/send_test_order.py --format nested-form --quantity 3
              python scripts/send_test_order.py --generate-secret
        """),
    )
    parser.add_argument(
        "--url",
        default="http://localhost:8000",
        help="Backend base URL (default: http://localhost:8000)",
    )
    parser.add_argument(
        "--format",
        default="json",
        choices=list(_PAYLOAD_BUILDERS),
        help="Payload shape to send (default: json)",
    )
    parser.add_argument("--name", default="Awa Kone", help="Client name")
    parser.add_argument("--phone", default="+225 07 00 00 00", help="Client phone")
    parser.add_argument("--city", default="Abidjan", help="Client city")
    parser.add_argument("--address", default="Cocody, Rue des Jardins", help="Delivery address")
    parser.add_argument("--product", default="Test Product", help="Product name")
    parser.add_argument("--quantity", type=int, default=1, help="Quantity (1-10000)")
    parser.add_argument("--price", type=float, default=1500.0, help="Unit price")
    parser.add_argument(
        "--order-id",
        default=None,
        help="External order id (default: a random one)",
    )
    parser.add_argument(
        "--secret",
        default=None,
        metavar="SECRET",
        help="Override the signing secret. Defaults to WEBHOOK_SECRET.",
    )
    parser.add_argument(
        "--generate-secret",
        action="store_true",
        help="Print a new random secret for WEBHOOK_SECRET and exit.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the body and headers without sending.",
    )

    args = parser.parse_args()

    if args.generate_secret:
        print(secrets.token_hex(32))
        return 0

    if args.order_id is None:
        args.order_id = f"TEST-{secrets.token_hex(3).upper()}"

    body, content_type = _PAYLOAD_BUILDERS[args.format](args)
    headers = {"Content-Type": content_type}

    secret = args.secret or os.getenv("WEBHOOK_SECRET", "")
    if secret:
        signature = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
        headers["X-Webhook-Signature"] = f"sha256={signature}"
    else:
        print("WEBHOOK_SECRET not set; sending unsigned request")

    endpoint = f"{args.url.rstrip('/')}/api/webhook-orders"

    print(f"Format    : {args.format}")
    print(f"Endpoint  : {endpoint}")
    print(f"Phone     : {args.phone}")
    print(f"Product   : {args.product} x{args.quantity} @ {args.price}")
    print(f"Signed    : {'yes' if secret else 'no'}")

    if args.dry_run:
        print("\n[DRY RUN] Headers:")
        print(json.dumps(headers, indent=2))
        print("\n[DRY RUN] Body:")
        print(body.decode())
        return 0

    try:
        response = httpx.post(endpoint, content=body, headers=headers, timeout=30)
    except httpx.ConnectError:
        print(
            f"\nERROR: Could not connect to {endpoint}\n"
            "Is the backend running? Start it with:\n"
            "  cd backend && uvicorn app.main:app --reload",
            file=sys.stderr,
        )
        return 1
    except httpx.HTTPError as exc:
        print(f"\nERROR: {exc}", file=sys.stderr)
        return 1

    _print_response(response)
    return 0 if response.status_code == 200 else 1


if __name__ == "__main__":
    sys.exit(main())
