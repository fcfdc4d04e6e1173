"""
Unit tests for canonical field resolution, sanitization and validation.
"""

import json
from urllib.parse import urlencode

import pytest

from app.services.errors import ValidationFailed
from app.services.field_resolver import (
    first_non_empty,
    joined,
    lookup,
    normalize_phone,
    parse_number,
    path,
    resolve_order_fields,
    sanitize_string,
)
from app.services.payload_normalizer import normalize_payload


def _order(**overrides) -> dict:
    payload = {
        "client_name": "Awa Kone",
        "phone": "+225 07 00 00 00 00",
        "city": "Abidjan",
        "address": "Cocody",
        "product_name": "Savon Karite",
        "quantity": 2,
        "unit_price": 1500,
    }
    payload.update(overrides)
    return payload


# ---------------------------------------------------------------------------
# Tree access helpers
# ---------------------------------------------------------------------------

class TestLookup:
    def test_nested_dict(self):
        assert lookup({"a": {"b": {"c": 1}}}, "a.b.c") == 1

    def test_list_index(self):
        assert lookup({"items": [{"name": "x"}]}, "items.0.name") == "x"

    def test_dict_with_numeric_key(self):
        assert lookup({"items": {"0": {"name": "x"}}}, "items.0.name") == "x"

    def test_missing_path(self):
        assert lookup({"a": 1}, "a.b") is None
        assert lookup({"items": []}, "items.0.name") is None


class TestAccessors:
    def test_first_non_empty_skips_blank_and_missing(self):
        tree = {"phone": "  ", "fields": {"phone": "123"}}
        assert first_non_empty(tree, [path("phone"), path("form.fields.phone"), path("fields.phone")]) == "123"

    def test_first_non_empty_returns_none_when_nothing_matches(self):
        assert first_non_empty({}, [path("a"), path("b")]) is None

    def test_container_value_does_not_stop_chain(self):
        tree = {"name": {"first": "A"}, "client_name": "Awa"}
        assert first_non_empty(tree, [path("name"), path("client_name")]) == "Awa"

    def test_form_builder_value_objects_are_unwrapped(self):
        tree = {"fields": {"phone": {"id": "phone", "value": "123"}}}
        assert path("fields.phone")(tree) == "123"

    def test_joined_requires_first_part(self):
        accessor = joined("first", "last")
        assert accessor({"first": "Awa", "last": "Kone"}) == "Awa Kone"
        assert accessor({"first": "Awa"}) == "Awa"
        assert accessor({"last": "Kone"}) is None

    def test_joined_custom_separator(self):
        accessor = joined("a1", "a2", sep=", ")
        assert accessor({"a1": "Rue 1", "a2": "Apt 4"}) == "Rue 1, Apt 4"


# ---------------------------------------------------------------------------
# Sanitization and coercion
# ---------------------------------------------------------------------------

class TestSanitizeString:
    def test_strips_markup_characters(self):
        assert sanitize_string('<b>"Awa"</b> \'K\'') == "bAwa/b K"

    def test_strips_script_vectors(self):
        assert sanitize_string("javascript:alert(1)") == "alert(1)"
        assert sanitize_string("x onclick=steal()") == "x steal()"

    def test_trims_whitespace(self):
        assert sanitize_string("  Awa  ") == "Awa"

    def test_empty_after_sanitizing_is_none(self):
        assert sanitize_string("<>") is None
        assert sanitize_string(None) is None

    def test_numbers_become_text(self):
        assert sanitize_string(1234) == "1234"
        assert sanitize_string(12.0) == "12"

    def test_ordinary_words_survive(self):
        assert sanitize_string("Monday delivery, ring twice") == "Monday delivery, ring twice"


class TestNormalizePhone:
    def test_keeps_leading_plus(self):
        assert normalize_phone("+225 07-00 (00) 00") == "+22507000000"

    def test_without_plus(self):
        assert normalize_phone("07 00 00 00 00") == "0700000000"


class TestParseNumber:
    @pytest.mark.parametrize("raw, expected", [
        (3, 3.0),
        (2.5, 2.5),
        ("1500", 1500.0),
        ("1,500.50", 1500.5),
        ("1 500", 1500.0),
    ])
    def test_numeric(self, raw, expected):
        assert parse_number(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "abc", True, [], {}, "nan", "inf", 10**400, "1" + "0" * 400])
    def test_not_numeric(self, raw):
        assert parse_number(raw) is None


# ---------------------------------------------------------------------------
# resolve_order_fields — happy paths
# ---------------------------------------------------------------------------

class TestResolveOrderFields:
    def test_flat_json_payload(self):
        fields = resolve_order_fields(_order(order_id="WP-1", notes="Call first"))

        assert fields.client_name == "Awa Kone"
        assert fields.client_phone == "+2250700000000"
        assert fields.client_city == "Abidjan"
        assert fields.client_address == "Cocody"
        assert fields.product_name == "Savon Karite"
        assert fields.quantity == 2
        assert fields.unit_price == 1500
        assert fields.total_amount == 3000
        assert fields.notes == "Call first"
        assert fields.external_order_id == "WP-1"

    def test_same_fields_from_json_flat_form_and_bracket_form(self):
        flat = {
            "name": "Awa Kone",
            "phone": "+2250700000000",
            "product_name": "Savon",
            "quantity": "3",
            "price": "1500",
        }
        nested = {f"form[fields][{k}]": v for k, v in flat.items()}

        from_json = normalize_payload(json.dumps(flat).encode(), "application/json")
        from_form = normalize_payload(urlencode(flat).encode(), "application/x-www-form-urlencoded")
        from_nested = normalize_payload(urlencode(nested).encode(), "application/x-www-form-urlencoded")

        results = [resolve_order_fields(t) for t in (from_json, from_form, from_nested)]
        assert results[0] == results[1] == results[2]
        assert results[0].quantity == 3
        assert results[0].total_amount == 4500

    def test_fields_without_form_wrapper(self):
        fields = resolve_order_fields({"fields": {"phone": "0700000000", "product": "Huile"}})
        assert fields.client_phone == "0700000000"
        assert fields.product_name == "Huile"

    def test_woocommerce_payload(self):
        payload = {
            "id": 4821,
            "billing_first_name": "Awa",
            "billing_last_name": "Kone",
            "billing_phone": "+225 05 11 22 33 44",
            "billing_city": "Bouake",
            "billing_address_1": "Rue 12",
            "billing_address_2": "Porte 3",
            "line_items": [{"name": "Savon", "quantity": 4, "price": 1000}],
            "total": "4500.00",
            "customer_note": "Evening delivery",
        }
        fields = resolve_order_fields(payload)

        assert fields.client_name == "Awa Kone"
        assert fields.client_phone == "+2250511223344"
        assert fields.client_city == "Bouake"
        assert fields.client_address == "Rue 12, Porte 3"
        assert fields.product_name == "Savon"
        assert fields.quantity == 4
        assert fields.unit_price == 1000
        assert fields.total_amount == 4500
        assert fields.notes == "Evening delivery"
        assert fields.external_order_id == "4821"

    def test_woocommerce_nested_billing_object(self):
        payload = {
            "billing": {"first_name": "Awa", "phone": "0700000000", "city": "Abidjan"},
            "line_items": [{"name": "Savon"}],
        }
        fields = resolve_order_fields(payload)
        assert fields.client_name == "Awa"
        assert fields.client_phone == "0700000000"
        assert fields.client_city == "Abidjan"

    def test_bracket_encoded_line_items(self):
        tree = normalize_payload(
            urlencode({
                "billing_phone": "0700000000",
                "line_items[0][name]": "Savon",
                "line_items[0][quantity]": "2",
                "line_items[0][price]": "750",
            }).encode(),
            "application/x-www-form-urlencoded",
        )
        fields = resolve_order_fields(tree)
        assert fields.product_name == "Savon"
        assert fields.total_amount == 1500

    def test_form_name_is_last_resort_product(self):
        fields = resolve_order_fields({"phone": "0700000000", "form_name": "Pack Beaute"})
        assert fields.product_name == "Pack Beaute"

    def test_top_level_key_beats_form_fields(self):
        tree = {"phone": "0700000001", "form": {"fields": {"phone": "0700000002"}}, "product": "X"}
        assert resolve_order_fields(tree).client_phone == "0700000001"

    def test_defaults(self):
        fields = resolve_order_fields({"phone": "0700000000", "product_name": "Savon"})
        assert fields.quantity == 1
        assert fields.unit_price == 0
        assert fields.total_amount == 0
        assert fields.client_name is None
        assert fields.notes is None

    def test_notes_default_to_external_reference(self):
        fields = resolve_order_fields(_order(order_number="A-77"))
        assert fields.notes == "Webhook order #A-77"

    def test_strings_are_sanitized(self):
        fields = resolve_order_fields(_order(client_name="<script>Awa</script>", product_name='"Savon"'))
        assert fields.client_name == "scriptAwa/script"
        assert fields.product_name == "Savon"


# ---------------------------------------------------------------------------
# resolve_order_fields — totals
# ---------------------------------------------------------------------------

class TestTotals:
    def test_total_computed_when_omitted(self):
        fields = resolve_order_fields(_order(unit_price=1500, quantity=3))
        assert fields.total_amount == 4500

    def test_caller_total_wins_when_positive(self):
        fields = resolve_order_fields(_order(unit_price=1500, quantity=3, total_amount=4000))
        assert fields.total_amount == 4000

    @pytest.mark.parametrize("total", [0, -10, "abc", "", 10**400])
    def test_non_positive_or_unparsable_total_falls_back(self, total):
        fields = resolve_order_fields(_order(unit_price=1500, quantity=3, total_amount=total))
        assert fields.total_amount == 4500

    def test_total_above_limit_rejected(self):
        with pytest.raises(ValidationFailed) as exc_info:
            resolve_order_fields(_order(total_amount=10_000_001))
        assert exc_info.value.field == "total_amount"


# ---------------------------------------------------------------------------
# resolve_order_fields — validation failures
# ---------------------------------------------------------------------------

class TestValidation:
    def test_missing_phone(self):
        payload = _order()
        del payload["phone"]
        with pytest.raises(ValidationFailed) as exc_info:
            resolve_order_fields(payload)
        assert exc_info.value.field == "client_phone"
        assert "client_phone" in exc_info.value.message

    @pytest.mark.parametrize("phone", ["12345", "call me maybe", "+225-07-00-00-00-00-00-00-00", "++++++++++"])
    def test_invalid_phone(self, phone):
        with pytest.raises(ValidationFailed) as exc_info:
            resolve_order_fields(_order(phone=phone))
        assert exc_info.value.message == "Invalid phone number format"

    def test_missing_product(self):
        with pytest.raises(ValidationFailed) as exc_info:
            resolve_order_fields(_order(product_name="  <>  "))
        assert exc_info.value.field == "product_name"

    def test_phone_checked_before_product(self):
        with pytest.raises(ValidationFailed) as exc_info:
            resolve_order_fields({"product_name": ""})
        assert exc_info.value.field == "client_phone"

    @pytest.mark.parametrize("quantity", [1, 10000, "1", "10000", 5.0])
    def test_quantity_bounds_accepted(self, quantity):
        assert resolve_order_fields(_order(quantity=quantity)).quantity == int(float(quantity))

    @pytest.mark.parametrize("quantity", [0, 10001, -1, "0", "10001"])
    def test_quantity_out_of_range_rejected(self, quantity):
        with pytest.raises(ValidationFailed) as exc_info:
            resolve_order_fields(_order(quantity=quantity))
        assert exc_info.value.message == "quantity must be between 1 and 10000"

    @pytest.mark.parametrize("quantity", [2.5, "two", 10**400])
    def test_non_integer_quantity_rejected(self, quantity):
        with pytest.raises(ValidationFailed) as exc_info:
            resolve_order_fields(_order(quantity=quantity))
        assert exc_info.value.field == "quantity"

    @pytest.mark.parametrize("price", [-1, "free", 1_000_001, 10**400])
    def test_invalid_unit_price(self, price):
        with pytest.raises(ValidationFailed) as exc_info:
            resolve_order_fields(_order(unit_price=price))
        assert exc_info.value.field == "unit_price"

    def test_overlong_product_name(self):
        with pytest.raises(ValidationFailed) as exc_info:
            resolve_order_fields(_order(product_name="x" * 201))
        assert exc_info.value.message == "product_name must be at most 200 characters"

    def test_overlong_notes(self):
        with pytest.raises(ValidationFailed) as exc_info:
            resolve_order_fields(_order(notes="n" * 1001))
        assert exc_info.value.field == "notes"
