"""
Unit tests for webhook signature verification.
"""

import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone

import pytest

from app.services.signature import (
    extract_signature,
    generate_secret,
    sign,
    strip_signature_prefix,
    timing_safe_equal,
    verify,
    verify_timestamp,
)

SECRET = "whsec_test_secret"
BODY = b'{"phone": "+2250700000000", "product_name": "Savon", "quantity": 2}'


class TestSign:
    def test_matches_reference_hmac(self):
        expected = hmac.new(SECRET.encode(), BODY, hashlib.sha256).hexdigest()
        assert sign(BODY, SECRET) == expected

    def test_str_and_bytes_payloads_agree(self):
        assert sign(BODY.decode(), SECRET) == sign(BODY, SECRET)

    def test_is_lowercase_hex_sha256(self):
        digest = sign(BODY, SECRET)
        assert len(digest) == 64
        assert digest == digest.lower()
        int(digest, 16)


class TestVerify:
    @pytest.mark.parametrize("payload", [b"", b"x", BODY, "unicode éè".encode()])
    def test_own_signature_verifies(self, payload):
        assert verify(payload, sign(payload, SECRET), SECRET) is True

    def test_single_payload_byte_change_fails(self):
        signature = sign(BODY, SECRET)
        tampered = BODY.replace(b"2}", b"3}")
        assert verify(tampered, signature, SECRET) is False

    def test_single_secret_byte_change_fails(self):
        signature = sign(BODY, SECRET)
        assert verify(BODY, signature, SECRET[:-1] + "X") is False

    def test_sha256_prefix_is_equivalent(self):
        signature = sign(BODY, SECRET)
        assert verify(BODY, f"sha256={signature}", SECRET) is True
        assert verify(BODY, signature, SECRET) is True

    def test_uppercase_hex_is_accepted(self):
        assert verify(BODY, sign(BODY, SECRET).upper(), SECRET) is True

    def test_missing_signature_or_secret_fails(self):
        assert verify(BODY, None, SECRET) is False
        assert verify(BODY, "", SECRET) is False
        assert verify(BODY, sign(BODY, SECRET), "") is False

    def test_reserialized_json_does_not_verify(self):
        """Signatures cover the exact bytes, not the parsed document."""
        signature = sign(BODY, SECRET)
        reserialized = json.dumps(json.loads(BODY), indent=2).encode()
        assert verify(reserialized, signature, SECRET) is False


class TestTimingSafeEqual:
    def test_equal_values(self):
        assert timing_safe_equal("abc123", "abc123") is True

    def test_different_length(self):
        assert timing_safe_equal("abc", "abcd") is False

    def test_difference_in_last_byte(self):
        assert timing_safe_equal("abcdef", "abcdeg") is False

    def test_difference_in_first_byte(self):
        assert timing_safe_equal("xbcdef", "abcdef") is False

    def test_bytes_and_str(self):
        assert timing_safe_equal(b"abc", "abc") is True


class TestExtractSignature:
    def test_webhook_signature_header(self):
        assert extract_signature({"x-webhook-signature": "abc"}) == "abc"

    def test_github_style_header_strips_prefix(self):
        assert extract_signature({"x-hub-signature-256": "sha256=abc"}) == "abc"

    def test_prefix_on_any_header(self):
        assert extract_signature({"x-signature": "sha256=DEF"}) == "def"

    def test_first_header_wins(self):
        headers = {"x-webhook-signature": "first", "x-hub-signature-256": "sha256=second"}
        assert extract_signature(headers) == "first"

    def test_no_header_returns_none(self):
        assert extract_signature({"content-type": "application/json"}) is None

    def test_blank_header_is_ignored(self):
        assert extract_signature({"x-webhook-signature": "  ", "x-signature": "abc"}) == "abc"

    def test_strip_prefix_helper(self):
        assert strip_signature_prefix(" sha256=ABC ") == "abc"
        assert strip_signature_prefix("abc") == "abc"


class TestVerifyTimestamp:
    NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def test_recent_epoch_seconds(self):
        ts = int((self.NOW - timedelta(minutes=2)).timestamp())
        assert verify_timestamp(ts, now=self.NOW) is True

    def test_epoch_milliseconds(self):
        ts = int((self.NOW - timedelta(minutes=1)).timestamp() * 1000)
        assert verify_timestamp(ts, now=self.NOW) is True

    def test_numeric_string(self):
        ts = str(int((self.NOW - timedelta(minutes=1)).timestamp()))
        assert verify_timestamp(ts, now=self.NOW) is True

    def test_iso_8601_with_z(self):
        assert verify_timestamp("2026-03-01T11:58:00Z", now=self.NOW) is True

    def test_too_old(self):
        ts = (self.NOW - timedelta(minutes=6)).isoformat()
        assert verify_timestamp(ts, now=self.NOW) is False

    def test_custom_window(self):
        ts = (self.NOW - timedelta(minutes=6)).isoformat()
        assert verify_timestamp(ts, max_age_minutes=10, now=self.NOW) is True

    def test_future_timestamp_rejected(self):
        ts = (self.NOW + timedelta(minutes=5)).isoformat()
        assert verify_timestamp(ts, now=self.NOW) is False

    def test_small_clock_skew_tolerated(self):
        ts = (self.NOW + timedelta(seconds=10)).isoformat()
        assert verify_timestamp(ts, now=self.NOW) is True

    @pytest.mark.parametrize("ts", [None, "", "yesterday", True, {"t": 1}])
    def test_unparsable_rejected(self, ts):
        assert verify_timestamp(ts, now=self.NOW) is False


class TestGenerateSecret:
    def test_length_and_uniqueness(self):
        first = generate_secret()
        assert len(first) == 64
        assert first != generate_secret()
        assert len(generate_secret(16)) == 32
