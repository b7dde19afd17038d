"""
Tests for utility helpers.

Tests cover:
- HMAC signature verification
- Platform timestamp parsing
- Participant merging
"""

import hashlib
import hmac
from datetime import datetime, timezone

import pytest

from social_sync.unified_store import KeyedLock, merge_participants
from social_sync.utils import isoformat, parse_timestamp, verify_hmac_signature

SECRET = "app-secret"
BODY = b'{"object":"page","entry":[]}'


def sign(body: bytes, secret: str = SECRET) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class TestSignature:
    """Test verify_hmac_signature."""

    def test_prefixed_signature(self):
        assert verify_hmac_signature(BODY, f"sha256={sign(BODY)}", SECRET) is True

    def test_bare_signature(self):
        assert verify_hmac_signature(BODY, sign(BODY), SECRET) is True

    def test_tampered_body(self):
        assert verify_hmac_signature(BODY + b" ", f"sha256={sign(BODY)}", SECRET) is False

    def test_wrong_secret(self):
        assert verify_hmac_signature(BODY, f"sha256={sign(BODY, 'other')}", SECRET) is False

    @pytest.mark.parametrize("signature,secret", [(None, SECRET), ("", SECRET), ("sha256=abc", "")])
    def test_missing_values(self, signature, secret):
        assert verify_hmac_signature(BODY, signature, secret) is False


class TestTimestamps:
    """Test parse_timestamp and isoformat."""

    expected = datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", [
        "2025-01-15T10:00:00Z",
        "2025-01-15T10:00:00+0000",
        "2025-01-15T12:00:00+02:00",
        1736935200000,
        datetime(2025, 1, 15, 10, 0),
    ])
    def test_accepted_formats(self, value):
        assert parse_timestamp(value) == self.expected

    @pytest.mark.parametrize("value", [None, "", "not-a-date", True, ["2025"]])
    def test_invalid_values(self, value):
        assert parse_timestamp(value) is None

    def test_isoformat(self):
        assert isoformat(self.expected) == "2025-01-15T10:00:00.000Z"
        assert isoformat(None) is None


class TestParticipants:
    """Test merge_participants."""

    def test_union_ordered_by_id(self):
        merged = merge_participants(
            [{"id": "b", "name": "Bea"}],
            [{"id": "a", "name": None}, {"id": "b", "name": None}],
        )

        assert merged == [{"id": "a", "name": None}, {"id": "b", "name": "Bea"}]

    def test_order_independent(self):
        first = [{"id": "u1", "name": None}]
        second = [{"id": "u1", "name": "Ana"}, {"id": "page", "name": "Clinic"}]

        assert merge_participants(first, second) == merge_participants(second, first)

    def test_ignores_entries_without_id(self):
        assert merge_participants([], [{"name": "ghost"}]) == []


class TestKeyedLock:
    """Test KeyedLock bookkeeping."""

    def test_lock_released_and_dropped(self):
        locks = KeyedLock()

        with locks.hold(("conn", "thread")):
            assert ("conn", "thread") in locks._locks

        assert locks._locks == {}
