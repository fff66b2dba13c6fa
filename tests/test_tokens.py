"""Tests for src/security/tokens.py — caller token admission and admin mutation."""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from src.security.ratelimit import SlidingWindowLimiter
from src.security.tokens import (
    DISABLED,
    EXPIRED,
    INVALID_TOKEN,
    RATE_LIMITED,
    TokenRegistry,
)
from src.store.models import CallerToken, utcnow


@pytest.fixture
def registry(json_store):
    return TokenRegistry(json_store, SlidingWindowLimiter(window_seconds=60.0))


async def _seed(store, **kwargs) -> CallerToken:
    fields = {"name": "alice", "token": "tok-alice", "rpm": 3}
    fields.update(kwargs)
    return await store.save_token(CallerToken(**fields))


class TestAdmit:

    async def test_valid_token(self, registry, json_store):
        await _seed(json_store)
        await registry.load()
        admission = registry.admit("tok-alice")
        assert admission.allowed is True
        assert admission.caller_name == "alice"
        assert admission.rate.remaining == 2

    async def test_unknown_token(self, registry):
        await registry.load()
        admission = registry.admit("nope")
        assert admission.allowed is False
        assert admission.code == INVALID_TOKEN
        assert admission.status_code == 401

    async def test_disabled_token(self, registry, json_store):
        await _seed(json_store, is_enabled=False)
        await registry.load()
        admission = registry.admit("tok-alice")
        assert admission.code == DISABLED
        assert admission.status_code == 403

    async def test_rate_limited_after_rpm(self, registry, json_store):
        await _seed(json_store)
        await registry.load()
        with patch("src.security.ratelimit.time.monotonic", return_value=500.0):
            for _ in range(3):
                assert registry.admit("tok-alice").allowed is True
            admission = registry.admit("tok-alice")
        assert admission.code == RATE_LIMITED
        assert admission.status_code == 429
        assert "3 RPM" in admission.message

    async def test_window_reopens_after_sixty_seconds(self, registry, json_store):
        await _seed(json_store)
        await registry.load()
        with patch("src.security.ratelimit.time.monotonic", return_value=500.0):
            for _ in range(3):
                registry.admit("tok-alice")
        with patch("src.security.ratelimit.time.monotonic", return_value=560.0):
            assert registry.admit("tok-alice").allowed is True


class TestExpiry:

    async def test_expired_at_load_is_disabled_and_persisted(self, registry, json_store):
        await _seed(json_store, expires_at=utcnow() - timedelta(minutes=1))
        await registry.load()

        stored = (await json_store.get_tokens())[0]
        assert stored.is_enabled is False
        assert registry.admit("tok-alice").code == DISABLED

    async def test_expires_mid_session(self, registry, json_store):
        expires = utcnow() + timedelta(minutes=5)
        await _seed(json_store, expires_at=expires)
        await registry.load()

        assert registry.admit("tok-alice").allowed is True
        admission = registry.admit("tok-alice", now=expires + timedelta(seconds=1))
        assert admission.allowed is False
        assert admission.code == EXPIRED
        assert admission.status_code == 403

    async def test_expired_wins_over_enabled(self, registry, json_store):
        """An enabled token past its expiry is rejected as expired, not admitted."""
        token = await _seed(json_store, expires_at=utcnow() + timedelta(hours=1))
        await registry.load()
        later = token.expires_at + timedelta(hours=1)
        assert registry.admit("tok-alice", now=later).code == EXPIRED


class TestAdminMutation:

    async def test_create_token(self, registry, json_store):
        await registry.load()
        token = await registry.create_token("bob", rpm=10)

        assert len(token.token) == 48
        assert token.id is not None
        assert registry.admit(token.token).caller_name == "bob"
        assert [t.name for t in await json_store.get_tokens()] == ["bob"]

    async def test_create_rejects_bad_rpm(self, registry):
        with pytest.raises(ValueError):
            await registry.create_token("bob", rpm=0)

    async def test_update_token(self, registry, json_store):
        seeded = await _seed(json_store)
        await registry.load()

        updated = await registry.update_token(seeded.id, rpm=1, name="alice2")

        assert updated.rpm == 1
        assert registry.caller_name("tok-alice") == "alice2"
        assert registry.admit("tok-alice").allowed is True
        assert registry.admit("tok-alice").code == RATE_LIMITED
        assert (await json_store.get_tokens())[0].rpm == 1

    async def test_update_can_clear_expiry(self, registry, json_store):
        seeded = await _seed(json_store, expires_at=utcnow() + timedelta(minutes=1))
        await registry.load()
        updated = await registry.update_token(seeded.id, expires_at=None)
        assert updated.expires_at is None

    async def test_create_with_naive_expiry(self, registry):
        await registry.load()
        token = await registry.create_token("bob", expires_at=datetime.now() + timedelta(days=1))

        assert token.expires_at.tzinfo is not None
        assert registry.admit(token.token).allowed is True

    async def test_update_with_naive_expiry(self, registry, json_store):
        seeded = await _seed(json_store)
        await registry.load()

        past = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(hours=1)
        updated = await registry.update_token(seeded.id, expires_at=past)

        assert updated.expires_at.tzinfo is timezone.utc
        assert registry.admit("tok-alice").code == EXPIRED

    async def test_update_accepts_iso_expiry(self, registry, json_store):
        seeded = await _seed(json_store)
        await registry.load()

        updated = await registry.update_token(seeded.id, expires_at="2999-01-01T00:00:00Z")

        assert updated.expires_at == datetime(2999, 1, 1, tzinfo=timezone.utc)
        assert registry.admit("tok-alice").allowed is True

    async def test_regenerate_token(self, registry, json_store):
        seeded = await _seed(json_store)
        await registry.load()

        regenerated = await registry.regenerate_token(seeded.id)

        assert regenerated.token != "tok-alice"
        assert registry.admit("tok-alice").code == INVALID_TOKEN
        assert registry.admit(regenerated.token).allowed is True

    async def test_delete_token_clears_window(self, registry, json_store):
        seeded = await _seed(json_store)
        await registry.load()
        registry.admit("tok-alice")

        await registry.delete_token(seeded.id)

        assert registry.admit("tok-alice").code == INVALID_TOKEN
        assert registry.limiter.count("tok-alice") == 0
        assert await json_store.get_tokens() == []

    async def test_unknown_id_raises(self, registry):
        await registry.load()
        with pytest.raises(KeyError):
            await registry.update_token("missing", rpm=5)
