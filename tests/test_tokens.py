"""Unit tests for JWT issuance, verify-token burn and refresh rotation."""

import base64
import json
from datetime import timedelta

import pytest

from lawmakers_auth.config import Settings
from lawmakers_auth.service.tokens import (
    AccessClaims,
    TokenService,
    VerifyClaims,
    generate_token_id,
    parse_claims,
)
from lawmakers_auth.storage.redis_cache import MemoryCache


@pytest.fixture
def settings():
    return Settings(jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!")


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def tokens(cache, settings):
    return TokenService(cache, settings)


def _shift_clock(monkeypatch, service, delta):
    base = service._now()
    monkeypatch.setattr(service, "_now", lambda: base + delta)


def _payload(token):
    segment = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


class TestAccessTokens:
    def test_round_trip(self, tokens):
        token = tokens.issue_access_token("user-1", "a@example.com")
        claims = tokens.verify_access_token(token)
        assert isinstance(claims, AccessClaims)
        assert claims.sub == "user-1"
        assert claims.email == "a@example.com"
        assert claims.exp - claims.iat == 15 * 60

    def test_payload_carries_issuer_and_audience(self, tokens):
        payload = _payload(tokens.issue_access_token("user-1", "a@example.com"))
        assert payload["iss"] == "lawmakers-auth"
        assert payload["aud"] == "lawmakers-app"
        assert payload["purpose"] == "access"

    def test_tampered_signature_rejected(self, tokens):
        token = tokens.issue_access_token("user-1", "a@example.com")
        head, body, sig = token.split(".")
        forged = f"{head}.{body}.{sig[:-2]}{'AA' if sig[-2:] != 'AA' else 'BB'}"
        assert tokens.verify_access_token(forged) is None

    def test_other_secret_rejected(self, tokens, cache):
        other = TokenService(cache, Settings(jwt_secret="a-completely-different-secret-value-0123456789"))
        assert tokens.verify_access_token(other.issue_access_token("user-1", "a@example.com")) is None

    def test_wrong_audience_rejected(self, tokens, cache):
        other = TokenService(
            cache,
            Settings(
                jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
                jwt_audience="someone-else",
            ),
        )
        assert tokens.verify_access_token(other.issue_access_token("user-1", "a@example.com")) is None

    def test_none_algorithm_rejected(self, tokens):
        token = tokens.issue_access_token("user-1", "a@example.com")
        _, body, _ = token.split(".")
        header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').decode().rstrip("=")
        assert tokens.verify_access_token(f"{header}.{body}.") is None

    def test_non_ascii_signature_rejected(self, tokens):
        head, body, _ = tokens.issue_access_token("user-1", "a@example.com").split(".")
        assert tokens.verify_access_token(f"{head}.{body}.\u00e9\u00e9") is None
        assert tokens.verify_access_token(f"{head}.{body}.\u00e9", allow_expired=True) is None

    @pytest.mark.parametrize("token", [None, "", "abc", "a.b", "a.b.c.d", "!!.!!.!!"])
    def test_garbage_rejected(self, tokens, token):
        assert tokens.verify_access_token(token) is None

    def test_expired_token_rejected_unless_allowed(self, tokens, monkeypatch):
        token = tokens.issue_access_token("user-1", "a@example.com")
        _shift_clock(monkeypatch, tokens, timedelta(hours=1))
        assert tokens.verify_access_token(token) is None
        claims = tokens.verify_access_token(token, allow_expired=True)
        assert claims is not None and claims.sub == "user-1"

    def test_leeway_covers_small_skew(self, tokens, monkeypatch):
        token = tokens.issue_access_token("user-1", "a@example.com")
        _shift_clock(monkeypatch, tokens, timedelta(minutes=15, seconds=10))
        assert tokens.verify_access_token(token) is not None

    async def test_verify_token_is_not_an_access_token(self, tokens):
        verify_token = await tokens.issue_verify_token("user-1", "a@example.com")
        assert tokens.verify_access_token(verify_token) is None
        assert tokens.verify_access_token(verify_token, allow_expired=True) is None


class TestParseClaims:
    def test_access_variant(self):
        claims = parse_claims(
            {"sub": "u", "email": "e@x.io", "iat": 1, "exp": 2, "aud": "app", "purpose": "access"}
        )
        assert isinstance(claims, AccessClaims)

    def test_verify_variant(self):
        claims = parse_claims(
            {"sub": "u", "email": "e@x.io", "iat": 1, "exp": 2, "jti": "j", "purpose": "verify"}
        )
        assert isinstance(claims, VerifyClaims)

    @pytest.mark.parametrize(
        "payload",
        [
            {"sub": "u", "email": "e@x.io", "iat": 1, "exp": 2, "purpose": "access"},
            {"sub": "u", "email": "e@x.io", "iat": 1, "exp": 2, "purpose": "verify"},
            {"sub": "u", "email": "e@x.io", "iat": 1, "exp": 2, "aud": "app", "purpose": "reset"},
            {"sub": "u", "email": "e@x.io", "iat": True, "exp": 2, "aud": "app", "purpose": "access"},
            {"sub": "", "email": "e@x.io", "iat": 1, "exp": 2, "aud": "app", "purpose": "access"},
        ],
    )
    def test_incomplete_payloads(self, payload):
        assert parse_claims(payload) is None


class TestVerifyTokens:
    async def test_consume_once(self, tokens):
        token = await tokens.issue_verify_token("user-1", "a@example.com")
        claims = await tokens.consume_verify_token(token)
        assert isinstance(claims, VerifyClaims)
        assert claims.sub == "user-1"
        assert await tokens.consume_verify_token(token) is None

    async def test_expired_verify_token(self, tokens, monkeypatch):
        token = await tokens.issue_verify_token("user-1", "a@example.com")
        _shift_clock(monkeypatch, tokens, timedelta(days=2))
        assert await tokens.consume_verify_token(token) is None

    async def test_unknown_jti(self, tokens, cache):
        token = await tokens.issue_verify_token("user-1", "a@example.com")
        await cache.pop_verify_token(_payload(token)["jti"])
        assert await tokens.consume_verify_token(token) is None

    async def test_store_failure_is_treated_as_invalid(self, tokens, cache, monkeypatch):
        token = await tokens.issue_verify_token("user-1", "a@example.com")

        async def _boom(jti):
            raise ConnectionError("redis down")

        monkeypatch.setattr(cache, "pop_verify_token", _boom)
        assert await tokens.consume_verify_token(token) is None

    async def test_non_ascii_verify_token_rejected(self, tokens):
        head, body, _ = (await tokens.issue_verify_token("user-1", "a@example.com")).split(".")
        assert await tokens.consume_verify_token(f"{head}.{body}.\u00e9") is None

    async def test_access_token_cannot_verify_email(self, tokens):
        assert await tokens.consume_verify_token(tokens.issue_access_token("user-1", "a@example.com")) is None


class TestRefreshTokens:
    def test_ids_are_random_urlsafe(self):
        first, second = generate_token_id(), generate_token_id()
        assert first != second
        assert len(first) == 43
        assert set(first) <= set("ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_")

    async def test_store_and_validate(self, tokens):
        token_id = tokens.generate_refresh_token()
        await tokens.store_refresh_token("user-1", token_id)
        assert await tokens.validate_refresh_token("user-1", token_id)
        assert not await tokens.validate_refresh_token("user-2", token_id)
        assert not await tokens.validate_refresh_token("user-1", None)

    async def test_rotation_invalidates_old_id(self, tokens):
        old = tokens.generate_refresh_token()
        await tokens.store_refresh_token("user-1", old)
        new = await tokens.rotate_refresh_token("user-1", old)
        assert new and new != old
        assert not await tokens.validate_refresh_token("user-1", old)
        assert await tokens.validate_refresh_token("user-1", new)
        assert await tokens.rotate_refresh_token("user-1", old) is None

    async def test_revoke_all(self, tokens):
        ids = [tokens.generate_refresh_token() for _ in range(3)]
        for token_id in ids:
            await tokens.store_refresh_token("user-1", token_id)
        other = tokens.generate_refresh_token()
        await tokens.store_refresh_token("user-2", other)
        assert await tokens.revoke_all_refresh_tokens("user-1") == 3
        for token_id in ids:
            assert not await tokens.validate_refresh_token("user-1", token_id)
        assert await tokens.validate_refresh_token("user-2", other)

    async def test_delete(self, tokens):
        token_id = tokens.generate_refresh_token()
        await tokens.store_refresh_token("user-1", token_id)
        assert await tokens.delete_refresh_token("user-1", token_id)
        assert not await tokens.delete_refresh_token("user-1", token_id)
