# tests/test_token_manager.py
"""Unit tests for the token manager: caching, expiry skew, coalescing, failures."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import asyncio
import httpx
import pytest
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock

from app.exceptions import AuthUnavailableError, InvalidCredentialsError
from app.services.token_manager import TokenManager, parse_expiry
from tests.fakes import BASE_URL, FakeProvider, fail, token_payload


def make_credential(secret="secret-1", branch_id="BR-001"):
    return SimpleNamespace(branch_id=branch_id, api_base_url=BASE_URL, app_key="key", app_secret=secret)


class Clock:
    def __init__(self):
        self.now = datetime.now(timezone.utc)

    def __call__(self):
        return self.now


class TestTokenCache:
    @pytest.mark.asyncio
    async def test_token_reused_while_fresh(self, provider, tokens):
        cred = make_credential()
        first = await tokens.get_valid_token(cred)
        second = await tokens.get_valid_token(cred)

        assert first.access_token == "tok-1"
        assert second is first
        assert len(provider.calls_to("/token/get")) == 1

    @pytest.mark.asyncio
    async def test_refresh_inside_skew_window(self, provider):
        clock = Clock()
        provider.on("/token/get", token_payload("tok-1", expires_in=3600), token_payload("tok-2", expires_in=3600))
        tokens = TokenManager(skew_seconds=60, transport=provider.transport, clock=clock, sleep=AsyncMock())
        cred = make_credential()

        assert (await tokens.get_valid_token(cred)).access_token == "tok-1"

        clock.now += timedelta(seconds=3500)          # 100s left: still fresh
        assert (await tokens.get_valid_token(cred)).access_token == "tok-1"

        clock.now += timedelta(seconds=50)            # 50s left: inside the 60s skew
        assert (await tokens.get_valid_token(cred)).access_token == "tok-2"
        assert len(provider.calls_to("/token/get")) == 2

    @pytest.mark.asyncio
    async def test_credential_change_forces_new_token(self, provider, tokens):
        provider.on("/token/get", token_payload("tok-1"), token_payload("tok-2"))

        await tokens.get_valid_token(make_credential(secret="old"))
        token = await tokens.get_valid_token(make_credential(secret="new"))

        assert token.access_token == "tok-2"
        assert provider.calls_to("/token/get")[1] == {"appKey": "key", "secretKey": "new"}

    @pytest.mark.asyncio
    async def test_invalidate_drops_cached_token(self, provider, tokens):
        provider.on("/token/get", token_payload("tok-1"), token_payload("tok-2"))
        cred = make_credential()

        await tokens.get_valid_token(cred)
        tokens.invalidate(cred.branch_id)

        assert tokens.cached_token(cred.branch_id) is None
        assert (await tokens.get_valid_token(cred)).access_token == "tok-2"

    @pytest.mark.asyncio
    async def test_branches_cached_independently(self, provider, tokens):
        provider.on("/token/get", token_payload("tok-a"), token_payload("tok-b"))

        a = await tokens.get_valid_token(make_credential(branch_id="A"))
        b = await tokens.get_valid_token(make_credential(branch_id="B"))

        assert (a.access_token, b.access_token) == ("tok-a", "tok-b")


class TestTokenCoalescing:
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self, provider, tokens):
        cred = make_credential()
        results = await asyncio.gather(*(tokens.get_valid_token(cred) for _ in range(5)))

        assert {t.access_token for t in results} == {"tok-1"}
        assert len(provider.calls_to("/token/get")) == 1

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_failure(self, provider, tokens):
        provider.on("/token/get", fail("EVZ10001", "invalid appKey"))
        cred = make_credential()

        results = await asyncio.gather(*(tokens.get_valid_token(cred) for _ in range(3)),
                                       return_exceptions=True)

        assert all(isinstance(r, InvalidCredentialsError) for r in results)
        assert len(provider.calls_to("/token/get")) == 1

    @pytest.mark.asyncio
    async def test_changed_secret_does_not_join_old_refresh(self, provider, tokens):
        provider.on("/token/get", lambda body: token_payload(token=f"tok-{body['secretKey']}"))

        old, new = await asyncio.gather(tokens.get_valid_token(make_credential("secret-1")),
                                        tokens.get_valid_token(make_credential("secret-2")))

        assert (old.access_token, new.access_token) == ("tok-secret-1", "tok-secret-2")
        assert len(provider.calls_to("/token/get")) == 2


class TestTokenFailures:
    @pytest.mark.asyncio
    async def test_rejected_credentials_fail_fast(self, provider, tokens):
        provider.on("/token/get", fail("EVZ10001", "invalid appKey"))

        with pytest.raises(InvalidCredentialsError):
            await tokens.get_valid_token(make_credential())
        assert len(provider.calls_to("/token/get")) == 1

    @pytest.mark.asyncio
    async def test_missing_access_token_is_rejected(self, provider, tokens):
        provider.on("/token/get", {"expireTime": 0})

        with pytest.raises(InvalidCredentialsError):
            await tokens.get_valid_token(make_credential())

    @pytest.mark.asyncio
    async def test_network_errors_retried_with_backoff(self):
        provider = FakeProvider().on("/token/get", httpx.ConnectError("refused"))
        sleep = AsyncMock()
        tokens = TokenManager(retry_attempts=3, retry_base_delay=0.5, transport=provider.transport, sleep=sleep)

        with pytest.raises(AuthUnavailableError) as exc:
            await tokens.get_valid_token(make_credential())

        assert len(provider.calls_to("/token/get")) == 3
        assert [c.args[0] for c in sleep.await_args_list] == [0.5, 1.0]
        assert exc.value.__cause__ is not None

    @pytest.mark.asyncio
    async def test_server_error_then_success(self):
        provider = FakeProvider().on("/token/get", httpx.Response(503), token_payload("tok-ok"))
        sleep = AsyncMock()
        tokens = TokenManager(retry_attempts=3, retry_base_delay=0.5, transport=provider.transport, sleep=sleep)

        token = await tokens.get_valid_token(make_credential())

        assert token.access_token == "tok-ok"
        sleep.assert_awaited_once_with(0.5)


class TestParseExpiry:
    NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def test_epoch_milliseconds(self):
        ms = int(datetime(2026, 1, 8, tzinfo=timezone.utc).timestamp() * 1000)
        assert parse_expiry({"expireTime": ms}, self.NOW, 60) == datetime(2026, 1, 8, tzinfo=timezone.utc)

    def test_epoch_seconds(self):
        s = int(datetime(2026, 1, 2, tzinfo=timezone.utc).timestamp())
        assert parse_expiry({"expireTime": s}, self.NOW, 60) == datetime(2026, 1, 2, tzinfo=timezone.utc)

    def test_iso_string(self):
        assert parse_expiry({"expireTime": "2026-01-03T00:00:00Z"}, self.NOW, 60) == \
            datetime(2026, 1, 3, tzinfo=timezone.utc)

    def test_expires_in(self):
        assert parse_expiry({"expiresIn": 120}, self.NOW, 60) == self.NOW + timedelta(seconds=120)

    def test_default_ttl_when_absent(self):
        assert parse_expiry({}, self.NOW, 7 * 24 * 3600) == self.NOW + timedelta(days=7)
