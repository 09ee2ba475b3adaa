# tests/test_connection_prober.py
"""Unit tests for the credential connection test."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import httpx
import pytest
from unittest.mock import MagicMock, patch
from app.config import settings
from app.services import connection_prober
from app.services.credential_store import upsert_credential
from tests.fakes import BASE_URL, BRANCH, fail


async def probe(db, provider, branch_id=BRANCH):
    return await connection_prober.test_connection(db, branch_id, transport=provider.transport)


class TestConnectionProber:
    @pytest.mark.asyncio
    async def test_connected(self, db, credential, provider):
        provider.on("/device/list", {"devices": [{"deviceSerial": "SN-1"}], "totalCount": 3})

        result = await probe(db, provider)

        assert result.success is True
        assert result.message == "connected (3 devices)"

    @pytest.mark.asyncio
    async def test_device_count_without_total(self, db, credential, provider):
        def page(body):
            devices = [{"deviceSerial": f"SN-{i}"} for i in range(3)]
            size, no = body["pageSize"], body["pageNo"]
            return {"devices": devices[(no - 1) * size: no * size]}
        provider.on("/device/list", page)

        with patch.object(settings, "DEVICE_PAGE_SIZE", 2):
            result = await probe(db, provider)

        assert result.message == "connected (3 devices)"

    @pytest.mark.asyncio
    async def test_missing_credentials(self, db, provider):
        result = await probe(db, provider)

        assert (result.success, result.message) == (False, "missing credentials")
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_inactive_credentials(self, db, provider):
        upsert_credential(db, BRANCH, BASE_URL, "k", "s", is_active=False, tokens=MagicMock())

        result = await probe(db, provider)
        assert result.message == "credentials inactive"

    @pytest.mark.asyncio
    async def test_invalid_key_is_auth_rejected(self, db, credential, provider):
        provider.on("/token/get", fail("EVZ10001", "invalid appKey or secretKey"))

        result = await probe(db, provider)

        assert (result.success, result.message) == (False, "auth rejected")
        assert len(provider.calls_to("/token/get")) == 1

    @pytest.mark.asyncio
    async def test_token_rejected_on_call(self, db, credential, provider):
        provider.on("/device/list", httpx.Response(401))

        result = await probe(db, provider)
        assert result.message == "auth rejected"

    @pytest.mark.asyncio
    async def test_network_unreachable(self, db, credential, provider):
        provider.on("/token/get", httpx.ConnectError("no route to host"))

        result = await probe(db, provider)
        assert result.message == "network unreachable"

    @pytest.mark.asyncio
    async def test_provider_server_error(self, db, credential, provider):
        provider.on("/device/list", httpx.Response(500))

        result = await probe(db, provider)
        assert result.message == "provider error (HTTP 500)"

    @pytest.mark.asyncio
    async def test_provider_vendor_error(self, db, credential, provider):
        provider.on("/device/list", fail("0x01400006", "banned"))

        result = await probe(db, provider)
        assert result.message == "provider error: IP address is banned"
