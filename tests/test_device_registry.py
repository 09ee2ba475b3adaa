# tests/test_device_registry.py
"""Unit tests for device sync: paging, atomic failure, stale marking, door handling."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import httpx
import pytest
from unittest.mock import patch
from app.config import settings
from app.exceptions import PartialDataError, ProviderUnreachableError
from app.models.device import Device
from app.models.sync_log import SyncLog
from app.services.device_registry import DeviceRegistry
from tests.fakes import BRANCH, fail


def device(serial, name=None, online=1):
    return {"deviceSerial": serial, "deviceName": name or serial, "deviceType": "DS-K1T671",
            "onlineStatus": online}


def paged(devices, with_total=True):
    def respond(body):
        size, page = body["pageSize"], body["pageNo"]
        data = {"devices": devices[(page - 1) * size: page * size]}
        if with_total:
            data["totalCount"] = len(devices)
        return data
    return respond


def doors_for(mapping):
    def respond(body):
        value = mapping[body["deviceSerial"]]
        return value if isinstance(value, httpx.Response) else {"doors": value}
    return respond


def two_doors():
    return [{"doorNo": 1, "doorName": "Main", "doorStatus": 0},
            {"doorNo": 2, "doorName": "Studio", "doorStatus": 0}]


@pytest.fixture
def registry(router):
    return DeviceRegistry(router=router)


class TestDeviceSync:
    @pytest.mark.asyncio
    async def test_sync_all_pages_and_doors(self, db, credential, provider, registry):
        provider.on("/device/list", paged([device("SN-1"), device("SN-2"), device("SN-3")]))
        provider.on("/door/list", doors_for({"SN-1": two_doors(), "SN-2": two_doors(), "SN-3": []}))

        with patch.object(settings, "DEVICE_PAGE_SIZE", 2):
            devices = await registry.sync_devices(db, BRANCH)

        assert [d.serial_number for d in devices] == ["SN-1", "SN-2", "SN-3"]
        assert [d.door_name for d in devices[0].doors] == ["Main", "Studio"]
        assert devices[0].is_online is True
        assert len(provider.calls_to("/device/list")) == 2
        assert credential.last_sync_status == "success"
        assert db.query(SyncLog).filter(SyncLog.status == "success").count() == 1

    @pytest.mark.asyncio
    async def test_pages_without_total_count(self, db, credential, provider, registry):
        provider.on("/device/list", paged([device("SN-001"), device("SN-002"), device("SN-003")], with_total=False))
        provider.on("/door/list", {"doors": []})

        with patch.object(settings, "DEVICE_PAGE_SIZE", 2):
            devices = await registry.sync_devices(db, BRANCH)

        assert [d.serial_number for d in devices] == ["SN-001", "SN-002", "SN-003"]
        assert [c["pageNo"] for c in provider.calls_to("/device/list")] == [1, 2]
        assert not any(d.is_stale for d in devices)

    @pytest.mark.asyncio
    async def test_full_last_page_without_total_reads_one_more(self, db, credential, provider, registry):
        provider.on("/device/list", paged([device("SN-001"), device("SN-002")], with_total=False))
        provider.on("/door/list", {"doors": []})

        with patch.object(settings, "DEVICE_PAGE_SIZE", 2):
            devices = await registry.sync_devices(db, BRANCH)

        assert len(devices) == 2
        assert [c["pageNo"] for c in provider.calls_to("/device/list")] == [1, 2]

    @pytest.mark.asyncio
    async def test_embedded_doors_skip_door_call(self, db, credential, provider, registry):
        payload = device("SN-1")
        payload["doorList"] = [{"doorNo": 1, "doorName": "Gate"}]
        provider.on("/device/list", {"devices": [payload], "totalCount": 1})

        devices = await registry.sync_devices(db, BRANCH)

        assert devices[0].doors[0].door_name == "Gate"
        assert provider.calls_to("/door/list") == []

    @pytest.mark.asyncio
    async def test_invalid_device_payload_skipped(self, db, credential, provider, registry):
        provider.on("/device/list", {"devices": [{"deviceName": "no serial"}, device("SN-1")], "totalCount": 2})
        provider.on("/door/list", {"doors": []})

        devices = await registry.sync_devices(db, BRANCH)

        assert [d.serial_number for d in devices] == ["SN-1"]

    @pytest.mark.asyncio
    async def test_missing_device_marked_stale_not_deleted(self, db, credential, provider, registry):
        provider.on("/door/list", {"doors": two_doors()})
        provider.on("/device/list", {"devices": [device("SN-1"), device("SN-2")], "totalCount": 2})
        await registry.sync_devices(db, BRANCH)

        provider.on("/device/list", {"devices": [device("SN-1")], "totalCount": 1})
        devices = await registry.sync_devices(db, BRANCH)

        stale = {d.serial_number: d for d in devices}["SN-2"]
        assert stale.is_stale is True
        assert stale.is_online is False
        assert len(stale.doors) == 2
        assert [d.serial_number for d in registry.get_devices(db, BRANCH, include_stale=False)] == ["SN-1"]

    @pytest.mark.asyncio
    async def test_door_ids_stable_and_removed_doors_flagged(self, db, credential, provider, registry):
        provider.on("/device/list", {"devices": [device("SN-1")], "totalCount": 1})
        provider.on("/door/list", {"doors": two_doors()}, {"doors": two_doors()[:1]})

        first = await registry.sync_devices(db, BRANCH)
        ids = {d.door_no: d.id for d in first[0].doors}
        second = await registry.sync_devices(db, BRANCH)

        doors = {d.door_no: d for d in second[0].doors}
        assert {n: d.id for n, d in doors.items()} == ids
        assert doors[2].door_status == "removed"
        assert doors[1].door_status == "0"

    @pytest.mark.asyncio
    async def test_offline_device_keeps_cached_doors(self, db, credential, provider, registry):
        provider.on("/device/list", {"devices": [device("SN-1")], "totalCount": 1})
        provider.on("/door/list", {"doors": two_doors()}, fail("EVZ20007", "device offline"))

        await registry.sync_devices(db, BRANCH)
        devices = await registry.sync_devices(db, BRANCH)

        assert devices[0].is_online is False
        assert devices[0].is_stale is False
        assert len(devices[0].doors) == 2


class TestDeviceSyncFailures:
    @pytest.mark.asyncio
    async def test_door_failure_leaves_cache_untouched(self, db, credential, provider, registry):
        provider.on("/device/list", {"devices": [device("SN-1", name="Old name")], "totalCount": 1})
        provider.on("/door/list", {"doors": two_doors()})
        await registry.sync_devices(db, BRANCH)

        provider.on("/device/list", {"devices": [device("SN-1", name="New name"), device("SN-2")],
                                     "totalCount": 2})
        provider.on("/door/list", doors_for({"SN-1": two_doors(), "SN-2": fail("0x30001000", "HBP Exception")}))

        with pytest.raises(PartialDataError) as exc:
            await registry.sync_devices(db, BRANCH)

        assert exc.value.failed_devices == ["SN-2"]
        db.expire_all()
        cached = db.query(Device).filter(Device.branch_id == BRANCH).all()
        assert [(d.serial_number, d.name) for d in cached] == [("SN-1", "Old name")]
        assert credential.last_sync_status == "failed"
        assert db.query(SyncLog).filter(SyncLog.status == "error").count() == 1

    @pytest.mark.asyncio
    async def test_provider_unreachable(self, db, credential, provider, registry):
        provider.on("/device/list", httpx.ConnectError("connection refused"))

        with pytest.raises(ProviderUnreachableError):
            await registry.sync_devices(db, BRANCH)

        assert registry.get_devices(db, BRANCH) == []
        assert credential.last_sync_status == "failed"

    @pytest.mark.asyncio
    async def test_get_devices_never_calls_provider(self, db, credential, provider, registry):
        assert registry.get_devices(db, BRANCH) == []
        assert provider.calls == []
