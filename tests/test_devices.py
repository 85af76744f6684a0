"""Tests for the device registry."""
import asyncio
import pytest

from src.core.errors import ValidationError
from src.mobile.devices import DeviceRegistry

from .conftest import ManualClock


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def clocked_registry(store, clock) -> DeviceRegistry:
    return DeviceRegistry(store, clock=clock, online_window_seconds=300)


class TestRegister:
    """Registration is idempotent."""

    async def test_first_register_creates_device(self, clocked_registry, clock):
        device = await clocked_registry.register("phone-1", "android", device_name="Pixel")

        assert device.device_id == "phone-1"
        assert device.platform == "android"
        assert device.registered_at == clock.now()
        assert device.last_seen_at == clock.now()
        assert device.push_channel == "phone-1"
        assert device.device_name == "Pixel"

    async def test_register_twice_keeps_one_record(self, clocked_registry, store, clock):
        first = await clocked_registry.register("phone-1", "ios")
        clock.advance(60)
        second = await clocked_registry.register(
            "phone-1", "android", app_version="2.0", push_channel="apns:abc"
        )

        devices = await store.list_devices()
        assert len(devices) == 1
        assert second.device_id == "phone-1"
        assert second.platform == "ios"
        assert second.registered_at == first.registered_at
        assert second.last_seen_at > first.last_seen_at
        assert second.app_version == "2.0"
        assert second.push_channel == "apns:abc"

    async def test_concurrent_registers_do_not_duplicate(self, clocked_registry, store):
        await asyncio.gather(*(clocked_registry.register("phone-1", "ios") for _ in range(5)))
        assert len(await store.list_devices()) == 1

    @pytest.mark.parametrize("device_id,platform", [("", "ios"), ("phone-1", ""), ("  ", "ios")])
    async def test_missing_fields_rejected(self, clocked_registry, device_id, platform):
        with pytest.raises(ValidationError):
            await clocked_registry.register(device_id, platform)


class TestTouchAndLookup:
    """Liveness tracking."""

    async def test_touch_refreshes_last_seen(self, clocked_registry, clock):
        await clocked_registry.register("phone-1", "ios")
        clock.advance(10)

        device = await clocked_registry.touch("phone-1")
        assert device.last_seen_at == clock.now()

    async def test_touch_unknown_is_noop(self, clocked_registry, store):
        assert await clocked_registry.touch("ghost") is None
        assert await store.list_devices() == []

    async def test_unknown_ids_leave_no_state_behind(self, clocked_registry):
        for i in range(50):
            assert await clocked_registry.touch(f"rogue-{i}") is None
        assert len(clocked_registry._locks) == 0

        await clocked_registry.register("phone-1", "ios")
        await clocked_registry.touch("phone-1")
        assert set(clocked_registry._locks) == {"phone-1"}

    async def test_lookup(self, clocked_registry):
        assert await clocked_registry.lookup("phone-1") is None
        await clocked_registry.register("phone-1", "ios")
        assert (await clocked_registry.lookup("phone-1")).platform == "ios"

    async def test_online_window(self, clocked_registry, clock):
        device = await clocked_registry.register("phone-1", "ios")
        assert clocked_registry.is_online(device)

        clock.advance(301)
        assert not clocked_registry.is_online(device)

    async def test_list_devices(self, clocked_registry):
        await clocked_registry.register("phone-1", "ios")
        await clocked_registry.register("phone-2", "android")

        ids = sorted(d.device_id for d in await clocked_registry.list_devices())
        assert ids == ["phone-1", "phone-2"]
