"""
Device registry.

Usage:
    registry = DeviceRegistry(store)
    device = await registry.register("phone-1", "ios", device_name="Mia's iPhone")
    await registry.touch("phone-1")
    device = await registry.lookup("phone-1")
"""
import asyncio
import logging
from collections import defaultdict
from datetime import timedelta
from typing import Optional

from ..core.clock import Clock, SystemClock
from ..core.config import settings
from ..core.errors import ConflictError, NotFoundError, ValidationError
from ..tasks.models import Device
from ..tasks.storage import Store

logger = logging.getLogger(__name__)


class DeviceRegistry:
    """
    Registered mobile devices, persisted through the storage capability.

    Mutations of one device are serialized by a per-device lock; different
    devices never block each other.
    """

    def __init__(
        self,
        store: Store,
        clock: Optional[Clock] = None,
        online_window_seconds: Optional[int] = None,
    ):
        self._store = store
        self._clock = clock or SystemClock()
        self.online_window = timedelta(
            seconds=online_window_seconds
            if online_window_seconds is not None
            else settings.device_online_window_seconds
        )
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def register(
        self,
        device_id: str,
        platform: str,
        device_name: str = "",
        app_version: Optional[str] = None,
        push_channel: Optional[str] = None,
    ) -> Device:
        """
        Register a device, or refresh it if already known.

        Re-registering keeps the original platform and registered_at and
        refreshes last_seen_at plus the metadata that was supplied.

        Raises:
            ValidationError: If device_id or platform is empty
        """
        if not device_id or not device_id.strip():
            raise ValidationError("device_id is required")
        if not platform or not platform.strip():
            raise ValidationError("platform is required")

        async with self._locks[device_id]:
            now = self._clock.now()
            existing = await self.lookup(device_id)

            if existing is None:
                device = Device(
                    device_id=device_id,
                    platform=platform,
                    registered_at=now,
                    last_seen_at=now,
                    push_channel=push_channel or device_id,
                    device_name=device_name,
                    app_version=app_version,
                )
                try:
                    device = await self._store.create_device(device)
                    logger.info(f"Registered device {device_id} ({platform})")
                    return device
                except ConflictError:
                    # Registered concurrently through another store client
                    existing = await self._store.get_device(device_id)

            if existing.platform != platform:
                logger.warning(
                    f"Device {device_id} re-registered as {platform}, "
                    f"keeping original platform {existing.platform}"
                )
            existing.last_seen_at = max(existing.last_seen_at, now)
            if device_name:
                existing.device_name = device_name
            if app_version:
                existing.app_version = app_version
            if push_channel:
                existing.push_channel = push_channel
            return await self._store.update_device(existing)

    async def touch(self, device_id: str) -> Optional[Device]:
        """Refresh last_seen_at. Unknown devices are ignored."""
        if await self.lookup(device_id) is None:
            return None

        # Locks only exist for registered devices
        async with self._locks[device_id]:
            device = await self.lookup(device_id)
            device.last_seen_at = max(device.last_seen_at, self._clock.now())
            return await self._store.update_device(device)

    async def lookup(self, device_id: str) -> Optional[Device]:
        try:
            return await self._store.get_device(device_id)
        except NotFoundError:
            return None

    async def list_devices(self) -> list[Device]:
        return await self._store.list_devices()

    def is_online(self, device: Device) -> bool:
        """Seen within the online window."""
        return self._clock.now() - device.last_seen_at <= self.online_window
