"""Background probing of devices marked DOWN."""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any, Awaitable, Callable

from loguru import logger

from devicecore.cache import Caches
from devicecore.errors import EdgeError
from devicecore.models.device import AdminState, OperatingState

Probe = Callable[[str, str], Awaitable[Any]]
MarkUp = Callable[[str], Awaitable[None]]


class RecoveryPoller:
    """
    At most one probe loop per device.

    Each loop sleeps ``interval`` seconds, then reads the device's readable
    resources one by one through ``probe``. The first successful read ends
    the loop; the command path is responsible for marking the device UP.
    A device whose profile has no readable resource cannot be probed and is
    handed to ``mark_up`` directly. A missing profile ends the loop.
    """

    def __init__(self, *, caches: Caches, probe: Probe, mark_up: MarkUp, interval: float) -> None:
        self.caches = caches
        self.interval = max(0.0, float(interval))
        self._probe = probe
        self._mark_up = mark_up
        self._tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def enabled(self) -> bool:
        return self.interval > 0

    def in_flight(self, device_name: str) -> bool:
        task = self._tasks.get(device_name)
        return task is not None and not task.done()

    def start(self, device_name: str) -> bool:
        if not self.enabled or self.in_flight(device_name):
            return False
        self._tasks[device_name] = asyncio.create_task(self._run(device_name))
        logger.info(f"recovery poller started for {device_name} every {self.interval}s")
        return True

    async def stop(self, device_name: str) -> None:
        task = self._tasks.pop(device_name, None)
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def stop_all(self) -> None:
        for name in list(self._tasks):
            await self.stop(name)

    async def _run(self, device_name: str) -> None:
        try:
            while True:
                await asyncio.sleep(self.interval)
                device = self.caches.devices.for_name(device_name)
                if device is None:
                    logger.info(f"recovery poller for {device_name} exits: device removed")
                    return
                if device.operating_state == OperatingState.UP:
                    logger.info(f"recovery poller for {device_name} exits: device is UP")
                    return
                if device.admin_state == AdminState.LOCKED:
                    continue
                profile = self.caches.profiles.for_name(device.profile_name)
                if profile is None:
                    logger.warning(f"recovery poller for {device_name} exits: profile {device.profile_name} not found")
                    return
                readable = [dr for dr in profile.device_resources if dr.properties.read_write.readable]
                if not readable:
                    logger.info(f"device {device_name} has no readable resources, marking it UP without probing")
                    await self._mark_up(device_name)
                    return
                for resource in readable:
                    try:
                        await self._probe(device_name, resource.name)
                    except EdgeError as e:
                        logger.debug(f"recovery probe {device_name}/{resource.name} failed: {e}")
                        continue
                    logger.info(f"device {device_name} recovered after probing {resource.name}")
                    return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"recovery poller for {device_name} failed: {e}")
        finally:
            if self._tasks.get(device_name) is asyncio.current_task():
                self._tasks.pop(device_name, None)
