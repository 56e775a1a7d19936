"""Per-device records under ``devices/{deviceId}``."""

from __future__ import annotations

import logging
import threading
import time
from contextlib import ExitStack
from typing import Any, Callable

from schemas import HeartbeatRequest
from store import Store

logger = logging.getLogger(__name__)

DEVICES_PATH = "devices"
ONLINE = "online"
OFFLINE = "offline"
DEFAULT_VERSION = "1.0.0"


def now_ms() -> int:
    return int(time.time() * 1000)


class DeviceRegistry:
    """Read-merge-replace access to device records.

    Every write to one device key, status transitions included, holds that
    key's lock, so writers in this process cannot lose each other's update.
    Writers in other processes still race.
    """

    def __init__(
        self,
        store: Store,
        device_timeout: float | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._device_timeout = device_timeout
        self._clock = clock
        self._key_locks: dict[str, threading.Lock] = {}
        self._key_locks_guard = threading.Lock()

    def _lock_for(self, device_id: str) -> threading.Lock:
        with self._key_locks_guard:
            lock = self._key_locks.get(device_id)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[device_id] = lock
            return lock

    def _path(self, device_id: str) -> str:
        return f"{DEVICES_PATH}/{device_id}"

    def get(self, device_id: str) -> dict[str, Any] | None:
        record = self._store.get(self._path(device_id), timeout=self._device_timeout)
        return record if isinstance(record, dict) else None

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Return the whole registry as ``{deviceId: record}``."""
        devices = self._store.get(DEVICES_PATH)
        if not isinstance(devices, dict):
            return {}
        return {
            device_id: record
            for device_id, record in devices.items()
            if isinstance(record, dict)
        }

    def list_devices(self) -> list[dict[str, Any]]:
        devices = []
        for device_id, device in self.snapshot().items():
            devices.append(
                {
                    "deviceId": device_id,
                    "status": device.get("status") or OFFLINE,
                    "ipAddress": device.get("ipAddress") or device.get("ip") or "",
                    "lastSeen": device.get("lastSeen") or device.get("lastHeartbeat"),
                    "scanCount": device.get("scanCount") or 0,
                    "freeHeap": device.get("freeHeap"),
                    "version": device.get("version"),
                    "name": device.get("name") or device_id,
                    "batteryLevel": device.get("batteryLevel"),
                    "uptime": device.get("uptime"),
                    "firstSeen": device.get("firstSeen"),
                }
            )
        return devices

    def record_heartbeat(
        self, heartbeat: HeartbeatRequest, ip_address: str
    ) -> dict[str, Any]:
        """Merge a heartbeat into the stored record and mark it online."""
        device_id = heartbeat.device_id
        with self._lock_for(device_id):
            previous = self.get(device_id) or {}
            now = self._clock()
            first_seen = previous.get("firstSeen", now)

            scan_count = previous.get("scanCount", 0)
            if heartbeat.scan_count is not None:
                scan_count = max(scan_count, heartbeat.scan_count)

            record = dict(previous)
            record.update(
                {
                    "deviceId": device_id,
                    "status": ONLINE,
                    "lastSeen": max(now, first_seen),
                    "firstSeen": first_seen,
                    "ipAddress": ip_address,
                    "uptime": heartbeat.uptime if heartbeat.uptime is not None else 0,
                    "freeHeap": _first_present(
                        heartbeat.free_heap, previous.get("freeHeap"), 0
                    ),
                    "scanCount": scan_count,
                    "version": _first_present(
                        heartbeat.version, previous.get("version"), DEFAULT_VERSION
                    ),
                }
            )
            if heartbeat.battery_level is not None:
                record["batteryLevel"] = heartbeat.battery_level

            self._store.set(
                self._path(device_id), record, timeout=self._device_timeout
            )

        if previous.get("status") != ONLINE:
            logger.info("Device %s is online (heartbeat from %s)", device_id, ip_address)
        return record

    def record_scan(self, device_id: str, ip_address: str) -> dict[str, Any]:
        """Count one scan against the device and mark it online."""
        with self._lock_for(device_id):
            previous = self.get(device_id) or {}
            now = self._clock()
            first_seen = previous.get("firstSeen", now)

            record = dict(previous)
            record.update(
                {
                    "deviceId": device_id,
                    "status": ONLINE,
                    "lastSeen": max(now, first_seen),
                    "firstSeen": first_seen,
                    "ipAddress": ip_address,
                    "scanCount": (previous.get("scanCount") or 0) + 1,
                }
            )
            self._store.set(
                self._path(device_id), record, timeout=self._device_timeout
            )
        return record

    def apply_status_transitions(
        self,
        transitions: dict[str, str],
        seen: dict[str, Any] | None = None,
    ) -> dict[str, str]:
        """Write status changes as one multi-path update.

        The per-key locks of every affected device are held for the write.
        When ``seen`` maps device ids to the ``lastSeen`` value the change
        was planned from, the registry is re-read under those locks and any
        device heard from since (or deleted) is left alone. Returns the
        transitions actually written.
        """
        if not transitions:
            return {}
        with ExitStack() as stack:
            for device_id in sorted(transitions):
                stack.enter_context(self._lock_for(device_id))

            if seen is not None:
                current = self.snapshot()
                planned = transitions
                transitions = {
                    device_id: status
                    for device_id, status in planned.items()
                    if device_id in current
                    and current[device_id].get("lastSeen") == seen.get(device_id)
                }
                for device_id in planned.keys() - transitions.keys():
                    logger.info(
                        "Not setting device %s to %s, it changed since the snapshot",
                        device_id,
                        planned[device_id],
                    )
                if not transitions:
                    return {}

            updates = {
                f"{device_id}/status": status
                for device_id, status in transitions.items()
            }
            self._store.update(DEVICES_PATH, updates)
        return dict(transitions)


def _first_present(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None
