"""Liveness pings from scanner devices."""

from __future__ import annotations

import logging
from typing import Any

from device_registry import DeviceRegistry
from schemas import HeartbeatRequest
from store import StoreUnavailable

logger = logging.getLogger(__name__)


class HeartbeatService:
    def __init__(self, registry: DeviceRegistry | None) -> None:
        self._registry = registry

    def handle(self, heartbeat: HeartbeatRequest, ip_address: str) -> dict[str, Any]:
        """
        Record a heartbeat and promote the device to online.

        Raises:
            StoreUnavailable: the store is not configured or the read/write failed
        """
        if self._registry is None:
            raise StoreUnavailable("store is not configured")

        record = self._registry.record_heartbeat(heartbeat, ip_address)
        logger.debug(
            "Heartbeat from %s (uptime=%s freeHeap=%s scanCount=%s)",
            heartbeat.device_id,
            record.get("uptime"),
            record.get("freeHeap"),
            record.get("scanCount"),
        )
        return {
            "success": True,
            "message": "Heartbeat received",
            "deviceId": heartbeat.device_id,
            "timestamp": record["lastSeen"],
        }
