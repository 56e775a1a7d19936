"""Barcode scans reported by scanner devices.

A scan is persisted first; everything after that (device counter, inventory
correlation, enrichment) is best-effort and never undoes the saved scan.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from device_registry import DeviceRegistry, now_ms
from inventory import InventoryIndex
from schemas import ScanRequest
from store import Store, StoreError, StoreUnavailable

logger = logging.getLogger(__name__)

SCANS_PATH = "scans"


@dataclass(frozen=True)
class ScanResult:
    scan_id: str
    item_found: bool
    item_id: str | None
    record: dict[str, Any]


class ScanIngestService:
    def __init__(
        self,
        store: Store | None,
        registry: DeviceRegistry | None,
        inventory: InventoryIndex | None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._registry = registry
        self._inventory = inventory
        self._clock = clock

    def ingest(self, scan: ScanRequest, ip_address: str) -> ScanResult:
        """
        Persist a scan, count it against its device and correlate it with
        the inventory catalog.

        Raises:
            StoreUnavailable: the store is not configured or the scan itself
                could not be saved
        """
        if self._store is None:
            raise StoreUnavailable("store is not configured")

        logger.info(
            "Barcode scan received: barcode=%s device=%s location=%s",
            scan.barcode,
            scan.device_id,
            scan.location,
        )

        record = {
            "barcode": scan.barcode,
            "deviceId": scan.device_id,
            "timestamp": scan.timestamp if scan.timestamp is not None else self._clock(),
            "processed": False,
            "location": scan.location,
            "mode": scan.mode,
            "type": scan.scan_type,
        }
        scan_id = self._store.push_key(SCANS_PATH)
        self._store.set(f"{SCANS_PATH}/{scan_id}", record)

        self._count_scan(scan.device_id, ip_address)

        match = self._correlate(scan.barcode)
        if match is None:
            logger.info("Scan %s: barcode %s not in inventory", scan_id, scan.barcode)
            return ScanResult(scan_id, False, None, record)

        item_id = match
        enrichment = {"processed": True, "itemFound": True, "itemId": item_id}
        try:
            self._store.update(f"{SCANS_PATH}/{scan_id}", enrichment)
            record.update(enrichment)
        except StoreError as exc:
            logger.error(
                "Scan %s matched item %s but enrichment failed: %s",
                scan_id,
                item_id,
                exc,
            )
        logger.info("Scan %s matched inventory item %s", scan_id, item_id)
        return ScanResult(scan_id, True, item_id, record)

    def _count_scan(self, device_id: str, ip_address: str) -> None:
        if self._registry is None:
            return
        try:
            self._registry.record_scan(device_id, ip_address)
        except StoreError as exc:
            logger.error("Failed to update scan counter for %s: %s", device_id, exc)

    def _correlate(self, barcode: str) -> str | None:
        if self._inventory is None:
            return None
        try:
            found = self._inventory.lookup(barcode)
        except StoreError as exc:
            logger.error("Inventory lookup for %s failed: %s", barcode, exc)
            return None
        return found[0] if found else None
