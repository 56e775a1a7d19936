"""Barcode lookup against the ``inventory`` catalog."""

from __future__ import annotations

import logging
import threading
from typing import Any

from store import Store

logger = logging.getLogger(__name__)

INVENTORY_PATH = "inventory"


class DuplicateBarcodeError(ValueError):
    def __init__(self, barcode: str, existing_id: str) -> None:
        super().__init__(f"barcode {barcode!r} already belongs to item {existing_id}")
        self.barcode = barcode
        self.existing_id = existing_id


class InventoryIndex:
    """Hash index from barcode to inventory item key.

    Every lookup rebuilds the index from one fresh read of the catalog, so
    items added or removed by other writers are seen by the very next scan.

    Barcodes are expected to be unique. ``add_item`` enforces that for items
    written through this index; duplicates already present in the catalog
    are reported by ``duplicates()`` and resolved to the lowest item key.
    """

    def __init__(self, store: Store) -> None:
        self._store = store
        self._lock = threading.RLock()
        self._duplicates: dict[str, list[str]] = {}

    def refresh(self) -> int:
        """Rebuild the index from the store. Returns the number of items."""
        return len(self._rebuild()[1])

    def _rebuild(self) -> tuple[dict[str, str], dict[str, dict[str, Any]]]:
        catalog = self._store.get(INVENTORY_PATH)
        if not isinstance(catalog, dict):
            catalog = {}

        by_barcode: dict[str, str] = {}
        items: dict[str, dict[str, Any]] = {}
        duplicates: dict[str, list[str]] = {}
        for item_id in sorted(catalog):
            item = catalog[item_id]
            if not isinstance(item, dict):
                continue
            items[item_id] = item
            barcode = item.get("barcode")
            if barcode is None:
                continue
            barcode = str(barcode)
            if barcode in by_barcode:
                duplicates.setdefault(barcode, [by_barcode[barcode]]).append(item_id)
                continue
            by_barcode[barcode] = item_id

        for barcode, item_ids in duplicates.items():
            logger.warning(
                "Duplicate barcode %s in inventory items %s; using %s",
                barcode,
                ", ".join(item_ids),
                item_ids[0],
            )

        with self._lock:
            self._duplicates = duplicates
        logger.debug("Inventory index rebuilt with %d item(s)", len(items))
        return by_barcode, items

    def lookup(self, barcode: str) -> tuple[str, dict[str, Any]] | None:
        """Return ``(item_id, item)`` for the barcode, or ``None``."""
        by_barcode, items = self._rebuild()
        item_id = by_barcode.get(barcode)
        if item_id is None:
            return None
        return item_id, dict(items[item_id])

    def add_item(self, item: dict[str, Any]) -> str:
        """Write a new catalog item, rejecting a barcode that is already used."""
        barcode = item.get("barcode")
        if barcode is None or not str(barcode).strip():
            raise ValueError("inventory item requires a barcode")
        barcode = str(barcode).strip()

        with self._lock:
            by_barcode, _ = self._rebuild()
            existing = by_barcode.get(barcode)
            if existing is not None:
                raise DuplicateBarcodeError(barcode, existing)

            item_id = self._store.push_key(INVENTORY_PATH)
            record = dict(item, barcode=barcode)
            self._store.set(f"{INVENTORY_PATH}/{item_id}", record)
        logger.info("Added inventory item %s for barcode %s", item_id, barcode)
        return item_id

    def duplicates(self) -> dict[str, list[str]]:
        with self._lock:
            return {barcode: list(ids) for barcode, ids in self._duplicates.items()}
