"""Wiring of the store and the components that share it."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from attendance import AttendanceService
from device_registry import DeviceRegistry
from heartbeat import HeartbeatService
from inventory import InventoryIndex
from presence_reconciler import PresenceReconciler
from scan_ingest import ScanIngestService
from scanner_config import Settings
from store import ConvexStore, MemoryStore, Store

logger = logging.getLogger(__name__)


@dataclass
class ScannerServices:
    settings: Settings
    store: Store | None
    registry: DeviceRegistry | None
    inventory: InventoryIndex | None
    heartbeats: HeartbeatService
    scans: ScanIngestService
    attendance: AttendanceService
    reconciler: PresenceReconciler | None

    def close(self) -> None:
        if self.reconciler is not None:
            self.reconciler.stop(timeout=5)
        if self.store is not None:
            self.store.close()


def create_store(settings: Settings) -> Store | None:
    """Open the configured store, or return ``None`` when none is configured."""
    if settings.store_backend == "memory":
        logger.info("Using in-memory store")
        return MemoryStore()

    if settings.store_backend != "convex":
        raise ValueError(f"Unknown STORE_BACKEND: {settings.store_backend}")

    if not settings.deployment_url:
        logger.warning(
            "CONVEX_DEPLOYMENT_URL or CONVEX_SELF_HOSTED_URL is not set; "
            "device endpoints will answer local-only"
        )
        return None

    return ConvexStore(
        settings.deployment_url,
        admin_key=settings.admin_key,
        timeout=settings.store_timeout_seconds,
        max_retries=settings.store_max_retries,
        retry_initial_delay=settings.store_retry_initial_delay_seconds,
        max_consecutive_timeouts=settings.max_store_consecutive_timeouts,
        circuit_open_seconds=settings.store_circuit_open_seconds,
    ).open()


def build_services(settings: Settings, store: Store | None = None) -> ScannerServices:
    if store is None:
        store = create_store(settings)

    registry = inventory = reconciler = None
    if store is not None:
        registry = DeviceRegistry(store, device_timeout=settings.device_timeout_seconds)
        inventory = InventoryIndex(store)
        reconciler = PresenceReconciler(
            registry,
            interval_seconds=settings.reconcile_interval_seconds,
            threshold_ms=settings.staleness_threshold_ms,
        )

    return ScannerServices(
        settings=settings,
        store=store,
        registry=registry,
        inventory=inventory,
        heartbeats=HeartbeatService(registry),
        scans=ScanIngestService(store, registry, inventory),
        attendance=AttendanceService(
            store,
            timezone=settings.event_timezone,
            event_name=settings.event_name,
            event_location=settings.event_location,
            session_id=settings.event_session_id,
            duplicate_window_ms=settings.attendance_duplicate_window_ms,
        ),
        reconciler=reconciler,
    )
