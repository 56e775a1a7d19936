"""Scheduled online/offline reconciliation for scanner devices.

Heartbeats and scans only ever promote a device to online. Absence is
detected here: every tick reads the whole registry once, marks devices whose
``lastSeen`` is older than the staleness threshold as offline (and recently
seen ones as online), and writes all changes as a single batched update.
"""

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from typing import Any, Callable

from device_registry import OFFLINE, ONLINE, DeviceRegistry, now_ms
from store import StoreError

logger = logging.getLogger(__name__)

STALENESS_THRESHOLD_MS = 30000
RECONCILE_INTERVAL_SECONDS = 30


def last_seen_ms(device: dict[str, Any]) -> float | None:
    """Return the device's last contact in epoch ms, or ``None`` if unknown.

    Older records only carry ``lastHeartbeat``; numeric strings are accepted.
    """
    value = device.get("lastSeen")
    if value is None or value == "":
        value = device.get("lastHeartbeat")
    if isinstance(value, bool):
        return None
    try:
        millis = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(millis) or millis <= 0:
        return None
    return millis


def plan_transitions(
    devices: dict[str, dict[str, Any]],
    now: int,
    threshold_ms: int = STALENESS_THRESHOLD_MS,
) -> dict[str, str]:
    """Return ``{deviceId: new_status}`` for devices whose status is wrong."""
    transitions: dict[str, str] = {}
    for device_id, device in devices.items():
        last_seen = last_seen_ms(device)
        stale = last_seen is None or now - last_seen > threshold_ms
        status = device.get("status")
        if stale:
            if status != OFFLINE:
                transitions[device_id] = OFFLINE
        elif status != ONLINE:
            transitions[device_id] = ONLINE
    return transitions


@dataclass
class TickResult:
    checked: int
    transitions: dict[str, str] = field(default_factory=dict)

    @property
    def went_online(self) -> int:
        return sum(1 for status in self.transitions.values() if status == ONLINE)

    @property
    def went_offline(self) -> int:
        return sum(1 for status in self.transitions.values() if status == OFFLINE)


class PresenceReconciler:
    def __init__(
        self,
        registry: DeviceRegistry,
        interval_seconds: float = RECONCILE_INTERVAL_SECONDS,
        threshold_ms: int = STALENESS_THRESHOLD_MS,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._registry = registry
        self.interval_seconds = interval_seconds
        self.threshold_ms = threshold_ms
        self._clock = clock
        self._tick_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def tick(self) -> TickResult | None:
        """Run one reconciliation pass.

        Ticks never overlap. A store failure is logged and the tick skipped;
        the next tick starts from scratch. Returns ``None`` when skipped.
        """
        with self._tick_lock:
            start = time.monotonic()
            try:
                devices = self._registry.snapshot()
            except StoreError as exc:
                logger.error("Skipping presence tick, registry read failed: %s", exc)
                return None

            if not devices:
                logger.debug("No devices found")
                return TickResult(checked=0)

            now = self._clock()
            planned = plan_transitions(devices, now, self.threshold_ms)
            seen = {device_id: devices[device_id].get("lastSeen") for device_id in planned}

            try:
                transitions = self._registry.apply_status_transitions(planned, seen)
            except StoreError as exc:
                logger.error(
                    "Skipping presence tick, status update of %d device(s) failed: %s",
                    len(planned),
                    exc,
                )
                return None

            for device_id, status in transitions.items():
                logger.info(
                    "Set device %s to %s (last seen %s)",
                    device_id,
                    status,
                    seen[device_id],
                )

            result = TickResult(checked=len(devices), transitions=transitions)
            logger.info(
                "Presence tick: checked=%d updated=%d online=%d offline=%d (%.2fs)",
                result.checked,
                len(transitions),
                result.went_online,
                result.went_offline,
                time.monotonic() - start,
            )
            return result

    def _run(self) -> None:
        logger.info(
            "Presence reconciler started (interval=%ss threshold=%dms)",
            self.interval_seconds,
            self.threshold_ms,
        )
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Error during presence tick: {e}")
            self._stop_event.wait(self.interval_seconds)
        logger.info("Presence reconciler stopped")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="PresenceReconciler", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
        self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()


def main() -> None:
    """Run the reconciler as its own process."""
    from scanner_config import load_settings
    from scanner_services import build_services

    settings = load_settings()
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[
            RotatingFileHandler("presence_reconciler.log", maxBytes=100000, backupCount=1),
            logging.StreamHandler(),
        ],
    )

    services = build_services(settings)
    if services.reconciler is None:
        logger.critical("Presence reconciler needs a configured store")
        raise SystemExit(1)

    try:
        services.reconciler.start()
        while services.reconciler.running:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Presence reconciler stopped by user")
    finally:
        services.close()
        logger.info("Presence reconciler shutdown complete")


if __name__ == "__main__":
    main()
