"""Tests for staleness-based online/offline reconciliation."""
from __future__ import annotations

import sys
import threading
from pathlib import Path
import unittest
from unittest.mock import MagicMock, patch

# Ensure src/ is importable when running the test directly
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from device_registry import DeviceRegistry  # noqa: E402  pylint: disable=wrong-import-position
from presence_reconciler import (  # noqa: E402  pylint: disable=wrong-import-position
    PresenceReconciler,
    last_seen_ms,
    plan_transitions,
)
from schemas import HeartbeatRequest  # noqa: E402  pylint: disable=wrong-import-position
from store import MemoryStore, StoreUnavailable  # noqa: E402  pylint: disable=wrong-import-position

NOW = 1_700_000_000_000


class PlanTransitionsTests(unittest.TestCase):
    def test_threshold_boundary(self) -> None:
        devices = {
            "stale": {"status": "online", "lastSeen": NOW - 30001},
            "fresh": {"status": "offline", "lastSeen": NOW - 29999},
            "exact": {"status": "offline", "lastSeen": NOW - 30000},
        }

        transitions = plan_transitions(devices, NOW, 30000)

        self.assertEqual(
            transitions, {"stale": "offline", "fresh": "online", "exact": "online"}
        )

    def test_missing_last_seen_is_offline(self) -> None:
        transitions = plan_transitions({"d": {"status": "online"}}, NOW)

        self.assertEqual(transitions, {"d": "offline"})

    def test_missing_status_is_always_corrected(self) -> None:
        transitions = plan_transitions(
            {"new": {"lastSeen": NOW}, "old": {"lastSeen": NOW - 60000}}, NOW
        )

        self.assertEqual(transitions, {"new": "online", "old": "offline"})

    def test_last_seen_values_are_coerced(self) -> None:
        devices = {
            "numeric_string": {"status": "offline", "lastSeen": str(NOW - 1000)},
            "legacy": {"status": "offline", "lastHeartbeat": NOW - 1000},
            "garbage": {"status": "online", "lastSeen": "yesterday"},
            "iso": {"status": "online", "lastSeen": "2025-03-10T09:30:00Z"},
            "flag": {"status": "online", "lastSeen": True},
        }

        transitions = plan_transitions(devices, NOW)

        self.assertEqual(
            transitions,
            {
                "numeric_string": "online",
                "legacy": "online",
                "garbage": "offline",
                "iso": "offline",
                "flag": "offline",
            },
        )

    def test_last_seen_ms(self) -> None:
        self.assertEqual(last_seen_ms({"lastSeen": "1700"}), 1700.0)
        self.assertEqual(last_seen_ms({"lastSeen": "", "lastHeartbeat": 5}), 5.0)
        self.assertIsNone(last_seen_ms({"lastSeen": "nan"}))
        self.assertIsNone(last_seen_ms({"lastSeen": 0}))
        self.assertIsNone(last_seen_ms({}))

    def test_consistent_registry_yields_no_transitions(self) -> None:
        devices = {
            "a": {"status": "online", "lastSeen": NOW - 1000},
            "b": {"status": "offline", "lastSeen": NOW - 90000},
        }

        self.assertEqual(plan_transitions(devices, NOW), {})


class PresenceReconcilerTickTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = MemoryStore()
        self.registry = DeviceRegistry(self.store)
        self.reconciler = PresenceReconciler(self.registry, clock=lambda: NOW)

    def test_tick_marks_stale_device_offline_and_fresh_device_online(self) -> None:
        self.store.set(
            "devices",
            {
                "stale": {"status": "online", "lastSeen": NOW - 30001, "scanCount": 3},
                "fresh": {"status": "offline", "lastSeen": NOW - 29999},
            },
        )

        result = self.reconciler.tick()

        self.assertEqual(result.checked, 2)
        self.assertEqual(result.went_offline, 1)
        self.assertEqual(result.went_online, 1)
        self.assertEqual(self.store.get("devices/stale/status"), "offline")
        self.assertEqual(self.store.get("devices/stale/scanCount"), 3)
        self.assertEqual(self.store.get("devices/fresh/status"), "online")

    def test_tick_on_consistent_registry_performs_no_write(self) -> None:
        self.store.set(
            "devices",
            {
                "a": {"status": "online", "lastSeen": NOW - 10},
                "b": {"status": "offline", "lastSeen": NOW - 31000},
            },
        )

        with patch.object(self.store, "update", wraps=self.store.update) as mock_update, \
                patch.object(self.store, "set", wraps=self.store.set) as mock_set:
            result = self.reconciler.tick()

        self.assertEqual(result.transitions, {})
        mock_update.assert_not_called()
        mock_set.assert_not_called()

    def test_all_transitions_are_written_in_one_update(self) -> None:
        self.store.set(
            "devices",
            {name: {"status": "online", "lastSeen": NOW - 60000} for name in ("a", "b", "c")},
        )

        with patch.object(self.store, "update", wraps=self.store.update) as mock_update:
            self.reconciler.tick()

        mock_update.assert_called_once_with(
            "devices", {"a/status": "offline", "b/status": "offline", "c/status": "offline"}
        )

    def test_second_tick_is_a_no_op(self) -> None:
        self.store.set("devices", {"a": {"status": "online", "lastSeen": NOW - 60000}})

        self.reconciler.tick()
        with patch.object(self.store, "update", wraps=self.store.update) as mock_update:
            result = self.reconciler.tick()

        self.assertEqual(result.transitions, {})
        mock_update.assert_not_called()

    def test_malformed_record_does_not_block_other_devices(self) -> None:
        self.store.set(
            "devices",
            {
                "good": {"status": "online", "lastSeen": NOW - 60000},
                "legacy": {"status": "online", "lastSeen": str(NOW)},
                "broken": {"status": "online", "lastSeen": {"at": NOW}},
            },
        )

        result = self.reconciler.tick()

        self.assertIsNotNone(result)
        self.assertEqual(result.transitions, {"good": "offline", "broken": "offline"})
        self.assertEqual(self.store.get("devices/good/status"), "offline")
        self.assertEqual(self.store.get("devices/legacy/status"), "online")

    def test_device_heard_from_after_snapshot_is_not_demoted(self) -> None:
        self.store.set(
            "devices",
            {
                "a": {"status": "online", "lastSeen": NOW - 60000},
                "b": {"status": "online", "lastSeen": NOW - 60000},
            },
        )
        read_registry = self.registry.snapshot
        calls = []

        def _snapshot_then_heartbeat() -> dict:
            devices = read_registry()
            if not calls:
                self.registry.record_heartbeat(HeartbeatRequest(deviceId="a"), "10.0.0.2")
            calls.append(devices)
            return devices

        with patch.object(self.registry, "snapshot", side_effect=_snapshot_then_heartbeat):
            result = self.reconciler.tick()

        self.assertEqual(result.transitions, {"b": "offline"})
        self.assertEqual(self.store.get("devices/a/status"), "online")
        self.assertEqual(self.store.get("devices/b/status"), "offline")

    def test_empty_registry(self) -> None:
        result = self.reconciler.tick()

        self.assertEqual(result.checked, 0)
        self.assertEqual(result.transitions, {})

    def test_read_failure_skips_tick(self) -> None:
        registry = MagicMock()
        registry.snapshot.side_effect = StoreUnavailable("down")
        reconciler = PresenceReconciler(registry, clock=lambda: NOW)

        self.assertIsNone(reconciler.tick())
        registry.apply_status_transitions.assert_not_called()

    def test_write_failure_skips_tick(self) -> None:
        registry = MagicMock()
        registry.snapshot.return_value = {"a": {"status": "online", "lastSeen": 0}}
        registry.apply_status_transitions.side_effect = StoreUnavailable("down")
        reconciler = PresenceReconciler(registry, clock=lambda: NOW)

        self.assertIsNone(reconciler.tick())


class PresenceReconcilerLifecycleTests(unittest.TestCase):
    def test_start_runs_ticks_until_stopped(self) -> None:
        ticked = threading.Event()

        def _snapshot() -> dict:
            ticked.set()
            return {}

        registry = MagicMock()
        registry.snapshot.side_effect = _snapshot
        reconciler = PresenceReconciler(registry, interval_seconds=0.01, clock=lambda: NOW)

        reconciler.start()
        self.assertTrue(ticked.wait(2))
        reconciler.stop(timeout=2)

        self.assertFalse(reconciler.running)
        self.assertGreaterEqual(registry.snapshot.call_count, 1)

    def test_unexpected_error_does_not_kill_the_loop(self) -> None:
        registry = MagicMock()
        registry.snapshot.side_effect = [RuntimeError("bug"), {}]
        reconciler = PresenceReconciler(registry, interval_seconds=0.01, clock=lambda: NOW)
        waits: list[float] = []

        def _wait(timeout: float) -> bool:
            waits.append(timeout)
            if len(waits) >= 2:
                reconciler._stop_event.set()
            return reconciler._stop_event.is_set()

        with patch.object(reconciler._stop_event, "wait", side_effect=_wait):
            reconciler._run()

        self.assertEqual(registry.snapshot.call_count, 2)
        self.assertEqual(waits, [0.01, 0.01])


if __name__ == "__main__":
    unittest.main()
