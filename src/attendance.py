"""Event attendance records and their CSV export."""

from __future__ import annotations

import csv
import io
import logging
import threading
from datetime import date, datetime
from typing import Any, Callable

import pytz

from device_registry import now_ms
from schemas import AttendanceRequest
from store import Store, StoreError, StoreUnavailable

logger = logging.getLogger(__name__)

ATTENDANCE_PATH = "attendance"
CSV_HEADER = ["No", "NIM", "Nama", "Waktu Absen", "Device ID", "Acara", "Lokasi"]
CSV_BOM = "\ufeff"


class DuplicateAttendanceError(Exception):
    def __init__(self, nim: str, elapsed_ms: int) -> None:
        super().__init__(f"NIM {nim} sudah tercatat {round(elapsed_ms / 1000)} detik yang lalu")
        self.nim = nim
        self.elapsed_ms = elapsed_ms


def format_timestamp(timestamp_ms: int, tz: pytz.BaseTzInfo) -> str:
    moment = datetime.fromtimestamp(timestamp_ms / 1000, tz=pytz.utc).astimezone(tz)
    return moment.strftime("%d/%m/%Y %H:%M:%S")


def to_csv(
    records: list[dict[str, Any]],
    tz: pytz.BaseTzInfo,
    event_name: str = "Seminar Teknologi 2025",
    event_location: str = "Auditorium Utama",
) -> str:
    """Render attendance records as the spreadsheet-friendly CSV export.

    The text starts with a UTF-8 BOM so spreadsheet tools pick the right
    encoding, and has no trailing newline.
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for index, record in enumerate(records, start=1):
        timestamp = record.get("timestamp")
        writer.writerow(
            [
                index,
                record.get("nim") or "-",
                record.get("nama") or "Tidak Diketahui",
                format_timestamp(timestamp, tz) if timestamp else "-",
                record.get("deviceId") or "-",
                record.get("eventName") or event_name,
                record.get("location") or event_location,
            ]
        )
    return CSV_BOM + buffer.getvalue().rstrip("\n")


class AttendanceService:
    """Records attendance scans, blocking quick repeats of the same NIM."""

    def __init__(
        self,
        store: Store | None,
        timezone: str = "Asia/Jakarta",
        event_name: str = "Seminar Teknologi 2025",
        event_location: str = "Auditorium Utama",
        session_id: str = "seminar-2025",
        duplicate_window_ms: int = 15000,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self.tz = pytz.timezone(timezone)
        self.event_name = event_name
        self.event_location = event_location
        self.session_id = session_id
        self.duplicate_window_ms = duplicate_window_ms
        self._clock = clock
        self._recent: dict[str, int] = {}
        self._recent_lock = threading.Lock()

    def _check_duplicate(self, key: str, nim: str, now: int) -> None:
        with self._recent_lock:
            for seen_key, seen_at in list(self._recent.items()):
                if now - seen_at > self.duplicate_window_ms:
                    del self._recent[seen_key]

            last = self._recent.get(key)
            if last is not None and now - last < self.duplicate_window_ms:
                logger.info("Duplicate attendance blocked: %s (%dms ago)", nim, now - last)
                raise DuplicateAttendanceError(nim, now - last)
            self._recent[key] = now

    def record(self, request: AttendanceRequest) -> dict[str, Any]:
        """
        Build and persist an attendance record.

        Raises:
            DuplicateAttendanceError: the same NIM was recorded from the same
                device within the duplicate window
        """
        now = self._clock()
        self._check_duplicate(f"{request.nim}-{request.device_id}", request.nim, now)

        record = {
            "nim": request.nim,
            "nama": request.nama,
            "timestamp": now,
            "deviceId": request.device_id,
            "sessionId": self.session_id,
            "eventName": self.event_name,
            "location": self.event_location,
            "scanned": True,
            "mode": "attendance",
            "type": "attendance_scan",
        }

        if self._store is None:
            logger.warning("Store not configured; attendance for %s not persisted", request.nim)
            record["id"] = str(now)
            return record

        record_id = self._store.push_key(ATTENDANCE_PATH)
        record["id"] = record_id
        try:
            self._store.set(f"{ATTENDANCE_PATH}/{record_id}", record)
        except StoreError:
            with self._recent_lock:
                self._recent.pop(f"{request.nim}-{request.device_id}", None)
            raise
        logger.info("New attendance recorded: %s from %s", request.nim, request.device_id)
        return record

    def export(self, day: date) -> list[dict[str, Any]]:
        """Attendance records whose timestamp falls on ``day`` in the event timezone."""
        if self._store is None:
            raise StoreUnavailable("store is not configured")

        records = self._store.get(ATTENDANCE_PATH)
        if not isinstance(records, dict):
            return []

        selected = []
        for record_id, record in records.items():
            if not isinstance(record, dict) or not record.get("timestamp"):
                continue
            moment = datetime.fromtimestamp(record["timestamp"] / 1000, tz=pytz.utc)
            if moment.astimezone(self.tz).date() == day:
                selected.append(dict(record, id=record.get("id", record_id)))
        selected.sort(key=lambda r: r["timestamp"])
        return selected

    def today(self) -> date:
        return datetime.fromtimestamp(self._clock() / 1000, tz=pytz.utc).astimezone(self.tz).date()

    def to_csv(self, records: list[dict[str, Any]]) -> str:
        return to_csv(records, self.tz, self.event_name, self.event_location)
