"""Request bodies accepted from scanners and admin clients."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

UNKNOWN_DEVICE_ID = "unknown"
DEFAULT_LOCATION = "Unknown"
DEFAULT_MODE = "inventory"
DEFAULT_SCAN_TYPE = "inventory_scan"

# Characters that cannot appear in a store path segment
_INVALID_KEY_CHARS = str.maketrans({c: "_" for c in "/.#$[]"})


def sanitize_device_id(value: object) -> str:
    if value is None:
        return UNKNOWN_DEVICE_ID
    device_id = str(value).strip().translate(_INVALID_KEY_CHARS)
    return device_id or UNKNOWN_DEVICE_ID


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class HeartbeatRequest(_Request):
    """Periodic liveness ping. Every field is optional."""

    device_id: str = Field(default=UNKNOWN_DEVICE_ID, alias="deviceId")
    uptime: int | None = Field(default=None, ge=0)
    free_heap: int | None = Field(default=None, alias="freeHeap", ge=0)
    scan_count: int | None = Field(default=None, alias="scanCount", ge=0)
    version: str | None = None
    battery_level: float | None = Field(default=None, alias="batteryLevel")

    @field_validator("device_id", mode="before")
    @classmethod
    def _clean_device_id(cls, value: object) -> str:
        return sanitize_device_id(value)


class ScanRequest(_Request):
    barcode: str
    device_id: str = Field(default=UNKNOWN_DEVICE_ID, alias="deviceId")
    timestamp: int | None = Field(default=None, ge=0)
    location: str = DEFAULT_LOCATION
    mode: str = DEFAULT_MODE
    scan_type: str = Field(default=DEFAULT_SCAN_TYPE, alias="type")

    @field_validator("barcode", mode="before")
    @classmethod
    def _clean_barcode(cls, value: object) -> str:
        if value is None:
            raise ValueError("barcode is required")
        barcode = str(value).strip()
        if not barcode:
            raise ValueError("barcode must not be empty")
        return barcode

    @field_validator("device_id", mode="before")
    @classmethod
    def _clean_device_id(cls, value: object) -> str:
        return sanitize_device_id(value)

    @field_validator("location", "mode", "scan_type", mode="before")
    @classmethod
    def _blank_to_default(cls, value: object, info: ValidationInfo) -> object:
        if value is None or (isinstance(value, str) and not value.strip()):
            return cls.model_fields[info.field_name].default
        return value


class AttendanceRequest(_Request):
    nim: str
    nama: str = ""
    device_id: str = Field(default="api", alias="deviceId")

    @field_validator("nim", mode="before")
    @classmethod
    def _clean_nim(cls, value: object) -> str:
        if value is None or not str(value).strip():
            raise ValueError("NIM is required")
        return str(value).strip()

    @field_validator("nama", mode="before")
    @classmethod
    def _none_to_blank(cls, value: object) -> str:
        return "" if value is None else str(value)

    @field_validator("device_id", mode="before")
    @classmethod
    def _clean_device_id(cls, value: object) -> str:
        if value is None or not str(value).strip():
            return "api"
        return sanitize_device_id(value)
