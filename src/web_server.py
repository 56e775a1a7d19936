"""HTTP endpoints used by the scanners and the admin dashboard."""

import logging
from datetime import date, datetime, timezone
from logging.handlers import RotatingFileHandler

from flask import Flask, Response, jsonify, request
from flask_cors import CORS
from pydantic import ValidationError

from attendance import DuplicateAttendanceError
from scanner_config import load_settings
from scanner_services import ScannerServices, build_services
from schemas import AttendanceRequest, HeartbeatRequest, ScanRequest
from store import StoreError

logger = logging.getLogger(__name__)


def client_ip() -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.headers.get("X-Real-IP") or request.remote_addr or "unknown"


def _json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _validation_message(exc: ValidationError) -> str:
    error = exc.errors()[0]
    location = ".".join(str(part) for part in error.get("loc", ()))
    return f"{location}: {error.get('msg')}" if location else error.get("msg", "invalid request")


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def create_app(services: ScannerServices) -> Flask:
    app = Flask(__name__)
    CORS(
        app,
        resources={r"/api/*": {"origins": "*"}},
        methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
        send_wildcard=True,
    )
    app.extensions["scanner_services"] = services

    @app.route("/api/heartbeat", methods=["POST"])
    def heartbeat():
        try:
            payload = HeartbeatRequest.model_validate(_json_body())
        except ValidationError as exc:
            return jsonify({"success": False, "error": _validation_message(exc)}), 400

        try:
            return jsonify(services.heartbeats.handle(payload, client_ip())), 200
        except StoreError as e:
            logger.error(f"Error processing heartbeat from {payload.device_id}: {e}")
            return jsonify({"success": False, "error": "Store not available"}), 503
        except Exception as e:
            logger.exception(f"Unexpected error processing heartbeat: {e}")
            return jsonify({"success": False, "error": "Failed to process heartbeat"}), 500

    @app.route("/api/barcode-scan", methods=["POST"])
    def barcode_scan():
        try:
            payload = ScanRequest.model_validate(_json_body())
        except ValidationError as exc:
            return jsonify({"success": False, "error": _validation_message(exc)}), 400

        try:
            result = services.scans.ingest(payload, client_ip())
        except StoreError as e:
            # 200 so scanners keep their own copy instead of retrying
            logger.error(f"Scan {payload.barcode} from {payload.device_id} not saved: {e}")
            return jsonify(
                {
                    "success": False,
                    "error": "Store not available",
                    "localSave": True,
                    "barcode": payload.barcode,
                    "deviceId": payload.device_id,
                }
            ), 200

        return jsonify(
            {
                "success": True,
                "message": "Barcode scan saved successfully",
                "scanId": result.scan_id,
                "itemFound": result.item_found,
                "itemId": result.item_id,
            }
        ), 200

    @app.route("/api/devices-status", methods=["GET"])
    def devices_status():
        if services.registry is None:
            logger.error("Device listing requested but no store is configured")
            return jsonify({"error": "Store not configured"}), 500
        try:
            devices = services.registry.list_devices()
        except StoreError as e:
            logger.error(f"Error fetching devices: {e}")
            return jsonify({"error": "Failed to fetch devices"}), 500

        online = sum(1 for d in devices if d["status"] == "online")
        offline = sum(1 for d in devices if d["status"] == "offline")
        return jsonify(
            {
                "devices": devices,
                "total": len(devices),
                "online": online,
                "offline": offline,
                "timestamp": _iso_now(),
            }
        ), 200

    @app.route("/api/check-device-status", methods=["POST"])
    def check_device_status():
        secret = services.settings.cron_secret
        if secret and request.headers.get("Authorization") != f"Bearer {secret}":
            return jsonify({"error": "Unauthorized"}), 401

        if services.reconciler is None:
            return jsonify({"error": "Store not configured"}), 500

        result = services.reconciler.tick()
        if result is None:
            return jsonify({"error": "Failed to check device status"}), 500

        return jsonify(
            {
                "success": True,
                "message": (
                    f"Checked {result.checked} devices, updated {len(result.transitions)} "
                    f"statuses ({result.went_online} online, {result.went_offline} offline)"
                ),
                "updatedDevices": len(result.transitions),
                "timestamp": _iso_now(),
            }
        ), 200

    @app.route("/api/attendance", methods=["POST"])
    def record_attendance():
        try:
            payload = AttendanceRequest.model_validate(_json_body())
        except ValidationError:
            return jsonify({"error": "NIM is required"}), 400

        try:
            record = services.attendance.record(payload)
        except DuplicateAttendanceError as e:
            return jsonify(
                {
                    "error": "Duplicate attendance detected",
                    "message": str(e),
                    "timeDiff": e.elapsed_ms,
                }
            ), 409
        except StoreError as e:
            logger.error(f"Attendance for {payload.nim} not saved: {e}")
            return jsonify({"error": "Internal server error"}), 500

        return jsonify(
            {"success": True, "message": "Attendance recorded successfully", "data": record}
        ), 200

    @app.route("/api/attendance-export", methods=["GET"])
    def attendance_export():
        export_format = request.args.get("format", "csv").lower()
        raw_date = request.args.get("date")
        try:
            day = date.fromisoformat(raw_date) if raw_date else services.attendance.today()
        except ValueError:
            return jsonify({"error": f"Invalid date: {raw_date}"}), 400

        try:
            records = services.attendance.export(day)
        except StoreError as e:
            logger.error(f"Export API error: {e}")
            return jsonify({"error": "Internal server error"}), 500

        if export_format == "csv":
            return Response(
                services.attendance.to_csv(records),
                status=200,
                content_type="text/csv; charset=utf-8",
                headers={
                    "Content-Disposition": (
                        f'attachment; filename="Absensi_Seminar_{day.isoformat()}.csv"'
                    ),
                },
            )

        return jsonify({"success": True, "data": records, "count": len(records)}), 200

    return app


def main() -> None:
    settings = load_settings()
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[
            # Rotate log after ~100KB, keep 1 backup
            RotatingFileHandler(settings.log_file, maxBytes=100000, backupCount=1),
            logging.StreamHandler(),
        ],
    )

    services = build_services(settings)
    if services.reconciler is not None and settings.reconciler_enabled:
        services.reconciler.start()

    app = create_app(services)
    logger.info("Scanner service listening on %s:%d", settings.host, settings.port)
    try:
        app.run(host=settings.host, port=settings.port)
    finally:
        services.close()
        logger.info("Scanner service shutdown complete")


if __name__ == "__main__":
    main()
