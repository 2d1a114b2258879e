"""FastAPI backend that wraps duplicate_marker runs with NDJSON logging."""
from __future__ import annotations

import hashlib
import json
import logging
import os
import sys
import threading
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import FileResponse
from pydantic import BaseModel

ROOT_DIR = Path(__file__).resolve().parent.parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from duplicate_marker import (  # noqa: E402
    DuplicateMarker,
    DuplicateMarkerError,
    Reporter,
    RunSummary,
    setup_logger,
)

API_VERSION = "1.0.0"
API_ENV = os.getenv("DUPMARK_ENV", "dev")
API_COMPONENT = "api"

app = FastAPI(
    title="Duplicate Marker API",
    description="REST API that marks duplicate files under a directory.",
    version=API_VERSION,
)

_api_logger = setup_logger()
_marker = DuplicateMarker(
    reporter=Reporter(_api_logger, environment=API_ENV, version=API_VERSION),
)
_scan_lock = threading.Lock()

DATA_DIR = Path(os.getenv("DUPMARK_DATA_DIR", Path(__file__).resolve().parent / "data"))
EXPORT_DIR = DATA_DIR / "exports"
LAST_SCAN_PATH = DATA_DIR / "last_scan.json"


def _hash_payload(payload: Dict[str, Any]) -> str:
    try:
        encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    except TypeError:
        encoded = repr(payload)
    return hashlib.md5(encoded.encode("utf-8")).hexdigest()[:12]


def _log_api_event(event: str, message: str, *, level: int = logging.INFO, **fields: Any) -> None:
    log_payload = {
        "event": event,
        "message": message,
        "component": API_COMPONENT,
        "version": API_VERSION,
        "env": API_ENV,
    }
    log_payload.update(fields)
    _api_logger.log(level, message, extra={"log_payload": log_payload})


class _RequestLog:
    """Request-scoped fields shared by the api_request/api_response events."""

    def __init__(self, request: Request, label: str, params: Dict[str, Any]) -> None:
        self.label = label
        self.start = time.perf_counter()
        self.fields = {
            "request_id": request.headers.get("x-request-id") or str(uuid.uuid4()),
            "route": str(request.url.path),
            "method": request.method,
        }
        _log_api_event(
            "api_request",
            f"{label} request received",
            client_ip=request.client.host if request.client else "unknown",
            params_hash=_hash_payload(params),
            **self.fields,
        )

    def _duration_ms(self) -> int:
        return int((time.perf_counter() - self.start) * 1000)

    def failed(self, status_code: int, exc: Exception, detail: Optional[str] = None, **extra: Any) -> None:
        _log_api_event(
            "api_response",
            f"{self.label} request failed",
            level=logging.ERROR,
            status_code=status_code,
            duration_ms=self._duration_ms(),
            exception_type=exc.__class__.__name__,
            exception_msg=detail if detail is not None else str(exc),
            **self.fields,
            **extra,
        )

    def completed(self, **extra: Any) -> None:
        _log_api_event(
            "api_response",
            f"{self.label} request completed",
            status_code=200,
            duration_ms=self._duration_ms(),
            **self.fields,
            **extra,
        )


class ScanRequest(BaseModel):
    path: str


_last_scan: Optional[RunSummary] = None


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/scan")
def scan_files(payload: ScanRequest, request: Request) -> Dict[str, Any]:
    global _last_scan
    log = _RequestLog(request, "Scan", payload.model_dump())

    scan_path = Path(payload.path).expanduser()
    try:
        if not scan_path.exists():
            raise HTTPException(status_code=404, detail=f"Path not found: {scan_path}")
        if not scan_path.is_dir():
            raise HTTPException(status_code=400, detail="Path must be a directory")

        scan_path = scan_path.resolve()
        with _scan_lock:
            summary = _marker.run(scan_path)
    except HTTPException as exc:
        log.failed(exc.status_code, exc, str(exc.detail))
        raise
    except DuplicateMarkerError as exc:
        log.failed(500, exc)
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    _last_scan = summary
    response_payload = summary.as_dict()
    response_payload["timestamp"] = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")

    try:
        LAST_SCAN_PATH.parent.mkdir(parents=True, exist_ok=True)
        LAST_SCAN_PATH.write_text(
            json.dumps(response_payload, indent=2, ensure_ascii=False),
            encoding="utf-8",
        )
    except OSError as exc:
        _api_logger.warning(f"Failed to persist scan JSON: {exc}")

    log.completed(run_id=summary.run_id, duplicates_found=summary.duplicates_found)
    return response_payload


@app.get("/stats")
def get_stats(request: Request) -> Dict[str, Any]:
    log = _RequestLog(request, "Stats", {"query": dict(request.query_params)})

    if _last_scan is None:
        exc = HTTPException(status_code=404, detail="No scan has been executed yet")
        log.failed(404, exc, exc.detail)
        raise exc

    payload = _last_scan.as_dict()
    payload.pop("entries")
    log.completed(run_id=_last_scan.run_id)
    return payload


@app.get("/export")
def export_results(request: Request, format: str = Query(default="json", pattern="^(json|csv)$")) -> FileResponse:
    log = _RequestLog(request, "Export", {"format": format})

    if _last_scan is None:
        exc = HTTPException(status_code=404, detail="No scan results available to export")
        log.failed(404, exc, exc.detail)
        raise exc

    EXPORT_DIR.mkdir(parents=True, exist_ok=True)
    file_path = EXPORT_DIR / f"duplicates_{_last_scan.run_id}.{format}"

    try:
        _marker.export_results(_last_scan, output_file=file_path, format=format)
    except (OSError, ValueError) as exc:
        log.failed(500, exc, run_id=_last_scan.run_id)
        raise

    log.completed(run_id=_last_scan.run_id, format=format)
    media_type = "application/json" if format == "json" else "text/csv"
    return FileResponse(path=file_path, media_type=media_type, filename=file_path.name)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("backend.main:app", host="0.0.0.0", port=8000, reload=True)
