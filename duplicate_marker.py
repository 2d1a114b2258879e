#!/usr/bin/env python3
"""Mark byte-for-byte duplicate files by renaming them with a ``.duplicate`` suffix."""

from __future__ import annotations

import csv
import hashlib
import json
import logging
import os
import stat
import sys
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional, TextIO, Tuple, Union

MODULE_VERSION = "1.0.0"
DEFAULT_ENV = "dev"
DEFAULT_CHUNK_SIZE = 8192

DUPLICATE_EXTENSION = ".duplicate"
DUPLICATE_LOG_FILENAME = "duplicates.log"

LOG_DIR_ENV = "DUPMARK_LOG_DIR"
ENV_VAR = "DUPMARK_ENV"
DEFAULT_LOG_DIR = Path.home() / ".duplicate_marker" / "logs"
GENERAL_LOG_FILENAME = "duplicate-marker.log"
API_LOG_FILENAME = "duplicate-marker.api.log"
GENERAL_TEXT_LOG_FILENAME = "duplicate-marker.txt"
API_TEXT_LOG_FILENAME = "duplicate-marker.api.txt"
LOG_MAX_BYTES = 5 * 1024 * 1024
LOG_BACKUP_COUNT = 5
API_LOG_BACKUP_COUNT = 3

LOGGER_NAME = "duplicate_marker"


def _iso_utc(timestamp: float) -> str:
    """Return ISO-8601 UTC timestamp with Z suffix."""
    dt = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


class NDJSONFormatter(logging.Formatter):
    """Render log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        payload = getattr(record, "log_payload", {}).copy()
        payload.setdefault("timestamp", _iso_utc(record.created))
        payload.setdefault("level", record.levelname)

        message = record.getMessage()
        if not payload.get("message"):
            payload["message"] = message

        payload.setdefault("event", getattr(record, "event", message))
        return json.dumps(payload, ensure_ascii=False, default=str)


class PlainTextFormatter(logging.Formatter):
    """Render log records as human-readable text."""

    def format(self, record: logging.LogRecord) -> str:
        payload = getattr(record, "log_payload", {}).copy()
        timestamp = _iso_utc(record.created)
        message = record.getMessage()
        event = payload.get("event") or getattr(record, "event", message)
        human_message = payload.get("message") or message
        extras = {k: v for k, v in payload.items() if k not in {"event", "message"}}
        extra_str = " ".join(f"{key}={value}" for key, value in sorted(extras.items()))
        base = f"{timestamp} [{record.levelname}] {event}: {human_message}"
        return f"{base} | {extra_str}" if extra_str else base


class _ComponentFilter(logging.Filter):
    def __init__(self, *, component: str) -> None:
        super().__init__()
        self._component = component

    def filter(self, record: logging.LogRecord) -> bool:
        payload = getattr(record, "log_payload", {})
        return payload.get("component") == self._component


def _resolve_log_dir() -> Path:
    override = os.getenv(LOG_DIR_ENV)
    candidate = Path(override).expanduser() if override else DEFAULT_LOG_DIR
    try:
        candidate.mkdir(parents=True, exist_ok=True)
    except OSError:
        candidate = DEFAULT_LOG_DIR
        candidate.mkdir(parents=True, exist_ok=True)
    return candidate


def _rotating_handler(
    path: Path,
    formatter: logging.Formatter,
    backup_count: int,
    component: Optional[str] = None,
) -> RotatingFileHandler:
    handler = RotatingFileHandler(
        path,
        maxBytes=LOG_MAX_BYTES,
        backupCount=backup_count,
        encoding="utf-8",
        delay=True,
    )
    handler.setFormatter(formatter)
    if component:
        handler.addFilter(_ComponentFilter(component=component))
    return handler


def setup_logger() -> logging.Logger:
    """Return the shared package logger, attaching handlers on first use.

    Structured events go to rotating NDJSON and plain-text files under
    ``$DUPMARK_LOG_DIR``; events tagged with ``component="api"`` are also
    split into their own files. Only warnings reach stderr so console
    progress output stays readable.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.INFO)
    if not logger.handlers:
        log_dir = _resolve_log_dir()

        stream_handler = logging.StreamHandler()
        stream_handler.setLevel(logging.WARNING)
        stream_handler.setFormatter(NDJSONFormatter())
        logger.addHandler(stream_handler)

        logger.addHandler(
            _rotating_handler(log_dir / GENERAL_LOG_FILENAME, NDJSONFormatter(), LOG_BACKUP_COUNT)
        )
        logger.addHandler(
            _rotating_handler(
                log_dir / GENERAL_TEXT_LOG_FILENAME, PlainTextFormatter(), LOG_BACKUP_COUNT
            )
        )
        logger.addHandler(
            _rotating_handler(
                log_dir / API_LOG_FILENAME, NDJSONFormatter(), API_LOG_BACKUP_COUNT, "api"
            )
        )
        logger.addHandler(
            _rotating_handler(
                log_dir / API_TEXT_LOG_FILENAME, PlainTextFormatter(), API_LOG_BACKUP_COUNT, "api"
            )
        )

    return logger


class DuplicateMarkerError(Exception):
    """Base error for the duplicate marker."""


class FatalWalkError(DuplicateMarkerError):
    """Traversal failed for a reason other than a denied permission."""


class MarkingError(DuplicateMarkerError):
    """Hashing, renaming or logging a duplicate failed."""


class RenameConflictError(MarkingError):
    """The ``.duplicate`` name a file should get is already taken."""

    def __init__(self, source: str, target: str) -> None:
        super().__init__(f"Cannot rename {source}: {target} already exists")
        self.source = source
        self.target = target


def is_duplicate_path(path: Union[str, Path]) -> bool:
    return Path(path).suffix == DUPLICATE_EXTENSION


@dataclass
class FileRecord:
    path: str
    size: int
    creation_time: float
    content_hash: Optional[str] = None

    @property
    def is_duplicate(self) -> bool:
        return is_duplicate_path(self.path)


@dataclass(frozen=True)
class DuplicateLogEntry:
    duplicate_path: str
    original_path: str
    size: int = 0

    @property
    def line(self) -> str:
        return f"{self.duplicate_path} is duplicate of {self.original_path}"


@dataclass
class RunSummary:
    run_id: str
    root: str
    files_found: int = 0
    existing_duplicates: int = 0
    skipped: int = 0
    mtime_repaired: int = 0
    duplicates_found: int = 0
    bytes_reclaimed: int = 0
    duration_ms: int = 0
    entries: List[DuplicateLogEntry] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "root": self.root,
            "files_found": self.files_found,
            "existing_duplicates": self.existing_duplicates,
            "skipped": self.skipped,
            "mtime_repaired": self.mtime_repaired,
            "duplicates_found": self.duplicates_found,
            "bytes_reclaimed": self.bytes_reclaimed,
            "duration_ms": self.duration_ms,
            "entries": [
                {
                    "duplicate": entry.duplicate_path,
                    "original": entry.original_path,
                    "size": entry.size,
                }
                for entry in self.entries
            ],
        }


def creation_time(stat_result: os.stat_result) -> float:
    """Prefer the birth time where the platform records one, else the mtime."""
    birth = getattr(stat_result, "st_birthtime", None)
    if birth is not None:
        return float(birth)
    return stat_result.st_mtime


def repair_zero_mtime(path: str, stat_result: os.stat_result, created: float) -> bool:
    """Replace an unset (zero) mtime with ``created``.

    Returns False when there is nothing better to write, e.g. no birth time
    is recorded and ``created`` fell back to the zero mtime itself.
    """
    if stat_result.st_mtime != 0 or created == stat_result.st_mtime:
        return False
    os.utime(path, (stat_result.st_atime, created))
    return True


class Reporter:
    """Side channel for everything the pipeline has to say.

    The base class only emits structured log events. Subclasses add console
    output (:class:`ConsoleReporter`) or collect calls for inspection.
    """

    def __init__(
        self,
        logger: Optional[logging.Logger] = None,
        *,
        environment: str = DEFAULT_ENV,
        version: str = MODULE_VERSION,
        component: str = "library",
    ) -> None:
        self.logger = logger or setup_logger()
        self.context: Dict[str, Any] = {
            "component": component,
            "version": version,
            "env": environment.lower(),
        }

    def bind(self, **fields: Any) -> None:
        self.context.update(fields)

    def unbind(self, *keys: str) -> None:
        for key in keys:
            self.context.pop(key, None)

    def log_event(self, event: str, level: int, message: str, **fields: Any) -> None:
        payload: Dict[str, Any] = {"event": event, "message": message}
        payload.update(self.context)
        payload.update(fields)
        self.logger.log(level, message, extra={"log_payload": payload})

    def root_missing(self, root: Path) -> None:
        self.log_event("root_missing", logging.WARNING, "Root path does not exist", root=str(root))

    def hidden_dir_skipped(self, path: str) -> None:
        self.log_event("dir_skipped_hidden", logging.INFO, "Skipped hidden folder", path=path)

    def permission_skipped(self, path: Optional[str], exc: OSError) -> None:
        self.log_event(
            "entry_skipped_permission",
            logging.WARNING,
            "Permission denied",
            path=path,
            exception_type=exc.__class__.__name__,
        )

    def file_discovered(self, record: FileRecord) -> None:
        if self.logger.isEnabledFor(logging.DEBUG):
            self.log_event(
                "file_discovered", logging.DEBUG, "File discovered", path=record.path, size=record.size
            )

    def existing_duplicate(self, path: str) -> None:
        if self.logger.isEnabledFor(logging.DEBUG):
            self.log_event(
                "file_skipped_duplicate", logging.DEBUG, "Existing duplicate skipped", path=path
            )

    def mtime_repaired(self, path: str, timestamp: float) -> None:
        self.log_event(
            "mtime_repaired",
            logging.INFO,
            "Zero modification time repaired",
            path=path,
            mtime=_iso_utc(timestamp),
        )

    def discovery_finished(self, found: int, existing: int) -> None:
        self.log_event(
            "discovery_finished",
            logging.INFO,
            "Discovery finished",
            files_found=found,
            existing_duplicates=existing,
        )

    def hash_computed(self, record: FileRecord) -> None:
        if self.logger.isEnabledFor(logging.DEBUG):
            self.log_event(
                "hash_computed",
                logging.DEBUG,
                "Hash computed",
                path=record.path,
                size=record.size,
                hash_prefix=(record.content_hash or "")[:12],
            )

    def progress(self, percentage: int) -> None:
        self.log_event("marking_progress", logging.INFO, "Marking progress", percentage=percentage)

    def duplicate_marked(self, entry: DuplicateLogEntry) -> None:
        self.log_event(
            "duplicate_marked",
            logging.INFO,
            entry.line,
            duplicate=entry.duplicate_path,
            original=entry.original_path,
            size=entry.size,
        )

    def marking_finished(self, count: int, total_size: int) -> None:
        self.log_event(
            "marking_finished",
            logging.INFO,
            "Marking finished",
            duplicates_found=count,
            bytes_reclaimed=total_size,
        )


class ConsoleReporter(Reporter):
    """Reporter that also prints progress for an interactive run."""

    def __init__(
        self,
        logger: Optional[logging.Logger] = None,
        *,
        stream: Optional[TextIO] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(logger, **kwargs)
        self.stream = stream or sys.stdout

    def _write(self, text: str) -> None:
        self.stream.write(text)
        self.stream.flush()

    def _line(self, text: str) -> None:
        self._write(text + "\n")

    def root_missing(self, root: Path) -> None:
        super().root_missing(root)
        self._line(f"Path '{root}' does not exist")

    def hidden_dir_skipped(self, path: str) -> None:
        super().hidden_dir_skipped(path)
        self._line(f"Skipping hidden folder: {path}")

    def permission_skipped(self, path: Optional[str], exc: OSError) -> None:
        super().permission_skipped(path, exc)
        self._line(f"Skipping {path}: permission denied.")

    def file_discovered(self, record: FileRecord) -> None:
        super().file_discovered(record)
        self._write(".")

    def existing_duplicate(self, path: str) -> None:
        super().existing_duplicate(path)
        self._write("#")

    def mtime_repaired(self, path: str, timestamp: float) -> None:
        super().mtime_repaired(path, timestamp)
        self._line(f"Setting modified time of {path} to {_iso_utc(timestamp)}")

    def discovery_finished(self, found: int, existing: int) -> None:
        super().discovery_finished(found, existing)
        self._line(f" Found {found} files, excluding {existing} existing duplicates.")

    def progress(self, percentage: int) -> None:
        super().progress(percentage)
        self._line(f"{percentage}%")

    def duplicate_marked(self, entry: DuplicateLogEntry) -> None:
        super().duplicate_marked(entry)
        self._line(entry.line)

    def marking_finished(self, count: int, total_size: int) -> None:
        super().marking_finished(count, total_size)
        self._line(f"New duplicates found: {count}, total size: {total_size}")


class DuplicateLog:
    """Append-only ``duplicates.log`` kept next to each duplicate."""

    def __init__(self, filename: str = DUPLICATE_LOG_FILENAME) -> None:
        self.filename = filename

    def path_for(self, duplicate_path: Union[str, Path]) -> Path:
        return Path(duplicate_path).parent / self.filename

    def append(
        self, duplicate_path: str, original_path: str, size: int = 0
    ) -> DuplicateLogEntry:
        entry = DuplicateLogEntry(duplicate_path, original_path, size)
        with self.path_for(duplicate_path).open("a", encoding="utf-8") as handle:
            handle.write(entry.line + "\n")
        return entry


class TreeWalker:
    """Enumerate candidate files below ``root``."""

    def __init__(self, root: Union[str, Path], reporter: Reporter) -> None:
        self.root = Path(root)
        self.reporter = reporter
        self.existing_duplicates = 0
        self.skipped = 0
        self.mtime_repaired = 0

    def _on_walk_error(self, exc: OSError) -> None:
        if isinstance(exc, PermissionError):
            self.skipped += 1
            self.reporter.permission_skipped(exc.filename, exc)
            return
        raise FatalWalkError(f"Traversal failed at {exc.filename}: {exc}") from exc

    def _visit_file(self, path: str, records: List[FileRecord]) -> None:
        try:
            st = os.stat(path, follow_symlinks=False)
        except PermissionError as exc:
            self._on_walk_error(exc)
            return
        except OSError as exc:
            raise FatalWalkError(f"Failed to read metadata of {path}: {exc}") from exc

        if not stat.S_ISREG(st.st_mode):
            return
        if os.path.basename(path) == DUPLICATE_LOG_FILENAME:
            return

        created = creation_time(st)
        try:
            repaired = repair_zero_mtime(path, st, created)
        except OSError as exc:
            raise FatalWalkError(f"Failed to repair modification time of {path}: {exc}") from exc
        if repaired:
            self.mtime_repaired += 1
            self.reporter.mtime_repaired(path, created)

        if is_duplicate_path(path):
            self.existing_duplicates += 1
            self.reporter.existing_duplicate(path)
            return

        record = FileRecord(path=path, size=st.st_size, creation_time=created)
        records.append(record)
        self.reporter.file_discovered(record)

    def discover(self) -> List[FileRecord]:
        self.existing_duplicates = 0
        self.skipped = 0
        self.mtime_repaired = 0
        records: List[FileRecord] = []

        if not self.root.exists():
            self.reporter.root_missing(self.root)
        elif self.root.is_file():
            self._visit_file(str(self.root), records)
        else:
            walker = os.walk(self.root, topdown=True, onerror=self._on_walk_error)
            for dirpath, dirnames, filenames in walker:
                kept: List[str] = []
                for name in sorted(dirnames):
                    if name.startswith("."):
                        self.reporter.hidden_dir_skipped(os.path.join(dirpath, name))
                    else:
                        kept.append(name)
                dirnames[:] = kept

                for name in sorted(filenames):
                    self._visit_file(os.path.join(dirpath, name), records)

        self.reporter.discovery_finished(len(records), self.existing_duplicates)
        return records


def order_candidates(records: List[FileRecord]) -> List[FileRecord]:
    """Sort in place so equal-size files sit next to each other, oldest first."""
    records.sort(key=lambda record: (record.size, record.creation_time))
    return records


class DuplicateMarker:
    """Find duplicate files under a root and rename them out of the way."""

    def __init__(
        self,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        *,
        environment: Optional[str] = None,
        version: str = MODULE_VERSION,
        logger: Optional[logging.Logger] = None,
        reporter: Optional[Reporter] = None,
        duplicate_log: Optional[DuplicateLog] = None,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")

        self.chunk_size = chunk_size
        # An injected reporter owns env/version; ``environment``, ``version``
        # and ``logger`` only configure the default one.
        self.reporter = reporter or Reporter(
            logger or setup_logger(),
            environment=environment or os.getenv(ENV_VAR, DEFAULT_ENV),
            version=version,
        )
        self.env = self.reporter.context["env"]
        self.version = self.reporter.context["version"]
        self.logger = self.reporter.logger
        self.duplicate_log = duplicate_log or DuplicateLog()
        self.last_entries: List[DuplicateLogEntry] = []

    @staticmethod
    def _duration_ms(start_time: float) -> int:
        return max(0, int((time.perf_counter() - start_time) * 1000))

    def hash_record(self, record: FileRecord) -> str:
        if record.content_hash is not None:
            return record.content_hash

        hasher = hashlib.sha256()
        try:
            with open(record.path, "rb") as handle:
                while chunk := handle.read(self.chunk_size):
                    hasher.update(chunk)
        except OSError as exc:
            raise MarkingError(f"Failed to hash {record.path}: {exc}") from exc

        record.content_hash = hasher.hexdigest()
        self.reporter.hash_computed(record)
        return record.content_hash

    def _mark(self, candidate: FileRecord, original: FileRecord) -> DuplicateLogEntry:
        new_path = candidate.path + DUPLICATE_EXTENSION
        if os.path.lexists(new_path):
            raise RenameConflictError(candidate.path, new_path)
        try:
            os.rename(candidate.path, new_path)
        except OSError as exc:
            raise MarkingError(f"Failed to rename {candidate.path}: {exc}") from exc
        candidate.path = new_path

        try:
            entry = self.duplicate_log.append(candidate.path, original.path, candidate.size)
        except OSError as exc:
            raise MarkingError(
                f"Failed to write {self.duplicate_log.path_for(candidate.path)}: {exc}"
            ) from exc
        self.reporter.duplicate_marked(entry)
        return entry

    def mark_duplicates(self, records: List[FileRecord]) -> Tuple[int, int]:
        """Mark every later same-size record whose content matches an earlier one.

        ``records`` must already be ordered by :func:`order_candidates`. Marked
        records stay in the list with their new path and are skipped both as
        bases and as candidates.
        """
        self.last_entries = []
        duplicate_count = 0
        duplicate_size = 0
        previous_percentage: Optional[int] = None
        total = len(records)

        for base_index, base in enumerate(records):
            if base.is_duplicate:
                continue

            percentage = (base_index * 20 // total) * 5
            if percentage != previous_percentage:
                self.reporter.progress(percentage)
                previous_percentage = percentage

            candidate_index = base_index + 1
            while candidate_index < total and records[candidate_index].size == base.size:
                candidate = records[candidate_index]
                if not candidate.is_duplicate and self.hash_record(candidate) == self.hash_record(base):
                    entry = self._mark(candidate, base)
                    self.last_entries.append(entry)
                    duplicate_count += 1
                    duplicate_size += candidate.size
                candidate_index += 1

        self.reporter.marking_finished(duplicate_count, duplicate_size)
        return duplicate_count, duplicate_size

    def run(self, root: Union[str, Path]) -> RunSummary:
        root_path = Path(root)
        summary = RunSummary(run_id=str(uuid.uuid4()), root=str(root_path))
        self.reporter.bind(run_id=summary.run_id, root=summary.root)
        try:
            return self._run(root_path, summary)
        finally:
            self.reporter.unbind("run_id", "root")

    def _run(self, root_path: Path, summary: RunSummary) -> RunSummary:
        self.reporter.log_event("run_started", logging.INFO, "Run started", chunk_size=self.chunk_size)
        start = time.perf_counter()
        self.last_entries = []

        walker = TreeWalker(root_path, self.reporter)
        try:
            records = order_candidates(walker.discover())
            count, size = self.mark_duplicates(records)
        except DuplicateMarkerError as exc:
            self.reporter.log_event(
                "run_failed",
                logging.ERROR,
                "Run aborted",
                duration_ms=self._duration_ms(start),
                duplicates_found=len(self.last_entries),
                exception_type=exc.__class__.__name__,
                exception_msg=str(exc),
            )
            raise

        summary.files_found = len(records)
        summary.existing_duplicates = walker.existing_duplicates
        summary.skipped = walker.skipped
        summary.mtime_repaired = walker.mtime_repaired
        summary.duplicates_found = count
        summary.bytes_reclaimed = size
        summary.entries = list(self.last_entries)
        summary.duration_ms = self._duration_ms(start)

        self.reporter.log_event(
            "run_finished",
            logging.INFO,
            "Run finished",
            files_found=summary.files_found,
            existing_duplicates=summary.existing_duplicates,
            duplicates_found=count,
            bytes_reclaimed=size,
            duration_ms=summary.duration_ms,
        )
        return summary

    def export_results(
        self,
        summary: RunSummary,
        output_file: Union[str, Path],
        format: str = "json",
    ) -> None:
        output_path = Path(output_file)
        format_lower = format.lower()
        start = time.perf_counter()
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

        try:
            if format_lower == "json":
                export_data = {"timestamp": timestamp, "hash_method": "sha256"}
                export_data.update(summary.as_dict())
                output_path.write_text(
                    json.dumps(export_data, indent=2, ensure_ascii=False),
                    encoding="utf-8",
                )
            elif format_lower == "csv":
                with output_path.open("w", newline="", encoding="utf-8") as handle:
                    writer = csv.writer(handle)
                    writer.writerow(["Duplicate", "Original", "SizeBytes", "Timestamp"])
                    for entry in summary.entries:
                        writer.writerow(
                            [entry.duplicate_path, entry.original_path, entry.size, timestamp]
                        )
            else:
                raise ValueError("format must be 'json' or 'csv'")

            bytes_written = output_path.stat().st_size
        except Exception as exc:
            self.reporter.log_event(
                "export_failed",
                logging.ERROR,
                "Export failed",
                run_id=summary.run_id,
                format=format_lower,
                output_file=str(output_path),
                exception_type=exc.__class__.__name__,
                exception_msg=str(exc),
            )
            raise

        self.reporter.log_event(
            "export_completed",
            logging.INFO,
            "Export completed",
            run_id=summary.run_id,
            format=format_lower,
            output_file=str(output_path),
            bytes_written=bytes_written,
            duration_ms=self._duration_ms(start),
        )


def main(argv: Optional[List[str]] = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    if not args:
        print("Usage: duplicate-marker <directory>")
        return 1

    environment = os.getenv(ENV_VAR, DEFAULT_ENV)
    marker = DuplicateMarker(reporter=ConsoleReporter(environment=environment))
    try:
        marker.run(args[0])
    except RenameConflictError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        print(
            f"Move or delete {exc.target} (or {exc.source}) and run again.",
            file=sys.stderr,
        )
        return 2
    except DuplicateMarkerError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
