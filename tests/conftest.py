"""
Pytest configuration and fixtures
"""
import logging
import os
import sys
import tempfile
from pathlib import Path
from typing import Any, List, Tuple

import pytest

PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Keep rotating logs and API data out of the user's home during tests.
_SCRATCH = Path(tempfile.mkdtemp(prefix="duplicate-marker-tests-"))
os.environ.setdefault("DUPMARK_LOG_DIR", str(_SCRATCH / "logs"))
os.environ.setdefault("DUPMARK_DATA_DIR", str(_SCRATCH / "data"))

from duplicate_marker import DuplicateMarker, Reporter  # noqa: E402


class RecordingReporter(Reporter):
    """Reporter that remembers every callback it receives."""

    def __init__(self) -> None:
        super().__init__(logging.getLogger("tests.duplicate_marker"))
        self.calls: List[Tuple[str, Tuple[Any, ...]]] = []

    def names(self, name: str) -> List[Tuple[Any, ...]]:
        return [args for call, args in self.calls if call == name]

    def root_missing(self, root):
        self.calls.append(("root_missing", (root,)))
        super().root_missing(root)

    def hidden_dir_skipped(self, path):
        self.calls.append(("hidden_dir_skipped", (path,)))
        super().hidden_dir_skipped(path)

    def permission_skipped(self, path, exc):
        self.calls.append(("permission_skipped", (path, exc)))
        super().permission_skipped(path, exc)

    def file_discovered(self, record):
        self.calls.append(("file_discovered", (record.path,)))
        super().file_discovered(record)

    def existing_duplicate(self, path):
        self.calls.append(("existing_duplicate", (path,)))
        super().existing_duplicate(path)

    def mtime_repaired(self, path, timestamp):
        self.calls.append(("mtime_repaired", (path, timestamp)))
        super().mtime_repaired(path, timestamp)

    def discovery_finished(self, found, existing):
        self.calls.append(("discovery_finished", (found, existing)))
        super().discovery_finished(found, existing)

    def hash_computed(self, record):
        self.calls.append(("hash_computed", (record.path,)))
        super().hash_computed(record)

    def progress(self, percentage):
        self.calls.append(("progress", (percentage,)))
        super().progress(percentage)

    def duplicate_marked(self, entry):
        self.calls.append(("duplicate_marked", (entry,)))
        super().duplicate_marked(entry)

    def marking_finished(self, count, total_size):
        self.calls.append(("marking_finished", (count, total_size)))
        super().marking_finished(count, total_size)


@pytest.fixture
def reporter() -> RecordingReporter:
    return RecordingReporter()


@pytest.fixture
def marker(reporter: RecordingReporter) -> DuplicateMarker:
    return DuplicateMarker(reporter=reporter)


def write_file(path: Path, content: bytes, mtime: float = None) -> Path:
    """Create ``path`` (and parents) with ``content``, optionally pinning its mtime."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


@pytest.fixture
def make_file():
    return write_file
