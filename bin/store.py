"""JSON file store shared by threads, prompts, collections, logs and API config.

Every record lives in its own pretty-printed JSON file.  There is no cache
and no locking: each read goes to disk, each write replaces the whole file.
"""

from __future__ import annotations

import json
import os
import re
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, List

# ---------------------------------------------------------------------------
# Error taxonomy
# ---------------------------------------------------------------------------
class NotFound(LookupError):
    """Raised when a requested record has no backing file."""


class StorageError(Exception):
    """Raised when file I/O fails or a document is not valid JSON."""

    def __init__(self, message: str, cause: BaseException | None = None):
        super().__init__(message)
        self.cause = cause


class ValidationError(ValueError):
    """Raised for malformed request bodies or config writes."""


# ---------------------------------------------------------------------------
# Small helpers
# ---------------------------------------------------------------------------
def utc_now_iso() -> str:
    """Return the current UTC time as ISO-8601 with milliseconds and a Z suffix."""
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def parse_iso(timestamp: Any) -> float:
    """Convert an ISO-8601 string to epoch seconds; 0.0 when unparseable."""
    if not isinstance(timestamp, str) or not timestamp:
        return 0.0
    try:
        return datetime.fromisoformat(timestamp.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return 0.0


def millis_id(taken: Iterable[str] = ()) -> str:
    """Epoch milliseconds as a string, used for prompt/collection/API ids.

    Bumped past any value in *taken* so two records created within the same
    millisecond still get distinct ids.
    """
    taken = set(taken)
    value = int(time.time() * 1000)
    while str(value) in taken:
        value += 1
    return str(value)


_RE_SLUG = re.compile(r"[^a-z0-9]+")


def slugify(text: str) -> str:
    """Lowercase and collapse every run of non [a-z0-9] characters into '-'."""
    return _RE_SLUG.sub("-", str(text).lower())


def check_key(key: str, what: str = "id") -> str:
    """Reject ids that would escape their directory."""
    if not isinstance(key, str) or not key.strip():
        raise ValidationError(f"Invalid {what}: empty")
    if "/" in key or "\\" in key or key in (".", "..") or "\x00" in key:
        raise ValidationError(f"Invalid {what}: {key!r}")
    return key


# ---------------------------------------------------------------------------
# File operations
# ---------------------------------------------------------------------------
def read_json(path: Path) -> Any:
    """Parse the JSON document at *path*."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise NotFound(f"{path.name} not found") from exc
    except OSError as exc:
        raise StorageError(f"Failed to read {path}: {exc}", exc) from exc
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise StorageError(f"Corrupt JSON in {path.name}: {exc}", exc) from exc


def read_text(path: Path) -> str:
    """Return raw file text (used for formats that are not a single JSON document)."""
    path = Path(path)
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise NotFound(f"{path.name} not found") from exc
    except OSError as exc:
        raise StorageError(f"Failed to read {path}: {exc}", exc) from exc


def write_json(path: Path, document: Any) -> None:
    """Write *document* as 2-space indented JSON, replacing the file in one step."""
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        content = json.dumps(document, indent=2, ensure_ascii=False)
        fd, tmp_name = tempfile.mkstemp(prefix=path.name + ".", suffix=".tmp", dir=str(path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as tmp:
                tmp.write(content)
            os.replace(tmp_name, str(path))
        finally:
            if os.path.exists(tmp_name):
                os.remove(tmp_name)
    except (OSError, TypeError, ValueError) as exc:
        raise StorageError(f"Failed to write {path}: {exc}", exc) from exc


def remove_file(path: Path, *, missing_ok: bool = False) -> None:
    """Delete *path*; NotFound when absent unless *missing_ok*."""
    path = Path(path)
    try:
        path.unlink()
    except FileNotFoundError as exc:
        if missing_ok:
            return
        raise NotFound(f"{path.name} not found") from exc
    except OSError as exc:
        raise StorageError(f"Failed to delete {path}: {exc}", exc) from exc


def list_files(directory: Path, suffix: str | None = None) -> List[str]:
    """Sorted file names in *directory*, optionally filtered by suffix."""
    directory = Path(directory)
    if not directory.is_dir():
        return []
    try:
        names = [p.name for p in directory.iterdir() if p.is_file()]
    except OSError as exc:
        raise StorageError(f"Failed to list {directory}: {exc}", exc) from exc
    if suffix:
        names = [n for n in names if n.endswith(suffix)]
    return sorted(names)
