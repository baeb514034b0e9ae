"""One-shot comparison logs under logs/<date>/ and the changelog document."""

from __future__ import annotations

import copy
import logging
import shutil
from datetime import datetime, timezone
from typing import Any, Dict, List

from config import DEFAULT_CHANGELOG, Config, directories
from store import (
    NotFound,
    StorageError,
    check_key,
    list_files,
    parse_iso,
    read_json,
    remove_file,
    write_json,
)

logger = logging.getLogger(__name__)


def _log_record(item: dict) -> dict:
    if "error" in item and "response" not in item:
        return {"model": item.get("model"), "error": str(item["error"])}
    return {"model": item.get("model"), "response": item.get("response")}


def save_conversation(cfg: Config, models: List[str], prompt: str, responses: List[dict]) -> Dict[str, str]:
    """Write one comparison to logs/<date>/<date>_<time>_<m1>_vs_<m2>.json."""
    now = datetime.now(timezone.utc)
    date_str = now.strftime("%Y-%m-%d")
    time_str = now.strftime("%H-%M-%S")
    model_names = "_vs_".join(m.replace("/", "-").replace("\\", "-") for m in models)
    file_name = f"{date_str}_{time_str}_{model_names}.json"

    record = {
        "timestamp": now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z",
        "prompt": prompt,
        "responses": [_log_record(r) for r in responses],
    }
    write_json(directories(cfg).logs / date_str / file_name, record)
    return {"fileName": file_name, "dateStr": date_str}


def list_logs(cfg: Config) -> List[dict]:
    """Every readable log as ``{date, fileName, timestamp, prompt, responses}``, newest first."""
    root = directories(cfg).logs
    if not root.is_dir():
        return []
    logs = []
    for date_dir in sorted(p for p in root.iterdir() if p.is_dir()):
        for name in list_files(date_dir, ".json"):
            try:
                data = read_json(date_dir / name)
            except (StorageError, NotFound) as exc:
                logger.warning("Skipping unreadable log %s/%s: %s", date_dir.name, name, exc)
                continue
            if not isinstance(data, dict):
                continue
            logs.append({"date": date_dir.name, "fileName": name, **data})
    logs.sort(key=lambda entry: parse_iso(entry.get("timestamp")), reverse=True)
    return logs


def delete_log(cfg: Config, date: str, filename: str) -> None:
    """Remove one log; the date directory goes too once it is empty."""
    date_dir = directories(cfg).logs / check_key(date, "date")
    path = date_dir / check_key(filename, "file name")
    if not path.is_file():
        raise NotFound("Conversation not found")
    remove_file(path)
    try:
        if not any(date_dir.iterdir()):
            date_dir.rmdir()
    except OSError as exc:
        logger.warning("Could not remove empty log directory %s: %s", date_dir, exc)


def clear_logs(cfg: Config) -> int:
    """Remove every date directory under logs/; returns how many were removed."""
    root = directories(cfg).logs
    if not root.is_dir():
        return 0
    removed = 0
    for date_dir in root.iterdir():
        if not date_dir.is_dir():
            continue
        try:
            shutil.rmtree(date_dir)
            removed += 1
        except OSError as exc:
            logger.error("Error deleting log directory %s: %s", date_dir, exc)
    return removed


def load_changelog(cfg: Config) -> Dict[str, Any]:
    """data/changelog.json, or the built-in changelog when the file is missing."""
    try:
        data = read_json(directories(cfg).changelog)
    except NotFound:
        return copy.deepcopy(DEFAULT_CHANGELOG)
    if not isinstance(data, dict) or not isinstance(data.get("entries"), list):
        raise StorageError("changelog.json has no entries list")
    return data
