"""Saved prompts and prompt collections.

Prompts live in ``prompts/<id>-<slug(label)>.json``; collections in
``collections/<id>.json`` and list their member prompt ids.  A prompt may
name one collection through its ``collectionId`` field.
"""

from __future__ import annotations

import functools
import logging
from pathlib import Path
from typing import Any, Dict, List, Tuple

from config import Config, directories
from store import (
    NotFound,
    StorageError,
    ValidationError,
    check_key,
    list_files,
    millis_id,
    parse_iso,
    read_json,
    remove_file,
    slugify,
    utc_now_iso,
    write_json,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------
def prompt_filename(prompt: dict) -> str:
    return f"{prompt['id']}-{slugify(prompt.get('label', ''))}.json"


def _prompts_dir(cfg: Config) -> Path:
    return directories(cfg).prompts


def _read_prompts(cfg: Config) -> List[Tuple[str, dict]]:
    """(filename, prompt) for every readable prompt file."""
    folder = _prompts_dir(cfg)
    found = []
    for name in list_files(folder, ".json"):
        try:
            prompt = read_json(folder / name)
        except (StorageError, NotFound) as exc:
            logger.warning("Skipping unreadable prompt %s: %s", name, exc)
            continue
        if not isinstance(prompt, dict) or "id" not in prompt:
            logger.warning("Skipping malformed prompt %s", name)
            continue
        found.append((name, prompt))
    return found


def _compare_prompts(a: dict, b: dict) -> int:
    if a.get("order") is not None and b.get("order") is not None:
        return a["order"] - b["order"]
    # Newest first.
    diff = parse_iso(b.get("timestamp")) - parse_iso(a.get("timestamp"))
    return (diff > 0) - (diff < 0)


def list_prompts(cfg: Config) -> List[dict]:
    """Every saved prompt with its ``filename``, ordered for display."""
    prompts = [dict(prompt, filename=name) for name, prompt in _read_prompts(cfg)]
    return sorted(prompts, key=functools.cmp_to_key(_compare_prompts))


def _locate_prompt(cfg: Config, key: str) -> Tuple[str, dict]:
    """Find a prompt by id or by file name."""
    check_key(key, "prompt id")
    folder = _prompts_dir(cfg)
    if key.endswith(".json") and (folder / key).is_file():
        return key, read_json(folder / key)
    for name, prompt in _read_prompts(cfg):
        if str(prompt.get("id")) == key:
            return name, prompt
    raise NotFound("Prompt not found")


def get_prompt(cfg: Config, key: str) -> dict:
    name, prompt = _locate_prompt(cfg, key)
    return dict(prompt, filename=name)


def save_prompt(cfg: Config, fields: Dict[str, Any]) -> dict:
    """Store a new prompt; ``label`` and ``prompt`` are required."""
    if not isinstance(fields, dict):
        raise ValidationError("Prompt body must be an object")
    for required in ("label", "prompt"):
        if not isinstance(fields.get(required), str) or not fields[required].strip():
            raise ValidationError(f"Missing required field: {required}")

    taken = [str(p.get("id")) for _name, p in _read_prompts(cfg)]
    record = {k: v for k, v in fields.items() if k not in ("id", "timestamp", "filename")}
    record["id"] = millis_id(taken)
    record["timestamp"] = utc_now_iso()
    name = prompt_filename(record)
    write_json(_prompts_dir(cfg) / name, record)
    return dict(record, filename=name)


def delete_prompt(cfg: Config, key: str) -> None:
    """Remove a prompt and drop it from its collection, if any."""
    name, prompt = _locate_prompt(cfg, key)
    remove_file(_prompts_dir(cfg) / name)
    collection_id = prompt.get("collectionId")
    if not collection_id:
        return
    try:
        collection = get_collection(cfg, collection_id)
    except (NotFound, StorageError, ValidationError) as exc:
        logger.warning("Prompt %s named missing collection %s: %s", prompt["id"], collection_id, exc)
        return
    collection["prompts"] = [p for p in collection.get("prompts", []) if p != str(prompt["id"])]
    _write_collection(cfg, collection)


def reorder_prompts(cfg: Config, items: List[Any]) -> int:
    """Give each listed prompt an ``order`` equal to its position; returns the count."""
    if not isinstance(items, list):
        raise ValidationError("prompts must be a list")
    folder = _prompts_dir(cfg)
    for index, item in enumerate(items):
        if isinstance(item, dict):
            key = item.get("filename") or item.get("id")
        else:
            key = item
        if not isinstance(key, str):
            raise ValidationError(f"Cannot reorder entry {index}: no filename or id")
        name, prompt = _locate_prompt(cfg, key)
        prompt["order"] = index
        write_json(folder / name, prompt)
    return len(items)


# ---------------------------------------------------------------------------
# Collections
# ---------------------------------------------------------------------------
def _collection_path(cfg: Config, collection_id: str) -> Path:
    return directories(cfg).collections / f"{check_key(collection_id, 'collection id')}.json"


def _write_collection(cfg: Config, collection: dict) -> None:
    write_json(_collection_path(cfg, collection["id"]), collection)


def list_collections(cfg: Config) -> List[dict]:
    folder = directories(cfg).collections
    collections = []
    for name in list_files(folder, ".json"):
        try:
            data = read_json(folder / name)
        except (StorageError, NotFound) as exc:
            logger.warning("Skipping unreadable collection %s: %s", name, exc)
            continue
        if not isinstance(data, dict):
            continue
        data["id"] = name[: -len(".json")]
        data.setdefault("prompts", [])
        collections.append(data)
    return collections


def get_collection(cfg: Config, collection_id: str) -> dict:
    data = read_json(_collection_path(cfg, collection_id))
    if not isinstance(data, dict):
        raise StorageError(f"Collection {collection_id} is not an object")
    data["id"] = collection_id
    data.setdefault("prompts", [])
    return data


def create_collection(cfg: Config, name: Any) -> dict:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Missing required field: name")
    taken = [c["id"].split("-", 1)[0] for c in list_collections(cfg)]
    collection = {
        "id": f"{millis_id(taken)}-{slugify(name)}",
        "name": name,
        "prompts": [],
        "createdAt": utc_now_iso(),
    }
    _write_collection(cfg, collection)
    return collection


def add_prompt_to_collection(cfg: Config, collection_id: str, prompt_key: str) -> dict:
    """Tag the prompt with the collection and list it there once."""
    collection = get_collection(cfg, collection_id)
    name, prompt = _locate_prompt(cfg, prompt_key)
    prompt["collectionId"] = collection_id
    write_json(_prompts_dir(cfg) / name, prompt)

    prompt_id = str(prompt["id"])
    if prompt_id not in collection["prompts"]:
        collection["prompts"].append(prompt_id)
        _write_collection(cfg, collection)
    return collection


def remove_prompt_from_collection(cfg: Config, collection_id: str, prompt_key: str) -> dict:
    collection = get_collection(cfg, collection_id)
    name, prompt = _locate_prompt(cfg, prompt_key)
    if prompt.pop("collectionId", None) is not None:
        write_json(_prompts_dir(cfg) / name, prompt)
    collection["prompts"] = [p for p in collection["prompts"] if p not in (str(prompt["id"]), name)]
    _write_collection(cfg, collection)
    return collection


def delete_collection(cfg: Config, collection_id: str) -> List[Tuple[str, str]]:
    """Delete a collection, untagging its prompts best effort.

    Returns (prompt id, error) for every member that could not be untagged.
    """
    collection = get_collection(cfg, collection_id)
    failures: List[Tuple[str, str]] = []
    for prompt_key in collection["prompts"]:
        try:
            name, prompt = _locate_prompt(cfg, prompt_key)
            if prompt.pop("collectionId", None) is not None:
                write_json(_prompts_dir(cfg) / name, prompt)
        except (NotFound, StorageError, ValidationError) as exc:
            logger.error("Error updating prompt %s: %s", prompt_key, exc)
            failures.append((prompt_key, str(exc)))
    remove_file(_collection_path(cfg, collection_id))
    return failures
