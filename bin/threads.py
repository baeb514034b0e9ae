"""Thread persistence and reconciliation.

One file per thread, ``<thread id>.json``, holding the enveloped record::

    {"id": ..., "messages": [...], "models": [...], "createdAt": ..., "updatedAt": ...}

Two legacy shapes are still readable and are converted on load:

  * a bare JSON array of messages (no envelope);
  * newline-delimited comparison log lines ``{"prompt", "model", "response"}``.

Only the enveloped shape is ever written.  Files are read fresh on every call
and written whole; concurrent writers to one thread are last-writer-wins.
"""

from __future__ import annotations

import copy
import json
import logging
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from config import get_actual_model_id
from store import (
    NotFound,
    StorageError,
    check_key,
    list_files,
    parse_iso,
    read_text,
    remove_file,
    utc_now_iso,
    write_json,
)

logger = logging.getLogger(__name__)

ROLES = ("user", "assistant", "system")
ERROR_PREFIX = "Error:"

# Tags for the on-disk shape a thread was read from.
FORMAT_THREAD = "thread"
FORMAT_LEGACY_ARRAY = "legacy-array"
FORMAT_LEGACY_LOG = "legacy-log"

_RE_UUID = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------
def normalize_message(raw: Any, fallback_timestamp: str) -> dict | None:
    """Coerce a message-like object into a ThreadMessage; None when unusable."""
    if not isinstance(raw, dict):
        return None
    role = raw.get("role")
    if role not in ROLES:
        return None
    content = raw.get("content")
    if content is None:
        return None
    msg: Dict[str, Any] = {"role": role, "content": str(content)}
    if isinstance(raw.get("model"), str) and raw["model"]:
        msg["model"] = raw["model"]
    timestamp = raw.get("timestamp")
    msg["timestamp"] = timestamp if isinstance(timestamp, str) and timestamp else fallback_timestamp
    if "usage" in raw and (raw["usage"] is None or isinstance(raw["usage"], dict)):
        msg["usage"] = raw["usage"]
    return msg


def normalize_messages(raw_messages: Iterable[Any], fallback_timestamp: str) -> List[dict]:
    messages = []
    for raw in raw_messages:
        msg = normalize_message(raw, fallback_timestamp)
        if msg is not None:
            messages.append(msg)
    return messages


def _ordered_union(*groups: Iterable[Any]) -> List[str]:
    seen: List[str] = []
    for group in groups:
        for item in group or []:
            if isinstance(item, str) and item and item not in seen:
                seen.append(item)
    return seen


def new_thread(thread_id: str, models: Iterable[str] | None = None) -> dict:
    now = utc_now_iso()
    return {
        "id": thread_id,
        "messages": [],
        "models": _ordered_union(models or []),
        "createdAt": now,
        "updatedAt": now,
    }


def _wrap_legacy(thread_id: str, messages: List[dict], file_time: str) -> dict:
    """Synthesize an envelope around a legacy message list."""
    stamps = [m["timestamp"] for m in messages if m.get("timestamp")]
    return {
        "id": thread_id,
        "messages": messages,
        "models": _ordered_union(m.get("model") for m in messages if m["role"] == "assistant"),
        "createdAt": stamps[0] if stamps else file_time,
        "updatedAt": stamps[-1] if stamps else file_time,
    }


def _messages_from_log_lines(entries: List[dict]) -> List[dict]:
    """Group legacy log lines by prompt: one user message, then one reply per line."""
    groups: Dict[str, List[dict]] = {}
    for entry in entries:
        prompt = entry.get("prompt")
        if not isinstance(prompt, str):
            continue
        groups.setdefault(prompt, []).append(entry)

    messages: List[dict] = []
    for prompt, lines in groups.items():
        first_ts = lines[0].get("timestamp")
        user = {"role": "user", "content": prompt}
        if first_ts:
            user["timestamp"] = first_ts
        messages.append(user)
        for line in lines:
            # failed calls were logged with "error" and no response
            if not isinstance(line.get("response"), str):
                continue
            reply = {"role": "assistant", "content": line["response"]}
            if line.get("model"):
                reply["model"] = line["model"]
            if line.get("timestamp"):
                reply["timestamp"] = line["timestamp"]
            messages.append(reply)
    return messages


def parse_thread_document(thread_id: str, text: str, file_time: str) -> Tuple[dict, str]:
    """Parse file text into (thread, format tag), trying the enveloped shape first."""
    try:
        doc = json.loads(text)
        entries = [doc] if isinstance(doc, dict) and "prompt" in doc and "messages" not in doc else None
    except json.JSONDecodeError:
        doc = None
        lines = [line for line in text.splitlines() if line.strip()]
        try:
            entries = [json.loads(line) for line in lines]
        except json.JSONDecodeError as exc:
            raise StorageError(f"Corrupt thread file {thread_id}.json: {exc}", exc) from exc
        if not entries or not all(isinstance(e, dict) and "prompt" in e for e in entries):
            raise StorageError(f"Unrecognized thread format in {thread_id}.json")

    if entries is not None:
        # One comparison log line per reply.
        messages = normalize_messages(_messages_from_log_lines(entries), file_time)
        return _wrap_legacy(thread_id, messages, file_time), FORMAT_LEGACY_LOG

    if isinstance(doc, dict) and isinstance(doc.get("messages"), list):
        created = doc.get("createdAt") if isinstance(doc.get("createdAt"), str) else file_time
        updated = doc.get("updatedAt") if isinstance(doc.get("updatedAt"), str) else created
        thread = {
            "id": thread_id,
            "messages": normalize_messages(doc["messages"], created),
            "models": _ordered_union(doc.get("models") if isinstance(doc.get("models"), list) else []),
            "createdAt": created,
            "updatedAt": updated,
        }
        return thread, FORMAT_THREAD

    if isinstance(doc, list):
        messages = normalize_messages(doc, file_time)
        return _wrap_legacy(thread_id, messages, file_time), FORMAT_LEGACY_ARRAY

    raise StorageError(f"Unrecognized thread format in {thread_id}.json")


# ---------------------------------------------------------------------------
# Thread repository
# ---------------------------------------------------------------------------
class ThreadStore:
    """Maps thread ids to thread records kept as JSON files in one directory."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def path_for(self, thread_id: str) -> Path:
        return self.directory / f"{check_key(thread_id, 'thread id')}.json"

    def exists(self, thread_id: str) -> bool:
        return self.path_for(thread_id).is_file()

    def read(self, thread_id: str) -> Tuple[dict, str]:
        """Load a thread and the format tag of its file."""
        path = self.path_for(thread_id)
        text = read_text(path)
        try:
            mtime = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
            file_time = mtime.strftime("%Y-%m-%dT%H:%M:%S.000Z")
        except OSError:
            file_time = utc_now_iso()
        return parse_thread_document(thread_id, text, file_time)

    def get(self, thread_id: str) -> dict:
        """Return the thread; NotFound when no file exists."""
        thread, _fmt = self.read(thread_id)
        return thread

    def save(self, thread: dict) -> dict:
        """Persist *thread* in the enveloped format and return a copy."""
        thread_id = thread["id"]
        record = {
            "id": thread_id,
            "messages": list(thread.get("messages") or []),
            "models": _ordered_union(thread.get("models") or []),
            "createdAt": thread.get("createdAt") or utc_now_iso(),
            "updatedAt": thread.get("updatedAt") or utc_now_iso(),
        }
        write_json(self.path_for(thread_id), record)
        return copy.deepcopy(record)

    def get_or_create(self, thread_id: str, models: Iterable[str] | None = None) -> dict:
        """Return the thread, creating and persisting an empty one when absent."""
        try:
            return self.get(thread_id)
        except NotFound:
            logger.info("Creating new thread %s", thread_id)
            return self.save(new_thread(thread_id, models))

    def append(self, thread_id: str, *messages: dict) -> dict:
        """Push messages onto the thread in order; no deduplication here."""
        thread = self.get_or_create(thread_id)
        now = utc_now_iso()
        for message in messages:
            msg = normalize_message(message, now)
            if msg is None:
                raise StorageError(f"Refusing to append malformed message to {thread_id}")
            thread["messages"].append(msg)
        thread["updatedAt"] = now
        return self.save(thread)

    def scan(self) -> List[Tuple[str, Optional[dict], Optional[str]]]:
        """Read every thread file; one (id, thread, error) result per file."""
        results: List[Tuple[str, Optional[dict], Optional[str]]] = []
        for name in list_files(self.directory, ".json"):
            thread_id = name[: -len(".json")]
            try:
                results.append((thread_id, self.get(thread_id), None))
            except (StorageError, NotFound, ValueError) as exc:
                results.append((thread_id, None, str(exc)))
        return results

    def list_all(self) -> List[dict]:
        """All readable threads, most recently updated first."""
        threads = []
        for thread_id, thread, error in self.scan():
            if error is not None:
                logger.warning("Skipping unreadable thread %s: %s", thread_id, error)
                continue
            threads.append(thread)
        threads.sort(key=lambda t: parse_iso(t.get("updatedAt")), reverse=True)
        return threads

    def summaries(self) -> List[dict]:
        """Lightweight listing rows for a history panel."""
        rows = []
        for thread in self.list_all():
            first_user = next((m for m in thread["messages"] if m["role"] == "user"), None)
            rows.append({
                "id": thread["id"],
                "shortId": thread["id"][-8:],
                "firstPrompt": first_user["content"] if first_user else "No prompt found",
                "models": thread["models"],
                "messageCount": len(thread["messages"]),
                "createdAt": thread["createdAt"],
                "updatedAt": thread["updatedAt"],
            })
        return rows

    def delete(self, thread_id: str) -> None:
        """Remove one thread; NotFound when absent."""
        remove_file(self.path_for(thread_id))

    def delete_all(self) -> int:
        """Remove every thread file, continuing past individual failures."""
        removed = 0
        for name in list_files(self.directory, ".json"):
            try:
                remove_file(self.directory / name, missing_ok=True)
                removed += 1
            except StorageError as exc:
                logger.error("Error deleting thread file %s: %s", name, exc)
        return removed


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------
def is_generated_id(thread_id: str | None) -> bool:
    """True for ids shaped like the UUIDs this server hands out."""
    return bool(thread_id) and bool(_RE_UUID.match(thread_id))


def resolve_thread_id(client_thread_id: Any) -> str:
    """A usable client id is authoritative; otherwise hand out a fresh UUID v4."""
    if isinstance(client_thread_id, str) and client_thread_id.strip() and client_thread_id != "null":
        return client_thread_id
    new_id = str(uuid.uuid4())
    logger.info("Generated new thread id %s (client sent %r)", new_id, client_thread_id)
    return new_id


def dedup_key(message: dict) -> tuple:
    return (message.get("role"), message.get("content"), message.get("model"))


def merge_messages(base: List[dict], incoming: List[dict]) -> List[dict]:
    """*base* followed by every *incoming* message whose dedup key is new."""
    merged = list(base)
    seen = {dedup_key(m) for m in merged}
    for msg in incoming:
        key = dedup_key(msg)
        if key in seen:
            continue
        seen.add(key)
        merged.append(msg)
    return merged


def migrate_thread(store: ThreadStore, old_id: str, new_id: str) -> Dict[str, Any]:
    """Fold the history stored under *old_id* into *new_id* and delete the old file.

    Best effort: failures are logged and reported, never raised.
    """
    if old_id == new_id:
        return {"success": True}
    try:
        if not store.exists(old_id):
            logger.debug("Migration source %s not found; nothing to do", old_id)
            return {"success": True}

        old_thread, old_format = store.read(old_id)
        try:
            new_thread_ = store.get(new_id)
        except NotFound:
            new_thread_ = None

        incoming = new_thread_["messages"] if new_thread_ else []
        merged = {
            "id": new_id,
            "messages": merge_messages(old_thread["messages"], incoming),
            "models": _ordered_union(old_thread["models"], new_thread_["models"] if new_thread_ else []),
            "createdAt": min(
                (t["createdAt"] for t in (old_thread, new_thread_) if t),
                key=parse_iso,
            ),
            "updatedAt": utc_now_iso(),
        }
        store.save(merged)
        store.delete(old_id)
        logger.info("Migrated thread %s (%s) into %s: %d messages",
                    old_id, old_format, new_id, len(merged["messages"]))
        return {"success": True}
    except Exception as exc:
        logger.error("Error during thread migration %s -> %s: %s", old_id, new_id, exc)
        return {"success": False, "error": str(exc)}


def filter_for_model(messages: Iterable[dict] | None, model_id: str) -> List[dict]:
    """History as seen by one model: user turns plus that model's own replies.

    Untagged assistant messages predate per-message model tags and are
    shared by every model.
    """
    if not messages:
        return []
    actual = get_actual_model_id(model_id)
    view = []
    for msg in messages:
        if msg.get("role") == "assistant":
            tag = msg.get("model")
            if tag and get_actual_model_id(tag) != actual:
                continue
        view.append(dict(msg))
    return view


def backfill_models(messages: List[dict], fallback_model: str) -> int:
    """Tag untagged assistant messages with *fallback_model*; returns the count."""
    tagged = 0
    for msg in messages:
        if msg.get("role") == "assistant" and not msg.get("model"):
            msg["model"] = fallback_model
            tagged += 1
    return tagged


def _current_turn_start(messages: List[dict]) -> int | None:
    for index in range(len(messages) - 1, -1, -1):
        if messages[index]["role"] == "user":
            return index
    return None


def save_turn(
    store: ThreadStore,
    thread_id: str | None,
    prompt: str,
    responses: List[dict],
    models: List[str] | None = None,
    previous_messages: List[Any] | None = None,
) -> Tuple[str, dict]:
    """Record one user prompt and the successful model replies on a thread.

    Replies starting with "Error:" are left out of history.  Resubmitting the
    prompt of the current turn adds no second user message when that turn
    has no replies yet or already holds every new reply; otherwise the prompt
    opens a new turn.  Identical replies within a turn are stored once.
    """
    thread_id = resolve_thread_id(thread_id)
    thread = store.get_or_create(thread_id)
    messages: List[dict] = thread["messages"]
    now = utc_now_iso()

    if not messages and previous_messages:
        messages.extend(normalize_messages(previous_messages, now))

    replies: List[dict] = []
    for item in responses:
        text = item.get("response")
        if not isinstance(text, str) or text.startswith(ERROR_PREFIX):
            continue
        reply = {
            "role": "assistant",
            "content": text,
            "model": get_actual_model_id(item.get("model")),
            "timestamp": now,
        }
        if item.get("usage") is not None:
            reply["usage"] = item["usage"]
        replies.append(reply)

    # Same prompt again: reuse the open turn only if it is still waiting for
    # replies or every new reply is already recorded there.
    start = _current_turn_start(messages)
    reopening = False
    if start is not None and messages[start]["content"] == prompt:
        following = messages[start + 1:]
        if not following:
            reopening = True
        elif all(m["role"] == "assistant" for m in following):
            recorded = {dedup_key(m) for m in following}
            reopening = all(dedup_key(r) in recorded for r in replies)
    if not reopening:
        messages.append({"role": "user", "content": prompt, "timestamp": now})
        start = len(messages) - 1

    turn_keys = {dedup_key(m) for m in messages[start + 1:]}
    for reply in replies:
        key = dedup_key(reply)
        if key in turn_keys:
            continue
        turn_keys.add(key)
        messages.append(reply)

    active = [get_actual_model_id(m) for m in (models or [r.get("model") for r in responses]) if m]
    if active:
        backfill_models(messages, active[0])

    thread["messages"] = messages
    thread["models"] = _ordered_union(thread["models"], active)
    thread["updatedAt"] = now
    return thread_id, store.save(thread)


def find_thread_by_prompt(
    store: ThreadStore,
    prompt: str,
    exclude: str | None = None,
    generated_only: bool = False,
) -> str | None:
    """Linear scan for a thread holding a user message equal to *prompt*."""
    for thread_id, thread, error in store.scan():
        if error is not None:
            logger.debug("Skipping %s during prompt search: %s", thread_id, error)
            continue
        if thread_id == exclude or (generated_only and not is_generated_id(thread_id)):
            continue
        if any(m["role"] == "user" and m["content"] == prompt for m in thread["messages"]):
            return thread_id
    return None


def reconcile_thread_id(
    store: ThreadStore,
    client_thread_id: Any,
    migrate_from: str | None = None,
    previous_messages: List[Any] | None = None,
) -> str:
    """Pick the authoritative id for a turn, folding in an earlier auto-generated thread.

    An explicit *migrate_from* always wins.  Otherwise, when the client names
    a thread that has no file yet, the first user prompt of
    *previous_messages* is used to look for a server-generated thread holding
    the same conversation.
    """
    thread_id = resolve_thread_id(client_thread_id)
    if migrate_from:
        if migrate_from != thread_id:
            migrate_thread(store, migrate_from, thread_id)
        return thread_id

    if thread_id != client_thread_id or store.exists(thread_id):
        return thread_id

    first_prompt = next(
        (m.get("content") for m in previous_messages or []
         if isinstance(m, dict) and m.get("role") == "user" and m.get("content")),
        None,
    )
    if first_prompt:
        old_id = find_thread_by_prompt(store, first_prompt, exclude=thread_id, generated_only=True)
        if old_id:
            migrate_thread(store, old_id, thread_id)
    return thread_id
