"""Provider API credentials kept in config/apis.json."""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, List

from config import CUSTOM_PROVIDER, Config, directories, known_providers, provider_configs
from store import NotFound, ValidationError, millis_id, read_json, write_json

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("name", "provider", "key")
ENV_API_NAME = "OpenAI (ENV)"
UPDATABLE_FIELDS = ("name", "key", "provider", "url", "active", "models")


def validate_provider_config(api: Any, cfg: Config | None = None) -> dict:
    """Raise ValidationError unless *api* names a known provider and carries a key."""
    if not isinstance(api, dict):
        raise ValidationError("Invalid provider configuration")
    missing = [f for f in REQUIRED_FIELDS if not api.get(f)]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")
    if api["provider"] not in known_providers(cfg):
        raise ValidationError(f"Unsupported provider: {api['provider']}")
    if "models" in api and not (
        isinstance(api["models"], list) and all(isinstance(m, str) for m in api["models"])
    ):
        raise ValidationError("models must be a list of model ids")
    return api


def _read_config(cfg: Config) -> Dict[str, Any]:
    path = directories(cfg).api_config
    try:
        doc = read_json(path)
    except NotFound:
        doc = {"apis": []}
    if not isinstance(doc, dict) or not isinstance(doc.get("apis"), list):
        logger.warning("%s has no apis list; treating it as empty", path)
        doc = {"apis": []}
    return doc


def _write_config(cfg: Config, doc: Dict[str, Any]) -> None:
    write_json(directories(cfg).api_config, doc)


def load_api_config(cfg: Config) -> Dict[str, Any]:
    """Read apis.json, adding an OpenAI entry for $OPENAI_API_KEY when none matches."""
    doc = _read_config(cfg)
    env_key = os.environ.get("OPENAI_API_KEY")
    if not env_key:
        return doc

    if any(a.get("key") == env_key and a.get("provider") == "openai" for a in doc["apis"]):
        return doc

    env_api = {
        "id": millis_id(_taken_ids(doc)),
        "name": ENV_API_NAME,
        "key": env_key,
        "provider": "openai",
        "url": provider_configs(cfg)["openai"]["url"],
        "active": True,
    }
    try:
        validate_provider_config(env_api, cfg)
    except ValidationError as exc:
        logger.error("Invalid OpenAI ENV configuration: %s", exc)
        return doc
    doc["apis"].append(env_api)
    _write_config(cfg, doc)
    logger.info("Added %s entry to apis.json", ENV_API_NAME)
    return doc


def _same_id(api: dict, api_id: Any) -> bool:
    # apis.json written by older versions stores numeric ids
    return str(api.get("id")) == str(api_id)


def _taken_ids(doc: dict) -> List[str]:
    return [str(a.get("id")) for a in doc["apis"]]


def list_apis(cfg: Config) -> List[dict]:
    return load_api_config(cfg)["apis"]


def active_apis(cfg: Config) -> List[dict]:
    return [a for a in list_apis(cfg) if a.get("active")]


def get_api(cfg: Config, api_id: str) -> dict:
    for api in list_apis(cfg):
        if _same_id(api, api_id):
            return api
    raise NotFound(f"API configuration {api_id} not found")


def add_api(cfg: Config, fields: Dict[str, Any]) -> dict:
    """Validate and append a new API entry; the id is generated here."""
    if not isinstance(fields, dict):
        raise ValidationError("Invalid provider configuration")
    doc = load_api_config(cfg)
    new_api = {k: v for k, v in fields.items() if k != "id"}
    new_api = {"id": millis_id(_taken_ids(doc)), **new_api}
    new_api.setdefault("active", True)
    if not new_api.get("url"):
        default_url = provider_configs(cfg).get(new_api.get("provider"), {}).get("url")
        if default_url:
            new_api["url"] = default_url
        elif new_api.get("provider") == CUSTOM_PROVIDER:
            raise ValidationError("Custom providers need a url")
    validate_provider_config(new_api, cfg)
    doc["apis"].append(new_api)
    _write_config(cfg, doc)
    return new_api


def update_api(cfg: Config, api_id: str, updates: Dict[str, Any]) -> dict:
    """Merge *updates* into an existing entry and re-validate the result."""
    if not isinstance(updates, dict):
        raise ValidationError("Update body must be an object")
    doc = load_api_config(cfg)
    for index, api in enumerate(doc["apis"]):
        if _same_id(api, api_id):
            break
    else:
        raise NotFound("API configuration not found")

    updated = dict(api)
    updated.update({k: v for k, v in updates.items() if k in UPDATABLE_FIELDS})
    validate_provider_config(updated, cfg)
    doc["apis"][index] = updated
    _write_config(cfg, doc)
    return updated


def delete_api(cfg: Config, api_id: str) -> None:
    """Drop the entry with *api_id*; NotFound when no entry matches."""
    doc = load_api_config(cfg)
    remaining = [a for a in doc["apis"] if not _same_id(a, api_id)]
    if len(remaining) == len(doc["apis"]):
        raise NotFound("API configuration not found")
    doc["apis"] = remaining
    _write_config(cfg, doc)


def mask_key(key: str | None) -> str:
    """``sk-abcdef123456`` → ``sk-...3456``."""
    if not key:
        return ""
    if len(key) <= 8:
        return "..." + key[-2:]
    return f"{key[:3]}...{key[-4:]}"


def public_view(api: dict) -> dict:
    """Copy of an API entry with the key masked, for HTTP responses."""
    view = dict(api)
    view["key"] = mask_key(api.get("key"))
    return view
