"""Provider adapters and the per-request model fan-out.

Every adapter takes an API entry from apis.json, a concrete model id and a
list of ``{role, content}`` messages, and returns ``(text, usage)``.  Any
failure raises :class:`ProviderError`; :func:`dispatch` turns those into
inline ``"Error: ..."`` responses so one model failing never hides the others.
"""

from __future__ import annotations

import concurrent.futures
import logging
from typing import Any, Dict, List, Tuple

import requests

from config import (
    CUSTOM_PROVIDER,
    DEFAULT_PROVIDER_CONFIGS,
    MODEL_MAPPINGS,
    Config,
    format_model_name,
    get_actual_model_id,
    provider_configs,
)
from threads import ERROR_PREFIX, filter_for_model

logger = logging.getLogger(__name__)

MAX_TOKENS = 2048
ANTHROPIC_VERSION = "2023-06-01"


class ProviderError(RuntimeError):
    """A model call failed: network error, HTTP error or unusable response body."""

    def __init__(self, message: str, provider: str = "", status: int | None = None):
        super().__init__(message)
        self.provider = provider
        self.status = status


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def provider_messages(messages: List[dict]) -> List[Dict[str, str]]:
    """Reduce thread messages to the ``{role, content}`` pairs providers accept."""
    out = []
    for msg in messages or []:
        content = msg.get("content")
        if not content:
            continue
        out.append({"role": msg.get("role", "user"), "content": str(content)})
    return out


def _usage(prompt_tokens: Any, completion_tokens: Any, total_tokens: Any = None) -> Dict[str, int] | None:
    if prompt_tokens is None and completion_tokens is None and total_tokens is None:
        return None
    prompt_tokens = int(prompt_tokens or 0)
    completion_tokens = int(completion_tokens or 0)
    if total_tokens is None:
        total_tokens = prompt_tokens + completion_tokens
    return {
        "prompt_tokens": prompt_tokens,
        "completion_tokens": completion_tokens,
        "total_tokens": int(total_tokens),
    }


def _log_preview(label: str, url: str, messages: List[Dict[str, str]]) -> None:
    if not logger.isEnabledFor(logging.DEBUG):
        return
    logger.debug("%s → %s", label, url)
    logger.debug("%s messages (%d):", label, len(messages))
    for i, m in enumerate(messages):
        text = m.get("content", "")
        logger.debug("  [%d] %s: %s%s", i, m.get("role"), text[:200], "..." if len(text) > 200 else "")


def _post_json(label: str, url: str, payload: dict, headers: dict, timeout: float,
               params: dict | None = None) -> dict:
    """POST *payload* and return the decoded body, raising ProviderError on failure."""
    try:
        resp = requests.post(url, json=payload, headers=headers, params=params, timeout=timeout)
    except requests.RequestException as exc:
        raise ProviderError(f"{label} request failed: {exc}", label) from exc
    if resp.status_code >= 400:
        raise ProviderError(f"{label} HTTP {resp.status_code}: {resp.text[:300]}", label, resp.status_code)
    try:
        data = resp.json()
    except ValueError as exc:
        raise ProviderError(f"{label} returned a non-JSON body", label, resp.status_code) from exc
    if not isinstance(data, dict):
        raise ProviderError(f"{label} returned an unexpected body", label, resp.status_code)
    return data


def _base_url(api: dict, provider: str) -> str:
    url = api.get("url") or DEFAULT_PROVIDER_CONFIGS.get(provider, {}).get("url", "")
    if not url:
        raise ProviderError(f"No URL configured for API {api.get('name', api.get('id'))!r}", provider)
    return url.rstrip("/")


# ---------------------------------------------------------------------------
# Provider adapters
# ---------------------------------------------------------------------------
def call_openai_compatible(api: dict, model: str, messages: List[Dict[str, str]],
                           timeout: float = 120.0) -> Tuple[str, Dict[str, int] | None]:
    """Call an OpenAI-style chat/completions endpoint (OpenAI, DeepSeek, custom)."""
    url = f"{_base_url(api, api.get('provider') or 'openai')}/chat/completions"
    payload = {"model": model, "messages": messages, "max_tokens": MAX_TOKENS}
    headers = {"Content-Type": "application/json"}
    if api.get("key"):
        headers["Authorization"] = f"Bearer {api['key']}"
    _log_preview("OpenAI", url, messages)

    data = _post_json("OpenAI", url, payload, headers, timeout)
    choices = data.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        raise ProviderError("OpenAI response has no choices", "OpenAI")
    text = (choices[0].get("message") or {}).get("content")
    if text is None:
        raise ProviderError("OpenAI response has no message content", "OpenAI")
    usage = data.get("usage") or {}
    return text, _usage(usage.get("prompt_tokens"), usage.get("completion_tokens"), usage.get("total_tokens"))


def build_anthropic_payload(model: str, messages: List[Dict[str, str]]) -> Dict[str, Any]:
    """Lift system messages out, merge consecutive same-role turns, start with a user turn."""
    system_parts = []
    cleaned: List[Dict[str, str]] = []
    last_role = None
    for msg in messages:
        if msg["role"] == "system":
            system_parts.append(msg["content"])
            continue
        if msg["role"] == last_role:
            cleaned[-1]["content"] += "\n" + msg["content"]
        else:
            cleaned.append(dict(msg))
            last_role = msg["role"]
    if cleaned and cleaned[0]["role"] != "user":
        cleaned.insert(0, {"role": "user", "content": "(continuing conversation)"})

    payload: Dict[str, Any] = {"model": model, "max_tokens": MAX_TOKENS, "messages": cleaned}
    if system_parts:
        payload["system"] = "\n\n".join(system_parts)
    return payload


def call_anthropic(api: dict, model: str, messages: List[Dict[str, str]],
                   timeout: float = 120.0) -> Tuple[str, Dict[str, int] | None]:
    """Call the Anthropic messages API."""
    url = f"{_base_url(api, 'anthropic')}/messages"
    payload = build_anthropic_payload(model, messages)
    headers = {
        "Content-Type": "application/json",
        "x-api-key": api.get("key", ""),
        "anthropic-version": ANTHROPIC_VERSION,
    }
    _log_preview("Anthropic", url, payload["messages"])

    data = _post_json("Anthropic", url, payload, headers, timeout)
    blocks = data.get("content") or []
    text_parts = [b.get("text", "") for b in blocks if isinstance(b, dict) and b.get("type") == "text"]
    if not text_parts:
        raise ProviderError("Anthropic response has no text content", "Anthropic")
    usage = data.get("usage") or {}
    return "".join(text_parts), _usage(usage.get("input_tokens"), usage.get("output_tokens"))


def call_gemini(api: dict, model: str, messages: List[Dict[str, str]],
                timeout: float = 120.0) -> Tuple[str, Dict[str, int] | None]:
    """Call Google's generateContent endpoint."""
    base_url = _base_url(api, "gemini")
    url = f"{base_url}/{model}:generateContent"
    system_parts = [m["content"] for m in messages if m["role"] == "system"]
    contents = [
        {"role": "model" if m["role"] == "assistant" else "user", "parts": [{"text": m["content"]}]}
        for m in messages if m["role"] != "system"
    ]
    payload: Dict[str, Any] = {
        "contents": contents,
        "generationConfig": {"maxOutputTokens": MAX_TOKENS},
    }
    if system_parts:
        payload["system_instruction"] = {"parts": [{"text": "\n".join(system_parts)}]}
    _log_preview("Gemini", url, messages)

    data = _post_json("Gemini", url, payload, {"Content-Type": "application/json"}, timeout,
                      params={"key": api.get("key", "")})
    candidates = data.get("candidates") or []
    if not candidates:
        raise ProviderError("Gemini returned no candidates", "Gemini")
    parts = (candidates[0].get("content") or {}).get("parts") or []
    text_parts = [p.get("text", "") for p in parts if isinstance(p, dict) and "text" in p]
    if not text_parts:
        raise ProviderError("Gemini response has no text content", "Gemini")
    meta = data.get("usageMetadata") or {}
    return "".join(text_parts), _usage(
        meta.get("promptTokenCount"), meta.get("candidatesTokenCount"), meta.get("totalTokenCount"))


ADAPTERS = {
    "anthropic": call_anthropic,
    "gemini": call_gemini,
}


def call_model(api: dict, model: str, messages: List[Dict[str, str]],
               timeout: float = 120.0) -> Tuple[str, Dict[str, int] | None]:
    """Route to the adapter for the API's provider; OpenAI-compatible by default."""
    adapter = ADAPTERS.get(api.get("provider", ""), call_openai_compatible)
    return adapter(api, get_actual_model_id(model), messages, timeout)


# ---------------------------------------------------------------------------
# Model listing
# ---------------------------------------------------------------------------
def _model_entry(model_id: str, api: dict) -> dict:
    entry = {
        "id": model_id,
        "name": format_model_name(model_id),
        "provider": api.get("provider"),
        "apiId": api.get("id"),
        "active": True,
    }
    mapping = MODEL_MAPPINGS.get(model_id)
    if mapping:
        entry["contextWindow"] = mapping["context_window"]
    return entry


def _live_openai_models(api: dict, timeout: float) -> List[str]:
    url = f"{_base_url(api, 'openai')}/models"
    try:
        resp = requests.get(url, headers={"Authorization": f"Bearer {api.get('key', '')}"}, timeout=timeout)
    except requests.RequestException as exc:
        raise ProviderError(f"OpenAI model listing failed: {exc}", "OpenAI") from exc
    if resp.status_code >= 400:
        raise ProviderError(f"OpenAI model listing HTTP {resp.status_code}", "OpenAI", resp.status_code)
    body = resp.json()
    if not isinstance(body, dict):
        raise ProviderError("OpenAI model listing returned an unexpected body", "OpenAI")
    data = body.get("data") or []
    return [m["id"] for m in data if isinstance(m, dict) and "gpt" in str(m.get("id", ""))]


def list_models(cfg: Config, apis: List[dict], live: bool = True) -> List[dict]:
    """Models offered by the active APIs, one entry per (model, API)."""
    registry = provider_configs(cfg)
    models: List[dict] = []
    for api in apis:
        if not api.get("active"):
            continue
        provider = api.get("provider")
        try:
            if provider == "openai" and live:
                try:
                    ids = _live_openai_models(api, min(cfg.timeout_s, 30.0))
                except (ProviderError, ValueError) as exc:
                    logger.warning("Falling back to default OpenAI models for %s: %s", api.get("name"), exc)
                    ids = list(registry["openai"]["models"])
            elif provider == CUSTOM_PROVIDER or provider not in registry:
                ids = [str(m) for m in api.get("models") or []]
            else:
                ids = list(api.get("models") or registry[provider]["models"])
            models.extend(_model_entry(model_id, api) for model_id in ids)
        except Exception as exc:
            logger.error("Error fetching models for %s: %s", api.get("name"), exc)
    return models


def resolve_api(catalog: List[dict], apis: List[dict], model_id: str) -> dict:
    """Find the API entry that serves *model_id*."""
    active = [a for a in apis if a.get("active")]
    by_id = {a.get("id"): a for a in active}
    for entry in catalog:
        if entry.get("id") == model_id and entry.get("apiId") in by_id:
            return by_id[entry["apiId"]]

    for api in active:
        if model_id in (api.get("models") or []):
            return api

    mapping = MODEL_MAPPINGS.get(model_id)
    provider = mapping["provider"] if mapping else ("openai" if "gpt" in model_id else None)
    for api in active:
        if provider and api.get("provider") == provider:
            return api
    raise ProviderError(f"No active API configured for model {model_id}")


# ---------------------------------------------------------------------------
# Fan-out
# ---------------------------------------------------------------------------
def _messages_for(model: str, prompt: str, history: List[dict] | None) -> List[Dict[str, str]]:
    messages = provider_messages(filter_for_model(history, model))
    if not messages or messages[-1]["role"] != "user" or messages[-1]["content"] != prompt:
        messages.append({"role": "user", "content": prompt})
    return messages


def dispatch(
    cfg: Config,
    apis: List[dict],
    models: List[str],
    prompt: str,
    history: List[dict] | None = None,
    catalog: List[dict] | None = None,
) -> List[dict]:
    """Send *prompt* to every model in parallel; results keep the request order."""
    if catalog is None:
        catalog = list_models(cfg, apis, live=False)

    def _call_one(model: str) -> dict:
        try:
            api = resolve_api(catalog, apis, model)
            text, usage = call_model(api, model, _messages_for(model, prompt, history), cfg.timeout_s)
            return {"model": model, "response": text, "usage": usage}
        except Exception as exc:
            logger.error("Error with model %s: %s", model, exc)
            return {"model": model, "response": f"{ERROR_PREFIX} {exc}", "usage": None}

    if len(models) == 1:
        return [_call_one(models[0])]

    max_workers = max(1, min(len(models), cfg.max_workers))
    with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = [executor.submit(_call_one, model) for model in models]
        return [fut.result() for fut in futures]
