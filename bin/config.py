"""ModelCompare configuration: environment, config.yaml, provider registry, directory layout."""

from __future__ import annotations

import argparse
import copy
import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

import yaml

from store import write_json

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Configuration dataclass
# ---------------------------------------------------------------------------
@dataclass
class Config:
    """Runtime configuration, built once at startup and passed explicitly."""

    root_dir: Path  # Base directory for every persisted file.
    bind_host: str = "127.0.0.1"  # Local-only by default.
    bind_port: int = 3001  # Port the API listens on.
    timeout_s: float = 120.0  # Network timeout for provider requests.
    max_workers: int = 4  # Parallel provider calls per request.
    legacy_layout: bool = False  # Keep threads in threadLogs/ instead of threads/.
    allowed_origins: set = field(default_factory=lambda: {"http://localhost:3000"})
    config_yaml: Dict[str, Any] = field(default_factory=dict)  # Parsed config.yaml.


def _env_bool(name: str, default: bool) -> bool:
    """Read a permissive boolean env var with a default fallback."""
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def load_config_yaml(root_dir: Path) -> Dict[str, Any]:
    """Load the optional config.yaml from *root_dir*; {} when absent or empty."""
    cfg_path = Path(root_dir) / "config.yaml"
    if not cfg_path.exists():
        return {}
    try:
        with open(cfg_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Ignoring unreadable %s: %s", cfg_path, exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring %s: top level is not a mapping", cfg_path)
        return {}
    return data


def load_config(root_dir: str | Path | None = None) -> Config:
    """Build Config from environment variables with safe defaults."""
    root = Path(
        root_dir or os.environ.get("MODELCOMPARE_ROOT", str(Path.cwd()))
    ).expanduser().resolve()

    port = int(os.environ.get("MODELCOMPARE_BIND_PORT") or os.environ.get("PORT") or "3001")
    allowed_origins_raw = os.environ.get("MODELCOMPARE_ALLOWED_ORIGINS", "http://localhost:3000")
    allowed_origins = {v.strip() for v in allowed_origins_raw.split(",") if v.strip()}

    return Config(
        root_dir=root,
        bind_host=os.environ.get("MODELCOMPARE_BIND_HOST", "127.0.0.1"),
        bind_port=port,
        timeout_s=float(os.environ.get("MODELCOMPARE_TIMEOUT_S", "120")),
        max_workers=max(1, int(os.environ.get("MODELCOMPARE_MAX_WORKERS", "4"))),
        legacy_layout=_env_bool("MODELCOMPARE_LEGACY_LAYOUT", False),
        allowed_origins=allowed_origins,
        config_yaml=load_config_yaml(root),
    )


# ---------------------------------------------------------------------------
# Directory layout
# ---------------------------------------------------------------------------
@dataclass
class Directories:
    logs: Path
    threads: Path
    config: Path
    data: Path
    prompts: Path
    collections: Path

    @property
    def api_config(self) -> Path:
        return self.config / "apis.json"

    @property
    def changelog(self) -> Path:
        return self.data / "changelog.json"

    def all(self) -> List[Path]:
        return [self.data, self.logs, self.threads, self.config, self.prompts, self.collections]


def directories(cfg: Config) -> Directories:
    """Derive the on-disk layout from *cfg*."""
    root = Path(cfg.root_dir)
    return Directories(
        logs=root / "logs",
        threads=root / ("threadLogs" if cfg.legacy_layout else "threads"),
        config=root / "config",
        data=root / "data",
        prompts=root / "prompts",
        collections=root / "collections",
    )


DEFAULT_CHANGELOG: Dict[str, Any] = {
    "entries": [
        {
            "date": "2024-03-20",
            "title": "Added Multi-Provider Support",
            "items": [
                "Support for OpenAI, DeepSeek, and Anthropic APIs",
                "Custom API endpoint configuration",
                "Multiple API keys management",
            ],
        },
        {
            "date": "2024-03-19",
            "title": "Initial Release",
            "items": [
                "Basic model comparison",
                "Conversation threading",
                "History management",
                "Response logging system",
            ],
        },
    ]
}


def initialize_directories(cfg: Config) -> Directories:
    """Create every directory plus apis.json and changelog.json when missing."""
    dirs = directories(cfg)
    for path in dirs.all():
        if not path.exists():
            path.mkdir(parents=True, exist_ok=True)
            logger.info("Created directory: %s", path)

    if not dirs.api_config.exists():
        example = dirs.config / "apis.example.json"
        if example.exists():
            shutil.copyfile(example, dirs.api_config)
            logger.info("Created apis.json from example file")
        else:
            write_json(dirs.api_config, {"apis": []})
            logger.info("Created empty apis.json")

    if not dirs.changelog.exists():
        write_json(dirs.changelog, DEFAULT_CHANGELOG)
        logger.info("Created changelog.json")

    return dirs


# ---------------------------------------------------------------------------
# Provider registry
# ---------------------------------------------------------------------------
DEFAULT_PROVIDER_CONFIGS: Dict[str, Dict[str, Any]] = {
    "openai": {
        "url": "https://api.openai.com/v1",
        "models": ["gpt-3.5-turbo", "gpt-4", "gpt-4-turbo"],
    },
    "deepseek": {
        "url": "https://api.deepseek.com/v1",
        "models": ["deepseek-chat", "deepseek-coder"],
    },
    "anthropic": {
        "url": "https://api.anthropic.com/v1",
        "models": ["claude-3-opus", "claude-3-sonnet", "claude-3-haiku"],
    },
    "gemini": {
        "url": "https://generativelanguage.googleapis.com/v1beta/models",
        "models": ["gemini-pro"],
    },
}

# Providers accepted in apis.json besides the registry keys.
CUSTOM_PROVIDER = "custom"

# Alias → concrete model id and display metadata.
MODEL_MAPPINGS: Dict[str, Dict[str, Any]] = {
    "gpt-4-turbo": {"display_name": "GPT-4 Turbo", "actual_id": "gpt-4-turbo-preview",
                    "provider": "openai", "context_window": 128000},
    "gpt-4": {"display_name": "GPT-4", "actual_id": "gpt-4",
              "provider": "openai", "context_window": 8192},
    "gpt-3.5-turbo": {"display_name": "GPT-3.5 Turbo", "actual_id": "gpt-3.5-turbo",
                      "provider": "openai", "context_window": 16385},
    "claude-3-opus": {"display_name": "Claude 3 Opus", "actual_id": "claude-3-opus-20240229",
                      "provider": "anthropic", "context_window": 200000},
    "claude-3-sonnet": {"display_name": "Claude 3 Sonnet", "actual_id": "claude-3-sonnet-20240229",
                        "provider": "anthropic", "context_window": 200000},
    "claude-3-haiku": {"display_name": "Claude 3 Haiku", "actual_id": "claude-3-haiku-20240307",
                       "provider": "anthropic", "context_window": 200000},
    "gemini-pro": {"display_name": "Gemini Pro", "actual_id": "gemini-pro",
                   "provider": "gemini", "context_window": 32768},
    "deepseek-chat": {"display_name": "DeepSeek Chat", "actual_id": "deepseek-chat",
                      "provider": "deepseek", "context_window": 32768},
    "deepseek-coder": {"display_name": "DeepSeek Coder", "actual_id": "deepseek-coder",
                       "provider": "deepseek", "context_window": 16384},
}


def get_actual_model_id(model_id: str | None) -> str | None:
    """Resolve a model alias to the id sent to the provider; unknown ids pass through."""
    if not model_id:
        return model_id
    mapping = MODEL_MAPPINGS.get(model_id)
    return mapping["actual_id"] if mapping else model_id


def format_model_name(model_id: str) -> str:
    """Human-readable name: mapping display name, else a prettified id."""
    mapping = MODEL_MAPPINGS.get(model_id)
    if mapping:
        return mapping["display_name"]
    words = model_id.replace("gpt-", "GPT-", 1).split("-")
    return " ".join("Turbo" if w == "turbo" else w for w in words)


def provider_configs(cfg: Config) -> Dict[str, Dict[str, Any]]:
    """Registry defaults merged with the providers: section of config.yaml."""
    providers = copy.deepcopy(DEFAULT_PROVIDER_CONFIGS)
    yaml_providers = (cfg.config_yaml or {}).get("providers", {})
    if not isinstance(yaml_providers, dict):
        return providers
    for key, ycfg in yaml_providers.items():
        if not isinstance(ycfg, dict):
            continue
        pcfg = providers.setdefault(key, {"models": []})
        if ycfg.get("url"):
            pcfg["url"] = str(ycfg["url"]).rstrip("/")
        if isinstance(ycfg.get("models"), list):
            pcfg["models"] = [str(m) for m in ycfg["models"]]
    return providers


def known_providers(cfg: Config | None = None) -> List[str]:
    """Provider names accepted by apis.json validation."""
    registry = provider_configs(cfg) if cfg is not None else DEFAULT_PROVIDER_CONFIGS
    return sorted(registry) + [CUSTOM_PROVIDER]


# ---------------------------------------------------------------------------
# CLI argument parsing
# ---------------------------------------------------------------------------
def parse_args(argv: List[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments for serve/migrate execution modes."""
    parser = argparse.ArgumentParser(description="ModelCompare local API server")
    parser.add_argument("--debug", action="store_true", help="Enable verbose debug logging")
    parser.add_argument("--root", default=None, help="Data root directory (default: $MODELCOMPARE_ROOT or cwd)")
    parser.add_argument("--port", type=int, default=None, help="Port to listen on")
    sub = parser.add_subparsers(dest="cmd")
    sub.add_parser("serve", help="Run the Flask API server (default)")
    migrate_parser = sub.add_parser("migrate", help="Merge one thread file into another")
    migrate_parser.add_argument("old_id", help="thread id to merge from (deleted afterwards)")
    migrate_parser.add_argument("new_id", help="thread id to merge into")
    return parser.parse_args(argv)
