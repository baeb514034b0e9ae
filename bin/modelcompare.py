#!/usr/bin/env python3
"""ModelCompare local API server.

Local-first Flask server that sends one prompt to several LLM providers,
keeps side-by-side comparison logs, a prompt library and multi-turn threads
as JSON files under one root directory.

Usage:
    # Server mode (default)
    export MODELCOMPARE_ROOT="/abs/path/to/data"
    python bin/modelcompare.py

    # Merge one thread into another
    python bin/modelcompare.py migrate OLD_THREAD_ID NEW_THREAD_ID

Then point the front end at http://localhost:3001/api
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any, List

from flask import Flask, jsonify, request as flask_request

# Ensure bin/ is on the path so sibling modules are importable
sys.path.insert(0, str(Path(__file__).resolve().parent))

import apis as apis_mod
import history
import library
from config import (
    Config,
    directories,
    initialize_directories,
    load_config,
    parse_args,
    provider_configs,
)
from dispatch import ProviderError, dispatch, list_models
from store import NotFound, StorageError, ValidationError, utc_now_iso
from threads import (
    ThreadStore,
    migrate_thread,
    normalize_messages,
    reconcile_thread_id,
    resolve_thread_id,
    save_turn,
)

logger = logging.getLogger(__name__)


def _json_body() -> dict:
    body = flask_request.get_json(force=True, silent=True)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _require_prompt_and_models(body: dict) -> tuple:
    prompt = body.get("prompt")
    models = body.get("models")
    if not isinstance(prompt, str) or not prompt.strip():
        raise ValidationError("Missing required field: prompt")
    if not isinstance(models, list) or not models or not all(isinstance(m, str) and m for m in models):
        raise ValidationError("models must be a non-empty list of model ids")
    return prompt, models


# ---------------------------------------------------------------------------
# Flask app factory
# ---------------------------------------------------------------------------
def create_app(cfg: Config) -> Flask:
    """Create and configure the ModelCompare Flask application instance."""
    app = Flask(__name__, static_folder=None)
    dirs = initialize_directories(cfg)
    store = ThreadStore(dirs.threads)

    @app.after_request
    def add_cors_headers(response):
        """Allow the configured front-end origins."""
        origin = flask_request.headers.get("Origin", "")
        if origin and origin in cfg.allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Content-Type"
            response.headers["Access-Control-Allow-Methods"] = "GET, POST, PATCH, DELETE, OPTIONS"
        return response

    @app.errorhandler(NotFound)
    def handle_not_found(exc):
        return jsonify({"error": str(exc)}), 404

    @app.errorhandler(ValidationError)
    def handle_validation(exc):
        return jsonify({"error": str(exc)}), 400

    @app.errorhandler(StorageError)
    def handle_storage(exc):
        logger.error("Storage failure: %s", exc)
        return jsonify({"error": str(exc)}), 500

    @app.errorhandler(ProviderError)
    def handle_provider(exc):
        logger.error("Provider failure: %s", exc)
        return jsonify({"error": str(exc)}), 500

    # -- Health, models, changelog -------------------------------------------
    @app.route("/api/health", methods=["GET"])
    def health():
        """Liveness endpoint for local health checks."""
        return jsonify({"status": "ok", "timestamp": utc_now_iso()})

    @app.route("/api/models", methods=["GET"])
    def models():
        return jsonify(list_models(cfg, apis_mod.active_apis(cfg)))

    @app.route("/api/changelog", methods=["GET"])
    def changelog():
        return jsonify(history.load_changelog(cfg))

    # -- One-shot comparison and its logs ------------------------------------
    @app.route("/api/chat", methods=["POST"])
    def chat():
        """Send one prompt to every requested model and log the comparison."""
        body = _json_body()
        prompt, model_ids = _require_prompt_and_models(body)
        responses = dispatch(cfg, apis_mod.active_apis(cfg), model_ids, prompt)
        saved = history.save_conversation(cfg, model_ids, prompt, responses)
        return jsonify({"responses": responses, "fileName": saved["fileName"]})

    @app.route("/api/logs", methods=["GET"])
    def logs_list():
        return jsonify(history.list_logs(cfg))

    @app.route("/api/logs", methods=["DELETE"])
    def logs_clear():
        history.clear_logs(cfg)
        return "", 204

    @app.route("/api/logs/<date>/<filename>", methods=["DELETE"])
    def logs_delete(date, filename):
        history.delete_log(cfg, date, filename)
        return "", 204

    # -- Provider APIs -------------------------------------------------------
    @app.route("/api/provider-apis", methods=["GET"])
    def provider_apis_list():
        return jsonify([apis_mod.public_view(a) for a in apis_mod.list_apis(cfg)])

    @app.route("/api/provider-apis", methods=["POST"])
    def provider_apis_add():
        created = apis_mod.add_api(cfg, _json_body())
        return jsonify(apis_mod.public_view(created)), 201

    @app.route("/api/provider-apis/<api_id>", methods=["GET"])
    def provider_apis_get(api_id):
        return jsonify(apis_mod.public_view(apis_mod.get_api(cfg, api_id)))

    @app.route("/api/provider-apis/<api_id>", methods=["PATCH"])
    def provider_apis_update(api_id):
        updated = apis_mod.update_api(cfg, api_id, _json_body())
        return jsonify(apis_mod.public_view(updated))

    @app.route("/api/provider-apis/<api_id>", methods=["DELETE"])
    def provider_apis_delete(api_id):
        apis_mod.delete_api(cfg, api_id)
        return "", 204

    # -- Prompt library ------------------------------------------------------
    @app.route("/api/prompts", methods=["GET"])
    def prompts_list():
        return jsonify(library.list_prompts(cfg))

    @app.route("/api/prompts", methods=["POST"])
    def prompts_save():
        return jsonify(library.save_prompt(cfg, _json_body())), 201

    @app.route("/api/prompts/reorder", methods=["POST"])
    def prompts_reorder():
        count = library.reorder_prompts(cfg, _json_body().get("prompts"))
        return jsonify({"message": "Prompts reordered successfully", "count": count})

    @app.route("/api/prompts/<prompt_key>", methods=["GET"])
    def prompts_get(prompt_key):
        return jsonify(library.get_prompt(cfg, prompt_key))

    @app.route("/api/prompts/<prompt_key>", methods=["DELETE"])
    def prompts_delete(prompt_key):
        library.delete_prompt(cfg, prompt_key)
        return "", 204

    @app.route("/api/collections", methods=["GET"])
    def collections_list():
        return jsonify(library.list_collections(cfg))

    @app.route("/api/collections", methods=["POST"])
    def collections_create():
        return jsonify(library.create_collection(cfg, _json_body().get("name"))), 201

    @app.route("/api/collections/<collection_id>/prompts", methods=["POST"])
    def collections_add_prompt(collection_id):
        prompt_id = _json_body().get("promptId")
        if not isinstance(prompt_id, str) or not prompt_id:
            raise ValidationError("Missing required field: promptId")
        collection = library.add_prompt_to_collection(cfg, collection_id, prompt_id)
        return jsonify({"message": "Prompt added to collection", "collection": collection})

    @app.route("/api/collections/<collection_id>/prompts/<prompt_id>", methods=["DELETE"])
    def collections_remove_prompt(collection_id, prompt_id):
        collection = library.remove_prompt_from_collection(cfg, collection_id, prompt_id)
        return jsonify({"message": "Prompt removed from collection", "collection": collection})

    @app.route("/api/collections/<collection_id>", methods=["DELETE"])
    def collections_delete(collection_id):
        library.delete_collection(cfg, collection_id)
        return "", 204

    # -- Threads -------------------------------------------------------------
    @app.route("/api/threads", methods=["GET"])
    def threads_list():
        return jsonify({"threads": store.list_all()})

    @app.route("/api/threads", methods=["POST"])
    def threads_create():
        body = _json_body()
        models_field = body.get("models") if isinstance(body.get("models"), list) else None
        thread = store.get_or_create(resolve_thread_id(body.get("threadId")), models_field)
        return jsonify(thread), 201

    @app.route("/api/threads", methods=["DELETE"])
    def threads_delete_all():
        removed = store.delete_all()
        logger.info("Deleted %d threads", removed)
        return "", 204

    @app.route("/api/threads/summaries", methods=["GET"])
    def threads_summaries():
        return jsonify({"threads": store.summaries()})

    @app.route("/api/threads/<thread_id>", methods=["GET"])
    def threads_get(thread_id):
        return jsonify(store.get(thread_id))

    @app.route("/api/threads/<thread_id>", methods=["DELETE"])
    @app.route("/api/thread/<thread_id>", methods=["DELETE"])
    def threads_delete(thread_id):
        store.delete(thread_id)
        return "", 204

    @app.route("/api/threads/migrate", methods=["POST"])
    def threads_migrate():
        body = _json_body()
        old_id, new_id = body.get("from"), body.get("to")
        if not isinstance(old_id, str) or not old_id or not isinstance(new_id, str) or not new_id:
            raise ValidationError("Both 'from' and 'to' thread ids are required")
        result = migrate_thread(store, old_id, new_id)
        return jsonify(result), (200 if result["success"] else 500)

    @app.route("/api/threads/thread-chat", methods=["POST"])
    @app.route("/api/thread-chat", methods=["POST"])
    def thread_chat():
        """Run one threaded turn: each model sees the user turns plus its own replies."""
        body = _json_body()
        prompt, model_ids = _require_prompt_and_models(body)
        raw_previous = body.get("previousMessages")
        previous: List[Any] = raw_previous if isinstance(raw_previous, list) else []

        thread_id = reconcile_thread_id(
            store, body.get("threadId"), body.get("migrateFrom"), previous)
        known = store.get(thread_id)["messages"] if store.exists(thread_id) else []
        conversation = known or normalize_messages(previous, utc_now_iso())

        responses = dispatch(cfg, apis_mod.active_apis(cfg), model_ids, prompt, conversation)
        thread_id, thread = save_turn(store, thread_id, prompt, responses, model_ids, previous)
        return jsonify({"threadId": thread_id, "responses": responses, "history": thread["messages"]})

    @app.route("/api/thread-history/<thread_id>", methods=["GET"])
    def thread_history(thread_id):
        thread = store.get_or_create(thread_id)
        return jsonify({"threadId": thread_id, "messages": thread["messages"]})

    return app


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
def run_cli_migrate(cfg: Config, old_id: str, new_id: str) -> int:
    dirs = initialize_directories(cfg)
    result = migrate_thread(ThreadStore(dirs.threads), old_id, new_id)
    if result["success"]:
        print(f"Merged thread {old_id} into {new_id}")
        return 0
    print(f"Migration failed: {result.get('error')}", file=sys.stderr)
    return 1


def main() -> int:
    """Entrypoint for server startup and one-shot thread migration."""
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    cfg = load_config(args.root)
    if args.port:
        cfg.bind_port = args.port

    if args.cmd == "migrate":
        return run_cli_migrate(cfg, args.old_id, args.new_id)

    # Default: serve
    app = create_app(cfg)
    dirs = directories(cfg)

    print(f"\n{'='*60}")
    print(f"  ModelCompare API")
    print(f"{'='*60}")
    print(f"  Root       : {cfg.root_dir}")
    print(f"  Threads    : {dirs.threads}{' (legacy layout)' if cfg.legacy_layout else ''}")
    print(f"  Bind       : {cfg.bind_host}:{cfg.bind_port}")
    apis = apis_mod.list_apis(cfg)
    registry = provider_configs(cfg)
    print(f"  APIs       :")
    if not apis:
        print(f"    (none configured; add one via POST /api/provider-apis)")
    for api in apis:
        status = "active" if api.get("active") else "inactive"
        url = api.get("url") or registry.get(api.get("provider"), {}).get("url", "")
        print(f"    {api.get('name')}({api.get('provider')}, {status}, {url})")
    print(f"  Origins    : {', '.join(sorted(cfg.allowed_origins))}")
    print(f"  Debug      : {'ON' if args.debug else 'off'}")
    print(f"  API        : http://{cfg.bind_host}:{cfg.bind_port}/api")
    print(f"{'='*60}\n")

    app.run(host=cfg.bind_host, port=cfg.bind_port, debug=False, threaded=True)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
