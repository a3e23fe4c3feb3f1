#!/usr/bin/env python3
"""DAGGER local server (branching conversation store + LLM proxy).

Local-first Flask server that owns one conversation store file, numbers
and merges branches, and proxies chat turns to Anthropic or OpenAI with the
context each branch type is entitled to.

Usage:
    # Server mode (default)
    export DAGGER_STATE_FILE="/abs/path/to/dagger.json"
    python bin/dagger.py

    # Remove blank-prompt nodes from the state file and exit
    python bin/dagger.py cleanup

    # Behind a reverse proxy at /dagger
    python bin/dagger.py --url-prefix /dagger

Then open http://127.0.0.1:8787/health
"""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any, Callable, Optional

from flask import Flask, request as flask_request, jsonify

# Ensure bin/ is on the path so sibling modules are importable
sys.path.insert(0, str(Path(__file__).resolve().parent))

import config as config_mod
from branch_context import BranchContextManager
from common import (
    DaggerError,
    InvalidContentError,
    InvalidMergeError,
    NotFoundError,
    ProviderError,
    ValidationFailed,
)
from config import Config, _env_bool, load_config, parse_args
from prompts import PromptLibrary
from response import process_chat, summarize_merge
from state import ConversationStore
from storage import FileBlobStore, MemoryBlobStore
from usage import session_usage


def build_store(cfg: Config) -> ConversationStore:
    """Store backed by the state file, or by memory in stateless mode."""
    if config_mod.STATELESS_MODE:
        blob_store = MemoryBlobStore()
    else:
        blob_store = FileBlobStore(cfg.state_file, max_bytes=cfg.max_state_bytes,
                                   reject_symlinks=cfg.reject_symlinks)
    return ConversationStore(blob_store, max_branch_probes=cfg.max_branch_probes).load()


def _json_body() -> dict:
    body = flask_request.get_json(force=True, silent=True)
    if not isinstance(body, dict):
        raise InvalidContentError("Request body must be a JSON object")
    return body


# ---------------------------------------------------------------------------
# Flask app factory
# ---------------------------------------------------------------------------
def create_app(cfg: Config, store: ConversationStore | None = None,
               call_fn: Optional[Callable[..., Any]] = None, url_prefix: str = "") -> Flask:
    """Create and configure the DAGGER Flask application instance."""
    url_prefix = (url_prefix or "").strip().rstrip("/")
    app = Flask(__name__, static_folder=None)
    if store is None:
        store = build_store(cfg)
    prompts = PromptLibrary()
    contexts = BranchContextManager(store, prompts)
    app.config["DAGGER_STORE"] = store

    @app.after_request
    def add_cors_headers(response):
        """Allow the configured local UI origins."""
        origin = flask_request.headers.get("Origin", "")
        if origin and origin in cfg.allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Content-Type"
            response.headers["Access-Control-Allow-Methods"] = "GET, POST, PATCH, OPTIONS"
        return response

    @app.errorhandler(DaggerError)
    def handle_domain_error(exc):
        """Map domain errors to {"ok": false, "error": ...} with a status code."""
        if isinstance(exc, NotFoundError):
            status = 404
        elif isinstance(exc, InvalidMergeError):
            status = 409
        elif isinstance(exc, ProviderError):
            status = 502
        else:
            status = 400
        payload = {"ok": False, "error": str(exc)}
        if isinstance(exc, ValidationFailed):
            payload["errors"] = exc.errors
        if config_mod.DEBUG_MODE:
            print(f"[DEBUG] {flask_request.method} {flask_request.path} -> {status}: {exc}")
        return jsonify(payload), status

    @app.route(url_prefix + "/health", methods=["GET"])
    def health():
        """Liveness probe."""
        return jsonify({"ok": True, "stateless": config_mod.STATELESS_MODE})

    @app.route(url_prefix + "/conversations", methods=["GET", "POST"])
    def conversations():
        """List nodes (main thread, or everything with ?branches=1) or append to main."""
        if flask_request.method == "GET":
            if flask_request.args.get("branches", "").lower() in {"1", "true", "yes"}:
                nodes = store.get_all_conversations_with_branches()
            else:
                nodes = store.get_all_conversations()
            return jsonify({"ok": True, "conversations": [n.to_dict() for n in nodes]})

        body = _json_body()
        node = store.add_conversation(body.get("prompt", ""), body.get("response") or "",
                                      body.get("metadata"))
        return jsonify({"ok": True, "conversation": node.to_dict()}), 201

    @app.route(url_prefix + "/conversations/<ref>", methods=["GET", "PATCH"])
    def conversation(ref):
        """Fetch or patch one node by id or display number."""
        if flask_request.method == "PATCH":
            node = store.update_conversation(ref, _json_body())
        else:
            node = store.get_conversation(ref)
        merge = store.get_merge_record(node.id)
        return jsonify({
            "ok": True,
            "conversation": node.to_dict(),
            "isEndNode": store.is_end_node(node.id),
            "hierarchyLevel": store.get_hierarchy_level(node.id),
            "merge": merge.to_dict() if merge else None,
        })

    @app.route(url_prefix + "/branches", methods=["POST"])
    def branches():
        """Reserve a branch; the node appears once its first prompt is posted."""
        body = _json_body()
        parent = body.get("parent")
        if parent is None:
            raise InvalidContentError("parent is required")
        handle = store.create_branch(parent, body.get("branchType") or "knowledge",
                                     system_prompt=body.get("systemPrompt"),
                                     template_id=body.get("templateId"))
        return jsonify({"ok": True, "branch": handle.to_dict()}), 201

    @app.route(url_prefix + "/branches/<ref>/conversations", methods=["POST"])
    def branch_conversations(ref):
        """Materialize or continue a branch."""
        body = _json_body()
        node = store.add_conversation_to_branch(ref, body.get("prompt", ""),
                                                body.get("response") or "", body.get("metadata"))
        return jsonify({"ok": True, "conversation": node.to_dict()}), 201

    @app.route(url_prefix + "/threads/<display_number>", methods=["GET"])
    def thread(display_number):
        """Every node of the thread containing display_number."""
        nodes = store.get_branch_thread(display_number)
        return jsonify({
            "ok": True,
            "prefix": store.get_branch_prefix(display_number),
            "merged": store.is_thread_merged(display_number),
            "conversations": [n.to_dict() for n in nodes],
        })

    @app.route(url_prefix + "/merge", methods=["POST"])
    def merge():
        """Close a branch into a target end node.

        With `promptId` or `summarize: true` the source thread is first
        summarized by the provider using a merge template, and the summary is
        stored on the merge record.
        """
        body = _json_body()
        source, target = body.get("source"), body.get("target")
        if body.get("promptId") or body.get("summarize"):
            result = summarize_merge(cfg, store, prompts, source, target, body.get("promptId"),
                                     provider=body.get("provider"), model=body.get("model"),
                                     client_api_key=body.get("apiKey") or "", call_fn=call_fn)
            return jsonify({"ok": True, **result})
        merge_id = store.merge_nodes(source, target)
        return jsonify({"ok": True, "mergeId": merge_id})

    @app.route(url_prefix + "/merge/check", methods=["GET"])
    def merge_check():
        """Would merging ?source= into ?target= be accepted?"""
        source = flask_request.args.get("source")
        target = flask_request.args.get("target")
        return jsonify({"ok": True, "canMerge": store.can_merge_nodes(source, target)})

    @app.route(url_prefix + "/chat", methods=["POST"])
    def chat():
        """Run one chat turn on the main thread or a branch."""
        result = process_chat(cfg, store, contexts, _json_body(), call_fn=call_fn)
        return jsonify({"ok": True, **result})

    @app.route(url_prefix + "/cleanup", methods=["POST"])
    def cleanup():
        """Drop nodes whose prompt is blank."""
        return jsonify({"ok": True, "removed": store.cleanup_empty_threads()})

    @app.route(url_prefix + "/reset", methods=["POST"])
    def reset():
        """Clear the whole store."""
        store.reset()
        print("[Dagger] Store reset")
        return jsonify({"ok": True})

    @app.route(url_prefix + "/prompts", methods=["GET"])
    def prompt_list():
        """Prompt templates, filtered by ?usage=branch|merge, ?category= or ?starred=1."""
        category = flask_request.args.get("category")
        usage_filter = flask_request.args.get("usage")
        if usage_filter == "branch":
            templates = prompts.get_branch_prompts()
        elif usage_filter == "merge":
            templates = prompts.get_merge_prompts()
        elif flask_request.args.get("starred", "").lower() in {"1", "true", "yes"}:
            templates = prompts.get_starred_prompts()
        elif category:
            templates = prompts.get_prompts_by_category(category)
        else:
            templates = prompts.get_all_prompts()
        return jsonify({"ok": True, "prompts": [t.to_dict() for t in templates]})

    @app.route(url_prefix + "/usage", methods=["GET"])
    def usage():
        """Token and cost totals across every stored node."""
        return jsonify({"ok": True, "usage": session_usage(store.get_all_conversations_with_branches())})

    return app


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
def main(argv: list | None = None) -> int:
    """Entrypoint for server startup and one-shot cleanup."""
    args = parse_args(argv)
    config_mod.DEBUG_MODE = args.debug
    config_mod.STATELESS_MODE = args.stateless or _env_bool("DAGGER_STATELESS", False)
    cfg = load_config()
    url_prefix = (args.url_prefix or os.environ.get("DAGGER_URL_PREFIX", "")).strip().rstrip("/")
    store = build_store(cfg)

    if args.cmd == "cleanup":
        removed = store.cleanup_empty_threads()
        print(f"[Dagger] Cleanup complete: {removed} node(s) removed from {cfg.state_file}")
        return 0

    print(f"\n{'='*60}")
    print("  DAGGER conversation server")
    print(f"{'='*60}")
    print(f"  State file : {cfg.state_file}{' (STATELESS, memory only)' if config_mod.STATELESS_MODE else ''}")
    print(f"  Nodes      : {len(store.nodes_by_id)} ({len(store.main_thread)} main thread)")
    print(f"  Bind       : {cfg.bind_host}:{cfg.bind_port}")
    if url_prefix:
        print(f"  URL prefix : {url_prefix}")
    print("  Providers  :")
    for key, pcfg in config_mod.PROVIDERS.items():
        status = "ok" if pcfg.get("api_key") else "NO KEY"
        print(f"    {key}({status}, {pcfg.get('default_model', '')})")
    print(f"  Default    : {cfg.default_provider}")
    print(f"  Config YAML: {config_mod._CONFIG_YAML_STATUS}")
    print(f"  Stateless  : {'ON' if config_mod.STATELESS_MODE else 'off'}")
    print(f"  Debug      : {'ON' if config_mod.DEBUG_MODE else 'off'}")
    print(f"{'='*60}\n")

    app = create_app(cfg, store=store, url_prefix=url_prefix)
    app.run(host=cfg.bind_host, port=cfg.bind_port, debug=False)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
