"""DAGGER configuration: env-driven Config, config.yaml loading, provider registry, CLI args."""

from __future__ import annotations

import argparse
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict


# ---------------------------------------------------------------------------
# Configuration dataclass
# ---------------------------------------------------------------------------
@dataclass
class Config:
    """Runtime configuration for the local DAGGER process."""

    state_file: Path  # Conversation store blob (ignored in stateless mode).
    bind_host: str = "127.0.0.1"  # Loopback only; single-user tool.
    bind_port: int = 8787  # Local port for the UI / API.
    timeout_s: float = 120.0  # Network timeout for provider requests.
    max_state_bytes: int = 20_000_000  # Hard upper bound for the serialized store.
    reject_symlinks: bool = True  # Refuse symlinked state files.
    max_branch_probes: int = 100  # Branch indexes tried before the timestamp fallback.
    default_provider: str = "anthropic"  # Provider used when a chat request names none.
    max_tokens: int = 4000  # Completion budget sent with each request.
    allowed_origins: set = field(default_factory=lambda: {
        "http://127.0.0.1:8787", "http://localhost:8787"
    })


def _env_bool(name: str, default: bool) -> bool:
    """Read a permissive boolean env var with a default fallback."""
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def load_config() -> Config:
    """Build Config from environment variables with safe defaults."""
    state_file = Path(
        os.environ.get("DAGGER_STATE_FILE", str(Path.cwd() / "dagger.json"))
    ).expanduser().resolve()

    port = int(os.environ.get("DAGGER_BIND_PORT", "8787"))
    allowed_origins_raw = os.environ.get(
        "DAGGER_ALLOWED_ORIGINS",
        f"http://127.0.0.1:{port},http://localhost:{port}",
    )
    allowed_origins = {v.strip() for v in allowed_origins_raw.split(",") if v.strip()}

    return Config(
        state_file=state_file,
        bind_host=os.environ.get("DAGGER_BIND_HOST", "127.0.0.1"),
        bind_port=port,
        timeout_s=float(os.environ.get("DAGGER_TIMEOUT_S", "120")),
        max_state_bytes=int(os.environ.get("DAGGER_MAX_STATE_BYTES", str(20_000_000))),
        reject_symlinks=_env_bool("DAGGER_REJECT_SYMLINKS", True),
        max_branch_probes=int(os.environ.get("DAGGER_MAX_BRANCH_PROBES", "100")),
        default_provider=os.environ.get("DAGGER_DEFAULT_PROVIDER", "anthropic").strip() or "anthropic",
        max_tokens=int(os.environ.get("DAGGER_MAX_TOKENS", "4000")),
        allowed_origins=allowed_origins,
    )


# ---------------------------------------------------------------------------
# config.yaml loader
# ---------------------------------------------------------------------------
_CONFIG_YAML_STATUS = ""  # human-readable load status for startup banner


def _load_config_yaml(project_root: Path | None = None) -> Dict[str, Any]:
    """Load config.yaml from the project directory.

    *project_root* defaults to the parent of the bin/ directory (i.e. the
    repo root).  A missing or unparseable file yields {}.
    """
    global _CONFIG_YAML_STATUS
    import yaml

    if project_root is None:
        project_root = Path(__file__).resolve().parent.parent
    cfg_path = project_root / "config.yaml"
    if not cfg_path.exists():
        _CONFIG_YAML_STATUS = f"not found at {cfg_path}"
        return {}
    try:
        with open(cfg_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        _CONFIG_YAML_STATUS = f"parse error: {exc}"
        return {}
    if not isinstance(data, dict):
        _CONFIG_YAML_STATUS = f"not a mapping at {cfg_path}"
        return {}
    _CONFIG_YAML_STATUS = f"loaded ({len(data)} keys) from {cfg_path}" if data \
        else f"empty at {cfg_path}"
    return data


_CONFIG_YAML: Dict[str, Any] = _load_config_yaml()


# ---------------------------------------------------------------------------
# Provider configuration
# ---------------------------------------------------------------------------
def _build_providers(cfg_yaml: Dict[str, Any] | None = None) -> Dict[str, Dict[str, Any]]:
    """Construct provider registry from defaults + config.yaml overrides."""
    if cfg_yaml is None:
        cfg_yaml = _CONFIG_YAML
    yaml_providers = cfg_yaml.get("providers", {}) if isinstance(cfg_yaml, dict) else {}

    providers: Dict[str, Dict[str, Any]] = {
        "anthropic": {
            "name": "Anthropic",
            "url": "https://api.anthropic.com/v1/messages",
            "api_key": os.getenv("ANTHROPIC_API_KEY", ""),
            "default_model": os.getenv("ANTHROPIC_MODEL", "claude-sonnet-4-20250514"),
        },
        "openai": {
            "name": "OpenAI",
            "url": "https://api.openai.com/v1/chat/completions",
            "api_key": os.getenv("OPENAI_API_KEY", ""),
            "default_model": os.getenv("OPENAI_MODEL", "gpt-4o"),
        },
    }

    # YAML overrides defaults; env vars still win for keys and models
    for key, ycfg in (yaml_providers or {}).items():
        if not isinstance(ycfg, dict):
            continue
        pcfg = providers.setdefault(key, {"name": key, "api_key": ""})
        if ycfg.get("name"):
            pcfg["name"] = ycfg["name"]
        if ycfg.get("url"):
            pcfg["url"] = ycfg["url"]
        if ycfg.get("default_model"):
            pcfg.setdefault("default_model", ycfg["default_model"])
        if ycfg.get("api_key") and not pcfg.get("api_key"):
            pcfg["api_key"] = ycfg["api_key"]

    return providers


PROVIDERS: Dict[str, Dict[str, Any]] = _build_providers()

# Known models per provider (for model selectors)
_PROVIDER_MODELS: Dict[str, list] = {
    "anthropic": [
        "claude-sonnet-4-20250514",
        "claude-opus-4-20250514",
        "claude-3-5-sonnet-20241022",
        "claude-3-5-haiku-20241022",
    ],
    "openai": ["gpt-4o", "gpt-4o-mini"],
}


def chat_defaults(cfg_yaml: Dict[str, Any] | None = None) -> Dict[str, Any]:
    """Chat defaults from config.yaml's `chat:` section."""
    if cfg_yaml is None:
        cfg_yaml = _CONFIG_YAML
    chat = cfg_yaml.get("chat", {}) if isinstance(cfg_yaml, dict) else {}
    if not isinstance(chat, dict):
        chat = {}
    return {
        "temperature": chat.get("temperature", 0.7),
        "model": chat.get("model", ""),
        "validate": chat.get("validate", True),
    }


# ---------------------------------------------------------------------------
# Module-level mode flags (set by main() at startup)
# ---------------------------------------------------------------------------
DEBUG_MODE: bool = False
STATELESS_MODE: bool = False


# ---------------------------------------------------------------------------
# CLI argument parsing
# ---------------------------------------------------------------------------
def parse_args(argv: list | None = None) -> argparse.Namespace:
    """Parse command-line arguments for serve/cleanup execution modes."""
    parser = argparse.ArgumentParser(description="DAGGER branching conversation server")
    parser.add_argument("--debug", action="store_true", help="Enable verbose debug logging")
    parser.add_argument("--stateless", action="store_true",
                        help="Keep the conversation store in memory only (no disk writes)")
    parser.add_argument("--url-prefix", default="",
                        help="URL path prefix (e.g. /dagger) for reverse-proxy deployments")
    sub = parser.add_subparsers(dest="cmd")
    sub.add_parser("serve", help="Run the Flask server (default)")
    sub.add_parser("cleanup", help="Remove blank-prompt nodes from the state file")
    return parser.parse_args(argv)
