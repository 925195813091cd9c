"""
Config loader for parley.
Reads config.yaml once at startup. All other modules import from here.

The cached config is a copy-on-write snapshot: readers call get_config()
and get a dict that is never mutated in place; writers call
update_config() which deep-copies the new mapping, swaps the snapshot,
then notifies registered listeners synchronously.
"""

import copy
import logging
import os
import re
import threading
from pathlib import Path
from typing import Callable

import yaml
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

_CONFIG_PATH = Path(os.environ.get("PARLEY_CONFIG", Path(__file__).parent.parent / "config.yaml"))

_config: dict | None = None
_lock = threading.Lock()
_listeners: list[Callable[[dict], None]] = []


def _resolve_env_vars(value: str) -> str:
    """Replace ${ENV_VAR} patterns with actual environment variable values."""
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
    return re.sub(r"\$\{(\w+)\}", replacer, value)


def _walk_and_resolve(obj):
    """Recursively resolve env vars in all string values."""
    if isinstance(obj, dict):
        return {k: _walk_and_resolve(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_walk_and_resolve(v) for v in obj]
    elif isinstance(obj, str):
        return _resolve_env_vars(obj)
    return obj


def load_config(path: Path | None = None) -> dict:
    """Load and cache config from YAML file."""
    global _config
    if _config is not None and path is None:
        return _config

    config_path = Path(path) if path else _CONFIG_PATH
    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    with _lock:
        _config = _walk_and_resolve(raw)
    return _config


def get_config() -> dict:
    """Return cached base config, loading if necessary."""
    if _config is None:
        return load_config()
    return _config


def register_listener(fn: Callable[[dict], None]) -> None:
    """Call fn(new_config) after every update_config()."""
    with _lock:
        _listeners.append(fn)


def update_config(new: dict) -> dict:
    """
    Replace the active config with a resolved deep copy of `new`.
    Listeners run in registration order on the caller's thread.
    """
    global _config
    snapshot = _walk_and_resolve(copy.deepcopy(new))
    with _lock:
        _config = snapshot
        listeners = list(_listeners)

    for fn in listeners:
        try:
            fn(snapshot)
        except Exception as e:
            logger.error("Config listener %r failed: %s", fn, e)
    return snapshot


def reset_config() -> None:
    """Drop the cached config and listeners (used by tests)."""
    global _config
    with _lock:
        _config = None
        _listeners.clear()
