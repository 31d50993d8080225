"""
Config loader for farmline.
Reads config.yaml once at startup. All other modules import from here.
runtime_config.yaml is hot-reloaded on every call to get_runtime_config()
via mtime check — poll intervals can be tuned without restarting the console.
"""

import logging
import os
import re
from pathlib import Path

import yaml
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

_CONFIG_PATH = Path(os.environ.get("FARMLINE_CONFIG", Path(__file__).parent.parent / "config.yaml"))
_RUNTIME_CONFIG_PATH = Path(__file__).parent.parent / "runtime_config.yaml"

_config: dict | None = None

# Runtime config hot-reload state
_runtime_config: dict = {}
_runtime_mtime: float = 0.0


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
    """Load and cache config from YAML file. An explicit path always reloads."""
    global _config
    if _config is not None and path is None:
        return _config

    config_path = Path(path) if path else _CONFIG_PATH
    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    _config = _walk_and_resolve(raw)
    return _config


def get_config() -> dict:
    """Return cached base config, loading if necessary."""
    if _config is None:
        return load_config()
    return _config


def get_runtime_config() -> dict:
    """
    Return runtime_config.yaml overrides, hot-reloading if the file changed.
    Returns the contents of the `runtime` key, or {} if file is missing/empty.
    """
    global _runtime_config, _runtime_mtime

    if not _RUNTIME_CONFIG_PATH.exists():
        return {}

    try:
        mtime = _RUNTIME_CONFIG_PATH.stat().st_mtime
    except OSError:
        return _runtime_config

    if mtime == _runtime_mtime:
        return _runtime_config

    # File changed — reload
    try:
        with open(_RUNTIME_CONFIG_PATH) as f:
            data = yaml.safe_load(f) or {}
        _runtime_config = data.get("runtime", {}) or {}
        _runtime_mtime = mtime
    except (OSError, yaml.YAMLError) as e:
        # Keep last good config on parse error
        logger.warning("runtime_config.yaml unreadable, keeping previous values: %s", e)

    return _runtime_config


POLL_CHANNELS = ("thread", "list")


def set_poll_interval(channel: str, seconds: float | None) -> bool:
    """
    Override one poll interval in runtime_config.yaml; running schedulers
    pick it up on their next tick. seconds=None drops the override, 0 turns
    that channel's polling off. Returns True if the file was written.
    """
    global _runtime_mtime
    if channel not in POLL_CHANNELS:
        raise ValueError(f"Unknown poll channel {channel!r} (expected one of {', '.join(POLL_CHANNELS)})")
    if seconds is not None and seconds < 0:
        raise ValueError(f"{channel} interval must be >= 0, got {seconds}")

    key = f"{channel}_interval"
    try:
        data = {}
        if _RUNTIME_CONFIG_PATH.exists():
            data = yaml.safe_load(_RUNTIME_CONFIG_PATH.read_text()) or {}
        runtime = data.get("runtime")
        if not isinstance(runtime, dict):
            runtime = data["runtime"] = {}

        if seconds is None:
            runtime.pop(key, None)
        else:
            runtime[key] = seconds
        _RUNTIME_CONFIG_PATH.write_text(yaml.safe_dump(data, default_flow_style=False))
    except (OSError, yaml.YAMLError) as e:
        logger.error("Could not write %s to %s: %s", key, _RUNTIME_CONFIG_PATH, e)
        return False

    # Next get_runtime_config() re-reads even within the same mtime tick
    _runtime_mtime = 0.0
    logger.info("Runtime %s set to %s", key, "default" if seconds is None else seconds)
    return True
