"""
Configuration management for WebChatBridge.
Handles loading, saving, and managing configuration.
"""

import json
import os
from pathlib import Path

from . import constants
from .console import debug_print


# Global state
_current_config_file: str = constants.CONFIG_FILE


def get_config_file() -> str:
    """Get the current config file path."""
    return _current_config_file


def set_config_file(path: str) -> None:
    """Set the config file path (useful for tests)."""
    global _current_config_file
    _current_config_file = str(path)


def get_config() -> dict:
    """
    Load configuration from file with defaults.
    Returns a dictionary with all configuration values.
    """
    try:
        with open(_current_config_file, "r", encoding="utf-8") as f:
            config = json.load(f)
    except FileNotFoundError:
        config = {}
    except json.JSONDecodeError as e:
        debug_print(f"⚠️  Config file error: {e}, using defaults")
        config = {}

    if not isinstance(config, dict):
        config = {}

    # Ensure default keys exist
    _apply_config_defaults(config)

    return config


def _apply_config_defaults(config: dict) -> None:
    """Apply default values to config dictionary."""
    config.setdefault("api_keys", [])
    config.setdefault("user_data_dir", constants.DEFAULT_USER_DATA_DIR)
    config.setdefault("browser_headless", False)
    config.setdefault("poll_interval_seconds", constants.DEFAULT_POLL_INTERVAL_SECONDS)
    config.setdefault("exchange_timeout_seconds", constants.DEFAULT_EXCHANGE_TIMEOUT_SECONDS)
    config.setdefault("grace_window_seconds", constants.DEFAULT_GRACE_WINDOW_SECONDS)
    config.setdefault("idle_timeout_seconds", constants.DEFAULT_IDLE_TIMEOUT_SECONDS)
    config.setdefault("transient_backoff_seconds", constants.DEFAULT_TRANSIENT_BACKOFF_SECONDS)
    config.setdefault("session_acquire_attempts", constants.DEFAULT_SESSION_ACQUIRE_ATTEMPTS)
    config.setdefault("engine_init_timeout_seconds", constants.DEFAULT_ENGINE_INIT_TIMEOUT_SECONDS)
    config.setdefault("session_launch_timeout_seconds", constants.DEFAULT_SESSION_LAUNCH_TIMEOUT_SECONDS)
    config.setdefault("monitor_mode", {})
    config.setdefault("replay_log_dir", "")

    # Normalize api_keys
    if isinstance(config.get("api_keys"), list):
        normalized_keys = []
        for key_entry in config["api_keys"]:
            if isinstance(key_entry, dict):
                if "key" not in key_entry:
                    continue
                if "name" not in key_entry:
                    key_entry["name"] = "Unnamed Key"
                if "rpm" not in key_entry:
                    key_entry["rpm"] = constants.DEFAULT_RATE_LIMIT_RPM
                normalized_keys.append(key_entry)
        config["api_keys"] = normalized_keys
    else:
        config["api_keys"] = []

    if not isinstance(config.get("monitor_mode"), dict):
        config["monitor_mode"] = {}


def save_config(config: dict) -> None:
    """Save configuration to file (atomic replace)."""
    try:
        tmp_path = f"{_current_config_file}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(config, f, indent=4)
        os.replace(tmp_path, _current_config_file)
    except Exception as e:
        debug_print(f"❌ Error saving config: {e}")


def get_seconds(config: dict, key: str, default: float, *, minimum: float = 0.0, maximum: float = 3600.0) -> float:
    """Read a numeric setting, clamped to [minimum, maximum]."""
    try:
        value = float(config.get(key, default))
    except (TypeError, ValueError):
        value = float(default)
    return max(minimum, min(value, maximum))


def get_user_data_dir(config: dict) -> Path:
    return Path(str(config.get("user_data_dir") or constants.DEFAULT_USER_DATA_DIR)).expanduser()


def get_monitor_mode(config: dict, provider: str) -> str:
    modes = config.get("monitor_mode") or {}
    mode = str(modes.get(provider) or "replay").strip().lower()
    return mode if mode in ("replay", "live") else "replay"


def write_json_atomic(path: Path, data) -> None:
    """Write JSON via a tmp file + os.replace so readers never see a torn file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=4, ensure_ascii=False)
    os.replace(tmp_path, path)


def read_json(path: Path, default):
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return default
    except json.JSONDecodeError as e:
        debug_print(f"⚠️  Could not parse {path}: {e}, starting empty")
        return default
