import json
import os
from pathlib import Path
from typing import Any, Optional

CONFIG_DIR = Path.home() / ".config" / "feedrank"
CONFIG_FILE = CONFIG_DIR / "config.json"
ENV_PREFIX = "FEEDRANK_"

DEFAULTS: dict[str, Any] = {
    "db_path": str(CONFIG_DIR / "feedrank.db"),
    "ollama_url": "http://127.0.0.1:11434",
    "embed_model": "nomic-embed-text",
    "generate_model": "llama3.1:8b",
    "cycle_interval": 120,
    "log_level": "INFO",
}


def load_config() -> dict:
    if not CONFIG_FILE.exists():
        return {}
    try:
        with open(CONFIG_FILE, "r") as f:
            return json.load(f)
    except Exception:
        return {}


def save_config(key: str, value: Any):
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    config = load_config()
    config[key] = value
    with open(CONFIG_FILE, "w") as f:
        json.dump(config, f, indent=2)


def get_setting(key: str, default: Optional[Any] = None) -> Any:
    """Resolve a setting: FEEDRANK_<KEY> env var, then config file, then defaults."""
    env_val = os.environ.get(f"{ENV_PREFIX}{key.upper()}")
    if env_val:
        return env_val
    config = load_config()
    if key in config:
        return config[key]
    if default is not None:
        return default
    return DEFAULTS.get(key)


def get_db_path() -> Path:
    return Path(str(get_setting("db_path"))).expanduser()


def get_cycle_interval() -> float:
    raw = get_setting("cycle_interval")
    try:
        return float(raw)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid cycle_interval value: '{raw}'")
