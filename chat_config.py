# chat_config.py
# Loaded from a JSON config file when one is found; every key has a default.

import json
import logging
import sys
from pathlib import Path

_HERE = Path(__file__).parent

_CONFIG_CANDIDATES = [
    Path.cwd() / "chat_config.json",
    _HERE / "chat_config.json",
    Path.home() / ".pysockets_chat" / "config.json",
]

# --- Built-in defaults (used when no config file is found) ---
_DEFAULTS: dict = {
    # Networking
    "host":               "0.0.0.0",
    "port":               12345,
    "send_timeout":       10.0,    # seconds a write to one client may block

    # Logging
    "log_level":          "INFO",

    # Chat output
    "chat_timestamps":    False,   # prefix chat lines with [HH:MM:SS]

    # Credentials (plaintext unless hash_passwords is on)
    "hash_passwords":     False,
    "pbkdf2_iterations":  390000,

    # /file requests are recorded under this directory name
    "uploads_dir":        "uploads",
}

LOG_FORMAT = '%(asctime)s [%(levelname)s] (%(threadName)s) %(message)s'
LOG_DATEFMT = '%H:%M:%S'


def load_config(path=None) -> dict:
    """
    Defaults overlaid with the first readable config file.

    An explicit `path` is tried before the standard candidates. Files that
    fail to parse are reported on stderr and skipped.
    """
    config_data = dict(_DEFAULTS)
    candidates = ([Path(path)] if path else []) + _CONFIG_CANDIDATES

    for config_path in candidates:
        if not config_path.exists():
            continue
        try:
            with open(config_path, encoding="utf-8") as f:
                loaded = json.load(f)
        except (OSError, ValueError) as e:
            print(f"[Config Warning]: could not parse {config_path}: {e}", file=sys.stderr)
            continue
        if not isinstance(loaded, dict):
            print(f"[Config Warning]: {config_path} is not a JSON object, ignoring", file=sys.stderr)
            continue
        config_data.update({k: v for k, v in loaded.items() if k in _DEFAULTS})
        break

    config_data["port"] = int(config_data["port"])
    config_data["send_timeout"] = float(config_data["send_timeout"])
    config_data["chat_timestamps"] = bool(config_data["chat_timestamps"])
    config_data["hash_passwords"] = bool(config_data["hash_passwords"])
    config_data["pbkdf2_iterations"] = int(config_data["pbkdf2_iterations"])
    return config_data


def setup_logging(level="INFO"):
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
    )
