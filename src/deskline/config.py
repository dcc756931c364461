"""
Saved client settings: ~/.deskline/config.json, overridden by DESKLINE_* env vars.
"""

import json
import os
from pathlib import Path
from typing import Any, Optional

CONFIG_DIR = Path.home() / ".deskline"
CONFIG_FILE = CONFIG_DIR / "config.json"

ENV_OVERRIDES = {
    "base_url": "DESKLINE_BASE_URL",
    "access_token": "DESKLINE_ACCESS_TOKEN",
    "refresh_token": "DESKLINE_REFRESH_TOKEN",
    "user_id": "DESKLINE_USER_ID",
}


def load_config(path: Optional[Path] = None) -> dict[str, Any]:
    try:
        cfg = json.loads((path or CONFIG_FILE).read_text())
    except (FileNotFoundError, json.JSONDecodeError):
        cfg = {}
    for key, var in ENV_OVERRIDES.items():
        value = os.environ.get(var)
        if value:
            cfg[key] = value
    return cfg


def save_config(cfg: dict[str, Any], path: Optional[Path] = None) -> None:
    target = path or CONFIG_FILE
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(cfg, indent=2))
