from __future__ import annotations

import json
import logging
from pathlib import Path
from threading import Lock
from typing import Any

logger = logging.getLogger(__name__)

_lock = Lock()
_config: dict[str, Any] | None = None

_DEFAULT_CONFIG: dict[str, Any] = {
    "credit_products": {"single_credit": 1, "credit_pack": 5},
    "subscription_products": {"monthly": "monthly", "annual": "annual", "yearly": "annual"},
}


def get_config() -> dict[str, Any]:
    """
    Product catalog config, loaded once from the packaged JSON file.
    """
    global _config
    with _lock:
        if _config is not None:
            return _config

        _config = _load_from_file()
        return _config


def refresh_config() -> dict[str, Any]:
    global _config
    with _lock:
        _config = _load_from_file()
        return _config


def _load_from_file() -> dict[str, Any]:
    path = Path(__file__).resolve().parents[1] / "config" / "default_config.json"
    if not path.exists():
        logger.warning("Catalog config %s not found, using built-in defaults", path)
        return dict(_DEFAULT_CONFIG)
    return json.loads(path.read_text(encoding="utf-8"))
