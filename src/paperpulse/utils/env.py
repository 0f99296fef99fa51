from __future__ import annotations

import os
from typing import List, Optional

_TRUE = {"1", "true", "yes", "y"}


def parse_bool(raw: Optional[str], default: bool = False) -> bool:
    if raw is None:
        return default
    return raw.strip().lower() in _TRUE


def env_bool(name: str, default: bool = False) -> bool:
    return parse_bool(os.getenv(name), default)


def env_flag(name: str) -> Optional[bool]:
    """Tri-state: None when unset or blank, otherwise the parsed boolean."""
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    return parse_bool(raw)


def env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def env_list(name: str, default: str = "") -> List[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]
