"""Environment parsing helpers shared by the *Config.from_env constructors.

Invalid values never raise: they are logged and replaced by the default.
"""
from __future__ import annotations
import os
from typing import Optional
from .logging_util import warn


def env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        warn("invalid_env_int", key=name, value=raw, default=default)
        return default


def env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        warn("invalid_env_float", key=name, value=raw, default=default)
        return default


def env_flag(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip()


def clamp(value, low, high):
    return min(high, max(low, value))
