"""
Loads local environment files and typed env settings for neuro-assessment-service.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

_TRUTHY = {"1", "true", "yes", "on"}


def load_service_env() -> None:
    """
    Loads service-local `.env` and `.env.local` if present.
    Existing shell exports take precedence.
    """
    service_dir = Path(__file__).resolve().parent
    load_dotenv(service_dir / ".env", override=False)
    load_dotenv(service_dir / ".env.local", override=False)


def env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def env_bool(name: str, default: bool) -> bool:
    fallback = "true" if default else "false"
    return (os.getenv(name, fallback) or fallback).strip().lower() in _TRUTHY


def env_str(*names: str, default: Optional[str] = None) -> Optional[str]:
    """First non-empty value among `names`, else `default`."""
    for name in names:
        value = (os.getenv(name) or "").strip()
        if value:
            return value
    return default
