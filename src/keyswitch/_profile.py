"""Naming rules for sync profiles, remote object keys and local snapshot copies."""

from __future__ import annotations

import re
from pathlib import Path

DEFAULT_PROFILE = "default"
FALLBACK_OBJECT_KEY = "snapshot.json"

_UNSAFE_KEY_CHARS = re.compile(r"[^a-zA-Z0-9_.-]")


def normalize_profile(value: str | None, fallback: str = "") -> str:
    """Turn a free-text label into a profile name.

    Lowercases, keeps letters, digits, ``-`` and ``_``, maps everything else
    to ``-`` and trims ``-`` from both ends. Blank input uses ``fallback``;
    an empty result becomes ``"default"``.
    """
    candidate = (value or "").strip() or (fallback or "").strip() or DEFAULT_PROFILE
    mapped = "".join(ch if ch.isalnum() or ch in "-_" else "-" for ch in candidate.lower())
    return mapped.strip("-") or DEFAULT_PROFILE


def sanitize_object_key(key: str, fallback: str = FALLBACK_OBJECT_KEY) -> str:
    """Restrict an object key to letters, digits, ``_``, ``.`` and ``-``."""
    trimmed = key.strip() or fallback
    return _UNSAFE_KEY_CHARS.sub("_", trimmed)


def object_name(profile: str) -> str:
    """Remote object name for a profile."""
    return f"{profile}.json"


def snapshot_path(config_path: str, profile: str, dirname: str = "snapshots") -> Path:
    """Local snapshot copy for ``profile``, kept next to the registry file."""
    return Path(config_path).parent / dirname / f"{profile}.json"
