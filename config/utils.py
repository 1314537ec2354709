"""Helpers for reading config sections from a ``Config`` or a plain dict."""
from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Dict


def get_config_section(source: Any, section: str) -> Dict:
    """Return ``section`` as a plain dict, or ``{}`` when it is missing."""
    if source is None:
        return {}

    if isinstance(source, Mapping):
        candidate = source.get(section, {})
    else:
        getter = getattr(source, 'get', None)
        candidate = getter(section, {}) if callable(getter) else {}

    to_dict = getattr(candidate, 'to_dict', None)
    if callable(to_dict):
        candidate = to_dict()
    if isinstance(candidate, Mapping):
        return dict(candidate)
    return {}
