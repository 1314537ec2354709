import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

load_dotenv()

DEFAULT_CONFIG_PATH = Path(__file__).parent / 'config.yaml'
CONFIG_PATH_ENV = 'FLOWDESK_CONFIG'

# ${NAME} or ${NAME:-fallback}; an unset NAME without fallback is left untouched
_PLACEHOLDER = re.compile(r'\$\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?::-(?P<default>[^}]*))?\}')


def expand_placeholders(text: str) -> Any:
    """Substitute environment placeholders in ``text``.

    A value that is one placeholder and nothing else is re-read as a YAML
    scalar, so ``${PORT:-8080}`` yields an int and ``${FLAG:-true}`` a bool.
    """
    def _sub(match):
        value = os.getenv(match.group('name'))
        if value is not None:
            return value
        if match.group('default') is not None:
            return match.group('default')
        return match.group(0)

    expanded = _PLACEHOLDER.sub(_sub, text)
    if expanded == text or not _PLACEHOLDER.fullmatch(text):
        return expanded
    try:
        typed = yaml.safe_load(expanded)
    except yaml.YAMLError:
        return expanded
    return typed if isinstance(typed, (str, int, float, bool)) else expanded


def _expand(node: Any) -> Any:
    if isinstance(node, dict):
        return {key: _expand(value) for key, value in node.items()}
    if isinstance(node, list):
        return [_expand(item) for item in node]
    if isinstance(node, str):
        return expand_placeholders(node)
    return node


class SectionProxy(Mapping):
    """Read-only view over a config mapping with attribute access to keys."""

    def __init__(self, data: Optional[Dict[str, Any]] = None):
        self._data = data or {}

    @staticmethod
    def _wrap(value: Any) -> Any:
        return SectionProxy(value) if isinstance(value, dict) else value

    def __getitem__(self, key: str) -> Any:
        return self._wrap(self._data[key])

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_'):
            raise AttributeError(name)
        if self._data.get(name) is None:
            raise AttributeError(f"Config key '{name}' not found")
        return self._wrap(self._data[name])

    def __iter__(self):
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: str, default: Any = None) -> Any:
        return self._wrap(self._data.get(key, default))

    def to_dict(self) -> Dict[str, Any]:
        return self._data


class Config(SectionProxy):
    """The flow desk YAML configuration, environment placeholders expanded."""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = Path(config_path or os.getenv(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)
        super().__init__(self._load_config())

    def _load_config(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            raise RuntimeError(f"Configuration file not found at {self.config_path}")
        with self.config_path.open('r', encoding='utf-8') as fh:
            try:
                raw = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise RuntimeError(f"Invalid YAML in {self.config_path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise RuntimeError(f"Configuration root must be a mapping in {self.config_path}")
        return _expand(raw)

    def reload(self) -> None:
        self._data = self._load_config()


config = Config()
