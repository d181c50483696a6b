import os
import re
from pathlib import Path
from collections.abc import Mapping
from typing import Any, Dict, Optional, Union

import yaml
from dotenv import load_dotenv

load_dotenv()

DEFAULT_CONFIG_PATH = Path(__file__).parent / 'config.yaml'

_ENV_PATTERN = re.compile(r'^\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-(.*))?\}$')


class SectionProxy(Mapping):
    def __init__(self, data: Dict[str, Any]):
        self._data = data or {}

    def __getitem__(self, key: str) -> Any:
        value = self._data[key]
        if isinstance(value, dict):
            return SectionProxy(value)
        return value

    def __iter__(self):
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: str, default: Any = None) -> Any:
        value = self._data.get(key, default)
        if isinstance(value, dict):
            return SectionProxy(value)
        return value


class Config:
    """YAML configuration with ``${VAR}`` / ``${VAR:-default}`` environment expansion."""

    def __init__(self, config_path: Optional[Union[str, Path]] = None):
        self.config_path = Path(config_path or os.getenv('FEED_CONFIG') or DEFAULT_CONFIG_PATH)
        self._data = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            raise RuntimeError(f"Configuration file not found at {self.config_path}")
        with self.config_path.open('r') as fh:
            try:
                raw = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise RuntimeError(f"Error parsing YAML configuration: {exc}") from exc
        return self._resolve_env_vars(raw)

    def _resolve_env_vars(self, node: Any) -> Any:
        if isinstance(node, dict):
            return {key: self._resolve_env_vars(value) for key, value in node.items()}
        if isinstance(node, list):
            return [self._resolve_env_vars(item) for item in node]
        if isinstance(node, str):
            match = _ENV_PATTERN.match(node)
            if match:
                env_key, default = match.group(1), match.group(2)
                return os.getenv(env_key, default if default is not None else node)
        return node

    def section(self, key: str) -> SectionProxy:
        """Return a section as a proxy, empty when the key is missing."""
        value = self._data.get(key)
        return SectionProxy(value if isinstance(value, dict) else {})


config = Config()
