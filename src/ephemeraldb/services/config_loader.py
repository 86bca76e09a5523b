"""Configuration loader for ephemeraldb."""

from dataclasses import fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ephemeraldb.errors import EphemeralDbError
from ephemeraldb.models import Settings


class ConfigLoader:
    """Loads YAML configuration files for fixture and CLI defaults."""

    DEFAULT_FILE_NAME = ".ephemeraldb.yml"
    SUPPORTED_KEYS = {item.name for item in fields(Settings)} | {"verbose", "log_file"}

    def load(self, config_path: Optional[str]) -> Dict[str, Any]:
        if not config_path:
            return {}

        path = Path(config_path)
        if not path.exists():
            raise EphemeralDbError(f"Config file not found: {config_path}")

        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError) as exc:
            raise EphemeralDbError(f"Invalid config file '{config_path}': {exc}") from exc

        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise EphemeralDbError("Config file must contain a YAML mapping at the root.")

        unknown = sorted(set(parsed.keys()) - self.SUPPORTED_KEYS)
        if unknown:
            unknown_list = ", ".join(unknown)
            raise EphemeralDbError(f"Unknown configuration keys: {unknown_list}")

        return parsed

    def resolve_path(self, config_path: Optional[str], cwd: Optional[str] = None) -> Optional[str]:
        if config_path:
            return config_path
        default_path = Path(cwd or Path.cwd()) / self.DEFAULT_FILE_NAME
        if default_path.exists():
            return str(default_path)
        return None

    def load_settings(self, config_path: Optional[str] = None, **overrides: Any) -> Settings:
        values = self.load(self.resolve_path(config_path))
        values.update({key: value for key, value in overrides.items() if value is not None})
        return Settings.from_mapping(values)
