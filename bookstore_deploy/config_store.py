"""
Hand-off files passed between pipeline stages.

The build stage writes ``build.config`` and the infra stage writes
``infrastructure.config``; the deploy stage reads both. Each file is a single
flat JSON object of string values.
"""

import json
import logging
from pathlib import Path
from typing import Dict, Mapping, Optional, Union

from .config import CONFIG
from .error_handling import ConfigError, ErrorHandler, ParseError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class ConfigStore:
    """Reads, merges and writes stage hand-off files."""

    def __init__(self, config_directory: Optional[PathLike] = None):
        self.config_directory = Path(config_directory or CONFIG['config_directory'])

    @property
    def infrastructure_path(self) -> Path:
        return self.config_directory / CONFIG['infrastructure_config_file']

    @property
    def build_path(self) -> Path:
        return self.config_directory / CONFIG['build_config_file']

    def load(self, path: PathLike) -> Dict[str, str]:
        """Load a hand-off file.

        Args:
            path: File to read.

        Returns:
            Mapping of key to value, empty when the file does not exist.

        Raises:
            ParseError: If the file exists but is not a flat JSON object.
        """
        file_path = Path(path)

        if not file_path.exists():
            logger.warning(f"Configuration file not found: {file_path} (continuing without it)")
            return {}

        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ParseError(f"Invalid JSON in configuration file {file_path}: {e}", file_path=str(file_path))
        except OSError as e:
            raise ParseError(f"Could not read configuration file {file_path}: {e}", file_path=str(file_path))

        if not isinstance(data, dict):
            raise ParseError(
                f"Configuration file {file_path} must contain a JSON object, got {type(data).__name__}",
                file_path=str(file_path)
            )

        values = {}
        for key, value in data.items():
            if isinstance(value, (dict, list)):
                raise ParseError(
                    f"Configuration file {file_path} has a nested value for key '{key}'",
                    file_path=str(file_path)
                )
            values[key] = "" if value is None else str(value)

        logger.debug(f"Loaded {len(values)} values from {file_path}")
        return values

    @staticmethod
    def merge(existing: Mapping[str, str], overrides: Mapping[str, Optional[str]]) -> Dict[str, str]:
        """Merge overrides into existing values.

        Every key in ``overrides`` wins; keys only in ``existing`` are kept.
        ``None`` overrides mean "not supplied" and leave the existing value.
        """
        merged = dict(existing)
        for key, value in overrides.items():
            if value is None:
                continue
            merged[key] = str(value)
        return merged

    def save(self, path: PathLike, values: Mapping[str, str]) -> Path:
        """Write values as a single JSON object, replacing any previous file."""
        file_path = Path(path)
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(file_path, 'w', encoding='utf-8') as f:
                json.dump(dict(values), f, indent=2)
                f.write("\n")
        except OSError as e:
            ErrorHandler.handle_file_error(e, str(file_path), "write")
            raise ConfigError(f"Could not write configuration file {file_path}: {e}")

        logger.info(f"Wrote {len(values)} values to {file_path}")
        return file_path

    def update(self, path: PathLike, overrides: Mapping[str, Optional[str]]) -> Dict[str, str]:
        """Load, merge and save in one step."""
        merged = self.merge(self.load(path), overrides)
        self.save(path, merged)
        return merged

    @staticmethod
    def resolve(explicit: Optional[str], persisted: Mapping[str, str], key: str,
                default: Optional[str] = None) -> Optional[str]:
        """Pick a value: explicit parameter, then persisted value, then default."""
        if explicit not in (None, ""):
            return explicit
        value = persisted.get(key)
        if value not in (None, ""):
            return value
        return default
