"""Settings read from the environment (and a ``.env`` file, if present)."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

from .migrator import DEFAULT_DATABASE_NAME, DEFAULT_DATABASE_VERSION
from .schema import SchemaMap

ENV_PREFIX = "EDGEIDB_"


class MigrationSettings(BaseModel):
    """Configuration for a migration run.

    Attributes:
        source_path: Browser IndexedDB directory; discovered when unset
        target_dir: Directory holding the destination databases
        target_name: Destination database name
        target_version: Destination schema version
        schema_map_path: Optional JSON file replacing the store id table
        max_entries: Optional cap on scanned source records
        extension_name: Manifest name searched for during discovery
        log_level: Logging level name
    """

    source_path: Optional[Path] = None
    target_dir: Path = Field(default_factory=lambda: Path("indexeddb"))
    target_name: str = DEFAULT_DATABASE_NAME
    target_version: int = Field(DEFAULT_DATABASE_VERSION, ge=1)
    schema_map_path: Optional[Path] = None
    max_entries: Optional[int] = Field(None, ge=0)
    extension_name: str = "yomitan"
    log_level: str = "INFO"

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_env(
        cls, environ: Optional[Mapping[str, str]] = None, dotenv: bool = True
    ) -> MigrationSettings:
        """Build settings from ``EDGEIDB_*`` variables.

        Args:
            environ: Variables to read instead of ``os.environ``
            dotenv: Load a ``.env`` file into ``os.environ`` first
        """
        if environ is None:
            if dotenv:
                load_dotenv()
            environ = os.environ

        fields = {
            "source_path": "SOURCE_PATH",
            "target_dir": "TARGET_DIR",
            "target_name": "TARGET_NAME",
            "target_version": "TARGET_VERSION",
            "schema_map_path": "SCHEMA_MAP",
            "max_entries": "MAX_ENTRIES",
            "extension_name": "EXTENSION_NAME",
            "log_level": "LOG_LEVEL",
        }
        values = {}
        for field, suffix in fields.items():
            value = environ.get(ENV_PREFIX + suffix)
            if value:
                values[field] = value
        return cls.model_validate(values)

    def load_schema_map(self) -> SchemaMap:
        """The configured store id table, or the default one."""
        if self.schema_map_path is None:
            return SchemaMap.default()
        return SchemaMap.load(self.schema_map_path)
