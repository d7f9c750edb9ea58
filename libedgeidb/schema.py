"""Mapping from source object store ids to logical store names.

Chromium assigns object store ids sequentially in creation order, so the
default table is a reconstruction of the dictionary database's schema
rather than anything the on-disk format guarantees. It can be replaced
from a JSON file of the form::

    {"version": 1, "stores": {"1": "dictionaries", "2": "terms"}}
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .exceptions import SchemaMapError

DEFAULT_STORES: Dict[int, str] = {
    1: "dictionaries",
    2: "terms",
    3: "kanji",
    4: "termMeta",
    5: "kanjiMeta",
    6: "tagMeta",
    7: "media",
}


class SchemaMap(BaseModel):
    """Ordered table of object store id to logical store name.

    Attributes:
        version: Revision of the mapping itself, bumped when ids are corrected
        stores: Object store id to store name
    """

    version: int = Field(1, ge=0, description="Mapping revision")
    stores: Dict[int, str] = Field(default_factory=lambda: dict(DEFAULT_STORES))

    model_config = ConfigDict(frozen=True)

    @field_validator("stores")
    @classmethod
    def validate_stores(cls, v: Dict[int, str]) -> Dict[int, str]:
        """Require positive ids and unique, non-empty names."""
        seen = set()
        for store_id, name in v.items():
            if store_id <= 0:
                raise ValueError(f"store id must be positive, got {store_id}")
            if not name or "\x00" in name:
                raise ValueError(f"invalid store name for id {store_id}: {name!r}")
            if name in seen:
                raise ValueError(f"duplicate store name: {name}")
            seen.add(name)
        return dict(sorted(v.items()))

    @classmethod
    def default(cls) -> SchemaMap:
        """The dictionary database layout (ids 1-7)."""
        return cls()

    @classmethod
    def load(cls, path: Path) -> SchemaMap:
        """Load a mapping from a JSON file.

        Raises:
            SchemaMapError: If the file is missing, not JSON, or invalid
        """
        try:
            raw = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise SchemaMapError(f"Cannot read schema map {path}: {e}") from e

        try:
            return cls.model_validate(raw)
        except ValidationError as e:
            raise SchemaMapError(f"Invalid schema map {path}: {e}") from e

    def resolve(self, object_store_id: int) -> Optional[str]:
        """Return the store name for an id, or None for unrelated stores."""
        return self.stores.get(object_store_id)

    def with_overrides(self, overrides: Mapping[int, str]) -> SchemaMap:
        """Return a copy with some ids remapped and the version bumped."""
        stores = dict(self.stores)
        stores.update(overrides)
        try:
            return SchemaMap(version=self.version + 1, stores=stores)
        except ValidationError as e:
            raise SchemaMapError(f"Invalid schema map override: {e}") from e

    @property
    def store_names(self) -> List[str]:
        """Store names ordered by id."""
        return list(self.stores.values())
