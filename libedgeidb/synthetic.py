"""Synthetic browser IndexedDB stores.

This module builds LevelDB directories laid out the way the migrator reads
them: composite varint keys followed by the record key, and JSON values,
optionally wrapped in a binary envelope like the browser's serializer
produces. They can:
- Be generated with random dictionary-like content
- Be filled record by record (including raw, malformed byte pairs)
- Be dumped to a LevelDB directory via plyvel

This allows the migration pipeline to be exercised without a browser.
"""

from __future__ import annotations

import json
import random
from pathlib import Path
from typing import Any, Callable, List, Optional, Tuple, Union

import plyvel  # type: ignore
from pydantic import BaseModel, ConfigDict, Field

from .keys import encode_key
from .schema import SchemaMap

# Bytes around the JSON text of an enveloped value. Neither contains a bracket.
ENVELOPE_PREFIX = b"\xff\x0f\x22\x00"
ENVELOPE_SUFFIX = b"\x00\x01"

_SAMPLE_TERMS: List[Tuple[str, str, str]] = [
    ("猫", "ねこ", "cat"),
    ("犬", "いぬ", "dog"),
    ("水", "みず", "water"),
    ("火", "ひ", "fire"),
    ("山", "やま", "mountain"),
    ("川", "かわ", "river"),
    ("本", "ほん", "book"),
    ("食べる", "たべる", "to eat"),
    ("飲む", "のむ", "to drink"),
    ("見る", "みる", "to see"),
    ("学校", "がっこう", "school"),
    ("電車", "でんしゃ", "train"),
]


def wrap_in_envelope(payload: bytes) -> bytes:
    """Surround serialized JSON with non-JSON bytes."""
    return ENVELOPE_PREFIX + payload + ENVELOPE_SUFFIX


class SyntheticRecord(BaseModel):
    """A single record as the browser would store it."""

    database_id: int = Field(1, ge=0)
    object_store_id: int = Field(..., ge=0)
    index_id: int = Field(0, ge=0)
    key: Union[str, float, bytes, None] = None
    value: Any = None
    envelope: bool = False

    model_config = ConfigDict(frozen=True)

    def to_leveldb_key(self) -> bytes:
        return encode_key(self.database_id, self.object_store_id, self.index_id, self.key)

    def to_leveldb_value(self) -> bytes:
        """Serialize the value as JSON, inside an envelope if requested."""
        payload = json.dumps(self.value, ensure_ascii=False, separators=(",", ":")).encode(
            "utf-8"
        )
        if self.envelope:
            return wrap_in_envelope(payload)
        return payload


class SyntheticIndexedDB(BaseModel):
    """An in-memory stand-in for an extension's IndexedDB LevelDB."""

    database_id: int = Field(1, ge=0)
    schema_map: SchemaMap = Field(default_factory=SchemaMap.default)
    records: List[SyntheticRecord] = Field(default_factory=list)
    raw_records: List[Tuple[bytes, bytes]] = Field(default_factory=list)

    model_config = ConfigDict(frozen=False)

    def store_id(self, store_name: str) -> int:
        """Look up the object store id for a name in the schema map.

        Raises:
            KeyError: If the schema map has no such store
        """
        for store_id, name in self.schema_map.stores.items():
            if name == store_name:
                return store_id
        raise KeyError(store_name)

    def add_record(
        self,
        store_name: str,
        key: Union[str, float, bytes, None],
        value: Any,
        envelope: bool = False,
    ) -> SyntheticRecord:
        """Add a record to a named store."""
        record = SyntheticRecord(
            database_id=self.database_id,
            object_store_id=self.store_id(store_name),
            key=key,
            value=value,
            envelope=envelope,
        )
        self.records.append(record)
        return record

    def add_raw(self, key: bytes, value: bytes) -> None:
        """Add an arbitrary key/value pair, bypassing key encoding."""
        self.raw_records.append((bytes(key), bytes(value)))

    def items(self) -> List[Tuple[bytes, bytes]]:
        """All records as raw (key, value) pairs."""
        pairs = [(r.to_leveldb_key(), r.to_leveldb_value()) for r in self.records]
        return pairs + list(self.raw_records)

    def dump_to_leveldb(
        self,
        output_path: Path,
        comparator: Optional[Callable[[bytes, bytes], int]] = None,
        comparator_name: Optional[bytes] = None,
    ) -> Path:
        """Write the records to a new LevelDB directory.

        Args:
            output_path: Directory to create
            comparator: Custom key comparator, to mimic stores the default
                reader cannot open
            comparator_name: Name recorded for the custom comparator

        Returns:
            The output path
        """
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        options = {}
        if comparator is not None:
            options["comparator"] = comparator
            options["comparator_name"] = comparator_name or b"synthetic_cmp1"

        leveldb = plyvel.DB(str(output_path), create_if_missing=True, **options)
        try:
            with leveldb.write_batch() as batch:
                for key, value in self.items():
                    batch.put(key, value)
        finally:
            leveldb.close()

        return output_path

    def generate_synthetic(
        self,
        num_dictionaries: int = 2,
        terms_per_dictionary: int = 10,
        envelope_ratio: float = 0.5,
        include_unmapped: bool = True,
        seed: Optional[int] = None,
    ) -> SyntheticIndexedDB:
        """Generate dictionary-like test data.

        Args:
            num_dictionaries: Number of dictionaries to create
            terms_per_dictionary: Terms per dictionary
            envelope_ratio: Share of values wrapped in a binary envelope
            include_unmapped: Also add records of an internal store that has
                no name in the schema map
            seed: Seed for reproducible output

        Returns:
            Self for method chaining
        """
        rng = random.Random(seed)

        for d in range(num_dictionaries):
            title = f"Synthetic Dictionary {d + 1}"
            self.add_record(
                "dictionaries",
                title,
                {
                    "title": title,
                    "revision": f"synth.{d + 1}",
                    "version": 3,
                    "sequenced": True,
                },
                envelope=rng.random() < envelope_ratio,
            )

            for t in range(terms_per_dictionary):
                expression, reading, gloss = rng.choice(_SAMPLE_TERMS)
                self.add_record(
                    "terms",
                    f"d{d + 1}-t{t + 1}",
                    {
                        "expression": expression,
                        "reading": reading,
                        "definitionTags": "n",
                        "rules": "",
                        "score": rng.randint(0, 100),
                        "glossary": [gloss],
                        "sequence": t + 1,
                        "termTags": "",
                        "dictionary": title,
                    },
                    envelope=rng.random() < envelope_ratio,
                )

            self.add_record(
                "tagMeta",
                f"{title}:n",
                {"name": "n", "category": "partOfSpeech", "notes": "noun", "dictionary": title},
            )

        if include_unmapped:
            self.records.append(
                SyntheticRecord(
                    database_id=self.database_id,
                    object_store_id=max(self.schema_map.stores, default=0) + 2,
                    key="internal",
                    value={"internal": True},
                )
            )

        return self
