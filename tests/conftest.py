# conftest.py - pytest configuration and fixtures

"""Pytest configuration for libedgeidb tests."""

import json
from pathlib import Path
from typing import Callable, List, Tuple

import plyvel
import pytest

from libedgeidb import SchemaMap, encode_key

RawPairs = List[Tuple[bytes, bytes]]


def write_leveldb(path: Path, pairs: RawPairs) -> Path:
    """Write raw key/value pairs to a new LevelDB directory."""
    db = plyvel.DB(str(path), create_if_missing=True)
    try:
        with db.write_batch() as batch:
            for key, value in pairs:
                batch.put(key, value)
    finally:
        db.close()
    return path


@pytest.fixture
def make_leveldb(tmp_path: Path) -> Callable[[RawPairs, str], Path]:
    """Factory building LevelDB directories under tmp_path."""

    def _make(pairs: RawPairs, name: str = "source.indexeddb.leveldb") -> Path:
        return write_leveldb(tmp_path / name, pairs)

    return _make


@pytest.fixture
def example_pairs() -> RawPairs:
    """One terms record and one record of an unmapped store."""
    return [
        (bytes([0, 2, 0]) + b"t1", json.dumps({"expr": "猫"}).encode("utf-8")),
        (bytes([0, 9, 0, 1]), b"{}"),
    ]


@pytest.fixture
def example_source(make_leveldb, example_pairs) -> Path:
    """A source IndexedDB holding example_pairs."""
    return make_leveldb(example_pairs)


@pytest.fixture
def dictionary_pairs() -> RawPairs:
    """A small dictionary database spread over several stores."""
    return [
        (
            encode_key(1, 1, 0, "JMdict"),
            json.dumps({"title": "JMdict", "revision": "2024.01"}).encode("utf-8"),
        ),
        (
            encode_key(1, 2, 0, "JMdict:1"),
            json.dumps({"expression": "猫", "reading": "ねこ"}, ensure_ascii=False).encode(
                "utf-8"
            ),
        ),
        (
            encode_key(1, 2, 0, "JMdict:2"),
            b"\xff\x0f\x22\x00"
            + json.dumps({"expression": "犬", "reading": "いぬ"}).encode("utf-8")
            + b"\x00\x01",
        ),
        (encode_key(1, 7, 0, 1.5), bytes([0xFF, 0x00, 0x10])),
    ]


@pytest.fixture
def default_schema() -> SchemaMap:
    return SchemaMap.default()


@pytest.fixture
def target_dir(tmp_path: Path) -> Path:
    """Directory for destination document stores."""
    path = tmp_path / "target"
    path.mkdir()
    return path
