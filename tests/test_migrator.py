"""Tests for the migration state machine."""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import pytest

from libedgeidb import (
    EventKind,
    KeyCodec,
    LevelDocumentStoreProvider,
    MigrationState,
    Migrator,
    RecordingObserver,
    SchemaMap,
    SourceHandle,
    SyntheticIndexedDB,
    encode_key,
    migrate_edge_indexeddb,
    sync_edge_indexeddb,
)
from libedgeidb.exceptions import DocumentStoreError, DocumentWriteError


class FakeObjectStore:
    def __init__(self, name: str, rejected_keys: Sequence[Any]) -> None:
        self.name = name
        self.rejected_keys = set(rejected_keys)
        self.written: Dict[Any, Any] = {}
        self._next = 1

    def put(self, value: Any, key: Any) -> Any:
        if key in self.rejected_keys:
            raise DocumentWriteError(f"rejected {key}")
        self.written[key] = value
        return key

    def add(self, value: Any) -> Any:
        key = self._next
        self._next += 1
        return self.put(value, key)


class FakeTransaction:
    def __init__(self, store: "FakeDocumentStore", names: Sequence[str]) -> None:
        self._store = store
        self._stores = {
            name: FakeObjectStore(name, store.rejected_keys.get(name, ())) for name in names
        }

    def object_store(self, name: str) -> FakeObjectStore:
        return self._stores[name]

    async def complete(self) -> None:
        for name, object_store in self._stores.items():
            if name in self._store.failing_commits:
                raise DocumentStoreError(f"commit of {name} failed")
            self._store.committed.setdefault(name, {}).update(object_store.written)


class FakeDocumentStore:
    """In-memory document store that can reject chosen writes."""

    def __init__(
        self,
        rejected_keys: Optional[Dict[str, List[Any]]] = None,
        failing_commits: Sequence[str] = (),
    ) -> None:
        self.name = "dict"
        self.version = 60
        self.rejected_keys = rejected_keys or {}
        self.failing_commits = set(failing_commits)
        self.committed: Dict[str, Dict[Any, Any]] = {}
        self.transactions: List[List[str]] = []
        self.close_calls = 0

    def transaction(self, store_names: Sequence[str], mode: str = "readwrite") -> FakeTransaction:
        self.transactions.append(list(store_names))
        return FakeTransaction(self, store_names)

    def close(self) -> None:
        self.close_calls += 1


class FakeProvider:
    def __init__(self, store: Optional[FakeDocumentStore] = None, error: Optional[Exception] = None):
        self.store = store or FakeDocumentStore()
        self.error = error
        self.opened = 0

    async def open_or_create(self, name: str, version: int, on_schema_needed=None):
        self.opened += 1
        if self.error is not None:
            raise self.error
        return self.store


def terms_source(make_leveldb, count: int) -> Path:
    return make_leveldb(
        [
            (encode_key(1, 2, 0, f"t{i}"), json.dumps({"expression": f"e{i}"}).encode("utf-8"))
            for i in range(count)
        ]
    )


class TestMigrationScenarios:
    """End-to-end runs against real LevelDB directories."""

    @pytest.mark.asyncio
    async def test_example_migration(self, example_source: Path, target_dir: Path) -> None:
        """Test one terms record migrated and one unmapped record counted."""
        observer = RecordingObserver()
        provider = LevelDocumentStoreProvider(target_dir)

        summary = await Migrator(provider, observer=observer).run(example_source)

        assert summary.state == MigrationState.DONE
        assert summary.succeeded
        assert summary.total_entries == 2
        assert summary.parsed_entries == 1
        assert summary.unmapped_entries == 1
        assert summary.synced_entries == 1
        assert summary.per_store_counts["terms"] == 1
        assert summary.per_store_counts["kanji"] == 0
        assert any("Unmapped object store ID: 9" in w for w in summary.warnings)

        store = await provider.open_or_create("dict", 60)
        try:
            assert store.get("terms", "t1") == {"expr": "猫"}
            assert store.count("terms") == 1
            assert store.store_names == SchemaMap.default().store_names
        finally:
            store.close()

    @pytest.mark.asyncio
    async def test_rerun_replaces_records(self, example_source: Path, target_dir: Path) -> None:
        """Test that migrating the same source twice leaves one copy of each keyed record."""
        first = await migrate_edge_indexeddb(example_source, target_dir)
        second = await migrate_edge_indexeddb(example_source, target_dir)

        assert first.synced_entries == second.synced_entries == 1

        store = await LevelDocumentStoreProvider(target_dir).open_or_create("dict", 60)
        try:
            assert store.count("terms") == 1
        finally:
            store.close()

    @pytest.mark.asyncio
    async def test_dictionary_stores(self, make_leveldb, dictionary_pairs, target_dir: Path) -> None:
        """Test plain, enveloped and opaque values across several stores."""
        source = make_leveldb(dictionary_pairs)
        provider = LevelDocumentStoreProvider(target_dir)

        summary = await Migrator(provider).run(source)

        assert summary.synced_entries == 4
        assert summary.opaque_values == 1
        assert summary.per_store_counts == {
            "dictionaries": 1,
            "terms": 2,
            "kanji": 0,
            "termMeta": 0,
            "kanjiMeta": 0,
            "tagMeta": 0,
            "media": 1,
        }

        store = await provider.open_or_create("dict", 60)
        try:
            assert store.get("dictionaries", "JMdict")["revision"] == "2024.01"
            assert store.get("terms", "JMdict:2") == {"expression": "犬", "reading": "いぬ"}
            assert store.get("media", 1.5) == bytes([0xFF, 0x00, 0x10])
        finally:
            store.close()

    @pytest.mark.asyncio
    async def test_missing_source(self, tmp_path: Path, target_dir: Path) -> None:
        """Test that a missing source is a warning and nothing is created."""
        provider = FakeProvider()

        summary = await Migrator(provider).run(tmp_path / "absent.leveldb")

        assert summary.state == MigrationState.DONE
        assert not summary.succeeded
        assert not summary.failed
        assert summary.total_entries == 0
        assert summary.synced_entries == 0
        assert any("not found" in w for w in summary.warnings)
        assert provider.opened == 0

    @pytest.mark.asyncio
    async def test_unopenable_source(self, tmp_path: Path) -> None:
        path = tmp_path / "broken.leveldb"
        path.mkdir()
        provider = FakeProvider()

        summary = await Migrator(provider).run(path)

        assert summary.failed
        assert summary.error
        assert provider.opened == 0

    @pytest.mark.asyncio
    async def test_comparator_mismatch_fails(self, tmp_path: Path) -> None:
        synthetic = SyntheticIndexedDB()
        synthetic.add_record("terms", "t1", {"expression": "猫"})
        path = synthetic.dump_to_leveldb(
            tmp_path / "idb.leveldb",
            comparator=lambda a, b: (a > b) - (a < b),
            comparator_name=b"idb_cmp1",
        )

        summary = await Migrator(FakeProvider()).run(path)

        assert summary.failed
        assert "re-import" in summary.error

    @pytest.mark.asyncio
    async def test_only_unmapped_records(self, make_leveldb, target_dir: Path) -> None:
        """Test a source whose records all belong to an unknown store."""
        source = make_leveldb(
            [(encode_key(1, 99, 0, f"k{i}"), b"{}") for i in range(3)]
        )
        observer = RecordingObserver()

        summary = await Migrator(
            LevelDocumentStoreProvider(target_dir), observer=observer
        ).run(source)

        assert summary.state == MigrationState.DONE
        assert summary.unmapped_entries == 3
        assert summary.synced_entries == 0
        assert all(count == 0 for count in summary.per_store_counts.values())
        assert len(observer.of_kind(EventKind.UNMAPPED_STORE)) == 1

    @pytest.mark.asyncio
    async def test_malformed_keys_dropped(self, make_leveldb) -> None:
        source = make_leveldb(
            [
                (b"\x01\x82", b"{}"),
                (encode_key(1, 2, 0, "ok"), b'{"a":1}'),
            ]
        )
        store = FakeDocumentStore()

        summary = await Migrator(FakeProvider(store)).run(source)

        assert summary.malformed_keys == 1
        assert summary.synced_entries == 1
        assert store.committed["terms"] == {"ok": {"a": 1}}

    @pytest.mark.asyncio
    async def test_keyless_records_use_generated_keys(self, make_leveldb, target_dir) -> None:
        """Test that records without a user key are added under generated keys."""
        source = make_leveldb([(encode_key(1, 7, 0), b'{"n":1}'), (encode_key(2, 7, 0), b"[2]")])
        provider = LevelDocumentStoreProvider(target_dir)

        summary = await Migrator(provider).run(source)

        assert summary.synced_entries == 2
        store = await provider.open_or_create("dict", 60)
        try:
            assert list(store.records("media")) == [(1, {"n": 1}), (2, [2])]
        finally:
            store.close()

    @pytest.mark.asyncio
    async def test_max_entries(self, make_leveldb) -> None:
        """Test that the scan stops at the configured bound."""
        source = terms_source(make_leveldb, 5)
        store = FakeDocumentStore()

        summary = await Migrator(FakeProvider(store), max_entries=3).run(source)

        assert summary.truncated
        assert summary.total_entries == 3
        assert summary.synced_entries == 3
        assert any("Stopped scanning" in w for w in summary.warnings)

    def test_negative_max_entries(self) -> None:
        with pytest.raises(ValueError):
            Migrator(FakeProvider(), max_entries=-1)

    @pytest.mark.asyncio
    async def test_sync_bool_form(self, example_source: Path, tmp_path: Path) -> None:
        assert await sync_edge_indexeddb(example_source, tmp_path / "out")
        assert not await sync_edge_indexeddb(tmp_path / "absent", tmp_path / "out2")

    @pytest.mark.asyncio
    async def test_synthetic_source(self, tmp_path: Path, target_dir: Path) -> None:
        """Test a generated source with enveloped values and an internal store."""
        synthetic = SyntheticIndexedDB().generate_synthetic(
            num_dictionaries=2, terms_per_dictionary=5, envelope_ratio=0.5, seed=7
        )
        source = synthetic.dump_to_leveldb(tmp_path / "synthetic.leveldb")

        summary = await migrate_edge_indexeddb(source, target_dir)

        assert summary.total_entries == 15
        assert summary.unmapped_entries == 1
        assert summary.opaque_values == 0
        assert summary.per_store_counts["terms"] == 10
        assert summary.synced_entries == 14


class TestFailureHandling:
    """Tests for failures on the target side."""

    @pytest.mark.asyncio
    async def test_target_open_failure(self, example_source: Path, target_dir: Path) -> None:
        """Test that a newer existing target fails the run."""
        provider = LevelDocumentStoreProvider(target_dir)
        store = await provider.open_or_create("dict", 61)
        store.close()

        summary = await Migrator(provider).run(example_source)

        assert summary.state == MigrationState.FAILED
        assert summary.failed
        assert "lower than" in summary.error
        assert summary.parsed_entries == 1
        assert summary.synced_entries == 0

    @pytest.mark.asyncio
    async def test_provider_raises_unexpected_error(self, example_source: Path) -> None:
        observer = RecordingObserver()
        provider = FakeProvider(error=RuntimeError("disk on fire"))

        summary = await Migrator(provider, observer=observer).run(example_source)

        assert summary.failed
        assert "disk on fire" in summary.error
        assert observer.of_kind(EventKind.FATAL)

    @pytest.mark.asyncio
    async def test_rejected_entry_does_not_stop_store(self, make_leveldb) -> None:
        """Test that one rejected write is counted and the rest commit."""
        source = terms_source(make_leveldb, 3)
        store = FakeDocumentStore(rejected_keys={"terms": ["t1"]})

        summary = await Migrator(FakeProvider(store)).run(source)

        assert summary.state == MigrationState.DONE
        assert summary.write_failures == 1
        assert summary.synced_entries == 2
        assert set(store.committed["terms"]) == {"t0", "t2"}
        assert any("Failed to add entry to terms" in w for w in summary.warnings)

    @pytest.mark.asyncio
    async def test_failed_commit_skips_store_only(self, make_leveldb, dictionary_pairs) -> None:
        """Test that a failed commit is not counted and later stores still run."""
        source = make_leveldb(dictionary_pairs)
        store = FakeDocumentStore(failing_commits=["terms"])

        summary = await Migrator(FakeProvider(store)).run(source)

        assert summary.state == MigrationState.DONE
        assert summary.synced_entries == 2
        assert "terms" not in store.committed
        assert set(store.committed) == {"dictionaries", "media"}
        assert any("Failed to sync terms" in w for w in summary.warnings)

    @pytest.mark.asyncio
    async def test_stores_written_in_schema_order(self, make_leveldb, dictionary_pairs) -> None:
        """Test one transaction per non-empty store, in id order, then one close."""
        store = FakeDocumentStore()

        await Migrator(FakeProvider(store)).run(make_leveldb(dictionary_pairs))

        assert store.transactions == [["dictionaries"], ["terms"], ["media"]]
        assert store.close_calls == 1

    @pytest.mark.asyncio
    async def test_observer_failure_is_contained(self, example_source: Path, target_dir) -> None:
        class BrokenObserver:
            def on_event(self, event) -> None:
                raise RuntimeError("observer broke")

        summary = await Migrator(
            LevelDocumentStoreProvider(target_dir), observer=BrokenObserver()
        ).run(example_source)

        assert summary.succeeded


class TestEvents:
    """Tests for the diagnostic events."""

    @pytest.mark.asyncio
    async def test_state_sequence(self, example_source: Path, target_dir: Path) -> None:
        observer = RecordingObserver()

        await Migrator(LevelDocumentStoreProvider(target_dir), observer=observer).run(
            example_source
        )

        states = [e.data["state"] for e in observer.of_kind(EventKind.STATE_CHANGED)]
        assert states == [
            "checking_source",
            "scanning",
            "grouping",
            "opening_target",
            "writing",
            "done",
        ]

    @pytest.mark.asyncio
    async def test_sample_keys_and_schema_events(self, make_leveldb, target_dir: Path) -> None:
        observer = RecordingObserver()
        source = terms_source(make_leveldb, 8)

        await Migrator(LevelDocumentStoreProvider(target_dir), observer=observer).run(source)

        samples = observer.of_kind(EventKind.SAMPLE_KEY)
        assert len(samples) == 5
        assert samples[0].data["hex"] == encode_key(1, 2, 0, "t0").hex()
        provisioned = observer.of_kind(EventKind.SCHEMA_PROVISIONED)
        assert len(provisioned) == 1
        assert provisioned[0].data["new_version"] == 60
        assert observer.of_kind(EventKind.MIGRATION_COMPLETE)


class ChokingKeyCodec(KeyCodec):
    """Key codec that raises on one chosen key."""

    def __init__(self, bad_key: bytes) -> None:
        super().__init__()
        self.bad_key = bad_key

    def decode(self, raw_key: bytes):
        if raw_key == self.bad_key:
            raise RuntimeError("codec choked")
        return super().decode(raw_key)


class ListSourceReader:
    """Source reader serving fixed records, optionally failing part way."""

    def __init__(self, records, error: Optional[Exception] = None, plain: bool = False) -> None:
        self.records = records
        self.error = error
        self.plain = plain
        self.closed = False

    async def open(self, path: Path) -> SourceHandle:
        return SourceHandle(path, path, db=object())

    def iterate(self, handle: SourceHandle):
        if self.plain:
            return PlainAsyncIterator(self.records)
        return self._generate()

    async def _generate(self):
        for record in self.records:
            yield record
        if self.error is not None:
            raise self.error

    async def close(self, handle: SourceHandle) -> None:
        self.closed = True


class PlainAsyncIterator:
    """An async iterator with no aclose()."""

    def __init__(self, records) -> None:
        self._records = iter(records)

    def __aiter__(self):
        return self

    async def __anext__(self):
        try:
            return next(self._records)
        except StopIteration:
            raise StopAsyncIteration


def term_record(term: str):
    return encode_key(1, 2, 0, term), json.dumps({"expression": term}).encode("utf-8")


class TestScanFailures:
    """Tests for failures while reading and decoding the source."""

    @pytest.mark.asyncio
    async def test_decode_failure_counted(self, make_leveldb) -> None:
        """Test that an entry whose decoding raises is counted and skipped."""
        source = terms_source(make_leveldb, 3)
        observer = RecordingObserver()
        store = FakeDocumentStore()
        migrator = Migrator(
            FakeProvider(store),
            observer=observer,
            key_codec=ChokingKeyCodec(encode_key(1, 2, 0, "t1")),
        )

        summary = await migrator.run(source)

        assert summary.state == MigrationState.DONE
        assert summary.decode_failures == 1
        assert summary.total_entries == 3
        assert summary.synced_entries == 2
        assert set(store.committed["terms"]) == {"t0", "t2"}
        failures = observer.of_kind(EventKind.DECODE_FAILED)
        assert len(failures) == 1
        assert "codec choked" in failures[0].message

    @pytest.mark.asyncio
    async def test_reader_fails_mid_scan(self, tmp_path: Path) -> None:
        """Test that entries read before an iterator error are still written."""
        reader = ListSourceReader([term_record("t0")], error=OSError("disk went away"))
        observer = RecordingObserver()
        store = FakeDocumentStore()

        summary = await Migrator(
            FakeProvider(store), observer=observer, source_reader=reader
        ).run(tmp_path)

        assert summary.state == MigrationState.DONE
        assert summary.synced_entries == 1
        assert summary.decode_failures == 0
        assert summary.warnings == ["Reading the source stopped after 1 entries: disk went away"]
        assert len(observer.of_kind(EventKind.SCAN_ABORTED)) == 1
        assert store.committed["terms"] == {"t0": {"expression": "t0"}}
        assert reader.closed

    @pytest.mark.asyncio
    async def test_plain_async_iterator_source(self, tmp_path: Path) -> None:
        """Test a reader whose iterate() returns an iterator without aclose()."""
        reader = ListSourceReader([term_record("t0"), term_record("t1")], plain=True)
        observer = RecordingObserver()
        store = FakeDocumentStore()

        summary = await Migrator(
            FakeProvider(store), observer=observer, source_reader=reader
        ).run(tmp_path)

        assert summary.state == MigrationState.DONE
        assert summary.synced_entries == 2
        assert not observer.of_kind(EventKind.SCAN_ABORTED)
        assert reader.closed
