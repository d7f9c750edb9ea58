"""One-shot migration of a browser IndexedDB into a document store.

The Migrator walks through a fixed sequence of states::

    IDLE -> CHECKING_SOURCE -> SCANNING -> GROUPING -> OPENING_TARGET
         -> WRITING -> DONE

A source that cannot be opened or a target that cannot be opened ends the
run in FAILED. Every other problem (bad keys, unknown stores, undecodable
values, rejected writes) is counted and reported, and the run carries on.
``run`` never raises; it always returns a MigrationSummary.

All decoded entries are held in memory until the scan finishes, so memory
use grows with the size of the source. ``max_entries`` caps the scan.
"""

from __future__ import annotations

import inspect
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from .exceptions import (
    KeyDecodeError,
    SourceOpenError,
    SourceUnavailableError,
    TargetOpenError,
)
from .keys import KeyCodec
from .models import (
    DecodedEntry,
    EventKind,
    MigrationEvent,
    MigrationState,
    MigrationSummary,
)
from .observer import LoggingObserver, MigrationObserver
from .schema import SchemaMap
from .source import LevelDbSourceReader, SourceHandle, SourceStore
from .target import (
    READWRITE,
    DocumentStore,
    DocumentStoreProvider,
    LevelDocumentStoreProvider,
    SchemaCallback,
    SchemaProvisioningContext,
    make_schema_provisioner,
)
from .values import ValueCodec

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_NAME = "dict"
DEFAULT_DATABASE_VERSION = 60

# Individual anomalies of one kind that are written to the summary warnings.
# Later ones are only counted.
MAX_DETAILED_WARNINGS = 10


class Migrator:
    """Migrates decoded IndexedDB records into a document store.

    Example:
        migrator = Migrator(LevelDocumentStoreProvider(Path("./data")))
        summary = await migrator.run(indexeddb_path)
        print(summary.per_store_counts, summary.synced_entries)
    """

    def __init__(
        self,
        target_provider: DocumentStoreProvider,
        *,
        schema_map: Optional[SchemaMap] = None,
        source_reader: Optional[SourceStore] = None,
        key_codec: Optional[KeyCodec] = None,
        value_codec: Optional[ValueCodec] = None,
        observer: Optional[MigrationObserver] = None,
        target_name: str = DEFAULT_DATABASE_NAME,
        target_version: int = DEFAULT_DATABASE_VERSION,
        on_schema_needed: Optional[SchemaCallback] = None,
        max_entries: Optional[int] = None,
        sample_keys: int = 5,
    ) -> None:
        """Initialize the migrator.

        Args:
            target_provider: Opens or creates the destination database
            schema_map: Store id to name table (defaults to the dictionary layout)
            source_reader: Reader for the source store
            key_codec: Composite key decoder
            value_codec: Value blob decoder
            observer: Receives diagnostic events (defaults to logging)
            target_name: Destination database name
            target_version: Destination schema version
            on_schema_needed: Creates the destination stores; defaults to
                creating one auto-increment store per schema map entry
            max_entries: Stop scanning after this many source records
            sample_keys: Number of leading raw keys reported for diagnosis
        """
        if max_entries is not None and max_entries < 0:
            raise ValueError("max_entries must be non-negative")

        self.target_provider = target_provider
        self.schema_map = schema_map or SchemaMap.default()
        self.source_reader: SourceStore = source_reader or LevelDbSourceReader()
        self.key_codec = key_codec or KeyCodec()
        self.value_codec = value_codec or ValueCodec()
        self.observer: MigrationObserver = observer or LoggingObserver()
        self.target_name = target_name
        self.target_version = target_version
        self.on_schema_needed = on_schema_needed or make_schema_provisioner(
            self.schema_map.store_names
        )
        self.max_entries = max_entries
        self.sample_keys = sample_keys
        self._state = MigrationState.IDLE

    @property
    def state(self) -> MigrationState:
        return self._state

    async def run(self, source_path: Path) -> MigrationSummary:
        """Run the whole migration once.

        Args:
            source_path: The browser's ``*.indexeddb.leveldb`` directory

        Returns:
            The summary. Check ``failed`` for fatal errors and
            ``synced_entries`` for how much was written.
        """
        source_path = Path(source_path)
        summary = MigrationSummary(source_path=source_path)
        self._state = MigrationState.IDLE

        try:
            await self._run(source_path, summary)
        except Exception as e:
            logger.exception("Migration of %s crashed", source_path)
            self._fail(summary, f"Unexpected error: {e}")

        summary.state = self._state
        return summary

    async def _run(self, source_path: Path, summary: MigrationSummary) -> None:
        self._transition(MigrationState.CHECKING_SOURCE)
        handle = await self._open_source(source_path, summary)
        if handle is None:
            return

        self._transition(MigrationState.SCANNING)
        try:
            buffers = await self._scan(handle, summary)
        finally:
            await self._close_source(handle, summary)

        self._transition(MigrationState.GROUPING)
        summary.per_store_counts = {name: len(entries) for name, entries in buffers.items()}
        self._emit(
            EventKind.SCAN_COMPLETE,
            f"Parsed {summary.parsed_entries} of {summary.total_entries} entries "
            f"({summary.unmapped_entries} unmapped, {summary.malformed_keys} malformed keys, "
            f"{summary.opaque_values} opaque values)",
            per_store_counts=dict(summary.per_store_counts),
        )

        self._transition(MigrationState.OPENING_TARGET)
        store = await self._open_target(summary)
        if store is None:
            return

        self._transition(MigrationState.WRITING)
        try:
            for store_name, entries in buffers.items():
                if entries:
                    await self._write_store(store, store_name, entries, summary)
        finally:
            store.close()

        self._transition(MigrationState.DONE)
        self._emit(
            EventKind.MIGRATION_COMPLETE,
            f"Synced {summary.synced_entries} entries from {source_path}",
            synced_entries=summary.synced_entries,
        )

    async def _open_source(
        self, source_path: Path, summary: MigrationSummary
    ) -> Optional[SourceHandle]:
        if not source_path.exists():
            self._source_missing(source_path, summary)
            return None

        try:
            return await self.source_reader.open(source_path)
        except SourceUnavailableError:
            self._source_missing(source_path, summary)
            return None
        except SourceOpenError as e:
            self._fail(summary, str(e))
            return None
        except Exception as e:
            self._fail(summary, f"Cannot open source {source_path}: {e}")
            return None

    def _source_missing(self, source_path: Path, summary: MigrationSummary) -> None:
        self._warn(
            summary,
            EventKind.SOURCE_MISSING,
            f"Source IndexedDB not found at {source_path}, nothing to migrate",
            path=str(source_path),
        )
        self._transition(MigrationState.DONE)

    async def _close_source(self, handle: SourceHandle, summary: MigrationSummary) -> None:
        try:
            await self.source_reader.close(handle)
        except Exception as e:
            self._warn(summary, EventKind.SCAN_ABORTED, f"Failed to close source: {e}")

    async def _scan(
        self, handle: SourceHandle, summary: MigrationSummary
    ) -> Dict[str, List[DecodedEntry]]:
        buffers: Dict[str, List[DecodedEntry]] = {
            name: [] for name in self.schema_map.store_names
        }
        seen_unmapped: Set[int] = set()

        try:
            records = self.source_reader.iterate(handle)
            try:
                async for raw_key, raw_value in records:
                    if self.max_entries is not None and summary.total_entries >= self.max_entries:
                        summary.truncated = True
                        self._warn(
                            summary,
                            EventKind.SCAN_TRUNCATED,
                            f"Stopped scanning after {self.max_entries} entries",
                            limit=self.max_entries,
                        )
                        break

                    summary.total_entries += 1
                    if summary.total_entries <= self.sample_keys:
                        self._emit(
                            EventKind.SAMPLE_KEY,
                            f"Sample key: {raw_key[:20].hex()} (length {len(raw_key)})",
                            level="debug",
                            hex=raw_key[:20].hex(),
                            length=len(raw_key),
                            first_bytes=list(raw_key[:10]),
                        )

                    try:
                        entry = self._decode_entry(raw_key, raw_value, summary, seen_unmapped)
                    except Exception as e:
                        summary.decode_failures += 1
                        self._warn_limited(
                            summary,
                            summary.decode_failures,
                            EventKind.DECODE_FAILED,
                            f"Failed to decode entry {raw_key[:20].hex()}: {e}",
                        )
                        continue

                    if entry is not None:
                        buffers[entry.store_name].append(entry)
                        summary.parsed_entries += 1
            finally:
                aclose = getattr(records, "aclose", None)
                if aclose is not None:
                    await aclose()
        except Exception as e:
            self._warn(
                summary,
                EventKind.SCAN_ABORTED,
                f"Reading the source stopped after {summary.total_entries} entries: {e}",
            )

        return buffers

    def _decode_entry(
        self,
        raw_key: bytes,
        raw_value: bytes,
        summary: MigrationSummary,
        seen_unmapped: Set[int],
    ) -> Optional[DecodedEntry]:
        try:
            key = self.key_codec.decode(raw_key)
        except KeyDecodeError:
            key = None
        if key is None or not key.complete:
            summary.malformed_keys += 1
            self._warn_limited(
                summary,
                summary.malformed_keys,
                EventKind.MALFORMED_KEY,
                f"Truncated key dropped (first 20 bytes): {raw_key[:20].hex()}",
            )
            return None

        store_name = self.schema_map.resolve(key.object_store_id)
        if store_name is None:
            summary.unmapped_entries += 1
            if key.object_store_id not in seen_unmapped:
                seen_unmapped.add(key.object_store_id)
                self._warn(
                    summary,
                    EventKind.UNMAPPED_STORE,
                    f"Unmapped object store ID: {key.object_store_id}, "
                    f"database ID: {key.database_id}, index ID: {key.index_id}",
                    object_store_id=key.object_store_id,
                )
            return None

        value = self.value_codec.decode(raw_value)
        if not value.is_structured:
            summary.opaque_values += 1
            self._emit(
                EventKind.OPAQUE_VALUE,
                f"Value in {store_name} kept as {len(value.raw)} raw bytes",
                level="debug",
                store=store_name,
            )

        return DecodedEntry(store_name=store_name, key=key.user_key, value=value)

    async def _open_target(self, summary: MigrationSummary) -> Optional[DocumentStore]:
        try:
            return await self.target_provider.open_or_create(
                self.target_name, self.target_version, self._provision_schema
            )
        except TargetOpenError as e:
            self._fail(summary, str(e))
        except Exception as e:
            self._fail(summary, f"Cannot open target {self.target_name}: {e}")
        return None

    async def _provision_schema(self, ctx: SchemaProvisioningContext) -> None:
        result = self.on_schema_needed(ctx)
        if inspect.isawaitable(result):
            await result
        self._emit(
            EventKind.SCHEMA_PROVISIONED,
            f"Provisioned {self.target_name} v{ctx.old_version} -> v{ctx.new_version}",
            old_version=ctx.old_version,
            new_version=ctx.new_version,
            stores=ctx.store_names,
        )

    async def _write_store(
        self,
        store: DocumentStore,
        store_name: str,
        entries: List[DecodedEntry],
        summary: MigrationSummary,
    ) -> None:
        self._emit(
            EventKind.STORE_STARTED,
            f"Syncing {len(entries)} entries to {store_name}...",
            store=store_name,
        )
        try:
            transaction = store.transaction([store_name], mode=READWRITE)
            object_store = transaction.object_store(store_name)
        except Exception as e:
            self._warn(summary, EventKind.STORE_FAILED, f"Failed to sync {store_name}: {e}")
            return

        written = 0
        for entry in entries:
            document = entry.value.to_document()
            try:
                if entry.key is not None and entry.key.usable:
                    object_store.put(document, entry.key.value)
                else:
                    object_store.add(document)
            except Exception as e:
                summary.write_failures += 1
                self._warn_limited(
                    summary,
                    summary.write_failures,
                    EventKind.WRITE_FAILED,
                    f"Failed to add entry to {store_name}: {e}",
                )
                continue
            written += 1

        try:
            await transaction.complete()
        except Exception as e:
            self._warn(summary, EventKind.STORE_FAILED, f"Failed to sync {store_name}: {e}")
            return

        summary.synced_entries += written
        self._emit(
            EventKind.STORE_SYNCED,
            f"Synced {written} of {len(entries)} entries to {store_name}",
            store=store_name,
            written=written,
        )

    def _transition(self, state: MigrationState) -> None:
        previous = self._state
        self._state = state
        self._emit(
            EventKind.STATE_CHANGED,
            f"{previous.value} -> {state.value}",
            level="debug",
            previous=previous.value,
            state=state.value,
        )

    def _fail(self, summary: MigrationSummary, message: str) -> None:
        summary.error = message
        self._transition(MigrationState.FAILED)
        self._emit(EventKind.FATAL, message, level="error")

    def _warn(self, summary: MigrationSummary, kind: EventKind, message: str, **data: Any) -> None:
        summary.warnings.append(message)
        self._emit(kind, message, level="warning", **data)

    def _warn_limited(
        self, summary: MigrationSummary, occurrence: int, kind: EventKind, message: str
    ) -> None:
        if occurrence <= MAX_DETAILED_WARNINGS:
            self._warn(summary, kind, message)
        else:
            self._emit(kind, message, level="debug")

    def _emit(self, kind: EventKind, message: str, level: str = "info", **data: Any) -> None:
        event = MigrationEvent(kind=kind, message=message, level=level, data=data)
        try:
            self.observer.on_event(event)
        except Exception:
            logger.exception("Migration observer failed on %s", kind.value)


async def migrate_edge_indexeddb(
    source_path: Path,
    target_dir: Path,
    *,
    target_name: str = DEFAULT_DATABASE_NAME,
    target_version: int = DEFAULT_DATABASE_VERSION,
    schema_map: Optional[SchemaMap] = None,
    observer: Optional[MigrationObserver] = None,
    on_schema_needed: Optional[SchemaCallback] = None,
    max_entries: Optional[int] = None,
) -> MigrationSummary:
    """Migrate a browser IndexedDB directory into ``target_dir``."""
    migrator = Migrator(
        LevelDocumentStoreProvider(target_dir),
        schema_map=schema_map,
        observer=observer,
        target_name=target_name,
        target_version=target_version,
        on_schema_needed=on_schema_needed,
        max_entries=max_entries,
    )
    return await migrator.run(source_path)


async def sync_edge_indexeddb(source_path: Path, target_dir: Path, **kwargs: Any) -> bool:
    """Like migrate_edge_indexeddb, but only report whether anything was synced."""
    summary = await migrate_edge_indexeddb(source_path, target_dir, **kwargs)
    return summary.succeeded
