"""libedgeidb - Migrates a browser extension's IndexedDB into a local document store."""

__version__ = "0.1.0"

from .models import (
    CompositeKey,
    DecodedEntry,
    DecodedValue,
    EventKind,
    MigrationEvent,
    MigrationState,
    MigrationSummary,
    UserKey,
    UserKeyKind,
    ValueKind,
)
from .migrator import (
    DEFAULT_DATABASE_NAME,
    DEFAULT_DATABASE_VERSION,
    Migrator,
    migrate_edge_indexeddb,
    sync_edge_indexeddb,
)
from .keys import KeyCodec, decode_key, encode_key, read_varint, encode_varint
from .values import ValueCodec, decode_value
from .schema import DEFAULT_STORES, SchemaMap
from .source import LevelDbSourceReader, SourceHandle, SourceStore
from .target import (
    DocumentStore,
    DocumentStoreProvider,
    LevelDocumentStore,
    LevelDocumentStoreProvider,
    SchemaProvisioningContext,
    make_schema_provisioner,
    provision_dictionary_schema,
)
from .observer import (
    CompositeObserver,
    LoggingObserver,
    MigrationObserver,
    RecordingObserver,
)
from .config import MigrationSettings
from .discovery import ExtensionDiscovery, ExtensionLocation
from .exceptions import (
    EdgeIndexedDbError,
    SourceUnavailableError,
    SourceOpenError,
    ComparatorMismatchError,
    KeyDecodeError,
    SchemaMapError,
    TargetOpenError,
    DocumentStoreError,
    UnknownStoreError,
    DocumentWriteError,
    ExtensionNotFoundError,
)

# Synthetic data generation (for testing)
from .synthetic import SyntheticIndexedDB, SyntheticRecord, wrap_in_envelope

__all__ = [
    # Core models
    "CompositeKey",
    "DecodedEntry",
    "DecodedValue",
    "EventKind",
    "MigrationEvent",
    "MigrationState",
    "MigrationSummary",
    "UserKey",
    "UserKeyKind",
    "ValueKind",
    # Main classes
    "Migrator",
    "migrate_edge_indexeddb",
    "sync_edge_indexeddb",
    "DEFAULT_DATABASE_NAME",
    "DEFAULT_DATABASE_VERSION",
    "MigrationSettings",
    "ExtensionDiscovery",
    "ExtensionLocation",
    # Codecs
    "KeyCodec",
    "decode_key",
    "encode_key",
    "read_varint",
    "encode_varint",
    "ValueCodec",
    "decode_value",
    "SchemaMap",
    "DEFAULT_STORES",
    # Source and target stores
    "LevelDbSourceReader",
    "SourceHandle",
    "SourceStore",
    "DocumentStore",
    "DocumentStoreProvider",
    "LevelDocumentStore",
    "LevelDocumentStoreProvider",
    "SchemaProvisioningContext",
    "make_schema_provisioner",
    "provision_dictionary_schema",
    # Observers
    "MigrationObserver",
    "LoggingObserver",
    "RecordingObserver",
    "CompositeObserver",
    # Exceptions
    "EdgeIndexedDbError",
    "SourceUnavailableError",
    "SourceOpenError",
    "ComparatorMismatchError",
    "KeyDecodeError",
    "SchemaMapError",
    "TargetOpenError",
    "DocumentStoreError",
    "UnknownStoreError",
    "DocumentWriteError",
    "ExtensionNotFoundError",
    # Synthetic data
    "SyntheticIndexedDB",
    "SyntheticRecord",
    "wrap_in_envelope",
]
