"""Pydantic models for decoded IndexedDB records and migration results."""

from __future__ import annotations

import math
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class UserKeyKind(str, Enum):
    """How the user-key region of a composite key was interpreted."""

    TEXT = "text"
    NUMBER = "number"
    BYTES = "bytes"


class ValueKind(str, Enum):
    """Whether a record value was recovered as structured data."""

    STRUCTURED = "structured"
    OPAQUE = "opaque"


class MigrationState(str, Enum):
    """States of a migration run."""

    IDLE = "idle"
    CHECKING_SOURCE = "checking_source"
    SCANNING = "scanning"
    GROUPING = "grouping"
    OPENING_TARGET = "opening_target"
    WRITING = "writing"
    DONE = "done"
    FAILED = "failed"


class EventKind(str, Enum):
    """Kinds of diagnostic events reported to a migration observer."""

    STATE_CHANGED = "state_changed"
    SOURCE_MISSING = "source_missing"
    SAMPLE_KEY = "sample_key"
    MALFORMED_KEY = "malformed_key"
    UNMAPPED_STORE = "unmapped_store"
    OPAQUE_VALUE = "opaque_value"
    DECODE_FAILED = "decode_failed"
    SCAN_TRUNCATED = "scan_truncated"
    SCAN_ABORTED = "scan_aborted"
    SCAN_COMPLETE = "scan_complete"
    SCHEMA_PROVISIONED = "schema_provisioned"
    STORE_STARTED = "store_started"
    STORE_SYNCED = "store_synced"
    STORE_FAILED = "store_failed"
    WRITE_FAILED = "write_failed"
    MIGRATION_COMPLETE = "migration_complete"
    FATAL = "fatal"


class UserKey(BaseModel):
    """Best-effort interpretation of a record's user key.

    Attributes:
        kind: Which interpretation won the priority heuristic
        value: The decoded key (str, float or raw bytes)
    """

    kind: UserKeyKind = Field(..., description="Interpretation of the key bytes")
    value: Union[str, float, bytes] = Field(..., description="Decoded key")

    model_config = ConfigDict(frozen=True)

    @property
    def usable(self) -> bool:
        """Whether the key can be used as an explicit target store key."""
        if self.kind == UserKeyKind.NUMBER:
            return not math.isnan(float(self.value))
        return True


class CompositeKey(BaseModel):
    """A decoded LevelDB key: three varint identifiers and a user key.

    Attributes:
        database_id: IndexedDB database identifier
        object_store_id: Object store identifier within the database
        index_id: Index identifier (0 for primary records)
        user_key: Decoded user key, None when the remainder was empty
        raw_user_key: The undecoded bytes following the third identifier
        complete: False if the buffer ran out before a varint terminated
    """

    database_id: int = Field(0, ge=0)
    object_store_id: int = Field(0, ge=0)
    index_id: int = Field(0, ge=0)
    user_key: Optional[UserKey] = None
    raw_user_key: bytes = b""
    complete: bool = True

    model_config = ConfigDict(frozen=True)


class DecodedValue(BaseModel):
    """A record value recovered from its serialized blob.

    Attributes:
        kind: STRUCTURED when JSON was recovered, otherwise OPAQUE
        data: The parsed JSON value (None for opaque values)
        raw: The original value bytes
        from_envelope: True if the JSON was cut out of a binary wrapper
    """

    kind: ValueKind
    data: Any = None
    raw: bytes = b""
    from_envelope: bool = False

    model_config = ConfigDict(frozen=True)

    @property
    def is_structured(self) -> bool:
        return self.kind == ValueKind.STRUCTURED

    def to_document(self) -> Any:
        """Return the value as it should be written to the target store."""
        if self.kind == ValueKind.STRUCTURED:
            return self.data
        return self.raw


class DecodedEntry(BaseModel):
    """A decoded record bound for a named target store."""

    store_name: str
    key: Optional[UserKey] = None
    value: DecodedValue

    model_config = ConfigDict(frozen=True)


class MigrationEvent(BaseModel):
    """A structured diagnostic emitted during a migration run."""

    kind: EventKind
    message: str
    level: str = Field("info", description="debug, info, warning or error")
    data: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class MigrationSummary(BaseModel):
    """Result and statistics of a migration run.

    Attributes:
        source_path: Path of the source IndexedDB directory
        total_entries: Raw records read from the source
        parsed_entries: Records decoded into a known store
        per_store_counts: Decoded records per logical store
        synced_entries: Records committed to the target store
        unmapped_entries: Records whose store id has no known name
        malformed_keys: Records dropped because their key was truncated
        opaque_values: Records whose value stayed as raw bytes
        decode_failures: Records dropped because decoding raised
        write_failures: Records rejected by the target store
        warnings: Ordered human-readable diagnostics
        state: Final state of the run (DONE or FAILED)
        error: Message of the fatal error, if any
        truncated: True if the scan stopped at the entry limit
    """

    source_path: Optional[Path] = None
    total_entries: int = Field(0, ge=0)
    parsed_entries: int = Field(0, ge=0)
    per_store_counts: Dict[str, int] = Field(default_factory=dict)
    synced_entries: int = Field(0, ge=0)
    unmapped_entries: int = Field(0, ge=0)
    malformed_keys: int = Field(0, ge=0)
    opaque_values: int = Field(0, ge=0)
    decode_failures: int = Field(0, ge=0)
    write_failures: int = Field(0, ge=0)
    warnings: List[str] = Field(default_factory=list)
    state: MigrationState = MigrationState.IDLE
    error: Optional[str] = None
    truncated: bool = False

    model_config = ConfigDict(frozen=False)

    @property
    def succeeded(self) -> bool:
        """Check if the run synced at least one entry."""
        return self.state == MigrationState.DONE and self.synced_entries > 0

    @property
    def failed(self) -> bool:
        """Check if the run ended on a fatal error."""
        return self.state == MigrationState.FAILED
