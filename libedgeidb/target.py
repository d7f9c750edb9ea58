"""Embedded document store that migrated records are written to.

The store follows the IndexedDB object-store model: a versioned database
holding named stores, written through transactions scoped to a set of
stores. It is persisted in its own LevelDB directory via plyvel:

- ``\\x00meta\\x00version`` holds the schema version
- ``\\x00meta\\x00stores`` holds the store definitions as JSON
- ``\\x01<store name>\\x00<encoded key>`` holds one document

Writes are validated when they are staged, so a rejected entry fails on
its own, and all staged writes of a transaction are committed in a
single atomic LevelDB write batch when the transaction completes.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import math
import struct
from pathlib import Path
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    Union,
)

import plyvel  # type: ignore
from pydantic import BaseModel, ConfigDict, Field

from .exceptions import (
    DocumentStoreError,
    DocumentWriteError,
    TargetOpenError,
    UnknownStoreError,
)
from .schema import DEFAULT_STORES

logger = logging.getLogger(__name__)

DocumentKey = Union[str, int, float, bytes]

META_PREFIX = b"\x00meta\x00"
VERSION_KEY = META_PREFIX + b"version"
STORES_KEY = META_PREFIX + b"stores"
DATA_PREFIX = b"\x01"

# Key type tags, ordered numbers < strings < bytes.
_NUMBER_TAG = b"\x10"
_STRING_TAG = b"\x30"
_BYTES_TAG = b"\x40"

_JSON_TAG = b"J"
_BINARY_TAG = b"B"

READWRITE = "readwrite"
READONLY = "readonly"


class StoreDefinition(BaseModel):
    """Schema of one named store.

    Attributes:
        name: Store name
        auto_increment: Whether add() may generate keys
        next_key: Next generated key
    """

    name: str
    auto_increment: bool = False
    next_key: int = Field(1, ge=1)

    model_config = ConfigDict(frozen=False)


def encode_document_key(key: Any) -> bytes:
    """Encode a key so that LevelDB's byte order sorts it sensibly.

    Raises:
        DocumentWriteError: If the key is not a string, number or bytes
    """
    if isinstance(key, bool) or key is None:
        raise DocumentWriteError(f"Invalid key: {key!r}")
    if isinstance(key, str):
        return _STRING_TAG + key.encode("utf-8")
    if isinstance(key, (bytes, bytearray)):
        return _BYTES_TAG + bytes(key)
    if isinstance(key, (int, float)):
        number = float(key)
        if math.isnan(number):
            raise DocumentWriteError("Invalid key: NaN")
        (bits,) = struct.unpack(">Q", struct.pack(">d", number))
        # Flip so that negative numbers sort before positive ones.
        bits = bits ^ 0xFFFFFFFFFFFFFFFF if bits >> 63 else bits | (1 << 63)
        return _NUMBER_TAG + struct.pack(">Q", bits)
    raise DocumentWriteError(f"Invalid key type: {type(key).__name__}")


def decode_document_key(raw: bytes) -> DocumentKey:
    """Inverse of encode_document_key. Integral numbers come back as int."""
    tag, body = raw[:1], raw[1:]
    if tag == _STRING_TAG:
        return body.decode("utf-8")
    if tag == _BYTES_TAG:
        return bytes(body)
    if tag == _NUMBER_TAG:
        (bits,) = struct.unpack(">Q", body)
        bits = bits ^ (1 << 63) if bits >> 63 else bits ^ 0xFFFFFFFFFFFFFFFF
        (number,) = struct.unpack(">d", struct.pack(">Q", bits))
        if math.isfinite(number) and number.is_integer():
            return int(number)
        return number
    raise DocumentStoreError(f"Unknown key tag: {tag!r}")


def encode_document(value: Any) -> bytes:
    """Serialize a document; bytes are stored as-is, anything else as JSON.

    Raises:
        DocumentWriteError: If the value cannot be serialized
    """
    if isinstance(value, (bytes, bytearray)):
        return _BINARY_TAG + bytes(value)
    try:
        text = json.dumps(value, ensure_ascii=False, allow_nan=False, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        raise DocumentWriteError(f"Value is not serializable: {e}") from e
    return _JSON_TAG + text.encode("utf-8")


def decode_document(raw: bytes) -> Any:
    tag, body = raw[:1], raw[1:]
    if tag == _BINARY_TAG:
        return bytes(body)
    if tag == _JSON_TAG:
        return json.loads(body.decode("utf-8"))
    raise DocumentStoreError(f"Unknown document tag: {tag!r}")


def _data_prefix(store_name: str) -> bytes:
    return DATA_PREFIX + store_name.encode("utf-8") + b"\x00"


class SchemaProvisioningContext:
    """Passed to the schema callback when a database is created or upgraded.

    Attributes:
        old_version: Version before the upgrade (0 for a new database)
        new_version: Version being opened
    """

    def __init__(
        self,
        old_version: int,
        new_version: int,
        stores: Optional[Dict[str, StoreDefinition]] = None,
    ) -> None:
        self.old_version = old_version
        self.new_version = new_version
        self._stores: Dict[str, StoreDefinition] = dict(stores or {})

    @property
    def store_names(self) -> List[str]:
        return list(self._stores)

    def has_store(self, name: str) -> bool:
        return name in self._stores

    def create_store(self, name: str, auto_increment: bool = False) -> StoreDefinition:
        """Create a named store.

        Raises:
            DocumentStoreError: If the name is invalid or already exists
        """
        if not name or "\x00" in name:
            raise DocumentStoreError(f"Invalid store name: {name!r}")
        if name in self._stores:
            raise DocumentStoreError(f"Store already exists: {name}")
        definition = StoreDefinition(name=name, auto_increment=auto_increment)
        self._stores[name] = definition
        return definition

    def delete_store(self, name: str) -> None:
        if name not in self._stores:
            raise UnknownStoreError(f"No such store: {name}")
        del self._stores[name]

    @property
    def stores(self) -> Dict[str, StoreDefinition]:
        return dict(self._stores)


SchemaCallback = Callable[[SchemaProvisioningContext], Union[None, Awaitable[None]]]


def make_schema_provisioner(
    store_names: Iterable[str], auto_increment: bool = True
) -> SchemaCallback:
    """Build a callback that creates every listed store that is missing."""
    names = list(store_names)

    def provision(ctx: SchemaProvisioningContext) -> None:
        for name in names:
            if not ctx.has_store(name):
                ctx.create_store(name, auto_increment=auto_increment)

    return provision


provision_dictionary_schema = make_schema_provisioner(DEFAULT_STORES.values())


class ObjectStore(Protocol):
    name: str

    def put(self, value: Any, key: Any) -> DocumentKey: ...

    def add(self, value: Any) -> DocumentKey: ...


class Transaction(Protocol):
    def object_store(self, name: str) -> ObjectStore: ...

    async def complete(self) -> None: ...


class DocumentStore(Protocol):
    name: str
    version: int

    def transaction(self, store_names: Sequence[str], mode: str = READWRITE) -> Transaction: ...

    def close(self) -> None: ...


class DocumentStoreProvider(Protocol):
    async def open_or_create(
        self,
        name: str,
        version: int,
        on_schema_needed: Optional[SchemaCallback] = None,
    ) -> DocumentStore: ...


class LevelObjectStore:
    """A store as seen from inside one transaction."""

    def __init__(self, transaction: LevelTransaction, definition: StoreDefinition) -> None:
        self._transaction = transaction
        self._definition = definition
        self.name = definition.name

    def put(self, value: Any, key: Any) -> DocumentKey:
        """Insert or replace the document stored under ``key``.

        Raises:
            DocumentWriteError: If the key or value is rejected
        """
        self._transaction._check_writable()
        encoded_key = encode_document_key(key)
        encoded_value = encode_document(value)
        if self._definition.auto_increment and isinstance(key, (int, float)):
            if math.isfinite(key) and key >= self._definition.next_key:
                self._definition.next_key = int(math.floor(key)) + 1
        self._transaction._stage(self.name, encoded_key, encoded_value)
        return key

    def add(self, value: Any) -> DocumentKey:
        """Insert a document under a generated key.

        Raises:
            DocumentWriteError: If the store has no key generator or the
                value is rejected
        """
        self._transaction._check_writable()
        if not self._definition.auto_increment:
            raise DocumentWriteError(f"Store {self.name} has no key generator")
        encoded_value = encode_document(value)
        key = self._definition.next_key
        self._definition.next_key += 1
        self._transaction._stage(self.name, encode_document_key(key), encoded_value)
        return key


class LevelTransaction:
    """Stages writes for a set of stores and commits them atomically."""

    def __init__(self, store: LevelDocumentStore, store_names: Sequence[str], mode: str) -> None:
        if mode not in (READWRITE, READONLY):
            raise DocumentStoreError(f"Invalid transaction mode: {mode}")
        self._store = store
        self.mode = mode
        self._definitions: Dict[str, StoreDefinition] = {}
        for name in store_names:
            definition = store._stores.get(name)
            if definition is None:
                raise UnknownStoreError(f"No such store in {store.name}: {name}")
            self._definitions[name] = definition.model_copy()
        self._staged: Dict[bytes, bytes] = {}
        self.finished = False

    @property
    def store_names(self) -> List[str]:
        return list(self._definitions)

    def object_store(self, name: str) -> LevelObjectStore:
        definition = self._definitions.get(name)
        if definition is None:
            raise UnknownStoreError(f"Store {name} is not in this transaction's scope")
        return LevelObjectStore(self, definition)

    def _check_writable(self) -> None:
        if self.finished:
            raise DocumentWriteError("Transaction has already finished")
        if self.mode != READWRITE:
            raise DocumentWriteError("Transaction is read-only")

    def _stage(self, store_name: str, encoded_key: bytes, encoded_value: bytes) -> None:
        self._staged[_data_prefix(store_name) + encoded_key] = encoded_value

    @property
    def pending(self) -> int:
        return len(self._staged)

    def abort(self) -> None:
        self._staged.clear()
        self.finished = True

    async def complete(self) -> None:
        """Commit every staged write in one atomic batch.

        Raises:
            DocumentStoreError: If the transaction already finished or the
                commit fails
        """
        if self.finished:
            raise DocumentStoreError("Transaction has already finished")
        self.finished = True
        if self.mode == READONLY:
            return
        await asyncio.to_thread(self._store._commit, self._staged, self._definitions)
        self._staged = {}


class LevelDocumentStore:
    """An open, versioned document database."""

    def __init__(
        self,
        db: Any,
        path: Path,
        name: str,
        version: int,
        stores: Dict[str, StoreDefinition],
    ) -> None:
        self._db: Optional[Any] = db
        self.path = path
        self.name = name
        self.version = version
        self._stores = stores

    @property
    def closed(self) -> bool:
        return self._db is None

    @property
    def store_names(self) -> List[str]:
        return list(self._stores)

    def _require_db(self) -> Any:
        if self._db is None:
            raise DocumentStoreError(f"Document store {self.name} is closed")
        return self._db

    def _require_store(self, store_name: str) -> StoreDefinition:
        definition = self._stores.get(store_name)
        if definition is None:
            raise UnknownStoreError(f"No such store in {self.name}: {store_name}")
        return definition

    def transaction(self, store_names: Sequence[str], mode: str = READWRITE) -> LevelTransaction:
        self._require_db()
        if isinstance(store_names, str):
            store_names = [store_names]
        return LevelTransaction(self, store_names, mode)

    def _commit(self, staged: Dict[bytes, bytes], definitions: Dict[str, StoreDefinition]) -> None:
        db = self._require_db()
        stores = {name: definition.model_copy() for name, definition in self._stores.items()}
        for name, definition in definitions.items():
            if name in stores and definition.next_key > stores[name].next_key:
                stores[name].next_key = definition.next_key
        try:
            with db.write_batch(transaction=True) as batch:
                for key, value in staged.items():
                    batch.put(key, value)
                batch.put(STORES_KEY, _dump_stores(stores))
        except plyvel.Error as e:
            raise DocumentStoreError(f"Commit to {self.name} failed: {e}") from e
        self._stores = stores

    def get(self, store_name: str, key: Any) -> Any:
        """Return the document stored under ``key``, or None."""
        self._require_store(store_name)
        raw = self._require_db().get(_data_prefix(store_name) + encode_document_key(key))
        return None if raw is None else decode_document(raw)

    def records(self, store_name: str) -> Iterator[Tuple[DocumentKey, Any]]:
        """Iterate (key, document) pairs of a store in key order."""
        self._require_store(store_name)
        prefix = _data_prefix(store_name)
        with self._require_db().iterator(prefix=prefix) as iterator:
            for raw_key, raw_value in iterator:
                yield decode_document_key(raw_key[len(prefix) :]), decode_document(raw_value)

    def count(self, store_name: str) -> int:
        self._require_store(store_name)
        prefix = _data_prefix(store_name)
        with self._require_db().iterator(prefix=prefix, include_value=False) as iterator:
            return sum(1 for _ in iterator)

    def close(self) -> None:
        """Close the database. Safe to call twice."""
        if self._db is not None:
            self._db.close()
            self._db = None


def _dump_stores(stores: Dict[str, StoreDefinition]) -> bytes:
    return json.dumps([definition.model_dump() for definition in stores.values()]).encode("utf-8")


def _load_stores(raw: Optional[bytes]) -> Dict[str, StoreDefinition]:
    if raw is None:
        return {}
    definitions = [StoreDefinition.model_validate(item) for item in json.loads(raw)]
    return {definition.name: definition for definition in definitions}


class LevelDocumentStoreProvider:
    """Opens document databases kept under one directory.

    Each database lives in ``<directory>/<name>.leveldb``.
    """

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    def path_for(self, name: str) -> Path:
        return self.directory / f"{name}.leveldb"

    async def open_or_create(
        self,
        name: str,
        version: int,
        on_schema_needed: Optional[SchemaCallback] = None,
    ) -> LevelDocumentStore:
        """Open a database, creating or upgrading it when needed.

        The schema callback runs once when the database is new or ``version``
        is higher than the stored version.

        Raises:
            TargetOpenError: If the database cannot be opened, the version is
                lower than the stored one, or the schema callback fails
        """
        if isinstance(version, bool) or not isinstance(version, int) or version < 1:
            raise TargetOpenError(f"Invalid database version: {version!r}")
        if not name or "/" in name or "\\" in name:
            raise TargetOpenError(f"Invalid database name: {name!r}")

        path = self.path_for(name)
        try:
            db = await asyncio.to_thread(self._open_db, path)
        except (plyvel.Error, OSError) as e:
            raise TargetOpenError(f"Cannot open document store {path}: {e}") from e

        try:
            return await self._prepare(db, path, name, version, on_schema_needed)
        except BaseException:
            db.close()
            raise

    def _open_db(self, path: Path) -> Any:
        path.parent.mkdir(parents=True, exist_ok=True)
        return plyvel.DB(str(path), create_if_missing=True)

    async def _prepare(
        self,
        db: Any,
        path: Path,
        name: str,
        version: int,
        on_schema_needed: Optional[SchemaCallback],
    ) -> LevelDocumentStore:
        try:
            raw_version = db.get(VERSION_KEY)
            stored_version = int(raw_version) if raw_version is not None else 0
            stores = _load_stores(db.get(STORES_KEY))
        except (ValueError, plyvel.Error) as e:
            raise TargetOpenError(f"Document store {path} has corrupt metadata: {e}") from e

        if version < stored_version:
            raise TargetOpenError(
                f"Requested version {version} of {name} is lower than "
                f"the existing version {stored_version}"
            )

        if version > stored_version:
            ctx = SchemaProvisioningContext(stored_version, version, stores)
            if on_schema_needed is not None:
                try:
                    result = on_schema_needed(ctx)
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    raise TargetOpenError(f"Schema provisioning for {name} failed: {e}") from e
            stores = ctx.stores
            try:
                with db.write_batch(transaction=True) as batch:
                    batch.put(VERSION_KEY, str(version).encode("ascii"))
                    batch.put(STORES_KEY, _dump_stores(stores))
            except plyvel.Error as e:
                raise TargetOpenError(f"Cannot write schema for {name}: {e}") from e
            logger.info(
                "Provisioned %s v%d -> v%d with stores %s",
                name,
                stored_version,
                version,
                ", ".join(stores) or "(none)",
            )

        return LevelDocumentStore(db=db, path=path, name=name, version=version, stores=stores)
