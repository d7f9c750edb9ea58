"""Exception classes for libedgeidb."""


class EdgeIndexedDbError(Exception):
    """Base exception for all libedgeidb errors."""

    pass


class SourceUnavailableError(EdgeIndexedDbError):
    """Raised when the source IndexedDB directory does not exist."""

    pass


class SourceOpenError(EdgeIndexedDbError):
    """Raised when the source store exists but cannot be opened or read."""

    pass


class ComparatorMismatchError(SourceOpenError):
    """Raised when the source LevelDB was written with a key comparator
    (such as Chromium's ``idb_cmp1``) that the reader cannot interpret."""

    REMEDIATION = (
        "The browser's IndexedDB uses a custom key comparator that standard "
        "LevelDB readers cannot handle. Export the dictionaries from the "
        "browser extension and re-import them instead."
    )

    def __init__(self, message: str) -> None:
        super().__init__(f"{message}. {self.REMEDIATION}")


class KeyDecodeError(EdgeIndexedDbError):
    """Raised when a composite key is truncated or malformed."""

    pass


class SchemaMapError(EdgeIndexedDbError):
    """Raised when a store-id mapping file is invalid."""

    pass


class TargetOpenError(EdgeIndexedDbError):
    """Raised when the destination document store cannot be opened or created."""

    pass


class DocumentStoreError(EdgeIndexedDbError):
    """Base exception for errors raised by the destination document store."""

    pass


class UnknownStoreError(DocumentStoreError):
    """Raised when a transaction names a store the schema does not define."""

    pass


class DocumentWriteError(DocumentStoreError):
    """Raised when a single put/add is rejected."""

    pass


class ExtensionNotFoundError(EdgeIndexedDbError):
    """Raised when no installed browser extension matches the search."""

    pass
