"""Error taxonomy shared by the storage backends, the catalog and the web layer."""


class ArchiveError(Exception):
    """Base class for every error the archive raises on purpose."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


# --- Storage ---

class StorageError(ArchiveError):
    pass


class StorageUnavailable(StorageError):
    """The backend could not be reached or opened."""


class StorageIOError(StorageError):
    """A specific read or write against an open backend failed."""


class BulkOperationError(StorageIOError):
    """
    Raised when a multi-item operation persisted some items but not all of them.
    The in-memory state reflects exactly the items that were written.
    """

    def __init__(self, message: str, succeeded: int, failed: int):
        super().__init__(f"{message} ({succeeded} succeeded, {failed} failed)")
        self.succeeded = succeeded
        self.failed = failed


# --- Domain ---

class ValidationError(ArchiveError):
    pass


class DuplicateCategory(ArchiveError):
    def __init__(self, key: str):
        super().__init__(f"A category with key '{key}' already exists.")
        self.key = key


class NotFoundError(ArchiveError):
    pass


class ItemNotFound(NotFoundError):
    def __init__(self, item_id: int):
        super().__init__(f"Item {item_id} not found.")
        self.item_id = item_id


class CategoryNotFound(NotFoundError):
    def __init__(self, key: str):
        super().__init__(f"Category '{key}' not found.")
        self.key = key


class TagNotFound(NotFoundError):
    def __init__(self, tag: str):
        super().__init__(f"Tag '{tag}' not found.")
        self.tag = tag
