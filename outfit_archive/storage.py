"""
Durable key-value collections the catalog is persisted to.

`StoragePort` is the contract; `ObjectStore` (one row per record through
SQLAlchemy) and `BlobStore` (the whole catalog as a single JSON document) are
the two interchangeable backends. Both translate their own failures into
`StorageUnavailable` / `StorageIOError` so nothing backend-specific reaches
the catalog.
"""

import copy
import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from fastapi.concurrency import run_in_threadpool
from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from .database import Base, Record
from .errors import StorageIOError, StorageUnavailable

logger = logging.getLogger(__name__)

# Each collection is keyed by a field of its own records.
COLLECTION_KEYS: Dict[str, str] = {
    "items": "id",
    "tags": "name",
    "categories": "key",
    "settings": "key",
}


def record_key(collection: str, record: dict) -> str:
    try:
        field = COLLECTION_KEYS[collection]
    except KeyError:
        raise ValueError(f"Unknown collection '{collection}'")
    if field not in record:
        raise ValueError(f"Record for '{collection}' is missing its key field '{field}'")
    return str(record[field])


class StoragePort(ABC):
    name = "storage"

    @abstractmethod
    async def open(self) -> None: ...

    async def close(self) -> None:
        return None

    @abstractmethod
    async def get_all(self, collection: str) -> List[dict]: ...

    @abstractmethod
    async def get(self, collection: str, key) -> Optional[dict]: ...

    @abstractmethod
    async def put(self, collection: str, record: dict) -> None: ...

    @abstractmethod
    async def delete(self, collection: str, key) -> None: ...

    @abstractmethod
    async def replace_all(self, collection: str, records: Sequence[dict]) -> None:
        """Atomically clears a collection and inserts `records` in order."""

    @abstractmethod
    async def clear_all(self) -> None: ...


# --- SQLAlchemy backend ---

class ObjectStore(StoragePort):
    name = "object-store"

    def __init__(self, database_url: str):
        self.database_url = database_url
        self.engine = None
        self.SessionLocal = None

    async def open(self) -> None:
        await run_in_threadpool(self._open)

    def _open(self) -> None:
        connect_args = {}
        engine_kwargs = {}
        if self.database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            if self.database_url in ("sqlite://", "sqlite:///:memory:"):
                # An in-memory database only lives as long as its single connection.
                engine_kwargs["poolclass"] = StaticPool
        try:
            engine = create_engine(self.database_url, connect_args=connect_args, **engine_kwargs)
            Base.metadata.create_all(bind=engine)
        except (SQLAlchemyError, OSError) as e:
            raise StorageUnavailable(f"Could not open database '{self.database_url}'. Reason: {e}") from e
        self.engine = engine
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    async def close(self) -> None:
        if self.engine is not None:
            await run_in_threadpool(self.engine.dispose)

    @contextmanager
    def _session(self):
        if self.SessionLocal is None:
            raise StorageUnavailable("Storage has not been opened.")
        db = self.SessionLocal()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageIOError(f"Database operation failed. Reason: {e}") from e
        finally:
            db.close()

    def _get_all(self, collection: str) -> List[dict]:
        with self._session() as db:
            rows = db.query(Record).filter(Record.collection == collection).order_by(Record.id).all()
            return [dict(row.data) for row in rows]

    def _get(self, collection: str, key) -> Optional[dict]:
        with self._session() as db:
            row = db.query(Record).filter(Record.collection == collection, Record.key == str(key)).first()
            return dict(row.data) if row else None

    def _put(self, collection: str, record: dict) -> None:
        key = record_key(collection, record)
        with self._session() as db:
            existing = db.query(Record).filter(Record.collection == collection, Record.key == key).first()
            if existing:
                existing.data = dict(record)
                existing.updated_at = datetime.now(timezone.utc)
            else:
                db.add(Record(collection=collection, key=key, data=dict(record)))

    def _delete(self, collection: str, key) -> None:
        with self._session() as db:
            db.query(Record).filter(Record.collection == collection, Record.key == str(key)).delete()

    def _replace_all(self, collection: str, records: Sequence[dict]) -> None:
        rows = [Record(collection=collection, key=record_key(collection, r), data=dict(r)) for r in records]
        # Delete and insert share one transaction, so readers never see a half-written list.
        with self._session() as db:
            db.query(Record).filter(Record.collection == collection).delete()
            db.flush()
            db.add_all(rows)

    def _clear_all(self) -> None:
        with self._session() as db:
            db.query(Record).delete()

    async def get_all(self, collection: str) -> List[dict]:
        return await run_in_threadpool(self._get_all, collection)

    async def get(self, collection: str, key) -> Optional[dict]:
        return await run_in_threadpool(self._get, collection, key)

    async def put(self, collection: str, record: dict) -> None:
        await run_in_threadpool(self._put, collection, record)

    async def delete(self, collection: str, key) -> None:
        await run_in_threadpool(self._delete, collection, key)

    async def replace_all(self, collection: str, records: Sequence[dict]) -> None:
        await run_in_threadpool(self._replace_all, collection, list(records))

    async def clear_all(self) -> None:
        await run_in_threadpool(self._clear_all)


# --- Single-blob backend ---

class BlobStore(StoragePort):
    """
    Keeps every collection in one JSON document on disk. Each write rewrites the
    whole document to a temporary file and swaps it into place, so the file on
    disk is always a complete snapshot.
    """
    name = "blob-store"

    def __init__(self, path: str):
        self.path = os.path.abspath(path)
        self._data: Optional[Dict[str, List[dict]]] = None
        self._lock = threading.Lock()

    async def open(self) -> None:
        await run_in_threadpool(self._open)

    def _open(self) -> None:
        try:
            os.makedirs(os.path.dirname(self.path), exist_ok=True)
            if os.path.exists(self.path):
                with open(self.path, "r", encoding="utf-8") as f:
                    data = json.load(f)
            else:
                data = {}
        except (OSError, ValueError) as e:
            raise StorageUnavailable(f"Could not open blob store '{self.path}'. Reason: {e}") from e
        if not isinstance(data, dict):
            raise StorageUnavailable(f"Blob store '{self.path}' does not contain a JSON object.")
        self._data = {name: list(data.get(name) or []) for name in COLLECTION_KEYS}

    def _collection(self, collection: str) -> List[dict]:
        if self._data is None:
            raise StorageUnavailable("Storage has not been opened.")
        if collection not in COLLECTION_KEYS:
            raise ValueError(f"Unknown collection '{collection}'")
        return self._data[collection]

    def _flush(self) -> None:
        directory = os.path.dirname(self.path)
        fd, temp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._data, f, ensure_ascii=False)
            os.replace(temp_path, self.path)
        except BaseException:
            if os.path.exists(temp_path):
                os.remove(temp_path)
            raise

    @contextmanager
    def _write(self):
        with self._lock:
            previous = copy.deepcopy(self._data)
            try:
                yield
                self._flush()
            except (OSError, TypeError, ValueError) as e:
                self._data = previous
                raise StorageIOError(f"Could not write blob store '{self.path}'. Reason: {e}") from e

    def _get_all(self, collection: str) -> List[dict]:
        with self._lock:
            return copy.deepcopy(self._collection(collection))

    def _get(self, collection: str, key) -> Optional[dict]:
        with self._lock:
            for record in self._collection(collection):
                if record_key(collection, record) == str(key):
                    return copy.deepcopy(record)
        return None

    def _put(self, collection: str, record: dict) -> None:
        key = record_key(collection, record)
        with self._write():
            records = self._collection(collection)
            for index, existing in enumerate(records):
                if record_key(collection, existing) == key:
                    records[index] = copy.deepcopy(record)
                    break
            else:
                records.append(copy.deepcopy(record))

    def _delete(self, collection: str, key) -> None:
        with self._write():
            records = self._collection(collection)
            records[:] = [r for r in records if record_key(collection, r) != str(key)]

    def _replace_all(self, collection: str, records: Sequence[dict]) -> None:
        for r in records:
            record_key(collection, r)
        with self._write():
            self._collection(collection)[:] = copy.deepcopy(list(records))

    def _clear_all(self) -> None:
        with self._write():
            for name in COLLECTION_KEYS:
                self._collection(name).clear()

    async def get_all(self, collection: str) -> List[dict]:
        return await run_in_threadpool(self._get_all, collection)

    async def get(self, collection: str, key) -> Optional[dict]:
        return await run_in_threadpool(self._get, collection, key)

    async def put(self, collection: str, record: dict) -> None:
        await run_in_threadpool(self._put, collection, record)

    async def delete(self, collection: str, key) -> None:
        await run_in_threadpool(self._delete, collection, key)

    async def replace_all(self, collection: str, records: Sequence[dict]) -> None:
        await run_in_threadpool(self._replace_all, collection, list(records))

    async def clear_all(self) -> None:
        await run_in_threadpool(self._clear_all)


async def open_storage(database_url: str, blob_path: str) -> StoragePort:
    """
    Opens the object store, falling back to the blob store when the database
    cannot be reached. Raises StorageUnavailable only if neither can be opened.
    """
    store = ObjectStore(database_url)
    try:
        await store.open()
        logger.info("Opened object store at %s", database_url)
        return store
    except StorageUnavailable as e:
        logger.warning("Object store unavailable, falling back to blob store at %s. Reason: %s", blob_path, e.message)

    fallback = BlobStore(blob_path)
    await fallback.open()
    return fallback
