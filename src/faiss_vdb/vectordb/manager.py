"""Collection registry mediating concurrent access to index stores."""

from __future__ import annotations

import re
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from faiss_vdb.errors import CollectionAlreadyExists, CollectionNotFound, InvalidParameters, VdbError
from faiss_vdb.logger import get_logger
from faiss_vdb.models import CollectionInfo, DropStatus, IndexKind, IndexParams, Metric
from faiss_vdb.vectordb import persistence
from faiss_vdb.vectordb.filters import parse_filter
from faiss_vdb.vectordb.index_store import IndexStore
from faiss_vdb.vectordb.locks import ReadWriteLock

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Mapping, Sequence

    from structlog.stdlib import BoundLogger

    from faiss_vdb.models import SearchHit, VectorRecord

_COLLECTION_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
# "_" separates the database from the collection in file names.
_DATABASE_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9.-]*$")

CollectionKey = tuple[str, str]


def _validate_database(value: str) -> str:
    """Reject database names that are ambiguous in file names."""
    if not value:
        message = "database name must be a non-empty string"
        raise InvalidParameters(message)
    if ".." in value or not _DATABASE_PATTERN.match(value):
        message = f"database name {value!r} may only contain letters, digits, '.' and '-'"
        raise InvalidParameters(message)
    return value


def _validate_collection(value: str) -> str:
    """Reject collection names that would escape the index directory."""
    if not value:
        message = "collection name must be a non-empty string"
        raise InvalidParameters(message)
    if ".." in value or not _COLLECTION_PATTERN.match(value):
        message = f"collection name {value!r} may only contain letters, digits, '_', '.' and '-'"
        raise InvalidParameters(message)
    return value


def _validate_page(limit: int, offset: int) -> None:
    if limit <= 0:
        message = f"limit must be positive, received {limit}"
        raise InvalidParameters(message)
    if offset < 0:
        message = f"offset must not be negative, received {offset}"
        raise InvalidParameters(message)


@dataclass
class _Entry:
    """Registry slot for one collection."""

    lock: ReadWriteLock = field(default_factory=ReadWriteLock)
    store: IndexStore | None = None


class CollectionManager:
    """Own the resident index stores of one index directory.

    Each collection has its own readers-writer lock: searches and queries share
    it, mutations take it exclusively. Mutations are persisted synchronously
    before the call returns.
    """

    def __init__(
        self,
        index_path: str | Path,
        *,
        metric: Metric | str = Metric.L2,
        kind: IndexKind | str = IndexKind.FLAT,
        params: IndexParams | None = None,
        rebuild_dirty_fraction: float | None = 0.2,
        logger: BoundLogger | None = None,
    ) -> None:
        """Initialise the manager with the index directory and collection defaults."""
        self._index_path = Path(index_path)
        self._default_metric = Metric(metric)
        self._default_kind = IndexKind(kind)
        self._default_params = params or IndexParams()
        self._rebuild_dirty_fraction = rebuild_dirty_fraction
        self._logger = logger if logger is not None else get_logger("manager")
        self._registry: dict[CollectionKey, _Entry] = {}
        self._registry_lock = threading.Lock()

    @property
    def index_path(self) -> Path:
        return self._index_path

    def path_for(self, name: str, database: str) -> Path:
        """Return the index file path of ``database``/``name``."""
        _validate_database(database)
        _validate_collection(name)
        return self._index_path / f"{database}_{name}{persistence.INDEX_SUFFIX}"

    def resident(self) -> list[CollectionKey]:
        """Return the keys of collections currently loaded in memory."""
        with self._registry_lock:
            return [key for key, entry in self._registry.items() if entry.store is not None]

    def create_collection(
        self,
        name: str,
        database: str,
        dimension: int,
        metric: Metric | str | None = None,
        kind: IndexKind | str | None = None,
        params: IndexParams | Mapping[str, Any] | None = None,
    ) -> CollectionInfo:
        """Create and persist an empty collection."""
        path = self.path_for(name, database)
        store = IndexStore.create(
            dimension,
            metric if metric is not None else self._default_metric,
            kind if kind is not None else self._default_kind,
            params if params is not None else self._default_params,
        )
        with self._writing((database, name)) as entry:
            if persistence.exists(path):
                message = f"collection {name!r} already exists in database {database!r}"
                raise CollectionAlreadyExists(message)
            persistence.save(store, path, database=database, collection=name)
            entry.store = store
        self._logger.info(
            "collection.created",
            database=database,
            collection=name,
            dimension=store.dimension,
            metric=store.metric.value,
            kind=store.kind.value,
        )
        return self._describe(store, database, name, path)

    def list_collections(self, database: str) -> list[str]:
        """Return the collection names of ``database`` in no particular order."""
        _validate_database(database)
        if not self._index_path.is_dir():
            return []
        prefix = f"{database}_"
        names: list[str] = []
        for path in self._index_path.glob(f"{prefix}*{persistence.INDEX_SUFFIX}"):
            try:
                header = persistence.read_header(path)
            except VdbError as exc:
                self._logger.warning("collection.unreadable", path=str(path), error=str(exc))
                continue
            if header.get("database") != database:
                continue
            collection = header.get("collection")
            if isinstance(collection, str) and collection:
                names.append(collection)
        return names

    def drop_collection(self, name: str, database: str) -> DropStatus:
        """Delete the collection file, reporting whether anything was dropped."""
        path = self.path_for(name, database)
        with self._writing((database, name)) as entry:
            removed = persistence.delete(path)
            entry.store = None
        status = DropStatus.DROPPED if removed else DropStatus.NOT_FOUND
        self._logger.info("collection.dropped", database=database, collection=name, status=status.value)
        return status

    def insert(self, name: str, records: Sequence[VectorRecord], database: str) -> int:
        """Upsert ``records`` and persist the collection."""
        path = self.path_for(name, database)
        with self._writing((database, name)) as entry:
            store = self._ensure_loaded(entry, path)
            written = store.add(records)
            if written:
                self._persist(entry, store, path, database, name)
        self._logger.debug("collection.inserted", database=database, collection=name, count=written)
        return written

    def delete(self, name: str, ids: Iterable[str], database: str) -> int:
        """Remove records by identifier and persist the collection."""
        path = self.path_for(name, database)
        with self._writing((database, name)) as entry:
            store = self._ensure_loaded(entry, path)
            removed = store.remove(ids)
            if removed:
                self._persist(entry, store, path, database, name)
        self._logger.debug("collection.deleted", database=database, collection=name, count=removed)
        return removed

    def search(
        self,
        name: str,
        vector: Sequence[float],
        database: str,
        *,
        limit: int = 10,
        offset: int = 0,
        filters: str | None = "",
        metric: Metric | str | None = None,
    ) -> list[SearchHit]:
        """Return one page of the metric ranking restricted by ``filters``."""
        _validate_page(limit, offset)
        expression = parse_filter(filters)
        accept = None if expression.matches_all else expression.matches
        with self._reading(name, database) as store:
            hits = store.search(vector, offset + limit, metric=metric, accept=accept)
        return hits[offset:]

    def query(
        self,
        name: str,
        database: str,
        *,
        filters: str | None = "",
        limit: int = 10,
        offset: int = 0,
    ) -> list[SearchHit]:
        """Return one page of the records matching ``filters`` in insertion order."""
        _validate_page(limit, offset)
        expression = parse_filter(filters)
        accept = None if expression.matches_all else expression.matches
        page: list[SearchHit] = []
        with self._reading(name, database) as store:
            for index, hit in enumerate(store.scan(accept)):
                if index < offset:
                    continue
                page.append(hit)
                if len(page) >= limit:
                    break
        return page

    def get(self, name: str, ids: Iterable[str], database: str) -> list[VectorRecord]:
        """Fetch stored records by identifier."""
        with self._reading(name, database) as store:
            return store.get(ids)

    def rebuild(self, name: str, database: str) -> CollectionInfo:
        """Retrain the auxiliary structure and persist the collection."""
        path = self.path_for(name, database)
        with self._writing((database, name)) as entry:
            store = self._ensure_loaded(entry, path)
            store.rebuild()
            self._save(entry, store, path, database, name)
            info = self._describe(store, database, name, path)
        self._logger.info("index.rebuilt", database=database, collection=name, state=info.state.value)
        return info

    def describe(self, name: str, database: str) -> CollectionInfo:
        """Return the configuration and state of a collection."""
        path = self.path_for(name, database)
        with self._reading(name, database) as store:
            return self._describe(store, database, name, path)

    def close(self, name: str | None = None, database: str | None = None) -> int:
        """Evict resident stores; all of them when ``name`` is omitted."""
        with self._registry_lock:
            keys = [
                key
                for key in self._registry
                if (database is None or key[0] == database) and (name is None or key[1] == name)
            ]
        evicted = 0
        for key in keys:
            with self._writing(key) as entry:
                if entry.store is not None:
                    entry.store = None
                    evicted += 1
        return evicted

    def _entry(self, key: CollectionKey) -> _Entry:
        with self._registry_lock:
            entry = self._registry.get(key)
            if entry is None:
                entry = _Entry()
                self._registry[key] = entry
            return entry

    def _is_live(self, key: CollectionKey, entry: _Entry) -> bool:
        with self._registry_lock:
            return self._registry.get(key) is entry

    def _forget(self, key: CollectionKey, entry: _Entry) -> None:
        """Unregister ``entry``; the caller holds its write lock."""
        with self._registry_lock:
            if self._registry.get(key) is entry:
                del self._registry[key]

    @contextmanager
    def _writing(self, key: CollectionKey) -> Iterator[_Entry]:
        """Hold the write lock of the registered entry of ``key``.

        An entry is unregistered only under its own write lock, so an entry
        found registered after its lock is acquired stays registered until the
        lock is released. Entries left without a resident store are
        unregistered on the way out.
        """
        while True:
            entry = self._entry(key)
            entry.lock.acquire_write()
            if self._is_live(key, entry):
                break
            entry.lock.release_write()
        try:
            yield entry
        finally:
            if entry.store is None:
                self._forget(key, entry)
            entry.lock.release_write()

    @contextmanager
    def _reading(self, name: str, database: str) -> Iterator[IndexStore]:
        """Yield the loaded store of a collection under its shared lock."""
        path = self.path_for(name, database)
        key = (database, name)
        while True:
            entry = self._entry(key)
            entry.lock.acquire_read()
            store = entry.store
            if store is not None and self._is_live(key, entry):
                break
            entry.lock.release_read()
            with self._writing(key) as loading:
                self._ensure_loaded(loading, path)
        try:
            yield store
        finally:
            entry.lock.release_read()

    def _ensure_loaded(self, entry: _Entry, path: Path) -> IndexStore:
        """Load the store into ``entry``; the caller holds the write lock."""
        if entry.store is None:
            if not persistence.exists(path):
                message = f"collection file {path.name} does not exist"
                raise CollectionNotFound(message)
            entry.store = persistence.load(path)
            self._logger.info("collection.loaded", path=str(path), count=len(entry.store))
        return entry.store

    def _persist(self, entry: _Entry, store: IndexStore, path: Path, database: str, name: str) -> None:
        threshold = self._rebuild_dirty_fraction
        if store.is_dirty and threshold is not None and store.dirty_fraction >= threshold:
            store.rebuild()
            self._logger.info("index.rebuilt", database=database, collection=name, state=store.state.value)
        self._save(entry, store, path, database, name)

    def _save(self, entry: _Entry, store: IndexStore, path: Path, database: str, name: str) -> None:
        try:
            persistence.save(store, path, database=database, collection=name)
        except VdbError:
            entry.store = None
            self._logger.exception("collection.persist_failed", database=database, collection=name)
            raise
        self._logger.debug(
            "collection.persisted",
            database=database,
            collection=name,
            count=len(store),
            state=store.state.value,
        )

    @staticmethod
    def _describe(store: IndexStore, database: str, name: str, path: Path) -> CollectionInfo:
        return CollectionInfo(database=database, name=name, path=str(path), **store.stats())
