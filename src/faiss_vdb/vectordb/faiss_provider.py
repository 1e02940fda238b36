"""Local FAISS-style vector database provider backed by the collection manager."""

from __future__ import annotations

import os
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Any

from faiss_vdb.errors import CollectionNotFound, ConfigurationError, InvalidParameters
from faiss_vdb.logger import get_logger
from faiss_vdb.models import VdbSimilarityMetric, VectorRecord
from faiss_vdb.vectordb.filters import format_literal
from faiss_vdb.vectordb.protocols import VdbProvider

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from structlog.stdlib import BoundLogger

    from faiss_vdb.models import CollectionInfo, DropStatus, SearchHit
    from faiss_vdb.settings import Settings
    from faiss_vdb.vectordb.manager import CollectionManager

_VECTOR_FIELD = "vector"
_ID_FIELD = "id"
_DISTANCE_FIELD = "distance"
_LOOKUP_PAGE = 500


class FaissProvider(VdbProvider):
    """Expose the collection manager through the generic provider interface.

    The provider needs no authentication: collections are files under the
    configured index path, named ``{database}_{collection}.fvdb``.
    """

    name = "faiss"

    def __init__(
        self,
        settings: Settings,
        manager: CollectionManager,
        *,
        source_field: str = "source_id",
        logger: BoundLogger | None = None,
    ) -> None:
        """Initialise the provider with its settings and collection manager."""
        self._settings = settings
        self._manager = manager
        self._source_field = source_field
        self._logger = logger if logger is not None else get_logger("provider")

    @property
    def manager(self) -> CollectionManager:
        return self._manager

    def get_connection_data(self) -> dict[str, Any]:
        """Return the effective configuration, failing when no index path is set."""
        if not self.is_setup():
            message = "index path is not configured"
            raise ConfigurationError(message)
        return {
            "index_path": str(self._settings.index_path),
            "index_type": self._settings.index_kind.value,
            "distance_metric": self._settings.metric.value,
            "nlist": self._settings.nlist,
        }

    def ping(self) -> bool:
        """Return ``True`` if the index directory exists and is writable."""
        try:
            config = self.get_connection_data()
        except ConfigurationError:
            return False
        path = Path(config["index_path"])
        return path.is_dir() and os.access(path, os.W_OK)

    def is_setup(self) -> bool:
        return self._settings.index_path is not None and bool(str(self._settings.index_path).strip())

    def view_index_settings(self) -> dict[str, dict[str, str]]:
        """Summarise the configuration for display by the host."""
        try:
            config = self.get_connection_data()
        except ConfigurationError as exc:
            return {"error": {"label": "Configuration Error", "info": str(exc), "status": "error"}}
        return {
            "status": {
                "label": "Index Status",
                "info": f"Index path: {config['index_path']}",
                "status": "ok" if Path(config["index_path"]).is_dir() else "warning",
            },
            "index_type": {"label": "Index Type", "info": config["index_type"]},
            "distance_metric": {"label": "Distance Metric", "info": config["distance_metric"]},
        }

    def get_collections(self, database: str = "default") -> list[str]:
        return self._manager.list_collections(database)

    def create_collection(
        self,
        collection_name: str,
        dimension: int,
        metric_type: VdbSimilarityMetric = VdbSimilarityMetric.COSINE_SIMILARITY,
        database: str = "default",
    ) -> CollectionInfo:
        """Create a collection using the configured index kind and parameters."""
        return self._manager.create_collection(
            collection_name,
            database,
            dimension,
            metric=VdbSimilarityMetric(metric_type).to_metric(),
            kind=self._settings.index_kind,
            params=self._settings.index_params(),
        )

    def drop_collection(self, collection_name: str, database: str = "default") -> DropStatus:
        return self._manager.drop_collection(collection_name, database)

    def insert_into_collection(
        self,
        collection_name: str,
        data: Sequence[Mapping[str, Any]],
        database: str = "default",
    ) -> int:
        """Insert rows; ``vector`` is required, ``id`` is generated when absent."""
        records = [self._row_to_record(row) for row in data]
        return self._manager.insert(collection_name, records, database)

    def delete_from_collection(
        self,
        collection_name: str,
        ids: Sequence[str],
        database: str = "default",
    ) -> int:
        return self._manager.delete(collection_name, [str(item) for item in ids], database)

    def query_search(
        self,
        collection_name: str,
        output_fields: Sequence[str],
        filters: str = "id not in [0]",
        limit: int = 10,
        offset: int = 0,
        database: str = "default",
    ) -> list[dict[str, Any]]:
        """Return rows matching ``filters``; a missing collection yields no rows."""
        try:
            hits = self._manager.query(collection_name, database, filters=filters, limit=limit, offset=offset)
        except CollectionNotFound:
            self._logger.warning("collection.missing", database=database, collection=collection_name)
            return []
        return self._rows(collection_name, database, hits, output_fields)

    def vector_search(
        self,
        collection_name: str,
        vector_input: Sequence[float],
        output_fields: Sequence[str],
        filters: str = "",
        limit: int = 10,
        offset: int = 0,
        database: str = "default",
    ) -> list[dict[str, Any]]:
        """Return rows ranked by similarity to ``vector_input``."""
        try:
            hits = self._manager.search(
                collection_name,
                vector_input,
                database,
                limit=limit,
                offset=offset,
                filters=filters,
            )
        except CollectionNotFound:
            self._logger.warning("collection.missing", database=database, collection=collection_name)
            return []
        return self._rows(collection_name, database, hits, output_fields, with_distance=True)

    def get_vdb_ids(
        self,
        collection_name: str,
        source_ids: Sequence[str | int],
        database: str = "default",
    ) -> list[str]:
        """Return ids of records whose source field holds one of ``source_ids``."""
        if not source_ids:
            return []
        literals = ", ".join(format_literal(value) for value in source_ids)
        expression = f"{self._source_field} in [{literals}]"
        found: list[str] = []
        offset = 0
        while True:
            try:
                page = self._manager.query(
                    collection_name, database, filters=expression, limit=_LOOKUP_PAGE, offset=offset,
                )
            except CollectionNotFound:
                return []
            found.extend(hit.id for hit in page)
            if len(page) < _LOOKUP_PAGE:
                return found
            offset += _LOOKUP_PAGE

    @staticmethod
    def _row_to_record(row: Mapping[str, Any]) -> VectorRecord:
        if _VECTOR_FIELD not in row:
            message = "each row must provide a 'vector'"
            raise InvalidParameters(message)
        vector = row[_VECTOR_FIELD]
        if hasattr(vector, "tolist"):
            vector = vector.tolist()
        raw_id = row.get(_ID_FIELD)
        record_id = str(raw_id) if raw_id is not None else uuid.uuid4().hex
        metadata = {key: value for key, value in row.items() if key not in {_VECTOR_FIELD, _ID_FIELD}}
        return VectorRecord(id=record_id, vector=list(vector), metadata=metadata)

    def _rows(
        self,
        collection_name: str,
        database: str,
        hits: list[SearchHit],
        output_fields: Sequence[str],
        *,
        with_distance: bool = False,
    ) -> list[dict[str, Any]]:
        vectors: dict[str, list[float]] = {}
        if _VECTOR_FIELD in output_fields and hits:
            records = self._manager.get(collection_name, [hit.id for hit in hits], database)
            vectors = {record.id: record.vector for record in records}
        rows: list[dict[str, Any]] = []
        for hit in hits:
            row: dict[str, Any] = {_ID_FIELD: hit.id}
            if with_distance:
                row[_DISTANCE_FIELD] = hit.distance
            fields = output_fields or list(hit.metadata)
            for field_name in fields:
                if field_name == _VECTOR_FIELD:
                    if hit.id in vectors:
                        row[_VECTOR_FIELD] = vectors[hit.id]
                elif field_name in hit.metadata:
                    row[field_name] = hit.metadata[field_name]
            rows.append(row)
        return rows
