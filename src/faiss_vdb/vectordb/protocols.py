"""Protocol describing a vector database provider."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from faiss_vdb.models import CollectionInfo, DropStatus, VdbSimilarityMetric


class VdbProvider(Protocol):
    """Call surface a host application uses to drive a vector database."""

    name: str

    def get_connection_data(self) -> dict[str, Any]:
        """Return the effective connection configuration."""
        ...

    def ping(self) -> bool:
        """Return ``True`` when the backend is reachable."""
        ...

    def is_setup(self) -> bool:
        """Return ``True`` when the backend has the configuration it needs."""
        ...

    def get_collections(self, database: str = "default") -> list[str]:
        """List collection names of ``database``."""
        ...

    def create_collection(
        self,
        collection_name: str,
        dimension: int,
        metric_type: VdbSimilarityMetric = ...,
        database: str = "default",
    ) -> CollectionInfo:
        """Create an empty collection."""
        ...

    def drop_collection(self, collection_name: str, database: str = "default") -> DropStatus:
        """Drop a collection."""
        ...

    def insert_into_collection(
        self,
        collection_name: str,
        data: Sequence[Mapping[str, Any]],
        database: str = "default",
    ) -> int:
        """Insert rows carrying a ``vector`` and metadata."""
        ...

    def delete_from_collection(
        self,
        collection_name: str,
        ids: Sequence[str],
        database: str = "default",
    ) -> int:
        """Delete rows by vector identifier."""
        ...

    def query_search(
        self,
        collection_name: str,
        output_fields: Sequence[str],
        filters: str = "id not in [0]",
        limit: int = 10,
        offset: int = 0,
        database: str = "default",
    ) -> list[dict[str, Any]]:
        """Return rows matching a metadata filter."""
        ...

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
        """Return rows ranked by vector similarity."""
        ...

    def get_vdb_ids(
        self,
        collection_name: str,
        source_ids: Sequence[str | int],
        database: str = "default",
    ) -> list[str]:
        """Map host source identifiers to vector identifiers."""
        ...
