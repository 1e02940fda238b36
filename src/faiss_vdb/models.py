"""Data models for collections, records, and search results."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def _empty_metadata() -> dict[str, Any]:
    """Return an empty metadata mapping."""
    return {}


class Metric(str, Enum):
    """Distance metric used to rank vectors."""

    L2 = "l2"
    IP = "ip"
    COSINE = "cosine"

    @property
    def ascending(self) -> bool:
        """Return ``True`` when smaller scores are more similar."""
        return self is Metric.L2


class IndexKind(str, Enum):
    """Index structure backing a collection."""

    FLAT = "flat"
    IVF_FLAT = "ivf_flat"
    IVF_PQ = "ivf_pq"

    @property
    def is_ivf(self) -> bool:
        """Return ``True`` for inverted-file kinds."""
        return self is not IndexKind.FLAT


class VdbSimilarityMetric(str, Enum):
    """Metric names used by the generic provider interface."""

    EUCLIDEAN_DISTANCE = "euclidean_distance"
    COSINE_SIMILARITY = "cosine_similarity"
    INNER_PRODUCT = "inner_product"

    def to_metric(self) -> Metric:
        """Return the engine metric for this provider metric."""
        return {
            VdbSimilarityMetric.EUCLIDEAN_DISTANCE: Metric.L2,
            VdbSimilarityMetric.COSINE_SIMILARITY: Metric.COSINE,
            VdbSimilarityMetric.INNER_PRODUCT: Metric.IP,
        }[self]


class StoreState(str, Enum):
    """Consistency of the auxiliary structure with the record set."""

    UNTRAINED = "untrained"
    CLEAN = "clean"
    DIRTY = "dirty"


class DropStatus(str, Enum):
    """Outcome of an idempotent drop."""

    DROPPED = "dropped"
    NOT_FOUND = "not_found"


class IndexParams(BaseModel):
    """Kind-specific parameters of an index store."""

    nlist: int = 100
    nprobe: int = 8
    pq_m: int | None = None
    pq_nbits: int = 8
    train_size: int = 0


class VectorRecord(BaseModel):
    """One stored vector with its identifier and scalar metadata."""

    id: str
    vector: list[float]
    metadata: dict[str, Any] = Field(default_factory=_empty_metadata)


class SearchHit(BaseModel):
    """Ranked search result entry."""

    id: str
    distance: float | None = None
    metadata: dict[str, Any] = Field(default_factory=_empty_metadata)
    vector: list[float] | None = None


class CollectionInfo(BaseModel):
    """Description of a collection and its resident index store."""

    database: str
    name: str
    dimension: int
    metric: Metric
    kind: IndexKind
    params: IndexParams
    count: int
    state: StoreState
    path: str | None = None
