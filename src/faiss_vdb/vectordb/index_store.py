"""In-memory index store with flat and inverted-file search.

The store keeps every resident record (identifier, ``float32`` vector and
scalar metadata) in insertion order. Flat stores answer searches with an
exhaustive scan. IVF stores additionally partition the vectors into ``nlist``
clusters trained with :class:`faiss.Kmeans` and only score the members of the
``nprobe`` clusters nearest to the query; ``ivf_pq`` stores score against
product-quantised reconstructions of the residuals. IVF search is approximate:
recall against a flat scan is not guaranteed to be 100%.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import faiss
import numpy as np
from pydantic import ValidationError

from faiss_vdb.errors import DimensionMismatch, InvalidParameters, VdbError
from faiss_vdb.logger import get_logger
from faiss_vdb.models import IndexKind, IndexParams, Metric, StoreState, VectorRecord
from faiss_vdb.vectordb.codec import MetadataValue, to_hit, validate_metadata

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence

    from faiss_vdb.models import SearchHit

    Accept = Callable[[str, Mapping[str, MetadataValue]], bool]

_KMEANS_SEED = 1234
_KMEANS_ITERATIONS = 20
_MAX_PQ_NBITS = 16
_DEFAULT_PQ_SUBQUANTIZERS = 8


@dataclass
class IvfStructure:
    """Trained auxiliary structure of an IVF store."""

    centroids: np.ndarray
    assignments: np.ndarray
    pq_codebook: np.ndarray | None = None
    codes: np.ndarray | None = None


def _normalize(matrix: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=1, keepdims=True) + 1e-9
    return matrix / norms


def _default_pq_m(dimension: int) -> int:
    for candidate in range(min(_DEFAULT_PQ_SUBQUANTIZERS, dimension), 0, -1):
        if dimension % candidate == 0:
            return candidate
    return 1


def _resolve_params(dimension: int, kind: IndexKind, params: IndexParams | Mapping[str, Any] | None) -> IndexParams:
    """Validate ``params`` against ``kind`` and fill derived defaults."""
    try:
        resolved = IndexParams.model_validate(params or {}) if not isinstance(params, IndexParams) else params
    except ValidationError as exc:
        message = f"invalid index parameters: {exc.errors()[0]['msg']}"
        raise InvalidParameters(message) from exc
    if not kind.is_ivf:
        return resolved
    if resolved.nlist <= 0:
        message = f"nlist must be positive for {kind.value}, received {resolved.nlist}"
        raise InvalidParameters(message)
    if resolved.nprobe <= 0:
        message = f"nprobe must be positive for {kind.value}, received {resolved.nprobe}"
        raise InvalidParameters(message)
    if resolved.train_size < 0:
        message = f"train_size must not be negative, received {resolved.train_size}"
        raise InvalidParameters(message)
    if kind is not IndexKind.IVF_PQ:
        return resolved
    pq_m = resolved.pq_m if resolved.pq_m is not None else _default_pq_m(dimension)
    if pq_m <= 0 or dimension % pq_m != 0:
        message = f"pq_m must be a positive divisor of dimension {dimension}, received {pq_m}"
        raise InvalidParameters(message)
    if not 1 <= resolved.pq_nbits <= _MAX_PQ_NBITS:
        message = f"pq_nbits must be between 1 and {_MAX_PQ_NBITS}, received {resolved.pq_nbits}"
        raise InvalidParameters(message)
    return resolved.model_copy(update={"pq_m": pq_m})


def _coerce_enum(enum_type: type[Metric] | type[IndexKind], value: Any, label: str) -> Any:
    try:
        return enum_type(value)
    except ValueError as exc:
        allowed = ", ".join(member.value for member in enum_type)
        message = f"unknown {label} {value!r}; expected one of {allowed}"
        raise InvalidParameters(message) from exc


class IndexStore:
    """Records and search structure of a single collection."""

    def __init__(self, dimension: int, metric: Metric, kind: IndexKind, params: IndexParams) -> None:
        """Initialise an empty store; use :meth:`create` for validated construction."""
        self._dimension = dimension
        self._metric = metric
        self._kind = kind
        self._params = params
        self._ids: list[str] = []
        self._positions: dict[str, int] = {}
        self._metadata: list[dict[str, MetadataValue]] = []
        self._vectors = np.empty((0, dimension), dtype="float32")
        self._ivf: IvfStructure | None = None
        self._quantizer: faiss.Index | None = None
        self._pq: faiss.ProductQuantizer | None = None
        self._state = StoreState.UNTRAINED if kind.is_ivf else StoreState.CLEAN
        self._trained_count = 0
        self._removed_since_training = 0

    @classmethod
    def create(
        cls,
        dimension: int,
        metric: Metric | str = Metric.L2,
        kind: IndexKind | str = IndexKind.FLAT,
        params: IndexParams | Mapping[str, Any] | None = None,
    ) -> IndexStore:
        """Create an empty store after validating the configuration."""
        if isinstance(dimension, bool) or not isinstance(dimension, int) or dimension <= 0:
            message = f"dimension must be a positive integer, received {dimension!r}"
            raise InvalidParameters(message)
        resolved_metric = _coerce_enum(Metric, metric, "metric")
        resolved_kind = _coerce_enum(IndexKind, kind, "index kind")
        resolved_params = _resolve_params(dimension, resolved_kind, params)
        return cls(dimension, resolved_metric, resolved_kind, resolved_params)

    def restore(
        self,
        records: Iterable[tuple[str, np.ndarray, dict[str, MetadataValue]]],
        state: StoreState,
        ivf: IvfStructure | None,
        removed_since_training: int = 0,
    ) -> IndexStore:
        """Populate this empty store with persisted records and structure."""
        ids: list[str] = []
        vectors: list[np.ndarray] = []
        for record_id, vector, metadata in records:
            if record_id in self._positions:
                message = f"duplicate record id {record_id!r}"
                raise InvalidParameters(message)
            if vector.shape[0] != self._dimension:
                raise DimensionMismatch(self._dimension, int(vector.shape[0]), record_id)
            self._positions[record_id] = len(ids)
            ids.append(record_id)
            vectors.append(vector)
            self._metadata.append(metadata)
        self._ids = ids
        if vectors:
            self._vectors = np.vstack(vectors).astype("float32")
        if not self._kind.is_ivf:
            return self
        if ivf is not None and state is StoreState.CLEAN:
            self._install_ivf(ivf)
        else:
            self._state = StoreState.DIRTY if state is StoreState.DIRTY else StoreState.UNTRAINED
        if self._state is StoreState.DIRTY:
            self._removed_since_training = max(removed_since_training, 0)
            self._trained_count = len(self._ids) + self._removed_since_training
        return self

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def metric(self) -> Metric:
        return self._metric

    @property
    def kind(self) -> IndexKind:
        return self._kind

    @property
    def params(self) -> IndexParams:
        return self._params

    @property
    def state(self) -> StoreState:
        return self._state

    @property
    def is_dirty(self) -> bool:
        return self._state is StoreState.DIRTY

    @property
    def ids(self) -> list[str]:
        return list(self._ids)

    @property
    def vectors(self) -> np.ndarray:
        view = self._vectors.view()
        view.flags.writeable = False
        return view

    @property
    def metadata(self) -> list[dict[str, MetadataValue]]:
        return [dict(entry) for entry in self._metadata]

    @property
    def ivf(self) -> IvfStructure | None:
        return self._ivf

    @property
    def removed_since_training(self) -> int:
        return self._removed_since_training

    @property
    def dirty_fraction(self) -> float:
        """Share of the records present at training time removed since then."""
        if self._state is not StoreState.DIRTY:
            return 0.0
        return self._removed_since_training / max(self._trained_count, 1)

    @property
    def training_threshold(self) -> int:
        """Resident count at which IVF kinds train their clusters."""
        threshold = max(self._params.nlist, self._params.train_size, 1)
        if self._kind is IndexKind.IVF_PQ:
            threshold = max(threshold, 2**self._params.pq_nbits)
        return threshold

    def stats(self) -> dict[str, Any]:
        """Return the configuration, size and state of the store."""
        return {
            "dimension": self._dimension,
            "metric": self._metric,
            "kind": self._kind,
            "params": self._params,
            "count": len(self._ids),
            "state": self._state,
        }

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._positions

    def add(self, records: Sequence[VectorRecord]) -> int:
        """Insert or replace ``records`` and return the number written.

        Every record is validated before the store is touched, so a failing
        batch leaves the store unchanged. Existing identifiers keep their
        insertion position; within one batch the last occurrence wins.
        """
        staged: dict[str, tuple[np.ndarray, dict[str, MetadataValue]]] = {}
        for record in records:
            if not record.id:
                message = "record id must be a non-empty string"
                raise InvalidParameters(message)
            vector = np.asarray(record.vector, dtype="float32")
            if vector.ndim != 1 or vector.shape[0] != self._dimension:
                raise DimensionMismatch(self._dimension, int(vector.size), record.id)
            if not np.all(np.isfinite(vector)):
                message = f"record {record.id!r} contains non-finite vector components"
                raise InvalidParameters(message)
            staged[record.id] = (vector, validate_metadata(record.metadata))
        if not staged:
            return 0

        touched: list[int] = []
        appended_vectors: list[np.ndarray] = []
        for record_id, (vector, metadata) in staged.items():
            position = self._positions.get(record_id)
            if position is not None:
                self._vectors[position] = vector
                self._metadata[position] = metadata
            else:
                position = len(self._ids)
                self._positions[record_id] = position
                self._ids.append(record_id)
                self._metadata.append(metadata)
                appended_vectors.append(vector)
            touched.append(position)
        if appended_vectors:
            self._vectors = np.vstack([self._vectors, np.stack(appended_vectors)])

        if self._state is StoreState.UNTRAINED and len(self._ids) >= self.training_threshold:
            self._train()
        elif self._state is StoreState.CLEAN and self._ivf is not None:
            self._encode_positions(np.asarray(touched, dtype="int64"))
        return len(staged)

    def remove(self, ids: Iterable[str]) -> int:
        """Remove records by identifier and return how many existed."""
        positions = sorted({self._positions[record_id] for record_id in ids if record_id in self._positions})
        if not positions:
            return 0
        keep = np.ones(len(self._ids), dtype=bool)
        keep[positions] = False
        self._vectors = np.ascontiguousarray(self._vectors[keep])
        self._ids = [record_id for record_id, kept in zip(self._ids, keep, strict=True) if kept]
        self._metadata = [entry for entry, kept in zip(self._metadata, keep, strict=True) if kept]
        self._positions = {record_id: index for index, record_id in enumerate(self._ids)}
        if self._state is StoreState.CLEAN and self._kind.is_ivf:
            self._drop_ivf()
            self._state = StoreState.DIRTY
        if self._state is StoreState.DIRTY:
            self._removed_since_training += len(positions)
        return len(positions)

    def get(self, ids: Iterable[str]) -> list[VectorRecord]:
        """Return stored records for the identifiers that exist, in request order."""
        records: list[VectorRecord] = []
        for record_id in ids:
            position = self._positions.get(record_id)
            if position is None:
                continue
            records.append(
                VectorRecord(
                    id=record_id,
                    vector=[float(value) for value in self._vectors[position]],
                    metadata=dict(self._metadata[position]),
                ),
            )
        return records

    def scan(self, accept: Accept | None = None) -> Iterator[SearchHit]:
        """Yield resident records in insertion order, optionally filtered."""
        for record_id, metadata in zip(list(self._ids), list(self._metadata), strict=True):
            if accept is None or accept(record_id, metadata):
                yield to_hit(record_id, metadata)

    def search(
        self,
        query: Sequence[float] | np.ndarray,
        k: int,
        metric: Metric | str | None = None,
        accept: Accept | None = None,
    ) -> list[SearchHit]:
        """Return up to ``k`` records ranked by similarity to ``query``.

        ``l2`` ranks by ascending squared Euclidean distance, ``ip`` and
        ``cosine`` by descending score. Ties keep insertion order. ``accept``
        filters ranked candidates before the result is truncated to ``k``.
        """
        if k <= 0:
            message = f"k must be positive, received {k}"
            raise InvalidParameters(message)
        vector = self._coerce_query(query)
        active = self._metric if metric is None else _coerce_enum(Metric, metric, "metric")
        if not self._ids:
            return []

        if self._uses_clusters(active):
            positions, candidates = self._nearest_lists(vector)
        else:
            positions = np.arange(len(self._ids), dtype="int64")
            candidates = self._vectors
        if positions.size == 0:
            return []

        scores = self._score(active, candidates, vector)
        primary = scores if active.ascending else -scores
        order = np.lexsort((positions, primary))

        hits: list[SearchHit] = []
        for index in order:
            position = int(positions[index])
            record_id = self._ids[position]
            metadata = self._metadata[position]
            if accept is not None and not accept(record_id, metadata):
                continue
            hits.append(to_hit(record_id, metadata, float(scores[index])))
            if len(hits) >= k:
                break
        return hits

    def rebuild(self) -> None:
        """Recompute the auxiliary structure from the resident records."""
        if not self._kind.is_ivf:
            self._state = StoreState.CLEAN
            return
        self._drop_ivf()
        if len(self._ids) >= self.training_threshold:
            self._train()
        else:
            self._state = StoreState.UNTRAINED

    def _coerce_query(self, query: Sequence[float] | np.ndarray) -> np.ndarray:
        vector = np.asarray(query, dtype="float32")
        if vector.ndim != 1 or vector.shape[0] != self._dimension:
            raise DimensionMismatch(self._dimension, int(vector.size))
        return vector

    def _uses_clusters(self, metric: Metric) -> bool:
        return self._state is StoreState.CLEAN and self._ivf is not None and metric is self._metric

    def _to_space(self, matrix: np.ndarray) -> np.ndarray:
        """Return vectors in the space the clusters were trained in."""
        array = np.ascontiguousarray(matrix, dtype="float32")
        if self._metric is Metric.COSINE:
            return np.ascontiguousarray(_normalize(array), dtype="float32")
        return array

    @staticmethod
    def _score(metric: Metric, candidates: np.ndarray, query: np.ndarray) -> np.ndarray:
        if metric is Metric.L2:
            diff = candidates - query
            return np.einsum("ij,ij->i", diff, diff)
        if metric is Metric.COSINE:
            return _normalize(candidates) @ _normalize(query[None, :])[0]
        return candidates @ query

    def _nearest_lists(self, vector: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """Return candidate positions and vectors from the nearest clusters."""
        ivf, quantizer = self._trained()
        nprobe = min(self._params.nprobe, self._params.nlist)
        _, labels = quantizer.search(self._to_space(vector[None, :]), nprobe)
        lists = labels[0][labels[0] >= 0]
        positions = np.flatnonzero(np.isin(ivf.assignments, lists)).astype("int64")
        if positions.size == 0 or self._kind is IndexKind.IVF_FLAT:
            return positions, self._vectors[positions]
        return positions, self._reconstruct(ivf, positions)

    def _reconstruct(self, ivf: IvfStructure, positions: np.ndarray) -> np.ndarray:
        codes, pq = self._quantized(ivf)
        residuals = pq.decode(np.ascontiguousarray(codes[positions]))
        return ivf.centroids[ivf.assignments[positions]] + residuals

    def _trained(self) -> tuple[IvfStructure, faiss.Index]:
        if self._ivf is None or self._quantizer is None:
            message = f"{self._kind.value} clusters are not trained"
            raise VdbError(message)
        return self._ivf, self._quantizer

    def _quantized(self, ivf: IvfStructure) -> tuple[np.ndarray, faiss.ProductQuantizer]:
        if ivf.codes is None or self._pq is None:
            message = "product quantizer is not trained"
            raise VdbError(message)
        return ivf.codes, self._pq

    def _new_product_quantizer(self) -> faiss.ProductQuantizer:
        pq_m = self._params.pq_m if self._params.pq_m is not None else _default_pq_m(self._dimension)
        return faiss.ProductQuantizer(self._dimension, pq_m, self._params.pq_nbits)

    def _train(self) -> None:
        space = self._to_space(self._vectors)
        kmeans = faiss.Kmeans(
            self._dimension,
            self._params.nlist,
            niter=_KMEANS_ITERATIONS,
            seed=_KMEANS_SEED,
            spherical=self._metric is not Metric.L2,
            verbose=False,
        )
        kmeans.train(space)
        centroids = np.ascontiguousarray(kmeans.centroids, dtype="float32")
        quantizer = self._build_quantizer(centroids)
        _, labels = quantizer.search(space, 1)
        assignments = labels[:, 0].astype("int32")

        codebook: np.ndarray | None = None
        codes: np.ndarray | None = None
        if self._kind is IndexKind.IVF_PQ:
            pq = self._new_product_quantizer()
            residuals = np.ascontiguousarray(space - centroids[assignments], dtype="float32")
            pq.train(residuals)
            codes = pq.compute_codes(residuals)
            codebook = faiss.vector_to_array(pq.centroids).astype("float32")
        self._install_ivf(IvfStructure(centroids, assignments, codebook, codes))
        get_logger("index_store").info(
            "index.trained",
            kind=self._kind.value,
            nlist=self._params.nlist,
            count=len(self._ids),
        )

    def _install_ivf(self, structure: IvfStructure) -> None:
        if structure.centroids.shape != (self._params.nlist, self._dimension):
            message = f"IVF centroids have shape {structure.centroids.shape}"
            raise InvalidParameters(message)
        if structure.assignments.shape[0] != len(self._ids):
            message = "IVF assignments do not match the record count"
            raise InvalidParameters(message)
        self._quantizer = self._build_quantizer(structure.centroids)
        self._pq = None
        if self._kind is IndexKind.IVF_PQ:
            codebook, codes = structure.pq_codebook, structure.codes
            if (
                codebook is None
                or codes is None
                or codebook.size != self._dimension * 2**self._params.pq_nbits
                or codes.shape[0] != len(self._ids)
            ):
                message = "IVF-PQ structure is missing or has a malformed codebook or codes"
                raise InvalidParameters(message)
            pq = self._new_product_quantizer()
            faiss.copy_array_to_vector(np.ascontiguousarray(codebook, dtype="float32").ravel(), pq.centroids)
            self._pq = pq
        self._ivf = structure
        self._state = StoreState.CLEAN
        self._trained_count = len(self._ids)
        self._removed_since_training = 0

    def _build_quantizer(self, centroids: np.ndarray) -> faiss.Index:
        quantizer = faiss.IndexFlatL2(self._dimension) if self._metric is Metric.L2 else faiss.IndexFlatIP(self._dimension)
        quantizer.add(np.ascontiguousarray(centroids, dtype="float32"))
        return quantizer

    def _encode_positions(self, positions: np.ndarray) -> None:
        """Assign (and PQ-encode) ``positions`` against the trained clusters."""
        ivf, quantizer = self._trained()
        count = len(self._ids)
        assignments = np.full(count, -1, dtype="int32")
        previous = ivf.assignments
        assignments[: previous.shape[0]] = previous
        space = self._to_space(self._vectors[positions])
        _, labels = quantizer.search(space, 1)
        assignments[positions] = labels[:, 0]
        ivf.assignments = assignments

        if self._kind is not IndexKind.IVF_PQ:
            return
        previous_codes, pq = self._quantized(ivf)
        codes = np.zeros((count, previous_codes.shape[1]), dtype="uint8")
        codes[: previous_codes.shape[0]] = previous_codes
        residuals = np.ascontiguousarray(space - ivf.centroids[labels[:, 0]], dtype="float32")
        codes[positions] = pq.compute_codes(residuals)
        ivf.codes = codes

    def _drop_ivf(self) -> None:
        self._ivf = None
        self._quantizer = None
        self._pq = None
