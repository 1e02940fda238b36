"""Single-file persistence for index stores.

File layout::

    b"FVDB" | u16 version | u32 header length | header JSON |
    records section | aux section | sha256 of all preceding bytes

The header is canonical JSON describing the store configuration, the record
count, the store state and the byte length of every section. The records
section holds each record length-prefixed with the record codec. The aux
section is present only for clean, trained IVF stores; a dirty store is saved
without it so that its clusters are rebuilt from the records.
"""

from __future__ import annotations

import contextlib
import hashlib
import json
import os
import struct
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Any

import numpy as np

from faiss_vdb.errors import (
    CollectionNotFound,
    CorruptFile,
    DimensionMismatch,
    InvalidParameters,
    IOFailure,
    UnsupportedVersion,
)
from faiss_vdb.models import IndexKind, StoreState
from faiss_vdb.vectordb.codec import decode_parts, encode_parts
from faiss_vdb.vectordb.index_store import IndexStore, IvfStructure

if TYPE_CHECKING:
    from collections.abc import Iterator

    from faiss_vdb.vectordb.codec import MetadataValue

MAGIC = b"FVDB"
FORMAT_VERSION = 1
INDEX_SUFFIX = ".fvdb"

_PREAMBLE = struct.Struct("<4sHI")
_U32 = struct.Struct("<I")
_DIGEST_SIZE = hashlib.sha256().digest_size


def save(store: IndexStore, path: str | Path, *, database: str = "", collection: str = "") -> Path:
    """Atomically write ``store`` to ``path``.

    The payload is written to a temporary file in the destination directory,
    flushed to disk and renamed over ``path``; the directory is synced after
    the rename so the new entry survives a crash. A failure leaves any
    previous file untouched.
    """
    target = Path(path)
    payload = serialize(store, database=database, collection=collection)
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        handle, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
    except OSError as exc:
        message = f"cannot prepare index file {target}: {exc}"
        raise IOFailure(message) from exc
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(handle, "wb") as stream:
            stream.write(payload)
            stream.flush()
            os.fsync(stream.fileno())
        tmp_path.replace(target)
        _fsync_directory(target.parent)
    except OSError as exc:
        _remove_quietly(tmp_path)
        message = f"cannot write index file {target}: {exc}"
        raise IOFailure(message) from exc
    return target


def load(path: str | Path) -> IndexStore:
    """Read and validate an index file, returning a new store."""
    source = Path(path)
    try:
        data = source.read_bytes()
    except FileNotFoundError as exc:
        message = f"index file not found: {source}"
        raise CollectionNotFound(message) from exc
    except OSError as exc:
        message = f"cannot read index file {source}: {exc}"
        raise IOFailure(message) from exc
    return deserialize(data)


def read_header(path: str | Path) -> dict[str, Any]:
    """Return the header of an index file without reading its sections."""
    source = Path(path)
    try:
        with source.open("rb") as stream:
            preamble = stream.read(_PREAMBLE.size)
            header_len = _check_preamble(preamble)
            raw = stream.read(header_len)
    except FileNotFoundError as exc:
        message = f"index file not found: {source}"
        raise CollectionNotFound(message) from exc
    except OSError as exc:
        message = f"cannot read index file {source}: {exc}"
        raise IOFailure(message) from exc
    return _parse_header(raw, header_len)


def exists(path: str | Path) -> bool:
    """Return ``True`` if an index file is present at ``path``."""
    return Path(path).is_file()


def delete(path: str | Path) -> bool:
    """Remove the index file, returning ``False`` if it was already absent."""
    try:
        Path(path).unlink()
    except FileNotFoundError:
        return False
    except OSError as exc:
        message = f"cannot delete index file {path}: {exc}"
        raise IOFailure(message) from exc
    return True


def serialize(store: IndexStore, *, database: str = "", collection: str = "") -> bytes:
    """Encode ``store`` into the index file format."""
    records = b"".join(_length_prefixed(store))
    ivf = store.ivf if store.state is StoreState.CLEAN else None
    aux_parts: list[bytes] = []
    sections: dict[str, int] = {"records": len(records)}
    if ivf is not None:
        aux_parts.append(np.ascontiguousarray(ivf.centroids, dtype="<f4").tobytes())
        aux_parts.append(np.ascontiguousarray(ivf.assignments, dtype="<i4").tobytes())
        sections["centroids"] = len(aux_parts[0])
        sections["assignments"] = len(aux_parts[1])
        if store.kind is IndexKind.IVF_PQ and ivf.pq_codebook is not None and ivf.codes is not None:
            aux_parts.append(np.ascontiguousarray(ivf.pq_codebook, dtype="<f4").tobytes())
            aux_parts.append(np.ascontiguousarray(ivf.codes, dtype="u1").tobytes())
            sections["pq_codebook"] = len(aux_parts[2])
            sections["codes"] = len(aux_parts[3])
            sections["code_size"] = int(ivf.codes.shape[1]) if ivf.codes.ndim == 2 else 0
    header = {
        "database": database,
        "collection": collection,
        "dimension": store.dimension,
        "metric": store.metric.value,
        "kind": store.kind.value,
        "params": store.params.model_dump(),
        "count": len(store),
        "state": store.state.value,
        "removed_since_training": store.removed_since_training,
        "sections": sections,
    }
    header_bytes = json.dumps(header, sort_keys=True, separators=(",", ":")).encode("utf-8")
    body = b"".join(
        [
            _PREAMBLE.pack(MAGIC, FORMAT_VERSION, len(header_bytes)),
            header_bytes,
            records,
            *aux_parts,
        ],
    )
    return body + hashlib.sha256(body).digest()


def deserialize(data: bytes) -> IndexStore:
    """Decode bytes produced by :func:`serialize`."""
    if len(data) < _PREAMBLE.size + _DIGEST_SIZE:
        message = "index file is too short"
        raise CorruptFile(message)
    header_len = _check_preamble(data[: _PREAMBLE.size])
    body, digest = data[:-_DIGEST_SIZE], data[-_DIGEST_SIZE:]
    if hashlib.sha256(body).digest() != digest:
        message = "index file checksum mismatch"
        raise CorruptFile(message)
    header_end = _PREAMBLE.size + header_len
    header = _parse_header(body[_PREAMBLE.size : header_end], header_len)
    try:
        return _build_store(header, memoryview(body)[header_end:])
    except (InvalidParameters, DimensionMismatch, KeyError, TypeError, ValueError) as exc:
        message = f"index file is inconsistent: {exc}"
        raise CorruptFile(message) from exc


def _check_preamble(preamble: bytes) -> int:
    if len(preamble) != _PREAMBLE.size:
        message = "index file header is truncated"
        raise CorruptFile(message)
    magic, version, header_len = _PREAMBLE.unpack(preamble)
    if magic != MAGIC:
        message = "index file has an unknown signature"
        raise CorruptFile(message)
    if version > FORMAT_VERSION:
        raise UnsupportedVersion(version, FORMAT_VERSION)
    if version < 1:
        message = f"index file declares invalid version {version}"
        raise CorruptFile(message)
    return int(header_len)


def _parse_header(raw: bytes, header_len: int) -> dict[str, Any]:
    if len(raw) != header_len:
        message = "index file header is truncated"
        raise CorruptFile(message)
    try:
        header = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        message = "index file header is not valid JSON"
        raise CorruptFile(message) from exc
    if not isinstance(header, dict):
        message = "index file header is not a JSON object"
        raise CorruptFile(message)
    return header


def _build_store(header: dict[str, Any], payload: memoryview) -> IndexStore:
    store = IndexStore.create(
        int(header["dimension"]),
        header["metric"],
        header["kind"],
        header["params"],
    )
    sections: dict[str, int] = header["sections"]
    count = int(header["count"])
    state = StoreState(header["state"])

    offset = 0
    records_len = int(sections["records"])
    records_view = payload[offset : offset + records_len]
    offset += records_len
    records = list(_iter_records(records_view))
    if len(records) != count:
        message = f"header declares {count} records, found {len(records)}"
        raise CorruptFile(message)

    ivf: IvfStructure | None = None
    if "centroids" in sections:
        centroids, offset = _read_array(payload, offset, sections["centroids"], "<f4")
        assignments, offset = _read_array(payload, offset, sections["assignments"], "<i4")
        ivf = IvfStructure(
            centroids=centroids.reshape(-1, store.dimension).astype("float32"),
            assignments=assignments.astype("int32"),
        )
        if "pq_codebook" in sections:
            codebook, offset = _read_array(payload, offset, sections["pq_codebook"], "<f4")
            codes, offset = _read_array(payload, offset, sections["codes"], "u1")
            ivf.pq_codebook = codebook.astype("float32")
            ivf.codes = codes.reshape(count, int(sections["code_size"])).copy()
    if offset != len(payload):
        message = "index file has trailing or missing section bytes"
        raise CorruptFile(message)
    if state is StoreState.CLEAN and store.kind.is_ivf and ivf is None:
        message = "clean IVF index file has no cluster data"
        raise CorruptFile(message)
    removed = int(header.get("removed_since_training", 0))
    return store.restore(records, state, ivf, removed_since_training=removed)


def _iter_records(view: memoryview) -> Iterator[tuple[str, np.ndarray, dict[str, MetadataValue]]]:
    offset = 0
    while offset < len(view):
        if offset + _U32.size > len(view):
            message = "record section is truncated"
            raise CorruptFile(message)
        (size,) = _U32.unpack_from(view, offset)
        offset += _U32.size
        chunk = bytes(view[offset : offset + size])
        if len(chunk) != size:
            message = "record section is truncated"
            raise CorruptFile(message)
        offset += size
        yield decode_parts(chunk)


def _read_array(payload: memoryview, offset: int, length: int, dtype: str) -> tuple[np.ndarray, int]:
    end = offset + int(length)
    if end > len(payload):
        message = "aux section is truncated"
        raise CorruptFile(message)
    array = np.frombuffer(payload[offset:end], dtype=dtype).copy()
    return array, end


def _length_prefixed(store: IndexStore) -> Iterator[bytes]:
    for record_id, vector, metadata in zip(store.ids, store.vectors, store.metadata, strict=True):
        encoded = encode_parts(record_id, vector, metadata)
        yield _U32.pack(len(encoded))
        yield encoded


def _fsync_directory(directory: Path) -> None:
    if os.name == "nt":
        return
    fd = os.open(directory, os.O_RDONLY | getattr(os, "O_DIRECTORY", 0))
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def _remove_quietly(path: Path) -> None:
    with contextlib.suppress(OSError):
        path.unlink()
