"""Deterministic binary codec for vector records and their metadata."""

from __future__ import annotations

import hashlib
import json
import math
import struct
from typing import TYPE_CHECKING, Any

import numpy as np

from faiss_vdb.errors import CorruptFile, InvalidParameters, UnsupportedMetadataType
from faiss_vdb.models import SearchHit, VectorRecord

if TYPE_CHECKING:
    from collections.abc import Mapping

_ID_LEN = struct.Struct("<H")
_U32 = struct.Struct("<I")
_VECTOR_DTYPE = np.dtype("<f4")
_MAX_ID_BYTES = 0xFFFF

MetadataValue = str | int | float | bool


def validate_metadata(metadata: Mapping[str, Any] | None) -> dict[str, MetadataValue]:
    """Return a copy of ``metadata`` restricted to the supported scalar types.

    Strings, integers, floats and booleans are accepted. ``None``, containers,
    bytes and non-finite floats raise :class:`UnsupportedMetadataType`.
    """
    if metadata is None:
        return {}
    validated: dict[str, MetadataValue] = {}
    for key, value in metadata.items():
        if not isinstance(key, str):
            message = f"metadata keys must be strings, received {type(key).__name__}"
            raise UnsupportedMetadataType(message)
        if isinstance(value, bool | str | int):
            validated[key] = value
        elif isinstance(value, float):
            if not math.isfinite(value):
                message = f"metadata field {key!r} holds a non-finite float"
                raise UnsupportedMetadataType(message)
            validated[key] = value
        else:
            message = f"metadata field {key!r} has unsupported type {type(value).__name__}"
            raise UnsupportedMetadataType(message)
    return validated


def encode_metadata(metadata: Mapping[str, MetadataValue]) -> bytes:
    """Encode metadata as canonical JSON."""
    return json.dumps(
        dict(metadata),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    ).encode("utf-8")


def decode_metadata(payload: bytes) -> dict[str, MetadataValue]:
    """Decode canonical JSON metadata."""
    try:
        data = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        message = "metadata payload is not valid JSON"
        raise CorruptFile(message) from exc
    if not isinstance(data, dict):
        message = "metadata payload is not a JSON object"
        raise CorruptFile(message)
    try:
        return validate_metadata(data)
    except UnsupportedMetadataType as exc:
        raise CorruptFile(str(exc)) from exc


def encode_parts(record_id: str, vector: np.ndarray, metadata: Mapping[str, MetadataValue]) -> bytes:
    """Encode one record from its raw parts."""
    id_bytes = record_id.encode("utf-8")
    if len(id_bytes) > _MAX_ID_BYTES:
        message = f"record id exceeds {_MAX_ID_BYTES} bytes"
        raise InvalidParameters(message)
    vector_bytes = np.ascontiguousarray(vector, dtype=_VECTOR_DTYPE).tobytes()
    meta_bytes = encode_metadata(metadata)
    return b"".join(
        [
            _ID_LEN.pack(len(id_bytes)),
            id_bytes,
            _U32.pack(len(vector_bytes) // _VECTOR_DTYPE.itemsize),
            vector_bytes,
            _U32.pack(len(meta_bytes)),
            meta_bytes,
        ],
    )


def decode_parts(payload: bytes) -> tuple[str, np.ndarray, dict[str, MetadataValue]]:
    """Decode one record into ``(id, float32 vector, metadata)``."""
    view = memoryview(payload)
    try:
        (id_len,) = _ID_LEN.unpack_from(view, 0)
        offset = _ID_LEN.size
        record_id = bytes(view[offset : offset + id_len]).decode("utf-8")
        offset += id_len
        (dim,) = _U32.unpack_from(view, offset)
        offset += _U32.size
        vector_len = dim * _VECTOR_DTYPE.itemsize
        vector = np.frombuffer(view[offset : offset + vector_len], dtype=_VECTOR_DTYPE).astype("float32")
        if vector.shape[0] != dim:
            message = "record vector is truncated"
            raise CorruptFile(message)
        offset += vector_len
        (meta_len,) = _U32.unpack_from(view, offset)
        offset += _U32.size
        meta_bytes = bytes(view[offset : offset + meta_len])
    except (struct.error, UnicodeDecodeError, ValueError) as exc:
        message = "record payload is truncated or malformed"
        raise CorruptFile(message) from exc
    if len(meta_bytes) != meta_len or offset + meta_len != len(payload):
        message = "record payload length is inconsistent"
        raise CorruptFile(message)
    return record_id, vector, decode_metadata(meta_bytes)


def encode_record(record: VectorRecord) -> bytes:
    """Encode ``record`` deterministically."""
    metadata = validate_metadata(record.metadata)
    return encode_parts(record.id, np.asarray(record.vector, dtype="float32"), metadata)


def decode_record(payload: bytes) -> VectorRecord:
    """Decode bytes produced by :func:`encode_record`."""
    record_id, vector, metadata = decode_parts(payload)
    return VectorRecord(id=record_id, vector=[float(value) for value in vector], metadata=metadata)


def record_digest(record: VectorRecord) -> str:
    """Return the SHA-256 hex digest of the encoded record."""
    return hashlib.sha256(encode_record(record)).hexdigest()


def to_hit(
    record_id: str,
    metadata: Mapping[str, MetadataValue],
    distance: float | None = None,
    vector: np.ndarray | None = None,
) -> SearchHit:
    """Build the search-result representation of a stored record."""
    return SearchHit(
        id=record_id,
        distance=distance,
        metadata=dict(metadata),
        vector=[float(value) for value in vector] if vector is not None else None,
    )
