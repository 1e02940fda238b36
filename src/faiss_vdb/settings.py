"""Engine settings loaded from environment variables."""

from __future__ import annotations

import os
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

from faiss_vdb.errors import ConfigurationError
from faiss_vdb.models import IndexKind, IndexParams, Metric


class Settings(BaseSettings):
    """Configuration object for the vector index engine."""

    model_config = SettingsConfigDict(env_prefix="VDB_", env_file=".env", extra="allow")

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    # Backends (Factory keys)
    provider_backend: str = "faiss"

    # Storage
    index_path: Path | None = Path(".vdbdata/indexes")
    default_database: str = "default"

    # Index defaults for new collections
    index_kind: IndexKind = IndexKind.FLAT
    metric: Metric = Metric.L2
    nlist: int = 100
    nprobe: int = 8
    pq_m: int | None = None
    pq_nbits: int = 8
    train_size: int = 0

    # Persistence: share of trained records deleted before a retrain, None disables
    rebuild_dirty_fraction: float | None = 0.2

    def index_params(self) -> IndexParams:
        """Return the default index parameters for new collections."""
        return IndexParams(
            nlist=self.nlist,
            nprobe=self.nprobe,
            pq_m=self.pq_m,
            pq_nbits=self.pq_nbits,
            train_size=self.train_size,
        )


def validate_settings(settings: Settings) -> Path:
    """Check that the index path is usable and return it.

    The directory is created when missing. Raises :class:`ConfigurationError`
    when the path is unset, is not a directory, or is not writable.
    """
    if settings.index_path is None or not str(settings.index_path).strip():
        message = "index path is not configured"
        raise ConfigurationError(message)
    index_path = Path(settings.index_path)
    try:
        index_path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        message = f"index path {index_path} cannot be created: {exc}"
        raise ConfigurationError(message) from exc
    if not index_path.is_dir():
        message = f"index path {index_path} is not a directory"
        raise ConfigurationError(message)
    if not os.access(index_path, os.W_OK):
        message = f"index path {index_path} is not writable"
        raise ConfigurationError(message)
    if settings.nlist <= 0:
        message = f"nlist must be positive, received {settings.nlist}"
        raise ConfigurationError(message)
    fraction = settings.rebuild_dirty_fraction
    if fraction is not None and not 0.0 <= fraction <= 1.0:
        message = f"rebuild_dirty_fraction must lie in [0, 1], received {fraction}"
        raise ConfigurationError(message)
    return index_path
