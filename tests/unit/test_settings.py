"""Tests covering the engine settings model."""

from __future__ import annotations

from pathlib import Path

import pytest

from faiss_vdb.errors import ConfigurationError
from faiss_vdb.models import IndexKind, IndexParams, Metric
from faiss_vdb.settings import Settings, validate_settings


def test_settings_have_reasonable_defaults() -> None:
    """The settings object exposes the documented default values."""
    settings = Settings()

    assert settings.log_level == "INFO"
    assert settings.provider_backend == "faiss"
    assert settings.index_path == Path(".vdbdata/indexes")
    assert settings.index_kind is IndexKind.FLAT
    assert settings.metric is Metric.L2
    assert settings.rebuild_dirty_fraction == 0.2


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Environment variables prefixed with ``VDB_`` override defaults."""
    monkeypatch.setenv("VDB_LOG_LEVEL", "debug")
    monkeypatch.setenv("VDB_INDEX_PATH", str(tmp_path / "indexes"))
    monkeypatch.setenv("VDB_INDEX_KIND", "ivf_pq")
    monkeypatch.setenv("VDB_METRIC", "cosine")
    monkeypatch.setenv("VDB_NLIST", "16")

    settings = Settings()

    assert settings.log_level == "debug"
    assert settings.index_path == tmp_path / "indexes"
    assert settings.index_kind is IndexKind.IVF_PQ
    assert settings.metric is Metric.COSINE
    assert settings.nlist == 16


def test_index_params_reflect_settings() -> None:
    """Collection defaults are assembled from the individual settings."""
    settings = Settings(nlist=4, nprobe=2, pq_m=2, pq_nbits=4, train_size=32)

    assert settings.index_params() == IndexParams(nlist=4, nprobe=2, pq_m=2, pq_nbits=4, train_size=32)


def test_validate_settings_creates_index_directory(tmp_path: Path) -> None:
    """A missing index directory is created on validation."""
    target = tmp_path / "nested" / "indexes"
    settings = Settings(index_path=target)

    assert validate_settings(settings) == target
    assert target.is_dir()


def test_validate_settings_rejects_missing_path() -> None:
    """An unset index path is a configuration error."""
    with pytest.raises(ConfigurationError, match="not configured"):
        validate_settings(Settings(index_path=None))


def test_validate_settings_rejects_file_path(tmp_path: Path) -> None:
    """An index path pointing at a regular file is rejected."""
    target = tmp_path / "indexes"
    target.write_text("not a directory", encoding="utf-8")

    with pytest.raises(ConfigurationError):
        validate_settings(Settings(index_path=target))


def test_validate_settings_rejects_non_positive_nlist(tmp_path: Path) -> None:
    """IVF cluster counts must be positive."""
    with pytest.raises(ConfigurationError, match="nlist"):
        validate_settings(Settings(index_path=tmp_path, nlist=0))


@pytest.mark.parametrize("fraction", [-0.1, 1.5])
def test_validate_settings_rejects_out_of_range_rebuild_fraction(tmp_path: Path, fraction: float) -> None:
    """The rebuild threshold is a fraction of the trained records."""
    with pytest.raises(ConfigurationError, match="rebuild_dirty_fraction"):
        validate_settings(Settings(index_path=tmp_path, rebuild_dirty_fraction=fraction))


def test_rebuild_fraction_can_be_disabled(tmp_path: Path) -> None:
    """A missing threshold turns automatic rebuilds off and is accepted."""
    settings = Settings(index_path=tmp_path, rebuild_dirty_fraction=None)

    assert validate_settings(settings) == tmp_path
