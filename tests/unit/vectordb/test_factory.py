"""Tests for the vector provider factory."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from faiss_vdb.settings import Settings
from faiss_vdb.vectordb.factory import create_provider
from faiss_vdb.vectordb.faiss_provider import FaissProvider
from faiss_vdb.vectordb.manager import CollectionManager

if TYPE_CHECKING:
    from pathlib import Path


def test_create_provider_returns_faiss(tmp_path: Path) -> None:
    """The factory instantiates the FAISS provider when requested."""
    manager = CollectionManager(tmp_path)
    provider = create_provider("faiss", Settings(index_path=tmp_path), manager)

    assert isinstance(provider, FaissProvider)
    assert provider.manager is manager


def test_create_provider_rejects_unknown_backend(tmp_path: Path) -> None:
    """Unknown backends raise a ValueError."""
    with pytest.raises(ValueError, match="unknown vector backend"):
        create_provider("bogus", Settings(index_path=tmp_path), CollectionManager(tmp_path))
