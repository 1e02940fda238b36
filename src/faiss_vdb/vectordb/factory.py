"""Factory helpers for vector database providers."""

from __future__ import annotations

from typing import TYPE_CHECKING

from faiss_vdb.vectordb.faiss_provider import FaissProvider

if TYPE_CHECKING:
    from structlog.stdlib import BoundLogger

    from faiss_vdb.settings import Settings
    from faiss_vdb.vectordb.manager import CollectionManager
    from faiss_vdb.vectordb.protocols import VdbProvider


def create_provider(
    backend: str,
    settings: Settings,
    manager: CollectionManager,
    logger: BoundLogger | None = None,
) -> VdbProvider:
    """Create the provider registered under ``backend``."""
    if backend == FaissProvider.name:
        provider: FaissProvider = FaissProvider(settings, manager, logger=logger)
        return provider
    message = f"unknown vector backend: {backend}"
    raise ValueError(message)
