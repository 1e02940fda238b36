"""Dependency injection container for faiss-vdb."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, cast

from faiss_vdb.logger import configure, get_logger
from faiss_vdb.settings import Settings, validate_settings
from faiss_vdb.vectordb.factory import create_provider
from faiss_vdb.vectordb.manager import CollectionManager

if TYPE_CHECKING:  # pragma: no cover - typing only
    from structlog.stdlib import BoundLogger

    from faiss_vdb.vectordb.protocols import VdbProvider


@dataclass
class Container:
    """Aggregates configured engine services."""

    settings: Settings
    logger: BoundLogger
    manager: CollectionManager
    provider: VdbProvider


def build_container(settings: Settings | None = None) -> Container:
    """Build the dependency container using default settings."""
    resolved_settings = settings or Settings()
    logger = cast("BoundLogger", configure(resolved_settings.log_level, resolved_settings.log_json))
    index_path = validate_settings(resolved_settings)

    manager = CollectionManager(
        index_path,
        metric=resolved_settings.metric,
        kind=resolved_settings.index_kind,
        params=resolved_settings.index_params(),
        rebuild_dirty_fraction=resolved_settings.rebuild_dirty_fraction,
        logger=get_logger("manager"),
    )
    provider = create_provider(
        resolved_settings.provider_backend,
        resolved_settings,
        manager,
        logger=get_logger("provider"),
    )
    logger.info(
        "boot",
        provider=resolved_settings.provider_backend,
        index_path=str(index_path),
        index_kind=resolved_settings.index_kind.value,
    )
    return Container(
        settings=resolved_settings,
        logger=logger,
        manager=manager,
        provider=provider,
    )
