"""Top-level package for the faiss-vdb vector index engine."""

from importlib import metadata

__all__ = ["__version__"]

try:
    __version__ = metadata.version("faiss-vdb")
except metadata.PackageNotFoundError:  # pragma: no cover - fallback for editable installs
    __version__ = "0.1.0"
