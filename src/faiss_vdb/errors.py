"""Exception hierarchy raised by the vector index engine."""

from __future__ import annotations


class VdbError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(VdbError):
    """The engine configuration is missing or unusable."""


class InvalidParameters(VdbError, ValueError):
    """Arguments are inconsistent with the collection or index kind."""


class DimensionMismatch(VdbError, ValueError):
    """A vector does not have the collection dimension."""

    def __init__(self, expected: int, received: int, record_id: str | None = None) -> None:
        """Record the expected and received dimensions."""
        self.expected = expected
        self.received = received
        self.record_id = record_id
        subject = f"record {record_id!r}" if record_id is not None else "vector"
        super().__init__(f"{subject} dimension mismatch: expected {expected}, received {received}")


class UnsupportedMetadataType(VdbError, ValueError):
    """Metadata holds a value outside the supported scalar types."""


class InvalidFilterSyntax(VdbError, ValueError):
    """A filter expression could not be parsed."""

    def __init__(self, message: str, expression: str, position: int) -> None:
        """Capture the failing expression and the offending offset."""
        self.expression = expression
        self.position = position
        super().__init__(f"{message} at offset {position} in filter {expression!r}")


class CollectionAlreadyExists(VdbError):
    """A collection with the same database and name already exists."""


class CollectionNotFound(VdbError):
    """The requested collection has no backing index file."""


class CorruptFile(VdbError):
    """An index file failed structural or checksum validation."""


class UnsupportedVersion(VdbError):
    """An index file was written by a newer format version."""

    def __init__(self, found: int, supported: int) -> None:
        """Record the file version and the highest supported version."""
        self.found = found
        self.supported = supported
        super().__init__(f"index format version {found} is newer than supported version {supported}")


class IOFailure(VdbError, OSError):
    """Reading or writing an index file failed at the operating system level."""
