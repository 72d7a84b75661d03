"""Exception taxonomy for offset resolution."""

from __future__ import annotations


class OffsetError(Exception):
    """Base class for every error raised by revoffsets."""


# -- Image loading: fatal for the whole run --


class ImageLoadError(OffsetError):
    pass


class ImageNotFound(ImageLoadError):
    pass


class UnsupportedFormat(ImageLoadError):
    pass


class AccessDenied(ImageLoadError):
    pass


# -- Per-read failures: scoped to one unit of work --


class ImageReadError(OffsetError):
    def __init__(self, message: str, address: int | None = None) -> None:
        super().__init__(message)
        self.address = address


class OutOfBounds(ImageReadError):
    pass


class UnreadableMemory(ImageReadError):
    pass


class Timeout(ImageReadError):
    pass


# -- Everything else --


class AmbiguousResolution(OffsetError):
    """Informational: several candidates tied for a target."""

    def __init__(self, target: str, addresses: tuple[int, ...]) -> None:
        listed = ", ".join(hex(a) for a in addresses)
        super().__init__(f"{target}: {len(addresses)} equally ranked candidates ({listed})")
        self.target = target
        self.addresses = addresses


class SchemaVersionMismatch(OffsetError):
    def __init__(self, old: str, new: str) -> None:
        super().__init__(f"cannot diff snapshots with schema versions {old!r} and {new!r}")
        self.old = old
        self.new = new


class ConfigError(OffsetError):
    """A configuration file is missing, unparsable or invalid."""


class CatalogError(OffsetError):
    pass


class PipelineCancelled(OffsetError):
    pass


class SnapshotFormatError(OffsetError):
    """A snapshot document is missing required keys or holds malformed values."""
