"""revoffsets — offset resolution for ARM64 Mach-O binaries."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from revoffsets.version import __version__

if TYPE_CHECKING:
    from revoffsets.catalog.models import Catalog
    from revoffsets.config.models import OffsetsConfig


@dataclass
class RevOffsetsContext:
    """Dependency-injection container shared across CLI commands."""

    config: OffsetsConfig | None = None
    catalog: Catalog | None = None
    catalog_override: str | None = None

    def ensure_config(self) -> OffsetsConfig:
        if self.config is None:
            from revoffsets.config.loader import load_config

            self.config = load_config()
        return self.config

    def ensure_catalog(self) -> Catalog:
        if self.catalog is None:
            from revoffsets.catalog.loader import load_catalog

            cfg = self.ensure_config()
            self.catalog = load_catalog(self.catalog_override or cfg.catalog_path)
        return self.catalog


__all__ = ["RevOffsetsContext", "__version__"]
