"""Catalog loading and conversion into scanner rules."""

from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import ValidationError

from revoffsets.catalog.models import Catalog
from revoffsets.errors import CatalogError
from revoffsets.scanning.pattern import PatternRule, parse_pattern
from revoffsets.utils.logging import get_logger

log = get_logger(__name__)

DEFAULT_CATALOG = Path(__file__).with_name("default_catalog.yaml")


def load_catalog(path: str | Path | None = None) -> Catalog:
    """Load a catalog file, or the bundled default catalog when *path* is None."""
    if path is None:
        text = DEFAULT_CATALOG.read_text()
        source = DEFAULT_CATALOG.name
    else:
        p = Path(path)
        if not p.is_file():
            raise CatalogError(f"catalog not found: {p}")
        text = p.read_text()
        source = str(p)

    try:
        raw = yaml.safe_load(text) or {}
        catalog = Catalog.model_validate(raw)
    except (yaml.YAMLError, ValidationError) as exc:
        raise CatalogError(f"invalid catalog {source}: {exc}") from exc

    # Surface malformed patterns at load time rather than mid-scan
    build_rules(catalog)
    log.debug(
        "catalog_loaded",
        source=source,
        targets=len(catalog.targets),
        structures=len(catalog.structures),
    )
    return catalog


def build_rules(catalog: Catalog) -> list[PatternRule]:
    """Expand every target pattern into a PatternRule with a stable id."""
    rules: list[PatternRule] = []
    for target in catalog.targets:
        for index, spec in enumerate(target.patterns):
            rules.append(
                PatternRule(
                    rule_id=f"{target.name}#{index}",
                    target=target.name,
                    tokens=parse_pattern(spec.pattern),
                    region=spec.region or target.region,
                    alignment=spec.alignment or target.alignment,
                )
            )
    return rules
