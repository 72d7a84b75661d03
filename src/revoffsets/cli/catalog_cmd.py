"""revoffsets catalog — show the targets and structures that will be resolved."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer


def catalog_cmd(
    catalog: Optional[Path] = typer.Option(None, "--catalog", help="Catalog YAML (default: bundled catalog)"),
) -> None:
    """List catalog targets and structure fields."""
    from revoffsets.cli.app import get_context
    from revoffsets.errors import CatalogError
    from revoffsets.scanning.pattern import parse_pattern
    from revoffsets.utils.formatters import print_error, print_table

    ctx = get_context()
    if catalog is not None:
        ctx.catalog_override = str(catalog)
        ctx.catalog = None
    try:
        cat = ctx.ensure_catalog()
    except CatalogError as exc:
        print_error(str(exc))
        raise typer.Exit(1)

    rows = []
    for target in cat.targets:
        specificity = [
            sum(t is not None for t in tokens) / len(tokens)
            for tokens in (parse_pattern(p.pattern) for p in target.patterns)
        ]
        rows.append(
            {
                "target": target.name,
                "category": target.category,
                "symbols": ", ".join(target.symbol_names()),
                "patterns": len(target.patterns),
                "best specificity": f"{max(specificity):.2f}" if specificity else "-",
            }
        )
    print_table(rows, title=f"Targets (catalog v{cat.version})")

    fields = [
        {
            "structure": struct.name,
            "field": field.name,
            "role": field.role,
            "anchors": ", ".join(sorted({a.target for a in field.anchors})),
        }
        for struct in cat.structures
        for field in struct.fields
    ]
    if fields:
        print_table(fields, title="Structure fields")
