"""revoffsets scan — search a binary for one byte pattern."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer


def scan_cmd(
    binary: Path = typer.Argument(..., help="Path to an ARM64 Mach-O binary"),
    pattern: str = typer.Argument(..., help='Hex bytes with ?? wildcards, e.g. "FD 7B ?? A9"'),
    region: Optional[str] = typer.Option(None, "--region", "-r", help='Segment or "SEG,sect" (default: code sections)'),
    alignment: int = typer.Option(1, "--alignment", "-a", min=1, help="Required address alignment"),
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum matches to print (0 = all)"),
) -> None:
    """Print every address where PATTERN matches."""
    from revoffsets.cli.app import get_context
    from revoffsets.errors import CatalogError, ImageLoadError
    from revoffsets.image.accessor import open_file
    from revoffsets.scanning.pattern import PatternRule, parse_pattern
    from revoffsets.scanning.scanner import scan_regions
    from revoffsets.utils.formatters import console, print_error, print_table, print_warning

    cfg = get_context().ensure_config()
    try:
        tokens = parse_pattern(pattern)
        image = open_file(binary)
    except (CatalogError, ImageLoadError) as exc:
        print_error(str(exc))
        raise typer.Exit(1)

    if region:
        resolved = image.resolve_region(region)
        if resolved is None:
            print_error(f"No segment or section named {region!r}")
            raise typer.Exit(1)
        regions = (resolved,)
    else:
        regions = image.code_regions()

    rule = PatternRule("cli#0", "cli", tokens, alignment=alignment)
    result = scan_regions(
        image,
        regions,
        [rule],
        workers=1,
        chunk_size=cfg.scanner.chunk_size,
        skip_search=cfg.scanner.use_skip_search,
    )
    for error in result.errors.values():
        print_warning(str(error))

    hits = result.matches[rule.rule_id]
    shown = hits if limit <= 0 else hits[:limit]
    print_table(
        [{"address": f"0x{h.address:x}", "region": _region_name(image, h.address)} for h in shown],
        title=f"{len(hits)} match(es), specificity {rule.specificity:.2f}",
    )
    if len(shown) < len(hits):
        console.print(f"[dim]{len(hits) - len(shown)} more not shown[/dim]")


def _region_name(image, address: int) -> str:
    seg = image.segment_for(address)
    if seg is None:
        return ""
    for sect in seg.sections:
        if sect.addr <= address < sect.end:
            return f"{seg.name},{sect.name}"
    return seg.name
