"""revoffsets generate — resolve the catalog against one image and write offsets.json."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer


def generate_cmd(
    binary: Optional[Path] = typer.Argument(None, help="Path to an ARM64 Mach-O binary"),
    pid: Optional[int] = typer.Option(None, "--pid", "-p", help="Attach to a running process instead"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Snapshot path (default from config)"),
    catalog: Optional[Path] = typer.Option(None, "--catalog", help="Catalog YAML to use instead of the bundled one"),
    demangle: bool = typer.Option(True, "--demangle/--no-demangle", help="Demangle C++ symbols with c++filt"),
    show: bool = typer.Option(True, "--show/--no-show", help="Print the resolved offsets"),
) -> None:
    """Resolve function addresses and structure offsets into a snapshot."""
    from revoffsets.cli.app import get_context
    from revoffsets.errors import CatalogError, ImageLoadError, ImageReadError, PipelineCancelled
    from revoffsets.image.accessor import open_image
    from revoffsets.pipeline import STAGES, OffsetPipeline
    from revoffsets.snapshot.store import save_snapshot
    from revoffsets.symbols.demangle import NullDemangler, default_demangler
    from revoffsets.utils.formatters import (
        console,
        err_console,
        format_address,
        format_confidence,
        print_error,
        print_success,
        print_table,
        print_warning,
    )
    from revoffsets.utils.progress import stage_progress

    if (binary is None) == (pid is None):
        print_error("Give exactly one of BINARY or --pid.")
        raise typer.Exit(1)

    ctx = get_context()
    cfg = ctx.ensure_config()
    if catalog is not None:
        ctx.catalog_override = str(catalog)
        ctx.catalog = None

    try:
        cat = ctx.ensure_catalog()
        image = open_image(binary if binary is not None else pid, config=cfg)
    except (ImageLoadError, ImageReadError, CatalogError) as exc:
        print_error(str(exc))
        raise typer.Exit(1)

    demangler = default_demangler() if demangle else NullDemangler()
    try:
        with stage_progress(f"Resolving {image.name}", STAGES, console=err_console) as on_stage:
            result = OffsetPipeline(cfg, cat, demangler=demangler, on_stage=on_stage).run(image)
    except PipelineCancelled as exc:
        print_error(f"Cancelled: {exc}")
        raise typer.Exit(130)
    finally:
        close = getattr(image, "close", None)
        if close is not None:
            close()

    for issue in result.issues:
        print_warning(str(issue))

    snapshot = result.snapshot
    if show:
        print_table(
            [
                {
                    "function": r.name,
                    "address": format_address(r.address),
                    "confidence": format_confidence(r.confidence if r.resolved else None),
                    "method": r.method,
                    "candidates": r.candidates,
                    "ambiguous": "yes" if r.ambiguous else "",
                }
                for r in snapshot.records
            ],
            title=f"Functions: {image.name}",
        )
        structure_rows = [
            {
                "structure": struct,
                "field": name,
                "offset": hex(off.offset),
                "width": off.width,
                "confidence": format_confidence(off.confidence),
                "anchors": ", ".join(off.anchors),
            }
            for struct, fields in snapshot.primary_offsets().items()
            for name, off in fields.items()
        ]
        if structure_rows:
            print_table(structure_rows, title="Structure offsets")

    path = save_snapshot(snapshot, output or cfg.output.path, indent=cfg.output.indent)
    stats = snapshot.statistics
    console.print(
        f"{stats.resolved}/{stats.total} resolved, mean confidence {stats.mean_confidence:.3f}"
    )
    print_success(f"Snapshot written to {path}")
