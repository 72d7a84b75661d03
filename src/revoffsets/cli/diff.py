"""revoffsets diff — compare two snapshots."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer


def diff_cmd(
    old: Path = typer.Argument(..., help="Older offsets.json"),
    new: Path = typer.Argument(..., help="Newer offsets.json"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the diff report as JSON"),
    epsilon: Optional[float] = typer.Option(None, "--epsilon", help="Confidence change treated as noise"),
    show_all: bool = typer.Option(False, "--all", help="Also list unchanged functions"),
) -> None:
    """Report added, removed and changed offsets between two snapshots."""
    from revoffsets.cli.app import get_context
    from revoffsets.errors import SchemaVersionMismatch, SnapshotFormatError
    from revoffsets.snapshot.differ import diff
    from revoffsets.snapshot.store import load_snapshot
    from revoffsets.utils.formatters import (
        console,
        format_address,
        format_confidence,
        print_error,
        print_success,
        print_table,
    )

    cfg = get_context().ensure_config()
    for path in (old, new):
        if not path.is_file():
            print_error(f"File not found: {path}")
            raise typer.Exit(1)

    try:
        report = diff(
            load_snapshot(old),
            load_snapshot(new),
            epsilon=cfg.diff.confidence_epsilon if epsilon is None else epsilon,
        )
    except (SchemaVersionMismatch, SnapshotFormatError) as exc:
        print_error(str(exc))
        raise typer.Exit(1)

    changes = report.functions if show_all else report.changes()
    print_table(
        [
            {
                "function": c.name,
                "status": c.status,
                "old": format_address(c.old_address),
                "new": format_address(c.new_address),
                "old conf": format_confidence(c.old_confidence),
                "new conf": format_confidence(c.new_confidence),
                "Δconf": f"{c.confidence_delta:+.3f}",
            }
            for c in changes
        ],
        title="Function changes",
    )
    structure_changes = report.structure_changes()
    if structure_changes:
        print_table(
            [
                {
                    "structure": c.structure,
                    "field": c.field,
                    "status": c.status,
                    "old": "-" if c.old_offset is None else hex(c.old_offset),
                    "new": "-" if c.new_offset is None else hex(c.new_offset),
                }
                for c in structure_changes
            ],
            title="Structure changes",
        )

    summary = report.summary()
    console.print(", ".join(f"{key}={value}" for key, value in summary.items()))

    if output:
        output.write_text(json.dumps(report.to_dict(), indent=2, sort_keys=True) + "\n")
        print_success(f"Diff written to {output}")
