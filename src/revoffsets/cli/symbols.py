"""revoffsets symbols — dump the symbol table of a binary."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer


def symbols_cmd(
    binary: Path = typer.Argument(..., help="Path to an ARM64 Mach-O binary"),
    match: Optional[str] = typer.Option(None, "--match", "-m", help="Only names containing this text"),
    limit: int = typer.Option(100, "--limit", "-n", help="Maximum rows to print (0 = all)"),
    demangle: bool = typer.Option(True, "--demangle/--no-demangle", help="Demangle C++ symbols with c++filt"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON instead of a table"),
) -> None:
    """List defined and inferred symbols, ordered by address."""
    from revoffsets.errors import ImageLoadError
    from revoffsets.image.accessor import open_file
    from revoffsets.symbols.demangle import NullDemangler, default_demangler
    from revoffsets.symbols.reader import load_symbols
    from revoffsets.utils.formatters import console, format_address, print_error, print_json, print_table

    try:
        image = open_file(binary)
    except ImageLoadError as exc:
        print_error(str(exc))
        raise typer.Exit(1)

    symbols = load_symbols(image, default_demangler() if demangle else NullDemangler())
    if match:
        symbols = tuple(s for s in symbols if match in s.name or match in s.demangled)
    shown = symbols if limit <= 0 else symbols[:limit]

    rows = [
        {
            "address": format_address(s.address),
            "name": s.demangled,
            "kind": s.kind,
            "source": s.source,
        }
        for s in shown
    ]
    if as_json:
        print_json(rows)
        return
    print_table(rows, title=f"Symbols: {image.name}")
    if len(shown) < len(symbols):
        console.print(f"[dim]{len(symbols) - len(shown)} more not shown[/dim]")
