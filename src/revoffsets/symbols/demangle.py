"""Best-effort symbol demangling."""

from __future__ import annotations

import shutil
import subprocess
from typing import Protocol, Sequence

from revoffsets.utils.logging import get_logger

log = get_logger(__name__)

_CXXFILT_CANDIDATES = ("c++filt", "llvm-cxxfilt")


class Demangler(Protocol):
    def demangle_all(self, names: Sequence[str]) -> list[str]: ...


def strip_c_prefix(name: str) -> str:
    """Mach-O prefixes C-level names with one underscore; drop it."""
    return name[1:] if name.startswith("_") else name


def is_itanium(name: str) -> bool:
    return name.startswith("_Z")


class NullDemangler:
    """Strips the Mach-O underscore and leaves everything else untouched."""

    def demangle_all(self, names: Sequence[str]) -> list[str]:
        return [strip_c_prefix(n) for n in names]


class CxxFiltDemangler:
    """Batch-demangles Itanium names through a ``c++filt`` subprocess.

    Any failure (tool missing, timeout, garbled output) falls back to the
    stripped raw names.
    """

    def __init__(self, executable: str | None = None, timeout: float = 10.0) -> None:
        self.executable = executable or _find_cxxfilt()
        self.timeout = timeout

    def demangle_all(self, names: Sequence[str]) -> list[str]:
        stripped = [strip_c_prefix(n) for n in names]
        mangled = [n for n in dict.fromkeys(stripped) if is_itanium(n)]
        if not mangled or self.executable is None:
            return stripped

        try:
            proc = subprocess.run(
                # -n: Apple and LLVM builds strip a leading underscore by default
                [self.executable, "-n"],
                input="\n".join(mangled) + "\n",
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=True,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            log.warning("demangle_failed", tool=self.executable, error=str(exc))
            return stripped

        lines = proc.stdout.splitlines()
        if len(lines) != len(mangled):
            log.warning("demangle_output_mismatch", expected=len(mangled), got=len(lines))
            return stripped

        table = {m: d.strip() or m for m, d in zip(mangled, lines)}
        return [table.get(n, n) for n in stripped]


def _find_cxxfilt() -> str | None:
    for candidate in _CXXFILT_CANDIDATES:
        path = shutil.which(candidate)
        if path:
            return path
    return None


def default_demangler() -> Demangler:
    demangler = CxxFiltDemangler()
    if demangler.executable is None:
        log.debug("cxxfilt_unavailable")
        return NullDemangler()
    return demangler
