"""Rich progress display for pipeline stages."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Callable, Generator, Sequence

from rich.console import Console
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)


def create_progress(console: Console | None = None) -> Progress:
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    )


@contextmanager
def stage_progress(
    description: str,
    stages: Sequence[str],
    console: Console | None = None,
) -> Generator[Callable[[str], None], None, None]:
    """Yield a callback that marks the named stage as started.

    Entering a stage completes the previous one; leaving the block completes
    the last.
    """
    progress = create_progress(console)
    with progress:
        task_id = progress.add_task(description, total=len(stages))
        started: list[str] = []

        def on_stage(name: str) -> None:
            if started:
                progress.advance(task_id)
            started.append(name)
            progress.update(task_id, description=f"{description}: {name}")

        yield on_stage
        progress.update(task_id, completed=len(stages))
