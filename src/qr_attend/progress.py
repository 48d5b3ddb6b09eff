"""Terminal progress sink and result table for pipeline runs."""

from __future__ import annotations

import os
import sys
from typing import Optional

from rich.console import Console
from rich.progress import Progress, ProgressColumn, TaskID, TextColumn, TimeElapsedColumn
from rich.table import Column, Table
from rich.text import Text

from .models import BatchReport, ProgressSnapshot
from .utils.logger import progress as log_progress


class BlockBarColumn(ProgressColumn):
    """Square-filled bar column compatible with Rich caching."""

    def __init__(
        self,
        width: int = 28,
        *,
        border_style: str = "blue",
        fill_style: str = "bright_blue",
        finished_style: str = "bright_green",
        empty_style: str = "dim white",
    ) -> None:
        super().__init__()
        self.width = max(width, 1)
        self.border_style = border_style
        self.fill_style = fill_style
        self.finished_style = finished_style
        self.empty_style = empty_style
        self._table_column = Column(no_wrap=True, justify="left")

    def get_table_column(self) -> Column:  # type: ignore[override]
        return self._table_column

    def render(self, task) -> Text:  # type: ignore[override]
        if not task.total:
            ratio = 0.0
        else:
            ratio = min(max(task.completed / task.total, 0.0), 1.0)
        filled = int(self.width * ratio)
        text = Text("╭", style=self.border_style)
        if filled:
            text.append("█" * filled, style=self.finished_style if task.finished else self.fill_style)
        if self.width - filled:
            text.append("░" * (self.width - filled), style=self.empty_style)
        text.append("╮", style=self.border_style)
        return text


def block_bar(current: int, total: int, width: int = 28) -> str:
    total = max(total, 1)
    current = max(0, min(current, total))
    filled = int(width * current / total)
    return f"╭{'█' * filled}{'░' * (width - filled)}╮"


class ProgressDisplay:
    """Callable progress sink: a Rich bar on a TTY, log lines otherwise."""

    def __init__(self, total: int, *, label: str = "Marking attendance", console: Optional[Console] = None):
        self.total = total
        self.label = label
        self.console = console or Console()
        rich_flag = os.getenv("CLI_PROGRESS_RICH")
        self.use_rich = sys.stdout.isatty() and (rich_flag is None or rich_flag.lower() not in {"0", "false"})
        self._progress: Optional[Progress] = None
        self._task_id: Optional[TaskID] = None
        self.completed = 0

    def __enter__(self) -> "ProgressDisplay":
        if self.use_rich:
            self._progress = Progress(
                TextColumn("[bold blue]{task.description}"),
                BlockBarColumn(),
                TextColumn("[bold]{task.percentage:>3.0f}%"),
                TextColumn("[dim]{task.completed}/{task.total}[/]"),
                TextColumn("[dim]{task.fields[status]}[/]"),
                TimeElapsedColumn(),
                console=self.console,
                transient=True,
            )
            self._progress.start()
            self._task_id = self._progress.add_task(self.label, total=max(self.total, 1), status="")
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._progress is not None:
            self._progress.stop()
            self._progress = None
            self._task_id = None

    def __call__(self, snapshot: ProgressSnapshot) -> None:
        # Snapshots may arrive out of input order; only the count is monotonic.
        self.completed = max(self.completed, snapshot.completed)
        result = snapshot.last_result
        status = f"{result.user.display_name}: {result.status_label}"
        if self._progress is not None and self._task_id is not None:
            self._progress.update(self._task_id, completed=self.completed, status=status)
            return
        percentage = int(self.completed * 100 / max(snapshot.total, 1))
        log_progress(
            f"{block_bar(self.completed, snapshot.total)} {percentage:>3}% "
            f"({self.completed}/{snapshot.total}) {status}"
        )


def render_report(report: BatchReport, console: Optional[Console] = None) -> None:
    """Print one row per user followed by the totals."""
    console = console or Console()
    table = Table(
        Column(header="#", justify="right", style="blue"),
        Column(header="User", style="bold"),
        Column(header="ID"),
        Column(header="Status"),
        Column(header="Tries", justify="center", style="bright_blue"),
        box=None,
        show_header=True,
        header_style="bold blue",
        expand=False,
    )
    for index, result in enumerate(report.results, 1):
        style = "green" if result.ok else "red"
        mark = "✅" if result.ok else "❌"
        table.add_row(
            str(index),
            result.user.display_name,
            result.user.identifier,
            Text(f"{mark} {result.status_label}", style=style),
            str(result.attempts),
        )
    console.print()
    console.print(table)
    summary = f"{report.successful}/{report.total} marked present via {report.mode}"
    if report.fell_back:
        summary += " (batch endpoint unavailable)"
    if report.cancelled:
        summary += " [cancelled]"
    console.print(Text(summary, style="bold green" if report.failed == 0 else "bold yellow"))
    console.print()


__all__ = ["ProgressDisplay", "render_report", "block_bar"]
