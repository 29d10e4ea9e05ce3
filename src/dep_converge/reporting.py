"""
Reporting and output formatting for resolution results.

Provides color-coded console output using Rich library.
"""

import json
from typing import Any, Dict, List, Optional

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table
from rich.tree import Tree

from .convergence import ConflictReport
from .engine import ProjectResolution
from .graph import GraphNode
from .relocation import RelocationOutcome
from .resolver import OMITTED_FOR_CONFLICT, ResolutionResult


class ResolutionReporter:
    """Formats and displays resolution results."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console(emoji=False)

    def print_resolution(self, resolution: ProjectResolution, source: str) -> None:
        """
        Print the resolved classpath and a convergence summary.

        Args:
            resolution: The resolution to display
            source: Manifest path or locator, for the header
        """
        self.console.print()
        self._print_header(f"📦 Resolved classpath: {escape(source)}", resolution)
        self._print_classpath(resolution)
        if resolution.has_conflicts:
            self._print_conflict_summary(resolution.report, resolution.result)
        self._print_footer(resolution)

    def print_tree(self, resolution: ProjectResolution, source: str) -> None:
        """Print the dependency tree with selection annotations."""
        self.console.print()
        self._print_header(f"🌳 Dependency tree: {escape(source)}", resolution)
        self.console.print(self.build_tree(resolution))
        self._print_footer(resolution)

    def print_report(self, resolution: ProjectResolution, source: str) -> None:
        """Print the convergence report in full."""
        self.console.print()
        self._print_header(f"🔎 Dependency convergence: {escape(source)}", resolution)

        report = resolution.report
        if report.is_empty:
            self.console.print(
                Panel(
                    "✅ Every dependency converges on a single version.",
                    title="[bold green]✅ Convergence[/bold green]",
                    border_style="green",
                )
            )
        else:
            self._print_conflict_summary(report, resolution.result)
            self.console.print(
                Panel(
                    escape("\n".join(report.format_lines()).strip()),
                    title=f"[bold yellow]⚠️  {len(report)} convergence error(s)[/bold yellow]",
                    border_style="yellow",
                )
            )
        self._print_footer(resolution)

    def _print_header(self, header_text: str, resolution: ProjectResolution) -> None:
        self.console.print(
            Panel(
                f"{header_text}\nProject: [bold]{escape(resolution.manifest.label)}[/bold]",
                title="[bold blue]dep-converge[/bold blue]",
                border_style="blue",
            )
        )

    def _print_classpath(self, resolution: ProjectResolution) -> None:
        entries = resolution.classpath()
        if not entries:
            self.console.print("✅ No dependencies to resolve.", style="green")
            return

        table = Table(title="📚 Classpath", box=box.ROUNDED, title_style="bold cyan")
        table.add_column("#", justify="right", style="dim")
        table.add_column("Coordinate", style="bold")
        table.add_column("Version", justify="center")
        table.add_column("Scope", justify="center")
        table.add_column("Location", style="dim", overflow="fold")

        overridden = resolution.result.overridden
        for index, entry in enumerate(entries, 1):
            version = escape(entry.version)
            if entry.coordinate in overridden:
                version = f"[magenta]{version}[/magenta] (managed)"
            table.add_row(
                str(index),
                escape(str(entry.coordinate)),
                version,
                entry.scope.value,
                escape(entry.location or "-"),
            )

        self.console.print(table)
        self.console.print()

    def _print_conflict_summary(
        self, report: ConflictReport, result: ResolutionResult
    ) -> None:
        table = Table(
            title="⚠️  Version conflicts", box=box.ROUNDED, title_style="bold yellow"
        )
        table.add_column("Coordinate", style="bold")
        table.add_column("Requested", justify="center")
        table.add_column("Selected", justify="center")
        table.add_column("Paths", justify="center")

        for conflict in report:
            selected = escape(result.version_of(conflict.coordinate) or "-")
            table.add_row(
                escape(str(conflict.coordinate)),
                escape(", ".join(conflict.versions)),
                f"[green]{selected}[/green]",
                str(len(conflict.paths)),
            )

        self.console.print(table)
        self.console.print()

    def build_tree(self, resolution: ProjectResolution) -> Tree:
        """Rich tree of the graph, marking nodes that lost conflict resolution."""
        result = resolution.result
        reasons: Dict[int, Optional[str]] = {}
        for coordinate, candidates in result.candidates.items():
            for candidate in candidates:
                reasons[candidate.order] = candidate.omitted_reason

        root = resolution.graph.root
        tree = Tree(f"[bold]{escape(root.label)}[/bold]")
        stack = [(tree, child) for child in reversed(root.children)]
        while stack:
            branch, node = stack.pop()
            child_branch = branch.add(self._node_label(node, reasons.get(node.order), result))
            stack.extend((child_branch, child) for child in reversed(node.children))
        return tree

    def _node_label(
        self, node: GraphNode, reason: Optional[str], result: ResolutionResult
    ) -> str:
        label = f"{escape(node.label)} [dim]({node.scope.value})[/dim]"
        if node.managed_version:
            label += f" [magenta]managed to {escape(node.managed_version)}[/magenta]"
        if reason == OMITTED_FOR_CONFLICT:
            selected = result.version_of(node.coordinate)
            return f"[yellow]{label} - {reason} with {escape(selected or '-')}[/yellow]"
        if reason:
            return f"[dim]{label} - {reason}[/dim]"
        return label

    def _print_footer(self, resolution: ProjectResolution) -> None:
        duration_seconds = resolution.duration_ms / 1000
        self.console.print(
            f"\n[dim]Resolved {len(resolution.result)} of {len(resolution.graph) - 1} "
            f"graph nodes in {duration_seconds:.2f} seconds[/dim]"
        )
        if resolution.has_conflicts:
            self.console.print(
                f"\n[bold yellow]⚠️  {len(resolution.report)} dependency convergence "
                f"error(s) found[/bold yellow]"
            )
        else:
            self.console.print("\n[bold green]✅ All dependencies converge.[/bold green]")

    def print_relocation_results(self, outcomes: List[RelocationOutcome]) -> None:
        table = Table(title="🔀 Relocation", box=box.ROUNDED, title_style="bold cyan")
        table.add_column("Artifact", style="bold")
        table.add_column("Status", justify="center")
        table.add_column("Details")

        for outcome in outcomes:
            if outcome.ok:
                table.add_row(
                    escape(outcome.name),
                    "[green]RELOCATED[/green]",
                    f"{len(outcome.data or b'')} bytes",
                )
            else:
                table.add_row(
                    escape(outcome.name), "[red]FAILED[/red]", escape(str(outcome.error))
                )

        self.console.print(table)


def resolution_to_json(resolution: ProjectResolution) -> str:
    """Serialize a resolution for machine consumption."""
    return json.dumps(resolution.to_dict(), indent=2)


def report_to_json(report: ConflictReport) -> str:
    return json.dumps(report.to_dict(), indent=2)


def relocation_to_dict(outcomes: List[RelocationOutcome]) -> Dict[str, Any]:
    return {
        "artifacts": [
            {
                "name": outcome.name,
                "ok": outcome.ok,
                "size": len(outcome.data) if outcome.data is not None else None,
                "error": str(outcome.error) if outcome.error else None,
            }
            for outcome in outcomes
        ]
    }


def create_progress_spinner(description: str, console: Optional[Console] = None) -> Progress:
    """Create a progress spinner for long-running operations."""
    progress = Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console or Console(stderr=True, emoji=False),
        transient=True,
    )
    progress.add_task(description, total=None)
    return progress
