"""
Dependency convergence checking.

Reports every coordinate that is requested at more than one version anywhere
in the graph. The check looks at requested versions, before any override is
applied, and never raises for a conflict: callers decide whether divergence
is fatal.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

from .graph import Graph
from .manifest import Coordinate
from .structured_logging import log_conflicts_detected


@dataclass(frozen=True)
class ConflictPath:
    """One route from the root to a conflicting version."""

    version: str
    path: Tuple[str, ...]

    @property
    def depth(self) -> int:
        return len(self.path) - 1


@dataclass(frozen=True)
class Conflict:
    coordinate: Coordinate
    versions: Tuple[str, ...]
    paths: Tuple[ConflictPath, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "coordinate": str(self.coordinate),
            "versions": list(self.versions),
            "paths": [
                {"version": p.version, "path": list(p.path)} for p in self.paths
            ],
        }


@dataclass(frozen=True)
class ConflictReport:
    """Coordinates that fail to converge, ordered by coordinate."""

    conflicts: Tuple[Conflict, ...] = ()

    def __len__(self) -> int:
        return len(self.conflicts)

    def __iter__(self):
        return iter(self.conflicts)

    @property
    def is_empty(self) -> bool:
        return not self.conflicts

    def coordinates(self) -> List[Coordinate]:
        return [conflict.coordinate for conflict in self.conflicts]

    def conflict_for(self, coordinate: Union[Coordinate, str]) -> Optional[Conflict]:
        if not isinstance(coordinate, Coordinate):
            coordinate = Coordinate.parse(coordinate)
        for conflict in self.conflicts:
            if conflict.coordinate == coordinate:
                return conflict
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "converged": self.is_empty,
            "conflict_count": len(self.conflicts),
            "conflicts": [conflict.to_dict() for conflict in self.conflicts],
        }

    def format_lines(self) -> List[str]:
        """Render the report as enforcer-style text lines."""
        lines: List[str] = []
        for conflict in self.conflicts:
            lines.append("")
            lines.append(
                f"Dependency convergence error for {conflict.coordinate} "
                f"(versions {', '.join(conflict.versions)}) paths to dependency are:"
            )
            for index, conflict_path in enumerate(conflict.paths):
                if index:
                    lines.append("and")
                for depth, label in enumerate(conflict_path.path):
                    lines.append(f"{'  ' * depth}+-{label}")
        return lines


def check(graph: Graph) -> ConflictReport:
    """
    Find coordinates requested at more than one distinct version.

    Args:
        graph: A complete dependency graph

    Returns:
        ConflictReport: Empty when every coordinate has a single version
    """
    conflicts = []
    for coordinate in sorted(graph.coordinates()):
        nodes = graph.candidates(coordinate)
        versions: List[str] = []
        for node in nodes:
            if node.requested_version not in versions:
                versions.append(node.requested_version)
        if len(versions) < 2:
            continue
        conflicts.append(
            Conflict(
                coordinate=coordinate,
                versions=tuple(versions),
                paths=tuple(
                    ConflictPath(node.requested_version, node.path) for node in nodes
                ),
            )
        )

    report = ConflictReport(tuple(conflicts))
    log_conflicts_detected([str(c) for c in report.coordinates()])
    return report
