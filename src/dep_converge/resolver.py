"""
Conflict resolution: one version per coordinate.

Rules, in priority order:

1. A forced version from the overrides always wins. Its dependencies come
   from the nearest node expanded at that version.
2. Otherwise the candidate nearest to the root wins.
3. Between equally near candidates the first in traversal order wins.

Only the winning node for a coordinate contributes its own dependencies, so a
library reachable solely through a losing candidate is left off the classpath.
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple, Union

from .graph import Graph, GraphNode, OverrideMap, coerce_overrides
from .manifest import Coordinate, Scope
from .repository import ManifestRepository

OMITTED_FOR_CONFLICT = "omitted for conflict"
OMITTED_FOR_DUPLICATE = "omitted for duplicate"
OMITTED_WITH_PARENT = "omitted with parent"


@dataclass(frozen=True)
class Candidate:
    """A version of a coordinate requested somewhere in the graph."""

    version: str
    depth: int
    path: Tuple[str, ...]
    order: int
    scope: Scope
    selected: bool = False
    omitted_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "depth": self.depth,
            "path": list(self.path),
            "scope": self.scope.value,
            "selected": self.selected,
            "omitted_reason": self.omitted_reason,
        }


@dataclass(frozen=True)
class ClasspathEntry:
    coordinate: Coordinate
    version: str
    scope: Scope
    location: Optional[str] = None

    @property
    def label(self) -> str:
        return self.coordinate.label(self.version)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "coordinate": str(self.coordinate),
            "version": self.version,
            "scope": self.scope.value,
            "location": self.location,
        }


@dataclass(frozen=True)
class ResolutionResult:
    """
    Outcome of conflict resolution.

    ``selected`` maps each coordinate on the classpath to its chosen version.
    ``candidates`` keeps every occurrence of every coordinate, including
    those that lost, so the decision can be explained. ``unexpanded`` holds
    forced coordinates whose forced version never had its manifest expanded.
    """

    root: str
    selected: Mapping[Coordinate, str]
    candidates: Mapping[Coordinate, Tuple[Candidate, ...]]
    overridden: frozenset = frozenset()
    unexpanded: frozenset = frozenset()

    def __len__(self) -> int:
        return len(self.selected)

    def __contains__(self, coordinate: Coordinate) -> bool:
        return coordinate in self.selected

    def _coordinate(self, coordinate: Union[Coordinate, str]) -> Coordinate:
        return coordinate if isinstance(coordinate, Coordinate) else Coordinate.parse(coordinate)

    def version_of(self, coordinate: Union[Coordinate, str]) -> Optional[str]:
        return self.selected.get(self._coordinate(coordinate))

    def winner(self, coordinate: Union[Coordinate, str]) -> Optional[Candidate]:
        """The candidate whose position decided the selection, if any."""
        for candidate in self.candidates.get(self._coordinate(coordinate), ()):
            if candidate.selected:
                return candidate
        return None

    def classpath(
        self, locator: Optional[ManifestRepository] = None
    ) -> List[ClasspathEntry]:
        """
        Ordered classpath of the selected versions.

        Entries follow the traversal order of the winning candidates. When a
        repository is given it supplies each entry's artifact location.
        """
        winners = sorted(
            ((self.winner(coordinate), coordinate) for coordinate in self.selected),
            key=lambda item: item[0].order,
        )
        entries = []
        for candidate, coordinate in winners:
            version = self.selected[coordinate]
            location = locator.artifact_location(coordinate, version) if locator else None
            entries.append(ClasspathEntry(coordinate, version, candidate.scope, location))
        return entries

    def to_dict(self) -> Dict[str, Any]:
        return {
            "root": self.root,
            "selected": {
                str(coordinate): version
                for coordinate, version in sorted(self.selected.items())
            },
            "overridden": sorted(str(coordinate) for coordinate in self.overridden),
            "unexpanded": sorted(str(coordinate) for coordinate in self.unexpanded),
            "candidates": {
                str(coordinate): [candidate.to_dict() for candidate in candidates]
                for coordinate, candidates in sorted(self.candidates.items())
            },
        }


def resolve(graph: Graph, overrides: Optional[OverrideMap] = None) -> ResolutionResult:
    """
    Select one version per coordinate.

    Args:
        graph: A complete dependency graph
        overrides: Forced versions (default: the overrides the graph was built with)

    Returns:
        ResolutionResult: Selected versions plus every candidate considered

    A forced coordinate only keeps the subtree of its nearest node whose
    manifest was expanded at the forced version. When no such node exists the
    version is still selected but nothing beneath the coordinate is kept, and
    the coordinate is listed in ``unexpanded``.

    The graph is not modified; the same inputs always give an equal result.
    """
    forced = dict(graph.overrides) if overrides is None else coerce_overrides(overrides)

    winners: Dict[Coordinate, GraphNode] = {}
    nearest: Dict[Coordinate, GraphNode] = {}
    live: Set[int] = {id(graph.root)}
    reasons: Dict[int, Optional[str]] = {}

    for node in sorted(graph.nodes[1:], key=lambda n: (n.depth, n.order)):
        if id(node.parent) not in live:
            reasons[id(node)] = OMITTED_WITH_PARENT
            continue

        coordinate = node.coordinate
        nearest.setdefault(coordinate, node)
        if coordinate in forced and node.version != forced[coordinate]:
            # expanded at another version; its subtree does not apply
            reasons[id(node)] = OMITTED_FOR_CONFLICT
            continue

        winner = winners.get(coordinate)
        if winner is None:
            winners[coordinate] = node
            live.add(id(node))
            reasons[id(node)] = None
        elif winner.requested_version == node.requested_version:
            reasons[id(node)] = OMITTED_FOR_DUPLICATE
        else:
            reasons[id(node)] = OMITTED_FOR_CONFLICT

    selected: Dict[Coordinate, str] = {}
    overridden = set()
    unexpanded = set()
    for coordinate, node in nearest.items():
        if coordinate in forced:
            selected[coordinate] = forced[coordinate]
            if forced[coordinate] != node.requested_version:
                overridden.add(coordinate)
            if coordinate not in winners:
                winners[coordinate] = node
                reasons[id(node)] = None
                unexpanded.add(coordinate)
        else:
            selected[coordinate] = winners[coordinate].requested_version

    candidates: Dict[Coordinate, Tuple[Candidate, ...]] = {}
    for coordinate in graph.coordinates():
        candidates[coordinate] = tuple(
            Candidate(
                version=node.requested_version,
                depth=node.depth,
                path=node.path,
                order=node.order,
                scope=node.scope,
                selected=winners.get(coordinate) is node,
                omitted_reason=reasons[id(node)],
            )
            for node in graph.candidates(coordinate)
        )

    return ResolutionResult(
        root=graph.root.label,
        selected=MappingProxyType(selected),
        candidates=MappingProxyType(candidates),
        overridden=frozenset(overridden),
        unexpanded=frozenset(unexpanded),
    )
