"""
Dependency graph construction.

Expands a root manifest into its full transitive dependency graph. Sibling
subtrees are fetched concurrently, but the resulting graph is identical no
matter in which order fetches complete: children keep declaration order and
traversal order is numbered only after the graph is complete.
"""

import asyncio
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import (
    Dict,
    FrozenSet,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Tuple,
    Union,
)

from .cache_manager import ManifestFetchCache
from .cli_config import get_config
from .error_handling import (
    CyclicDependencyError,
    ErrorCategory,
    MalformedManifestError,
    NotFoundError,
    get_error_handler,
)
from .manifest import Coordinate, Manifest, ManifestEntry, Scope
from .repository import ManifestRepository
from .structured_logging import get_resolver_logger, log_manifest_fetch

OverrideMap = Mapping[Union[Coordinate, str], str]

# Effective scope of a transitive dependency: _SCOPE_MEDIATION[parent][declared].
# Declared scopes missing from a row are not followed.
_SCOPE_MEDIATION: Dict[Scope, Dict[Scope, Scope]] = {
    Scope.COMPILE: {Scope.COMPILE: Scope.COMPILE, Scope.RUNTIME: Scope.RUNTIME},
    Scope.PROVIDED: {Scope.COMPILE: Scope.PROVIDED, Scope.RUNTIME: Scope.PROVIDED},
    Scope.RUNTIME: {Scope.COMPILE: Scope.RUNTIME, Scope.RUNTIME: Scope.RUNTIME},
    Scope.TEST: {Scope.COMPILE: Scope.TEST, Scope.RUNTIME: Scope.TEST},
    Scope.SYSTEM: {Scope.COMPILE: Scope.SYSTEM, Scope.RUNTIME: Scope.SYSTEM},
}


def mediate_scope(parent: Scope, declared: Scope) -> Optional[Scope]:
    """Scope a transitive dependency takes on, or None if it is not inherited."""
    return _SCOPE_MEDIATION.get(parent, {}).get(declared)


def coerce_overrides(overrides: Optional[OverrideMap]) -> Dict[Coordinate, str]:
    """Normalize override keys to Coordinates."""
    result: Dict[Coordinate, str] = {}
    for key, version in (overrides or {}).items():
        coordinate = key if isinstance(key, Coordinate) else Coordinate.parse(key)
        result[coordinate] = str(version)
    return result


@dataclass(eq=False)
class GraphNode:
    """One occurrence of a library in the dependency graph."""

    coordinate: Coordinate
    requested_version: str
    scope: Scope
    depth: int
    path: Tuple[str, ...]
    managed_version: Optional[str] = None
    optional: bool = False
    parent: Optional["GraphNode"] = field(default=None, repr=False)
    children: List["GraphNode"] = field(default_factory=list, repr=False)
    manifest: Optional[Manifest] = field(default=None, repr=False)
    order: int = -1

    @property
    def version(self) -> str:
        """Version whose manifest was expanded (managed version when one applies)."""
        return self.managed_version or self.requested_version

    @property
    def label(self) -> str:
        return self.coordinate.label(self.requested_version)

    @property
    def is_root(self) -> bool:
        return self.parent is None

    def ancestors(self) -> Iterator["GraphNode"]:
        """Yield the parent chain, nearest first."""
        node = self.parent
        while node is not None:
            yield node
            node = node.parent


class Graph:
    """
    A completed dependency graph.

    ``nodes`` lists every node (root first) in depth-first, declaration-ordered
    pre-order; ``GraphNode.order`` is each node's index in that list.
    """

    def __init__(self, root: GraphNode, overrides: Optional[OverrideMap] = None):
        self.root = root
        self.overrides: Mapping[Coordinate, str] = MappingProxyType(
            coerce_overrides(overrides)
        )
        self.nodes: Tuple[GraphNode, ...] = tuple(self.walk())
        self._by_coordinate: Dict[Coordinate, List[GraphNode]] = {}
        for index, node in enumerate(self.nodes):
            node.order = index
            if not node.is_root:
                self._by_coordinate.setdefault(node.coordinate, []).append(node)

    def __len__(self) -> int:
        return len(self.nodes)

    def __repr__(self) -> str:
        return f"Graph(root={self.root.label!r}, nodes={len(self.nodes)})"

    def walk(self) -> Iterator[GraphNode]:
        """Depth-first pre-order traversal in declaration order."""
        stack = [self.root]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    def iter_edges(self) -> Iterator[Tuple[GraphNode, GraphNode]]:
        for node in self.nodes:
            for child in node.children:
                yield node, child

    def coordinates(self) -> Tuple[Coordinate, ...]:
        """Every non-root coordinate, in order of first appearance."""
        return tuple(self._by_coordinate)

    def candidates(self, coordinate: Union[Coordinate, str]) -> Tuple[GraphNode, ...]:
        """Every node for ``coordinate``, in traversal order."""
        if not isinstance(coordinate, Coordinate):
            coordinate = Coordinate.parse(coordinate)
        return tuple(self._by_coordinate.get(coordinate, ()))

    @property
    def max_depth(self) -> int:
        return max(node.depth for node in self.nodes)


class GraphBuilder:
    """
    Builds dependency graphs by fetching manifests from a repository.

    Fetches run concurrently up to ``max_concurrent`` at a time and are
    deduplicated per (coordinate, version) for the duration of one build.
    """

    def __init__(
        self,
        repository: ManifestRepository,
        max_concurrent: Optional[int] = None,
        fetch_timeout: Optional[float] = None,
        scopes: Optional[Iterable[str]] = None,
    ):
        config = get_config().resolve
        self.repository = repository
        self.max_concurrent = max_concurrent or config.max_concurrent
        self.fetch_timeout = fetch_timeout or config.fetch_timeout_seconds
        self.scopes: FrozenSet[Scope] = frozenset(
            Scope.parse(scope) for scope in (scopes or config.scopes)
        )
        self.logger = get_resolver_logger()
        self._semaphore: Optional[asyncio.Semaphore] = None
        self.last_cache_stats: Dict[str, object] = {}

    async def build(
        self, root_manifest: Manifest, overrides: Optional[OverrideMap] = None
    ) -> Graph:
        """
        Build the graph rooted at ``root_manifest``.

        Args:
            root_manifest: The project manifest
            overrides: Forced versions (default: the root's dependency management)

        Returns:
            Graph: The complete dependency graph

        Raises:
            CyclicDependencyError: If a coordinate appears on its own path
            NotFoundError: If a manifest cannot be fetched
            MalformedManifestError: If a fetched manifest is invalid
        """
        forced = coerce_overrides(
            root_manifest.dependency_management if overrides is None else overrides
        )
        self._semaphore = asyncio.Semaphore(self.max_concurrent)
        cache = ManifestFetchCache(self._fetch)

        root = GraphNode(
            coordinate=root_manifest.coordinate,
            requested_version=root_manifest.version,
            scope=Scope.COMPILE,
            depth=0,
            path=(root_manifest.label,),
            manifest=root_manifest,
        )

        start_time = time.time()
        try:
            await self._expand(root, frozenset(), forced, cache)
        except CyclicDependencyError as e:
            get_error_handler().error(
                ErrorCategory.GRAPH,
                str(e),
                "graph",
                "build",
                exception=e,
                details={"cycle": list(e.cycle)},
                suggestions=["Add an exclusion to break the cycle"],
            )
            raise
        finally:
            self.last_cache_stats = cache.stats.get_stats()
            cache.clear()

        graph = Graph(root, forced)
        self.logger.debug(
            "graph_built",
            root=root_manifest.label,
            node_count=len(graph),
            max_depth=graph.max_depth,
            duration_ms=int((time.time() - start_time) * 1000),
            **{f"cache_{key}": value for key, value in self.last_cache_stats.items()},
        )
        return graph

    async def _fetch(self, coordinate: Coordinate, version: str) -> Manifest:
        assert self._semaphore is not None
        label = coordinate.label(version)
        async with self._semaphore:
            start_time = time.time()
            try:
                manifest = await asyncio.wait_for(
                    self.repository.fetch(coordinate, version), self.fetch_timeout
                )
            except asyncio.TimeoutError as e:
                log_manifest_fetch(str(coordinate), version, repr(self.repository), False)
                raise NotFoundError(
                    f"Timed out after {self.fetch_timeout}s fetching {label}", label
                ) from e
            except NotFoundError:
                log_manifest_fetch(str(coordinate), version, repr(self.repository), False)
                raise

        log_manifest_fetch(
            str(coordinate),
            version,
            repr(self.repository),
            True,
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )

        if manifest.coordinate != coordinate or manifest.version != version:
            raise MalformedManifestError(
                f"Requested {label} but the repository returned {manifest.label}",
                manifest.source,
            )
        return manifest

    def _effective_scope(self, parent: GraphNode, entry: ManifestEntry) -> Optional[Scope]:
        """Scope the entry takes on under ``parent``, or None if it is skipped."""
        if entry.scope is Scope.IMPORT:
            return None
        if parent.is_root:
            scope: Optional[Scope] = entry.scope
        elif entry.optional:
            return None
        else:
            scope = mediate_scope(parent.scope, entry.scope)
        if scope is None or scope not in self.scopes:
            return None
        return scope

    def _check_cycle(self, parent: GraphNode, child: GraphNode) -> None:
        chain = [parent, *parent.ancestors()]
        for position, ancestor in enumerate(chain):
            if ancestor.coordinate == child.coordinate:
                cycle = [node.label for node in reversed(chain[: position + 1])]
                raise CyclicDependencyError([*cycle, child.label])

    async def _expand(
        self,
        node: GraphNode,
        exclusions: FrozenSet[Coordinate],
        overrides: Dict[Coordinate, str],
        cache: ManifestFetchCache,
    ) -> None:
        assert node.manifest is not None

        pending: List[Tuple[GraphNode, FrozenSet[Coordinate]]] = []
        for entry in node.manifest.entries:
            if any(rule.matches(entry.coordinate) for rule in exclusions):
                continue
            scope = self._effective_scope(node, entry)
            if scope is None:
                continue

            managed = overrides.get(entry.coordinate)
            child = GraphNode(
                coordinate=entry.coordinate,
                requested_version=entry.version,
                scope=scope,
                depth=node.depth + 1,
                path=(*node.path, entry.coordinate.label(entry.version)),
                managed_version=managed if managed != entry.version else None,
                optional=entry.optional,
                parent=node,
            )
            self._check_cycle(node, child)
            node.children.append(child)
            pending.append((child, exclusions | entry.exclusions))

        if not pending:
            return

        tasks = [
            asyncio.ensure_future(self._expand_child(child, child_exclusions, overrides, cache))
            for child, child_exclusions in pending
        ]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            raise

    async def _expand_child(
        self,
        child: GraphNode,
        exclusions: FrozenSet[Coordinate],
        overrides: Dict[Coordinate, str],
        cache: ManifestFetchCache,
    ) -> None:
        child.manifest = await cache.get(child.coordinate, child.version)
        await self._expand(child, exclusions, overrides, cache)


def build_graph(
    root_manifest: Manifest,
    repository: ManifestRepository,
    overrides: Optional[OverrideMap] = None,
    **builder_options,
) -> Graph:
    """Blocking wrapper around GraphBuilder.build for callers outside an event loop."""

    async def _build() -> Graph:
        async with repository:
            builder = GraphBuilder(repository, **builder_options)
            return await builder.build(root_manifest, overrides)

    return asyncio.run(_build())
