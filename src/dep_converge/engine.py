"""
Resolution engine.

Runs the full pipeline for one project: build the graph, resolve versions and
check convergence, with run-scoped logging around it.
"""

import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from .convergence import ConflictReport, check
from .graph import Graph, GraphBuilder, OverrideMap
from .manifest import Manifest
from .repository import (
    ManifestRepository,
    default_repository,
    is_coordinate_locator,
    load,
    parse_locator,
)
from .resolver import ClasspathEntry, ResolutionResult, resolve
from .structured_logging import (
    clear_run_context,
    log_resolution_complete,
    log_resolution_start,
    set_run_context,
)


@dataclass(frozen=True)
class ProjectResolution:
    """Everything learned about one project in a resolution run."""

    manifest: Manifest
    graph: Graph
    result: ResolutionResult
    report: ConflictReport
    duration_ms: int
    run_id: str
    repository: Optional[ManifestRepository] = None

    @property
    def has_conflicts(self) -> bool:
        return not self.report.is_empty

    def classpath(self) -> List[ClasspathEntry]:
        return self.result.classpath(self.repository)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "project": self.manifest.label,
            "duration_ms": self.duration_ms,
            "node_count": len(self.graph),
            "classpath": [entry.to_dict() for entry in self.classpath()],
            "resolution": self.result.to_dict(),
            "convergence": self.report.to_dict(),
        }


class ResolutionEngine:
    """Resolves projects against one repository."""

    def __init__(
        self,
        repository: Optional[ManifestRepository] = None,
        max_concurrent: Optional[int] = None,
        fetch_timeout: Optional[float] = None,
        scopes: Optional[Iterable[str]] = None,
    ):
        self.repository = repository or default_repository()
        self.builder = GraphBuilder(
            self.repository,
            max_concurrent=max_concurrent,
            fetch_timeout=fetch_timeout,
            scopes=scopes,
        )

    async def resolve_manifest(
        self, manifest: Manifest, overrides: Optional[OverrideMap] = None
    ) -> ProjectResolution:
        """
        Build, resolve and check one project.

        The repository must already be open (``async with engine.repository``)
        when it holds network resources.
        """
        run_id = uuid.uuid4().hex[:12]
        start_time = time.time()
        log_resolution_start(run_id, manifest.label)
        set_run_context(run_id, manifest.label)

        try:
            graph = await self.builder.build(manifest, overrides)
            result = resolve(graph, overrides)
            report = check(graph)
        finally:
            clear_run_context()

        duration_ms = int((time.time() - start_time) * 1000)
        log_resolution_complete(
            run_id,
            duration_ms,
            node_count=len(graph),
            selected_count=len(result),
            conflict_count=len(report),
        )
        return ProjectResolution(
            manifest=manifest,
            graph=graph,
            result=result,
            report=report,
            duration_ms=duration_ms,
            run_id=run_id,
            repository=self.repository,
        )

    async def resolve_locator(
        self, locator: str, overrides: Optional[OverrideMap] = None
    ) -> ProjectResolution:
        """Load a manifest file or ``group:artifact:version`` and resolve it."""
        async with self.repository:
            if is_coordinate_locator(locator):
                coordinate, version = parse_locator(locator)
                manifest = await self.repository.fetch(coordinate, version)
            else:
                manifest = load(locator)
            return await self.resolve_manifest(manifest, overrides)
