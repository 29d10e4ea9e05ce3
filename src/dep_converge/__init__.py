"""
dep-converge: Maven-style dependency resolution, convergence checking and
artifact relocation.
"""

from .convergence import Conflict, ConflictPath, ConflictReport, check
from .engine import ProjectResolution, ResolutionEngine
from .error_handling import (
    CyclicDependencyError,
    DepConvergeError,
    MalformedManifestError,
    NotFoundError,
    UnsupportedArtifactFormatError,
)
from .graph import Graph, GraphBuilder, GraphNode, build_graph
from .manifest import Coordinate, Manifest, ManifestEntry, Scope, make_entry, make_manifest
from .relocation import RelocationOutcome, Relocator, relocate, relocate_many
from .repository import (
    ChainedRepository,
    InMemoryRepository,
    LocalRepository,
    ManifestRepository,
    RemoteRepository,
    load,
)
from .resolver import Candidate, ClasspathEntry, ResolutionResult, resolve

__version__ = "1.0.0"

__all__ = [
    "Candidate",
    "ChainedRepository",
    "ClasspathEntry",
    "Conflict",
    "ConflictPath",
    "ConflictReport",
    "Coordinate",
    "CyclicDependencyError",
    "DepConvergeError",
    "Graph",
    "GraphBuilder",
    "GraphNode",
    "InMemoryRepository",
    "LocalRepository",
    "MalformedManifestError",
    "Manifest",
    "ManifestEntry",
    "ManifestRepository",
    "NotFoundError",
    "ProjectResolution",
    "RelocationOutcome",
    "Relocator",
    "RemoteRepository",
    "ResolutionEngine",
    "ResolutionResult",
    "Scope",
    "UnsupportedArtifactFormatError",
    "build_graph",
    "check",
    "load",
    "make_entry",
    "make_manifest",
    "relocate",
    "relocate_many",
    "resolve",
]
