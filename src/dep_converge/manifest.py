"""
Manifest model: coordinates, dependency declarations and project manifests.

Everything here is immutable once constructed. Manifests are loaded once per
resolution run and shared between graph nodes.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Iterable, Mapping, Optional, Tuple

from .error_handling import MalformedManifestError

WILDCARD = "*"


@dataclass(frozen=True, order=True)
class Coordinate:
    """Identity of a library independent of version (group + artifact)."""

    group: str
    artifact: str

    def __post_init__(self):
        if not self.group or not self.artifact:
            raise MalformedManifestError(
                f"Coordinate needs a group and an artifact: {self.group!r}:{self.artifact!r}"
            )

    def __str__(self) -> str:
        return f"{self.group}:{self.artifact}"

    @classmethod
    def parse(cls, value: str) -> "Coordinate":
        """Parse ``group:artifact`` (extra ``:version`` parts are rejected)."""
        if not isinstance(value, str):
            raise MalformedManifestError(f"Coordinate must be a string, got {type(value).__name__}")
        parts = [part.strip() for part in value.split(":")]
        if len(parts) != 2 or not all(parts):
            raise MalformedManifestError(f"Invalid coordinate (expected group:artifact): {value!r}")
        return cls(parts[0], parts[1])

    @property
    def is_wildcard(self) -> bool:
        return WILDCARD in (self.group, self.artifact)

    def matches(self, other: "Coordinate") -> bool:
        """True when ``other`` falls under this (possibly wildcard) coordinate."""
        return (self.group in (WILDCARD, other.group)) and (
            self.artifact in (WILDCARD, other.artifact)
        )

    def label(self, version: str) -> str:
        return f"{self.group}:{self.artifact}:{version}"


class Scope(Enum):
    """Dependency scopes."""

    COMPILE = "compile"
    PROVIDED = "provided"
    RUNTIME = "runtime"
    TEST = "test"
    SYSTEM = "system"
    IMPORT = "import"

    @classmethod
    def parse(cls, value: Optional[str]) -> "Scope":
        if value is None or not str(value).strip():
            return cls.COMPILE
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise MalformedManifestError(f"Unknown dependency scope: {value!r}")


@dataclass(frozen=True)
class ManifestEntry:
    """A single dependency declaration."""

    coordinate: Coordinate
    version: str
    scope: Scope = Scope.COMPILE
    exclusions: frozenset = field(default_factory=frozenset)
    optional: bool = False

    def __post_init__(self):
        if not self.version or not str(self.version).strip():
            raise MalformedManifestError(f"Dependency {self.coordinate} has no version")
        object.__setattr__(self, "exclusions", frozenset(self.exclusions))

    def excludes(self, coordinate: Coordinate) -> bool:
        return any(rule.matches(coordinate) for rule in self.exclusions)


@dataclass(frozen=True)
class Manifest:
    """A project's declared coordinate, version and dependencies."""

    coordinate: Coordinate
    version: str
    entries: Tuple[ManifestEntry, ...] = ()
    dependency_management: Mapping[Coordinate, str] = field(
        default_factory=lambda: MappingProxyType({})
    )
    source: Optional[str] = None

    def __post_init__(self):
        if not self.version or not str(self.version).strip():
            raise MalformedManifestError(f"Manifest {self.coordinate} has no version")
        object.__setattr__(self, "entries", tuple(self.entries))
        object.__setattr__(
            self,
            "dependency_management",
            MappingProxyType(dict(self.dependency_management)),
        )
        seen = set()
        for entry in self.entries:
            if entry.coordinate in seen:
                raise MalformedManifestError(
                    f"Manifest {self.label} declares {entry.coordinate} more than once"
                )
            seen.add(entry.coordinate)

    def __hash__(self) -> int:
        return hash((self.coordinate, self.version, self.entries))

    @property
    def label(self) -> str:
        return self.coordinate.label(self.version)

    def entry_for(self, coordinate: Coordinate) -> Optional[ManifestEntry]:
        """Return the declared entry for ``coordinate`` if any."""
        for entry in self.entries:
            if entry.coordinate == coordinate:
                return entry
        return None


def make_entry(
    coordinate: str,
    version: str,
    scope: Optional[str] = None,
    exclusions: Iterable[str] = (),
    optional: bool = False,
) -> ManifestEntry:
    """Build a ManifestEntry from plain strings."""
    return ManifestEntry(
        coordinate=Coordinate.parse(coordinate),
        version=str(version).strip(),
        scope=Scope.parse(scope),
        exclusions=frozenset(Coordinate.parse(rule) for rule in exclusions),
        optional=bool(optional),
    )


def make_manifest(
    coordinate: str,
    version: str,
    entries: Iterable[ManifestEntry] = (),
    dependency_management: Optional[Mapping[str, str]] = None,
    source: Optional[str] = None,
) -> Manifest:
    """Build a Manifest from plain strings."""
    management = {
        Coordinate.parse(key): str(value).strip()
        for key, value in (dependency_management or {}).items()
    }
    return Manifest(
        coordinate=Coordinate.parse(coordinate),
        version=str(version).strip(),
        entries=tuple(entries),
        dependency_management=management,
        source=source,
    )
