"""
Manifest repositories.

A repository turns a (coordinate, version) pair into a Manifest. Local
repositories follow the Maven directory layout; the remote repository speaks
the same layout over HTTP with a rate-limited httpx client.
"""

import asyncio
import os
import time
from abc import ABC, abstractmethod
from contextlib import AsyncExitStack
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import httpx
from httpx import HTTPStatusError, RequestError

from .cli_config import get_config
from .error_handling import DepConvergeError, NotFoundError, log_network_error
from .manifest import Coordinate, Manifest
from .parsers import parse_manifest_file, parse_pom_text

MAVEN_CENTRAL_URL = "https://repo1.maven.org/maven2"

# Searched in order inside a version directory
MANIFEST_EXTENSIONS = (".pom", ".json", ".yaml", ".yml", ".toml")


def parse_locator(locator: str) -> Tuple[Coordinate, str]:
    """Split ``group:artifact:version`` into a Coordinate and a version."""
    parts = [part.strip() for part in locator.split(":")]
    if len(parts) != 3 or not all(parts):
        raise NotFoundError(
            f"Locator is neither a manifest file nor group:artifact:version: {locator}",
            locator,
        )
    return Coordinate(parts[0], parts[1]), parts[2]


def maven_path(coordinate: Coordinate, version: str, extension: str) -> str:
    """Relative Maven layout path, e.g. ``com/google/guava/guava/10.0/guava-10.0.pom``."""
    return "/".join(
        [
            *coordinate.group.split("."),
            coordinate.artifact,
            version,
            f"{coordinate.artifact}-{version}{extension}",
        ]
    )


class RateLimiter:
    """Simple rate limiter to prevent overwhelming remote repositories."""

    def __init__(self, requests_per_second: float = 20.0):
        self.requests_per_second = requests_per_second
        self.min_interval = 1.0 / requests_per_second
        self.last_request_time = 0.0
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Wait if necessary to respect rate limits."""
        async with self._lock:
            time_since_last = time.monotonic() - self.last_request_time
            if time_since_last < self.min_interval:
                await asyncio.sleep(self.min_interval - time_since_last)
            self.last_request_time = time.monotonic()


class ManifestRepository(ABC):
    """Base class for manifest sources."""

    name = "repository"

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None

    @abstractmethod
    async def fetch(self, coordinate: Coordinate, version: str) -> Manifest:
        """
        Fetch the manifest for ``coordinate`` at ``version``.

        Raises:
            NotFoundError: If this repository does not hold the manifest
            MalformedManifestError: If the stored manifest cannot be parsed
        """

    def get(self, coordinate: Coordinate, version: str) -> Manifest:
        """Blocking fetch for callers outside an event loop."""

        async def _fetch() -> Manifest:
            async with self:
                return await self.fetch(coordinate, version)

        return asyncio.run(_fetch())

    def artifact_location(self, coordinate: Coordinate, version: str) -> Optional[str]:
        """Where the binary artifact for this version lives, if known."""
        return None


class InMemoryRepository(ManifestRepository):
    """Manifests registered up front, keyed by coordinate and version."""

    name = "memory"

    def __init__(self, manifests: Iterable[Manifest] = ()):
        self._manifests: Dict[Tuple[Coordinate, str], Manifest] = {}
        self._locations: Dict[Tuple[Coordinate, str], str] = {}
        for manifest in manifests:
            self.add(manifest)

    def add(self, manifest: Manifest, location: Optional[str] = None) -> None:
        key = (manifest.coordinate, manifest.version)
        self._manifests[key] = manifest
        if location is not None:
            self._locations[key] = location

    def __repr__(self) -> str:
        return f"InMemoryRepository({len(self._manifests)} manifests)"

    def __len__(self) -> int:
        return len(self._manifests)

    def get(self, coordinate: Coordinate, version: str) -> Manifest:
        try:
            return self._manifests[(coordinate, version)]
        except KeyError:
            raise NotFoundError(
                f"No manifest for {coordinate.label(version)}", coordinate.label(version)
            )

    async def fetch(self, coordinate: Coordinate, version: str) -> Manifest:
        return self.get(coordinate, version)

    def artifact_location(self, coordinate: Coordinate, version: str) -> Optional[str]:
        return self._locations.get((coordinate, version))


class LocalRepository(ManifestRepository):
    """A directory laid out like ``~/.m2/repository``."""

    name = "local"

    def __init__(self, root: os.PathLike):
        self.root = Path(root).expanduser()

    def __repr__(self) -> str:
        return f"LocalRepository({str(self.root)!r})"

    def path_for(self, coordinate: Coordinate, version: str, extension: str) -> Path:
        return self.root / maven_path(coordinate, version, extension)

    def get(self, coordinate: Coordinate, version: str) -> Manifest:
        for extension in MANIFEST_EXTENSIONS:
            candidate = self.path_for(coordinate, version, extension)
            if candidate.is_file():
                return parse_manifest_file(str(candidate))
        raise NotFoundError(
            f"No manifest for {coordinate.label(version)} under {self.root}",
            coordinate.label(version),
        )

    async def fetch(self, coordinate: Coordinate, version: str) -> Manifest:
        return await asyncio.to_thread(self.get, coordinate, version)

    def artifact_location(self, coordinate: Coordinate, version: str) -> Optional[str]:
        jar = self.path_for(coordinate, version, ".jar")
        return str(jar) if jar.is_file() else None


class RemoteRepository(ManifestRepository):
    """
    Maven layout repository over HTTP.

    Uses the async context manager pattern for httpx.AsyncClient: the client
    is created on entry and closed on exit.
    """

    name = "remote"

    def __init__(
        self,
        base_url: str = MAVEN_CENTRAL_URL,
        rate_limit_rps: float = 20.0,
        connect_timeout: float = 10.0,
        read_timeout: float = 30.0,
        user_agent: str = "dep-converge/1.0.0",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.rate_limit_rps = rate_limit_rps
        self.rate_limiter: Optional[RateLimiter] = None
        self.timeout = httpx.Timeout(read_timeout, connect=connect_timeout)
        self.transport = transport
        self.client: Optional[httpx.AsyncClient] = None
        self._headers = {"User-Agent": user_agent, "Accept": "application/xml"}

    def __repr__(self) -> str:
        return f"RemoteRepository({self.base_url!r})"

    async def __aenter__(self):
        """Initialize the HTTP client when entering the context."""
        self.rate_limiter = RateLimiter(self.rate_limit_rps)
        self.client = httpx.AsyncClient(
            timeout=self.timeout, headers=self._headers, transport=self.transport
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Clean up the HTTP client when exiting the context."""
        if self.client:
            await self.client.aclose()
            self.client = None

    def url_for(self, coordinate: Coordinate, version: str, extension: str) -> str:
        return f"{self.base_url}/{maven_path(coordinate, version, extension)}"

    async def fetch(self, coordinate: Coordinate, version: str) -> Manifest:
        if self.client is None or self.rate_limiter is None:
            raise DepConvergeError("HTTP client not initialized; use 'async with'")

        label = coordinate.label(version)
        url = self.url_for(coordinate, version, ".pom")

        try:
            await self.rate_limiter.acquire()
            response = await self.client.get(url)
            if response.status_code == 404:
                raise NotFoundError(f"No manifest for {label} at {self.base_url}", label)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            log_network_error(
                f"Timed out fetching {label}", "repository", "fetch", url=url, exception=e
            )
            raise NotFoundError(f"Timed out fetching {label}", label) from e
        except HTTPStatusError as e:
            log_network_error(
                f"Repository returned an error for {label}",
                "repository",
                "fetch",
                url=url,
                status_code=e.response.status_code,
                exception=e,
            )
            raise NotFoundError(
                f"Repository returned HTTP {e.response.status_code} for {label}", label
            ) from e
        except RequestError as e:
            log_network_error(
                f"Request failed for {label}", "repository", "fetch", url=url, exception=e
            )
            raise NotFoundError(f"Request failed for {label}: {e}", label) from e

        return parse_pom_text(response.text, source=url)

    def artifact_location(self, coordinate: Coordinate, version: str) -> Optional[str]:
        return self.url_for(coordinate, version, ".jar")


class ChainedRepository(ManifestRepository):
    """Asks each repository in turn; the first that has the manifest wins."""

    name = "chain"

    def __init__(self, repositories: Sequence[ManifestRepository]):
        if not repositories:
            raise ValueError("ChainedRepository needs at least one repository")
        self.repositories: List[ManifestRepository] = list(repositories)
        self._stack: Optional[AsyncExitStack] = None

    def __repr__(self) -> str:
        return f"ChainedRepository({self.repositories!r})"

    async def __aenter__(self):
        self._stack = AsyncExitStack()
        await self._stack.__aenter__()
        for repository in self.repositories:
            await self._stack.enter_async_context(repository)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        stack, self._stack = self._stack, None
        if stack is not None:
            await stack.__aexit__(exc_type, exc_val, exc_tb)

    def _not_found(self, coordinate: Coordinate, version: str) -> NotFoundError:
        label = coordinate.label(version)
        searched = ", ".join(repr(r) for r in self.repositories)
        return NotFoundError(f"No manifest for {label} in {searched}", label)

    def get(self, coordinate: Coordinate, version: str) -> Manifest:
        for repository in self.repositories:
            try:
                return repository.get(coordinate, version)
            except NotFoundError:
                continue
        raise self._not_found(coordinate, version)

    async def fetch(self, coordinate: Coordinate, version: str) -> Manifest:
        for repository in self.repositories:
            try:
                return await repository.fetch(coordinate, version)
            except NotFoundError:
                continue
        raise self._not_found(coordinate, version)

    def artifact_location(self, coordinate: Coordinate, version: str) -> Optional[str]:
        for repository in self.repositories:
            location = repository.artifact_location(coordinate, version)
            if location is not None:
                return location
        return None


def is_coordinate_locator(locator: str) -> bool:
    """True for ``group:artifact:version`` strings that are not existing paths."""
    return (
        locator.count(":") == 2 and os.sep not in locator and not os.path.exists(locator)
    )


def default_repository() -> ManifestRepository:
    """Repository chain built from the configured local paths and remote URL."""
    config = get_config().repository
    repositories: List[ManifestRepository] = [
        LocalRepository(path) for path in config.local_paths
    ]
    if config.remote_url:
        repositories.append(
            RemoteRepository(
                config.remote_url,
                rate_limit_rps=config.rate_limit,
                connect_timeout=config.connect_timeout,
                read_timeout=config.read_timeout,
                user_agent=config.user_agent,
            )
        )
    if not repositories:
        raise NotFoundError(
            "No repository configured; set repository.local_paths or repository.remote_url"
        )
    if len(repositories) == 1:
        return repositories[0]
    return ChainedRepository(repositories)


def load(locator: str, repository: Optional[ManifestRepository] = None) -> Manifest:
    """
    Load a manifest from a file path or a ``group:artifact:version`` locator.

    Args:
        locator: Manifest file path, or coordinates looked up in ``repository``
        repository: Repository for coordinate locators (default: configured chain)

    Returns:
        Manifest: The parsed manifest

    Raises:
        NotFoundError: If the locator resolves to nothing
        MalformedManifestError: If the manifest is structurally invalid
    """
    if not locator or not isinstance(locator, str):
        raise NotFoundError("Locator must be a non-empty string", locator)

    if not is_coordinate_locator(locator):
        return parse_manifest_file(locator)

    coordinate, version = parse_locator(locator)
    return (repository or default_repository()).get(coordinate, version)
