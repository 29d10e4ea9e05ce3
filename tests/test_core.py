"""
Core functionality tests for dep-converge.
Tests the manifest model, parsers, graph building, conflict resolution and
convergence checking.
"""

import asyncio
import json
from collections import Counter

import pytest

from dep_converge.cache_manager import FetchKey, ManifestFetchCache
from dep_converge.convergence import check
from dep_converge.error_handling import (
    CyclicDependencyError,
    MalformedManifestError,
    NotFoundError,
    get_error_handler,
)
from dep_converge.graph import GraphBuilder, build_graph, mediate_scope
from dep_converge.manifest import Coordinate, Scope, make_entry, make_manifest
from dep_converge.parsers import (
    detect_file_type,
    parse_json_text,
    parse_manifest_file,
    parse_pom_text,
    parse_toml_text,
)
from dep_converge.repository import InMemoryRepository, load
from dep_converge.resolver import (
    OMITTED_FOR_CONFLICT,
    OMITTED_FOR_DUPLICATE,
    OMITTED_WITH_PARENT,
    resolve,
)


def _manifest(coordinate, version, *entries, management=None):
    return make_manifest(coordinate, version, entries, dependency_management=management)


def _dep(coordinate, version, **kwargs):
    return make_entry(coordinate, version, **kwargs)


def _labels(graph):
    return [node.label for node in graph.nodes]


@pytest.fixture
def conflict_repository():
    """
    root -> A:1 -> Lib:1.0
    root -> B:1 -> C:1 -> Lib:2.0
    """
    repository = InMemoryRepository(
        [
            _manifest("g:a", "1", _dep("g:lib", "1.0")),
            _manifest("g:b", "1", _dep("g:c", "1")),
            _manifest("g:c", "1", _dep("g:lib", "2.0")),
            _manifest("g:lib", "1.0"),
            _manifest("g:lib", "2.0"),
        ]
    )
    root = _manifest("g:root", "1", _dep("g:a", "1"), _dep("g:b", "1"))
    return root, repository


class CountingRepository(InMemoryRepository):
    """Records every fetch and optionally delays some of them."""

    def __init__(self, manifests=(), delays=None):
        super().__init__(manifests)
        self.fetches = Counter()
        self.delays = delays or {}

    async def fetch(self, coordinate, version):
        label = coordinate.label(version)
        self.fetches[label] += 1
        await asyncio.sleep(self.delays.get(label, 0))
        return await super().fetch(coordinate, version)


class TestManifestModel:
    """Test coordinates, entries and manifests."""

    def test_coordinate_parse(self):
        """Test parsing group:artifact coordinates."""
        coordinate = Coordinate.parse("com.google.guava:guava")
        assert coordinate.group == "com.google.guava"
        assert coordinate.artifact == "guava"
        assert str(coordinate) == "com.google.guava:guava"
        assert coordinate.label("10.0") == "com.google.guava:guava:10.0"

    def test_coordinate_parse_invalid(self):
        """Test invalid coordinates are rejected."""
        for value in ["guava", "g:a:1.0", ":a", "g:"]:
            with pytest.raises(MalformedManifestError):
                Coordinate.parse(value)

    def test_coordinate_ordering_and_hashing(self):
        """Test coordinates compare and hash by value."""
        assert Coordinate("a", "b") == Coordinate.parse("a:b")
        assert len({Coordinate("a", "b"), Coordinate.parse("a:b")}) == 1
        assert sorted([Coordinate("b", "a"), Coordinate("a", "z")])[0] == Coordinate("a", "z")

    def test_wildcard_matching(self):
        """Test wildcard coordinates used by exclusions."""
        any_logging = Coordinate.parse("commons-logging:*")
        assert any_logging.is_wildcard
        assert any_logging.matches(Coordinate("commons-logging", "commons-logging"))
        assert not any_logging.matches(Coordinate("org.slf4j", "slf4j-api"))
        assert Coordinate.parse("*:*").matches(Coordinate("x", "y"))

    def test_scope_parse(self):
        """Test scope parsing and defaults."""
        assert Scope.parse(None) is Scope.COMPILE
        assert Scope.parse("") is Scope.COMPILE
        assert Scope.parse("Test") is Scope.TEST
        with pytest.raises(MalformedManifestError):
            Scope.parse("everywhere")

    def test_entry_excludes(self):
        """Test entry exclusion rules."""
        entry = _dep("g:a", "1", exclusions=["g:b", "other:*"])
        assert entry.excludes(Coordinate("g", "b"))
        assert entry.excludes(Coordinate("other", "anything"))
        assert not entry.excludes(Coordinate("g", "c"))

    def test_entry_requires_version(self):
        """Test entries without a version are malformed."""
        with pytest.raises(MalformedManifestError):
            _dep("g:a", "  ")

    def test_manifest_rejects_duplicate_entries(self):
        """Test a manifest may declare each coordinate once."""
        with pytest.raises(MalformedManifestError):
            _manifest("g:root", "1", _dep("g:a", "1"), _dep("g:a", "2"))

    def test_manifest_is_immutable(self):
        """Test manifests cannot be modified after construction."""
        manifest = _manifest("g:root", "1", _dep("g:a", "1"), management={"g:a": "2"})
        with pytest.raises(TypeError):
            manifest.dependency_management[Coordinate("g", "b")] = "1"
        with pytest.raises(AttributeError):
            manifest.version = "2"
        assert manifest.entry_for(Coordinate("g", "a")).version == "1"
        assert manifest.entry_for(Coordinate("g", "zzz")) is None


class TestManifestParsing:
    """Test manifest file parsing."""

    def test_parse_pom_file(self, sample_pom):
        """Test parsing a POM with parent, properties and management."""
        manifest = parse_manifest_file(str(sample_pom))

        assert manifest.label == "com.example:app:1.0"
        versions = {str(e.coordinate): e.version for e in manifest.entries}
        assert versions == {
            "com.google.guava:guava": "20.0",
            "com.example:lib": "1.0",
            "org.slf4j:slf4j-api": "1.7.36",
            "junit:junit": "4.13.2",
        }
        lib = manifest.entry_for(Coordinate("com.example", "lib"))
        assert lib.excludes(Coordinate("commons-logging", "commons-logging"))
        assert manifest.entry_for(Coordinate("junit", "junit")).scope is Scope.TEST
        assert manifest.dependency_management[Coordinate("org.slf4j", "slf4j-api")] == "1.7.36"

    def test_parse_pom_unresolved_property(self):
        """Test unresolved properties make the POM malformed."""
        content = """<project><groupId>g</groupId><artifactId>a</artifactId>
        <version>1</version><dependencies><dependency><groupId>g</groupId>
        <artifactId>b</artifactId><version>${missing}</version></dependency>
        </dependencies></project>"""
        with pytest.raises(MalformedManifestError, match="missing"):
            parse_pom_text(content)

    def test_parse_pom_unmanaged_without_version(self):
        """Test a dependency without version or management is rejected."""
        content = """<project><groupId>g</groupId><artifactId>a</artifactId>
        <version>1</version><dependencies><dependency><groupId>g</groupId>
        <artifactId>b</artifactId></dependency></dependencies></project>"""
        with pytest.raises(MalformedManifestError):
            parse_pom_text(content)

    def test_parse_pom_invalid_xml(self):
        """Test broken XML is reported as malformed."""
        with pytest.raises(MalformedManifestError):
            parse_pom_text("<project><groupId>")

    def test_parse_pom_optional_dependency(self):
        """Test optional flags are read from POMs."""
        content = """<project><groupId>g</groupId><artifactId>a</artifactId>
        <version>1</version><dependencies><dependency><groupId>g</groupId>
        <artifactId>b</artifactId><version>2</version><optional>true</optional>
        </dependency></dependencies></project>"""
        manifest = parse_pom_text(content)
        assert manifest.entries[0].optional is True

    def test_parse_yaml_file(self, sample_yaml_manifest):
        """Test parsing the YAML manifest schema."""
        manifest = parse_manifest_file(str(sample_yaml_manifest))

        assert manifest.label == "com.example:service:2.1"
        assert len(manifest.entries) == 2
        tools = manifest.entry_for(Coordinate("com.example", "tools"))
        assert tools.scope is Scope.RUNTIME
        assert tools.optional is True
        assert manifest.dependency_management == {
            Coordinate("com.google.guava", "guava"): "20.0"
        }

    def test_parse_json_text(self):
        """Test parsing the JSON manifest schema."""
        content = json.dumps(
            {
                "coordinate": "g:root",
                "version": "1",
                "dependencies": [{"coordinate": "g:a"}],
                "dependency_management": {"g:a": "3.0"},
            }
        )
        manifest = parse_json_text(content)
        assert manifest.entries[0].version == "3.0"

    def test_parse_toml_text(self):
        """Test parsing the TOML manifest schema."""
        content = """
coordinate = "g:root"
version = "1"

[[dependencies]]
coordinate = "g:a"
version = "1.2"
exclusions = ["g:b"]
"""
        manifest = parse_toml_text(content)
        assert manifest.entries[0].excludes(Coordinate("g", "b"))

    def test_parse_optional_flag(self):
        """Test optional flags accept booleans and true/false strings only."""

        def manifest_with(optional):
            return json.dumps(
                {
                    "coordinate": "g:root",
                    "version": "1",
                    "dependencies": [{"coordinate": "g:a", "version": "1", "optional": optional}],
                }
            )

        assert parse_json_text(manifest_with(True)).entries[0].optional is True
        assert parse_json_text(manifest_with("false")).entries[0].optional is False
        assert parse_json_text(manifest_with(" TRUE ")).entries[0].optional is True

        toml_text = 'coordinate = "g:root"\nversion = "1"\n\n[[dependencies]]\n'
        toml_text += 'coordinate = "g:a"\nversion = "1"\noptional = "false"\n'
        assert parse_toml_text(toml_text).entries[0].optional is False

        for bad in ["no", 1, None]:
            with pytest.raises(MalformedManifestError, match="Optional flag of g:a"):
                parse_json_text(manifest_with(bad))

    def test_parse_json_missing_fields(self):
        """Test documents missing required fields are malformed."""
        with pytest.raises(MalformedManifestError):
            parse_json_text('{"version": "1"}')
        with pytest.raises(MalformedManifestError):
            parse_json_text("[]")
        with pytest.raises(MalformedManifestError):
            parse_json_text("{not json")

    def test_detect_file_type(self):
        """Test manifest format detection."""
        assert detect_file_type("pom.xml") == "pom"
        assert detect_file_type("guava-10.0.pom") == "pom"
        assert detect_file_type("deps.yml") == "yaml"
        assert detect_file_type("deps.toml") == "toml"
        with pytest.raises(MalformedManifestError):
            detect_file_type("build.gradle")

    def test_load_missing_file(self, temp_dir):
        """Test loading a manifest that does not exist."""
        with pytest.raises(NotFoundError):
            load(str(temp_dir / "nope.xml"))

    def test_load_disallowed_extension(self, temp_dir):
        """Test files with unsupported extensions are rejected."""
        path = temp_dir / "build.gradle"
        path.write_text("dependencies {}")
        with pytest.raises(MalformedManifestError):
            load(str(path))

    def test_load_coordinate_locator(self):
        """Test loading a manifest by group:artifact:version."""
        repository = InMemoryRepository([_manifest("g:a", "1")])
        assert load("g:a:1", repository).label == "g:a:1"
        with pytest.raises(NotFoundError):
            load("g:a:2", repository)

    def test_parse_error_is_reported(self, temp_dir):
        """Test parse failures are recorded by the error handler."""
        path = temp_dir / "broken.json"
        path.write_text("{broken")
        seen = []

        with pytest.raises(MalformedManifestError):
            parse_manifest_file(str(path), error_callback=seen.append)

        assert len(seen) == 1
        assert get_error_handler().get_error_stats().get("MANIFEST_ERROR") == 1


class TestGraphBuilder:
    """Test dependency graph construction."""

    def test_builds_transitive_graph(self, conflict_repository):
        """Test the full graph is built in declaration order."""
        root, repository = conflict_repository
        graph = build_graph(root, repository)

        assert _labels(graph) == [
            "g:root:1",
            "g:a:1",
            "g:lib:1.0",
            "g:b:1",
            "g:c:1",
            "g:lib:2.0",
        ]
        assert [node.depth for node in graph.nodes] == [0, 1, 2, 1, 2, 3]
        assert [node.order for node in graph.nodes] == list(range(6))
        assert graph.max_depth == 3
        assert graph.coordinates() == (
            Coordinate("g", "a"),
            Coordinate("g", "lib"),
            Coordinate("g", "b"),
            Coordinate("g", "c"),
        )
        lib_nodes = graph.candidates("g:lib")
        assert [node.path for node in lib_nodes] == [
            ("g:root:1", "g:a:1", "g:lib:1.0"),
            ("g:root:1", "g:b:1", "g:c:1", "g:lib:2.0"),
        ]
        edges = [(parent.label, child.label) for parent, child in graph.iter_edges()]
        assert ("g:c:1", "g:lib:2.0") in edges
        assert len(edges) == len(graph) - 1

    def test_exclusions_propagate_down_the_subtree(self):
        """Test an exclusion prunes the coordinate at any depth below it."""
        repository = InMemoryRepository(
            [
                _manifest("g:a", "1", _dep("g:b", "1")),
                _manifest("g:b", "1", _dep("g:excluded", "1"), _dep("g:kept", "1")),
                _manifest("g:kept", "1"),
                _manifest("g:excluded", "1"),
            ]
        )
        root = _manifest("g:root", "1", _dep("g:a", "1", exclusions=["g:excluded"]))

        graph = build_graph(root, repository)

        assert "g:excluded:1" not in _labels(graph)
        assert "g:kept:1" in _labels(graph)

    def test_exclusions_only_apply_to_their_own_path(self):
        """Test an exclusion on one edge does not prune a sibling's subtree."""
        repository = InMemoryRepository(
            [
                _manifest("g:a", "1", _dep("g:shared", "1")),
                _manifest("g:b", "1", _dep("g:shared", "1")),
                _manifest("g:shared", "1"),
            ]
        )
        root = _manifest(
            "g:root",
            "1",
            _dep("g:a", "1", exclusions=["g:*"]),
            _dep("g:b", "1"),
        )

        graph = build_graph(root, repository)

        shared = graph.candidates("g:shared")
        assert len(shared) == 1
        assert shared[0].parent.label == "g:b:1"

    def test_cycle_detection(self):
        """Test a coordinate reappearing on its own path raises with the cycle."""
        repository = InMemoryRepository(
            [
                _manifest("g:a", "1", _dep("g:b", "1")),
                _manifest("g:b", "1", _dep("g:a", "2")),
                _manifest("g:a", "2"),
            ]
        )
        root = _manifest("g:root", "1", _dep("g:a", "1"))

        with pytest.raises(CyclicDependencyError) as exc_info:
            build_graph(root, repository)

        assert exc_info.value.cycle == ("g:a:1", "g:b:1", "g:a:2")
        assert "g:a:1 -> g:b:1 -> g:a:2" in str(exc_info.value)
        assert get_error_handler().get_error_stats().get("GRAPH_ERROR") == 1

    def test_cycle_through_root(self):
        """Test a dependency back onto the root project is a cycle."""
        repository = InMemoryRepository([_manifest("g:a", "1", _dep("g:root", "1"))])
        root = _manifest("g:root", "1", _dep("g:a", "1"))

        with pytest.raises(CyclicDependencyError) as exc_info:
            build_graph(root, repository)

        assert exc_info.value.cycle == ("g:root:1", "g:a:1", "g:root:1")

    def test_diamond_is_not_a_cycle(self):
        """Test a coordinate reached on two separate paths is fine."""
        repository = InMemoryRepository(
            [
                _manifest("g:a", "1", _dep("g:d", "1")),
                _manifest("g:b", "1", _dep("g:d", "1")),
                _manifest("g:d", "1"),
            ]
        )
        root = _manifest("g:root", "1", _dep("g:a", "1"), _dep("g:b", "1"))

        graph = build_graph(root, repository)
        assert len(graph.candidates("g:d")) == 2

    def test_missing_manifest(self):
        """Test an unreachable dependency fails the build."""
        root = _manifest("g:root", "1", _dep("g:ghost", "1"))
        with pytest.raises(NotFoundError):
            build_graph(root, InMemoryRepository())

    @pytest.mark.asyncio
    async def test_fetches_are_deduplicated(self):
        """Test each (coordinate, version) is fetched once per build."""
        repository = CountingRepository(
            [
                _manifest("g:a", "1", _dep("g:shared", "1")),
                _manifest("g:b", "1", _dep("g:shared", "1")),
                _manifest("g:c", "1", _dep("g:shared", "1")),
                _manifest("g:shared", "1"),
            ],
            delays={"g:shared:1": 0.01},
        )
        root = _manifest(
            "g:root", "1", _dep("g:a", "1"), _dep("g:b", "1"), _dep("g:c", "1")
        )

        builder = GraphBuilder(repository)
        graph = await builder.build(root)

        assert repository.fetches["g:shared:1"] == 1
        assert len(graph.candidates("g:shared")) == 3
        assert builder.last_cache_stats["misses"] == 4
        assert builder.last_cache_stats["hits"] == 2

    @pytest.mark.asyncio
    async def test_graph_independent_of_fetch_timing(self):
        """Test completion order of concurrent fetches does not change the graph."""
        manifests = [
            _manifest("g:a", "1", _dep("g:x", "1")),
            _manifest("g:b", "1", _dep("g:x", "2")),
            _manifest("g:x", "1"),
            _manifest("g:x", "2"),
        ]
        root = _manifest("g:root", "1", _dep("g:a", "1"), _dep("g:b", "1"))

        slow_first = CountingRepository(manifests, delays={"g:a:1": 0.03, "g:x:1": 0.02})
        slow_last = CountingRepository(manifests, delays={"g:b:1": 0.03, "g:x:2": 0.02})

        first = await GraphBuilder(slow_first).build(root)
        second = await GraphBuilder(slow_last).build(root)

        assert _labels(first) == _labels(second)
        assert resolve(first) == resolve(second)

    @pytest.mark.asyncio
    async def test_max_concurrent_is_respected(self):
        """Test no more than max_concurrent fetches run at once."""
        active = 0
        peak = 0

        class TrackingRepository(InMemoryRepository):
            async def fetch(self, coordinate, version):
                nonlocal active, peak
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.01)
                active -= 1
                return await super().fetch(coordinate, version)

        names = [f"g:lib{i}" for i in range(8)]
        repository = TrackingRepository([_manifest(name, "1") for name in names])
        root = _manifest("g:root", "1", *[_dep(name, "1") for name in names])

        await GraphBuilder(repository, max_concurrent=2).build(root)

        assert peak == 2

    def test_scopes_filter_root_dependencies(self):
        """Test test-scoped dependencies are skipped unless requested."""
        repository = InMemoryRepository([_manifest("g:a", "1"), _manifest("junit:junit", "4")])
        root = _manifest("g:root", "1", _dep("g:a", "1"), _dep("junit:junit", "4", scope="test"))

        assert "junit:junit:4" not in _labels(build_graph(root, repository))
        with_tests = build_graph(root, repository, scopes=["compile", "test"])
        assert "junit:junit:4" in _labels(with_tests)

    def test_transitive_optional_and_test_are_not_followed(self):
        """Test optional and test dependencies of dependencies are skipped."""
        repository = InMemoryRepository(
            [
                _manifest(
                    "g:a",
                    "1",
                    _dep("g:opt", "1", optional=True),
                    _dep("junit:junit", "4", scope="test"),
                    _dep("g:rt", "1", scope="runtime"),
                ),
                _manifest("g:rt", "1"),
            ]
        )
        root = _manifest("g:root", "1", _dep("g:a", "1"))

        graph = build_graph(root, repository)

        assert _labels(graph) == ["g:root:1", "g:a:1", "g:rt:1"]
        assert graph.candidates("g:rt")[0].scope is Scope.RUNTIME

    def test_scope_mediation(self):
        """Test transitive scopes follow the parent's scope."""
        assert mediate_scope(Scope.COMPILE, Scope.COMPILE) is Scope.COMPILE
        assert mediate_scope(Scope.RUNTIME, Scope.COMPILE) is Scope.RUNTIME
        assert mediate_scope(Scope.PROVIDED, Scope.RUNTIME) is Scope.PROVIDED
        assert mediate_scope(Scope.COMPILE, Scope.TEST) is None
        assert mediate_scope(Scope.COMPILE, Scope.PROVIDED) is None

    def test_dependency_management_redirects_expansion(self):
        """Test a managed version's manifest is expanded instead of the requested one."""
        repository = InMemoryRepository(
            [
                _manifest("g:a", "1", _dep("g:lib", "1.0")),
                _manifest("g:lib", "2.0", _dep("g:extra", "1")),
                _manifest("g:extra", "1"),
            ]
        )
        root = _manifest("g:root", "1", _dep("g:a", "1"), management={"g:lib": "2.0"})

        graph = build_graph(root, repository)

        (lib,) = graph.candidates("g:lib")
        assert lib.requested_version == "1.0"
        assert lib.managed_version == "2.0"
        assert lib.version == "2.0"
        assert "g:extra:1" in _labels(graph)
        assert graph.overrides == {Coordinate("g", "lib"): "2.0"}

    def test_explicit_overrides_replace_management(self):
        """Test explicit overrides take the place of the root's management."""
        repository = InMemoryRepository(
            [_manifest("g:a", "1", _dep("g:lib", "1.0")), _manifest("g:lib", "1.0")]
        )
        root = _manifest("g:root", "1", _dep("g:a", "1"), management={"g:lib": "9.9"})

        graph = build_graph(root, repository, overrides={})

        assert graph.candidates("g:lib")[0].managed_version is None

    def test_repository_returning_wrong_manifest(self):
        """Test a manifest whose identity does not match the request is rejected."""

        class WrongRepository(InMemoryRepository):
            async def fetch(self, coordinate, version):
                return _manifest(str(coordinate), "0.0-wrong")

        root = _manifest("g:root", "1", _dep("g:a", "1"))
        with pytest.raises(MalformedManifestError):
            build_graph(root, WrongRepository())


class TestFetchCache:
    """Test the per-build manifest fetch cache."""

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_fetch(self):
        """Test concurrent requests for the same key share one task."""
        calls = []

        async def loader(coordinate, version):
            calls.append((coordinate, version))
            await asyncio.sleep(0.01)
            return _manifest(str(coordinate), version)

        cache = ManifestFetchCache(loader)
        coordinate = Coordinate("g", "a")
        results = await asyncio.gather(*(cache.get(coordinate, "1") for _ in range(5)))

        assert len(calls) == 1
        assert all(result is results[0] for result in results)
        assert FetchKey(coordinate, "1") in cache
        assert cache.stats.get_stats()["hits"] == 4

    @pytest.mark.asyncio
    async def test_failures_are_shared(self):
        """Test every waiter sees the same failure."""

        async def loader(coordinate, version):
            raise NotFoundError("gone", coordinate.label(version))

        cache = ManifestFetchCache(loader)
        coordinate = Coordinate("g", "a")
        results = await asyncio.gather(
            cache.get(coordinate, "1"), cache.get(coordinate, "1"), return_exceptions=True
        )

        assert all(isinstance(result, NotFoundError) for result in results)
        assert cache.stats.failures == 1
        assert cache.fetched() == {}
        assert cache.clear() == 1
        assert len(cache) == 0


class TestConflictResolver:
    """Test nearest-wins conflict resolution."""

    def test_nearest_wins(self, conflict_repository):
        """Test the shallower candidate wins regardless of version."""
        root, repository = conflict_repository
        result = resolve(build_graph(root, repository))

        assert result.version_of("g:lib") == "1.0"
        winner = result.winner("g:lib")
        assert winner.depth == 2
        assert winner.path == ("g:root:1", "g:a:1", "g:lib:1.0")
        reasons = [c.omitted_reason for c in result.candidates[Coordinate("g", "lib")]]
        assert reasons == [None, OMITTED_FOR_CONFLICT]

    def test_first_declaration_breaks_ties(self):
        """Test equally near candidates resolve to the first declared."""
        repository = InMemoryRepository(
            [
                _manifest("g:a", "1", _dep("g:lib", "2.0")),
                _manifest("g:b", "1", _dep("g:lib", "1.0")),
                _manifest("g:lib", "1.0"),
                _manifest("g:lib", "2.0"),
            ]
        )
        root = _manifest("g:root", "1", _dep("g:a", "1"), _dep("g:b", "1"))
        assert resolve(build_graph(root, repository)).version_of("g:lib") == "2.0"

        swapped = _manifest("g:root", "1", _dep("g:b", "1"), _dep("g:a", "1"))
        assert resolve(build_graph(swapped, repository)).version_of("g:lib") == "1.0"

    def test_override_wins(self, conflict_repository):
        """Test a forced version beats nearest-wins."""
        root, repository = conflict_repository
        graph = build_graph(root, repository)

        result = resolve(graph, {"g:lib": "2.0"})

        assert result.version_of("g:lib") == "2.0"
        assert Coordinate("g", "lib") in result.overridden
        assert result.version_of("g:a") == "1"

    def test_forced_version_brings_its_own_dependencies(self):
        """Test a forced version keeps the subtree it was expanded with."""
        repository = InMemoryRepository(
            [
                _manifest("g:a", "1", _dep("g:lib", "1.0")),
                _manifest("g:b", "1", _dep("g:c", "1")),
                _manifest("g:c", "1", _dep("g:lib", "2.0")),
                _manifest("g:lib", "1.0", _dep("g:old-dep", "1")),
                _manifest("g:lib", "2.0", _dep("g:new-dep", "1")),
                _manifest("g:old-dep", "1"),
                _manifest("g:new-dep", "1"),
            ]
        )
        root = _manifest("g:root", "1", _dep("g:a", "1"), _dep("g:b", "1"))
        graph = build_graph(root, repository)

        result = resolve(graph, {"g:lib": "2.0"})

        assert result.version_of("g:lib") == "2.0"
        assert result.version_of("g:new-dep") == "1"
        assert Coordinate("g", "old-dep") not in result
        assert result.winner("g:lib").depth == 3
        assert result.unexpanded == frozenset()
        reasons = [c.omitted_reason for c in result.candidates[Coordinate("g", "lib")]]
        assert reasons == [OMITTED_FOR_CONFLICT, None]
        (old,) = result.candidates[Coordinate("g", "old-dep")]
        assert old.omitted_reason == OMITTED_WITH_PARENT
        assert [entry.label for entry in result.classpath()] == [
            "g:a:1",
            "g:b:1",
            "g:c:1",
            "g:lib:2.0",
            "g:new-dep:1",
        ]

        unforced = resolve(graph)
        assert unforced.version_of("g:old-dep") == "1"
        assert Coordinate("g", "new-dep") not in unforced

    def test_forced_version_missing_from_graph(self):
        """Test forcing a version no node was expanded at keeps no subtree."""
        repository = InMemoryRepository(
            [
                _manifest("g:a", "1", _dep("g:lib", "1.0")),
                _manifest("g:lib", "1.0", _dep("g:old-dep", "1")),
                _manifest("g:old-dep", "1"),
            ]
        )
        root = _manifest("g:root", "1", _dep("g:a", "1"))

        result = resolve(build_graph(root, repository), {"g:lib": "3.0"})

        assert result.version_of("g:lib") == "3.0"
        assert Coordinate("g", "old-dep") not in result
        assert result.unexpanded == frozenset({Coordinate("g", "lib")})
        assert result.winner("g:lib").depth == 2
        assert result.to_dict()["unexpanded"] == ["g:lib"]

    def test_management_is_the_default_override(self):
        """Test the root's dependency management forces versions."""
        repository = InMemoryRepository(
            [
                _manifest("g:a", "1", _dep("g:lib", "1.0")),
                _manifest("g:lib", "3.0"),
            ]
        )
        root = _manifest("g:root", "1", _dep("g:a", "1"), management={"g:lib": "3.0"})

        result = resolve(build_graph(root, repository))

        assert result.version_of("g:lib") == "3.0"
        assert result.overridden == frozenset({Coordinate("g", "lib")})

    def test_resolve_is_pure(self, conflict_repository):
        """Test resolve leaves the graph untouched and repeats exactly."""
        root, repository = conflict_repository
        graph = build_graph(root, repository)
        snapshot = [(n.label, n.depth, n.order, len(n.children)) for n in graph.nodes]

        first = resolve(graph)
        resolve(graph, {"g:lib": "2.0"})
        second = resolve(graph)

        assert first == second
        assert first.to_dict() == second.to_dict()
        assert [(n.label, n.depth, n.order, len(n.children)) for n in graph.nodes] == snapshot

    def test_losing_subtree_is_omitted(self):
        """Test dependencies reachable only through a losing candidate are dropped."""
        repository = InMemoryRepository(
            [
                _manifest("g:a", "1", _dep("g:x", "1")),
                _manifest("g:x", "1", _dep("g:only-old", "1")),
                _manifest("g:x", "2"),
                _manifest("g:only-old", "1"),
            ]
        )
        root = _manifest("g:root", "1", _dep("g:a", "1"), _dep("g:x", "2"))

        result = resolve(build_graph(root, repository))

        assert result.version_of("g:x") == "2"
        assert Coordinate("g", "only-old") not in result
        (candidate,) = result.candidates[Coordinate("g", "only-old")]
        assert candidate.omitted_reason == OMITTED_WITH_PARENT

    def test_duplicates_are_marked(self):
        """Test a repeated identical version is omitted as a duplicate."""
        repository = InMemoryRepository(
            [
                _manifest("g:a", "1", _dep("g:d", "1")),
                _manifest("g:b", "1", _dep("g:d", "1")),
                _manifest("g:d", "1"),
            ]
        )
        root = _manifest("g:root", "1", _dep("g:a", "1"), _dep("g:b", "1"))

        result = resolve(build_graph(root, repository))

        reasons = [c.omitted_reason for c in result.candidates[Coordinate("g", "d")]]
        assert reasons == [None, OMITTED_FOR_DUPLICATE]

    def test_classpath_follows_traversal_order(self, conflict_repository):
        """Test the classpath lists winners in depth-first declaration order."""
        root, repository = conflict_repository
        result = resolve(build_graph(root, repository))

        assert [entry.label for entry in result.classpath()] == [
            "g:a:1",
            "g:lib:1.0",
            "g:b:1",
            "g:c:1",
        ]

    def test_classpath_locations(self, conflict_repository):
        """Test artifact locations come from the repository."""
        root, repository = conflict_repository
        repository.add(_manifest("g:a", "1", _dep("g:lib", "1.0")), location="/jars/a-1.jar")

        entries = resolve(build_graph(root, repository)).classpath(repository)

        assert entries[0].location == "/jars/a-1.jar"
        assert entries[1].location is None

    def test_empty_project(self):
        """Test a project without dependencies resolves to nothing."""
        graph = build_graph(_manifest("g:root", "1"), InMemoryRepository())
        result = resolve(graph)
        assert len(result) == 0
        assert result.classpath() == []


class TestConvergenceChecker:
    """Test dependency convergence checking."""

    def test_reports_conflict_with_every_path(self, conflict_repository):
        """Test a diverging coordinate is reported with both paths."""
        root, repository = conflict_repository
        report = check(build_graph(root, repository))

        assert len(report) == 1
        conflict = report.conflict_for("g:lib")
        assert conflict.versions == ("1.0", "2.0")
        assert [p.path for p in conflict.paths] == [
            ("g:root:1", "g:a:1", "g:lib:1.0"),
            ("g:root:1", "g:b:1", "g:c:1", "g:lib:2.0"),
        ]
        assert [p.depth for p in conflict.paths] == [2, 3]

    def test_converged_graph(self):
        """Test a graph with one version per coordinate has an empty report."""
        repository = InMemoryRepository(
            [
                _manifest("g:a", "1", _dep("g:d", "1")),
                _manifest("g:b", "1", _dep("g:d", "1")),
                _manifest("g:d", "1"),
            ]
        )
        root = _manifest("g:root", "1", _dep("g:a", "1"), _dep("g:b", "1"))

        report = check(build_graph(root, repository))

        assert report.is_empty
        assert report.to_dict() == {"converged": True, "conflict_count": 0, "conflicts": []}

    def test_uses_requested_versions_before_overrides(self, conflict_repository):
        """Test overrides do not hide divergence from the report."""
        root, repository = conflict_repository
        managed_root = make_manifest(
            "g:root",
            "1",
            root.entries,
            dependency_management={"g:lib": "2.0"},
        )

        graph = build_graph(managed_root, repository)
        report = check(graph)

        assert resolve(graph).version_of("g:lib") == "2.0"
        assert report.conflict_for("g:lib").versions == ("1.0", "2.0")

    def test_conflicts_sorted_by_coordinate(self):
        """Test the report is ordered by coordinate."""
        repository = InMemoryRepository(
            [
                _manifest("g:a", "1", _dep("z:z", "1"), _dep("b:b", "1")),
                _manifest("z:z", "1"),
                _manifest("z:z", "2"),
                _manifest("b:b", "1"),
                _manifest("b:b", "2"),
            ]
        )
        root = _manifest("g:root", "1", _dep("g:a", "1"), _dep("z:z", "2"), _dep("b:b", "2"))

        report = check(build_graph(root, repository))

        assert [str(c) for c in report.coordinates()] == ["b:b", "z:z"]

    def test_format_lines(self, conflict_repository):
        """Test the human-readable report text."""
        root, repository = conflict_repository
        lines = check(build_graph(root, repository)).format_lines()

        assert (
            "Dependency convergence error for g:lib (versions 1.0, 2.0) "
            "paths to dependency are:"
        ) in lines
        assert "and" in lines
        assert "      +-g:lib:2.0" in lines
