import json
import re
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import toml
import yaml

from .cli_config import get_config
from .error_handling import (
    ErrorCallback,
    ErrorCategory,
    MalformedManifestError,
    NotFoundError,
    get_error_handler,
    log_manifest_error,
)
from .manifest import Coordinate, Manifest, ManifestEntry, make_entry, make_manifest

_PROPERTY_PATTERN = re.compile(r"\$\{([^}]+)\}")


def _validate_file_path(file_path: str) -> Path:
    """
    Validate a manifest path before reading it.

    Raises:
        NotFoundError: If the file does not exist or is not a regular file
        MalformedManifestError: If the file type or size is not acceptable
    """
    if not file_path or not isinstance(file_path, str):
        raise NotFoundError("Manifest path must be a non-empty string", file_path)

    try:
        path = Path(file_path).resolve()
    except (OSError, ValueError) as e:
        raise NotFoundError(f"Invalid manifest path: {e}", file_path)

    if not path.exists():
        raise NotFoundError(f"Manifest does not exist: {path}", file_path)

    if not path.is_file():
        raise NotFoundError(f"Manifest path is not a file: {path}", file_path)

    config = get_config()
    allowed_extensions = set(config.security.allowed_file_extensions)
    if path.suffix.lower() not in allowed_extensions:
        raise MalformedManifestError(f"Manifest type not allowed: {path.suffix}", file_path)

    file_size = path.stat().st_size
    max_file_size = config.security.max_file_size_bytes
    if file_size > max_file_size:
        raise MalformedManifestError(
            f"Manifest too large: {file_size} bytes (max: {max_file_size})", file_path
        )

    return path


def _safe_read_file(path: Path) -> str:
    """Read a validated manifest as UTF-8 text."""
    try:
        with open(path, encoding="utf-8") as f:
            return f.read()
    except UnicodeDecodeError:
        raise MalformedManifestError("Manifest contains invalid UTF-8 characters", str(path))
    except PermissionError:
        raise NotFoundError("Permission denied reading manifest", str(path))
    except OSError as e:
        raise NotFoundError(f"Error reading manifest: {e}", str(path))


def _local_name(tag: str) -> str:
    return tag.split("}")[-1] if "}" in tag else tag


def _child(element: Optional[ET.Element], name: str) -> Optional[ET.Element]:
    """First direct child with local tag ``name``, namespace-agnostic."""
    if element is None:
        return None
    for child in element:
        if _local_name(child.tag) == name:
            return child
    return None


def _children(element: Optional[ET.Element], name: str) -> List[ET.Element]:
    if element is None:
        return []
    return [child for child in element if _local_name(child.tag) == name]


def _text(element: Optional[ET.Element], name: str) -> Optional[str]:
    child = _child(element, name)
    if child is None or child.text is None:
        return None
    value = child.text.strip()
    return value or None


class _PomInterpolator:
    """Expands ``${...}`` references against POM properties."""

    def __init__(self, properties: Dict[str, str], source: str):
        self.properties = properties
        self.source = source

    def expand(self, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None

        # Bounded so self-referencing properties cannot loop forever
        for _ in range(10):
            if "${" not in value:
                return value

            def substitute(match: "re.Match[str]") -> str:
                key = match.group(1)
                if key not in self.properties:
                    raise MalformedManifestError(
                        f"Unresolved property ${{{key}}}", self.source
                    )
                return self.properties[key]

            value = _PROPERTY_PATTERN.sub(substitute, value)

        raise MalformedManifestError(f"Property expansion does not terminate: {value}", self.source)


def _parse_pom_dependency(
    element: ET.Element,
    interpolate: _PomInterpolator,
    managed: Dict[Coordinate, str],
    source: str,
) -> ManifestEntry:
    group_id = interpolate.expand(_text(element, "groupId"))
    artifact_id = interpolate.expand(_text(element, "artifactId"))
    if not group_id or not artifact_id:
        raise MalformedManifestError(
            "Dependency is missing groupId or artifactId", source
        )

    coordinate = Coordinate(group_id, artifact_id)
    version = interpolate.expand(_text(element, "version")) or managed.get(coordinate)
    if not version:
        raise MalformedManifestError(
            f"Dependency {coordinate} has no version and is not managed", source
        )

    exclusions = []
    for exclusion in _children(_child(element, "exclusions"), "exclusion"):
        excl_group = interpolate.expand(_text(exclusion, "groupId"))
        excl_artifact = interpolate.expand(_text(exclusion, "artifactId"))
        if not excl_group or not excl_artifact:
            raise MalformedManifestError(
                f"Exclusion under {coordinate} is missing groupId or artifactId", source
            )
        exclusions.append(f"{excl_group}:{excl_artifact}")

    return make_entry(
        str(coordinate),
        version,
        scope=interpolate.expand(_text(element, "scope")),
        exclusions=exclusions,
        optional=(_text(element, "optional") or "false").lower() == "true",
    )


def parse_pom_text(content: str, source: str = "pom.xml") -> Manifest:
    """
    Parse the text of a Maven POM into a Manifest.

    Group and version are inherited from ``<parent>`` when absent. Only the
    POM's own properties are available for interpolation; parent POMs are
    not fetched.
    """
    try:
        root = ET.fromstring(content)
    except ET.ParseError as e:
        raise MalformedManifestError(f"Invalid XML format: {e}", source)

    if _local_name(root.tag) != "project":
        raise MalformedManifestError("Root element must be <project>", source)

    parent = _child(root, "parent")
    properties: Dict[str, str] = {}
    properties_element = _child(root, "properties")
    if properties_element is not None:
        for prop in properties_element:
            properties[_local_name(prop.tag)] = (prop.text or "").strip()

    raw_group = _text(root, "groupId") or _text(parent, "groupId")
    raw_artifact = _text(root, "artifactId")
    raw_version = _text(root, "version") or _text(parent, "version")

    for key, value in (
        ("project.groupId", raw_group),
        ("project.artifactId", raw_artifact),
        ("project.version", raw_version),
        ("project.parent.groupId", _text(parent, "groupId")),
        ("project.parent.version", _text(parent, "version")),
    ):
        if value is not None:
            properties.setdefault(key, value)

    interpolate = _PomInterpolator(properties, source)
    group_id = interpolate.expand(raw_group)
    artifact_id = interpolate.expand(raw_artifact)
    version = interpolate.expand(raw_version)
    if not group_id or not artifact_id or not version:
        raise MalformedManifestError(
            "POM must declare groupId, artifactId and version (directly or via parent)",
            source,
        )

    managed: Dict[Coordinate, str] = {}
    management = _child(_child(root, "dependencyManagement"), "dependencies")
    for dep in _children(management, "dependency"):
        dep_group = interpolate.expand(_text(dep, "groupId"))
        dep_artifact = interpolate.expand(_text(dep, "artifactId"))
        dep_version = interpolate.expand(_text(dep, "version"))
        if not dep_group or not dep_artifact or not dep_version:
            raise MalformedManifestError(
                "Managed dependency needs groupId, artifactId and version", source
            )
        managed[Coordinate(dep_group, dep_artifact)] = dep_version

    entries = [
        _parse_pom_dependency(dep, interpolate, managed, source)
        for dep in _children(_child(root, "dependencies"), "dependency")
    ]

    return Manifest(
        coordinate=Coordinate(group_id, artifact_id),
        version=version,
        entries=tuple(entries),
        dependency_management=managed,
        source=source,
    )


def _optional_flag(value: Any, coordinate: str, source: str) -> bool:
    """Booleans pass through; "true" and "false" are read the way POMs spell them."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise MalformedManifestError(
        f"Optional flag of {coordinate} must be true or false, got {value!r}", source
    )


def _manifest_from_mapping(data: Any, source: str) -> Manifest:
    """Build a Manifest from the JSON/YAML/TOML manifest schema."""
    if not isinstance(data, dict):
        raise MalformedManifestError("Manifest document must be a mapping", source)

    for required in ("coordinate", "version"):
        if required not in data:
            raise MalformedManifestError(f"Manifest is missing '{required}'", source)

    dependencies = data.get("dependencies") or []
    if not isinstance(dependencies, list):
        raise MalformedManifestError("'dependencies' must be a list", source)

    management = data.get("dependency_management") or {}
    if not isinstance(management, dict):
        raise MalformedManifestError("'dependency_management' must be a mapping", source)

    entries = []
    for index, dep in enumerate(dependencies):
        if not isinstance(dep, dict) or "coordinate" not in dep:
            raise MalformedManifestError(
                f"Dependency #{index + 1} must be a mapping with a 'coordinate'", source
            )
        version = dep.get("version") or management.get(dep["coordinate"])
        if version is None:
            raise MalformedManifestError(
                f"Dependency {dep['coordinate']} has no version and is not managed", source
            )
        exclusions = dep.get("exclusions") or []
        if not isinstance(exclusions, list):
            raise MalformedManifestError(
                f"Exclusions of {dep['coordinate']} must be a list", source
            )
        entries.append(
            make_entry(
                dep["coordinate"],
                str(version),
                scope=dep.get("scope"),
                exclusions=exclusions,
                optional=_optional_flag(dep.get("optional", False), dep["coordinate"], source),
            )
        )

    return make_manifest(
        data["coordinate"],
        str(data["version"]),
        entries=entries,
        dependency_management={k: str(v) for k, v in management.items()},
        source=source,
    )


def parse_json_text(content: str, source: str = "manifest.json") -> Manifest:
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise MalformedManifestError(f"Invalid JSON format: {e}", source)
    return _manifest_from_mapping(data, source)


def parse_yaml_text(content: str, source: str = "manifest.yaml") -> Manifest:
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise MalformedManifestError(f"Invalid YAML format: {e}", source)
    return _manifest_from_mapping(data, source)


def parse_toml_text(content: str, source: str = "manifest.toml") -> Manifest:
    try:
        data = toml.loads(content)
    except toml.TomlDecodeError as e:
        raise MalformedManifestError(f"Invalid TOML format: {e}", source)
    return _manifest_from_mapping(data, source)


def get_supported_file_types() -> List[str]:
    """Get list of supported manifest file types."""
    return ["pom.xml", "*.pom", "*.json", "*.yaml", "*.yml", "*.toml"]


def detect_file_type(file_path: str) -> str:
    """
    Detect the manifest format from the file name.

    Raises:
        MalformedManifestError: If the file type is not supported
    """
    name = Path(file_path).name.lower()

    if name.endswith(".pom") or name.endswith("pom.xml"):
        return "pom"
    if name.endswith(".json"):
        return "json"
    if name.endswith(".yaml") or name.endswith(".yml"):
        return "yaml"
    if name.endswith(".toml"):
        return "toml"

    raise MalformedManifestError(f"Unsupported manifest type: {Path(file_path).name}", file_path)


_TEXT_PARSERS: Dict[str, Callable[[str, str], Manifest]] = {
    "pom": parse_pom_text,
    "json": parse_json_text,
    "yaml": parse_yaml_text,
    "toml": parse_toml_text,
}


def parse_manifest_text(content: str, file_type: str, source: str) -> Manifest:
    """Parse manifest text of a known format."""
    try:
        parser = _TEXT_PARSERS[file_type]
    except KeyError:
        raise MalformedManifestError(f"Unsupported manifest format: {file_type}", source)
    return parser(content, source)


def parse_manifest_file(
    file_path: str, error_callback: Optional[ErrorCallback] = None
) -> Manifest:
    """
    Parse any supported manifest file.

    Args:
        file_path: Path to the manifest
        error_callback: Optional callback for manifest errors

    Returns:
        Manifest: The parsed manifest

    Raises:
        NotFoundError: If the file cannot be reached
        MalformedManifestError: If the file cannot be parsed
    """
    if error_callback:
        get_error_handler().register_callback(error_callback, ErrorCategory.MANIFEST)

    validated_path = _validate_file_path(file_path)
    file_type = detect_file_type(str(validated_path))

    try:
        return parse_manifest_text(
            _safe_read_file(validated_path), file_type, str(validated_path)
        )
    except MalformedManifestError as e:
        log_manifest_error(
            f"Failed to parse manifest: {e}",
            "parsers",
            "parse_manifest_file",
            file_path=str(validated_path),
            exception=e,
        )
        raise
