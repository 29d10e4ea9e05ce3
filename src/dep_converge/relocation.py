"""
Artifact relocation (shading).

Moves the classes of one or more packages into a new namespace and rewrites
every reference to them, so two versions of a library can share a classpath.
Handles JAR/ZIP archives and single class files.

References built at runtime from computed strings (reflection on names
assembled by concatenation, for example) cannot be seen here and are left
untouched.
"""

import asyncio
import io
import re
import time
import zipfile
import zlib
from dataclasses import dataclass
from typing import Iterable, List, Mapping, Optional, Tuple, Union

from .classfile import is_class_file, parse_class
from .cli_config import get_config
from .error_handling import (
    DepConvergeError,
    ErrorCategory,
    UnsupportedArtifactFormatError,
    get_error_handler,
)
from .structured_logging import get_relocation_logger, log_relocation

_PACKAGE_NAME = re.compile(r"^[A-Za-z_$][\w$]*(\.[A-Za-z_$][\w$]*)*$")
_MULTI_RELEASE_PREFIX = re.compile(r"^(META-INF/versions/\d+/)(.*)$")
_ZIP_MAGIC = (b"PK\x03\x04", b"PK\x05\x06")

SERVICES_DIR = "META-INF/services/"
MANIFEST_PATH = "META-INF/MANIFEST.MF"
_MANIFEST_CLASS_ATTRIBUTES = {"main-class", "premain-class", "agent-class", "launcher-agent-class"}


@dataclass(frozen=True)
class RelocationRule:
    """Moves ``source`` (a dotted package or class name) to ``target``."""

    source: str
    target: str

    @property
    def source_path(self) -> str:
        return self.source.replace(".", "/")

    @property
    def target_path(self) -> str:
        return self.target.replace(".", "/")


@dataclass
class RelocationStats:
    rewritten_constants: int = 0
    renamed_entries: int = 0
    rewritten_resources: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.rewritten_constants or self.renamed_entries or self.rewritten_resources)


@dataclass(frozen=True)
class RelocationOutcome:
    """Result of relocating one artifact in a batch."""

    name: str
    data: Optional[bytes] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _parse_rules(prefix_map: Mapping[str, str]) -> List[RelocationRule]:
    rules = []
    for source, target in prefix_map.items():
        for name in (source, target):
            if not isinstance(name, str) or not _PACKAGE_NAME.match(name):
                raise ValueError(f"Invalid package name in relocation map: {name!r}")
        rules.append(RelocationRule(source, target))
    # Longest prefix first so nested packages can be moved separately
    return sorted(rules, key=lambda rule: len(rule.source), reverse=True)


class Relocator:
    """Applies a prefix map to class files, archives and their resources."""

    def __init__(
        self,
        prefix_map: Mapping[str, str],
        rewrite_string_literals: Optional[bool] = None,
        rewrite_services: Optional[bool] = None,
    ):
        config = get_config().relocation
        self.rules = _parse_rules(prefix_map)
        self.rewrite_string_literals = (
            config.rewrite_string_literals
            if rewrite_string_literals is None
            else rewrite_string_literals
        )
        self.rewrite_services = (
            config.rewrite_services if rewrite_services is None else rewrite_services
        )
        self._by_path = {rule.source_path: rule for rule in self.rules}
        self._by_dotted = {rule.source: rule for rule in self.rules}
        self._descriptor_re = self._compile(
            r"(?<![\w$/])L(", [rule.source_path for rule in self.rules], r")(?=[/;<])"
        )
        self._dotted_re = self._compile(
            r"(?<![\w$.])(", [rule.source for rule in self.rules], r")(?=[.$\s#]|$)"
        )

    @staticmethod
    def _compile(head: str, names: Iterable[str], tail: str) -> Optional["re.Pattern[str]"]:
        names = list(names)
        if not names:
            return None
        return re.compile(head + "|".join(re.escape(name) for name in names) + tail, re.M)

    def _match(self, name: str, dotted: bool) -> Optional[Tuple[RelocationRule, str]]:
        separator = "." if dotted else "/"
        for rule in self.rules:
            prefix = rule.source if dotted else rule.source_path
            if name == prefix or name.startswith((prefix + separator, prefix + "$")):
                return rule, name[len(prefix) :]
        return None

    def relocate_dotted(self, name: str) -> str:
        """``com.google.common.base.Joiner`` style names."""
        match = self._match(name, dotted=True)
        if match is None:
            return name
        rule, rest = match
        return rule.target + rest

    def relocate_internal(self, name: str) -> str:
        """``com/google/common/base/Joiner`` style names, or array descriptors."""
        if name.startswith("["):
            return self.relocate_descriptor(name)
        match = self._match(name, dotted=False)
        if match is None:
            return name
        rule, rest = match
        return rule.target_path + rest

    def relocate_descriptor(self, text: str) -> str:
        """Rewrites ``Lcom/google/common/...;`` references inside descriptors and signatures."""
        if self._descriptor_re is None:
            return text
        return self._descriptor_re.sub(
            lambda m: "L" + self._by_path[m.group(1)].target_path, text
        )

    def relocate_literal(self, text: str) -> str:
        """String constants naming a class or a resource path."""
        relocated = self.relocate_dotted(text)
        if relocated != text:
            return relocated
        leading = "/" if text.startswith("/") else ""
        path = text[len(leading) :]
        match = self._match(path, dotted=False)
        if match is None:
            return text
        rule, rest = match
        return leading + rule.target_path + rest

    def relocate_entry_name(self, name: str) -> str:
        """Archive path of a class or resource."""
        versioned = _MULTI_RELEASE_PREFIX.match(name)
        prefix, path = versioned.groups() if versioned else ("", name)
        for rule in self.rules:
            if path.startswith(rule.source_path + "/"):
                return prefix + rule.target_path + path[len(rule.source_path) :]
        return name

    def relocate_class(self, data: bytes) -> Tuple[bytes, int]:
        """Rewrite one class file; returns the new bytes and the changed constant count."""
        class_file = parse_class(data)
        class_names = class_file.class_name_indices()
        strings = class_file.string_indices()

        def rewrite(index: int, text: str) -> str:
            if index in class_names:
                return self.relocate_internal(text)
            if index in strings:
                return self.relocate_literal(text) if self.rewrite_string_literals else text
            return self.relocate_descriptor(text)

        changed = class_file.rewrite_utf8(rewrite)
        if not changed:
            return data, 0
        return class_file.to_bytes(), changed

    def _rewrite_service_file(self, content: bytes) -> bytes:
        if self._dotted_re is None:
            return content
        try:
            text = content.decode("utf-8")
        except UnicodeDecodeError:
            return content
        rewritten = self._dotted_re.sub(
            lambda m: self._by_dotted[m.group(1)].target, text
        )
        return rewritten.encode("utf-8") if rewritten != text else content

    def _rewrite_manifest(self, content: bytes) -> bytes:
        try:
            text = content.decode("utf-8")
        except UnicodeDecodeError:
            return content

        newline = "\r\n" if "\r\n" in text else "\n"
        logical: List[str] = []
        for line in text.split(newline):
            if line.startswith(" ") and logical:
                logical[-1] += line[1:]
            else:
                logical.append(line)

        changed = False
        for index, line in enumerate(logical):
            key, separator, value = line.partition(":")
            if not separator or key.strip().lower() not in _MANIFEST_CLASS_ATTRIBUTES:
                continue
            relocated = self.relocate_dotted(value.strip())
            if relocated != value.strip():
                logical[index] = f"{key}: {relocated}"
                changed = True

        if not changed:
            return content
        folded: List[str] = []
        for line in logical:
            folded.extend(_fold_manifest_line(line))
        return newline.join(folded).encode("utf-8")

    def _relocate_entry(
        self, name: str, content: bytes, stats: RelocationStats
    ) -> Tuple[str, bytes]:
        if name.endswith("/"):
            new_name = self.relocate_entry_name(name)
        elif name.endswith(".class"):
            new_name = self.relocate_entry_name(name)
            content, changed = self.relocate_class(content)
            stats.rewritten_constants += changed
        elif name.startswith(SERVICES_DIR) and self.rewrite_services:
            new_name = SERVICES_DIR + self.relocate_dotted(name[len(SERVICES_DIR) :])
            new_content = self._rewrite_service_file(content)
            if new_content != content:
                stats.rewritten_resources += 1
            content = new_content
        elif name.upper() == MANIFEST_PATH:
            new_name = name
            new_content = self._rewrite_manifest(content)
            if new_content != content:
                stats.rewritten_resources += 1
            content = new_content
        else:
            new_name = self.relocate_entry_name(name)

        if new_name != name:
            stats.renamed_entries += 1
        return new_name, content

    def relocate_archive(self, data: bytes) -> Tuple[bytes, RelocationStats]:
        """Rewrite a JAR/ZIP archive, preserving entry order and metadata."""
        stats = RelocationStats()
        try:
            source = zipfile.ZipFile(io.BytesIO(data))
        except (zipfile.BadZipFile, zipfile.LargeZipFile, OSError, ValueError) as e:
            raise UnsupportedArtifactFormatError(f"Unreadable archive: {e}") from e

        output = io.BytesIO()
        written = set()
        with source, zipfile.ZipFile(output, "w") as target:
            target.comment = source.comment
            for info in source.infolist():
                try:
                    content = source.read(info)
                except (zipfile.BadZipFile, zlib.error, NotImplementedError, RuntimeError) as e:
                    raise UnsupportedArtifactFormatError(
                        f"Cannot read archive entry {info.filename}: {e}"
                    ) from e

                try:
                    new_name, new_content = self._relocate_entry(info.filename, content, stats)
                except UnsupportedArtifactFormatError as e:
                    raise UnsupportedArtifactFormatError(f"{info.filename}: {e}") from e

                if new_name in written:
                    raise UnsupportedArtifactFormatError(
                        f"Relocation maps two entries onto {new_name}"
                    )
                written.add(new_name)
                target.writestr(_copy_zip_info(info, new_name), new_content)

        if not stats.changed:
            return data, stats
        return output.getvalue(), stats

    def relocate_with_stats(self, artifact_bytes: bytes) -> Tuple[bytes, RelocationStats]:
        data = bytes(artifact_bytes)
        if is_class_file(data):
            relocated, changed = self.relocate_class(data)
            return relocated, RelocationStats(rewritten_constants=changed)
        if data[:4] in _ZIP_MAGIC:
            return self.relocate_archive(data)
        raise UnsupportedArtifactFormatError(
            "Artifact is neither a JAR/ZIP archive nor a JVM class file"
        )

    def relocate(self, artifact_bytes: bytes, name: str = "<artifact>") -> bytes:
        """
        Relocate one artifact.

        Raises:
            UnsupportedArtifactFormatError: If the artifact cannot be read
        """
        start_time = time.time()
        relocated, stats = self.relocate_with_stats(artifact_bytes)
        log_relocation(
            name,
            stats.rewritten_constants,
            renamed_entries=stats.renamed_entries,
            rewritten_resources=stats.rewritten_resources,
            duration_ms=int((time.time() - start_time) * 1000),
        )
        return relocated


def _fold_manifest_line(line: str) -> List[str]:
    """Split a manifest line into 72-byte physical lines."""
    if len(line) <= 72 or not line.isascii():
        return [line]
    lines = [line[:72]]
    rest = line[72:]
    while rest:
        lines.append(" " + rest[:71])
        rest = rest[71:]
    return lines


def _copy_zip_info(info: zipfile.ZipInfo, name: str) -> zipfile.ZipInfo:
    copied = zipfile.ZipInfo(name, date_time=info.date_time)
    copied.compress_type = info.compress_type
    copied.comment = info.comment
    copied.create_system = info.create_system
    copied.external_attr = info.external_attr
    copied.internal_attr = info.internal_attr
    return copied


def relocate(artifact_bytes: bytes, prefix_map: Mapping[str, str]) -> bytes:
    """
    Relocate packages inside a JAR archive or class file.

    Args:
        artifact_bytes: Raw artifact content
        prefix_map: Dotted package prefixes mapped to their new prefixes

    Returns:
        bytes: The relocated artifact (the input itself when nothing matched)

    Raises:
        UnsupportedArtifactFormatError: If the artifact format is not supported
        ValueError: If the prefix map contains an invalid package name
    """
    return Relocator(prefix_map).relocate(artifact_bytes)


async def relocate_many(
    artifacts: Union[Mapping[str, bytes], Iterable[Tuple[str, bytes]]],
    prefix_map: Mapping[str, str],
    max_workers: Optional[int] = None,
    **options,
) -> List[RelocationOutcome]:
    """
    Relocate independent artifacts concurrently in worker threads.

    A failure affects only its own outcome; the others still complete.
    Outcomes are returned in input order.
    """
    relocator = Relocator(prefix_map, **options)
    semaphore = asyncio.Semaphore(max_workers or get_config().relocation.max_workers)
    items = list(artifacts.items()) if isinstance(artifacts, Mapping) else list(artifacts)
    logger = get_relocation_logger()

    async def _relocate_one(name: str, data: bytes) -> RelocationOutcome:
        async with semaphore:
            try:
                relocated = await asyncio.to_thread(relocator.relocate, data, name)
            except DepConvergeError as e:
                get_error_handler().warning(
                    ErrorCategory.RELOCATION,
                    f"Could not relocate {name}: {e}",
                    "relocation",
                    "relocate_many",
                    exception=e,
                )
                return RelocationOutcome(name, error=e)
        return RelocationOutcome(name, data=relocated)

    outcomes = await asyncio.gather(*(_relocate_one(name, data) for name, data in items))
    logger.info(
        "relocation_batch_completed",
        artifact_count=len(outcomes),
        failed=sum(1 for outcome in outcomes if not outcome.ok),
    )
    return list(outcomes)
