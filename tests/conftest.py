"""
Shared fixtures for dep-converge tests.
"""

import io
import os
import struct
import zipfile

import pytest

from dep_converge.cli_config import reset_config
from dep_converge.error_handling import setup_error_handling


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path):
    """Keep user config files and DEP_CONVERGE_* variables out of every test."""
    for key in list(os.environ):
        if key.startswith("DEP_CONVERGE_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.chdir(tmp_path)
    reset_config()
    setup_error_handling()
    yield
    reset_config()


@pytest.fixture
def temp_dir(tmp_path):
    """Scratch directory for files written by a test."""
    directory = tmp_path / "work"
    directory.mkdir()
    return directory


@pytest.fixture
def sample_pom(temp_dir):
    """A POM using properties, dependency management and exclusions."""
    content = """<?xml version="1.0" encoding="UTF-8"?>
<project xmlns="http://maven.apache.org/POM/4.0.0">
  <modelVersion>4.0.0</modelVersion>
  <parent>
    <groupId>com.example</groupId>
    <artifactId>parent</artifactId>
    <version>1.0</version>
  </parent>
  <artifactId>app</artifactId>
  <properties>
    <guava.version>20.0</guava.version>
  </properties>
  <dependencyManagement>
    <dependencies>
      <dependency>
        <groupId>org.slf4j</groupId>
        <artifactId>slf4j-api</artifactId>
        <version>1.7.36</version>
      </dependency>
    </dependencies>
  </dependencyManagement>
  <dependencies>
    <dependency>
      <groupId>com.google.guava</groupId>
      <artifactId>guava</artifactId>
      <version>${guava.version}</version>
    </dependency>
    <dependency>
      <groupId>com.example</groupId>
      <artifactId>lib</artifactId>
      <version>${project.version}</version>
      <exclusions>
        <exclusion>
          <groupId>commons-logging</groupId>
          <artifactId>*</artifactId>
        </exclusion>
      </exclusions>
    </dependency>
    <dependency>
      <groupId>org.slf4j</groupId>
      <artifactId>slf4j-api</artifactId>
    </dependency>
    <dependency>
      <groupId>junit</groupId>
      <artifactId>junit</artifactId>
      <version>4.13.2</version>
      <scope>test</scope>
    </dependency>
  </dependencies>
</project>
"""
    pom_file = temp_dir / "pom.xml"
    pom_file.write_text(content)
    return pom_file


@pytest.fixture
def sample_yaml_manifest(temp_dir):
    content = """
coordinate: com.example:service
version: "2.1"
dependencies:
  - coordinate: com.example:lib
    version: "1.0"
    exclusions: ["commons-logging:*"]
  - coordinate: com.example:tools
    version: "3.0"
    scope: runtime
    optional: true
dependency_management:
  com.google.guava:guava: "20.0"
"""
    manifest_file = temp_dir / "manifest.yaml"
    manifest_file.write_text(content)
    return manifest_file


@pytest.fixture
def local_repository(temp_dir):
    """
    A Maven-layout repository holding a small conflicting graph:

    app:1.0 -> lib-a:1.0 -> guava:10.0
    app:1.0 -> lib-b:1.0 -> lib-c:1.0 -> guava:20.0
    """
    root = temp_dir / "repo"

    def write_pom(group, artifact, version, deps=()):
        directory = root.joinpath(*group.split("."), artifact, version)
        directory.mkdir(parents=True, exist_ok=True)
        dependencies = "".join(
            f"<dependency><groupId>{g}</groupId><artifactId>{a}</artifactId>"
            f"<version>{v}</version></dependency>"
            for g, a, v in deps
        )
        (directory / f"{artifact}-{version}.pom").write_text(
            f"<project><groupId>{group}</groupId><artifactId>{artifact}</artifactId>"
            f"<version>{version}</version><dependencies>{dependencies}</dependencies>"
            f"</project>"
        )
        (directory / f"{artifact}-{version}.jar").write_bytes(b"PK\x05\x06" + b"\x00" * 18)

    write_pom(
        "com.example",
        "app",
        "1.0",
        [("com.example", "lib-a", "1.0"), ("com.example", "lib-b", "1.0")],
    )
    write_pom("com.example", "lib-a", "1.0", [("com.google.guava", "guava", "10.0")])
    write_pom("com.example", "lib-b", "1.0", [("com.example", "lib-c", "1.0")])
    write_pom("com.example", "lib-c", "1.0", [("com.google.guava", "guava", "20.0")])
    write_pom("com.google.guava", "guava", "10.0")
    write_pom("com.google.guava", "guava", "20.0")
    return root


def _utf8(text):
    data = text.encode("utf-8")
    return b"\x01" + struct.pack(">H", len(data)) + data


@pytest.fixture
def class_builder():
    """
    Build minimal class files.

    The pool holds the class and super class names, one field descriptor per
    entry in ``descriptors``, one String constant per entry in ``strings`` and
    a Long constant so two-slot entries are exercised.
    """

    def build(name, super_name="java/lang/Object", descriptors=(), strings=()):
        pool = [_utf8(name), b"\x07\x00\x01", _utf8(super_name), b"\x07\x00\x03"]
        slots = 4
        for descriptor in descriptors:
            pool.append(_utf8("value"))
            pool.append(_utf8(descriptor))
            pool.append(b"\x0c" + struct.pack(">HH", slots + 1, slots + 2))
            slots += 3
        for text in strings:
            pool.append(_utf8(text))
            pool.append(b"\x08" + struct.pack(">H", slots + 1))
            slots += 2
        pool.append(b"\x05" + struct.pack(">q", 42))
        slots += 2

        header = b"\xca\xfe\xba\xbe" + struct.pack(">HH", 0, 52)
        body = struct.pack(">HHHHHHH", 0x0021, 2, 4, 0, 0, 0, 0)
        return header + struct.pack(">H", slots + 1) + b"".join(pool) + body

    return build


@pytest.fixture
def jar_builder():
    """Build an in-memory JAR from a mapping of entry name to content."""

    def build(entries):
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as archive:
            for name, content in entries.items():
                info = zipfile.ZipInfo(name, date_time=(2020, 1, 1, 0, 0, 0))
                info.compress_type = zipfile.ZIP_DEFLATED
                archive.writestr(info, content)
        return buffer.getvalue()

    return build


def read_jar(data):
    """Entry names and contents of a JAR, in archive order."""
    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        return [(info.filename, archive.read(info)) for info in archive.infolist()]


@pytest.fixture
def jar_reader():
    return read_jar
