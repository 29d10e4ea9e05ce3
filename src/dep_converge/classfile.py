"""
Minimal JVM class file reader/writer for symbol relocation.

Only the constant pool is decoded. Everything after it (access flags, fields,
methods, attributes) refers to the pool by index and is carried over
byte for byte, so rewriting pool strings never disturbs the rest of the file.
"""

import struct
from dataclasses import dataclass
from typing import Callable, List, Optional, Set

from .error_handling import UnsupportedArtifactFormatError

CLASS_MAGIC = b"\xca\xfe\xba\xbe"

TAG_UTF8 = 1
TAG_LONG = 5
TAG_DOUBLE = 6
TAG_CLASS = 7
TAG_STRING = 8
TAG_NAME_AND_TYPE = 12
TAG_METHOD_TYPE = 16

# Payload size in bytes after the tag byte, for every fixed-size constant
_FIXED_SIZES = {
    3: 4,  # Integer
    4: 4,  # Float
    5: 8,  # Long
    6: 8,  # Double
    7: 2,  # Class
    8: 2,  # String
    9: 4,  # Fieldref
    10: 4,  # Methodref
    11: 4,  # InterfaceMethodref
    12: 4,  # NameAndType
    15: 3,  # MethodHandle
    16: 2,  # MethodType
    17: 4,  # Dynamic
    18: 4,  # InvokeDynamic
    19: 2,  # Module
    20: 2,  # Package
}


@dataclass
class Constant:
    tag: int
    payload: bytes

    def ref(self, offset: int = 0) -> int:
        return struct.unpack_from(">H", self.payload, offset)[0]


@dataclass
class ClassFile:
    """A class file split into header, constant pool and verbatim remainder."""

    header: bytes
    constants: List[Optional[Constant]]
    tail: bytes

    def class_name_indices(self) -> Set[int]:
        """Utf8 indices naming a class (CONSTANT_Class targets)."""
        return {c.ref() for c in self.constants if c is not None and c.tag == TAG_CLASS}

    def string_indices(self) -> Set[int]:
        """Utf8 indices used as String literals."""
        return {c.ref() for c in self.constants if c is not None and c.tag == TAG_STRING}

    def descriptor_indices(self) -> Set[int]:
        """Utf8 indices holding field or method descriptors."""
        indices = set()
        for constant in self.constants:
            if constant is None:
                continue
            if constant.tag == TAG_NAME_AND_TYPE:
                indices.add(constant.ref(2))
            elif constant.tag == TAG_METHOD_TYPE:
                indices.add(constant.ref())
        return indices

    def utf8(self, index: int) -> Optional[str]:
        """Decoded text of a Utf8 constant, or None if it is not valid text."""
        constant = self.constants[index]
        if constant is None or constant.tag != TAG_UTF8:
            return None
        return decode_modified_utf8(constant.payload)

    def set_utf8(self, index: int, text: str) -> None:
        payload = encode_modified_utf8(text)
        if len(payload) > 0xFFFF:
            raise UnsupportedArtifactFormatError(
                f"Constant #{index} would exceed 65535 bytes after relocation"
            )
        self.constants[index] = Constant(TAG_UTF8, payload)

    def rewrite_utf8(self, rewrite: Callable[[int, str], str]) -> int:
        """Apply ``rewrite(index, text)`` to every Utf8 constant; returns the change count."""
        changed = 0
        for index, constant in enumerate(self.constants):
            if constant is None or constant.tag != TAG_UTF8:
                continue
            text = decode_modified_utf8(constant.payload)
            if text is None:
                continue
            new_text = rewrite(index, text)
            if new_text != text:
                self.set_utf8(index, new_text)
                changed += 1
        return changed

    def to_bytes(self) -> bytes:
        parts = [self.header, struct.pack(">H", len(self.constants))]
        for constant in self.constants[1:]:
            if constant is None:
                continue
            parts.append(bytes([constant.tag]))
            if constant.tag == TAG_UTF8:
                parts.append(struct.pack(">H", len(constant.payload)))
            parts.append(constant.payload)
        parts.append(self.tail)
        return b"".join(parts)


def decode_modified_utf8(payload: bytes) -> Optional[str]:
    """Decode JVM modified UTF-8 (NUL as C0 80, astral chars as surrogate pairs)."""
    try:
        return payload.replace(b"\xc0\x80", b"\x00").decode("utf-8", "surrogatepass")
    except UnicodeDecodeError:
        return None


def encode_modified_utf8(text: str) -> bytes:
    encoded = "".join(
        c if ord(c) <= 0xFFFF else _surrogate_pair(c) for c in text
    ).encode("utf-8", "surrogatepass")
    return encoded.replace(b"\x00", b"\xc0\x80")


def _surrogate_pair(char: str) -> str:
    code = ord(char) - 0x10000
    return chr(0xD800 + (code >> 10)) + chr(0xDC00 + (code & 0x3FF))


def is_class_file(data: bytes) -> bool:
    return data[:4] == CLASS_MAGIC


def parse_class(data: bytes) -> ClassFile:
    """
    Split a class file at the end of its constant pool.

    Raises:
        UnsupportedArtifactFormatError: If the bytes are not a well-formed class file
    """
    if len(data) < 10 or not is_class_file(data):
        raise UnsupportedArtifactFormatError("Not a JVM class file (bad magic number)")

    try:
        (count,) = struct.unpack_from(">H", data, 8)
        constants: List[Optional[Constant]] = [None]
        offset = 10
        while len(constants) < count:
            tag = data[offset]
            if tag == TAG_UTF8:
                (length,) = struct.unpack_from(">H", data, offset + 1)
                start = offset + 3
                end = start + length
                if end > len(data):
                    raise UnsupportedArtifactFormatError("Truncated class file constant pool")
                constants.append(Constant(tag, data[start:end]))
                offset = end
            elif tag in _FIXED_SIZES:
                end = offset + 1 + _FIXED_SIZES[tag]
                if end > len(data):
                    raise UnsupportedArtifactFormatError("Truncated class file constant pool")
                constants.append(Constant(tag, data[offset + 1 : end]))
                offset = end
                if tag in (TAG_LONG, TAG_DOUBLE):
                    # Eight-byte constants take two pool slots
                    constants.append(None)
            else:
                raise UnsupportedArtifactFormatError(
                    f"Unknown constant pool tag {tag} at entry #{len(constants)}"
                )
    except (IndexError, struct.error) as e:
        raise UnsupportedArtifactFormatError(f"Truncated class file: {e}") from e

    if len(constants) != count:
        raise UnsupportedArtifactFormatError("Constant pool overruns its declared size")

    return ClassFile(header=data[:8], constants=constants, tail=data[offset:])
