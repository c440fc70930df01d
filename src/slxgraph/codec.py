"""Versioned binary container for resolved system trees.

Layout::

    [magic: 4 bytes "SYSG"][version: u32 LE][system]

    system  = str name, str source, props, u32 n + block*, u32 n + line*
    block   = str id, str name, str type, props, u32 n + port*, u8 flag [system]
    port    = u8 direction (0 in, 1 out), u32 index, str name, props
    line    = ref source, u32 n + ref*, props
    ref     = str block, str port
    props   = u32 n + (str key, str value)*
    str     = u32 byte length + UTF-8

All integers are little-endian. A nested system is written right after the
flag of its block, before the next block. Decoding never guesses: unknown
versions, short input, bad flag bytes and trailing data are all rejected.
Both directions walk the tree with an explicit stack, so nesting depth is
bounded only by the input size.
"""
from __future__ import annotations

import struct
from pathlib import Path
from typing import Dict, List, Tuple, Union

from .errors import TruncatedOrCorrupt, UnsupportedVersion
from .model import FORMAT_VERSION, Block, Direction, Line, Port, PortRef, System, SystemDoc

MAGIC = b"SYSG"

_U32 = struct.Struct("<I")
_U8 = struct.Struct("<B")
_HEADER = struct.Struct("<4sI")

_DIRECTION_CODES = {Direction.IN: 0, Direction.OUT: 1}
_DIRECTIONS = {code: direction for direction, code in _DIRECTION_CODES.items()}


def encode(doc: SystemDoc) -> bytes:
    if doc.version < 1 or doc.version > FORMAT_VERSION:
        raise UnsupportedVersion(doc.version, FORMAT_VERSION)
    out = bytearray(_HEADER.pack(MAGIC, doc.version))
    _write_system(out, doc.system)
    return bytes(out)


def decode(data: bytes) -> SystemDoc:
    if len(data) < _HEADER.size:
        raise TruncatedOrCorrupt("input is shorter than the container header", offset=len(data))
    magic, version = _HEADER.unpack_from(data, 0)
    if magic != MAGIC:
        raise TruncatedOrCorrupt(f"bad magic marker {magic!r} (expected {MAGIC!r})", offset=0)
    if version < 1 or version > FORMAT_VERSION:
        raise UnsupportedVersion(version, FORMAT_VERSION)
    reader = _Reader(data, _HEADER.size)
    system = reader.system()
    if reader.offset != len(data):
        raise TruncatedOrCorrupt(f"{len(data) - reader.offset} trailing bytes after document", offset=reader.offset)
    return SystemDoc(system=system, version=version)


def save(doc: SystemDoc, path: Union[str, Path]) -> int:
    """Write ``doc`` to ``path`` and return the number of bytes written."""
    blob = encode(doc)
    Path(path).write_bytes(blob)
    return len(blob)


def load(path: Union[str, Path]) -> SystemDoc:
    return decode(Path(path).read_bytes())


def is_binary_doc(data: bytes) -> bool:
    return data[: len(MAGIC)] == MAGIC


def _write_str(out: bytearray, value: str) -> None:
    raw = value.encode("utf-8")
    out += _U32.pack(len(raw))
    out += raw


def _write_props(out: bytearray, props: Dict[str, str]) -> None:
    out += _U32.pack(len(props))
    for key, value in props.items():
        _write_str(out, key)
        _write_str(out, value)


def _write_ref(out: bytearray, ref: PortRef) -> None:
    _write_str(out, ref.block)
    _write_str(out, ref.port)


def _write_system(out: bytearray, root: System) -> None:
    # Items are systems, blocks, or the already-encoded line section of a system.
    todo: List[Union[System, Block, bytes]] = [root]
    while todo:
        item = todo.pop()
        if isinstance(item, bytes):
            out += item
        elif isinstance(item, Block):
            _write_block(out, item)
            if item.system is not None:
                todo.append(item.system)
        else:
            _write_str(out, item.name)
            _write_str(out, item.source)
            _write_props(out, item.properties)
            out += _U32.pack(len(item.blocks))
            todo.append(_encode_lines(item.lines))
            todo.extend(reversed(item.blocks))


def _encode_lines(lines: List[Line]) -> bytes:
    out = bytearray(_U32.pack(len(lines)))
    for line in lines:
        _write_ref(out, line.source)
        out += _U32.pack(len(line.destinations))
        for dst in line.destinations:
            _write_ref(out, dst)
        _write_props(out, line.properties)
    return bytes(out)


def _write_block(out: bytearray, block: Block) -> None:
    """Write a block up to and including its nested-system flag."""
    _write_str(out, block.id)
    _write_str(out, block.name)
    _write_str(out, block.type)
    _write_props(out, block.properties)
    out += _U32.pack(len(block.ports))
    for port in block.ports:
        out += _U8.pack(_DIRECTION_CODES[port.direction])
        out += _U32.pack(port.index)
        _write_str(out, port.name)
        _write_props(out, port.properties)
    out += _U8.pack(0 if block.system is None else 1)


class _Reader:
    def __init__(self, data: bytes, offset: int) -> None:
        self.data = data
        self.offset = offset

    def _take(self, size: int, what: str) -> bytes:
        end = self.offset + size
        if end > len(self.data):
            raise TruncatedOrCorrupt(
                f"{what} needs {size} bytes but only {len(self.data) - self.offset} remain", offset=self.offset
            )
        chunk = self.data[self.offset:end]
        self.offset = end
        return chunk

    def u32(self, what: str) -> int:
        return _U32.unpack(self._take(_U32.size, what))[0]

    def u8(self, what: str) -> int:
        return self._take(1, what)[0]

    def count(self, what: str) -> int:
        # Every counted item occupies at least one byte, so larger counts cannot fit.
        value = self.u32(f"{what} count")
        if value > len(self.data) - self.offset:
            raise TruncatedOrCorrupt(f"{what} count {value} exceeds remaining input", offset=self.offset - _U32.size)
        return value

    def string(self, what: str) -> str:
        size = self.u32(f"{what} length")
        start = self.offset
        raw = self._take(size, what)
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise TruncatedOrCorrupt(f"{what} is not valid UTF-8", offset=start) from exc

    def flag(self, what: str) -> bool:
        start = self.offset
        value = self.u8(what)
        if value not in (0, 1):
            raise TruncatedOrCorrupt(f"invalid {what} flag {value}", offset=start)
        return value == 1

    def props(self, what: str) -> Dict[str, str]:
        props: Dict[str, str] = {}
        for _ in range(self.count(f"{what} property")):
            key = self.string("property key")
            props[key] = self.string("property value")
        return props

    def ref(self) -> PortRef:
        return PortRef(block=self.string("port ref block"), port=self.string("port ref port"))

    def port(self) -> Port:
        start = self.offset
        code = self.u8("port direction")
        if code not in _DIRECTIONS:
            raise TruncatedOrCorrupt(f"invalid port direction code {code}", offset=start)
        return Port(
            direction=_DIRECTIONS[code],
            index=self.u32("port index"),
            name=self.string("port name"),
            properties=self.props("port"),
        )

    def block(self) -> Block:
        block = Block(
            id=self.string("block id"),
            name=self.string("block name"),
            type=self.string("block type"),
            properties=self.props("block"),
        )
        block.ports = [self.port() for _ in range(self.count("port"))]
        return block

    def line(self) -> Line:
        source = self.ref()
        destinations: List[PortRef] = [self.ref() for _ in range(self.count("destination"))]
        return Line(source=source, destinations=destinations, properties=self.props("line"))

    def system_head(self) -> Tuple[System, int]:
        system = System(
            name=self.string("system name"),
            source=self.string("system source"),
            properties=self.props("system"),
        )
        return system, self.count("block")

    def system(self) -> System:
        root, remaining = self.system_head()
        # Each frame is [system, blocks still to read].
        frames: List[list] = [[root, remaining]]
        while frames:
            frame = frames[-1]
            system = frame[0]
            if frame[1] == 0:
                system.lines = [self.line() for _ in range(self.count("line"))]
                frames.pop()
                continue
            frame[1] -= 1
            block = self.block()
            system.blocks.append(block)
            if self.flag("nested system"):
                block.system, nested_blocks = self.system_head()
                frames.append([block.system, nested_blocks])
        return root


__all__ = ["MAGIC", "decode", "encode", "is_binary_doc", "load", "save"]
