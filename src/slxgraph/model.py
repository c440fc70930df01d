"""In-memory model of a resolved system tree."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

FORMAT_VERSION = 1


class Direction(Enum):
    IN = "in"
    OUT = "out"

    @classmethod
    def parse(cls, value: str) -> "Direction":
        key = value.strip().lower()
        if key in ("in", "input"):
            return cls.IN
        if key in ("out", "output"):
            return cls.OUT
        raise ValueError(f'unknown port direction "{value}"')


@dataclass
class PortRef:
    """Address of a port inside the system that owns the line."""

    block: str
    port: str

    def __str__(self) -> str:
        return f"{self.block}#{self.port}"

    def to_dict(self) -> Dict[str, str]:
        return {"block": self.block, "port": self.port}


@dataclass
class Port:
    """Connection point identified by its direction and 1-based index."""

    direction: Direction
    index: int
    name: str = ""
    properties: Dict[str, str] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return port_id(self.direction, self.index)

    def copy(self) -> "Port":
        return Port(self.direction, self.index, self.name, dict(self.properties))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "direction": self.direction.value,
            "index": self.index,
            "name": self.name,
            "properties": dict(self.properties),
        }


def port_id(direction: Direction, index: int) -> str:
    """Port id as written after ``#`` in a line address, e.g. ``out:1``."""
    return f"{direction.value}:{index}"


@dataclass
class Line:
    source: PortRef
    destinations: List[PortRef] = field(default_factory=list)
    properties: Dict[str, str] = field(default_factory=dict)

    def copy(self) -> "Line":
        return Line(
            source=PortRef(self.source.block, self.source.port),
            destinations=[PortRef(dst.block, dst.port) for dst in self.destinations],
            properties=dict(self.properties),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source.to_dict(),
            "destinations": [dst.to_dict() for dst in self.destinations],
            "properties": dict(self.properties),
        }


@dataclass
class Block:
    id: str
    name: str = ""
    type: str = ""
    properties: Dict[str, str] = field(default_factory=dict)
    ports: List[Port] = field(default_factory=list)
    # Present only when the block is a resolved subsystem.
    system: Optional["System"] = None

    def port(self, wanted: str) -> Optional[Port]:
        for port in self.ports:
            if port.id == wanted:
                return port
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "properties": dict(self.properties),
            "ports": [port.to_dict() for port in self.ports],
            "system": self.system.to_dict() if self.system is not None else None,
        }


@dataclass
class System:
    name: str = ""
    source: str = ""
    properties: Dict[str, str] = field(default_factory=dict)
    blocks: List[Block] = field(default_factory=list)
    lines: List[Line] = field(default_factory=list)

    def block(self, block_id: str) -> Optional[Block]:
        for blk in self.blocks:
            if blk.id == block_id:
                return blk
        return None

    def subsystems(self) -> List[Block]:
        return [blk for blk in self.blocks if blk.system is not None]

    def clone(self) -> "System":
        """Return an independent copy of the whole tree.

        Walks with an explicit stack so arbitrarily deep trees can be copied.
        """
        root = System(self.name, self.source, dict(self.properties))
        pending = [(self, root)]
        while pending:
            source_system, copy = pending.pop()
            for blk in source_system.blocks:
                twin = Block(
                    id=blk.id,
                    name=blk.name,
                    type=blk.type,
                    properties=dict(blk.properties),
                    ports=[port.copy() for port in blk.ports],
                )
                if blk.system is not None:
                    nested = blk.system
                    twin.system = System(nested.name, nested.source, dict(nested.properties))
                    pending.append((nested, twin.system))
                copy.blocks.append(twin)
            copy.lines = [line.copy() for line in source_system.lines]
        return root

    def walk_blocks(self) -> Iterator[Tuple[Tuple[str, ...], Block]]:
        """Yield ``(path, block)`` depth-first, where ``path`` holds the names of enclosing blocks."""
        stack = [((), iter(self.blocks))]
        while stack:
            path, blocks = stack[-1]
            blk = next(blocks, None)
            if blk is None:
                stack.pop()
                continue
            yield path, blk
            if blk.system is not None:
                stack.append((path + (blk.name,), iter(blk.system.blocks)))

    def find_blocks_by_type(self, block_type: str) -> List[Tuple[Tuple[str, ...], Block]]:
        return [(path, blk) for path, blk in self.walk_blocks() if blk.type == block_type]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "source": self.source,
            "properties": dict(self.properties),
            "blocks": [blk.to_dict() for blk in self.blocks],
            "lines": [line.to_dict() for line in self.lines],
        }


@dataclass
class SystemDoc:
    """Top-level unit persisted by the binary codec."""

    system: System
    version: int = FORMAT_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {"version": self.version, "system": self.system.to_dict()}


__all__ = [
    "FORMAT_VERSION",
    "Direction",
    "PortRef",
    "Port",
    "Line",
    "Block",
    "System",
    "SystemDoc",
    "port_id",
]
