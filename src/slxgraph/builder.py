"""Build typed System entities from a generic element tree of one file."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple

from .elements import Element
from .errors import DuplicateId, SchemaViolation, UnresolvedEndpoint
from .model import Block, Direction, Line, Port, PortRef, System, port_id

BLOCK_TAGS = ("Block", "Reference")
MAX_INLINE_DEPTH = 256

_DIRECTION_ORDER = {Direction.IN: 0, Direction.OUT: 1}


@dataclass
class PendingReference:
    """A ``Block -> System Ref="..."`` edge still waiting for resolution."""

    block_id: str
    ref: str
    block: Block


def build_system(root: Element, *, source: str = "") -> Tuple[System, List[PendingReference]]:
    """Map a ``<System>`` element onto a :class:`System`.

    Returns the system together with the references found in its blocks
    (including blocks of inline nested systems), in document order.
    """
    if root.tag != "System":
        raise SchemaViolation(f"expected <System> root element, found <{root.tag}>")
    pending: List[PendingReference] = []
    system = _build_system(root, source, pending, 0)
    return system, pending


def _build_system(node: Element, source: str, pending: List[PendingReference], depth: int) -> System:
    if depth > MAX_INLINE_DEPTH:
        raise SchemaViolation(f"inline <System> nesting deeper than {MAX_INLINE_DEPTH} levels")
    properties: Dict[str, str] = {}
    blocks: List[Block] = []
    seen_ids: Set[str] = set()
    # Blocks without PortCounts or Port elements take their ports from the lines.
    undeclared: Set[str] = set()
    line_nodes: List[Element] = []

    for child in node.children:
        if child.tag == "P":
            _fold_property(properties, child)
        elif child.tag in BLOCK_TAGS:
            block, declared = _build_block(child, source, pending, depth)
            if block.id in seen_ids:
                raise DuplicateId(f'duplicate block id "{block.id}" in system')
            seen_ids.add(block.id)
            if not declared:
                undeclared.add(block.id)
            blocks.append(block)
        elif child.tag == "Line":
            line_nodes.append(child)

    system = System(
        name=node.get("Name") or properties.get("Name", ""),
        source=source,
        properties=properties,
        blocks=blocks,
    )
    # Lines may precede the blocks they connect, so they are built last.
    system.lines = [_build_line(line_node, system, undeclared) for line_node in line_nodes]
    for block in system.blocks:
        if block.id in undeclared:
            block.ports.sort(key=lambda port: (_DIRECTION_ORDER[port.direction], port.index))
    return system


def _build_block(
    node: Element, source: str, pending: List[PendingReference], depth: int
) -> Tuple[Block, bool]:
    block_id = (node.get("SID") or "").strip()
    name = node.get("Name") or ""
    if not block_id:
        label = f' "{name}"' if name else ""
        raise SchemaViolation(f"<{node.tag}>{label} requires non-empty SID attribute")

    block_type = node.get("BlockType") or ""
    if not block_type and node.tag == "Reference":
        block_type = "Reference"
    block = Block(id=block_id, name=name, type=block_type)

    counts: Optional[Tuple[int, int]] = None
    declared = False
    nested_seen = False
    for child in node.children:
        if child.tag == "P":
            _fold_property(block.properties, child)
        elif child.tag == "InstanceData":
            for prop in child.iter_children("P"):
                _fold_property(block.properties, prop)
        elif child.tag == "PortCounts":
            counts = (_port_count(child, "in", block_id), _port_count(child, "out", block_id))
            declared = True
        elif child.tag in ("Port", "PortProperties"):
            port_nodes = [child] if child.tag == "Port" else list(child.iter_children("Port"))
            for port_node in port_nodes:
                _add_port(block, _build_port(port_node, block_id))
            declared = True
        elif child.tag == "System":
            if nested_seen:
                raise SchemaViolation(f'block "{block_id}" has more than one <System> child')
            nested_seen = True
            ref = child.get("Ref")
            if ref is not None:
                if not ref.strip():
                    raise SchemaViolation(f'block "{block_id}" has an empty System Ref attribute')
                pending.append(PendingReference(block_id=block_id, ref=ref.strip(), block=block))
            else:
                block.system = _build_system(child, source, pending, depth + 1)

    if counts is not None:
        for direction, count in zip((Direction.IN, Direction.OUT), counts):
            for index in range(1, count + 1):
                if block.port(port_id(direction, index)) is None:
                    block.ports.append(Port(direction, index))
    return block, declared


def _port_count(node: Element, attr: str, block_id: str) -> int:
    raw = node.get(attr)
    if raw is None or not raw.strip():
        return 0
    try:
        value = int(raw)
    except ValueError:
        value = -1
    if value < 0:
        raise SchemaViolation(f'block "{block_id}" has invalid PortCounts {attr}="{raw}"')
    return value


def _add_port(block: Block, port: Port) -> None:
    if block.port(port.id) is not None:
        raise DuplicateId(f'duplicate port "{port.id}" in block "{block.id}"')
    block.ports.append(port)


def _build_port(node: Element, block_id: str) -> Port:
    raw_direction = node.get("Type")
    if raw_direction is None:
        raise SchemaViolation(f'<Port> in block "{block_id}" requires Type attribute')
    try:
        direction = Direction.parse(raw_direction)
    except ValueError as exc:
        raise SchemaViolation(f'<Port> in block "{block_id}": {exc}') from exc
    index = _port_index(node.get("Index"))
    if index is None:
        raise SchemaViolation(
            f'<Port Type="{raw_direction}"> in block "{block_id}" requires a positive Index attribute'
        )

    properties: Dict[str, str] = {}
    for prop in node.iter_children("P"):
        _fold_property(properties, prop)
    name = node.get("Name")
    if name is None:
        name = properties.get("Name", "")
    return Port(direction=direction, index=index, name=name, properties=properties)


def _port_index(raw: Optional[str]) -> Optional[int]:
    if raw is None:
        return None
    try:
        value = int(raw.strip())
    except ValueError:
        return None
    return value if value > 0 else None


def _build_line(node: Element, system: System, undeclared: Set[str]) -> Line:
    properties: Dict[str, str] = {}
    source: Optional[PortRef] = None
    destinations: List[PortRef] = []

    for child in node.iter_children("P"):
        key = child.get("Name")
        if key == "Src":
            if source is not None:
                raise SchemaViolation("<Line> has more than one Src")
            source = parse_endpoint(_property_value(child))
        elif key == "Dst":
            destinations.append(parse_endpoint(_property_value(child)))
        else:
            _fold_property(properties, child)
    _collect_branch_destinations(node, destinations)

    if source is None:
        raise SchemaViolation("<Line> requires a Src endpoint")
    if not destinations:
        raise SchemaViolation(f"<Line> from {source} requires at least one Dst endpoint")

    _check_endpoint(system, source, undeclared, role="Src")
    for ref in destinations:
        _check_endpoint(system, ref, undeclared, role="Dst")
    return Line(source=source, destinations=destinations, properties=properties)


def _collect_branch_destinations(node: Element, out: List[PortRef]) -> None:
    pending = list(reversed(list(node.iter_children("Branch"))))
    while pending:
        branch = pending.pop()
        for prop in branch.iter_children("P"):
            if prop.get("Name") == "Dst":
                out.append(parse_endpoint(_property_value(prop)))
        pending.extend(reversed(list(branch.iter_children("Branch"))))


def parse_endpoint(value: str) -> PortRef:
    """Parse a line address ``block#type:index`` such as ``2::28#out:1``."""
    address = _split_endpoint(value)
    return PortRef(block=address[0], port=port_id(address[1], address[2]))


def _split_endpoint(value: str) -> Tuple[str, Direction, int]:
    block_part, sep, port_part = value.strip().partition("#")
    raw_direction, colon, raw_index = port_part.partition(":")
    if not sep or not block_part.strip() or not colon:
        raise SchemaViolation(f'invalid port address "{value}" (expected BLOCK#TYPE:INDEX)')
    try:
        direction = Direction.parse(raw_direction)
    except ValueError as exc:
        raise SchemaViolation(f'invalid port address "{value}": {exc}') from exc
    index = _port_index(raw_index)
    if index is None:
        raise SchemaViolation(f'invalid port address "{value}": port index must be a positive integer')
    return block_part.strip(), direction, index


def _check_endpoint(system: System, ref: PortRef, undeclared: Set[str], *, role: str) -> None:
    block = system.block(ref.block)
    if block is None:
        raise UnresolvedEndpoint(f'line {role} {ref} names unknown block "{ref.block}"')
    if block.port(ref.port) is not None:
        return
    if block.id in undeclared:
        _, direction, index = _split_endpoint(str(ref))
        block.ports.append(Port(direction, index))
        return
    raise UnresolvedEndpoint(f'line {role} {ref} names unknown port "{ref.port}" on block "{ref.block}"')


def _fold_property(properties: Dict[str, str], node: Element) -> None:
    key = node.get("Name")
    if not key:
        raise SchemaViolation("<P> element requires non-empty Name attribute")
    properties[key] = _property_value(node)


def _property_value(node: Element) -> str:
    ref = node.get("Ref")
    if ref is not None:
        return ref
    return node.text or ""


__all__ = ["MAX_INLINE_DEPTH", "PendingReference", "build_system", "parse_endpoint"]
