"""Generic XML element tree used as input to the system builder."""
from __future__ import annotations

import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Union

from .errors import MalformedDocument


@dataclass
class Element:
    tag: str
    attrib: Dict[str, str] = field(default_factory=dict)
    children: List["Element"] = field(default_factory=list)
    text: Optional[str] = None

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.attrib.get(name, default)

    def iter_children(self, *tags: str) -> Iterator["Element"]:
        for child in self.children:
            if not tags or child.tag in tags:
                yield child

    def find(self, tag: str) -> Optional["Element"]:
        for child in self.children:
            if child.tag == tag:
                return child
        return None


def parse_document(source: Union[str, bytes]) -> Element:
    """Parse one XML document into an :class:`Element` tree.

    Namespaces are dropped from tag and attribute names. Raises
    :class:`MalformedDocument` with the line/column reported by the XML
    parser when the input is not well-formed.
    """
    try:
        root = ET.fromstring(source)
    except ET.ParseError as exc:
        line, column = getattr(exc, "position", (None, None))
        reason = str(exc).split(":", 1)[0]
        raise MalformedDocument(f"failed to parse XML: {reason}", line=line, column=column) from exc
    return _convert(root)


def _convert(root: ET.Element) -> Element:
    converted = _shallow(root)
    pending = [(root, converted)]
    while pending:
        node, target = pending.pop()
        for child in node:
            # Comments and processing instructions have non-string tags.
            if isinstance(child.tag, str):
                element = _shallow(child)
                target.children.append(element)
                pending.append((child, element))
    return converted


def _shallow(node: ET.Element) -> Element:
    attrib = {_local_name(key): value for key, value in node.attrib.items()}
    return Element(tag=_local_name(node.tag), attrib=attrib, text=node.text)


def _local_name(tag: str) -> str:
    if tag.startswith("{"):
        return tag.split("}", 1)[1]
    return tag


__all__ = ["Element", "parse_document"]
