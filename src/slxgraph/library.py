"""Linking of library blocks (``SourceBlock="Lib/Block"``) to library archives."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

from .errors import CyclicReference
from .model import Block, System

log = logging.getLogger(__name__)

LIBRARY_SUFFIX = ".slx"
SOURCE_BLOCK_PROPERTY = "SourceBlock"


@dataclass
class LibraryLookup:
    found: List[Tuple[str, Path]] = field(default_factory=list)
    not_found: List[str] = field(default_factory=list)


def split_source_block(value: str) -> Optional[Tuple[str, str]]:
    """Split ``Lib/Sub/Block`` into ``("Lib", "Sub/Block")``."""
    lib_name, sep, block_path = value.partition("/")
    if not sep or not lib_name.strip() or not block_path.strip():
        return None
    return lib_name.strip(), block_path.strip()


class LibraryResolver:
    """Finds ``<name>.slx`` in an ordered list of directories; the first match wins.

    ``load`` turns a library archive into its resolved root System. Each
    library is loaded at most once per resolver.
    """

    def __init__(
        self,
        search_paths: Iterable[Union[str, Path]],
        load: Optional[Callable[[Path], System]] = None,
    ) -> None:
        self.search_paths = [Path(p) for p in search_paths]
        self._load = load
        self._libraries: Dict[str, Optional[System]] = {}

    def locate(self, names: Iterable[str]) -> LibraryLookup:
        lookup = LibraryLookup()
        seen = set()
        for name in names:
            name = name.strip()
            if not name or name in seen:
                continue
            seen.add(name)
            match = None
            for directory in self.search_paths:
                candidate = directory / f"{name}{LIBRARY_SUFFIX}"
                if candidate.is_file():
                    match = candidate
                    break
            if match is None:
                lookup.not_found.append(name)
            else:
                lookup.found.append((name, match))
        return lookup

    def library(self, name: str) -> Optional[System]:
        if name in self._libraries:
            return self._libraries[name]
        lookup = self.locate([name])
        system: Optional[System] = None
        if not lookup.found:
            log.warning("library %s not found in search paths", name)
        elif self._load is None:
            raise RuntimeError("LibraryResolver was created without a loader")
        else:
            path = lookup.found[0][1]
            log.debug("loading library %s from %s", name, path)
            system = self._load(path)
        self._libraries[name] = system
        return system

    def link(self, system: System) -> int:
        """Attach library subsystems to linked blocks throughout ``system``.

        Returns the number of blocks that received a library subsystem.
        Missing libraries and missing library blocks are logged and left
        as plain blocks.
        """
        linked = 0
        pending: List[Tuple[System, Tuple[str, ...]]] = [(system, ())]
        while pending:
            current, chain = pending.pop()
            for block in current.blocks:
                inner_chain = chain
                source_block = block.properties.get(SOURCE_BLOCK_PROPERTY, "")
                if block.system is None and split_source_block(source_block) is not None:
                    if source_block in chain:
                        raise CyclicReference(list(chain) + [source_block], block_id=block.id)
                    if self._link_block(block, source_block):
                        linked += 1
                        inner_chain = chain + (source_block,)
                if block.system is not None:
                    pending.append((block.system, inner_chain))
        return linked

    def _link_block(self, block: Block, source_block: str) -> bool:
        lib_name, block_path = split_source_block(source_block)  # type: ignore[misc]
        library = self.library(lib_name)
        if library is None:
            return False
        target = find_block_by_path(library, block_path)
        if target is None:
            log.warning("block %r not found in library %s", block_path, lib_name)
            return False
        if target.system is None:
            return False
        block.system = target.system.clone()
        return True


def find_block_by_path(system: System, block_path: str) -> Optional[Block]:
    """Find a block by its ``/``-separated name path below ``system``."""
    current: Optional[System] = system
    found: Optional[Block] = None
    for name in block_path.split("/"):
        if current is None:
            return None
        found = next((blk for blk in current.blocks if blk.name == name), None)
        if found is None:
            return None
        current = found.system
    return found


__all__ = ["LibraryLookup", "LibraryResolver", "find_block_by_path", "split_source_block"]
