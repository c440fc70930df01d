"""Recursive expansion of ``System Ref`` references into one resolved tree."""
from __future__ import annotations

import logging
import posixpath
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple, TypeVar, Union

from .builder import PendingReference, build_system
from .elements import parse_document
from .errors import CyclicReference, ResolutionTimeout, SlxGraphError, UnresolvedReference
from .library import LibraryResolver
from .model import System, SystemDoc
from .sources import ARCHIVE_ROOT_ENTRY, ContentSource, FsSource, ZipSource, open_source

log = logging.getLogger(__name__)

DEFAULT_REF_SUFFIX = ".xml"

_Parsed = Tuple[System, List[PendingReference]]
_Loader = Callable[[str], _Parsed]
T = TypeVar("T")


@dataclass
class _Frame:
    path: str
    system: System
    pending: List[PendingReference]
    base: str
    next: int = 0


class ReferenceResolver:
    """Depth-first resolver with a path cache and an in-progress stack.

    With ``workers > 1`` every reachable file is first parsed once on a
    thread pool; the depth-first assembly pass is the same in both modes,
    so results and errors do not depend on the worker count. When
    ``library_paths`` is given, blocks carrying a ``SourceBlock`` link are
    afterwards connected to the matching ``.slx`` library.
    """

    def __init__(
        self,
        source: Optional[ContentSource] = None,
        *,
        workers: int = 1,
        library_paths: Optional[Iterable[Union[str, Path]]] = None,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.source = source if source is not None else FsSource()
        self.workers = workers
        self.libraries: Optional[LibraryResolver] = None
        if library_paths is not None:
            self.libraries = LibraryResolver(library_paths, load=self._load_library)

    def resolve(self, root_path: str) -> System:
        root = self.source.canonical(root_path)
        if not self.source.exists(root):
            raise UnresolvedReference(root)
        loader: _Loader = self._parse_file
        if self.workers > 1:
            loader = self._prefetch(root)
        system = self._assemble(root, loader)
        if self.libraries is not None:
            self.libraries.link(system)
        return system

    def resolve_doc(self, root_path: str) -> SystemDoc:
        return SystemDoc(system=self.resolve(root_path))

    def _assemble(self, root: str, loader: _Loader) -> System:
        cache: Dict[str, System] = {}
        stack: List[str] = [root]
        on_stack: Set[str] = {root}
        frames = [self._frame(root, loader)]
        while frames:
            frame = frames[-1]
            if frame.next == len(frame.pending):
                frames.pop()
                on_stack.discard(stack.pop())
                cache[frame.path] = frame.system
                continue
            ref = frame.pending[frame.next]
            target = self._target_of(ref, frame.base)
            if target in on_stack:
                raise CyclicReference(stack + [target], block_id=ref.block_id)
            resolved = cache.get(target)
            if resolved is None:
                if not self.source.exists(target):
                    raise UnresolvedReference(target, block_id=ref.block_id, path=frame.path)
                # Descend; this reference is attached once the target is cached.
                stack.append(target)
                on_stack.add(target)
                frames.append(self._frame(target, loader))
                continue
            log.debug("attaching %s to block %s", target, ref.block_id)
            ref.block.system = resolved.clone()
            frame.next += 1
        return cache[root]

    def _frame(self, path: str, loader: _Loader) -> _Frame:
        system, pending = loader(path)
        return _Frame(path, system, pending, self.source.parent(path))

    def _load_library(self, path: Path) -> System:
        source = ZipSource(path)
        try:
            return ReferenceResolver(source, workers=self.workers).resolve(ARCHIVE_ROOT_ENTRY)
        finally:
            source.close()

    def _target_of(self, ref: PendingReference, base: str) -> str:
        name = ref.ref
        if not posixpath.splitext(name.replace("\\", "/"))[1]:
            name += DEFAULT_REF_SUFFIX
        return self.source.canonical(name, base)

    def _parse_file(self, path: str) -> _Parsed:
        try:
            data = self.source.read(path)
        except OSError as exc:
            raise UnresolvedReference(path) from exc
        log.debug("parsing %s", path)
        try:
            return build_system(parse_document(data), source=path)
        except SlxGraphError as exc:
            raise exc.with_path(path)

    def _prefetch(self, root: str) -> _Loader:
        results: Dict[str, Union[_Parsed, SlxGraphError]] = {}
        claimed: Set[str] = set()
        lock = threading.Lock()

        def claim(path: str) -> bool:
            with lock:
                if path in claimed:
                    return False
                claimed.add(path)
                return True

        def work(path: str) -> List[str]:
            try:
                parsed = self._parse_file(path)
            except SlxGraphError as exc:
                with lock:
                    results[path] = exc
                return []
            with lock:
                results[path] = parsed
            base = self.source.parent(path)
            found: List[str] = []
            for ref in parsed[1]:
                target = self._target_of(ref, base)
                if self.source.exists(target) and claim(target):
                    log.debug("claimed %s for prefetch", target)
                    found.append(target)
            return found

        claim(root)
        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            running: Set[Future] = {pool.submit(work, root)}
            while running:
                done, running = wait(running, return_when=FIRST_COMPLETED)
                for future in done:
                    for target in future.result():
                        running.add(pool.submit(work, target))

        def load(path: str) -> _Parsed:
            entry = results.get(path)
            if entry is None:
                return self._parse_file(path)
            if isinstance(entry, SlxGraphError):
                raise entry
            return entry

        return load


def resolve(
    root_path: str,
    source: Optional[ContentSource] = None,
    *,
    workers: int = 1,
    library_paths: Optional[Iterable[Union[str, Path]]] = None,
) -> System:
    return ReferenceResolver(source, workers=workers, library_paths=library_paths).resolve(root_path)


def resolve_with_timeout(fn: Callable[[], T], timeout: Optional[float], *, path: Optional[str] = None) -> T:
    """Run ``fn`` and raise :class:`ResolutionTimeout` if it exceeds ``timeout`` seconds.

    The abandoned call keeps running on a daemon thread; its result is discarded.
    """
    if timeout is None:
        return fn()
    outcome: Dict[str, object] = {}

    def run() -> None:
        try:
            outcome["value"] = fn()
        except BaseException as exc:  # re-raised on the calling thread
            outcome["error"] = exc

    worker = threading.Thread(target=run, name="slxgraph-resolve", daemon=True)
    worker.start()
    worker.join(timeout)
    if worker.is_alive():
        raise ResolutionTimeout(timeout, path=path)
    if "error" in outcome:
        raise outcome["error"]  # type: ignore[misc]
    return outcome["value"]  # type: ignore[return-value]


def load_model(
    path: str,
    *,
    workers: int = 1,
    timeout: Optional[float] = None,
    library_paths: Optional[Iterable[Union[str, Path]]] = None,
) -> SystemDoc:
    """Resolve a model from a system XML file or an ``.slx`` archive.

    After a timeout the archive is left open: the abandoned resolution may
    still be reading it, and the handle is released when that thread ends.
    """
    source, root = open_source(path)
    resolver = ReferenceResolver(source, workers=workers, library_paths=library_paths)
    timed_out = False
    try:
        return resolve_with_timeout(lambda: resolver.resolve_doc(root), timeout, path=str(path))
    except ResolutionTimeout:
        timed_out = True
        raise
    finally:
        if not timed_out and isinstance(source, ZipSource):
            source.close()


__all__ = ["ReferenceResolver", "load_model", "resolve", "resolve_with_timeout"]
