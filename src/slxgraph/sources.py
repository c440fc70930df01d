"""Where system documents are read from: the filesystem, a zip container, or memory."""
from __future__ import annotations

import posixpath
import zipfile
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

ARCHIVE_SUFFIX = ".slx"
ARCHIVE_ROOT_ENTRY = "simulink/systems/system_root.xml"


class ContentSource:
    """Addressable set of documents.

    ``canonical`` turns a (possibly relative) reference into the key used
    for cycle detection and caching; every other method takes canonical keys.
    """

    def canonical(self, path: str, base: Optional[str] = None) -> str:
        raise NotImplementedError

    def parent(self, path: str) -> str:
        raise NotImplementedError

    def exists(self, path: str) -> bool:
        raise NotImplementedError

    def read(self, path: str) -> bytes:
        raise NotImplementedError


class FsSource(ContentSource):
    def canonical(self, path: str, base: Optional[str] = None) -> str:
        resolved = Path(path).expanduser()
        if not resolved.is_absolute():
            resolved = (Path(base) if base is not None else Path.cwd()) / resolved
        try:
            return str(resolved.resolve())
        except OSError:
            return str(resolved.absolute())

    def parent(self, path: str) -> str:
        return str(Path(path).parent)

    def exists(self, path: str) -> bool:
        return Path(path).is_file()

    def read(self, path: str) -> bytes:
        return Path(path).read_bytes()


class _EntrySource(ContentSource):
    """Sources keyed by POSIX entry names (``a/b/system_1.xml``)."""

    def canonical(self, path: str, base: Optional[str] = None) -> str:
        name = path.replace("\\", "/")
        if not name.startswith("/") and base:
            name = posixpath.join(base, name)
        name = posixpath.normpath(name).lstrip("/")
        return "" if name == "." else name

    def parent(self, path: str) -> str:
        return posixpath.dirname(path)


class MemorySource(_EntrySource):
    def __init__(self, files: Dict[str, Union[str, bytes]]) -> None:
        self._files = {self.canonical(name): content for name, content in files.items()}

    def exists(self, path: str) -> bool:
        return path in self._files

    def read(self, path: str) -> bytes:
        try:
            content = self._files[path]
        except KeyError:
            raise FileNotFoundError(path) from None
        return content.encode("utf-8") if isinstance(content, str) else content


class ZipSource(_EntrySource):
    """Entries of a zip container such as an ``.slx`` archive."""

    def __init__(self, archive: Union[str, Path, zipfile.ZipFile]) -> None:
        self._zip = archive if isinstance(archive, zipfile.ZipFile) else zipfile.ZipFile(archive)
        self._names = {
            self.canonical(info.filename): info.filename for info in self._zip.infolist() if not info.is_dir()
        }

    def exists(self, path: str) -> bool:
        return path in self._names

    def read(self, path: str) -> bytes:
        try:
            name = self._names[path]
        except KeyError:
            raise FileNotFoundError(path) from None
        return self._zip.read(name)

    def close(self) -> None:
        self._zip.close()


def open_source(path: Union[str, Path]) -> Tuple[ContentSource, str]:
    """Pick the source for a root model path and return ``(source, root key)``."""
    target = Path(path)
    if target.suffix.lower() == ARCHIVE_SUFFIX:
        source = ZipSource(target)
        return source, ARCHIVE_ROOT_ENTRY
    source = FsSource()
    return source, source.canonical(str(target))


__all__ = [
    "ARCHIVE_ROOT_ENTRY",
    "ContentSource",
    "FsSource",
    "MemorySource",
    "ZipSource",
    "open_source",
]
