"""Public API for slxgraph."""
import logging

from .builder import PendingReference, build_system, parse_endpoint
from .codec import decode, encode, load, save
from .elements import Element, parse_document
from .errors import (
    CyclicReference,
    DuplicateId,
    MalformedDocument,
    ResolutionTimeout,
    SchemaViolation,
    SlxGraphError,
    TruncatedOrCorrupt,
    UnresolvedEndpoint,
    UnresolvedReference,
    UnsupportedVersion,
)
from .library import LibraryLookup, LibraryResolver
from .model import FORMAT_VERSION, Block, Direction, Line, Port, PortRef, System, SystemDoc
from .resolver import ReferenceResolver, load_model, resolve, resolve_with_timeout
from .sources import ContentSource, FsSource, MemorySource, ZipSource, open_source

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "Block",
    "ContentSource",
    "CyclicReference",
    "Direction",
    "DuplicateId",
    "Element",
    "FORMAT_VERSION",
    "FsSource",
    "LibraryLookup",
    "LibraryResolver",
    "Line",
    "MalformedDocument",
    "MemorySource",
    "PendingReference",
    "Port",
    "PortRef",
    "ReferenceResolver",
    "ResolutionTimeout",
    "SchemaViolation",
    "SlxGraphError",
    "System",
    "SystemDoc",
    "TruncatedOrCorrupt",
    "UnresolvedEndpoint",
    "UnresolvedReference",
    "UnsupportedVersion",
    "ZipSource",
    "build_system",
    "decode",
    "encode",
    "load",
    "load_model",
    "open_source",
    "parse_document",
    "parse_endpoint",
    "resolve",
    "resolve_with_timeout",
    "save",
]
