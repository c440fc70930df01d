"""Error taxonomy shared by the parser, resolver, and binary codec."""
from __future__ import annotations

from typing import List, Optional


class SlxGraphError(ValueError):
    """Structured error with a stable code for CLI mapping."""

    code = "E_SLXGRAPH"

    def __init__(self, message: str, *, path: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.path = path

    def __str__(self) -> str:
        if self.path and self.path not in self.message:
            return f"{self.message} (in {self.path})"
        return self.message

    def with_path(self, path: str) -> "SlxGraphError":
        if self.path is None:
            self.path = path
        return self


class MalformedDocument(SlxGraphError):
    """Raised when a document is not well-formed XML."""

    code = "E_MALFORMED"

    def __init__(
        self,
        message: str,
        *,
        line: Optional[int] = None,
        column: Optional[int] = None,
        path: Optional[str] = None,
    ) -> None:
        location = f" at line {line}, column {column}" if line is not None and column is not None else ""
        super().__init__(f"{message}{location}", path=path)
        self.line = line
        self.column = column


class SchemaViolation(SlxGraphError):
    """Raised when a required element or attribute is missing or invalid."""

    code = "E_SCHEMA"


class UnresolvedEndpoint(SchemaViolation):
    """Raised when a line endpoint names a block or port that does not exist."""

    code = "E_SCHEMA_ENDPOINT"


class DuplicateId(SlxGraphError):
    code = "E_DUPLICATE_ID"


class UnresolvedReference(SlxGraphError):
    """Raised when a referenced system file cannot be located."""

    code = "E_UNRESOLVED_REF"

    def __init__(self, target: str, *, block_id: Optional[str] = None, path: Optional[str] = None) -> None:
        if block_id is None:
            message = f"system file not found: {target}"
        else:
            message = f'system file not found: {target} (referenced by block "{block_id}")'
        super().__init__(message, path=path)
        self.target = target
        self.block_id = block_id


class CyclicReference(SlxGraphError):
    code = "E_CYCLE"

    def __init__(self, chain: List[str], *, block_id: Optional[str] = None) -> None:
        super().__init__("reference cycle detected: " + " -> ".join(chain))
        self.chain = list(chain)
        self.block_id = block_id


class UnsupportedVersion(SlxGraphError):
    code = "E_VERSION"

    def __init__(self, version: int, supported: int) -> None:
        super().__init__(f"unsupported binary format version {version} (decoder supports 1..{supported})")
        self.version = version
        self.supported = supported


class TruncatedOrCorrupt(SlxGraphError):
    code = "E_CORRUPT"

    def __init__(self, message: str, *, offset: Optional[int] = None) -> None:
        suffix = f" at byte {offset}" if offset is not None else ""
        super().__init__(f"{message}{suffix}")
        self.offset = offset


class ResolutionTimeout(SlxGraphError):
    code = "E_TIMEOUT"

    def __init__(self, timeout: float, *, path: Optional[str] = None) -> None:
        super().__init__(f"resolution did not finish within {timeout:g}s", path=path)
        self.timeout = timeout


__all__ = [
    "SlxGraphError",
    "MalformedDocument",
    "SchemaViolation",
    "UnresolvedEndpoint",
    "DuplicateId",
    "UnresolvedReference",
    "CyclicReference",
    "UnsupportedVersion",
    "TruncatedOrCorrupt",
    "ResolutionTimeout",
]
