"""Command-line interface for slxgraph tree/json/pack/bench workflows."""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
import traceback
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from . import codec
from .errors import (
    CyclicReference,
    DuplicateId,
    MalformedDocument,
    ResolutionTimeout,
    SchemaViolation,
    SlxGraphError,
    TruncatedOrCorrupt,
    UnresolvedReference,
    UnsupportedVersion,
)
from .model import Block, System, SystemDoc
from .resolver import load_model

BINARY_SUFFIX = ".sysg"
COMMANDS = "tree, json, pack, bench"


@dataclass
class CliError(Exception):
    code: str
    message: str
    hint: Optional[str] = None
    exit_code: int = 1
    file: Optional[str] = None
    line: Optional[int] = None
    column: Optional[int] = None
    retryable: bool = True


class UsageError(Exception):
    pass


class FriendlyArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # pragma: no cover - argparse callback
        raise UsageError(message)


def _add_resolution_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("input", nargs="?", help="Root system .xml, .slx archive, or packed .sysg file")
    parser.add_argument("--workers", type=int, default=1, help="Threads used to parse referenced files")
    parser.add_argument("--timeout", type=float, help="Abort resolution after this many seconds")
    parser.add_argument(
        "--library-path",
        action="append",
        dest="library_paths",
        metavar="DIR",
        help="Directory searched for LIB.slx when linking SourceBlock references (repeatable)",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = FriendlyArgumentParser(
        prog="slxgraph",
        description="Resolve hierarchical system models and convert them to JSON or binary.",
    )
    parser.add_argument("--error-format", choices=["text", "json"], default="text")
    parser.add_argument("--debug", action="store_true")

    subparsers = parser.add_subparsers(dest="command")

    tree_parser = subparsers.add_parser("tree", help="Print the tree of nested systems")
    _add_resolution_options(tree_parser)

    json_parser = subparsers.add_parser("json", help="Print the resolved model as JSON")
    _add_resolution_options(json_parser)
    json_parser.add_argument("-o", "--output", help="Write JSON to this path instead of stdout")

    pack_parser = subparsers.add_parser("pack", help="Write the resolved model as a binary container")
    _add_resolution_options(pack_parser)
    pack_parser.add_argument("-o", "--output", help=f"Output path (default: input with {BINARY_SUFFIX})")

    bench_parser = subparsers.add_parser("bench", help="Compare parse time against binary load time")
    _add_resolution_options(bench_parser)
    bench_parser.add_argument("--repeat", type=int, default=1, help="Number of timed runs per stage")

    return parser


def _check_input(args: argparse.Namespace) -> Path:
    if not args.input:
        raise CliError(
            "E_ARGS",
            "no input provided",
            hint="Pass the root system file, an .slx archive, or a .sysg file.",
            exit_code=2,
        )
    if args.workers < 1:
        raise CliError("E_ARGS", "--workers must be >= 1", exit_code=2)
    if args.timeout is not None and args.timeout <= 0:
        raise CliError("E_ARGS", "--timeout must be > 0", exit_code=2)
    input_path = Path(args.input)
    if not input_path.is_file():
        raise CliError(
            "E_IO_READ",
            f"input file not found: {input_path}",
            exit_code=2,
            file=str(input_path),
        )
    return input_path


def _is_packed(path: Path) -> bool:
    try:
        with path.open("rb") as fh:
            return codec.is_binary_doc(fh.read(len(codec.MAGIC)))
    except OSError as exc:
        raise CliError(
            "E_IO_READ",
            f"failed to read input file: {path}",
            hint=str(exc),
            exit_code=2,
            file=str(path),
        )


def _resolve_input(args: argparse.Namespace, input_path: Path) -> SystemDoc:
    return load_model(
        str(input_path),
        workers=args.workers,
        timeout=args.timeout,
        library_paths=args.library_paths,
    )


def _load_doc(args: argparse.Namespace) -> SystemDoc:
    input_path = _check_input(args)
    if _is_packed(input_path):
        return codec.load(input_path)
    return _resolve_input(args, input_path)


def _write_text(path: Path, content: str) -> None:
    try:
        path.write_text(content, encoding="utf-8")
    except OSError as exc:
        raise CliError(
            "E_IO_WRITE",
            f"failed to write output file: {path}",
            hint=str(exc),
            exit_code=4,
            file=str(path),
        )


def _write_bytes(path: Path, content: bytes) -> None:
    try:
        path.write_bytes(content)
    except OSError as exc:
        raise CliError(
            "E_IO_WRITE",
            f"failed to write output file: {path}",
            hint=str(exc),
            exit_code=4,
            file=str(path),
        )


def format_tree(system: System) -> List[str]:
    """Render nested systems as ASCII tree lines, in source order."""
    lines = [system.name or "<root>"]
    stack = [("", iter(_with_last(system.subsystems())))]
    while stack:
        prefix, children = stack[-1]
        entry = next(children, None)
        if entry is None:
            stack.pop()
            continue
        block, last = entry
        lines.append(f"{prefix}{'└─' if last else '├─'} {block.name or block.id}")
        stack.append((prefix + ("   " if last else "│  "), iter(_with_last(block.system.subsystems()))))
    return lines


def _with_last(blocks: List[Block]) -> List[Tuple[Block, bool]]:
    return [(block, idx + 1 == len(blocks)) for idx, block in enumerate(blocks)]


_ERROR_HINTS = {
    MalformedDocument: "Ensure every system file is well-formed XML.",
    DuplicateId: "Block SIDs must be unique per system and Type/Index pairs unique per block.",
    SchemaViolation: "Check required SID, Type and Index attributes and BLOCK#TYPE:INDEX line addresses.",
    UnresolvedReference: "Check the System Ref path relative to the referencing file.",
    CyclicReference: "Break the reference cycle; a system cannot contain itself.",
    UnsupportedVersion: "Re-pack the model with this version of slxgraph.",
    TruncatedOrCorrupt: "The binary file is damaged; re-pack it from the source model.",
    ResolutionTimeout: "Increase --timeout or use --workers to parse in parallel.",
}


def _error_from_exception(exc: Exception) -> CliError:
    if isinstance(exc, CliError):
        return exc
    if isinstance(exc, SlxGraphError):
        hint = next((text for cls, text in _ERROR_HINTS.items() if isinstance(exc, cls)), None)
        if isinstance(exc, MalformedDocument):
            exit_code = 2
        elif isinstance(exc, ResolutionTimeout):
            exit_code = 5
        else:
            exit_code = 3
        return CliError(
            exc.code,
            str(exc),
            hint=hint,
            exit_code=exit_code,
            file=exc.path,
            line=getattr(exc, "line", None),
            column=getattr(exc, "column", None),
            retryable=isinstance(exc, ResolutionTimeout),
        )
    if isinstance(exc, zipfile.BadZipFile):
        return CliError(
            "E_ARCHIVE",
            f"failed to open archive: {exc}",
            hint="Pass a valid .slx archive or a system .xml file.",
            exit_code=2,
        )
    if isinstance(exc, OSError):
        return CliError(
            "E_IO_READ",
            str(exc),
            exit_code=2,
            file=getattr(exc, "filename", None),
        )
    return CliError(
        "E_INTERNAL",
        str(exc) or exc.__class__.__name__,
        hint="Re-run with --debug to see traceback.",
        exit_code=1,
        retryable=False,
    )


def _emit_error(err: CliError, *, error_format: str) -> None:
    if error_format == "json":
        payload = {
            "ok": False,
            "code": err.code,
            "message": err.message,
            "file": err.file,
            "line": err.line,
            "column": err.column,
            "hint": err.hint,
            "retryable": err.retryable,
        }
        sys.stderr.write(json.dumps(payload) + "\n")
        return

    sys.stderr.write(f"error[{err.code}]: {err.message}\n")
    if err.hint:
        sys.stderr.write(f"hint: {err.hint}\n")


def _handle_tree(args: argparse.Namespace) -> int:
    doc = _load_doc(args)
    for line in format_tree(doc.system):
        print(line)
    return 0


def _handle_json(args: argparse.Namespace) -> int:
    doc = _load_doc(args)
    text = json.dumps(doc.to_dict(), indent=2, ensure_ascii=False)
    if args.output:
        output_path = Path(args.output)
        _write_text(output_path, text + "\n")
        print(f"Wrote {output_path}")
        return 0
    sys.stdout.write(text + "\n")
    return 0


def _handle_pack(args: argparse.Namespace) -> int:
    doc = _load_doc(args)
    output_path = Path(args.output) if args.output else Path(args.input).with_suffix(BINARY_SUFFIX)
    blob = codec.encode(doc)
    _write_bytes(output_path, blob)
    print(f"Wrote {output_path} ({len(blob)} bytes)")
    return 0


def _handle_bench(args: argparse.Namespace) -> int:
    input_path = _check_input(args)
    if args.repeat < 1:
        raise CliError("E_ARGS", "--repeat must be >= 1", exit_code=2)

    def _best(fn) -> float:
        best = None
        for _ in range(args.repeat):
            start = time.perf_counter()
            fn()
            elapsed = time.perf_counter() - start
            best = elapsed if best is None else min(best, elapsed)
        return best

    doc = _resolve_input(args, input_path)
    parse_time = _best(lambda: _resolve_input(args, input_path))
    blob = codec.encode(doc)
    encode_time = _best(lambda: codec.encode(doc))
    decode_time = _best(lambda: codec.decode(blob))

    print(f"Benchmarking file: {input_path}")
    print(f"Parse and resolve: {parse_time * 1000:.3f} ms")
    print(f"Binary encode: {encode_time * 1000:.3f} ms")
    print(f"Binary size: {len(blob)} bytes")
    print(f"Binary decode: {decode_time * 1000:.3f} ms")
    if decode_time > 0:
        print(f"Speedup (parse / decode): {parse_time / decode_time:.1f}x")
    return 0


def main(argv: Optional[Iterable[str]] = None) -> int:
    raw_argv = list(argv) if argv is not None else sys.argv[1:]
    parser = _build_parser()

    if not raw_argv:
        err = CliError(
            "E_ARGS",
            "missing subcommand",
            hint=f"Use one of: {COMMANDS}.",
            exit_code=2,
        )
        _emit_error(err, error_format="text")
        return err.exit_code

    debug_enabled = "--debug" in raw_argv or os.getenv("SLXGRAPH_DEBUG") == "1"
    if debug_enabled:
        logging.basicConfig(level=logging.DEBUG, stream=sys.stderr, format="%(levelname)s %(name)s: %(message)s")
    error_format = "text"
    if "--error-format" in raw_argv:
        idx = raw_argv.index("--error-format")
        if idx + 1 < len(raw_argv):
            error_format = raw_argv[idx + 1]

    try:
        args = parser.parse_args(raw_argv)
        error_format = args.error_format

        if args.command == "tree":
            return _handle_tree(args)
        if args.command == "json":
            return _handle_json(args)
        if args.command == "pack":
            return _handle_pack(args)
        if args.command == "bench":
            return _handle_bench(args)

        raise CliError(
            "E_ARGS",
            "missing subcommand",
            hint=f"Use one of: {COMMANDS}.",
            exit_code=2,
        )
    except UsageError as exc:
        err = CliError(
            "E_ARGS",
            str(exc),
            hint=f"Use subcommands: {COMMANDS}.",
            exit_code=2,
        )
        _emit_error(err, error_format=error_format)
        return err.exit_code
    except Exception as exc:  # pragma: no cover - exercised in integration tests
        err = _error_from_exception(exc)
        _emit_error(err, error_format=error_format)
        if debug_enabled:
            traceback.print_exc(file=sys.stderr)
        return err.exit_code


if __name__ == "__main__":
    raise SystemExit(main())
