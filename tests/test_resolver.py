from __future__ import annotations

import sys
import tempfile
import threading
import unittest
import zipfile
from collections import Counter
from pathlib import Path
from unittest import mock

TESTS_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = TESTS_DIR.parent
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from slxgraph import (
    CyclicReference,
    FsSource,
    LibraryResolver,
    MalformedDocument,
    MemorySource,
    PortRef,
    ReferenceResolver,
    ResolutionTimeout,
    System,
    UnresolvedReference,
    ZipSource,
    load_model,
    resolve,
    resolve_with_timeout,
)

ROOT_XML = """
<System Name="root">
  <Block BlockType="SubSystem" Name="Controller" SID="B1">
    <PortCounts in="1"/>
    <System Ref="sub.xml"/>
  </Block>
  <Block BlockType="Constant" Name="Source" SID="B2">
    <PortCounts out="1"/>
  </Block>
  <Line>
    <P Name="Src">B2#out:1</P>
    <P Name="Dst">B1#in:1</P>
  </Line>
</System>
"""

SUB_XML = """
<System Name="Controller">
  <Block BlockType="Inport" Name="u" SID="1"><PortCounts out="1"/></Block>
  <Block BlockType="Gain" Name="K" SID="2">
    <P Name="Gain">4</P>
    <PortProperties><Port Type="in" Index="1"><P Name="Name">e</P></Port></PortProperties>
  </Block>
  <Line><P Name="Src">1#out:1</P><P Name="Dst">2#in:1</P></Line>
</System>
"""


def _ref_block(sid: str, ref: str, name: str = "") -> str:
    return f'<Block BlockType="SubSystem" Name="{name or sid}" SID="{sid}"><System Ref="{ref}"/></Block>'


def _system(*blocks: str) -> str:
    return "<System>" + "".join(blocks) + "</System>"


class CountingSource(MemorySource):
    def __init__(self, files) -> None:
        super().__init__(files)
        self.reads: Counter = Counter()
        self._lock = threading.Lock()

    def read(self, path: str) -> bytes:
        with self._lock:
            self.reads[path] += 1
        return super().read(path)


class ReferenceResolverTests(unittest.TestCase):
    def test_resolves_documented_example(self) -> None:
        system = resolve("root.xml", MemorySource({"root.xml": ROOT_XML, "sub.xml": SUB_XML}))
        self.assertEqual([blk.id for blk in system.blocks], ["B1", "B2"])
        nested = system.blocks[0].system
        self.assertIsNotNone(nested)
        self.assertEqual(nested.source, "sub.xml")
        self.assertEqual(nested.name, "Controller")
        self.assertEqual([blk.name for blk in nested.blocks], ["u", "K"])
        self.assertIsNone(system.blocks[1].system)
        self.assertEqual(system.lines[0].source, PortRef("B2", "out:1"))
        self.assertEqual(system.lines[0].destinations, [PortRef("B1", "in:1")])

    def test_walk_and_find_blocks_by_type(self) -> None:
        system = resolve("root.xml", MemorySource({"root.xml": ROOT_XML, "sub.xml": SUB_XML}))
        walked = [(path, blk.id) for path, blk in system.walk_blocks()]
        self.assertEqual(walked, [((), "B1"), (("Controller",), "1"), (("Controller",), "2"), ((), "B2")])
        gains = system.find_blocks_by_type("Gain")
        self.assertEqual([(path, blk.name) for path, blk in gains], [(("Controller",), "K")])
        self.assertEqual(system.find_blocks_by_type("Scope"), [])

    def test_reference_without_suffix_and_relative_dirs(self) -> None:
        files = {
            "models/root.xml": _system(_ref_block("a", "parts/system_1")),
            "models/parts/system_1.xml": _system(_ref_block("b", "../shared/leaf")),
            "models/shared/leaf.xml": '<System Name="leaf"><Block SID="x"/></System>',
        }
        system = resolve("models/root.xml", MemorySource(files))
        level1 = system.blocks[0].system
        self.assertEqual(level1.source, "models/parts/system_1.xml")
        leaf = level1.blocks[0].system
        self.assertEqual(leaf.source, "models/shared/leaf.xml")
        self.assertEqual(leaf.name, "leaf")

    def test_inline_system_references_resolve_against_file(self) -> None:
        files = {
            "dir/root.xml": _system('<Block SID="a"><System>' + _ref_block("b", "leaf.xml") + "</System></Block>"),
            "dir/leaf.xml": '<System Name="leaf"><Block SID="x"/></System>',
        }
        system = resolve("dir/root.xml", MemorySource(files))
        self.assertEqual(system.blocks[0].system.blocks[0].system.name, "leaf")

    def test_sibling_references_share_content_not_identity(self) -> None:
        source = CountingSource(
            {
                "root.xml": _system(_ref_block("a", "sub.xml"), _ref_block("b", "sub.xml"), _ref_block("c", "mid.xml")),
                "mid.xml": _system(_ref_block("m", "sub.xml")),
                "sub.xml": SUB_XML,
            }
        )
        system = resolve("root.xml", source)
        first, second = system.blocks[0].system, system.blocks[1].system
        self.assertEqual(first, second)
        self.assertIsNot(first, second)
        self.assertEqual(system.blocks[2].system.blocks[0].system, first)
        self.assertEqual(source.reads["sub.xml"], 1)

        fresh = resolve("sub.xml", MemorySource({"sub.xml": SUB_XML}))
        self.assertEqual(first, fresh)

        first.blocks[1].properties["Gain"] = "99"
        self.assertEqual(second.blocks[1].properties["Gain"], "4")

    def test_direct_self_reference_is_cyclic(self) -> None:
        with self.assertRaises(CyclicReference) as ctx:
            resolve("root.xml", MemorySource({"root.xml": _system(_ref_block("a", "root.xml"))}))
        self.assertEqual(ctx.exception.chain, ["root.xml", "root.xml"])
        self.assertEqual(ctx.exception.block_id, "a")

    def test_transitive_cycle_names_both_paths(self) -> None:
        files = {
            "root.xml": _system('<Block SID="leaf"/>', _ref_block("a", "sub.xml")),
            "sub.xml": _system(_ref_block("b", "third.xml")),
            "third.xml": _system(_ref_block("c", "root.xml")),
        }
        with self.assertRaises(CyclicReference) as ctx:
            resolve("root.xml", MemorySource(files))
        self.assertEqual(ctx.exception.chain, ["root.xml", "sub.xml", "third.xml", "root.xml"])
        self.assertIn("root.xml -> sub.xml -> third.xml -> root.xml", str(ctx.exception))
        self.assertEqual(ctx.exception.code, "E_CYCLE")

    def test_cycle_below_root(self) -> None:
        files = {
            "root.xml": _system(_ref_block("a", "sub.xml")),
            "sub.xml": _system(_ref_block("b", "loop.xml")),
            "loop.xml": _system(_ref_block("c", "sub.xml")),
        }
        with self.assertRaises(CyclicReference) as ctx:
            resolve("root.xml", MemorySource(files))
        self.assertEqual(ctx.exception.chain[-1], "sub.xml")
        self.assertIn("loop.xml", ctx.exception.chain)

    def test_missing_reference_names_path_and_block(self) -> None:
        with self.assertRaises(UnresolvedReference) as ctx:
            resolve("root.xml", MemorySource({"root.xml": _system(_ref_block("B7", "gone"))}))
        self.assertEqual(ctx.exception.target, "gone.xml")
        self.assertEqual(ctx.exception.block_id, "B7")
        self.assertEqual(ctx.exception.path, "root.xml")
        self.assertIn('"B7"', str(ctx.exception))

    def test_missing_root(self) -> None:
        with self.assertRaises(UnresolvedReference) as ctx:
            resolve("nope.xml", MemorySource({}))
        self.assertIsNone(ctx.exception.block_id)

    def test_errors_in_nested_file_carry_file_path(self) -> None:
        files = {"root.xml": _system(_ref_block("a", "bad.xml")), "bad.xml": "<System><Block"}
        with self.assertRaises(MalformedDocument) as ctx:
            resolve("root.xml", MemorySource(files))
        self.assertEqual(ctx.exception.path, "bad.xml")

    def test_filesystem_resolution(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            base = Path(td)
            (base / "root.xml").write_text(ROOT_XML)
            (base / "sub.xml").write_text(SUB_XML)
            doc = load_model(str(base / "root.xml"))
            self.assertEqual(doc.system.source, str((base / "root.xml").resolve()))
            self.assertEqual(doc.system.blocks[0].system.source, str((base / "sub.xml").resolve()))

            (base / "sub.xml").write_text(_system(_ref_block("back", "root.xml")))
            with self.assertRaises(CyclicReference) as ctx:
                ReferenceResolver(FsSource()).resolve(str(base / "root.xml"))
            root_key = str((base / "root.xml").resolve())
            self.assertEqual(ctx.exception.chain[0], root_key)
            self.assertEqual(ctx.exception.chain[-1], root_key)
            self.assertIn(str((base / "sub.xml").resolve()), ctx.exception.chain)


class ConcurrentResolverTests(unittest.TestCase):
    def _tree_files(self) -> dict:
        files = {"root.xml": _system(*[_ref_block(f"s{i}", f"sub{i % 3}.xml") for i in range(6)])}
        for i in range(3):
            files[f"sub{i}.xml"] = _system(_ref_block("x", "leaf.xml"), f'<Block SID="own{i}"/>')
        files["leaf.xml"] = SUB_XML
        return files

    def test_matches_sequential_result(self) -> None:
        files = self._tree_files()
        sequential = resolve("root.xml", MemorySource(files))
        source = CountingSource(files)
        concurrent = ReferenceResolver(source, workers=4).resolve("root.xml")
        self.assertEqual(concurrent, sequential)
        self.assertTrue(all(count == 1 for count in source.reads.values()), source.reads)

    def test_reports_same_cycle_as_sequential(self) -> None:
        files = self._tree_files()
        files["leaf.xml"] = _system(_ref_block("back", "sub1.xml"))
        errors = []
        for workers in (1, 4):
            with self.assertRaises(CyclicReference) as ctx:
                ReferenceResolver(MemorySource(files), workers=workers).resolve("root.xml")
            errors.append(ctx.exception.chain)
        self.assertEqual(errors[0], errors[1])
        self.assertEqual(errors[0], ["root.xml", "sub0.xml", "leaf.xml", "sub1.xml", "leaf.xml"])

    def test_reports_missing_reference(self) -> None:
        files = self._tree_files()
        del files["leaf.xml"]
        with self.assertRaises(UnresolvedReference) as ctx:
            ReferenceResolver(MemorySource(files), workers=3).resolve("root.xml")
        self.assertEqual(ctx.exception.target, "leaf.xml")
        self.assertEqual(ctx.exception.block_id, "x")

    def test_rejects_invalid_worker_count(self) -> None:
        with self.assertRaises(ValueError):
            ReferenceResolver(MemorySource({}), workers=0)


class TimeoutTests(unittest.TestCase):
    def test_deadline_exceeded(self) -> None:
        release = threading.Event()
        try:
            with self.assertRaises(ResolutionTimeout) as ctx:
                resolve_with_timeout(lambda: release.wait(5), 0.05, path="slow.xml")
            self.assertEqual(ctx.exception.code, "E_TIMEOUT")
            self.assertEqual(ctx.exception.path, "slow.xml")
        finally:
            release.set()

    def test_result_and_errors_pass_through(self) -> None:
        self.assertEqual(resolve_with_timeout(lambda: 42, 5), 42)
        self.assertEqual(resolve_with_timeout(lambda: 7, None), 7)
        with self.assertRaises(UnresolvedReference):
            resolve_with_timeout(lambda: resolve("x.xml", MemorySource({})), 5)


def _chain_files(depth: int) -> dict:
    files = {f"s{i}.xml": _system(_ref_block(f"b{i}", f"s{i + 1}")) for i in range(depth)}
    files[f"s{depth}.xml"] = '<System Name="bottom"><Block SID="leaf"/></System>'
    return files


class DeepReferenceTests(unittest.TestCase):
    DEPTH = 300

    def _depth_of(self, system):
        levels = 0
        while system.blocks and system.blocks[0].system is not None:
            system = system.blocks[0].system
            levels += 1
        return levels, system

    def test_long_reference_chain_resolves(self) -> None:
        for workers in (1, 4):
            with self.subTest(workers=workers):
                system = ReferenceResolver(MemorySource(_chain_files(self.DEPTH)), workers=workers).resolve("s0.xml")
                levels, bottom = self._depth_of(system)
                self.assertEqual(levels, self.DEPTH)
                self.assertEqual(bottom.name, "bottom")
                self.assertEqual(bottom.source, f"s{self.DEPTH}.xml")

    def test_long_chain_cycle_reports_full_chain(self) -> None:
        files = _chain_files(self.DEPTH)
        files[f"s{self.DEPTH}.xml"] = _system(_ref_block("back", "s0"))
        with self.assertRaises(CyclicReference) as ctx:
            resolve("s0.xml", MemorySource(files))
        self.assertEqual(len(ctx.exception.chain), self.DEPTH + 2)
        self.assertEqual(ctx.exception.chain[0], "s0.xml")
        self.assertEqual(ctx.exception.chain[-1], "s0.xml")

    def test_clone_of_deep_tree_is_independent(self) -> None:
        system = resolve("s0.xml", MemorySource(_chain_files(self.DEPTH)))
        copy = system.clone()
        levels, bottom = self._depth_of(copy)
        self.assertEqual(levels, self.DEPTH)
        bottom.blocks[0].properties["touched"] = "yes"
        self.assertEqual(self._depth_of(system)[1].blocks[0].properties, {})


LIBRARY_ROOT_XML = """
<System Name="Regler">
  <Block BlockType="SubSystem" Name="Joint_Interpolator" SID="5">
    <PortCounts in="1" out="1"/>
    <System Ref="system_5"/>
  </Block>
  <Block BlockType="Gain" Name="Plain" SID="6"/>
</System>
"""

LIBRARY_SUB_XML = '<System Name="Joint_Interpolator"><Block BlockType="Integrator" Name="I" SID="1"/></System>'

MODEL_XML = """
<System Name="model">
  <Reference Name="JI" SID="10">
    <P Name="SourceBlock">Regler/Joint_Interpolator</P>
    <PortCounts in="1" out="1"/>
  </Reference>
  <Reference Name="Again" SID="11"><P Name="SourceBlock">Regler/Joint_Interpolator</P></Reference>
  <Reference Name="Lost" SID="12"><P Name="SourceBlock">MissingLib/Thing</P></Reference>
  <Reference Name="NoSuchBlock" SID="13"><P Name="SourceBlock">Regler/Nope</P></Reference>
</System>
"""


def _write_library(path: Path) -> None:
    with zipfile.ZipFile(path, "w") as zf:
        zf.writestr("simulink/systems/system_root.xml", LIBRARY_ROOT_XML)
        zf.writestr("simulink/systems/system_5.xml", LIBRARY_SUB_XML)


class LibraryResolverTests(unittest.TestCase):
    def test_locate_prefers_first_search_path(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            dir1, dir2 = Path(td) / "p1", Path(td) / "p2"
            dir1.mkdir()
            dir2.mkdir()
            for path in (dir1 / "Regler.slx", dir2 / "OtherLib.slx", dir2 / "Regler.slx"):
                path.touch()

            lookup = LibraryResolver([dir1, dir2]).locate(["Regler", "OtherLib", "MissingLib", "Regler", " "])
            self.assertEqual(lookup.found, [("Regler", dir1 / "Regler.slx"), ("OtherLib", dir2 / "OtherLib.slx")])
            self.assertEqual(lookup.not_found, ["MissingLib"])

    def test_links_blocks_and_loads_each_library_once(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            (Path(td) / "Regler.slx").touch()
            library = resolve("root.xml", MemorySource({"root.xml": LIBRARY_ROOT_XML, "system_5.xml": LIBRARY_SUB_XML}))
            loads = []

            def load(path: Path) -> System:
                loads.append(path)
                return library

            model = resolve("model.xml", MemorySource({"model.xml": MODEL_XML}))
            with self.assertLogs("slxgraph.library", "WARNING") as logs:
                linked = LibraryResolver([td], load=load).link(model)
            self.assertEqual(linked, 2)
            self.assertEqual(loads, [Path(td) / "Regler.slx"])
            first, second, lost, nope = model.blocks
            self.assertEqual(first.system.name, "Joint_Interpolator")
            self.assertEqual(first.system, second.system)
            self.assertIsNot(first.system, second.system)
            self.assertIsNot(first.system, library.blocks[0].system)
            self.assertIsNone(lost.system)
            self.assertIsNone(nope.system)
            output = "\n".join(logs.output)
            self.assertIn("MissingLib", output)
            self.assertIn("Nope", output)

    def test_resolve_with_library_archives(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            _write_library(Path(td) / "Regler.slx")
            (Path(td) / "model.xml").write_text(MODEL_XML)
            with self.assertLogs("slxgraph.library", "WARNING"):
                doc = load_model(str(Path(td) / "model.xml"), library_paths=[td])
            nested = doc.system.blocks[0].system
            self.assertEqual([blk.name for blk in nested.blocks], ["I"])
            self.assertEqual(nested.source, "simulink/systems/system_5.xml")

            plain = load_model(str(Path(td) / "model.xml"))
            self.assertIsNone(plain.system.blocks[0].system)

    def test_self_linking_library_block_is_cyclic(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            (Path(td) / "Lib.slx").touch()
            library = resolve(
                "root.xml",
                MemorySource(
                    {
                        "root.xml": _system(
                            '<Block Name="Loop" SID="1"><System>'
                            '<Block Name="Inner" SID="2"><P Name="SourceBlock">Lib/Loop</P></Block>'
                            "</System></Block>"
                        )
                    }
                ),
            )
            model = resolve(
                "m.xml",
                MemorySource({"m.xml": _system('<Block SID="9"><P Name="SourceBlock">Lib/Loop</P></Block>')}),
            )
            with self.assertRaises(CyclicReference) as ctx:
                LibraryResolver([td], load=lambda path: library).link(model)
            self.assertEqual(ctx.exception.chain, ["Lib/Loop", "Lib/Loop"])
            self.assertEqual(ctx.exception.block_id, "2")


class ArchiveLifetimeTests(unittest.TestCase):
    def _archive(self, base: Path) -> Path:
        archive = base / "model.slx"
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr("simulink/systems/system_root.xml", ROOT_XML)
            zf.writestr("simulink/systems/sub.xml", SUB_XML)
        return archive

    def test_archive_closed_after_resolution(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            archive = self._archive(Path(td))
            with mock.patch.object(ZipSource, "close") as close:
                doc = load_model(str(archive), timeout=30)
            self.assertEqual(doc.system.name, "root")
            close.assert_called_once_with()

    def test_archive_left_open_for_abandoned_resolution(self) -> None:
        release = threading.Event()
        with tempfile.TemporaryDirectory() as td:
            archive = self._archive(Path(td))
            try:
                with mock.patch.object(
                    ReferenceResolver, "resolve_doc", side_effect=lambda root: release.wait(5)
                ), mock.patch.object(ZipSource, "close") as close:
                    with self.assertRaises(ResolutionTimeout):
                        load_model(str(archive), timeout=0.05)
                    close.assert_not_called()
            finally:
                release.set()


if __name__ == "__main__":
    unittest.main()
