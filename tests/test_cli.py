import contextlib
import io
import os
import sys
import tempfile
import unittest
from unittest import mock


REPO_ROOT = os.path.dirname(os.path.dirname(__file__))
SRC_ROOT = os.path.join(REPO_ROOT, "src")
sys.path.insert(0, SRC_ROOT)


from pstructs.analysis.errors import FileNotFound, InvalidParameters  # noqa: E402
from pstructs.analysis.loader import open_graph  # noqa: E402
from pstructs.analysis.reconstructor import MemberStructExpansion  # noqa: E402
from pstructs.analysis.symbols import BaseKind, SymbolGraph, UdtKind  # noqa: E402
from pstructs.cli import build_parser, main, settings_from_args  # noqa: E402


def _settings(*argv: str):
    return settings_from_args(build_parser().parse_args(list(argv)))


def _graph() -> SymbolGraph:
    graph = SymbolGraph("fake.pdb")
    int4 = graph.add_base(BaseKind.INT, 4)
    s = graph.add_udt("_S", UdtKind.STRUCT, 4)
    graph.add_member(s, "a", int4, 0)
    graph.add_top_level(s)
    return graph


def _main(*argv: str):
    stdout = io.StringIO()
    stderr = io.StringIO()
    with contextlib.redirect_stdout(stdout), contextlib.redirect_stderr(stderr):
        code = main(list(argv))
    return code, stdout.getvalue(), stderr.getvalue()


class SettingsTests(unittest.TestCase):
    def test_defaults(self) -> None:
        settings = _settings("_S", "fake.pdb")
        reconstructor = settings.reconstructor

        self.assertEqual((settings.symbol_name, settings.path), ("_S", "fake.pdb"))
        self.assertIsNone(settings.output_filename)
        self.assertIsNone(settings.test_filename)
        self.assertTrue(settings.print_referenced_types)
        self.assertTrue(settings.print_header)
        self.assertTrue(settings.print_declarations)
        self.assertTrue(settings.print_definitions)
        self.assertFalse(settings.field_declaration.use_stdint)
        self.assertIs(reconstructor.member_struct_expansion, MemberStructExpansion.INLINE_UNNAMED)
        self.assertTrue(reconstructor.create_padding_members)
        self.assertTrue(reconstructor.show_offsets)
        self.assertTrue(reconstructor.microsoft_typedefs)
        self.assertFalse(reconstructor.allow_bitfields_in_union)
        self.assertTrue(reconstructor.allow_anonymous_data_types)
        self.assertEqual(reconstructor.anonymous_struct_prefix, "_TAG_UNNAMED_")
        self.assertEqual(reconstructor.anonymous_union_prefix, "_TAG_UNNAMED_")

    def test_trailing_dash_turns_switch_off(self) -> None:
        settings = _settings("*", "fake.pdb", "-p-", "-x-", "-m-", "-d-", "-j-", "-k-", "-n-", "-l-")
        reconstructor = settings.reconstructor

        self.assertFalse(reconstructor.create_padding_members)
        self.assertFalse(reconstructor.show_offsets)
        self.assertFalse(reconstructor.microsoft_typedefs)
        self.assertFalse(reconstructor.allow_anonymous_data_types)
        self.assertFalse(settings.print_referenced_types)
        self.assertFalse(settings.print_header)
        self.assertFalse(settings.print_declarations)
        self.assertFalse(settings.print_definitions)

    def test_bare_switch_turns_option_on(self) -> None:
        settings = _settings("*", "fake.pdb", "-b", "-i")

        self.assertTrue(settings.reconstructor.allow_bitfields_in_union)
        self.assertTrue(settings.field_declaration.use_stdint)

    def test_value_options(self) -> None:
        settings = _settings(
            "_S", "fake.pdb",
            "-o", "out.h", "-t", "test.c",
            "-e", "a", "-u", "_U_", "-s", "_S_", "-r", "Pre", "-g", "Post",
            "-v", "reader, layout",
        )

        self.assertEqual(settings.output_filename, "out.h")
        self.assertEqual(settings.test_filename, "test.c")
        self.assertIs(settings.reconstructor.member_struct_expansion, MemberStructExpansion.INLINE_ALL)
        self.assertEqual(settings.reconstructor.anonymous_union_prefix, "_U_")
        self.assertEqual(settings.reconstructor.anonymous_struct_prefix, "_S_")
        self.assertEqual(settings.reconstructor.symbol_prefix, "Pre")
        self.assertEqual(settings.reconstructor.symbol_suffix, "Post")
        self.assertEqual(settings.verbose, {"reader", "layout"})

    def test_unknown_expansion_falls_back_to_inline_unnamed(self) -> None:
        self.assertIs(_settings("*", "x", "-e", "n").reconstructor.member_struct_expansion, MemberStructExpansion.NONE)
        self.assertIs(
            _settings("*", "x", "-e", "q").reconstructor.member_struct_expansion,
            MemberStructExpansion.INLINE_UNNAMED,
        )

    def test_bad_switch_value_is_invalid(self) -> None:
        with self.assertRaises(InvalidParameters):
            build_parser().parse_args(["*", "x", "-pz"])


class MainTests(unittest.TestCase):
    def test_no_arguments_prints_help(self) -> None:
        code, stdout, _ = _main()

        self.assertEqual(code, 0)
        self.assertIn("usage: pstructs", stdout)
        self.assertIn("-p-", stdout)

    def test_help_flag(self) -> None:
        code, stdout, _ = _main("-h")

        self.assertEqual(code, 0)
        self.assertIn("Print declarations", stdout)

    def test_missing_path(self) -> None:
        code, stdout, stderr = _main("_S")

        self.assertEqual(code, 1)
        self.assertEqual(stdout, "")
        self.assertIn("Invalid parameters", stderr)

    def test_unknown_option(self) -> None:
        code, _, stderr = _main("_S", "fake.pdb", "-z")

        self.assertEqual(code, 1)
        self.assertIn("Invalid parameters", stderr)

    def test_dump_to_stdout(self) -> None:
        with mock.patch("pstructs.analysis.extractor.open_graph", return_value=_graph()):
            code, stdout, stderr = _main("_S", "fake.pdb", "-k-")

        self.assertEqual(code, 0)
        self.assertEqual(stderr, "")
        self.assertIn("typedef struct _S\n", stdout)
        self.assertIn("} S, *PS; /* size: 0x0004 */\n", stdout)

    def test_missing_symbol(self) -> None:
        with mock.patch("pstructs.analysis.extractor.open_graph", return_value=_graph()):
            code, stdout, stderr = _main("NoSuchType", "fake.pdb")

        self.assertEqual(code, 1)
        self.assertEqual(stdout, "")
        self.assertIn("Symbol not found", stderr)

    def test_output_and_test_files(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            header = os.path.join(tmp, "out.h")
            harness = os.path.join(tmp, "test.c")
            with mock.patch("pstructs.analysis.extractor.open_graph", return_value=_graph()):
                code, stdout, _ = _main("*", "fake.pdb", "-o", header, "-t", harness)

            self.assertEqual(code, 0)
            self.assertEqual(stdout, "")
            with open(header, "r", encoding="utf-8") as f:
                self.assertIn("typedef struct _S\n", f.read())
            with open(harness, "r", encoding="utf-8") as f:
                text = f.read()
            self.assertIn(f'#include "{header}"\n', text)
            self.assertIn('"struct _S", (int)sizeof(struct _S)', text)

    def test_unwritable_output_is_invalid(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            header = os.path.join(tmp, "missing_dir", "out.h")
            harness = os.path.join(tmp, "missing_dir", "test.c")
            with mock.patch("pstructs.analysis.extractor.open_graph", return_value=_graph()):
                for argv in (("-o", header), ("-t", harness)):
                    code, stdout, stderr = _main("*", "fake.pdb", *argv)

                    self.assertEqual(code, 1)
                    self.assertEqual(stdout, "")
                    self.assertIn("Invalid parameters", stderr)
                    self.assertIn("missing_dir", stderr)

    def test_unreadable_input(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "garbage.bin")
            with open(path, "wb") as f:
                f.write(b"not a debug file at all, just bytes")

            code, _, stderr = _main("*", path)

        self.assertEqual(code, 1)
        self.assertIn("File not found", stderr)


class LoaderTests(unittest.TestCase):
    def test_missing_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(FileNotFound):
                open_graph(os.path.join(tmp, "missing.pdb"))

    def test_directory_is_not_a_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(FileNotFound):
                open_graph(tmp)

    def test_unknown_magic(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "short.bin")
            with open(path, "wb") as f:
                f.write(b"MZ")

            with self.assertRaises(FileNotFound) as ctx:
                open_graph(path)
        self.assertIn("unsupported file format", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
