import argparse
import sys
from contextlib import ExitStack
from typing import Optional, Sequence

from .analysis.errors import InvalidParameters, PStructsError
from .analysis.extractor import VERSION, Extractor, ExtractorSettings
from .analysis.field_decl import FieldDeclarationSettings
from .analysis.reconstructor import MemberStructExpansion, ReconstructorSettings
from .analysis.utils import parse_channels


USAGE_EPILOG = """\
Boolean options can be explicitly turned off by a trailing '-'.
Example: -p-
"""


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:
        raise InvalidParameters(message)


def _switch(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    return value != "-"


def _open_output(filename: str):
    try:
        return open(filename, "w", encoding="utf-8")
    except OSError as exc:
        raise InvalidParameters(f"cannot write {filename}: {exc.strerror or exc}") from exc


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="pstructs",
        description=(
            f"Extracts types and structures from debug symbols (PDB or DWARF). Version v{VERSION}"
        ),
        epilog=USAGE_EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        add_help=False,
    )
    parser.add_argument("symbol", nargs="?", help="Symbol name to extract, or '*' for all symbols.")
    parser.add_argument("path", nargs="?", help="Path to the PDB, ELF or Mach-O file.")
    parser.add_argument("-h", "--help", action="store_true", help="Show this help and exit.")
    parser.add_argument("-o", dest="output", metavar="filename", help="Output file. (stdout)")
    parser.add_argument("-t", dest="test", metavar="filename", help="Output test file. (off)")
    parser.add_argument(
        "-e",
        dest="expansion",
        metavar="[n,i,a]",
        default="i",
        help=(
            "Expansion of nested structures/unions. (i) "
            "n = none: only top-most type is printed; "
            "i = inline unnamed: unnamed types are nested; "
            "a = inline all: all types are nested."
        ),
    )
    parser.add_argument("-u", dest="union_prefix", metavar="prefix", help="Unnamed union prefix (in combination with -d).")
    parser.add_argument("-s", dest="struct_prefix", metavar="prefix", help="Unnamed struct prefix (in combination with -d).")
    parser.add_argument("-r", dest="symbol_prefix", metavar="prefix", default="", help="Prefix for all symbols.")
    parser.add_argument("-g", dest="symbol_suffix", metavar="suffix", default="", help="Suffix for all symbols.")

    switches = [
        ("-p", "padding", "Create padding members. (T)"),
        ("-x", "offsets", "Show offsets. (T)"),
        ("-m", "typedefs", "Create Microsoft typedefs. (T)"),
        ("-b", "union_bitfields", "Allow bitfields in union. (F)"),
        ("-d", "unnamed", "Allow unnamed data types. (T)"),
        ("-i", "stdint", "Use types from stdint.h instead of native types. (F)"),
        ("-j", "referenced", "Print definitions of referenced types. (T)"),
        ("-k", "header", "Print header. (T)"),
        ("-n", "declarations", "Print declarations. (T)"),
        ("-l", "definitions", "Print definitions. (T)"),
    ]
    for flag, dest, help_text in switches:
        parser.add_argument(flag, dest=dest, nargs="?", const="", choices=["", "-"], metavar="-", help=help_text)

    parser.add_argument(
        "-v",
        dest="verbose",
        metavar="channels",
        default="",
        help="Comma-separated diagnostics to log on stderr (reader, sorter, layout, or 'all').",
    )
    return parser


def settings_from_args(args: argparse.Namespace) -> ExtractorSettings:
    defaults = ReconstructorSettings()
    reconstructor = ReconstructorSettings(
        member_struct_expansion=MemberStructExpansion.from_flag(args.expansion),
        anonymous_struct_prefix=args.struct_prefix if args.struct_prefix is not None else defaults.anonymous_struct_prefix,
        anonymous_union_prefix=args.union_prefix if args.union_prefix is not None else defaults.anonymous_union_prefix,
        symbol_prefix=args.symbol_prefix,
        symbol_suffix=args.symbol_suffix,
        create_padding_members=_switch(args.padding, True),
        show_offsets=_switch(args.offsets, True),
        microsoft_typedefs=_switch(args.typedefs, True),
        allow_bitfields_in_union=_switch(args.union_bitfields, False),
        allow_anonymous_data_types=_switch(args.unnamed, True),
    )
    return ExtractorSettings(
        symbol_name=args.symbol,
        path=args.path,
        output_filename=args.output,
        test_filename=args.test,
        print_referenced_types=_switch(args.referenced, True),
        print_header=_switch(args.header, True),
        print_declarations=_switch(args.declarations, True),
        print_definitions=_switch(args.definitions, True),
        verbose=parse_channels(args.verbose),
        reconstructor=reconstructor,
        field_declaration=FieldDeclarationSettings(use_stdint=_switch(args.stdint, False)),
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    argv = list(sys.argv[1:] if argv is None else argv)

    try:
        args = parser.parse_args(argv)
        if args.help or args.symbol is None:
            parser.print_help()
            return 0
        if args.path is None:
            raise InvalidParameters("missing <path>")
        settings = settings_from_args(args)

        with ExitStack() as stack:
            out = sys.stdout
            test_out = None
            if settings.output_filename:
                out = stack.enter_context(_open_output(settings.output_filename))
            if settings.test_filename:
                test_out = stack.enter_context(_open_output(settings.test_filename))
            return Extractor(settings, out, test_out).run()
    except PStructsError as exc:
        print(exc, file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
