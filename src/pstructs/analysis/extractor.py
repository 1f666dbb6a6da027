from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, TextIO

from .errors import SymbolNotFound
from .field_decl import FieldDeclarationSettings
from .loader import open_graph
from .reconstructor import HeaderReconstructor, MemberStructExpansion, ReconstructorSettings
from .sorter import SymbolSorter
from .symbols import Architecture, Symbol, SymbolGraph, SymbolTag, is_unnamed
from .utils import make_logger
from .visitor import SymbolVisitor


VERSION = "0.1.0"

TEST_FILE_HEADER = (
    "#include <stdio.h>\n"
    "#include <stddef.h>\n"
    "#include <stdint.h>\n"
    "\n"
    "{include}"
    "int main()\n"
    "{{\n"
)

TEST_FILE_FOOTER = (
    "\n"
    "\treturn 0;\n"
    "}\n"
)

HEADER_FILE_HEADER = (
    "/*\n"
    " * Symbol file: {path}\n"
    " * Image architecture: {architecture}\n"
    " *\n"
    " * Dumped by pstructs tool v{version}\n"
    " */\n"
    "\n"
)


@dataclass
class ExtractorSettings:
    symbol_name: str = "*"
    path: str = ""
    output_filename: Optional[str] = None
    test_filename: Optional[str] = None
    print_referenced_types: bool = True
    print_header: bool = True
    print_declarations: bool = True
    print_definitions: bool = True
    verbose: set[str] = field(default_factory=set)
    reconstructor: ReconstructorSettings = field(default_factory=ReconstructorSettings)
    field_declaration: FieldDeclarationSettings = field(default_factory=FieldDeclarationSettings)


class Extractor:
    """Drives one run: banner, forward declarations, definitions, harness."""

    def __init__(
        self,
        settings: ExtractorSettings,
        out: TextIO,
        test_out: Optional[TextIO] = None,
        graph: Optional[SymbolGraph] = None,
    ) -> None:
        self.settings = settings
        self.out = out
        self.test_out = test_out
        self.graph = graph
        self.architecture = Architecture.NONE
        self.sorter: Optional[SymbolSorter] = None
        self.reconstructor: Optional[HeaderReconstructor] = None
        self.visitor: Optional[SymbolVisitor] = None

    def run(self) -> int:
        verbose = self.settings.verbose
        if self.graph is None:
            self.graph = open_graph(self.settings.path, make_logger(verbose, "reader"))
        else:
            self.graph.normalize()

        self.sorter = SymbolSorter(self.graph, make_logger(verbose, "sorter"))
        self.reconstructor = HeaderReconstructor(
            self.graph,
            self.settings.reconstructor,
            self.out,
            self.test_out,
            make_logger(verbose, "layout"),
        )
        self.visitor = SymbolVisitor(self.graph, self.reconstructor, self.settings.field_declaration)

        self.print_test_header()
        if self.settings.symbol_name == "*":
            self.dump_all_symbols()
        else:
            self.dump_one_symbol()
        self.print_test_footer()
        return 0

    def print_test_header(self) -> None:
        if self.test_out is None:
            return
        include = ""
        if self.settings.output_filename:
            include = f'#include "{self.settings.output_filename}"\n\n'
        self.test_out.write(TEST_FILE_HEADER.format(include=include))

    def print_test_footer(self) -> None:
        if self.test_out is not None:
            self.test_out.write(TEST_FILE_FOOTER)

    def detect_architecture(self) -> Architecture:
        for _, symbol in self.graph.symbol_map():
            self.sorter.visit(symbol)
            if self.sorter.architecture is not Architecture.NONE:
                break
        self.architecture = self.sorter.architecture
        self.sorter.clear()
        return self.architecture

    def print_header(self) -> None:
        if not self.settings.print_header:
            return
        architecture = self.detect_architecture()
        self.out.write(
            HEADER_FILE_HEADER.format(
                path=self.settings.path or self.graph.path,
                architecture=architecture.value,
                version=VERSION,
            )
        )

    def _has_standalone_definition(self, symbol: Symbol) -> bool:
        if not is_unnamed(symbol):
            return True
        return self.settings.reconstructor.member_struct_expansion is MemberStructExpansion.NONE

    def print_declarations(self) -> None:
        if not self.settings.print_declarations:
            return
        written = False
        for symbol in self.sorter.sorted_symbols:
            if symbol.tag is SymbolTag.UDT and self._has_standalone_definition(symbol):
                self.reconstructor.write_declaration(symbol)
                written = True
        if written:
            self.out.write("\n")

    def print_definitions(self) -> None:
        if not self.settings.print_definitions:
            return
        for symbol in self.sorter.sorted_symbols:
            if not self._has_standalone_definition(symbol):
                # Printed inline where used.
                continue
            if symbol.tag is SymbolTag.UDT and not symbol.members and symbol.size == 0:
                # Forward reference without a definition anywhere in the graph.
                continue
            self.visitor.run(symbol)

    def dump_all_symbols(self) -> None:
        self.print_header()
        for _, symbol in self.graph.symbol_map():
            self.sorter.visit(symbol)
        self.print_declarations()
        self.print_definitions()

    def dump_one_symbol(self) -> None:
        symbol = self.graph.lookup_by_name(self.settings.symbol_name)
        if symbol is None:
            raise SymbolNotFound(self.settings.symbol_name)

        self.print_header()
        expansion = self.settings.reconstructor.member_struct_expansion
        # Inlining everything leaves nothing to print separately.
        if self.settings.print_referenced_types and expansion is not MemberStructExpansion.INLINE_ALL:
            self.sorter.visit(symbol)
            self.print_declarations()
            self.print_definitions()
        else:
            self.visitor.run(symbol)
