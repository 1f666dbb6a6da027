from __future__ import annotations

from dataclasses import replace
from typing import TYPE_CHECKING, Callable, Optional

from .field_decl import FieldDeclaration, FieldDeclarationBase, FieldDeclarationSettings
from .symbols import BaseKind, Member, Symbol, SymbolGraph, SymbolTag
from .utils import _sanitize_identifier

if TYPE_CHECKING:
    from .reconstructor import HeaderReconstructor


FieldFactory = Callable[[FieldDeclarationSettings], FieldDeclarationBase]


class SymbolVisitor:
    """Walks type chains and feeds them to a field declaration printer.

    The printer class is pluggable through `field_factory`, so a different
    output dialect only needs another `FieldDeclarationBase` subclass.
    """

    def __init__(
        self,
        graph: SymbolGraph,
        reconstructor: "HeaderReconstructor",
        field_settings: Optional[FieldDeclarationSettings] = None,
        field_factory: Optional[FieldFactory] = None,
    ) -> None:
        self.graph = graph
        self.reconstructor = reconstructor
        field_settings = field_settings or FieldDeclarationSettings()
        if field_settings.msvc_types is None:
            field_settings = replace(field_settings, msvc_types=graph.msvc_types)
        self.field_settings = field_settings
        self.field_factory: FieldFactory = field_factory or FieldDeclaration

    def run(self, symbol: Symbol) -> None:
        resolved = self.graph.resolve(symbol)
        if resolved.tag in {SymbolTag.UDT, SymbolTag.ENUM}:
            self.reconstructor.write_definition(resolved, self)

    def member_declaration(self, member: Member, offset: int) -> FieldDeclarationBase:
        return self.type_declaration(self.graph.member_type(member), member.name, offset)

    def type_declaration(self, symbol: Symbol, name: Optional[str], offset: int) -> FieldDeclarationBase:
        field = self.field_factory(self.field_settings)
        self._visit(symbol, field, offset, through_pointer=False)
        field.set_member_name(_sanitize_identifier(name or ""))
        return field

    def _visit(self, symbol: Symbol, field: FieldDeclarationBase, offset: int, through_pointer: bool) -> None:
        tag = symbol.tag

        if tag is SymbolTag.TYPEDEF:
            self._visit(self.graph.child(symbol), field, offset, through_pointer)
            return

        if tag is SymbolTag.POINTER:
            field.visit_pointer_begin(symbol)
            self._visit(self.graph.child(symbol), field, offset, through_pointer=True)
            field.visit_pointer_end(symbol)
            return

        if tag is SymbolTag.ARRAY:
            field.visit_array_begin(symbol)
            # A zero-length array is printed as a pointer, so its element is
            # never expanded in place.
            self._visit(self.graph.child(symbol), field, offset, through_pointer or symbol.coerced)
            field.visit_array_end(symbol)
            return

        if tag is SymbolTag.FUNCTION:
            field.visit_function_end(symbol)
            return

        if tag is SymbolTag.BASE_TYPE:
            field.visit_base_type(symbol)
            return

        if tag in {SymbolTag.UDT, SymbolTag.ENUM}:
            if not through_pointer and self.reconstructor.should_inline(symbol):
                self.reconstructor.write_inline_body(symbol, self, offset)
                field.visit_inline_end(symbol)
            elif tag is SymbolTag.UDT:
                field.visit_udt(symbol, self.reconstructor.type_reference(symbol))
            else:
                field.visit_enum(symbol, self.reconstructor.type_reference(symbol))
            return

        # ENUM_VALUE never types a member; spell it as the int it holds.
        field.visit_base_type(self.graph.add_base(BaseKind.INT, 4))
