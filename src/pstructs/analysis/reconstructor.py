from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Optional, TextIO, Union

from .errors import UnionBitfieldViolation
from .symbols import Member, Symbol, SymbolGraph, SymbolTag, UdtKind, is_unnamed, udt_kind_string
from .utils import Logger, _sanitize_identifier

if TYPE_CHECKING:
    from .visitor import SymbolVisitor


INDENT = "  "


class MemberStructExpansion(Enum):
    NONE = "n"
    INLINE_UNNAMED = "i"
    INLINE_ALL = "a"

    @classmethod
    def from_flag(cls, value: Optional[str]) -> "MemberStructExpansion":
        for item in cls:
            if item.value == value:
                return item
        return cls.INLINE_UNNAMED


@dataclass
class ReconstructorSettings:
    member_struct_expansion: MemberStructExpansion = MemberStructExpansion.INLINE_UNNAMED
    anonymous_struct_prefix: str = "_TAG_UNNAMED_"
    anonymous_union_prefix: str = "_TAG_UNNAMED_"
    symbol_prefix: str = ""
    symbol_suffix: str = ""
    create_padding_members: bool = True
    show_offsets: bool = True
    microsoft_typedefs: bool = True
    allow_bitfields_in_union: bool = False
    allow_anonymous_data_types: bool = True


@dataclass
class StorageUnit:
    members: list[tuple[int, Member]]
    offset: int
    size: int

    @property
    def index(self) -> int:
        return self.members[0][0]

    @property
    def end(self) -> int:
        return self.offset + self.size

    @property
    def is_bitfield(self) -> bool:
        return self.members[0][1].is_bitfield


@dataclass
class FieldItem:
    member: Member
    offset: int
    size: int


@dataclass
class BitfieldItem:
    members: list[Member]
    offset: int
    size: int


@dataclass
class Padding:
    offset: int
    size: int
    name: str


@dataclass
class AnonymousGroup:
    kind: UdtKind
    offset: int
    size: int
    items: list["LayoutItem"] = field(default_factory=list)
    bitfield: bool = False


LayoutItem = Union[FieldItem, BitfieldItem, Padding, AnonymousGroup]


class MemberLayout:
    """Turns one UDT's member list into printable layout items.

    Offsets of the produced items are relative to the start of the UDT.
    Padding names are numbered per aggregate.
    """

    def __init__(
        self,
        graph: SymbolGraph,
        settings: ReconstructorSettings,
        udt: Symbol,
        log: Optional[Logger] = None,
    ) -> None:
        self.graph = graph
        self.settings = settings
        self.udt = udt
        self._log = log
        self._padding_counter = 0

    def build(self) -> list[LayoutItem]:
        units = self._storage_units()
        if self.udt.udt_kind is UdtKind.UNION:
            if any(unit.is_bitfield for unit in units) and not self.settings.allow_bitfields_in_union:
                raise UnionBitfieldViolation(self.udt.name or f"#{self.udt.id}")
            return self._union_items(units)
        return self._struct_items(units, 0, self.udt.size)

    def _storage_units(self) -> list[StorageUnit]:
        units: list[StorageUnit] = []
        for index, member in enumerate(self.udt.members):
            size = self.graph.type_size(self.graph.member_type(member))
            if member.is_bitfield and units:
                last = units[-1]
                previous = last.members[-1][1]
                if (
                    last.is_bitfield
                    and last.offset == member.offset
                    and last.size == size
                    and (member.bit_position or 0) >= (previous.bit_position or 0) + (previous.bit_length or 0)
                ):
                    last.members.append((index, member))
                    continue
            units.append(StorageUnit(members=[(index, member)], offset=member.offset, size=size))
        units.sort(key=lambda unit: (unit.offset, unit.index))
        return units

    def _padding(self, offset: int, size: int) -> Padding:
        name = f"Padding_{self._padding_counter}"
        self._padding_counter += 1
        if self._log:
            self._log(f"{self.udt.name or '#%d' % self.udt.id}: {name} at 0x{offset:x}, {size} byte(s)")
        return Padding(offset=offset, size=size, name=name)

    def _unit_item(self, unit: StorageUnit) -> LayoutItem:
        if unit.is_bitfield:
            return BitfieldItem(members=[member for _, member in unit.members], offset=unit.offset, size=unit.size)
        member = unit.members[0][1]
        return FieldItem(member=member, offset=unit.offset, size=unit.size)

    def _struct_items(self, units: list[StorageUnit], start: int, end: Optional[int]) -> list[LayoutItem]:
        items: list[LayoutItem] = []
        cursor = start
        for group in _overlap_groups(units):
            first = group[0]
            if first.offset > cursor and self.settings.create_padding_members:
                items.append(self._padding(cursor, first.offset - cursor))
            if len(group) == 1:
                items.append(self._unit_item(first))
            else:
                items.append(self._union_group(group))
            cursor = max(cursor, max(unit.end for unit in group))
        if end is not None and end > cursor and self.settings.create_padding_members:
            items.append(self._padding(cursor, end - cursor))
        return items

    def _alternative_item(self, alternative: list[StorageUnit], start: int, wrap_bitfields: bool) -> LayoutItem:
        first = alternative[0]
        if len(alternative) == 1 and first.offset == start:
            item = self._unit_item(first)
            if first.is_bitfield and (wrap_bitfields or len(first.members) > 1):
                return AnonymousGroup(
                    kind=UdtKind.STRUCT, offset=first.offset, size=first.size, items=[item], bitfield=True
                )
            return item

        # Every alternative of a union starts at the union's own offset, so
        # a later start needs a leading pad whatever create_padding_members says.
        items: list[LayoutItem] = []
        if first.offset > start:
            items.append(self._padding(start, first.offset - start))
        items.extend(self._struct_items(alternative, first.offset, None))
        end = max(unit.end for unit in alternative)
        return AnonymousGroup(
            kind=UdtKind.STRUCT,
            offset=start,
            size=end - start,
            items=items,
            bitfield=len(alternative) == 1 and first.is_bitfield,
        )

    def _union_group(self, units: list[StorageUnit]) -> AnonymousGroup:
        offset = units[0].offset
        end = max(unit.end for unit in units)
        alternatives = _alternatives(units)
        if self._log:
            self._log(
                f"{self.udt.name or '#%d' % self.udt.id}: union at 0x{offset:x} "
                f"with {len(alternatives)} alternative(s)"
            )
        return AnonymousGroup(
            kind=UdtKind.UNION,
            offset=offset,
            size=end - offset,
            items=[self._alternative_item(alternative, offset, wrap_bitfields=True) for alternative in alternatives],
        )

    def _union_items(self, units: list[StorageUnit]) -> list[LayoutItem]:
        items = [self._alternative_item(alternative, 0, wrap_bitfields=False) for alternative in _alternatives(units)]
        largest = max((unit.end for unit in units), default=0)
        if self.udt.size > largest and self.settings.create_padding_members:
            items.append(self._padding(0, self.udt.size))
        return items


def _overlap_groups(units: list[StorageUnit]) -> list[list[StorageUnit]]:
    groups: list[list[StorageUnit]] = []
    end = 0
    for unit in units:
        if groups and unit.offset < end:
            groups[-1].append(unit)
            end = max(end, unit.end)
        else:
            groups.append([unit])
            end = unit.end
    return groups


def _alternatives(units: list[StorageUnit]) -> list[list[StorageUnit]]:
    alternatives: list[list[StorageUnit]] = []
    previous_end = 0
    for unit in sorted(units, key=lambda item: item.index):
        if alternatives and unit.offset >= previous_end:
            alternatives[-1].append(unit)
        else:
            alternatives.append([unit])
        previous_end = unit.end
    return alternatives


def microsoft_alias(name: str) -> str:
    if name.startswith("_") and len(name) > 1:
        return name[1:]
    return name


class HeaderReconstructor:
    """Prints standalone and inline definitions of UDTs and enums."""

    def __init__(
        self,
        graph: SymbolGraph,
        settings: Optional[ReconstructorSettings] = None,
        out: Optional[TextIO] = None,
        test_out: Optional[TextIO] = None,
        log: Optional[Logger] = None,
    ) -> None:
        self.graph = graph
        self.settings = settings or ReconstructorSettings()
        self.out = out
        self.test_out = test_out
        self._log = log
        self._depth = 0
        self._names: dict[int, str] = {}
        self._anonymous_counter = 0
        self._expanding: set[int] = set()

    def _line(self, text: str = "") -> None:
        if self.out is None:
            return
        if text:
            self.out.write(INDENT * self._depth + text + "\n")
        else:
            self.out.write("\n")

    def _offset_comment(self, offset: int) -> str:
        if not self.settings.show_offsets:
            return ""
        return f"/* 0x{offset:04x} */ "

    def layout(self, symbol: Symbol) -> list[LayoutItem]:
        return MemberLayout(self.graph, self.settings, symbol, self._log).build()

    def corrected_name(self, symbol: Symbol) -> str:
        cached = self._names.get(symbol.id)
        if cached is not None:
            return cached
        if is_unnamed(symbol):
            if symbol.tag is SymbolTag.UDT and symbol.udt_kind is UdtKind.UNION:
                prefix = self.settings.anonymous_union_prefix
            else:
                prefix = self.settings.anonymous_struct_prefix
            base = f"{prefix}{self._anonymous_counter}"
            self._anonymous_counter += 1
        else:
            base = symbol.name or ""
        name = _sanitize_identifier(f"{self.settings.symbol_prefix}{base}{self.settings.symbol_suffix}")
        self._names[symbol.id] = name
        return name

    def type_reference(self, symbol: Symbol) -> str:
        if symbol.tag is SymbolTag.ENUM:
            return f"enum {self.corrected_name(symbol)}"
        return f"{udt_kind_string(symbol.udt_kind)} {self.corrected_name(symbol)}"

    def should_inline(self, symbol: Symbol) -> bool:
        if symbol.id in self._expanding:
            return False
        policy = self.settings.member_struct_expansion
        if policy is MemberStructExpansion.NONE:
            return False
        if is_unnamed(symbol):
            return True
        return policy is MemberStructExpansion.INLINE_ALL and self.settings.allow_anonymous_data_types

    def write_declaration(self, symbol: Symbol) -> None:
        self._line(f"{self.type_reference(symbol)};")

    def write_definition(self, symbol: Symbol, visitor: "SymbolVisitor") -> None:
        if symbol.tag is SymbolTag.ENUM:
            self._write_enum(symbol)
        else:
            self._write_udt(symbol, visitor)

    def _closing_line(self, name: str, size: Optional[int]) -> str:
        size_comment = f" /* size: 0x{size:04x} */" if size is not None else ""
        if self.settings.microsoft_typedefs:
            alias = microsoft_alias(name)
            return f"}} {alias}, *P{alias};{size_comment}"
        return f"}};{size_comment}"

    def _write_udt(self, symbol: Symbol, visitor: "SymbolVisitor") -> None:
        name = self.corrected_name(symbol)
        kind = udt_kind_string(symbol.udt_kind)
        items = self.layout(symbol)

        self._line(f"typedef {kind} {name}" if self.settings.microsoft_typedefs else f"{kind} {name}")
        self._line("{")
        self._expanding.add(symbol.id)
        self._depth += 1
        try:
            self._write_items(items, visitor, 0)
        finally:
            self._depth -= 1
            self._expanding.discard(symbol.id)
        self._line(self._closing_line(name, symbol.size))
        self._line()

        if self.test_out is not None:
            spelled = f"{kind} {name}"
            self.test_out.write('\tprintf("%%-40s %%4d\\n", "%s", (int)sizeof(%s));\n' % (spelled, spelled))

    def _write_enum(self, symbol: Symbol) -> None:
        name = self.corrected_name(symbol)
        self._line(f"typedef enum {name}" if self.settings.microsoft_typedefs else f"enum {name}")
        self._line("{")
        self._write_enumerators(symbol)
        self._line(self._closing_line(name, None))
        self._line()

    def _write_enumerators(self, symbol: Symbol) -> None:
        self._depth += 1
        for constant in self.graph.enum_values(symbol):
            self._line(f"{_sanitize_identifier(constant.name or '')} = {constant.value},")
        self._depth -= 1

    def _inline_tag(self, symbol: Symbol) -> str:
        if is_unnamed(symbol):
            if self.settings.allow_anonymous_data_types:
                return ""
            return f" {self.corrected_name(symbol)}"
        # Named types keep their standalone definition; the inline copy stays untagged.
        return f" /* {_sanitize_identifier(symbol.name or '')} */"

    def write_inline_body(self, symbol: Symbol, visitor: "SymbolVisitor", offset: int) -> None:
        """Write the opening and body of an aggregate expanded at a use site.

        The caller prints the closing brace together with the member name.
        """

        tag = self._inline_tag(symbol)
        if symbol.tag is SymbolTag.ENUM:
            self._line(f"{self._offset_comment(offset)}enum{tag}")
            self._line("{")
            self._write_enumerators(symbol)
            return

        kind = udt_kind_string(symbol.udt_kind)
        items = self.layout(symbol)
        self._line(f"{self._offset_comment(offset)}{kind}{tag}")
        self._line("{")
        self._expanding.add(symbol.id)
        self._depth += 1
        try:
            self._write_items(items, visitor, offset)
        finally:
            self._depth -= 1
            self._expanding.discard(symbol.id)

    def _write_items(self, items: list[LayoutItem], visitor: "SymbolVisitor", base: int) -> None:
        for item in items:
            if isinstance(item, Padding):
                self._line(f"{self._offset_comment(base + item.offset)}char {item.name}[{item.size}];")
            elif isinstance(item, FieldItem):
                self._write_member(item.member, base + item.offset, visitor)
            elif isinstance(item, BitfieldItem):
                for member in item.members:
                    field_decl = visitor.member_declaration(member, base + item.offset)
                    self._line(
                        f"{self._offset_comment(base + item.offset)}{field_decl.render()} : {member.bit_length}; "
                        f"/* bit position: {member.bit_position or 0} */"
                    )
            else:
                self._write_group(item, visitor, base)

    def _write_group(self, group: AnonymousGroup, visitor: "SymbolVisitor", base: int) -> None:
        kind = udt_kind_string(group.kind)
        opening = f"{kind} /* bitfield */" if group.bitfield else kind
        self._line(f"{self._offset_comment(base + group.offset)}{opening}")
        self._line("{")
        self._depth += 1
        self._write_items(group.items, visitor, base)
        self._depth -= 1
        if group.bitfield:
            self._line("}; /* bitfield */")
        else:
            self._line(f"}}; /* size: 0x{group.size:04x} */")

    def _write_member(self, member: Member, offset: int, visitor: "SymbolVisitor") -> None:
        field_decl = visitor.member_declaration(member, offset)
        text = field_decl.render()
        if field_decl.inline_expanded:
            size = self.graph.type_size(self.graph.member_type(member))
            self._line(f"{text}; /* size: 0x{size:04x} */")
        else:
            self._line(f"{self._offset_comment(offset)}{text};")
