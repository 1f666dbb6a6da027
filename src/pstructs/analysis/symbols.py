from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Optional


class SymbolTag(Enum):
    BASE_TYPE = "base"
    POINTER = "pointer"
    ARRAY = "array"
    FUNCTION = "function"
    ENUM = "enum"
    UDT = "udt"
    TYPEDEF = "typedef"
    ENUM_VALUE = "enum_value"


class UdtKind(Enum):
    STRUCT = "struct"
    UNION = "union"
    CLASS = "class"


class BaseKind(Enum):
    VOID = "void"
    CHAR = "char"
    WCHAR = "wchar"
    CHAR16 = "char16"
    CHAR32 = "char32"
    INT = "int"
    UINT = "uint"
    LONG = "long"
    ULONG = "ulong"
    FLOAT = "float"
    BOOL = "bool"
    HRESULT = "hresult"


class Architecture(Enum):
    NONE = "None"
    X86 = "x86"
    X64 = "x64"


@dataclass
class Member:
    name: str
    type_id: int
    offset: int
    bit_position: Optional[int] = None
    bit_length: Optional[int] = None

    @property
    def is_bitfield(self) -> bool:
        return self.bit_length is not None


@dataclass
class Symbol:
    id: int
    tag: SymbolTag
    name: Optional[str] = None
    size: int = 0
    child: Optional[int] = None
    members: list[Member] = field(default_factory=list)
    element_count: int = 0
    udt_kind: Optional[UdtKind] = None
    base_kind: Optional[BaseKind] = None
    values: list[int] = field(default_factory=list)
    value: int = 0
    # Set by SymbolGraph.normalize() on zero-length arrays.
    coerced: bool = False


# (kind, size) -> spelling. Sizes follow the MSVC data model.
NATIVE_TYPE_NAMES: dict[tuple[BaseKind, int], str] = {
    (BaseKind.VOID, 0): "void",
    (BaseKind.CHAR, 1): "char",
    (BaseKind.WCHAR, 2): "wchar_t",
    (BaseKind.CHAR16, 2): "char16_t",
    (BaseKind.CHAR32, 4): "char32_t",
    (BaseKind.INT, 1): "char",
    (BaseKind.INT, 2): "short",
    (BaseKind.INT, 4): "int",
    (BaseKind.INT, 8): "__int64",
    (BaseKind.INT, 16): "__int128",
    (BaseKind.UINT, 1): "unsigned char",
    (BaseKind.UINT, 2): "unsigned short",
    (BaseKind.UINT, 4): "unsigned int",
    (BaseKind.UINT, 8): "unsigned __int64",
    (BaseKind.UINT, 16): "unsigned __int128",
    (BaseKind.LONG, 4): "long",
    (BaseKind.LONG, 8): "__int64",
    (BaseKind.ULONG, 4): "unsigned long",
    (BaseKind.ULONG, 8): "unsigned __int64",
    (BaseKind.FLOAT, 4): "float",
    (BaseKind.FLOAT, 8): "double",
    (BaseKind.FLOAT, 10): "long double",
    (BaseKind.FLOAT, 16): "long double",
    (BaseKind.BOOL, 1): "bool",
    (BaseKind.HRESULT, 4): "long",
}

STDINT_TYPE_NAMES: dict[tuple[BaseKind, int], str] = {
    (BaseKind.VOID, 0): "void",
    (BaseKind.CHAR, 1): "char",
    (BaseKind.WCHAR, 2): "uint16_t",
    (BaseKind.CHAR16, 2): "uint16_t",
    (BaseKind.CHAR32, 4): "uint32_t",
    (BaseKind.INT, 1): "int8_t",
    (BaseKind.INT, 2): "int16_t",
    (BaseKind.INT, 4): "int32_t",
    (BaseKind.INT, 8): "int64_t",
    (BaseKind.UINT, 1): "uint8_t",
    (BaseKind.UINT, 2): "uint16_t",
    (BaseKind.UINT, 4): "uint32_t",
    (BaseKind.UINT, 8): "uint64_t",
    (BaseKind.LONG, 4): "int32_t",
    (BaseKind.LONG, 8): "int64_t",
    (BaseKind.ULONG, 4): "uint32_t",
    (BaseKind.ULONG, 8): "uint64_t",
    (BaseKind.FLOAT, 4): "float",
    (BaseKind.FLOAT, 8): "double",
    (BaseKind.FLOAT, 10): "long double",
    (BaseKind.FLOAT, 16): "long double",
    (BaseKind.BOOL, 1): "uint8_t",
    (BaseKind.HRESULT, 4): "int32_t",
}

# GCC/Clang spellings for the native entries that only MSVC accepts.
GNU_TYPE_NAMES: dict[tuple[BaseKind, int], str] = {
    (BaseKind.CHAR16, 2): "uint16_t",
    (BaseKind.CHAR32, 4): "uint32_t",
    (BaseKind.INT, 8): "long long",
    (BaseKind.UINT, 8): "unsigned long long",
    (BaseKind.LONG, 8): "long long",
    (BaseKind.ULONG, 8): "unsigned long long",
    (BaseKind.BOOL, 1): "_Bool",
}

UNNAMED_MARKERS = ("<unnamed-", "<anonymous-", "__unnamed")


def is_unnamed(symbol: Symbol) -> bool:
    if not symbol.name:
        return True
    return any(marker in symbol.name for marker in UNNAMED_MARKERS)


def udt_kind_string(kind: Optional[UdtKind]) -> str:
    # Output is C, which has no `class`.
    if kind is UdtKind.UNION:
        return "union"
    return "struct"


def _opaque_type_name(size: int) -> str:
    if size == 16:
        return "unsigned __int128"
    if size in (1, 2, 4, 8):
        return f"uint{size * 8}_t"
    return "void"


def basic_type_string(symbol: Symbol, use_stdint: bool, msvc_types: bool = True) -> str:
    """Spell a BASE_TYPE symbol as a C type name.

    Native spellings follow MSVC unless `msvc_types` is off, in which case
    the GCC/Clang keywords are used. Unknown (kind, size) combinations fall
    back to a fixed-width unsigned integer of the same size so the member
    still occupies the right space.
    """

    table = STDINT_TYPE_NAMES if use_stdint else NATIVE_TYPE_NAMES
    kind = symbol.base_kind or BaseKind.VOID
    name = None
    if not use_stdint and not msvc_types:
        name = GNU_TYPE_NAMES.get((kind, symbol.size))
    if name is None:
        name = table.get((kind, symbol.size))
    if name is not None:
        return name
    if kind is BaseKind.VOID:
        return "void"
    return _opaque_type_name(symbol.size)


class SymbolGraph:
    """Arena of symbols; every cross reference is an index into `symbols`."""

    def __init__(self, path: str = "", msvc_types: bool = True) -> None:
        self.path = path
        # False for graphs read from DWARF, whose consumers build with GCC/Clang.
        self.msvc_types = msvc_types
        self.symbols: list[Symbol] = []
        self._top_level: list[int] = []
        self._top_level_set: set[int] = set()
        self._by_name: dict[str, int] = {}
        self._base_cache: dict[tuple[BaseKind, int], int] = {}
        self._normalized = False

    def __getitem__(self, symbol_id: int) -> Symbol:
        return self.symbols[symbol_id]

    def __len__(self) -> int:
        return len(self.symbols)

    def _add(self, tag: SymbolTag, **kwargs) -> Symbol:
        symbol = Symbol(id=len(self.symbols), tag=tag, **kwargs)
        self.symbols.append(symbol)
        return symbol

    def add_base(self, kind: BaseKind, size: int) -> Symbol:
        key = (kind, size)
        cached = self._base_cache.get(key)
        if cached is not None:
            return self.symbols[cached]
        symbol = self._add(SymbolTag.BASE_TYPE, base_kind=kind, size=size)
        self._base_cache[key] = symbol.id
        return symbol

    def add_pointer(self, target: Symbol, size: int) -> Symbol:
        return self._add(SymbolTag.POINTER, child=target.id, size=size)

    def add_array(self, element: Symbol, count: int) -> Symbol:
        return self._add(SymbolTag.ARRAY, child=element.id, element_count=count, size=element.size * count)

    def add_function(self) -> Symbol:
        return self._add(SymbolTag.FUNCTION)

    def add_typedef(self, name: str, target: Symbol) -> Symbol:
        return self._add(SymbolTag.TYPEDEF, name=name, child=target.id, size=target.size)

    def add_udt(self, name: Optional[str], kind: UdtKind, size: int) -> Symbol:
        return self._add(SymbolTag.UDT, name=name, udt_kind=kind, size=size)

    def add_member(
        self,
        udt: Symbol,
        name: str,
        member_type: Symbol,
        offset: int,
        bit_position: Optional[int] = None,
        bit_length: Optional[int] = None,
    ) -> Member:
        member = Member(
            name=name,
            type_id=member_type.id,
            offset=offset,
            bit_position=bit_position,
            bit_length=bit_length,
        )
        udt.members.append(member)
        return member

    def add_enum(self, name: Optional[str], size: int, enumerators: list[tuple[str, int]]) -> Symbol:
        enum = self._add(SymbolTag.ENUM, name=name, size=size)
        for value_name, value in enumerators:
            constant = self._add(SymbolTag.ENUM_VALUE, name=value_name, value=value)
            enum.values.append(constant.id)
        return enum

    def add_top_level(self, symbol: Symbol) -> None:
        if symbol.id in self._top_level_set:
            return
        self._top_level.append(symbol.id)
        self._top_level_set.add(symbol.id)
        if symbol.name and not is_unnamed(symbol):
            self._by_name.setdefault(symbol.name, symbol.id)

    def child(self, symbol: Symbol) -> Symbol:
        return self.symbols[symbol.child]

    def member_type(self, member: Member) -> Symbol:
        return self.symbols[member.type_id]

    def enum_values(self, symbol: Symbol) -> Iterator[Symbol]:
        for value_id in symbol.values:
            yield self.symbols[value_id]

    def resolve(self, symbol: Symbol) -> Symbol:
        seen: set[int] = set()
        while symbol.tag is SymbolTag.TYPEDEF and symbol.id not in seen:
            seen.add(symbol.id)
            symbol = self.child(symbol)
        return symbol

    def symbol_map(self) -> Iterator[tuple[int, Symbol]]:
        for symbol_id in self._top_level:
            yield symbol_id, self.symbols[symbol_id]

    def lookup_by_name(self, name: str) -> Optional[Symbol]:
        name = name.strip()
        for prefix in ("struct ", "union ", "enum ", "class "):
            if name.startswith(prefix):
                name = name[len(prefix):].strip()
                break
        symbol_id = self._by_name.get(name)
        if symbol_id is None:
            return None
        return self.symbols[symbol_id]

    def normalize(self) -> None:
        """Apply the in-place corrections the printers rely on.

        A zero-length array cannot be declared as `T name[0]`; it is printed
        as a pointer and its size is raised to 1 so it still owns a byte of
        layout. Safe to call more than once.
        """

        if self._normalized:
            return
        for symbol in self.symbols:
            if symbol.tag is SymbolTag.ARRAY and symbol.element_count == 0:
                symbol.coerced = True
                symbol.size = 1
        self._normalized = True

    def type_size(self, symbol: Symbol) -> int:
        return self.resolve(symbol).size
