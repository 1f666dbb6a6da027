from __future__ import annotations

from typing import Optional

from elftools.dwarf.dwarf_expr import DWARFExprParser
from elftools.elf.elffile import ELFFile

from .dsym import dwarfinfo_from_macho
from .errors import FileNotFound
from .symbols import BaseKind, Symbol, SymbolGraph, UdtKind
from .utils import Logger, _attr_int, _decode_attr


macho_magics = {
    b"\xfe\xed\xfa\xce",
    b"\xce\xfa\xed\xfe",
    b"\xfe\xed\xfa\xcf",
    b"\xcf\xfa\xed\xfe",
    b"\xca\xfe\xba\xbe",
    b"\xbe\xba\xfe\xca",
}
ELF_MAGIC = b"\x7fELF"

STRUCT_TAGS = {
    "DW_TAG_structure_type": UdtKind.STRUCT,
    "DW_TAG_union_type": UdtKind.UNION,
    "DW_TAG_class_type": UdtKind.CLASS,
}
ENUM_TAG = "DW_TAG_enumeration_type"
TYPEDEF_TAG = "DW_TAG_typedef"
BASE_TAG = "DW_TAG_base_type"
POINTER_TAGS = {
    "DW_TAG_pointer_type",
    "DW_TAG_reference_type",
    "DW_TAG_rvalue_reference_type",
    "DW_TAG_ptr_to_member_type",
}
ARRAY_TAG = "DW_TAG_array_type"
QUALIFIER_TAGS = {
    "DW_TAG_const_type",
    "DW_TAG_volatile_type",
    "DW_TAG_restrict_type",
    "DW_TAG_atomic_type",
}
SUBROUTINE_TAG = "DW_TAG_subroutine_type"

INDEX_TAGS = set(STRUCT_TAGS) | {ENUM_TAG, TYPEDEF_TAG}

# DW_ATE_* encodings.
DW_ATE_boolean = 0x02
DW_ATE_float = 0x04
DW_ATE_signed = 0x05
DW_ATE_signed_char = 0x06
DW_ATE_unsigned = 0x07
DW_ATE_unsigned_char = 0x08
DW_ATE_UTF = 0x10


def detect_container_magic(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read(4)


def monkeypatch() -> None:
    import elftools.dwarf.dwarfinfo

    if getattr(elftools.dwarf.dwarfinfo, "_pstructs_strx_patch", False):
        return

    old_create_structs = elftools.dwarf.dwarfinfo.DWARFStructs._create_structs

    def _create_structs(self):
        old_create_structs(self)
        self.Dwarf_dw_form["DW_FORM_strx"] = self.the_Dwarf_uleb128
        if "DW_FORM_strx4" in self.Dwarf_dw_form:
            self.Dwarf_dw_form["DW_FORM_strx4"] = self.the_Dwarf_uint32

    elftools.dwarf.dwarfinfo.DWARFStructs._create_structs = _create_structs
    elftools.dwarf.dwarfinfo._pstructs_strx_patch = True


def dwarfinfo_from_path(filename: str):
    monkeypatch()
    magic = detect_container_magic(filename)
    if magic == ELF_MAGIC:
        with open(filename, "rb") as f:
            elf = ELFFile(f)
            if not elf.has_dwarf_info():
                raise FileNotFound(f"{filename}: ELF file does not contain DWARF information")
            return elf.get_dwarf_info()
    if magic in macho_magics:
        return dwarfinfo_from_macho(filename)
    raise FileNotFound(f"{filename}: expected ELF or Mach-O")


def _die_name(die) -> Optional[str]:
    attr = die.attributes.get("DW_AT_name")
    if attr is None:
        return None
    name = _decode_attr(attr.value)
    if not name:
        return None
    return name


def _is_declaration(die) -> bool:
    attr = die.attributes.get("DW_AT_declaration")
    return attr is not None and bool(attr.value)


def _type_die(die):
    if "DW_AT_type" not in die.attributes:
        return None
    return die.get_DIE_from_attribute("DW_AT_type")


def _base_kind(name: Optional[str], encoding: Optional[int], size: int) -> BaseKind:
    if name == "void" or (encoding is None and size == 0):
        return BaseKind.VOID
    if name == "wchar_t" and size == 2:
        return BaseKind.WCHAR
    if encoding == DW_ATE_boolean:
        return BaseKind.BOOL
    if encoding == DW_ATE_float:
        return BaseKind.FLOAT
    if encoding == DW_ATE_UTF:
        return {2: BaseKind.CHAR16, 4: BaseKind.CHAR32}.get(size, BaseKind.CHAR)
    if encoding == DW_ATE_signed_char:
        return BaseKind.CHAR if size == 1 else BaseKind.INT
    if encoding == DW_ATE_unsigned_char:
        return BaseKind.CHAR if name == "char" else BaseKind.UINT
    if encoding == DW_ATE_unsigned:
        return BaseKind.UINT
    return BaseKind.INT


class DwarfGraphBuilder:
    """Builds a SymbolGraph from the type DIEs of every compile unit.

    Named aggregates are deduplicated across compile units, keeping the most
    complete definition. Members of an unnamed struct or union member are
    lifted into the parent with their offsets rebased, which is the shape
    the layout pass expects.
    """

    def __init__(self, dwarfinfo, path: str = "", log: Optional[Logger] = None) -> None:
        self.dwarfinfo = dwarfinfo
        self.graph = SymbolGraph(path, msvc_types=False)
        self._log = log
        self._expr_parser: Optional[DWARFExprParser] = None
        self._address_size = getattr(getattr(dwarfinfo, "config", None), "default_address_size", 8)
        self._by_offset: dict[int, int] = {}
        self._best_by_name_tag: dict[tuple[str, str], object] = {}
        self._typedef_names: dict[int, str] = {}
        self._typedefs_by_name: dict[str, int] = {}
        self._pending: list[tuple[Symbol, object]] = []

    def build(self) -> SymbolGraph:
        self._build_type_index()
        for cu in self.dwarfinfo.iter_CUs():
            self._address_size = cu["address_size"]
            for die in cu.get_top_DIE().iter_children():
                if die.tag not in INDEX_TAGS:
                    continue
                if die.tag in STRUCT_TAGS or die.tag == ENUM_TAG:
                    if _die_name(die) is None and die.offset not in self._typedef_names:
                        continue
                symbol = self.type_symbol(die)
                self.graph.add_top_level(symbol)
                self._drain()
        if self._log:
            self._log(f"{len(self.graph)} symbol(s) built from DWARF")
        return self.graph

    def _build_type_index(self) -> None:
        def score(die) -> int:
            score_value = -5 if _is_declaration(die) else 5
            if "DW_AT_byte_size" in die.attributes:
                score_value += 2
            if die.has_children:
                score_value += 1
            return score_value

        for cu in self.dwarfinfo.iter_CUs():
            for die in cu.iter_DIEs():
                if die.tag not in INDEX_TAGS:
                    continue
                name = _die_name(die)
                if name is None:
                    continue
                if die.tag == TYPEDEF_TAG:
                    target = _type_die(die)
                    if target is not None and (target.tag in STRUCT_TAGS or target.tag == ENUM_TAG):
                        if _die_name(target) is None:
                            self._typedef_names.setdefault(target.offset, name)
                    continue
                key = (name, die.tag)
                current = self._best_by_name_tag.get(key)
                if current is None or score(die) > score(current):
                    self._best_by_name_tag[key] = die

    def _canonical_die(self, die):
        if die.tag in STRUCT_TAGS or die.tag == ENUM_TAG:
            name = _die_name(die)
            if name:
                return self._best_by_name_tag.get((name, die.tag), die)
        return die

    def _remember(self, die, symbol: Symbol) -> Symbol:
        self._by_offset[die.offset] = symbol.id
        return symbol

    def type_symbol(self, die) -> Symbol:
        if die is None:
            return self.graph.add_base(BaseKind.VOID, 0)

        die = self._canonical_die(die)
        cached = self._by_offset.get(die.offset)
        if cached is not None:
            return self.graph[cached]

        tag = die.tag
        size = _attr_int(die.attributes.get("DW_AT_byte_size"))

        if tag == TYPEDEF_TAG:
            target = self.type_symbol(_type_die(die))
            name = _die_name(die)
            if name is None or target.name == name:
                return self._remember(die, target)
            existing = self._typedefs_by_name.get(name)
            if existing is not None:
                return self._remember(die, self.graph[existing])
            symbol = self.graph.add_typedef(name, target)
            self._typedefs_by_name[name] = symbol.id
            return self._remember(die, symbol)

        if tag in STRUCT_TAGS:
            name = _die_name(die) or self._typedef_names.get(die.offset)
            symbol = self._remember(die, self.graph.add_udt(name, STRUCT_TAGS[tag], size or 0))
            self._pending.append((symbol, die))
            return symbol

        if tag == ENUM_TAG:
            name = _die_name(die) or self._typedef_names.get(die.offset)
            enumerators: list[tuple[str, int]] = []
            for child in die.iter_children():
                if child.tag != "DW_TAG_enumerator":
                    continue
                value_attr = child.attributes.get("DW_AT_const_value")
                value = 0 if value_attr is None else value_attr.value
                if isinstance(value, bytes):
                    value = int.from_bytes(value, "little", signed=False)
                enumerators.append((_die_name(child) or "", int(value)))
            return self._remember(die, self.graph.add_enum(name, size or 4, enumerators))

        if tag == BASE_TAG:
            name = _die_name(die)
            encoding = _attr_int(die.attributes.get("DW_AT_encoding"))
            kind = _base_kind(name, encoding, size or 0)
            return self._remember(die, self.graph.add_base(kind, 0 if kind is BaseKind.VOID else size or 0))

        if tag in POINTER_TAGS:
            target = self.type_symbol(_type_die(die))
            return self._remember(die, self.graph.add_pointer(target, size or self._address_size))

        if tag == ARRAY_TAG:
            return self._remember(die, self._build_array(die))

        if tag == SUBROUTINE_TAG:
            return self._remember(die, self.graph.add_function())

        if tag in QUALIFIER_TAGS or "DW_AT_type" in die.attributes:
            # Qualifiers and vendor wrappers (e.g. ptrauth) are transparent.
            return self._remember(die, self.type_symbol(_type_die(die)))

        if size:
            return self._remember(die, self.graph.add_base(BaseKind.UINT, size))
        return self.graph.add_base(BaseKind.VOID, 0)

    def _build_array(self, die) -> Symbol:
        element = self.type_symbol(_type_die(die))
        counts: list[int] = []
        for child in die.iter_children():
            if child.tag != "DW_TAG_subrange_type":
                continue
            count = _attr_int(child.attributes.get("DW_AT_count"))
            if count is None:
                upper = _attr_int(child.attributes.get("DW_AT_upper_bound"))
                count = upper + 1 if upper is not None and upper >= 0 else 0
            counts.append(count)
        if not counts:
            counts.append(0)
        current = element
        for count in reversed(counts):
            current = self.graph.add_array(current, count)
        return current

    def _drain(self) -> None:
        while self._pending:
            udt, die = self._pending.pop()
            self._add_members(udt, die, 0)

    def _add_members(self, udt: Symbol, die, base: int) -> None:
        for child in die.iter_children():
            if child.tag != "DW_TAG_member":
                continue
            if _attr_int(child.attributes.get("DW_AT_artificial")):
                continue
            name = _die_name(child)
            type_die = _type_die(child)
            offset = self._member_offset(child)

            inner = type_die
            while inner is not None and inner.tag in QUALIFIER_TAGS:
                inner = _type_die(inner)
            if name is None and inner is not None and inner.tag in STRUCT_TAGS and _die_name(inner) is None:
                self._add_members(udt, inner, base + (offset or 0))
                continue

            member_type = self.type_symbol(type_die)
            bit_size = _attr_int(child.attributes.get("DW_AT_bit_size"))
            if bit_size is None:
                self.graph.add_member(udt, name or "", member_type, base + (offset or 0))
                continue

            storage = self.graph.type_size(member_type) or 1
            data_bit_offset = _attr_int(child.attributes.get("DW_AT_data_bit_offset"))
            if data_bit_offset is not None:
                unit_offset = (data_bit_offset // (storage * 8)) * storage
                position = data_bit_offset - unit_offset * 8
            else:
                # DWARF 2/3: bit offset counted from the most significant bit.
                legacy = _attr_int(child.attributes.get("DW_AT_bit_offset")) or 0
                storage = _attr_int(child.attributes.get("DW_AT_byte_size")) or storage
                unit_offset = offset or 0
                position = storage * 8 - legacy - bit_size
            self.graph.add_member(
                udt,
                name or "",
                member_type,
                base + unit_offset,
                bit_position=position,
                bit_length=bit_size,
            )

    def _member_offset(self, member_die) -> Optional[int]:
        attr = member_die.attributes.get("DW_AT_data_member_location")
        if attr is None:
            return 0
        value = attr.value
        if isinstance(value, int):
            return value
        if isinstance(value, (bytes, list)):
            if self._expr_parser is None:
                self._expr_parser = DWARFExprParser(self.dwarfinfo.structs)
            ops = self._expr_parser.parse_expr(value)
            if len(ops) == 1 and ops[0].op_name in {"DW_OP_plus_uconst", "DW_OP_constu", "DW_OP_consts"}:
                return int(ops[0].args[0])
        if self._log:
            self._log(f"unsupported member location at 0x{member_die.offset:x}; using 0")
        return 0


def load_dwarf_graph(path: str, log: Optional[Logger] = None) -> SymbolGraph:
    dwarfinfo = dwarfinfo_from_path(path)
    return DwarfGraphBuilder(dwarfinfo, path, log).build()
