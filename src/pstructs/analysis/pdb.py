from __future__ import annotations

import re
from typing import Optional

from .errors import FileNotFound
from .symbols import BaseKind, Symbol, SymbolGraph, UdtKind
from .utils import Logger, _decode_attr


MSF_MAGIC = b"Microsoft C/C++ MSF 7.00"

UDT_LEAVES = {
    "LF_STRUCTURE": UdtKind.STRUCT,
    "LF_STRUCTURE_ST": UdtKind.STRUCT,
    "LF_CLASS": UdtKind.CLASS,
    "LF_CLASS_ST": UdtKind.CLASS,
    "LF_UNION": UdtKind.UNION,
    "LF_UNION_ST": UdtKind.UNION,
}
ENUM_LEAVES = {"LF_ENUM", "LF_ENUM_ST"}
MEMBER_LEAVES = {"LF_MEMBER", "LF_MEMBER_ST"}
ENUMERATE_LEAVES = {"LF_ENUMERATE", "LF_ENUMERATE_ST"}
ARRAY_LEAVES = {"LF_ARRAY", "LF_ARRAY_ST"}
FUNCTION_LEAVES = {"LF_PROCEDURE", "LF_MFUNCTION"}

# CodeView primitive type names (as pdbparse spells them) -> (kind, size).
BASE_TYPES: dict[str, tuple[BaseKind, int]] = {
    "T_NOTYPE": (BaseKind.VOID, 0),
    "T_VOID": (BaseKind.VOID, 0),
    "T_HRESULT": (BaseKind.HRESULT, 4),
    "T_CHAR": (BaseKind.CHAR, 1),
    "T_RCHAR": (BaseKind.CHAR, 1),
    "T_CHAR8": (BaseKind.CHAR, 1),
    "T_UCHAR": (BaseKind.UINT, 1),
    "T_WCHAR": (BaseKind.WCHAR, 2),
    "T_CHAR16": (BaseKind.CHAR16, 2),
    "T_CHAR32": (BaseKind.CHAR32, 4),
    "T_INT1": (BaseKind.INT, 1),
    "T_UINT1": (BaseKind.UINT, 1),
    "T_SHORT": (BaseKind.INT, 2),
    "T_USHORT": (BaseKind.UINT, 2),
    "T_INT2": (BaseKind.INT, 2),
    "T_UINT2": (BaseKind.UINT, 2),
    "T_LONG": (BaseKind.LONG, 4),
    "T_ULONG": (BaseKind.ULONG, 4),
    "T_INT4": (BaseKind.INT, 4),
    "T_UINT4": (BaseKind.UINT, 4),
    "T_QUAD": (BaseKind.INT, 8),
    "T_UQUAD": (BaseKind.UINT, 8),
    "T_INT8": (BaseKind.INT, 8),
    "T_UINT8": (BaseKind.UINT, 8),
    "T_OCT": (BaseKind.INT, 16),
    "T_UOCT": (BaseKind.UINT, 16),
    "T_INT16": (BaseKind.INT, 16),
    "T_UINT16": (BaseKind.UINT, 16),
    "T_REAL32": (BaseKind.FLOAT, 4),
    "T_REAL64": (BaseKind.FLOAT, 8),
    "T_REAL80": (BaseKind.FLOAT, 10),
    "T_REAL128": (BaseKind.FLOAT, 16),
    "T_BOOL08": (BaseKind.BOOL, 1),
    "T_BOOL16": (BaseKind.UINT, 2),
    "T_BOOL32": (BaseKind.UINT, 4),
    "T_BOOL64": (BaseKind.UINT, 8),
}

# T_32PVOID, T_64PULONG, ... : pointer mode prefix in front of the base name.
_POINTER_BASE = re.compile(r"^T_(32PF|32P|64P|PF|PH|P)(\w+)$")
_POINTER_MODE_SIZE = {"32P": 4, "32PF": 4, "64P": 8, "P": 2, "PF": 4, "PH": 4}


def is_pdb_magic(header: bytes) -> bool:
    return header.startswith(MSF_MAGIC)


class PdbGraphBuilder:
    """Builds a SymbolGraph from a loaded TPI stream.

    `types` maps type index -> leaf as produced by pdbparse with type
    references already resolved: a reference is either another leaf or the
    name of a CodeView primitive such as ``"T_INT4"``.
    """

    def __init__(self, types: dict, path: str = "", log: Optional[Logger] = None) -> None:
        self.types = types
        self.graph = SymbolGraph(path)
        self._log = log
        self._by_leaf: dict[int, int] = {}
        self._by_udt_name: dict[tuple[UdtKind, str], int] = {}
        self._pending: list[tuple[Symbol, object]] = []
        self._definitions = self._index_definitions()

    def _index_definitions(self) -> dict[str, object]:
        definitions: dict[str, object] = {}
        for _, leaf in sorted(self.types.items(), key=lambda item: item[0]):
            kind = getattr(leaf, "leaf_type", None)
            if kind not in UDT_LEAVES and kind not in ENUM_LEAVES:
                continue
            name = _leaf_name(leaf)
            if name and not _is_fwdref(leaf):
                definitions.setdefault(f"{kind}:{name}", leaf)
        return definitions

    def build(self) -> SymbolGraph:
        for _, leaf in sorted(self.types.items(), key=lambda item: item[0]):
            kind = getattr(leaf, "leaf_type", None)
            if kind not in UDT_LEAVES and kind not in ENUM_LEAVES:
                continue
            if _is_fwdref(leaf):
                continue
            self.graph.add_top_level(self.type_symbol(leaf))
            self._drain()
        if self._log:
            self._log(f"{len(self.graph)} symbol(s) built from TPI")
        return self.graph

    def _remember(self, leaf, symbol: Symbol) -> Symbol:
        self._by_leaf[id(leaf)] = symbol.id
        return symbol

    def _base_symbol(self, name: str) -> Symbol:
        known = BASE_TYPES.get(name)
        if known is not None:
            return self.graph.add_base(*known)
        match = _POINTER_BASE.match(name)
        if match is not None:
            target = self._base_symbol(f"T_{match.group(2)}")
            return self.graph.add_pointer(target, _POINTER_MODE_SIZE[match.group(1)])
        if self._log:
            self._log(f"unknown primitive {name}; using unsigned int")
        return self.graph.add_base(BaseKind.UINT, 4)

    def type_symbol(self, leaf) -> Symbol:
        if leaf is None:
            return self.graph.add_base(BaseKind.VOID, 0)
        if isinstance(leaf, (str, bytes)):
            return self._base_symbol(_decode_attr(leaf))
        if isinstance(leaf, int):
            resolved = self.types.get(leaf)
            if resolved is None:
                return self.graph.add_base(BaseKind.VOID, 0)
            leaf = resolved

        kind = getattr(leaf, "leaf_type", None)
        if kind in UDT_LEAVES or kind in ENUM_LEAVES:
            leaf = self._definition_for(leaf)

        cached = self._by_leaf.get(id(leaf))
        if cached is not None:
            return self.graph[cached]

        if kind in UDT_LEAVES:
            return self._udt_symbol(leaf, UDT_LEAVES[kind])

        if kind in ENUM_LEAVES:
            underlying = self.type_symbol(getattr(leaf, "utype", None))
            enumerators = [
                (_decode_attr(getattr(item, "name", "")), int(getattr(item, "enum_value", 0)))
                for item in _field_list(leaf)
                if getattr(item, "leaf_type", None) in ENUMERATE_LEAVES
            ]
            return self._remember(leaf, self.graph.add_enum(_leaf_name(leaf), underlying.size or 4, enumerators))

        if kind == "LF_POINTER":
            target = self.type_symbol(getattr(leaf, "utype", None))
            return self._remember(leaf, self.graph.add_pointer(target, _pointer_size(leaf)))

        if kind in ARRAY_LEAVES:
            element = self.type_symbol(getattr(leaf, "element_type", None))
            total = int(getattr(leaf, "size", 0) or 0)
            count = total // element.size if element.size else 0
            return self._remember(leaf, self.graph.add_array(element, count))

        if kind == "LF_MODIFIER":
            return self._remember(leaf, self.type_symbol(getattr(leaf, "modified_type", None)))

        if kind == "LF_BITFIELD":
            return self._remember(leaf, self.type_symbol(getattr(leaf, "base_type", None)))

        if kind in FUNCTION_LEAVES:
            return self._remember(leaf, self.graph.add_function())

        if self._log:
            self._log(f"unsupported leaf {kind}; using void")
        return self.graph.add_base(BaseKind.VOID, 0)

    def _definition_for(self, leaf):
        if not _is_fwdref(leaf):
            return leaf
        name = _leaf_name(leaf)
        if not name:
            return leaf
        return self._definitions.get(f"{leaf.leaf_type}:{name}", leaf)

    def _udt_symbol(self, leaf, kind: UdtKind) -> Symbol:
        name = _leaf_name(leaf)
        symbol = self._remember(leaf, self.graph.add_udt(name, kind, int(getattr(leaf, "size", 0) or 0)))
        if not _is_fwdref(leaf):
            self._pending.append((symbol, leaf))
        return symbol

    def _drain(self) -> None:
        while self._pending:
            udt, leaf = self._pending.pop()
            for item in _field_list(leaf):
                if getattr(item, "leaf_type", None) not in MEMBER_LEAVES:
                    continue
                member_leaf = getattr(item, "index", None)
                member_type = self.type_symbol(member_leaf)
                name = _decode_attr(getattr(item, "name", ""))
                offset = int(getattr(item, "offset", 0) or 0)
                if getattr(member_leaf, "leaf_type", None) == "LF_BITFIELD":
                    self.graph.add_member(
                        udt,
                        name,
                        member_type,
                        offset,
                        bit_position=int(member_leaf.position),
                        bit_length=int(member_leaf.length),
                    )
                else:
                    self.graph.add_member(udt, name, member_type, offset)


def _leaf_name(leaf) -> Optional[str]:
    name = getattr(leaf, "name", None)
    if name is None:
        return None
    return _decode_attr(name) or None


def _is_fwdref(leaf) -> bool:
    prop = getattr(leaf, "prop", None)
    return bool(getattr(prop, "fwdref", False))


def _field_list(leaf) -> list:
    fieldlist = getattr(leaf, "fieldlist", None)
    if fieldlist is None or isinstance(fieldlist, (int, str)):
        return []
    return list(getattr(fieldlist, "substructs", None) or [])


def _pointer_size(leaf) -> int:
    attr = getattr(leaf, "ptr_attr", None)
    mode = getattr(attr, "type", None)
    if mode == "PTR_64":
        return 8
    if mode in ("PTR_NEAR", "PTR_FAR", "PTR_HUGE"):
        return 2
    return 4


def load_pdb_graph(path: str, log: Optional[Logger] = None) -> SymbolGraph:
    import pdbparse

    try:
        pdb = pdbparse.parse(path, fast_load=True)
        tpi = pdb.streams[2]
        tpi.load(elim_fwdrefs=True, unnamed_hack=True)
    except OSError as exc:
        raise FileNotFound(path) from exc
    if log:
        log(f"{len(tpi.types)} TPI record(s) in {path}")
    return PdbGraphBuilder(tpi.types, path, log).build()
