import io
import itertools
import os
import sys
import unittest
from types import SimpleNamespace


REPO_ROOT = os.path.dirname(os.path.dirname(__file__))
SRC_ROOT = os.path.join(REPO_ROOT, "src")
sys.path.insert(0, SRC_ROOT)


from pstructs.analysis.dwarf import (  # noqa: E402
    DW_ATE_boolean,
    DW_ATE_float,
    DW_ATE_signed,
    DW_ATE_signed_char,
    DW_ATE_unsigned,
    DwarfGraphBuilder,
    _base_kind,
)
from pstructs.analysis.extractor import Extractor, ExtractorSettings  # noqa: E402
from pstructs.analysis.symbols import BaseKind, SymbolTag, UdtKind  # noqa: E402


_offsets = itertools.count(0x100, 0x10)


class FakeAttr:
    def __init__(self, value) -> None:
        self.value = value


class FakeDIE:
    def __init__(self, tag: str, type_die=None, children=(), **attrs) -> None:
        self.tag = tag
        self.offset = next(_offsets)
        self.attributes = {f"DW_AT_{key}": FakeAttr(value) for key, value in attrs.items()}
        self._children = list(children)
        self._type_die = type_die
        if type_die is not None:
            self.attributes["DW_AT_type"] = FakeAttr(type_die.offset)

    @property
    def has_children(self) -> bool:
        return bool(self._children)

    def iter_children(self):
        return iter(self._children)

    def get_DIE_from_attribute(self, name: str):
        assert name == "DW_AT_type"
        return self._type_die

    def walk(self):
        yield self
        for child in self._children:
            yield from child.walk()


class FakeCU:
    def __init__(self, *dies, address_size: int = 8) -> None:
        self._top = FakeDIE("DW_TAG_compile_unit", children=dies)
        self._address_size = address_size

    def __getitem__(self, key: str):
        assert key == "address_size"
        return self._address_size

    def get_top_DIE(self) -> FakeDIE:
        return self._top

    def iter_DIEs(self):
        return self._top.walk()


class FakeDwarfInfo:
    def __init__(self, *cus) -> None:
        self._cus = list(cus)
        self.config = SimpleNamespace(default_address_size=8)

    def iter_CUs(self):
        return iter(self._cus)


def base(name: str, size: int, encoding: int) -> FakeDIE:
    return FakeDIE("DW_TAG_base_type", name=name, byte_size=size, encoding=encoding)


def member(name, type_die, location=None, **attrs) -> FakeDIE:
    if name is not None:
        attrs["name"] = name
    if location is not None:
        attrs["data_member_location"] = location
    return FakeDIE("DW_TAG_member", type_die, **attrs)


def struct(name, size, *members, tag="DW_TAG_structure_type", **attrs) -> FakeDIE:
    if name is not None:
        attrs["name"] = name
    if size is not None:
        attrs["byte_size"] = size
    return FakeDIE(tag, children=members, **attrs)


def _build(*dies, address_size: int = 8):
    return DwarfGraphBuilder(FakeDwarfInfo(FakeCU(*dies, address_size=address_size)), "a.out").build()


class DwarfGraphBuilderTests(unittest.TestCase):
    def setUp(self) -> None:
        self.int_die = base("int", 4, DW_ATE_signed)
        self.uint_die = base("unsigned int", 4, DW_ATE_unsigned)
        self.float_die = base("float", 4, DW_ATE_float)

    def test_plain_struct(self) -> None:
        point = struct("point", 8, member("x", self.int_die, 0), member("y", self.int_die, 4))

        graph = _build(self.int_die, point)
        symbol = graph.lookup_by_name("point")

        self.assertIs(symbol.udt_kind, UdtKind.STRUCT)
        self.assertEqual(symbol.size, 8)
        self.assertEqual([(m.name, m.offset) for m in symbol.members], [("x", 0), ("y", 4)])
        self.assertEqual(graph.member_type(symbol.members[0]).base_kind, BaseKind.INT)

    def test_bitfields_from_data_bit_offset(self) -> None:
        flags = struct(
            "flags",
            8,
            member("enabled", self.uint_die, bit_size=1, data_bit_offset=0),
            member("mode", self.uint_die, bit_size=3, data_bit_offset=1),
            member("high", self.uint_die, bit_size=4, data_bit_offset=35),
        )

        members = _build(flags).lookup_by_name("flags").members

        self.assertEqual(
            [(m.name, m.offset, m.bit_position, m.bit_length) for m in members],
            [("enabled", 0, 0, 1), ("mode", 0, 1, 3), ("high", 4, 3, 4)],
        )

    def test_legacy_bit_offset_counts_from_msb(self) -> None:
        flags = struct(
            "legacy",
            4,
            member("low", self.uint_die, 0, byte_size=4, bit_size=1, bit_offset=31),
            member("top", self.uint_die, 0, byte_size=4, bit_size=4, bit_offset=0),
        )

        members = _build(flags).lookup_by_name("legacy").members

        self.assertEqual([(m.bit_position, m.bit_length) for m in members], [(0, 1), (28, 4)])

    def test_anonymous_union_members_are_lifted(self) -> None:
        anonymous = struct(
            None,
            4,
            member("i", self.int_die, 0),
            member("f", self.float_die, 0),
            tag="DW_TAG_union_type",
        )
        outer = struct("value", 8, member("kind", self.int_die, 0), anonymous, member(None, anonymous, 4))

        graph = _build(outer)
        symbol = graph.lookup_by_name("value")

        self.assertEqual([(m.name, m.offset) for m in symbol.members], [("kind", 0), ("i", 4), ("f", 4)])
        self.assertFalse(any(s.tag is SymbolTag.UDT and s.udt_kind is UdtKind.UNION for s in graph.symbols))

        out = io.StringIO()
        Extractor(ExtractorSettings(symbol_name="value", print_header=False), out, graph=graph).run()
        self.assertIn("  /* 0x0004 */ union\n", out.getvalue())

    def test_typedef_names_anonymous_struct(self) -> None:
        anonymous = struct(None, 4, member("x", self.int_die, 0))
        alias = FakeDIE("DW_TAG_typedef", anonymous, name="point_t")
        holder = struct("holder", 4, member("p", alias, 0))

        graph = _build(anonymous, alias, holder)
        point = graph.lookup_by_name("point_t")

        self.assertIsNotNone(point)
        self.assertIs(point.tag, SymbolTag.UDT)
        self.assertIs(graph.member_type(graph.lookup_by_name("holder").members[0]), point)
        self.assertFalse(any(s.tag is SymbolTag.TYPEDEF for s in graph.symbols))

    def test_typedef_to_base_is_kept(self) -> None:
        alias = FakeDIE("DW_TAG_typedef", self.uint_die, name="u32")
        holder = struct("holder", 4, member("v", alias, 0))

        graph = _build(alias, holder)
        field = graph.member_type(graph.lookup_by_name("holder").members[0])

        self.assertIs(field.tag, SymbolTag.TYPEDEF)
        self.assertEqual(field.name, "u32")
        self.assertIs(graph.resolve(field).base_kind, BaseKind.UINT)

    def test_array_bounds(self) -> None:
        by_upper = FakeDIE(
            "DW_TAG_array_type",
            self.int_die,
            children=[FakeDIE("DW_TAG_subrange_type", upper_bound=3)],
        )
        by_count = FakeDIE(
            "DW_TAG_array_type",
            self.int_die,
            children=[FakeDIE("DW_TAG_subrange_type", count=2), FakeDIE("DW_TAG_subrange_type", count=3)],
        )
        flexible = FakeDIE("DW_TAG_array_type", self.int_die, children=[FakeDIE("DW_TAG_subrange_type")])
        s = struct(
            "arrays",
            40,
            member("a", by_upper, 0),
            member("m", by_count, 16),
            member("tail", flexible, 40),
        )

        graph = _build(s)
        a, m, tail = (graph.member_type(x) for x in graph.lookup_by_name("arrays").members)

        self.assertEqual((a.element_count, a.size), (4, 16))
        self.assertEqual(m.element_count, 2)
        self.assertEqual(graph.child(m).element_count, 3)
        self.assertEqual(m.size, 24)
        self.assertEqual(tail.element_count, 0)

    def test_pointer_without_type_is_void_pointer(self) -> None:
        void_ptr = FakeDIE("DW_TAG_pointer_type")
        s = struct("ctx", 4, member("opaque", void_ptr, 0))

        graph = _build(s, address_size=4)
        pointer = graph.member_type(graph.lookup_by_name("ctx").members[0])

        self.assertIs(pointer.tag, SymbolTag.POINTER)
        self.assertEqual(pointer.size, 4)
        self.assertIs(graph.child(pointer).base_kind, BaseKind.VOID)

    def test_qualifiers_are_transparent(self) -> None:
        const_int = FakeDIE("DW_TAG_const_type", self.int_die)
        volatile = FakeDIE("DW_TAG_volatile_type", const_int)
        s = struct("regs", 4, member("status", volatile, 0))

        graph = _build(s)
        status = graph.member_type(graph.lookup_by_name("regs").members[0])

        self.assertIs(status.tag, SymbolTag.BASE_TYPE)
        self.assertEqual(status.base_kind, BaseKind.INT)

    def test_declaration_resolves_to_full_definition(self) -> None:
        declared = struct("node", None, declaration=True)
        user = struct("list", 8, member("head", FakeDIE("DW_TAG_pointer_type", declared, byte_size=8), 0))
        cu_one = FakeCU(declared, user)

        defined = struct("node", 16, member("value", self.int_die, 0))
        cu_two = FakeCU(defined)

        graph = DwarfGraphBuilder(FakeDwarfInfo(cu_one, cu_two)).build()
        head = graph.member_type(graph.lookup_by_name("list").members[0])
        node = graph.child(head)

        self.assertEqual(node.size, 16)
        self.assertEqual([m.name for m in node.members], ["value"])
        self.assertIs(node, graph.lookup_by_name("node"))
        nodes = [s for s in graph.symbols if s.tag is SymbolTag.UDT and s.name == "node"]
        self.assertEqual(len(nodes), 1)

    def test_self_referencing_struct(self) -> None:
        node = struct("node", 16)
        pointer = FakeDIE("DW_TAG_pointer_type", node, byte_size=8)
        node._children = [member("next", pointer, 0), member("value", self.int_die, 8)]

        graph = _build(node)
        symbol = graph.lookup_by_name("node")

        self.assertIs(graph.child(graph.member_type(symbol.members[0])), symbol)

    def test_enum(self) -> None:
        color = FakeDIE(
            "DW_TAG_enumeration_type",
            children=[
                FakeDIE("DW_TAG_enumerator", name="RED", const_value=0),
                FakeDIE("DW_TAG_enumerator", name="BLUE", const_value=2),
            ],
            name="color",
            byte_size=4,
        )

        graph = _build(color)
        enum = graph.lookup_by_name("color")

        self.assertIs(enum.tag, SymbolTag.ENUM)
        self.assertEqual([(v.name, v.value) for v in graph.enum_values(enum)], [("RED", 0), ("BLUE", 2)])

    def test_subroutine_pointer(self) -> None:
        callback = FakeDIE("DW_TAG_pointer_type", FakeDIE("DW_TAG_subroutine_type"), byte_size=8)
        ops = struct("ops", 8, member("handler", callback, 0))

        graph = _build(ops)
        pointer = graph.member_type(graph.lookup_by_name("ops").members[0])

        self.assertIs(graph.child(pointer).tag, SymbolTag.FUNCTION)

    def test_native_types_use_gnu_spellings(self) -> None:
        long_die = base("long int", 8, DW_ATE_signed)
        ulong_die = base("long unsigned int", 8, DW_ATE_unsigned)
        bool_die = base("_Bool", 1, DW_ATE_boolean)
        stat = struct(
            "stat",
            24,
            member("size", long_die, 0),
            member("blocks", ulong_die, 8),
            member("valid", bool_die, 16),
        )
        graph = _build(long_die, ulong_die, bool_die, stat)

        out = io.StringIO()
        Extractor(ExtractorSettings(symbol_name="stat", print_header=False), out, graph=graph).run()
        text = out.getvalue()

        self.assertIn("  /* 0x0000 */ long long size;\n", text)
        self.assertIn("  /* 0x0008 */ unsigned long long blocks;\n", text)
        self.assertIn("  /* 0x0010 */ _Bool valid;\n", text)
        self.assertNotIn("__int64", text)

    def test_missing_location_defaults_to_zero(self) -> None:
        u = struct("u", 4, member("a", self.int_die), member("b", self.float_die), tag="DW_TAG_union_type")

        members = _build(u).lookup_by_name("u").members

        self.assertEqual([m.offset for m in members], [0, 0])


class BaseKindTests(unittest.TestCase):
    def test_encodings(self) -> None:
        self.assertIs(_base_kind("void", None, 0), BaseKind.VOID)
        self.assertIs(_base_kind("_Bool", DW_ATE_boolean, 1), BaseKind.BOOL)
        self.assertIs(_base_kind("double", DW_ATE_float, 8), BaseKind.FLOAT)
        self.assertIs(_base_kind("char", DW_ATE_signed_char, 1), BaseKind.CHAR)
        self.assertIs(_base_kind("long", DW_ATE_signed, 8), BaseKind.INT)
        self.assertIs(_base_kind("unsigned long", DW_ATE_unsigned, 8), BaseKind.UINT)
        self.assertIs(_base_kind("wchar_t", DW_ATE_signed, 2), BaseKind.WCHAR)


if __name__ == "__main__":
    unittest.main()
