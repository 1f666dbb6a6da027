import io
from typing import Dict, Iterable, Optional

from elftools.dwarf.dwarfinfo import DWARFInfo, DebugSectionDescriptor, DwarfConfig
from macholib import mach_o
from macholib.MachO import MachO

from .errors import FileNotFound


# Mach-O section name -> DWARFInfo keyword. Section names are capped at 16 bytes.
DWARF_SECTIONS = {
    "__debug_info": "debug_info_sec",
    "__debug_aranges": "debug_aranges_sec",
    "__debug_abbrev": "debug_abbrev_sec",
    "__debug_frame": "debug_frame_sec",
    "__eh_frame": "eh_frame_sec",
    "__debug_str": "debug_str_sec",
    "__debug_loc": "debug_loc_sec",
    "__debug_ranges": "debug_ranges_sec",
    "__debug_line": "debug_line_sec",
    "__debug_pubtypes": "debug_pubtypes_sec",
    "__debug_pubnames": "debug_pubnames_sec",
    "__debug_addr": "debug_addr_sec",
    "__debug_str_offs": "debug_str_offsets_sec",
    "__debug_line_str": "debug_line_str_sec",
    "__debug_loclists": "debug_loclists_sec",
    "__debug_rnglists": "debug_rnglists_sec",
    "__debug_sup": "debug_sup_sec",
    "__gnu_debugaltlink": "gnu_debugaltlink_sec",
    "__debug_types": "debug_types_sec",
}

CPU_MACHINE_ARCH = {
    "x86_64": "x64",
    "i386": "x86",
    "arm64": "AArch64",
    "arm": "ARM",
    "powerpc": "PPC",
    "powerpc64": "PPC64",
}


def strip_cstr(value: bytes) -> str:
    return value.split(b"\x00", 1)[0].decode("utf-8", "replace")


def header_config(header) -> DwarfConfig:
    magic = header.header.magic
    cpu_name = mach_o.CPU_TYPE_NAMES.get(header.header.cputype, "unknown").lower()
    is_64 = magic in (mach_o.MH_MAGIC_64, mach_o.MH_CIGAM_64)
    address_size = 8 if is_64 else 4
    machine_arch = CPU_MACHINE_ARCH.get(cpu_name, "x64" if is_64 else "x86")
    return DwarfConfig(
        little_endian=magic in (mach_o.MH_MAGIC, mach_o.MH_MAGIC_64),
        default_address_size=address_size,
        machine_arch=machine_arch,
    )


def read_sections(fileobj, header, desired_names: Iterable[str]) -> Dict[str, DebugSectionDescriptor]:
    desired = set(desired_names)
    sections: Dict[str, DebugSectionDescriptor] = {}
    for load_cmd, cmd, data in header.commands:
        if load_cmd.cmd not in (mach_o.LC_SEGMENT, mach_o.LC_SEGMENT_64):
            continue
        for section in data:
            name = strip_cstr(section.sectname)
            if name not in desired or name in sections:
                continue
            offset = header.offset + section.offset
            fileobj.seek(offset)
            payload = fileobj.read(section.size)
            sections[name] = DebugSectionDescriptor(
                io.BytesIO(payload),
                name,
                offset,
                section.size,
                getattr(section, "addr", 0),
            )
    return sections


def select_header(macho: MachO) -> Optional[object]:
    """Pick the slice carrying a __DWARF segment; fat dSYMs may have several."""

    for header in macho.headers:
        for load_cmd, cmd, data in header.commands:
            if load_cmd.cmd in (mach_o.LC_SEGMENT, mach_o.LC_SEGMENT_64):
                if strip_cstr(cmd.segname) == "__DWARF":
                    return header
    if macho.headers:
        return macho.headers[0]
    return None


def dwarfinfo_from_macho(path: str) -> DWARFInfo:
    macho = MachO(path)
    header = select_header(macho)
    if header is None:
        raise FileNotFound(f"{path}: no Mach-O headers")

    with open(path, "rb") as fileobj:
        sections = read_sections(fileobj, header, DWARF_SECTIONS)

    if "__debug_info" not in sections:
        raise FileNotFound(f"{path}: Mach-O file does not contain a __debug_info section")

    kwargs = {keyword: sections.get(name) for name, keyword in DWARF_SECTIONS.items()}
    return DWARFInfo(config=header_config(header), **kwargs)
