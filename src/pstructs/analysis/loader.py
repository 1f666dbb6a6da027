from __future__ import annotations

import os
from typing import Optional

from .dwarf import ELF_MAGIC, load_dwarf_graph, macho_magics
from .errors import FileNotFound
from .pdb import MSF_MAGIC, is_pdb_magic, load_pdb_graph
from .symbols import SymbolGraph
from .utils import Logger


def read_magic(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read(len(MSF_MAGIC))


def open_graph(path: str, log: Optional[Logger] = None) -> SymbolGraph:
    """Load the type graph of a PDB, ELF or Mach-O file, normalized."""

    if not os.path.isfile(path):
        raise FileNotFound(path)
    try:
        magic = read_magic(path)
    except OSError as exc:
        raise FileNotFound(path) from exc

    if is_pdb_magic(magic):
        if log:
            log(f"{path}: PDB")
        graph = load_pdb_graph(path, log)
    elif magic[:4] == ELF_MAGIC or magic[:4] in macho_magics:
        if log:
            log(f"{path}: DWARF")
        graph = load_dwarf_graph(path, log)
    else:
        raise FileNotFound(f"{path}: unsupported file format")

    graph.normalize()
    return graph
