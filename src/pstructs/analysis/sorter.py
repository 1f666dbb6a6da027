from __future__ import annotations

from typing import Iterator, Optional

from .symbols import Architecture, Symbol, SymbolGraph, SymbolTag
from .utils import Logger


_ORDERED_TAGS = {SymbolTag.UDT, SymbolTag.ENUM}
_POINTER_ARCHITECTURES = {4: Architecture.X86, 8: Architecture.X64}


class SymbolSorter:
    """Orders UDTs and enums so each comes after the types it embeds.

    Members, arrays and typedefs are value edges and constrain the order.
    Pointer edges are only followed to discover more types. A type whose
    value dependency is still being walked (reached back through a pointer)
    is held until that dependency is placed.
    """

    def __init__(self, graph: SymbolGraph, log: Optional[Logger] = None) -> None:
        self.graph = graph
        self._log = log
        self.clear()

    def clear(self) -> None:
        self.sorted_symbols: list[Symbol] = []
        self.architecture = Architecture.NONE
        self._visited: set[int] = set()
        self._placed: set[int] = set()
        self._blocked: dict[int, set[int]] = {}
        self._waiters: dict[int, list[int]] = {}

    def visit(self, symbol: Symbol) -> None:
        if symbol.id in self._visited:
            return
        self._enter(symbol)
        stack: list[tuple[int, Iterator[int]]] = [(symbol.id, self._edges(symbol))]
        while stack:
            symbol_id, edges = stack[-1]
            for target_id in edges:
                if target_id in self._visited:
                    continue
                target = self.graph[target_id]
                self._enter(target)
                stack.append((target_id, self._edges(target)))
                break
            else:
                stack.pop()
                self._finish(self.graph[symbol_id])
        self._drain()

    def _enter(self, symbol: Symbol) -> None:
        self._visited.add(symbol.id)
        if symbol.tag is SymbolTag.POINTER and self.architecture is Architecture.NONE:
            architecture = _POINTER_ARCHITECTURES.get(symbol.size)
            if architecture is not None:
                self.architecture = architecture
                if self._log:
                    self._log(f"architecture {architecture.value} from pointer #{symbol.id}")

    def _edges(self, symbol: Symbol) -> Iterator[int]:
        if symbol.tag is SymbolTag.UDT:
            for member in symbol.members:
                yield member.type_id
        elif symbol.tag in {SymbolTag.POINTER, SymbolTag.ARRAY, SymbolTag.TYPEDEF}:
            if symbol.child is not None:
                yield symbol.child

    def _value_dependencies(self, symbol: Symbol) -> list[int]:
        found: list[int] = []
        if symbol.tag is not SymbolTag.UDT:
            return found
        seen: set[int] = set()
        pending = [member.type_id for member in symbol.members]
        while pending:
            target_id = pending.pop()
            if target_id in seen:
                continue
            seen.add(target_id)
            target = self.graph[target_id]
            if target.tag in {SymbolTag.TYPEDEF, SymbolTag.ARRAY}:
                pending.append(target.child)
            elif target.tag in _ORDERED_TAGS and target_id != symbol.id:
                found.append(target_id)
        return found

    def _finish(self, symbol: Symbol) -> None:
        if symbol.tag not in _ORDERED_TAGS:
            return
        blocked = {dep for dep in self._value_dependencies(symbol) if dep not in self._placed}
        if not blocked:
            self._place(symbol.id)
            return
        self._blocked[symbol.id] = blocked
        for dep in blocked:
            self._waiters.setdefault(dep, []).append(symbol.id)
        if self._log:
            self._log(f"{symbol.name or '#%d' % symbol.id} waits for {len(blocked)} type(s)")

    def _place(self, symbol_id: int) -> None:
        queue = [symbol_id]
        while queue:
            current = queue.pop(0)
            if current in self._placed:
                continue
            self._placed.add(current)
            self._blocked.pop(current, None)
            self.sorted_symbols.append(self.graph[current])
            for waiter in self._waiters.pop(current, []):
                blocked = self._blocked.get(waiter)
                if blocked is None:
                    continue
                blocked.discard(current)
                if not blocked:
                    queue.append(waiter)

    def _drain(self) -> None:
        # Only a malformed graph (types embedding each other by value) gets here.
        for symbol_id in list(self._blocked):
            if symbol_id not in self._placed:
                if self._log:
                    self._log(f"value cycle through #{symbol_id}; placing as is")
                self._place(symbol_id)
