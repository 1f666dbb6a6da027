from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from .symbols import Symbol, basic_type_string


@dataclass
class FieldDeclarationSettings:
    use_stdint: bool = False
    # None follows the graph being printed.
    msvc_types: Optional[bool] = None


class FieldDeclarationBase(ABC):
    """Accumulates the text of one member declarator.

    The visitor calls the `visit_*_begin` hooks outside-in and the
    `visit_*_end` hooks inside-out, so a subclass only has to decide how each
    level contributes to the type prefix and suffix.
    """

    def __init__(self, settings: Optional[FieldDeclarationSettings] = None) -> None:
        self.settings = settings or FieldDeclarationSettings()
        self.inline_expanded = False

    def visit_pointer_begin(self, symbol: Symbol) -> None:
        pass

    def visit_array_begin(self, symbol: Symbol) -> None:
        pass

    @abstractmethod
    def visit_base_type(self, symbol: Symbol) -> None: ...

    @abstractmethod
    def visit_pointer_end(self, symbol: Symbol) -> None: ...

    @abstractmethod
    def visit_array_end(self, symbol: Symbol) -> None: ...

    @abstractmethod
    def visit_function_end(self, symbol: Symbol) -> None: ...

    @abstractmethod
    def visit_udt(self, symbol: Symbol, tag: str) -> None: ...

    @abstractmethod
    def visit_enum(self, symbol: Symbol, tag: str) -> None: ...

    def visit_inline_end(self, symbol: Symbol) -> None:
        self.inline_expanded = True

    @abstractmethod
    def set_member_name(self, name: Optional[str]) -> None: ...

    @abstractmethod
    def render(self) -> str: ...


class FieldDeclaration(FieldDeclarationBase):
    def __init__(self, settings: Optional[FieldDeclarationSettings] = None) -> None:
        super().__init__(settings)
        self.type_prefix = ""  # "int*"
        self.member_name = ""  # "Buffer"
        self.type_suffix = ""  # "[8]"
        self.comment = ""
        self._pointers = 0

    def visit_pointer_begin(self, symbol: Symbol) -> None:
        self._pointers += 1

    def visit_base_type(self, symbol: Symbol) -> None:
        self.type_prefix += basic_type_string(symbol, self.settings.use_stdint, self.settings.msvc_types is not False)

    def visit_pointer_end(self, symbol: Symbol) -> None:
        if self.type_suffix and not self.type_suffix.startswith(")"):
            # Pointer to array: `int (* p)[4]`, not an array of pointers.
            self.type_prefix += " (*"
            self.type_suffix = ")" + self.type_suffix
            return
        self.type_prefix += "*"

    def visit_array_end(self, symbol: Symbol) -> None:
        if symbol.element_count == 0:
            self.type_prefix += "*"
            return
        # Inner dimensions are visited first; prepend so `[outer][inner]`.
        self.type_suffix = f"[{symbol.element_count}]" + self.type_suffix

    def visit_function_end(self, symbol: Symbol) -> None:
        # Functions are not reconstructed; they print as an opaque void*.
        self.type_prefix += "void" if self._pointers else "void*"
        self.comment = " /* function */"

    def visit_udt(self, symbol: Symbol, tag: str) -> None:
        self.type_prefix += tag

    def visit_enum(self, symbol: Symbol, tag: str) -> None:
        self.type_prefix += tag

    def visit_inline_end(self, symbol: Symbol) -> None:
        super().visit_inline_end(symbol)
        self.type_prefix += "}"

    def set_member_name(self, name: Optional[str]) -> None:
        self.member_name = name or ""

    def render(self) -> str:
        return self.type_prefix + " " + self.member_name + self.type_suffix + self.comment
