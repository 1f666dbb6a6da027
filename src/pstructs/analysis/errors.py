from __future__ import annotations

from typing import Optional


class PStructsError(ValueError):
    message = "Error"

    def __init__(self, detail: Optional[str] = None) -> None:
        self.detail = detail
        text = self.message if not detail else f"{self.message}: {detail}"
        super().__init__(text)


class InvalidParameters(PStructsError):
    message = "Invalid parameters"


class FileNotFound(PStructsError):
    message = "File not found"


class SymbolNotFound(PStructsError):
    message = "Symbol not found"


class UnionBitfieldViolation(PStructsError):
    message = "Bitfields in union are not allowed"
