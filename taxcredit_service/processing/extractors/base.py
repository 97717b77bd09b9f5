from __future__ import annotations

import re
from abc import ABC, abstractmethod

from taxcredit_service.processing.types import ExtractResult

_BLANK_RUN = re.compile(r"\n{4,}")


class Extractor(ABC):
    """Turns the raw bytes of one uploaded document into plain text."""

    @abstractmethod
    def can_handle(self, mime_type: str) -> bool: ...

    @abstractmethod
    def extract(self, *, data: bytes, mime_type: str) -> ExtractResult: ...


def normalize_text(text: str) -> str:
    """Drop NULs, unify line endings and cap blank runs at two empty lines."""
    if not text:
        return ""
    text = text.replace("\x00", "").replace("\r\n", "\n")
    return _BLANK_RUN.sub("\n\n\n", text).strip()
