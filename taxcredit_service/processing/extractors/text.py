from __future__ import annotations

from taxcredit_service.processing.extractors.base import Extractor, normalize_text
from taxcredit_service.processing.types import ExtractResult


class TextExtractor(Extractor):
    def can_handle(self, mime_type: str) -> bool:
        return mime_type == "text/plain"

    def extract(self, *, data: bytes, mime_type: str) -> ExtractResult:
        # Brazilian accounting exports are often Latin-1
        try:
            text = data.decode("utf-8")
            encoding = "utf-8"
        except UnicodeDecodeError:
            text = data.decode("latin-1")
            encoding = "latin-1"
        return ExtractResult(
            text=normalize_text(text),
            used_ocr=False,
            pages=None,
            extraction_meta={"strategy": "text", "encoding": encoding},
        )
