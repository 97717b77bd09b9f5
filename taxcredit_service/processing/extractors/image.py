from __future__ import annotations

from taxcredit_service.processing.extractors.base import Extractor, normalize_text
from taxcredit_service.processing.ocr import DocumentAIClient
from taxcredit_service.processing.types import ExtractResult


class ImageExtractor(Extractor):
    def __init__(self, *, docai: DocumentAIClient | None) -> None:
        self._docai = docai

    def can_handle(self, mime_type: str) -> bool:
        return mime_type.startswith("image/")

    def extract(self, *, data: bytes, mime_type: str) -> ExtractResult:
        if self._docai is None:
            raise ValueError("OCR is disabled (TC_OCR_ENABLED=false); cannot read image documents")
        text, meta = self._docai.ocr_online(content=data, mime_type=mime_type)
        return ExtractResult(
            text=normalize_text(text),
            used_ocr=True,
            pages=meta.get("pages"),
            extraction_meta={"strategy": "docai_online", **meta},
        )
