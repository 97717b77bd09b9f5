from __future__ import annotations

import io
import logging

from pypdf import PdfReader

from taxcredit_service.processing.extractors.base import Extractor, normalize_text
from taxcredit_service.processing.ocr import DocumentAIClient
from taxcredit_service.processing.types import ExtractResult

logger = logging.getLogger(__name__)

PDF_MIME = "application/pdf"


def read_text_layer(data: bytes) -> tuple[str, int | None]:
    """Embedded text of a PDF and its page count; ("", None) if unreadable."""
    try:
        reader = PdfReader(io.BytesIO(data))
        page_texts = [page.extract_text() or "" for page in reader.pages]
    except Exception as e:
        logger.warning("PDF text layer unreadable, treating as scanned: %s", e)
        return "", None
    return "\n".join(t for t in page_texts if t.strip()), len(page_texts)


class PdfExtractor(Extractor):
    """Text layer via pypdf; Document AI OCR when the layer is too thin.

    Scanned bank statements and DARF receipts usually carry no text layer,
    or only a header line, so both a per-page and a total minimum apply.
    """

    def __init__(
        self,
        *,
        docai: DocumentAIClient | None,
        min_chars_per_page: int,
        min_total_chars: int,
    ) -> None:
        self._docai = docai
        self._min_per_page = max(1, int(min_chars_per_page))
        self._min_total = max(0, int(min_total_chars))

    def can_handle(self, mime_type: str) -> bool:
        return mime_type == PDF_MIME

    def _too_thin(self, text: str, pages: int | None) -> tuple[bool, int]:
        per_page = len(text) // max(pages or 1, 1)
        return (not text or per_page < self._min_per_page or len(text) < self._min_total), per_page

    def extract(self, *, data: bytes, mime_type: str) -> ExtractResult:
        raw, pages = read_text_layer(data)
        text = normalize_text(raw)
        thin, per_page = self._too_thin(text, pages)

        if not thin or self._docai is None:
            if thin:
                logger.warning(
                    "PDF text layer too thin (%d chars, %d/page) and OCR is disabled",
                    len(text),
                    per_page,
                )
            return ExtractResult(
                text=text,
                used_ocr=False,
                pages=pages,
                extraction_meta={"strategy": "pypdf", "text_per_page": per_page},
            )

        ocr_text, meta = self._docai.ocr_online(content=data, mime_type=PDF_MIME)
        return ExtractResult(
            text=normalize_text(ocr_text),
            used_ocr=True,
            pages=meta.get("pages") or pages,
            extraction_meta={"strategy": "docai_online", "text_per_page": per_page, **meta},
        )
