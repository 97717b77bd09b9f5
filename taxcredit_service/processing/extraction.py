"""Text extraction: raw file bytes + mime type -> plain text.

Dispatches to the first extractor that handles the mime type. Extractors are
synchronous (pypdf, openpyxl, Document AI client); ``extract_text`` runs
them in a worker thread.
"""

from __future__ import annotations

import asyncio
import logging

from taxcredit_service.config import (
    TC_DOC_AI_LOCATION,
    TC_DOC_AI_PROCESSOR_ID,
    TC_DOC_AI_PROJECT,
    TC_MIN_CHARS_PER_PAGE,
    TC_MIN_TOTAL_CHARS,
    TC_OCR_ENABLED,
)
from taxcredit_service.processing.extractors.base import Extractor
from taxcredit_service.processing.extractors.image import ImageExtractor
from taxcredit_service.processing.extractors.pdf import PdfExtractor
from taxcredit_service.processing.extractors.spreadsheet import SpreadsheetExtractor
from taxcredit_service.processing.extractors.text import TextExtractor
from taxcredit_service.processing.ocr import DocAIConfig, DocumentAIClient
from taxcredit_service.processing.types import ExtractResult

logger = logging.getLogger(__name__)


class EmptyExtractionError(ValueError):
    """No text could be read from the document."""


class TextExtractionService:
    def __init__(self, extractors: list[Extractor]) -> None:
        self._extractors = extractors

    def _pick(self, mime_type: str) -> Extractor:
        for ex in self._extractors:
            if ex.can_handle(mime_type):
                return ex
        raise ValueError(f"Unsupported mime type for extraction: {mime_type}")

    def extract_sync(self, *, data: bytes, mime_type: str) -> ExtractResult:
        result = self._pick(mime_type).extract(data=data, mime_type=mime_type)
        if not result.text.strip():
            raise EmptyExtractionError(
                f"No text extracted (mime={mime_type}, strategy={result.extraction_meta.get('strategy')})"
            )
        return result

    async def extract_text(self, *, data: bytes, mime_type: str) -> ExtractResult:
        return await asyncio.to_thread(self.extract_sync, data=data, mime_type=mime_type)


def build_extraction_service() -> TextExtractionService:
    """Extractor chain configured from env (OCR only when TC_OCR_ENABLED)."""
    docai: DocumentAIClient | None = None
    if TC_OCR_ENABLED:
        if not (TC_DOC_AI_PROJECT and TC_DOC_AI_LOCATION and TC_DOC_AI_PROCESSOR_ID):
            raise ValueError(
                "TC_OCR_ENABLED=true requires TC_DOC_AI_PROJECT, TC_DOC_AI_LOCATION, TC_DOC_AI_PROCESSOR_ID"
            )
        docai = DocumentAIClient(
            cfg=DocAIConfig(
                project=TC_DOC_AI_PROJECT,
                location=TC_DOC_AI_LOCATION,
                processor_id=TC_DOC_AI_PROCESSOR_ID,
            )
        )
    else:
        logger.info("OCR disabled; scanned PDFs and images will not be readable")

    return TextExtractionService(
        [
            PdfExtractor(
                docai=docai,
                min_chars_per_page=TC_MIN_CHARS_PER_PAGE,
                min_total_chars=TC_MIN_TOTAL_CHARS,
            ),
            SpreadsheetExtractor(),
            TextExtractor(),
            ImageExtractor(docai=docai),
        ]
    )
