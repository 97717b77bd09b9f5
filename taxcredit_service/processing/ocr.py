"""Document AI OCR for scanned statements and photographed invoices.

Only the synchronous ``process_document`` call is used: documents arrive as
upload bytes, never as GCS objects, and online requests cover the page
counts accepted by the upload limits.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from google.cloud import documentai_v1 as documentai

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DocAIConfig:
    project: str
    location: str
    processor_id: str

    @property
    def processor_name(self) -> str:
        return f"projects/{self.project}/locations/{self.location}/processors/{self.processor_id}"

    @property
    def api_endpoint(self) -> str:
        return f"{self.location}-documentai.googleapis.com"


class DocumentAIClient:
    def __init__(self, *, cfg: DocAIConfig) -> None:
        self._cfg = cfg
        self._client = documentai.DocumentProcessorServiceClient(
            client_options={"api_endpoint": cfg.api_endpoint}
        )

    def ocr_online(self, *, content: bytes, mime_type: str) -> tuple[str, dict[str, Any]]:
        """OCR one document; returns its text plus provider metadata."""
        result = self._client.process_document(
            request=documentai.ProcessRequest(
                name=self._cfg.processor_name,
                raw_document=documentai.RawDocument(content=content, mime_type=mime_type),
            )
        )
        document = result.document
        pages = len(document.pages) if document.pages else None
        logger.debug("Document AI OCR done mime=%s pages=%s bytes=%d", mime_type, pages, len(content))
        return document.text or "", {
            "provider": "documentai",
            "mode": "online",
            "mime_type": mime_type,
            "pages": pages,
        }
