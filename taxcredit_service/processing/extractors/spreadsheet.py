from __future__ import annotations

import io

from openpyxl import load_workbook

from taxcredit_service.processing.extractors.base import Extractor, normalize_text
from taxcredit_service.processing.types import ExtractResult

XLSX_MIME = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def _cell_text(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


class SpreadsheetExtractor(Extractor):
    """One ``=== Planilha: <name> ===`` block per sheet, cells tab-separated."""

    def can_handle(self, mime_type: str) -> bool:
        return mime_type == XLSX_MIME

    def extract(self, *, data: bytes, mime_type: str) -> ExtractResult:
        wb = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
        try:
            blocks: list[str] = []
            for ws in wb.worksheets:
                lines: list[str] = []
                for row in ws.iter_rows(values_only=True):
                    cells = [_cell_text(v) for v in row]
                    if any(cells):
                        lines.append("\t".join(cells).rstrip("\t"))
                if lines:
                    blocks.append(f"=== Planilha: {ws.title} ===\n" + "\n".join(lines))
            sheets = len(wb.worksheets)
        finally:
            wb.close()

        return ExtractResult(
            text=normalize_text("\n\n".join(blocks)),
            used_ocr=False,
            pages=sheets,
            extraction_meta={"strategy": "openpyxl", "sheets": sheets},
        )
