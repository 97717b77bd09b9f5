from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class ExtractResult:
    text: str
    used_ocr: bool
    pages: int | None
    extraction_meta: dict[str, Any]


@dataclass(frozen=True)
class CompanyInfo:
    name: str | None = None
    cnpj: str | None = None
    regime: str | None = None  # lucro_real|lucro_presumido|simples

    def is_empty(self) -> bool:
        return not (self.name or self.cnpj or self.regime)

    def to_payload(self) -> dict[str, str]:
        out: dict[str, str] = {}
        if self.name:
            out["name"] = self.name
        if self.cnpj:
            out["cnpj"] = self.cnpj
        if self.regime:
            out["regime"] = self.regime
        return out

    @classmethod
    def from_payload(cls, raw: dict[str, Any] | None) -> CompanyInfo | None:
        if not raw:
            return None
        return cls(name=raw.get("name"), cnpj=raw.get("cnpj"), regime=raw.get("regime"))


@dataclass(frozen=True)
class Opportunity:
    tipo: str
    tributo: str
    descricao: str
    valor_estimado: float
    fundamentacao_legal: str
    prazo_recuperacao: str
    complexidade: str  # baixa|media|alta
    probabilidade_recuperacao: float  # 0-100
    risco: str
    documentacao_necessaria: list[str] = field(default_factory=list)
    passos_praticos: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Stored/served shape (camelCase keys, as returned by the analysis model)."""
        return {
            "tipo": self.tipo,
            "tributo": self.tributo,
            "descricao": self.descricao,
            "valorEstimado": self.valor_estimado,
            "fundamentacaoLegal": self.fundamentacao_legal,
            "prazoRecuperacao": self.prazo_recuperacao,
            "complexidade": self.complexidade,
            "probabilidadeRecuperacao": self.probabilidade_recuperacao,
            "risco": self.risco,
            "documentacaoNecessaria": list(self.documentacao_necessaria),
            "passosPraticos": list(self.passos_praticos),
        }


@dataclass(frozen=True)
class AnalysisResult:
    opportunities: list[Opportunity]
    executive_summary: str
    recommendations: list[str]
    alerts: list[str]
    processing_time_ms: int
    model_used: str | None = None

    @property
    def total_estimated_value(self) -> float:
        return sum(o.valor_estimado for o in self.opportunities)


@dataclass(frozen=True)
class DocumentJobData:
    document_id: str
    user_id: str
    file_path: str
    file_name: str
    mime_type: str
    document_type: str  # dre|balanço|balancete
    batch_job_id: str | None = None
    company_info: CompanyInfo | None = None

    def to_payload(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "documentId": self.document_id,
            "userId": self.user_id,
            "filePath": self.file_path,
            "fileName": self.file_name,
            "mimeType": self.mime_type,
            "documentType": self.document_type,
        }
        if self.batch_job_id:
            out["batchJobId"] = self.batch_job_id
        if self.company_info and not self.company_info.is_empty():
            out["companyInfo"] = self.company_info.to_payload()
        return out

    @classmethod
    def from_payload(cls, raw: dict[str, Any]) -> DocumentJobData:
        return cls(
            document_id=str(raw["documentId"]),
            user_id=str(raw["userId"]),
            file_path=str(raw["filePath"]),
            file_name=str(raw["fileName"]),
            mime_type=str(raw["mimeType"]),
            document_type=str(raw["documentType"]),
            batch_job_id=raw.get("batchJobId"),
            company_info=CompanyInfo.from_payload(raw.get("companyInfo")),
        )


@dataclass(frozen=True)
class ConsolidationJobData:
    batch_job_id: str
    user_id: str

    def to_payload(self) -> dict[str, Any]:
        return {"batchJobId": self.batch_job_id, "userId": self.user_id}

    @classmethod
    def from_payload(cls, raw: dict[str, Any]) -> ConsolidationJobData:
        return cls(batch_job_id=str(raw["batchJobId"]), user_id=str(raw["userId"]))
