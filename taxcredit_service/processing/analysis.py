"""Tax-credit opportunity analysis using Gemini models.

The engine sends document text plus company context to the model and asks
for a JSON answer (``oportunidades``, ``resumoExecutivo``, ``recomendacoes``,
``alertas``). Unknown or missing fields in the answer get neutral defaults.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import time
from abc import ABC, abstractmethod
from functools import lru_cache
from typing import Any

from google import genai

from taxcredit_service.config import (
    TC_ANALYSIS_MODEL,
    TC_MAX_ANALYSIS_CHARS,
    VERTEX_LOCATION,
    VERTEX_PROJECT,
)
from taxcredit_service.processing.types import AnalysisResult, CompanyInfo, Opportunity

logger = logging.getLogger(__name__)

_COMPLEXITY = {"baixa": "baixa", "media": "media", "média": "media", "alta": "alta"}

_DOCUMENT_LABELS = {
    "dre": "DEMONSTRAÇÃO DO RESULTADO DO EXERCÍCIO (DRE)",
    "balanço": "BALANÇO PATRIMONIAL",
    "balancete": "BALANCETE DE VERIFICAÇÃO",
}

_RESPONSE_FORMAT = """\
Responda EXCLUSIVAMENTE em JSON válido, sem markdown:
{
  "oportunidades": [
    {
      "tipo": "Nome da oportunidade",
      "tributo": "IRPJ|CSLL|PIS|COFINS|ICMS|ISS",
      "descricao": "Descrição detalhada",
      "valorEstimado": 0.00,
      "fundamentacaoLegal": "Legislação aplicável",
      "prazoRecuperacao": "Período recuperável",
      "complexidade": "baixa|media|alta",
      "probabilidadeRecuperacao": 85,
      "risco": "Principais riscos",
      "documentacaoNecessaria": ["doc1"],
      "passosPraticos": ["passo1"]
    }
  ],
  "resumoExecutivo": "Resumo executivo",
  "valorTotalEstimado": 0.00,
  "recomendacoes": ["recomendação"],
  "alertas": ["alerta"]
}
Seja conservador nos valores. Se não houver oportunidades reais, retorne a lista vazia."""


class AnalysisEngine(ABC):
    @abstractmethod
    async def analyze(
        self,
        *,
        text: str,
        document_type: str,
        company_info: CompanyInfo | None,
    ) -> AnalysisResult: ...


def _is_gcp_environment() -> bool:
    """Detect if running on GCP (Cloud Run, GCE, etc.)."""
    return bool(os.getenv("K_SERVICE") or os.getenv("GOOGLE_APPLICATION_CREDENTIALS"))


@lru_cache(maxsize=1)
def _get_gemini_client() -> genai.Client:
    """Cached Gemini client with automatic credential detection."""
    if _is_gcp_environment():
        return genai.Client(vertexai=True, project=VERTEX_PROJECT, location=VERTEX_LOCATION)
    api_key = os.getenv("GEMINI_API_KEY")
    if not api_key:
        raise ValueError("GEMINI_API_KEY not set. Set it for local dev or run on GCP for ADC.")
    return genai.Client(api_key=api_key)


def build_prompt(*, text: str, document_type: str, company_info: CompanyInfo | None) -> str:
    label = _DOCUMENT_LABELS.get(document_type, document_type.upper())
    company = company_info or CompanyInfo()
    context = [f"- Razão Social: {company.name or 'Não informada'}"]
    if company.cnpj:
        context.append(f"- CNPJ: {company.cnpj}")
    context.append(
        f"- Regime Tributário: {company.regime}" if company.regime else "- Regime: verificar no documento"
    )
    return (
        "Você é um especialista em recuperação de créditos tributários brasileiros. "
        f"Analise a seguinte {label}.\n\n"
        "## CONTEXTO DA EMPRESA\n" + "\n".join(context) + "\n\n"
        f"{_RESPONSE_FORMAT}\n\n"
        "## DOCUMENTO\n"
        f"{text[:TC_MAX_ANALYSIS_CHARS]}"
    )


# -- Response parsing ---------------------------------------------------------

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def extract_json_object(raw: str) -> dict[str, Any]:
    """First JSON object in a model response, tolerating markdown fences."""
    cleaned = _FENCE_RE.sub("", (raw or "").strip())
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end <= start:
        raise ValueError("Analysis response contains no JSON object")
    obj = json.loads(cleaned[start : end + 1])
    if not isinstance(obj, dict):
        raise ValueError("Analysis response JSON is not an object")
    return obj


def _as_float(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        # "1.234,56" (pt-BR) and "1234.56" both occur
        s = value.strip().replace("R$", "").strip()
        if "," in s:
            s = s.replace(".", "").replace(",", ".")
        try:
            return float(s)
        except ValueError:
            return 0.0
    return 0.0


def _as_str(value: Any) -> str:
    return "" if value is None else str(value).strip()


def _as_str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if v is not None and str(v).strip()]


def coerce_opportunity(raw: dict[str, Any]) -> Opportunity:
    complexity = _COMPLEXITY.get(_as_str(raw.get("complexidade")).lower(), "media")
    probability = min(max(_as_float(raw.get("probabilidadeRecuperacao")), 0.0), 100.0)
    return Opportunity(
        tipo=_as_str(raw.get("tipo")) or "Não classificada",
        tributo=_as_str(raw.get("tributo")),
        descricao=_as_str(raw.get("descricao")),
        valor_estimado=max(_as_float(raw.get("valorEstimado")), 0.0),
        fundamentacao_legal=_as_str(raw.get("fundamentacaoLegal")),
        prazo_recuperacao=_as_str(raw.get("prazoRecuperacao")),
        complexidade=complexity,
        probabilidade_recuperacao=probability,
        risco=_as_str(raw.get("risco")),
        documentacao_necessaria=_as_str_list(raw.get("documentacaoNecessaria")),
        passos_praticos=_as_str_list(raw.get("passosPraticos")),
    )


def parse_analysis(
    payload: dict[str, Any], *, processing_time_ms: int, model_used: str | None
) -> AnalysisResult:
    raw_opps = payload.get("oportunidades")
    opportunities = [
        coerce_opportunity(o) for o in (raw_opps if isinstance(raw_opps, list) else []) if isinstance(o, dict)
    ]
    return AnalysisResult(
        opportunities=opportunities,
        executive_summary=_as_str(payload.get("resumoExecutivo")),
        recommendations=_as_str_list(payload.get("recomendacoes")),
        alerts=_as_str_list(payload.get("alertas")),
        processing_time_ms=processing_time_ms,
        model_used=model_used,
    )


# -- Engine -------------------------------------------------------------------


class GeminiAnalysisEngine(AnalysisEngine):
    def __init__(self, *, model: str = TC_ANALYSIS_MODEL) -> None:
        self._model = model

    def _generate(self, prompt: str) -> str:
        client = _get_gemini_client()
        response = client.models.generate_content(
            model=self._model,
            contents=prompt,
            config={"response_mime_type": "application/json", "temperature": 0.2},
        )
        if not response.text:
            raise RuntimeError("Analysis response was empty")
        return response.text

    async def analyze(
        self,
        *,
        text: str,
        document_type: str,
        company_info: CompanyInfo | None,
    ) -> AnalysisResult:
        prompt = build_prompt(text=text, document_type=document_type, company_info=company_info)
        if len(text) > TC_MAX_ANALYSIS_CHARS:
            logger.info("Document text truncated from %d to %d chars", len(text), TC_MAX_ANALYSIS_CHARS)

        started = time.monotonic()
        loop = asyncio.get_running_loop()
        raw = await loop.run_in_executor(None, self._generate, prompt)
        elapsed_ms = int((time.monotonic() - started) * 1000)

        result = parse_analysis(
            extract_json_object(raw), processing_time_ms=elapsed_ms, model_used=self._model
        )
        logger.info(
            "Analysis done: %d opportunities, total=%.2f, %dms",
            len(result.opportunities),
            result.total_estimated_value,
            elapsed_ms,
        )
        return result
