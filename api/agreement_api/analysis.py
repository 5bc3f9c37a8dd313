import json
import logging
from typing import Dict, List, Optional

import google.generativeai as genai
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .config import GEMINI_API_KEY, GEMINI_MODEL
from .errors import AnalysisError
from .models import RISK_SEVERITIES

logger = logging.getLogger(__name__)


class Risk(BaseModel):
    type: str
    description: str
    severity: str

    @field_validator("severity")
    @classmethod
    def _known_severity(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in RISK_SEVERITIES:
            raise ValueError(f"severity must be one of {', '.join(RISK_SEVERITIES)}")
        return value


class AnalysisResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    summary: str = Field(min_length=1)
    key_terms: Dict[str, Optional[str]] = Field(alias="keyTerms")
    risks: List[Risk]
    category: str = Field(min_length=1)
    confidence_score: float = Field(alias="confidenceScore", ge=0, le=1)


PROMPT_TEMPLATE = """Analyze this legal agreement and provide a structured response with the following:
1. A brief summary (2-3 sentences)
2. Key terms including payment terms, renewal conditions, termination clauses, and confidentiality terms
3. Potential risks or issues, with severity levels (low/medium/high)
4. The most appropriate category for this agreement
5. Your confidence score (0-1) in this analysis

Agreement content:
{content}

Respond in the following JSON format:
{{
  "summary": "string",
  "keyTerms": {{
    "paymentTerms": "string",
    "renewalConditions": "string",
    "terminationClauses": "string",
    "confidentialityTerms": "string"
  }},
  "risks": [
    {{
      "type": "string",
      "description": "string",
      "severity": "low|medium|high"
    }}
  ],
  "category": "string",
  "confidenceScore": number
}}"""


def build_prompt(content: str) -> str:
    return PROMPT_TEMPLATE.format(content=content)


def _get_model():
    if not GEMINI_API_KEY:
        raise AnalysisError("GEMINI_API_KEY is not set")
    genai.configure(api_key=GEMINI_API_KEY)
    return genai.GenerativeModel(GEMINI_MODEL)


def _generate_text(prompt: str) -> str:
    model = _get_model()
    try:
        response = model.generate_content(
            prompt,
            generation_config={
                "temperature": 0.2,
                "response_mime_type": "application/json",
            },
        )
        return response.text
    except Exception as exc:
        logger.error("Gemini request failed: %s", exc)
        raise AnalysisError(f"Gemini analysis failed: {exc}") from exc


def strip_to_json(text: str) -> str:
    if not text:
        return ""
    t = text.strip()
    if t.startswith("```"):
        t = t.lstrip("`").lstrip()
        if t.lower().startswith("json"):
            t = t[4:].lstrip()
    if t.endswith("```"):
        t = t[:-3]
    first = t.find("{")
    if first != -1:
        t = t[first:]
    return t.strip()


def parse_analysis(text: str) -> AnalysisResult:
    try:
        return AnalysisResult.model_validate(json.loads(strip_to_json(text)))
    except (json.JSONDecodeError, ValidationError) as exc:
        logger.error("unparseable Gemini response: %s; raw: %.500s", exc, text)
        raise AnalysisError("Failed to parse Gemini API response") from exc


def analyze_agreement(content: str) -> AnalysisResult:
    if not content or not content.strip():
        raise AnalysisError("Agreement content is empty", status_code=400)
    logger.info("requesting Gemini analysis (%d chars)", len(content))
    result = parse_analysis(_generate_text(build_prompt(content)))
    logger.info("Gemini analysis received: category=%s confidence=%.2f", result.category, result.confidence_score)
    return result
