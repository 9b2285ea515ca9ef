"""LLM-backed session assessment."""

from aiobscura.assessment.assessor import (
    ASSESSOR_NAME,
    SCORE_KEYS,
    SYSTEM_PROMPT,
    AssessmentDraft,
    SessionAssessor,
    assess,
    build_prompt,
    extract_json_object,
    parse_scores,
    render_transcript,
)
from aiobscura.assessment.providers import LLMProvider, LLMResponse, create_provider

__all__ = [
    "ASSESSOR_NAME",
    "SCORE_KEYS",
    "SYSTEM_PROMPT",
    "AssessmentDraft",
    "LLMProvider",
    "LLMResponse",
    "SessionAssessor",
    "assess",
    "build_prompt",
    "create_provider",
    "extract_json_object",
    "parse_scores",
    "render_transcript",
]
