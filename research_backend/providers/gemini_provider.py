# research_backend/providers/gemini_provider.py
import os

from research_backend.llm_wrapper import call_llm as _llm_call
from research_backend.providers.base import (
    ResearchProvider, ProviderError, ProviderErrorReason, classify_provider_error,
)
from research_backend.schemas import DeepResearchResponse

RESEARCH_PROMPT_TEMPLATE = """Please conduct comprehensive research on the following topic and provide detailed findings:

{}

Provide a well-structured research report with:
1. Executive summary
2. Key findings
3. Detailed analysis
4. Conclusions and recommendations"""

GEMINI_TIMEOUT = float(os.getenv("GEMINI_TIMEOUT_SECONDS", "300"))


class GeminiResearchProvider(ResearchProvider):
    """Gemini never asks clarification questions; every call is a direct result."""

    name = "gemini"
    label = "Gemini"

    def __init__(self, model: str = None, timeout: float = GEMINI_TIMEOUT):
        self.model = model
        self.timeout = timeout

    def _call_llm(self, prompt: str) -> str:
        resp = _llm_call(
            "gemini",
            messages=[{"role": "user", "content": RESEARCH_PROMPT_TEMPLATE.format(prompt)}],
            model=self.model,
            max_tokens=8192,
            temperature=0.7,
            timeout=self.timeout,
        )
        return resp["text"]

    def research(self, prompt: str) -> DeepResearchResponse:
        try:
            text = self._call_llm(prompt)
        except Exception as e:
            raise classify_provider_error(self.label, e) from e
        if not text or not text.strip():
            raise ProviderError("No response from Gemini", ProviderErrorReason.UNKNOWN, self.name)
        return DeepResearchResponse(requires_refinement=False, result=text)


class MockGeminiResearchProvider(ResearchProvider):
    name = "gemini"
    label = "Gemini"

    def research(self, prompt: str) -> DeepResearchResponse:
        return DeepResearchResponse(
            requires_refinement=False,
            result=(
                f"# Gemini Research Results: {prompt}\n\n"
                "## Overview\n\n"
                "This is a mock research result from Gemini for local development.\n\n"
                "## Analysis\n\n"
                "1. **Insight One**: Analysis of the first key point.\n"
                "2. **Insight Two**: Examination of the second important aspect.\n"
                "3. **Insight Three**: Exploration of the third critical element.\n\n"
                "## Conclusion\n\n"
                "Summary of the findings and how they complement other research sources."
            ),
        )
