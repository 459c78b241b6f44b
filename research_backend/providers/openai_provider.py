# research_backend/providers/openai_provider.py
import os
import re
import json
from typing import Any, Dict, List

from jsonschema import validate as jsonschema_validate, ValidationError

from research_backend.llm_wrapper import call_llm as _llm_call
from research_backend.providers.base import (
    ResearchProvider, ProviderError, ProviderErrorReason, classify_provider_error,
)
from research_backend.schemas import DeepResearchResponse, RefinementQuestion, REFINED_MARKER

MAX_FALLBACK_QUESTIONS = 4

SYSTEM_PROMPT = """You are a deep research assistant. When given a research prompt, you should:
1. First, identify if the prompt needs clarification through refinement questions
2. If clarification is needed, return 2-4 specific, focused questions
3. If the prompt is clear, conduct comprehensive research and return detailed findings

Format your response as JSON with this structure:
{
  "requiresRefinement": boolean,
  "refinementQuestions": [{"question": string, "index": number}] (if requiresRefinement is true),
  "result": string (if requiresRefinement is false)
}"""

USER_PROMPT_TEMPLATE = (
    "Research prompt: {}\n\n"
    "Please analyze this prompt and either provide refinement questions or conduct the research."
)

RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "requiresRefinement": {"type": "boolean"},
        "refinementQuestions": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["question"],
                "properties": {
                    "question": {"type": "string", "minLength": 1},
                    "index": {"type": "integer", "minimum": 0},
                },
            },
        },
        "result": {"type": ["string", "null"]},
    },
}

OPENAI_TIMEOUT = float(os.getenv("OPENAI_TIMEOUT_SECONDS", "300"))


def normalize_questions(raw: List[Dict[str, Any]]) -> List[RefinementQuestion]:
    """
    Keep provider-given indices when they already form 0..N-1; otherwise order
    by the given index (falling back to position) and renumber.
    """
    keyed = [
        (q["index"] if isinstance(q.get("index"), int) else pos, pos, q["question"].strip())
        for pos, q in enumerate(raw)
        if str(q.get("question", "")).strip()
    ]
    keyed.sort(key=lambda t: (t[0], t[1]))
    return [RefinementQuestion(question=text, index=i) for i, (_, _, text) in enumerate(keyed)]


def _strip_fences(text: str) -> str:
    text = text.strip()
    if text.startswith("```") and text.endswith("```"):
        lines = text.splitlines()
        if len(lines) >= 3:
            text = "\n".join(lines[1:-1]).strip()
    return text


def _questions_from_text(content: str) -> List[RefinementQuestion]:
    parts = [p.strip() for p in re.split(r"\d+[.)]", content) if p.strip()]
    questions = []
    for part in parts:
        q = re.sub(r"\?.*$", "?", part, flags=re.DOTALL).strip()
        if q.endswith("?"):
            questions.append(q)
    return [RefinementQuestion(question=q, index=i) for i, q in enumerate(questions[:MAX_FALLBACK_QUESTIONS])]


def parse_research_content(content: str) -> DeepResearchResponse:
    """
    Turn the model's reply into a DeepResearchResponse.
    JSON replies are schema-checked; anything else is either a numbered list
    of questions or the research result itself.
    """
    if not content or not content.strip():
        raise ProviderError("No response from OpenAI", ProviderErrorReason.UNKNOWN, "openai")

    text = _strip_fences(content)
    try:
        parsed = json.loads(text)
    except ValueError:
        parsed = None

    if isinstance(parsed, dict):
        try:
            jsonschema_validate(instance=parsed, schema=RESPONSE_SCHEMA)
        except ValidationError as e:
            raise ProviderError(
                f"OpenAI returned an unexpected response format: {e.message}",
                ProviderErrorReason.UNKNOWN, "openai",
            )
        questions = normalize_questions(parsed.get("refinementQuestions") or [])
        return DeepResearchResponse(
            requires_refinement=bool(parsed.get("requiresRefinement")) and len(questions) > 0,
            refinement_questions=questions,
            result=parsed.get("result"),
        )

    if content.count("?") >= 2:
        questions = _questions_from_text(content)
        if questions:
            return DeepResearchResponse(requires_refinement=True, refinement_questions=questions)

    return DeepResearchResponse(requires_refinement=False, result=content)


class OpenAIResearchProvider(ResearchProvider):
    name = "openai"
    label = "OpenAI"

    def __init__(self, model: str = None, timeout: float = OPENAI_TIMEOUT):
        self.model = model
        self.timeout = timeout

    def _call_llm(self, prompt: str) -> str:
        resp = _llm_call(
            "openai",
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": USER_PROMPT_TEMPLATE.format(prompt)},
            ],
            model=self.model,
            max_tokens=4000,
            temperature=0.7,
            timeout=self.timeout,
            json_mode=True,
        )
        return resp["text"]

    def research(self, prompt: str) -> DeepResearchResponse:
        try:
            content = self._call_llm(prompt)
        except Exception as e:
            raise classify_provider_error(self.label, e) from e
        return parse_research_content(content)


MOCK_QUESTIONS = [
    "What specific aspect of this topic interests you most?",
    "What is your target audience or use case?",
    "What depth of detail are you looking for?",
]


class MockOpenAIResearchProvider(ResearchProvider):
    """Asks three fixed questions for a fresh prompt, answers once the prompt is refined."""

    name = "openai"
    label = "OpenAI"

    def research(self, prompt: str) -> DeepResearchResponse:
        if REFINED_MARKER not in prompt:
            return DeepResearchResponse(
                requires_refinement=True,
                refinement_questions=[RefinementQuestion(question=q, index=i) for i, q in enumerate(MOCK_QUESTIONS)],
            )
        return DeepResearchResponse(
            requires_refinement=False,
            result=(
                f"# Research Results for: {prompt}\n\n"
                "## Executive Summary\n\n"
                "This is a mock research result generated for local development.\n\n"
                "## Key Findings\n\n"
                "1. **Finding One**: Detailed analysis of the first key point.\n"
                "2. **Finding Two**: Examination of the second important aspect.\n"
                "3. **Finding Three**: Exploration of the third critical element.\n\n"
                "## Conclusion\n\n"
                "Summary of findings and recommendations based on the research conducted."
            ),
        )
