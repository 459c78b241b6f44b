# research_backend/llm_wrapper.py
"""
Centralized LLM wrapper for the two research backends. Returns a standardized dict:
{
  "text": "<assistant text>",
  "model": "<model used>",
  "response_id": "<model response id if available>",
  "raw": <raw response object>
}

Configuration (env vars):
  OPENAI_API_KEY=...
  OPENAI_RESEARCH_MODEL=...       (default: gpt-4-turbo-preview)
  GOOGLE_CLOUD_PROJECT=...        (Vertex AI project for Gemini)
  VERTEX_REGION=...               (default: us-central1)
  GEMINI_RESEARCH_MODEL=...       (default: gemini-1.5-pro)

Usage:
  from research_backend.llm_wrapper import call_llm
  resp = call_llm("openai", messages=..., timeout=120)
  text = resp["text"]; model = resp["model"]; rid = resp["response_id"]

SDK exceptions propagate unchanged so providers can classify them.
"""

import os
from typing import Dict, Any, Optional, List

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "").strip()
GOOGLE_CLOUD_PROJECT = os.getenv("GOOGLE_CLOUD_PROJECT", "").strip()
VERTEX_REGION = os.getenv("VERTEX_REGION", "us-central1").strip()

DEFAULT_MODELS = {
    "openai": os.getenv("OPENAI_RESEARCH_MODEL", "gpt-4-turbo-preview"),
    "gemini": os.getenv("GEMINI_RESEARCH_MODEL", "gemini-1.5-pro"),
}


# ---------------------------------------------------------------------------
# OpenAI backend
# ---------------------------------------------------------------------------
def _real_openai_chat_completion(messages: List[Dict[str, str]], model: str,
                                 max_tokens: int = 4000, temperature: float = 0.7,
                                 timeout: float = 120, json_mode: bool = False) -> Dict[str, Any]:
    from openai import OpenAI

    if not OPENAI_API_KEY:
        raise RuntimeError("OPENAI_API_KEY environment variable is required")
    client = OpenAI(api_key=OPENAI_API_KEY, timeout=timeout, max_retries=0)
    kwargs: Dict[str, Any] = {
        "model": model,
        "messages": messages,
        "max_tokens": max_tokens,
        "temperature": temperature,
    }
    if json_mode:
        kwargs["response_format"] = {"type": "json_object"}
    resp = client.chat.completions.create(**kwargs)
    choices = getattr(resp, "choices", [])
    text = choices[0].message.content if choices else ""
    rid = getattr(resp, "id", None)
    return {"text": text or "", "model": model, "response_id": rid, "raw": resp}


# ---------------------------------------------------------------------------
# Gemini backend (Vertex AI via LangChain)
# ---------------------------------------------------------------------------
def _real_gemini_chat(messages: List[Dict[str, str]], model: str,
                      max_tokens: int = 4000, temperature: float = 0.7,
                      timeout: float = 120, json_mode: bool = False) -> Dict[str, Any]:
    from langchain_google_vertexai import ChatVertexAI
    from langchain_core.messages import HumanMessage, SystemMessage, AIMessage

    if not GOOGLE_CLOUD_PROJECT:
        raise RuntimeError("GOOGLE_CLOUD_PROJECT environment variable is required")
    llm = ChatVertexAI(
        model_name=model,
        project=GOOGLE_CLOUD_PROJECT,
        location=VERTEX_REGION,
        temperature=temperature,
        max_output_tokens=max_tokens,
        request_timeout=timeout,
        max_retries=0,
    )
    lc_messages = []
    for m in messages:
        if m["role"] == "system":
            lc_messages.append(SystemMessage(content=m["content"]))
        elif m["role"] == "assistant":
            lc_messages.append(AIMessage(content=m["content"]))
        else:
            lc_messages.append(HumanMessage(content=m["content"]))

    resp = llm.invoke(lc_messages)
    content = resp.content
    if isinstance(content, list):
        content = "".join(part if isinstance(part, str) else part.get("text", "") for part in content)
    return {"text": content or "", "model": model, "response_id": getattr(resp, "id", None), "raw": resp}


_BACKENDS = {
    "openai": _real_openai_chat_completion,
    "gemini": _real_gemini_chat,
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def call_llm(backend: str, messages: List[Dict[str, str]], model: Optional[str] = None,
             max_tokens: int = 4000, temperature: float = 0.7,
             timeout: float = 120, json_mode: bool = False) -> Dict[str, Any]:
    """
    backend: "openai" | "gemini"
    messages: list of {role, content}
    model: override model string
    Returns: dict with keys 'text','model','response_id','raw'
    """
    if backend not in _BACKENDS:
        raise ValueError(f"Unknown LLM backend: {backend}")
    model = model or DEFAULT_MODELS[backend]
    return _BACKENDS[backend](messages, model=model, max_tokens=max_tokens,
                              temperature=temperature, timeout=timeout, json_mode=json_mode)
