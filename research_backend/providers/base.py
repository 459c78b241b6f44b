# research_backend/providers/base.py
from enum import Enum
from typing import Optional

from research_backend.schemas import DeepResearchResponse


class ProviderErrorReason(str, Enum):
    RATE_LIMITED = "rate_limited"
    INVALID_CREDENTIALS = "invalid_credentials"
    QUOTA_EXHAUSTED = "quota_exhausted"
    UNKNOWN = "unknown"


class ProviderError(Exception):
    """Upstream research call failed. `message` is user-facing, `reason` is for code."""

    def __init__(self, message: str, reason: ProviderErrorReason = ProviderErrorReason.UNKNOWN,
                 provider: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.reason = reason
        self.provider = provider


class ResearchProvider:
    """
    One upstream research service. Implementations are picked at wiring time
    (real vs mock) and handed to the orchestrator.
    """

    name = "provider"
    label = "Provider"

    def research(self, prompt: str) -> DeepResearchResponse:
        raise NotImplementedError


def _status_of(exc: Exception) -> Optional[int]:
    for attr in ("status_code", "status", "code"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def classify_provider_error(label: str, exc: Exception) -> ProviderError:
    """
    Map an SDK/transport exception to a ProviderError with a readable message.
    403 means billing trouble for OpenAI but bad credentials for Gemini.
    """
    if isinstance(exc, ProviderError):
        return exc

    status = _status_of(exc)
    message = str(exc) or exc.__class__.__name__
    lowered = message.lower()
    code = getattr(exc, "code", None)
    provider = label.lower()

    if status == 429 and "quota" not in lowered and code != "insufficient_quota":
        return ProviderError(
            f"{label} rate limit exceeded. Please try again in a few minutes.",
            ProviderErrorReason.RATE_LIMITED, provider,
        )
    if status == 401 or (status == 403 and provider == "gemini"):
        return ProviderError(
            f"{label} API key is invalid. Please check your configuration.",
            ProviderErrorReason.INVALID_CREDENTIALS, provider,
        )
    if status in (402, 403) or code == "insufficient_quota":
        return ProviderError(
            f"{label} account has insufficient credits or quota exceeded. Please check your {label} account.",
            ProviderErrorReason.QUOTA_EXHAUSTED, provider,
        )
    if "quota" in lowered or "billing" in lowered or "resource_exhausted" in lowered:
        return ProviderError(
            f"{label} account billing or quota issue. Please check your {label} billing settings.",
            ProviderErrorReason.QUOTA_EXHAUSTED, provider,
        )
    return ProviderError(f"{label} API error: {message}", ProviderErrorReason.UNKNOWN, provider)
