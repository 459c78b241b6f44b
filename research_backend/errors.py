# research_backend/errors.py
from typing import Optional

# Error codes surfaced in API error bodies
E_VALIDATION = "E_VALIDATION"
E_NOT_FOUND = "E_NOT_FOUND"
E_USAGE_LIMIT = "E_USAGE_LIMIT"
E_PROVIDER = "E_PROVIDER"
E_INVALID_STATE = "E_INVALID_STATE"
E_REPORT_NOT_READY = "E_REPORT_NOT_READY"
E_INTERNAL = "E_INTERNAL"


class ResearchError(Exception):
    """Base for errors raised by the research core. `message` is safe to show users."""

    error_code = E_INTERNAL

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ResearchError):
    error_code = E_VALIDATION


class SessionNotFoundError(ResearchError):
    error_code = E_NOT_FOUND

    def __init__(self, message: str = "Session not found or access denied"):
        super().__init__(message)


class RefinementNotFoundError(ResearchError):
    error_code = E_NOT_FOUND

    def __init__(self, message: str = "Refinement question not found"):
        super().__init__(message)


class UsageLimitExceeded(ResearchError):
    error_code = E_USAGE_LIMIT


class InvalidSessionStateError(ResearchError):
    error_code = E_INVALID_STATE


class InvalidTransitionError(InvalidSessionStateError):
    def __init__(self, current: str, target: str, session_id: Optional[str] = None):
        super().__init__(f"Illegal status transition {current} -> {target}")
        self.current = current
        self.target = target
        self.session_id = session_id


class ReportNotReadyError(ResearchError):
    error_code = E_REPORT_NOT_READY

    def __init__(self, message: str = "Research not completed yet"):
        super().__init__(message)
