# research_backend/schemas.py
from enum import Enum
from typing import List, Optional
from datetime import datetime, date

from pydantic import BaseModel, Field, field_validator, ConfigDict

# Separates the initial prompt from the clarification answers in a refined prompt.
# Providers key on it to tell a refined prompt from a first contact.
REFINED_MARKER = "[REFINED]"


class SessionStatus(str, Enum):
    CREATED = "CREATED"
    AWAITING_REFINEMENTS = "AWAITING_REFINEMENTS"
    REFINEMENTS_IN_PROGRESS = "REFINEMENTS_IN_PROGRESS"
    REFINEMENTS_COMPLETE = "REFINEMENTS_COMPLETE"
    RUNNING_RESEARCH = "RUNNING_RESEARCH"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class Provider(str, Enum):
    OPENAI = "openai"
    GEMINI = "gemini"

    @property
    def label(self) -> str:
        return {"openai": "OpenAI", "gemini": "Gemini"}[self.value]


class RefinementQuestion(BaseModel):
    question: str
    index: int = Field(ge=0)


class DeepResearchResponse(BaseModel):
    requires_refinement: bool = False
    refinement_questions: List[RefinementQuestion] = Field(default_factory=list)
    result: Optional[str] = None


class RefinementOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    question: str
    answer: Optional[str] = None
    question_index: int
    answered_at: Optional[datetime] = None


class SessionOut(BaseModel):
    """Read-only snapshot of a research session, used by the API and the state machine."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    title: str
    initial_prompt: str
    refined_prompt: Optional[str] = None
    status: SessionStatus
    openai_result: Optional[str] = None
    gemini_result: Optional[str] = None
    report_url: Optional[str] = None
    report_generated_at: Optional[datetime] = None
    email_sent_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    refinements: List[RefinementOut] = Field(default_factory=list)


class UsageDecision(BaseModel):
    allowed: bool
    reason: Optional[str] = None


class ProviderUsage(BaseModel):
    today: int
    month: int
    daily_limit: int
    monthly_limit: int


class UsageSummary(BaseModel):
    openai: ProviderUsage
    gemini: ProviderUsage
    last_reset_date: Optional[date] = None


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------
class CreateSessionRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    initial_prompt: str = Field(min_length=1, max_length=5000)

    @field_validator("title", "initial_prompt")
    @classmethod
    def not_blank(cls, v):
        if not v.strip():
            raise ValueError("must not be blank")
        return v.strip()


class SubmitRefinementRequest(BaseModel):
    question_index: int = Field(ge=0)
    answer: str = Field(min_length=1, max_length=2000)

    @field_validator("answer")
    @classmethod
    def answer_not_blank(cls, v):
        if not v.strip():
            raise ValueError("answer must not be blank")
        return v.strip()
