# research_backend/models.py
import uuid
import datetime

from sqlalchemy import Column, Integer, String, DateTime, Date, Text, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship

from research_backend.db import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


class User(Base):
    __tablename__ = "users"

    id = Column(String(128), primary_key=True)
    email = Column(String(320), nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)


class ResearchSession(Base):
    __tablename__ = "research_sessions"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(128), index=True, nullable=False)
    title = Column(String(200), nullable=False)
    initial_prompt = Column(Text, nullable=False)
    refined_prompt = Column(Text, nullable=True)
    status = Column(String(32), nullable=False)
    openai_result = Column(Text, nullable=True)
    gemini_result = Column(Text, nullable=True)
    report_url = Column(String(256), nullable=True)
    report_generated_at = Column(DateTime, nullable=True)
    email_sent_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    refinements = relationship(
        "Refinement",
        back_populates="session",
        order_by="Refinement.question_index",
        cascade="all, delete-orphan",
    )


class Refinement(Base):
    __tablename__ = "refinements"
    __table_args__ = (UniqueConstraint("session_id", "question_index", name="uq_refinement_index"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    session_id = Column(String(36), ForeignKey("research_sessions.id", ondelete="CASCADE"), index=True, nullable=False)
    question = Column(Text, nullable=False)
    answer = Column(Text, nullable=True)
    question_index = Column(Integer, nullable=False)
    answered_at = Column(DateTime, nullable=True)

    session = relationship("ResearchSession", back_populates="refinements")


class ApiUsage(Base):
    __tablename__ = "api_usage"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(128), unique=True, index=True, nullable=False)
    openai_requests_today = Column(Integer, default=0, nullable=False)
    openai_requests_month = Column(Integer, default=0, nullable=False)
    gemini_requests_today = Column(Integer, default=0, nullable=False)
    gemini_requests_month = Column(Integer, default=0, nullable=False)
    last_reset_date = Column(Date, nullable=False)
