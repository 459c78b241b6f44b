# tests/test_orchestrator.py
"""
End-to-end lifecycle tests for ResearchOrchestrator with fake providers and a
disposable SQLite DB. No network calls are made.
"""
import os
import time
import threading
import pytest

from research_backend import db as dbmod
from research_backend.delivery import MockDeliveryService, DeliveryError
from research_backend.errors import (
    ValidationError, SessionNotFoundError, RefinementNotFoundError, UsageLimitExceeded,
    InvalidSessionStateError, ReportNotReadyError,
)
from research_backend.orchestrator import ResearchOrchestrator, build_refined_prompt, PLACEHOLDER_RESULT
from research_backend.providers.base import ResearchProvider, ProviderError, ProviderErrorReason
from research_backend.providers.gemini_provider import MockGeminiResearchProvider
from research_backend.providers.openai_provider import MockOpenAIResearchProvider, MOCK_QUESTIONS
from research_backend.report import MarkdownReportGenerator
from research_backend.schemas import SessionStatus, DeepResearchResponse, Provider
from research_backend.usage_guard import ApiUsageGuard, UsageLimits

S = SessionStatus

TEST_DB_URL = "sqlite:///./test_orchestrator.db"
TEST_DB_FILE = "./test_orchestrator.db"

TITLE = "Battery recycling"
PROMPT = "What is the state of lithium battery recycling in Europe?"


class RecordingOpenAI(MockOpenAIResearchProvider):
    """Mock OpenAI that keeps every prompt it was asked."""

    def __init__(self, delay: float = 0.0):
        self.prompts = []
        self.delay = delay
        self._lock = threading.Lock()

    def research(self, prompt):
        with self._lock:
            self.prompts.append(prompt)
        if self.delay and "[REFINED]" in prompt:
            time.sleep(self.delay)
        return super().research(prompt)


class DirectAnswerProvider(ResearchProvider):
    name = "openai"
    label = "OpenAI"

    def research(self, prompt):
        return DeepResearchResponse(requires_refinement=False, result=f"Direct findings for {prompt}")


class FailingProvider(ResearchProvider):
    def __init__(self, name, label, error=None):
        self.name = name
        self.label = label
        self.error = error or ProviderError(f"{label} rate limit exceeded. Please try again in a few minutes.",
                                            ProviderErrorReason.RATE_LIMITED, name)
        self.calls = 0

    def research(self, prompt):
        self.calls += 1
        raise self.error


class SlowProvider(ResearchProvider):
    def __init__(self, name, label, delay):
        self.name = name
        self.label = label
        self.delay = delay

    def research(self, prompt):
        time.sleep(self.delay)
        return DeepResearchResponse(result="late")


@pytest.fixture(autouse=True)
def fresh_db():
    if os.path.exists(TEST_DB_FILE):
        os.remove(TEST_DB_FILE)
    dbmod.reconfigure(TEST_DB_URL)
    dbmod.init_db()
    yield
    dbmod.engine.dispose()
    if os.path.exists(TEST_DB_FILE):
        os.remove(TEST_DB_FILE)


@pytest.fixture
def delivery():
    return MockDeliveryService()


def make_orchestrator(openai=None, gemini=None, delivery=None, limits=None, timeout=5.0):
    return ResearchOrchestrator(
        usage_guard=ApiUsageGuard(limits or UsageLimits()),
        openai_provider=openai or MockOpenAIResearchProvider(),
        gemini_provider=gemini or MockGeminiResearchProvider(),
        report_generator=MarkdownReportGenerator(),
        delivery_service=delivery if delivery is not None else MockDeliveryService(),
        provider_timeout=timeout,
    )


def answer_all(orch, session, user_id="alice"):
    for ref in session.refinements:
        session = orch.submit_refinement_answer(session.id, user_id, ref.question_index, f"Answer {ref.question_index}")
    return session


def assert_completed_invariants(session):
    assert session.status == S.COMPLETED
    assert session.openai_result
    assert session.gemini_result
    assert session.refined_prompt
    for ref in session.refinements:
        assert ref.answer
        assert ref.answered_at is not None


# ---------------------------------------------------------------------------
# Happy paths
# ---------------------------------------------------------------------------
def test_refinement_flow_runs_research_after_last_answer(delivery):
    dbmod.upsert_user("alice", "alice@example.com")
    openai = RecordingOpenAI()
    orch = make_orchestrator(openai=openai, delivery=delivery)

    session = orch.start_session("alice", TITLE, PROMPT)
    assert session.status == S.AWAITING_REFINEMENTS
    assert [r.question_index for r in session.refinements] == [0, 1, 2]
    assert [r.question for r in session.refinements] == MOCK_QUESTIONS
    assert all(r.answer is None for r in session.refinements)

    session = orch.submit_refinement_answer(session.id, "alice", 0, "Policy and economics")
    assert session.status == S.REFINEMENTS_IN_PROGRESS
    session = orch.submit_refinement_answer(session.id, "alice", 1, "Investors")
    assert session.status == S.REFINEMENTS_IN_PROGRESS

    session = orch.submit_refinement_answer(session.id, "alice", 2, "A detailed overview")
    assert_completed_invariants(session)
    assert session.refined_prompt == build_refined_prompt(PROMPT, session.refinements)
    assert session.refined_prompt.startswith(PROMPT + "\n\n[REFINED]\n\n")
    assert "Q: What is your target audience or use case?\nA: Investors" in session.refined_prompt

    # OpenAI saw the raw prompt first, then the refined one
    assert openai.prompts == [PROMPT, session.refined_prompt]

    assert session.report_url == f"/api/sessions/{session.id}/report"
    assert session.report_generated_at is not None
    assert session.email_sent_at is not None
    assert delivery.sent[0]["address"] == "alice@example.com"
    assert delivery.sent[0]["filename"] == "battery-recycling Research Report.md"


def test_direct_result_skips_refinements():
    orch = make_orchestrator(openai=DirectAnswerProvider())
    session = orch.start_session("alice", TITLE, PROMPT)
    assert_completed_invariants(session)
    assert session.refinements == []
    assert session.refined_prompt == PROMPT
    assert session.openai_result == f"Direct findings for {PROMPT}"


def test_usage_is_recorded_for_each_successful_call():
    orch = make_orchestrator()
    session = orch.start_session("alice", TITLE, PROMPT)
    answer_all(orch, session)
    summary = orch.usage_guard.get_user_usage("alice")
    assert summary.openai.today == 2
    assert summary.gemini.today == 1


def test_refined_prompt_is_deterministic():
    orch = make_orchestrator()
    first = answer_all(orch, orch.start_session("alice", TITLE, PROMPT))
    second = answer_all(orch, orch.start_session("alice", "Another title", PROMPT))
    assert first.refined_prompt == second.refined_prompt


def test_answers_may_arrive_out_of_order():
    orch = make_orchestrator()
    session = orch.start_session("alice", TITLE, PROMPT)
    for idx in (2, 0, 1):
        session = orch.submit_refinement_answer(session.id, "alice", idx, f"Answer {idx}")
    assert_completed_invariants(session)
    assert session.refined_prompt.index("A: Answer 0") < session.refined_prompt.index("A: Answer 2")


def test_reanswering_overwrites_previous_answer():
    orch = make_orchestrator()
    session = orch.start_session("alice", TITLE, PROMPT)
    orch.submit_refinement_answer(session.id, "alice", 0, "first")
    session = orch.submit_refinement_answer(session.id, "alice", 0, "second")
    assert session.status == S.REFINEMENTS_IN_PROGRESS
    assert session.refinements[0].answer == "second"


def test_answers_are_trimmed():
    orch = make_orchestrator()
    session = orch.start_session("alice", f"  {TITLE}  ", PROMPT)
    assert session.title == TITLE
    session = orch.submit_refinement_answer(session.id, "alice", 0, "  padded  ")
    assert session.refinements[0].answer == "padded"


# ---------------------------------------------------------------------------
# Partial and total failure
# ---------------------------------------------------------------------------
def test_one_failed_branch_gets_placeholder():
    gemini = FailingProvider("gemini", "Gemini")
    orch = make_orchestrator(gemini=gemini)
    session = answer_all(orch, orch.start_session("alice", TITLE, PROMPT))

    assert session.status == S.COMPLETED
    assert session.gemini_result == PLACEHOLDER_RESULT
    assert session.openai_result != PLACEHOLDER_RESULT
    assert gemini.calls == 1
    # only the successful call is metered
    assert orch.usage_guard.get_user_usage("alice").gemini.today == 0


def test_both_branches_failing_still_completes_with_placeholders():
    class RefineThenFail(MockOpenAIResearchProvider):
        def research(self, prompt):
            if "[REFINED]" in prompt:
                raise RuntimeError("connection reset")
            return super().research(prompt)

    orch = make_orchestrator(openai=RefineThenFail(), gemini=FailingProvider("gemini", "Gemini"))
    session = answer_all(orch, orch.start_session("alice", TITLE, PROMPT))
    assert session.status == S.COMPLETED
    assert session.openai_result == PLACEHOLDER_RESULT
    assert session.gemini_result == PLACEHOLDER_RESULT


def test_start_session_provider_error_marks_failed():
    orch = make_orchestrator(openai=FailingProvider("openai", "OpenAI"))
    with pytest.raises(ProviderError) as exc:
        orch.start_session("alice", TITLE, PROMPT)
    assert exc.value.reason == ProviderErrorReason.RATE_LIMITED

    [session] = orch.list_sessions("alice")
    assert session.status == S.FAILED
    assert session.error_message == "OpenAI rate limit exceeded. Please try again in a few minutes."
    assert session.refinements == []


def test_empty_openai_response_marks_failed():
    class Empty(ResearchProvider):
        name, label = "openai", "OpenAI"

        def research(self, prompt):
            return DeepResearchResponse(requires_refinement=False, result=None)

    orch = make_orchestrator(openai=Empty())
    with pytest.raises(ProviderError):
        orch.start_session("alice", TITLE, PROMPT)
    assert orch.list_sessions("alice")[0].status == S.FAILED


def test_start_session_timeout_marks_failed():
    orch = make_orchestrator(openai=SlowProvider("openai", "OpenAI", delay=1.0), timeout=0.1)
    with pytest.raises(ProviderError) as exc:
        orch.start_session("alice", TITLE, PROMPT)
    assert "timed out" in exc.value.message
    assert orch.list_sessions("alice")[0].status == S.FAILED


def test_fan_out_timeout_becomes_placeholder():
    orch = make_orchestrator(gemini=SlowProvider("gemini", "Gemini", delay=1.0), timeout=0.3)
    session = answer_all(orch, orch.start_session("alice", TITLE, PROMPT))
    assert session.status == S.COMPLETED
    assert session.gemini_result == PLACEHOLDER_RESULT
    assert session.openai_result != PLACEHOLDER_RESULT


# ---------------------------------------------------------------------------
# Usage limits
# ---------------------------------------------------------------------------
def test_usage_denied_at_start_never_calls_provider():
    openai = RecordingOpenAI()
    orch = make_orchestrator(openai=openai, limits=UsageLimits(openai_daily=0))
    with pytest.raises(UsageLimitExceeded) as exc:
        orch.start_session("alice", TITLE, PROMPT)
    assert "Daily OpenAI limit reached" in exc.value.message
    assert openai.prompts == []
    session = orch.list_sessions("alice")[0]
    assert session.status == S.FAILED
    assert session.error_message == exc.value.message


def test_usage_denied_before_research_fails_session():
    gemini = FailingProvider("gemini", "Gemini")
    orch = make_orchestrator(gemini=gemini, limits=UsageLimits(openai_daily=1))
    session = orch.start_session("alice", TITLE, PROMPT)

    with pytest.raises(UsageLimitExceeded):
        answer_all(orch, session)

    failed = orch.get_session(session.id, "alice")
    assert failed.status == S.FAILED
    assert "Daily OpenAI limit reached (1 requests)" in failed.error_message
    assert failed.refined_prompt
    assert gemini.calls == 0


# ---------------------------------------------------------------------------
# Rejections that leave state untouched
# ---------------------------------------------------------------------------
@pytest.mark.parametrize("title,prompt", [
    ("", PROMPT),
    ("   ", PROMPT),
    ("x" * 201, PROMPT),
    (TITLE, ""),
    (TITLE, "p" * 5001),
])
def test_invalid_input_creates_nothing(title, prompt):
    orch = make_orchestrator()
    with pytest.raises(ValidationError):
        orch.start_session("alice", title, prompt)
    assert orch.list_sessions("alice") == []


def test_blank_answer_rejected():
    orch = make_orchestrator()
    session = orch.start_session("alice", TITLE, PROMPT)
    with pytest.raises(ValidationError):
        orch.submit_refinement_answer(session.id, "alice", 0, "   ")
    assert orch.get_session(session.id, "alice").status == S.AWAITING_REFINEMENTS


def test_wrong_owner_looks_like_missing_session():
    orch = make_orchestrator()
    session = orch.start_session("alice", TITLE, PROMPT)
    with pytest.raises(SessionNotFoundError):
        orch.get_session(session.id, "mallory")
    with pytest.raises(SessionNotFoundError):
        orch.submit_refinement_answer(session.id, "mallory", 0, "sneaky")
    with pytest.raises(SessionNotFoundError):
        orch.delete_session(session.id, "mallory")
    assert orch.get_session(session.id, "alice").refinements[0].answer is None


def test_unknown_question_index():
    orch = make_orchestrator()
    session = orch.start_session("alice", TITLE, PROMPT)
    with pytest.raises(RefinementNotFoundError):
        orch.submit_refinement_answer(session.id, "alice", 7, "nothing here")
    assert orch.get_session(session.id, "alice").status == S.AWAITING_REFINEMENTS


def test_answer_after_completion_rejected():
    orch = make_orchestrator()
    session = answer_all(orch, orch.start_session("alice", TITLE, PROMPT))
    with pytest.raises(InvalidSessionStateError) as exc:
        orch.submit_refinement_answer(session.id, "alice", 0, "too late")
    assert "already finished" in exc.value.message
    assert orch.get_session(session.id, "alice").refinements[0].answer == "Answer 0"


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------
def test_concurrent_final_answers_run_research_once():
    openai = RecordingOpenAI(delay=0.2)
    orch = make_orchestrator(openai=openai)
    session = orch.start_session("alice", TITLE, PROMPT)
    orch.submit_refinement_answer(session.id, "alice", 0, "first")

    errors = []

    def submit(idx):
        try:
            orch.submit_refinement_answer(session.id, "alice", idx, f"answer {idx}")
        except Exception as e:  # pragma: no cover - surfaced by the assert below
            errors.append(e)

    threads = [threading.Thread(target=submit, args=(i,)) for i in (1, 2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    final = orch.get_session(session.id, "alice")
    assert_completed_invariants(final)
    refined_calls = [p for p in openai.prompts if "[REFINED]" in p]
    assert len(refined_calls) == 1


# ---------------------------------------------------------------------------
# Reports, delivery, reads
# ---------------------------------------------------------------------------
def test_delivery_failure_does_not_fail_session():
    dbmod.upsert_user("alice", "alice@example.com")
    delivery = MockDeliveryService(fail_with=DeliveryError("SMTP connection refused"))
    orch = make_orchestrator(delivery=delivery)
    session = answer_all(orch, orch.start_session("alice", TITLE, PROMPT))
    assert_completed_invariants(session)
    assert session.report_url is not None
    assert session.email_sent_at is None


def test_report_generation_failure_is_not_fatal(monkeypatch):
    orch = make_orchestrator()

    def broken(*args, **kwargs):
        raise RuntimeError("renderer crashed")

    monkeypatch.setattr(orch.report_generator, "build", broken)
    session = answer_all(orch, orch.start_session("alice", TITLE, PROMPT))
    assert session.status == S.COMPLETED
    assert session.report_url is None


def test_no_email_means_no_delivery(delivery):
    orch = make_orchestrator(delivery=delivery)
    session = answer_all(orch, orch.start_session("alice", TITLE, PROMPT))
    assert session.report_url is not None
    assert session.email_sent_at is None
    assert delivery.sent == []


def test_report_requires_both_results():
    orch = make_orchestrator()
    session = orch.start_session("alice", TITLE, PROMPT)
    with pytest.raises(ReportNotReadyError):
        orch.get_report(session.id, "alice")

    answer_all(orch, session)
    artifact = orch.get_report(session.id, "alice")
    body = artifact.content.decode("utf-8")
    assert artifact.filename == "battery-recycling Research Report.md"
    assert "## OpenAI Deep Research" in body
    assert "## Gemini Research" in body
    assert "[REFINED]" in body


def test_list_sessions_scoped_to_owner():
    orch = make_orchestrator()
    orch.start_session("alice", "One", PROMPT)
    orch.start_session("alice", "Two", PROMPT)
    orch.start_session("bob", "Three", PROMPT)
    assert {s.title for s in orch.list_sessions("alice")} == {"One", "Two"}
    assert len(orch.list_sessions("alice", limit=1)) == 1
    assert [s.title for s in orch.list_sessions("bob")] == ["Three"]


def test_delete_session_removes_refinements():
    orch = make_orchestrator()
    session = orch.start_session("alice", TITLE, PROMPT)
    orch.delete_session(session.id, "alice")
    with pytest.raises(SessionNotFoundError):
        orch.get_session(session.id, "alice")
    with pytest.raises(SessionNotFoundError):
        orch.delete_session(session.id, "alice")


def test_build_refined_prompt_format():
    from research_backend.schemas import RefinementOut

    refs = [
        RefinementOut(id="b", question="Which region?", answer="Europe", question_index=1),
        RefinementOut(id="a", question="Which years?", answer="2020-2024", question_index=0),
    ]
    assert build_refined_prompt("Base prompt", refs) == (
        "Base prompt\n\n[REFINED]\n\nAdditional context based on clarifications:\n"
        "Q: Which years?\nA: 2020-2024\n\n"
        "Q: Which region?\nA: Europe"
    )


def test_provider_keys():
    orch = make_orchestrator()
    assert set(orch.providers) == {Provider.OPENAI, Provider.GEMINI}


def test_status_passes_through_every_forward_state(monkeypatch):
    from research_backend import monitoring

    seen = []
    original = monitoring.inc_transition

    def spy(to_status):
        seen.append(to_status)
        original(to_status)

    monkeypatch.setattr(monitoring, "inc_transition", spy)
    orch = make_orchestrator()
    session = orch.start_session("alice", TITLE, PROMPT)
    assert session.refined_prompt is None
    for ref in session.refinements:
        session = orch.submit_refinement_answer(session.id, "alice", ref.question_index, "ok")
        if session.status == S.REFINEMENTS_IN_PROGRESS:
            assert session.refined_prompt is None

    assert seen == [
        "AWAITING_REFINEMENTS",
        "REFINEMENTS_IN_PROGRESS",
        "REFINEMENTS_COMPLETE",
        "RUNNING_RESEARCH",
        "COMPLETED",
    ]
    assert session.report_generated_at is not None


def test_failed_session_carries_error_and_never_moves_again():
    orch = make_orchestrator(openai=FailingProvider("openai", "OpenAI"))
    with pytest.raises(ProviderError):
        orch.start_session("alice", TITLE, PROMPT)
    session = orch.list_sessions("alice")[0]
    assert session.status == S.FAILED
    assert session.refined_prompt is None
    with pytest.raises(InvalidSessionStateError):
        orch.submit_refinement_answer(session.id, "alice", 0, "anything")


def test_late_failure_does_not_overwrite_completed_session(monkeypatch):
    from research_backend import monitoring

    orch = make_orchestrator()
    session = answer_all(orch, orch.start_session("alice", TITLE, PROMPT))
    assert session.status == S.COMPLETED

    seen = []
    monkeypatch.setattr(monitoring, "inc_transition", seen.append)
    orch._fail(session.id, "arrived too late")

    after = orch.get_session(session.id, "alice")
    assert after.status == S.COMPLETED
    assert after.error_message is None
    assert seen == []


def test_first_failure_message_is_kept():
    orch = make_orchestrator(openai=FailingProvider("openai", "OpenAI"))
    with pytest.raises(ProviderError):
        orch.start_session("alice", TITLE, PROMPT)
    session = orch.list_sessions("alice")[0]

    orch._fail(session.id, "a second, unrelated error")
    assert orch.get_session(session.id, "alice").error_message == (
        "OpenAI rate limit exceeded. Please try again in a few minutes."
    )
