# research_backend/orchestrator.py
import os
import time
import logging
import datetime
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Dict, Iterable, List, Optional

from pydantic import ValidationError as PydanticValidationError

from research_backend import db as dbmod
from research_backend import monitoring
from research_backend import state_machine
from research_backend.delivery import DeliveryService
from research_backend.errors import (
    ValidationError, SessionNotFoundError, RefinementNotFoundError, UsageLimitExceeded,
    InvalidSessionStateError, InvalidTransitionError, ReportNotReadyError,
)
from research_backend.providers.base import ResearchProvider, ProviderError, ProviderErrorReason
from research_backend.report import ReportGenerator, ReportArtifact
from research_backend.schemas import (
    SessionOut, SessionStatus, Provider, RefinementOut, DeepResearchResponse,
    CreateSessionRequest, SubmitRefinementRequest, REFINED_MARKER,
)
from research_backend.usage_guard import ApiUsageGuard

logger = logging.getLogger("research-backend.orchestrator")

S = SessionStatus

PLACEHOLDER_RESULT = "Research failed"
DEFAULT_PROVIDER_TIMEOUT = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "600"))
REFINEMENT_STATES = (S.AWAITING_REFINEMENTS, S.REFINEMENTS_IN_PROGRESS)


def build_refined_prompt(initial_prompt: str, refinements: Iterable[RefinementOut]) -> str:
    """
    Initial prompt, the [REFINED] marker, then every answered question as a
    Q/A pair in question order. Providers treat the result as opaque text.
    """
    answered = sorted((r for r in refinements if r.answer), key=lambda r: r.question_index)
    answers = "\n\n".join(f"Q: {r.question}\nA: {r.answer}" for r in answered)
    return f"{initial_prompt}\n\n{REFINED_MARKER}\n\nAdditional context based on clarifications:\n{answers}"


def _error_message(exc: Exception) -> str:
    return getattr(exc, "message", None) or str(exc) or exc.__class__.__name__


def _validation_message(exc: PydanticValidationError) -> str:
    first = exc.errors()[0]
    field = ".".join(str(p) for p in first.get("loc", ()))
    return f"{field}: {first.get('msg')}" if field else first.get("msg", "Invalid input")


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


class ResearchOrchestrator:
    """
    Drives a research session through its lifecycle. The only writer of
    `status`; every status write is checked against the state machine.
    """

    def __init__(
        self,
        usage_guard: ApiUsageGuard,
        openai_provider: ResearchProvider,
        gemini_provider: ResearchProvider,
        report_generator: ReportGenerator,
        delivery_service: DeliveryService,
        provider_timeout: float = DEFAULT_PROVIDER_TIMEOUT,
    ):
        self.usage_guard = usage_guard
        self.providers: Dict[Provider, ResearchProvider] = {
            Provider.OPENAI: openai_provider,
            Provider.GEMINI: gemini_provider,
        }
        self.report_generator = report_generator
        self.delivery_service = delivery_service
        self.provider_timeout = provider_timeout

    # ------------------------------------------------------------------
    # Status writes
    # ------------------------------------------------------------------
    def _transition(self, session_id: str, target: SessionStatus, **fields) -> SessionOut:
        current = dbmod.get_session(session_id)
        if current is None:
            raise SessionNotFoundError()
        candidate = current.model_copy(update=fields)
        if not state_machine.can_transition(current.status, target, candidate):
            raise InvalidTransitionError(current.status.value, target.value, session_id)
        updated = dbmod.update_session(session_id, status=target, **fields)
        if target != current.status:
            monitoring.inc_transition(target.value)
            logger.info("Session status changed", extra={
                "session_id": session_id, "from_status": current.status.value, "to_status": target.value,
            })
        return updated

    def _fail(self, session_id: str, message: str) -> None:
        try:
            current = dbmod.get_session(session_id)
            if current is not None and state_machine.is_terminal(current.status):
                # the first recorded outcome stands
                logger.warning("Session already finished; not marking FAILED", extra={
                    "session_id": session_id, "status": current.status.value, "error": message,
                })
                return
            self._transition(session_id, S.FAILED, error_message=message)
        except Exception:
            # keep the original error as the one the caller sees
            logger.exception("Could not persist FAILED status", extra={"session_id": session_id})

    # ------------------------------------------------------------------
    # Provider calls
    # ------------------------------------------------------------------
    def _call_provider(self, provider: ResearchProvider, prompt: str) -> DeepResearchResponse:
        start = time.time()
        try:
            resp = provider.research(prompt)
        except Exception:
            monitoring.observe_provider_call(start, provider.name, "error")
            raise
        monitoring.observe_provider_call(start, provider.name, "success")
        return resp

    def _research_text(self, provider: ResearchProvider, prompt: str) -> str:
        resp = self._call_provider(provider, prompt)
        if not resp.result:
            raise ProviderError(f"{provider.label} returned no research result",
                                ProviderErrorReason.UNKNOWN, provider.name)
        return resp.result

    def _timeout_error(self, provider: ResearchProvider) -> ProviderError:
        monitoring.observe_provider_call(time.time(), provider.name, "timeout")
        return ProviderError(
            f"{provider.label} request timed out after {self.provider_timeout:g} seconds",
            ProviderErrorReason.UNKNOWN, provider.name,
        )

    def _call_with_timeout(self, provider: ResearchProvider, prompt: str) -> DeepResearchResponse:
        executor = ThreadPoolExecutor(max_workers=1)
        try:
            future = executor.submit(self._call_provider, provider, prompt)
            try:
                return future.result(timeout=self.provider_timeout)
            except FutureTimeout:
                raise self._timeout_error(provider) from None
        finally:
            # a hung call keeps its worker thread; we just stop waiting for it
            executor.shutdown(wait=False)

    def _fan_out(self, prompt: str) -> Dict[Provider, Optional[str]]:
        """
        Run both providers concurrently against one shared deadline. Each branch
        yields its text or None; one branch failing never touches the other.
        """
        deadline = time.time() + self.provider_timeout
        outcomes: Dict[Provider, Optional[str]] = {}
        executor = ThreadPoolExecutor(max_workers=len(self.providers))
        try:
            futures = {
                key: executor.submit(self._research_text, provider, prompt)
                for key, provider in self.providers.items()
            }
            for key, future in futures.items():
                provider = self.providers[key]
                try:
                    outcomes[key] = future.result(timeout=max(0.0, deadline - time.time()))
                except FutureTimeout:
                    err = self._timeout_error(provider)
                    logger.warning("Research provider failed", extra={"provider": key.value, "error": err.message})
                    outcomes[key] = None
                except Exception as e:
                    logger.warning("Research provider failed", extra={"provider": key.value, "error": _error_message(e)})
                    outcomes[key] = None
        finally:
            executor.shutdown(wait=False)
        return outcomes

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start_session(self, user_id: str, title: str, initial_prompt: str) -> SessionOut:
        """
        Create a session and ask OpenAI whether the prompt needs clarification.
        Either parks the session in AWAITING_REFINEMENTS with its questions or,
        when OpenAI answers directly, runs the full research straight away.
        Any failure leaves the session FAILED and is re-raised.
        """
        try:
            req = CreateSessionRequest(title=title, initial_prompt=initial_prompt)
        except PydanticValidationError as e:
            raise ValidationError(_validation_message(e))

        session = dbmod.create_session(user_id, req.title, req.initial_prompt)
        monitoring.inc_session_created()
        logger.info("Research session created", extra={"session_id": session.id, "user_id": user_id})

        try:
            decision = self.usage_guard.can_make_request(user_id, Provider.OPENAI)
            if not decision.allowed:
                raise UsageLimitExceeded(decision.reason or "API usage limit reached")

            response = self._call_with_timeout(self.providers[Provider.OPENAI], req.initial_prompt)
            self.usage_guard.record_request(user_id, Provider.OPENAI)

            if response.requires_refinement and response.refinement_questions:
                dbmod.create_refinements(session.id, response.refinement_questions)
                self._transition(session.id, S.AWAITING_REFINEMENTS)
            elif response.result:
                self._run_research(session.id, user_id, req.initial_prompt, refined_prompt=req.initial_prompt)
            else:
                raise ProviderError("OpenAI returned neither refinement questions nor a research result",
                                    ProviderErrorReason.UNKNOWN, Provider.OPENAI.value)
        except Exception as e:
            self._fail(session.id, _error_message(e))
            raise

        return dbmod.get_session(session.id)

    def submit_refinement_answer(self, session_id: str, user_id: str,
                                 question_index: int, answer: str) -> SessionOut:
        try:
            req = SubmitRefinementRequest(question_index=question_index, answer=answer)
        except PydanticValidationError as e:
            raise ValidationError(_validation_message(e))

        session = dbmod.get_session_for_user(session_id, user_id)
        if session is None:
            raise SessionNotFoundError()
        if state_machine.is_terminal(session.status):
            raise InvalidSessionStateError(
                f"Session is {session.status.value}; it has already finished and accepts no more answers"
            )
        if session.status not in REFINEMENT_STATES:
            raise InvalidSessionStateError(
                f"Session is {session.status.value}; refinement answers are no longer accepted"
            )

        if not dbmod.answer_refinement(session_id, req.question_index, req.answer):
            raise RefinementNotFoundError()

        if session.status == S.AWAITING_REFINEMENTS and dbmod.mark_refinements_in_progress(session_id):
            monitoring.inc_transition(S.REFINEMENTS_IN_PROGRESS.value)
            logger.info("Session status changed", extra={
                "session_id": session_id,
                "from_status": S.AWAITING_REFINEMENTS.value,
                "to_status": S.REFINEMENTS_IN_PROGRESS.value,
            })

        updated = dbmod.get_session(session_id)
        if updated.status != S.REFINEMENTS_IN_PROGRESS:
            return updated

        refined_prompt = build_refined_prompt(updated.initial_prompt, updated.refinements)
        candidate = updated.model_copy(update={"refined_prompt": refined_prompt})
        if not state_machine.can_transition(S.REFINEMENTS_IN_PROGRESS, S.REFINEMENTS_COMPLETE, candidate):
            return updated

        # Only one concurrent submitter wins the advance; the others stop here.
        if not dbmod.complete_refinements(session_id, refined_prompt):
            return dbmod.get_session(session_id)

        monitoring.inc_transition(S.REFINEMENTS_COMPLETE.value)
        logger.info("Session status changed", extra={
            "session_id": session_id,
            "from_status": S.REFINEMENTS_IN_PROGRESS.value,
            "to_status": S.REFINEMENTS_COMPLETE.value,
        })
        self._run_research(session_id, user_id, refined_prompt)
        return dbmod.get_session(session_id)

    def _run_research(self, session_id: str, user_id: str, prompt: str,
                      refined_prompt: Optional[str] = None) -> None:
        try:
            fields = {"refined_prompt": refined_prompt} if refined_prompt is not None else {}
            self._transition(session_id, S.RUNNING_RESEARCH, **fields)

            decisions = [self.usage_guard.can_make_request(user_id, p) for p in (Provider.OPENAI, Provider.GEMINI)]
            if not all(d.allowed for d in decisions):
                reasons = " ".join(d.reason for d in decisions if not d.allowed and d.reason)
                raise UsageLimitExceeded(reasons or "API usage limit reached")

            outcomes = self._fan_out(prompt)
            results: Dict[Provider, str] = {}
            for key, text in outcomes.items():
                if text is None:
                    results[key] = PLACEHOLDER_RESULT
                else:
                    self.usage_guard.record_request(user_id, key)
                    results[key] = text

            session = self._transition(
                session_id, S.COMPLETED,
                openai_result=results[Provider.OPENAI],
                gemini_result=results[Provider.GEMINI],
            )
        except Exception as e:
            self._fail(session_id, _error_message(e))
            raise

        self._publish_report(session)

    def _publish_report(self, session: SessionOut) -> None:
        """Generate and deliver the report. Nothing here can fail a COMPLETED session."""
        try:
            artifact = self._build_artifact(session)
            dbmod.update_session(
                session.id,
                report_url=f"/api/sessions/{session.id}/report",
                report_generated_at=_utcnow(),
            )
        except Exception:
            logger.exception("Report generation failed", extra={"session_id": session.id})
            return

        try:
            address = dbmod.get_user_email(session.user_id)
            if not address:
                logger.info("No delivery address; report left for download", extra={"session_id": session.id})
                return
            self.delivery_service.deliver(address, artifact, session.title, session.id)
            dbmod.update_session(session.id, email_sent_at=_utcnow())
            monitoring.inc_delivery("success")
        except Exception as e:
            monitoring.inc_delivery("failure")
            logger.error("Failed to deliver report", extra={"session_id": session.id, "error": _error_message(e)})

    def _build_artifact(self, session: SessionOut) -> ReportArtifact:
        return self.report_generator.build(
            session.title,
            session.initial_prompt,
            session.refined_prompt,
            session.openai_result,
            session.gemini_result,
            session.created_at,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_session(self, session_id: str, user_id: str) -> SessionOut:
        session = dbmod.get_session_for_user(session_id, user_id)
        if session is None:
            raise SessionNotFoundError()
        return session

    def list_sessions(self, user_id: str, limit: int = 50) -> List[SessionOut]:
        return dbmod.list_sessions_for_user(user_id, limit=limit)

    def get_report(self, session_id: str, user_id: str) -> ReportArtifact:
        session = self.get_session(session_id, user_id)
        if not session.openai_result or not session.gemini_result:
            raise ReportNotReadyError()
        return self._build_artifact(session)

    def delete_session(self, session_id: str, user_id: str) -> None:
        if not dbmod.delete_session_for_user(session_id, user_id):
            raise SessionNotFoundError()
        logger.info("Research session deleted", extra={"session_id": session_id, "user_id": user_id})
