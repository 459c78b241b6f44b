# research_backend/app.py
import os
import time

# Load .env BEFORE any research_backend imports (they read env vars at import time)
from dotenv import load_dotenv
load_dotenv(override=True)

from fastapi import FastAPI, Request, Depends, Path
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response, PlainTextResponse

from research_backend import monitoring
from research_backend import auth as authmod
from research_backend import db as dbmod
from research_backend.delivery import MockDeliveryService, SmtpDeliveryService, SmtpSettings
from research_backend.errors import (
    ResearchError, ValidationError, SessionNotFoundError, RefinementNotFoundError,
    UsageLimitExceeded, InvalidSessionStateError, ReportNotReadyError,
    E_VALIDATION, E_PROVIDER, E_INTERNAL,
)
from research_backend.orchestrator import ResearchOrchestrator
from research_backend.providers.base import ProviderError
from research_backend.providers.gemini_provider import GeminiResearchProvider, MockGeminiResearchProvider
from research_backend.providers.openai_provider import OpenAIResearchProvider, MockOpenAIResearchProvider
from research_backend.report import generator_for
from research_backend.schemas import CreateSessionRequest, SubmitRefinementRequest
from research_backend.usage_guard import ApiUsageGuard, UsageLimits

USE_MOCK_APIS = os.getenv("USE_MOCK_APIS", "true").lower() in ("1", "true", "yes")
REPORT_FORMAT = os.getenv("REPORT_FORMAT", "pdf")


def build_orchestrator(use_mock: bool = USE_MOCK_APIS, report_format: str = REPORT_FORMAT) -> ResearchOrchestrator:
    """Wire real or mock collaborators once at startup."""
    if use_mock:
        openai_provider, gemini_provider = MockOpenAIResearchProvider(), MockGeminiResearchProvider()
        delivery = MockDeliveryService()
    else:
        openai_provider, gemini_provider = OpenAIResearchProvider(), GeminiResearchProvider()
        delivery = SmtpDeliveryService(SmtpSettings.from_env())
    return ResearchOrchestrator(
        usage_guard=ApiUsageGuard(UsageLimits.from_env()),
        openai_provider=openai_provider,
        gemini_provider=gemini_provider,
        report_generator=generator_for(report_format),
        delivery_service=delivery,
    )


app = FastAPI(title="Deep Research Assistant API")

# Initialize DB tables on startup
dbmod.init_db()

orchestrator = build_orchestrator()

_STATUS_BY_ERROR = [
    (ValidationError, 400),
    (SessionNotFoundError, 404),
    (RefinementNotFoundError, 404),
    (UsageLimitExceeded, 429),
    (InvalidSessionStateError, 409),
    (ReportNotReadyError, 400),
]


def _error_body(error_code: str, message: str) -> dict:
    return {"status": "error", "error_code": error_code, "message": message}


def _error_response(exc: Exception) -> JSONResponse:
    if isinstance(exc, ResearchError):
        status = next((code for cls, code in _STATUS_BY_ERROR if isinstance(exc, cls)), 500)
        return JSONResponse(status_code=status, content=_error_body(exc.error_code, exc.message))
    if isinstance(exc, ProviderError):
        return JSONResponse(status_code=502, content=_error_body(E_PROVIDER, exc.message))
    monitoring.logger.exception("Unexpected error in API handler")
    return JSONResponse(status_code=500, content=_error_body(E_INTERNAL, "Internal server error"))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{field}: {first.get('msg')}" if field else first.get("msg", "Invalid request")
    return JSONResponse(status_code=400, content=_error_body(E_VALIDATION, message))


# ---------------------------------------------------------------------------
# Auth + rate-limit middleware (runs first on /api/* paths)
# ---------------------------------------------------------------------------
@app.middleware("http")
async def identity_and_rate_limit_middleware(request: Request, call_next):
    if not request.url.path.startswith("/api/"):
        return await call_next(request)

    if not authmod.is_key_allowed(request.headers.get(authmod.API_KEY_HEADER)):
        return JSONResponse(status_code=401, content={"detail": "Missing or invalid API key"})

    identity = authmod.resolve_identity(request.headers)
    if identity is None:
        return JSONResponse(status_code=401, content={"detail": "Unauthorized"})

    allowed, _remaining = authmod.check_rate_limit(identity.user_id)
    if not allowed:
        resp = JSONResponse(status_code=429, content=_error_body("E_RATE_LIMIT", "Rate limit exceeded"))
        resp.headers["Retry-After"] = "60"
        return resp

    request.state.identity = identity
    return await call_next(request)


# ---------------------------------------------------------------------------
# Metrics middleware
# ---------------------------------------------------------------------------
UNMATCHED_ROUTE = "unmatched"


def _route_label(request: Request) -> str:
    """Route template such as /api/sessions/{session_id}; requests matching no route share one label."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or UNMATCHED_ROUTE


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    start = time.time()
    method = request.method
    status = "500"
    try:
        response = await call_next(request)
        status = str(response.status_code)
        return response
    except Exception:
        monitoring.logger.exception("Unhandled exception in request", extra={"path": request.url.path})
        raise
    finally:
        # the router fills scope["route"] during call_next
        monitoring.observe_request(start, _route_label(request), method, status)


def current_identity(request: Request) -> authmod.Identity:
    """Identity set by the middleware; keeps the user's delivery address current."""
    identity: authmod.Identity = request.state.identity
    dbmod.upsert_user(identity.user_id, identity.email)
    return identity


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------
@app.post("/api/sessions")
def create_session(req: CreateSessionRequest, identity: authmod.Identity = Depends(current_identity)):
    """
    POST /api/sessions
    Body: { "title": "...", "initial_prompt": "..." }
    """
    monitoring.logger.info("Received create session request", extra={"user_id": identity.user_id})
    try:
        session = orchestrator.start_session(identity.user_id, req.title, req.initial_prompt)
    except Exception as e:
        return _error_response(e)
    return JSONResponse(status_code=201, content={"session": session.model_dump(mode="json")})


@app.get("/api/sessions")
def list_sessions(identity: authmod.Identity = Depends(current_identity)):
    sessions = orchestrator.list_sessions(identity.user_id)
    return {"sessions": [s.model_dump(mode="json") for s in sessions]}


@app.get("/api/sessions/{session_id}")
def get_session(session_id: str = Path(...), identity: authmod.Identity = Depends(current_identity)):
    try:
        session = orchestrator.get_session(session_id, identity.user_id)
    except Exception as e:
        return _error_response(e)
    return {"session": session.model_dump(mode="json")}


@app.delete("/api/sessions/{session_id}")
def delete_session(session_id: str = Path(...), identity: authmod.Identity = Depends(current_identity)):
    try:
        orchestrator.delete_session(session_id, identity.user_id)
    except Exception as e:
        return _error_response(e)
    return {"success": True}


@app.post("/api/sessions/{session_id}/refinements")
def submit_refinement(req: SubmitRefinementRequest, session_id: str = Path(...),
                      identity: authmod.Identity = Depends(current_identity)):
    """
    POST /api/sessions/{id}/refinements
    Body: { "question_index": 0, "answer": "..." }
    Returns the updated session.
    """
    try:
        session = orchestrator.submit_refinement_answer(
            session_id, identity.user_id, req.question_index, req.answer
        )
    except Exception as e:
        return _error_response(e)
    return {"session": session.model_dump(mode="json")}


@app.get("/api/sessions/{session_id}/report")
def get_report(session_id: str = Path(...), identity: authmod.Identity = Depends(current_identity)):
    try:
        artifact = orchestrator.get_report(session_id, identity.user_id)
    except Exception as e:
        return _error_response(e)
    return Response(
        content=artifact.content,
        media_type=artifact.content_type,
        headers={"Content-Disposition": f'attachment; filename="{artifact.filename}"'},
    )


@app.get("/api/usage")
def get_usage(identity: authmod.Identity = Depends(current_identity)):
    summary = orchestrator.usage_guard.get_user_usage(identity.user_id)
    return {"usage": summary.model_dump(mode="json")}


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/metrics")
async def metrics():
    if not monitoring.PROMETHEUS_ENABLED:
        return PlainTextResponse("Prometheus disabled", status_code=404)
    payload, content_type = monitoring.prometheus_metrics_response()
    return Response(content=payload, media_type=content_type)
