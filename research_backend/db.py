# research_backend/db.py
"""
Record store for research sessions, refinements, users and API usage counters.

Every public function runs in its own short transaction; callers never see ORM
objects, only pydantic snapshots or plain values.
"""
import os
import logging
import datetime
from contextlib import contextmanager
from typing import Optional, Dict, Any, List, Iterator

from sqlalchemy import create_engine, event, select, insert, update, func, or_
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker, declarative_base, selectinload, Session

from research_backend.schemas import SessionOut, SessionStatus, RefinementQuestion, Provider

logger = logging.getLogger("research-backend.db")

# Default dev DB; on Vercel api/index.py sets DATABASE_URL to /tmp before import
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./research.db")


def _make_engine(url: str):
    # concurrent writers queue on the SQLite write lock instead of failing fast
    connect_args = {"check_same_thread": False, "timeout": 30} if url.startswith("sqlite") else {}
    eng = create_engine(url, connect_args=connect_args)
    if url.startswith("sqlite"):
        # SQLite ignores ON DELETE CASCADE unless foreign keys are switched on per connection
        @event.listens_for(eng, "connect")
        def _enable_fk(dbapi_conn, _record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()
    return eng


engine = _make_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def reconfigure(url: str):
    """Reconfigure the DB engine and session factory at runtime (for tests)."""
    global engine, SessionLocal
    engine.dispose()
    engine = _make_engine(url)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db():
    # import models lazily so Base metadata has the tables
    import research_backend.models as models  # noqa: F401
    Base.metadata.create_all(bind=engine)


@contextmanager
def session_scope() -> Iterator[Session]:
    db: Session = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def _snapshot(rs) -> SessionOut:
    return SessionOut.model_validate(rs)


def _load(db: Session, session_id: str, user_id: Optional[str] = None):
    from research_backend.models import ResearchSession
    stmt = (
        select(ResearchSession)
        .options(selectinload(ResearchSession.refinements))
        .where(ResearchSession.id == session_id)
    )
    if user_id is not None:
        stmt = stmt.where(ResearchSession.user_id == user_id)
    return db.execute(stmt).scalar_one_or_none()


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------
def upsert_user(user_id: str, email: Optional[str] = None) -> None:
    from research_backend.models import User
    with session_scope() as db:
        user = db.get(User, user_id)
        if user is None:
            db.add(User(id=user_id, email=email))
        elif email and user.email != email:
            user.email = email


def get_user_email(user_id: str) -> Optional[str]:
    from research_backend.models import User
    with session_scope() as db:
        user = db.get(User, user_id)
        return user.email if user else None


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------
def create_session(user_id: str, title: str, initial_prompt: str) -> SessionOut:
    from research_backend.models import ResearchSession
    with session_scope() as db:
        rs = ResearchSession(
            user_id=user_id,
            title=title,
            initial_prompt=initial_prompt,
            status=SessionStatus.CREATED.value,
        )
        db.add(rs)
        db.flush()
        return _snapshot(rs)


def get_session(session_id: str) -> Optional[SessionOut]:
    with session_scope() as db:
        rs = _load(db, session_id)
        return _snapshot(rs) if rs else None


def get_session_for_user(session_id: str, user_id: str) -> Optional[SessionOut]:
    """Owner-scoped lookup: a wrong owner looks exactly like a wrong id."""
    with session_scope() as db:
        rs = _load(db, session_id, user_id=user_id)
        return _snapshot(rs) if rs else None


def list_sessions_for_user(user_id: str, limit: int = 50) -> List[SessionOut]:
    from research_backend.models import ResearchSession
    with session_scope() as db:
        stmt = (
            select(ResearchSession)
            .options(selectinload(ResearchSession.refinements))
            .where(ResearchSession.user_id == user_id)
            .order_by(ResearchSession.created_at.desc())
            .limit(limit)
        )
        return [_snapshot(rs) for rs in db.execute(stmt).scalars().all()]


def update_session(session_id: str, **fields: Any) -> Optional[SessionOut]:
    with session_scope() as db:
        rs = _load(db, session_id)
        if rs is None:
            return None
        for key, value in fields.items():
            if isinstance(value, SessionStatus):
                value = value.value
            setattr(rs, key, value)
        rs.updated_at = _utcnow()
        db.flush()
        return _snapshot(rs)


def delete_session_for_user(session_id: str, user_id: str) -> bool:
    with session_scope() as db:
        rs = _load(db, session_id, user_id=user_id)
        if rs is None:
            return False
        db.delete(rs)
        return True


# ---------------------------------------------------------------------------
# Refinements
# ---------------------------------------------------------------------------
def create_refinements(session_id: str, questions: List[RefinementQuestion]) -> None:
    """Insert the whole question batch in one transaction."""
    from research_backend.models import Refinement
    with session_scope() as db:
        db.add_all([
            Refinement(session_id=session_id, question=q.question, question_index=q.index)
            for q in questions
        ])


def answer_refinement(session_id: str, question_index: int, answer: str) -> bool:
    """Write answer + answered_at together. Returns False when the index does not exist."""
    from research_backend.models import Refinement
    with session_scope() as db:
        ref = db.execute(
            select(Refinement).where(
                Refinement.session_id == session_id,
                Refinement.question_index == question_index,
            )
        ).scalar_one_or_none()
        if ref is None:
            return False
        ref.answer = answer
        ref.answered_at = _utcnow()
        return True


def _conditional_status_update(session_id: str, from_statuses: List[SessionStatus],
                               to_status: SessionStatus, extra_where=(), **values: Any) -> bool:
    from research_backend.models import ResearchSession
    with session_scope() as db:
        stmt = (
            update(ResearchSession)
            .where(
                ResearchSession.id == session_id,
                ResearchSession.status.in_([s.value for s in from_statuses]),
                *extra_where,
            )
            .values(status=to_status.value, updated_at=_utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        return db.execute(stmt).rowcount == 1


def mark_refinements_in_progress(session_id: str) -> bool:
    """AWAITING_REFINEMENTS -> REFINEMENTS_IN_PROGRESS, only if still awaiting."""
    from research_backend.models import Refinement
    has_any = select(Refinement.id).where(Refinement.session_id == session_id).exists()
    return _conditional_status_update(
        session_id,
        [SessionStatus.AWAITING_REFINEMENTS],
        SessionStatus.REFINEMENTS_IN_PROGRESS,
        extra_where=(has_any,),
    )


def complete_refinements(session_id: str, refined_prompt: str) -> bool:
    """
    REFINEMENTS_IN_PROGRESS -> REFINEMENTS_COMPLETE in a single UPDATE that only
    matches while no unanswered refinement exists. Exactly one concurrent caller wins.
    """
    from research_backend.models import Refinement
    unanswered = select(Refinement.id).where(
        Refinement.session_id == session_id,
        or_(Refinement.answer.is_(None), Refinement.answer == ""),
    ).exists()
    has_any = select(Refinement.id).where(Refinement.session_id == session_id).exists()
    return _conditional_status_update(
        session_id,
        [SessionStatus.REFINEMENTS_IN_PROGRESS],
        SessionStatus.REFINEMENTS_COMPLETE,
        extra_where=(~unanswered, has_any),
        refined_prompt=refined_prompt,
    )


# ---------------------------------------------------------------------------
# API usage
# ---------------------------------------------------------------------------
def _usage_dict(row) -> Dict[str, Any]:
    return {
        "user_id": row.user_id,
        "openai_requests_today": row.openai_requests_today,
        "openai_requests_month": row.openai_requests_month,
        "gemini_requests_today": row.gemini_requests_today,
        "gemini_requests_month": row.gemini_requests_month,
        "last_reset_date": row.last_reset_date,
    }


def _month_bounds(today: datetime.date):
    start = today.replace(day=1)
    if start.month == 12:
        return start, start.replace(year=start.year + 1, month=1)
    return start, start.replace(month=start.month + 1)


def _ensure_usage_row(db: Session, user_id: str, today: datetime.date) -> None:
    from research_backend.models import ApiUsage
    values = dict(
        user_id=user_id,
        openai_requests_today=0,
        openai_requests_month=0,
        gemini_requests_today=0,
        gemini_requests_month=0,
        last_reset_date=today,
    )
    dialect = db.get_bind().dialect.name
    if dialect == "sqlite":
        stmt = sqlite_insert(ApiUsage).values(**values).on_conflict_do_nothing(index_elements=["user_id"])
    elif dialect == "postgresql":
        stmt = pg_insert(ApiUsage).values(**values).on_conflict_do_nothing(index_elements=["user_id"])
    else:
        if db.execute(select(ApiUsage.id).where(ApiUsage.user_id == user_id)).first() is not None:
            return
        try:
            with db.begin_nested():
                db.execute(insert(ApiUsage).values(**values))
        except IntegrityError:
            # created by a concurrent writer
            logger.debug("usage row for %s created concurrently", user_id)
        return
    db.execute(stmt)


def touch_usage(user_id: str, today: datetime.date, increment: Optional[Provider] = None) -> Dict[str, Any]:
    """
    Create the user's usage row if missing, roll expired periods over and
    optionally count one request for `increment`, all in one transaction.

    Every step is a single SQL statement evaluated by the database, so
    concurrent callers never overwrite each other's counts. The month reset
    runs before the day reset because both compare against the stored
    reset date, which the day reset moves forward.

    Returns the counters as committed.
    """
    from research_backend.models import ApiUsage
    month_start, next_month = _month_bounds(today)
    mine = ApiUsage.user_id == user_id
    with session_scope() as db:
        _ensure_usage_row(db, user_id, today)
        db.execute(
            update(ApiUsage)
            .where(mine, or_(ApiUsage.last_reset_date < month_start, ApiUsage.last_reset_date >= next_month))
            .values(openai_requests_month=0, gemini_requests_month=0)
        )
        db.execute(
            update(ApiUsage)
            .where(mine, ApiUsage.last_reset_date < today)
            .values(openai_requests_today=0, gemini_requests_today=0, last_reset_date=today)
        )
        if increment is not None:
            day_col = getattr(ApiUsage, f"{increment.value}_requests_today")
            month_col = getattr(ApiUsage, f"{increment.value}_requests_month")
            db.execute(
                update(ApiUsage)
                .where(mine)
                .values({day_col: day_col + 1, month_col: month_col + 1})
            )
        row = db.execute(
            select(ApiUsage).where(mine).execution_options(populate_existing=True)
        ).scalar_one()
        return _usage_dict(row)


def get_usage(user_id: str) -> Optional[Dict[str, Any]]:
    from research_backend.models import ApiUsage
    with session_scope() as db:
        row = db.execute(select(ApiUsage).where(ApiUsage.user_id == user_id)).scalar_one_or_none()
        return _usage_dict(row) if row else None


def sum_usage_today(provider: Provider, today: datetime.date) -> int:
    """Sum of today-counts across all users whose counters belong to `today`."""
    from research_backend.models import ApiUsage
    column = getattr(ApiUsage, f"{provider.value}_requests_today")
    with session_scope() as db:
        total = db.execute(
            select(func.coalesce(func.sum(column), 0)).where(ApiUsage.last_reset_date == today)
        ).scalar()
        return int(total or 0)
