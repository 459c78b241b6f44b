# research_backend/state_machine.py
"""
Research session lifecycle rules.

Pure functions over a SessionOut snapshot: nothing here reads the database or
mutates a session. The orchestrator asks `can_transition` before every status
write and decides itself when to move.

    CREATED -> AWAITING_REFINEMENTS -> REFINEMENTS_IN_PROGRESS
            -> REFINEMENTS_COMPLETE -> RUNNING_RESEARCH -> COMPLETED

One edge sits outside that chain: CREATED -> RUNNING_RESEARCH. It is taken
when the refinement provider answers the prompt directly instead of asking
questions; the initial prompt is then stored as the refined prompt, so the
same guard as REFINEMENTS_COMPLETE -> RUNNING_RESEARCH applies. Clients that
only know the linear chain should expect to see a session skip the
refinement states.

FAILED is reachable from anywhere but is only ever set explicitly.
COMPLETED and FAILED are terminal: no edge leaves them.
"""
from typing import Callable, Dict, Optional, Set, Tuple

from research_backend.schemas import SessionOut, SessionStatus

S = SessionStatus
Guard = Callable[[SessionOut], bool]


def _always(session: SessionOut) -> bool:
    return True


def _has_refinements(session: SessionOut) -> bool:
    return len(session.refinements) > 0


def _all_answered(session: SessionOut) -> bool:
    return _has_refinements(session) and all(r.answer for r in session.refinements)


def _has_refined_prompt(session: SessionOut) -> bool:
    return bool(session.refined_prompt)


def _has_both_results(session: SessionOut) -> bool:
    return bool(session.openai_result) and bool(session.gemini_result)


# Insertion order is the order next_state() prefers candidates in.
TRANSITIONS: Dict[Tuple[SessionStatus, SessionStatus], Guard] = {
    (S.CREATED, S.AWAITING_REFINEMENTS): _always,
    (S.AWAITING_REFINEMENTS, S.REFINEMENTS_IN_PROGRESS): _has_refinements,
    (S.REFINEMENTS_IN_PROGRESS, S.REFINEMENTS_COMPLETE): _all_answered,
    (S.REFINEMENTS_COMPLETE, S.RUNNING_RESEARCH): _has_refined_prompt,
    (S.RUNNING_RESEARCH, S.COMPLETED): _has_both_results,
    # provider answered directly; the initial prompt is stored as the refined prompt
    (S.CREATED, S.RUNNING_RESEARCH): _has_refined_prompt,
}

TERMINAL_STATES = frozenset({S.COMPLETED, S.FAILED})


def is_terminal(status: SessionStatus) -> bool:
    return status in TERMINAL_STATES


def can_transition(current: SessionStatus, target: SessionStatus, session: SessionOut) -> bool:
    if current == target:
        return True
    if target == S.FAILED:
        return True
    guard = TRANSITIONS.get((current, target))
    if guard is None:
        return False
    return guard(session)


def next_states(current: SessionStatus, session: SessionOut) -> Set[SessionStatus]:
    states = {current}
    for (src, dst), guard in TRANSITIONS.items():
        if src == current and guard(session):
            states.add(dst)
    if current != S.FAILED:
        states.add(S.FAILED)
    return states


def next_state(session: SessionOut) -> Optional[SessionStatus]:
    """
    The canonical forward state the session data currently allows, or None.
    Advisory: never FAILED, never the current state.
    """
    current = session.status
    allowed = next_states(current, session) - {current, S.FAILED}
    for (src, dst) in TRANSITIONS:
        if src == current and dst in allowed:
            return dst
    return None
