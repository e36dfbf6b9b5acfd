"""
Phase State Machine for Codex Team.

Staged pipeline: plan -> prd -> exec -> verify -> fix (bounded loop).

transition_phase() is pure: it validates a requested transition and returns
a new TeamState, leaving its argument untouched. apply_phase_transition()
is the persisted variant that reads and writes through a TeamStore.
"""

import logging
import uuid
from typing import Any, Callable, Dict, List, Optional

from .models import (
    TERMINAL_PHASES,
    PhaseTransition,
    TeamPhase,
    TeamState,
    TeamTask,
    now_iso,
)
from .state import TeamNotFoundError

logger = logging.getLogger(__name__)

Notifier = Callable[[Dict[str, Any]], Any]

# Valid phase transitions (from_phase -> list of valid to_phases)
VALID_PHASE_TRANSITIONS: Dict[TeamPhase, List[TeamPhase]] = {
    TeamPhase.PLAN: [TeamPhase.PRD],
    TeamPhase.PRD: [TeamPhase.EXEC],
    TeamPhase.EXEC: [TeamPhase.VERIFY],
    TeamPhase.VERIFY: [TeamPhase.FIX, TeamPhase.COMPLETE, TeamPhase.FAILED],
    TeamPhase.FIX: [TeamPhase.EXEC, TeamPhase.VERIFY, TeamPhase.COMPLETE, TeamPhase.FAILED],
}

PHASE_AGENTS: Dict[TeamPhase, List[str]] = {
    TeamPhase.PLAN: ['analyst', 'planner'],
    TeamPhase.PRD: ['product-manager', 'analyst'],
    TeamPhase.EXEC: ['executor', 'deep-executor', 'designer', 'test-engineer'],
    TeamPhase.VERIFY: ['verifier', 'quality-reviewer', 'security-reviewer'],
    TeamPhase.FIX: ['executor', 'build-fixer', 'debugger'],
}

PHASE_INSTRUCTIONS: Dict[TeamPhase, str] = {
    TeamPhase.PLAN: "PHASE: Planning. Gather requirements and break the task down. Output: task list with dependencies.",
    TeamPhase.PRD: "PHASE: Requirements. Write the PRD and acceptance criteria. Output: explicit scope and success metrics.",
    TeamPhase.EXEC: "PHASE: Execution. Implement the tasks with tests. Output: working code with tests.",
    TeamPhase.VERIFY: "PHASE: Verification. Collect evidence and review. Output: pass/fail with evidence.",
    TeamPhase.FIX: "PHASE: Fixing. Find the root cause and fix it. Output: fixed code, re-verify needed.",
}

__all__ = [
    'InvalidPhaseTransitionError',
    'VALID_PHASE_TRANSITIONS',
    'is_valid_transition',
    'is_terminal_phase',
    'can_resume_team_state',
    'create_team_state',
    'transition_phase',
    'cancel_team_state',
    'add_team_task',
    'update_team_task',
    'get_phase_agents',
    'get_phase_instructions',
    'apply_phase_transition',
]


class InvalidPhaseTransitionError(ValueError):
    """Raised when a requested phase transition is not permitted."""

    def __init__(self, from_phase: str, to_phase: str, message: str):
        self.from_phase = from_phase
        self.to_phase = to_phase
        super().__init__(message)


def _as_phase(phase) -> TeamPhase:
    try:
        return TeamPhase(phase)
    except ValueError:
        raise InvalidPhaseTransitionError(str(phase), str(phase), f"Unknown phase: {phase}")


def is_valid_transition(from_phase, to_phase) -> bool:
    """True when to_phase is listed for from_phase in the transition table."""
    try:
        from_p, to_p = TeamPhase(from_phase), TeamPhase(to_phase)
    except ValueError:
        return False
    return to_p in VALID_PHASE_TRANSITIONS.get(from_p, [])


def is_terminal_phase(phase) -> bool:
    try:
        return TeamPhase(phase) in TERMINAL_PHASES
    except ValueError:
        return False


def can_resume_team_state(state: TeamState) -> bool:
    """Only non-terminal teams are resumable; complete is final like failed/cancelled."""
    return not is_terminal_phase(state.phase)


def create_team_state(name: str, task_description: str, max_fix_attempts: int = 3,
                      tmux_session: str = "") -> TeamState:
    """Initial state for a new team (phase team-plan, active)."""
    return TeamState(
        name=name,
        phase=TeamPhase.PLAN,
        task_description=task_description,
        max_fix_attempts=max_fix_attempts,
        current_fix_attempt=0,
        tmux_session=tmux_session,
        active=True,
    )


def _with_transition(state: TeamState, to_phase: TeamPhase, reason: Optional[str],
                     **updates: Any) -> TeamState:
    record = PhaseTransition(from_phase=state.phase, to_phase=to_phase, at=now_iso(), reason=reason)
    update = {
        'phase': to_phase,
        'active': to_phase not in TERMINAL_PHASES,
        'phase_transitions': [*state.phase_transitions, record],
        'tasks': [task.model_copy() for task in state.tasks],
    }
    update.update(updates)
    return state.model_copy(update=update)


def transition_phase(state: TeamState, to_phase, reason: Optional[str] = None) -> TeamState:
    """
    Apply one phase transition and return the new state.

    Entering team-fix once current_fix_attempt has reached max_fix_attempts
    does not enter team-fix: the team moves to failed with a system reason
    instead. The input state is never mutated.

    Raises:
        InvalidPhaseTransitionError: current phase is terminal, or the
            transition is not in the table
    """
    from_phase = state.phase
    to_p = _as_phase(to_phase)

    if from_phase in TERMINAL_PHASES:
        raise InvalidPhaseTransitionError(
            from_phase.value, to_p.value,
            f"Cannot transition from terminal phase: {from_phase.value}",
        )
    if not is_valid_transition(from_phase, to_p):
        raise InvalidPhaseTransitionError(
            from_phase.value, to_p.value,
            f"Invalid transition: {from_phase.value} -> {to_p.value}",
        )

    if to_p == TeamPhase.FIX:
        if state.current_fix_attempt >= state.max_fix_attempts:
            logger.warning(
                f"Team {state.name}: fix attempts exhausted "
                f"({state.current_fix_attempt}/{state.max_fix_attempts}), failing team"
            )
            return _with_transition(
                state, TeamPhase.FAILED,
                f"team-fix loop limit reached ({state.max_fix_attempts})",
            )
        return _with_transition(state, to_p, reason, current_fix_attempt=state.current_fix_attempt + 1)

    return _with_transition(state, to_p, reason)


def cancel_team_state(state: TeamState, reason: Optional[str] = None) -> TeamState:
    """
    Move a non-terminal team to cancelled.

    Cancellation bypasses the transition table; worker teardown is a
    separate step (lifecycle.cancel_team).
    """
    if state.phase in TERMINAL_PHASES:
        raise InvalidPhaseTransitionError(
            state.phase.value, TeamPhase.CANCELLED.value,
            f"Cannot transition from terminal phase: {state.phase.value}",
        )
    return _with_transition(state, TeamPhase.CANCELLED, reason or "cancelled")


def add_team_task(state: TeamState, subject: str, description: str = "",
                  owner: Optional[str] = None, blocked_by: Optional[List[str]] = None) -> TeamState:
    task = TeamTask(
        id=f"task-{uuid.uuid4().hex[:8]}",
        subject=subject,
        description=description,
        owner=owner,
        blocked_by=list(blocked_by or []),
    )
    return state.model_copy(update={'tasks': [*(t.model_copy() for t in state.tasks), task]})


def update_team_task(state: TeamState, task_id: str, **changes: Any) -> TeamState:
    """
    Return a new state with one task updated.

    Raises:
        KeyError: no task with that id
    """
    tasks = []
    found = False
    for task in state.tasks:
        if task.id == task_id:
            found = True
            if changes.get('status') == 'completed' and task.completed_at is None:
                changes.setdefault('completed_at', now_iso())
            task = TeamTask.model_validate({**task.model_dump(), **changes})
        else:
            task = task.model_copy()
        tasks.append(task)
    if not found:
        raise KeyError(f"Task {task_id} not found on team {state.name}")
    return state.model_copy(update={'tasks': tasks})


def get_phase_agents(phase) -> List[str]:
    """Agent roles recommended for a phase (empty for terminal phases)."""
    try:
        return list(PHASE_AGENTS.get(TeamPhase(phase), []))
    except ValueError:
        return []


def get_phase_instructions(phase) -> str:
    try:
        return PHASE_INSTRUCTIONS.get(TeamPhase(phase), "")
    except ValueError:
        return ""


# ============================================================================
# PERSISTED TRANSITIONS
# ============================================================================

def apply_phase_transition(store, team: str, to_phase, reason: Optional[str] = None,
                           notifier: Optional[Notifier] = None) -> TeamState:
    """
    Load a team's state, transition it, persist it and log the event.

    When the team enters a terminal phase the notifier (a single
    notify(payload) sink) is called; its failures are logged, not raised.

    Raises:
        TeamNotFoundError: no state document for the team
        InvalidPhaseTransitionError: transition rejected (nothing written)
    """
    state = store.read_team_state(team)
    if state is None:
        raise TeamNotFoundError(f"No team state for '{team}'")

    if _as_phase(to_phase) == TeamPhase.CANCELLED:
        new_state = cancel_team_state(state, reason)
    else:
        new_state = transition_phase(state, to_phase, reason)
    store.write_team_state(new_state)

    last = new_state.phase_transitions[-1]
    store.append_event(
        team, 'phase_transition', reason=last.reason,
        data={'from': last.from_phase.value, 'to': last.to_phase.value},
    )
    logger.info(f"Team {team}: {last.from_phase.value} -> {last.to_phase.value}")

    if new_state.phase in TERMINAL_PHASES and notifier is not None:
        payload = {
            'title': f"Team {team} {new_state.phase.value}",
            'message': last.reason or f"Team {team} reached {new_state.phase.value}",
            'type': 'success' if new_state.phase == TeamPhase.COMPLETE else 'warning',
            'mode': 'team',
        }
        try:
            notifier(payload)
        except Exception as e:
            logger.error(f"Team {team}: terminal-phase notification failed: {e}")

    return new_state
