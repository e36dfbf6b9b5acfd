"""
Codex Team Module

File-backed coordination of a leader and multiple agent CLI workers in tmux.

Modules:
- config: Environment-driven settings and state root resolution
- models: Pydantic schemas for every persisted document
- state: Team store (config, phase state, workers, mailboxes, events)
- kv_store: Namespaced mode state documents
- phases: Team phase state machine with bounded fix loop
- model_contract: Worker launch-argument inheritance
- tmux_session: Worker process manager (tmux)
- mailbox: Persist-then-notify messaging
- leader_nudge: Leader reminders from the turn-complete hook
- doctor: Team health diagnostics
- lifecycle: Start, shutdown, cancel and teardown of teams
"""

from .models import (
    # Phase Schema
    TeamPhase,
    TERMINAL_PHASES,
    PhaseTransition,
    TeamTask,
    TeamState,
    # Config / Worker Schemas
    WorkerInfo,
    TeamConfig,
    WorkerStatus,
    HeartbeatRecord,
    ShutdownRequest,
    MailboxMessage,
    WorkerRecord,
    # Leader / Event Schemas
    NudgeRecord,
    NudgeState,
    LeaderHeartbeat,
    TeamEvent,
)

from .state import (
    TeamExistsError,
    TeamNotFoundError,
    LockedStateFile,
    TeamStore,
)

from .kv_store import ModeStateStore

from .phases import (
    InvalidPhaseTransitionError,
    VALID_PHASE_TRANSITIONS,
    is_valid_transition,
    is_terminal_phase,
    can_resume_team_state,
    create_team_state,
    transition_phase,
    cancel_team_state,
    add_team_task,
    update_team_task,
    get_phase_agents,
    get_phase_instructions,
    apply_phase_transition,
)

from .model_contract import (
    collect_inheritable_worker_args,
    resolve_worker_launch_args,
    is_low_complexity_agent_type,
)

from .tmux_session import (
    TmuxUnavailableError,
    TmuxCommandError,
    TeamSession,
    is_tmux_available,
    sanitize_team_name,
    create_team_session,
    build_worker_startup_command,
    send_to_worker,
    is_worker_alive,
    kill_worker,
    kill_worker_by_pane_id,
    wait_for_worker_ready,
)

from .mailbox import (
    NotifierTarget,
    queue_inbox_instruction,
    queue_direct_mailbox_message,
    queue_broadcast_mailbox_message,
    make_tmux_notifier,
)

from .leader_nudge import (
    maybe_nudge_team_leader,
    handle_turn_complete,
)

from .doctor import (
    TeamFinding,
    run_team_diagnostics,
    format_finding,
    doctor_team,
)

from .lifecycle import (
    start_team,
    request_worker_shutdown,
    ack_worker_shutdown,
    shutdown_team,
    cancel_team,
    teardown_team,
)

__version__ = '0.3.0'

__all__ = [
    # Models
    'TeamPhase',
    'TERMINAL_PHASES',
    'PhaseTransition',
    'TeamTask',
    'TeamState',
    'WorkerInfo',
    'TeamConfig',
    'WorkerStatus',
    'HeartbeatRecord',
    'ShutdownRequest',
    'MailboxMessage',
    'WorkerRecord',
    'NudgeRecord',
    'NudgeState',
    'LeaderHeartbeat',
    'TeamEvent',
    # State
    'TeamExistsError',
    'TeamNotFoundError',
    'LockedStateFile',
    'TeamStore',
    'ModeStateStore',
    # Phases
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
    # Worker launch
    'collect_inheritable_worker_args',
    'resolve_worker_launch_args',
    'is_low_complexity_agent_type',
    # tmux
    'TmuxUnavailableError',
    'TmuxCommandError',
    'TeamSession',
    'is_tmux_available',
    'sanitize_team_name',
    'create_team_session',
    'build_worker_startup_command',
    'send_to_worker',
    'is_worker_alive',
    'kill_worker',
    'kill_worker_by_pane_id',
    'wait_for_worker_ready',
    # Mailbox
    'NotifierTarget',
    'queue_inbox_instruction',
    'queue_direct_mailbox_message',
    'queue_broadcast_mailbox_message',
    'make_tmux_notifier',
    # Leader nudge
    'maybe_nudge_team_leader',
    'handle_turn_complete',
    # Doctor
    'TeamFinding',
    'run_team_diagnostics',
    'format_finding',
    'doctor_team',
    # Lifecycle
    'start_team',
    'request_worker_shutdown',
    'ack_worker_shutdown',
    'shutdown_team',
    'cancel_team',
    'teardown_team',
]
