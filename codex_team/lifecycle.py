"""
Team lifecycle: start, graceful shutdown, cancel and teardown.

start_team() is the only path that creates panes and team documents
together. Shutdown is cooperative first (shutdown request + bounded wait
for acks) and forceful second (pane kill); the leader's pane is never
touched. Cancel is a terminal phase transition followed by an explicit
shutdown, never an implied one.
"""

import os
import time
import logging
from typing import Any, Dict, List, Optional, Sequence

from .config import ENV_LEADER_CWD, ENV_STATE_ROOT, LEADER_WORKER_NAME, SESSION_PREFIX
from .mailbox import make_tmux_notifier, queue_inbox_instruction
from .model_contract import TEAM_LOW_COMPLEXITY_DEFAULT_MODEL, is_low_complexity_agent_type
from .models import HeartbeatRecord, ShutdownRequest, TeamConfig, TeamPhase, TeamState, WorkerInfo
from .phases import apply_phase_transition, create_team_state, get_phase_instructions
from .state import TeamExistsError, TeamNotFoundError
from .tmux_session import (
    build_worker_startup_command,
    create_team_session,
    enable_mouse_scrolling,
    get_worker_pane_pid,
    kill_team_session,
    kill_worker,
    sanitize_team_name,
    wait_for_worker_ready,
)

logger = logging.getLogger(__name__)

DEFAULT_ACK_TIMEOUT_S = 15
DEFAULT_READY_TIMEOUT_S = 30

__all__ = [
    'start_team',
    'request_worker_shutdown',
    'ack_worker_shutdown',
    'shutdown_team',
    'cancel_team',
    'teardown_team',
]


def _worker_inbox(config: TeamConfig, worker: WorkerInfo, state_root: str) -> str:
    worker_dir = os.path.join(state_root, 'team', config.name, 'workers', worker.name)
    return (
        f"# {config.name} / {worker.name}\n\n"
        f"Role: {worker.role}\n\n"
        f"## Task\n\n{config.task}\n\n"
        f"## Phase\n\n{get_phase_instructions(TeamPhase.PLAN)}\n\n"
        f"## Protocol\n\n"
        f"- Report progress by rewriting {os.path.join(worker_dir, 'status.json')} "
        f"(state: idle | working | blocked).\n"
        f"- Messages for you arrive in {os.path.join(worker_dir, 'mailbox')}.\n"
        f"- Write to the leader through the team_send_message tool (to: {LEADER_WORKER_NAME}).\n"
        f"- If {os.path.join(worker_dir, 'shutdown-request.json')} appears, finish up and "
        f"acknowledge it before exiting.\n"
    )


def start_team(store, team_name: str, task: str, worker_count: int, cwd: str,
               agent_type: str = 'executor', launch_args: Sequence[str] = (),
               max_fix_attempts: int = 3, notify_workers: bool = True,
               ready_timeout_s: float = DEFAULT_READY_TIMEOUT_S) -> TeamConfig:
    """
    Create a team: tmux panes, persisted config/state and worker documents.

    Args:
        store: TeamStore receiving the team documents
        team_name: Requested name (sanitized)
        task: Task description given to every worker
        worker_count: Number of worker panes (>= 1)
        cwd: Project directory workers run in
        agent_type: Worker role; low-complexity roles default to a smaller model
        launch_args: Extra agent CLI args for every worker
        max_fix_attempts: Bound on team-fix entries
        notify_workers: Trigger each worker to read its inbox once ready
        ready_timeout_s: How long to wait for each worker prompt

    Returns:
        The persisted TeamConfig

    Raises:
        ValueError: invalid name or worker_count
        TeamExistsError: an active team with this name exists
        TmuxUnavailableError / TmuxCommandError: layout creation failed
    """
    name = sanitize_team_name(team_name)
    if worker_count < 1:
        raise ValueError(f"worker_count must be >= 1 (got {worker_count})")
    existing = store.read_team_state(name)
    if existing is not None and existing.active:
        raise TeamExistsError(f"Team '{name}' already exists and is active ({existing.phase.value})")

    fallback_model = TEAM_LOW_COMPLEXITY_DEFAULT_MODEL if is_low_complexity_agent_type(agent_type) else None
    extra_env = {ENV_STATE_ROOT: store.state_root, ENV_LEADER_CWD: os.path.abspath(cwd)}
    commands = [
        build_worker_startup_command(name, index, launch_args, cwd=cwd, extra_env=extra_env,
                                     fallback_model=fallback_model)
        for index in range(1, worker_count + 1)
    ]

    session = create_team_session(name, worker_count, cwd, commands)
    workers = [
        WorkerInfo(name=f"worker-{index}", index=index, role=agent_type, pane_id=pane_id)
        for index, pane_id in enumerate(session.worker_pane_ids, start=1)
    ]
    config = TeamConfig(
        name=name,
        tmux_session=session.target,
        task=task,
        agent_type=agent_type,
        worker_count=worker_count,
        leader_pane_id=session.leader_pane_id,
        workers=workers,
    )
    state = create_team_state(name, task, max_fix_attempts=max_fix_attempts, tmux_session=session.target)
    store.init_team(config, state)

    for worker in workers:
        pid = get_worker_pane_pid(session.target, worker.index, pane_id=worker.pane_id)
        store.write_heartbeat(name, worker.name, HeartbeatRecord(pid=pid, turn_count=0))
        store.write_worker_inbox(name, worker.name, _worker_inbox(config, worker, store.state_root))

    if session.name.startswith(SESSION_PREFIX):
        enable_mouse_scrolling(session.name)

    store.append_event(name, 'team_started', data={
        'worker_count': worker_count,
        'agent_type': agent_type,
        'tmux_session': session.target,
    })
    logger.info(f"Started team {name} with {worker_count} worker(s) in {session.target}")

    if notify_workers:
        notify = make_tmux_notifier(session.target, leader_pane_id=session.leader_pane_id)
        for worker in workers:
            if not wait_for_worker_ready(session.target, worker.index, ready_timeout_s, pane_id=worker.pane_id):
                continue
            queue_inbox_instruction(
                store, name, worker.name, worker.index,
                store.read_worker_inbox(name, worker.name),
                f"Read your inbox: $CODEX_TEAM_STATE_ROOT/team/{name}/workers/{worker.name}/inbox.md",
                notify, pane_id=worker.pane_id,
            )
    return config


def request_worker_shutdown(store, team: str, worker: str) -> ShutdownRequest:
    request = store.write_shutdown_request(team, worker)
    store.append_event(team, 'shutdown_requested', worker=worker)
    logger.info(f"Shutdown requested for {team}/{worker}")
    return request


def ack_worker_shutdown(store, team: str, worker: str) -> Optional[ShutdownRequest]:
    """Acknowledge a pending shutdown request; None when there is none."""
    request = store.ack_shutdown_request(team, worker)
    if request is None:
        logger.warning(f"No shutdown request to acknowledge for {team}/{worker}")
        return None
    store.append_event(team, 'shutdown_acked', worker=worker)
    return request


def _team_workers(store, team: str, config: Optional[TeamConfig]) -> List[WorkerInfo]:
    if config is not None and config.workers:
        return list(config.workers)
    workers = []
    for name in store.list_workers(team):
        suffix = name.rsplit('-', 1)[-1]
        if suffix.isdigit() and int(suffix) >= 1:
            workers.append(WorkerInfo(name=name, index=int(suffix)))
    return workers


def shutdown_team(store, team: str, leader_pane_id: Optional[str] = None,
                  ack_timeout_s: float = DEFAULT_ACK_TIMEOUT_S,
                  poll_interval_s: float = 0.5) -> Dict[str, Any]:
    """
    Shut a team's workers down.

    Writes a shutdown request for every worker, waits up to ack_timeout_s
    for acknowledgements, then kills every worker pane regardless and
    removes the worker records. Mailboxes are kept.

    Returns:
        Summary dict: success, acked, unacked, killed, session_killed

    Raises:
        TeamNotFoundError: no config or state for the team
    """
    config = store.read_team_config(team)
    if config is None and store.read_team_state(team) is None:
        raise TeamNotFoundError(f"No team '{team}'")

    leader_pane_id = leader_pane_id or (config.leader_pane_id if config else None)
    target = config.tmux_session if config else ''
    workers = _team_workers(store, team, config)

    for worker in workers:
        request_worker_shutdown(store, team, worker.name)

    pending = {worker.name for worker in workers}
    deadline = time.monotonic() + max(0.0, ack_timeout_s)
    while pending:
        for name in list(pending):
            request = store.read_shutdown_request(team, name)
            if request is not None and request.acked_at is not None:
                pending.discard(name)
        if not pending or time.monotonic() >= deadline:
            break
        time.sleep(poll_interval_s)

    if pending:
        logger.warning(f"Team {team}: no shutdown ack from {sorted(pending)} after {ack_timeout_s}s, killing anyway")

    killed = []
    for worker in workers:
        if target and kill_worker(target, worker.index, pane_id=worker.pane_id, leader_pane_id=leader_pane_id):
            killed.append(worker.name)
        store.remove_worker(team, worker.name)

    session = target.split(':', 1)[0]
    session_killed = bool(session) and session.startswith(SESSION_PREFIX) and kill_team_session(session)

    acked = sorted({w.name for w in workers} - pending)
    store.append_event(team, 'team_shutdown', data={
        'acked': acked,
        'unacked': sorted(pending),
        'killed': killed,
    })
    logger.info(f"Team {team}: shut down {len(killed)}/{len(workers)} worker pane(s)")
    return {
        'success': not pending,
        'team': team,
        'acked': acked,
        'unacked': sorted(pending),
        'killed': killed,
        'session_killed': session_killed,
    }


def cancel_team(store, team: str, reason: str = "cancelled by leader", **shutdown_kwargs: Any) -> Dict[str, Any]:
    """
    Move a team to cancelled, then shut its workers down.

    Raises:
        TeamNotFoundError: no state for the team
        InvalidPhaseTransitionError: team already terminal
    """
    state: TeamState = apply_phase_transition(store, team, TeamPhase.CANCELLED, reason)
    summary = shutdown_team(store, team, **shutdown_kwargs)
    summary['phase'] = state.phase.value
    return summary


def teardown_team(store, team: str) -> bool:
    """
    Delete every document of an inactive team.

    Raises:
        RuntimeError: the team is still active
    """
    state = store.read_team_state(team)
    if state is not None and state.active:
        raise RuntimeError(f"Team '{team}' is still active ({state.phase.value}); cancel or shut it down first")
    return store.delete_team(team)
