#!/usr/bin/env python3
"""
Codex Team MCP Server

A Model Context Protocol (MCP) server giving the leader and workers tool
access to team state: mode documents, team status, mailbox messaging,
phase transitions and health diagnostics.

License: MIT
"""

from fastmcp import FastMCP
from typing import Dict, List, Optional, Any
import os
import sys
import logging

from codex_team.config import ENV_LOG_LEVEL, LEADER_WORKER_NAME, resolve_state_root
from codex_team.doctor import run_team_diagnostics, format_finding
from codex_team.kv_store import ModeStateStore
from codex_team.mailbox import (
    NotifierTarget,
    make_tmux_notifier,
    queue_broadcast_mailbox_message,
    queue_direct_mailbox_message,
)
from codex_team.phases import (
    InvalidPhaseTransitionError,
    apply_phase_transition,
    can_resume_team_state,
    get_phase_agents,
    get_phase_instructions,
)
from codex_team.state import TeamNotFoundError, TeamStore
from codex_team.tmux_session import sanitize_team_name

# Initialize MCP server
mcp = FastMCP("Codex Team")

logger = logging.getLogger(__name__)


def _store(working_directory: Optional[str] = None) -> TeamStore:
    return TeamStore(resolve_state_root(working_directory))


def _modes(working_directory: Optional[str] = None) -> ModeStateStore:
    return ModeStateStore(resolve_state_root(working_directory))


def _error(message: str) -> Dict[str, Any]:
    return {"success": False, "error": message}


def _invalid_team(team: str) -> Optional[Dict[str, Any]]:
    """Error result unless team is already a sanitized team name (keeps paths inside the state root)."""
    try:
        valid = sanitize_team_name(team) == team
    except ValueError:
        valid = False
    return None if valid else _error(f"Invalid team name: {team!r}")


def _leader_mailbox_notifier(store: TeamStore, team: str):
    """Terminal-phase notifications land in the leader's mailbox, where the nudge service sees them."""
    def notify(payload: Dict[str, Any]) -> None:
        store.append_mailbox_message(team, 'system', LEADER_WORKER_NAME, f"{payload['title']}: {payload['message']}")
    return notify


# ============================================================================
# MODE STATE TOOLS
# ============================================================================

@mcp.tool
def state_read(namespace: str, working_directory: Optional[str] = None) -> Dict[str, Any]:
    """
    Read one mode state document.

    Args:
        namespace: Mode name, e.g. "team" or "ralph"
        working_directory: Project directory (defaults to the server's cwd)

    Returns:
        {"success": True, "exists": bool, "data": {...}}
    """
    try:
        data = _modes(working_directory).read(namespace)
    except ValueError as e:
        return _error(str(e))
    return {"success": True, "exists": data is not None, "data": data or {}}


@mcp.tool
def state_write(namespace: str, fields: Dict[str, Any], working_directory: Optional[str] = None) -> Dict[str, Any]:
    """
    Merge fields into a mode state document (created if missing).

    Args:
        namespace: Mode name
        fields: Keys to set; existing keys not listed are kept
        working_directory: Project directory

    Returns:
        {"success": True, "data": merged document}
    """
    try:
        data = _modes(working_directory).write(namespace, fields)
    except ValueError as e:
        return _error(str(e))
    return {"success": True, "data": data}


@mcp.tool
def state_clear(namespace: str, working_directory: Optional[str] = None) -> Dict[str, Any]:
    """Delete a mode state document."""
    try:
        removed = _modes(working_directory).delete(namespace)
    except ValueError as e:
        return _error(str(e))
    return {"success": True, "removed": removed}


@mcp.tool
def state_list_active(working_directory: Optional[str] = None) -> Dict[str, Any]:
    """List modes whose state document has active == true."""
    return {"success": True, "active_modes": _modes(working_directory).list()}


@mcp.tool
def state_get_status(namespace: Optional[str] = None, working_directory: Optional[str] = None) -> Dict[str, Any]:
    """Detailed status for one mode, or for all modes when namespace is omitted."""
    return {"success": True, "statuses": _modes(working_directory).get_status(namespace)}


# ============================================================================
# TEAM TOOLS
# ============================================================================

@mcp.tool
def team_status(team: Optional[str] = None, working_directory: Optional[str] = None) -> Dict[str, Any]:
    """
    Status of one team, or of every active team.

    Args:
        team: Team name (omit for all active teams)
        working_directory: Project directory

    Returns:
        {"success": True, "teams": [{name, phase, active, resumable, workers, ...}]}
    """
    if team:
        invalid = _invalid_team(team)
        if invalid:
            return invalid
    store = _store(working_directory)
    names = [team] if team else store.list_active_teams()
    teams: List[Dict[str, Any]] = []
    for name in names:
        state = store.read_team_state(name)
        if state is None:
            return _error(f"No team '{name}'")
        workers = {
            worker: store.read_worker_record(name, worker).model_dump(mode='json', exclude={'mailbox', 'inbox'})
            for worker in store.list_workers(name)
        }
        leader_messages = store.list_mailbox_messages(name, LEADER_WORKER_NAME)
        teams.append({
            "name": name,
            "phase": state.phase.value,
            "active": state.active,
            "resumable": can_resume_team_state(state),
            "fix_attempts": f"{state.current_fix_attempt}/{state.max_fix_attempts}",
            "phase_agents": get_phase_agents(state.phase),
            "phase_instructions": get_phase_instructions(state.phase),
            "tasks": [task.model_dump(mode='json') for task in state.tasks],
            "workers": workers,
            "leader_mailbox": [m.model_dump(mode='json') for m in leader_messages],
        })
    return {"success": True, "teams": teams}


@mcp.tool
def team_send_message(team: str, from_worker: str, to_worker: str, body: str,
                      trigger_message: Optional[str] = None,
                      working_directory: Optional[str] = None) -> Dict[str, Any]:
    """
    Send a direct message to one worker (or to the leader as "leader-fixed").

    The message is stored first; the recipient pane is then poked with a
    short trigger. notified_at is set only when the poke succeeded.

    Args:
        team: Team name
        from_worker: Sender name
        to_worker: Recipient worker name or "leader-fixed"
        body: Message body (any length)
        trigger_message: Text typed into the recipient's pane (< 200 chars)
        working_directory: Project directory

    Returns:
        {"success": True, "message": {...}, "notified": bool}
    """
    invalid = _invalid_team(team)
    if invalid:
        return invalid
    store = _store(working_directory)
    config = store.read_team_config(team)
    if config is None:
        return _error(f"No team '{team}'")
    recipient = next((w for w in config.workers if w.name == to_worker), None)
    if recipient is None and to_worker != LEADER_WORKER_NAME:
        return _error(f"Unknown worker '{to_worker}' in team '{team}'")

    trigger = trigger_message or f"New message from {from_worker} in your {team} mailbox"
    try:
        message = queue_direct_mailbox_message(
            store, team, from_worker, to_worker, body, trigger,
            make_tmux_notifier(config.tmux_session, config.leader_pane_id),
            to_worker_index=recipient.index if recipient else None,
            to_pane_id=recipient.pane_id if recipient else None,
        )
    except OSError as e:
        logger.error(f"Failed to store message for {team}/{to_worker}: {e}")
        return _error(f"Failed to store message: {e}")
    return {"success": True, "message": message.model_dump(mode='json'), "notified": message.notified_at is not None}


@mcp.tool
def team_broadcast(team: str, from_worker: str, body: str,
                   working_directory: Optional[str] = None) -> Dict[str, Any]:
    """
    Send one message to every worker except the sender.

    Returns:
        {"success": True, "delivered": n, "notified": m, "messages": [...]}
    """
    invalid = _invalid_team(team)
    if invalid:
        return invalid
    store = _store(working_directory)
    config = store.read_team_config(team)
    if config is None:
        return _error(f"No team '{team}'")
    recipients = [NotifierTarget(w.name, w.index, w.pane_id) for w in config.workers]
    try:
        messages = queue_broadcast_mailbox_message(
            store, team, from_worker, recipients, body,
            lambda name: f"New broadcast from {from_worker} in your {team} mailbox",
            make_tmux_notifier(config.tmux_session, config.leader_pane_id),
        )
    except OSError as e:
        logger.error(f"Broadcast for team {team} failed: {e}")
        return _error(f"Broadcast failed: {e}")
    return {
        "success": True,
        "delivered": len(messages),
        "notified": sum(1 for m in messages if m.notified_at),
        "messages": [m.model_dump(mode='json') for m in messages],
    }


@mcp.tool
def team_transition_phase(team: str, to_phase: str, reason: Optional[str] = None,
                          working_directory: Optional[str] = None) -> Dict[str, Any]:
    """
    Move a team to another phase.

    Entering team-fix past the fix-attempt limit moves the team to failed
    instead; the returned phase shows which happened.

    Returns:
        {"success": True, "phase": ..., "active": bool, "transition": {...}}
    """
    invalid = _invalid_team(team)
    if invalid:
        return invalid
    store = _store(working_directory)
    try:
        state = apply_phase_transition(store, team, to_phase, reason, notifier=_leader_mailbox_notifier(store, team))
    except (InvalidPhaseTransitionError, TeamNotFoundError) as e:
        return _error(str(e))
    return {
        "success": True,
        "phase": state.phase.value,
        "active": state.active,
        "current_fix_attempt": state.current_fix_attempt,
        "transition": state.phase_transitions[-1].model_dump(mode='json', by_alias=True),
    }


@mcp.tool
def team_health(working_directory: Optional[str] = None) -> Dict[str, Any]:
    """Run team diagnostics; healthy when there are no findings."""
    findings = run_team_diagnostics(_store(working_directory))
    return {
        "success": True,
        "healthy": not findings,
        "findings": [
            {"code": f.code, "team": f.team, "worker": f.worker, "message": f.message, "line": format_finding(f)}
            for f in findings
        ],
    }


def main():
    # stdout carries the MCP protocol
    logging.basicConfig(
        level=getattr(logging, os.environ.get(ENV_LOG_LEVEL, 'INFO').upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        stream=sys.stderr,
    )
    logger.info(f"Codex Team MCP server, state root {resolve_state_root()}")
    mcp.run()


if __name__ == "__main__":
    main()
