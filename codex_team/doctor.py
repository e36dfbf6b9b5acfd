"""
Team health diagnostics (`codex-team doctor --team`).

Each check is independent and only reads state; nothing is repaired.
Session checks are skipped entirely when tmux cannot be queried, since an
unreachable tmux server says nothing about whether a session exists.
"""

import time
import logging
from dataclasses import dataclass
from typing import List, Optional

from .config import (
    DEFAULT_SHUTDOWN_ACK_THRESHOLD_S,
    DEFAULT_STATUS_LAG_THRESHOLD_S,
    SESSION_PREFIX,
)
from .models import parse_iso_to_epoch
from .tmux_session import is_tmux_available, list_sessions

logger = logging.getLogger(__name__)

RESUME_BLOCKER = 'resume_blocker'
ORPHAN_TMUX_SESSION = 'orphan_tmux_session'
SLOW_SHUTDOWN = 'slow_shutdown'
DELAYED_STATUS_LAG = 'delayed_status_lag'


@dataclass
class TeamFinding:
    """One diagnostic result."""
    code: str
    message: str
    team: Optional[str] = None
    worker: Optional[str] = None


def _session_of(target: str) -> str:
    return target.split(':', 1)[0].split('.', 1)[0]


def _check_sessions(store, teams: List[str]) -> List[TeamFinding]:
    if not is_tmux_available():
        logger.info("tmux not available; skipping session checks")
        return []
    live = list_sessions()
    if live is None:
        logger.info("tmux list-sessions failed; skipping session checks")
        return []

    findings = []
    referenced = set()
    for team in teams:
        config = store.read_team_config(team)
        if config is None or not config.tmux_session:
            continue
        session = _session_of(config.tmux_session)
        referenced.add(session)
        state = store.read_team_state(team)
        if state is not None and not state.active:
            continue
        if session not in live:
            findings.append(TeamFinding(
                RESUME_BLOCKER,
                f"team {team} references tmux session {session} which is not running",
                team=team,
            ))

    for session in live:
        if session.startswith(SESSION_PREFIX) and session not in referenced:
            findings.append(TeamFinding(
                ORPHAN_TMUX_SESSION,
                f"tmux session {session} has no team state",
            ))
    return findings


def _check_workers(store, team: str, now: float, shutdown_threshold_s: float,
                   status_lag_threshold_s: float) -> List[TeamFinding]:
    findings = []
    for worker in store.list_workers(team):
        request = store.read_shutdown_request(team, worker)
        if request is not None and request.acked_at is None:
            requested = parse_iso_to_epoch(request.requested_at)
            if requested is not None and now - requested >= shutdown_threshold_s:
                findings.append(TeamFinding(
                    SLOW_SHUTDOWN,
                    f"{team}/{worker} has not acknowledged shutdown after {int(now - requested)}s",
                    team=team, worker=worker,
                ))

        status = store.read_worker_status(team, worker)
        if status is None or status.state != 'working':
            continue
        heartbeat = store.read_heartbeat(team, worker)
        last_turn = parse_iso_to_epoch(heartbeat.last_turn_at) if heartbeat else None
        if last_turn is not None and now - last_turn >= status_lag_threshold_s:
            findings.append(TeamFinding(
                DELAYED_STATUS_LAG,
                f"{team}/{worker} reports working but last turn was {int(now - last_turn)}s ago",
                team=team, worker=worker,
            ))
    return findings


def run_team_diagnostics(store, now: Optional[float] = None,
                         shutdown_threshold_s: float = DEFAULT_SHUTDOWN_ACK_THRESHOLD_S,
                         status_lag_threshold_s: float = DEFAULT_STATUS_LAG_THRESHOLD_S) -> List[TeamFinding]:
    """
    Run every team check.

    Args:
        store: TeamStore to inspect
        now: Epoch seconds (defaults to time.time())
        shutdown_threshold_s: Age at which an unacked shutdown request is slow
        status_lag_threshold_s: Heartbeat age at which "working" is suspicious

    Returns:
        Findings in check order; empty when healthy
    """
    now = now if now is not None else time.time()
    teams = store.list_teams()
    findings = _check_sessions(store, teams)
    for team in teams:
        findings.extend(_check_workers(store, team, now, shutdown_threshold_s, status_lag_threshold_s))
    return findings


def format_finding(finding: TeamFinding) -> str:
    return f"[XX] {finding.code}: {finding.message}"


def doctor_team(store) -> int:
    """Print findings. Returns 1 if anything was found, else 0."""
    findings = run_team_diagnostics(store)
    print("codex-team doctor --team")
    print("========================")
    if not findings:
        print("[OK] team diagnostics: no issues")
        return 0
    for finding in findings:
        print(format_finding(finding))
    print(f"\n{len(findings)} issue(s) found")
    return 1
