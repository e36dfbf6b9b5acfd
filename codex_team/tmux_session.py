"""
Worker Process Manager for Codex Team.

Creates the team's tmux layout, launches one agent CLI per worker pane,
injects short trigger messages and kills workers. Every tmux invocation is
a subprocess call with a timeout; read-style queries degrade to empty/False
when tmux is missing or not responding.

Pane addressing: pane 0 of the team window hosts the leader, worker i lives
at pane index i. When a pane id (%N) was recorded it is preferred over the
index target.
"""

import os
import sys
import time
import shlex
import logging
import subprocess
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .config import (
    DEFAULT_HEARTBEAT_STALE_S,
    ENV_AGENT_CMD,
    ENV_BYPASS_DEFAULT_SYSTEM_PROMPT,
    ENV_LEADER_CWD,
    ENV_MODEL_INSTRUCTIONS_FILE,
    ENV_STATE_ROOT,
    ENV_TEAM_WORKER,
    ENV_WORKER_LAUNCH_ARGS,
    INJECT_MARKER,
    SESSION_PREFIX,
)
from .model_contract import (
    INSTRUCTIONS_KEY,
    collect_inheritable_worker_args,
    has_config_override,
    resolve_worker_launch_args,
)
from .models import HeartbeatRecord, parse_iso_to_epoch

logger = logging.getLogger(__name__)

QUERY_TIMEOUT_S = 3
MUTATION_TIMEOUT_S = 5
MAX_TRIGGER_LENGTH = 200
SUBMIT_DELAY_S = 0.1
MAX_TEAM_NAME_LENGTH = 30

# Substrings that show the agent CLI has drawn its input prompt
READY_MARKERS = ('›', 'context left', 'for shortcuts')

__all__ = [
    'TmuxUnavailableError',
    'TmuxCommandError',
    'TeamSession',
    'is_tmux_available',
    'is_wsl2',
    'sleep_fractional_seconds',
    'sanitize_team_name',
    'team_session_name',
    'create_team_session',
    'build_worker_startup_command',
    'inject_text',
    'send_to_worker',
    'is_worker_alive',
    'get_worker_pane_id',
    'get_worker_pane_pid',
    'list_sessions',
    'list_team_sessions',
    'list_session_panes',
    'wait_for_worker_ready',
    'kill_worker',
    'kill_worker_by_pane_id',
    'kill_team_session',
    'enable_mouse_scrolling',
    'build_scroll_copy_bindings',
]


class TmuxUnavailableError(RuntimeError):
    """tmux is not installed or not on PATH."""


class TmuxCommandError(RuntimeError):
    """A tmux command that must succeed returned non-zero or timed out."""


@dataclass
class TeamSession:
    """Handle to a created team layout."""
    name: str
    target: str
    leader_pane_id: Optional[str] = None
    worker_pane_ids: List[str] = field(default_factory=list)


# ============================================================================
# TMUX PRIMITIVES
# ============================================================================

def _run_tmux(args: Sequence[str], timeout: float = QUERY_TIMEOUT_S) -> Optional[subprocess.CompletedProcess]:
    """Run one tmux command. Returns None when tmux cannot be run or times out."""
    cmd = ['tmux', *args]
    try:
        return subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except OSError as e:
        logger.debug(f"tmux not runnable ({e}): {' '.join(args[:2])}")
        return None
    except subprocess.TimeoutExpired:
        logger.warning(f"tmux {args[0]} timed out after {timeout}s")
        return None


def _tmux_ok(args: Sequence[str], timeout: float = MUTATION_TIMEOUT_S) -> bool:
    result = _run_tmux(args, timeout=timeout)
    if result is None:
        return False
    if result.returncode != 0:
        logger.debug(f"tmux {args[0]} failed: {result.stderr.strip()}")
        return False
    return True


def _tmux_required(args: Sequence[str], timeout: float = MUTATION_TIMEOUT_S) -> str:
    """Run a tmux command that must succeed; return its stripped stdout."""
    result = _run_tmux(args, timeout=timeout)
    if result is None:
        raise TmuxCommandError(f"tmux {args[0]} did not complete")
    if result.returncode != 0:
        raise TmuxCommandError(f"tmux {args[0]} failed: {result.stderr.strip()}")
    return result.stdout.strip()


def _worker_target(session: str, index: int, pane_id: Optional[str] = None) -> str:
    if pane_id:
        return pane_id
    return f"{session}.{index}"


def is_tmux_available() -> bool:
    """Check if tmux is available"""
    try:
        result = subprocess.run(['tmux', '-V'], capture_output=True, text=True, timeout=QUERY_TIMEOUT_S)
        return result.returncode == 0
    except (OSError, subprocess.TimeoutExpired):
        logger.debug("tmux not available or not responding")
        return False


def is_wsl2() -> bool:
    if os.environ.get('WSL_DISTRO_NAME') or os.environ.get('WSL_INTEROP'):
        return True
    try:
        with open('/proc/version', 'r') as f:
            return 'microsoft' in f.read().lower()
    except OSError:
        return False


def sleep_fractional_seconds(seconds: float) -> None:
    if seconds > 0:
        time.sleep(seconds)


# ============================================================================
# NAMING
# ============================================================================

def sanitize_team_name(name: str) -> str:
    """
    Normalize a team name for use in session names and paths.

    Lowercase, anything outside [a-z0-9-] becomes '-', runs of '-' collapse,
    leading/trailing '-' are stripped, result truncated to 30 characters.

    Raises:
        ValueError: nothing usable remains
    """
    lowered = (name or '').lower()
    chars = [c if ('a' <= c <= 'z' or '0' <= c <= '9' or c == '-') else '-' for c in lowered]
    collapsed = '-'.join(part for part in ''.join(chars).split('-') if part)
    truncated = collapsed[:MAX_TEAM_NAME_LENGTH].strip('-')
    if not truncated:
        raise ValueError(f"Invalid team name: {name!r} (no alphanumeric characters)")
    return truncated


def team_session_name(team: str) -> str:
    return f"{SESSION_PREFIX}{sanitize_team_name(team)}"


# ============================================================================
# SESSION CREATION
# ============================================================================

def create_team_session(name: str, worker_count: int, cwd: str,
                        worker_commands: Optional[Sequence[Optional[str]]] = None) -> TeamSession:
    """
    Create the team layout: the leader pane plus one pane per worker.

    Inside tmux the leader's current window is split; outside tmux a
    detached session is created whose first pane hosts a leader shell.

    Args:
        name: Team name (sanitized for the session name)
        worker_count: Number of worker panes to create
        cwd: Working directory for new panes
        worker_commands: Optional per-worker startup commands (None = shell)

    Returns:
        TeamSession describing the created panes

    Raises:
        TmuxUnavailableError: tmux is not available
        TmuxCommandError: a tmux step failed
    """
    if not is_tmux_available():
        raise TmuxUnavailableError("tmux is not available")

    fmt = '#{pane_id} #{session_name}:#{window_index}'
    created_session = not os.environ.get('TMUX')
    if not created_session:
        leader_pane = os.environ.get('TMUX_PANE', '')
        args = ['display-message', '-p']
        if leader_pane:
            args += ['-t', leader_pane]
        out = _tmux_required([*args, fmt], timeout=QUERY_TIMEOUT_S)
    else:
        session_name = team_session_name(name)
        out = _tmux_required(['new-session', '-d', '-s', session_name, '-c', cwd, '-P', '-F', fmt])

    leader_pane_id, target = out.split(' ', 1)
    session_name = target.rsplit(':', 1)[0]
    logger.info(f"Team {name}: leader pane {leader_pane_id} in {target}")

    worker_pane_ids: List[str] = []
    try:
        for i in range(worker_count):
            command = worker_commands[i] if worker_commands and i < len(worker_commands) else None
            split = ['split-window', '-d', '-t', target, '-c', cwd, '-P', '-F', '#{pane_id}']
            if command:
                split.append(command)
            pane_id = _tmux_required(split)
            worker_pane_ids.append(pane_id)
            # re-tile after every split so later splits still have room
            _tmux_ok(['select-layout', '-t', target, 'tiled'])
            logger.info(f"Team {name}: worker-{i + 1} pane {pane_id}")
    except TmuxCommandError:
        logger.error(f"Team {name}: layout failed after {len(worker_pane_ids)} worker pane(s), rolling back")
        for pane_id in worker_pane_ids:
            kill_worker_by_pane_id(pane_id, leader_pane_id)
        if created_session:
            kill_team_session(session_name)
        raise

    return TeamSession(
        name=session_name,
        target=target,
        leader_pane_id=leader_pane_id,
        worker_pane_ids=worker_pane_ids,
    )


def _rc_source_line(shell: str) -> str:
    base = os.path.basename(shell)
    if base == 'zsh':
        return 'if [ -f ~/.zshrc ]; then source ~/.zshrc; fi; '
    if base == 'bash':
        return 'if [ -f ~/.bashrc ]; then source ~/.bashrc; fi; '
    return 'if [ -f ~/.profile ]; then . ~/.profile; fi; '


def build_worker_startup_command(team: str, worker_index: int, launch_args: Sequence[str] = (),
                                 cwd: Optional[str] = None, extra_env: Optional[Mapping[str, str]] = None,
                                 argv: Optional[Sequence[str]] = None,
                                 fallback_model: Optional[str] = None) -> str:
    """
    Build the shell command a worker pane runs.

    The agent is exec'd from a login shell so it becomes the pane's terminal
    process with the user's rc file loaded. Inheritable flags from the
    leader's argv are merged with launch_args and deduplicated.

    Args:
        team: Team name
        worker_index: 1-based worker index
        launch_args: Explicit agent CLI args for this worker
        cwd: Project directory (locates the default AGENTS.md)
        extra_env: Additional environment assignments
        argv: Leader argv to inherit from (defaults to sys.argv[1:])
        fallback_model: Model used when neither explicit nor inherited args name one

    Returns:
        A single shell command string, every value shell-quoted
    """
    shell = os.environ.get('SHELL') or '/bin/sh'
    inherited = collect_inheritable_worker_args(list(argv) if argv is not None else sys.argv[1:])
    explicit = shlex.split(os.environ.get(ENV_WORKER_LAUNCH_ARGS, '')) + list(launch_args)
    args = resolve_worker_launch_args(explicit, inherited, fallback_model)

    if os.environ.get(ENV_BYPASS_DEFAULT_SYSTEM_PROMPT, '1') != '0' and not has_config_override(args, INSTRUCTIONS_KEY):
        instructions = os.environ.get(ENV_MODEL_INSTRUCTIONS_FILE) or os.path.join(cwd or os.getcwd(), 'AGENTS.md')
        args += ['-c', f'{INSTRUCTIONS_KEY}="{instructions}"']

    env: Dict[str, str] = {ENV_TEAM_WORKER: f"{team}/worker-{worker_index}"}
    for name in (ENV_STATE_ROOT, ENV_LEADER_CWD):
        if os.environ.get(name):
            env[name] = os.environ[name]
    env.update(extra_env or {})

    agent = os.environ.get(ENV_AGENT_CMD) or 'codex'
    inner = _rc_source_line(shell) + f"exec {agent}"
    if args:
        inner += ' ' + ' '.join(shlex.quote(a) for a in args)

    assignments = ' '.join(f"{key}={shlex.quote(str(value))}" for key, value in env.items())
    return f"env {assignments} {shlex.quote(shell)} -lc {shlex.quote(inner)}"


# ============================================================================
# MESSAGE INJECTION
# ============================================================================

def inject_text(target: str, text: str) -> bool:
    """Type text literally into a pane, then submit it (C-m twice, 100 ms apart)."""
    if not _tmux_ok(['send-keys', '-t', target, '-l', text], timeout=QUERY_TIMEOUT_S):
        logger.warning(f"Failed to type into {target}")
        return False
    # two submits: the first can be swallowed while the CLI is redrawing
    for _ in range(2):
        sleep_fractional_seconds(SUBMIT_DELAY_S)
        if not _tmux_ok(['send-keys', '-t', target, 'C-m'], timeout=QUERY_TIMEOUT_S):
            logger.warning(f"Failed to submit input in {target}")
            return False
    return True


def send_to_worker(session: str, worker_index: int, text: str, pane_id: Optional[str] = None) -> bool:
    """
    Type a short trigger message into a worker pane and submit it.

    Raises:
        ValueError: text is 200+ characters or contains the injection marker
    """
    if len(text) >= MAX_TRIGGER_LENGTH:
        raise ValueError(f"Trigger message must be < {MAX_TRIGGER_LENGTH} characters (got {len(text)})")
    if INJECT_MARKER in text:
        raise ValueError(f"Trigger message must not contain the injection marker {INJECT_MARKER}")
    return inject_text(_worker_target(session, worker_index, pane_id), text)


# ============================================================================
# QUERIES
# ============================================================================

def _heartbeat_fresh(heartbeat: HeartbeatRecord, stale_after: float) -> bool:
    if not heartbeat.alive:
        return False
    last = parse_iso_to_epoch(heartbeat.last_turn_at)
    if last is None:
        return False
    return time.time() - last <= stale_after


def is_worker_alive(session: str, worker_index: int, heartbeat: Optional[HeartbeatRecord] = None,
                    pane_id: Optional[str] = None, stale_after: float = DEFAULT_HEARTBEAT_STALE_S) -> bool:
    """
    Pane exists and is not dead; when a heartbeat is given it must be fresh.

    The pane's current command is not consulted: the agent runs under a
    login shell and may show up as node, a wrapper or the shell itself.
    """
    result = _run_tmux(['display-message', '-p', '-t', _worker_target(session, worker_index, pane_id), '#{pane_dead}'])
    if result is None or result.returncode != 0:
        return False
    if result.stdout.strip() != '0':
        return False
    if heartbeat is not None:
        return _heartbeat_fresh(heartbeat, stale_after)
    return True


def get_worker_pane_id(session: str, worker_index: int) -> Optional[str]:
    result = _run_tmux(['display-message', '-p', '-t', _worker_target(session, worker_index), '#{pane_id}'])
    if result is None or result.returncode != 0:
        return None
    pane_id = result.stdout.strip()
    return pane_id if pane_id.startswith('%') else None


def get_worker_pane_pid(session: str, worker_index: int, pane_id: Optional[str] = None) -> Optional[int]:
    result = _run_tmux(['display-message', '-p', '-t', _worker_target(session, worker_index, pane_id), '#{pane_pid}'])
    if result is None or result.returncode != 0:
        return None
    try:
        return int(result.stdout.strip())
    except ValueError:
        return None


def list_sessions() -> Optional[List[str]]:
    """All live tmux session names; None when tmux is missing or list-sessions fails."""
    result = _run_tmux(['list-sessions', '-F', '#{session_name}'])
    if result is None or result.returncode != 0:
        return None
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


def list_team_sessions() -> List[str]:
    """Names of live tmux sessions created for teams."""
    return [name for name in list_sessions() or [] if name.startswith(SESSION_PREFIX)]


def list_session_panes(target: str) -> List[Dict[str, Any]]:
    """Panes of a session/window as dicts with pane_id, pane_pid, pane_dead."""
    result = _run_tmux(['list-panes', '-t', target, '-F', '#{pane_id} #{pane_pid} #{pane_dead}'])
    if result is None or result.returncode != 0:
        return []
    panes = []
    for line in result.stdout.splitlines():
        parts = line.split()
        if len(parts) < 2 or not parts[0].startswith('%'):
            continue
        try:
            pid = int(parts[1])
        except ValueError:
            pid = None
        panes.append({
            'pane_id': parts[0],
            'pane_pid': pid,
            'pane_dead': len(parts) > 2 and parts[2] == '1',
        })
    return panes


def wait_for_worker_ready(session: str, worker_index: int, timeout_s: float = 15,
                          pane_id: Optional[str] = None, poll_interval: float = 0.25) -> bool:
    """Poll the pane until the agent prompt is drawn; False on timeout."""
    target = _worker_target(session, worker_index, pane_id)
    deadline = time.monotonic() + max(0.0, timeout_s)
    while True:
        result = _run_tmux(['capture-pane', '-p', '-t', target])
        if result is not None and result.returncode == 0:
            if any(marker in result.stdout for marker in READY_MARKERS):
                return True
        if time.monotonic() >= deadline:
            logger.warning(f"Worker pane {target} not ready after {timeout_s}s")
            return False
        sleep_fractional_seconds(poll_interval)


# ============================================================================
# TEARDOWN
# ============================================================================

def kill_worker_by_pane_id(pane_id: str, leader_pane_id: Optional[str] = None) -> bool:
    """
    Kill one pane by id.

    The leader's own pane is never killed (reported as success). Ids that
    are not %N are skipped. tmux failures are logged, not raised.
    """
    if leader_pane_id and pane_id == leader_pane_id:
        logger.warning(f"Refusing to kill leader pane {pane_id}")
        return True
    if not pane_id or not pane_id.startswith('%'):
        logger.warning(f"Skipping kill of invalid pane id {pane_id!r}")
        return False
    if not _tmux_ok(['kill-pane', '-t', pane_id]):
        logger.warning(f"Failed to kill pane {pane_id}")
        return False
    return True


def kill_worker(session: str, worker_index: int, pane_id: Optional[str] = None,
                leader_pane_id: Optional[str] = None) -> bool:
    """Ask the agent to exit (C-c, /exit), then kill its pane."""
    target = _worker_target(session, worker_index, pane_id)
    if leader_pane_id and target == leader_pane_id:
        logger.warning(f"Refusing to kill leader pane {leader_pane_id}")
        return True

    _tmux_ok(['send-keys', '-t', target, 'C-c'])
    sleep_fractional_seconds(SUBMIT_DELAY_S)
    _tmux_ok(['send-keys', '-t', target, '-l', '/exit'])
    _tmux_ok(['send-keys', '-t', target, 'C-m'])
    sleep_fractional_seconds(SUBMIT_DELAY_S)

    if pane_id:
        return kill_worker_by_pane_id(pane_id, leader_pane_id)
    if not _tmux_ok(['kill-pane', '-t', target]):
        logger.warning(f"Failed to kill worker pane {target}")
        return False
    return True


def kill_team_session(session: str) -> bool:
    """Kill a team's detached session. Sessions without the team prefix are left alone."""
    if not session.startswith(SESSION_PREFIX):
        logger.warning(f"Not killing non-team session {session!r}")
        return False
    return _tmux_ok(['kill-session', '-t', session])


# ============================================================================
# MOUSE / SCROLLBACK
# ============================================================================

def build_scroll_copy_bindings() -> List[List[str]]:
    """tmux argument lists for wheel-scroll into copy mode and drag-to-copy."""
    return [
        ['bind-key', '-n', 'WheelUpPane',
         'if-shell', '-F', '#{pane_in_mode}', 'send-keys -M', 'copy-mode -e'],
        ['bind-key', '-T', 'copy-mode', 'MouseDragEnd1Pane',
         'send-keys', '-X', 'copy-selection-and-cancel'],
    ]


def enable_mouse_scrolling(target: str) -> bool:
    """Turn on mouse mode for a team session. Best effort, never raises."""
    if not target or not is_tmux_available():
        return False
    if not _tmux_ok(['set-option', '-t', target, 'mouse', 'on']):
        return False
    if is_wsl2():
        _tmux_ok(['set-option', '-ga', 'terminal-overrides', ',*:XT'])
    for binding in build_scroll_copy_bindings():
        _tmux_ok(binding)
    return True
