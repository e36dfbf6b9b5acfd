"""
Configuration Module for Codex Team

Environment-driven settings shared by every coordination module:
- State root resolution (project-scoped, overridable for workers whose
  state directory is not colocated with their working directory)
- Leader nudge interval and staleness threshold (clamped)
- Worker identity and launch variables
"""

import os
import logging
from typing import Optional

logger = logging.getLogger(__name__)

# ============================================================================
# ENVIRONMENT VARIABLE NAMES
# ============================================================================

ENV_TEAM_WORKER = 'CODEX_TEAM_WORKER'
ENV_STATE_ROOT = 'CODEX_TEAM_STATE_ROOT'
ENV_LEADER_CWD = 'CODEX_TEAM_LEADER_CWD'
ENV_LEADER_NUDGE_MS = 'CODEX_TEAM_LEADER_NUDGE_MS'
ENV_LEADER_STALE_MS = 'CODEX_TEAM_LEADER_STALE_MS'
ENV_BYPASS_DEFAULT_SYSTEM_PROMPT = 'CODEX_TEAM_BYPASS_DEFAULT_SYSTEM_PROMPT'
ENV_MODEL_INSTRUCTIONS_FILE = 'CODEX_TEAM_MODEL_INSTRUCTIONS_FILE'
ENV_AGENT_CMD = 'CODEX_TEAM_AGENT_CMD'
ENV_WORKER_LAUNCH_ARGS = 'CODEX_TEAM_WORKER_LAUNCH_ARGS'
ENV_LOG_LEVEL = 'CODEX_TEAM_LOG_LEVEL'

# ============================================================================
# CONSTANTS
# ============================================================================

STATE_DIR_NAME = '.codex-team'
LEADER_WORKER_NAME = 'leader-fixed'
SESSION_PREFIX = 'codex-team-'
INJECT_MARKER = '[CODEX_TEAM_INJECT]'

DEFAULT_AGENT_CMD = os.getenv(ENV_AGENT_CMD, 'codex')
DEFAULT_MAX_FIX_ATTEMPTS = 3

# Nudge interval / leader staleness (milliseconds)
DEFAULT_LEADER_NUDGE_MS = 120_000
DEFAULT_LEADER_STALE_MS = 180_000
MIN_INTERVAL_MS = 10_000
MAX_INTERVAL_MS = 30 * 60_000

# Doctor thresholds (seconds)
DEFAULT_SHUTDOWN_ACK_THRESHOLD_S = 30
DEFAULT_STATUS_LAG_THRESHOLD_S = 60

# Heartbeat freshness used by is_worker_alive (seconds)
DEFAULT_HEARTBEAT_STALE_S = 300

__all__ = [
    'ENV_TEAM_WORKER',
    'ENV_STATE_ROOT',
    'ENV_LEADER_CWD',
    'ENV_LEADER_NUDGE_MS',
    'ENV_LEADER_STALE_MS',
    'ENV_BYPASS_DEFAULT_SYSTEM_PROMPT',
    'ENV_MODEL_INSTRUCTIONS_FILE',
    'ENV_AGENT_CMD',
    'ENV_WORKER_LAUNCH_ARGS',
    'ENV_LOG_LEVEL',
    'STATE_DIR_NAME',
    'LEADER_WORKER_NAME',
    'SESSION_PREFIX',
    'INJECT_MARKER',
    'DEFAULT_AGENT_CMD',
    'DEFAULT_MAX_FIX_ATTEMPTS',
    'DEFAULT_LEADER_NUDGE_MS',
    'DEFAULT_LEADER_STALE_MS',
    'DEFAULT_SHUTDOWN_ACK_THRESHOLD_S',
    'DEFAULT_STATUS_LAG_THRESHOLD_S',
    'DEFAULT_HEARTBEAT_STALE_S',
    'resolve_state_root',
    'resolve_logs_dir',
    'resolve_clamped_ms',
    'parse_worker_identity',
]


# ============================================================================
# RESOLVERS
# ============================================================================

def resolve_state_root(cwd: Optional[str] = None) -> str:
    """
    Resolve the state root directory.

    CODEX_TEAM_STATE_ROOT wins when set (workers launched in a different
    working directory than the leader point it at the leader's state).
    Otherwise the root is <cwd>/.codex-team/state.

    Args:
        cwd: Project directory (defaults to the process cwd)

    Returns:
        Absolute path of the state root (not created)
    """
    override = os.environ.get(ENV_STATE_ROOT, '').strip()
    if override:
        return os.path.abspath(override)
    base = cwd or os.environ.get(ENV_LEADER_CWD, '').strip() or os.getcwd()
    return os.path.abspath(os.path.join(base, STATE_DIR_NAME, 'state'))


def resolve_logs_dir(state_root: str) -> str:
    """Logs live beside the state root: <root>/../logs."""
    return os.path.join(os.path.dirname(os.path.abspath(state_root)), 'logs')


def resolve_clamped_ms(env_name: str, default_ms: int) -> int:
    """
    Read a millisecond duration from the environment.

    Values outside [10s, 30min] or that do not parse fall back to the
    default rather than being clamped to the nearest bound.
    """
    raw = os.environ.get(env_name, '').strip()
    if not raw:
        return default_ms
    try:
        parsed = float(raw)
    except ValueError:
        logger.warning(f"Ignoring non-numeric {env_name}={raw!r}")
        return default_ms
    if MIN_INTERVAL_MS <= parsed <= MAX_INTERVAL_MS:
        return int(parsed)
    logger.warning(f"Ignoring out-of-range {env_name}={raw!r} (allowed {MIN_INTERVAL_MS}-{MAX_INTERVAL_MS})")
    return default_ms


def parse_worker_identity(value: Optional[str] = None) -> Optional[tuple]:
    """
    Parse the worker identity variable (<team>/worker-<index>).

    Returns:
        (team_name, worker_name) or None when not running as a team worker
    """
    raw = (value if value is not None else os.environ.get(ENV_TEAM_WORKER, '')).strip()
    if not raw or '/' not in raw:
        return None
    team, worker = raw.split('/', 1)
    if not team or not worker:
        return None
    return team, worker
