"""
Leader Nudge Service for Codex Team.

Runs from the agent's turn-complete hook. After each leader turn it checks
every active team and, rate limited per team, types a short reminder into
the leader's pane when workers are still running or messages are waiting.

Staleness is decided from the leader heartbeat as it was *before* the
current turn updated it; otherwise the leader would never look stale.
"""

import json
import os
import time
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from .config import (
    DEFAULT_LEADER_NUDGE_MS,
    DEFAULT_LEADER_STALE_MS,
    ENV_LEADER_NUDGE_MS,
    ENV_LEADER_STALE_MS,
    INJECT_MARKER,
    LEADER_WORKER_NAME,
    parse_worker_identity,
    resolve_clamped_ms,
    resolve_logs_dir,
)
from .kv_store import ModeStateStore
from .models import NudgeRecord, parse_iso_to_epoch
from .tmux_session import inject_text, list_session_panes

logger = logging.getLogger(__name__)

MAX_NUDGE_TEXT = 180
INPUT_PREVIEW_CHARS = 100
OUTPUT_PREVIEW_CHARS = 200

__all__ = [
    'resolve_leader_nudge_interval_ms',
    'resolve_leader_staleness_threshold_ms',
    'check_worker_panes_alive',
    'is_leader_stale',
    'build_nudge_text',
    'log_tmux_hook_event',
    'maybe_nudge_team_leader',
    'handle_turn_complete',
]


def _iso_from_ms(ms: float) -> str:
    stamp = datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)
    return stamp.isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def resolve_leader_nudge_interval_ms() -> int:
    return resolve_clamped_ms(ENV_LEADER_NUDGE_MS, DEFAULT_LEADER_NUDGE_MS)


def resolve_leader_staleness_threshold_ms() -> int:
    return resolve_clamped_ms(ENV_LEADER_STALE_MS, DEFAULT_LEADER_STALE_MS)


def check_worker_panes_alive(target: str, leader_pane_id: Optional[str] = None) -> Tuple[bool, int]:
    """
    Count live worker panes in the team window.

    Returns:
        (alive, pane_count); the leader pane and dead panes are not counted
    """
    panes = [
        pane for pane in list_session_panes(target)
        if not pane['pane_dead'] and pane['pane_id'] != leader_pane_id
    ]
    return len(panes) > 0, len(panes)


def is_leader_stale(store, threshold_ms: int, now_ms: Optional[float] = None) -> bool:
    """Stale when the leader heartbeat is missing, unparseable or older than threshold_ms."""
    now_ms = now_ms if now_ms is not None else time.time() * 1000
    heartbeat = store.read_leader_heartbeat()
    if heartbeat is None:
        return True
    last = parse_iso_to_epoch(heartbeat.last_turn_at)
    if last is None:
        return True
    return now_ms - last * 1000 >= threshold_ms


def build_nudge_text(team: str, reason: str, pane_count: int, message_count: int) -> str:
    """Reminder text for the leader, capped and suffixed with the injection marker."""
    status_hint = f"Run: codex-team status {team}"
    if reason == 'stale_leader_with_messages':
        text = f"Team {team}: leader stale, {pane_count} pane(s) active, {message_count} msg(s) pending. {status_hint}"
    elif reason == 'stale_leader_panes_alive':
        text = f"Team {team}: leader stale, {pane_count} worker pane(s) still active. {status_hint}"
    elif reason == 'new_mailbox_message':
        text = f"Team {team}: {message_count} msg(s) for leader. {status_hint}"
    else:
        text = f"Team {team} active. {status_hint}"
    if len(text) > MAX_NUDGE_TEXT:
        text = text[:MAX_NUDGE_TEXT - 3] + '...'
    return f"{text} {INJECT_MARKER}"


def _append_jsonl(path: str, entry: Dict[str, Any]) -> bool:
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, 'a') as f:
            f.write(json.dumps(entry) + '\n')
        return True
    except OSError as e:
        logger.warning(f"Failed to append to {path}: {e}")
        return False


def log_tmux_hook_event(logs_dir: str, entry: Dict[str, Any]) -> bool:
    """Append one entry to logs/tmux-hook-YYYY-MM-DD.jsonl (best effort)."""
    day = datetime.now(timezone.utc).strftime('%Y-%m-%d')
    return _append_jsonl(os.path.join(logs_dir, f"tmux-hook-{day}.jsonl"), entry)


# ============================================================================
# NUDGE DECISION
# ============================================================================

def maybe_nudge_team_leader(store, leader_stale: bool, now_ms: Optional[float] = None,
                            interval_ms: Optional[int] = None) -> List[Dict[str, Any]]:
    """
    Nudge the leader of every active team that is due.

    A team is due when its leader mailbox holds a message newer than the
    one recorded at the last nudge, or when the nudge interval has elapsed.
    The nudge record is updated for every team attempted whether or not the
    send succeeded, so a broken pane cannot cause a nudge storm.

    Args:
        store: TeamStore
        leader_stale: Leader staleness computed before this turn's heartbeat
        now_ms: Current time in epoch milliseconds
        interval_ms: Rate limit (defaults to the configured interval)

    Returns:
        One dict per attempted nudge: team, reason, delivered
    """
    now_ms = now_ms if now_ms is not None else time.time() * 1000
    interval_ms = interval_ms if interval_ms is not None else resolve_leader_nudge_interval_ms()
    now_iso = _iso_from_ms(now_ms)
    logs_dir = resolve_logs_dir(store.state_root)
    previous = store.read_nudge_state().last_nudged_by_team

    updates: Dict[str, NudgeRecord] = {}
    results: List[Dict[str, Any]] = []

    for team in store.list_active_teams():
        config = store.read_team_config(team)
        state = store.read_team_state(team)
        target = (config.tmux_session if config else '') or (state.tmux_session if state else '')
        if not target:
            continue
        leader_pane_id = config.leader_pane_id if config else None

        panes_alive, pane_count = check_worker_panes_alive(target, leader_pane_id)
        messages = store.list_mailbox_messages(team, LEADER_WORKER_NAME)
        newest_id = messages[-1].message_id if messages else ''

        prev = previous.get(team, NudgeRecord())
        prev_at = parse_iso_to_epoch(prev.at)
        has_new_message = bool(newest_id) and newest_id != prev.last_message_id
        due_by_time = prev_at is None or now_ms - prev_at * 1000 >= interval_ms

        if not has_new_message and not due_by_time:
            continue

        stale_panes = panes_alive and leader_stale
        if stale_panes and has_new_message:
            reason = 'stale_leader_with_messages'
        elif stale_panes:
            reason = 'stale_leader_panes_alive'
        elif has_new_message:
            reason = 'new_mailbox_message'
        else:
            reason = 'periodic_check'

        text = build_nudge_text(team, reason, pane_count, len(messages))
        delivered = inject_text(leader_pane_id or target, text)
        if not delivered:
            logger.warning(f"Team {team}: leader nudge ({reason}) not delivered to {leader_pane_id or target}")

        updates[team] = NudgeRecord(at=now_iso, last_message_id=newest_id or prev.last_message_id)
        store.append_event(
            team, 'team_leader_nudge', worker=LEADER_WORKER_NAME, reason=reason,
            data={'delivered': delivered, 'pane_count': pane_count, 'message_count': len(messages)},
        )
        log_tmux_hook_event(logs_dir, {
            'timestamp': now_iso,
            'type': 'team_leader_nudge',
            'team': team,
            'tmux_target': target,
            'reason': reason,
            'pane_count': pane_count,
            'leader_stale': leader_stale,
            'message_count': len(messages),
            'delivered': delivered,
        })
        results.append({'team': team, 'reason': reason, 'delivered': delivered})

    if updates:
        store.update_nudge_records(updates)
    return results


# ============================================================================
# TURN-COMPLETE HOOK
# ============================================================================

def _turn_log_entry(payload: Dict[str, Any]) -> Dict[str, Any]:
    inputs = payload.get('input-messages') or payload.get('input_messages') or []
    output = payload.get('last-assistant-message') or payload.get('last_assistant_message') or ''
    return {
        'timestamp': _iso_from_ms(time.time() * 1000),
        'type': payload.get('type') or 'agent-turn-complete',
        'thread_id': payload.get('thread-id') or payload.get('thread_id'),
        'turn_id': payload.get('turn-id') or payload.get('turn_id'),
        'input_preview': '; '.join(str(m)[:INPUT_PREVIEW_CHARS] for m in inputs),
        'output_preview': str(output)[:OUTPUT_PREVIEW_CHARS],
    }


def _bump_active_modes(store) -> None:
    """Increment the iteration counter of every active mode state document."""
    modes = ModeStateStore(store.state_root)
    for namespace in modes.list():
        data = modes.read(namespace) or {}
        iteration = data.get('iteration')
        modes.write(namespace, {
            'iteration': (iteration if isinstance(iteration, int) else 0) + 1,
            'last_turn_at': _iso_from_ms(time.time() * 1000),
        })


def handle_turn_complete(store, payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Process one turn-complete notification from the agent CLI.

    Worker turns only refresh that worker's heartbeat. Leader turns refresh
    the leader heartbeat, advance active mode documents and may nudge.

    Returns:
        Summary dict: role, plus nudges for leader turns
    """
    day = datetime.now(timezone.utc).strftime('%Y-%m-%d')
    _append_jsonl(os.path.join(resolve_logs_dir(store.state_root), f"turns-{day}.jsonl"), _turn_log_entry(payload))

    identity = parse_worker_identity()
    if identity is not None:
        team, worker = identity
        heartbeat = store.record_worker_turn(team, worker, pid=os.getppid())
        logger.debug(f"Worker {team}/{worker} turn {heartbeat.turn_count}")
        return {'role': 'worker', 'team': team, 'worker': worker, 'turn_count': heartbeat.turn_count}

    leader_stale = is_leader_stale(store, resolve_leader_staleness_threshold_ms())
    store.record_leader_turn()
    _bump_active_modes(store)
    nudges = maybe_nudge_team_leader(store, leader_stale)
    return {'role': 'leader', 'leader_stale': leader_stale, 'nudges': nudges}
