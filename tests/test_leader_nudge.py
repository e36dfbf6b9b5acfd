#!/usr/bin/env python3
"""
Unit tests for the leader nudge service (codex_team/leader_nudge.py)

tmux is mocked at the module seam: list_session_panes for pane status and
inject_text for delivery.
"""

import glob
import json
import os
import time
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from codex_team.config import INJECT_MARKER, LEADER_WORKER_NAME
from codex_team.kv_store import ModeStateStore
from codex_team.leader_nudge import (
    build_nudge_text,
    check_worker_panes_alive,
    handle_turn_complete,
    is_leader_stale,
    maybe_nudge_team_leader,
    resolve_leader_nudge_interval_ms,
    resolve_leader_staleness_threshold_ms,
)
from codex_team.models import LeaderHeartbeat, NudgeRecord
from codex_team.state import atomic_write_json

LIVE_PANES = [
    {'pane_id': '%0', 'pane_pid': 10, 'pane_dead': False},
    {'pane_id': '%1', 'pane_pid': 11, 'pane_dead': False},
    {'pane_id': '%2', 'pane_pid': 12, 'pane_dead': False},
]


def _iso(epoch_s):
    return datetime.fromtimestamp(epoch_s, tz=timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


@pytest.fixture
def tmux_seams():
    with patch('codex_team.leader_nudge.list_session_panes', return_value=LIVE_PANES) as panes, \
            patch('codex_team.leader_nudge.inject_text', return_value=True) as inject:
        yield panes, inject


# ============================================================================
# TEST: configuration
# ============================================================================

def test_interval_defaults_and_clamp(monkeypatch):
    assert resolve_leader_nudge_interval_ms() == 120_000
    monkeypatch.setenv('CODEX_TEAM_LEADER_NUDGE_MS', '30000')
    assert resolve_leader_nudge_interval_ms() == 30_000
    monkeypatch.setenv('CODEX_TEAM_LEADER_NUDGE_MS', '5000')
    assert resolve_leader_nudge_interval_ms() == 120_000
    monkeypatch.setenv('CODEX_TEAM_LEADER_NUDGE_MS', 'soon')
    assert resolve_leader_nudge_interval_ms() == 120_000


def test_staleness_threshold_defaults_and_clamp(monkeypatch):
    assert resolve_leader_staleness_threshold_ms() == 180_000
    monkeypatch.setenv('CODEX_TEAM_LEADER_STALE_MS', str(31 * 60_000))
    assert resolve_leader_staleness_threshold_ms() == 180_000
    monkeypatch.setenv('CODEX_TEAM_LEADER_STALE_MS', '600000')
    assert resolve_leader_staleness_threshold_ms() == 600_000


# ============================================================================
# TEST: pane status and staleness
# ============================================================================

def test_check_worker_panes_alive_excludes_leader_and_dead():
    panes = LIVE_PANES + [{'pane_id': '%3', 'pane_pid': 13, 'pane_dead': True}]
    with patch('codex_team.leader_nudge.list_session_panes', return_value=panes):
        assert check_worker_panes_alive('codex-team-alpha:0', '%0') == (True, 2)
    with patch('codex_team.leader_nudge.list_session_panes', return_value=[]):
        assert check_worker_panes_alive('codex-team-alpha:0') == (False, 0)


def test_leader_stale_without_heartbeat(store):
    assert is_leader_stale(store, 180_000) is True


def test_leader_stale_by_age(store):
    now = time.time()
    atomic_write_json(store.leader_heartbeat_path(), LeaderHeartbeat(last_turn_at=_iso(now - 200)))
    assert is_leader_stale(store, 180_000, now_ms=now * 1000) is True
    assert is_leader_stale(store, 300_000, now_ms=now * 1000) is False


def test_leader_stale_with_unparseable_heartbeat(store):
    atomic_write_json(store.leader_heartbeat_path(), {'last_turn_at': 'yesterday', 'turn_count': 3})
    assert is_leader_stale(store, 180_000) is True


# ============================================================================
# TEST: nudge text
# ============================================================================

def test_nudge_text_has_marker_and_status_hint():
    text = build_nudge_text('alpha', 'periodic_check', 2, 0)
    assert text == f"Team alpha active. Run: codex-team status alpha {INJECT_MARKER}"


def test_nudge_text_capped_at_180():
    text = build_nudge_text('a' * 300, 'new_mailbox_message', 2, 5)
    body = text[:-len(INJECT_MARKER) - 1]
    assert len(body) == 180
    assert body.endswith('...')
    assert text.endswith(f" {INJECT_MARKER}")


# ============================================================================
# TEST: maybe_nudge_team_leader()
# ============================================================================

def test_first_check_is_periodic(store, make_team, tmux_seams):
    make_team('alpha')
    _, inject = tmux_seams
    results = maybe_nudge_team_leader(store, leader_stale=False)
    assert results == [{'team': 'alpha', 'reason': 'periodic_check', 'delivered': True}]
    target, text = inject.call_args.args
    assert target == '%0'
    assert text.endswith(INJECT_MARKER)


def test_rate_limited_without_new_messages(store, make_team, tmux_seams):
    make_team('alpha')
    now_ms = time.time() * 1000
    maybe_nudge_team_leader(store, leader_stale=False, now_ms=now_ms)
    assert maybe_nudge_team_leader(store, leader_stale=True, now_ms=now_ms + 1000) == []


def test_new_message_bypasses_rate_limit(store, make_team, tmux_seams):
    make_team('alpha')
    now_ms = time.time() * 1000
    maybe_nudge_team_leader(store, leader_stale=False, now_ms=now_ms)
    message = store.append_mailbox_message('alpha', 'worker-1', LEADER_WORKER_NAME, 'done with task-1')

    results = maybe_nudge_team_leader(store, leader_stale=False, now_ms=now_ms + 1000)
    assert results[0]['reason'] == 'new_mailbox_message'
    record = store.read_nudge_state().last_nudged_by_team['alpha']
    assert record.last_message_id == message.message_id

    # same newest message, interval not elapsed: quiet
    assert maybe_nudge_team_leader(store, leader_stale=False, now_ms=now_ms + 2000) == []


def test_reason_priority_when_leader_stale(store, make_team, tmux_seams):
    make_team('alpha')
    assert maybe_nudge_team_leader(store, leader_stale=True)[0]['reason'] == 'stale_leader_panes_alive'

    store.append_mailbox_message('alpha', 'worker-1', LEADER_WORKER_NAME, 'help')
    assert maybe_nudge_team_leader(store, leader_stale=True)[0]['reason'] == 'stale_leader_with_messages'


def test_stale_leader_without_live_panes_is_periodic(store, make_team):
    make_team('alpha')
    with patch('codex_team.leader_nudge.list_session_panes', return_value=[]), \
            patch('codex_team.leader_nudge.inject_text', return_value=True):
        assert maybe_nudge_team_leader(store, leader_stale=True)[0]['reason'] == 'periodic_check'


def test_state_persisted_even_when_send_fails(store, make_team):
    make_team('alpha')
    with patch('codex_team.leader_nudge.list_session_panes', return_value=LIVE_PANES), \
            patch('codex_team.leader_nudge.inject_text', return_value=False):
        results = maybe_nudge_team_leader(store, leader_stale=False)
    assert results[0]['delivered'] is False
    assert 'alpha' in store.read_nudge_state().last_nudged_by_team


def test_nudge_event_appended(store, make_team, tmux_seams):
    make_team('alpha')
    maybe_nudge_team_leader(store, leader_stale=False)
    events = [e for e in store.read_events('alpha') if e.type == 'team_leader_nudge']
    assert len(events) == 1
    assert events[0].worker == LEADER_WORKER_NAME
    assert events[0].reason == 'periodic_check'


def test_inactive_and_sessionless_teams_skipped(store, make_team, tmux_seams):
    make_team('alpha', tmux_session='')
    _, inject = tmux_seams
    assert maybe_nudge_team_leader(store, leader_stale=True) == []
    inject.assert_not_called()


def test_elapsed_interval_nudges_again(store, make_team, tmux_seams):
    make_team('alpha')
    now_ms = time.time() * 1000
    store.update_nudge_records({'alpha': NudgeRecord(at=_iso(now_ms / 1000 - 600))})
    results = maybe_nudge_team_leader(store, leader_stale=False, now_ms=now_ms, interval_ms=120_000)
    assert len(results) == 1


# ============================================================================
# TEST: handle_turn_complete()
# ============================================================================

PAYLOAD = {
    'type': 'agent-turn-complete',
    'thread-id': 'th-1',
    'turn-id': 'tu-1',
    'input-messages': ['please refactor the parser'],
    'last-assistant-message': 'Refactored.',
}


def test_leader_turn_logs_updates_heartbeat_and_nudges(store, make_team, tmux_seams):
    make_team('alpha')
    result = handle_turn_complete(store, PAYLOAD)

    assert result['role'] == 'leader'
    assert result['leader_stale'] is True
    assert store.read_leader_heartbeat().turn_count == 1
    assert result['nudges'][0]['reason'] == 'stale_leader_panes_alive'

    logs = glob.glob(os.path.join(os.path.dirname(store.state_root), 'logs', 'turns-*.jsonl'))
    assert len(logs) == 1
    with open(logs[0]) as f:
        entry = json.loads(f.readline())
    assert entry['thread_id'] == 'th-1'
    assert entry['input_preview'] == 'please refactor the parser'


def test_staleness_computed_before_heartbeat_update(store, make_team, tmux_seams):
    make_team('alpha')
    handle_turn_complete(store, PAYLOAD)
    # second turn right after: heartbeat from the first turn is fresh
    assert handle_turn_complete(store, PAYLOAD)['leader_stale'] is False


def test_leader_turn_advances_active_modes(store, tmux_seams):
    modes = ModeStateStore(store.state_root)
    modes.write('ralph', {'active': True})
    modes.write('team', {'active': False})
    handle_turn_complete(store, PAYLOAD)
    handle_turn_complete(store, PAYLOAD)
    assert modes.read('ralph')['iteration'] == 2
    assert 'iteration' not in modes.read('team')


def test_worker_turn_updates_worker_heartbeat_only(store, make_team, tmux_seams, monkeypatch):
    make_team('alpha')
    monkeypatch.setenv('CODEX_TEAM_WORKER', 'alpha/worker-1')
    _, inject = tmux_seams

    result = handle_turn_complete(store, PAYLOAD)

    assert result == {'role': 'worker', 'team': 'alpha', 'worker': 'worker-1', 'turn_count': 1}
    assert store.read_heartbeat('alpha', 'worker-1').turn_count == 1
    assert store.read_leader_heartbeat() is None
    inject.assert_not_called()
