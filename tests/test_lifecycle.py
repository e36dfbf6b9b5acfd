#!/usr/bin/env python3
"""
Unit tests for team start / shutdown / cancel / teardown (codex_team/lifecycle.py)

Every tmux entry point lifecycle uses is patched where lifecycle imports it.
"""

from unittest.mock import patch

import pytest

from codex_team.lifecycle import (
    ack_worker_shutdown,
    cancel_team,
    request_worker_shutdown,
    shutdown_team,
    start_team,
    teardown_team,
)
from codex_team.models import TeamPhase
from codex_team.phases import InvalidPhaseTransitionError
from codex_team.state import TeamExistsError, TeamNotFoundError
from codex_team.tmux_session import TeamSession


@pytest.fixture
def tmux_layout():
    """Patch pane creation and friends; yields the mocks by name."""
    session = TeamSession('codex-team-alpha', 'codex-team-alpha:0', '%0', ['%1', '%2'])
    with patch('codex_team.lifecycle.create_team_session', return_value=session) as create, \
            patch('codex_team.lifecycle.get_worker_pane_pid', return_value=4242), \
            patch('codex_team.lifecycle.enable_mouse_scrolling', return_value=True) as mouse, \
            patch('codex_team.lifecycle.wait_for_worker_ready', return_value=True) as ready, \
            patch('codex_team.mailbox.send_to_worker', return_value=True) as send:
        yield {'create': create, 'mouse': mouse, 'ready': ready, 'send': send}


@pytest.fixture
def tmux_kill():
    with patch('codex_team.lifecycle.kill_worker', return_value=True) as kill, \
            patch('codex_team.lifecycle.kill_team_session', return_value=True) as kill_session:
        yield kill, kill_session


# ============================================================================
# TEST: start_team()
# ============================================================================

def test_start_team_persists_documents(store, temp_dir, tmux_layout):
    config = start_team(store, 'Alpha', 'ship the parser', 2, temp_dir)

    assert config.name == 'alpha'
    assert config.leader_pane_id == '%0'
    assert [w.pane_id for w in config.workers] == ['%1', '%2']
    assert store.read_team_config('alpha').tmux_session == 'codex-team-alpha:0'
    state = store.read_team_state('alpha')
    assert state.phase == TeamPhase.PLAN
    assert state.tmux_session == 'codex-team-alpha:0'
    assert store.read_heartbeat('alpha', 'worker-1').pid == 4242

    inbox = store.read_worker_inbox('alpha', 'worker-2')
    assert 'ship the parser' in inbox
    assert 'shutdown-request.json' in inbox
    assert [e.type for e in store.read_events('alpha')] == ['team_started']


def test_start_team_builds_worker_commands(store, temp_dir, tmux_layout):
    start_team(store, 'alpha', 'task', 2, temp_dir)
    name, count, cwd, commands = tmux_layout['create'].call_args.args
    assert (name, count, cwd) == ('alpha', 2, temp_dir)
    assert len(commands) == 2
    assert 'CODEX_TEAM_WORKER=alpha/worker-1' in commands[0]
    assert 'CODEX_TEAM_WORKER=alpha/worker-2' in commands[1]
    assert f"CODEX_TEAM_STATE_ROOT={store.state_root}" in commands[0]


def test_start_team_low_complexity_fallback_model(store, temp_dir, tmux_layout):
    start_team(store, 'alpha', 'task', 1, temp_dir, agent_type='explore')
    commands = tmux_layout['create'].call_args.args[3]
    assert 'gpt-5-codex-mini' in commands[0]


def test_start_team_notifies_ready_workers(store, temp_dir, tmux_layout):
    tmux_layout['ready'].side_effect = [True, False]
    start_team(store, 'alpha', 'task', 2, temp_dir)

    tmux_layout['mouse'].assert_called_once_with('codex-team-alpha')
    send = tmux_layout['send']
    assert send.call_count == 1
    session, index, text = send.call_args.args
    assert (session, index) == ('codex-team-alpha:0', 1)
    assert 'workers/worker-1/inbox.md' in text


def test_start_team_without_notify(store, temp_dir, tmux_layout):
    start_team(store, 'alpha', 'task', 2, temp_dir, notify_workers=False)
    tmux_layout['ready'].assert_not_called()
    tmux_layout['send'].assert_not_called()


def test_start_team_rejects_active_duplicate(store, temp_dir, tmux_layout):
    start_team(store, 'alpha', 'task', 1, temp_dir, notify_workers=False)
    with pytest.raises(TeamExistsError):
        start_team(store, 'alpha', 'task', 1, temp_dir)
    assert tmux_layout['create'].call_count == 1


@pytest.mark.parametrize('name,count', [('alpha', 0), ('!!!', 2)])
def test_start_team_invalid_arguments(store, temp_dir, tmux_layout, name, count):
    with pytest.raises(ValueError):
        start_team(store, name, 'task', count, temp_dir)
    tmux_layout['create'].assert_not_called()


# ============================================================================
# TEST: shutdown
# ============================================================================

def test_request_and_ack_emit_events(store, make_team):
    make_team('alpha')
    request_worker_shutdown(store, 'alpha', 'worker-1')
    assert ack_worker_shutdown(store, 'alpha', 'worker-1').acked_at is not None
    assert ack_worker_shutdown(store, 'alpha', 'worker-2') is None
    assert [e.type for e in store.read_events('alpha')] == ['shutdown_requested', 'shutdown_acked']


def test_shutdown_team_acked(store, make_team, tmux_kill):
    make_team('alpha')
    kill, kill_session = tmux_kill

    def ack_all(*args, **kwargs):
        for worker in ('worker-1', 'worker-2'):
            store.ack_shutdown_request('alpha', worker)

    with patch('codex_team.lifecycle.time.sleep', side_effect=ack_all):
        summary = shutdown_team(store, 'alpha', ack_timeout_s=5, poll_interval_s=0.01)

    assert summary['success'] is True
    assert summary['acked'] == ['worker-1', 'worker-2']
    assert summary['killed'] == ['worker-1', 'worker-2']
    assert summary['session_killed'] is True
    kill.assert_any_call('codex-team-alpha:0', 1, pane_id='%1', leader_pane_id='%0')
    kill_session.assert_called_once_with('codex-team-alpha')
    assert store.read_worker_status('alpha', 'worker-1') is None
    assert store.read_heartbeat('alpha', 'worker-2') is None
    assert store.read_events('alpha')[-1].type == 'team_shutdown'


def test_shutdown_team_unacked_still_kills(store, make_team, tmux_kill):
    make_team('alpha')
    summary = shutdown_team(store, 'alpha', ack_timeout_s=0)
    assert summary['success'] is False
    assert summary['unacked'] == ['worker-1', 'worker-2']
    assert summary['killed'] == ['worker-1', 'worker-2']


def test_shutdown_team_keeps_foreign_session(store, make_team, tmux_kill):
    make_team('alpha', tmux_session='work:1')
    _, kill_session = tmux_kill
    summary = shutdown_team(store, 'alpha', ack_timeout_s=0)
    assert summary['session_killed'] is False
    kill_session.assert_not_called()


def test_shutdown_unknown_team(store):
    with pytest.raises(TeamNotFoundError):
        shutdown_team(store, 'ghost', ack_timeout_s=0)


# ============================================================================
# TEST: cancel / teardown
# ============================================================================

def test_cancel_team(store, make_team, tmux_kill):
    make_team('alpha')
    summary = cancel_team(store, 'alpha', ack_timeout_s=0)
    assert summary['phase'] == 'cancelled'
    state = store.read_team_state('alpha')
    assert state.phase == TeamPhase.CANCELLED
    assert state.active is False

    with pytest.raises(InvalidPhaseTransitionError):
        cancel_team(store, 'alpha', ack_timeout_s=0)


def test_teardown_refuses_active_team(store, make_team):
    make_team('alpha')
    with pytest.raises(RuntimeError):
        teardown_team(store, 'alpha')
    assert store.team_exists('alpha')


def test_teardown_after_cancel(store, make_team, tmux_kill):
    make_team('alpha')
    cancel_team(store, 'alpha', ack_timeout_s=0)
    assert teardown_team(store, 'alpha') is True
    assert store.team_exists('alpha') is False
