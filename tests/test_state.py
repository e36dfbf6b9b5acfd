#!/usr/bin/env python3
"""
Unit tests for the team state store (codex_team/state.py)

Tests cover:
- team init / exists / listing / deletion
- worker documents (status, heartbeat, inbox, shutdown request)
- mailbox append, ordering, broadcast and notified stamping
- event log
- quarantine of malformed documents
- LockedStateFile read-modify-write
"""

import json
import os

import pytest

from codex_team.config import LEADER_WORKER_NAME, resolve_state_root
from codex_team.models import NudgeRecord, TeamPhase, WorkerStatus
from codex_team.phases import cancel_team_state
from codex_team.state import LockedStateFile, TeamExistsError, TeamStore, atomic_write_json


# ============================================================================
# TEST: team level
# ============================================================================

def test_init_team_creates_documents(store, make_team):
    make_team('alpha', workers=2)

    assert store.team_exists('alpha')
    assert store.read_team_config('alpha').worker_count == 2
    assert store.read_team_state('alpha').phase == TeamPhase.PLAN
    assert store.list_workers('alpha') == ['worker-1', 'worker-2']
    assert store.read_worker_status('alpha', 'worker-1').state == 'idle'
    assert os.path.isdir(store.mailbox_dir('alpha', LEADER_WORKER_NAME))


def test_init_team_refuses_active_duplicate(store, make_team):
    make_team('alpha')
    with pytest.raises(TeamExistsError):
        make_team('alpha')


def test_init_team_allows_reuse_of_inactive_name(store, make_team):
    make_team('alpha')
    store.write_team_state(cancel_team_state(store.read_team_state('alpha')))
    make_team('alpha', workers=1)
    assert store.read_team_state('alpha').active is True


def test_reused_name_starts_with_clean_workers(store, make_team):
    make_team('alpha', workers=3)
    store.write_shutdown_request('alpha', 'worker-1')
    store.record_worker_turn('alpha', 'worker-2')
    store.append_mailbox_message('alpha', 'worker-2', 'worker-1', 'old news')
    store.write_team_state(cancel_team_state(store.read_team_state('alpha')))

    make_team('alpha', workers=2)

    assert store.list_workers('alpha') == ['worker-1', 'worker-2']
    assert store.read_shutdown_request('alpha', 'worker-1') is None
    assert store.read_heartbeat('alpha', 'worker-2') is None
    assert store.list_mailbox_messages('alpha', 'worker-1') == []
    assert store.read_worker_status('alpha', 'worker-1').state == 'idle'


def test_list_active_teams(store, make_team):
    make_team('alpha')
    make_team('beta')
    store.write_team_state(cancel_team_state(store.read_team_state('beta')))
    assert store.list_teams() == ['alpha', 'beta']
    assert store.list_active_teams() == ['alpha']


def test_delete_team(store, make_team):
    make_team('alpha')
    assert store.delete_team('alpha') is True
    assert store.team_exists('alpha') is False
    assert store.delete_team('alpha') is False


def test_resolve_state_root_env_override(monkeypatch, temp_dir):
    assert resolve_state_root(temp_dir) == os.path.join(temp_dir, '.codex-team', 'state')
    monkeypatch.setenv('CODEX_TEAM_STATE_ROOT', os.path.join(temp_dir, 'elsewhere'))
    assert resolve_state_root('/somewhere/else') == os.path.join(temp_dir, 'elsewhere')
    assert TeamStore().state_root == os.path.join(temp_dir, 'elsewhere')


# ============================================================================
# TEST: worker documents
# ============================================================================

def test_worker_status_roundtrip(store, make_team):
    make_team('alpha')
    store.write_worker_status('alpha', 'worker-1', WorkerStatus(state='working', current_task_id='task-1'))
    status = store.read_worker_status('alpha', 'worker-1')
    assert status.state == 'working'
    assert status.current_task_id == 'task-1'


def test_record_worker_turn_increments(store, make_team):
    make_team('alpha')
    store.record_worker_turn('alpha', 'worker-1', pid=123)
    heartbeat = store.record_worker_turn('alpha', 'worker-1')
    assert heartbeat.turn_count == 2
    assert heartbeat.pid == 123


def test_inbox_overwrite(store, make_team):
    make_team('alpha')
    store.write_worker_inbox('alpha', 'worker-1', 'first')
    store.write_worker_inbox('alpha', 'worker-1', 'second')
    assert store.read_worker_inbox('alpha', 'worker-1') == 'second'
    assert store.read_worker_inbox('alpha', 'worker-2') == ''


def test_shutdown_request_and_ack(store, make_team):
    make_team('alpha')
    assert store.ack_shutdown_request('alpha', 'worker-1') is None
    store.write_shutdown_request('alpha', 'worker-1')
    assert store.read_shutdown_request('alpha', 'worker-1').acked_at is None
    acked = store.ack_shutdown_request('alpha', 'worker-1')
    assert acked.acked_at is not None
    assert store.read_shutdown_request('alpha', 'worker-1').acked_at == acked.acked_at


def test_remove_worker_keeps_mailbox(store, make_team):
    make_team('alpha')
    store.append_mailbox_message('alpha', 'worker-2', 'worker-1', 'hello')
    store.remove_worker('alpha', 'worker-1')
    assert store.read_worker_status('alpha', 'worker-1') is None
    assert len(store.list_mailbox_messages('alpha', 'worker-1')) == 1


def test_read_worker_record(store, make_team):
    make_team('alpha')
    record = store.read_worker_record('alpha', 'worker-2')
    assert record.index == 2
    assert record.pane_id == '%2'
    assert record.status.state == 'idle'


# ============================================================================
# TEST: mailbox
# ============================================================================

def test_mailbox_messages_in_arrival_order(store, make_team):
    make_team('alpha')
    for body in ('one', 'two', 'three'):
        store.append_mailbox_message('alpha', 'worker-2', 'worker-1', body)
    assert [m.body for m in store.list_mailbox_messages('alpha', 'worker-1')] == ['one', 'two', 'three']


def test_mark_message_notified(store, make_team):
    make_team('alpha')
    message = store.append_mailbox_message('alpha', 'worker-2', 'worker-1', 'hello')
    assert store.mark_message_notified('alpha', 'worker-1', message.message_id) is True
    assert store.list_mailbox_messages('alpha', 'worker-1')[0].notified_at is not None
    assert store.mark_message_notified('alpha', 'worker-1', 'missing') is False


def test_broadcast_excludes_sender(store, make_team):
    make_team('alpha', workers=3)
    messages = store.broadcast_mailbox_message('alpha', 'worker-1', 'sync up')
    assert sorted(m.to_worker for m in messages) == ['worker-2', 'worker-3']
    assert store.list_mailbox_messages('alpha', 'worker-1') == []


def test_malformed_message_quarantined(store, make_team):
    make_team('alpha')
    store.append_mailbox_message('alpha', 'worker-2', 'worker-1', 'good')
    bad = os.path.join(store.mailbox_dir('alpha', 'worker-1'), '99999999999999999999-bad.json')
    with open(bad, 'w') as f:
        f.write('{not json')
    messages = store.list_mailbox_messages('alpha', 'worker-1')
    assert [m.body for m in messages] == ['good']
    assert not os.path.exists(bad)
    assert any('.corrupt-' in name for name in os.listdir(store.mailbox_dir('alpha', 'worker-1')))


# ============================================================================
# TEST: documents and locking
# ============================================================================

def test_invalid_state_document_quarantined(store, make_team):
    make_team('alpha')
    atomic_write_json(store.state_path('alpha'), {'name': 'alpha', 'current_fix_attempt': 5, 'max_fix_attempts': 1})
    assert store.read_team_state('alpha') is None
    assert not os.path.exists(store.state_path('alpha'))


def test_events_append_and_read(store, make_team):
    make_team('alpha')
    store.append_event('alpha', 'team_started', data={'worker_count': 2})
    store.append_event('alpha', 'shutdown_requested', worker='worker-1')
    with open(store.events_path('alpha'), 'a') as f:
        f.write('garbage\n')
    events = store.read_events('alpha')
    assert [e.type for e in events] == ['team_started', 'shutdown_requested']
    assert events[1].worker == 'worker-1'


def test_locked_state_file_read_modify_write(temp_dir):
    path = os.path.join(temp_dir, 'doc.json')
    for _ in range(3):
        with LockedStateFile(path, default={'count': 0}) as (data, f):
            data['count'] += 1
            f.seek(0)
            f.truncate()
            f.write(json.dumps(data))
    with open(path) as f:
        assert json.load(f) == {'count': 3}


def test_locked_state_file_resets_corrupt_document(temp_dir):
    path = os.path.join(temp_dir, 'doc.json')
    with open(path, 'w') as f:
        f.write('[1, 2')
    with LockedStateFile(path, default={'ok': True}) as (data, f):
        assert data == {'ok': True}
    assert any('.corrupt-' in name for name in os.listdir(temp_dir))


def test_nudge_records_merge(store):
    store.update_nudge_records({'alpha': NudgeRecord(at='2026-01-01T00:00:00.000Z', last_message_id='m1')})
    store.update_nudge_records({'beta': NudgeRecord(at='2026-01-01T00:01:00.000Z')})
    state = store.read_nudge_state()
    assert set(state.last_nudged_by_team) == {'alpha', 'beta'}
    assert state.last_nudged_by_team['alpha'].last_message_id == 'm1'


def test_leader_heartbeat_counts_turns(store):
    assert store.read_leader_heartbeat() is None
    store.record_leader_turn()
    assert store.record_leader_turn().turn_count == 2
