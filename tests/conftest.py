"""
Shared pytest fixtures for Codex Team tests.

Provides a throwaway state root, a TeamStore on it, a helper that writes a
small team (config + state + worker documents) and subprocess.run mocks
for tmux.
"""

import os
import sys
import shutil
import tempfile
from unittest.mock import MagicMock, patch

import pytest

# Add parent directory to path so the package imports without installation
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from codex_team.config import (
    ENV_AGENT_CMD,
    ENV_BYPASS_DEFAULT_SYSTEM_PROMPT,
    ENV_LEADER_CWD,
    ENV_LEADER_NUDGE_MS,
    ENV_LEADER_STALE_MS,
    ENV_MODEL_INSTRUCTIONS_FILE,
    ENV_STATE_ROOT,
    ENV_TEAM_WORKER,
    ENV_WORKER_LAUNCH_ARGS,
)
from codex_team.models import TeamConfig, WorkerInfo
from codex_team.phases import create_team_state
from codex_team.state import TeamStore


@pytest.fixture(autouse=True)
def clean_team_env(monkeypatch):
    """Keep the developer's own team environment out of every test."""
    for name in (ENV_TEAM_WORKER, ENV_STATE_ROOT, ENV_LEADER_CWD, ENV_LEADER_NUDGE_MS,
                 ENV_LEADER_STALE_MS, ENV_BYPASS_DEFAULT_SYSTEM_PROMPT, ENV_MODEL_INSTRUCTIONS_FILE,
                 ENV_AGENT_CMD, ENV_WORKER_LAUNCH_ARGS, 'TMUX', 'TMUX_PANE',
                 'WSL_DISTRO_NAME', 'WSL_INTEROP'):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for testing."""
    path = tempfile.mkdtemp()
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def store(temp_dir):
    return TeamStore(os.path.join(temp_dir, '.codex-team', 'state'))


@pytest.fixture
def make_team(store):
    """Write a team with N workers; returns its TeamConfig."""
    def _make(name='alpha', workers=2, tmux_session='codex-team-alpha:0', leader_pane_id='%0',
              max_fix_attempts=3):
        config = TeamConfig(
            name=name,
            tmux_session=tmux_session,
            task='build the thing',
            worker_count=workers,
            leader_pane_id=leader_pane_id,
            workers=[
                WorkerInfo(name=f"worker-{i}", index=i, pane_id=f"%{i}")
                for i in range(1, workers + 1)
            ],
        )
        state = create_team_state(name, 'build the thing', max_fix_attempts=max_fix_attempts,
                                  tmux_session=tmux_session)
        store.init_team(config, state)
        return config
    return _make


def completed(returncode=0, stdout='', stderr=''):
    result = MagicMock()
    result.returncode = returncode
    result.stdout = stdout
    result.stderr = stderr
    return result


@pytest.fixture
def mock_tmux_success():
    """Mock subprocess.run so every tmux call succeeds with empty output."""
    with patch('subprocess.run') as mock_run:
        mock_run.return_value = completed(0, '', '')
        yield mock_run


@pytest.fixture
def no_tmux():
    """Mock subprocess.run as if the tmux binary were not installed."""
    with patch('subprocess.run', side_effect=FileNotFoundError('tmux')) as mock_run:
        yield mock_run
