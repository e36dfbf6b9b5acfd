"""
State & Mailbox Store for Codex Team.

This module owns every durable document a team produces:
- Team config and phase state
- Worker status, heartbeat, inbox and shutdown request
- Per-worker mailbox (one file per message, never deleted)
- Append-only team event log (events.ndjson)
- Leader nudge bookkeeping and leader heartbeat

Documents are small and per-entity so a partial failure stays local.
Writes go through a temp file + os.replace; read-modify-write of shared
documents happens under an exclusive fcntl lock (LockedStateFile).
Reads validate against the pydantic models in models.py and quarantine
anything malformed.
"""

import json
import os
import fcntl
import errno
import time
import uuid
import shutil
import logging
import tempfile
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, ValidationError

from .config import LEADER_WORKER_NAME, resolve_state_root
from .models import (
    HeartbeatRecord,
    LeaderHeartbeat,
    MailboxMessage,
    NudgeRecord,
    NudgeState,
    ShutdownRequest,
    TeamConfig,
    TeamEvent,
    TeamState,
    WorkerRecord,
    WorkerStatus,
    now_iso,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar('ModelT', bound=BaseModel)

__all__ = [
    'TeamExistsError',
    'TeamNotFoundError',
    'LockedStateFile',
    'atomic_write_json',
    'atomic_write_text',
    'quarantine_file',
    'read_model',
    'TeamStore',
]


class TeamExistsError(RuntimeError):
    """Raised when creating a team whose name is already in active use."""


class TeamNotFoundError(LookupError):
    """Raised when an operation requires a team record that does not exist."""


# ============================================================================
# FILE PRIMITIVES
# ============================================================================

class LockedStateFile:
    """
    Context manager for read-modify-write of a shared JSON document.

    Usage:
        with LockedStateFile(path, default={}) as (data, f):
            data['counter'] = data.get('counter', 0) + 1
            f.seek(0)
            f.truncate()
            f.write(json.dumps(data, indent=2))

    The handle is opened in append mode so a missing file is created
    without clobbering an existing one; truncate before writing. The file
    starts out as `default` when missing. A document that does
    not decode is quarantined and replaced by `default`, so the caller
    always gets a dict.
    """

    def __init__(self, path: str, default: Optional[Dict[str, Any]] = None,
                 timeout: float = 10, retry_delay: float = 0.05):
        self.path = path
        self.default = default if default is not None else {}
        self.timeout = timeout
        self.retry_delay = retry_delay
        self.file = None

    def __enter__(self) -> Tuple[Dict[str, Any], Any]:
        os.makedirs(os.path.dirname(self.path), exist_ok=True)
        start_time = time.time()

        # 'a+' creates the file if needed without truncating it
        self.file = open(self.path, 'a+')

        while True:
            try:
                fcntl.flock(self.file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except (IOError, OSError) as e:
                if e.errno not in (errno.EACCES, errno.EAGAIN):
                    self.file.close()
                    raise
                if time.time() - start_time >= self.timeout:
                    self.file.close()
                    raise TimeoutError(
                        f"Could not acquire lock on {self.path} after {self.timeout}s. "
                        f"Another process may be holding it."
                    )
                time.sleep(self.retry_delay)

        self.file.seek(0)
        raw = self.file.read()
        data: Dict[str, Any]
        if not raw.strip():
            data = json.loads(json.dumps(self.default))
        else:
            try:
                data = json.loads(raw)
                if not isinstance(data, dict):
                    raise ValueError("top-level JSON value is not an object")
            except ValueError as e:
                logger.warning(f"Corrupted state document {self.path}: {e}; resetting")
                _write_quarantine_copy(self.path, raw)
                data = json.loads(json.dumps(self.default))
        return data, self.file

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.file:
            try:
                self.file.flush()
                fcntl.flock(self.file.fileno(), fcntl.LOCK_UN)
            except Exception as e:
                logger.error(f"Error unlocking {self.path}: {e}")
            finally:
                self.file.close()
        return False


def _quarantine_name(path: str) -> str:
    stamp = datetime.now().strftime('%Y%m%d-%H%M%S')
    return f"{path}.corrupt-{stamp}-{uuid.uuid4().hex[:6]}"


def _write_quarantine_copy(path: str, raw: str) -> None:
    try:
        with open(_quarantine_name(path), 'w') as qf:
            qf.write(raw)
    except OSError as e:
        logger.error(f"Could not write quarantine copy of {path}: {e}")


def quarantine_file(path: str) -> Optional[str]:
    """
    Move a malformed document aside so it stops being read.

    Returns:
        The quarantine path, or None when the move failed
    """
    target = _quarantine_name(path)
    try:
        os.replace(path, target)
        logger.warning(f"Quarantined malformed document {path} -> {target}")
        return target
    except OSError as e:
        logger.error(f"Failed to quarantine {path}: {e}")
        return None


def atomic_write_text(path: str, content: str) -> None:
    """Write a file atomically (temp file in the same directory + os.replace)."""
    os.makedirs(os.path.dirname(path), exist_ok=True)
    tmp_fd, tmp_path = tempfile.mkstemp(dir=os.path.dirname(path), suffix='.tmp')
    try:
        with os.fdopen(tmp_fd, 'w') as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def atomic_write_json(path: str, data: Any) -> None:
    """Serialize `data` (dict or pydantic model) and write it atomically."""
    if isinstance(data, BaseModel):
        data = data.model_dump(mode='json', by_alias=True)
    atomic_write_text(path, json.dumps(data, indent=2) + '\n')


def read_model(path: str, model: Type[ModelT]) -> Optional[ModelT]:
    """
    Read and validate a JSON document.

    Missing documents return None. Documents that fail to decode or validate
    are quarantined and also return None.
    """
    if not os.path.exists(path):
        return None
    try:
        with open(path, 'r') as f:
            raw = json.load(f)
        return model.model_validate(raw)
    except (json.JSONDecodeError, UnicodeDecodeError, ValidationError) as e:
        logger.warning(f"Invalid {model.__name__} document at {path}: {e}")
        quarantine_file(path)
        return None
    except OSError as e:
        logger.error(f"Could not read {path}: {e}")
        return None


# ============================================================================
# TEAM STORE
# ============================================================================

class TeamStore:
    """
    Filesystem-backed store for all team documents under one state root.

    Layout:
        <root>/team/<name>/config.json
        <root>/team/<name>/state.json
        <root>/team/<name>/workers/<worker>/{status,heartbeat,shutdown-request}.json
        <root>/team/<name>/workers/<worker>/inbox.md
        <root>/team/<name>/workers/<worker>/mailbox/<ns>-<message_id>.json
        <root>/team/<name>/events/events.ndjson
        <root>/team-leader-nudge.json
        <root>/leader-heartbeat.json
    """

    def __init__(self, state_root: Optional[str] = None):
        self.state_root = os.path.abspath(state_root or resolve_state_root())

    def __repr__(self) -> str:
        return f"TeamStore({self.state_root!r})"

    # ------------------------------------------------------------------ paths

    def teams_dir(self) -> str:
        return os.path.join(self.state_root, 'team')

    def team_dir(self, team: str) -> str:
        return os.path.join(self.teams_dir(), team)

    def config_path(self, team: str) -> str:
        return os.path.join(self.team_dir(team), 'config.json')

    def state_path(self, team: str) -> str:
        return os.path.join(self.team_dir(team), 'state.json')

    def events_path(self, team: str) -> str:
        return os.path.join(self.team_dir(team), 'events', 'events.ndjson')

    def worker_dir(self, team: str, worker: str) -> str:
        return os.path.join(self.team_dir(team), 'workers', worker)

    def mailbox_dir(self, team: str, worker: str) -> str:
        return os.path.join(self.worker_dir(team, worker), 'mailbox')

    def nudge_state_path(self) -> str:
        return os.path.join(self.state_root, 'team-leader-nudge.json')

    def leader_heartbeat_path(self) -> str:
        return os.path.join(self.state_root, 'leader-heartbeat.json')

    # ------------------------------------------------------------ team level

    def team_exists(self, team: str) -> bool:
        return os.path.exists(self.config_path(team)) or os.path.exists(self.state_path(team))

    def init_team(self, config: TeamConfig, state: TeamState) -> None:
        """
        Create the documents for a new team.

        Reusing the name of a finished team discards that team's worker
        directories first; the event log is kept.

        Raises:
            TeamExistsError: if an active team with the same name exists
        """
        existing = self.read_team_state(config.name)
        if existing is not None and existing.active:
            raise TeamExistsError(f"Team '{config.name}' already exists and is active ({existing.phase.value})")

        workers_dir = os.path.join(self.team_dir(config.name), 'workers')
        if os.path.isdir(workers_dir):
            shutil.rmtree(workers_dir)
            logger.info(f"Cleared worker documents left by previous team '{config.name}'")

        os.makedirs(os.path.join(self.team_dir(config.name), 'events'), exist_ok=True)
        self.write_team_config(config)
        self.write_team_state(state)

        for worker in config.workers:
            os.makedirs(self.mailbox_dir(config.name, worker.name), exist_ok=True)
            self.write_worker_status(config.name, worker.name, WorkerStatus(state='idle'))
        os.makedirs(self.mailbox_dir(config.name, LEADER_WORKER_NAME), exist_ok=True)
        logger.info(f"Initialized team '{config.name}' with {len(config.workers)} worker(s) at {self.team_dir(config.name)}")

    def read_team_config(self, team: str) -> Optional[TeamConfig]:
        return read_model(self.config_path(team), TeamConfig)

    def write_team_config(self, config: TeamConfig) -> None:
        atomic_write_json(self.config_path(config.name), config)

    def read_team_state(self, team: str) -> Optional[TeamState]:
        return read_model(self.state_path(team), TeamState)

    def write_team_state(self, state: TeamState) -> None:
        atomic_write_json(self.state_path(state.name), state)

    def list_teams(self) -> List[str]:
        """Names of all teams that have a config or state document."""
        base = self.teams_dir()
        if not os.path.isdir(base):
            return []
        return sorted(
            name for name in os.listdir(base)
            if os.path.isdir(os.path.join(base, name)) and self.team_exists(name)
        )

    def list_active_teams(self) -> List[str]:
        active = []
        for name in self.list_teams():
            state = self.read_team_state(name)
            if state is not None and state.active:
                active.append(name)
        return active

    def delete_team(self, team: str) -> bool:
        """Remove every document of a team. Returns False if nothing existed."""
        path = self.team_dir(team)
        if not os.path.isdir(path):
            return False
        shutil.rmtree(path)
        logger.info(f"Deleted team state directory {path}")
        return True

    # ---------------------------------------------------------- worker level

    def list_workers(self, team: str) -> List[str]:
        """Worker directory names, excluding the leader's mailbox directory."""
        base = os.path.join(self.team_dir(team), 'workers')
        if not os.path.isdir(base):
            return []
        return sorted(
            name for name in os.listdir(base)
            if name != LEADER_WORKER_NAME and os.path.isdir(os.path.join(base, name))
        )

    def read_worker_status(self, team: str, worker: str) -> Optional[WorkerStatus]:
        return read_model(os.path.join(self.worker_dir(team, worker), 'status.json'), WorkerStatus)

    def write_worker_status(self, team: str, worker: str, status: WorkerStatus) -> None:
        atomic_write_json(os.path.join(self.worker_dir(team, worker), 'status.json'), status)

    def read_heartbeat(self, team: str, worker: str) -> Optional[HeartbeatRecord]:
        return read_model(os.path.join(self.worker_dir(team, worker), 'heartbeat.json'), HeartbeatRecord)

    def write_heartbeat(self, team: str, worker: str, heartbeat: HeartbeatRecord) -> None:
        atomic_write_json(os.path.join(self.worker_dir(team, worker), 'heartbeat.json'), heartbeat)

    def record_worker_turn(self, team: str, worker: str, pid: Optional[int] = None) -> HeartbeatRecord:
        """Bump a worker's heartbeat after one of its turns completes."""
        previous = self.read_heartbeat(team, worker)
        heartbeat = HeartbeatRecord(
            pid=pid if pid is not None else (previous.pid if previous else None),
            last_turn_at=now_iso(),
            turn_count=(previous.turn_count if previous else 0) + 1,
            alive=True,
        )
        self.write_heartbeat(team, worker, heartbeat)
        return heartbeat

    def read_worker_inbox(self, team: str, worker: str) -> str:
        path = os.path.join(self.worker_dir(team, worker), 'inbox.md')
        if not os.path.exists(path):
            return ""
        with open(path, 'r') as f:
            return f.read()

    def write_worker_inbox(self, team: str, worker: str, content: str) -> str:
        """Overwrite the worker's inbox. Returns the inbox path."""
        path = os.path.join(self.worker_dir(team, worker), 'inbox.md')
        atomic_write_text(path, content)
        return path

    def read_shutdown_request(self, team: str, worker: str) -> Optional[ShutdownRequest]:
        return read_model(os.path.join(self.worker_dir(team, worker), 'shutdown-request.json'), ShutdownRequest)

    def write_shutdown_request(self, team: str, worker: str, requested_by: str = LEADER_WORKER_NAME) -> ShutdownRequest:
        request = ShutdownRequest(requested_by=requested_by)
        atomic_write_json(os.path.join(self.worker_dir(team, worker), 'shutdown-request.json'), request)
        return request

    def ack_shutdown_request(self, team: str, worker: str) -> Optional[ShutdownRequest]:
        """Stamp acked_at on a pending request. Returns None if no request exists."""
        request = self.read_shutdown_request(team, worker)
        if request is None:
            return None
        if request.acked_at is None:
            request = request.model_copy(update={'acked_at': now_iso()})
            atomic_write_json(os.path.join(self.worker_dir(team, worker), 'shutdown-request.json'), request)
        return request

    def remove_worker(self, team: str, worker: str) -> None:
        """
        Drop a worker's live documents after its pane is killed.

        The mailbox directory is kept: it is the team's communication record.
        """
        for filename in ('status.json', 'heartbeat.json', 'inbox.md', 'shutdown-request.json'):
            path = os.path.join(self.worker_dir(team, worker), filename)
            try:
                os.remove(path)
            except FileNotFoundError:
                continue
        logger.info(f"Removed worker record {team}/{worker}")

    def read_worker_record(self, team: str, worker: str) -> WorkerRecord:
        """Assemble everything recorded about one worker."""
        index = None
        pane_id = None
        config = self.read_team_config(team)
        if config is not None:
            for info in config.workers:
                if info.name == worker:
                    index, pane_id = info.index, info.pane_id
                    break
        return WorkerRecord(
            name=worker,
            index=index,
            pane_id=pane_id,
            status=self.read_worker_status(team, worker),
            heartbeat=self.read_heartbeat(team, worker),
            inbox=self.read_worker_inbox(team, worker),
            mailbox=self.list_mailbox_messages(team, worker),
            shutdown_request=self.read_shutdown_request(team, worker),
        )

    # --------------------------------------------------------------- mailbox

    def _message_path(self, team: str, worker: str, message_id: str) -> Optional[str]:
        mailbox = self.mailbox_dir(team, worker)
        if not os.path.isdir(mailbox):
            return None
        suffix = f"-{message_id}.json"
        for filename in os.listdir(mailbox):
            if filename.endswith(suffix):
                return os.path.join(mailbox, filename)
        return None

    def append_mailbox_message(self, team: str, from_worker: str, to_worker: str, body: str) -> MailboxMessage:
        """Store one message in the recipient's mailbox."""
        message = MailboxMessage(
            message_id=uuid.uuid4().hex,
            from_worker=from_worker,
            to_worker=to_worker,
            body=body,
        )
        filename = f"{time.time_ns():020d}-{message.message_id}.json"
        atomic_write_json(os.path.join(self.mailbox_dir(team, to_worker), filename), message)
        logger.debug(f"Mailbox {team}/{to_worker}: stored {message.message_id} from {from_worker}")
        return message

    def broadcast_mailbox_message(self, team: str, from_worker: str, body: str,
                                  recipients: Optional[List[str]] = None) -> List[MailboxMessage]:
        """
        Fan one logical send out into one stored message per recipient.

        Recipients default to the team's configured workers; the sender is
        always excluded.
        """
        if recipients is None:
            config = self.read_team_config(team)
            if config is not None and config.workers:
                recipients = [w.name for w in config.workers]
            else:
                recipients = self.list_workers(team)
        seen = set()
        messages = []
        for recipient in recipients:
            if recipient == from_worker or recipient in seen:
                continue
            seen.add(recipient)
            messages.append(self.append_mailbox_message(team, from_worker, recipient, body))
        return messages

    def list_mailbox_messages(self, team: str, worker: str) -> List[MailboxMessage]:
        """Messages in arrival order. Malformed entries are quarantined and skipped."""
        mailbox = self.mailbox_dir(team, worker)
        if not os.path.isdir(mailbox):
            return []
        messages = []
        for filename in sorted(os.listdir(mailbox)):
            if not filename.endswith('.json'):
                continue
            message = read_model(os.path.join(mailbox, filename), MailboxMessage)
            if message is not None:
                messages.append(message)
        return messages

    def mark_message_notified(self, team: str, worker: str, message_id: str) -> bool:
        """Stamp notified_at on a stored message. Returns False when not found."""
        path = self._message_path(team, worker, message_id)
        if path is None:
            logger.warning(f"Cannot mark {message_id} notified: not in {team}/{worker} mailbox")
            return False
        message = read_model(path, MailboxMessage)
        if message is None:
            return False
        if message.notified_at is None:
            atomic_write_json(path, message.model_copy(update={'notified_at': now_iso()}))
        return True

    # ---------------------------------------------------------------- events

    def append_event(self, team: str, event_type: str, worker: str = "",
                     reason: Optional[str] = None, data: Optional[Dict[str, Any]] = None) -> Optional[TeamEvent]:
        """
        Append one line to the team event log.

        Best effort: failures are logged and None is returned.
        """
        event = TeamEvent(
            event_id=f"{event_type}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}",
            team=team,
            type=event_type,
            worker=worker,
            reason=reason,
            data=data or {},
        )
        path = self.events_path(team)
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, 'a') as f:
                f.write(event.model_dump_json() + '\n')
            return event
        except OSError as e:
            logger.warning(f"Failed to append {event_type} event for team {team}: {e}")
            return None

    def read_events(self, team: str) -> List[TeamEvent]:
        path = self.events_path(team)
        if not os.path.exists(path):
            return []
        events = []
        with open(path, 'r') as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    events.append(TeamEvent.model_validate_json(line))
                except ValidationError as e:
                    logger.warning(f"Skipping malformed event line {line_num} in {path}: {e}")
        return events

    # ---------------------------------------------------------------- leader

    def read_nudge_state(self) -> NudgeState:
        state = read_model(self.nudge_state_path(), NudgeState)
        return state if state is not None else NudgeState()

    def update_nudge_records(self, records: Dict[str, NudgeRecord]) -> None:
        """Merge per-team nudge records into team-leader-nudge.json under lock."""
        with LockedStateFile(self.nudge_state_path(), default={'last_nudged_by_team': {}}) as (data, f):
            by_team = data.get('last_nudged_by_team')
            if not isinstance(by_team, dict):
                by_team = {}
            for team, record in records.items():
                by_team[team] = record.model_dump(mode='json')
            data['last_nudged_by_team'] = by_team
            f.seek(0)
            f.truncate()
            f.write(json.dumps(data, indent=2))

    def read_leader_heartbeat(self) -> Optional[LeaderHeartbeat]:
        return read_model(self.leader_heartbeat_path(), LeaderHeartbeat)

    def record_leader_turn(self) -> LeaderHeartbeat:
        previous = self.read_leader_heartbeat()
        heartbeat = LeaderHeartbeat(turn_count=(previous.turn_count if previous else 0) + 1)
        atomic_write_json(self.leader_heartbeat_path(), heartbeat)
        return heartbeat
