"""Pydantic models for Codex Team state documents."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


def now_iso() -> str:
    """Current UTC time as an ISO-8601 string with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def parse_iso_to_epoch(value: Optional[str]) -> Optional[float]:
    """Parse an ISO-8601 timestamp into epoch seconds; None when unparseable."""
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


# Phase schemas
class TeamPhase(str, Enum):
    """
    Team lifecycle phases.

    Flow:
        team-plan → team-prd → team-exec → team-verify → complete
                                   ↑            ↓
                                   └──── team-fix ───→ failed

    complete, failed and cancelled are terminal.
    """
    PLAN = "team-plan"
    PRD = "team-prd"
    EXEC = "team-exec"
    VERIFY = "team-verify"
    FIX = "team-fix"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_PHASES = frozenset({TeamPhase.COMPLETE, TeamPhase.FAILED, TeamPhase.CANCELLED})


class PhaseTransition(BaseModel):
    """One entry of the append-only transition log."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    from_phase: TeamPhase = Field(alias="from")
    to_phase: TeamPhase = Field(alias="to")
    at: str
    reason: Optional[str] = None


class TeamTask(BaseModel):
    """A unit of work tracked on the team state."""
    id: str
    subject: str
    description: str = ""
    status: Literal["pending", "in_progress", "completed", "blocked"] = "pending"
    owner: Optional[str] = None
    blocked_by: List[str] = Field(default_factory=list)
    created_at: str = Field(default_factory=now_iso)
    completed_at: Optional[str] = None


class TeamState(BaseModel):
    """Phase state of one team (team/<name>/state.json)."""
    model_config = ConfigDict(populate_by_name=True)

    name: str
    phase: TeamPhase = TeamPhase.PLAN
    task_description: str = ""
    created_at: str = Field(default_factory=now_iso)
    phase_transitions: List[PhaseTransition] = Field(default_factory=list)
    tasks: List[TeamTask] = Field(default_factory=list)
    max_fix_attempts: int = Field(default=3, ge=0)
    current_fix_attempt: int = Field(default=0, ge=0)
    tmux_session: str = ""
    active: bool = True

    @model_validator(mode="after")
    def _check_invariants(self) -> "TeamState":
        if self.current_fix_attempt > self.max_fix_attempts:
            raise ValueError(
                f"current_fix_attempt ({self.current_fix_attempt}) exceeds "
                f"max_fix_attempts ({self.max_fix_attempts})"
            )
        if self.phase in TERMINAL_PHASES:
            self.active = False
        return self


# Config schemas
class WorkerInfo(BaseModel):
    """Static worker binding recorded in the team config."""
    name: str
    index: int = Field(ge=1)
    role: str = "executor"
    pane_id: Optional[str] = None


class TeamConfig(BaseModel):
    """Team config (team/<name>/config.json)."""
    model_config = ConfigDict(extra="allow")

    name: str
    tmux_session: str = ""
    task: str = ""
    agent_type: str = "executor"
    worker_count: int = Field(default=0, ge=0)
    leader_pane_id: Optional[str] = None
    created_at: str = Field(default_factory=now_iso)
    workers: List[WorkerInfo] = Field(default_factory=list)


# Worker schemas
class WorkerStatus(BaseModel):
    """Worker self-reported status (status.json)."""
    state: Literal["idle", "working", "blocked"] = "idle"
    updated_at: str = Field(default_factory=now_iso)
    current_task_id: Optional[str] = None
    reason: Optional[str] = None


class HeartbeatRecord(BaseModel):
    """Liveness record a worker writes about itself (heartbeat.json)."""
    pid: Optional[int] = None
    last_turn_at: str = Field(default_factory=now_iso)
    turn_count: int = Field(default=0, ge=0)
    alive: bool = True


class ShutdownRequest(BaseModel):
    """Pending or acknowledged shutdown request (shutdown-request.json)."""
    requested_at: str = Field(default_factory=now_iso)
    requested_by: str = "leader-fixed"
    acked_at: Optional[str] = None


class MailboxMessage(BaseModel):
    """A mailbox entry. Immutable except for notified_at."""
    message_id: str
    from_worker: str
    to_worker: str
    body: str
    created_at: str = Field(default_factory=now_iso)
    notified_at: Optional[str] = None


class WorkerRecord(BaseModel):
    """Assembled view of everything recorded about one worker."""
    name: str
    index: Optional[int] = None
    pane_id: Optional[str] = None
    status: Optional[WorkerStatus] = None
    heartbeat: Optional[HeartbeatRecord] = None
    inbox: str = ""
    mailbox: List[MailboxMessage] = Field(default_factory=list)
    shutdown_request: Optional[ShutdownRequest] = None


# Leader schemas
class NudgeRecord(BaseModel):
    """Last nudge sent to the leader for one team."""
    at: str = ""
    last_message_id: str = ""


class NudgeState(BaseModel):
    """team-leader-nudge.json."""
    last_nudged_by_team: Dict[str, NudgeRecord] = Field(default_factory=dict)


class LeaderHeartbeat(BaseModel):
    """leader-heartbeat.json, updated once per leader turn."""
    last_turn_at: str = Field(default_factory=now_iso)
    turn_count: int = Field(default=0, ge=0)


# Event schemas
class TeamEvent(BaseModel):
    """One line of events/events.ndjson."""
    event_id: str
    team: str
    type: str
    worker: str = ""
    reason: Optional[str] = None
    created_at: str = Field(default_factory=now_iso)
    data: Dict[str, Any] = Field(default_factory=dict)
