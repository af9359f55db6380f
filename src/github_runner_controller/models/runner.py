"""
GitHub runner domain models.

This module defines the records the controller reasons about: repository
pools, runner instances and their credentials, the append-only scaling
event log, and the job and container payloads exchanged with the CI
platform and the container runtime.
"""

from __future__ import annotations

import secrets
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def normalize_labels(labels: Any) -> List[str]:
    """Lower-case, de-duplicated labels in first-seen order."""
    seen: Dict[str, None] = {}
    for label in labels or []:
        label = str(label).strip().lower()
        if label:
            seen.setdefault(label, None)
    return list(seen)


class RunnerKind(str, Enum):
    """Dedicated runners are always on; dynamic runners come and go with load."""

    DEDICATED = "dedicated"
    DYNAMIC = "dynamic"


class RunnerState(str, Enum):
    """
    Runner lifecycle state.

    provisioning -> online -> {idle <-> busy} -> draining -> terminated,
    with unhealthy reachable from online, idle and busy on missed heartbeats.
    """

    PROVISIONING = "provisioning"   # Container requested, not yet seen online
    ONLINE = "online"               # First heartbeat received
    IDLE = "idle"                   # Ready to accept a job
    BUSY = "busy"                   # Executing a job
    DRAINING = "draining"           # Selected for teardown
    UNHEALTHY = "unhealthy"         # Missed heartbeats, awaiting recovery
    TERMINATED = "terminated"       # Gone


# States that count towards pool capacity when evaluating utilization
ACTIVE_STATES = frozenset({
    RunnerState.PROVISIONING,
    RunnerState.ONLINE,
    RunnerState.IDLE,
    RunnerState.BUSY,
})

# States a heartbeat can move to unhealthy
HEARTBEAT_STATES = frozenset({
    RunnerState.ONLINE,
    RunnerState.IDLE,
    RunnerState.BUSY,
})


class ScalingAction(str, Enum):
    SCALE_UP = "scale-up"
    SCALE_DOWN = "scale-down"
    # Launches and teardowns outside the cooldown rules: initial fleet,
    # recovery, forced re-registration and operator removals
    PROVISION = "provision"
    RETIRE = "retire"


class ScalingReason(str, Enum):
    UTILIZATION = "utilization"
    JOB_QUEUED = "job-queued"
    IDLE_TIMEOUT = "idle-timeout"
    RECOVERY = "recovery"
    FORCED_RECREATE = "forced-recreate"
    INITIALIZATION = "initialization"
    OPERATOR = "operator"

    @property
    def counts_toward_cooldown(self) -> bool:
        """Only load-driven actions start a cooldown window."""
        return self in (
            ScalingReason.UTILIZATION,
            ScalingReason.JOB_QUEUED,
            ScalingReason.IDLE_TIMEOUT,
        )

    @property
    def launch_action(self) -> ScalingAction:
        return ScalingAction.SCALE_UP if self.counts_toward_cooldown else ScalingAction.PROVISION

    @property
    def teardown_action(self) -> ScalingAction:
        return ScalingAction.SCALE_DOWN if self.counts_toward_cooldown else ScalingAction.RETIRE


class EventOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Credential(BaseModel):
    """
    Time-limited registration credential issued by the CI platform.

    Scoped to one repository and one runner identity; owned exclusively by
    the runner instance it was issued for.
    """

    value: SecretStr
    issued_at: datetime
    expires_at: datetime
    repository: str
    runner_name: str

    @property
    def ttl(self) -> timedelta:
        return self.expires_at - self.issued_at

    def refresh_due_at(self, fraction: float) -> datetime:
        """Moment a proactive refresh should fire, as a fraction of the TTL."""
        return self.issued_at + self.ttl * fraction

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class ContainerHandle(BaseModel):
    """Reference to a unit in the container runtime."""

    name: str
    namespace: str
    secret_name: Optional[str] = None
    uid: Optional[str] = None


class ContainerStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    FAILED = "failed"
    ABSENT = "absent"


class ContainerSpec(BaseModel):
    """Everything the container driver needs to start a runner."""

    name: str
    instance_id: str
    repository: str
    kind: RunnerKind
    image: str
    labels: List[str]
    credential: Credential
    profile: str = "default"
    environment: Dict[str, str] = Field(default_factory=dict)


class RepositoryPool(BaseModel):
    """
    A repository's runner pool.

    ``dynamic_count`` is maintained by the pool registry from the instance
    records it holds; ``0 <= dynamic_count <= dynamic_ceiling`` is checked on
    every commit.
    """

    repository: str
    dedicated_count: int = Field(default=1, ge=0)
    dynamic_count: int = Field(default=0, ge=0)
    dynamic_ceiling: int = Field(default=3, ge=0)
    scale_up_threshold: float = Field(default=1.0, gt=0.0, le=1.0)
    idle_timeout: float = Field(default=300.0, gt=0)
    cooldown: float = Field(default=60.0, ge=0)
    labels: List[str] = Field(default_factory=list)
    blocked_job_types: List[str] = Field(default_factory=list)
    profile: str = "default"
    last_scale_up_at: Optional[datetime] = None
    last_scale_down_at: Optional[datetime] = None

    @field_validator("labels", "blocked_job_types", mode="before")
    @classmethod
    def validate_labels(cls, v: Any) -> List[str]:
        return normalize_labels(v)

    @property
    def short_name(self) -> str:
        return self.repository.split("/")[-1].lower()

    def cooldown_elapsed(self, last_action: Optional[datetime], now: datetime) -> bool:
        if last_action is None:
            return True
        return (now - last_action).total_seconds() >= self.cooldown


class RunnerInstance(BaseModel):
    """
    Individual runner instance record.

    The pool registry owns these records; every other component works on
    copies and writes back through registry transactions.
    """

    id: str = Field(default_factory=lambda: f"runner-{secrets.token_hex(6)}")
    repository: str
    kind: RunnerKind
    state: RunnerState = RunnerState.PROVISIONING
    slot: Optional[int] = None
    runner_name: str = ""
    labels: List[str] = Field(default_factory=list)
    blocked_job_types: List[str] = Field(default_factory=list)
    handle: Optional[ContainerHandle] = None
    credential: Optional[Credential] = None
    created_at: datetime = Field(default_factory=utcnow)
    provisioned_at: Optional[datetime] = None
    last_heartbeat_at: Optional[datetime] = None
    missed_heartbeats: int = 0
    last_busy_at: Optional[datetime] = None
    current_job_id: Optional[str] = None
    assigned_at: Optional[datetime] = None
    recovery_attempts: int = 0
    quarantined: bool = False
    quarantine_reason: Optional[str] = None
    generation: int = 0

    @field_validator("labels", "blocked_job_types", mode="before")
    @classmethod
    def validate_labels(cls, v: Any) -> List[str]:
        return normalize_labels(v)

    def idle_for(self, now: datetime) -> timedelta:
        """Time since the runner last did work (or since creation if it never has)."""
        reference = self.last_busy_at or self.created_at
        return now - reference

    @property
    def is_routable(self) -> bool:
        return self.state == RunnerState.IDLE and not self.quarantined


class ScalingEvent(BaseModel):
    """Append-only record of a scaling or recovery action."""

    event_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    repository: str
    action: ScalingAction
    reason: ScalingReason
    outcome: EventOutcome = EventOutcome.SUCCEEDED
    instance_id: Optional[str] = None
    detail: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class JobRequest(BaseModel):
    """A queued CI job as observed on the platform."""

    job_id: str
    repository: str
    labels: List[str] = Field(default_factory=list)
    anti_affinity: List[str] = Field(default_factory=list)
    job_type: Optional[str] = None
    name: Optional[str] = None
    queued_at: datetime = Field(default_factory=utcnow)

    @field_validator("labels", "anti_affinity", mode="before")
    @classmethod
    def validate_labels(cls, v: Any) -> List[str]:
        return normalize_labels(v)


class RoutingOutcome(str, Enum):
    ASSIGNED = "assigned"
    QUEUED = "queued"
    BACKPRESSURE = "backpressure"
    UNSCHEDULABLE = "unschedulable"
    EXPIRED = "expired"


class RoutingDecision(BaseModel):
    job_id: str
    repository: str
    outcome: RoutingOutcome
    instance_id: Optional[str] = None
    reason: Optional[str] = None


class PlatformRunner(BaseModel):
    """A self-hosted runner as listed by the CI platform."""

    id: int
    name: str
    status: str
    busy: bool = False
    labels: List[str] = Field(default_factory=list)

    @property
    def online(self) -> bool:
        return self.status == "online"


class Heartbeat(BaseModel):
    """Outcome of one health probe."""

    alive: bool
    busy: Optional[bool] = None
    detail: Optional[str] = None


class StatusEventKind(str, Enum):
    INSTANCE_STATE = "instance_state"
    SCALING_EVENT = "scaling_event"
    QUARANTINE = "quarantine"


class StatusEvent(BaseModel):
    """Payload pushed to status channel subscribers (delivered at least once)."""

    model_config = ConfigDict(use_enum_values=True)

    event_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    sequence: int = 0
    kind: StatusEventKind
    repository: str
    instance_id: Optional[str] = None
    from_state: Optional[RunnerState] = None
    to_state: Optional[RunnerState] = None
    scaling_event: Optional[ScalingEvent] = None
    detail: Optional[str] = None
    emitted_at: datetime = Field(default_factory=utcnow)


class ScaleUpResult(str, Enum):
    """Answer to an out-of-band scale-up request."""

    ACCEPTED = "accepted"
    DEFERRED = "deferred"
    CAPACITY_EXCEEDED = "capacity_exceeded"
    BLOCKED = "blocked"
    NO_DEMAND = "no_demand"
