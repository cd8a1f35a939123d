from dataclasses import dataclass, field, asdict, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class RolloutStatus(str, Enum):
    PENDING = "pending"
    PROGRESSING = "progressing"
    HEALTHY = "healthy"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def terminal(self):
        return self in (RolloutStatus.HEALTHY, RolloutStatus.FAILED, RolloutStatus.TIMED_OUT)


class ApplyStatus(str, Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    REJECTED = "rejected"
    UNREACHABLE = "unreachable"


class RollbackStatus(str, Enum):
    # Declared from least to most severe
    NOT_NEEDED = "not_needed"
    ROLLED_BACK = "rolled_back"
    NO_ROLLBACK_TARGET = "no_rollback_target"
    ROLLBACK_FAILED = "rollback_failed"

    @property
    def severity(self):
        return list(RollbackStatus).index(self)


class Verdict(str, Enum):
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    FAILURE = "failure"


class RunState(str, Enum):
    IDLE = "idle"
    RESOLVING = "resolving"
    APPLYING = "applying"
    GATING = "gating"
    ROLLING_BACK = "rolling_back"
    RESOLVING_ENDPOINT = "resolving_endpoint"
    DONE = "done"
    FAILED = "failed"


def utcnow():
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Descriptor:
    """Desired state of one workload, immutable for the lifetime of a run"""
    name: str
    image: str
    tier: int = 0
    replicas: int = 1
    ports: tuple = ()
    env: tuple = ()  # sorted (name, value) pairs
    depends_on: tuple = ()  # explicit dependencies on other workloads by name
    depends_on_tier: Optional[int] = None
    expose: bool = False  # resolve an external endpoint once deployed
    revision: int = 0  # 0 until applied

    @property
    def environment(self):
        return dict(self.env)

    def spec_key(self):
        """The part of the descriptor the control plane compares for changes"""
        return (self.image, self.replicas, tuple(self.ports), tuple(self.env))

    def with_revision(self, revision):
        return replace(self, revision=revision)


@dataclass(frozen=True)
class Wave:
    index: int
    tier: int
    descriptors: tuple

    @property
    def names(self):
        return [d.name for d in self.descriptors]

    def __len__(self):
        return len(self.descriptors)


@dataclass
class ApplyOutcome:
    descriptor: Descriptor  # stamped with the revision that is live (or was attempted)
    status: ApplyStatus
    attempts: int = 1
    error: Optional[str] = None

    @property
    def ok(self):
        return self.status in (ApplyStatus.APPLIED, ApplyStatus.UNCHANGED)

    @property
    def changed(self):
        return self.status == ApplyStatus.APPLIED


@dataclass(frozen=True)
class RevisionEntry:
    descriptor: Descriptor
    outcome: str  # ApplyStatus or RolloutStatus value
    applied_at: datetime = field(default_factory=utcnow)

    @property
    def name(self):
        return self.descriptor.name

    @property
    def revision(self):
        return self.descriptor.revision


@dataclass
class GateResult:
    name: str
    revision: int
    status: RolloutStatus
    polls: int = 0
    ready: int = 0
    desired: int = 0
    reason: Optional[str] = None
    transitions: list = field(default_factory=list)

    @property
    def healthy(self):
        return self.status == RolloutStatus.HEALTHY


@dataclass
class RollbackResult:
    name: str
    status: RollbackStatus
    from_revision: int = 0
    target_revision: Optional[int] = None  # revision whose spec was restored
    applied_revision: Optional[int] = None  # revision assigned to the restored spec
    rollout_status: Optional[RolloutStatus] = None
    detail: Optional[str] = None


@dataclass
class RollbackOutcome:
    wave: int
    results: dict = field(default_factory=dict)

    @property
    def severity(self):
        """Worst status across all rolled back workloads"""
        if not self.results:
            return RollbackStatus.NOT_NEEDED
        return max((r.status for r in self.results.values()), key=lambda s: s.severity)

    @property
    def succeeded(self):
        return self.severity.severity <= RollbackStatus.ROLLED_BACK.severity


@dataclass(frozen=True)
class EndpointRecord:
    name: str
    address: Optional[str] = None  # None means unresolved
    attempts: int = 0

    @property
    def resolved(self):
        return self.address is not None


@dataclass
class DescriptorReport:
    name: str
    tier: int
    wave: int
    revision: int = 0
    apply_status: Optional[ApplyStatus] = None
    rollout_status: RolloutStatus = RolloutStatus.PENDING
    rollback: Optional[RollbackResult] = None
    error: Optional[str] = None


@dataclass
class WaveReport:
    index: int
    tier: int
    names: list
    healthy: bool = False
    rolled_back: bool = False
    skipped: bool = False


@dataclass
class DeploymentReport:
    """Structured result of one orchestration run"""
    target: str
    verdict: Verdict = Verdict.FAILURE
    state: RunState = RunState.IDLE
    waves: list = field(default_factory=list)
    descriptors: dict = field(default_factory=dict)  # name -> DescriptorReport
    endpoints: dict = field(default_factory=dict)  # name -> EndpointRecord
    error: Optional[str] = None
    history: list = field(default_factory=list)  # run events in order
    started_at: str = field(default_factory=lambda: utcnow().isoformat())
    finished_at: Optional[str] = None

    @property
    def success(self):
        return self.verdict == Verdict.SUCCESS

    def to_dict(self):
        data = asdict(self)
        data["endpoints"] = {
            name: dict(record, resolved=record["address"] is not None)
            for name, record in data["endpoints"].items()
        }
        return data


@dataclass(frozen=True)
class OrchestratorConfig:
    """Everything a run needs to know about its target, fixed at run start"""
    cluster: str = "default"
    namespace: str = "default"
    region: Optional[str] = None
    health_timeout_s: float = 300.0
    health_interval_s: float = 5.0
    endpoint_timeout_s: float = 300.0
    endpoint_interval_s: float = 10.0
    endpoint_max_attempts: Optional[int] = None
    apply_max_attempts: int = 3
    apply_base_delay_s: float = 1.0
    apply_max_delay_s: float = 30.0
    history_limit: int = 10  # revisions kept per workload
    cascade_rollback: bool = False  # also revert earlier, already healthy waves
    adopt_live_revisions: bool = True  # seed rollback targets from healthy live workloads

    @property
    def target(self):
        return f"{self.cluster}/{self.namespace}"

    @classmethod
    def from_mapping(cls, data, **overrides):
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown configuration keys: {', '.join(unknown)}")
        values = dict(data)
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
