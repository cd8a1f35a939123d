from .models import (
    Descriptor, Wave, RolloutStatus, ApplyStatus, ApplyOutcome, RollbackStatus,
    RollbackOutcome, EndpointRecord, Verdict, RunState, DeploymentReport, OrchestratorConfig
)
from .errors import (
    RolloutError, DescriptorError, CycleError, ApplyRejected, ApplyUnreachable,
    ControlUnreachable, NoRollbackTarget, RunInProgress
)
from .descriptors import DescriptorStore
from .resolver import DependencyResolver
from .history import RevisionHistory
from .polling import CancelToken, Clock
from .control import ControlAPI, InMemoryControlAPI
from .failure import FailureInjector
from .engine import OrchestrationDriver

__all__ = [
    "Descriptor", "Wave", "RolloutStatus", "ApplyStatus", "ApplyOutcome", "RollbackStatus",
    "RollbackOutcome", "EndpointRecord", "Verdict", "RunState", "DeploymentReport",
    "OrchestratorConfig",
    "RolloutError", "DescriptorError", "CycleError", "ApplyRejected", "ApplyUnreachable",
    "ControlUnreachable", "NoRollbackTarget", "RunInProgress",
    "DescriptorStore", "DependencyResolver", "RevisionHistory", "CancelToken", "Clock",
    "ControlAPI", "InMemoryControlAPI", "FailureInjector", "OrchestrationDriver"
]
