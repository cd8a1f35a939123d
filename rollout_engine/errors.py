"""
Exception types raised by the rollout engine.

Per-workload failures (rejections, unreachable control plane) are raised by the
control API and caught by the apply engine, which turns them into outcomes.
Run-level failures (bad descriptors, dependency cycles) end a run before any
call reaches the cluster.
"""


class RolloutError(Exception):
    """Base exception for the rollout engine."""


class DescriptorError(RolloutError, ValueError):
    """A workload descriptor failed validation; nothing from it is accepted."""

    def __init__(self, field, message, name=None):
        self.field = field
        self.name = name
        prefix = f"{name}.{field}" if name else field
        super().__init__(f"{prefix}: {message}")


class CycleError(RolloutError):
    """The declared dependencies cannot be ordered into waves."""

    def __init__(self, members):
        self.members = sorted(members)
        super().__init__(f"dependency cycle between: {', '.join(self.members)}")


class ControlPlaneError(RolloutError):
    """Base class for failures reported by the cluster control API."""


class ControlUnreachable(ControlPlaneError):
    """The control API could not be reached. Safe to retry."""


class ApplyUnreachable(ControlUnreachable):
    """A create-or-update call never reached the control API."""


class ApplyRejected(ControlPlaneError):
    """The control API refused the desired spec (validation, quota). Not retried."""


class NoRollbackTarget(RolloutError):
    """No earlier healthy revision exists for a workload."""

    def __init__(self, name):
        self.name = name
        super().__init__(f"no healthy revision to roll back to for {name}")


class RunInProgress(RolloutError, RuntimeError):
    """Another run already targets the same cluster."""

    def __init__(self, target):
        self.target = target
        super().__init__(f"deployment already in progress for {target}")
