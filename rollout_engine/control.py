import asyncio
from collections import namedtuple

from .errors import ApplyRejected, ApplyUnreachable, ControlUnreachable
from .failure import FailureInjector
from .logger import get_logger

AppliedWorkload = namedtuple("AppliedWorkload", ["revision", "changed"])
WorkloadObservation = namedtuple("WorkloadObservation", ["desired", "ready", "updated", "failure"])
LiveWorkload = namedtuple("LiveWorkload", ["revision", "image", "replicas", "ports", "env", "healthy"])


class ControlAPI:
    """Cluster operations the orchestrator depends on"""

    async def apply_workload(self, descriptor):
        """Create or update a workload keyed by name.

        Returns AppliedWorkload; ``changed`` is False when the live spec already
        matches, in which case ``revision`` is the live one. Raises
        ApplyRejected or ApplyUnreachable.
        """
        raise NotImplementedError

    async def get_rollout(self, name):
        """Returns a WorkloadObservation; raises ControlUnreachable"""
        raise NotImplementedError

    async def get_external_address(self, name):
        """Returns the hostname or IP routed to the workload, or None"""
        raise NotImplementedError

    async def get_live_workload(self, name):
        """Returns a LiveWorkload describing what runs now, or None when unknown.

        Optional; control planes that cannot tell return None.
        """
        return None


class _Workload:
    def __init__(self, descriptor):
        self.descriptor = descriptor
        self.polls = 0
        self.address_polls = 0


class InMemoryControlAPI(ControlAPI):
    """Simulated control plane; rollouts advance one step per status poll"""

    def __init__(self, failure_injector=None, domain="cluster.local"):
        self.failure_injector = failure_injector if failure_injector else FailureInjector()
        self.domain = domain
        self.workloads = {}
        self.apply_calls = []  # descriptors in the order they reached the control plane
        self.logger = get_logger("control")

    async def _simulate_latency(self):
        delay = self.failure_injector.delay_seconds()
        if delay > 0:
            await asyncio.sleep(delay)

    async def apply_workload(self, descriptor):
        await self._simulate_latency()
        fault = self.failure_injector.on_apply(descriptor.name)
        if fault == "unreachable":
            raise ApplyUnreachable(f"control plane unreachable while applying {descriptor.name}")
        if fault == "rejected":
            raise ApplyRejected(f"spec for {descriptor.name} rejected")

        self.apply_calls.append(descriptor)
        current = self.workloads.get(descriptor.name)
        if current and current.descriptor.spec_key() == descriptor.spec_key():
            self.logger.debug(f"{descriptor.name} unchanged at revision {current.descriptor.revision}")
            return AppliedWorkload(current.descriptor.revision, False)

        self.workloads[descriptor.name] = _Workload(descriptor)
        self.logger.debug(f"{descriptor.name} now at revision {descriptor.revision}")
        return AppliedWorkload(descriptor.revision, True)

    async def get_rollout(self, name):
        await self._simulate_latency()
        if self.failure_injector.status_down(name):
            raise ControlUnreachable(f"control plane unreachable while reading {name}")
        workload = self.workloads.get(name)
        if workload is None:
            return WorkloadObservation(0, 0, 0, f"workload {name} not found")

        workload.polls += 1
        desired = workload.descriptor.replicas
        if self.failure_injector.crashes(workload.descriptor):
            return WorkloadObservation(desired, 0, desired, "CrashLoopBackOff")

        needed = self.failure_injector.polls_until_ready(name)
        if needed is not None and workload.polls >= needed:
            return WorkloadObservation(desired, desired, desired, None)
        # Still rolling out: pods updated but not all ready
        ready = max(0, desired - 1) if workload.polls > 1 else 0
        return WorkloadObservation(desired, ready, desired, None)

    async def get_external_address(self, name):
        await self._simulate_latency()
        workload = self.workloads.get(name)
        if workload is None:
            return None
        workload.address_polls += 1
        needed = self.failure_injector.polls_until_address(name)
        if needed is None or workload.address_polls < needed:
            return None
        return f"{name}.{self.domain}"
