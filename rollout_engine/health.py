import asyncio

from .errors import ControlUnreachable
from .logger import get_logger
from .models import GateResult, RolloutStatus
from .polling import Poller


class HealthGate:
    """Polls a workload's rollout until it is confirmed ready, fails, or runs out of time.

    Each workload moves Pending -> Progressing -> Healthy | Failed | TimedOut.
    Ready replicas must cover the desired count on two consecutive polls
    before the workload counts as Healthy, so a flapping rollout is not
    accepted on a single good sample.
    """

    def __init__(self, control, history=None, interval_s=5.0, timeout_s=300.0, clock=None):
        self.control = control
        self.history = history
        self.interval_s = interval_s
        self.timeout_s = timeout_s
        self.clock = clock
        self.logger = get_logger("health")

    async def watch(self, descriptor, timeout_s=None, cancel=None):
        name = descriptor.name
        result = GateResult(name=name, revision=descriptor.revision, status=RolloutStatus.PENDING,
                            desired=descriptor.replicas, transitions=[RolloutStatus.PENDING])

        def move(status, reason=None):
            if status != result.status:
                self.logger.debug(f"{name}: {result.status.value} -> {status.value}")
                result.status = status
                result.transitions.append(status)
            if reason:
                result.reason = reason

        poller = Poller(self.interval_s, timeout_s=timeout_s if timeout_s is not None else self.timeout_s,
                        cancel=cancel, clock=self.clock)
        confirming = False

        async for _ in poller:
            result.polls = poller.attempts
            try:
                observed = await self.control.get_rollout(name)
            except ControlUnreachable as e:
                self.logger.warning(f"Status poll {poller.attempts} for {name} failed: {e}")
                continue

            result.ready = observed.ready
            if observed.failure:
                move(RolloutStatus.FAILED, observed.failure)
                break

            if observed.ready >= descriptor.replicas:
                if confirming:
                    move(RolloutStatus.HEALTHY)
                    break
                confirming = True
                move(RolloutStatus.PROGRESSING)
            else:
                confirming = False
                if observed.ready > 0 or observed.updated > 0:
                    move(RolloutStatus.PROGRESSING)

        if not result.status.terminal:
            if poller.cancelled:
                move(RolloutStatus.TIMED_OUT, "cancelled")
            else:
                move(RolloutStatus.TIMED_OUT, f"not ready after {poller.timeout_s}s")

        log = self.logger.info if result.healthy else self.logger.error
        log(f"{name} revision {descriptor.revision} is {result.status.value} after {result.polls} polls"
            + (f" ({result.reason})" if result.reason else ""))
        if self.history is not None:
            self.history.append(descriptor, result.status)
        return result

    async def gate(self, descriptors, timeout_s=None, cancel=None):
        """Watch several workloads concurrently; returns name -> GateResult"""
        results = await asyncio.gather(*(self.watch(d, timeout_s, cancel) for d in descriptors))
        return {r.name: r for r in results}

    @staticmethod
    def wave_healthy(results):
        return all(r.healthy for r in results.values())
