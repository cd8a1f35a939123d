import asyncio

from .errors import ApplyRejected, ApplyUnreachable
from .logger import get_logger
from .models import ApplyOutcome, ApplyStatus
from .polling import retry_with_backoff


class ApplyEngine:
    """Create-or-update calls for one wave, reconciled per workload"""

    def __init__(self, control, history, max_attempts=3, base_delay_s=1.0, max_delay_s=30.0, clock=None):
        self.control = control
        self.history = history
        self.max_attempts = max_attempts
        self.base_delay_s = base_delay_s
        self.max_delay_s = max_delay_s
        self.clock = clock
        self.logger = get_logger("apply")

    async def apply(self, wave, cancel=None):
        """Apply every member of a wave at once; returns name -> ApplyOutcome"""
        self.logger.info(f"Applying wave {wave.index} (tier {wave.tier}): {wave.names}")
        outcomes = await asyncio.gather(*(self.apply_one(d, cancel) for d in wave.descriptors))
        return {outcome.descriptor.name: outcome for outcome in outcomes}

    async def apply_one(self, descriptor, cancel=None):
        candidate = descriptor.with_revision(self.history.next_revision(descriptor.name))
        attempts = 0

        async def attempt():
            nonlocal attempts
            attempts += 1
            return await self.control.apply_workload(candidate)

        try:
            applied, _ = await retry_with_backoff(
                attempt,
                max_attempts=self.max_attempts,
                base_delay_s=self.base_delay_s,
                max_delay_s=self.max_delay_s,
                retry_on=(ApplyUnreachable,),
                clock=self.clock,
                cancel=cancel,
                label=f"apply {descriptor.name}",
            )
        except ApplyRejected as e:
            self.logger.error(f"Control plane rejected {descriptor.name}: {e}")
            outcome = ApplyOutcome(candidate, ApplyStatus.REJECTED, attempts, str(e))
        except ApplyUnreachable as e:
            outcome = ApplyOutcome(candidate, ApplyStatus.UNREACHABLE, attempts, str(e))
        else:
            stamped = descriptor.with_revision(applied.revision)
            if applied.changed:
                self.logger.info(f"Applied {descriptor.name} at revision {applied.revision}")
                outcome = ApplyOutcome(stamped, ApplyStatus.APPLIED, attempts)
            else:
                self.logger.info(f"{descriptor.name} already at desired spec (revision {applied.revision})")
                outcome = ApplyOutcome(stamped, ApplyStatus.UNCHANGED, attempts)

        # Recorded whatever happened so rollbacks can see every attempt
        self.history.append(outcome.descriptor, outcome.status)
        return outcome
