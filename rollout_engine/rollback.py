import asyncio

from .errors import NoRollbackTarget
from .logger import get_logger
from .models import RollbackOutcome, RollbackResult, RollbackStatus


class RollbackController:
    """Reverts failing workloads to their last healthy revision"""

    def __init__(self, apply_engine, health_gate, history):
        self.apply_engine = apply_engine
        self.health_gate = health_gate
        self.history = history
        self.logger = get_logger("rollback")

    async def rollback(self, wave, failing=None, cancel=None):
        """Roll back members of a wave.

        ``failing`` maps workload name to the revision being reverted; by
        default every member of the wave at its latest revision. Workloads
        without an earlier healthy revision are left as they are.
        """
        if failing is None:
            failing = {name: self.history.current_revision(name) for name in wave.names}

        self.logger.warning(f"Rolling back wave {wave.index}: {sorted(failing)}")
        results = await asyncio.gather(*(
            self._rollback_one(name, revision, cancel) for name, revision in sorted(failing.items())
        ))
        outcome = RollbackOutcome(wave=wave.index, results={r.name: r for r in results})

        if outcome.succeeded:
            self.logger.info(f"Rollback of wave {wave.index} completed")
        else:
            self.logger.error(f"Rollback of wave {wave.index} ended with {outcome.severity.value}")
        return outcome

    async def _rollback_one(self, name, revision, cancel=None):
        result = RollbackResult(name=name, status=RollbackStatus.NOT_NEEDED, from_revision=revision)
        try:
            target = self.history.last_healthy(name, before=revision)
        except NoRollbackTarget as e:
            self.logger.error(str(e))
            result.status = RollbackStatus.NO_ROLLBACK_TARGET
            result.detail = str(e)
            return result

        result.target_revision = target.revision
        self.logger.info(f"Restoring {name} from revision {revision} to the spec of revision {target.revision}")
        applied = await self.apply_engine.apply_one(target.descriptor, cancel)
        result.applied_revision = applied.descriptor.revision
        if not applied.ok:
            result.status = RollbackStatus.ROLLBACK_FAILED
            result.detail = applied.error
            return result

        gate = await self.health_gate.watch(applied.descriptor, cancel=cancel)
        result.rollout_status = gate.status
        if gate.healthy:
            result.status = RollbackStatus.ROLLED_BACK
        else:
            result.status = RollbackStatus.ROLLBACK_FAILED
            result.detail = gate.reason
        return result
