import asyncio
import threading
from dataclasses import replace

from .apply import ApplyEngine
from .descriptors import DescriptorStore
from .endpoint import EndpointResolver
from .errors import ControlUnreachable, CycleError, DescriptorError, RunInProgress
from .health import HealthGate
from .history import RevisionHistory
from .logger import get_logger
from .models import (
    DeploymentReport, DescriptorReport, OrchestratorConfig, RolloutStatus, RunState, Verdict,
    WaveReport, utcnow,
)
from .resolver import DependencyResolver
from .rollback import RollbackController

# Cluster targets with a run in flight in this process
_active_targets = set()
_active_lock = threading.Lock()


class OrchestrationDriver:
    def __init__(self, control, config=None, history=None, clock=None):
        self.control = control
        self.config = config if config else OrchestratorConfig()
        self.history = history if history is not None else RevisionHistory(self.config.history_limit)
        self.logger = get_logger("engine")
        self.state = RunState.IDLE

        cfg = self.config
        self.store = DescriptorStore()
        self.resolver = DependencyResolver()
        self.apply_engine = ApplyEngine(control, self.history, cfg.apply_max_attempts,
                                        cfg.apply_base_delay_s, cfg.apply_max_delay_s, clock=clock)
        self.health_gate = HealthGate(control, self.history, cfg.health_interval_s,
                                      cfg.health_timeout_s, clock=clock)
        self.rollback_controller = RollbackController(self.apply_engine, self.health_gate, self.history)
        self.endpoint_resolver = EndpointResolver(control, cfg.endpoint_interval_s, cfg.endpoint_timeout_s,
                                                  cfg.endpoint_max_attempts, clock=clock)

    def _enter(self, report, state, **details):
        self.state = state
        report.state = state
        event = {"event": "state", "state": state.value}
        event.update(details)
        report.history.append(event)
        self.logger.debug(f"State -> {state.value} {details if details else ''}")

    def _acquire(self):
        target = self.config.target
        with _active_lock:
            if target in _active_targets:
                self.logger.error(f"Deployment already in progress for {target}")
                raise RunInProgress(target)
            _active_targets.add(target)

    def _release(self):
        with _active_lock:
            _active_targets.discard(self.config.target)
        self.logger.debug("Deployment lock released")

    def plan(self, descriptors):
        """Validate and order descriptors without touching the cluster"""
        return self.resolver.resolve(self.store.load_all(descriptors))

    async def run(self, descriptors, cancel=None):
        """Deploy all descriptors wave by wave; always returns a report"""
        self._acquire()
        report = DeploymentReport(target=self.config.target)
        self.logger.info(f"Starting deployment to {self.config.target}")

        try:
            self._enter(report, RunState.RESOLVING)
            try:
                waves = self.plan(descriptors)
            except (DescriptorError, CycleError) as e:
                self.logger.error(f"Deployment rejected before any cluster call: {e}")
                return self._fail(report, str(e))

            self._register_waves(report, waves)
            if self.config.adopt_live_revisions:
                await self._adopt_live(waves)
            if not await self._run_waves(report, waves, cancel):
                return report

            await self._resolve_endpoints(report, waves, cancel)
            report.verdict = Verdict.SUCCESS
            self._enter(report, RunState.DONE)
            self.logger.info(f"SUCCESS: {len(report.descriptors)} workloads healthy across {len(waves)} waves")
            return report
        finally:
            report.finished_at = utcnow().isoformat()
            self._release()

    def _fail(self, report, error, verdict=Verdict.FAILURE):
        report.error = error
        report.verdict = verdict
        self._enter(report, RunState.FAILED)
        return report

    def _register_waves(self, report, waves):
        for wave in waves:
            report.waves.append(WaveReport(index=wave.index, tier=wave.tier, names=wave.names))
            for d in wave.descriptors:
                report.descriptors[d.name] = DescriptorReport(name=d.name, tier=d.tier, wave=wave.index)

    async def _adopt_live(self, waves):
        """Record healthy live workloads unknown to this history as rollback targets"""
        for wave in waves:
            for d in wave.descriptors:
                if self.history.entries(d.name):
                    continue
                try:
                    live = await self.control.get_live_workload(d.name)
                except ControlUnreachable as e:
                    self.logger.warning(f"Could not read live state of {d.name}: {e}")
                    continue
                if live is None or not live.healthy:
                    continue
                adopted = replace(d, image=live.image, replicas=live.replicas, ports=tuple(live.ports),
                                  env=tuple(live.env), revision=live.revision)
                self.history.append(adopted, RolloutStatus.HEALTHY)
                self.logger.info(f"Adopted live {d.name} revision {live.revision} as a rollback target")

    async def _run_waves(self, report, waves, cancel):
        """Apply and gate waves in order; returns False once a wave fails"""
        changed = {}  # wave index -> {name: revision} applied with a new spec this run

        for wave in waves:
            wave_report = report.waves[wave.index]
            if cancel is not None and cancel.cancelled:
                self._skip_after(report, waves, wave.index - 1)
                self._fail(report, "run aborted")
                return False
            self._enter(report, RunState.APPLYING, wave=wave.index, nodes=wave.names)
            outcomes = await self.apply_engine.apply(wave, cancel)

            for name, outcome in outcomes.items():
                entry = report.descriptors[name]
                entry.apply_status = outcome.status
                entry.revision = outcome.descriptor.revision
                if not outcome.ok:
                    entry.rollout_status = RolloutStatus.FAILED
                    entry.error = outcome.error
            changed[wave.index] = {n: o.descriptor.revision for n, o in outcomes.items() if o.changed}

            applied = [o.descriptor for o in outcomes.values() if o.ok]
            self._enter(report, RunState.GATING, wave=wave.index, nodes=[d.name for d in applied])
            gates = await self.health_gate.gate(applied, cancel=cancel)
            for name, gate in gates.items():
                entry = report.descriptors[name]
                entry.rollout_status = gate.status
                if not gate.healthy:
                    entry.error = gate.reason

            failing = {name: outcomes[name].descriptor.revision for name in wave.names
                       if report.descriptors[name].rollout_status != RolloutStatus.HEALTHY}
            if not failing:
                wave_report.healthy = True
                self.logger.info(f"Wave {wave.index} healthy: {wave.names}")
                continue

            self.logger.error(f"Wave {wave.index} failed: {sorted(failing)}")
            self._skip_after(report, waves, wave.index)
            if cancel is not None and cancel.cancelled:
                self._fail(report, "run aborted")
                return False

            await self._roll_back(report, waves, wave, failing, changed, cancel)
            return False

        return True

    def _skip_after(self, report, waves, index):
        for later in waves[index + 1:]:
            report.waves[later.index].skipped = True

    async def _roll_back(self, report, waves, wave, failing, changed, cancel=None):
        self._enter(report, RunState.ROLLING_BACK, wave=wave.index, nodes=sorted(failing))
        outcome = await self.rollback_controller.rollback(wave, failing, cancel)
        results = dict(outcome.results)
        report.waves[wave.index].rolled_back = True
        succeeded = outcome.succeeded

        if self.config.cascade_rollback:
            # Opt-in: healthy members of this wave, then earlier waves newest first
            healthy = {n: r for n, r in changed[wave.index].items() if n not in failing}
            targets = [(wave, healthy)] + [(w, changed[w.index]) for w in reversed(waves[:wave.index])]
            for target_wave, revisions in targets:
                if not revisions or (cancel is not None and cancel.cancelled):
                    continue
                cascade = await self.rollback_controller.rollback(target_wave, revisions, cancel)
                results.update(cascade.results)
                report.waves[target_wave.index].rolled_back = True
                succeeded = succeeded and cascade.succeeded

        for name, result in results.items():
            report.descriptors[name].rollback = result

        if cancel is not None and cancel.cancelled:
            self.logger.warning(f"Rollback of wave {wave.index} interrupted: {cancel.reason}")
            self._fail(report, "run aborted")
            return

        verdict = Verdict.PARTIAL_FAILURE if succeeded else Verdict.FAILURE
        worst = max((r.status for r in results.values()), key=lambda s: s.severity)
        self._fail(report, f"wave {wave.index} failed; rollback {worst.value}", verdict)
        self.logger.warning(f"{verdict.value.upper()}: deployment stopped at wave {wave.index}")

    async def _resolve_endpoints(self, report, waves, cancel):
        exposed = [d.name for wave in waves for d in wave.descriptors if d.expose]
        self._enter(report, RunState.RESOLVING_ENDPOINT, nodes=exposed)
        records = await asyncio.gather(*(self.endpoint_resolver.resolve(n, cancel) for n in exposed))
        report.endpoints = {r.name: r for r in records}
