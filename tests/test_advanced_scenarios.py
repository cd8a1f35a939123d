import asyncio
import pytest
from rollout_engine.control import InMemoryControlAPI, LiveWorkload
from rollout_engine.engine import OrchestrationDriver
from rollout_engine.errors import RunInProgress
from rollout_engine.failure import FailureInjector
from rollout_engine.models import (
    ApplyStatus, OrchestratorConfig, RollbackStatus, RolloutStatus, RunState, Verdict,
)
from rollout_engine.polling import CancelToken


def release(db_image, app_image, cache_image="redis:7"):
    return [
        {"name": "db", "tier": 0, "image": db_image},
        {"name": "cache", "tier": 0, "image": cache_image},
        {"name": "app", "tier": 1, "image": app_image, "replicas": 2},
    ]


class CancellingControl(InMemoryControlAPI):
    """Fires the cancel token on the n-th status poll of a workload"""

    def __init__(self, token, name, after, failure_injector=None, clock=None):
        super().__init__(failure_injector)
        self.token, self.name, self.after = token, name, after
        self.clock = clock
        self.polls = 0
        self.cancelled_at = None

    async def get_rollout(self, name):
        if name == self.name:
            self.polls += 1
            if self.polls == self.after:
                self.token.cancel("operator abort")
                self.cancelled_at = self.clock.now() if self.clock else None
        return await super().get_rollout(name)


class AdoptingControl(InMemoryControlAPI):
    """Reports workloads that were already running before this process started"""

    def __init__(self, live, failure_injector=None):
        super().__init__(failure_injector)
        self.live = live

    async def get_live_workload(self, name):
        return self.live.get(name)


class TestAdvancedScenarios:
    """Rollback policies, aborts and the run guard."""

    @pytest.mark.asyncio
    async def test_failed_upgrade_rolls_back_to_partial_failure(self, clock):
        control = InMemoryControlAPI(FailureInjector(crash_images={"app:v2"}))
        driver = OrchestrationDriver(control, clock=clock)
        assert (await driver.run(release("db:v1", "app:v1"))).success

        report = await driver.run(release("db:v1", "app:v2"))
        assert report.verdict == Verdict.PARTIAL_FAILURE
        app = report.descriptors["app"]
        assert app.rollout_status == RolloutStatus.FAILED
        assert app.error == "CrashLoopBackOff"
        assert app.revision == 2
        assert app.rollback.status == RollbackStatus.ROLLED_BACK
        assert app.rollback.target_revision == 1
        assert app.rollback.applied_revision == 3
        assert control.workloads["app"].descriptor.image == "app:v1"
        assert report.descriptors["db"].apply_status == ApplyStatus.UNCHANGED

    @pytest.mark.asyncio
    async def test_earlier_waves_are_not_rolled_back_by_default(self, clock):
        control = InMemoryControlAPI(FailureInjector(crash_images={"app:v2"}))
        driver = OrchestrationDriver(control, clock=clock)
        await driver.run(release("db:v1", "app:v1"))

        report = await driver.run(release("db:v2", "app:v2"))
        assert report.verdict == Verdict.PARTIAL_FAILURE
        assert report.descriptors["db"].rollback is None
        assert control.workloads["db"].descriptor.image == "db:v2"
        assert report.waves[0].rolled_back is False

    @pytest.mark.asyncio
    async def test_cascading_rollback_is_opt_in(self, clock):
        control = InMemoryControlAPI(FailureInjector(crash_images={"app:v2"}))
        driver = OrchestrationDriver(control, OrchestratorConfig(cascade_rollback=True), clock=clock)
        await driver.run(release("db:v1", "app:v1"))

        report = await driver.run(release("db:v2", "app:v2"))
        assert report.verdict == Verdict.PARTIAL_FAILURE
        assert report.descriptors["db"].rollback.status == RollbackStatus.ROLLED_BACK
        assert control.workloads["db"].descriptor.image == "db:v1"
        assert control.workloads["app"].descriptor.image == "app:v1"
        # cache did not change in this run so there is nothing to revert
        assert report.descriptors["cache"].rollback is None
        assert control.workloads["cache"].descriptor.revision == 1
        assert report.waves[0].rolled_back is True

    @pytest.mark.asyncio
    async def test_rejected_member_does_not_abort_siblings(self, clock):
        control = InMemoryControlAPI(FailureInjector(fail_attempts={"cache": 1}))
        report = await OrchestrationDriver(control, clock=clock).run(release("db:v1", "app:v1"))

        assert report.verdict == Verdict.FAILURE
        assert report.descriptors["db"].rollout_status == RolloutStatus.HEALTHY
        cache = report.descriptors["cache"]
        assert cache.apply_status == ApplyStatus.REJECTED
        assert cache.rollout_status == RolloutStatus.FAILED
        assert cache.rollback.status == RollbackStatus.NO_ROLLBACK_TARGET
        # the next wave never starts
        app = report.descriptors["app"]
        assert app.apply_status is None
        assert app.rollout_status == RolloutStatus.PENDING
        assert report.waves[1].skipped is True
        assert "app" not in control.workloads

    @pytest.mark.asyncio
    async def test_unreachable_apply_is_retried_then_reported(self, clock):
        control = InMemoryControlAPI(FailureInjector(unreachable_attempts={"db": 9}))
        report = await OrchestrationDriver(control, clock=clock).run(release("db:v1", "app:v1"))
        assert report.descriptors["db"].apply_status == ApplyStatus.UNREACHABLE
        assert report.verdict == Verdict.FAILURE
        assert report.descriptors["db"].rollback.status == RollbackStatus.NO_ROLLBACK_TARGET
        # three attempts, and no healthy revision for rollback to re-apply
        assert control.failure_injector.attempts["db"] == 3

    @pytest.mark.asyncio
    async def test_abort_mid_gate_skips_rollback(self, clock):
        token = CancelToken()
        control = CancellingControl(token, "app", after=3, failure_injector=FailureInjector(never_ready={"app"}))
        driver = OrchestrationDriver(control, clock=clock)

        report = await driver.run(release("db:v1", "app:v1"), cancel=token)
        assert report.verdict == Verdict.FAILURE
        assert report.error == "run aborted"
        app = report.descriptors["app"]
        assert app.rollout_status == RolloutStatus.TIMED_OUT
        assert app.rollback is None
        assert clock.now() < 300

    @pytest.mark.asyncio
    async def test_abort_before_start(self, clock):
        token = CancelToken()
        token.cancel()
        control = InMemoryControlAPI()
        report = await OrchestrationDriver(control, clock=clock).run(release("db:v1", "app:v1"), cancel=token)
        assert report.error == "run aborted"
        assert all(w.skipped for w in report.waves)
        assert control.apply_calls == []

    @pytest.mark.asyncio
    async def test_concurrent_run_on_same_target_is_rejected(self, clock):
        config = OrchestratorConfig(cluster="prod")
        first = OrchestrationDriver(InMemoryControlAPI(), config, clock=clock)
        second = OrchestrationDriver(InMemoryControlAPI(), config, clock=clock)

        task = asyncio.create_task(first.run(release("db:v1", "app:v1")))
        await asyncio.sleep(0)
        assert first.state != RunState.IDLE
        with pytest.raises(RunInProgress) as exc:
            await second.run(release("db:v1", "app:v1"))
        assert exc.value.target == "prod/default"

        assert (await task).success
        # guard is released once the first run ends
        assert (await second.run(release("db:v1", "app:v1"))).success

    @pytest.mark.asyncio
    async def test_different_targets_run_side_by_side(self, clock):
        a = OrchestrationDriver(InMemoryControlAPI(), OrchestratorConfig(namespace="a"), clock=clock)
        b = OrchestrationDriver(InMemoryControlAPI(), OrchestratorConfig(namespace="b"), clock=clock)
        reports = await asyncio.gather(a.run(release("db:v1", "app:v1")), b.run(release("db:v1", "app:v1")))
        assert all(r.success for r in reports)

    @pytest.mark.asyncio
    async def test_abort_during_rollback_stops_polling(self, clock):
        token = CancelToken()
        injector = FailureInjector(crash_images={"app:v2"})
        control = CancellingControl(token, "app", after=0, failure_injector=injector, clock=clock)
        driver = OrchestrationDriver(control, clock=clock)
        assert (await driver.run(release("db:v1", "app:v1"), cancel=token)).success

        # the restored revision never becomes ready; abort on its first status poll
        injector.never_ready.add("app")
        control.after = control.polls + 2
        report = await driver.run(release("db:v1", "app:v2"), cancel=token)

        assert token.cancelled
        assert report.verdict == Verdict.FAILURE
        assert report.error == "run aborted"
        assert report.state == RunState.FAILED
        rollback = report.descriptors["app"].rollback
        assert rollback.status == RollbackStatus.ROLLBACK_FAILED
        assert rollback.rollout_status == RolloutStatus.TIMED_OUT
        assert rollback.detail == "cancelled"
        assert control.polls == control.after
        assert clock.now() == control.cancelled_at


class TestLiveAdoption:
    """Healthy workloads already running serve as rollback targets for a fresh history."""

    live_app = LiveWorkload(revision=4, image="app:v1", replicas=2, ports=(), env=(), healthy=True)

    @pytest.mark.asyncio
    async def test_failed_first_run_rolls_back_to_live_revision(self, clock):
        control = AdoptingControl({"app": self.live_app}, FailureInjector(crash_images={"app:v2"}))
        driver = OrchestrationDriver(control, clock=clock)

        report = await driver.run(release("db:v1", "app:v2"))
        assert report.verdict == Verdict.PARTIAL_FAILURE
        app = report.descriptors["app"]
        assert app.revision == 5
        assert app.rollback.status == RollbackStatus.ROLLED_BACK
        assert app.rollback.target_revision == 4
        assert app.rollback.applied_revision == 6
        assert control.workloads["app"].descriptor.image == "app:v1"

    @pytest.mark.asyncio
    async def test_unhealthy_live_workload_is_not_adopted(self, clock):
        sick = self.live_app._replace(healthy=False)
        control = AdoptingControl({"app": sick}, FailureInjector(crash_images={"app:v2"}))
        report = await OrchestrationDriver(control, clock=clock).run(release("db:v1", "app:v2"))
        assert report.verdict == Verdict.FAILURE
        assert report.descriptors["app"].rollback.status == RollbackStatus.NO_ROLLBACK_TARGET
        assert report.descriptors["app"].revision == 1

    @pytest.mark.asyncio
    async def test_adoption_can_be_switched_off(self, clock):
        control = AdoptingControl({"app": self.live_app}, FailureInjector(crash_images={"app:v2"}))
        config = OrchestratorConfig(adopt_live_revisions=False)
        report = await OrchestrationDriver(control, config, clock=clock).run(release("db:v1", "app:v2"))
        assert report.descriptors["app"].rollback.status == RollbackStatus.NO_ROLLBACK_TARGET
