import asyncio
import time
import pytest
from rollout_engine.apply import ApplyEngine
from rollout_engine.control import InMemoryControlAPI
from rollout_engine.failure import FailureInjector
from rollout_engine.history import RevisionHistory
from rollout_engine.models import ApplyStatus, Wave
from conftest import make_descriptor


def wave_of(*descriptors, index=0):
    return Wave(index=index, tier=descriptors[0].tier, descriptors=tuple(descriptors))


class TestApplyEngine:
    """Create-or-update behaviour per workload."""

    @pytest.mark.asyncio
    async def test_first_apply_creates_revision_one(self, clock):
        control = InMemoryControlAPI()
        history = RevisionHistory()
        outcome = await ApplyEngine(control, history, clock=clock).apply_one(make_descriptor("web"))
        assert outcome.status == ApplyStatus.APPLIED
        assert outcome.ok is True
        assert outcome.descriptor.revision == 1
        assert control.workloads["web"].descriptor.revision == 1
        assert [e.outcome for e in history.entries("web")] == ["applied"]

    @pytest.mark.asyncio
    async def test_reapplying_identical_descriptor_changes_nothing(self, clock):
        control = InMemoryControlAPI()
        history = RevisionHistory()
        engine = ApplyEngine(control, history, clock=clock)
        d = make_descriptor("web", replicas=3, ports=(80,))

        first = await engine.apply_one(d)
        stored = control.workloads["web"]
        observed = await control.get_rollout("web")

        second = await engine.apply_one(d)
        assert second.status == ApplyStatus.UNCHANGED
        assert second.descriptor.revision == first.descriptor.revision == 1
        assert control.workloads["web"] is stored
        assert control.workloads["web"].descriptor == first.descriptor
        assert (await control.get_rollout("web")).ready == observed.ready
        assert history.next_revision("web") == 2
        assert [e.outcome for e in history.entries("web")] == ["applied", "unchanged"]

    @pytest.mark.asyncio
    async def test_changed_spec_gets_next_revision(self, clock):
        control = InMemoryControlAPI()
        engine = ApplyEngine(control, RevisionHistory(), clock=clock)
        await engine.apply_one(make_descriptor("web", image="web:v1"))
        outcome = await engine.apply_one(make_descriptor("web", image="web:v2"))
        assert outcome.status == ApplyStatus.APPLIED
        assert outcome.descriptor.revision == 2
        assert control.workloads["web"].descriptor.image == "web:v2"

    @pytest.mark.asyncio
    async def test_unreachable_is_retried_with_backoff(self, clock):
        control = InMemoryControlAPI(FailureInjector(unreachable_attempts={"web": 2}))
        engine = ApplyEngine(control, RevisionHistory(), max_attempts=3, base_delay_s=1.0, clock=clock)
        outcome = await engine.apply_one(make_descriptor("web"))
        assert outcome.status == ApplyStatus.APPLIED
        assert outcome.attempts == 3
        assert clock.sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_unreachable_surfaces_after_bounded_attempts(self, clock):
        control = InMemoryControlAPI(FailureInjector(unreachable_attempts={"web": 10}))
        history = RevisionHistory()
        outcome = await ApplyEngine(control, history, max_attempts=3, clock=clock).apply_one(make_descriptor("web"))
        assert outcome.status == ApplyStatus.UNREACHABLE
        assert outcome.attempts == 3
        assert outcome.ok is False
        assert "unreachable" in outcome.error
        assert history.latest("web").outcome == "unreachable"
        assert "web" not in control.workloads

    @pytest.mark.asyncio
    async def test_rejection_is_not_retried(self, clock):
        control = InMemoryControlAPI(FailureInjector(fail_attempts={"web": 1}))
        history = RevisionHistory()
        outcome = await ApplyEngine(control, history, clock=clock).apply_one(make_descriptor("web"))
        assert outcome.status == ApplyStatus.REJECTED
        assert outcome.attempts == 1
        assert clock.sleeps == []
        assert history.latest("web").outcome == "rejected"
        # the rejected revision is used up
        assert history.next_revision("web") == 2


class TestWaveApply:
    """Members of a wave are independent."""

    @pytest.mark.asyncio
    async def test_failures_do_not_affect_siblings(self, clock):
        control = InMemoryControlAPI(FailureInjector(fail_attempts={"api": 1}, unreachable_attempts={"web": 5}))
        engine = ApplyEngine(control, RevisionHistory(), clock=clock)
        outcomes = await engine.apply(wave_of(make_descriptor("api"), make_descriptor("auth"), make_descriptor("web")))
        assert outcomes["api"].status == ApplyStatus.REJECTED
        assert outcomes["auth"].status == ApplyStatus.APPLIED
        assert outcomes["web"].status == ApplyStatus.UNREACHABLE
        assert set(control.workloads) == {"auth"}

    @pytest.mark.asyncio
    async def test_wave_members_are_applied_concurrently(self):
        control = InMemoryControlAPI(FailureInjector(delay=0.1))
        engine = ApplyEngine(control, RevisionHistory())
        descriptors = [make_descriptor(f"w{i}") for i in range(5)]

        start_time = time.time()
        outcomes = await engine.apply(wave_of(*descriptors))
        duration = time.time() - start_time

        assert len(outcomes) == 5
        assert all(o.ok for o in outcomes.values())
        # five calls of 0.1s each would take 0.5s if serialized
        assert duration < 0.4
