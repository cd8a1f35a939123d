import asyncio
import pytest
from rollout_engine.models import Descriptor
from rollout_engine.polling import Clock


class FakeClock(Clock):
    """Virtual time: sleeping advances the clock instantly"""

    def __init__(self):
        self.current = 0.0
        self.sleeps = []

    def now(self):
        return self.current

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.current += seconds
        await asyncio.sleep(0)


@pytest.fixture
def clock():
    return FakeClock()


def make_descriptor(name, tier=0, image=None, replicas=1, **kwargs):
    return Descriptor(name=name, image=image or f"{name}:v1", tier=tier, replicas=replicas, **kwargs)
