from .errors import ControlUnreachable
from .logger import get_logger
from .models import EndpointRecord
from .polling import Poller


class EndpointResolver:
    """Waits for the load balancer in front of a workload to get an address"""

    def __init__(self, control, interval_s=10.0, timeout_s=300.0, max_attempts=None, clock=None):
        self.control = control
        self.interval_s = interval_s
        self.timeout_s = timeout_s
        self.max_attempts = max_attempts
        self.clock = clock
        self.logger = get_logger("endpoint")

    async def resolve(self, name, cancel=None):
        """Returns an unresolved record (never raises) when the budget runs out"""
        poller = Poller(self.interval_s, timeout_s=self.timeout_s, max_attempts=self.max_attempts,
                        cancel=cancel, clock=self.clock)
        async for attempt in poller:
            try:
                address = await self.control.get_external_address(name)
            except ControlUnreachable as e:
                self.logger.warning(f"Address lookup {attempt} for {name} failed: {e}")
                continue
            if address:
                self.logger.info(f"{name} reachable at {address} (attempt {attempt})")
                return EndpointRecord(name, address, attempt)
            self.logger.debug(f"No external address for {name} yet (attempt {attempt})")

        self.logger.warning(f"No external address assigned to {name} after {poller.attempts} attempts")
        return EndpointRecord(name, None, poller.attempts)
