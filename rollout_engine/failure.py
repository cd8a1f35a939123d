class FailureInjector:
    """Scripted faults for the in-memory control plane.

    fail_attempts / unreachable_attempts map a workload name to how many of its
    first apply calls are rejected / never arrive. crash_images lists images
    that crash-loop once scheduled, never_ready names workloads that never
    reach their replica count, ready_after and address_after delay readiness
    and address assignment by a number of polls.
    """

    def __init__(self, fail_attempts=None, unreachable_attempts=None, crash_images=None,
                 never_ready=None, ready_after=None, address_after=None, status_unreachable=None,
                 delay=0):
        self.fail_map = fail_attempts or {}
        self.unreachable_map = unreachable_attempts or {}
        self.crash_images = set(crash_images or ())
        self.never_ready = set(never_ready or ())
        self.ready_after = ready_after or {}
        self.address_after = address_after or {}
        self.status_unreachable = status_unreachable or {}
        self.delay = delay
        self.attempts = {}
        self.status_polls = {}

    def delay_seconds(self):
        return self.delay

    def _count(self, counter, name):
        counter[name] = counter.get(name, 0) + 1
        return counter[name]

    def on_apply(self, name):
        """Returns None, "unreachable" or "rejected" for this apply attempt"""
        attempt = self._count(self.attempts, name)
        unreachable = self.unreachable_map.get(name, 0)
        if attempt <= unreachable:
            return "unreachable"
        if attempt - unreachable <= self.fail_map.get(name, 0):
            return "rejected"
        return None

    def status_down(self, name):
        return self._count(self.status_polls, name) <= self.status_unreachable.get(name, 0)

    def crashes(self, descriptor):
        return descriptor.image in self.crash_images

    def polls_until_ready(self, name):
        if name in self.never_ready:
            return None
        return self.ready_after.get(name, 1)

    def polls_until_address(self, name):
        return self.address_after.get(name, 1)
