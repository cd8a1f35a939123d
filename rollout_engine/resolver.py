from collections import defaultdict

from .errors import CycleError, DescriptorError
from .logger import get_logger
from .models import Wave


class DependencyResolver:
    """Groups descriptors into ordered deployment waves, one wave per tier"""

    def __init__(self):
        self.logger = get_logger("resolver")

    def build_graph(self, descriptors):
        """Tier dependency graph: tier -> set of tiers it must wait for"""
        by_name = {d.name: d for d in descriptors}
        tiers = sorted({d.tier for d in descriptors})
        graph = {tier: {lower for lower in tiers if lower < tier} for tier in tiers}

        for d in descriptors:
            for dep in d.depends_on:
                if dep not in by_name:
                    raise DescriptorError("depends_on", f"unknown workload {dep!r}", d.name)
                graph[d.tier].add(by_name[dep].tier)
            if d.depends_on_tier is not None:
                if d.depends_on_tier in graph:
                    graph[d.tier].add(d.depends_on_tier)
                else:
                    # Nothing from that tier is part of this batch
                    self.logger.debug(f"{d.name}: tier {d.depends_on_tier} not in batch, treated as satisfied")
        return graph

    def resolve(self, descriptors):
        """Order descriptors into waves; raises CycleError if no order exists"""
        descriptors = list(descriptors)
        if not descriptors:
            return []

        graph = self.build_graph(descriptors)
        order = self._topological_order(graph, descriptors)

        members = defaultdict(list)
        for d in descriptors:
            members[d.tier].append(d)

        waves = []
        for index, tier in enumerate(order):
            batch = tuple(sorted(members[tier], key=lambda d: d.name))
            waves.append(Wave(index=index, tier=tier, descriptors=batch))
            self.logger.debug(f"Wave {index} (tier {tier}): {[d.name for d in batch]}")

        self.logger.info(f"Resolved {len(descriptors)} descriptors into {len(waves)} waves")
        return waves

    def _topological_order(self, graph, descriptors):
        remaining = {tier: set(deps) for tier, deps in graph.items()}
        order = []
        while remaining:
            ready = sorted(tier for tier, deps in remaining.items() if not deps)
            if not ready:
                cyclic = self._cycle_tiers(remaining)
                raise CycleError(d.name for d in descriptors if d.tier in cyclic)
            # One tier per step so that each wave holds a single tier
            tier = ready[0]
            order.append(tier)
            del remaining[tier]
            for deps in remaining.values():
                deps.discard(tier)
        return order

    @staticmethod
    def _cycle_tiers(remaining):
        """Tiers that sit on a cycle, ignoring those only blocked behind one"""
        def reaches(start, goal):
            stack, seen = [start], set()
            while stack:
                tier = stack.pop()
                for dep in remaining.get(tier, ()):
                    if dep == goal:
                        return True
                    if dep not in seen:
                        seen.add(dep)
                        stack.append(dep)
            return False

        return {tier for tier in remaining if reaches(tier, tier)}
