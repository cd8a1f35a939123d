from collections.abc import Mapping
from dataclasses import asdict

import yaml

from .errors import DescriptorError
from .logger import get_logger
from .models import Descriptor

ALIASES = {
    "dependsOn": "depends_on",
    "dependsOnTier": "depends_on_tier",
    "environment": "env",
}
FIELDS = {"name", "image", "tier", "replicas", "ports", "env",
          "depends_on", "depends_on_tier", "expose", "revision"}


def _is_int(value):
    return isinstance(value, int) and not isinstance(value, bool)


class DescriptorStore:
    """Validates raw workload documents into Descriptors"""

    def __init__(self):
        self.logger = get_logger("descriptors")

    def load(self, raw):
        """Validate one raw mapping; raises DescriptorError on the first bad field"""
        if isinstance(raw, Descriptor):
            raw = asdict(raw)
        if not isinstance(raw, Mapping):
            raise DescriptorError("descriptor", f"expected a mapping, got {type(raw).__name__}")

        data = {}
        for key, value in raw.items():
            key = ALIASES.get(key, key)
            if key not in FIELDS:
                raise DescriptorError(key, "unknown field", raw.get("name"))
            data[key] = value

        name = data.get("name")
        if not isinstance(name, str) or not name.strip():
            raise DescriptorError("name", "must be a non-empty string")
        name = name.strip()

        tier = data.get("tier", 0)
        if not _is_int(tier) or tier < 0:
            raise DescriptorError("tier", f"must be a non-negative integer, got {tier!r}", name)

        replicas = data.get("replicas", 1)
        if not _is_int(replicas) or replicas < 0:
            raise DescriptorError("replicas", f"must be an integer >= 0, got {replicas!r}", name)

        image = data.get("image")
        if not isinstance(image, str) or not image.strip():
            raise DescriptorError("image", "must be a non-empty image reference", name)

        depends_on_tier = data.get("depends_on_tier")
        if depends_on_tier is not None and (not _is_int(depends_on_tier) or depends_on_tier < 0):
            raise DescriptorError("depends_on_tier", f"must be a non-negative integer, got {depends_on_tier!r}", name)

        expose = data.get("expose", False)
        if not isinstance(expose, bool):
            raise DescriptorError("expose", "must be a boolean", name)

        revision = data.get("revision", 0)
        if not _is_int(revision) or revision < 0:
            raise DescriptorError("revision", f"must be a non-negative integer, got {revision!r}", name)

        return Descriptor(
            name=name,
            image=image.strip(),
            tier=tier,
            replicas=replicas,
            ports=self._ports(data.get("ports") or (), name),
            env=self._env(data.get("env") or {}, name),
            depends_on=self._depends_on(data.get("depends_on") or (), name),
            depends_on_tier=depends_on_tier,
            expose=expose,
            revision=revision,
        )

    def load_all(self, raws):
        """Validate a whole batch; names must be unique within a run"""
        descriptors = []
        seen = set()
        for raw in raws:
            descriptor = self.load(raw)
            if descriptor.name in seen:
                raise DescriptorError("name", "duplicate workload name", descriptor.name)
            seen.add(descriptor.name)
            descriptors.append(descriptor)
        self.logger.info(f"Loaded {len(descriptors)} descriptors")
        return descriptors

    def load_file(self, path):
        """Load descriptors from a YAML or JSON document"""
        with open(path) as f:
            document = yaml.safe_load(f)
        if isinstance(document, Mapping):
            document = document.get("workloads")
        if not isinstance(document, list):
            raise DescriptorError("workloads", f"{path} must hold a list of descriptors")
        return self.load_all(document)

    @staticmethod
    def _ports(ports, name):
        if isinstance(ports, (str, bytes, Mapping)) or not hasattr(ports, "__iter__"):
            raise DescriptorError("ports", "must be a list", name)
        result = []
        for port in ports:
            if isinstance(port, Mapping):
                port = port.get("containerPort", port.get("port"))
            if not _is_int(port) or not 1 <= port <= 65535:
                raise DescriptorError("ports", f"port {port!r} is outside 1-65535", name)
            result.append(port)
        return tuple(result)

    @staticmethod
    def _env(env, name):
        if isinstance(env, Mapping):
            pairs = list(env.items())
        elif isinstance(env, (list, tuple)):
            pairs = []
            for item in env:
                if isinstance(item, Mapping):
                    pairs.append((item.get("name"), item.get("value")))
                elif isinstance(item, (list, tuple)) and len(item) == 2:
                    pairs.append(tuple(item))
                else:
                    raise DescriptorError("env", f"unsupported entry {item!r}", name)
        else:
            raise DescriptorError("env", "must be a mapping or a list of name/value entries", name)

        result = {}
        for key, value in pairs:
            if not isinstance(key, str) or not key:
                raise DescriptorError("env", f"invalid variable name {key!r}", name)
            if value is None:
                raise DescriptorError("env", f"{key} has no value", name)
            result[key] = value if isinstance(value, str) else str(value)
        return tuple(sorted(result.items()))

    @staticmethod
    def _depends_on(depends_on, name):
        if isinstance(depends_on, str):
            depends_on = [depends_on]
        result = []
        for dep in depends_on:
            if not isinstance(dep, str) or not dep.strip():
                raise DescriptorError("depends_on", f"invalid dependency {dep!r}", name)
            result.append(dep.strip())
        return tuple(sorted(set(result)))
