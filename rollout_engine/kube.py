import asyncio
import hashlib
import json

import urllib3
from kubernetes import client, config
from kubernetes.client.rest import ApiException

from .control import AppliedWorkload, ControlAPI, LiveWorkload, WorkloadObservation
from .errors import ApplyRejected, ApplyUnreachable, ControlUnreachable
from .logger import get_logger

ANNOTATION_PREFIX = "rollout-engine/"
REVISION_ANNOTATION = ANNOTATION_PREFIX + "revision"
SPEC_HASH_ANNOTATION = ANNOTATION_PREFIX + "spec-hash"
SPEC_ANNOTATION = ANNOTATION_PREFIX + "spec"
# Set by the deployment controller on a Deployment and each of its ReplicaSets
DEPLOYMENT_REVISION_ANNOTATION = "deployment.kubernetes.io/revision"
TEMPLATE_HASH_LABEL = "pod-template-hash"
MANAGED_BY = "rollout-engine"
FAILED_WAITING_REASONS = {"CrashLoopBackOff", "ImagePullBackOff", "ErrImagePull",
                          "CreateContainerConfigError", "InvalidImageName"}
# Client errors that are worth retrying rather than rejecting
TRANSIENT_STATUSES = {408, 429}


def spec_hash(descriptor):
    payload = json.dumps(descriptor.spec_key(), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode()).hexdigest()[:16]


def spec_document(descriptor):
    return {
        "image": descriptor.image,
        "replicas": descriptor.replicas,
        "ports": list(descriptor.ports),
        "env": [[k, v] for k, v in descriptor.env],
    }


def deployment_manifest(descriptor, revision):
    labels = {"app": descriptor.name, "app.kubernetes.io/managed-by": MANAGED_BY}
    container = {
        "name": descriptor.name,
        "image": descriptor.image,
        "ports": [{"containerPort": port} for port in descriptor.ports],
        "env": [{"name": k, "value": v} for k, v in descriptor.env],
    }
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {
            "name": descriptor.name,
            "labels": labels,
            "annotations": {
                REVISION_ANNOTATION: str(revision),
                SPEC_HASH_ANNOTATION: spec_hash(descriptor),
                SPEC_ANNOTATION: json.dumps(spec_document(descriptor), sort_keys=True),
            },
        },
        "spec": {
            "replicas": descriptor.replicas,
            "selector": {"matchLabels": {"app": descriptor.name}},
            "template": {
                "metadata": {"labels": labels},
                "spec": {"containers": [container]},
            },
        },
    }


def service_manifest(descriptor):
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {
            "name": descriptor.name,
            "labels": {"app": descriptor.name, "app.kubernetes.io/managed-by": MANAGED_BY},
        },
        "spec": {
            "type": "LoadBalancer" if descriptor.expose else "ClusterIP",
            "selector": {"app": descriptor.name},
            "ports": [{"name": f"port-{port}", "port": port, "targetPort": port}
                      for port in descriptor.ports],
        },
    }


class KubernetesControlAPI(ControlAPI):
    """Control API backed by Deployments and Services in one namespace"""

    def __init__(self, apps_api, core_api, namespace="default"):
        self.apps = apps_api
        self.core = core_api
        self.namespace = namespace
        self.logger = get_logger("kube")

    @classmethod
    def from_kubeconfig(cls, namespace="default", context=None):
        try:
            config.load_kube_config(context=context)
        except config.ConfigException:
            config.load_incluster_config()
        return cls(client.AppsV1Api(), client.CoreV1Api(), namespace)

    @staticmethod
    def _is_rejection(e):
        return isinstance(e, ApiException) and e.status is not None \
            and 400 <= e.status < 500 and e.status not in TRANSIENT_STATUSES

    @staticmethod
    def _reason(e):
        if isinstance(e, ApiException):
            return f"{e.status} {e.reason}"
        return str(e)

    # apply

    async def apply_workload(self, descriptor):
        try:
            return await asyncio.to_thread(self._apply_sync, descriptor)
        except (ApiException, urllib3.exceptions.HTTPError, OSError) as e:
            if self._is_rejection(e):
                raise ApplyRejected(f"{descriptor.name}: {self._reason(e)}") from e
            raise ApplyUnreachable(f"{descriptor.name}: {self._reason(e)}") from e

    def _apply_sync(self, descriptor):
        name = descriptor.name
        try:
            live = self.apps.read_namespaced_deployment(name, self.namespace)
        except ApiException as e:
            if e.status != 404:
                raise
            live = None

        if live is None:
            revision = descriptor.revision
            self.apps.create_namespaced_deployment(self.namespace, deployment_manifest(descriptor, revision))
            self.logger.info(f"Created deployment {self.namespace}/{name} at revision {revision}")
            changed = True
        else:
            annotations = live.metadata.annotations or {}
            live_revision = int(annotations.get(REVISION_ANNOTATION, 0) or 0)
            if annotations.get(SPEC_HASH_ANNOTATION) == spec_hash(descriptor):
                self.logger.debug(f"Deployment {name} unchanged at revision {live_revision}")
                self._ensure_service(descriptor)
                return AppliedWorkload(live_revision, False)
            # Revisions must keep growing even if this process lost its history
            revision = max(descriptor.revision, live_revision + 1)
            body = deployment_manifest(descriptor, revision)
            # Full replace: env vars and ports removed from the descriptor must leave the live object
            merged = {k: v for k, v in annotations.items() if not k.startswith(ANNOTATION_PREFIX)}
            merged.update(body["metadata"]["annotations"])
            body["metadata"]["annotations"] = merged
            body["metadata"]["resourceVersion"] = live.metadata.resource_version
            self.apps.replace_namespaced_deployment(name, self.namespace, body)
            self.logger.info(f"Replaced deployment {self.namespace}/{name} at revision {revision}")
            changed = True

        self._ensure_service(descriptor)
        return AppliedWorkload(revision, changed)

    def _ensure_service(self, descriptor):
        if not descriptor.ports:
            return
        body = service_manifest(descriptor)
        try:
            live = self.core.read_namespaced_service(descriptor.name, self.namespace)
        except ApiException as e:
            if e.status != 404:
                raise
            self.core.create_namespaced_service(self.namespace, body)
            self.logger.info(f"Created service {self.namespace}/{descriptor.name} ({body['spec']['type']})")
            return
        # clusterIP is immutable once allocated
        body["metadata"]["resourceVersion"] = live.metadata.resource_version
        body["spec"]["clusterIP"] = live.spec.cluster_ip
        self.core.replace_namespaced_service(descriptor.name, self.namespace, body)

    # rollout status

    async def get_rollout(self, name):
        try:
            return await asyncio.to_thread(self._rollout_sync, name)
        except (ApiException, urllib3.exceptions.HTTPError, OSError) as e:
            raise ControlUnreachable(f"{name}: {self._reason(e)}") from e

    def _rollout_sync(self, name):
        try:
            deployment = self.apps.read_namespaced_deployment_status(name, self.namespace)
        except ApiException as e:
            if e.status == 404:
                return WorkloadObservation(0, 0, 0, f"deployment {name} not found")
            raise
        return self._observe(name, deployment)

    def _observe(self, name, deployment):
        desired = deployment.spec.replicas or 0
        status = deployment.status
        updated = status.updated_replicas or 0
        ready = status.ready_replicas or 0
        if (status.observed_generation or 0) < (deployment.metadata.generation or 0):
            # Controller has not seen the latest spec yet; its conditions and pods are stale
            return WorkloadObservation(desired, 0, updated, None)

        ready = min(ready, updated)
        failure = self._deployment_failure(status) or self._pod_failure(name, deployment)
        return WorkloadObservation(desired, ready, updated, failure)

    @staticmethod
    def _deployment_failure(status):
        for condition in status.conditions or ():
            if condition.type == "ReplicaFailure" and condition.status == "True":
                return condition.reason or "ReplicaFailure"
            if condition.type == "Progressing" and condition.reason == "ProgressDeadlineExceeded":
                return "ProgressDeadlineExceeded"
        return None

    def _current_template_hash(self, name, deployment):
        revision = (deployment.metadata.annotations or {}).get(DEPLOYMENT_REVISION_ANNOTATION)
        if revision is None:
            return None
        replica_sets = self.apps.list_namespaced_replica_set(self.namespace, label_selector=f"app={name}")
        for replica_set in replica_sets.items:
            if (replica_set.metadata.annotations or {}).get(DEPLOYMENT_REVISION_ANNOTATION) == revision:
                return (replica_set.metadata.labels or {}).get(TEMPLATE_HASH_LABEL)
        return None

    def _pod_failure(self, name, deployment):
        """Failure reason of a pod in the current ReplicaSet; older pods may still be terminating"""
        template_hash = self._current_template_hash(name, deployment)
        if template_hash is None:
            return None
        pods = self.core.list_namespaced_pod(
            self.namespace, label_selector=f"app={name},{TEMPLATE_HASH_LABEL}={template_hash}")
        for pod in pods.items:
            for condition in pod.status.conditions or ():
                if condition.type == "PodScheduled" and condition.status == "False" \
                        and condition.reason == "Unschedulable":
                    return "Unschedulable"
            for container in pod.status.container_statuses or ():
                waiting = container.state.waiting if container.state else None
                if waiting and waiting.reason in FAILED_WAITING_REASONS:
                    return waiting.reason
        return None

    # live state

    async def get_live_workload(self, name):
        try:
            return await asyncio.to_thread(self._live_sync, name)
        except (ApiException, urllib3.exceptions.HTTPError, OSError) as e:
            raise ControlUnreachable(f"{name}: {self._reason(e)}") from e

    def _live_sync(self, name):
        try:
            deployment = self.apps.read_namespaced_deployment(name, self.namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise
        annotations = deployment.metadata.annotations or {}
        document = annotations.get(SPEC_ANNOTATION)
        if not document:
            # Not created by this engine
            return None
        spec = json.loads(document)
        observed = self._observe(name, deployment)
        healthy = observed.failure is None and observed.ready >= spec["replicas"]
        return LiveWorkload(
            revision=int(annotations.get(REVISION_ANNOTATION, 0) or 0),
            image=spec["image"],
            replicas=spec["replicas"],
            ports=tuple(spec["ports"]),
            env=tuple((k, v) for k, v in spec["env"]),
            healthy=healthy,
        )

    # endpoints

    async def get_external_address(self, name):
        try:
            return await asyncio.to_thread(self._address_sync, name)
        except (ApiException, urllib3.exceptions.HTTPError, OSError) as e:
            raise ControlUnreachable(f"{name}: {self._reason(e)}") from e

    def _address_sync(self, name):
        try:
            service = self.core.read_namespaced_service(name, self.namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise
        load_balancer = service.status.load_balancer if service.status else None
        for ingress in (load_balancer.ingress if load_balancer else None) or ():
            address = ingress.hostname or ingress.ip
            if address:
                return address
        return None
