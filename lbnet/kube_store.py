"""ObjectStore backed by a Kubernetes cluster.

Replicas are pods, network objects are services, workload sets and pool
resources are custom resources read through ``CustomObjectsApi``.
Writes carry the object's ``resourceVersion`` so a stale write is
rejected by the API server with 409 and surfaces as ``ConflictError``.
"""

from __future__ import annotations

from typing import Any

from kubernetes import client
from kubernetes import config as kube_config
from kubernetes.client.rest import ApiException

from lbnet.config import KubernetesConfig
from lbnet.constants import REPLICA_KIND, WORKLOAD_SET_KIND, PoolResourceKind
from lbnet.exceptions import AlreadyExistsError, ApiCallError, ConflictError, NotFoundError
from lbnet.logging import get_logger
from lbnet.store import ObjectStore
from lbnet.types import (
    Ingress,
    NetworkObject,
    OwnerReference,
    PoolResource,
    Replica,
    ServicePort,
    WorkloadSet,
)

logger = get_logger("kube_store")

WORKLOAD_SET_CRD = {"group": "game.kruise.io", "version": "v1alpha1", "plural": "gameserversets"}

POOL_CRDS: dict[PoolResourceKind, dict[str, str]] = {
    PoolResourceKind.LOAD_BALANCER: {
        "group": "nlboperator.alibabacloud.com",
        "version": "v1",
        "plural": "nlbs",
        "kind": "NLB",
    },
    PoolResourceKind.ELASTIC_IP: {
        "group": "eip.alibabacloud.com",
        "version": "v1alpha1",
        "plural": "eips",
        "kind": "EIP",
    },
}

OWNER_API_VERSIONS = {
    REPLICA_KIND: "v1",
    WORKLOAD_SET_KIND: f"{WORKLOAD_SET_CRD['group']}/{WORKLOAD_SET_CRD['version']}",
}


def _selector(labels: dict[str, str] | None) -> str | None:
    if not labels:
        return None
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


def _translate(e: ApiException, kind: str, name: str, creating: bool = False) -> ApiCallError:
    """Map an API exception onto the lbnet error taxonomy."""
    message = f"{kind} {name}: {e.reason}"
    if e.status == 404:
        return NotFoundError(message, kind=kind, name=name, status=404)
    if e.status == 409:
        cls = AlreadyExistsError if creating else ConflictError
        return cls(message, kind=kind, name=name, status=409)
    return ApiCallError(message, kind=kind, name=name, status=e.status)


# ============================================================================
# Conversions
# ============================================================================


def owner_to_k8s(owner: OwnerReference | None) -> list[dict[str, Any]] | None:
    if owner is None:
        return None
    return [
        {
            "apiVersion": OWNER_API_VERSIONS.get(owner.kind, "v1"),
            "kind": owner.kind,
            "name": owner.name,
            "uid": owner.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }
    ]


def _owner_from_refs(refs: list[Any] | None) -> OwnerReference | None:
    if not refs:
        return None
    ref = refs[0]
    if isinstance(ref, dict):
        return OwnerReference(kind=ref.get("kind", ""), name=ref.get("name", ""), uid=ref.get("uid", ""))
    return OwnerReference(kind=ref.kind, name=ref.name, uid=ref.uid)


def replica_from_pod(pod: client.V1Pod) -> Replica:
    meta = pod.metadata
    return Replica(
        namespace=meta.namespace,
        name=meta.name,
        uid=meta.uid or "",
        labels=dict(meta.labels or {}),
        annotations=dict(meta.annotations or {}),
        finalizers=list(meta.finalizers or []),
        pod_ip=(pod.status.pod_ip if pod.status else None) or "",
        deleting=meta.deletion_timestamp is not None,
        resource_version=meta.resource_version or "",
    )


def workload_set_from_dict(obj: dict[str, Any]) -> WorkloadSet:
    meta = obj.get("metadata", {})
    return WorkloadSet(
        namespace=meta.get("namespace", ""),
        name=meta.get("name", ""),
        uid=meta.get("uid", ""),
        replicas=int(obj.get("spec", {}).get("replicas") or 0),
        labels=dict(meta.get("labels") or {}),
        annotations=dict(meta.get("annotations") or {}),
        finalizers=list(meta.get("finalizers") or []),
        deleting=meta.get("deletionTimestamp") is not None,
        resource_version=meta.get("resourceVersion", ""),
    )


def network_object_from_service(svc: client.V1Service) -> NetworkObject:
    meta = svc.metadata
    spec = svc.spec
    ingress: list[Ingress] = []
    if svc.status and svc.status.load_balancer and svc.status.load_balancer.ingress:
        ingress = [Ingress(ip=i.ip or "", hostname=i.hostname or "") for i in svc.status.load_balancer.ingress]
    return NetworkObject(
        namespace=meta.namespace,
        name=meta.name,
        labels=dict(meta.labels or {}),
        annotations=dict(meta.annotations or {}),
        owner_reference=_owner_from_refs(meta.owner_references),
        reachable=spec.type == "LoadBalancer",
        ports=[
            ServicePort(name=p.name or "", port=p.port, protocol=p.protocol or "TCP", target_port=int(p.target_port))
            for p in spec.ports or []
        ],
        selector=dict(spec.selector or {}),
        external_traffic_policy=spec.external_traffic_policy or "Cluster",
        ingress=ingress,
        finalizers=list(meta.finalizers or []),
        deleting=meta.deletion_timestamp is not None,
        resource_version=meta.resource_version or "",
    )


def service_from_network_object(obj: NetworkObject) -> client.V1Service:
    spec = client.V1ServiceSpec(
        type="LoadBalancer" if obj.reachable else "ClusterIP",
        selector=dict(obj.selector),
        ports=[
            client.V1ServicePort(name=p.name, port=p.port, protocol=p.protocol, target_port=p.target_port)
            for p in obj.ports
        ],
    )
    # The API server rejects a traffic policy on ClusterIP services
    if obj.reachable:
        spec.external_traffic_policy = obj.external_traffic_policy
    return client.V1Service(
        api_version="v1",
        kind="Service",
        metadata=client.V1ObjectMeta(
            name=obj.name,
            namespace=obj.namespace,
            labels=dict(obj.labels),
            annotations=dict(obj.annotations),
            owner_references=owner_to_k8s(obj.owner_reference),
            finalizers=list(obj.finalizers) or None,
            resource_version=obj.resource_version or None,
        ),
        spec=spec,
    )


def pool_resource_from_dict(kind: PoolResourceKind, obj: dict[str, Any]) -> PoolResource:
    meta = obj.get("metadata", {})
    status = obj.get("status") or {}
    if kind is PoolResourceKind.LOAD_BALANCER:
        resource_id, address = status.get("loadBalancerId", ""), status.get("dnsName", "")
    else:
        resource_id, address = status.get("allocationID", ""), status.get("ipAddress", "")
    return PoolResource(
        kind=kind,
        namespace=meta.get("namespace", ""),
        name=meta.get("name", ""),
        labels=dict(meta.get("labels") or {}),
        annotations=dict(meta.get("annotations") or {}),
        finalizers=list(meta.get("finalizers") or []),
        owner_reference=_owner_from_refs(meta.get("ownerReferences")),
        spec=dict(obj.get("spec") or {}),
        resource_id=resource_id or "",
        address=address or "",
        deleting=meta.get("deletionTimestamp") is not None,
        resource_version=meta.get("resourceVersion", ""),
    )


def pool_resource_to_dict(resource: PoolResource) -> dict[str, Any]:
    crd = POOL_CRDS[resource.kind]
    metadata: dict[str, Any] = {
        "name": resource.name,
        "namespace": resource.namespace,
        "labels": dict(resource.labels),
        "annotations": dict(resource.annotations),
        "finalizers": list(resource.finalizers),
    }
    owners = owner_to_k8s(resource.owner_reference)
    if owners:
        metadata["ownerReferences"] = owners
    if resource.resource_version:
        metadata["resourceVersion"] = resource.resource_version
    return {
        "apiVersion": f"{crd['group']}/{crd['version']}",
        "kind": crd["kind"],
        "metadata": metadata,
        "spec": dict(resource.spec),
    }


# ============================================================================
# Store
# ============================================================================


class KubeObjectStore(ObjectStore):
    """ObjectStore talking to the Kubernetes API server."""

    def __init__(
        self,
        core_api: client.CoreV1Api | None = None,
        custom_api: client.CustomObjectsApi | None = None,
    ) -> None:
        """Initialize KubeObjectStore.

        Args:
            core_api: Client for pods and services
            custom_api: Client for workload sets and pool resources
        """
        self.core = core_api or client.CoreV1Api()
        self.custom = custom_api or client.CustomObjectsApi()

    @classmethod
    def from_config(cls, config: KubernetesConfig) -> KubeObjectStore:
        """Load cluster credentials and build the store.

        Args:
            config: Cluster connection settings

        Returns:
            KubeObjectStore instance
        """
        if config.in_cluster:
            kube_config.load_incluster_config()
        else:
            kube_config.load_kube_config(config_file=config.kubeconfig)
        logger.info(f"Connected to cluster (in_cluster={config.in_cluster})")
        return cls()

    # ------------------------------------------------------------------
    # Replicas
    # ------------------------------------------------------------------

    def get_replica(self, namespace: str, name: str) -> Replica | None:
        try:
            return replica_from_pod(self.core.read_namespaced_pod(name, namespace))
        except ApiException as e:
            if e.status == 404:
                return None
            raise _translate(e, REPLICA_KIND, f"{namespace}/{name}") from e

    def list_replicas(self, namespace: str | None = None, labels: dict[str, str] | None = None) -> list[Replica]:
        selector = _selector(labels)
        try:
            if namespace:
                pods = self.core.list_namespaced_pod(namespace, label_selector=selector)
            else:
                pods = self.core.list_pod_for_all_namespaces(label_selector=selector)
        except ApiException as e:
            raise _translate(e, REPLICA_KIND, namespace or "*") from e
        return [replica_from_pod(p) for p in pods.items]

    def update_replica(self, replica: Replica) -> Replica:
        body: dict[str, Any] = {
            "metadata": {
                "labels": replica.labels,
                "annotations": replica.annotations,
                "finalizers": replica.finalizers,
            }
        }
        if replica.resource_version:
            body["metadata"]["resourceVersion"] = replica.resource_version
        try:
            pod = self.core.patch_namespaced_pod(replica.name, replica.namespace, body)
        except ApiException as e:
            raise _translate(e, REPLICA_KIND, replica.key) from e
        return replica_from_pod(pod)

    # ------------------------------------------------------------------
    # Workload sets
    # ------------------------------------------------------------------

    def get_workload_set(self, namespace: str, name: str) -> WorkloadSet | None:
        try:
            obj = self.custom.get_namespaced_custom_object(namespace=namespace, name=name, **WORKLOAD_SET_CRD)
        except ApiException as e:
            if e.status == 404:
                return None
            raise _translate(e, WORKLOAD_SET_KIND, f"{namespace}/{name}") from e
        return workload_set_from_dict(obj)

    def list_workload_sets(self, namespace: str | None = None) -> list[WorkloadSet]:
        try:
            if namespace:
                result = self.custom.list_namespaced_custom_object(namespace=namespace, **WORKLOAD_SET_CRD)
            else:
                result = self.custom.list_cluster_custom_object(**WORKLOAD_SET_CRD)
        except ApiException as e:
            raise _translate(e, WORKLOAD_SET_KIND, namespace or "*") from e
        return [workload_set_from_dict(item) for item in result.get("items", [])]

    # ------------------------------------------------------------------
    # Network objects
    # ------------------------------------------------------------------

    def get_network_object(self, namespace: str, name: str) -> NetworkObject | None:
        try:
            return network_object_from_service(self.core.read_namespaced_service(name, namespace))
        except ApiException as e:
            if e.status == 404:
                return None
            raise _translate(e, "Service", f"{namespace}/{name}") from e

    def list_network_objects(
        self, namespace: str | None = None, labels: dict[str, str] | None = None
    ) -> list[NetworkObject]:
        selector = _selector(labels)
        try:
            if namespace:
                services = self.core.list_namespaced_service(namespace, label_selector=selector)
            else:
                services = self.core.list_service_for_all_namespaces(label_selector=selector)
        except ApiException as e:
            raise _translate(e, "Service", namespace or "*") from e
        return [network_object_from_service(s) for s in services.items]

    def create_network_object(self, obj: NetworkObject) -> NetworkObject:
        try:
            svc = self.core.create_namespaced_service(obj.namespace, service_from_network_object(obj))
        except ApiException as e:
            raise _translate(e, "Service", obj.key, creating=True) from e
        return network_object_from_service(svc)

    def update_network_object(self, obj: NetworkObject) -> NetworkObject:
        try:
            svc = self.core.replace_namespaced_service(obj.name, obj.namespace, service_from_network_object(obj))
        except ApiException as e:
            raise _translate(e, "Service", obj.key) from e
        return network_object_from_service(svc)

    def delete_network_object(self, namespace: str, name: str) -> None:
        try:
            self.core.delete_namespaced_service(name, namespace)
        except ApiException as e:
            raise _translate(e, "Service", f"{namespace}/{name}") from e

    # ------------------------------------------------------------------
    # Pool resources
    # ------------------------------------------------------------------

    @staticmethod
    def _crd(kind: PoolResourceKind) -> dict[str, str]:
        crd = POOL_CRDS[kind]
        return {"group": crd["group"], "version": crd["version"], "plural": crd["plural"]}

    def get_pool_resource(self, kind: PoolResourceKind, namespace: str, name: str) -> PoolResource | None:
        try:
            obj = self.custom.get_namespaced_custom_object(namespace=namespace, name=name, **self._crd(kind))
        except ApiException as e:
            if e.status == 404:
                return None
            raise _translate(e, kind.value, f"{namespace}/{name}") from e
        return pool_resource_from_dict(kind, obj)

    def list_pool_resources(
        self, kind: PoolResourceKind, namespace: str | None = None, labels: dict[str, str] | None = None
    ) -> list[PoolResource]:
        selector = _selector(labels)
        try:
            if namespace:
                result = self.custom.list_namespaced_custom_object(
                    namespace=namespace, label_selector=selector, **self._crd(kind)
                )
            else:
                result = self.custom.list_cluster_custom_object(label_selector=selector, **self._crd(kind))
        except ApiException as e:
            raise _translate(e, kind.value, namespace or "*") from e
        return [pool_resource_from_dict(kind, item) for item in result.get("items", [])]

    def create_pool_resource(self, resource: PoolResource) -> PoolResource:
        try:
            obj = self.custom.create_namespaced_custom_object(
                namespace=resource.namespace, body=pool_resource_to_dict(resource), **self._crd(resource.kind)
            )
        except ApiException as e:
            raise _translate(e, resource.kind.value, resource.key, creating=True) from e
        return pool_resource_from_dict(resource.kind, obj)

    def update_pool_resource(self, resource: PoolResource) -> PoolResource:
        try:
            obj = self.custom.replace_namespaced_custom_object(
                namespace=resource.namespace,
                name=resource.name,
                body=pool_resource_to_dict(resource),
                **self._crd(resource.kind),
            )
        except ApiException as e:
            raise _translate(e, resource.kind.value, resource.key) from e
        return pool_resource_from_dict(resource.kind, obj)

    def delete_pool_resource(self, kind: PoolResourceKind, namespace: str, name: str) -> None:
        try:
            self.custom.delete_namespaced_custom_object(namespace=namespace, name=name, **self._crd(kind))
        except ApiException as e:
            raise _translate(e, kind.value, f"{namespace}/{name}") from e
