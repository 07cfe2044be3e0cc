"""lbnet type definitions using dataclasses."""

__all__ = [
    # Cluster object types
    "OwnerReference",
    "Replica",
    "WorkloadSet",
    "ServicePort",
    "Ingress",
    "NetworkObject",
    "PoolResource",
    # Allocation types
    "AllocationRecord",
    # Status types
    "NetworkPort",
    "NetworkAddress",
    "NetworkStatus",
    # Helpers
    "index_from_name",
    "object_key",
]

import re
from dataclasses import dataclass, field
from typing import Any

from lbnet.constants import (
    NETWORK_CONF_KEY,
    NETWORK_DISABLED_KEY,
    NETWORK_TYPE_KEY,
    OWNER_WORKLOAD_SET_KEY,
    REPLICA_KIND,
    WORKLOAD_SET_KIND,
    NetworkState,
    PoolResourceKind,
)

# Trailing ordinal of a replica name: "gss-12" -> 12
_INDEX_PATTERN = re.compile(r"-(\d+)$")


def index_from_name(name: str) -> int:
    """Return the ordinal encoded as the trailing ``-<int>`` of a name.

    Args:
        name: Replica name

    Returns:
        The ordinal, or -1 when the name carries none
    """
    match = _INDEX_PATTERN.search(name)
    if match is None:
        return -1
    return int(match.group(1))


def object_key(namespace: str, name: str) -> str:
    """Return the ``namespace/name`` key of an object."""
    return f"{namespace}/{name}"


# ============================================================================
# Cluster object types
# ============================================================================


@dataclass
class OwnerReference:
    """Reference from a dependent object to its owner."""

    kind: str
    name: str
    uid: str

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {"kind": self.kind, "name": self.name, "uid": self.uid}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OwnerReference":
        """Create from dictionary."""
        return cls(kind=data["kind"], name=data["name"], uid=data.get("uid", ""))


@dataclass
class Replica:
    """One running game-server instance."""

    namespace: str
    name: str
    uid: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    finalizers: list[str] = field(default_factory=list)
    pod_ip: str = ""
    deleting: bool = False
    resource_version: str = ""

    @property
    def key(self) -> str:
        return object_key(self.namespace, self.name)

    @property
    def index(self) -> int:
        return index_from_name(self.name)

    @property
    def workload_set_name(self) -> str:
        return self.labels.get(OWNER_WORKLOAD_SET_KEY, "")

    @property
    def workload_set_key(self) -> str:
        return object_key(self.namespace, self.workload_set_name)

    @property
    def network_type(self) -> str:
        return self.annotations.get(NETWORK_TYPE_KEY, "")

    @property
    def network_conf(self) -> str | None:
        return self.annotations.get(NETWORK_CONF_KEY)

    @property
    def network_disabled(self) -> bool:
        return self.labels.get(NETWORK_DISABLED_KEY, "false").lower() == "true"

    def owner_reference(self) -> OwnerReference:
        """Build an owner reference pointing at this replica."""
        return OwnerReference(kind=REPLICA_KIND, name=self.name, uid=self.uid)


@dataclass
class WorkloadSet:
    """Logical group that owns and recreates replicas."""

    namespace: str
    name: str
    uid: str = ""
    replicas: int = 0
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    finalizers: list[str] = field(default_factory=list)
    deleting: bool = False
    resource_version: str = ""

    @property
    def key(self) -> str:
        return object_key(self.namespace, self.name)

    @property
    def network_type(self) -> str:
        return self.annotations.get(NETWORK_TYPE_KEY, "")

    @property
    def network_conf(self) -> str | None:
        return self.annotations.get(NETWORK_CONF_KEY)

    def owner_reference(self) -> OwnerReference:
        """Build an owner reference pointing at this workload set."""
        return OwnerReference(kind=WORKLOAD_SET_KIND, name=self.name, uid=self.uid)


@dataclass
class ServicePort:
    """One listener of a network object."""

    name: str
    port: int
    protocol: str
    target_port: int

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "name": self.name,
            "port": self.port,
            "protocol": self.protocol,
            "target_port": self.target_port,
        }


@dataclass
class Ingress:
    """Address reported by the vendor controller for a network object."""

    ip: str = ""
    hostname: str = ""


@dataclass
class NetworkObject:
    """Load-balancer-backed service bound to a replica.

    ``reachable`` distinguishes a load-balancer service from an
    internal-only (cluster-IP) one; flipping it keeps the allocation.
    """

    namespace: str
    name: str
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    owner_reference: OwnerReference | None = None
    reachable: bool = True
    ports: list[ServicePort] = field(default_factory=list)
    selector: dict[str, str] = field(default_factory=dict)
    external_traffic_policy: str = "Cluster"
    ingress: list[Ingress] = field(default_factory=list)
    finalizers: list[str] = field(default_factory=list)
    deleting: bool = False
    resource_version: str = ""

    @property
    def key(self) -> str:
        return object_key(self.namespace, self.name)

    def port_numbers(self) -> list[int]:
        """Return the distinct external ports in declaration order."""
        seen: list[int] = []
        for port in self.ports:
            if port.port not in seen:
                seen.append(port.port)
        return seen


@dataclass
class PoolResource:
    """Prewarmed external resource (load balancer or elastic IP)."""

    kind: PoolResourceKind
    namespace: str
    name: str
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    finalizers: list[str] = field(default_factory=list)
    owner_reference: OwnerReference | None = None
    spec: dict[str, Any] = field(default_factory=dict)
    resource_id: str = ""
    address: str = ""
    deleting: bool = False
    resource_version: str = ""

    @property
    def key(self) -> str:
        return object_key(self.namespace, self.name)

    @property
    def ready(self) -> bool:
        """Whether the vendor controller has reported an identifier."""
        return bool(self.resource_id)


# ============================================================================
# Allocation types
# ============================================================================


@dataclass
class AllocationRecord:
    """Ports of one load balancer held by one owner."""

    owner_key: str
    load_balancer_id: str
    ports: list[int]
    workload_set: str | None = None

    @property
    def fixed(self) -> bool:
        return self.workload_set is not None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "owner_key": self.owner_key,
            "load_balancer_id": self.load_balancer_id,
            "ports": list(self.ports),
            "workload_set": self.workload_set,
        }


# ============================================================================
# Status types (persisted on the replica as JSON)
# ============================================================================


@dataclass
class NetworkPort:
    """Port entry of a network address."""

    name: str
    protocol: str
    port: int

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "protocol": self.protocol, "port": self.port}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NetworkPort":
        return cls(name=data.get("name", ""), protocol=data.get("protocol", ""), port=int(data.get("port", 0)))


@dataclass
class NetworkAddress:
    """Internal or external address with its ports."""

    ip: str = ""
    ports: list[NetworkPort] = field(default_factory=list)
    end_point: str = ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"ip": self.ip, "ports": [p.to_dict() for p in self.ports]}
        if self.end_point:
            data["endPoint"] = self.end_point
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NetworkAddress":
        return cls(
            ip=data.get("ip", ""),
            ports=[NetworkPort.from_dict(p) for p in data.get("ports") or []],
            end_point=data.get("endPoint", ""),
        )


@dataclass
class NetworkStatus:
    """Readiness status persisted on a replica."""

    network_type: str = ""
    internal_addresses: list[NetworkAddress] = field(default_factory=list)
    external_addresses: list[NetworkAddress] = field(default_factory=list)
    desired_network_state: NetworkState = NetworkState.READY
    current_network_state: NetworkState = NetworkState.NOT_READY
    create_time: str | None = None
    last_transition_time: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the camelCase form stored in the status annotation."""
        return {
            "networkType": self.network_type,
            "internalAddresses": [a.to_dict() for a in self.internal_addresses],
            "externalAddresses": [a.to_dict() for a in self.external_addresses],
            "desiredNetworkState": self.desired_network_state.value,
            "currentNetworkState": self.current_network_state.value,
            "createTime": self.create_time,
            "lastTransitionTime": self.last_transition_time,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NetworkStatus":
        """Create from the camelCase annotation form."""
        return cls(
            network_type=data.get("networkType", ""),
            internal_addresses=[NetworkAddress.from_dict(a) for a in data.get("internalAddresses") or []],
            external_addresses=[NetworkAddress.from_dict(a) for a in data.get("externalAddresses") or []],
            desired_network_state=NetworkState(data.get("desiredNetworkState") or NetworkState.READY.value),
            current_network_state=NetworkState(data.get("currentNetworkState") or NetworkState.WAITING.value),
            create_time=data.get("createTime"),
            last_transition_time=data.get("lastTransitionTime"),
        )
