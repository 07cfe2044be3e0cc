"""NetworkAdapter abstract base class.

Defines the single seam between the engine and vendor-specific object
shapes: building, creating, reading, updating and deleting the
load-balancer-backed network object of a replica, plus the pool
resources used by prewarming.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from lbnet.constants import NetworkType
from lbnet.network_config import NetworkConfig, ZoneMaps
from lbnet.store import ObjectStore
from lbnet.types import NetworkObject, OwnerReference, PoolResource


@dataclass(frozen=True)
class VendorProfile:
    """Annotation and label keys a cloud vendor's controller understands."""

    name: str
    lb_id_annotation: str
    lb_id_label: str
    listener_override_annotation: str | None = None
    load_balancer_class: str | None = None
    extra_annotations: dict[str, str] = field(default_factory=dict)


@dataclass
class Binding:
    """Load balancer and ports a network object is materialized with."""

    owner_key: str
    load_balancer_id: str
    ports: list[int]
    owner_reference: OwnerReference | None = None
    workload_set: str | None = None
    line_type: str | None = None
    labels: dict[str, str] = field(default_factory=dict)


class NetworkAdapter(ABC):
    """Abstract base class for vendor adapters."""

    def __init__(self, store: ObjectStore, profile: VendorProfile) -> None:
        """Initialize adapter.

        Args:
            store: Cluster object store
            profile: Vendor annotation/label keys
        """
        self.store = store
        self.profile = profile

    @abstractmethod
    def build_network_object(
        self,
        namespace: str,
        name: str,
        selector_replica: str,
        binding: Binding,
        conf: NetworkConfig,
        network_type: NetworkType,
        disabled: bool = False,
    ) -> NetworkObject:
        """Construct the network object for one replica.

        Args:
            namespace: Namespace of the replica
            name: Network object name
            selector_replica: Name of the replica traffic is routed to
            binding: Load balancer and ports to expose
            conf: Parsed network configuration
            network_type: Network type recorded on the object
            disabled: Build the object internal-only

        Returns:
            Unsaved network object
        """

    @abstractmethod
    def create_network_object(self, obj: NetworkObject) -> NetworkObject:
        """Create a network object; an existing one with the same name is returned as is."""

    @abstractmethod
    def get_network_object_status(self, namespace: str, name: str) -> NetworkObject | None:
        """Read a network object with its vendor-reported ingress."""

    @abstractmethod
    def update_network_object(self, obj: NetworkObject) -> NetworkObject:
        """Write back a network object."""

    @abstractmethod
    def delete_network_object(self, namespace: str, name: str) -> bool:
        """Delete a network object.

        Returns:
            False if it was already gone
        """

    @abstractmethod
    def load_balancer_id(self, obj: NetworkObject) -> str:
        """Load-balancer id the vendor reports for an object, or ``""``."""

    @abstractmethod
    def build_elastic_ip(
        self,
        namespace: str,
        name: str,
        workload_set: str,
        line_type: str,
        pool_index: int,
        zone_index: int,
        owner: OwnerReference | None,
    ) -> PoolResource:
        """Construct one elastic-IP pool resource."""

    @abstractmethod
    def build_load_balancer(
        self,
        namespace: str,
        name: str,
        workload_set: str,
        line_type: str,
        pool_index: int,
        zone_maps: ZoneMaps,
        allocation_ids: list[str],
        owner: OwnerReference | None,
    ) -> PoolResource:
        """Construct one load-balancer pool resource bound to its elastic IPs."""
