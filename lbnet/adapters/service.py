"""Service-backed network adapter shared by all vendor profiles."""

from __future__ import annotations

from lbnet.adapters.base import Binding, NetworkAdapter
from lbnet.constants import (
    CONFIG_HASH_KEY,
    DEFAULT_EIP_BANDWIDTH,
    INTRANET_LINE_TYPE,
    LINE_TYPE_ANNOTATION,
    NETWORK_TYPE_KEY,
    OWNER_KEY_ANNOTATION,
    POOL_FINALIZER,
    POOL_INDEX_LABEL,
    POOL_LABEL,
    POOL_LINE_TYPE_LABEL,
    POOL_WORKLOAD_SET_LABEL,
    SELECTOR_REPLICA_KEY,
    SINGLE_CARRIER_LINE_TYPES,
    WORKLOAD_SET_ANNOTATION,
    NetworkType,
    PoolResourceKind,
    Protocol,
)
from lbnet.exceptions import AlreadyExistsError, NotFoundError
from lbnet.logging import get_logger
from lbnet.network_config import NetworkConfig, ZoneMaps
from lbnet.types import NetworkObject, OwnerReference, PoolResource, ServicePort

logger = get_logger("adapters.service")


class ServiceAdapter(NetworkAdapter):
    """Materializes replicas as load-balancer services.

    The vendor's cloud controller watches the services, programs the
    listeners and reports ingress addresses back on the object.
    """

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
        ports: list[ServicePort] = []
        for spec, external in zip(conf.ports, binding.ports, strict=True):
            if spec.protocol is Protocol.TCPUDP:
                for proto in (Protocol.TCP, Protocol.UDP):
                    ports.append(ServicePort(f"{spec.port}-{proto.value}", external, proto.value, spec.port))
            else:
                ports.append(ServicePort(f"{spec.port}-{spec.protocol.value}", external, spec.protocol.value, spec.port))

        annotations = dict(self.profile.extra_annotations)
        annotations[self.profile.lb_id_annotation] = binding.load_balancer_id
        annotations[CONFIG_HASH_KEY] = conf.config_hash()
        annotations[OWNER_KEY_ANNOTATION] = binding.owner_key
        if self.profile.listener_override_annotation:
            annotations[self.profile.listener_override_annotation] = "true"
        if binding.workload_set:
            annotations[WORKLOAD_SET_ANNOTATION] = binding.workload_set
        if binding.line_type:
            annotations[LINE_TYPE_ANNOTATION] = binding.line_type

        labels = dict(binding.labels)
        labels[self.profile.lb_id_label] = binding.load_balancer_id
        labels[NETWORK_TYPE_KEY] = network_type.value

        return NetworkObject(
            namespace=namespace,
            name=name,
            labels=labels,
            annotations=annotations,
            owner_reference=binding.owner_reference,
            reachable=not disabled,
            ports=ports,
            selector={SELECTOR_REPLICA_KEY: selector_replica},
            external_traffic_policy=conf.external_traffic_policy,
        )

    def create_network_object(self, obj: NetworkObject) -> NetworkObject:
        try:
            created = self.store.create_network_object(obj)
        except AlreadyExistsError:
            logger.info(f"Network object {obj.key} already exists")
            existing = self.store.get_network_object(obj.namespace, obj.name)
            if existing is None:
                raise
            return existing
        logger.info(f"Created network object {obj.key} on {self.load_balancer_id(obj)} ports {obj.port_numbers()}")
        return created

    def get_network_object_status(self, namespace: str, name: str) -> NetworkObject | None:
        return self.store.get_network_object(namespace, name)

    def update_network_object(self, obj: NetworkObject) -> NetworkObject:
        updated = self.store.update_network_object(obj)
        logger.debug(f"Updated network object {obj.key} (reachable={obj.reachable})")
        return updated

    def delete_network_object(self, namespace: str, name: str) -> bool:
        try:
            self.store.delete_network_object(namespace, name)
        except NotFoundError:
            return False
        logger.info(f"Deleted network object {namespace}/{name}")
        return True

    def load_balancer_id(self, obj: NetworkObject) -> str:
        return obj.labels.get(self.profile.lb_id_label) or obj.annotations.get(self.profile.lb_id_annotation, "")

    # ------------------------------------------------------------------
    # Pool resources
    # ------------------------------------------------------------------

    @staticmethod
    def _pool_labels(workload_set: str, line_type: str, index: str) -> dict[str, str]:
        return {
            POOL_LABEL: "true",
            POOL_INDEX_LABEL: index,
            POOL_LINE_TYPE_LABEL: line_type,
            POOL_WORKLOAD_SET_LABEL: workload_set,
        }

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
        # Single-carrier lines only support bandwidth billing
        charge_type = "PayByBandwidth" if line_type in SINGLE_CARRIER_LINE_TYPES else "PayByTraffic"
        return PoolResource(
            kind=PoolResourceKind.ELASTIC_IP,
            namespace=namespace,
            name=name,
            labels=self._pool_labels(workload_set, line_type, f"{pool_index}-z{zone_index}"),
            owner_reference=owner,
            spec={
                "name": name,
                "bandwidth": DEFAULT_EIP_BANDWIDTH,
                "internetChargeType": charge_type,
                "isp": line_type,
                "releaseStrategy": "OnDelete",
                "description": f"EIP for {workload_set}, pool index {pool_index}, zone {zone_index}",
            },
        )

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
        address_type = "Intranet" if INTRANET_LINE_TYPE in line_type.lower() else "Internet"
        zone_mappings = [
            {"zoneId": zone.zone_id, "vSwitchId": zone.vswitch_id, "allocationId": allocation_id}
            for zone, allocation_id in zip(zone_maps.zones, allocation_ids, strict=True)
        ]
        return PoolResource(
            kind=PoolResourceKind.LOAD_BALANCER,
            namespace=namespace,
            name=name,
            labels=self._pool_labels(workload_set, line_type, str(pool_index)),
            # Only owned resources take part in cascading deletion
            finalizers=[POOL_FINALIZER] if owner is not None else [],
            owner_reference=owner,
            spec={
                "loadBalancerName": name,
                "addressType": address_type,
                "addressIpVersion": "ipv4",
                "vpcId": zone_maps.vpc_id,
                "zoneMappings": zone_mappings,
                "loadBalancerClass": self.profile.load_balancer_class,
            },
        )
