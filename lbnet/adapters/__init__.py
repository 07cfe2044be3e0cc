"""lbnet vendor adapters.

Re-exports the adapter ABC and the service-backed implementation, and
provides a factory resolving a vendor name to its profile.
"""

from __future__ import annotations

from lbnet.adapters.base import Binding, NetworkAdapter, VendorProfile
from lbnet.adapters.service import ServiceAdapter
from lbnet.exceptions import ConfigurationError
from lbnet.store import ObjectStore

__all__ = [
    "Binding",
    "NetworkAdapter",
    "PROFILES",
    "ServiceAdapter",
    "VendorProfile",
    "get_adapter",
]

PROFILES: dict[str, VendorProfile] = {
    "alibabacloud": VendorProfile(
        name="alibabacloud",
        lb_id_annotation="service.beta.kubernetes.io/alibaba-cloud-loadbalancer-id",
        lb_id_label="service.k8s.alibaba/loadbalancer-id",
        listener_override_annotation="service.beta.kubernetes.io/alibaba-cloud-loadbalancer-force-override-listeners",
        load_balancer_class="alibabacloud.com/nlb",
    ),
    "volcengine": VendorProfile(
        name="volcengine",
        lb_id_annotation="service.beta.kubernetes.io/volcengine-loadbalancer-id",
        lb_id_label="service.beta.kubernetes.io/volcengine-loadbalancer-id",
        extra_annotations={
            "service.beta.kubernetes.io/volcengine-loadbalancer-address-type": "PUBLIC",
            "service.beta.kubernetes.io/volcengine-loadbalancer-scheduler": "wrr",
        },
    ),
}


def get_adapter(vendor: str, store: ObjectStore) -> NetworkAdapter:
    """Return the adapter for a vendor.

    Args:
        vendor: Vendor name, a key of ``PROFILES``
        store: Cluster object store

    Returns:
        Adapter bound to the vendor profile

    Raises:
        ConfigurationError: If the vendor is unknown
    """
    profile = PROFILES.get(vendor)
    if profile is None:
        raise ConfigurationError(f"Unknown vendor {vendor!r}", field="vendor", details={"known": sorted(PROFILES)})
    return ServiceAdapter(store, profile)
