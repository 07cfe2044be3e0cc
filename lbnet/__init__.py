"""lbnet - Load-balancer port allocation and reconciliation for game servers.

Binds replicas to ports on shared load balancers, or to prewarmed
per-workload-set load balancers, and drives their network readiness.
"""

__version__ = "0.1.0"
__author__ = "lbnet Team"

from lbnet.allocator import PortAllocator
from lbnet.constants import ErrorType, NetworkState, NetworkType
from lbnet.engine import NetworkEngine
from lbnet.exceptions import LbnetError, PluginError
from lbnet.store import InMemoryObjectStore, ObjectStore

__all__ = [
    "__version__",
    "ErrorType",
    "NetworkState",
    "NetworkType",
    "LbnetError",
    "PluginError",
    # Core
    "PortAllocator",
    "NetworkEngine",
    # Stores
    "ObjectStore",
    "InMemoryObjectStore",
]
