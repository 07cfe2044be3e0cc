"""lbnet constants and enumerations."""

from enum import Enum


class NetworkState(Enum):
    """Observable network state of a replica."""

    READY = "Ready"
    NOT_READY = "NotReady"
    WAITING = "Waiting"


class Protocol(Enum):
    """Transport protocol of a declared port."""

    TCP = "TCP"
    UDP = "UDP"
    TCPUDP = "TCPUDP"


class NetworkType(Enum):
    """Network types handled by the engine."""

    SHARED_LB = "Shared-LB"
    POOLED_LB = "Pooled-LB"


class PoolResourceKind(Enum):
    """Kinds of prewarmed external resources."""

    LOAD_BALANCER = "LoadBalancer"
    ELASTIC_IP = "ElasticIP"


class ErrorType(Enum):
    """High-level category of an error surfaced to the control loop."""

    API_CALL = "apiCallError"
    INTERNAL = "internalError"
    PARAMETER = "parameterError"
    NOT_IMPLEMENTED = "notImplementedError"


# Replica / workload-set annotations and labels
NETWORK_TYPE_KEY = "game.kruise.io/network-type"
NETWORK_CONF_KEY = "game.kruise.io/network-conf"
NETWORK_DISABLED_KEY = "game.kruise.io/network-disabled"
NETWORK_STATUS_KEY = "game.kruise.io/network-status"
OWNER_WORKLOAD_SET_KEY = "game.kruise.io/owner-gss"
SELECTOR_REPLICA_KEY = "statefulset.kubernetes.io/pod-name"

# Network object annotations written by lbnet
CONFIG_HASH_KEY = "game.kruise.io/network-config-hash"
OWNER_KEY_ANNOTATION = "lbnet.io/owner-key"
WORKLOAD_SET_ANNOTATION = "lbnet.io/workload-set"
LINE_TYPE_ANNOTATION = "lbnet.io/line-type"

# Prewarm pool labels
POOL_LABEL = "game.kruise.io/nlb-pool"
POOL_INDEX_LABEL = "game.kruise.io/nlb-pool-index"
POOL_LINE_TYPE_LABEL = "game.kruise.io/nlb-pool-eip-isp-type"
POOL_WORKLOAD_SET_LABEL = "game.kruise.io/nlb-pool-gss"

# Finalizers for cascading deletion
POOL_FINALIZER = "game.kruise.io/nlb-cascade-delete"
REPLICA_FINALIZER = "game.kruise.io/pod-cascade-delete"

# Owner kinds
REPLICA_KIND = "Pod"
WORKLOAD_SET_KIND = "GameServerSet"

# Network configuration keys
CONF_LB_IDS = "LbIds"
CONF_PORT_PROTOCOLS = "PortProtocols"
CONF_MIN_PORT = "MinPort"
CONF_MAX_PORT = "MaxPort"
CONF_BLOCK_PORTS = "BlockPorts"
CONF_FIXED = "Fixed"
CONF_ENABLE_SCATTER = "EnableScatter"
CONF_RETAIN_ON_DELETE = "RetainOnDelete"
CONF_RESERVE_NUM = "ReserveNum"
CONF_LINE_TYPES = "LineTypes"
CONF_ZONE_MAPS = "ZoneMaps"
CONF_EXTERNAL_TRAFFIC_POLICY = "ExternalTrafficPolicyType"

# Default configuration values
DEFAULT_MIN_PORT = 1000
DEFAULT_MAX_PORT = 1500
DEFAULT_RESERVE_NUM = 1
DEFAULT_LINE_TYPE = "BGP"
DEFAULT_VENDOR = "alibabacloud"
DEFAULT_CONFIG_PATH = "lbnet.yaml"
DEFAULT_PREWARM_INTERVAL_SECONDS = 60
DEFAULT_RESYNC_INTERVAL_SECONDS = 30
DEFAULT_CONTROLLER_WORKERS = 4
DEFAULT_MAX_RETRIES = 10

# Line types containing this marker get an intranet load balancer
INTRANET_LINE_TYPE = "intranet"

# Elastic-IP defaults for pool entries
DEFAULT_EIP_BANDWIDTH = "5"
SINGLE_CARRIER_LINE_TYPES = frozenset({"ChinaTelecom", "ChinaMobile", "ChinaUnicom"})
