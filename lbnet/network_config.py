"""Parsing of the key/value network configuration attached to replicas."""

from __future__ import annotations

import hashlib
import json
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from lbnet.constants import (
    CONF_BLOCK_PORTS,
    CONF_ENABLE_SCATTER,
    CONF_EXTERNAL_TRAFFIC_POLICY,
    CONF_FIXED,
    CONF_LB_IDS,
    CONF_LINE_TYPES,
    CONF_MAX_PORT,
    CONF_MIN_PORT,
    CONF_PORT_PROTOCOLS,
    CONF_RESERVE_NUM,
    CONF_RETAIN_ON_DELETE,
    CONF_ZONE_MAPS,
    DEFAULT_LINE_TYPE,
    DEFAULT_MAX_PORT,
    DEFAULT_MIN_PORT,
    DEFAULT_RESERVE_NUM,
    NetworkType,
    Protocol,
)
from lbnet.exceptions import ConfigurationError


class PortSpec(BaseModel):
    """Container port a replica exposes, with its protocol."""

    port: int = Field(ge=1, le=65535)
    protocol: Protocol = Protocol.TCP


class ZoneMapping(BaseModel):
    """Availability zone and the subnet used in it."""

    zone_id: str
    vswitch_id: str


class ZoneMaps(BaseModel):
    """VPC plus the zones a pooled load balancer spans."""

    vpc_id: str
    zones: list[ZoneMapping] = Field(min_length=2)


class NetworkConfig(BaseModel):
    """Parsed network configuration of a replica or workload set.

    ``min_port``/``max_port``/``block_ports`` describe the half-open range of
    a pooled load balancer. The shared allocator uses its own range.
    """

    lb_ids: list[str] = Field(default_factory=list)
    ports: list[PortSpec] = Field(min_length=1)
    min_port: int = Field(default=DEFAULT_MIN_PORT, ge=1, le=65535)
    max_port: int = Field(default=DEFAULT_MAX_PORT, ge=1, le=65535)
    block_ports: list[int] = Field(default_factory=list)
    fixed: bool = False
    enable_scatter: bool = False
    retain_on_delete: bool = True
    reserve_num: int = Field(default=DEFAULT_RESERVE_NUM, ge=0)
    line_types: list[str] = Field(default_factory=lambda: [DEFAULT_LINE_TYPE], min_length=1)
    zone_maps: ZoneMaps | None = None
    external_traffic_policy: str = Field(default="Cluster", pattern="^(Cluster|Local)$")

    @property
    def target_ports(self) -> list[int]:
        return [p.port for p in self.ports]

    def config_hash(self) -> str:
        """Stable digest used to detect configuration drift."""
        payload = json.dumps(self.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(payload.encode()).hexdigest()[:32]

    def usable_ports(self) -> list[int]:
        """Non-blocked ports of the pooled range, ascending."""
        blocked = set(self.block_ports)
        return [p for p in range(self.min_port, self.max_port) if p not in blocked]

    def pods_per_resource(self) -> int:
        """How many replicas one pooled load balancer serves."""
        return len(self.usable_ports()) // len(self.ports)

    def slot_ports(self, slot: int) -> list[int]:
        """Ports of one replica slot on a pooled load balancer.

        Args:
            slot: Position of the replica within its load balancer

        Returns:
            One external port per declared container port

        Raises:
            ConfigurationError: If the slot lies beyond the range
        """
        width = len(self.ports)
        usable = self.usable_ports()
        start = slot * width
        if slot < 0 or start + width > len(usable):
            raise ConfigurationError(
                f"Slot {slot} does not fit in [{self.min_port}, {self.max_port})",
                field=CONF_MIN_PORT,
            )
        return usable[start : start + width]


def parse_conf_params(raw: str | list[dict[str, Any]] | None) -> dict[str, str]:
    """Decode the ``[{name, value}, ...]`` configuration list.

    Args:
        raw: JSON text from the annotation or an already-decoded list

    Returns:
        Mapping of configuration name to value

    Raises:
        ConfigurationError: If the payload is not a list of name/value pairs
    """
    if raw is None or raw == "":
        return {}
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Network configuration is not valid JSON: {e}") from e
    if not isinstance(raw, list):
        raise ConfigurationError("Network configuration must be a list of {name, value} pairs")

    params: dict[str, str] = {}
    for item in raw:
        if not isinstance(item, dict) or "name" not in item:
            raise ConfigurationError(f"Invalid network configuration entry: {item!r}")
        params[str(item["name"])] = str(item.get("value", ""))
    return params


def parse_port_protocols(value: str) -> list[PortSpec]:
    """Parse ``80/TCP,7777/UDP,9000`` (protocol defaults to TCP).

    Args:
        value: Comma-separated port/protocol list

    Returns:
        Parsed port specs

    Raises:
        ConfigurationError: On a non-numeric port or unknown protocol
    """
    specs: list[PortSpec] = []
    for item in value.split(","):
        item = item.strip()
        if not item:
            continue
        port_str, _, protocol_str = item.partition("/")
        try:
            port = int(port_str)
            protocol = Protocol(protocol_str.upper()) if protocol_str else Protocol.TCP
            specs.append(PortSpec(port=port, protocol=protocol))
        except (ValueError, ValidationError) as e:
            raise ConfigurationError(f"Invalid {CONF_PORT_PROTOCOLS} {value}", field=CONF_PORT_PROTOCOLS) from e
    if not specs:
        raise ConfigurationError(f"{CONF_PORT_PROTOCOLS} can not be empty", field=CONF_PORT_PROTOCOLS)
    return specs


def parse_zone_maps(value: str) -> ZoneMaps:
    """Parse ``vpc-id@zone-a:vsw-a,zone-b:vsw-b``.

    Args:
        value: Zone map string

    Returns:
        Parsed zone maps

    Raises:
        ConfigurationError: If the VPC id is missing, a pair is malformed, or
            fewer than two zones are given
    """
    if not value:
        raise ConfigurationError(f"{CONF_ZONE_MAPS} can not be empty", field=CONF_ZONE_MAPS)
    vpc_id, sep, rest = value.partition("@")
    vpc_id = vpc_id.strip()
    if not sep or not vpc_id:
        raise ConfigurationError(
            f"{CONF_ZONE_MAPS} must look like 'vpc-id@zone:vsw,...', got {value}", field=CONF_ZONE_MAPS
        )

    zones: list[ZoneMapping] = []
    for pair in rest.split(","):
        parts = pair.strip().split(":")
        if len(parts) != 2 or not parts[0].strip() or not parts[1].strip():
            raise ConfigurationError(f"Invalid zone mapping {pair!r}, expected 'zoneId:vSwitchId'", field=CONF_ZONE_MAPS)
        zones.append(ZoneMapping(zone_id=parts[0].strip(), vswitch_id=parts[1].strip()))

    if len(zones) < 2:
        raise ConfigurationError(f"At least 2 zone mappings are required, got {len(zones)}", field=CONF_ZONE_MAPS)
    return ZoneMaps(vpc_id=vpc_id, zones=zones)


def _parse_bool(name: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("true", "1", "yes"):
        return True
    if lowered in ("false", "0", "no", ""):
        return False
    raise ConfigurationError(f"Invalid {name} {value}, expected true or false", field=name)


def _parse_int(name: str, value: str) -> int:
    try:
        return int(value.strip())
    except ValueError as e:
        raise ConfigurationError(f"Invalid {name} {value}", field=name) from e


def _parse_int_list(name: str, value: str) -> list[int]:
    return [_parse_int(name, v) for v in value.split(",") if v.strip()]


def parse_network_config(
    raw: str | list[dict[str, Any]] | None,
    network_type: NetworkType | str = NetworkType.SHARED_LB,
) -> NetworkConfig:
    """Build a ``NetworkConfig`` from the raw configuration list.

    Args:
        raw: Annotation JSON or decoded list of ``{name, value}``
        network_type: Network type the configuration is read for

    Returns:
        Validated configuration

    Raises:
        ConfigurationError: If a value is malformed or a required key is missing
    """
    network_type = NetworkType(network_type)
    params = parse_conf_params(raw)

    data: dict[str, Any] = {}
    if network_type is NetworkType.POOLED_LB:
        data["external_traffic_policy"] = "Local"

    for name, value in params.items():
        if name == CONF_LB_IDS:
            data["lb_ids"] = [v.strip() for v in value.split(",") if v.strip()]
        elif name == CONF_PORT_PROTOCOLS:
            data["ports"] = parse_port_protocols(value)
        elif name == CONF_MIN_PORT:
            data["min_port"] = _parse_int(name, value)
        elif name == CONF_MAX_PORT:
            data["max_port"] = _parse_int(name, value)
        elif name == CONF_BLOCK_PORTS:
            data["block_ports"] = _parse_int_list(name, value)
        elif name == CONF_FIXED:
            data["fixed"] = _parse_bool(name, value)
        elif name == CONF_ENABLE_SCATTER:
            data["enable_scatter"] = _parse_bool(name, value)
        elif name == CONF_RETAIN_ON_DELETE:
            data["retain_on_delete"] = _parse_bool(name, value)
        elif name == CONF_RESERVE_NUM:
            data["reserve_num"] = _parse_int(name, value)
        elif name == CONF_LINE_TYPES:
            data["line_types"] = [v.strip() for v in value.split(",") if v.strip()]
        elif name == CONF_ZONE_MAPS:
            data["zone_maps"] = parse_zone_maps(value)
        elif name == CONF_EXTERNAL_TRAFFIC_POLICY:
            data["external_traffic_policy"] = "Local" if value.strip().lower() == "local" else "Cluster"

    if "ports" not in data:
        raise ConfigurationError(f"{CONF_PORT_PROTOCOLS} can not be empty", field=CONF_PORT_PROTOCOLS)
    if network_type is NetworkType.SHARED_LB and not data.get("lb_ids"):
        raise ConfigurationError(f"{CONF_LB_IDS} can not be empty", field=CONF_LB_IDS)
    if network_type is NetworkType.POOLED_LB and data.get("zone_maps") is None:
        raise ConfigurationError(f"{CONF_ZONE_MAPS} can not be empty", field=CONF_ZONE_MAPS)

    try:
        config = NetworkConfig(**data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid network configuration: {e.errors()[0]['msg']}") from e

    if config.min_port >= config.max_port:
        raise ConfigurationError(
            f"Invalid {CONF_MIN_PORT} {config.min_port} and {CONF_MAX_PORT} {config.max_port}", field=CONF_MIN_PORT
        )
    if network_type is NetworkType.POOLED_LB and config.pods_per_resource() <= 0:
        raise ConfigurationError(
            "Port range is too small for the number of target ports", field=CONF_PORT_PROTOCOLS
        )
    return config
