"""Read and write the network status and configuration carried by a replica."""

from __future__ import annotations

import copy
import json
from datetime import UTC, datetime

from lbnet.constants import NETWORK_STATUS_KEY, NetworkState, NetworkType
from lbnet.exceptions import ConfigurationError
from lbnet.logging import get_logger
from lbnet.network_config import NetworkConfig, parse_network_config
from lbnet.types import NetworkStatus, Replica

logger = get_logger("network_manager")


def _now() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


class NetworkManager:
    """Accessor for the network annotations and labels of one replica.

    Status changes are applied to the returned replica copy only; the
    control loop writes the replica back to the store.
    """

    def __init__(self, replica: Replica) -> None:
        self.replica = replica

    @property
    def network_type(self) -> NetworkType | None:
        try:
            return NetworkType(self.replica.network_type)
        except ValueError:
            return None

    @property
    def disabled(self) -> bool:
        return self.replica.network_disabled

    def get_network_config(self) -> NetworkConfig:
        """Parse the replica's network configuration.

        Raises:
            ConfigurationError: If the type is unknown or the configuration malformed
        """
        network_type = self.network_type
        if network_type is None:
            raise ConfigurationError(f"Unknown network type {self.replica.network_type!r}")
        return parse_network_config(self.replica.network_conf, network_type)

    def get_network_status(self) -> NetworkStatus | None:
        """Return the persisted status, or ``None`` when absent or unreadable."""
        raw = self.replica.annotations.get(NETWORK_STATUS_KEY)
        if not raw:
            return None
        try:
            return NetworkStatus.from_dict(json.loads(raw))
        except (json.JSONDecodeError, ValueError, TypeError) as e:
            logger.warning(f"Replica {self.replica.key} has an unreadable network status: {e}")
            return None

    def get_network_state(self) -> NetworkState:
        """Current readiness, ``Waiting`` when nothing has been persisted."""
        status = self.get_network_status()
        if status is None:
            return NetworkState.WAITING
        return status.current_network_state

    def update_network_status(self, status: NetworkStatus) -> Replica:
        """Apply a status to a copy of the replica.

        Stamps ``createTime`` on first write and ``lastTransitionTime``
        whenever the current state changes.

        Args:
            status: Status to persist

        Returns:
            Replica copy carrying the new status annotation
        """
        previous = self.get_network_status()
        now = _now()

        status = copy.deepcopy(status)
        status.network_type = self.replica.network_type
        status.create_time = previous.create_time if previous and previous.create_time else now
        if previous is None or previous.current_network_state != status.current_network_state:
            status.last_transition_time = now
        else:
            status.last_transition_time = previous.last_transition_time

        updated = copy.deepcopy(self.replica)
        updated.annotations[NETWORK_STATUS_KEY] = json.dumps(status.to_dict())
        self.replica = updated
        return updated
