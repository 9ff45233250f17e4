from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

DEFAULT_HOSTS = "rabbitmq1:5672"


class ConfigurationError(Exception):
    pass


@dataclass(frozen=True)
class BrokerNode:
    host: str
    port: int

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


def parse_node(entry: str) -> BrokerNode:
    host, sep, port = entry.strip().rpartition(":")
    if not sep or not host:
        raise ConfigurationError(f"Broker node '{entry}' must be 'host:port'")
    try:
        port_number = int(port)
    except ValueError:
        raise ConfigurationError(
            f"Broker node '{entry}' has a non-numeric port"
        ) from None
    if not 0 < port_number < 65536:
        raise ConfigurationError(f"Broker node '{entry}' has an invalid port")
    return BrokerNode(host=host.strip(), port=port_number)


def parse_nodes(raw: Optional[str]) -> Tuple[BrokerNode, ...]:
    """
    Parse a comma-separated 'host:port' list into an ordered tuple of nodes.

    Blank input falls back to the single default node; input made only of
    separators is rejected. Order and duplicates
    are preserved since they define the failover sequence.
    """
    if raw is None or not raw.strip():
        raw = DEFAULT_HOSTS
    entries = [item for item in raw.split(",") if item.strip()]
    if not entries:
        raise ConfigurationError(f"Broker node list '{raw}' names no nodes")
    return tuple(parse_node(item) for item in entries)
