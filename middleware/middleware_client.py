import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional, Sequence, Tuple

import pika
from pika.exchange_type import ExchangeType

from middleware.node_list import BrokerNode

logger = logging.getLogger(__name__)

QUEUE_NAME = "requests_queue"
EXCHANGE_NAME = "requests_exchange"
ROUTING_KEY = "request"
QUEUE_ARGUMENTS = {"x-queue-type": "quorum"}

DEFAULT_CONNECT_TIMEOUT = 3.0


class BrokerError(Exception):
    pass


class ConnectFailureError(BrokerError):
    def __init__(self, node: BrokerNode, cause: BaseException):
        super().__init__(f"Failed to connect to {node} - {cause}")
        self.node = node
        self.cause = cause


class NoReachableNodeError(BrokerError):
    def __init__(self, failures: Sequence[ConnectFailureError]):
        tried = ", ".join(str(f.node) for f in failures)
        super().__init__(f"Could not connect to any RabbitMQ node (tried: {tried})")
        self.failures = list(failures)


class TopologyError(BrokerError):
    pass


class ConnectionLostError(BrokerError):
    pass


class QueueError(BrokerError):
    pass


class Role(Enum):
    PRODUCER = "producer"
    CONSUMER = "consumer"


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str

    def to_pika(self) -> pika.PlainCredentials:
        return pika.PlainCredentials(self.username, self.password)


@dataclass(frozen=True)
class BrokerSession:
    """A live connection, its channel and the node it is attached to."""

    connection: Any
    channel: Any
    node: BrokerNode


def connection_parameters(
    node: BrokerNode,
    credentials: Credentials,
    virtual_host: str = "/",
    timeout: float = DEFAULT_CONNECT_TIMEOUT,
) -> pika.ConnectionParameters:
    return pika.ConnectionParameters(
        host=node.host,
        port=node.port,
        virtual_host=virtual_host,
        credentials=credentials.to_pika(),
        connection_attempts=1,
        retry_delay=0,
        socket_timeout=timeout,
        stack_timeout=timeout,
    )


def _try_connect(
    node: BrokerNode,
    credentials: Credentials,
    virtual_host: str,
    timeout: float,
    connection_factory: Callable[..., Any],
):
    logger.info("Attempting to connect to %s", node)
    try:
        params = connection_parameters(node, credentials, virtual_host, timeout)
        return connection_factory(params)
    except (pika.exceptions.AMQPError, OSError) as e:
        raise ConnectFailureError(node, e) from e


def connect_to_cluster(
    nodes: Sequence[BrokerNode],
    credentials: Credentials,
    *,
    virtual_host: str = "/",
    timeout: float = DEFAULT_CONNECT_TIMEOUT,
    connection_factory: Callable[..., Any] = pika.BlockingConnection,
) -> Tuple[Any, BrokerNode]:
    """
    Connect to the first reachable node, trying them in the given order.

    Makes exactly one pass over ``nodes``. Every call starts again from the
    first node; there is no preference for the node that worked last time.
    Raises NoReachableNodeError once every candidate has failed.
    """
    failures: List[ConnectFailureError] = []
    for node in nodes:
        try:
            connection = _try_connect(
                node, credentials, virtual_host, timeout, connection_factory
            )
        except ConnectFailureError as e:
            logger.warning("Failed to connect to %s - %s", node, e.cause)
            failures.append(e)
            continue
        logger.info("Successfully connected to %s", node)
        return connection, node
    raise NoReachableNodeError(failures)


def _declare_queue(channel) -> None:
    channel.queue_declare(queue=QUEUE_NAME, durable=True, arguments=dict(QUEUE_ARGUMENTS))


def _declare_exchange(channel) -> None:
    channel.exchange_declare(
        exchange=EXCHANGE_NAME, exchange_type=ExchangeType.direct, durable=True
    )


def bind_topology(connection, role: Role):
    """Open a channel and declare what ``role`` needs to move messages."""
    try:
        channel = connection.channel()
        if role is Role.PRODUCER:
            _declare_exchange(channel)
            _declare_queue(channel)
            channel.queue_bind(
                queue=QUEUE_NAME, exchange=EXCHANGE_NAME, routing_key=ROUTING_KEY
            )
        else:
            _declare_queue(channel)
    except pika.exceptions.AMQPChannelError as e:
        raise TopologyError(f"Error declaring topology for {role.value}: {e}") from e
    except pika.exceptions.AMQPConnectionError as e:
        raise ConnectionLostError(f"Connection lost while declaring topology: {e}") from e
    logger.debug(
        "Topology ready for %s (queue=%s exchange=%s rk=%s)",
        role.value,
        QUEUE_NAME,
        EXCHANGE_NAME if role is Role.PRODUCER else "-",
        ROUTING_KEY if role is Role.PRODUCER else "-",
    )
    return channel


def close_session(session: Optional[BrokerSession]) -> None:
    if session is None:
        return
    try:
        if session.connection.is_open:
            session.connection.close()
    except (pika.exceptions.AMQPError, OSError) as e:
        logger.debug("Ignoring error while closing stale connection to %s: %s", session.node, e)


def open_session(
    nodes: Sequence[BrokerNode],
    credentials: Credentials,
    role: Role,
    *,
    virtual_host: str = "/",
    timeout: float = DEFAULT_CONNECT_TIMEOUT,
    connection_factory: Callable[..., Any] = pika.BlockingConnection,
) -> BrokerSession:
    connection, node = connect_to_cluster(
        nodes,
        credentials,
        virtual_host=virtual_host,
        timeout=timeout,
        connection_factory=connection_factory,
    )
    try:
        channel = bind_topology(connection, role)
    except BrokerError:
        close_session(BrokerSession(connection=connection, channel=None, node=node))
        raise
    return BrokerSession(connection=connection, channel=channel, node=node)
