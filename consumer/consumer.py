import functools
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import pika

from app_config.config_loader import Config
from middleware.middleware_client import (
    QUEUE_NAME,
    BrokerError,
    BrokerSession,
    ConnectionLostError,
    Credentials,
    QueueError,
    Role,
    close_session,
    open_session,
)
from protocol.messages import MalformedPayloadError, SubscriptionRequest, decode_fields

logger = logging.getLogger(__name__)

UNKNOWN_NODE = "unknown"
MISSING = "N/A"
PREFETCH_COUNT = 1


@dataclass(frozen=True)
class Envelope:
    body: bytes
    exchange: str
    routing_key: str
    delivery_tag: int

    @classmethod
    def from_delivery(cls, method, body: bytes) -> "Envelope":
        return cls(
            body=body,
            exchange=method.exchange or "",
            routing_key=method.routing_key or "",
            delivery_tag=method.delivery_tag,
        )


def _field(data: Dict[str, Any], name: str) -> Any:
    value = data.get(name)
    return MISSING if value is None else value


def delivery_fields(envelope: Envelope, node: str) -> Dict[str, Any]:
    """
    Fields of the request carried by ``envelope``.

    A body that is not a complete request is logged and whatever fields it
    does carry are returned, possibly none.
    """
    try:
        return SubscriptionRequest.from_bytes(envelope.body).to_dict()
    except MalformedPayloadError as e:
        logger.warning(
            "Malformed payload (delivery_tag=%s) from node %s: %s",
            envelope.delivery_tag,
            node,
            e,
        )
    try:
        return decode_fields(envelope.body)
    except MalformedPayloadError:
        return {}


def describe_delivery(envelope: Envelope, node: str) -> str:
    data = delivery_fields(envelope, node)
    return (
        f"Received message #{_field(data, 'number')} | Node: {node} | "
        f"Action: {_field(data, 'action')} | MSISDN: {_field(data, 'msisdn')} | "
        f"Original timestamp: {_field(data, 'timestamp')} | "
        f"Exchange: {envelope.exchange or 'direct'} | "
        f"Routing Key: {envelope.routing_key or 'none'}"
    )


def handle_delivery(
    channel,
    method,
    properties,
    body: bytes,
    *,
    node: str,
    processing_delay: float,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """
    Log one delivery and acknowledge it.

    Payload problems never stop the ack: a malformed body is logged with
    placeholder values and still acknowledged.
    """
    envelope = Envelope.from_delivery(method, body)
    logger.info(describe_delivery(envelope, node))
    channel.basic_ack(delivery_tag=envelope.delivery_tag)
    sleep(processing_delay)


class RequestConsumer:
    """Drains requests_queue one delivery at a time, reconnecting across the cluster."""

    def __init__(
        self,
        cfg: Config,
        *,
        connection_factory: Callable = pika.BlockingConnection,
        sleep: Callable[[float], None] = time.sleep,
        stop_event: Optional[threading.Event] = None,
    ):
        self._cfg = cfg
        self._credentials = Credentials(cfg.broker.username, cfg.broker.password)
        self._connection_factory = connection_factory
        self._sleep = sleep
        self._stop_event = stop_event or threading.Event()
        self._session: Optional[BrokerSession] = None

    @property
    def session(self) -> Optional[BrokerSession]:
        return self._session

    @property
    def current_node(self) -> str:
        return self._session.node.host if self._session else UNKNOWN_NODE

    def run(self) -> None:
        logger.info("Consumer started")
        while not self._stop_event.is_set():
            self.step()

    def step(self) -> None:
        """Connect if needed, then block in the subscription until it fails."""
        node = self.current_node
        try:
            if self._session is None:
                self._session = self._connect()
                node = self.current_node
            self._consume(self._session)
        except ConnectionLostError as e:
            logger.warning(
                "Connection lost from node: %s (%s), attempting to reconnect...", node, e
            )
            self._recover()
        except QueueError as e:
            logger.error("Queue error on node %s: %s", node, e)
            self._recover()
        except BrokerError as e:
            logger.error("Error on node %s: %s", node, e)
            self._recover()
        except Exception as e:
            logger.exception("Unexpected error on node %s: %s", node, e)
            self._recover()

    def _connect(self) -> BrokerSession:
        session = open_session(
            self._cfg.broker.nodes,
            self._credentials,
            Role.CONSUMER,
            virtual_host=self._cfg.broker.vhost,
            timeout=self._cfg.broker.connect_timeout,
            connection_factory=self._connection_factory,
        )
        logger.info("Consumer connected to node: %s", session.node.host)
        return session

    def _consume(self, session: BrokerSession) -> None:
        callback = functools.partial(
            handle_delivery,
            node=session.node.host,
            processing_delay=self._cfg.timing.processing_delay,
            sleep=self._sleep,
        )
        try:
            session.channel.basic_qos(prefetch_count=PREFETCH_COUNT)
            session.channel.basic_consume(queue=QUEUE_NAME, on_message_callback=callback)
            logger.info("Ready to consume messages from node: %s", session.node.host)
            session.channel.start_consuming()
        except pika.exceptions.AMQPConnectionError as e:
            raise ConnectionLostError(str(e) or type(e).__name__) from e
        except pika.exceptions.AMQPChannelError as e:
            raise QueueError(str(e) or type(e).__name__) from e
        # start_consuming only returns once the broker cancelled the consumer
        raise ConnectionLostError(f"subscription on {QUEUE_NAME} was cancelled")

    def _recover(self) -> None:
        stale, self._session = self._session, None
        close_session(stale)
        self._sleep(self._cfg.timing.backoff)
