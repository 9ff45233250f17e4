import logging
import random
import threading
import time
from datetime import datetime
from typing import Callable, Optional

import pika

from app_config.config_loader import Config
from middleware.middleware_client import (
    EXCHANGE_NAME,
    ROUTING_KEY,
    BrokerError,
    BrokerSession,
    ConnectionLostError,
    Credentials,
    QueueError,
    Role,
    close_session,
    open_session,
)
from protocol.messages import CONTENT_TYPE, SubscriptionRequest

logger = logging.getLogger(__name__)

PERSISTENT_DELIVERY_MODE = 2


class RequestProducer:
    """Publishes a random subscription request at a fixed interval, forever."""

    def __init__(
        self,
        cfg: Config,
        *,
        connection_factory: Callable = pika.BlockingConnection,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = datetime.now,
        rng: Optional[random.Random] = None,
        stop_event: Optional[threading.Event] = None,
    ):
        self._cfg = cfg
        self._credentials = Credentials(cfg.broker.username, cfg.broker.password)
        self._connection_factory = connection_factory
        self._sleep = sleep
        self._clock = clock
        self._rng = rng or random.Random()
        self._stop_event = stop_event or threading.Event()
        self._session: Optional[BrokerSession] = None
        self.counter = 1

    @property
    def session(self) -> Optional[BrokerSession]:
        return self._session

    def run(self) -> None:
        logger.info("Producer starting...")
        while not self._stop_event.is_set():
            self.step()

    def step(self) -> None:
        """One publish iteration, including the backoff pause after a failure."""
        try:
            if self._session is None:
                self._session = self._connect()
            self._publish_next(self._session)
            self._sleep(self._cfg.timing.publish_interval)
        except ConnectionLostError as e:
            logger.warning("Connection lost: %s. Reconnecting...", e)
            self._recover()
        except BrokerError as e:
            logger.error("Error: %s", e)
            self._recover()
        except Exception as e:
            logger.exception("Unexpected producer error: %s", e)
            self._recover()

    def _connect(self) -> BrokerSession:
        session = open_session(
            self._cfg.broker.nodes,
            self._credentials,
            Role.PRODUCER,
            virtual_host=self._cfg.broker.vhost,
            timeout=self._cfg.broker.connect_timeout,
            connection_factory=self._connection_factory,
        )
        logger.info("Producer connected to node: %s", session.node.host)
        return session

    def _publish_next(self, session: BrokerSession) -> None:
        request = SubscriptionRequest.generate(self.counter, rng=self._rng, clock=self._clock)
        try:
            session.channel.basic_publish(
                exchange=EXCHANGE_NAME,
                routing_key=ROUTING_KEY,
                body=request.to_bytes(),
                properties=pika.BasicProperties(
                    delivery_mode=PERSISTENT_DELIVERY_MODE,
                    content_type=CONTENT_TYPE,
                ),
            )
        except pika.exceptions.AMQPConnectionError as e:
            raise ConnectionLostError(f"publish to {session.node} failed: {e}") from e
        except pika.exceptions.AMQPChannelError as e:
            raise QueueError(f"publish to {session.node} rejected: {e}") from e
        logger.info(
            "Sent request #%d: %s - %s",
            request.number,
            request.action.value,
            request.msisdn,
        )
        self.counter += 1

    def _recover(self) -> None:
        stale, self._session = self._session, None
        close_session(stale)
        self._sleep(self._cfg.timing.backoff)
