from unittest import mock

import pika
import pytest  # type: ignore[import-not-found]

from app_config.config_loader import Config


# ---------- fakes ----------
class FakeCluster:
    """
    Stand-in for pika.BlockingConnection over a set of broker nodes.

    Hosts listed in ``down`` refuse connections; every other host hands out
    a fresh mock connection whose channel is a MagicMock.
    """

    def __init__(self, down=()):
        self.down = set(down)
        self.attempts = []
        self.connections = []

    def __call__(self, params):
        self.attempts.append((params.host, params.port))
        if params.host in self.down:
            raise pika.exceptions.AMQPConnectionError(f"{params.host} refused")
        connection = mock.MagicMock(name=f"connection-{params.host}")
        connection.is_open = True
        connection.channel.return_value = mock.MagicMock(name=f"channel-{params.host}")
        self.connections.append(connection)
        return connection

    @property
    def channels(self):
        return [c.channel.return_value for c in self.connections]


class RecordingSleep:
    def __init__(self, stop_event=None, stop_after=None):
        self.calls = []
        self._stop_event = stop_event
        self._stop_after = stop_after

    def __call__(self, seconds):
        self.calls.append(seconds)
        if self._stop_event is not None and len(self.calls) >= self._stop_after:
            self._stop_event.set()


def make_delivery(delivery_tag=1, exchange="requests_exchange", routing_key="request"):
    return mock.Mock(delivery_tag=delivery_tag, exchange=exchange, routing_key=routing_key)


@pytest.fixture
def env(tmp_path):
    return {
        "RABBITMQ_HOSTS": "bad:5672,good:5672",
        "RABBITMQ_USER": "admin",
        "RABBITMQ_PASS": "admin",
        "LOG_FILE": str(tmp_path / "logs" / "messages.log"),
    }


@pytest.fixture
def consumer_cfg(env):
    return Config("consumer", environ=env)


@pytest.fixture
def producer_cfg(env):
    return Config("producer", environ=env)


@pytest.fixture
def cluster():
    return FakeCluster(down={"bad"})
