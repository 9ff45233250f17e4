import json
import random
import threading
from datetime import datetime

import pika
import pytest

from middleware.middleware_client import EXCHANGE_NAME, ROUTING_KEY, NoReachableNodeError
from producer.producer import RequestProducer
from tests.conftest import FakeCluster, RecordingSleep


def published(channel):
    return [json.loads(c.kwargs["body"]) for c in channel.basic_publish.call_args_list]


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def producer(producer_cfg, cluster, sleep):
    return RequestProducer(
        producer_cfg,
        connection_factory=cluster,
        sleep=sleep,
        clock=lambda: datetime(2024, 1, 1, 12, 30, 0),
        rng=random.Random(7),
    )


def test_publishes_persistent_json_to_the_exchange(producer, cluster, sleep):
    producer.step()

    channel = cluster.channels[0]
    channel.basic_publish.assert_called_once()
    kwargs = channel.basic_publish.call_args.kwargs
    assert kwargs["exchange"] == EXCHANGE_NAME
    assert kwargs["routing_key"] == ROUTING_KEY
    assert kwargs["properties"].delivery_mode == 2
    assert kwargs["properties"].content_type == "application/json"

    body = json.loads(kwargs["body"])
    assert body["number"] == 1
    assert body["action"] in {"subscribe", "unsubscribe", "state"}
    assert len(body["msisdn"]) == 9 and body["msisdn"].isdigit()
    assert body["timestamp"] == "2024-01-01 12:30:00"
    assert sleep.calls == [2.0]


def test_connects_once_and_reuses_the_session(producer, cluster):
    producer.step()
    producer.step()
    producer.step()

    assert cluster.attempts == [("bad", 5672), ("good", 5672)]
    assert producer.session.node.host == "good"
    assert [m["number"] for m in published(cluster.channels[0])] == [1, 2, 3]
    assert producer.counter == 4


def test_sent_line_is_logged(producer, caplog):
    with caplog.at_level("INFO"):
        producer.step()
    assert any(r.getMessage().startswith("Sent request #1: ") for r in caplog.records)
    assert "Producer connected to node: good" in caplog.text


def test_counter_keeps_increasing_across_reconnection(producer, cluster, sleep):
    producer.step()
    producer.step()
    cluster.channels[0].basic_publish.side_effect = pika.exceptions.StreamLostError("node died")

    producer.step()

    assert producer.session is None
    assert sleep.calls == [2.0, 2.0, 3.0]
    cluster.connections[0].close.assert_called_once()

    producer.step()
    producer.step()

    assert len(cluster.connections) == 2
    first = [m["number"] for m in published(cluster.channels[0])]
    second = [m["number"] for m in published(cluster.channels[1])]
    # request #3 failed mid-publish, so the new session starts with it again
    assert first == [1, 2, 3]
    assert second == [3, 4]
    assert first[:2] + second == sorted(set(first[:2] + second))
    assert producer.counter == 5


def test_no_reachable_node_backs_off_without_publishing(producer_cfg, sleep):
    cluster = FakeCluster(down={"bad", "good"})
    producer = RequestProducer(producer_cfg, connection_factory=cluster, sleep=sleep)

    with pytest.raises(NoReachableNodeError):
        producer._connect()
    producer.step()

    assert cluster.attempts[-2:] == [("bad", 5672), ("good", 5672)]
    assert sleep.calls == [3.0]
    assert producer.session is None
    assert producer.counter == 1


def test_topology_conflict_is_retried_as_a_whole(producer_cfg, cluster, sleep):
    producer = RequestProducer(producer_cfg, connection_factory=cluster, sleep=sleep)
    original = cluster.__call__
    conflicts = iter([True, False])

    def factory(params):
        connection = original(params)
        if next(conflicts):
            connection.channel.return_value.queue_declare.side_effect = (
                pika.exceptions.ChannelClosedByBroker(406, "PRECONDITION_FAILED")
            )
        return connection

    producer._connection_factory = factory
    producer.step()
    assert producer.session is None
    assert sleep.calls == [3.0]

    producer.step()
    assert producer.session.connection is cluster.connections[1]
    assert [m["number"] for m in published(cluster.channels[1])] == [1]


def test_run_stops_when_the_event_is_set(producer_cfg, cluster):
    stop = threading.Event()
    sleep = RecordingSleep(stop_event=stop, stop_after=3)
    producer = RequestProducer(producer_cfg, connection_factory=cluster, sleep=sleep, stop_event=stop)

    producer.run()

    assert [m["number"] for m in published(cluster.channels[0])] == [1, 2, 3]
