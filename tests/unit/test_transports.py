"""Transport tests."""

import json

import aio_pika
import pytest

from journeyflow.contracts import OutboundMessage
from journeyflow.transports import kafka as kafka_module
from journeyflow.transports.inmemory import InMemoryTransport
from journeyflow.transports.kafka import KafkaTransport
from journeyflow.transports.rabbitmq import RabbitMQTransport
from journeyflow.transports.redis import RedisTransport


def _message(**overrides):
    data = {
        "run_id": "run-1",
        "journey_id": "journey-1",
        "patient_id": "patient-1",
        "node_id": "m1",
        "body": "Remember your appointment",
    }
    data.update(overrides)
    return OutboundMessage(**data)


@pytest.mark.asyncio
async def test_inmemory_transport_basic():
    """Published messages stay pending until drained."""
    transport = InMemoryTransport()

    await transport.publish("sms", _message())
    await transport.publish("sms", _message(body="See you tomorrow"))
    assert [m.body for m in transport.pending("sms")] == [
        "Remember your appointment",
        "See you tomorrow",
    ]

    drained = transport.drain("sms")
    assert [m.patient_id for m in drained] == ["patient-1", "patient-1"]
    assert transport.pending("sms") == []
    assert transport.drain("sms") == []


@pytest.mark.asyncio
async def test_inmemory_topics_are_isolated():
    transport = InMemoryTransport()

    await transport.publish("sms", _message(body="one"))
    await transport.publish("email", _message(body="two"))

    assert [m.body for m in transport.pending("sms")] == ["one"]
    assert [m.body for m in transport.pending("email")] == ["two"]


class FakeRedis:
    def __init__(self):
        self.lists = {}
        self.closed = False

    async def lpush(self, key, value):
        self.lists.setdefault(key, []).insert(0, value)

    async def llen(self, key):
        return len(self.lists.get(key, []))

    async def aclose(self):
        self.closed = True


def test_redis_transport_defaults():
    transport = RedisTransport()
    assert transport.host == "localhost"
    assert transport.port == 6379
    assert transport.queue_key("sms") == "journeyflow:sms"


@pytest.mark.asyncio
async def test_redis_publish_pushes_json_onto_prefixed_list():
    transport = RedisTransport(key_prefix="clinic")
    client = FakeRedis()
    transport._redis = client

    await transport.publish("sms", _message(body="first"))
    await transport.publish("sms", _message(body="second"))

    assert await transport.pending_count("sms") == 2
    # Consumers BRPOP, so the oldest message sits at the right end.
    oldest = OutboundMessage.from_json(client.lists["clinic:sms"][-1])
    assert oldest.body == "first"

    await transport.disconnect()
    assert client.closed
    assert transport._redis is None


class FakeProducer:
    instances = []

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.sent = []
        self.started = False
        self.stopped = False
        FakeProducer.instances.append(self)

    async def start(self):
        self.started = True

    async def stop(self):
        self.stopped = True

    async def send_and_wait(self, topic, value=None, key=None, headers=None):
        self.sent.append((topic, value, key, headers))


@pytest.mark.asyncio
async def test_kafka_publish_keys_records_by_run(monkeypatch):
    FakeProducer.instances = []
    monkeypatch.setattr(kafka_module, "AIOKafkaProducer", FakeProducer)
    transport = KafkaTransport("k1:9092", client_id="clinic", acks=1)
    message = _message(run_id="run-42")

    await transport.publish("patient.sms", message)
    await transport.publish("patient.sms", _message(run_id="run-42", body="again"))

    assert len(FakeProducer.instances) == 1
    producer = FakeProducer.instances[0]
    assert producer.started
    assert producer.kwargs == {
        "bootstrap_servers": ["k1:9092"],
        "client_id": "clinic",
        "acks": 1,
    }
    topic, value, key, headers = producer.sent[0]
    assert topic == "patient.sms"
    assert key == b"run-42"
    assert json.loads(value)["body"] == "Remember your appointment"
    assert headers == [("message_id", message.message_id.encode())]

    await transport.disconnect()
    assert producer.stopped


class FakeExchange:
    def __init__(self):
        self.published = []

    async def publish(self, message, routing_key):
        self.published.append((routing_key, message))


class FakeChannel:
    def __init__(self):
        self.default_exchange = FakeExchange()
        self.declared = []

    async def declare_queue(self, name, durable=False):
        self.declared.append((name, durable))


class FakeConnection:
    def __init__(self):
        self.channel_obj = FakeChannel()
        self.closed = False

    async def channel(self):
        return self.channel_obj

    async def close(self):
        self.closed = True


@pytest.mark.asyncio
async def test_rabbitmq_publish_is_persistent(monkeypatch):
    connection = FakeConnection()
    urls = []

    async def connect_robust(url):
        urls.append(url)
        return connection

    monkeypatch.setattr(aio_pika, "connect_robust", connect_robust)
    transport = RabbitMQTransport(url="amqp://care:secret@mq/")
    message = _message()

    await transport.publish("patient.sms", message)
    await transport.publish("patient.sms", _message(body="again"))

    assert urls == ["amqp://care:secret@mq/"]
    assert connection.channel_obj.declared == [("patient.sms", True)]
    routing_key, sent = connection.channel_obj.default_exchange.published[0]
    assert routing_key == "patient.sms"
    assert sent.message_id == message.message_id
    assert sent.delivery_mode == aio_pika.DeliveryMode.PERSISTENT
    assert OutboundMessage.from_json(sent.body.decode()).body == message.body

    await transport.disconnect()
    assert connection.closed


def test_factory_builds_broker_transports():
    from journeyflow.config import JourneyflowConfig
    from journeyflow.transports import get_transport

    config = JourneyflowConfig(
        transport={
            "kafka": {"brokers": ["k1:9092", "k2:9092"], "client_id": "clinic"},
            "rabbitmq": {"url": "amqp://care:secret@mq/"},
        }
    )

    kafka = get_transport("kafka", config=config)
    assert isinstance(kafka, KafkaTransport)
    assert kafka.brokers == ["k1:9092", "k2:9092"]
    assert kafka.client_id == "clinic"
    assert kafka.acks == "all"

    rabbit = get_transport("rabbitmq", config=config)
    assert isinstance(rabbit, RabbitMQTransport)
    assert rabbit.url == "amqp://care:secret@mq/"
