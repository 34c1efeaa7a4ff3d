import json
from unittest.mock import MagicMock, patch

import pytest

from shared.events import DLQEvent, PaymentSucceededEvent
from shared.kafka_client import DLQ_TOPIC, BaseKafkaConsumer, BaseKafkaProducer


@pytest.fixture
def kafka_producer():
    with patch("shared.kafka_client.Producer") as producer_cls:
        producer = BaseKafkaProducer("localhost:9092", client_id="test-producer")
        yield producer, producer_cls.return_value


@pytest.fixture
def consumer():
    dlq_producer = MagicMock()
    with patch("shared.kafka_client.Consumer"), patch("shared.kafka_client.time.sleep"):
        yield BaseKafkaConsumer("localhost:9092", "test-group", ["payment.succeeded"], producer=dlq_producer)


def succeeded_payload():
    return json.loads(
        PaymentSucceededEvent(
            correlation_id="TXN-1", transaction_id="TXN-1", external_payment_ref="QK71XYZ9AB"
        ).model_dump_json()
    )


class TestProducer:
    def test_keyed_by_correlation_id(self, kafka_producer):
        producer, client = kafka_producer
        event = PaymentSucceededEvent(correlation_id="TXN-1", transaction_id="TXN-1", external_payment_ref="R1")

        producer.publish("payment.succeeded", event)

        kwargs = client.produce.call_args.kwargs
        assert kwargs["topic"] == "payment.succeeded"
        assert kwargs["key"] == b"TXN-1"
        assert json.loads(kwargs["value"])["external_payment_ref"] == "R1"
        client.flush.assert_called()

    def test_publish_error_propagates(self, kafka_producer):
        producer, client = kafka_producer
        client.produce.side_effect = BufferError("queue full")

        with pytest.raises(BufferError):
            producer.publish("payment.succeeded", {"event_type": "x", "correlation_id": "c"})


class TestConsumerDispatch:
    def test_handler_receives_typed_event(self, consumer):
        received = []

        consumer.dispatch("payment.succeeded", succeeded_payload(), received.append)

        assert len(received) == 1
        assert isinstance(received[0], PaymentSucceededEvent)
        assert received[0].transaction_id == "TXN-1"

    def test_same_event_id_handled_once(self, consumer):
        received = []
        payload = succeeded_payload()

        consumer.dispatch("payment.succeeded", payload, received.append)
        consumer.dispatch("payment.succeeded", payload, received.append)

        assert len(received) == 1

    def test_retries_then_dead_letters(self, consumer):
        handler = MagicMock(side_effect=RuntimeError("db unavailable"))

        consumer.dispatch("payment.succeeded", succeeded_payload(), handler)

        assert handler.call_count == BaseKafkaConsumer.MAX_RETRIES
        topic, dlq_event = consumer.producer.publish.call_args.args
        assert topic == DLQ_TOPIC
        assert isinstance(dlq_event, DLQEvent)
        assert dlq_event.original_topic == "payment.succeeded"
        assert dlq_event.error_reason == "db unavailable"
        assert dlq_event.retry_count == BaseKafkaConsumer.MAX_RETRIES

    def test_recovers_on_retry(self, consumer):
        handler = MagicMock(side_effect=[RuntimeError("blip"), None])

        consumer.dispatch("payment.succeeded", succeeded_payload(), handler)

        assert handler.call_count == 2
        consumer.producer.publish.assert_not_called()

    def test_invalid_payload_goes_to_dlq(self, consumer):
        handler = MagicMock()
        payload = {"event_type": "payment.succeeded", "event_id": "e-1", "correlation_id": "TXN-1"}

        consumer.dispatch("payment.succeeded", payload, handler)

        handler.assert_not_called()
        topic, dlq_event = consumer.producer.publish.call_args.args
        assert topic == DLQ_TOPIC
        assert dlq_event.retry_count == 0
