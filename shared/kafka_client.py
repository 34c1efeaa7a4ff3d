"""
kafka_client.py - Kafka Producer and Consumer Client Wrappers

PURPOSE:
    Provides reusable Kafka producer and consumer classes with built-in
    error handling, serialization, and delivery guarantees. Every service in
    the POS backend talks to the event channel through these two classes.

CLASSES:
    1. BaseKafkaProducer: Publishes events to Kafka topics
       - JSON serialization (pydantic model_dump_json)
       - Delivery acknowledgments (acks=all)
       - Retries (3 attempts) and snappy compression
       - Message key = correlation_id, so every event of one transaction
         lands on the same partition and is consumed in order

    2. BaseKafkaConsumer: Consumes events from Kafka topics
       - Deserialization through EVENT_TYPE_MAP
       - In-process duplicate suppression by event_id
       - Retry with exponential backoff (1s, 2s, 4s)
       - Dead Letter Queue publishing once retries are exhausted
       - stop() for graceful shutdown from the service lifespan

DEAD LETTER QUEUE (DLQ) HANDLING:
    1. Handler raises while processing a message
    2. Retry after 1s, then 2s
    3. After the third failure a DLQEvent is published to "dlq.events"
       carrying the original topic, event type, error and full payload
    4. The event id is remembered so the poison message is not retried again

USAGE:
    producer = BaseKafkaProducer("localhost:9092", client_id="pos-producer")
    producer.publish("payment.charge_requested", event)

    consumer = BaseKafkaConsumer("localhost:9092", "pos-service-group", ["payment.succeeded"])
    consumer.consume(handler_fn)
"""

import json
import logging
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional, Union

from confluent_kafka import Consumer, Producer
from confluent_kafka.error import KafkaError

from shared.events import EVENT_TYPE_MAP, BaseEvent, DLQEvent

logger = logging.getLogger(__name__)

DLQ_TOPIC = "dlq.events"


class BaseKafkaProducer:
    """
    Base Kafka producer with JSON serialization and delivery callbacks.

    Features:
        - Automatic JSON serialization of events
        - Delivery acknowledgment from all replicas (acks=all)
        - 3 retry attempts on failure
        - Snappy compression for efficiency
        - Synchronous send (flush per publish) with callback tracking
    """

    def __init__(self, bootstrap_servers: str, client_id: str = "producer"):
        """
        Initialize Kafka producer.

        Args:
            bootstrap_servers: Comma-separated Kafka broker addresses
            client_id: Unique identifier for this producer instance
        """
        self.config = {
            "bootstrap.servers": bootstrap_servers,
            "client.id": client_id,
            "acks": "all",
            "retries": 3,
            "compression.type": "snappy",
        }
        self.producer = Producer(self.config)

    def _delivery_report(self, err: Optional[KafkaError], msg) -> None:
        """Delivery report handler called by producer on message delivery."""
        if err is not None:
            logger.error(f"Message delivery failed: {err}")
        else:
            logger.debug(
                f"Message delivered to topic={msg.topic()}, "
                f"partition={msg.partition()}, offset={msg.offset()}"
            )

    def publish(self, topic: str, event: Union[BaseEvent, Dict[str, Any]]) -> None:
        """Publish event to Kafka topic. Raises if the broker rejects the message."""
        try:
            if isinstance(event, dict):
                message = json.dumps(event, default=str)
                event_type = event.get("event_type", "unknown")
                event_id = event.get("event_id", "unknown")
                correlation_id = event.get("correlation_id", "unknown")
            else:
                message = event.model_dump_json()
                event_type = event.event_type
                event_id = event.event_id
                correlation_id = event.correlation_id

            self.producer.produce(
                topic=topic,
                key=str(correlation_id).encode("utf-8"),
                value=message.encode("utf-8"),
                callback=self._delivery_report,
            )
            self.producer.flush()
            logger.info(
                f"Published event to {topic}",
                extra={
                    "event_type": event_type,
                    "event_id": event_id,
                    "correlation_id": correlation_id,
                },
            )
        except Exception as e:
            logger.error(f"Error publishing event to {topic}: {e}")
            raise

    def flush(self) -> None:
        """Flush any pending messages."""
        self.producer.flush()

    def close(self) -> None:
        """Flush outstanding messages before shutdown."""
        self.producer.flush(10)


class BaseKafkaConsumer:
    """Base Kafka consumer with retry logic and DLQ handling."""

    MAX_RETRIES = 3
    RETRY_DELAYS = [1, 2, 4]
    # Bound for the in-process duplicate filter; durable dedup lives in the services.
    SEEN_EVENTS_LIMIT = 10000

    def __init__(
        self,
        bootstrap_servers: str,
        group_id: str,
        topics: List[str],
        producer: Optional[BaseKafkaProducer] = None,
    ):
        """Initialize Kafka consumer and subscribe to topics."""
        self.config = {
            "bootstrap.servers": bootstrap_servers,
            "group.id": group_id,
            "auto.offset.reset": "earliest",
            "enable.auto.commit": True,
            "session.timeout.ms": 30000,
        }
        self.consumer = Consumer(self.config)
        self.topics = topics
        self.consumer.subscribe(topics)
        self.processed_events: "OrderedDict[str, None]" = OrderedDict()
        self.producer = producer or BaseKafkaProducer(bootstrap_servers, client_id=f"{group_id}-dlq-producer")
        self.running = True

    def _remember(self, event_id: str) -> None:
        self.processed_events[event_id] = None
        while len(self.processed_events) > self.SEEN_EVENTS_LIMIT:
            self.processed_events.popitem(last=False)

    def consume(self, handler_fn: Callable[[BaseEvent], None], timeout: float = 1.0) -> None:
        """Consume messages from subscribed topics until stop() is called."""
        while self.running:
            msg = self.consumer.poll(timeout)

            if msg is None:
                continue

            if msg.error():
                logger.error(f"Consumer error: {msg.error()}")
                continue

            try:
                event_data = json.loads(msg.value().decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError) as e:
                logger.error(f"Failed to deserialize message from {msg.topic()}: {e}")
                continue

            self.dispatch(msg.topic(), event_data, handler_fn)

        self.consumer.close()

    def dispatch(self, topic: str, event_data: Dict[str, Any], handler_fn: Callable[[BaseEvent], None]) -> None:
        """Validate one decoded message and run the handler with retries."""
        event_type = event_data.get("event_type")
        event_id = event_data.get("event_id")

        if event_id in self.processed_events:
            logger.info(
                f"Event {event_id} already processed, skipping",
                extra={"event_type": event_type, "correlation_id": event_data.get("correlation_id")},
            )
            return

        event_class = EVENT_TYPE_MAP.get(event_type, BaseEvent)
        try:
            event = event_class.model_validate(event_data)
        except Exception as e:
            logger.error(f"Invalid {event_type} payload on {topic}: {e}")
            self._send_to_dlq(topic, event_data, str(e), retry_count=0)
            return

        for attempt in range(self.MAX_RETRIES):
            try:
                handler_fn(event)
                self._remember(event.event_id)
                logger.info(
                    "Event processed successfully",
                    extra={
                        "event_id": event.event_id,
                        "event_type": event.event_type,
                        "correlation_id": event.correlation_id,
                    },
                )
                return
            except Exception as e:
                if attempt < self.MAX_RETRIES - 1:
                    wait_time = self.RETRY_DELAYS[attempt]
                    logger.warning(
                        f"Error processing event (attempt {attempt + 1}/{self.MAX_RETRIES}): {e}. "
                        f"Retrying in {wait_time}s...",
                        extra={"event_type": event.event_type, "correlation_id": event.correlation_id},
                    )
                    time.sleep(wait_time)
                else:
                    logger.error(
                        f"Event failed after {self.MAX_RETRIES} retries: {e}. Sending to DLQ.",
                        extra={"event_type": event.event_type, "correlation_id": event.correlation_id},
                    )
                    self._send_to_dlq(topic, event_data, str(e), retry_count=self.MAX_RETRIES)
                    self._remember(event.event_id)

    def _send_to_dlq(self, topic: str, event_data: Dict[str, Any], reason: str, retry_count: int) -> None:
        dlq_event = DLQEvent(
            correlation_id=str(event_data.get("correlation_id", "unknown")),
            original_topic=topic,
            original_event_type=str(event_data.get("event_type", "unknown")),
            error_reason=reason,
            retry_count=retry_count,
            payload=event_data,
        )
        try:
            self.producer.publish(DLQ_TOPIC, dlq_event)
        except Exception as e:
            logger.error(f"Failed to publish to {DLQ_TOPIC}: {e}")

    def stop(self) -> None:
        """Ask the consume loop to exit after the current poll."""
        self.running = False
