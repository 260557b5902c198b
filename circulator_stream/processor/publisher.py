"""
Outbound Publisher
==================

Fans pipeline records out to the four downstream topics.

Each send is independent: a failure on one topic never prevents a send on
another. Every message carries the record's key and string-typed properties
so consumers can filter without decoding the payload.
"""

from typing import Dict, List

from pydantic import BaseModel

from circulator_stream.events.schema import (
    AlertRecord,
    MetricsSample,
    ProcessedResult,
    ProcessingOutcome,
)
from circulator_stream.interfaces import BrokerError, BrokerProducer
from circulator_stream.logging_utils import get_component_logger

logger = get_component_logger(__name__, "publisher")


class PublishError(Exception):
    """
    A record could not be published.

    Attributes:
        topic: Destination topic
        permanent: True when retrying cannot help (record not serializable)
    """

    def __init__(self, message: str, topic: str, permanent: bool = False):
        super().__init__(message)
        self.topic = topic
        self.permanent = permanent


class OutboundPublisher:
    """
    One producer per downstream topic.

    Args:
        processed: Producer for processed sensor data
        alerts: Producer for alerts
        metrics: Producer for system metrics
        results: Producer for processing results

    Example:
        >>> publisher = OutboundPublisher(processed, alerts, metrics, results)
        >>> publisher.send_processed_data(result)
        >>> publisher.close()
    """

    def __init__(
        self,
        processed: BrokerProducer,
        alerts: BrokerProducer,
        metrics: BrokerProducer,
        results: BrokerProducer,
    ):
        self.processed = processed
        self.alerts = alerts
        self.metrics = metrics
        self.results = results

    def send_processed_data(self, result: ProcessedResult) -> None:
        self._send(self.processed, result)

    def send_alert(self, alert: AlertRecord) -> None:
        self._send(self.alerts, alert)

    def send_system_metrics(self, sample: MetricsSample) -> None:
        self._send(self.metrics, sample)

    def send_processing_result(self, outcome: ProcessingOutcome) -> None:
        self._send(self.results, outcome)

    def _send(self, producer: BrokerProducer, record: BaseModel) -> None:
        topic = producer.topic

        try:
            payload = record.model_dump_json(exclude_none=True).encode("utf-8")
            properties: Dict[str, str] = record.message_properties()
            key = record.message_key()
        except (ValueError, TypeError) as e:
            raise PublishError(
                f"Cannot serialize {type(record).__name__}: {e}", topic, permanent=True
            ) from e

        try:
            producer.send(payload, key=key, properties=properties)
        except BrokerError as e:
            raise PublishError(f"Send to {topic} failed: {e}", topic) from e

        logger.debug(
            f"{type(record).__name__} published to {topic}",
            extra={"event": "record_published", "topic": topic, "record_uuid": record.uuid},
        )

    def close(self) -> List[Exception]:
        """Close every producer, continuing past failures. Returns the errors."""
        errors: List[Exception] = []
        for producer in (self.processed, self.alerts, self.metrics, self.results):
            try:
                producer.close()
            except Exception as e:
                logger.warning(
                    f"Closing producer for {producer.topic} failed: {e}",
                    extra={"event": "producer_close_failed", "topic": producer.topic},
                )
                errors.append(e)
        return errors
