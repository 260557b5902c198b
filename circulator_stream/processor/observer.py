"""
Consumer Observers
==================

Observers notified by the ingestion consumer at each state transition.
"""

from threading import Lock
from typing import Dict

from circulator_stream.interfaces import BrokerMessage
from circulator_stream.logging_utils import get_component_logger

logger = get_component_logger(__name__, "consumer")


class LoggingObserver:
    """Logs every transition with an ``event`` field."""

    def on_receive(self, message: BrokerMessage) -> None:
        logger.debug(
            f"Message received on {message.topic}",
            extra={
                "event": "message_received",
                "topic": message.topic,
                "message_id": message.message_id,
                "redelivery_count": message.redelivery_count,
            },
        )

    def on_receive_error(self, error: Exception, attempt: int) -> None:
        logger.warning(
            f"Receive failed: {error}",
            extra={"event": "receive_error", "attempt": attempt, "error_type": type(error).__name__},
        )

    def on_decode_failure(self, message: BrokerMessage, error: Exception) -> None:
        logger.warning(
            f"Cannot decode message on {message.topic}: {error}",
            extra={"event": "decode_failed", "topic": message.topic, "message_id": message.message_id},
        )

    def on_handle_failure(self, message: BrokerMessage, error: Exception) -> None:
        logger.error(
            f"Sample handling failed: {error}",
            extra={
                "event": "handle_failed",
                "topic": message.topic,
                "message_id": message.message_id,
                "error_type": type(error).__name__,
            },
        )

    def on_ack(self, message: BrokerMessage) -> None:
        logger.debug("Message acknowledged", extra={"event": "message_acked", "message_id": message.message_id})

    def on_nack(self, message: BrokerMessage) -> None:
        logger.info(
            "Message negatively acknowledged",
            extra={"event": "message_nacked", "message_id": message.message_id},
        )


class ConsumerStats:
    """
    Thread-safe counters of consumer transitions.

    Read by the control plane's status command while the loop runs.
    """

    def __init__(self):
        self._lock = Lock()
        self._counts: Dict[str, int] = {
            "received": 0,
            "receive_errors": 0,
            "decode_failures": 0,
            "handle_failures": 0,
            "acked": 0,
            "nacked": 0,
        }

    def _incr(self, key: str) -> None:
        with self._lock:
            self._counts[key] += 1

    def on_receive(self, message: BrokerMessage) -> None:
        self._incr("received")

    def on_receive_error(self, error: Exception, attempt: int) -> None:
        self._incr("receive_errors")

    def on_decode_failure(self, message: BrokerMessage, error: Exception) -> None:
        self._incr("decode_failures")

    def on_handle_failure(self, message: BrokerMessage, error: Exception) -> None:
        self._incr("handle_failures")

    def on_ack(self, message: BrokerMessage) -> None:
        self._incr("acked")

    def on_nack(self, message: BrokerMessage) -> None:
        self._incr("nacked")

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counts)
