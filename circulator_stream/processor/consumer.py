"""
Ingestion Consumer
==================

Receive loop over the external sensor data subscription.

State machine:
    SUBSCRIBED -> RECEIVING -> DECODING -> HANDLING
        -> ACKNOWLEDGING | NEGATIVE_ACKNOWLEDGING -> RECEIVING ...
    terminal: CLOSED

- Decode failure: nack, continue
- Handler failure: nack, continue
- Success: ack
- Receive error: log, back off (bounded exponential), retry
- Cancellation: checked every iteration; receive polls with a bounded
  timeout so a cancel is seen within receive_timeout seconds. A sample
  already received is handled to completion before the loop exits.
"""

from enum import Enum
from threading import Event
from typing import Callable, List, Optional, Sequence

from pydantic import ValidationError

from circulator_stream.events.schema import IncomingSample
from circulator_stream.interfaces import (
    BrokerConsumer,
    BrokerError,
    BrokerMessage,
    ConsumerObserver,
)
from circulator_stream.logging_utils import get_component_logger, trace_context
from circulator_stream.processor.observer import ConsumerStats, LoggingObserver

logger = get_component_logger(__name__, "consumer")


class ConsumerCancelled(Exception):
    """Consume loop stopped because its cancel event was set."""
    pass


class ConsumerState(str, Enum):
    SUBSCRIBED = "subscribed"
    RECEIVING = "receiving"
    DECODING = "decoding"
    HANDLING = "handling"
    ACKNOWLEDGING = "acknowledging"
    NEGATIVE_ACKNOWLEDGING = "negative_acknowledging"
    CLOSED = "closed"


class ReceiveBackoff:
    """
    Bounded exponential backoff for consecutive receive failures.

    Args:
        initial: First delay in seconds
        maximum: Upper bound of the delay
        factor: Growth factor per consecutive failure

    Example:
        >>> backoff = ReceiveBackoff(initial=0.1, maximum=1.0)
        >>> [backoff.next_delay() for _ in range(5)]
        [0.1, 0.2, 0.4, 0.8, 1.0]
    """

    def __init__(self, initial: float = 0.1, maximum: float = 5.0, factor: float = 2.0):
        self.initial = initial
        self.maximum = maximum
        self.factor = factor
        self.attempts = 0

    def next_delay(self) -> float:
        delay = min(self.initial * (self.factor ** self.attempts), self.maximum)
        self.attempts += 1
        return delay

    def reset(self) -> None:
        self.attempts = 0


SampleHandlerFn = Callable[[IncomingSample], None]


class IngestionConsumer:
    """
    Sequential consume loop: one in-flight sample at a time.

    Args:
        consumer: Subscription to read from
        handler: Callable processing one decoded sample; any exception fails it
        observers: Notified at each transition (default: LoggingObserver + ConsumerStats)
        receive_timeout: Poll interval of each receive call
        backoff: ReceiveBackoff for consecutive receive failures

    Usage:
        >>> loop = IngestionConsumer(consumer, handler)
        >>> cancel = threading.Event()
        >>> loop.consume(cancel)  # raises ConsumerCancelled once cancel is set
    """

    def __init__(
        self,
        consumer: BrokerConsumer,
        handler: SampleHandlerFn,
        observers: Optional[Sequence[ConsumerObserver]] = None,
        receive_timeout: float = 1.0,
        backoff: Optional[ReceiveBackoff] = None,
    ):
        self.consumer = consumer
        self.handler = handler
        self.receive_timeout = receive_timeout
        self.backoff = backoff or ReceiveBackoff()

        if observers is None:
            self.stats = ConsumerStats()
            observers = [LoggingObserver(), self.stats]
        else:
            self.stats = next((o for o in observers if isinstance(o, ConsumerStats)), None)
        self.observers: List[ConsumerObserver] = list(observers)

        self.state = ConsumerState.SUBSCRIBED

    def consume(self, cancel: Event) -> None:
        """
        Run until cancel is set.

        Raises:
            ConsumerCancelled: Always, once the loop exits on cancellation
        """
        logger.info("Consume loop started", extra={"event": "consume_started"})

        while not cancel.is_set():
            self.state = ConsumerState.RECEIVING
            try:
                message = self.consumer.receive(self.receive_timeout)
            except BrokerError as e:
                attempt = self.backoff.attempts + 1
                self._notify("on_receive_error", e, attempt)
                cancel.wait(self.backoff.next_delay())
                continue

            self.backoff.reset()
            if message is None:
                continue

            self._process(message)

        self.state = ConsumerState.CLOSED
        logger.info("Consume loop cancelled", extra={"event": "consume_cancelled"})
        raise ConsumerCancelled("Consume loop cancelled")

    def _process(self, message: BrokerMessage) -> None:
        self._notify("on_receive", message)

        self.state = ConsumerState.DECODING
        try:
            sample = IncomingSample.model_validate_json(message.payload)
        except ValidationError as e:
            self._notify("on_decode_failure", message, e)
            self._nack(message)
            return

        self.state = ConsumerState.HANDLING
        with trace_context(f"sample-{sample.uuid}"):
            try:
                self.handler(sample)
            except Exception as e:
                self._notify("on_handle_failure", message, e)
                self._nack(message)
                return

            self._ack(message)

    def _ack(self, message: BrokerMessage) -> None:
        self.state = ConsumerState.ACKNOWLEDGING
        try:
            self.consumer.ack(message)
        except BrokerError as e:
            logger.error(
                f"Ack failed: {e}",
                extra={"event": "ack_failed", "message_id": message.message_id},
            )
            return
        self._notify("on_ack", message)

    def _nack(self, message: BrokerMessage) -> None:
        self.state = ConsumerState.NEGATIVE_ACKNOWLEDGING
        try:
            self.consumer.nack(message)
        except BrokerError as e:
            logger.error(
                f"Nack failed: {e}",
                extra={"event": "nack_failed", "message_id": message.message_id},
            )
            return
        self._notify("on_nack", message)

    def _notify(self, hook: str, *args) -> None:
        for observer in self.observers:
            try:
                getattr(observer, hook)(*args)
            except Exception as e:
                logger.error(
                    f"Observer {type(observer).__name__}.{hook} failed: {e}",
                    extra={"event": "observer_failed", "hook": hook},
                )
