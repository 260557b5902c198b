"""
Interfaces for Dependency Injection
====================================

Protocols (interfaces) decoupling the pipeline from concrete brokers,
configuration stores and host probes.

This allows:
- Testing with fake implementations (no broker, no HTTP config store)
- Swapping the broker binding (the pipeline only sees these contracts)
- Clear contracts for ack/nack and send semantics

Concrete broker binding: circulator_stream.broker.mqtt (paho-mqtt, MQTT v5)
Test implementations: tests/unit/fakes.py
"""

from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol

from circulator_stream.rules.schema import AgentProcessingConfig


# ============================================================================
# Broker errors
# ============================================================================

class BrokerError(Exception):
    """Transient or fatal broker failure (receive, send, connect)."""
    pass


class ConnectError(BrokerError):
    """Broker connection could not be established."""
    pass


class SubscribeError(BrokerError):
    """Subscription to the input topic failed."""
    pass


# ============================================================================
# Broker contracts
# ============================================================================

@dataclass
class BrokerMessage:
    """
    One delivery of a broker message.

    Attributes:
        topic: Topic the message was delivered on
        payload: Raw message body
        properties: String metadata attached by the producer
        message_id: Broker-specific delivery id (used for ack)
        qos: Delivery quality of service
        redelivery_count: Number of earlier negative acknowledgments
    """

    topic: str
    payload: bytes
    properties: Dict[str, str] = field(default_factory=dict)
    message_id: int = 0
    qos: int = 1
    redelivery_count: int = 0


class BrokerConsumer(Protocol):
    """
    Protocol for a subscription on one topic.

    Concrete implementation: MQTTConsumer
    Test implementation: FakeConsumer
    """

    def receive(self, timeout: float) -> Optional[BrokerMessage]:
        """
        Wait for the next message.

        Args:
            timeout: Maximum wait in seconds

        Returns:
            The next message, or None when the timeout elapsed

        Raises:
            BrokerError: Receive failed (e.g. connection lost)
        """
        ...

    def ack(self, message: BrokerMessage) -> None:
        """Remove the message from the subscription's pending set."""
        ...

    def nack(self, message: BrokerMessage) -> None:
        """Reject the message; it will be delivered again later."""
        ...

    def close(self) -> None:
        ...


class BrokerProducer(Protocol):
    """
    Protocol for a producer bound to one topic.

    Concrete implementation: MQTTProducer
    Test implementation: FakeProducer
    """

    topic: str

    def send(self, payload: bytes, key: Optional[str] = None,
             properties: Optional[Dict[str, str]] = None) -> None:
        """
        Send one message and wait for the broker to accept it.

        Raises:
            BrokerError: Send failed or timed out
        """
        ...

    def close(self) -> None:
        ...


class BrokerConnection(Protocol):
    """
    Protocol for a broker connection owning consumers and producers.

    Concrete implementation: MQTTBrokerConnection
    Test implementation: FakeBrokerConnection
    """

    def connect(self) -> None:
        """
        Raises:
            ConnectError: Connection failed or timed out
        """
        ...

    def subscribe(self, topic: str, subscription_name: str,
                  subscription_type: str) -> BrokerConsumer:
        """
        Raises:
            SubscribeError: Subscription was refused
        """
        ...

    def create_producer(self, topic: str) -> BrokerProducer:
        ...

    def close(self) -> None:
        ...


# ============================================================================
# Collaborators
# ============================================================================

class RuleConfigSource(Protocol):
    """
    Protocol for the configuration store lookup.

    Concrete implementations: HTTPRuleConfigProvider, CachingRuleConfigProvider
    Test implementation: FakeConfigProvider
    """

    def get_config(self, agent_uuid: str) -> AgentProcessingConfig:
        """
        Raises:
            ConfigNotFoundError: Store has no configuration for the agent
            ConfigFetchError: Store could not be reached or answered badly
        """
        ...


class SystemProbe(Protocol):
    """
    Protocol for host resource usage.

    Concrete implementation: PsutilProbe
    Test implementation: FakeProbe
    """

    def cpu_percent(self) -> float:
        ...

    def memory_percent(self) -> float:
        ...

    def disk_percent(self) -> float:
        ...


class ConsumerObserver(Protocol):
    """
    Protocol notified at each consumer state transition.

    Concrete implementations: LoggingObserver, ConsumerStats
    """

    def on_receive(self, message: BrokerMessage) -> None:
        ...

    def on_receive_error(self, error: Exception, attempt: int) -> None:
        ...

    def on_decode_failure(self, message: BrokerMessage, error: Exception) -> None:
        ...

    def on_handle_failure(self, message: BrokerMessage, error: Exception) -> None:
        ...

    def on_ack(self, message: BrokerMessage) -> None:
        ...

    def on_nack(self, message: BrokerMessage) -> None:
        ...
