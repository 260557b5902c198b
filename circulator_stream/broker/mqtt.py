"""
MQTT Broker Binding
===================

paho-mqtt (MQTT v5) implementation of the broker protocols.

- One client per connection, shared by the consumer and all producers
- Manual acknowledgment: ack sends the PUBACK for the delivery
- Negative acknowledgment is client-side: the message is queued again
  for this consumer after nack_redelivery_delay seconds
- Message properties travel as MQTT v5 user properties; the message key
  is the "key" user property
"""

import logging
import queue
import threading
from typing import Callable, Dict, List, Optional

import paho.mqtt.client as mqtt
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.properties import Properties

from circulator_stream.interfaces import (
    BrokerError,
    BrokerMessage,
    ConnectError,
    SubscribeError,
)
from circulator_stream.logging_utils import get_component_logger
from circulator_stream.processor.config import BrokerConfig, SubscriptionType

logger = get_component_logger(__name__, "mqtt_broker")

KEY_PROPERTY = "key"


def subscription_filter(topic: str, subscription_name: str,
                        subscription_type: SubscriptionType) -> str:
    """
    Topic filter realising a subscription type on MQTT v5.

    Shared and key-shared subscriptions use MQTT shared subscriptions, so
    consumers with the same subscription name split the topic. Exclusive and
    failover subscriptions use a plain filter.

    Examples:
        >>> subscription_filter("external-sensor-data", "agent-processor", SubscriptionType.SHARED)
        '$share/agent-processor/external-sensor-data'
        >>> subscription_filter("external-sensor-data", "agent-processor", SubscriptionType.EXCLUSIVE)
        'external-sensor-data'
    """
    if subscription_type in (SubscriptionType.SHARED, SubscriptionType.KEY_SHARED):
        return f"$share/{subscription_name}/{topic}"
    return topic


def _user_properties(message: mqtt.MQTTMessage) -> Dict[str, str]:
    props = getattr(message, "properties", None)
    pairs = getattr(props, "UserProperty", None) or []
    return {str(k): str(v) for k, v in pairs}


class MQTTConsumer:
    """
    Subscription on one topic, fed by the connection's network thread.

    Args:
        client: Connected paho client
        topic: Plain topic (without $share prefix)
        redelivery_delay: Seconds before a nacked message is queued again
        is_connected: Callable reporting the connection state
    """

    def __init__(
        self,
        client: mqtt.Client,
        topic: str,
        redelivery_delay: float,
        is_connected: Callable[[], bool],
    ):
        self.client = client
        self.topic = topic
        self.redelivery_delay = redelivery_delay
        self._is_connected = is_connected
        self._queue: "queue.Queue[BrokerMessage]" = queue.Queue()
        self._timers: List[threading.Timer] = []
        self._timers_lock = threading.Lock()
        self._closed = False

    def deliver(self, message: BrokerMessage) -> None:
        if not self._closed:
            self._queue.put(message)

    def receive(self, timeout: float) -> Optional[BrokerMessage]:
        if self._closed:
            raise BrokerError(f"Consumer for {self.topic} is closed")

        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            if not self._is_connected():
                raise BrokerError("MQTT connection lost") from None
            return None

    def ack(self, message: BrokerMessage) -> None:
        if message.qos > 0:
            rc = self.client.ack(message.message_id, message.qos)
            if rc not in (None, mqtt.MQTT_ERR_SUCCESS):
                raise BrokerError(f"Ack failed: {mqtt.error_string(rc)}")

    def nack(self, message: BrokerMessage) -> None:
        redelivery = BrokerMessage(
            topic=message.topic,
            payload=message.payload,
            properties=dict(message.properties),
            message_id=message.message_id,
            qos=message.qos,
            redelivery_count=message.redelivery_count + 1,
        )
        timer = threading.Timer(self.redelivery_delay, self._redeliver, args=(redelivery,))
        timer.daemon = True
        with self._timers_lock:
            self._timers = [t for t in self._timers if t.is_alive()]
            self._timers.append(timer)
        timer.start()

    def _redeliver(self, message: BrokerMessage) -> None:
        logger.debug(
            f"Redelivering message on {message.topic}",
            extra={"event": "message_redelivered", "redelivery_count": message.redelivery_count},
        )
        self.deliver(message)

    def close(self) -> None:
        self._closed = True
        with self._timers_lock:
            for timer in self._timers:
                timer.cancel()
            self._timers.clear()


class MQTTProducer:
    """Producer bound to one topic on a shared paho client."""

    def __init__(self, client: mqtt.Client, topic: str, qos: int, send_timeout: float):
        self.client = client
        self.topic = topic
        self.qos = qos
        self.send_timeout = send_timeout
        self._closed = False

    def send(self, payload: bytes, key: Optional[str] = None,
             properties: Optional[Dict[str, str]] = None) -> None:
        if self._closed:
            raise BrokerError(f"Producer for {self.topic} is closed")

        props = Properties(PacketTypes.PUBLISH)
        user_properties = [(k, v) for k, v in (properties or {}).items()]
        if key is not None:
            user_properties.append((KEY_PROPERTY, key))
        if user_properties:
            props.UserProperty = user_properties

        info = self.client.publish(self.topic, payload, qos=self.qos, properties=props)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise BrokerError(f"Publish to {self.topic} failed: {mqtt.error_string(info.rc)}")

        try:
            info.wait_for_publish(timeout=self.send_timeout)
        except (RuntimeError, ValueError) as e:
            raise BrokerError(f"Publish to {self.topic} failed: {e}") from e

        if not info.is_published():
            raise BrokerError(f"Publish to {self.topic} timed out after {self.send_timeout}s")

    def close(self) -> None:
        self._closed = True


class MQTTBrokerConnection:
    """
    MQTT v5 connection implementing the BrokerConnection protocol.

    Args:
        config: BrokerConfig (URL, timeouts, credentials)
        client_id: MQTT client id
        nack_redelivery_delay: Seconds before nacked messages are redelivered
        producer_qos: QoS for producers created on this connection
        send_timeout: Seconds a producer waits for publish completion
        client_factory: Builds the paho client (injected in tests)

    Example:
        >>> conn = MQTTBrokerConnection(BrokerConfig(url="mqtt://localhost:1883"), "agent-1")
        >>> conn.connect()
        >>> consumer = conn.subscribe("external-sensor-data", "agent-processor", "shared")
        >>> producer = conn.create_producer("processed-sensor-data")
    """

    def __init__(
        self,
        config: BrokerConfig,
        client_id: str,
        nack_redelivery_delay: float = 60.0,
        producer_qos: int = 1,
        send_timeout: float = 30.0,
        client_factory: Optional[Callable[[], mqtt.Client]] = None,
    ):
        self.config = config
        self.client_id = client_id
        self.nack_redelivery_delay = nack_redelivery_delay
        self.producer_qos = producer_qos
        self.send_timeout = send_timeout
        self._client_factory = client_factory or self._default_client

        self.client: Optional[mqtt.Client] = None
        self._connected = threading.Event()
        self._connect_error: Optional[str] = None
        self._consumers: Dict[str, MQTTConsumer] = {}
        self._pending_subscriptions: Dict[int, threading.Event] = {}
        self._subscription_results: Dict[int, list] = {}
        self._active_filters: Dict[str, str] = {}
        self._resubscriptions: Dict[int, str] = {}
        self._lock = threading.Lock()

    def _default_client(self) -> mqtt.Client:
        return mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            protocol=mqtt.MQTTv5,
            manual_ack=True,
        )

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def connect(self) -> None:
        self.client = self._client_factory()
        if self.config.username:
            self.client.username_pw_set(self.config.username, self.config.password)

        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_subscribe = self._on_subscribe
        self.client.on_message = self._on_message

        logger.info(
            f"Connecting to MQTT broker at {self.config.host}:{self.config.port}",
            extra={"event": "broker_connection_start", "broker_url": self.config.url},
        )

        try:
            self.client.connect(self.config.host, self.config.port, keepalive=60)
        except (OSError, ValueError) as e:
            raise ConnectError(f"Cannot connect to {self.config.url}: {e}") from e

        self.client.loop_start()

        if not self._connected.wait(timeout=self.config.connection_timeout):
            self.client.loop_stop()
            reason = self._connect_error or f"no CONNACK within {self.config.connection_timeout}s"
            raise ConnectError(f"Cannot connect to {self.config.url}: {reason}")

    def is_connected(self) -> bool:
        return self._connected.is_set()

    def subscribe(self, topic: str, subscription_name: str,
                  subscription_type: str) -> MQTTConsumer:
        if self.client is None:
            raise SubscribeError("Not connected")

        sub_type = SubscriptionType.parse(subscription_type)
        topic_filter = subscription_filter(topic, subscription_name, sub_type)
        consumer = MQTTConsumer(
            self.client, topic, self.nack_redelivery_delay, self.is_connected
        )

        done = threading.Event()
        with self._lock:
            self._consumers[topic] = consumer

        result, mid = self.client.subscribe(topic_filter, qos=1)
        if result != mqtt.MQTT_ERR_SUCCESS:
            self._drop_subscription(topic, mid)
            raise SubscribeError(
                f"Subscribe to {topic_filter} failed: {mqtt.error_string(result)}"
            )

        # SUBACK may already have been handled by the network thread
        with self._lock:
            if mid in self._subscription_results:
                done.set()
            else:
                self._pending_subscriptions[mid] = done

        if not done.wait(timeout=self.config.operation_timeout):
            self._drop_subscription(topic, mid)
            raise SubscribeError(
                f"Subscribe to {topic_filter} not acknowledged within {self.config.operation_timeout}s"
            )

        with self._lock:
            reason_codes = self._subscription_results.pop(mid, [])
        failures = [rc for rc in reason_codes if getattr(rc, "is_failure", False)]
        if failures:
            self._drop_subscription(topic, mid)
            raise SubscribeError(f"Subscribe to {topic_filter} refused: {failures[0]}")

        with self._lock:
            self._active_filters[topic] = topic_filter

        logger.info(
            f"Subscribed to {topic_filter}",
            extra={"event": "subscribed", "topic": topic, "subscription_type": sub_type.value},
        )
        return consumer

    def create_producer(self, topic: str) -> MQTTProducer:
        if self.client is None:
            raise BrokerError("Not connected")
        return MQTTProducer(self.client, topic, self.producer_qos, self.send_timeout)

    def close(self) -> None:
        with self._lock:
            consumers = list(self._consumers.values())
            self._consumers.clear()
            self._active_filters.clear()
        for consumer in consumers:
            consumer.close()

        if self.client is not None:
            self.client.disconnect()
            self.client.loop_stop()
        self._connected.clear()

    def _drop_subscription(self, topic: str, mid: int) -> None:
        with self._lock:
            self._consumers.pop(topic, None)
            self._active_filters.pop(topic, None)
            self._pending_subscriptions.pop(mid, None)
            self._subscription_results.pop(mid, None)

    # ========================================================================
    # paho callbacks (network thread)
    # ========================================================================

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        if getattr(reason_code, "is_failure", False):
            self._connect_error = str(reason_code)
            logger.error(
                "MQTT connection refused",
                extra={"event": "broker_connection_failed", "reason_code": str(reason_code)},
            )
            return

        self._connect_error = None

        # A clean session starts without subscriptions; restore them on reconnect
        with self._lock:
            filters = list(self._active_filters.values())
        for topic_filter in filters:
            self._resubscribe(topic_filter)

        self._connected.set()
        logger.info(
            "MQTT broker connected",
            extra={"event": "broker_connected", "restored_subscriptions": len(filters)},
        )

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties):
        self._connected.clear()
        logger.warning(
            "MQTT broker disconnected",
            extra={"event": "broker_disconnected", "reason_code": str(reason_code)},
        )

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties):
        reason_codes = list(reason_code_list or [])
        with self._lock:
            restored_filter = self._resubscriptions.pop(mid, None)
            done = None
            if restored_filter is None:
                done = self._pending_subscriptions.pop(mid, None)
                self._subscription_results[mid] = reason_codes

        if restored_filter is not None:
            self._log_resubscribe(restored_filter, reason_codes)
        elif done is not None:
            done.set()

    def _resubscribe(self, topic_filter: str) -> None:
        result, mid = self.client.subscribe(topic_filter, qos=1)
        if result != mqtt.MQTT_ERR_SUCCESS:
            logger.error(
                f"Restoring subscription {topic_filter} failed: {mqtt.error_string(result)}",
                extra={"event": "resubscribe_failed", "topic_filter": topic_filter},
            )
            return

        # SUBACK may already have been handled by the network thread
        with self._lock:
            reason_codes = self._subscription_results.pop(mid, None)
            if reason_codes is None:
                self._resubscriptions[mid] = topic_filter
                return
        self._log_resubscribe(topic_filter, reason_codes)

    def _log_resubscribe(self, topic_filter: str, reason_codes: list) -> None:
        failures = [rc for rc in reason_codes if getattr(rc, "is_failure", False)]
        if failures:
            logger.error(
                f"Broker refused restored subscription {topic_filter}: {failures[0]}",
                extra={"event": "resubscribe_refused", "topic_filter": topic_filter},
            )
            return
        logger.info(
            f"Subscription {topic_filter} restored",
            extra={"event": "resubscribed", "topic_filter": topic_filter},
        )

    def _on_message(self, client, userdata, message):
        with self._lock:
            consumers = list(self._consumers.items())

        for topic, consumer in consumers:
            if mqtt.topic_matches_sub(topic, message.topic):
                consumer.deliver(
                    BrokerMessage(
                        topic=message.topic,
                        payload=message.payload,
                        properties=_user_properties(message),
                        message_id=message.mid,
                        qos=message.qos,
                    )
                )
                return

        logger.warning(
            f"Message on unsubscribed topic {message.topic} dropped",
            extra={"event": "message_unrouted", "topic": message.topic},
        )
