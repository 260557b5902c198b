"""
Pipeline Configuration
======================

Configuration dataclasses for the stream pipeline.

- Validation in __post_init__()
- Loading from the YAML layout used by agent deployments (from_yaml)
- Behavior methods (to_status_dict) for status publishing
"""

import uuid
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union
from urllib.parse import urlparse

import yaml

from circulator_stream.events import protocol
from circulator_stream.rules.anomaly import AnomalyPolicy


class ConfigValidationError(ValueError):
    """Error in configuration validation."""
    pass


class SubscriptionType(str, Enum):
    """How consumers sharing one subscription name split the input topic"""

    SHARED = "shared"
    EXCLUSIVE = "exclusive"
    FAILOVER = "failover"
    KEY_SHARED = "key_shared"

    @classmethod
    def parse(cls, value: Union[str, "SubscriptionType"]) -> "SubscriptionType":
        """
        Parse a subscription type, accepting the CamelCase spellings
        (Shared, KeyShared, ...) found in older agent configs.

        Examples:
            >>> SubscriptionType.parse("KeyShared")
            <SubscriptionType.KEY_SHARED: 'key_shared'>
        """
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower().replace("-", "_")
        if normalized == "keyshared":
            normalized = "key_shared"
        try:
            return cls(normalized)
        except ValueError:
            valid = ", ".join(t.value for t in cls)
            raise ConfigValidationError(
                f"Invalid subscription type: {value!r} (expected one of {valid})"
            ) from None


@dataclass
class TopicConfig:
    """Logical topic names"""

    external_sensor_data: str = protocol.EXTERNAL_SENSOR_DATA
    processed_sensor_data: str = protocol.PROCESSED_SENSOR_DATA
    system_metrics: str = protocol.SYSTEM_METRICS
    alert_data: str = protocol.ALERT_DATA
    processing_results: str = protocol.PROCESSING_RESULTS


@dataclass
class BrokerConfig:
    """Broker connection settings"""

    url: str = "mqtt://localhost:1883"
    """Broker URL (mqtt://host:port)"""

    connection_timeout: float = 10.0
    """Seconds to wait for the connection handshake"""

    operation_timeout: float = 5.0
    """Seconds to wait for subscribe acknowledgment"""

    username: Optional[str] = None
    password: Optional[str] = None

    client_id: Optional[str] = None
    """MQTT client id (default: derived from the agent UUID)"""

    @property
    def host(self) -> str:
        return urlparse(self.url).hostname or "localhost"

    @property
    def port(self) -> int:
        return urlparse(self.url).port or 1883


@dataclass
class ConsumerConfig:
    """Input subscription settings"""

    subscription_name: str = "agent-processor"
    subscription_type: SubscriptionType = SubscriptionType.SHARED

    receive_timeout: float = 1.0
    """Poll interval of the receive call (bounds cancellation latency)"""

    nack_redelivery_delay: float = 60.0
    """Seconds before a negatively acknowledged message is delivered again"""

    backoff_initial: float = 0.1
    """First wait after a failed receive"""

    backoff_max: float = 5.0
    """Upper bound for the receive backoff"""


@dataclass
class ProducerConfig:
    """Output producer settings"""

    send_timeout: float = 30.0
    """Seconds to wait for the broker to accept a message"""

    qos: int = 1


@dataclass
class PipelineConfig:
    """Configuration for one agent's stream processing pipeline"""

    agent_uuid: str = field(default_factory=lambda: str(uuid.uuid4()))
    """Agent whose rules are applied to every consumed sample"""

    broker: BrokerConfig = field(default_factory=BrokerConfig)
    topics: TopicConfig = field(default_factory=TopicConfig)
    consumer: ConsumerConfig = field(default_factory=ConsumerConfig)
    producer: ProducerConfig = field(default_factory=ProducerConfig)

    # Configuration store
    config_store_url: str = "http://localhost:8080"
    """Base URL of the configuration store HTTP API"""

    config_store_timeout: float = 5.0
    """HTTP timeout for configuration lookups"""

    config_cache_ttl: float = 0.0
    """Seconds a fetched configuration is reused (0 = fetch per sample)"""

    fail_closed: bool = False
    """Fail the sample (nack) instead of using the default configuration"""

    register_on_start: bool = False
    """Register the agent with the configuration store before consuming"""

    # Anomaly policy
    anomaly_policy: AnomalyPolicy = field(default_factory=AnomalyPolicy)

    # Metrics Reporting
    metrics_reporting_interval: int = 30
    """Seconds between system metrics samples (0 = disabled)"""

    # Control Plane
    enable_control_plane: bool = False
    control_command_topic: str = "circulator/control/commands"
    control_status_topic: str = "circulator/control/status"

    def __post_init__(self):
        self.consumer.subscription_type = SubscriptionType.parse(
            self.consumer.subscription_type
        )
        self._validate()

    def _validate(self):
        """
        Validate configuration values.

        Raises:
            ConfigValidationError: If any validation fails
        """
        if not self.agent_uuid or not self.agent_uuid.strip():
            raise ConfigValidationError("agent_uuid cannot be empty")

        parsed = urlparse(self.broker.url)
        if parsed.scheme not in ("mqtt", "tcp") or not parsed.hostname:
            raise ConfigValidationError(f"Invalid broker URL: {self.broker.url}")
        try:
            port = parsed.port
        except ValueError:
            raise ConfigValidationError(f"Invalid broker port in URL: {self.broker.url}") from None
        if port is not None and not (1 <= port <= 65535):
            raise ConfigValidationError(f"Invalid broker port: {port}")

        if not self._is_valid_http_url(self.config_store_url):
            raise ConfigValidationError(f"Invalid config store URL: {self.config_store_url}")

        for name in ("connection_timeout", "operation_timeout"):
            if getattr(self.broker, name) <= 0:
                raise ConfigValidationError(f"broker.{name} must be > 0")

        if self.consumer.receive_timeout <= 0:
            raise ConfigValidationError("consumer.receive_timeout must be > 0")

        if self.consumer.nack_redelivery_delay < 0:
            raise ConfigValidationError("consumer.nack_redelivery_delay cannot be negative")

        if not (0 < self.consumer.backoff_initial <= self.consumer.backoff_max):
            raise ConfigValidationError(
                "consumer backoff must satisfy 0 < backoff_initial <= backoff_max"
            )

        if self.producer.send_timeout <= 0:
            raise ConfigValidationError("producer.send_timeout must be > 0")

        if self.producer.qos not in (0, 1, 2):
            raise ConfigValidationError(f"Invalid producer QoS: {self.producer.qos}")

        if self.config_store_timeout <= 0:
            raise ConfigValidationError("config_store_timeout must be > 0")

        if self.config_cache_ttl < 0:
            raise ConfigValidationError("config_cache_ttl cannot be negative")

        if self.metrics_reporting_interval < 0:
            raise ConfigValidationError(
                f"metrics_reporting_interval cannot be negative, got {self.metrics_reporting_interval}"
            )

        for f in fields(self.topics):
            if not getattr(self.topics, f.name):
                raise ConfigValidationError(f"Topic name '{f.name}' cannot be empty")

    @staticmethod
    def _is_valid_http_url(url: str) -> bool:
        result = urlparse(url)
        return result.scheme in ("http", "https") and bool(result.netloc)

    # ========================================================================
    # Loading
    # ========================================================================

    @classmethod
    def from_dict(cls, data: Dict[str, Any], **overrides) -> "PipelineConfig":
        """
        Build a config from the nested agent config layout.

        Layout:
            agent: {uuid, config_store_url, config_store_timeout, config_cache_ttl,
                    fail_closed, register_on_start, metrics_reporting_interval}
            broker: {url, connection_timeout, operation_timeout, username, password, client_id}
            topics: {external_sensor_data, processed_sensor_data, ...}
            consumer: {subscription_name, type, receive_timeout, nack_redelivery_delay, ...}
            producer: {send_timeout, qos}
            anomaly: {midpoint, sigma_multiplier, default_lower, default_upper, ...}
            control: {enabled, command_topic, status_topic}

        Args:
            data: Parsed YAML/JSON mapping
            **overrides: Top-level PipelineConfig fields taking precedence

        Raises:
            ConfigValidationError: Unknown keys or invalid values
        """
        data = data or {}
        agent = dict(data.get("agent") or {})
        consumer = dict(data.get("consumer") or {})
        if "type" in consumer:
            consumer["subscription_type"] = consumer.pop("type")
        control = dict(data.get("control") or {})

        kwargs: Dict[str, Any] = {
            "broker": _build(BrokerConfig, data.get("broker"), "broker"),
            "topics": _build(TopicConfig, data.get("topics"), "topics"),
            "consumer": _build(ConsumerConfig, consumer, "consumer"),
            "producer": _build(ProducerConfig, data.get("producer"), "producer"),
            "anomaly_policy": _build(AnomalyPolicy, data.get("anomaly"), "anomaly"),
        }

        if "uuid" in agent:
            kwargs["agent_uuid"] = agent.pop("uuid")
        for key in (
            "config_store_url",
            "config_store_timeout",
            "config_cache_ttl",
            "fail_closed",
            "register_on_start",
            "metrics_reporting_interval",
        ):
            if key in agent:
                kwargs[key] = agent.pop(key)
        if agent:
            raise ConfigValidationError(f"Unknown agent settings: {sorted(agent)}")

        if "enabled" in control:
            kwargs["enable_control_plane"] = control.pop("enabled")
        if "command_topic" in control:
            kwargs["control_command_topic"] = control.pop("command_topic")
        if "status_topic" in control:
            kwargs["control_status_topic"] = control.pop("status_topic")
        if control:
            raise ConfigValidationError(f"Unknown control settings: {sorted(control)}")

        kwargs.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**kwargs)

    @staticmethod
    def read_yaml(path: Union[str, Path]) -> Dict[str, Any]:
        """
        Read the raw config mapping from a YAML file.

        Raises:
            ConfigValidationError: File unreadable or not a mapping
        """
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigValidationError(f"Cannot load config file {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigValidationError(f"Config file {path} must contain a mapping")

        return data

    @classmethod
    def from_yaml(cls, path: Union[str, Path], **overrides) -> "PipelineConfig":
        """
        Load a config file.

        Raises:
            ConfigValidationError: File unreadable or invalid
        """
        return cls.from_dict(cls.read_yaml(path), **overrides)

    # ========================================================================
    # Behavior: Serialization for Status Publishing
    # ========================================================================

    def to_status_dict(self) -> dict:
        """
        Serialize config for status publishing.

        Omits credentials.
        """
        return {
            "agent_uuid": self.agent_uuid,
            "broker_url": self.broker.url,
            "topics": {f.name: getattr(self.topics, f.name) for f in fields(self.topics)},
            "subscription_name": self.consumer.subscription_name,
            "subscription_type": self.consumer.subscription_type.value,
            "config_store_url": self.config_store_url,
            "config_cache_ttl": self.config_cache_ttl,
            "fail_closed": self.fail_closed,
            "metrics_reporting_interval": self.metrics_reporting_interval,
            "enable_control_plane": self.enable_control_plane,
        }


def _build(cls, section: Optional[Dict[str, Any]], name: str):
    section = dict(section or {})
    known = {f.name for f in fields(cls)}
    unknown = set(section) - known
    if unknown:
        raise ConfigValidationError(f"Unknown {name} settings: {sorted(unknown)}")
    try:
        return cls(**section)
    except (TypeError, ValueError) as e:
        raise ConfigValidationError(f"Invalid {name} settings: {e}") from e
