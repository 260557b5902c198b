"""
Pipeline Coordinator
====================

Wires one agent's pipeline against one broker connection and owns its
lifecycle:

    start(cancel) -> connect, subscribe, create producers, start metrics
                     reporter and control plane, consume until cancelled
    stop()        -> set the cancel event
    close()       -> release consumer, producers and connection in that
                     order, continuing past failures

Connect and subscribe failures propagate out of start().
"""

import signal
import threading
import time
from typing import Callable, List, Optional

from circulator_stream.interfaces import (
    BrokerConnection,
    BrokerConsumer,
    RuleConfigSource,
    SystemProbe,
)
from circulator_stream.logging_utils import bind_agent_uuid, get_component_logger
from circulator_stream.processor.command_handlers import CommandHandlers
from circulator_stream.processor.config import PipelineConfig
from circulator_stream.processor.config_provider import (
    CachingRuleConfigProvider,
    HTTPRuleConfigProvider,
)
from circulator_stream.processor.consumer import (
    ConsumerCancelled,
    IngestionConsumer,
    ReceiveBackoff,
)
from circulator_stream.processor.control_plane import MQTTControlPlane
from circulator_stream.processor.handler import SampleHandler
from circulator_stream.processor.metrics_reporter import MetricsReporter, PsutilProbe
from circulator_stream.processor.publisher import OutboundPublisher
from circulator_stream.processor.registration import AgentRegistrar
from circulator_stream.rules.anomaly import AnomalyDetector
from circulator_stream.rules.transform import TransformEngine

logger = get_component_logger(__name__, "coordinator")

ConnectionFactory = Callable[[PipelineConfig], BrokerConnection]
ControlPlaneFactory = Callable[[PipelineConfig], MQTTControlPlane]


def mqtt_connection_factory(config: PipelineConfig) -> BrokerConnection:
    """Default broker binding: one MQTT v5 connection per pipeline."""
    from circulator_stream.broker.mqtt import MQTTBrokerConnection

    return MQTTBrokerConnection(
        config.broker,
        client_id=config.broker.client_id or f"circulator-{config.agent_uuid}",
        nack_redelivery_delay=config.consumer.nack_redelivery_delay,
        producer_qos=config.producer.qos,
        send_timeout=config.producer.send_timeout,
    )


def mqtt_control_plane_factory(config: PipelineConfig) -> MQTTControlPlane:
    return MQTTControlPlane(
        broker_host=config.broker.host,
        broker_port=config.broker.port,
        command_topic=config.control_command_topic,
        status_topic=config.control_status_topic,
        instance_id=config.agent_uuid,
        client_id=f"circulator-control-{config.agent_uuid}",
        username=config.broker.username,
        password=config.broker.password,
    )


class PipelineCoordinator:
    """
    One pipeline per agent process.

    Args:
        config: PipelineConfig
        connection_factory: Builds the broker connection (default: MQTT)
        provider: Rule configuration lookup (default: HTTP store behind a TTL cache)
        probe: SystemProbe for metrics (default: PsutilProbe)
        control_plane_factory: Builds the control plane when enabled
        registrar: AgentRegistrar used when register_on_start is set

    Usage:
        >>> coordinator = PipelineCoordinator(PipelineConfig.from_yaml("agent.yaml"))
        >>> coordinator.install_signal_handlers()
        >>> try:
        ...     coordinator.start()  # Blocks until stop() or a signal
        ... finally:
        ...     coordinator.close()
    """

    def __init__(
        self,
        config: PipelineConfig,
        connection_factory: Optional[ConnectionFactory] = None,
        provider: Optional[RuleConfigSource] = None,
        probe: Optional[SystemProbe] = None,
        control_plane_factory: Optional[ControlPlaneFactory] = None,
        registrar: Optional[AgentRegistrar] = None,
    ):
        self.config = config
        self._connection_factory = connection_factory or mqtt_connection_factory
        self._control_plane_factory = control_plane_factory or mqtt_control_plane_factory
        self._probe = probe

        if provider is None:
            provider = CachingRuleConfigProvider(
                HTTPRuleConfigProvider(config.config_store_url, timeout=config.config_store_timeout),
                ttl_seconds=config.config_cache_ttl,
            )
        self.provider = provider
        self.registrar = registrar

        self.connection: Optional[BrokerConnection] = None
        self.consumer: Optional[BrokerConsumer] = None
        self.publisher: Optional[OutboundPublisher] = None
        self.ingestion: Optional[IngestionConsumer] = None
        self.metrics_reporter: Optional[MetricsReporter] = None
        self.control_plane: Optional[MQTTControlPlane] = None

        self._cancel = threading.Event()
        self._start_time: Optional[float] = None
        self.is_running = False

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def start(self, cancel: Optional[threading.Event] = None) -> None:
        """
        Run the pipeline until cancelled.

        Args:
            cancel: External cancel event (default: internal, set by stop())

        Raises:
            BrokerError: Connect or subscribe failed
            RegistrationError: Registration enabled and refused
        """
        if cancel is not None:
            self._cancel = cancel
        self._start_time = time.time()
        bind_agent_uuid(self.config.agent_uuid)

        logger.info(
            "Starting pipeline",
            extra={"event": "pipeline_start", "agent_uuid": self.config.agent_uuid},
        )

        if self.config.register_on_start:
            self._register()

        self.connection = self._connection_factory(self.config)
        self.connection.connect()

        topics = self.config.topics
        self.consumer = self.connection.subscribe(
            topics.external_sensor_data,
            self.config.consumer.subscription_name,
            self.config.consumer.subscription_type.value,
        )

        self.publisher = OutboundPublisher(
            processed=self.connection.create_producer(topics.processed_sensor_data),
            alerts=self.connection.create_producer(topics.alert_data),
            metrics=self.connection.create_producer(topics.system_metrics),
            results=self.connection.create_producer(topics.processing_results),
        )

        handler = SampleHandler(
            agent_uuid=self.config.agent_uuid,
            provider=self.provider,
            publisher=self.publisher,
            engine=TransformEngine(),
            detector=AnomalyDetector(self.config.anomaly_policy),
            fail_closed=self.config.fail_closed,
        )
        self.ingestion = IngestionConsumer(
            self.consumer,
            handler,
            receive_timeout=self.config.consumer.receive_timeout,
            backoff=ReceiveBackoff(
                initial=self.config.consumer.backoff_initial,
                maximum=self.config.consumer.backoff_max,
            ),
        )

        if self.config.metrics_reporting_interval > 0:
            self.metrics_reporter = MetricsReporter(
                self.config.agent_uuid,
                self._probe or PsutilProbe(),
                self.publisher,
                self.config.metrics_reporting_interval,
            )
            self.metrics_reporter.start()

        if self.config.enable_control_plane:
            self._setup_control_plane()

        self.is_running = True
        logger.info(
            "Pipeline running",
            extra={"event": "pipeline_running", "topic": topics.external_sensor_data},
        )
        if self.control_plane:
            self.control_plane.publish_status("running", config=self.config.to_status_dict())

        try:
            self.ingestion.consume(self._cancel)
        except ConsumerCancelled:
            logger.info("Pipeline cancelled", extra={"event": "pipeline_cancelled"})
        finally:
            self.is_running = False

    def stop(self) -> None:
        """Request the consume loop to exit after the in-flight sample."""
        self._cancel.set()

    def close(self) -> List[Exception]:
        """
        Release resources: consumer, producers, then connection.

        Every resource is closed even when an earlier close fails.

        Returns:
            Errors raised while closing (empty on a clean shutdown)
        """
        logger.info("Performing shutdown cleanup", extra={"event": "shutdown_cleanup_start"})
        errors: List[Exception] = []

        if self.metrics_reporter:
            self.metrics_reporter.stop()

        if self.control_plane:
            try:
                self.control_plane.disconnect()
            except Exception as e:
                errors.append(e)
            self.control_plane = None

        if self.consumer:
            try:
                self.consumer.close()
            except Exception as e:
                logger.warning(f"Closing consumer failed: {e}", extra={"event": "consumer_close_failed"})
                errors.append(e)
            self.consumer = None

        if self.publisher:
            errors.extend(self.publisher.close())
            self.publisher = None

        if self.connection:
            try:
                self.connection.close()
            except Exception as e:
                logger.warning(f"Closing connection failed: {e}", extra={"event": "connection_close_failed"})
                errors.append(e)
            self.connection = None

        logger.info(
            "Pipeline stopped",
            extra={"event": "pipeline_stopped", "close_errors": len(errors)},
        )
        return errors

    def install_signal_handlers(self) -> None:
        """SIGINT/SIGTERM stop the consume loop (main thread only)."""
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    # ========================================================================
    # Status (used by command handlers)
    # ========================================================================

    def current_status(self) -> str:
        if self.is_running:
            return "stopping" if self._cancel.is_set() else "running"
        return "stopped"

    def uptime_seconds(self) -> float:
        if self._start_time is None:
            return 0.0
        return time.time() - self._start_time

    def stats_snapshot(self) -> dict:
        if self.ingestion and self.ingestion.stats:
            return self.ingestion.stats.snapshot()
        return {}

    def invalidate_config(self, agent_uuid: Optional[str] = None) -> None:
        invalidate = getattr(self.provider, "invalidate", None)
        if invalidate is None:
            logger.info("Config provider has no cache", extra={"event": "config_cache_absent"})
            return
        invalidate(agent_uuid)

    # ========================================================================
    # Private
    # ========================================================================

    def _register(self) -> None:
        from circulator_stream import __version__

        registrar = self.registrar or AgentRegistrar(
            self.config.config_store_url, timeout=self.config.config_store_timeout
        )
        registrar.register(self.config.agent_uuid, version=__version__)

    def _setup_control_plane(self) -> None:
        control_plane = self._control_plane_factory(self.config)
        handlers = CommandHandlers(self, control_plane)

        registry = control_plane.command_registry
        registry.register("ping", handlers.handle_ping, "Health check / discovery")
        registry.register("status", handlers.handle_status, "Query current status")
        registry.register(
            "invalidate_config", handlers.handle_invalidate_config, "Drop cached rule configurations"
        )
        registry.register("stop", handlers.handle_stop, "Stop consuming and exit")

        if control_plane.connect(timeout=self.config.broker.connection_timeout):
            self.control_plane = control_plane
            logger.info(
                "Control plane ready",
                extra={"event": "control_plane_ready", "command_topic": self.config.control_command_topic},
            )
        else:
            logger.warning(
                "Control plane connection failed, continuing without remote control",
                extra={"event": "control_plane_connection_failed"},
            )

    def _signal_handler(self, signum, frame):
        logger.info(
            f"Received signal {signum}, shutting down...",
            extra={"event": "signal_received", "signal": signum},
        )
        self.stop()
