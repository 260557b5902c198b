"""
MQTT Control Plane
==================

Remote commands for a running agent, on a dedicated MQTT client so that
control traffic never queues behind sensor data.

Wire format (JSON):

    command   -> {control_topic}
                 {"command": "status", "params": {}, "target_instances": ["<agent_uuid>"]}
    ack       -> {status_topic}/{agent_uuid}/ack
                 {"command", "ack_status": received|completed|error, "message"?, ...}
    status    -> {status_topic}/{agent_uuid}   (retained; "offline" as last will)
"""

import inspect
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import paho.mqtt.client as mqtt
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from circulator_stream.events.protocol import utc_now
from circulator_stream.logging_utils import get_component_logger, trace_context

logger = get_component_logger(__name__, "control_plane")

BROADCAST = "*"


class CommandNotAvailableError(Exception):
    """No handler is registered under the requested command name."""
    pass


# ============================================================================
# Wire models
# ============================================================================

class ControlCommand(BaseModel):
    model_config = ConfigDict(extra="ignore")

    command: str
    params: Dict[str, Any] = Field(default_factory=dict)
    target_instances: List[str] = Field(default_factory=lambda: [BROADCAST])

    @field_validator("command")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("params", mode="before")
    @classmethod
    def _none_is_empty(cls, value):
        return value if value is not None else {}

    def targets(self, instance_id: str) -> bool:
        if not self.target_instances:
            return True
        return BROADCAST in self.target_instances or instance_id in self.target_instances


class CommandAck(BaseModel):
    instance_id: str
    command: str
    ack_status: str
    message: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)


class StatusReport(BaseModel):
    model_config = ConfigDict(extra="allow")

    instance_id: str
    status: str
    timestamp: datetime = Field(default_factory=utc_now)


# ============================================================================
# Command registry
# ============================================================================

@dataclass(frozen=True)
class _Command:
    handler: Callable
    description: str
    takes_params: bool


class CommandRegistry:
    """
    Command name -> handler.

    A handler declaring a parameter receives the command's params dict;
    one declaring none is called bare.

    Usage:
        registry = CommandRegistry()
        registry.register("stop", coordinator.stop, "Stop consuming")
        registry.execute("stop")
    """

    def __init__(self):
        self._commands: Dict[str, _Command] = {}

    def register(self, command: str, handler: Callable, description: str = "") -> None:
        if command in self._commands:
            logger.warning(
                f"Command '{command}' registered twice, keeping the latest handler",
                extra={"event": "command_overwritten", "command": command},
            )
        self._commands[command] = _Command(
            handler=handler,
            description=description,
            takes_params=bool(inspect.signature(handler).parameters),
        )

    def execute(self, command: str, params: Optional[dict] = None):
        """
        Raises:
            CommandNotAvailableError: Unknown command
            ValueError: Raised by the handler for invalid params
        """
        entry = self._commands.get(command)
        if entry is None:
            raise CommandNotAvailableError(
                f"Command '{command}' not available. Available: {', '.join(sorted(self._commands))}"
            )
        if entry.takes_params:
            return entry.handler(params or {})
        return entry.handler()

    def is_available(self, command: str) -> bool:
        return command in self._commands

    @property
    def available_commands(self):
        return set(self._commands)

    def get_help(self) -> Dict[str, str]:
        return {name: entry.description for name, entry in self._commands.items()}


# ============================================================================
# MQTT binding
# ============================================================================

class MQTTControlPlane:
    """
    Args:
        broker_host: MQTT broker hostname
        broker_port: MQTT broker port
        command_topic: Topic commands arrive on
        status_topic: Prefix of the per-instance status and ack topics
        instance_id: Agent UUID this plane answers for
        client_id: MQTT client id
        username: MQTT username (optional)
        password: MQTT password (optional)
        client_factory: Builds the paho client (tests inject a mock)
    """

    def __init__(
        self,
        broker_host: str,
        broker_port: int = 1883,
        command_topic: str = "circulator/control/commands",
        status_topic: str = "circulator/control/status",
        instance_id: str = "agent-default",
        client_id: str = "circulator-control",
        username: Optional[str] = None,
        password: Optional[str] = None,
        client_factory: Optional[Callable[[], mqtt.Client]] = None,
    ):
        self.broker_host = broker_host
        self.broker_port = broker_port
        self.command_topic = command_topic
        self.status_topic = f"{status_topic}/{instance_id}"
        self.ack_topic = f"{self.status_topic}/ack"
        self.instance_id = instance_id
        self.client_id = client_id

        self.command_registry = CommandRegistry()
        self._connected = threading.Event()
        self._loop_started = False

        if client_factory is not None:
            self.client = client_factory()
        else:
            self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id)
        if username and password:
            self.client.username_pw_set(username, password)

        # Broker publishes this if the agent vanishes without disconnect()
        self.client.will_set(
            self.status_topic,
            StatusReport(instance_id=instance_id, status="offline").model_dump_json(),
            qos=1,
            retain=True,
        )

        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_message = self._on_message

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def connect(self, timeout: float = 5.0) -> bool:
        """Connect and wait for the command subscription. False on failure."""
        try:
            self.client.connect(self.broker_host, self.broker_port, keepalive=60)
        except (OSError, ValueError) as e:
            logger.error(
                f"Control plane cannot reach {self.broker_host}:{self.broker_port}: {e}",
                extra={"event": "control_plane_connect_failed"},
            )
            return False

        self.client.loop_start()
        self._loop_started = True
        return self._connected.wait(timeout=timeout)

    def disconnect(self) -> None:
        if self._connected.is_set():
            self.publish_status("disconnected")
        if self._loop_started:
            self.client.loop_stop()
            self._loop_started = False
        self.client.disconnect()
        self._connected.clear()
        logger.info("Control plane disconnected", extra={"event": "control_plane_disconnected"})

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def publish_status(self, status: str, **fields) -> None:
        """Retained status for this instance (extra fields: config, stats, ...)."""
        report = StatusReport(instance_id=self.instance_id, status=status, **fields)
        self.client.publish(self.status_topic, report.model_dump_json(), qos=1, retain=True)
        logger.debug(
            f"Status published: {status}",
            extra={"event": "status_published", "status": status},
        )

    def _ack(self, command: str, ack_status: str, message: Optional[str] = None) -> None:
        ack = CommandAck(
            instance_id=self.instance_id, command=command, ack_status=ack_status, message=message
        )
        self.client.publish(self.ack_topic, ack.model_dump_json(exclude_none=True), qos=1, retain=False)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def handle_command(self, command: ControlCommand) -> None:
        name = command.command
        logger.info(f"Command received: {name}", extra={"event": "command_received", "command": name})
        self._ack(name, "received")

        try:
            self.command_registry.execute(name, command.params)
        except (CommandNotAvailableError, ValueError) as e:
            logger.error(
                f"Command {name} rejected: {e}",
                extra={"event": "command_rejected", "command": name},
            )
            self._ack(name, "error", str(e))
            return

        self._ack(name, "completed")
        logger.info(f"Command completed: {name}", extra={"event": "command_completed", "command": name})

    # ------------------------------------------------------------------
    # paho callbacks (network thread)
    # ------------------------------------------------------------------

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        if getattr(reason_code, "is_failure", False):
            logger.error(
                f"Control plane connection refused: {reason_code}",
                extra={"event": "control_plane_refused"},
            )
            return

        self.client.subscribe(self.command_topic, qos=1)
        self._connected.set()
        self.publish_status("connected")
        logger.info(
            f"Control plane listening on {self.command_topic}",
            extra={"event": "control_plane_connected"},
        )

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties):
        self._connected.clear()
        logger.warning(
            f"Control plane lost broker connection: {reason_code}",
            extra={"event": "control_plane_connection_lost"},
        )

    def _on_message(self, client, userdata, msg):
        try:
            command = ControlCommand.model_validate_json(msg.payload)
        except ValidationError as e:
            logger.error(
                f"Ignoring malformed control message: {e.error_count()} error(s)",
                extra={"event": "command_malformed", "topic": msg.topic},
            )
            return

        if not command.targets(self.instance_id):
            logger.debug(
                f"Command {command.command} targets other instances",
                extra={"event": "command_filtered"},
            )
            return

        with trace_context(f"cmd-{command.command}"):
            self.handle_command(command)
