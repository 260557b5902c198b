"""
Command Handlers
================

Handlers for the control plane commands, delegating to the coordinator.
"""

from typing import TYPE_CHECKING, Optional

from circulator_stream.logging_utils import get_component_logger

if TYPE_CHECKING:
    from circulator_stream.processor.control_plane import MQTTControlPlane
    from circulator_stream.processor.coordinator import PipelineCoordinator

logger = get_component_logger(__name__, "command_handlers")


class CommandHandlers:
    """
    Control command handlers.

    Args:
        coordinator: Running PipelineCoordinator
        control_plane: Control plane used to publish replies
    """

    def __init__(
        self,
        coordinator: "PipelineCoordinator",
        control_plane: Optional["MQTTControlPlane"] = None,
    ):
        self.coordinator = coordinator
        self.control_plane = control_plane

    def handle_ping(self):
        """Reply with status, uptime and configuration (discovery / health check)."""
        logger.info("PING received", extra={"event": "ping_received"})

        if self.control_plane:
            self.control_plane.publish_status(
                self.coordinator.current_status(),
                uptime_seconds=round(self.coordinator.uptime_seconds(), 1),
                config=self.coordinator.config.to_status_dict(),
                stats=self.coordinator.stats_snapshot(),
            )

    def handle_status(self):
        """Publish current status and consumer counters."""
        status = self.coordinator.current_status()
        logger.info("STATUS query", extra={"event": "status_query", "status": status})

        if self.control_plane:
            self.control_plane.publish_status(status, stats=self.coordinator.stats_snapshot())

    def handle_invalidate_config(self, params: dict):
        """
        Drop cached rule configurations.

        Params:
            agent_uuid: Only this agent's entry (optional, default: all)
        """
        agent_uuid = params.get("agent_uuid")
        if agent_uuid is not None and not isinstance(agent_uuid, str):
            raise ValueError("agent_uuid must be a string")

        self.coordinator.invalidate_config(agent_uuid)

    def handle_stop(self):
        """Stop the consume loop; the process exits after cleanup."""
        logger.info("STOP command received", extra={"event": "stop_command"})
        self.coordinator.stop()

        if self.control_plane:
            self.control_plane.publish_status("stopping")
