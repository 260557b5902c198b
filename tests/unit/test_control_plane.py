"""
Unit tests for CommandRegistry and MQTTControlPlane (paho client mocked)
"""

import json
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from circulator_stream.processor.command_handlers import CommandHandlers
from circulator_stream.processor.control_plane import (
    CommandNotAvailableError,
    CommandRegistry,
    MQTTControlPlane,
)


class TestCommandRegistry:
    def test_register_and_execute(self):
        registry = CommandRegistry()
        handler = MagicMock(return_value="pong")
        registry.register("ping", lambda: handler(), "Health check")

        assert registry.execute("ping") == "pong"
        assert registry.is_available("ping")
        assert registry.available_commands == {"ping"}
        assert registry.get_help() == {"ping": "Health check"}

    def test_params_passed_to_handlers_that_accept_them(self):
        registry = CommandRegistry()
        received = []
        registry.register("invalidate_config", lambda params: received.append(params))

        registry.execute("invalidate_config", {"agent_uuid": "a"})
        registry.execute("invalidate_config")

        assert received == [{"agent_uuid": "a"}, {}]

    def test_unknown_command(self):
        registry = CommandRegistry()
        registry.register("stop", lambda: None)

        with pytest.raises(CommandNotAvailableError, match="stop"):
            registry.execute("restart")


def make_control_plane(instance_id="agent-0001"):
    client = MagicMock()
    control_plane = MQTTControlPlane(
        broker_host="localhost",
        command_topic="circulator/control/commands",
        status_topic="circulator/control/status",
        instance_id=instance_id,
        client_factory=lambda: client,
    )
    return control_plane, client


def deliver(control_plane, payload):
    raw = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
    control_plane._on_message(None, None, SimpleNamespace(topic="circulator/control/commands", payload=raw))


def published(client):
    return [
        (c.args[0], json.loads(c.args[1]), c.kwargs.get("retain"))
        for c in client.publish.call_args_list
    ]


class TestMQTTControlPlane:
    def test_command_executed_and_acked(self):
        control_plane, client = make_control_plane()
        stop = MagicMock()
        control_plane.command_registry.register("stop", lambda: stop())

        deliver(control_plane, {"command": "STOP", "target_instances": ["*"]})

        stop.assert_called_once()
        acks = [(topic, body["ack_status"]) for topic, body, _ in published(client)]
        assert acks == [
            ("circulator/control/status/agent-0001/ack", "received"),
            ("circulator/control/status/agent-0001/ack", "completed"),
        ]

    def test_command_for_other_instance_ignored(self):
        control_plane, client = make_control_plane()
        stop = MagicMock()
        control_plane.command_registry.register("stop", lambda: stop())

        deliver(control_plane, {"command": "stop", "target_instances": ["agent-9999"]})

        stop.assert_not_called()
        client.publish.assert_not_called()

    def test_targeted_command_processed(self):
        control_plane, _ = make_control_plane()
        stop = MagicMock()
        control_plane.command_registry.register("stop", lambda: stop())

        deliver(control_plane, {"command": "stop", "target_instances": ["agent-0001", "agent-0002"]})

        stop.assert_called_once()

    def test_unknown_command_acked_with_error(self):
        control_plane, client = make_control_plane()

        deliver(control_plane, {"command": "reboot"})

        last_topic, last_body, _ = published(client)[-1]
        assert last_body["ack_status"] == "error"
        assert "reboot" in last_body["message"]

    def test_invalid_params_acked_with_error(self):
        control_plane, client = make_control_plane()

        def handler(params):
            raise ValueError("agent_uuid must be a string")

        control_plane.command_registry.register("invalidate_config", handler)
        deliver(control_plane, {"command": "invalidate_config", "params": {"agent_uuid": 3}})

        assert published(client)[-1][1]["ack_status"] == "error"

    def test_malformed_payload_ignored(self):
        control_plane, client = make_control_plane()

        deliver(control_plane, b"{not json")
        deliver(control_plane, b"[1, 2]")

        client.publish.assert_not_called()

    def test_publish_status_retained(self):
        control_plane, client = make_control_plane()

        control_plane.publish_status("running", stats={"acked": 3})

        [(topic, body, retain)] = published(client)
        assert topic == "circulator/control/status/agent-0001"
        assert body["status"] == "running"
        assert body["stats"] == {"acked": 3}
        assert retain is True

    def test_on_connect_subscribes_and_announces(self):
        control_plane, client = make_control_plane()

        control_plane._on_connect(client, None, None, SimpleNamespace(is_failure=False), None)

        client.subscribe.assert_called_once_with("circulator/control/commands", qos=1)
        assert published(client)[0][1]["status"] == "connected"
        assert control_plane._connected.is_set()

    def test_on_connect_refused(self):
        control_plane, client = make_control_plane()

        control_plane._on_connect(client, None, None, SimpleNamespace(is_failure=True), None)

        client.subscribe.assert_not_called()
        assert not control_plane._connected.is_set()

    def test_connect_failure_returns_false(self):
        control_plane, client = make_control_plane()
        client.connect.side_effect = OSError("connection refused")

        assert control_plane.connect(timeout=0.01) is False
        client.loop_start.assert_not_called()

    def test_last_will_marks_instance_offline(self):
        _, client = make_control_plane()

        topic, payload = client.will_set.call_args.args
        assert topic == "circulator/control/status/agent-0001"
        assert json.loads(payload)["status"] == "offline"
        assert client.will_set.call_args.kwargs["retain"] is True

    def test_null_params_treated_as_empty(self):
        control_plane, _ = make_control_plane()
        received = []
        control_plane.command_registry.register("invalidate_config", received.append)

        deliver(control_plane, {"command": "invalidate_config", "params": None})

        assert received == [{}]

    def test_disconnect_before_connect(self):
        control_plane, client = make_control_plane()

        control_plane.disconnect()

        client.loop_stop.assert_not_called()
        client.publish.assert_not_called()
        client.disconnect.assert_called_once()


class TestCommandHandlers:
    def make(self):
        coordinator = MagicMock()
        coordinator.current_status.return_value = "running"
        coordinator.uptime_seconds.return_value = 12.34
        coordinator.stats_snapshot.return_value = {"acked": 2}
        coordinator.config.to_status_dict.return_value = {"agent_uuid": "agent-0001"}
        control_plane = MagicMock()
        return CommandHandlers(coordinator, control_plane), coordinator, control_plane

    def test_ping_publishes_status_with_uptime(self):
        handlers, _, control_plane = self.make()

        handlers.handle_ping()

        args, kwargs = control_plane.publish_status.call_args
        assert args == ("running",)
        assert kwargs["uptime_seconds"] == 12.3
        assert kwargs["stats"] == {"acked": 2}

    def test_invalidate_config(self):
        handlers, coordinator, _ = self.make()

        handlers.handle_invalidate_config({"agent_uuid": "agent-0002"})
        handlers.handle_invalidate_config({})

        assert [c.args for c in coordinator.invalidate_config.call_args_list] == [("agent-0002",), (None,)]

    def test_invalidate_config_rejects_non_string(self):
        handlers, _, _ = self.make()
        with pytest.raises(ValueError):
            handlers.handle_invalidate_config({"agent_uuid": 3})

    def test_stop(self):
        handlers, coordinator, control_plane = self.make()

        handlers.handle_stop()

        coordinator.stop.assert_called_once()
        control_plane.publish_status.assert_called_once_with("stopping")
