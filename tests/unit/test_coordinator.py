"""
Unit tests for PipelineCoordinator with a fake broker connection
"""

import threading
from unittest.mock import MagicMock

import pytest

from fakes import (
    FakeBrokerConnection,
    FakeConfigProvider,
    FakeConsumer,
    FakeProbe,
    make_message,
)
from circulator_stream.interfaces import ConnectError, SubscribeError
from circulator_stream.processor.config import PipelineConfig
from circulator_stream.processor.config_provider import CachingRuleConfigProvider
from circulator_stream.processor.coordinator import PipelineCoordinator
from circulator_stream.processor.registration import RegistrationError


def make_config(**overrides):
    fields = dict(agent_uuid="agent-0001", metrics_reporting_interval=0)
    fields.update(overrides)
    return PipelineConfig(**fields)


def make_coordinator(connection, config=None, provider=None, **kwargs):
    return PipelineCoordinator(
        config or make_config(),
        connection_factory=lambda cfg: connection,
        provider=provider or FakeConfigProvider(),
        probe=FakeProbe(),
        **kwargs,
    )


class TestStart:
    def test_processes_until_cancelled(self):
        cancel = threading.Event()
        consumer = FakeConsumer(
            [make_message({"sensor_type": "temp", "value": 5.0})], cancel_when_drained=cancel
        )
        connection = FakeBrokerConnection(consumer)
        coordinator = make_coordinator(connection)

        coordinator.start(cancel)

        assert connection.connected
        assert connection.subscriptions == [("external-sensor-data", "agent-processor", "shared")]
        assert set(connection.producers) == {
            "processed-sensor-data",
            "alert-data",
            "system-metrics",
            "processing-results",
        }
        assert len(connection.producers["processed-sensor-data"].sent) == 1
        assert len(connection.producers["alert-data"].sent) == 1
        assert len(consumer.acked) == 1
        assert coordinator.is_running is False
        assert coordinator.stats_snapshot()["acked"] == 1

    def test_stop_from_another_thread(self):
        consumer = FakeConsumer()
        coordinator = make_coordinator(FakeBrokerConnection(consumer))
        coordinator.config.consumer.receive_timeout = 0.01

        timer = threading.Timer(0.05, coordinator.stop)
        timer.start()
        coordinator.start()
        timer.join()

        assert coordinator.current_status() == "stopped"

    def test_connect_failure_propagates(self):
        connection = FakeBrokerConnection(connect_error=ConnectError("refused"))
        coordinator = make_coordinator(connection)

        with pytest.raises(ConnectError):
            coordinator.start(threading.Event())

    def test_subscribe_failure_propagates(self):
        connection = FakeBrokerConnection(subscribe_error=SubscribeError("denied"))
        coordinator = make_coordinator(connection)

        with pytest.raises(SubscribeError):
            coordinator.start(threading.Event())

        assert coordinator.close() == []
        assert connection.closed

    def test_subscription_type_from_config(self):
        cancel = threading.Event()
        connection = FakeBrokerConnection(FakeConsumer(cancel_when_drained=cancel))
        config = make_config()
        config.consumer.subscription_type = config.consumer.subscription_type.parse("KeyShared")

        make_coordinator(connection, config).start(cancel)

        assert connection.subscriptions[0][2] == "key_shared"

    def test_metrics_reporter_started_and_stopped(self):
        cancel = threading.Event()
        connection = FakeBrokerConnection(FakeConsumer(cancel_when_drained=cancel))
        coordinator = make_coordinator(connection, make_config(metrics_reporting_interval=60))

        coordinator.start(cancel)

        assert coordinator.metrics_reporter is not None
        coordinator.close()
        assert coordinator.metrics_reporter._thread is None

    def test_registration_failure_aborts_start(self):
        registrar = MagicMock()
        registrar.register.side_effect = RegistrationError("refused")
        connection = FakeBrokerConnection()
        coordinator = make_coordinator(connection, make_config(register_on_start=True), registrar=registrar)

        with pytest.raises(RegistrationError):
            coordinator.start(threading.Event())

        registrar.register.assert_called_once()
        assert registrar.register.call_args.args[0] == "agent-0001"
        assert not connection.connected

    def test_control_plane_commands_registered(self):
        cancel = threading.Event()
        connection = FakeBrokerConnection(FakeConsumer(cancel_when_drained=cancel))
        control_plane = MagicMock()
        control_plane.connect.return_value = True
        registered = {}
        control_plane.command_registry.register.side_effect = (
            lambda name, handler, description="": registered.setdefault(name, handler)
        )
        coordinator = make_coordinator(
            connection,
            make_config(enable_control_plane=True),
            control_plane_factory=lambda cfg: control_plane,
        )

        coordinator.start(cancel)

        assert set(registered) == {"ping", "status", "invalidate_config", "stop"}
        assert control_plane.publish_status.call_args_list[0].args[0] == "running"

        coordinator.close()
        control_plane.disconnect.assert_called_once()


class TestClose:
    def test_close_order_and_tolerance(self):
        cancel = threading.Event()
        order = []
        consumer = FakeConsumer(cancel_when_drained=cancel)
        connection = FakeBrokerConnection(consumer)
        coordinator = make_coordinator(connection)
        coordinator.start(cancel)

        consumer.close_error = RuntimeError("consumer stuck")
        connection.producers["alert-data"].close_error = RuntimeError("producer stuck")
        connection.close_error = RuntimeError("connection stuck")

        original_consumer_close = consumer.close
        consumer.close = lambda: (order.append("consumer"), original_consumer_close())
        original_connection_close = connection.close
        connection.close = lambda: (order.append("connection"), original_connection_close())

        errors = coordinator.close()

        assert [str(e) for e in errors] == ["consumer stuck", "producer stuck", "connection stuck"]
        assert order == ["consumer", "connection"]
        assert all(p.closed for p in connection.producers.values())
        assert connection.closed

    def test_close_before_start(self):
        coordinator = make_coordinator(FakeBrokerConnection())
        assert coordinator.close() == []


class TestCommands:
    def test_invalidate_config_reaches_cache(self):
        inner = FakeConfigProvider()
        cache = CachingRuleConfigProvider(inner, ttl_seconds=60)
        coordinator = make_coordinator(FakeBrokerConnection(), provider=cache)
        cache.get_config("agent-0001")

        coordinator.invalidate_config()

        assert cache.size() == 0

    def test_invalidate_config_without_cache(self):
        coordinator = make_coordinator(FakeBrokerConnection())
        coordinator.invalidate_config("agent-0001")

    def test_default_provider_is_cached_http_store(self):
        coordinator = PipelineCoordinator(make_config(config_cache_ttl=30))
        assert isinstance(coordinator.provider, CachingRuleConfigProvider)
        assert coordinator.provider.inner.base_url == "http://localhost:8080"
