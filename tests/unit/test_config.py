"""
Unit tests for PipelineConfig validation and loading
"""

import pytest

from circulator_stream.processor.config import (
    BrokerConfig,
    ConfigValidationError,
    ConsumerConfig,
    PipelineConfig,
    SubscriptionType,
)


class TestDefaults:
    def test_defaults(self):
        config = PipelineConfig()

        assert config.broker.url == "mqtt://localhost:1883"
        assert config.broker.connection_timeout == 10.0
        assert config.broker.operation_timeout == 5.0
        assert config.consumer.subscription_name == "agent-processor"
        assert config.consumer.subscription_type is SubscriptionType.SHARED
        assert config.producer.send_timeout == 30.0
        assert config.topics.external_sensor_data == "external-sensor-data"
        assert config.topics.processing_results == "processing-results"
        assert config.config_cache_ttl == 0.0
        assert config.fail_closed is False

    def test_agent_uuid_generated(self):
        assert PipelineConfig().agent_uuid != PipelineConfig().agent_uuid

    def test_broker_host_and_port(self):
        broker = BrokerConfig(url="mqtt://broker.local:1884")
        assert broker.host == "broker.local"
        assert broker.port == 1884


class TestSubscriptionType:
    @pytest.mark.parametrize("raw,expected", [
        ("shared", SubscriptionType.SHARED),
        ("Shared", SubscriptionType.SHARED),
        ("Exclusive", SubscriptionType.EXCLUSIVE),
        ("failover", SubscriptionType.FAILOVER),
        ("KeyShared", SubscriptionType.KEY_SHARED),
        ("key-shared", SubscriptionType.KEY_SHARED),
    ])
    def test_parse(self, raw, expected):
        assert SubscriptionType.parse(raw) is expected

    def test_invalid(self):
        with pytest.raises(ConfigValidationError):
            SubscriptionType.parse("broadcast")

    def test_string_type_normalized_in_config(self):
        config = PipelineConfig(consumer=ConsumerConfig(subscription_type="Failover"))
        assert config.consumer.subscription_type is SubscriptionType.FAILOVER


class TestValidation:
    @pytest.mark.parametrize("url", ["http://localhost:1883", "localhost:1883", "mqtt://"])
    def test_invalid_broker_url(self, url):
        with pytest.raises(ConfigValidationError):
            PipelineConfig(broker=BrokerConfig(url=url))

    def test_invalid_config_store_url(self):
        with pytest.raises(ConfigValidationError):
            PipelineConfig(config_store_url="ftp://store")

    def test_empty_agent_uuid(self):
        with pytest.raises(ConfigValidationError):
            PipelineConfig(agent_uuid="  ")

    def test_negative_cache_ttl(self):
        with pytest.raises(ConfigValidationError):
            PipelineConfig(config_cache_ttl=-1)

    def test_negative_metrics_interval(self):
        with pytest.raises(ConfigValidationError):
            PipelineConfig(metrics_reporting_interval=-5)

    def test_backoff_bounds(self):
        with pytest.raises(ConfigValidationError):
            PipelineConfig(consumer=ConsumerConfig(backoff_initial=2.0, backoff_max=1.0))

    def test_zero_timeout(self):
        with pytest.raises(ConfigValidationError):
            PipelineConfig(broker=BrokerConfig(connection_timeout=0))


class TestLoading:
    def test_from_dict_layout(self):
        config = PipelineConfig.from_dict({
            "agent": {"uuid": "agent-7", "config_cache_ttl": 15, "fail_closed": True},
            "broker": {"url": "mqtt://broker:1883", "connection_timeout": 3},
            "topics": {"alert_data": "alerts-v2"},
            "consumer": {"subscription_name": "edge", "type": "Exclusive"},
            "producer": {"send_timeout": 10},
            "anomaly": {"midpoint": 20.0},
            "control": {"enabled": True, "command_topic": "ctl/cmd"},
        })

        assert config.agent_uuid == "agent-7"
        assert config.config_cache_ttl == 15
        assert config.fail_closed is True
        assert config.broker.connection_timeout == 3
        assert config.topics.alert_data == "alerts-v2"
        assert config.topics.processed_sensor_data == "processed-sensor-data"
        assert config.consumer.subscription_type is SubscriptionType.EXCLUSIVE
        assert config.producer.send_timeout == 10
        assert config.anomaly_policy.midpoint == 20.0
        assert config.enable_control_plane is True
        assert config.control_command_topic == "ctl/cmd"

    def test_overrides_take_precedence(self):
        config = PipelineConfig.from_dict(
            {"agent": {"uuid": "from-file"}},
            agent_uuid="from-cli",
            config_store_url=None,
        )
        assert config.agent_uuid == "from-cli"
        assert config.config_store_url == "http://localhost:8080"

    @pytest.mark.parametrize("data", [
        {"broker": {"hostname": "x"}},
        {"agent": {"name": "x"}},
        {"control": {"qos": 1}},
    ])
    def test_unknown_keys_rejected(self, data):
        with pytest.raises(ConfigValidationError):
            PipelineConfig.from_dict(data)

    def test_invalid_anomaly_policy(self):
        with pytest.raises(ConfigValidationError):
            PipelineConfig.from_dict({"anomaly": {"default_lower": 90, "default_upper": 10}})

    def test_from_yaml(self, tmp_path):
        path = tmp_path / "agent.yaml"
        path.write_text(
            "agent:\n"
            "  uuid: agent-yaml\n"
            "broker:\n"
            "  url: mqtt://broker:1883\n"
            "consumer:\n"
            "  type: KeyShared\n"
        )

        config = PipelineConfig.from_yaml(path)

        assert config.agent_uuid == "agent-yaml"
        assert config.consumer.subscription_type is SubscriptionType.KEY_SHARED

    def test_from_yaml_missing_file(self, tmp_path):
        with pytest.raises(ConfigValidationError):
            PipelineConfig.from_yaml(tmp_path / "missing.yaml")

    def test_from_yaml_not_a_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigValidationError):
            PipelineConfig.from_yaml(path)


class TestStatusDict:
    def test_no_credentials(self):
        config = PipelineConfig(broker=BrokerConfig(username="u", password="secret"))
        status = config.to_status_dict()

        assert "secret" not in str(status)
        assert status["subscription_type"] == "shared"
        assert status["topics"]["external_sensor_data"] == "external-sensor-data"
