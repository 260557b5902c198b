"""
CLI entry point for circulator-stream
"""

import json
import os
import sys

import click

from circulator_stream.logging_utils import setup_structured_logging

# Configure structured logging
# Use JSON format for production, human-readable for development
JSON_LOGS = os.getenv("JSON_LOGS", "false").lower() == "true"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

setup_structured_logging(
    level=LOG_LEVEL,
    json_format=JSON_LOGS,
    output_file=os.getenv("LOG_FILE"),
)


def _build_config(config_path, agent_uuid=None, broker_url=None, config_store_url=None,
                  subscription_type=None, metrics_interval=None, cache_ttl=None,
                  fail_closed=False, enable_control=False, register=False):
    from circulator_stream.processor.config import PipelineConfig

    data = PipelineConfig.read_yaml(config_path) if config_path else {}

    # Nested overrides go into the raw mapping before validation
    if broker_url is not None:
        data["broker"] = dict(data.get("broker") or {}, url=broker_url)
    if subscription_type is not None:
        data["consumer"] = dict(data.get("consumer") or {}, type=subscription_type)

    overrides = {
        "agent_uuid": agent_uuid,
        "config_store_url": config_store_url,
        "metrics_reporting_interval": metrics_interval,
        "config_cache_ttl": cache_ttl,
    }
    # Flags only override when set
    if fail_closed:
        overrides["fail_closed"] = True
    if enable_control:
        overrides["enable_control_plane"] = True
    if register:
        overrides["register_on_start"] = True

    return PipelineConfig.from_dict(data, **overrides)


def _config_options(func):
    options = [
        click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False),
                     default=None, help="YAML agent config file"),
        click.option("--agent-uuid", default=None, help="Agent UUID whose rules are applied"),
        click.option("--broker-url", default=None, help="Broker URL (default: mqtt://localhost:1883)"),
        click.option("--config-store-url", default=None,
                     help="Configuration store base URL (default: http://localhost:8080)"),
        click.option("--subscription-type",
                     type=click.Choice(["shared", "exclusive", "failover", "key_shared"], case_sensitive=False),
                     default=None, help="Input subscription type (default: shared)"),
        click.option("--metrics-interval", type=int, default=None,
                     help="Interval in seconds for system metrics reporting (0 = disabled, default: 30)"),
        click.option("--cache-ttl", type=float, default=None,
                     help="Seconds a fetched rule configuration is reused (default: 0, fetch per sample)"),
        click.option("--fail-closed", is_flag=True, default=False,
                     help="Nack samples when the config store fails instead of using default rules"),
        click.option("--enable-control", is_flag=True, default=False,
                     help="Enable MQTT control plane (ping/status/invalidate_config/stop)"),
        click.option("--register", is_flag=True, default=False,
                     help="Register the agent with the config store before consuming"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@click.group()
def main():
    """Circulator Stream - Sensor Stream Processing Agent"""
    pass


@main.command()
@_config_options
@click.option(
    "--json-logs",
    is_flag=True,
    default=False,
    help="Output logs in JSON format for log aggregation (Elasticsearch, Loki, etc.)",
)
def run(config_path, agent_uuid, broker_url, config_store_url, subscription_type, metrics_interval,
        cache_ttl, fail_closed, enable_control, register, json_logs):
    """Run the stream processing pipeline until SIGINT/SIGTERM"""
    from circulator_stream.interfaces import BrokerError
    from circulator_stream.processor import PipelineCoordinator
    from circulator_stream.processor.config import ConfigValidationError
    from circulator_stream.processor.registration import RegistrationError

    # Reconfigure logging based on --json-logs flag
    if json_logs:
        setup_structured_logging(level=LOG_LEVEL, json_format=True, output_file=os.getenv("LOG_FILE"))

    try:
        config = _build_config(
            config_path, agent_uuid, broker_url, config_store_url, subscription_type,
            metrics_interval, cache_ttl, fail_closed, enable_control, register,
        )
    except ConfigValidationError as e:
        raise click.BadParameter(str(e)) from e

    click.echo(f"Agent UUID:   {config.agent_uuid}")
    click.echo(f"Broker:       {config.broker.url}")
    click.echo(f"Input topic:  {config.topics.external_sensor_data} "
               f"({config.consumer.subscription_type.value} subscription '{config.consumer.subscription_name}')")
    if config.enable_control_plane:
        click.echo(f"Control:      {config.control_command_topic} -> "
                   f"{config.control_status_topic}/{config.agent_uuid}")
        click.echo('   PING:   {"command": "ping", "target_instances": ["*"]}')
        click.echo('   STATUS: {"command": "status", "target_instances": ["*"]}')
        click.echo('   INVALIDATE_CONFIG: {"command": "invalidate_config", "target_instances": ["*"]}')
        click.echo('   STOP:   {"command": "stop", "target_instances": ["*"]}')
    click.echo("Press Ctrl+C to exit")

    coordinator = PipelineCoordinator(config)
    coordinator.install_signal_handlers()

    exit_code = 0
    try:
        coordinator.start()
    except (BrokerError, RegistrationError) as e:
        click.echo(f"Pipeline failed to start: {e}", err=True)
        exit_code = 1
    finally:
        errors = coordinator.close()
        for error in errors:
            click.echo(f"Shutdown error: {error}", err=True)

    sys.exit(exit_code)


@main.command("show-config")
@_config_options
def show_config(config_path, agent_uuid, broker_url, config_store_url, subscription_type, metrics_interval,
                cache_ttl, fail_closed, enable_control, register):
    """Print the effective configuration as JSON"""
    from circulator_stream.processor.config import ConfigValidationError

    try:
        config = _build_config(
            config_path, agent_uuid, broker_url, config_store_url, subscription_type,
            metrics_interval, cache_ttl, fail_closed, enable_control, register,
        )
    except ConfigValidationError as e:
        raise click.BadParameter(str(e)) from e

    click.echo(json.dumps(config.to_status_dict(), indent=2))


if __name__ == "__main__":
    main()
