"""
Metrics Reporter
================

Samples host resource usage periodically and publishes it to the system
metrics topic, independently of sample processing.
"""

import threading
from typing import Optional

import psutil

from circulator_stream.events.schema import MetricsSample
from circulator_stream.interfaces import SystemProbe
from circulator_stream.logging_utils import get_component_logger
from circulator_stream.processor.publisher import OutboundPublisher, PublishError

logger = get_component_logger(__name__, "metrics_reporter")


class PsutilProbe:
    """
    SystemProbe backed by psutil.

    Args:
        disk_path: Mount point whose usage is reported
    """

    def __init__(self, disk_path: str = "/"):
        self.disk_path = disk_path
        # First cpu_percent(None) call only primes the counters
        psutil.cpu_percent(interval=None)

    def cpu_percent(self) -> float:
        return psutil.cpu_percent(interval=None)

    def memory_percent(self) -> float:
        return psutil.virtual_memory().percent

    def disk_percent(self) -> float:
        return psutil.disk_usage(self.disk_path).percent


class MetricsReporter:
    """
    Periodic system metrics publisher.

    Responsibilities:
    - Collect a MetricsSample from the probe
    - Publish it through the OutboundPublisher
    - Manage the background reporting thread lifecycle

    Args:
        agent_uuid: Agent the metrics are attributed to
        probe: SystemProbe (PsutilProbe in production)
        publisher: OutboundPublisher
        interval: Seconds between samples (0 disables reporting)

    Usage:
        >>> reporter = MetricsReporter(agent_uuid, PsutilProbe(), publisher, interval=30)
        >>> reporter.start()  # Start background thread
        >>> reporter.collect()
        MetricsSample(...)
        >>> reporter.stop()
    """

    def __init__(
        self,
        agent_uuid: str,
        probe: SystemProbe,
        publisher: OutboundPublisher,
        interval: float,
    ):
        self.agent_uuid = agent_uuid
        self.probe = probe
        self.publisher = publisher
        self.interval = interval

        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    def start(self):
        """Start periodic metrics reporting in background thread."""
        if self.interval <= 0:
            logger.info(
                "Metrics reporting disabled (interval = 0)",
                extra={"event": "metrics_reporting_disabled"},
            )
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._reporting_loop,
            daemon=True,
            name="MetricsReporter",
        )
        self._thread.start()

        logger.info(
            f"Metrics reporting started (interval: {self.interval}s)",
            extra={"event": "metrics_started", "interval": self.interval},
        )

    def stop(self):
        """Stop metrics reporting thread."""
        if self._thread:
            self._stop_event.set()
            self._thread.join(timeout=5)
            self._thread = None
            logger.info("Metrics reporting stopped", extra={"event": "metrics_stopped"})

    def collect(self) -> MetricsSample:
        return MetricsSample(
            agent_uuid=self.agent_uuid,
            cpu_usage=self.probe.cpu_percent(),
            memory_usage=self.probe.memory_percent(),
            disk_usage=self.probe.disk_percent(),
        )

    def report_once(self) -> None:
        sample = self.collect()
        self.publisher.send_system_metrics(sample)

        logger.debug(
            "Metrics published",
            extra={
                "event": "metrics_published",
                "cpu_usage": sample.cpu_usage,
                "memory_usage": sample.memory_usage,
                "disk_usage": sample.disk_usage,
            },
        )

    # ========================================================================
    # Private
    # ========================================================================

    def _reporting_loop(self):
        """Background thread loop for periodic reporting."""
        while not self._stop_event.wait(timeout=self.interval):
            try:
                self.report_once()
            except PublishError as e:
                logger.warning(
                    f"Metrics publish failed: {e}",
                    extra={"event": "metrics_publish_failed", "topic": e.topic},
                )
            except Exception as e:
                logger.error(
                    f"Error in metrics reporting: {e}",
                    extra={"event": "metrics_error"},
                    exc_info=True,
                )
