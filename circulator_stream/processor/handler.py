"""
Sample Handler
==============

Per-sample pipeline: config lookup -> transform -> detect -> publish.
"""

import time
from typing import List, Optional

from circulator_stream.events.schema import (
    AlertRecord,
    IncomingSample,
    ProcessedResult,
    ProcessingOutcome,
)
from circulator_stream.interfaces import RuleConfigSource
from circulator_stream.logging_utils import get_component_logger
from circulator_stream.processor.config_provider import ConfigFetchError
from circulator_stream.processor.publisher import OutboundPublisher, PublishError
from circulator_stream.rules.anomaly import AnomalyDetector
from circulator_stream.rules.schema import AgentProcessingConfig, ProcessingRule
from circulator_stream.rules.transform import TransformEngine

logger = get_component_logger(__name__, "handler")


class SampleProcessingError(Exception):
    """The sample was not fully processed and must be redelivered."""
    pass


class SampleHandler:
    """
    Processes one IncomingSample for one agent.

    Without fail_closed, a config store error is logged and the sample is
    processed against AgentProcessingConfig.default(). All downstream sends
    are attempted; when a processed-data or alert send fails, the outcome is
    still published with success=false and the sample fails.

    Args:
        agent_uuid: Agent whose configuration applies
        provider: Configuration lookup
        publisher: Downstream fan-out
        engine: TransformEngine (default: new instance)
        detector: AnomalyDetector (default: new instance)
        fail_closed: Fail the sample on config store errors

    Raises (from __call__):
        SampleProcessingError: Config lookup (fail-closed) or a publish failed
    """

    def __init__(
        self,
        agent_uuid: str,
        provider: RuleConfigSource,
        publisher: OutboundPublisher,
        engine: Optional[TransformEngine] = None,
        detector: Optional[AnomalyDetector] = None,
        fail_closed: bool = False,
    ):
        self.agent_uuid = agent_uuid
        self.provider = provider
        self.publisher = publisher
        self.engine = engine or TransformEngine()
        self.detector = detector or AnomalyDetector()
        self.fail_closed = fail_closed

    def __call__(self, sample: IncomingSample) -> None:
        started = time.perf_counter()

        config = self._load_config()
        rules = config.rules_for(sample.sensor_type)

        processed_value = self.engine.apply(sample.value, rules)
        try:
            self._evaluate_and_publish(sample, processed_value, rules, started)
        except Exception:
            self.engine.discard(rules)
            raise
        self.engine.commit(rules)

    def _evaluate_and_publish(self, sample: IncomingSample, processed_value: float,
                              rules: List[ProcessingRule], started: float) -> None:
        verdict = self.detector.evaluate(processed_value, rules)
        errors: List[str] = []

        result = ProcessedResult(
            agent_uuid=self.agent_uuid,
            original_value=sample.value,
            processed_value=processed_value,
            anomaly=verdict.is_anomaly,
            confidence=verdict.confidence,
            processing_time=_elapsed_micros(started),
        )
        try:
            self.publisher.send_processed_data(result)
        except PublishError as e:
            errors.append(str(e))

        if verdict.is_anomaly:
            alert = AlertRecord(
                agent_uuid=self.agent_uuid,
                sensor_type=sample.sensor_type,
                original_value=sample.value,
                processed_value=processed_value,
                threshold=verdict.threshold,
                severity=verdict.severity,
                message=(
                    f"{sample.sensor_type or 'sensor'} value {processed_value:.2f} outside "
                    f"[{verdict.lower:.2f}, {verdict.upper:.2f}]"
                ),
            )
            try:
                self.publisher.send_alert(alert)
            except PublishError as e:
                errors.append(str(e))

            logger.info(
                "Anomaly detected",
                extra={
                    "event": "anomaly_detected",
                    "sample_uuid": sample.uuid,
                    "value": processed_value,
                    "severity": verdict.severity.value,
                },
            )

        outcome = ProcessingOutcome(
            agent_uuid=self.agent_uuid,
            success=not errors,
            error_message="; ".join(errors) if errors else None,
            processing_time=_elapsed_micros(started),
        )
        try:
            self.publisher.send_processing_result(outcome)
        except PublishError as e:
            errors.append(str(e))

        if errors:
            raise SampleProcessingError("; ".join(errors))

        logger.debug(
            "Sample processed",
            extra={
                "event": "sample_processed",
                "sample_uuid": sample.uuid,
                "anomaly": verdict.is_anomaly,
                "processing_time_us": outcome.processing_time,
            },
        )

    def _load_config(self) -> AgentProcessingConfig:
        try:
            return self.provider.get_config(self.agent_uuid)
        except ConfigFetchError as e:
            if self.fail_closed:
                raise SampleProcessingError(f"Configuration unavailable: {e}") from e

            logger.warning(
                f"Using default configuration: {e}",
                extra={"event": "config_fallback", "agent_uuid": self.agent_uuid},
            )
            return AgentProcessingConfig.default(self.agent_uuid)


def _elapsed_micros(started: float) -> int:
    return int((time.perf_counter() - started) * 1_000_000)
