"""
Processing Rule Schema
======================

Rules are a tagged variant keyed by ``name``. Each known rule carries its own
typed parameter model; names the pipeline does not know are kept as
``UnrecognizedRule`` so that a configuration using them still loads.

Validation happens when a configuration is parsed, never while a sample is
being processed.
"""

from collections import deque
from datetime import datetime
from typing import Annotated, Any, Deque, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Discriminator,
    Field,
    PrivateAttr,
    Tag,
)

MOVING_AVERAGE = "moving_average"
OUTLIER_DETECTION = "outlier_detection"

KNOWN_RULES = (MOVING_AVERAGE, OUTLIER_DETECTION)


def _enabled_flag(value: Any) -> bool:
    return value if isinstance(value, bool) else False


# Only a literal JSON true enables a rule; a missing or non-boolean flag disables it
RuleEnabled = Annotated[bool, BeforeValidator(_enabled_flag)]


class MovingAverageParams(BaseModel):
    model_config = ConfigDict(extra="allow")

    window_size: int = Field(default=5, ge=1, description="Number of values averaged")


class OutlierDetectionParams(BaseModel):
    model_config = ConfigDict(extra="allow")

    threshold_sigma: Optional[float] = Field(
        default=None, description="Band half-width in sigma units (negative inverts the band)"
    )


class MovingAverageRule(BaseModel):
    """
    Smooths the running value with the mean of the last ``window_size`` values.

    The window belongs to this rule instance. ``apply`` only stages the value;
    ``commit`` adds it to the window once the sample has been fully handled, and
    ``discard`` drops it so a redelivered sample is not counted twice. A rule
    parsed from a fresh configuration has an empty window, so its first output
    equals its input.
    """

    name: Literal["moving_average"] = MOVING_AVERAGE
    enabled: RuleEnabled = False
    params: MovingAverageParams = Field(default_factory=MovingAverageParams)

    _window: Deque[float] = PrivateAttr(default=None)
    _staged: Optional[float] = PrivateAttr(default=None)

    def model_post_init(self, __context: Any) -> None:
        self._window = deque(maxlen=self.params.window_size)

    def apply(self, value: float) -> float:
        self._staged = value
        values = (list(self._window) + [value])[-self.params.window_size:]
        return sum(values) / len(values)

    def commit(self) -> None:
        if self._staged is not None:
            self._window.append(self._staged)
            self._staged = None

    def discard(self) -> None:
        self._staged = None

    @property
    def window(self) -> List[float]:
        return list(self._window)

    def reset(self) -> None:
        self._window.clear()
        self._staged = None


class OutlierDetectionRule(BaseModel):
    """Supplies the anomaly band; never changes the value."""

    name: Literal["outlier_detection"] = OUTLIER_DETECTION
    enabled: RuleEnabled = False
    params: OutlierDetectionParams = Field(default_factory=OutlierDetectionParams)

    def apply(self, value: float) -> float:
        return value

    def commit(self) -> None:
        pass

    def discard(self) -> None:
        pass


class UnrecognizedRule(BaseModel):
    """Rule with a name the pipeline does not implement. Ignored."""

    name: str
    enabled: RuleEnabled = False
    params: Dict[str, Any] = Field(default_factory=dict)


def _rule_tag(value: Any) -> str:
    if isinstance(value, dict):
        name = value.get("name")
    else:
        name = getattr(value, "name", None)
    return name if name in KNOWN_RULES else "unrecognized"


ProcessingRule = Annotated[
    Union[
        Annotated[MovingAverageRule, Tag(MOVING_AVERAGE)],
        Annotated[OutlierDetectionRule, Tag(OUTLIER_DETECTION)],
        Annotated[UnrecognizedRule, Tag("unrecognized")],
    ],
    Discriminator(_rule_tag),
]


class AgentProcessingConfig(BaseModel):
    """Processing configuration of one agent, as served by the config store"""

    model_config = ConfigDict(populate_by_name=True)

    uuid: str = ""
    agent_uuid: str = ""
    sensor_type: str = Field(default="", description="Sensor type the rules target ('' = any)")
    rules: List[ProcessingRule] = Field(default_factory=list, alias="processing_rules")
    output_streams: List[str] = Field(default_factory=list)
    enabled: bool = True
    updated_at: Optional[datetime] = None

    @classmethod
    def default(cls, agent_uuid: str) -> "AgentProcessingConfig":
        """Empty rule set used when the store has nothing for this agent."""
        return cls(agent_uuid=agent_uuid)

    def rules_for(self, sensor_type: str) -> List[ProcessingRule]:
        """
        Rules that apply to a sample of the given sensor type.

        A disabled configuration, or one scoped to a different sensor type,
        contributes no rules.
        """
        if not self.enabled:
            return []
        if self.sensor_type and sensor_type and self.sensor_type != sensor_type:
            return []
        return list(self.rules)
