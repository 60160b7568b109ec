"""
Pydantic schemas for the free-mode lab simulation.

All data structures exchanged by the step engine are defined here.

Design Philosophy:
- Wire format is camelCase JSON (``attachedTools``, ``uiEvents``, ``pH``); Python
  attributes are snake_case and populated by either name
- Units are opaque tags; no unit conversion is ever attempted
- Range checks that the normalizer repairs (pH, sound intensity) can be deferred
  through the validation context so raw generative output can be parsed first
  and clamped afterwards
- Diffs (EnvironmentDiff, PostAction) keep only the fields that were actually
  sent, so ``to_wire()`` reproduces a minimal diff
"""

import math
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)


PH_MIN = 0.0
PH_MAX = 14.0
SOUND_INTENSITY_MIN = 0.0
SOUND_INTENSITY_MAX = 1.0

# Validation context key. When true, the bounded fields above are only
# type-checked and their range is left to the normalizer.
DEFER_RANGE_CHECKS = "defer_range_checks"


def _ranges_deferred(info: ValidationInfo) -> bool:
    context = info.context or {}
    return bool(context.get(DEFER_RANGE_CHECKS))


def _enforce_range(
    value: Optional[float],
    low: float,
    high: float,
    info: ValidationInfo,
    label: str,
) -> Optional[float]:
    if value is None or _ranges_deferred(info):
        return value
    if not math.isfinite(value) or not low <= value <= high:
        raise ValueError(f"{label} must be within [{low:g}, {high:g}]")
    return value


class WireModel(BaseModel):
    """Base model for camelCase wire payloads."""

    # NaN and Infinity cannot be sent back as JSON, so they never validate.
    model_config = ConfigDict(populate_by_name=True, allow_inf_nan=False)

    def to_wire(self) -> Dict[str, Any]:
        """Dump to JSON-compatible camelCase, omitting fields that were never set."""
        return self.model_dump(mode="json", by_alias=True, exclude_unset=True)


# ============================================================================
# Environment Schemas
# ============================================================================


class ValueUnit(WireModel):
    """Numeric magnitude with a free-text unit (e.g. ``{value: 20, unit: "mL"}``)."""

    value: float = Field(..., description="Numeric magnitude")
    unit: str = Field(..., description="Opaque unit tag (mL, g, M, °C, s, ...)")


class GasInstant(WireModel):
    """Transient gas effect (bubbles, fumes). Not persisted chemistry."""

    compound: str = Field(..., description="Gas compound, e.g. CO2")
    volume: Optional[Union[ValueUnit, float]] = Field(
        None, description="Arbitrary intensity scalar or a volume with unit"
    )
    color: Optional[str] = None


class SoundInstant(WireModel):
    """Transient sound effect (fizz, pop)."""

    name: str = Field(..., description="Sound name, e.g. fizz")
    intensity: Optional[float] = Field(None, description="Loudness in [0, 1]")

    @field_validator("intensity")
    @classmethod
    def _intensity_in_range(cls, value: Optional[float], info: ValidationInfo) -> Optional[float]:
        return _enforce_range(
            value, SOUND_INTENSITY_MIN, SOUND_INTENSITY_MAX, info, "sound intensity"
        )


class Instants(WireModel):
    """Visual and audio effects that may appear and disappear between steps."""

    gas: Optional[GasInstant] = None
    sound: Optional[SoundInstant] = None


class Properties(WireModel):
    """Physical properties rendered by the UI."""

    temperature: Optional[ValueUnit] = None
    ph: Optional[float] = Field(None, alias="pH", description="Acidity in [0, 14]")
    instants: Optional[Instants] = None

    @field_validator("ph")
    @classmethod
    def _ph_in_range(cls, value: Optional[float], info: ValidationInfo) -> Optional[float]:
        return _enforce_range(value, PH_MIN, PH_MAX, info, "pH")


class Liquid(WireModel):
    volume: ValueUnit
    color: Optional[str] = None


class Solid(WireModel):
    # Mass is optional; some solids are only rendered by color.
    mass: Optional[ValueUnit] = None
    color: Optional[str] = None


class AqueousSpecies(WireModel):
    concentration: ValueUnit = Field(..., description="Concentration, usually in M")


class Contents(WireModel):
    """Vessel contents keyed by substance name."""

    liquids: Dict[str, Liquid] = Field(default_factory=dict)
    solids: Dict[str, Solid] = Field(default_factory=dict)
    aqueous: Dict[str, AqueousSpecies] = Field(default_factory=dict)


def _dedupe(values: List[str]) -> List[str]:
    return list(dict.fromkeys(values))


class Environment(WireModel):
    """A simulated vessel (beaker, flask, ...) in the lab session."""

    id: str = Field(..., description="Stable identifier within the lab session")
    type: str = Field(..., description="Free-text classification, e.g. Beaker")
    properties: Properties = Field(default_factory=Properties)
    contents: Contents = Field(default_factory=Contents)
    attached_tools: List[str] = Field(
        default_factory=list,
        alias="attachedTools",
        description="Ordered set of tool ids attached to this vessel",
    )

    @field_validator("attached_tools")
    @classmethod
    def _ordered_set(cls, value: List[str]) -> List[str]:
        return _dedupe(value)


# ============================================================================
# Action Schemas
# ============================================================================


class AddAction(WireModel):
    type: Literal["add"]
    target: str = Field(..., description="Environment id")
    material: str = Field(..., description="e.g. HCl, CaCO3, Water")
    amount: ValueUnit


class HeatAction(WireModel):
    type: Literal["heat"]
    target: str = Field(..., description="Environment id")
    delta: Optional[ValueUnit] = Field(None, description="Relative change, e.g. +10 °C")
    to: Optional[ValueUnit] = Field(None, description="Absolute target temperature")

    @model_validator(mode="after")
    def _delta_or_to(self) -> "HeatAction":
        if self.delta is None and self.to is None:
            raise ValueError("Provide either 'delta' or 'to' for heat action.")
        return self


class StirAction(WireModel):
    type: Literal["stir"]
    target: str = Field(..., description="Environment id")
    duration: Optional[ValueUnit] = None
    intensity: Optional[Literal["low", "medium", "high"]] = None


# Discriminated on ``type``; the prompt builder matches every variant.
Action = Annotated[Union[AddAction, HeatAction, StirAction], Field(discriminator="type")]


# ============================================================================
# Diff Schemas (generative output contract)
# ============================================================================


class ToolUpdate(WireModel):
    """Partial update for one tool (pH meter reading, thermometer, hot plate...)."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    reading: Optional[float] = None
    status: Optional[Literal["on", "off"]] = None


class UIEvent(WireModel):
    """Renderer-level hint, e.g. ``{path: "properties.pH", effect: "updatePHMeter"}``."""

    path: str
    effect: str
    payload: Optional[Any] = None


class EnvironmentDiff(WireModel):
    """Minimal patch for one environment. Only ``id`` is required."""

    id: str
    type: Optional[str] = None
    properties: Optional[Properties] = None
    contents: Optional[Contents] = None
    attached_tools: Optional[List[str]] = Field(None, alias="attachedTools")


class PostAction(WireModel):
    """What changed after an action, plus UI hints. Never a restated snapshot."""

    environment: Optional[EnvironmentDiff] = None
    tools: Optional[Dict[str, ToolUpdate]] = Field(
        None, description="Partial tool updates keyed by tool id"
    )
    ui_events: Optional[List[UIEvent]] = Field(None, alias="uiEvents")


# ============================================================================
# Step I/O Schemas
# ============================================================================


class ActionRecord(WireModel):
    """One history entry: what the student did and what changed. Immutable."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    action: Action
    result: PostAction
    timestamp: str = Field(..., description="ISO-8601 timestamp")


class StepRequest(WireModel):
    """Payload for one free-mode step."""

    classroom_id: str = Field(..., alias="classroomId", min_length=1)
    env: Environment = Field(..., description="Snapshot before the new action")
    action: Action
    history: List[ActionRecord] = Field(default_factory=list)


class StepResult(WireModel):
    """Successful step response."""

    post_action: PostAction = Field(..., alias="postAction")
    ui_events: List[UIEvent] = Field(default_factory=list, alias="uiEvents")
    tokens_in: int = Field(..., alias="tokensIn", ge=0)
    tokens_out: int = Field(..., alias="tokensOut", ge=0)
    quota_exceeded: Optional[bool] = Field(
        None,
        alias="quotaExceeded",
        description="True when this step's own cost pushed usage past the quota",
    )


# ============================================================================
# Usage Schemas
# ============================================================================


class UsageRow(WireModel):
    """Aggregate usage for one classroom and calendar month."""

    requests: int = 0
    tokens_in: int = Field(0, alias="tokensIn")
    tokens_out: int = Field(0, alias="tokensOut")
    cost_micro_usd: int = Field(0, alias="costMicroUSD")

    def plus(self, delta: "UsageDelta") -> "UsageRow":
        return UsageRow(
            requests=self.requests + delta.requests,
            tokens_in=self.tokens_in + delta.tokens_in,
            tokens_out=self.tokens_out + delta.tokens_out,
            cost_micro_usd=self.cost_micro_usd + delta.cost_micro_usd,
        )


class UsageDelta(WireModel):
    """Increment applied to a UsageRow after a successful backend call."""

    requests: int = Field(1, ge=0)
    tokens_in: int = Field(0, alias="tokensIn", ge=0)
    tokens_out: int = Field(0, alias="tokensOut", ge=0)
    cost_micro_usd: int = Field(0, alias="costMicroUSD", ge=0)
