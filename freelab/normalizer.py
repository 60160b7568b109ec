"""
Response normalizer: raw generative text -> validated, clamped PostAction.

Generative output is untrusted. Every response goes through the same pipeline:

1. Parse the text as JSON. If that fails, cut out the outermost balanced
   ``{...}`` span (code fences, leading prose) and parse that. NaN and
   +/-Infinity anywhere in the parsed object become 0.
2. Validate against the PostAction contract with range checks deferred.
3. Repair numeric values in place: pH into [0, 14], negative volumes,
   masses and concentrations to 0, sound intensity into [0, 1].
   Missing ``uiEvents`` becomes an empty list.
4. Optionally check that referenced environment/tool ids are known.
5. Re-validate with range checks enforced.

Nothing is invented: repairs only rewrite values that are already present.
"""

from __future__ import annotations

import json
import math
from enum import Enum
from typing import Any, Iterable, List, Optional

from .errors import FieldIssue, MalformedOutputError, SchemaViolationError, ValidationError
from .logging_utils import log_deterministic
from .schemas import (
    PH_MAX,
    PH_MIN,
    SOUND_INTENSITY_MAX,
    SOUND_INTENSITY_MIN,
    PostAction,
    ValueUnit,
)
from .validators import SchemaKind, validate


class UnknownIdPolicy(str, Enum):
    """What to do with diffs that reference ids the caller did not send."""

    ACCEPT = "accept"
    STRIP = "strip"
    REJECT = "reject"


# ============================================================================
# Parsing
# ============================================================================


def _outermost_object_span(text: str) -> Optional[str]:
    """Return the first balanced ``{...}`` span, ignoring braces inside strings."""
    start = text.find("{")
    if start < 0:
        return None

    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return None


def extract_json_object(raw_text: str) -> dict:
    """Parse ``raw_text`` into a JSON object, with best-effort recovery.

    Raises:
        MalformedOutputError: If no JSON object can be recovered
    """
    text = (raw_text or "").strip()
    if not text:
        raise MalformedOutputError(raw_text=raw_text or "", reason="empty response")

    try:
        value: Any = json.loads(text)
    except json.JSONDecodeError:
        value = None
    if isinstance(value, dict):
        return value

    span = _outermost_object_span(text)
    if span is None:
        raise MalformedOutputError(raw_text=raw_text)
    try:
        value = json.loads(span)
    except json.JSONDecodeError as exc:
        raise MalformedOutputError(
            raw_text=raw_text, reason=f"recovered span is not valid JSON: {exc.msg}"
        ) from exc
    if not isinstance(value, dict):  # pragma: no cover - a {...} span always decodes to a dict
        raise MalformedOutputError(raw_text=raw_text, reason="top-level value is not an object")
    return value


# ============================================================================
# Repairs
# ============================================================================


def replace_non_finite(value: Any, path: str = "", repairs: Optional[List[str]] = None) -> Any:
    """Return a copy of a parsed JSON tree with NaN and +/-Infinity replaced by 0.

    ``json.loads`` accepts these constants but a JSON response cannot carry
    them, so every numeric leaf is covered: tool readings, free-form tool keys
    and UI event payloads included.
    """
    if isinstance(value, float) and not math.isfinite(value):
        if repairs is not None:
            repairs.append(f"{path or 'root'}: {value!r} -> 0")
        return 0.0
    if isinstance(value, dict):
        return {
            key: replace_non_finite(item, f"{path}.{key}" if path else str(key), repairs)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [
            replace_non_finite(item, f"{path}.{index}" if path else str(index), repairs)
            for index, item in enumerate(value)
        ]
    return value


def clamp_ph(value: float) -> float:
    """Clamp pH into [0, 14]; non-finite values become 0."""
    if not math.isfinite(value):
        return PH_MIN
    return min(PH_MAX, max(PH_MIN, value))


def _non_negative(value: float) -> float:
    if not math.isfinite(value) or value < 0:
        return 0.0
    return value


def _clamp_quantity(quantity: Optional[ValueUnit], label: str, repairs: List[str]) -> None:
    if quantity is None:
        return
    repaired = _non_negative(quantity.value)
    if repaired != quantity.value:
        repairs.append(f"{label}: {quantity.value!r} -> {repaired:g}")
        quantity.value = repaired


def clamp_post_action(post_action: PostAction) -> List[str]:
    """Repair out-of-range values in place. Returns a description of each repair."""
    repairs: List[str] = []
    env = post_action.environment

    if env is not None and env.properties is not None:
        props = env.properties
        if props.ph is not None:
            repaired = clamp_ph(props.ph)
            if repaired != props.ph:
                repairs.append(f"environment.properties.pH: {props.ph!r} -> {repaired:g}")
                props.ph = repaired

        instants = props.instants
        if instants is not None and instants.gas is not None:
            gas = instants.gas
            if isinstance(gas.volume, ValueUnit):
                _clamp_quantity(gas.volume, "environment.properties.instants.gas.volume", repairs)
            elif gas.volume is not None:
                repaired = _non_negative(gas.volume)
                if repaired != gas.volume:
                    repairs.append(
                        f"environment.properties.instants.gas.volume: {gas.volume!r} -> {repaired:g}"
                    )
                    gas.volume = repaired
        if instants is not None and instants.sound is not None:
            sound = instants.sound
            if sound.intensity is not None:
                raw = sound.intensity
                repaired = (
                    min(SOUND_INTENSITY_MAX, max(SOUND_INTENSITY_MIN, raw))
                    if math.isfinite(raw)
                    else SOUND_INTENSITY_MIN
                )
                if repaired != raw:
                    repairs.append(
                        f"environment.properties.instants.sound.intensity: {raw!r} -> {repaired:g}"
                    )
                    sound.intensity = repaired

    if env is not None and env.contents is not None:
        contents = env.contents
        for name, liquid in contents.liquids.items():
            _clamp_quantity(liquid.volume, f"environment.contents.liquids.{name}.volume", repairs)
        for name, solid in contents.solids.items():
            _clamp_quantity(solid.mass, f"environment.contents.solids.{name}.mass", repairs)
        for name, species in contents.aqueous.items():
            _clamp_quantity(
                species.concentration,
                f"environment.contents.aqueous.{name}.concentration",
                repairs,
            )

    if post_action.ui_events is None:
        post_action.ui_events = []

    return repairs


# ============================================================================
# Referential integrity
# ============================================================================


def _check_known_ids(
    post_action: PostAction,
    raw_text: str,
    known_environment_ids: Optional[Iterable[str]],
    known_tool_ids: Optional[Iterable[str]],
    policy: UnknownIdPolicy,
) -> None:
    if policy is UnknownIdPolicy.ACCEPT:
        return

    issues: List[FieldIssue] = []
    env = post_action.environment
    if known_environment_ids is not None and env is not None:
        if env.id not in set(known_environment_ids):
            issues.append(FieldIssue(path="environment.id", reason=f"unknown environment id {env.id!r}"))
            if policy is UnknownIdPolicy.STRIP:
                post_action.environment = None

    if known_tool_ids is not None and post_action.tools:
        known_tools = set(known_tool_ids)
        unknown = [tool_id for tool_id in post_action.tools if tool_id not in known_tools]
        for tool_id in unknown:
            issues.append(FieldIssue(path=f"tools.{tool_id}", reason=f"unknown tool id {tool_id!r}"))
        if unknown and policy is UnknownIdPolicy.STRIP:
            post_action.tools = {
                tool_id: update
                for tool_id, update in post_action.tools.items()
                if tool_id in known_tools
            }

    if not issues:
        return
    if policy is UnknownIdPolicy.REJECT:
        raise SchemaViolationError(raw_text=raw_text, issues=issues)
    for issue in issues:
        log_deterministic(f"[Normalizer] Stripped {issue.path} ({issue.reason})")


# ============================================================================
# Entry point
# ============================================================================


def normalize(
    raw_text: str,
    *,
    known_environment_ids: Optional[Iterable[str]] = None,
    known_tool_ids: Optional[Iterable[str]] = None,
    policy: UnknownIdPolicy | str = UnknownIdPolicy.ACCEPT,
) -> PostAction:
    """Turn raw generative text into a PostAction that satisfies every invariant.

    Raises:
        MalformedOutputError: If no JSON object can be recovered
        SchemaViolationError: If the object does not match the PostAction
            contract, or references unknown ids under the ``reject`` policy
    """
    policy = UnknownIdPolicy(policy)
    repairs: List[str] = []
    parsed = replace_non_finite(extract_json_object(raw_text), repairs=repairs)

    try:
        draft: PostAction = validate(parsed, SchemaKind.POST_ACTION, defer_range_checks=True)
    except ValidationError as exc:
        raise SchemaViolationError(raw_text=raw_text, issues=exc.issues) from exc

    repairs.extend(clamp_post_action(draft))
    for repair in repairs:
        log_deterministic(f"[Normalizer] Clamped {repair}")

    _check_known_ids(draft, raw_text, known_environment_ids, known_tool_ids, policy)

    # Only fields that were present in the response (plus uiEvents) survive the round trip.
    payload = draft.model_dump(by_alias=True, exclude_unset=True)
    try:
        return validate(payload, SchemaKind.POST_ACTION)
    except ValidationError as exc:  # pragma: no cover - repairs above cover every range check
        raise SchemaViolationError(raw_text=raw_text, issues=exc.issues) from exc


__all__ = [
    "UnknownIdPolicy",
    "clamp_ph",
    "clamp_post_action",
    "extract_json_object",
    "replace_non_finite",
    "normalize",
]
