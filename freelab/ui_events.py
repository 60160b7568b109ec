"""Derive renderer hints the generative output left out.

The backend is asked to emit ``uiEvents`` itself, but it often forgets. The
rules below look at the diff against the pre-action snapshot and append the
obvious events. Explicit events are kept first and in their original order; a
rule only fires when no event with its ``effect`` name exists yet.
"""

from __future__ import annotations

from typing import Any, Callable, List, Optional

from .schemas import Environment, PostAction, UIEvent, ValueUnit


EFFECT_UPDATE_PH_METER = "updatePHMeter"
EFFECT_SPAWN_GAS_BUBBLES = "spawnGasBubbles"
EFFECT_SHOW_PRECIPITATE = "showPrecipitate"


def _ph_meter_event(before: Environment, diff: PostAction) -> Optional[UIEvent]:
    patch = diff.environment
    if patch is None or patch.properties is None:
        return None
    old_ph = before.properties.ph
    new_ph = patch.properties.ph
    if old_ph is None or new_ph is None or old_ph == new_ph:
        return None
    return UIEvent(path="properties.pH", effect=EFFECT_UPDATE_PH_METER, payload={"reading": new_ph})


def _gas_intensity(volume: Any) -> Optional[float]:
    if isinstance(volume, ValueUnit):
        return volume.value
    return volume


def _gas_event(before: Environment, diff: PostAction) -> Optional[UIEvent]:
    patch = diff.environment
    if patch is None or patch.properties is None or patch.properties.instants is None:
        return None
    gas = patch.properties.instants.gas
    if gas is None:
        return None
    return UIEvent(
        path="properties.instants.gas",
        effect=EFFECT_SPAWN_GAS_BUBBLES,
        payload={"compound": gas.compound, "intensity": _gas_intensity(gas.volume)},
    )


def _precipitate_event(before: Environment, diff: PostAction) -> Optional[UIEvent]:
    patch = diff.environment
    if patch is None or patch.contents is None or not patch.contents.solids:
        return None
    solids = {
        name: solid.model_dump(mode="json", by_alias=True, exclude_none=True)
        for name, solid in patch.contents.solids.items()
    }
    return UIEvent(path="contents.solids", effect=EFFECT_SHOW_PRECIPITATE, payload={"solids": solids})


# Order here is the order synthesized events are appended in.
DERIVATION_RULES: List[tuple[str, Callable[[Environment, PostAction], Optional[UIEvent]]]] = [
    (EFFECT_UPDATE_PH_METER, _ph_meter_event),
    (EFFECT_SPAWN_GAS_BUBBLES, _gas_event),
    (EFFECT_SHOW_PRECIPITATE, _precipitate_event),
]


def derive(before: Environment, diff: PostAction) -> List[UIEvent]:
    """Return the diff's explicit events followed by synthesized ones.

    Pure: neither argument is modified.
    """
    events = [event.model_copy(deep=True) for event in (diff.ui_events or [])]
    present = {event.effect for event in events}

    for effect, rule in DERIVATION_RULES:
        if effect in present:
            continue
        event = rule(before, diff)
        if event is not None:
            events.append(event)
            present.add(effect)

    return events


__all__ = [
    "EFFECT_UPDATE_PH_METER",
    "EFFECT_SPAWN_GAS_BUBBLES",
    "EFFECT_SHOW_PRECIPITATE",
    "derive",
]
