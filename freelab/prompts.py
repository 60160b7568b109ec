"""Prompt templates and the deterministic step prompt builder."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Sequence, Tuple

from .schemas import (
    ActionRecord,
    AddAction,
    Environment,
    HeatAction,
    StirAction,
)


DEFAULT_HISTORY_WINDOW = 3


@dataclass
class PromptTemplate:
    """Represents a templated prompt with placeholders."""

    name: str
    system: str
    user: str
    description: str = ""


class PromptLibrary:
    """Container for named prompt templates."""

    def __init__(self) -> None:
        self.templates: Dict[str, PromptTemplate] = {}

    def register(self, template: PromptTemplate) -> None:
        self.templates[template.name] = template

    def get(self, name: str) -> PromptTemplate:
        return self.templates[name]


# Output contract ---------------------------------------------------------------

OUTPUT_SHAPE = """{
  "environment": {
    "id": "<environment id, required whenever environment is present>",
    "type": "<string, only if changed>",
    "properties": {
      "temperature": {"value": <number>, "unit": "<string>"},
      "pH": <number between 0 and 14>,
      "instants": {
        "gas": {"compound": "<string>", "volume": <number>, "color": "<string>"},
        "sound": {"name": "<string>", "intensity": <number between 0 and 1>}
      }
    },
    "contents": {
      "liquids": {"<name>": {"volume": {"value": <number >= 0>, "unit": "<string>"}, "color": "<string>"}},
      "solids": {"<name>": {"mass": {"value": <number >= 0>, "unit": "<string>"}, "color": "<string>"}},
      "aqueous": {"<species>": {"concentration": {"value": <number >= 0>, "unit": "M"}}}
    },
    "attachedTools": ["<tool id>"]
  },
  "tools": {"<tool id>": {"reading": <number>, "status": "on" | "off"}},
  "uiEvents": [{"path": "<dotted path>", "effect": "<effect name>", "payload": {}}]
}"""

STEP_SYSTEM_PROMPT = (
    "You are the simulation engine of a virtual chemistry lab. Given one vessel, the "
    "student's action and the most recent steps, return what changed as a single JSON "
    "object.\n\n"
    "Output contract (every key is optional except environment.id):\n"
    "{{output_shape}}\n\n"
    "Hard rules:\n"
    "1. Return ONLY the JSON object. No prose, no code fences.\n"
    "2. Minimal diff: include only fields whose value changed. Omit unchanged fields, "
    "omit \"environment\" entirely if the vessel did not change, omit \"tools\" if no tool changed.\n"
    "3. Never invent ids. environment.id must be one of: {{known_environment_ids}}. "
    "Tool ids must be one of: {{known_tool_ids}}.\n"
    "4. pH must stay within [0, 14]. Volumes, masses and concentrations are never negative.\n"
    "5. Use the same units the input uses.\n\n"
    "Guidance (soft, use judgement):\n"
    "- Adding an acid lowers pH; adding a base raises pH.\n"
    "- A carbonate meeting an acid releases gas: report it in properties.instants.gas "
    "(e.g. CO2) and add a \"spawnGasBubbles\" UI event.\n"
    "- Heating raises temperature.\n"
    "- Stirring mixes contents but does not change the chemistry.\n"
    "- When a pH meter is attached and pH changes, update its reading in \"tools\"."
)

STEP_USER_PROMPT = (
    "Action:\n{{action_text}}\n\n"
    "Action JSON:\n{{action_json}}\n\n"
    "Current vessel state:\n{{environment_json}}\n\n"
    "Recent history (oldest first, at most {{history_window}} steps):\n{{history_json}}\n\n"
    "Return the JSON diff now."
)

DEFAULT_PROMPTS = PromptLibrary()

DEFAULT_PROMPTS.register(
    PromptTemplate(
        name="step",
        system=STEP_SYSTEM_PROMPT,
        user=STEP_USER_PROMPT,
        description="Free-mode step: environment + action + history -> PostAction diff.",
    )
)


@dataclass(frozen=True)
class StepPrompt:
    """Rendered instruction payload for one step.

    ``instructions`` is the system prompt, ``context`` the user prompt, and
    ``history`` the window of records that went into the context.
    """

    instructions: str
    context: str
    history: Tuple[ActionRecord, ...] = ()


# Rendering ----------------------------------------------------------------------


def _quantity(value: Any) -> str:
    return f"{value.value:g} {value.unit}".strip()


def describe_action(action: Any) -> str:
    """One-line natural language description of an action."""
    if isinstance(action, AddAction):
        return f"Add {_quantity(action.amount)} of {action.material} to {action.target}."
    if isinstance(action, HeatAction):
        parts = []
        if action.delta is not None:
            parts.append(f"by {_quantity(action.delta)}")
        if action.to is not None:
            parts.append(f"to {_quantity(action.to)}")
        return f"Heat {action.target} {' and '.join(parts)}."
    if isinstance(action, StirAction):
        details = []
        if action.intensity is not None:
            details.append(f"{action.intensity} intensity")
        if action.duration is not None:
            details.append(f"for {_quantity(action.duration)}")
        suffix = f" ({', '.join(details)})" if details else ""
        return f"Stir {action.target}{suffix}."
    raise TypeError(f"Unsupported action type: {type(action).__name__}")


def _dump(payload: Any) -> str:
    # sort_keys makes the text independent of mapping insertion order
    return json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False)


def _model_json(model: Any) -> Any:
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


def render_prompt(template: PromptTemplate, replacements: Dict[str, str]) -> Tuple[str, str]:
    """Replace ``{{placeholder}}`` markers in both halves of a template.

    Placeholders use double braces to avoid conflicts with JSON braces.
    Unknown placeholders are left as-is.
    """
    system = template.system
    user = template.user
    for placeholder, value in replacements.items():
        system = system.replace(placeholder, value)
        user = user.replace(placeholder, value)
    return system, user


def build_step_prompt(
    env: Environment,
    action: Any,
    history: Sequence[ActionRecord] = (),
    *,
    history_window: int = DEFAULT_HISTORY_WINDOW,
    template: PromptTemplate | None = None,
) -> StepPrompt:
    """Build the instruction payload for one step.

    Pure and deterministic: the same inputs always render the same text. Only
    the last ``history_window`` records are used, in their original order.
    """
    template = template or DEFAULT_PROMPTS.get("step")
    window = tuple(history[-history_window:]) if history_window > 0 else ()

    known_tools = ", ".join(f'"{tool_id}"' for tool_id in env.attached_tools) or "(none)"
    replacements: Dict[str, str] = {
        "{{output_shape}}": OUTPUT_SHAPE,
        "{{known_environment_ids}}": f'"{env.id}"',
        "{{known_tool_ids}}": known_tools,
        "{{action_text}}": describe_action(action),
        "{{action_json}}": _dump(_model_json(action)),
        "{{environment_json}}": _dump(_model_json(env)),
        "{{history_window}}": str(history_window),
        "{{history_json}}": _dump([_model_json(record) for record in window]),
    }

    system, user = render_prompt(template, replacements)
    return StepPrompt(instructions=system, context=user, history=window)


__all__ = [
    "PromptTemplate",
    "PromptLibrary",
    "DEFAULT_PROMPTS",
    "DEFAULT_HISTORY_WINDOW",
    "StepPrompt",
    "build_step_prompt",
    "describe_action",
    "render_prompt",
]
