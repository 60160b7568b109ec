"""
Lab session timelines: setup, environment snapshots and action history.

A timeline file captures one free-mode session as JSON:

```json
{
  "setup": {
    "materials": [{"name": "HCl", "state": "liquid"}],
    "tools": [{"id": "pHmeter1", "type": "pHMeter"}],
    "environments": [{"id": "Beaker1", "type": "Beaker"}]
  },
  "environments": {"Beaker1": {"id": "Beaker1", "type": "Beaker", ...}},
  "history": [{"action": {...}, "result": {...}, "timestamp": "..."}]
}
```

``apply_post_action`` folds a minimal diff into an environment snapshot, which
is how a session moves from one step to the next.
"""

import json
from pathlib import Path
from typing import Dict, List, Literal, Optional

from pydantic import Field

from .schemas import (
    Action,
    ActionRecord,
    Environment,
    PostAction,
    ValueUnit,
    WireModel,
)


# ============================================================================
# Setup Schemas
# ============================================================================


class MaterialSpec(WireModel):
    """A material the student may add during the session."""

    name: str
    state: Literal["liquid", "solid", "gas"]
    concentration: Optional[ValueUnit] = None
    unlimited: bool = False


class ToolSpec(WireModel):
    id: str
    type: str


class EnvironmentSpec(WireModel):
    id: str
    type: str
    capacity: Optional[ValueUnit] = None


class Setup(WireModel):
    """Materials, tools and vessels an experiment starts with."""

    materials: List[MaterialSpec] = Field(..., min_length=1)
    tools: Optional[List[ToolSpec]] = None
    environments: List[EnvironmentSpec] = Field(..., min_length=1)


# ============================================================================
# Diff application
# ============================================================================


def apply_post_action(env: Environment, post_action: PostAction) -> Environment:
    """Return a new snapshot with ``post_action``'s environment patch merged in.

    Properties and content entries merge per key. Instants are transient: they
    are replaced by the patch's instants, or cleared when the patch has none.
    A patch for a different environment id leaves the snapshot untouched.
    The input snapshot is never mutated.
    """
    updated = env.model_copy(deep=True)
    patch = post_action.environment
    if patch is None or patch.id != env.id:
        return updated

    if patch.type is not None:
        updated.type = patch.type

    props = updated.properties
    props.instants = None
    if patch.properties is not None:
        sent = patch.properties.model_fields_set
        if "temperature" in sent:
            props.temperature = patch.properties.temperature
        if "ph" in sent:
            props.ph = patch.properties.ph
        if patch.properties.instants is not None:
            props.instants = patch.properties.instants.model_copy(deep=True)

    if patch.contents is not None:
        for section in patch.contents.model_fields_set:
            target: Dict = getattr(updated.contents, section)
            for name, entry in getattr(patch.contents, section).items():
                target[name] = entry.model_copy(deep=True)

    if patch.attached_tools is not None:
        updated.attached_tools = list(dict.fromkeys(patch.attached_tools))

    return updated


# ============================================================================
# Timeline file
# ============================================================================


class TimelineFile(WireModel):
    """Persisted free-mode session."""

    setup: Setup
    environments: Dict[str, Environment] = Field(default_factory=dict)
    history: List[ActionRecord] = Field(default_factory=list)

    def record(self, action: Action, result: PostAction, timestamp: str) -> ActionRecord:
        """Append a history entry and fold its diff into the target environment."""
        entry = ActionRecord(action=action, result=result, timestamp=timestamp)
        self.history.append(entry)

        env = self.environments.get(action.target)
        if env is not None:
            self.environments[action.target] = apply_post_action(env, result)
        return entry


def load_timeline(path: Path | str) -> TimelineFile:
    """Load a timeline JSON file.

    Raises:
        FileNotFoundError: If the file does not exist
        json.JSONDecodeError: If the file is not valid JSON
        pydantic.ValidationError: If the JSON does not match the timeline schema
    """
    timeline_path = Path(path)
    if not timeline_path.exists():
        raise FileNotFoundError(f"Timeline not found at {timeline_path}")

    data = json.loads(timeline_path.read_text("utf-8"))
    return TimelineFile.model_validate(data)


def save_timeline(path: Path | str, timeline: TimelineFile) -> None:
    """Write a timeline as pretty-printed JSON, creating parent directories."""
    timeline_path = Path(path)
    timeline_path.parent.mkdir(parents=True, exist_ok=True)
    payload = timeline.model_dump(mode="json", by_alias=True, exclude_none=True)
    timeline_path.write_text(json.dumps(payload, indent=2), "utf-8")
