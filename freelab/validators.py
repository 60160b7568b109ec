"""
Structural validators for every entity the step engine accepts or emits.

``validate(value, kind)`` checks a JSON-like value against the schema for
``kind`` and either returns the typed model or raises
:class:`freelab.errors.ValidationError` listing every violation.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List

from pydantic import TypeAdapter, ValidationError as PydanticValidationError

from .errors import ValidationError
from .llm_utils import collect_validation_issues
from .schemas import (
    DEFER_RANGE_CHECKS,
    Action,
    ActionRecord,
    Environment,
    PostAction,
    StepRequest,
    ToolUpdate,
    UIEvent,
)
from .timeline import Setup, TimelineFile


class SchemaKind(str, Enum):
    ENVIRONMENT = "environment"
    ACTION = "action"
    ACTION_RECORD = "action_record"
    HISTORY = "history"
    POST_ACTION = "post_action"
    TOOL_UPDATE = "tool_update"
    UI_EVENT = "ui_event"
    STEP_REQUEST = "step_request"
    SETUP = "setup"
    TIMELINE = "timeline"


_ADAPTERS: Dict[SchemaKind, TypeAdapter] = {
    SchemaKind.ENVIRONMENT: TypeAdapter(Environment),
    SchemaKind.ACTION: TypeAdapter(Action),
    SchemaKind.ACTION_RECORD: TypeAdapter(ActionRecord),
    SchemaKind.HISTORY: TypeAdapter(List[ActionRecord]),
    SchemaKind.POST_ACTION: TypeAdapter(PostAction),
    SchemaKind.TOOL_UPDATE: TypeAdapter(ToolUpdate),
    SchemaKind.UI_EVENT: TypeAdapter(UIEvent),
    SchemaKind.STEP_REQUEST: TypeAdapter(StepRequest),
    SchemaKind.SETUP: TypeAdapter(Setup),
    SchemaKind.TIMELINE: TypeAdapter(TimelineFile),
}


def validate(value: Any, kind: SchemaKind | str, *, defer_range_checks: bool = False) -> Any:
    """Validate ``value`` against the schema for ``kind``.

    Args:
        value: Decoded JSON (dicts, lists, scalars)
        kind: Which entity to validate as
        defer_range_checks: Only type-check pH and sound intensity; their range
            is repaired later by the normalizer

    Returns:
        The validated model (or list of models for ``history``)

    Raises:
        ValidationError: With one FieldIssue per structural violation
    """
    kind = SchemaKind(kind)
    adapter = _ADAPTERS[kind]
    try:
        return adapter.validate_python(
            value, context={DEFER_RANGE_CHECKS: defer_range_checks}
        )
    except PydanticValidationError as exc:
        raise ValidationError(
            issues=collect_validation_issues(exc), kind=kind.value
        ) from exc


__all__ = ["SchemaKind", "validate"]
