"""Helpers for turning pydantic validation failures into field-level issues."""

from __future__ import annotations

from typing import Any, List

from pydantic import ValidationError

from .errors import FieldIssue


def _truncate_preview(value: Any, *, limit: int = 80) -> str:
    """Return a compact preview of the offending input value."""

    if value is None:
        return "null"
    text = repr(value)
    if len(text) > limit:
        return text[: limit - 3] + "..."
    return text


def preview_text(text: str, *, limit: int = 200) -> str:
    """Single-line preview of raw generative output for logs."""

    flat = " ".join(text.split())
    if len(flat) > limit:
        return flat[: limit - 3] + "..."
    return flat


def collect_validation_issues(error: ValidationError) -> List[FieldIssue]:
    """Flatten a pydantic ValidationError into FieldIssue entries.

    Every violation is kept, in the order pydantic reports them. Paths use dot
    notation over the wire (alias) names, e.g. ``env.properties.pH``.
    """

    issues: List[FieldIssue] = []
    for err in error.errors(include_url=False):  # pragma: no branch - typically small
        loc = ".".join(str(part) for part in err.get("loc", [])) or "root"
        reason = err.get("msg", "validation error")
        err_type = err.get("type")
        if err_type:
            reason += f" [type={err_type}]"
        if "input" in err and err_type != "missing":
            reason += f" | received={_truncate_preview(err.get('input'))}"
        issues.append(FieldIssue(path=loc, reason=reason))

    # Safety net for empty error lists
    if not issues:
        issues.append(FieldIssue(path="root", reason="value did not match the expected schema"))

    return issues


__all__ = ["collect_validation_issues", "preview_text"]
