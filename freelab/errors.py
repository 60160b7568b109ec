"""
Error taxonomy for the free-mode step engine.

Every failure a step can end in is a StepError subclass carrying a
machine-readable ``code``, the HTTP-equivalent status, a user-facing message
and structured details. The orchestrator tags each error with the stage at
which it happened so operators can reconcile backend spend against failed
steps.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence


@dataclass(frozen=True, slots=True)
class FieldIssue:
    """One structural violation: dotted field path plus a reason."""

    path: str
    reason: str

    def to_dict(self) -> Dict[str, str]:
        return {"path": self.path, "reason": self.reason}


class StepError(Exception):
    """Base class for every rejection a step can produce."""

    code: str = "INTERNAL_ERROR"
    http_status: int = 500

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})
        self.stage: Optional[str] = None
        super().__init__(message)

    def to_body(self) -> Dict[str, Any]:
        """Return the JSON error envelope sent to the caller."""
        body: Dict[str, Any] = {"error": self.code, "message": self.message}
        body.update(self.details)
        return body


class AuthError(StepError):
    """No claims, or claims that could not be verified."""

    code = "UNAUTHORIZED"
    http_status = 401

    def __init__(self, reason: str = "Missing or invalid credentials") -> None:
        super().__init__(reason)


class AuthorizationError(StepError):
    """Valid identity without access to the classroom."""

    code = "FORBIDDEN"
    http_status = 403

    def __init__(self, *, user_id: str, classroom_id: str) -> None:
        self.user_id = user_id
        self.classroom_id = classroom_id
        super().__init__(f"User is not a member of classroom {classroom_id}")


class ValidationError(StepError):
    """Structural violations in an inbound payload.

    Lists every violation found, not just the first.
    """

    code = "INVALID_INPUT"
    http_status = 400

    def __init__(self, *, issues: Sequence[FieldIssue], kind: str = "request") -> None:
        self.issues: List[FieldIssue] = list(issues)
        self.kind = kind
        super().__init__(
            f"Invalid {kind}: {len(self.issues)} issue(s)",
            details={"issues": [issue.to_dict() for issue in self.issues]},
        )


class QuotaExceededError(StepError):
    """Admission denied: the classroom's monthly spend reached its quota."""

    code = "QUOTA_EXCEEDED"
    http_status = 402

    def __init__(self, *, usage: Dict[str, int], quota: int, month: str) -> None:
        self.usage = usage
        self.quota = quota
        self.month = month
        super().__init__(
            f"Monthly generation quota reached for {month}",
            details={"usage": usage, "quota": quota, "month": month},
        )


class BackendError(StepError):
    """The generative backend call could not be completed."""

    code = "BACKEND_ERROR"
    http_status = 502

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__("The simulation backend is unavailable. Please try again.")

    def __str__(self) -> str:
        return f"{self.message} ({self.reason})"


class MalformedOutputError(StepError):
    """The backend answered, but no usable structure could be recovered.

    ``raw_text`` is kept for offline prompt tuning and is never part of the
    response body.
    """

    code = "MALFORMED_OUTPUT"
    http_status = 500

    def __init__(self, *, raw_text: str, reason: str = "no JSON object could be recovered") -> None:
        self.raw_text = raw_text
        self.reason = reason
        super().__init__("The simulation produced an unusable result. Please try again.")

    def __str__(self) -> str:
        return f"{self.message} ({self.reason})"


class SchemaViolationError(MalformedOutputError):
    """Recovered structure that does not satisfy the PostAction contract."""

    def __init__(self, *, raw_text: str, issues: Sequence[FieldIssue]) -> None:
        self.issues: List[FieldIssue] = list(issues)
        summary = "; ".join(f"{issue.path}: {issue.reason}" for issue in self.issues)
        super().__init__(raw_text=raw_text, reason=f"schema violation: {summary}")


class MeteringError(StepError):
    """Usage storage failed. Fatal once a backend call has been paid for."""

    code = "INTERNAL_ERROR"
    http_status = 500

    def __init__(self, *, classroom_id: str, operation: str, underlying: Exception) -> None:
        self.classroom_id = classroom_id
        self.operation = operation
        self.underlying = underlying
        super().__init__("Usage accounting failed. The step was not completed.")

    def __str__(self) -> str:
        return (
            f"Usage {self.operation} failed for classroom {self.classroom_id}: "
            f"{self.underlying}"
        )


__all__ = [
    "FieldIssue",
    "StepError",
    "AuthError",
    "AuthorizationError",
    "ValidationError",
    "QuotaExceededError",
    "BackendError",
    "MalformedOutputError",
    "SchemaViolationError",
    "MeteringError",
]
