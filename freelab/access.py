"""Authentication and classroom membership collaborators.

The step engine only needs two answers: who is calling, and may they use this
classroom. Token verification and membership storage live elsewhere; these
interfaces are the seam.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple

from pydantic import BaseModel


class Claims(BaseModel):
    """Verified identity of the caller."""

    user_id: str
    role: str = "student"


class ClaimsProvider(ABC):
    @abstractmethod
    def get_claims(self, request: Any) -> Optional[Claims]:
        """Return the caller's claims, or None when absent or invalid."""
        pass


class StaticClaimsProvider(ClaimsProvider):
    """Always returns the same claims (tests and local runs)."""

    def __init__(self, claims: Optional[Claims]) -> None:
        self.claims = claims

    def get_claims(self, request: Any) -> Optional[Claims]:
        return self.claims


def _headers_of(request: Any) -> Mapping[str, str]:
    # Starlette requests are Mappings over the ASGI scope, so look for headers first.
    headers = getattr(request, "headers", None)
    if headers is not None:
        return headers
    if isinstance(request, Mapping):
        return request
    return {}


class BearerClaimsProvider(ClaimsProvider):
    """Reads ``Authorization: Bearer <token>`` and delegates verification.

    ``verify_token`` returns the decoded payload (``sub`` and ``role``) or
    raises for an invalid or expired token.
    """

    def __init__(self, verify_token: Callable[[str], Dict[str, Any]]) -> None:
        self.verify_token = verify_token

    def get_claims(self, request: Any) -> Optional[Claims]:
        headers = _headers_of(request)
        auth = headers.get("authorization") or headers.get("Authorization")
        if not auth or not auth.startswith("Bearer "):
            return None
        token = auth[len("Bearer ") :].strip()
        if not token:
            return None
        try:
            payload = self.verify_token(token)
        except Exception:
            # An unverifiable token is the same as no token: 401.
            return None
        subject = payload.get("sub")
        if not subject:
            return None
        return Claims(user_id=str(subject), role=str(payload.get("role") or "student"))


class MembershipChecker(ABC):
    @abstractmethod
    async def is_member(self, user_id: str, classroom_id: str) -> bool:
        """Whether the user may act inside the classroom."""
        pass


class InMemoryMembership(MembershipChecker):
    """Membership from (user_id, classroom_id) pairs.

    Classroom owners (instructors) count as members of their own classrooms.
    """

    def __init__(
        self,
        memberships: Iterable[Tuple[str, str]] = (),
        owners: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.memberships = set(memberships)
        self.owners: Dict[str, str] = dict(owners or {})

    def add(self, user_id: str, classroom_id: str) -> None:
        self.memberships.add((user_id, classroom_id))

    async def is_member(self, user_id: str, classroom_id: str) -> bool:
        if self.owners.get(classroom_id) == user_id:
            return True
        return (user_id, classroom_id) in self.memberships


__all__ = [
    "Claims",
    "ClaimsProvider",
    "StaticClaimsProvider",
    "BearerClaimsProvider",
    "MembershipChecker",
    "InMemoryMembership",
]
