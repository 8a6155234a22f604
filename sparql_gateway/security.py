"""SPARQL Gateway - Update authorization."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from .errors import AuthorizationError

__all__ = ["Principal", "ANONYMOUS", "authorize_update", "can_update"]


@dataclass(frozen=True)
class Principal:
    """Authenticated caller as supplied by the transport."""

    name: str
    roles: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def of(cls, name: str, roles: Iterable[str] = ()) -> Principal:
        return cls(name=name, roles=frozenset(roles))


ANONYMOUS = Principal("anonymous")


def can_update(principal: Principal | None, enabled: bool,
               allowed_roles: Iterable[str]) -> bool:
    """With security disabled everyone may update; otherwise one allowed role is needed."""
    if not enabled:
        return True
    if principal is None:
        return False
    return bool(principal.roles & frozenset(allowed_roles))


def authorize_update(principal: Principal | None, enabled: bool,
                     allowed_roles: Iterable[str]) -> None:
    """Raise AuthorizationError unless *principal* may submit updates."""
    if not can_update(principal, enabled, allowed_roles):
        raise AuthorizationError("You cannot perform this action")
