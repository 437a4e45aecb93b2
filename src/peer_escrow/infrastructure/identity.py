"""Identity collaborator.

The engine only needs two booleans per user. Profile management and the
verification process itself live elsewhere.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class UserIdentity:
    user_id: str
    is_authenticated: bool
    is_verified: bool


@runtime_checkable
class IdentityProvider(Protocol):
    async def get_identity(self, user_id: str) -> UserIdentity: ...


class HeaderIdentityProvider:
    """Treats any caller that presented a user id as authenticated.

    Verification status comes from a static allow-list; used when no
    identity service is wired in.
    """

    def __init__(self, verified_user_ids: frozenset[str] = frozenset()) -> None:
        self._verified = verified_user_ids

    async def get_identity(self, user_id: str) -> UserIdentity:
        return UserIdentity(
            user_id=user_id,
            is_authenticated=bool(user_id),
            is_verified=user_id in self._verified,
        )
