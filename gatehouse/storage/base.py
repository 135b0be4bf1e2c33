from __future__ import annotations

from typing import Any, Dict, Optional, Protocol

from gatehouse.auth.models import User

# Dotted field paths accepted by UserStore.find_one().
CRITERIA_FIELDS = ("id", "local.username", "third_party.provider", "third_party.provider_id")


class StoreError(Exception):
    """The user store backend failed (unreachable, write rejected, ...)."""


class UserStore(Protocol):
    """
    Asynchronous user persistence.

    Implementations raise StoreError for any backend failure; a missing record is
    not a failure and is reported as None.
    """

    async def find_one(self, criteria: Dict[str, Any]) -> Optional[User]:
        """Return the first user matching every `dotted.path: value` pair, or None."""
        ...

    async def find_by_id(self, user_id: str) -> Optional[User]:
        ...

    async def save(self, user: User) -> None:
        """Insert the user, or update it if a record with the same id exists."""
        ...


def check_criteria(criteria: Dict[str, Any]) -> None:
    if not criteria:
        raise ValueError("find_one() requires at least one criterion")
    unknown = [k for k in criteria if k not in CRITERIA_FIELDS]
    if unknown:
        raise ValueError(f"Unsupported user criteria: {', '.join(sorted(unknown))}")
