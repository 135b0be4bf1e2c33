"""In-memory user store for development and tests (default when Postgres is not configured)."""

from __future__ import annotations

import copy
from typing import Any, Dict, List, Optional

from gatehouse.auth.models import User
from gatehouse.storage.base import check_criteria


def _resolve(user: User, path: str) -> Any:
    value: Any = user
    for part in path.split("."):
        if value is None:
            return None
        value = getattr(value, part, None)
    return value


class InMemoryUserStore:
    """
    Dict-backed UserStore.

    Records are copied on save and on read, so callers holding a returned User
    cannot change what is stored without calling save() again. Like the Postgres
    store's lookups, nothing here serializes a find_one() followed by save().
    """

    def __init__(self) -> None:
        self._users: Dict[str, User] = {}

    async def find_one(self, criteria: Dict[str, Any]) -> Optional[User]:
        check_criteria(criteria)
        for user in self._users.values():
            if all(_resolve(user, path) == value for path, value in criteria.items()):
                return copy.deepcopy(user)
        return None

    async def find_by_id(self, user_id: str) -> Optional[User]:
        user = self._users.get(user_id)
        return copy.deepcopy(user) if user is not None else None

    async def save(self, user: User) -> None:
        self._users[user.id] = copy.deepcopy(user)

    def users(self) -> List[User]:
        return [copy.deepcopy(u) for u in self._users.values()]

    def __len__(self) -> int:
        return len(self._users)
