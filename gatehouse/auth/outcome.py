"""
Result of a single authentication attempt.

Every signup/login/third-party login resolves to exactly one of:

- InfrastructureError: the user store failed; callers treat it as unexpected (500).
- Rejected: the user did something wrong (taken username, bad password); carries a
  message safe to show to that user.
- Success: the authenticated (or newly created) user.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from gatehouse.auth.models import User

USERNAME_TAKEN = "This username is taken"
USERNAME_NOT_FOUND = "Username not found"
PASSWORD_INCORRECT = "Password incorrect"


@dataclass(frozen=True)
class InfrastructureError:
    cause: BaseException


@dataclass(frozen=True)
class Rejected:
    message: str


@dataclass(frozen=True)
class Success:
    user: User


Outcome = Union[InfrastructureError, Rejected, Success]
