"""
User persistence for Gatehouse.

`UserStore` is the async interface the authentication coordinator talks to; the
in-memory and Postgres implementations are selected by `create_user_store()`.
"""
from __future__ import annotations

from gatehouse.storage.base import StoreError, UserStore
from gatehouse.storage.factory import create_user_store

__all__ = ["StoreError", "UserStore", "create_user_store"]
