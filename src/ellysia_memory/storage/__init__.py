"""Persistent storage backend for memory fragments."""

from __future__ import annotations

from .sqlite_store import PersistentStore

__all__ = ["PersistentStore"]
