"""State management helpers for zen."""
from __future__ import annotations

from .models import Channel, Instance, InstanceStatus, OperationRecord, User
from .store import StateStore, StateStoreError

__all__ = [
    "Channel",
    "Instance",
    "InstanceStatus",
    "OperationRecord",
    "StateStore",
    "StateStoreError",
    "User",
]
