"""State management modules."""

from .threads import InMemoryThreadStore, Item, ItemKind, PlanStep, PlanUpdate, Role, Thread, ThreadStatus, ThreadStore

__all__ = [
    "InMemoryThreadStore",
    "Item",
    "ItemKind",
    "PlanStep",
    "PlanUpdate",
    "Role",
    "Thread",
    "ThreadStatus",
    "ThreadStore",
]
