"""Thread, item and plan records plus the thread store contract."""

from __future__ import annotations

import random
import string
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, List, Optional, Protocol, Sequence, Tuple


class Role(Enum):
    USER = "user"
    ASSISTANT = "assistant"


class ItemKind(Enum):
    MESSAGE = "message"
    ERROR = "error"


def new_item_id(prefix: str) -> str:
    """Build an id from the current epoch milliseconds and a random suffix."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


@dataclass(frozen=True)
class Item:
    """A message or plan rendering appended to a thread."""

    id: str
    role: Role
    text: str
    kind: ItemKind = ItemKind.MESSAGE
    images: Tuple[str, ...] = ()

    def with_text(self, text: str) -> "Item":
        return replace(self, text=text)

    def to_dict(self) -> Dict:
        data: Dict = {"id": self.id, "kind": self.kind.value, "role": self.role.value, "text": self.text}
        if self.images:
            data["images"] = list(self.images)
        return data


@dataclass(frozen=True)
class PlanStep:
    step: str
    status: str = "pending"


@dataclass(frozen=True)
class PlanUpdate:
    turn_id: str
    explanation: str
    steps: Tuple[PlanStep, ...] = ()


@dataclass
class ThreadStatus:
    is_processing: bool = False
    is_reviewing: bool = False


@dataclass
class Thread:
    id: str
    items: List[Item] = field(default_factory=list)
    status: ThreadStatus = field(default_factory=ThreadStatus)
    active_turn_id: Optional[str] = None
    plan: Optional[PlanUpdate] = None

    def upsert(self, item: Item) -> None:
        """Replace the item with the same id in place, or append it."""
        for index, existing in enumerate(self.items):
            if existing.id == item.id:
                self.items[index] = item
                return
        self.items.append(item)


class ThreadStore(Protocol):
    """State the orchestration engine writes to; persistence is up to the host."""

    def upsert_item(self, thread_id: str, item: Item) -> None: ...

    def set_thread_plan(self, thread_id: str, plan: PlanUpdate) -> None: ...

    def mark_processing(self, thread_id: str, processing: bool) -> None: ...

    def set_active_turn_id(self, thread_id: str, turn_id: Optional[str]) -> None: ...


class InMemoryThreadStore:
    """Thread store kept in process memory; threads are created on first use."""

    def __init__(self) -> None:
        self.threads: Dict[str, Thread] = {}

    def ensure_thread(self, thread_id: str) -> Thread:
        thread = self.threads.get(thread_id)
        if thread is None:
            thread = self.threads[thread_id] = Thread(id=thread_id)
        return thread

    def get_thread(self, thread_id: str) -> Optional[Thread]:
        return self.threads.get(thread_id)

    def items(self, thread_id: str) -> Sequence[Item]:
        thread = self.threads.get(thread_id)
        return tuple(thread.items) if thread else ()

    def upsert_item(self, thread_id: str, item: Item) -> None:
        self.ensure_thread(thread_id).upsert(item)

    def set_thread_plan(self, thread_id: str, plan: PlanUpdate) -> None:
        self.ensure_thread(thread_id).plan = plan

    def mark_processing(self, thread_id: str, processing: bool) -> None:
        self.ensure_thread(thread_id).status.is_processing = processing

    def mark_reviewing(self, thread_id: str, reviewing: bool) -> None:
        self.ensure_thread(thread_id).status.is_reviewing = reviewing

    def set_active_turn_id(self, thread_id: str, turn_id: Optional[str]) -> None:
        self.ensure_thread(thread_id).active_turn_id = turn_id
