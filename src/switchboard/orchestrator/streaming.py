"""Streaming coordination: keeps one assistant item in sync with a turn's deltas."""

from __future__ import annotations

from typing import Optional

from ..state.threads import Item, Role, ThreadStore, new_item_id


class StreamingItemWriter:
    """
    Upserts a single assistant item while deltas arrive.

    Every write reuses the same item id, so the store replaces the item in
    place instead of appending a new one per delta.
    """

    def __init__(self, store: ThreadStore, thread_id: str, item_id: Optional[str] = None) -> None:
        self.store = store
        self.thread_id = thread_id
        self.item_id = item_id or new_item_id("assistant")
        self.text = ""
        self.written = False

    def append(self, delta: str) -> str:
        if not delta:
            return self.text
        self.text += delta
        self._write()
        return self.text

    def replace(self, text: str) -> None:
        """Overwrite the accumulated text, e.g. with a final result that differs from the deltas."""
        self.text = text
        self._write()

    def reset(self) -> None:
        """Drop accumulated text; the next write replaces the item in place."""
        self.text = ""

    def _write(self) -> None:
        self.store.upsert_item(self.thread_id, Item(id=self.item_id, role=Role.ASSISTANT, text=self.text))
        self.written = True
