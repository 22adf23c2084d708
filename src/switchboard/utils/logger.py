"""Debug event log for turn lifecycle transitions."""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional


@dataclass
class DebugEntry:
    id: str
    timestamp: int
    source: str
    label: str
    payload: Any = None


DebugCallback = Callable[[DebugEntry], None]


class DebugLogger:
    """Writes debug events as JSON lines and forwards them to an optional callback."""

    def __init__(self, log_dir: Path | None = None, on_debug: Optional[DebugCallback] = None) -> None:
        self.log_dir = log_dir
        self.on_debug = on_debug
        if self.log_dir is not None:
            self.log_dir.mkdir(parents=True, exist_ok=True)

    def _write(self, filename: str, entry: DebugEntry) -> None:
        if self.log_dir is None:
            return
        path = self.log_dir / filename
        record = {"logged_at": datetime.utcnow().isoformat(), **asdict(entry)}
        with path.open("a", encoding="utf-8") as fp:
            fp.write(json.dumps(record, default=str) + "\n")

    def emit(self, source: str, label: str, payload: Any = None) -> DebugEntry:
        now = int(time.time() * 1000)
        entry = DebugEntry(
            id=f"{now}-{source}-{label.replace('/', '-').replace(' ', '-')}",
            timestamp=now,
            source=source,
            label=label,
            payload=payload,
        )
        try:
            self._write("debug.log", entry)
        except OSError:
            pass
        if self.on_debug is not None:
            try:
                self.on_debug(entry)
            except Exception:
                # Debug observers must not affect turn handling.
                pass
        return entry

    def client(self, label: str, payload: Any = None) -> DebugEntry:
        return self.emit("client", label, payload)

    def server(self, label: str, payload: Any = None) -> DebugEntry:
        return self.emit("server", label, payload)

    def error(self, label: str, payload: Any = None) -> DebugEntry:
        return self.emit("error", label, payload)
