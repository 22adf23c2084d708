"""Streaming-session adapter over process-backed JSON-RPC sessions."""

from __future__ import annotations

import asyncio
import itertools
import json
import os
import random
import string
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence

from ..utils.logger import DebugLogger
from .base import (
    AdapterResult,
    BaseAdapter,
    DeltaCallback,
    StartedCallback,
    TransportError,
    UsageCallback,
)
from .registry import SessionProvider

MAX_MESSAGE_SIZE = 8 * 1024 * 1024

DELTA_KEYS = ("delta", "contentDelta", "content_delta", "textDelta", "text_delta", "chunk")


@dataclass
class SessionEvent:
    session_id: str
    payload: Dict[str, Any]


SessionEventCallback = Callable[[SessionEvent], None]


class SessionHost(Protocol):
    async def start_session(
        self,
        command: str,
        args: Sequence[str],
        env: Mapping[str, str],
        on_event: Optional[SessionEventCallback] = None,
    ) -> str: ...

    async def send_stream(self, session_id: str, request: Dict[str, Any]) -> Dict[str, Any]: ...

    async def stop_session(self, session_id: str) -> None: ...


def extract_session_delta(payload: Any) -> Optional[str]:
    """Return the text delta carried by a notification frame, if any."""
    if not isinstance(payload, dict):
        return None
    value = payload.get("params", payload)
    if not isinstance(value, dict):
        return None
    for key in DELTA_KEYS:
        delta = value.get(key)
        if isinstance(delta, str) and delta:
            return delta
    return None


def extract_session_text(payload: Any) -> Optional[str]:
    """Return the final text carried by a response frame, if any."""
    if not isinstance(payload, dict):
        return None
    value = payload.get("result", payload)
    if isinstance(value, str):
        return value
    if not isinstance(value, dict):
        return None
    for key in ("content", "text"):
        if isinstance(value.get(key), str):
            return value[key]
    message = value.get("message")
    if isinstance(message, dict) and isinstance(message.get("content"), str):
        return message["content"]
    choices = value.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        first = choices[0].get("message")
        if isinstance(first, dict) and isinstance(first.get("content"), str):
            return first["content"]
    return None


@dataclass
class _Session:
    process: asyncio.subprocess.Process
    on_event: Optional[SessionEventCallback]


class ProcessSessionHost:
    """Spawns one process per session and speaks Content-Length framed JSON-RPC."""

    def __init__(self) -> None:
        self._sessions: Dict[str, _Session] = {}
        self._counter = itertools.count(1)

    async def start_session(
        self,
        command: str,
        args: Sequence[str],
        env: Mapping[str, str],
        on_event: Optional[SessionEventCallback] = None,
    ) -> str:
        merged_env = dict(os.environ)
        merged_env.update(env)
        try:
            process = await asyncio.create_subprocess_exec(
                command,
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                env=merged_env,
            )
        except OSError as exc:
            raise TransportError(f"Session start failed: {exc}") from exc
        session_id = f"session-{int(time.time() * 1000)}-{next(self._counter)}"
        self._sessions[session_id] = _Session(process=process, on_event=on_event)
        return session_id

    async def send_stream(self, session_id: str, request: Dict[str, Any]) -> Dict[str, Any]:
        session = self._sessions.get(session_id)
        if session is None:
            raise TransportError("Session not found")
        stdin = session.process.stdin
        stdout = session.process.stdout
        if stdin is None or stdout is None:
            raise TransportError("Session pipes unavailable")

        body = json.dumps(request).encode("utf-8")
        try:
            stdin.write(f"Content-Length: {len(body)}\r\n\r\n".encode("ascii") + body)
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise TransportError(f"Session write failed: {exc}") from exc

        request_id = _normalize_id(request.get("id"))
        while True:
            frame = await self._read_message(stdout)
            if request_id is not None and _normalize_id(frame.get("id")) != request_id:
                if session.on_event is not None:
                    session.on_event(SessionEvent(session_id=session_id, payload=frame))
                continue
            return frame

    async def stop_session(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        session.on_event = None
        if session.process.returncode is None:
            try:
                session.process.kill()
            except ProcessLookupError:
                pass
        await session.process.wait()

    def active_sessions(self) -> List[str]:
        return list(self._sessions)

    async def _read_message(self, reader: asyncio.StreamReader) -> Dict[str, Any]:
        content_length: Optional[int] = None
        while True:
            line = await reader.readline()
            if not line:
                raise TransportError("Session stream closed")
            header = line.decode("ascii", errors="replace").rstrip("\r\n")
            if not header:
                break
            name, _, value = header.partition(":")
            if name.strip().lower() == "content-length":
                try:
                    content_length = int(value.strip())
                except ValueError:
                    raise TransportError("Session sent an invalid Content-Length") from None
        if content_length is None:
            raise TransportError("Session frame missing Content-Length")
        if content_length > MAX_MESSAGE_SIZE:
            raise TransportError("Session message too large")
        try:
            body = await reader.readexactly(content_length)
        except asyncio.IncompleteReadError as exc:
            raise TransportError("Session stream closed mid-frame") from exc
        try:
            frame = json.loads(body)
        except json.JSONDecodeError as exc:
            raise TransportError(f"Session frame is not JSON: {exc}") from exc
        return frame if isinstance(frame, dict) else {"result": frame}


def _normalize_id(value: Any) -> Optional[str]:
    if value is None or isinstance(value, bool):
        return None
    return str(value)


class SessionAdapter(BaseAdapter):
    """Starts a session per send and always stops it on the way out."""

    def __init__(
        self,
        provider: SessionProvider,
        host: Optional[SessionHost] = None,
        logger: Optional[DebugLogger] = None,
    ) -> None:
        self.provider = provider
        self.label = provider.label
        self.host: SessionHost = host or ProcessSessionHost()
        self.logger = logger

    def _build_request(self, prompt: str, model: Optional[str]) -> Dict[str, Any]:
        suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
        return {
            "jsonrpc": "2.0",
            "id": f"prompt-{int(time.time() * 1000)}-{suffix}",
            "method": "prompt",
            "params": {"prompt": prompt, "model": model},
        }

    async def send(
        self,
        prompt: str,
        model: Optional[str],
        on_delta: DeltaCallback,
        on_usage: Optional[UsageCallback] = None,
        *,
        on_started: Optional[StartedCallback] = None,
    ) -> AdapterResult:
        chunks: List[str] = []

        def on_event(event: SessionEvent) -> None:
            delta = extract_session_delta(event.payload)
            if delta:
                chunks.append(delta)
                on_delta(delta)

        session_id = await self.host.start_session(
            self.provider.command, self.provider.args, self.provider.env, on_event
        )
        try:
            if on_started:
                on_started(session_id)
            response = await self.host.send_stream(session_id, self._build_request(prompt, model))
        finally:
            await self._stop(session_id)

        error = response.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else error
            raise TransportError(f"{self.label} request failed: {message}")

        text = "".join(chunks) or extract_session_text(response)
        if not text:
            raise TransportError("Session response did not include text.")
        return AdapterResult(text=text, turn_id=session_id)

    async def _stop(self, session_id: str) -> None:
        try:
            await self.host.stop_session(session_id)
        except Exception as exc:
            if self.logger is not None:
                self.logger.error("session/stop error", {"sessionId": session_id, "error": str(exc)})
