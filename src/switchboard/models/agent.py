"""Orchestrated-agent adapter speaking turn/start and turn/interrupt."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence

from .base import ProtocolError
from .registry import AgentProvider


class AgentBackend(Protocol):
    """JSON-RPC request channel to a running agent runtime."""

    async def request(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]: ...


def extract_rpc_error(response: Any) -> Optional[str]:
    """Return the error message of an RPC-shaped error response, if any."""
    if not isinstance(response, dict):
        return None
    error = response.get("error")
    if error is None:
        result = response.get("result")
        error = result.get("error") if isinstance(result, dict) else None
    if not error:
        return None
    if isinstance(error, dict):
        message = error.get("message")
        return str(message) if message else "Unknown error"
    return str(error)


def extract_turn_id(response: Any) -> Optional[str]:
    if not isinstance(response, dict):
        return None
    result = response.get("result")
    if not isinstance(result, dict):
        result = response
    turn = result.get("turn") or response.get("turn")
    if not isinstance(turn, dict):
        return None
    turn_id = turn.get("id")
    return str(turn_id) if turn_id not in (None, "") else None


def build_input(text: str, images: Sequence[str] = ()) -> List[Dict[str, str]]:
    entries: List[Dict[str, str]] = []
    trimmed = text.strip()
    if trimmed:
        entries.append({"type": "text", "text": trimmed})
    for image in images:
        path = image.strip()
        if not path:
            continue
        if path.startswith(("data:", "http://", "https://")):
            entries.append({"type": "image", "url": path})
        else:
            entries.append({"type": "localImage", "path": path})
    return entries


def access_policies(access_mode: Optional[str], workspace: Optional[Path]) -> tuple[Dict[str, Any], str]:
    """Map an access mode to (sandboxPolicy, approvalPolicy)."""
    if access_mode == "full-access":
        return {"type": "dangerFullAccess"}, "never"
    if access_mode == "read-only":
        return {"type": "readOnly"}, "onRequest"
    roots = [str(workspace)] if workspace else []
    return {"type": "workspaceWrite", "writableRoots": roots, "networkAccess": True}, "onRequest"


class AgentAdapter:
    """
    Starts and interrupts turns on an orchestrated agent runtime.

    Output for an accepted turn does not come back from ``start_turn``;
    it arrives as notifications that the host forwards to
    ``TurnOrchestrator.handle_agent_event``.
    """

    def __init__(
        self,
        provider: AgentProvider,
        backend: AgentBackend,
        workspace: Optional[Path] = None,
    ) -> None:
        self.provider = provider
        self.label = provider.label
        self.backend = backend
        self.workspace = workspace

    def build_params(
        self,
        thread_id: str,
        text: str,
        images: Sequence[str] = (),
        model: Optional[str] = None,
        effort: Optional[str] = None,
        collaboration_mode: Optional[Any] = None,
        access_mode: Optional[str] = None,
    ) -> Dict[str, Any]:
        entries = build_input(text, images)
        if not entries:
            raise ProtocolError("empty user message")
        sandbox_policy, approval_policy = access_policies(access_mode, self.workspace)
        params: Dict[str, Any] = {
            "threadId": thread_id,
            "input": entries,
            "cwd": str(self.workspace) if self.workspace else None,
            "approvalPolicy": approval_policy,
            "sandboxPolicy": sandbox_policy,
            "model": model,
            "effort": effort,
        }
        if collaboration_mode is not None:
            params["collaborationMode"] = collaboration_mode
        return params

    async def start_turn(
        self,
        thread_id: str,
        text: str,
        images: Sequence[str] = (),
        model: Optional[str] = None,
        effort: Optional[str] = None,
        collaboration_mode: Optional[Any] = None,
        access_mode: Optional[str] = None,
    ) -> str:
        """Issue turn/start and return the accepted turn id."""
        response = await self.start_turn_raw(
            thread_id, text, images, model, effort, collaboration_mode, access_mode
        )
        return self.accepted_turn_id(response)

    async def start_turn_raw(
        self,
        thread_id: str,
        text: str,
        images: Sequence[str] = (),
        model: Optional[str] = None,
        effort: Optional[str] = None,
        collaboration_mode: Optional[Any] = None,
        access_mode: Optional[str] = None,
    ) -> Dict[str, Any]:
        params = self.build_params(thread_id, text, images, model, effort, collaboration_mode, access_mode)
        return await self.backend.request("turn/start", params)

    @staticmethod
    def accepted_turn_id(response: Dict[str, Any]) -> str:
        rpc_error = extract_rpc_error(response)
        if rpc_error:
            raise ProtocolError(f"Turn failed to start: {rpc_error}")
        turn_id = extract_turn_id(response)
        if not turn_id:
            raise ProtocolError("Turn failed to start.")
        return turn_id

    async def interrupt(self, thread_id: str, turn_id: str) -> Dict[str, Any]:
        return await self.backend.request("turn/interrupt", {"threadId": thread_id, "turnId": turn_id})
