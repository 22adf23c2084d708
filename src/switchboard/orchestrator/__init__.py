"""Orchestration components."""

from .orchestrator import TurnOrchestrator
from .plan import build_plan_prompt, extract_plan_json, format_plan_as_message, normalize_plan_payload
from .streaming import StreamingItemWriter
from .turns import PENDING_TURN_ID, Turn, TurnLifecycleManager, TurnState

__all__ = [
    "TurnOrchestrator",
    "TurnLifecycleManager",
    "Turn",
    "TurnState",
    "PENDING_TURN_ID",
    "StreamingItemWriter",
    "build_plan_prompt",
    "extract_plan_json",
    "normalize_plan_payload",
    "format_plan_as_message",
]
