"""Plan mode: ask a local provider for a JSON plan and validate it."""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, List, Optional

from ..models.base import BaseAdapter, StartedCallback, StructuredOutputError, TransportError, UsageCallback
from ..state.threads import PlanStep, PlanUpdate

PLAN_MODE_ID = "plan"
MAX_PLAN_ATTEMPTS = 2

_BASE_INSTRUCTION = (
    "You are in PLAN mode.",
    "Return ONLY valid JSON with this shape:",
    '{ "explanation": "...", "steps": [{ "step": "...", "status": "pending|in_progress|completed" }] }',
    "No markdown, no prose, no code fences.",
)
_RETRY_INSTRUCTION = (
    "Your previous response was invalid.",
    "Return STRICT JSON only. Do not include any extra text.",
)


def is_plan_mode(collaboration_mode: Any) -> bool:
    """Accept either the bare mode id or a ``{"mode": ...}`` / ``{"id": ...}`` object."""
    if isinstance(collaboration_mode, str):
        return collaboration_mode == PLAN_MODE_ID
    if isinstance(collaboration_mode, dict):
        return PLAN_MODE_ID in (collaboration_mode.get("mode"), collaboration_mode.get("id"))
    return False


def build_plan_prompt(user_text: str, attempt: int) -> str:
    lines = list(_BASE_INSTRUCTION)
    if attempt > 0:
        lines.extend(_RETRY_INSTRUCTION)
    lines.extend(["", "User request:", user_text])
    return "\n".join(lines)


def extract_plan_json(text: str) -> Optional[Dict[str, Any]]:
    """
    Parse the first balanced ``{...}`` span of ``text``.

    Braces inside JSON strings are ignored while matching. Returns None when
    there is no balanced span, the span is not valid JSON, or it is not an
    object.
    """
    start = text.find("{")
    if start < 0:
        return None
    end = _matching_brace(text, start)
    if end < 0:
        return None
    try:
        payload = json.loads(text[start : end + 1])
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


def _matching_brace(text: str, start: int) -> int:
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return index
    return -1


def normalize_plan_payload(turn_id: str, payload: Optional[Dict[str, Any]]) -> Optional[PlanUpdate]:
    if payload is None:
        return None
    explanation = payload.get("explanation")
    raw_steps = payload.get("steps")
    if not isinstance(raw_steps, list):
        raw_steps = payload.get("plan")
    if not isinstance(raw_steps, list):
        raw_steps = []

    steps: List[PlanStep] = []
    for raw in raw_steps:
        if isinstance(raw, str):
            if raw.strip():
                steps.append(PlanStep(step=raw))
        elif isinstance(raw, dict):
            step = raw.get("step")
            if not isinstance(step, str) or not step.strip():
                continue
            status = raw.get("status")
            steps.append(PlanStep(step=step, status=status if isinstance(status, str) and status else "pending"))
    return PlanUpdate(
        turn_id=turn_id,
        explanation=explanation if isinstance(explanation, str) else "",
        steps=tuple(steps),
    )


def display_status(status: str) -> str:
    if status in ("inProgress", "in_progress"):
        return "in_progress"
    if status == "completed":
        return "completed"
    return "pending"


def format_plan_as_message(plan: PlanUpdate) -> str:
    header = f"Plan: {plan.explanation}" if plan.explanation else "Plan:"
    lines = [f"{index}. [{display_status(step.status)}] {step.step}" for index, step in enumerate(plan.steps, 1)]
    return "\n".join([header, *lines])


async def run_plan(
    adapter: BaseAdapter,
    user_text: str,
    model: Optional[str],
    turn_id: str,
    on_started: Optional[StartedCallback] = None,
    on_usage: Optional[UsageCallback] = None,
    on_transport_error: Optional[Callable[[TransportError], BaseAdapter]] = None,
) -> PlanUpdate:
    """
    Run the plan protocol.

    Deltas are collected silently; raw model text never reaches the thread.
    Every send uses one of MAX_PLAN_ATTEMPTS attempts, whichever adapter
    serves it. ``on_transport_error`` may hand back a replacement adapter
    once; the replacement only gets the attempts that remain. Raises
    StructuredOutputError when the attempts run out without a valid plan.
    """
    label = adapter.label
    invalid_seen = False
    for _ in range(MAX_PLAN_ATTEMPTS):
        try:
            result = await adapter.send(
                build_plan_prompt(user_text, 1 if invalid_seen else 0),
                model,
                lambda _delta: None,
                on_usage,
                on_started=on_started,
            )
        except TransportError as exc:
            if on_transport_error is None:
                raise
            adapter = on_transport_error(exc)
            on_transport_error = None
            continue
        plan = normalize_plan_payload(turn_id, extract_plan_json(result.text or ""))
        if plan is not None:
            return plan
        invalid_seen = True
    raise StructuredOutputError(f"Plan mode failed: invalid response from {label}. Try again.")
