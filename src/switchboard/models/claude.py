"""Anthropic Claude Messages API adapter."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Mapping, Optional

import httpx

from .base import (
    AdapterResult,
    BaseAdapter,
    ConfigurationError,
    DeltaCallback,
    LLMException,
    RateLimitSnapshot,
    StartedCallback,
    TransportError,
    Usage,
    UsageCallback,
)

DEFAULT_MODEL = "claude-sonnet-4-5"


def _int_header(headers: Mapping[str, str], name: str) -> Optional[int]:
    value = headers.get(name)
    try:
        return int(value) if value is not None else None
    except ValueError:
        return None


def parse_rate_limits(headers: Mapping[str, str]) -> Optional[RateLimitSnapshot]:
    """Read the anthropic-ratelimit-* response headers."""
    snapshot = RateLimitSnapshot(
        requests_limit=_int_header(headers, "anthropic-ratelimit-requests-limit"),
        requests_remaining=_int_header(headers, "anthropic-ratelimit-requests-remaining"),
        requests_reset=headers.get("anthropic-ratelimit-requests-reset"),
        tokens_limit=_int_header(headers, "anthropic-ratelimit-tokens-limit"),
        tokens_remaining=_int_header(headers, "anthropic-ratelimit-tokens-remaining"),
        tokens_reset=headers.get("anthropic-ratelimit-tokens-reset"),
    )
    return None if snapshot.is_empty() else snapshot


class ClaudeAdapter(BaseAdapter):
    """Adapter for the Claude Messages API."""

    def __init__(
        self,
        api_key: str,
        label: str = "Claude",
        default_model: str = DEFAULT_MODEL,
        base_url: str | None = None,
        api_version: str = "2023-06-01",
        max_tokens: int = 4096,
        timeout: float = 30.0,
        stream: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.label = label
        self.default_model = default_model
        self.base_url = (base_url or "https://api.anthropic.com").rstrip("/")
        self.api_version = api_version
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.stream = stream
        self.transport = transport

    def _client(self, timeout: Optional[float]) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self.transport)

    async def send(
        self,
        prompt: str,
        model: Optional[str],
        on_delta: DeltaCallback,
        on_usage: Optional[UsageCallback] = None,
        *,
        on_started: Optional[StartedCallback] = None,
    ) -> AdapterResult:
        if not self.api_key:
            raise ConfigurationError(f"{self.label} API key not configured.")
        if self.stream:
            return await self._send_streaming(prompt, model, on_delta, on_usage, on_started)
        return await self._send_buffered(prompt, model, on_delta, on_usage, on_started)

    async def _send_buffered(
        self,
        prompt: str,
        model: Optional[str],
        on_delta: DeltaCallback,
        on_usage: Optional[UsageCallback],
        on_started: Optional[StartedCallback],
    ) -> AdapterResult:
        payload = self._build_payload(prompt, model, stream=False)
        async with self._client(self.timeout) as client:
            try:
                resp = await client.post(f"{self.base_url}/v1/messages", headers=self._headers(), json=payload)
            except httpx.HTTPError as exc:
                raise TransportError(f"{self.label} request failed: {exc}") from exc
        if resp.status_code >= 400:
            raise TransportError(self._error_message(resp.status_code, resp.text))

        data = resp.json()
        if data.get("id") and on_started:
            on_started(str(data["id"]))
        text = self._extract_text_blocks(data.get("content") or [])
        if text:
            on_delta(text)
        usage = self._parse_usage(data.get("usage"))
        if usage and on_usage:
            on_usage(usage)
        return AdapterResult(
            text=text,
            usage=usage,
            rate_limits=parse_rate_limits(resp.headers),
            turn_id=data.get("id"),
            metadata={"model": data.get("model") or payload["model"], "stop_reason": data.get("stop_reason")},
        )

    async def _send_streaming(
        self,
        prompt: str,
        model: Optional[str],
        on_delta: DeltaCallback,
        on_usage: Optional[UsageCallback],
        on_started: Optional[StartedCallback],
    ) -> AdapterResult:
        payload = self._build_payload(prompt, model, stream=True)
        chunks: List[str] = []
        usage = Usage()
        message_id: Optional[str] = None
        rate_limits: Optional[RateLimitSnapshot] = None

        async with self._client(None) as client:
            try:
                async with client.stream(
                    "POST", f"{self.base_url}/v1/messages", headers=self._headers(), json=payload
                ) as resp:
                    if resp.status_code >= 400:
                        body = (await resp.aread()).decode(errors="replace")
                        raise TransportError(self._error_message(resp.status_code, body))
                    rate_limits = parse_rate_limits(resp.headers)
                    async for raw_line in resp.aiter_lines():
                        line = raw_line.strip()
                        if not line.startswith("data:"):
                            continue
                        line = line[len("data:") :].strip()
                        if not line or line == "[DONE]":
                            continue
                        try:
                            data = json.loads(line)
                        except json.JSONDecodeError as exc:
                            raise TransportError(f"Malformed stream chunk: {exc}") from exc

                        chunk_type = data.get("type")
                        if chunk_type == "message_start":
                            message = data.get("message") or {}
                            message_id = message.get("id")
                            usage.input_tokens = int((message.get("usage") or {}).get("input_tokens") or 0)
                            if message_id and on_started:
                                on_started(str(message_id))
                        elif chunk_type == "content_block_delta":
                            delta_text = (data.get("delta") or {}).get("text") or ""
                            if delta_text:
                                chunks.append(delta_text)
                                on_delta(delta_text)
                        elif chunk_type == "message_delta":
                            usage.output_tokens = int((data.get("usage") or {}).get("output_tokens") or 0)
                        elif chunk_type == "error":
                            error = data.get("error") or {}
                            raise LLMException(f"{self.label} error: {error.get('message') or 'Unknown error'}")
            except httpx.HTTPError as exc:
                raise TransportError(f"{self.label} stream failed: {exc}") from exc

        if on_usage:
            on_usage(usage)
        return AdapterResult(text="".join(chunks), usage=usage, rate_limits=rate_limits, turn_id=message_id)

    async def list_models(self) -> List[str]:
        """List model ids that belong to the Claude family."""
        if not self.api_key:
            raise ConfigurationError("API key is required")
        async with self._client(self.timeout) as client:
            try:
                resp = await client.get(f"{self.base_url}/v1/models", headers=self._headers())
            except httpx.HTTPError as exc:
                raise TransportError(f"Claude API request failed: {exc}") from exc
        if resp.status_code >= 400:
            raise TransportError(f"Claude API error: {resp.status_code}")
        models = [
            str(model.get("id"))
            for model in resp.json().get("data", [])
            if str(model.get("id") or "").startswith("claude-")
        ]
        return list(dict.fromkeys(models))

    def _headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": self.api_version,
            "Content-Type": "application/json",
        }

    def _build_payload(self, prompt: str, model: Optional[str], stream: bool) -> Dict[str, Any]:
        return {
            "model": model or self.default_model,
            "max_tokens": self.max_tokens,
            "messages": [{"role": "user", "content": prompt}],
            "stream": stream,
        }

    def _error_message(self, status: int, body: str) -> str:
        try:
            message = (json.loads(body).get("error") or {}).get("message")
        except (ValueError, AttributeError):
            message = None
        return f"{self.label} API error {status}: {message or body.strip() or 'no details'}"

    def _extract_text_blocks(self, blocks: List[Dict[str, Any]]) -> str:
        texts: List[str] = []
        for block in blocks:
            if block.get("type") == "text":
                value = block.get("text")
                if isinstance(value, str):
                    texts.append(value)
        return "".join(texts)

    def _parse_usage(self, payload: Optional[Dict[str, Any]]) -> Optional[Usage]:
        if not payload:
            return None
        return Usage(
            input_tokens=int(payload.get("input_tokens") or 0),
            output_tokens=int(payload.get("output_tokens") or 0),
            cache_read_input_tokens=int(payload.get("cache_read_input_tokens") or 0),
            cache_creation_input_tokens=int(payload.get("cache_creation_input_tokens") or 0),
        )
