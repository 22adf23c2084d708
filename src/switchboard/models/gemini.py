"""Google Gemini API adapter."""

from __future__ import annotations

import json
from typing import Dict, List, Optional

import httpx

from .base import (
    AdapterResult,
    BaseAdapter,
    ConfigurationError,
    DeltaCallback,
    StartedCallback,
    TransportError,
    Usage,
    UsageCallback,
)

DEFAULT_MODEL = "gemini-2.5-pro"


class GeminiAdapter(BaseAdapter):
    """Adapter for Gemini streamGenerateContent API."""

    def __init__(
        self,
        api_key: str,
        label: str = "Gemini",
        default_model: str = DEFAULT_MODEL,
        base_url: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.label = label
        self.default_model = default_model
        self.base_url = (base_url or "https://generativelanguage.googleapis.com/v1beta").rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def send(
        self,
        prompt: str,
        model: Optional[str],
        on_delta: DeltaCallback,
        on_usage: Optional[UsageCallback] = None,
        *,
        on_started: Optional[StartedCallback] = None,
    ) -> AdapterResult:
        api_key = self._api_key()
        model = model or self.default_model
        url = f"{self.base_url}/models/{model}:streamGenerateContent"
        payload = {"contents": [{"role": "user", "parts": [{"text": prompt}]}]}
        chunks: List[str] = []
        usage: Optional[Usage] = None
        response_id: Optional[str] = None

        async with httpx.AsyncClient(timeout=None, transport=self.transport) as client:
            try:
                async with client.stream(
                    "POST", url, params={"alt": "sse", "key": api_key}, json=payload
                ) as resp:
                    if resp.status_code >= 400:
                        body = (await resp.aread()).decode(errors="replace")
                        raise TransportError(f"{self.label} API error {resp.status_code}: {body.strip()}")
                    async for raw_line in resp.aiter_lines():
                        line = raw_line.strip()
                        if not line:
                            continue
                        if line.startswith("data:"):
                            line = line[len("data:") :].strip()
                        if line == "[DONE]":
                            break
                        try:
                            data = json.loads(line)
                        except json.JSONDecodeError as exc:
                            raise TransportError(f"Malformed stream chunk: {exc}") from exc

                        if response_id is None and data.get("responseId"):
                            response_id = str(data["responseId"])
                            if on_started:
                                on_started(response_id)
                        delta_text = self._extract_text(data)
                        if delta_text:
                            chunks.append(delta_text)
                            on_delta(delta_text)
                        usage = self._parse_usage(data.get("usageMetadata")) or usage
            except httpx.HTTPError as exc:
                raise TransportError(f"{self.label} stream failed: {exc}") from exc

        if usage and on_usage:
            on_usage(usage)
        return AdapterResult(text="".join(chunks), usage=usage, turn_id=response_id)

    async def list_models(self) -> List[str]:
        api_key = self._api_key()
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                resp = await client.get(f"{self.base_url}/models", params={"key": api_key})
                resp.raise_for_status()
            except httpx.HTTPError as exc:
                raise TransportError(f"Failed to list Gemini models: {exc}") from exc

        results: List[str] = []
        for model in resp.json().get("models", []):
            model_id = model.get("name") or model.get("id")
            if model_id:
                # Trim prefix "models/" if present.
                cleaned = str(model_id).split("/")[-1]
                if cleaned.startswith("gemini-") and cleaned not in results:
                    results.append(cleaned)
        return results

    def _extract_text(self, data: Dict[str, object]) -> str:
        candidates = data.get("candidates") or []
        for candidate in candidates:
            parts = (candidate.get("content") or {}).get("parts") or []
            texts = [p.get("text") for p in parts if isinstance(p, dict) and p.get("text")]
            if texts:
                return "".join(texts)
        return ""

    def _parse_usage(self, payload: Optional[Dict[str, object]]) -> Optional[Usage]:
        if not payload:
            return None
        return Usage(
            input_tokens=int(payload.get("promptTokenCount") or 0),
            output_tokens=int(payload.get("candidatesTokenCount") or 0),
            cache_read_input_tokens=int(payload.get("cachedContentTokenCount") or 0),
        )

    def _api_key(self) -> str:
        if not self.api_key:
            raise ConfigurationError("GEMINI_API_KEY or GOOGLE_GENERATIVE_AI_API_KEY not configured.")
        return self.api_key
