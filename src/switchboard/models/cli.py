"""Vendor CLI adapter: one-shot subprocess per prompt with streamed output."""

from __future__ import annotations

import asyncio
import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .base import (
    AdapterResult,
    BaseAdapter,
    DeltaCallback,
    StartedCallback,
    TransportError,
    Usage,
    UsageCallback,
)
from .registry import CliProvider, CliStyle

PROMPT_PLACEHOLDER = "{prompt}"

# GUI launches often start with a minimal PATH.
EXTRA_PATH_ENTRIES = ("/opt/homebrew/bin", "/usr/local/bin", "/usr/bin", "/bin")


@dataclass
class CliHooks:
    on_init: Optional[Callable[[Optional[str], Optional[str]], None]] = None
    on_content: Optional[Callable[[str], None]] = None
    on_complete: Optional[Callable[[Optional[str], Optional[Usage]], None]] = None
    on_error: Optional[Callable[[str], None]] = None


def augmented_path(current: Optional[str] = None) -> str:
    entries = [p for p in (current if current is not None else os.environ.get("PATH", "")).split(os.pathsep) if p]
    for extra in EXTRA_PATH_ENTRIES:
        if extra not in entries:
            entries.append(extra)
    return os.pathsep.join(entries)


def parse_cli_usage(event: Mapping[str, Any]) -> Optional[Usage]:
    usage = event.get("usage")
    if not isinstance(usage, dict):
        return None
    return Usage(
        input_tokens=int(usage.get("input_tokens") or 0),
        output_tokens=int(usage.get("output_tokens") or 0),
        cache_read_input_tokens=int(usage.get("cache_read_input_tokens") or 0),
        cache_creation_input_tokens=int(usage.get("cache_creation_input_tokens") or 0),
        total_cost_usd=float(event.get("total_cost_usd") or 0.0),
    )


def extract_text_content(message: Mapping[str, Any]) -> Optional[str]:
    content = message.get("content")
    if not isinstance(content, list):
        return None
    texts = [
        block["text"]
        for block in content
        if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str)
    ]
    return "".join(texts) if texts else None


class CliRunner:
    """Runs a CLI command once and reports its output through hooks."""

    def __init__(
        self,
        command: str,
        args: Sequence[str] = (),
        env: Optional[Mapping[str, str]] = None,
        cwd: Path | None = None,
        style: CliStyle = CliStyle.PLAIN,
    ) -> None:
        self.command = command.strip()
        self.args = tuple(args)
        self.env = dict(env or {})
        self.cwd = cwd
        self.style = style
        self.process: Optional[asyncio.subprocess.Process] = None

    def build_command(self, prompt: str, model: Optional[str]) -> Tuple[List[str], Optional[str]]:
        """Return argv and the text to write to stdin, if any."""
        argv = [self.command]
        if self.style == CliStyle.STREAM_JSON:
            argv.extend(["--print", "--verbose", "--output-format", "stream-json"])
            argv.extend(self.args)
            if model and "--model" not in argv:
                argv.extend(["--model", model])
            argv.append(prompt)
            return argv, None

        used_placeholder = False
        for arg in self.args:
            if PROMPT_PLACEHOLDER in arg:
                used_placeholder = True
                argv.append(arg.replace(PROMPT_PLACEHOLDER, prompt))
            else:
                argv.append(arg)
        return argv, None if used_placeholder else prompt

    def build_env(self) -> Dict[str, str]:
        env = dict(os.environ)
        env.update(self.env)
        if "PATH" not in self.env:
            env["PATH"] = augmented_path(env.get("PATH"))
        return env

    async def run(self, prompt: str, model: Optional[str], hooks: CliHooks) -> None:
        """Spawn the CLI and stream its output; raises TransportError on launch or exit failure."""
        if not self.command:
            raise TransportError("CLI command is required")
        prompt = prompt.strip()
        if not prompt:
            raise TransportError("Prompt is required")

        argv, stdin_text = self.build_command(prompt, model)
        try:
            self.process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE if stdin_text is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.cwd) if self.cwd else None,
                env=self.build_env(),
            )
        except OSError as exc:
            raise TransportError(f"Failed to spawn CLI: {exc}") from exc

        process = self.process
        stderr_task = asyncio.ensure_future(process.stderr.read()) if process.stderr else None
        try:
            if stdin_text is not None and process.stdin:
                try:
                    process.stdin.write(stdin_text.encode())
                    await process.stdin.drain()
                    process.stdin.close()
                except (BrokenPipeError, ConnectionResetError) as exc:
                    raise TransportError(f"Failed to write prompt: {exc}") from exc

            async for line in self._stream_output():
                if self.style == CliStyle.STREAM_JSON:
                    self._handle_json_line(line, hooks)
                elif hooks.on_content:
                    hooks.on_content(line)

            await process.wait()
            stderr = (await stderr_task).decode(errors="replace").strip() if stderr_task else ""
            if process.returncode:
                message = f"CLI exited with code {process.returncode}"
                raise TransportError(f"{message}\n{stderr}" if stderr else message)
            if self.style == CliStyle.PLAIN and hooks.on_complete:
                hooks.on_complete(None, None)
        finally:
            if stderr_task and not stderr_task.done():
                stderr_task.cancel()
            await self.stop()

    async def _stream_output(self):
        """Yield stdout lines; JSON lines are stripped, plain lines keep their newline."""
        if not self.process or not self.process.stdout:
            return
        while True:
            line = await self.process.stdout.readline()
            if not line:
                break
            text = line.decode(errors="replace")
            if self.style == CliStyle.STREAM_JSON:
                text = text.strip()
                if not text:
                    continue
            yield text

    def _handle_json_line(self, line: str, hooks: CliHooks) -> None:
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            return
        if not isinstance(event, dict):
            return

        event_type = event.get("type")
        if event_type == "system":
            if hooks.on_init:
                hooks.on_init(event.get("session_id"), event.get("model"))
        elif event_type == "assistant":
            message = event.get("message")
            text = extract_text_content(message) if isinstance(message, dict) else None
            if text and hooks.on_content:
                hooks.on_content(text)
        elif event_type == "result":
            if event.get("is_error"):
                if hooks.on_error:
                    hooks.on_error(str(event.get("result") or "Unknown error"))
            elif hooks.on_complete:
                result = event.get("result")
                hooks.on_complete(result if isinstance(result, str) else None, parse_cli_usage(event))
        elif event_type == "error":
            error = event.get("error")
            message = error.get("message") if isinstance(error, dict) else None
            if hooks.on_error:
                hooks.on_error(str(message or "Unknown error"))

    async def stop(self) -> None:
        """Stop the running process gracefully."""
        if not self.process:
            return

        try:
            if self.process.returncode is None:
                self.process.terminate()
                await asyncio.wait_for(self.process.wait(), timeout=5.0)
        except ProcessLookupError:
            pass
        except asyncio.TimeoutError:
            self.process.kill()
            await self.process.wait()
        finally:
            self.process = None


class CliAdapter(BaseAdapter):
    """Adapter for vendor CLIs (Claude stream-json, Gemini plain stdout)."""

    def __init__(self, provider: CliProvider, cwd: Path | None = None) -> None:
        self.provider = provider
        self.label = provider.label
        self.cwd = cwd

    def _runner(self) -> CliRunner:
        return CliRunner(
            self.provider.command,
            self.provider.args,
            env=self.provider.env,
            cwd=self.cwd,
            style=self.provider.style,
        )

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
        errors: List[str] = []
        outcome: Dict[str, Any] = {}

        def on_init(session_id: Optional[str], reported_model: Optional[str]) -> None:
            outcome["session_id"] = session_id
            outcome["model"] = reported_model
            if session_id and on_started:
                on_started(session_id)

        def on_content(text: str) -> None:
            chunks.append(text)
            on_delta(text)

        def on_complete(text: Optional[str], usage: Optional[Usage]) -> None:
            outcome["text"] = text
            outcome["usage"] = usage
            if usage and on_usage:
                on_usage(usage)

        hooks = CliHooks(on_init=on_init, on_content=on_content, on_complete=on_complete, on_error=errors.append)
        await self._runner().run(prompt, model, hooks)

        if errors:
            raise TransportError(errors[-1])
        text = outcome.get("text") or "".join(chunks)
        return AdapterResult(
            text=text,
            usage=outcome.get("usage"),
            turn_id=outcome.get("session_id"),
            metadata={"model": outcome.get("model")} if outcome.get("model") else {},
        )
