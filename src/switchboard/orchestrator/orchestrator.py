"""High-level orchestrator: routes a user message to a provider and drives the turn."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, Tuple, TypeVar

from ..config import Config
from ..models.agent import AgentAdapter, AgentBackend
from ..models.base import (
    AdapterResult,
    BaseAdapter,
    ConfigurationError,
    TransportError,
    Usage,
)
from ..models.credentials import CredentialsManager
from ..models.registry import (
    AgentProvider,
    CliProvider,
    ProtocolKind,
    ProviderConfig,
    ProviderRegistry,
    SessionProvider,
)
from ..models.router import AdapterRouter
from ..models.session import SessionHost
from ..state.threads import InMemoryThreadStore, Item, PlanUpdate, Role, ThreadStore, new_item_id
from ..utils.logger import DebugLogger
from ..utils.usage_tracker import UsageTracker
from .plan import format_plan_as_message, is_plan_mode, run_plan
from .streaming import StreamingItemWriter
from .turns import Turn, TurnLifecycleManager

LANGUAGE_DIRECTIVE = "Always respond in the same language as the user's most recent message."

T = TypeVar("T")


def merge_language_directive(collaboration_mode: Any, directive: str = LANGUAGE_DIRECTIVE) -> Any:
    """Add the language directive to a collaboration mode's developer instructions."""
    if not isinstance(collaboration_mode, dict) or "settings" not in collaboration_mode:
        return collaboration_mode
    settings = dict(collaboration_mode.get("settings") or {})
    existing = settings.get("developer_instructions")
    existing = existing.strip() if isinstance(existing, str) else ""
    if "same language" not in existing.lower():
        existing = f"{existing}\n\n{directive}" if existing else directive
    settings["developer_instructions"] = existing
    return {**collaboration_mode, "settings": settings}


def _usage_from_token_notification(token_usage: Any) -> Optional[Usage]:
    if not isinstance(token_usage, dict):
        return None
    last = token_usage.get("last") if isinstance(token_usage.get("last"), dict) else {}
    total = token_usage.get("total") if isinstance(token_usage.get("total"), dict) else {}
    return Usage(
        input_tokens=int(last.get("inputTokens", total.get("inputTokens", 0)) or 0),
        output_tokens=int(last.get("outputTokens", total.get("outputTokens", 0)) or 0),
        cache_read_input_tokens=int(last.get("cachedInputTokens", total.get("cachedInputTokens", 0)) or 0),
    )


class TurnOrchestrator:
    """Core entry point used by the CLI and by hosts embedding the engine."""

    def __init__(
        self,
        registry: ProviderRegistry,
        store: ThreadStore,
        router: Optional[AdapterRouter] = None,
        *,
        logger: Optional[DebugLogger] = None,
        usage_tracker: Optional[UsageTracker] = None,
        steer_enabled: bool = True,
        language_directive: bool = True,
        default_model: Optional[str] = None,
    ) -> None:
        self.registry = registry
        self.store = store
        self.logger = logger or DebugLogger()
        self.router = router or AdapterRouter(logger=self.logger)
        self.usage_tracker = usage_tracker or UsageTracker()
        self.steer_enabled = steer_enabled
        self.language_directive = language_directive
        self.default_model = default_model or None
        self.turns = TurnLifecycleManager(store)
        self._tasks: Dict[str, asyncio.Task] = {}
        self._agent_writers: Dict[Tuple[str, str], StreamingItemWriter] = {}

    @classmethod
    def from_config(
        cls,
        config: Optional[Config] = None,
        store: Optional[ThreadStore] = None,
        *,
        agent_backend: Optional[AgentBackend] = None,
        session_host: Optional[SessionHost] = None,
    ) -> "TurnOrchestrator":
        config = config or Config()
        logger = DebugLogger(config.log_dir)
        workspace = config.get("orchestrator.workspace_path")
        router = AdapterRouter(
            agent_backend=agent_backend,
            session_host=session_host,
            workspace=Path(workspace).expanduser() if workspace else None,
            logger=logger,
        )
        return cls(
            ProviderRegistry.from_config(config, CredentialsManager(config)),
            store or InMemoryThreadStore(),
            router,
            logger=logger,
            steer_enabled=config.get_bool("orchestrator.steer_enabled", True),
            language_directive=config.get_bool("orchestrator.language_directive", True),
            default_model=config.get("orchestrator.default_model"),
        )

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    async def send_message(
        self,
        thread_id: str,
        text: str,
        images: Sequence[str] = (),
        *,
        model: Optional[str] = None,
        effort: Optional[str] = None,
        collaboration_mode: Any = None,
        access_mode: Optional[str] = None,
    ) -> Optional[Turn]:
        """
        Submit a user message and drive the resulting turn to a terminal state.

        Agent turns return once the backend accepted them; their output
        arrives through ``handle_agent_event``. Local turns return when the
        provider finished, failed or was interrupted. Failures never raise:
        they end the turn and append an error item.
        """
        text = text.strip()
        images = tuple(image for image in images if image.strip())
        if not text and not images:
            return None

        selector = model or self.default_model
        optimistic = self.steer_enabled and self.turns.is_processing(thread_id)
        if optimistic:
            self.store.upsert_item(
                thread_id,
                Item(id=new_item_id("optimistic-user"), role=Role.USER, text=text, images=images),
            )

        provider_id, model_name = self._split_selector(selector)
        turn = self.turns.begin(thread_id, provider_id, model_name)
        self.logger.client(
            "turn/start",
            {
                "threadId": thread_id,
                "text": text,
                "images": list(images),
                "model": selector,
                "effort": effort,
                "collaborationMode": collaboration_mode,
            },
        )

        try:
            selection = self.registry.resolve(selector)
        except ConfigurationError as exc:
            self._fail(turn, exc)
            return turn
        provider = selection.provider
        turn.protocol = provider.protocol
        turn.model = selection.model

        if isinstance(provider, AgentProvider):
            await self._run_agent_turn(
                turn, provider, text, images, selection.model, effort, collaboration_mode, access_mode
            )
            return turn

        if not optimistic:
            self.store.upsert_item(
                thread_id, Item(id=new_item_id("user"), role=Role.USER, text=text, images=images)
            )
        task = asyncio.ensure_future(
            self._run_local_turn(turn, provider, text, selection.model, is_plan_mode(collaboration_mode))
        )
        self._tasks[turn.token] = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            self._tasks.pop(turn.token, None)
            self.turns.forget(turn.token)
        return turn

    async def interrupt_turn(self, thread_id: str) -> Optional[Turn]:
        """
        Stop the current turn of a thread.

        Processing is cleared and ``Session stopped.`` is appended before the
        first suspension point. Backend notification happens afterwards and
        its failures are only logged.
        """
        turn = self.turns.interrupt(thread_id)
        turn_id = turn.id if turn else "pending"
        self.logger.client(
            "turn/interrupt",
            {"threadId": thread_id, "turnId": turn_id, "queued": bool(turn and not turn.has_backend_id)},
        )
        if turn is None:
            if self.router.agent_backend is not None:
                await self._notify_agent_interrupt(thread_id, self.registry.agent_provider_id, turn_id)
            return None

        if turn.protocol == ProtocolKind.RPC:
            await self._notify_agent_interrupt(thread_id, turn.provider_id, turn_id)
        else:
            task = self._tasks.get(turn.token)
            if task is not None and not task.done():
                task.cancel()
        return turn

    def handle_agent_event(self, thread_id: str, method: str, params: Dict[str, Any]) -> None:
        """Apply a notification from the agent runtime to the thread."""
        params = params or {}
        if method == "item/agentMessage/delta":
            turn = self._agent_turn(thread_id, params.get("turnId"))
            delta = params.get("delta")
            item_id = params.get("itemId")
            if not isinstance(delta, str) or not delta or not item_id:
                return
            if turn is not None and self.turns.append_output(turn.token, delta) is None:
                return
            self._agent_writer(thread_id, str(item_id)).append(delta)
        elif method == "item/completed":
            item = params.get("item")
            if not isinstance(item, dict) or item.get("type") != "agentMessage":
                return
            turn = self._agent_turn(thread_id, params.get("turnId"))
            if turn is not None and turn.is_terminal:
                return
            text = item.get("text")
            if isinstance(text, str) and item.get("id"):
                self._agent_writer(thread_id, str(item["id"])).replace(text)
                self._agent_writers.pop((thread_id, str(item["id"])), None)
        elif method == "turn/completed":
            turn_obj = params.get("turn")
            turn_id = turn_obj.get("id") if isinstance(turn_obj, dict) else params.get("turnId")
            turn = self._agent_turn(thread_id, turn_id)
            if turn is not None:
                self.turns.complete(turn.token)
        elif method == "thread/tokenUsage/updated":
            usage = _usage_from_token_notification(params.get("tokenUsage"))
            turn = self._agent_turn(thread_id, params.get("turnId"))
            if usage is not None:
                provider_id = turn.provider_id if turn else self.registry.agent_provider_id
                self.usage_tracker.record_usage(provider_id, turn.model if turn else None, usage)
        elif method == "error":
            if params.get("willRetry"):
                return
            turn = self._agent_turn(thread_id, params.get("turnId"))
            error = params.get("error")
            message = error.get("message") if isinstance(error, dict) else error
            if turn is not None:
                self.turns.fail(turn.token, str(message or "Turn failed."))

    # ------------------------------------------------------------------ #
    # Agent turns
    # ------------------------------------------------------------------ #
    async def _run_agent_turn(
        self,
        turn: Turn,
        provider: AgentProvider,
        text: str,
        images: Sequence[str],
        model: Optional[str],
        effort: Optional[str],
        collaboration_mode: Any,
        access_mode: Optional[str],
    ) -> None:
        if self.language_directive:
            collaboration_mode = merge_language_directive(collaboration_mode)
        try:
            adapter = self.router.agent_adapter(provider)
            response = await adapter.start_turn_raw(
                turn.thread_id, text, images, model, effort, collaboration_mode, access_mode
            )
            self.logger.server("turn/start response", response)
            turn_id = adapter.accepted_turn_id(response)
        except Exception as exc:
            self.logger.error("turn/start error", str(exc))
            self._fail(turn, exc)
            return

        if self.turns.acknowledge(turn.token, turn_id):
            return
        if self.turns.is_pending_interrupt(turn.token):
            # Interrupted before the id was known; name the real turn now.
            self.turns.clear_pending_interrupt(turn.token)
            await self._notify_agent_interrupt(turn.thread_id, turn.provider_id, turn_id, adapter)

    async def _notify_agent_interrupt(
        self, thread_id: str, provider_id: str, turn_id: str, adapter: Optional[AgentAdapter] = None
    ) -> None:
        try:
            if adapter is None:
                provider = self.registry.get(provider_id)
                if not isinstance(provider, AgentProvider):
                    raise ConfigurationError(f"{provider_id} is not an agent provider")
                adapter = self.router.agent_adapter(provider)
            response = await adapter.interrupt(thread_id, turn_id)
            self.logger.server("turn/interrupt response", response)
        except Exception as exc:
            self.logger.error("turn/interrupt error", str(exc))

    def _agent_turn(self, thread_id: str, turn_id: Any) -> Optional[Turn]:
        if turn_id:
            turn = self.turns.find_by_backend_id(thread_id, str(turn_id))
            if turn is not None:
                return turn
        current = self.turns.current_turn(thread_id)
        if current is not None and current.protocol == ProtocolKind.RPC:
            return current
        return None

    def _agent_writer(self, thread_id: str, item_id: str) -> StreamingItemWriter:
        key = (thread_id, item_id)
        writer = self._agent_writers.get(key)
        if writer is None:
            writer = self._agent_writers[key] = StreamingItemWriter(self.store, thread_id, item_id)
        return writer

    # ------------------------------------------------------------------ #
    # Local turns (session, CLI, HTTP)
    # ------------------------------------------------------------------ #
    async def _run_local_turn(
        self,
        turn: Turn,
        provider: ProviderConfig,
        text: str,
        model: Optional[str],
        plan_mode: bool,
    ) -> None:
        writer = StreamingItemWriter(self.store, turn.thread_id)

        def on_started(backend_id: str) -> None:
            if isinstance(provider, CliProvider):
                self.logger.server("cli/init", {"threadId": turn.thread_id, "sessionId": backend_id})
            self.turns.acknowledge(turn.token, backend_id)

        def on_delta(delta: str) -> None:
            if self.turns.append_output(turn.token, delta) is not None:
                writer.append(delta)

        def on_usage(usage: Usage) -> None:
            self.usage_tracker.record_usage(provider.id, model, usage)

        try:
            adapter = self.router.local_adapter(provider)
            if plan_mode:
                plan = await run_plan(
                    adapter,
                    text,
                    model,
                    turn.id,
                    on_started=on_started,
                    on_usage=on_usage,
                    on_transport_error=lambda exc: self._fallback_adapter(provider, exc, writer),
                )
                self._apply_plan(turn, plan, writer)
            else:
                prompt = self._local_prompt(provider, text)
                result = await self._with_fallback(
                    provider,
                    adapter,
                    lambda a: a.send(prompt, model, on_delta, on_usage, on_started=on_started),
                    writer,
                )
                self._apply_result(turn, provider, result, writer)
        except Exception as exc:
            if isinstance(provider, SessionProvider):
                self.logger.error("session/error", {"threadId": turn.thread_id, "error": str(exc)})
            else:
                self.logger.error("turn/start error", str(exc))
            self._fail(turn, exc)

    async def _with_fallback(
        self,
        provider: ProviderConfig,
        adapter: BaseAdapter,
        call: Callable[[BaseAdapter], Awaitable[T]],
        writer: StreamingItemWriter,
    ) -> T:
        """Run ``call`` on the adapter; a failed vendor CLI gets one retry over HTTP."""
        try:
            return await call(adapter)
        except TransportError as exc:
            fallback = self._fallback_adapter(provider, exc, writer)
        return await call(fallback)

    def _fallback_adapter(
        self, provider: ProviderConfig, exc: TransportError, writer: StreamingItemWriter
    ) -> BaseAdapter:
        """HTTP adapter replacing a failed vendor CLI; re-raises when there is none."""
        if not isinstance(provider, CliProvider):
            raise exc
        if not provider.has_api_fallback:
            raise ConfigurationError(
                f"{provider.label} CLI failed: {exc}. Set CLI command or API key."
            ) from exc
        self.logger.error("cli/fallback", {"provider": provider.id, "error": str(exc)})
        writer.reset()
        return self.router.http_adapter_for(provider.vendor, provider.api_key, label=provider.label)

    def _local_prompt(self, provider: ProviderConfig, text: str) -> str:
        if not self.language_directive:
            return text
        if isinstance(provider, SessionProvider) or getattr(provider, "vendor", None) == "gemini":
            return f"{LANGUAGE_DIRECTIVE}\n\n{text}"
        return text

    def _apply_result(
        self, turn: Turn, provider: ProviderConfig, result: AdapterResult, writer: StreamingItemWriter
    ) -> None:
        if turn.is_terminal:
            return
        self.usage_tracker.record_rate_limits(provider.id, result.rate_limits)
        final_text = result.text or writer.text
        if final_text and (final_text != writer.text or not writer.written):
            writer.replace(final_text)
        self.turns.complete(turn.token)

    def _apply_plan(self, turn: Turn, plan: PlanUpdate, writer: StreamingItemWriter) -> None:
        if turn.is_terminal:
            return
        if plan.turn_id != turn.id:
            plan = PlanUpdate(turn_id=turn.id, explanation=plan.explanation, steps=plan.steps)
        self.store.set_thread_plan(turn.thread_id, plan)
        writer.replace(format_plan_as_message(plan))
        self.turns.complete(turn.token)

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #
    def _split_selector(self, selector: Optional[str]) -> Tuple[str, Optional[str]]:
        if selector and ":" in selector:
            provider_id, _, model = selector.partition(":")
            return provider_id, model or None
        return self.registry.agent_provider_id, selector or None

    def _fail(self, turn: Turn, exc: Exception) -> None:
        self.turns.fail(turn.token, str(exc) or type(exc).__name__)
