"""
Conversation orchestrator — round-based provider selection with failover.

One orchestrator per chat session. Each turn:
  1. pick a provider (first-round video → primary, manual pin, round default)
  2. degrade media to text when the chosen provider is text-only
  3. push translated history into the adapter if the provider changed
  4. call it, streaming deltas back through one callback
  5. on a provider error, retry the same turn once on the other provider
  6. append user + assistant to the shared history and advance the round

Turns are strictly sequential: a second send() while one is in flight is
rejected, so ConversationState never sees concurrent mutation.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx

from vidchat.backends import ADAPTERS, ChatOptions, ProviderAdapter
from vidchat.config import resolve_system_prompt
from vidchat.errors import (
    NoProviderAvailableError,
    ProviderError,
    ProviderUnavailableError,
    TransportError,
    TurnCancelledError,
    TurnInProgressError,
)
from vidchat.history import HistoryStore
from vidchat.media import (
    MediaBundle,
    Subtitle,
    check_frames,
    format_subtitles,
    format_timestamp,
    subtitle_context,
    subtitles_between,
)
from vidchat.models import (
    ASSISTANT,
    PRIMARY,
    PROVIDERS,
    SECONDARY,
    ChatResult,
    Message,
    StreamChunk,
    TurnResult,
    alternate,
)
from vidchat.wiretap import WireLog

logger = logging.getLogger(__name__)

IDLE = "idle"
AWAITING = "awaiting"
COMPLETED = "completed"
FAILED = "failed"

FOLLOW_UP_ADDENDUM = (
    "This is a follow-up to an earlier discussion about a video. The video is not "
    "attached again; answer from the conversation history."
)
MEDIA_DROPPED_ADDENDUM = (
    "The user attached video frames or images that cannot be shown to you. "
    "Answer from the text and any subtitles provided."
)

# Screenshots sent along with a segment question
MAX_SEGMENT_IMAGES = 3


@dataclass
class OrchestratorSettings:
    stream: bool = True
    auto_switch_by_round: bool = True
    auto_failover: bool = True
    secondary_failure_limit: int = 2   # consecutive failures before secondary is disabled; 0 = never
    turn_timeout: float = 0            # whole-turn deadline in seconds; 0 = none
    reasoning: bool = False
    include_subtitles: bool = True

    @classmethod
    def from_config(cls, conv_cfg: dict) -> "OrchestratorSettings":
        return cls(
            stream=conv_cfg.get("stream", True),
            auto_switch_by_round=conv_cfg.get("auto_switch_by_round", True),
            auto_failover=conv_cfg.get("auto_failover", True),
            secondary_failure_limit=int(conv_cfg.get("secondary_failure_limit", 2)),
            turn_timeout=float(conv_cfg.get("turn_timeout") or 0),
            reasoning=conv_cfg.get("reasoning", False),
            include_subtitles=conv_cfg.get("include_subtitles", True),
        )


@dataclass
class OrchestratorContext:
    """Everything a session needs, built once at session start."""
    adapters: dict[str, ProviderAdapter]
    settings: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    system_prompt: str = ""
    wire: WireLog | None = None

    @classmethod
    def from_config(
        cls, cfg: dict, transport: httpx.AsyncBaseTransport | None = None
    ) -> "OrchestratorContext":
        wire_cfg = cfg.get("wiretap", {})
        wire = WireLog(wire_cfg.get("path", "./data/wire.jsonl")) if wire_cfg.get("enabled") else None

        relay_cfg = cfg.get("relay", {})
        relay_url = relay_cfg.get("url", "") if relay_cfg.get("enabled") else ""
        system_prompt = resolve_system_prompt(cfg)

        adapters: dict[str, ProviderAdapter] = {}
        for tag, adapter_cls in ADAPTERS.items():
            p_cfg = cfg.get("providers", {}).get(tag, {})
            adapters[tag] = adapter_cls(
                name=p_cfg.get("name", tag),
                url=p_cfg.get("url", ""),
                api_key=p_cfg.get("api_key", ""),
                model=p_cfg.get("model", ""),
                timeout=p_cfg.get("timeout", 120),
                relay_url=relay_url,
                buffered=p_cfg.get("buffered", False),
                system_prompt=system_prompt,
                transport=transport,
                wire=wire,
            )

        return cls(
            adapters=adapters,
            settings=OrchestratorSettings.from_config(cfg.get("conversation", {})),
            system_prompt=system_prompt,
            wire=wire,
        )


@dataclass
class ConversationState:
    history: HistoryStore
    round_index: int = 0
    active_provider: str = PRIMARY
    primary_available: bool = False
    secondary_available: bool = False
    pinned_provider: str | None = None
    failed_over: bool = False          # active_provider was set by a successful failover
    secondary_failures: int = 0        # consecutive
    phase: str = IDLE
    subtitles: list[Subtitle] = field(default_factory=list)

    def available(self, provider: str) -> bool:
        if provider == PRIMARY:
            return self.primary_available
        if provider == SECONDARY:
            return self.secondary_available
        return False


class ConversationOrchestrator:
    """
    Owns a ConversationState and decides which adapter serves each turn.
    Adapters are looked up by provider tag only.
    """

    def __init__(self, context: OrchestratorContext):
        self.context = context
        self.adapters = context.adapters
        self.settings = context.settings
        self.state = ConversationState(history=HistoryStore(context.system_prompt))
        self.initialized = False
        self._synced: str | None = None      # provider whose adapter mirrors the history
        self._task: asyncio.Task | None = None
        self._cancelled = False

    # ------------------------------------------------------------------
    # Session setup
    # ------------------------------------------------------------------

    def initialize(self) -> ConversationState:
        """Initialize both adapters once; availability is fixed from here on."""
        primary_ok = self.adapters[PRIMARY].initialize()
        secondary_ok = self.adapters[SECONDARY].initialize()
        if not primary_ok and not secondary_ok:
            raise NoProviderAvailableError("Neither provider could be initialized; check API keys")

        state = self.state
        state.primary_available = primary_ok
        state.secondary_available = secondary_ok
        state.active_provider = PRIMARY if primary_ok else SECONDARY
        self.initialized = True

        if not secondary_ok:
            logger.warning("Secondary provider unavailable; follow-up rounds will use primary")
        if not primary_ok:
            logger.warning("Primary provider unavailable; video understanding is disabled")
        self._route("init", state.active_provider, primary=primary_ok, secondary=secondary_ok)
        return state

    def set_subtitles(self, subtitles: list[Subtitle]):
        self.state.subtitles = list(subtitles)
        logger.info("Loaded %d subtitle cues", len(subtitles))

    def clear_video_data(self):
        self.state.subtitles = []

    def clear_history(self):
        """Start over: history, round counter and failover state reset; pin is kept."""
        self.cancel()
        state = self.state
        state.history.clear(keep_system=True)
        state.round_index = 0
        state.failed_over = False
        state.phase = IDLE
        for adapter in self.adapters.values():
            adapter.clear_history()
        self._synced = None
        logger.info("Conversation cleared")

    def close(self):
        self.cancel()
        if self.context.wire:
            self.context.wire.close()

    def status(self) -> dict:
        state = self.state
        return {
            "round": state.round_index,
            "phase": state.phase,
            "active_provider": state.active_provider,
            "pinned_provider": state.pinned_provider,
            "failed_over": state.failed_over,
            "primary_available": state.primary_available,
            "secondary_available": state.secondary_available,
            "secondary_failures": state.secondary_failures,
            "messages": len(state.history),
        }

    # ------------------------------------------------------------------
    # Provider policy
    # ------------------------------------------------------------------

    def select_provider(self, needs_video: bool = False) -> str:
        state = self.state

        # First-round video understanding only works on the multimodal provider
        if needs_video and state.round_index == 0:
            if not state.primary_available:
                raise ProviderUnavailableError(PRIMARY, "first-round video understanding needs it")
            return PRIMARY

        if state.pinned_provider:
            if not state.available(state.pinned_provider):
                raise ProviderUnavailableError(state.pinned_provider, "pinned but not available")
            return state.pinned_provider

        if state.round_index == 0:
            candidate = PRIMARY
        elif state.failed_over or not self.settings.auto_switch_by_round:
            candidate = state.active_provider
        else:
            candidate = SECONDARY

        if not state.available(candidate):
            candidate = alternate(candidate)
        return candidate

    def pin_provider(self, provider: str | None):
        """
        Manually choose the provider for every following turn until changed.
        None returns to automatic selection.
        """
        state = self.state
        if provider is None:
            state.pinned_provider = None
            state.failed_over = False
            logger.info("Provider pin cleared; automatic selection resumed")
            return
        if provider not in PROVIDERS:
            raise ValueError(f"Unknown provider {provider!r}; expected one of {PROVIDERS}")
        if not state.available(provider):
            raise ProviderUnavailableError(provider, "cannot pin an unavailable provider")

        state.pinned_provider = provider
        state.failed_over = False
        self._activate(provider, state.history.snapshot())
        logger.info("Provider pinned to '%s'", provider)

    def _activate(self, provider: str, context: list[Message]):
        """Make provider active, pushing translated history into it if it is stale."""
        if self._synced != provider:
            self.adapters[provider].sync_history(context)
            self._synced = provider
        if self.state.active_provider != provider:
            logger.info("Active provider %s → %s", self.state.active_provider, provider)
            self._route("switch", provider, previous=self.state.active_provider)
        self.state.active_provider = provider

    def _record_failure(self, provider: str, error: Exception):
        if self.context.wire:
            self.context.wire.log(
                "error",
                content=str(error),
                provider=provider,
                round_index=self.state.round_index,
                error_type=type(error).__name__,
            )
        if provider != SECONDARY:
            return
        state = self.state
        state.secondary_failures += 1
        limit = self.settings.secondary_failure_limit
        if limit and state.secondary_failures >= limit and state.secondary_available:
            state.secondary_available = False
            logger.warning(
                "Secondary provider disabled after %d consecutive failures",
                state.secondary_failures,
            )
            self._route("disable", SECONDARY, failures=state.secondary_failures)

    def _record_success(self, provider: str):
        if provider == SECONDARY:
            self.state.secondary_failures = 0

    def _route(self, event: str, provider: str, **extra):
        if self.context.wire:
            self.context.wire.log(
                "route",
                content=event,
                provider=provider,
                round_index=self.state.round_index,
                **extra,
            )

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def send(
        self,
        prompt: str | MediaBundle,
        on_chunk: Callable[[StreamChunk], Any] | None = None,
        stream: bool | None = None,
        system_addendum: str = "",
    ) -> TurnResult:
        """Run one turn. Raises the final provider error if the turn fails."""
        if self._task is not None and not self._task.done():
            raise TurnInProgressError("A turn is already awaiting a response")
        if not self.initialized:
            self.initialize()

        bundle = MediaBundle.coerce(prompt)
        stream = self.settings.stream if stream is None else stream
        self._cancelled = False
        self._task = asyncio.ensure_future(
            self._run_turn(bundle, on_chunk, stream, system_addendum)
        )
        try:
            return await self._task
        except asyncio.CancelledError:
            if self._cancelled:
                raise TurnCancelledError("Turn cancelled") from None
            raise
        finally:
            self._task = None

    async def chat(
        self,
        text: str,
        images: list[str] | None = None,
        on_chunk: Callable[[StreamChunk], Any] | None = None,
        stream: bool | None = None,
    ) -> TurnResult:
        return await self.send(MediaBundle(text=text, images=list(images or [])), on_chunk, stream)

    async def understand_video_frames(
        self,
        frames: list[str],
        prompt: str,
        on_chunk: Callable[[StreamChunk], Any] | None = None,
        stream: bool | None = None,
        video_time: float | None = None,
        current_subtitles: list[Subtitle] | None = None,
    ) -> TurnResult:
        """Ask about the video via its key frames (at least MIN_VIDEO_FRAMES)."""
        check_frames(frames)
        subtitles = self.state.subtitles if self.settings.include_subtitles else None
        addendum = subtitle_context(subtitles, video_time, current_subtitles)
        return await self.send(
            MediaBundle(text=prompt, frames=list(frames)), on_chunk, stream, system_addendum=addendum
        )

    async def ask_about_segment(
        self,
        question: str,
        start: float,
        end: float,
        images: list[str] | None = None,
        on_chunk: Callable[[StreamChunk], Any] | None = None,
        stream: bool | None = None,
    ) -> TurnResult:
        """Question scoped to [start, end] seconds, with that window's subtitles inlined."""
        text = (
            f"Question about the video from {format_timestamp(start)} "
            f"to {format_timestamp(end)}: {question}"
        )
        cues = subtitles_between(self.state.subtitles, start, end)
        if cues:
            text += "\n\n" + format_subtitles(cues, header="Subtitles in this segment:")
        bundle = MediaBundle(text=text, images=list(images or [])[:MAX_SEGMENT_IMAGES])
        return await self.send(bundle, on_chunk, stream)

    def cancel(self) -> bool:
        """Abort the in-flight turn. No chunk callbacks fire afterwards."""
        if self._task is None or self._task.done():
            return False
        self._cancelled = True
        self._task.cancel()
        return True

    async def _run_turn(
        self,
        bundle: MediaBundle,
        on_chunk: Callable[[StreamChunk], Any] | None,
        stream: bool,
        system_addendum: str,
    ) -> TurnResult:
        state = self.state
        provider = self.select_provider(bundle.has_video)
        context = state.history.snapshot()

        state.history.append(Message.from_bundle(bundle))
        state.phase = AWAITING
        logger.info(
            "Round %d → %s (video=%s, stream=%s)",
            state.round_index, provider, bundle.has_video, stream,
        )
        self._route("select", provider, video=bundle.has_video, pinned=state.pinned_provider)

        try:
            result, served_by, degraded, failed_over = await self._call_with_failover(
                provider, context, bundle, on_chunk, stream, system_addendum
            )
        except asyncio.CancelledError:
            state.history.discard_open()
            state.phase = FAILED
            logger.info("Round %d cancelled", state.round_index)
            self._route("cancel", state.active_provider)
            raise
        except Exception:
            state.phase = FAILED
            raise

        history = state.history
        if history.streaming is not None:
            history.close(result.text)
        else:
            history.append(result.assistant_message or Message(
                role=ASSISTANT, content=result.text, provider=served_by, model=result.model,
            ))

        turn = TurnResult(
            text=result.text,
            provider=served_by,
            round_index=state.round_index,
            failed_over=failed_over,
            degraded=degraded,
            reasoning=result.reasoning,
            latency_ms=result.latency_ms,
        )
        state.round_index += 1
        state.phase = COMPLETED
        return turn

    async def _call_with_failover(
        self,
        provider: str,
        context: list[Message],
        bundle: MediaBundle,
        on_chunk: Callable[[StreamChunk], Any] | None,
        stream: bool,
        system_addendum: str,
    ) -> tuple[ChatResult, str, bool, bool]:
        """(result, provider that served, degraded, failed over)"""
        streamed = [False]
        try:
            result, degraded = await self._attempt(
                provider, context, bundle, on_chunk, stream, system_addendum, streamed
            )
            self._record_success(provider)
            return result, provider, degraded, False
        except ProviderError as first:
            logger.warning("Provider '%s' failed in round %d: %s", provider, self.state.round_index, first)
            self._record_failure(provider, first)

            fallback = alternate(provider)
            if not self.settings.auto_failover:
                raise
            if not self.state.available(fallback):
                logger.error("No failover possible: '%s' is unavailable", fallback)
                raise

            if streamed[0] and on_chunk and not self._cancelled:
                # Tell the caller to drop the partial text it has rendered
                on_chunk(StreamChunk(cumulative_text="", error=str(first)))

            logger.info("Failing over round %d from '%s' to '%s'", self.state.round_index, provider, fallback)
            self._route("failover", fallback, previous=provider, error=str(first))
            active, synced = self.state.active_provider, self._synced
            try:
                result, degraded = await self._attempt(
                    fallback, context, bundle, on_chunk, stream, system_addendum, [False]
                )
            except ProviderError as second:
                logger.error(
                    "Failover to '%s' also failed: %s (original %s error: %s)",
                    fallback, second, provider, first,
                )
                self._record_failure(fallback, second)
                # Only a successful failover moves the active provider
                self.state.active_provider, self._synced = active, synced
                raise second from first

            self._record_success(fallback)
            self.state.failed_over = True
            return result, fallback, degraded, True

    async def _attempt(
        self,
        provider: str,
        context: list[Message],
        bundle: MediaBundle,
        on_chunk: Callable[[StreamChunk], Any] | None,
        stream: bool,
        system_addendum: str,
        streamed: list[bool],
    ) -> tuple[ChatResult, bool]:
        adapter = self.adapters[provider]
        history = self.state.history
        addenda = [system_addendum] if system_addendum else []

        outgoing = bundle
        degraded = False
        if bundle.has_media and not adapter.supports_media:
            outgoing = bundle.text_only()
            degraded = True
            addenda.append(FOLLOW_UP_ADDENDUM if self.state.round_index > 0 else MEDIA_DROPPED_ADDENDUM)
            logger.warning(
                "Provider '%s' is text-only; sending round %d without its media",
                provider, self.state.round_index,
            )
            self._route("degrade", provider)

        self._activate(provider, context)

        def on_delta(chunk: StreamChunk):
            if self._cancelled:
                return
            if chunk.delta_text:
                if history.streaming is None:
                    history.open_assistant(provider=provider, model=adapter.model)
                history.grow(chunk.delta_text)
                streamed[0] = True
            if on_chunk:
                on_chunk(chunk)

        options = ChatOptions(
            stream=stream,
            on_delta=on_delta,
            system_prompt=adapter.video_system_prompt if outgoing.has_video else "",
            system_addendum="\n\n".join(addenda),
            reasoning=self.settings.reasoning,
        )
        call = adapter.chat(context, outgoing, options)
        try:
            if self.settings.turn_timeout:
                try:
                    result = await asyncio.wait_for(call, timeout=self.settings.turn_timeout)
                except asyncio.TimeoutError as e:
                    raise TransportError(
                        f"Turn exceeded {self.settings.turn_timeout}s", provider=provider
                    ) from e
            else:
                result = await call
        except (Exception, asyncio.CancelledError):
            history.discard_open()
            raise
        return result, degraded
