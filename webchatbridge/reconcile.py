"""
Dual-channel response reconciliation.

One `ReconciliationEngine.monitor()` call runs the poll loop for a single exchange:

    WAITING_FIRST_DATA -> STREAMING -> DONE_DETECTED (grace) -> CORRECTING -> TERMINAL

Each poll drains the page's replay buffer (the upstream's own stream, consumed once) and reads the
live feed (rendered text, cumulative). Fragments are bound to a channel the first time their source
index is seen, diffed against what that source already delivered and emitted as `Chunk` events in
arrival order. After completion the rendered RESPONSE text is re-read once; a mismatch produces a
single `Replace`. The stream ends with `ConversationMarker` and `Done`.

Provider specifics (parsing, classification, completion markers, selectors) come from the adapter.
"""

import asyncio
import math
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Callable, Optional

from . import constants
from .browser_utils import page_is_closed
from .config import get_monitor_mode, get_seconds
from .console import debug_print, preview
from .errors import (
    ExchangeTimeout,
    UpstreamUnrecoverable,
    is_page_closed_error,
    is_transient_error,
)
from .fragments import Channel, Fragment, longest_prefix_delta


# Pseudo source indices for live-feed snapshots (live monitor mode)
LIVE_RESPONSE_SOURCE = -1
LIVE_REASONING_SOURCE = -2


# --- Events ---

@dataclass(frozen=True)
class Chunk:
    channel: Channel
    text: str


@dataclass(frozen=True)
class Replace:
    channel: Channel
    text: str


@dataclass(frozen=True)
class ConversationMarker:
    handle: Optional[str]


@dataclass(frozen=True)
class Done:
    pass


class Phase(str, Enum):
    WAITING_FIRST_DATA = "waiting_first_data"
    STREAMING = "streaming"
    DONE_DETECTED = "done_detected"
    CORRECTING = "correcting"
    TERMINAL = "terminal"


_PHASE_ORDER = list(Phase)


@dataclass
class LiveFeed:
    """Non-destructive read of the rendered reply."""

    response: str = ""
    reasoning: str = ""
    generating: bool = False
    ready: bool = False


@dataclass
class ReconciliationState:
    text: dict = field(default_factory=lambda: {Channel.RESPONSE: "", Channel.REASONING: ""})
    source_text: dict = field(default_factory=dict)
    channel_map: dict = field(default_factory=dict)
    phase: Phase = Phase.WAITING_FIRST_DATA
    completed: bool = False
    done_observed_at: Optional[float] = None
    grace_remaining: int = 0
    idle_polls: int = 0
    polls: int = 0
    generating_seen: bool = False
    settle_confirmations: int = 0
    transient_retries: int = 0
    replaced: bool = False

    @property
    def has_text(self) -> bool:
        return any(self.text.values())

    def advance(self, phase: Phase) -> bool:
        """Move forward only; returns True when the phase actually changed."""
        if _PHASE_ORDER.index(phase) <= _PHASE_ORDER.index(self.phase):
            return False
        debug_print(f"  🔀 reconcile: {self.phase.value} -> {phase.value}")
        self.phase = phase
        return True

    def channel_for(self, fragment: Fragment, classify: Callable) -> Channel:
        channel = self.channel_map.get(fragment.source)
        if channel is None:
            channel = Channel(classify(fragment, self))
            self.channel_map[fragment.source] = channel
        return channel

    def absorb(self, fragment: Fragment, channel: Channel) -> str:
        previous = self.source_text.get(fragment.source, "")
        delta = longest_prefix_delta(previous, fragment.text)
        if len(fragment.text) > len(previous):
            self.source_text[fragment.source] = fragment.text
        if delta:
            self.text[channel] += delta
        return delta


class ReplayLog:
    """Raw replay-buffer dump for one exchange, enabled by config `replay_log_dir`."""

    def __init__(self, directory: Path, label: str):
        stamp = time.strftime("%Y%m%d-%H%M%S")
        self.path = Path(directory) / f"{stamp}-{label}-{uuid.uuid4().hex[:8]}.log"
        self.chunks = 0
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self.path, "a", encoding="utf-8")

    def write(self, raw: str) -> None:
        self.chunks += 1
        self._file.write(f"--- chunk {self.chunks} @ {time.time():.3f} ---\n{raw}\n")

    def close(self, state: ReconciliationState) -> None:
        if self._file.closed:
            return
        self._file.write(
            "=== summary ===\n"
            f"chunks={self.chunks} polls={state.polls} phase={state.phase.value}\n"
            f"response_chars={len(state.text[Channel.RESPONSE])} "
            f"reasoning_chars={len(state.text[Channel.REASONING])} replaced={state.replaced}\n"
        )
        self._file.close()


class ReconciliationEngine:
    def __init__(
        self,
        *,
        poll_interval: float = constants.DEFAULT_POLL_INTERVAL_SECONDS,
        timeout: float = constants.DEFAULT_EXCHANGE_TIMEOUT_SECONDS,
        grace_polls: int = 10,
        idle_polls: int = 200,
        transient_backoff: float = constants.DEFAULT_TRANSIENT_BACKOFF_SECONDS,
        mode: str = "replay",
        replay_log_dir: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.poll_interval = max(0.0, float(poll_interval))
        self.timeout = float(timeout)
        self.grace_polls = max(1, int(grace_polls))
        self.idle_polls = max(1, int(idle_polls))
        self.transient_backoff = max(0.0, float(transient_backoff))
        self.mode = mode
        self.replay_log_dir = replay_log_dir or None
        self.clock = clock

    @classmethod
    def from_config(cls, config: dict, provider: str) -> "ReconciliationEngine":
        poll = get_seconds(config, "poll_interval_seconds", constants.DEFAULT_POLL_INTERVAL_SECONDS,
                           minimum=0.02, maximum=2.0)
        grace = get_seconds(config, "grace_window_seconds", constants.DEFAULT_GRACE_WINDOW_SECONDS,
                            minimum=0.1, maximum=10.0)
        idle = get_seconds(config, "idle_timeout_seconds", constants.DEFAULT_IDLE_TIMEOUT_SECONDS,
                           minimum=1.0, maximum=600.0)
        return cls(
            poll_interval=poll,
            timeout=get_seconds(config, "exchange_timeout_seconds", constants.DEFAULT_EXCHANGE_TIMEOUT_SECONDS,
                                minimum=5.0, maximum=1800.0),
            grace_polls=math.ceil(grace / poll),
            idle_polls=math.ceil(idle / poll),
            transient_backoff=get_seconds(config, "transient_backoff_seconds",
                                          constants.DEFAULT_TRANSIENT_BACKOFF_SECONDS, maximum=10.0),
            mode=get_monitor_mode(config, provider),
            replay_log_dir=str(config.get("replay_log_dir") or "") or None,
        )

    async def monitor(
        self,
        page,
        adapter,
        conversation_handle: Optional[str] = None,
        *,
        is_cancelled: Optional[Callable[[], bool]] = None,
    ) -> AsyncIterator:
        state = ReconciliationState()
        parser = adapter.new_parser()
        replay_log = ReplayLog(self.replay_log_dir, adapter.name) if self.replay_log_dir else None
        events = self._run(page, adapter, parser, state, conversation_handle, is_cancelled, replay_log)
        try:
            async for event in events:
                yield event
        finally:
            await events.aclose()
            if replay_log is not None:
                replay_log.close(state)

    async def _run(self, page, adapter, parser, state: ReconciliationState, conversation_handle,
                   is_cancelled, replay_log) -> AsyncIterator:
        started = self.clock()
        deadline = started + self.timeout
        stopped = False
        timed_out = False

        while True:
            if is_cancelled is not None and is_cancelled():
                debug_print("  ⏹️  reconcile: caller went away, stopping")
                stopped = True
                break
            if page_is_closed(page):
                debug_print("  ⏹️  reconcile: page closed, stopping")
                stopped = True
                break
            if self.clock() >= deadline:
                timed_out = True
                debug_print(f"  ⏱️  reconcile: hard timeout after {self.timeout:.0f}s")
                break

            state.polls += 1
            try:
                events, got_data, completed, live = await self._poll(page, adapter, parser, state, replay_log)
            except Exception as e:
                if is_page_closed_error(e):
                    debug_print(f"  ⏹️  reconcile: page gone ({e}), stopping")
                    stopped = True
                    break
                if is_transient_error(e):
                    state.transient_retries += 1
                    debug_print(f"  🔄 reconcile: transient error, retrying in {self.transient_backoff}s: {e}")
                    await asyncio.sleep(self.transient_backoff)
                    continue
                if state.has_text:
                    debug_print(f"  ⚠️  reconcile: unrecoverable error, finalizing with collected text: {e}")
                    break
                raise UpstreamUnrecoverable(f"{type(e).__name__}: {e}") from e

            for event in events:
                yield event

            if self._should_finish(state, got_data, completed, live):
                break

            await asyncio.sleep(self.poll_interval)

        if stopped:
            return

        # A last line without its newline is only trusted once polling is over.
        tail = parser.finish()
        if self.mode != "live":
            for event in self._absorb(tail.fragments, adapter, state):
                yield event

        if timed_out and not state.has_text:
            raise ExchangeTimeout(f"No reply text within {self.timeout:.0f}s")

        state.advance(Phase.CORRECTING)
        if page_is_closed(page):
            return
        correction = await self._correct(page, adapter, state)
        if correction is not None:
            yield correction

        handle = await self._conversation_handle(page, adapter, conversation_handle)
        state.advance(Phase.TERMINAL)
        debug_print(
            f"  ✅ reconcile: done in {self.clock() - started:.1f}s, {state.polls} polls, "
            f"response={len(state.text[Channel.RESPONSE])} chars, "
            f"reasoning={len(state.text[Channel.REASONING])} chars"
        )
        yield ConversationMarker(handle)
        yield Done()

    async def _poll(self, page, adapter, parser, state: ReconciliationState, replay_log):
        # The replay drain empties the page buffer, so nothing that can fail runs after it.
        live = await adapter.read_live(page)

        raw = await adapter.read_replay(page)
        if raw and replay_log is not None:
            replay_log.write(raw)
        parsed = parser.feed(raw or "")
        got_data = bool(raw)

        if self.mode == "live":
            fragments = []
            if live is not None:
                fragments.append(Fragment(LIVE_REASONING_SOURCE, live.reasoning or "", "THINK"))
                fragments.append(Fragment(LIVE_RESPONSE_SOURCE, live.response or "", "RESPONSE"))
        else:
            fragments = parsed.fragments

        events = self._absorb(fragments, adapter, state)
        if self.mode == "live":
            got_data = got_data or bool(events)
        return events, got_data, parsed.completed, live

    def _absorb(self, fragments, adapter, state: ReconciliationState) -> list:
        events: list = []
        for fragment in fragments:
            channel = state.channel_for(fragment, adapter.classify)
            delta = state.absorb(fragment, channel)
            if delta:
                events.append(Chunk(channel, delta))
        if events:
            state.advance(Phase.STREAMING)
        return events

    def _should_finish(self, state: ReconciliationState, got_data: bool, completed: bool, live) -> bool:
        if state.phase == Phase.DONE_DETECTED:
            if got_data:
                state.grace_remaining = self.grace_polls
                return False
            state.grace_remaining -= 1
            return state.grace_remaining <= 0

        if completed:
            state.completed = True
            state.done_observed_at = self.clock()
            state.grace_remaining = self.grace_polls
            state.advance(Phase.DONE_DETECTED)
            debug_print(f"  🏁 reconcile: completion marker seen, grace window of {self.grace_polls} polls")
            return False

        state.idle_polls = 0 if got_data else state.idle_polls + 1
        if state.idle_polls >= self.idle_polls:
            debug_print(f"  💤 reconcile: no data for {state.idle_polls} polls, treating as complete")
            return True

        if live is not None:
            if live.generating:
                state.generating_seen = True
                state.settle_confirmations = 0
            elif state.generating_seen and live.ready:
                state.settle_confirmations += 1
                if state.settle_confirmations >= constants.SETTLEMENT_CONFIRMATIONS:
                    debug_print("  🏁 reconcile: page settled (generation indicator gone), treating as complete")
                    return True
            else:
                state.settle_confirmations = 0
        return False

    async def _correct(self, page, adapter, state: ReconciliationState) -> Optional[Replace]:
        try:
            final_text = await adapter.read_final_response(page)
        except Exception as e:
            debug_print(f"  ⚠️  reconcile: could not read final response, skipping correction: {e}")
            return None
        if final_text is None or not final_text.strip():
            return None
        collected = state.text[Channel.RESPONSE]
        if final_text.strip() == collected.strip():
            return None
        debug_print(
            f"  ✏️  reconcile: final text differs ({len(collected)} -> {len(final_text)} chars), "
            f"replacing: {preview(final_text)}"
        )
        state.text[Channel.RESPONSE] = final_text
        state.replaced = True
        return Replace(Channel.RESPONSE, final_text)

    async def _conversation_handle(self, page, adapter, fallback: Optional[str]) -> Optional[str]:
        try:
            handle = await adapter.conversation_handle(page)
        except Exception as e:
            debug_print(f"  ⚠️  reconcile: could not read conversation handle: {e}")
            handle = None
        return handle or fallback
