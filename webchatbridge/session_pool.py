"""
Automation engine and the per-identity session pool.

The engine wraps one Playwright runtime, started once in the background at process startup.
Every Identity gets at most one persistent Camoufox context (its Session), created lazily on the
first `acquire`, probed on every later `acquire`, and evicted on failure.
"""

import asyncio
import re
import shutil
import time
from pathlib import Path
from typing import Optional

from camoufox.async_api import AsyncNewBrowser
from playwright.async_api import async_playwright

from . import constants
from .console import debug_print
from .errors import (
    LoginRequired,
    SessionUnavailable,
    is_engine_gone_error,
)
from .identity import Identity, IdentityStore, resolve_headless


_UUID_RE = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")


class AutomationEngine:
    """Process-wide Playwright runtime that launches Camoufox persistent contexts."""

    def __init__(self):
        self._playwright = None
        self._ready = asyncio.Event()
        self._lock = asyncio.Lock()
        self._start_error: Optional[BaseException] = None
        self.generation = 0

    @property
    def is_running(self) -> bool:
        return self._playwright is not None

    async def start(self) -> None:
        async with self._lock:
            await self._start_locked()

    async def _start_locked(self) -> None:
        if self._playwright is not None:
            return
        debug_print("🦊 Starting automation engine...")
        try:
            self._playwright = await async_playwright().start()
        except Exception as e:
            self._start_error = e
            self._ready.set()
            debug_print(f"❌ Automation engine failed to start: {e}")
            raise
        self._start_error = None
        self.generation += 1
        self._ready.set()
        debug_print(f"✅ Automation engine ready (generation {self.generation})")

    async def wait_ready(self, timeout: float) -> None:
        """Block until the engine finished starting; TimeoutError if it takes longer than `timeout`."""
        await asyncio.wait_for(self._ready.wait(), timeout=timeout)
        if self._start_error is None:
            return
        # A failed start or restart is retried on the next caller instead of sticking.
        try:
            await asyncio.wait_for(self.start(), timeout=timeout)
        except Exception as e:
            raise RuntimeError(f"Automation engine failed to start: {e}") from e

    async def restart(self) -> None:
        async with self._lock:
            debug_print("🔄 Restarting automation engine (connection lost)...")
            await self._stop_locked()
            await self._start_locked()

    async def stop(self) -> None:
        async with self._lock:
            await self._stop_locked()

    async def _stop_locked(self) -> None:
        playwright, self._playwright = self._playwright, None
        self._ready.clear()
        if playwright is None:
            return
        try:
            await playwright.stop()
        except Exception as e:
            debug_print(f"⚠️  Error stopping automation engine: {e}")

    async def launch_context(self, profile_dir: Path, *, headless: bool, timeout: float):
        if self._playwright is None:
            raise RuntimeError("Playwright connection closed: engine is not running")
        profile_dir = Path(profile_dir)
        profile_dir.mkdir(parents=True, exist_ok=True)
        context = await asyncio.wait_for(
            AsyncNewBrowser(
                self._playwright,
                headless=headless,
                persistent_context=True,
                user_data_dir=str(profile_dir),
                main_world_eval=True,
            ),
            timeout=timeout,
        )
        try:
            await context.add_init_script(constants.ANTI_WEBDRIVER_INIT_SCRIPT)
        except Exception:
            pass
        return context


class Session:
    """One live persistent browser context bound to an Identity."""

    def __init__(self, identity: Identity, context, *, headless: bool, generation: int = 0):
        self.identity = identity
        self.context = context
        self.headless = headless
        self.generation = generation
        self.created_at = time.time()
        self.invalid = False

    def invalidate(self) -> None:
        self.invalid = True

    async def probe(self, timeout: float = constants.SESSION_PROBE_TIMEOUT_SECONDS) -> None:
        """Cheap liveness check; raises if the context (or the engine under it) is gone."""
        if self.invalid:
            raise RuntimeError("Context closed: session was evicted")
        await asyncio.wait_for(self.context.cookies(), timeout=timeout)

    async def new_page(self):
        if self.invalid:
            raise RuntimeError("Context closed: session was evicted")
        return await self.context.new_page()

    async def close(self) -> None:
        try:
            await self.context.close()
        except Exception as e:
            debug_print(f"⚠️  Error closing session {self.identity.key}: {e}")


class SessionPool:
    """
    At most one live Session per Identity.

    Creation and eviction for one identity run under that identity's lock, so concurrent
    `acquire` calls converge on the same Session. Eviction removes the entry and marks it invalid
    in one step (no await in between); a caller still holding the old object fails its next use
    instead of seeing a half-closed context.
    """

    def __init__(
        self,
        engine,
        store: IdentityStore,
        *,
        user_data_dir: Path,
        default_headless: bool = False,
        attempts: int = constants.DEFAULT_SESSION_ACQUIRE_ATTEMPTS,
        launch_timeout: float = constants.DEFAULT_SESSION_LAUNCH_TIMEOUT_SECONDS,
        engine_init_timeout: float = constants.DEFAULT_ENGINE_INIT_TIMEOUT_SECONDS,
        probe_timeout: float = constants.SESSION_PROBE_TIMEOUT_SECONDS,
        retry_backoff: Optional[float] = None,
    ):
        self.engine = engine
        self.store = store
        self.user_data_dir = Path(user_data_dir)
        self.default_headless = bool(default_headless)
        self.attempts = max(1, int(attempts))
        self.launch_timeout = float(launch_timeout)
        self.engine_init_timeout = float(engine_init_timeout)
        self.probe_timeout = float(probe_timeout)
        self.retry_backoff = retry_backoff
        self._sessions: dict[str, Session] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        # (identity key, reason, timestamp) per eviction
        self.evictions: list[tuple[str, str, float]] = []
        self.creations = 0

    def profile_dir(self, identity: Identity) -> Path:
        return self.user_data_dir / identity.provider / identity.account_id

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def get_live(self, identity: Identity) -> Optional[Session]:
        session = self._sessions.get(identity.key)
        if session is None or session.invalid:
            return None
        return session

    async def _wait_engine(self, identity: Identity) -> None:
        try:
            await self.engine.wait_ready(self.engine_init_timeout)
        except asyncio.TimeoutError as e:
            debug_print(f"❌ Engine not ready after {self.engine_init_timeout:.0f}s")
            raise SessionUnavailable(identity.key, 0, e) from e
        except RuntimeError as e:
            raise SessionUnavailable(identity.key, 0, e) from e

    async def acquire(
        self,
        identity: Identity,
        headless_override: Optional[bool] = None,
        *,
        require_verified: bool = True,
    ) -> Session:
        if require_verified and not self.store.is_verified(identity):
            raise LoginRequired(identity.key)

        await self._wait_engine(identity)

        key = identity.key
        async with self._lock_for(key):
            headless = resolve_headless(headless_override, self.store.get(identity), self.default_headless)
            last_error: Optional[BaseException] = None

            for attempt in range(1, self.attempts + 1):
                session = self._sessions.get(key)
                if session is not None and headless_override is not None and session.headless != headless:
                    debug_print(f"🔁 {key}: headless={headless} requested, relaunching session")
                    await self._evict_locked(key, "headless mode change")
                    session = None

                try:
                    if session is None:
                        session = await self._create_locked(identity, headless)
                    await session.probe(self.probe_timeout)
                    self.store.touch(identity)
                    return session
                except Exception as e:
                    last_error = e
                    debug_print(f"⚠️  {key}: session attempt {attempt}/{self.attempts} failed: {e}")
                    await self._evict_locked(key, f"attempt {attempt} failed: {type(e).__name__}")
                    if is_engine_gone_error(e):
                        try:
                            await self._restart_engine()
                        except Exception as restart_error:
                            last_error = restart_error
                            debug_print(f"❌ Automation engine restart failed: {restart_error}")
                    if attempt < self.attempts:
                        await asyncio.sleep(self._backoff(attempt))

            debug_print(f"❌ {key}: no live session after {self.attempts} attempts")
            raise SessionUnavailable(key, self.attempts, last_error)

    def _backoff(self, attempt: int) -> float:
        if self.retry_backoff is not None:
            return float(self.retry_backoff)
        return constants.get_general_backoff_seconds(attempt - 1)

    async def _create_locked(self, identity: Identity, headless: bool) -> Session:
        profile = self.profile_dir(identity)
        debug_print(f"🦊 {identity.key}: launching browser context (headless={headless}, profile={profile})")
        context = await self.engine.launch_context(profile, headless=headless, timeout=self.launch_timeout)
        session = Session(identity, context, headless=headless, generation=getattr(self.engine, "generation", 0))
        self._sessions[identity.key] = session
        self.creations += 1
        return session

    def _detach(self, key: str) -> Optional[Session]:
        session = self._sessions.pop(key, None)
        if session is not None:
            session.invalidate()
        return session

    async def _evict_locked(self, key: str, reason: str) -> None:
        session = self._detach(key)
        if session is None:
            return
        self.evictions.append((key, reason, time.time()))
        debug_print(f"🗑️  Evicted session {key} ({reason})")
        await session.close()

    async def evict(self, identity: Identity, reason: str = "explicit eviction") -> None:
        async with self._lock_for(identity.key):
            await self._evict_locked(identity.key, reason)

    async def _restart_engine(self) -> None:
        # Every session belongs to the dead runtime; drop them all before relaunching.
        stale = [self._detach(key) for key in list(self._sessions)]
        for session in stale:
            if session is not None:
                self.evictions.append((session.identity.key, "engine restart", time.time()))
        await self.engine.restart()

    async def shutdown(self) -> None:
        sessions = [self._detach(key) for key in list(self._sessions)]
        for session in sessions:
            if session is not None:
                await session.close()
        if sessions:
            debug_print(f"👋 Closed {len(sessions)} session(s)")
        try:
            await self.engine.stop()
        except Exception as e:
            debug_print(f"⚠️  Error stopping engine: {e}")

    def sweep_orphans(self) -> list[Path]:
        """
        Delete UUID-named profile directories that no known identity owns.
        One-shot startup garbage collection; never called on the request path.
        """
        root = self.user_data_dir
        if not root.is_dir():
            return []
        known = {identity.key for identity in self.store.known_identities()}
        removed: list[Path] = []
        for provider_dir in sorted(p for p in root.iterdir() if p.is_dir()):
            for account_dir in sorted(p for p in provider_dir.iterdir() if p.is_dir()):
                if not _UUID_RE.match(account_dir.name):
                    continue
                key = f"{provider_dir.name}:{account_dir.name}"
                if key in known or key in self._sessions:
                    continue
                try:
                    shutil.rmtree(account_dir)
                except OSError as e:
                    debug_print(f"⚠️  Could not remove orphaned profile {account_dir}: {e}")
                    continue
                removed.append(account_dir)
                debug_print(f"🧹 Removed orphaned profile {account_dir}")
        return removed
