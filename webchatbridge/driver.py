"""
Conversation driver: opens a page under an identity's session, submits one message and hands the
page to the reconciliation engine.
"""

from typing import AsyncIterator, Callable, Optional

from . import constants
from .browser_utils import close_page_quietly, safe_page_evaluate
from .config import get_config
from .console import debug_print, preview
from .errors import (
    LoginRequired,
    SessionUnavailable,
    UpstreamUnrecoverable,
    is_engine_gone_error,
    is_page_closed_error,
)
from .identity import Identity
from .providers import get_adapter
from .reconcile import ReconciliationEngine
from .session_pool import SessionPool


class ConversationDriver:
    def __init__(self, pool: SessionPool, *, engine_factory: Optional[Callable] = None):
        self.pool = pool
        # (provider) -> ReconciliationEngine; tests inject fixed timings here
        self.engine_factory = engine_factory or (lambda provider: ReconciliationEngine.from_config(get_config(), provider))

    async def open_page(self, identity: Identity, *, headless: Optional[bool] = None, require_verified: bool = True):
        session = await self.pool.acquire(identity, headless, require_verified=require_verified)
        try:
            return await session.new_page()
        except Exception as e:
            debug_print(f"⚠️  {identity.key}: could not open page: {e}")
            await self.pool.evict(identity, f"new_page failed: {type(e).__name__}")
            raise SessionUnavailable(identity.key, 1, e) from e

    async def submit(
        self,
        identity: Identity,
        conversation_handle: Optional[str],
        message: str,
        want_reasoning: bool,
        *,
        headless: Optional[bool] = None,
    ):
        """
        Open (or resume) a conversation and send `message`.

        Returns `(page, conversation_handle)`. The caller owns the page and must close it; on any
        failure here the page is closed before the exception propagates.
        """
        adapter = get_adapter(identity.provider)
        page = await self.open_page(identity, headless=headless)
        target = adapter.conversation_url(conversation_handle)
        debug_print(f"📨 {identity.key}: submitting to {target} (reasoning={want_reasoning}): {preview(message)}")
        try:
            await page.add_init_script(adapter.interceptor_script())
            await page.goto(target, wait_until="domcontentloaded", timeout=constants.PAGE_NAVIGATION_TIMEOUT_MS)
            # The init script only covers documents created after it was added.
            await safe_page_evaluate(page, adapter.interceptor_script())
            try:
                await page.wait_for_selector(adapter.input_selector, timeout=constants.PAGE_NAVIGATION_TIMEOUT_MS)
            except Exception as e:
                debug_print(f"⚠️  {identity.key}: chat input did not appear: {e}")
            if not await adapter.is_logged_in(page):
                self.pool.store.mark_unverified(identity)
                raise LoginRequired(identity.key)
            await adapter.configure(page, want_reasoning)
            await safe_page_evaluate(page, adapter.baseline_script())
            await adapter.clear_replay(page)
            await adapter.send_message(page, message)
        except LoginRequired:
            await close_page_quietly(page)
            raise
        except Exception as e:
            await close_page_quietly(page)
            if is_engine_gone_error(e) or is_page_closed_error(e):
                await self.pool.evict(identity, f"submit failed: {type(e).__name__}")
                raise SessionUnavailable(identity.key, 1, e) from e
            raise UpstreamUnrecoverable(f"Could not submit message: {e}") from e

        handle = conversation_handle or adapter.parse_conversation_handle(page.url)
        return page, handle

    async def exchange(
        self,
        identity: Identity,
        conversation_handle: Optional[str],
        message: str,
        want_reasoning: bool,
        *,
        headless: Optional[bool] = None,
        is_cancelled: Optional[Callable[[], bool]] = None,
    ) -> AsyncIterator:
        """Submit, then stream reconciliation events until Done. The page is always discarded."""
        adapter = get_adapter(identity.provider)
        page, handle = await self.submit(identity, conversation_handle, message, want_reasoning, headless=headless)
        engine = self.engine_factory(identity.provider)
        events = engine.monitor(page, adapter, handle, is_cancelled=is_cancelled)
        try:
            async for event in events:
                yield event
        finally:
            await events.aclose()
            await close_page_quietly(page)
