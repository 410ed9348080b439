import asyncio
import unittest
import uuid
from unittest.mock import AsyncMock, MagicMock, patch

from webchatbridge.errors import LoginRequired, SessionUnavailable
from webchatbridge.identity import Identity, IdentityStore
from webchatbridge.session_pool import AutomationEngine, SessionPool

from tests._bridge_test_utils import BaseBridgeTest, FakeEngine


class TestSessionPool(BaseBridgeTest):
    async def asyncSetUp(self) -> None:
        await super().asyncSetUp()
        self.store = IdentityStore(self.user_data_dir)
        record = self.store.create("deepseek", "alice@example.com")
        self.identity = record.identity
        self.store.mark_verified(self.identity)

    def make_pool(self, engine: FakeEngine, **kwargs) -> SessionPool:
        options = dict(user_data_dir=self.user_data_dir, default_headless=False, attempts=3, retry_backoff=0)
        options.update(kwargs)
        return SessionPool(engine, self.store, **options)

    async def test_concurrent_acquires_share_one_session(self) -> None:
        engine = FakeEngine(launch_delay=0.05)
        pool = self.make_pool(engine)

        sessions = await asyncio.gather(*(pool.acquire(self.identity) for _ in range(5)))

        self.assertEqual(pool.creations, 1)
        self.assertEqual(len(engine.launches), 1)
        self.assertTrue(all(s is sessions[0] for s in sessions))
        self.assertEqual(engine.launches[0].profile_dir, self.user_data_dir / "deepseek" / self.identity.account_id)

    async def test_live_session_is_reused(self) -> None:
        pool = self.make_pool(FakeEngine())
        first = await pool.acquire(self.identity)
        second = await pool.acquire(self.identity)
        self.assertIs(first, second)
        self.assertEqual(pool.creations, 1)

    async def test_failed_probes_evict_and_retry(self) -> None:
        engine = FakeEngine(probe_failures=[1, 1, 0])
        pool = self.make_pool(engine)

        session = await pool.acquire(self.identity)

        self.assertIs(session.context, engine.launches[2])
        self.assertEqual(pool.creations, 3)
        self.assertEqual(len(pool.evictions), 2)
        self.assertTrue(engine.launches[0].closed)
        self.assertTrue(engine.launches[1].closed)
        self.assertTrue(engine.launches[0] is not session.context)

    async def test_exhausted_attempts_raise_session_unavailable(self) -> None:
        engine = FakeEngine(probe_failures=[1, 1, 1])
        pool = self.make_pool(engine)

        with self.assertRaises(SessionUnavailable) as ctx:
            await pool.acquire(self.identity)

        self.assertEqual(ctx.exception.attempts, 3)
        self.assertIsNone(pool.get_live(self.identity))

    async def test_engine_not_ready_is_session_unavailable(self) -> None:
        pool = self.make_pool(FakeEngine(ready=False), engine_init_timeout=0.01)
        with self.assertRaises(SessionUnavailable):
            await pool.acquire(self.identity)

    async def test_unverified_identity_requires_login(self) -> None:
        stranger = self.store.create("deepseek", "bob@example.com").identity
        pool = self.make_pool(FakeEngine())

        with self.assertRaises(LoginRequired):
            await pool.acquire(stranger)

        session = await pool.acquire(stranger, require_verified=False)
        self.assertEqual(session.identity, stranger)

    async def test_headless_override_change_relaunches(self) -> None:
        engine = FakeEngine()
        pool = self.make_pool(engine)

        visible = await pool.acquire(self.identity)
        hidden = await pool.acquire(self.identity, True)

        self.assertFalse(visible.headless)
        self.assertTrue(hidden.headless)
        self.assertTrue(visible.invalid)
        self.assertTrue(engine.launches[0].closed)
        self.assertEqual(pool.evictions[-1][1], "headless mode change")

    async def test_identity_headless_preference_applies_without_override(self) -> None:
        self.store.set_headless_preference(self.identity, True)
        pool = self.make_pool(FakeEngine())
        session = await pool.acquire(self.identity)
        self.assertTrue(session.headless)

    async def test_engine_gone_restarts_engine_and_drops_sessions(self) -> None:
        engine = FakeEngine()
        pool = self.make_pool(engine)
        other = self.store.create("chatgpt", "carol@example.com").identity
        self.store.mark_verified(other)

        first = await pool.acquire(self.identity)
        other_session = await pool.acquire(other)

        async def gone():
            raise RuntimeError("Playwright connection closed")

        first.context.cookies = gone
        again = await pool.acquire(self.identity)

        self.assertEqual(engine.restarts, 1)
        self.assertIsNot(again, first)
        self.assertTrue(other_session.invalid)
        self.assertIsNone(pool.get_live(other))

    async def test_failed_engine_restart_is_retried_within_acquire(self) -> None:
        engine = FakeEngine(restart_errors=[RuntimeError("playwright failed to start")])
        pool = self.make_pool(engine)
        first = await pool.acquire(self.identity)

        async def gone():
            raise RuntimeError("Playwright connection closed")

        first.context.cookies = gone
        again = await pool.acquire(self.identity)

        self.assertEqual(engine.restarts, 2)
        self.assertIsNot(again, first)
        self.assertTrue(engine.is_running)

    async def test_engine_that_cannot_restart_is_session_unavailable(self) -> None:
        restart_error = RuntimeError("playwright failed to start")
        engine = FakeEngine(restart_errors=[restart_error] * 3)
        pool = self.make_pool(engine)
        first = await pool.acquire(self.identity)

        async def gone():
            raise RuntimeError("Playwright connection closed")

        first.context.cookies = gone
        with self.assertRaises(SessionUnavailable) as ctx:
            await pool.acquire(self.identity)

        self.assertIs(ctx.exception.last_error, restart_error)
        self.assertEqual(engine.restarts, 3)

        engine.restart_errors.clear()
        await engine.restart()
        session = await pool.acquire(self.identity)
        self.assertFalse(session.invalid)

    async def test_evicted_session_fails_on_next_use(self) -> None:
        pool = self.make_pool(FakeEngine())
        session = await pool.acquire(self.identity)
        await pool.evict(self.identity, "test")

        with self.assertRaises(RuntimeError):
            await session.new_page()
        self.assertIsNone(pool.get_live(self.identity))

    async def test_shutdown_closes_everything(self) -> None:
        engine = FakeEngine()
        pool = self.make_pool(engine)
        session = await pool.acquire(self.identity)

        await pool.shutdown()

        self.assertTrue(session.context.closed)
        self.assertTrue(engine.stopped)

    async def test_sweep_orphans_only_removes_unknown_uuid_dirs(self) -> None:
        pool = self.make_pool(FakeEngine())
        owned = pool.profile_dir(self.identity)
        orphan = self.user_data_dir / "deepseek" / str(uuid.uuid4())
        manual = self.user_data_dir / "deepseek" / "my-profile"
        for path in (owned, orphan, manual):
            path.mkdir(parents=True, exist_ok=True)

        removed = pool.sweep_orphans()

        self.assertEqual(removed, [orphan])
        self.assertTrue(owned.exists())
        self.assertTrue(manual.exists())
        self.assertFalse(orphan.exists())

    async def test_sweep_without_user_data_dir_is_a_no_op(self) -> None:
        pool = self.make_pool(FakeEngine(), user_data_dir=self.tmp_path / "missing")
        self.assertEqual(pool.sweep_orphans(), [])


class TestIdentityStore(BaseBridgeTest):
    async def test_records_survive_a_reload(self) -> None:
        store = IdentityStore(self.user_data_dir)
        record = store.create("chatgpt", "dave@example.com", headless_preference=True)
        store.mark_verified(record.identity)

        reloaded = IdentityStore(self.user_data_dir)
        again = reloaded.get(record.identity)

        self.assertIsNotNone(again)
        self.assertTrue(again.login_verified)
        self.assertTrue(again.headless_preference)
        self.assertEqual(again.account_label, "dave@example.com")

    async def test_identity_key_round_trip(self) -> None:
        identity = Identity("deepseek", "abc")
        self.assertEqual(identity.key, "deepseek:abc")
        self.assertEqual(Identity.parse(identity.key), identity)


class TestAutomationEngine(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._print_patch = patch("builtins.print")
        self._print_patch.start()

    def tearDown(self) -> None:
        self._print_patch.stop()

    async def test_failed_start_is_retried_by_the_next_waiter(self) -> None:
        runtime = MagicMock()
        runtime.stop = AsyncMock()
        factory = MagicMock()
        factory.return_value.start = AsyncMock(side_effect=[RuntimeError("driver missing"), runtime])
        engine = AutomationEngine()

        with patch("webchatbridge.session_pool.async_playwright", factory):
            with self.assertRaises(RuntimeError):
                await engine.start()
            self.assertFalse(engine.is_running)

            await engine.wait_ready(1.0)

        self.assertTrue(engine.is_running)
        self.assertEqual(engine.generation, 1)
        await engine.stop()
        runtime.stop.assert_awaited_once()

    async def test_start_that_keeps_failing_surfaces_as_runtime_error(self) -> None:
        factory = MagicMock()
        factory.return_value.start = AsyncMock(side_effect=RuntimeError("driver missing"))
        engine = AutomationEngine()

        with patch("webchatbridge.session_pool.async_playwright", factory):
            with self.assertRaises(RuntimeError):
                await engine.start()
            with self.assertRaises(RuntimeError):
                await engine.wait_ready(1.0)
