from typing import Optional
from unittest.mock import patch

from webchatbridge.errors import LoginFlowError
from webchatbridge.identity import IdentityStore
from webchatbridge.login import (
    LoginManager,
    LoginMethod,
    LoginState,
    LoginStore,
    account_matches,
)
from webchatbridge.session_pool import SessionPool

from tests._bridge_test_utils import BaseBridgeTest, FakeEngine


class FakeLoginAdapter:
    name = "deepseek"
    home_url = "https://chat.example/"
    login_url = "https://chat.example/sign_in"

    def __init__(self, login_methods=("manual", "credentials", "qrcode")):
        self.login_methods = login_methods
        self.logged_in = False
        self.account: Optional[str] = None
        self.accepted_password = "hunter2"
        self.qr_code_url: Optional[str] = "https://chat.example/qr.png"
        self.credential_calls: list[tuple[str, str]] = []

    async def is_logged_in(self, page) -> bool:
        return self.logged_in

    async def read_account(self, page) -> Optional[str]:
        return self.account

    async def perform_credential_login(self, page, account: str, password: str) -> bool:
        self.credential_calls.append((account, password))
        if password != self.accepted_password:
            return False
        self.logged_in = True
        self.account = self.account or account
        return True

    async def request_qr_code(self, page) -> Optional[str]:
        return self.qr_code_url


class TestLoginManager(BaseBridgeTest):
    async def asyncSetUp(self) -> None:
        await super().asyncSetUp()
        self.identities = IdentityStore(self.user_data_dir)
        self.identity = self.identities.create("deepseek", "alice@example.com").identity
        self.engine = FakeEngine()
        self.pool = SessionPool(self.engine, self.identities, user_data_dir=self.user_data_dir, retry_backoff=0)
        self.store = LoginStore(self.user_data_dir)
        self.manager = LoginManager(self.pool, self.identities, self.store)
        self.adapter = FakeLoginAdapter()
        self._adapter_patch = patch("webchatbridge.login.get_adapter", return_value=self.adapter)
        self._adapter_patch.start()

    async def asyncTearDown(self) -> None:
        await self.manager.close()
        self._adapter_patch.stop()
        await super().asyncTearDown()

    async def test_credential_flow_reaches_logged_in(self) -> None:
        record = await self.manager.start_login(self.identity)
        self.assertEqual(record.state, LoginState.WAITING_LOGIN_METHOD)

        record = await self.manager.choose_method(self.identity, LoginMethod.CREDENTIALS)
        self.assertEqual(record.state, LoginState.WAITING_ACCOUNT)

        record = await self.manager.submit_account(self.identity, "alice@example.com")
        self.assertEqual(record.state, LoginState.WAITING_PASSWORD)

        record = await self.manager.submit_password(self.identity, "hunter2")
        self.assertEqual(record.state, LoginState.LOGGED_IN)
        self.assertEqual(record.account, "alice@example.com")
        self.assertTrue(self.identities.is_verified(self.identity))
        self.assertEqual(self.adapter.credential_calls, [("alice@example.com", "hunter2")])

    async def test_password_is_never_persisted(self) -> None:
        await self.manager.login_with_credentials(self.identity, "alice@example.com", "hunter2")

        persisted = self.store.path.read_text(encoding="utf-8")
        self.assertIn("LOGGED_IN", persisted)
        self.assertNotIn("hunter2", persisted)

    async def test_rejected_password_fails_and_can_restart(self) -> None:
        record = await self.manager.login_with_credentials(self.identity, "alice@example.com", "wrong")

        self.assertEqual(record.state, LoginState.LOGIN_FAILED)
        self.assertTrue(record.error)
        self.assertFalse(self.identities.is_verified(self.identity))

        record = await self.manager.start_login(self.identity)
        self.assertEqual(record.state, LoginState.WAITING_LOGIN_METHOD)

    async def test_out_of_order_operations_are_rejected(self) -> None:
        with self.assertRaises(LoginFlowError):
            await self.manager.submit_account(self.identity, "alice@example.com")

        await self.manager.start_login(self.identity)
        with self.assertRaises(LoginFlowError):
            await self.manager.submit_password(self.identity, "hunter2")
        with self.assertRaises(LoginFlowError):
            await self.manager.confirm_scan(self.identity)

    async def test_unsupported_method_is_rejected(self) -> None:
        self.adapter.login_methods = ("manual",)
        await self.manager.start_login(self.identity)
        with self.assertRaises(LoginFlowError):
            await self.manager.choose_method(self.identity, LoginMethod.CREDENTIALS)

    async def test_verify_adopts_the_actual_account(self) -> None:
        self.adapter.logged_in = True
        self.adapter.account = "mallory@example.com"

        result = await self.manager.verify(self.identity)

        self.assertTrue(result.verified)
        self.assertTrue(result.adopted)
        self.assertEqual(result.expected, "alice@example.com")
        self.assertEqual(result.actual, "mallory@example.com")
        record = self.identities.get(self.identity)
        self.assertTrue(record.login_verified)
        self.assertEqual(record.account_label, "mallory@example.com")

    async def test_manual_login_completes_on_verify(self) -> None:
        await self.manager.start_login(self.identity)
        record = await self.manager.choose_method(self.identity, LoginMethod.MANUAL)
        self.assertEqual(record.state, LoginState.LOGGING_IN)
        self.assertFalse(self.pool.get_live(self.identity).headless)

        result = await self.manager.verify(self.identity)
        self.assertFalse(result.verified)
        self.assertEqual(self.manager.get(self.identity).state, LoginState.LOGGING_IN)

        self.adapter.logged_in = True
        self.adapter.account = "alice@example.com"
        result = await self.manager.verify(self.identity)

        self.assertTrue(result.verified)
        self.assertFalse(result.adopted)
        self.assertEqual(self.manager.get(self.identity).state, LoginState.LOGGED_IN)

    async def test_qr_login_waits_for_scan(self) -> None:
        await self.manager.start_login(self.identity)
        record = await self.manager.choose_method(self.identity, LoginMethod.QRCODE)
        self.assertEqual(record.state, LoginState.LOGGING_IN)
        self.assertEqual(record.qr_code_url, "https://chat.example/qr.png")

        record = await self.manager.confirm_scan(self.identity)
        self.assertEqual(record.state, LoginState.LOGGING_IN)

        self.adapter.logged_in = True
        self.adapter.account = "alice@example.com"
        record = await self.manager.confirm_scan(self.identity)
        self.assertEqual(record.state, LoginState.LOGGED_IN)
        self.assertTrue(self.identities.is_verified(self.identity))

    async def test_missing_qr_code_fails_the_login(self) -> None:
        self.adapter.qr_code_url = None
        await self.manager.start_login(self.identity)
        record = await self.manager.choose_method(self.identity, LoginMethod.QRCODE)
        self.assertEqual(record.state, LoginState.LOGIN_FAILED)

    async def test_start_login_returns_existing_logged_in_record(self) -> None:
        first = await self.manager.login_with_credentials(self.identity, "alice@example.com", "hunter2")
        again = await self.manager.start_login(self.identity)
        self.assertEqual(again.state, LoginState.LOGGED_IN)
        self.assertIs(again, first)

    async def test_logged_in_record_is_replaced_once_identity_is_unverified(self) -> None:
        await self.manager.login_with_credentials(self.identity, "alice@example.com", "hunter2")
        self.identities.mark_unverified(self.identity)

        record = await self.manager.start_login(self.identity)
        self.assertEqual(record.state, LoginState.WAITING_LOGIN_METHOD)

    async def test_records_are_per_conversation(self) -> None:
        await self.manager.start_login(self.identity, "a")
        await self.manager.choose_method(self.identity, LoginMethod.CREDENTIALS, "a")
        other = await self.manager.start_login(self.identity, "b")

        self.assertEqual(other.state, LoginState.WAITING_LOGIN_METHOD)
        self.assertEqual(self.manager.get(self.identity, "a").state, LoginState.WAITING_ACCOUNT)

        reloaded = LoginStore(self.user_data_dir)
        self.assertEqual(reloaded.get(self.identity, "a").state, LoginState.WAITING_ACCOUNT)


class TestAccountMatches(BaseBridgeTest):
    async def test_matching_rules(self) -> None:
        self.assertTrue(account_matches("Alice@Example.com", "alice@example.com"))
        self.assertTrue(account_matches("alice", "alice@example.com"))
        self.assertFalse(account_matches("alice@example.com", "bob@example.com"))
        self.assertFalse(account_matches(None, "bob@example.com"))
