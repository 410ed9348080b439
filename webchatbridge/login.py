"""
Login state machine.

    NOT_STARTED -> WAITING_LOGIN_METHOD -+-> (manual)      LOGGING_IN -> verify -> LOGGED_IN
                                         +-> (qrcode)      LOGGING_IN -> confirm_scan -> LOGGED_IN
                                         +-> (credentials) WAITING_ACCOUNT -> WAITING_PASSWORD
                                                           -> LOGGING_IN -> LOGGED_IN | LOGIN_FAILED

One record per (identity, conversation), persisted to `<user_data_dir>/login_sessions.json`.
Passwords are never persisted.
"""

import asyncio
import base64
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

import httpx

from . import constants
from .browser_utils import close_page_quietly, page_is_closed
from .config import read_json, write_json_atomic
from .console import debug_print
from .errors import LoginFlowError
from .identity import Identity, IdentityStore
from .providers import get_adapter


class LoginState(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    WAITING_LOGIN_METHOD = "WAITING_LOGIN_METHOD"
    WAITING_ACCOUNT = "WAITING_ACCOUNT"
    WAITING_PASSWORD = "WAITING_PASSWORD"
    LOGGING_IN = "LOGGING_IN"
    LOGGED_IN = "LOGGED_IN"
    LOGIN_FAILED = "LOGIN_FAILED"


class LoginMethod(str, Enum):
    MANUAL = "manual"
    CREDENTIALS = "credentials"
    QRCODE = "qrcode"


DEFAULT_CONVERSATION = "default"


@dataclass
class LoginSession:
    identity: Identity
    conversation: str = DEFAULT_CONVERSATION
    state: LoginState = LoginState.NOT_STARTED
    method: Optional[LoginMethod] = None
    account: Optional[str] = None
    qr_code_url: Optional[str] = None
    error: Optional[str] = None
    updated_at: float = field(default_factory=time.time)

    @property
    def key(self) -> str:
        return f"{self.identity.key}:{self.conversation}"

    def to_dict(self) -> dict:
        return {
            "provider": self.identity.provider,
            "accountId": self.identity.account_id,
            "conversation": self.conversation,
            "state": self.state.value,
            "method": self.method.value if self.method else None,
            "account": self.account,
            "qrCodeUrl": self.qr_code_url,
            "error": self.error,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LoginSession":
        method = data.get("method")
        return cls(
            identity=Identity(str(data["provider"]), str(data["accountId"])),
            conversation=str(data.get("conversation") or DEFAULT_CONVERSATION),
            state=LoginState(data.get("state") or LoginState.NOT_STARTED.value),
            method=LoginMethod(method) if method else None,
            account=data.get("account"),
            qr_code_url=data.get("qrCodeUrl"),
            error=data.get("error"),
            updated_at=float(data.get("updatedAt") or time.time()),
        )


@dataclass
class VerifyResult:
    verified: bool
    expected: Optional[str] = None
    actual: Optional[str] = None
    adopted: bool = False


def account_matches(expected: Optional[str], actual: Optional[str]) -> bool:
    """Exact (case-insensitive) match, or a bare name matching the local part of the actual e-mail."""
    if not expected or not actual:
        return False
    expected = expected.strip().lower()
    actual = actual.strip().lower()
    if expected == actual:
        return True
    if "@" not in expected and "@" in actual:
        return actual.split("@", 1)[0] == expected
    return False


class LoginStore:
    def __init__(self, root: Path):
        self.path = Path(root) / constants.LOGIN_SESSIONS_FILE
        self._records: Optional[dict[str, LoginSession]] = None

    def _load(self) -> dict[str, LoginSession]:
        if self._records is None:
            raw = read_json(self.path, {})
            records = {}
            if isinstance(raw, dict):
                for key, data in raw.items():
                    try:
                        records[key] = LoginSession.from_dict(data)
                    except (KeyError, ValueError, TypeError) as e:
                        debug_print(f"⚠️  Skipping malformed login record {key}: {e}")
            self._records = records
        return self._records

    def get(self, identity: Identity, conversation: str = DEFAULT_CONVERSATION) -> Optional[LoginSession]:
        return self._load().get(f"{identity.key}:{conversation}")

    def put(self, record: LoginSession) -> None:
        record.updated_at = time.time()
        self._load()[record.key] = record
        write_json_atomic(self.path, {key: r.to_dict() for key, r in self._load().items()})

    def delete_identity(self, identity: Identity) -> None:
        records = self._load()
        stale = [key for key, r in records.items() if r.identity == identity]
        for key in stale:
            del records[key]
        if stale:
            write_json_atomic(self.path, {key: r.to_dict() for key, r in records.items()})


class LoginManager:
    def __init__(self, pool, identities: IdentityStore, store: LoginStore):
        self.pool = pool
        self.identities = identities
        self.store = store
        self._locks: dict[str, asyncio.Lock] = {}
        self._pages: dict[str, object] = {}

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _transition(self, record: LoginSession, state: LoginState, error: Optional[str] = None) -> LoginSession:
        debug_print(f"🔐 {record.key}: {record.state.value} -> {state.value}" + (f" ({error})" if error else ""))
        record.state = state
        record.error = error
        self.store.put(record)
        return record

    def _require(self, record: Optional[LoginSession], *states: LoginState) -> LoginSession:
        if record is None:
            raise LoginFlowError("No login in progress; call start_login first")
        if record.state not in states:
            allowed = ", ".join(s.value for s in states)
            raise LoginFlowError(f"{record.key} is {record.state.value}; expected {allowed}")
        return record

    def get(self, identity: Identity, conversation: str = DEFAULT_CONVERSATION) -> Optional[LoginSession]:
        return self.store.get(identity, conversation)

    async def start_login(self, identity: Identity, conversation: str = DEFAULT_CONVERSATION) -> LoginSession:
        get_adapter(identity.provider)
        async with self._lock_for(f"{identity.key}:{conversation}"):
            record = self.store.get(identity, conversation)
            if record is not None:
                if record.state == LoginState.LOGGED_IN and self.identities.is_verified(identity):
                    return record
                if record.state in (LoginState.WAITING_LOGIN_METHOD, LoginState.WAITING_ACCOUNT,
                                    LoginState.WAITING_PASSWORD, LoginState.LOGGING_IN):
                    return record
            record = LoginSession(identity=identity, conversation=conversation)
            return self._transition(record, LoginState.WAITING_LOGIN_METHOD)

    async def choose_method(
        self,
        identity: Identity,
        method: LoginMethod,
        conversation: str = DEFAULT_CONVERSATION,
    ) -> LoginSession:
        adapter = get_adapter(identity.provider)
        method = LoginMethod(method)
        if method.value not in adapter.login_methods:
            raise LoginFlowError(f"{adapter.name} does not support {method.value} login")
        key = f"{identity.key}:{conversation}"
        async with self._lock_for(key):
            record = self._require(self.store.get(identity, conversation), LoginState.WAITING_LOGIN_METHOD)
            record.method = method
            if method == LoginMethod.CREDENTIALS:
                return self._transition(record, LoginState.WAITING_ACCOUNT)

            # Manual login needs a window a human can use; the QR code is relayed through the API.
            page = await self._login_page(identity, key, headless=method != LoginMethod.MANUAL)
            if method == LoginMethod.QRCODE:
                try:
                    record.qr_code_url = await adapter.request_qr_code(page)
                except Exception as e:
                    return self._transition(record, LoginState.LOGIN_FAILED, f"QR code unavailable: {e}")
                if not record.qr_code_url:
                    return self._transition(record, LoginState.LOGIN_FAILED, "QR code not found on login page")
            return self._transition(record, LoginState.LOGGING_IN)

    async def submit_account(
        self,
        identity: Identity,
        account: str,
        conversation: str = DEFAULT_CONVERSATION,
    ) -> LoginSession:
        async with self._lock_for(f"{identity.key}:{conversation}"):
            record = self._require(self.store.get(identity, conversation), LoginState.WAITING_ACCOUNT)
            account = str(account or "").strip()
            if not account:
                raise LoginFlowError("Account must not be empty")
            record.account = account
            return self._transition(record, LoginState.WAITING_PASSWORD)

    async def submit_password(
        self,
        identity: Identity,
        password: str,
        conversation: str = DEFAULT_CONVERSATION,
    ) -> LoginSession:
        """Credential login goes straight to LOGGED_IN or LOGIN_FAILED; no separate verify step."""
        adapter = get_adapter(identity.provider)
        key = f"{identity.key}:{conversation}"
        async with self._lock_for(key):
            record = self._require(self.store.get(identity, conversation), LoginState.WAITING_PASSWORD)
            if not password:
                raise LoginFlowError("Password must not be empty")
            self._transition(record, LoginState.LOGGING_IN)
            try:
                page = await self._login_page(identity, key, headless=None)
                await page.goto(adapter.login_url or adapter.home_url, wait_until="domcontentloaded",
                                timeout=constants.PAGE_NAVIGATION_TIMEOUT_MS)
                ok = await adapter.perform_credential_login(page, record.account or "", password)
            except Exception as e:
                await self._close_page(key)
                return self._transition(record, LoginState.LOGIN_FAILED, f"Credential login error: {e}")
            if not ok:
                await self._close_page(key)
                return self._transition(record, LoginState.LOGIN_FAILED, "Login was rejected")
            result = await self._verify_on_page(identity, page, record.account)
            await self._close_page(key)
            if not result.verified:
                return self._transition(record, LoginState.LOGIN_FAILED, "Logged in page could not be verified")
            record.account = result.actual or record.account
            return self._transition(record, LoginState.LOGGED_IN)

    async def login_with_credentials(
        self,
        identity: Identity,
        account: str,
        password: str,
        conversation: str = DEFAULT_CONVERSATION,
    ) -> LoginSession:
        record = await self.start_login(identity, conversation)
        if record.state == LoginState.LOGGED_IN:
            return record
        if record.state == LoginState.WAITING_LOGIN_METHOD:
            await self.choose_method(identity, LoginMethod.CREDENTIALS, conversation)
        await self.submit_account(identity, account, conversation)
        return await self.submit_password(identity, password, conversation)

    async def confirm_scan(self, identity: Identity, conversation: str = DEFAULT_CONVERSATION) -> LoginSession:
        """Poll after a QR scan: stays LOGGING_IN until the page shows a logged-in session."""
        key = f"{identity.key}:{conversation}"
        async with self._lock_for(key):
            record = self._require(self.store.get(identity, conversation), LoginState.LOGGING_IN)
            if record.method != LoginMethod.QRCODE:
                raise LoginFlowError(f"{record.key} is not a QR-code login")
            page = self._pages.get(key)
            if page is None or page_is_closed(page):
                page = await self._login_page(identity, key, headless=None)
            adapter = get_adapter(identity.provider)
            try:
                logged_in = await adapter.is_logged_in(page)
            except Exception as e:
                debug_print(f"⚠️  {key}: scan check failed: {e}")
                logged_in = False
            if not logged_in:
                return record
            result = await self._verify_on_page(identity, page, record.account)
            await self._close_page(key)
            if not result.verified:
                return record
            record.account = result.actual or record.account
            return self._transition(record, LoginState.LOGGED_IN)

    async def verify(self, identity: Identity, conversation: Optional[str] = None) -> VerifyResult:
        """
        Re-check which account the live session is actually authenticated as.

        A different account than the one named at login is adopted rather than rejected: the
        identity is marked verified with the actual account as its label.
        """
        key = f"{identity.key}:{conversation or DEFAULT_CONVERSATION}"
        async with self._lock_for(key):
            page = await self._login_page(identity, key, headless=None)
            result = await self._verify_on_page(identity, page, None)
            if result.verified:
                await self._close_page(key)
                record = self.store.get(identity, conversation or DEFAULT_CONVERSATION)
                if record is not None and record.state != LoginState.LOGGED_IN:
                    record.account = result.actual or record.account
                    self._transition(record, LoginState.LOGGED_IN)
            return result

    async def _verify_on_page(self, identity: Identity, page, submitted: Optional[str]) -> VerifyResult:
        adapter = get_adapter(identity.provider)
        if not (page.url or "").startswith(adapter.home_url):
            await page.goto(adapter.home_url, wait_until="domcontentloaded",
                            timeout=constants.PAGE_NAVIGATION_TIMEOUT_MS)
        if not await adapter.is_logged_in(page):
            debug_print(f"🔐 {identity.key}: not logged in yet")
            return VerifyResult(verified=False)

        record = self.identities.get(identity)
        expected = submitted or (record.account_label if record else None) or None
        try:
            actual = await adapter.read_account(page)
        except Exception as e:
            debug_print(f"⚠️  {identity.key}: could not read account: {e}")
            actual = None

        adopted = False
        if expected and actual and not account_matches(expected, actual):
            debug_print(f"⚠️  {identity.key}: logged in as {actual!r}, expected {expected!r}; adopting {actual!r}")
            adopted = True
        label = actual or expected
        self.identities.mark_verified(identity, label)
        debug_print(f"✅ {identity.key}: login verified as {label or 'unknown account'}")
        return VerifyResult(verified=True, expected=expected, actual=actual, adopted=adopted)

    async def _login_page(self, identity: Identity, key: str, *, headless: Optional[bool]):
        page = self._pages.get(key)
        if page is not None and not page_is_closed(page):
            return page
        adapter = get_adapter(identity.provider)
        session = await self.pool.acquire(identity, headless, require_verified=False)
        page = await session.new_page()
        await page.goto(adapter.home_url, wait_until="domcontentloaded", timeout=constants.PAGE_NAVIGATION_TIMEOUT_MS)
        self._pages[key] = page
        return page

    async def _close_page(self, key: str) -> None:
        await close_page_quietly(self._pages.pop(key, None))

    async def close(self) -> None:
        for key in list(self._pages):
            await self._close_page(key)


async def fetch_qr_image_base64(url: str, *, timeout: float = 15.0) -> str:
    """Download the QR code image and return it as a data URL."""
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        response = await client.get(url)
        response.raise_for_status()
    mime = response.headers.get("content-type", "image/png").split(";", 1)[0].strip() or "image/png"
    encoded = base64.b64encode(response.content).decode("ascii")
    return f"data:{mime};base64,{encoded}"
