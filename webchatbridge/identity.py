"""
Identities and their durable records.

An Identity is a (provider, account) pair: the unit that owns a browser session and a login
state. Records are persisted to `<user_data_dir>/accounts.json` as

    {provider: {account_id: {accountLabel, nickname, loginVerified, headlessPreference, ...}}}
"""

import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from . import constants
from .config import read_json, write_json_atomic
from .console import debug_print


@dataclass(frozen=True)
class Identity:
    provider: str
    account_id: str

    @property
    def key(self) -> str:
        return f"{self.provider}:{self.account_id}"

    @classmethod
    def parse(cls, key: str) -> "Identity":
        provider, sep, account_id = str(key or "").partition(":")
        if not sep or not provider or not account_id:
            raise ValueError(f"Invalid identity key: {key!r}")
        return cls(provider, account_id)

    def __str__(self) -> str:
        return self.key


@dataclass
class IdentityRecord:
    provider: str
    account_id: str
    account_label: str = ""
    nickname: str = ""
    login_verified: bool = False
    headless_preference: Optional[bool] = None
    created_at: float = field(default_factory=time.time)
    last_used_at: Optional[float] = None
    metadata: dict = field(default_factory=dict)

    @property
    def identity(self) -> Identity:
        return Identity(self.provider, self.account_id)

    def to_dict(self) -> dict:
        return {
            "accountLabel": self.account_label,
            "nickname": self.nickname,
            "loginVerified": self.login_verified,
            "headlessPreference": self.headless_preference,
            "createdAt": self.created_at,
            "lastUsedAt": self.last_used_at,
            "metadata": dict(self.metadata),
        }

    def to_public_dict(self) -> dict:
        data = self.to_dict()
        data["provider"] = self.provider
        data["accountId"] = self.account_id
        return data

    @classmethod
    def from_dict(cls, provider: str, account_id: str, data: dict) -> "IdentityRecord":
        headless = data.get("headlessPreference")
        return cls(
            provider=provider,
            account_id=account_id,
            account_label=str(data.get("accountLabel") or ""),
            nickname=str(data.get("nickname") or ""),
            login_verified=bool(data.get("loginVerified", False)),
            headless_preference=None if headless is None else bool(headless),
            created_at=float(data.get("createdAt") or time.time()),
            last_used_at=data.get("lastUsedAt"),
            metadata=dict(data.get("metadata") or {}),
        )


def resolve_headless(override: Optional[bool], record: Optional[IdentityRecord], default: bool) -> bool:
    """Explicit override > identity preference > global default."""
    if override is not None:
        return bool(override)
    if record is not None and record.headless_preference is not None:
        return bool(record.headless_preference)
    return bool(default)


class IdentityStore:
    def __init__(self, root: Path):
        self.root = Path(root)
        self.path = self.root / constants.ACCOUNTS_FILE
        self._records: dict[str, IdentityRecord] = {}
        self._loaded = False

    def load(self) -> None:
        raw = read_json(self.path, {})
        records: dict[str, IdentityRecord] = {}
        if isinstance(raw, dict):
            for provider, accounts in raw.items():
                if not isinstance(accounts, dict):
                    continue
                for account_id, data in accounts.items():
                    if isinstance(data, dict):
                        record = IdentityRecord.from_dict(provider, account_id, data)
                        records[record.identity.key] = record
        self._records = records
        self._loaded = True
        debug_print(f"📇 Loaded {len(records)} identity record(s) from {self.path}")

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    def save(self) -> None:
        data: dict[str, dict] = {}
        for record in self._records.values():
            data.setdefault(record.provider, {})[record.account_id] = record.to_dict()
        write_json_atomic(self.path, data)

    def get(self, identity: Identity) -> Optional[IdentityRecord]:
        self._ensure_loaded()
        return self._records.get(identity.key)

    def list(self, provider: Optional[str] = None) -> list[IdentityRecord]:
        self._ensure_loaded()
        records = [r for r in self._records.values() if provider is None or r.provider == provider]
        return sorted(records, key=lambda r: r.created_at)

    def known_identities(self) -> set[Identity]:
        self._ensure_loaded()
        return {r.identity for r in self._records.values()}

    def create(
        self,
        provider: str,
        account_label: str = "",
        *,
        nickname: str = "",
        headless_preference: Optional[bool] = None,
        account_id: Optional[str] = None,
    ) -> IdentityRecord:
        self._ensure_loaded()
        record = IdentityRecord(
            provider=provider,
            account_id=account_id or str(uuid.uuid4()),
            account_label=account_label,
            nickname=nickname or account_label,
            headless_preference=headless_preference,
        )
        self._records[record.identity.key] = record
        self.save()
        debug_print(f"➕ Created identity {record.identity.key} ({account_label or 'no label'})")
        return record

    def delete(self, identity: Identity) -> bool:
        self._ensure_loaded()
        removed = self._records.pop(identity.key, None)
        if removed is not None:
            self.save()
            debug_print(f"🗑️  Deleted identity {identity.key}")
        return removed is not None

    def is_verified(self, identity: Identity) -> bool:
        record = self.get(identity)
        return bool(record and record.login_verified)

    def mark_verified(self, identity: Identity, account_label: Optional[str] = None) -> IdentityRecord:
        self._ensure_loaded()
        record = self._records.get(identity.key)
        if record is None:
            record = IdentityRecord(provider=identity.provider, account_id=identity.account_id)
            self._records[identity.key] = record
        record.login_verified = True
        if account_label:
            record.account_label = account_label
            if not record.nickname:
                record.nickname = account_label
        self.save()
        return record

    def mark_unverified(self, identity: Identity) -> None:
        record = self.get(identity)
        if record is not None and record.login_verified:
            record.login_verified = False
            self.save()

    def set_headless_preference(self, identity: Identity, headless: Optional[bool]) -> IdentityRecord:
        record = self.get(identity)
        if record is None:
            raise KeyError(identity.key)
        record.headless_preference = None if headless is None else bool(headless)
        self.save()
        return record

    def touch(self, identity: Identity) -> None:
        record = self.get(identity)
        if record is not None:
            record.last_used_at = time.time()
            self.save()
