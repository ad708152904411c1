from __future__ import annotations

import datetime
import json
import uuid
from collections.abc import AsyncIterator
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.db.session import get_db_session
from app.main import app
from app.security.tokens import issue_access_token


SCHEMA = (
    """
    CREATE TABLE organizations (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        billing_email TEXT NULL,
        stripe_customer_id TEXT NULL UNIQUE,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE users (
        id TEXT PRIMARY KEY,
        org_id TEXT NOT NULL,
        email TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        role TEXT NOT NULL,
        status TEXT NOT NULL,
        public_key TEXT NOT NULL,
        is_platform_admin INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE vault_items (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        org_id TEXT NOT NULL,
        type TEXT NOT NULL,
        encrypted_data TEXT NOT NULL,
        encrypted_key TEXT NOT NULL,
        name TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        deleted_at TEXT NULL
    )
    """,
    """
    CREATE TABLE item_shares (
        id TEXT PRIMARY KEY,
        item_id TEXT NOT NULL,
        owner_id TEXT NOT NULL,
        shared_by_id TEXT NOT NULL,
        shared_with_user_id TEXT NOT NULL,
        parent_share_id TEXT NULL,
        can_view INTEGER NOT NULL DEFAULT 1,
        can_edit INTEGER NOT NULL DEFAULT 0,
        can_share INTEGER NOT NULL DEFAULT 0,
        encrypted_key TEXT NOT NULL,
        expires_at TEXT NULL,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (item_id, shared_with_user_id)
    )
    """,
    """
    CREATE TABLE plans (
        id TEXT PRIMARY KEY,
        code TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        billing_cycle TEXT NOT NULL,
        price_cents INTEGER NOT NULL DEFAULT 0,
        currency TEXT NOT NULL DEFAULT 'usd',
        trial_days INTEGER NOT NULL DEFAULT 0,
        max_users INTEGER NULL,
        max_items INTEGER NULL,
        is_active INTEGER NOT NULL DEFAULT 1,
        stripe_price_id TEXT NULL,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE subscriptions (
        id TEXT PRIMARY KEY,
        org_id TEXT NULL UNIQUE,
        user_id TEXT NULL UNIQUE,
        plan_id TEXT NOT NULL,
        state TEXT NOT NULL,
        seats_purchased INTEGER NULL,
        started_at TEXT NULL,
        renew_at TEXT NULL,
        cancel_at TEXT NULL,
        ended_at TEXT NULL,
        grace_period_ends_at TEXT NULL,
        trial_ends_at TEXT NULL,
        stripe_subscription_id TEXT NULL UNIQUE,
        store_subscription_id TEXT NULL UNIQUE,
        note TEXT NULL,
        provider_event_at TEXT NULL,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE audit_logs (
        id TEXT PRIMARY KEY,
        org_id TEXT NOT NULL,
        actor_id TEXT NULL,
        action TEXT NOT NULL,
        target_id TEXT NULL,
        ip_address TEXT NOT NULL,
        user_agent TEXT NOT NULL,
        geo_location TEXT NOT NULL,
        details TEXT NOT NULL DEFAULT '{}',
        timestamp TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE webhook_events (
        id TEXT PRIMARY KEY,
        provider TEXT NOT NULL,
        event_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        payload TEXT NOT NULL,
        received_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        processed_at TEXT NULL,
        error TEXT NULL,
        UNIQUE (provider, event_id)
    )
    """,
)


def sqlite_timestamp(value: datetime.datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(datetime.UTC).replace(tzinfo=None).strftime("%Y-%m-%d %H:%M:%S.%f")


def normalize_uuid(value: object) -> str:
    return str(value).replace("-", "").lower()


class Seeder:
    """Inserts fixture rows with raw SQL, storing ids the way the ORM does on SQLite."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def _insert(self, table: str, values: dict[str, Any]) -> None:
        columns = ", ".join(values)
        placeholders = ", ".join(f":{name}" for name in values)
        async with self.session_factory() as session:
            await session.execute(text(f"INSERT INTO {table} ({columns}) VALUES ({placeholders})"), values)
            await session.commit()

    async def organization(self, *, name: str = "Acme", stripe_customer_id: str | None = None) -> uuid.UUID:
        org_id = uuid.uuid4()
        await self._insert(
            "organizations",
            {"id": org_id.hex, "name": name, "stripe_customer_id": stripe_customer_id},
        )
        return org_id

    async def user(
        self,
        *,
        org_id: uuid.UUID,
        email: str,
        name: str = "Test User",
        role: str = "MEMBER",
        status: str = "ACTIVE",
        is_platform_admin: bool = False,
    ) -> uuid.UUID:
        user_id = uuid.uuid4()
        await self._insert(
            "users",
            {
                "id": user_id.hex,
                "org_id": org_id.hex,
                "email": email,
                "name": name,
                "role": role,
                "status": status,
                "public_key": "public-key",
                "is_platform_admin": int(is_platform_admin),
            },
        )
        return user_id

    async def item(
        self,
        *,
        owner_id: uuid.UUID,
        org_id: uuid.UUID,
        name: str = "GitHub",
        deleted_at: datetime.datetime | None = None,
    ) -> uuid.UUID:
        item_id = uuid.uuid4()
        await self._insert(
            "vault_items",
            {
                "id": item_id.hex,
                "owner_id": owner_id.hex,
                "org_id": org_id.hex,
                "type": "LOGIN",
                "encrypted_data": "Q2lwaGVydGV4dA==",
                "encrypted_key": "T3duZXJXcmFwcGVkS2V5",
                "name": name,
                "deleted_at": sqlite_timestamp(deleted_at),
            },
        )
        return item_id

    async def share(
        self,
        *,
        item_id: uuid.UUID,
        owner_id: uuid.UUID,
        recipient_id: uuid.UUID,
        shared_by_id: uuid.UUID | None = None,
        parent_share_id: uuid.UUID | None = None,
        can_edit: bool = False,
        can_share: bool = False,
        expires_at: datetime.datetime | None = None,
        encrypted_key: str = "UmVjaXBpZW50V3JhcHBlZEtleQ==",
    ) -> uuid.UUID:
        share_id = uuid.uuid4()
        await self._insert(
            "item_shares",
            {
                "id": share_id.hex,
                "item_id": item_id.hex,
                "owner_id": owner_id.hex,
                "shared_by_id": (shared_by_id or owner_id).hex,
                "shared_with_user_id": recipient_id.hex,
                "parent_share_id": parent_share_id.hex if parent_share_id is not None else None,
                "can_view": 1,
                "can_edit": int(can_edit),
                "can_share": int(can_share),
                "encrypted_key": encrypted_key,
                "expires_at": sqlite_timestamp(expires_at),
            },
        )
        return share_id

    async def plan(
        self,
        *,
        code: str,
        billing_cycle: str = "MONTHLY",
        max_users: int | None = None,
        trial_days: int = 0,
        is_active: bool = True,
        stripe_price_id: str | None = None,
    ) -> uuid.UUID:
        plan_id = uuid.uuid4()
        await self._insert(
            "plans",
            {
                "id": plan_id.hex,
                "code": code,
                "name": code.title(),
                "billing_cycle": billing_cycle,
                "max_users": max_users,
                "trial_days": trial_days,
                "is_active": int(is_active),
                "stripe_price_id": stripe_price_id,
            },
        )
        return plan_id

    async def subscription(
        self,
        *,
        plan_id: uuid.UUID,
        org_id: uuid.UUID | None = None,
        user_id: uuid.UUID | None = None,
        state: str = "ACTIVE",
        stripe_subscription_id: str | None = None,
        store_subscription_id: str | None = None,
        seats_purchased: int | None = None,
        renew_at: datetime.datetime | None = None,
        grace_period_ends_at: datetime.datetime | None = None,
        provider_event_at: datetime.datetime | None = None,
    ) -> uuid.UUID:
        subscription_id = uuid.uuid4()
        await self._insert(
            "subscriptions",
            {
                "id": subscription_id.hex,
                "org_id": org_id.hex if org_id is not None else None,
                "user_id": user_id.hex if user_id is not None else None,
                "plan_id": plan_id.hex,
                "state": state,
                "seats_purchased": seats_purchased,
                "renew_at": sqlite_timestamp(renew_at),
                "grace_period_ends_at": sqlite_timestamp(grace_period_ends_at),
                "stripe_subscription_id": stripe_subscription_id,
                "store_subscription_id": store_subscription_id,
                "provider_event_at": sqlite_timestamp(provider_event_at),
            },
        )
        return subscription_id

    async def fetch_one(self, sql: str, params: dict[str, Any] | None = None) -> dict[str, Any] | None:
        async with self.session_factory() as session:
            row = (await session.execute(text(sql), params or {})).mappings().first()
        return dict(row) if row is not None else None

    async def fetch_all(self, sql: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        async with self.session_factory() as session:
            rows = (await session.execute(text(sql), params or {})).mappings().all()
        return [dict(row) for row in rows]

    async def count(self, table: str) -> int:
        async with self.session_factory() as session:
            return int((await session.execute(text(f"SELECT COUNT(*) FROM {table}"))).scalar_one())

    async def audit_actions(self) -> list[str]:
        rows = await self.fetch_all("SELECT action FROM audit_logs ORDER BY timestamp ASC")
        return [row["action"] for row in rows]

    async def audit_details(self, action: str) -> list[dict[str, Any]]:
        rows = await self.fetch_all("SELECT details FROM audit_logs WHERE action = :action", {"action": action})
        return [json.loads(row["details"]) for row in rows]


def bearer(user_id: uuid.UUID, org_id: uuid.UUID, email: str, role: str = "member") -> dict[str, str]:
    token, _ = issue_access_token(user_id=user_id, org_id=org_id, email=email, role=role)
    return {"Authorization": f"Bearer {token}", "User-Agent": "pytest"}


@pytest_asyncio.fixture
async def session_factory() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        for statement in SCHEMA:
            await conn.execute(text(statement))

    factory = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
    )

    async def override_get_db_session() -> AsyncIterator[AsyncSession]:
        async with factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db_session
    try:
        yield factory
    finally:
        app.dependency_overrides.clear()
        await engine.dispose()


@pytest.fixture
def seed(session_factory: async_sessionmaker[AsyncSession]) -> Seeder:
    return Seeder(session_factory)


class RecordingEmailSender:
    def __init__(self, failures: dict[str, list[Exception]] | None = None) -> None:
        self.sent: list[dict[str, str]] = []
        self.attempts: dict[str, int] = {}
        self._failures = failures or {}

    async def send_email(self, *, recipient_email: str, subject: str, html_body: str) -> None:
        self.attempts[recipient_email] = self.attempts.get(recipient_email, 0) + 1
        pending = self._failures.get(recipient_email)
        if pending:
            raise pending.pop(0)
        self.sent.append({"to": recipient_email, "subject": subject, "body": html_body})


@pytest.fixture
def email_sender() -> RecordingEmailSender:
    return RecordingEmailSender()
