from __future__ import annotations

from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from autoimage.config import Settings
from autoimage.db.base import Base
from autoimage.services.stripe_client import StripeClient

from factories import WEBHOOK_SECRET


class FakeStripeClient(StripeClient):
    """In-memory stand-in for the network half of StripeClient.

    Signature verification is inherited unchanged.
    """

    def __init__(self, webhook_secret: str = WEBHOOK_SECRET) -> None:
        super().__init__(api_key='sk_test_fake', webhook_secret=webhook_secret)
        self.sessions: dict[str, dict[str, Any]] = {}
        self.created: list[dict[str, Any]] = []
        self.refunds: list[str] = []

    async def create_checkout_session(self, **kwargs: Any) -> dict[str, Any]:
        session_id = f'cs_test_{len(self.created) + 1}'
        self.created.append(kwargs)
        session = {
            'id': session_id,
            'url': f'https://checkout.stripe.test/{session_id}',
            'payment_status': 'unpaid',
            'amount_total': kwargs['unit_amount'],
            'payment_intent': None,
        }
        self.sessions[session_id] = session
        return dict(session)

    async def retrieve_session(self, session_id: str) -> dict[str, Any]:
        return dict(self.sessions[session_id])

    async def find_session_by_payment_intent(self, payment_intent_id: str) -> dict[str, Any] | None:
        for session in self.sessions.values():
            if session.get('payment_intent') == payment_intent_id:
                return dict(session)
        return None

    async def create_refund(self, payment_intent_id: str, reason: str = 'requested_by_customer') -> dict[str, Any]:
        self.refunds.append(payment_intent_id)
        return {'id': f're_test_{len(self.refunds)}', 'payment_intent': payment_intent_id}


@pytest.fixture
def settings() -> Settings:
    return Settings(
        DATABASE_URL='sqlite+aiosqlite:///:memory:',
        STRIPE_SECRET_KEY='sk_test_fake',
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        USER_WEB_SECRET='test-session-secret',
        ADMIN_WEB_USERNAME='admin',
        ADMIN_WEB_PASSWORD='admin-pass',
        SIGNUP_BONUS_CREDITS=0,
        LEDGER_TRANSACTION_TIMEOUT_SECONDS=5.0,
    )


@pytest.fixture
async def engine(tmp_path):
    # File-backed so every session gets its own connection and transaction.
    engine = create_async_engine(f'sqlite+aiosqlite:///{tmp_path / "billing.db"}')
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessionmaker(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
def stripe_client() -> FakeStripeClient:
    return FakeStripeClient()

