from __future__ import annotations

import os

# Settings are read at import time, so the environment must be ready first
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test_unused.sqlite")
os.environ.setdefault("APP_URL", "http://testserver")
os.environ.setdefault("FRONTEND_APP_URL", "http://frontend.test")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("STRIPE_PRICE_ID_FIRST_SUBJECT", "price_first")
os.environ.setdefault("STRIPE_PRICE_ID_ADDITIONAL_SUBJECT", "price_additional")

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncGenerator, Iterable, Optional, Sequence

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from app.api.v1.routes.auth.auth import get_current_user
from app.core.errors import ExternalServiceError
from app.db.deps import Base, get_db
from app.main import app
from app.models.pending_change import PendingSubscriptionChange
from app.models.subject import Subject
from app.models.subject_grant import SubjectGrant
from app.models.subscription import Subscription
from app.models.user import User
from app.services.payments.stripe_client import ProrationCharge, get_billing_client
from app.services.pricing.calculator import LineItem, calculate_price
from app.utils.enums import ChangeTiming, ChangeType, PendingChangeStatus, SubscriptionStatus


class FakeBillingClient:
    """In-memory stand-in for StripeClient that records every call."""

    def __init__(self):
        self.calls: list[tuple[str, dict]] = []
        self.fail_on: set[str] = set()
        self.proration_amount = Decimal("0.00")
        # Fields of the session returned by retrieve_checkout_session
        self.checkout_session: dict = {"payment_status": "unpaid"}
        now = datetime.now(timezone.utc)
        self.period_start = now - timedelta(days=10)
        self.period_end = now + timedelta(days=20)

    def _record(self, call: str, /, **kwargs) -> None:
        self.calls.append((call, kwargs))
        if call in self.fail_on:
            raise ExternalServiceError(f"{call} failed")

    def calls_named(self, name: str) -> list[dict]:
        return [kwargs for call, kwargs in self.calls if call == name]

    def retrieve_subscription(self, subscription_id: str) -> dict:
        self._record("retrieve_subscription", subscription_id=subscription_id)
        return {
            "id": subscription_id,
            "status": "active",
            "customer": "cus_test",
            "items": {
                "data": [
                    {
                        "id": "si_test",
                        "current_period_start": int(self.period_start.timestamp()),
                        "current_period_end": int(self.period_end.timestamp()),
                    }
                ]
            },
        }

    def replace_line_items(self, subscription_id: str, line_items: Iterable[LineItem], proration_behavior) -> dict:
        items = list(line_items)
        self._record(
            "replace_line_items",
            subscription_id=subscription_id,
            quantity=sum(item.quantity for item in items),
            items=items,
            proration_behavior=proration_behavior.value,
        )
        return {"id": subscription_id, "customer": "cus_test", "latest_invoice": "in_test"}

    def collect_proration_invoice(self, customer_id: str, latest_invoice_id: Optional[str] = None) -> ProrationCharge:
        self._record("collect_proration_invoice", customer_id=customer_id, latest_invoice_id=latest_invoice_id)
        return ProrationCharge(invoice_id=latest_invoice_id, amount_paid=self.proration_amount)

    def create_customer(self, email, name, metadata) -> str:
        self._record("create_customer", email=email, name=name, metadata=metadata)
        return "cus_new"

    def create_checkout_session(self, customer_id, line_items, success_url, cancel_url, metadata) -> dict:
        self._record(
            "create_checkout_session",
            customer_id=customer_id,
            items=list(line_items),
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
        )
        return {"id": "cs_test", "url": "https://checkout.stripe.test/cs_test"}

    def retrieve_checkout_session(self, session_id: str) -> dict:
        self._record("retrieve_checkout_session", session_id=session_id)
        return {"id": session_id, **self.checkout_session}

    def set_cancel_at_period_end(self, subscription_id: str, cancel: bool) -> dict:
        self._record("set_cancel_at_period_end", subscription_id=subscription_id, cancel=cancel)
        return {"id": subscription_id, "cancel_at_period_end": cancel}

    def create_customer_portal_session(self, customer_id: str, return_url: str) -> str:
        self._record("create_customer_portal_session", customer_id=customer_id, return_url=return_url)
        return "https://billing.stripe.test/session"


class Seeder:
    """Builds users, subjects and subscriptions directly in the test database."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def user(self, user_id: str = "user_1", email: Optional[str] = None) -> User:
        user = User(id=user_id, email=email or f"{user_id}@example.com", name=user_id.title())
        self.db.add(user)
        await self.db.flush()
        return user

    async def subjects(self, count: int) -> list[Subject]:
        subjects = []
        for index in range(count):
            subject = Subject(
                id=uuid.uuid4(),
                name=f"Subject {uuid.uuid4().hex[:8]}",
                slug=f"subject-{uuid.uuid4().hex[:8]}",
                order_index=index + 1,
            )
            self.db.add(subject)
            subjects.append(subject)
        await self.db.flush()
        return subjects

    async def subscription(
        self,
        user: User,
        granted: Sequence[Subject],
        subject_count: Optional[int] = None,
        stripe_subscription_id: str = "sub_test",
        status: SubscriptionStatus = SubscriptionStatus.active,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
    ) -> Subscription:
        now = datetime.now(timezone.utc)
        count = len(granted) if subject_count is None else subject_count
        subscription = Subscription(
            id=uuid.uuid4(),
            user_id=user.id,
            stripe_customer_id=f"cus_{user.id}",
            stripe_subscription_id=stripe_subscription_id,
            status=status,
            subject_count=count,
            custom_price=calculate_price(count),
            current_period_start=period_start or now - timedelta(days=10),
            current_period_end=period_end or now + timedelta(days=20),
            cancel_at_period_end=False,
        )
        self.db.add(subscription)
        for subject in granted:
            self.db.add(SubjectGrant(user_id=user.id, subject_id=subject.id))
        await self.db.commit()
        return subscription

    async def pending_downgrade(
        self,
        subscription: Subscription,
        keep: Sequence[Subject],
    ) -> PendingSubscriptionChange:
        change = PendingSubscriptionChange(
            id=uuid.uuid4(),
            user_id=subscription.user_id,
            subscription_id=subscription.id,
            change_type=ChangeType.downgrade,
            timing=ChangeTiming.next_period,
            new_subject_ids=[str(subject.id) for subject in keep],
            new_subject_count=len(keep),
            new_price=calculate_price(len(keep)),
            scheduled_date=subscription.current_period_end,
            status=PendingChangeStatus.pending,
        )
        self.db.add(change)
        subscription.subject_count = len(keep)
        subscription.custom_price = calculate_price(len(keep))
        await self.db.commit()
        return change


def ids(subjects: Iterable[Subject]) -> list[str]:
    return [str(subject.id) for subject in subjects]


@pytest.fixture()
def subject_ids():
    return ids


@pytest_asyncio.fixture()
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test_billing.sqlite'}", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest_asyncio.fixture()
async def db_session(engine) -> AsyncGenerator[AsyncSession, None]:
    async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with async_session() as session:
        yield session
        await session.rollback()


@pytest.fixture()
def seed(db_session: AsyncSession) -> Seeder:
    return Seeder(db_session)


@pytest.fixture()
def fake_billing() -> FakeBillingClient:
    return FakeBillingClient()


@pytest_asyncio.fixture()
async def current_user(seed: Seeder) -> User:
    return await seed.user("user_1")


@pytest_asyncio.fixture()
async def client(
    db_session: AsyncSession,
    fake_billing: FakeBillingClient,
    current_user: User,
) -> AsyncGenerator[AsyncClient, None]:
    async def _get_test_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    async def _get_user() -> User:
        return current_user

    app.dependency_overrides[get_db] = _get_test_db
    app.dependency_overrides[get_current_user] = _get_user
    app.dependency_overrides[get_billing_client] = lambda: fake_billing

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as async_client:
        yield async_client

    app.dependency_overrides.clear()
