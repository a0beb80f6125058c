from __future__ import annotations

import uuid
from collections.abc import Callable, Generator
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, delete

from iap_backend.api.deps import get_apple_verifier, get_db, get_google_verifier
from iap_backend.api.errors import AppError
from iap_backend.core.security import create_access_token
from iap_backend.enums import Platform, ProductType, SubscriptionStatus, SubscriptionType
from iap_backend.integrations.base import VerifiedPurchase
from iap_backend.main import app
from iap_backend.models import Profile, PurchaseTransaction, StoreNotification

CREDIT_SINGLE = "com.linksmarttech.tossortaste.single_credit"
CREDIT_PACK = "com.linksmarttech.tossortaste.credit_pack"
PREMIUM_MONTHLY = "com.linksmarttech.tossortaste.premium_monthly"
PREMIUM_ANNUAL = "com.linksmarttech.tossortaste.premium_annual"


@pytest.fixture(scope="session")
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    return engine


@pytest.fixture(scope="function")
def db(engine) -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session
        # Clean tables after each test (children first).
        session.rollback()
        session.exec(delete(StoreNotification))
        session.exec(delete(PurchaseTransaction))
        session.exec(delete(Profile))
        session.commit()


@pytest.fixture(scope="function")
def client(engine) -> Generator[TestClient, None, None]:
    def _override_get_db() -> Generator[Session, None, None]:
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


class FakeVerifier:
    """Returns queued results (VerifiedPurchase or an exception) and records calls."""

    def __init__(self, *results: VerifiedPurchase | AppError) -> None:
        self.results = list(results)
        self.calls: list[dict] = []

    def verify(self, proof, *, transaction_id, product_id, product_type, original_transaction_id=None):
        self.calls.append(
            {
                "proof": proof,
                "transaction_id": transaction_id,
                "product_id": product_id,
                "product_type": product_type,
                "original_transaction_id": original_transaction_id,
            }
        )
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def use_apple(client) -> Callable[..., FakeVerifier]:
    def _install(*results: VerifiedPurchase | AppError) -> FakeVerifier:
        fake = FakeVerifier(*results)
        app.dependency_overrides[get_apple_verifier] = lambda: fake
        return fake

    return _install


@pytest.fixture
def use_google(client) -> Callable[..., FakeVerifier]:
    def _install(*results: VerifiedPurchase | AppError) -> FakeVerifier:
        fake = FakeVerifier(*results)
        app.dependency_overrides[get_google_verifier] = lambda: fake
        return fake

    return _install


def make_user(
    db: Session,
    *,
    credits: int = 0,
    subscription_type: SubscriptionType = SubscriptionType.none,
    subscription_status: SubscriptionStatus = SubscriptionStatus.inactive,
    expires_at: datetime | None = None,
) -> Profile:
    profile = Profile(
        id=uuid.uuid4(),
        room_credits=credits,
        subscription_type=subscription_type,
        subscription_status=subscription_status,
        subscription_expires_at=expires_at,
    )
    db.add(profile)
    db.commit()
    db.refresh(profile)
    return profile


def make_record(db: Session, user: Profile, **overrides) -> PurchaseTransaction:
    values = {
        "user_id": user.id,
        "platform": Platform.apple,
        "platform_transaction_id": "T-seed",
        "original_transaction_id": "T-seed",
        "product_id": PREMIUM_MONTHLY,
        "product_type": ProductType.subscription,
        "validation_status": "valid",
        "processed": True,
    }
    values.update(overrides)
    record = PurchaseTransaction(**values)
    db.add(record)
    db.commit()
    db.refresh(record)
    return record


def auth_headers(user: Profile | uuid.UUID) -> dict[str, str]:
    user_id = user.id if isinstance(user, Profile) else user
    token = create_access_token(user_id, timedelta(minutes=5))
    return {"Authorization": f"Bearer {token}"}


def reload(db: Session, model, pk):
    db.expire_all()
    return db.get(model, pk)


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def to_ms(value: datetime) -> str:
    return str(int(value.timestamp() * 1000))


def parse_dt(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))
