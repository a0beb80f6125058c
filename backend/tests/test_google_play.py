from __future__ import annotations

from urllib.parse import parse_qs

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from sqlmodel import select

from conftest import auth_headers, make_user, reload, to_ms, utc
from iap_backend.api.deps import get_google_verifier
from iap_backend.api.errors import AppError, UpstreamUnavailable, ValidationFailed
from iap_backend.enums import Platform, ProductType
from iap_backend.integrations.google_play import GooglePlayVerifier, order_base
from iap_backend.main import app
from iap_backend.models import Profile, PurchaseTransaction

TOKEN_URL = "https://oauth.google.test/token"
API_BASE = "https://play.google.test/androidpublisher/v3"
PACKAGE = "com.tossortaste.app"
CREDIT_PACK = "com.tossortaste.app.credit_pack"
PREMIUM_MONTHLY = "com.tossortaste.app.premium_monthly"


@pytest.fixture(scope="module")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="module")
def service_account(rsa_key):
    pem = rsa_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    return {
        "type": "service_account",
        "client_email": "iap-validator@tossortaste.iam.gserviceaccount.com",
        "private_key_id": "key-1",
        "private_key": pem,
    }


class FakePlay:
    """Token endpoint plus purchases API with canned responses per path."""

    def __init__(self, rsa_key, purchases: dict[str, httpx.Response]) -> None:
        self.public_key = rsa_key.public_key()
        self.purchases = purchases
        self.token_requests = 0
        self.assertions: list[dict] = []
        self.auth_headers: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if str(request.url) == TOKEN_URL:
            self.token_requests += 1
            form = parse_qs(request.content.decode())
            assert form["grant_type"] == ["urn:ietf:params:oauth:grant-type:jwt-bearer"]
            claims = jwt.decode(form["assertion"][0], self.public_key, algorithms=["RS256"], audience=TOKEN_URL)
            self.assertions.append(claims)
            return httpx.Response(200, json={"access_token": "ya29.test", "expires_in": 3600})

        self.auth_headers.append(request.headers.get("Authorization", ""))
        for suffix, response in self.purchases.items():
            if request.url.path.endswith(suffix):
                return response
        return httpx.Response(404, json={"error": {"code": 404}})


def _verifier(fake: FakePlay, service_account) -> GooglePlayVerifier:
    return GooglePlayVerifier(
        service_account_info=service_account,
        package_name=PACKAGE,
        token_url=TOKEN_URL,
        api_base=API_BASE,
        transport=httpx.MockTransport(fake),
    )


def test_consumable_purchase_and_token_caching(rsa_key, service_account):
    fake = FakePlay(
        rsa_key,
        {
            f"/products/{CREDIT_PACK}/tokens/tok-1": httpx.Response(
                200,
                json={
                    "purchaseState": 0,
                    "orderId": "GPA.1234-5678-9012-34567",
                    "purchaseTimeMillis": to_ms(utc(2025, 6, 1)),
                    "acknowledgementState": 1,
                    "quantity": 2,
                },
            )
        },
    )
    verifier = _verifier(fake, service_account)

    for _ in range(2):
        purchase = verifier.verify(
            "tok-1",
            transaction_id="GPA.1234-5678-9012-34567",
            product_id=CREDIT_PACK,
            product_type=ProductType.consumable,
        )

    assert purchase.platform == Platform.google
    assert purchase.quantity == 2
    assert purchase.purchase_date == utc(2025, 6, 1)
    assert purchase.acknowledgement_state == 1
    assert purchase.environment == "Production"

    assert fake.token_requests == 1
    assert fake.auth_headers == ["Bearer ya29.test", "Bearer ya29.test"]
    claims = fake.assertions[0]
    assert claims["iss"] == service_account["client_email"]
    assert claims["scope"] == "https://www.googleapis.com/auth/androidpublisher"
    assert claims["exp"] - claims["iat"] == 3600


def test_subscription_renewal_order_and_test_purchase(rsa_key, service_account):
    fake = FakePlay(
        rsa_key,
        {
            f"/subscriptions/{PREMIUM_MONTHLY}/tokens/tok-sub": httpx.Response(
                200,
                json={
                    "orderId": "GPA.1111-2222-3333-44444..3",
                    "paymentState": 1,
                    "startTimeMillis": to_ms(utc(2025, 9, 1)),
                    "expiryTimeMillis": to_ms(utc(2026, 1, 1)),
                    "autoRenewing": True,
                    "purchaseType": 0,
                },
            )
        },
    )

    purchase = _verifier(fake, service_account).verify(
        "tok-sub",
        transaction_id="GPA.1111-2222-3333-44444",
        product_id=PREMIUM_MONTHLY,
        product_type=ProductType.subscription,
    )

    assert purchase.expires_at == utc(2026, 1, 1)
    assert purchase.auto_renew is True
    assert purchase.environment == "Sandbox"
    assert purchase.transaction_id == "GPA.1111-2222-3333-44444..3"
    assert purchase.original_transaction_id == "GPA.1111-2222-3333-44444"


@pytest.mark.parametrize(
    "kind, product_type, body",
    [
        ("products", ProductType.consumable, {"purchaseState": 1, "orderId": "GPA.1"}),
        ("products", ProductType.consumable, {"purchaseState": 0, "orderId": "GPA.someone-else"}),
        ("subscriptions", ProductType.subscription, {"paymentState": 0, "orderId": "GPA.1", "expiryTimeMillis": "1"}),
        ("subscriptions", ProductType.subscription, {"paymentState": 1, "orderId": "GPA.1"}),
    ],
)
def test_invalid_purchases_are_rejected(rsa_key, service_account, kind, product_type, body):
    fake = FakePlay(rsa_key, {f"/{kind}/sku/tokens/tok": httpx.Response(200, json=body)})

    with pytest.raises(ValidationFailed):
        _verifier(fake, service_account).verify(
            "tok", transaction_id="GPA.1", product_id="sku", product_type=product_type
        )


@pytest.mark.parametrize("status_code, error", [(404, ValidationFailed), (410, ValidationFailed), (503, UpstreamUnavailable), (429, UpstreamUnavailable)])
def test_http_status_mapping(rsa_key, service_account, status_code, error):
    fake = FakePlay(rsa_key, {"/products/sku/tokens/tok": httpx.Response(status_code, json={})})

    with pytest.raises(error):
        _verifier(fake, service_account).verify(
            "tok", transaction_id="GPA.1", product_id="sku", product_type=ProductType.consumable
        )


def test_token_exchange_failure_is_upstream_error(service_account):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": "internal"})

    verifier = GooglePlayVerifier(
        service_account_info=service_account,
        package_name=PACKAGE,
        token_url=TOKEN_URL,
        api_base=API_BASE,
        transport=httpx.MockTransport(handler),
    )
    with pytest.raises(UpstreamUnavailable):
        verifier.get_access_token()


def test_missing_service_account_is_configuration_error():
    verifier = GooglePlayVerifier(
        service_account_info=None,
        package_name=PACKAGE,
        token_url=TOKEN_URL,
        api_base=API_BASE,
    )
    with pytest.raises(AppError) as exc:
        verifier.verify("tok", transaction_id="GPA.1", product_id="sku", product_type=ProductType.consumable)
    assert exc.value.code == 500002
    assert exc.value.status_code == 500


def test_order_base():
    assert order_base("GPA.1234..0") == "GPA.1234"
    assert order_base("GPA.1234") == "GPA.1234"


def test_consumable_order_id_must_match_exactly(rsa_key, service_account):
    fake = FakePlay(
        rsa_key,
        {"/products/sku/tokens/tok": httpx.Response(200, json={"purchaseState": 0, "orderId": "GPA.1"})},
    )

    with pytest.raises(ValidationFailed):
        _verifier(fake, service_account).verify(
            "tok", transaction_id="GPA.1..1", product_id="sku", product_type=ProductType.consumable
        )


def test_suffixed_order_ids_cannot_replay_one_token(client, db, rsa_key, service_account):
    user = make_user(db)
    fake = FakePlay(
        rsa_key,
        {
            f"/products/{CREDIT_PACK}/tokens/tok-1": httpx.Response(
                200,
                json={"purchaseState": 0, "orderId": "GPA.1234-5678-9012-34567", "quantity": 1},
            )
        },
    )
    verifier = _verifier(fake, service_account)
    app.dependency_overrides[get_google_verifier] = lambda: verifier

    statuses = []
    for order_id in ("GPA.1234-5678-9012-34567", "GPA.1234-5678-9012-34567..1", "GPA.1234-5678-9012-34567..2"):
        r = client.post(
            "/api/v1/purchases/credits",
            json={"purchaseToken": "tok-1", "productId": CREDIT_PACK, "orderId": order_id},
            headers=auth_headers(user),
        )
        statuses.append(r.status_code)

    assert statuses == [200, 400, 400]
    assert reload(db, Profile, user.id).room_credits == 5
    valid = db.exec(select(PurchaseTransaction).where(PurchaseTransaction.validation_status == "valid")).all()
    assert [rec.platform_transaction_id for rec in valid] == ["GPA.1234-5678-9012-34567"]
