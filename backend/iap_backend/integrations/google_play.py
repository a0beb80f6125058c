"""
Google Play Developer API 校验模块

使用服务账号签发 RS256 JWT 断言换取 OAuth2 访问令牌，
再调用 purchases.products / purchases.subscriptions 接口查询购买状态。
"""
from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from threading import Lock
from typing import Any
from urllib.parse import quote

import httpx
import jwt

from iap_backend.api.errors import UpstreamUnavailable, ValidationFailed, not_configured
from iap_backend.enums import Platform, ProductType, StoreEnvironment
from iap_backend.models import from_millis, utc_now

from .base import VerifiedPurchase

logger = logging.getLogger(__name__)

SCOPE = "https://www.googleapis.com/auth/androidpublisher"
GRANT_TYPE = "urn:ietf:params:oauth:grant-type:jwt-bearer"
ASSERTION_LIFETIME_SECONDS = 3600
TOKEN_REFRESH_MARGIN_SECONDS = 60

PURCHASE_STATE_PURCHASED = 0
PAYMENT_STATE_PENDING = 0
PURCHASE_TYPE_TEST = 0  # license tester

_REJECTED_STATUSES = {400, 404, 410}


def order_base(order_id: str) -> str:
    """订阅续费的 orderId 形如 GPA.1234-5678..0，去掉 ..N 后缀"""
    return order_id.split("..", 1)[0]


class GooglePlayVerifier:
    def __init__(
        self,
        *,
        service_account_info: Mapping[str, Any] | None,
        package_name: str,
        token_url: str,
        api_base: str,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._service_account_info = service_account_info
        self._package_name = package_name
        self._token_url = token_url
        self._api_base = api_base.rstrip("/")
        self._timeout = timeout
        self._transport = transport

        self._lock = Lock()
        self._access_token: str | None = None
        self._access_token_expires_at = 0.0

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self._timeout, transport=self._transport)

    def _build_assertion(self) -> str:
        info = self._service_account_info
        if not info or not info.get("client_email") or not info.get("private_key"):
            raise not_configured("Google Play service account")

        now = int(time.time())
        claims = {
            "iss": info["client_email"],
            "scope": SCOPE,
            "aud": self._token_url,
            "iat": now,
            "exp": now + ASSERTION_LIFETIME_SECONDS,
        }
        headers = {"kid": info["private_key_id"]} if info.get("private_key_id") else None
        try:
            return jwt.encode(claims, info["private_key"], algorithm="RS256", headers=headers)
        except (jwt.PyJWTError, ValueError, TypeError) as e:
            logger.error(f"Failed to sign Google service account assertion: {e}")
            raise not_configured("A valid Google Play service account key") from e

    def get_access_token(self) -> str:
        """获取访问令牌，缓存到过期前一分钟"""
        with self._lock:
            if self._access_token and time.time() < self._access_token_expires_at - TOKEN_REFRESH_MARGIN_SECONDS:
                return self._access_token

            assertion = self._build_assertion()
            try:
                with self._client() as client:
                    r = client.post(
                        self._token_url,
                        data={"grant_type": GRANT_TYPE, "assertion": assertion},
                    )
                    r.raise_for_status()
                    body = r.json()
            except httpx.HTTPError as e:
                logger.error(f"Google OAuth token exchange failed: {e}")
                raise UpstreamUnavailable("Google authentication unavailable") from e
            except ValueError as e:
                raise UpstreamUnavailable("Google authentication returned an invalid response") from e

            token = body.get("access_token") if isinstance(body, dict) else None
            if not token:
                raise UpstreamUnavailable("Google authentication returned no access token")

            try:
                expires_in = int(body.get("expires_in", ASSERTION_LIFETIME_SECONDS))
            except (TypeError, ValueError):
                expires_in = ASSERTION_LIFETIME_SECONDS
            self._access_token = str(token)
            self._access_token_expires_at = time.time() + expires_in
            return self._access_token

    def _invalidate_token(self) -> None:
        with self._lock:
            self._access_token = None
            self._access_token_expires_at = 0.0

    def _get_purchase(self, kind: str, product_id: str, token: str) -> dict[str, Any]:
        access_token = self.get_access_token()
        url = (
            f"{self._api_base}/applications/{quote(self._package_name, safe='')}"
            f"/purchases/{kind}/{quote(product_id, safe='')}/tokens/{quote(token, safe='')}"
        )
        try:
            with self._client() as client:
                r = client.get(url, headers={"Authorization": f"Bearer {access_token}"})
        except httpx.HTTPError as e:
            logger.error(f"Google Play purchases request failed: {e}")
            raise UpstreamUnavailable("Google Play service unavailable") from e

        if r.status_code in _REJECTED_STATUSES:
            logger.info(f"Google Play rejected purchase token for {product_id}: HTTP {r.status_code}")
            raise ValidationFailed(f"Purchase not found or invalid (HTTP {r.status_code})")
        if r.status_code in (401, 403):
            self._invalidate_token()
        if not r.is_success:
            logger.error(f"Google Play purchases API error: {r.status_code} {r.text}")
            raise UpstreamUnavailable(f"Google Play service unavailable (HTTP {r.status_code})")

        try:
            data = r.json()
        except ValueError as e:
            raise UpstreamUnavailable("Google Play returned an invalid response") from e
        if not isinstance(data, dict):
            raise UpstreamUnavailable("Google Play returned an invalid response")
        return data

    def verify(
        self,
        proof: str,
        *,
        transaction_id: str,
        product_id: str,
        product_type: ProductType,
        original_transaction_id: str | None = None,
    ) -> VerifiedPurchase:
        if product_type == ProductType.subscription:
            data = self._get_purchase("subscriptions", product_id, proof)
        else:
            data = self._get_purchase("products", product_id, proof)

        environment = StoreEnvironment.production.value
        if data.get("purchaseType") == PURCHASE_TYPE_TEST:
            environment = StoreEnvironment.sandbox.value

        order_id = str(data.get("orderId") or "")
        if product_type == ProductType.subscription:
            # 续订订单带 ..N 后缀，只比较基础订单号
            order_matches = order_base(order_id) == order_base(transaction_id)
        else:
            order_matches = order_id == transaction_id
        if not order_id or not order_matches:
            logger.warning(f"Order mismatch for {product_id}: claimed {transaction_id}, reported {order_id!r}")
            raise ValidationFailed("Order ID does not match purchase", environment=environment)

        ack = data.get("acknowledgementState")
        acknowledgement_state = ack if isinstance(ack, int) else None

        if product_type == ProductType.subscription:
            if data.get("paymentState") == PAYMENT_STATE_PENDING:
                raise ValidationFailed("Subscription payment is pending", environment=environment)
            expires_at = from_millis(data.get("expiryTimeMillis"))
            if expires_at is None:
                raise ValidationFailed("Subscription expiry missing from purchase", environment=environment)
            return VerifiedPurchase(
                platform=Platform.google,
                transaction_id=order_id,
                product_id=product_id,
                purchase_date=from_millis(data.get("startTimeMillis")) or utc_now(),
                original_transaction_id=order_base(order_id),
                expires_at=expires_at,
                auto_renew=bool(data.get("autoRenewing")),
                environment=environment,
                acknowledgement_state=acknowledgement_state,
            )

        if data.get("purchaseState") != PURCHASE_STATE_PURCHASED:
            raise ValidationFailed(
                f"Purchase is not in purchased state ({data.get('purchaseState')})", environment=environment
            )
        try:
            quantity = int(data.get("quantity") or 1)
        except (TypeError, ValueError):
            quantity = 1
        return VerifiedPurchase(
            platform=Platform.google,
            transaction_id=order_id,
            product_id=product_id,
            purchase_date=from_millis(data.get("purchaseTimeMillis")) or utc_now(),
            quantity=quantity,
            original_transaction_id=order_id,
            environment=environment,
            acknowledgement_state=acknowledgement_state,
        )
