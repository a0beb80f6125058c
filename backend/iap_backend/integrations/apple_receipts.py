"""
Apple App Store 收据校验模块

调用 Apple verifyReceipt 接口校验客户端提交的收据（receipt-data），
并从响应中找出客户端声称的那一笔交易。

流程：
1. 先请求生产环境地址
2. 返回 21007（沙盒收据发到了生产环境）时改用沙盒地址重试一次
3. status 为 0 才算成功；可重试的状态码视为平台不可用
4. 在 latest_receipt_info / receipt.in_app 中按交易 ID 匹配，找不到则拒绝；
   订阅取同一订阅链中到期时间最新的一条
"""
from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

import httpx

from iap_backend.api.errors import UpstreamUnavailable, ValidationFailed
from iap_backend.enums import Platform, ProductType, StoreEnvironment
from iap_backend.models import from_millis, utc_now

from .base import VerifiedPurchase

logger = logging.getLogger(__name__)

STATUS_OK = 0
STATUS_SANDBOX_RECEIPT = 21007  # 沙盒收据发到了生产环境
# 21005 收据服务器暂时不可用；21009 内部数据访问错误；21100-21199 内部错误
_RETRYABLE_STATUSES = {21005, 21009}
_NO_EXPIRY = datetime.min.replace(tzinfo=timezone.utc)


def _is_retryable(status: int, data: dict[str, Any]) -> bool:
    return (
        status in _RETRYABLE_STATUSES
        or 21100 <= status <= 21199
        or bool(data.get("is-retryable"))
    )


def _entries(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [e for e in value if isinstance(e, dict)]


def _find_by_transaction_id(entries: Iterable[dict[str, Any]], transaction_id: str) -> dict[str, Any] | None:
    for entry in entries:
        if str(entry.get("transaction_id")) == transaction_id:
            return entry
    return None


def _expiry(entry: dict[str, Any]) -> datetime:
    return from_millis(entry.get("expires_date_ms")) or _NO_EXPIRY


def _current_in_chain(
    entries: list[dict[str, Any]],
    match: dict[str, Any] | None,
    transaction_id: str,
    original_transaction_id: str | None,
) -> dict[str, Any] | None:
    """
    同一订阅链（original_transaction_id 相同）中到期时间最新的一条

    按交易 ID 命中时只在同一商品内比较，命中的那条本身也参与比较。
    """
    chain_ids = {transaction_id}
    if original_transaction_id:
        chain_ids.add(original_transaction_id)
    if match is not None and match.get("original_transaction_id"):
        chain_ids.add(str(match["original_transaction_id"]))

    chain = [e for e in entries if str(e.get("original_transaction_id")) in chain_ids]
    if match is not None:
        chain = [e for e in chain if e.get("product_id") == match.get("product_id")] + [match]
    if not chain:
        return None
    return max(chain, key=_expiry)


class AppleReceiptVerifier:
    """
    Apple verifyReceipt 客户端

    transport 参数用于测试时注入 httpx.MockTransport。
    """

    def __init__(
        self,
        *,
        shared_secret: str | None,
        production_url: str,
        sandbox_url: str,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._shared_secret = shared_secret
        self._production_url = production_url
        self._sandbox_url = sandbox_url
        self._timeout = timeout
        self._transport = transport

    def _post(self, url: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                r = client.post(url, json=payload)
                r.raise_for_status()
                data = r.json()
        except httpx.HTTPError as e:
            logger.error(f"Apple verifyReceipt request failed: {e}")
            raise UpstreamUnavailable("Apple receipt service unavailable") from e
        except ValueError as e:
            logger.error(f"Apple verifyReceipt returned invalid JSON: {e}")
            raise UpstreamUnavailable("Apple receipt service returned an invalid response") from e

        if not isinstance(data, dict) or not isinstance(data.get("status"), int):
            raise UpstreamUnavailable("Apple receipt service returned an invalid response")
        return data

    def fetch_receipt(self, receipt_data: str) -> tuple[dict[str, Any], str]:
        """
        请求 verifyReceipt，返回（响应体，环境）

        Raises:
            ValidationFailed: 收据无效（非 0 且不可重试的状态码）
            UpstreamUnavailable: 网络错误或平台可重试错误
        """
        payload: dict[str, Any] = {
            "receipt-data": receipt_data,
            "exclude-old-transactions": True,
        }
        if self._shared_secret:
            payload["password"] = self._shared_secret

        environment = StoreEnvironment.production.value
        data = self._post(self._production_url, payload)
        status = data["status"]
        if status == STATUS_SANDBOX_RECEIPT:
            logger.info("Sandbox receipt sent to production, retrying against sandbox")
            environment = StoreEnvironment.sandbox.value
            data = self._post(self._sandbox_url, payload)
            status = data["status"]

        environment = str(data.get("environment") or environment)
        if status != STATUS_OK:
            if _is_retryable(status, data):
                logger.warning(f"Apple verifyReceipt retryable status {status}")
                raise UpstreamUnavailable(f"Apple receipt service temporarily unavailable (status {status})")
            logger.info(f"Apple verifyReceipt rejected receipt with status {status}")
            raise ValidationFailed(
                f"Receipt validation failed with status {status}", environment=environment
            )
        return data, environment

    def verify(
        self,
        proof: str,
        *,
        transaction_id: str,
        product_id: str,
        product_type: ProductType,
        original_transaction_id: str | None = None,
    ) -> VerifiedPurchase:
        data, environment = self.fetch_receipt(proof)

        latest = _entries(data.get("latest_receipt_info"))
        receipt = data.get("receipt") if isinstance(data.get("receipt"), dict) else {}
        in_app = _entries(receipt.get("in_app"))

        match = _find_by_transaction_id(latest, transaction_id) or _find_by_transaction_id(in_app, transaction_id)
        if product_type == ProductType.subscription:
            # 订阅以链上当前有效的一条为准，首购条目的到期时间可能早已过去
            match = _current_in_chain(latest + in_app, match, transaction_id, original_transaction_id)

        if match is None:
            logger.info(f"Transaction {transaction_id} not found in Apple receipt")
            raise ValidationFailed("Transaction not found in receipt", environment=environment)

        matched_product = str(match.get("product_id") or "")
        if matched_product != product_id:
            logger.warning(
                f"Product mismatch for transaction {transaction_id}: claimed {product_id}, receipt {matched_product}"
            )
            raise ValidationFailed("Product ID does not match receipt", environment=environment)
        if match.get("cancellation_date_ms"):
            raise ValidationFailed("Transaction was cancelled by Apple", environment=environment)

        original_id = str(match.get("original_transaction_id") or match.get("transaction_id") or transaction_id)
        expires_at = from_millis(match.get("expires_date_ms"))
        auto_renew: bool | None = None
        if product_type == ProductType.subscription:
            if expires_at is None:
                raise ValidationFailed("Subscription expiry missing from receipt", environment=environment)
            for info in _entries(data.get("pending_renewal_info")):
                if str(info.get("original_transaction_id")) == original_id:
                    auto_renew = str(info.get("auto_renew_status")) == "1"
                    break

        try:
            quantity = int(str(match.get("quantity") or 1))
        except ValueError:
            quantity = 1

        return VerifiedPurchase(
            platform=Platform.apple,
            transaction_id=str(match.get("transaction_id") or transaction_id),
            product_id=matched_product,
            purchase_date=from_millis(match.get("purchase_date_ms")) or utc_now(),
            quantity=quantity,
            original_transaction_id=original_id,
            expires_at=expires_at,
            auto_renew=auto_renew,
            environment=environment,
        )
