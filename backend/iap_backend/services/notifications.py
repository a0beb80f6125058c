"""
Apple 服务器通知处理

Apple 在订阅续费、关闭自动续费、扣款失败、退款、撤销等事件发生时推送通知。
通知通过 original_transaction_id 找到账本中最新的一条记录来确定所属用户。

每次通知都会先写入 store_notifications 审计表；
无法识别的类型、缺少购买信息或找不到所属用户时只确认收到，不改变任何状态。
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from iap_backend.api.errors import AppError, BadRequest, PersistenceFailed, Unauthenticated
from iap_backend.crud import get_profile
from iap_backend.enums import (
    Platform,
    ProductType,
    StoreEnvironment,
    SubscriptionStatus,
    SubscriptionType,
    ValidationStatus,
)
from iap_backend.models import PurchaseTransaction, StoreNotification, from_millis, utc_now

from .catalog import ProductCatalog
from .entitlements import EntitlementReconciler
from .ledger import TransactionLedger

logger = logging.getLogger(__name__)

RENEWAL_TYPES = ("DID_RENEW", "RENEWAL", "INTERACTIVE_RENEWAL")
RENEWAL_STATUS_TYPES = ("DID_CHANGE_RENEWAL_STATUS", "CANCEL")
_NO_DATE = datetime.min.replace(tzinfo=timezone.utc)


def _newest_entry(entries: Any) -> dict[str, Any] | None:
    if not isinstance(entries, list):
        return None
    candidates = [e for e in entries if isinstance(e, dict)]
    if not candidates:
        return None

    def sort_key(entry: dict[str, Any]) -> tuple[datetime, datetime]:
        return (
            from_millis(entry.get("expires_date_ms")) or _NO_DATE,
            from_millis(entry.get("purchase_date_ms")) or _NO_DATE,
        )

    return max(candidates, key=sort_key)


def purchase_info(payload: dict[str, Any]) -> dict[str, Any] | None:
    """取通知中的购买信息：优先 data，否则取 unified_receipt.latest_receipt_info 中最新的一条"""
    data = payload.get("data")
    if isinstance(data, dict) and data:
        return data
    unified = payload.get("unified_receipt")
    if isinstance(unified, dict):
        return _newest_entry(unified.get("latest_receipt_info"))
    return None


def _truthy_renew_flag(value: Any) -> bool | None:
    if value is None:
        return None
    return str(value).lower() in ("1", "true")


class AppleNotificationHandler:
    def __init__(
        self,
        session: Session,
        *,
        catalog: ProductCatalog,
        shared_secret: str | None = None,
    ) -> None:
        self.session = session
        self.catalog = catalog
        self.shared_secret = shared_secret
        self.ledger = TransactionLedger(session)
        self.reconciler = EntitlementReconciler(session)
        self._handlers: dict[str, Callable[[PurchaseTransaction, dict[str, Any], dict[str, Any]], None]] = {
            **{t: self._on_renewal for t in RENEWAL_TYPES},
            **{t: self._on_renewal_status_change for t in RENEWAL_STATUS_TYPES},
            "DID_FAIL_TO_RENEW": self._on_fail_to_renew,
            "REFUND": self._on_refund,
            "REVOKE": self._on_revoke,
            "DID_RECOVER": self._on_recover,
        }

    def handle(self, payload: dict[str, Any]) -> None:
        if self.shared_secret and payload.get("password") != self.shared_secret:
            logger.warning("Apple notification rejected: shared secret mismatch")
            raise Unauthenticated()

        notification_type = str(payload.get("notification_type") or "")
        data = purchase_info(payload)
        self._log_notification(payload, notification_type, data)

        if data is None:
            logger.info(f"Apple notification {notification_type} carries no purchase info")
            return

        original_id = str(data.get("original_transaction_id") or "")
        owner = self.ledger.latest_for_original(original_id) if original_id else None
        if owner is None:
            logger.info(
                f"No owner found for Apple notification {notification_type}",
                extra={"original_transaction_id": original_id},
            )
            return

        handler = self._handlers.get(notification_type)
        if handler is None:
            logger.info(f"Unhandled Apple notification type {notification_type!r}")
            return

        logger.info(
            f"Processing Apple notification {notification_type}",
            extra={"user_id": str(owner.user_id), "original_transaction_id": original_id},
        )
        try:
            handler(owner, data, payload)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.exception(f"Failed to apply Apple notification {notification_type}")
            raise PersistenceFailed("Failed to apply notification") from e
        except AppError:
            self.session.rollback()
            raise

    def _log_notification(
        self, payload: dict[str, Any], notification_type: str, data: dict[str, Any] | None
    ) -> None:
        sanitized = {k: v for k, v in payload.items() if k != "password"}
        data = data or {}
        entry = StoreNotification(
            platform=Platform.apple,
            notification_type=notification_type or "UNKNOWN",
            original_transaction_id=str(data["original_transaction_id"]) if data.get("original_transaction_id") else None,
            transaction_id=str(data["transaction_id"]) if data.get("transaction_id") else None,
            environment=str(payload.get("environment") or "") or None,
            payload=sanitized,
        )
        self.session.add(entry)
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.exception("Failed to store Apple notification")
            raise PersistenceFailed("Failed to store notification") from e

    def _subscription_type(self, product_id: str) -> SubscriptionType | None:
        try:
            return self.catalog.subscription_type_for(product_id)
        except BadRequest:
            return None

    # ---- handlers ----

    def _on_renewal(self, owner: PurchaseTransaction, data: dict[str, Any], payload: dict[str, Any]) -> None:
        expires_at = from_millis(data.get("expires_date_ms"))
        if expires_at is None:
            logger.warning("Renewal notification without expiry, ignoring")
            return

        product_id = str(data.get("product_id") or owner.product_id)
        transaction_id = str(data.get("transaction_id") or "")
        if transaction_id:
            now = utc_now()
            self.ledger.upsert(
                PurchaseTransaction(
                    user_id=owner.user_id,
                    platform=Platform.apple,
                    platform_transaction_id=transaction_id,
                    original_transaction_id=owner.original_transaction_id,
                    product_id=product_id,
                    product_type=ProductType.subscription,
                    purchase_date=from_millis(data.get("purchase_date_ms")) or now,
                    subscription_expires_at=expires_at,
                    subscription_auto_renew_status=True,
                    environment=str(payload.get("environment") or StoreEnvironment.production.value),
                    validation_status=ValidationStatus.valid,
                    processed=True,
                    processed_at=now,
                )
            )

        self.reconciler.set_status(
            owner.user_id,
            SubscriptionStatus.active,
            expires_at=expires_at,
            subscription_type=self._subscription_type(product_id),
        )

    def _auto_renew_status(self, payload: dict[str, Any], original_id: str | None) -> bool:
        unified = payload.get("unified_receipt")
        renewals = unified.get("pending_renewal_info") if isinstance(unified, dict) else None
        if isinstance(renewals, list):
            entries = [r for r in renewals if isinstance(r, dict)]
            matching = [r for r in entries if str(r.get("original_transaction_id")) == original_id]
            for entry in matching or entries[:1]:
                flag = _truthy_renew_flag(entry.get("auto_renew_status"))
                if flag is not None:
                    return flag
        return bool(_truthy_renew_flag(payload.get("auto_renew_status")))

    def _on_renewal_status_change(
        self, owner: PurchaseTransaction, data: dict[str, Any], payload: dict[str, Any]
    ) -> None:
        auto_renew = self._auto_renew_status(payload, owner.original_transaction_id)

        owner.subscription_auto_renew_status = auto_renew
        owner.updated_at = utc_now()
        self.session.add(owner)

        profile = get_profile(session=self.session, user_id=owner.user_id)
        if not auto_renew:
            self.reconciler.set_status(owner.user_id, SubscriptionStatus.cancelled)
        elif profile is not None and profile.subscription_status == SubscriptionStatus.cancelled:
            self.reconciler.set_status(owner.user_id, SubscriptionStatus.active)

    def _on_fail_to_renew(self, owner: PurchaseTransaction, data: dict[str, Any], payload: dict[str, Any]) -> None:
        self.reconciler.set_status(owner.user_id, SubscriptionStatus.payment_failed)

    def _on_refund(self, owner: PurchaseTransaction, data: dict[str, Any], payload: dict[str, Any]) -> None:
        transaction_id = str(data.get("transaction_id") or "")
        if transaction_id and self.ledger.mark_refunded(transaction_id) is None:
            logger.warning("Refunded transaction not found in ledger", extra={"transaction_id": transaction_id})
        self.reconciler.set_status(owner.user_id, SubscriptionStatus.refunded, expires_at=utc_now())

    def _on_revoke(self, owner: PurchaseTransaction, data: dict[str, Any], payload: dict[str, Any]) -> None:
        self.reconciler.set_status(owner.user_id, SubscriptionStatus.revoked, expires_at=utc_now())

    def _on_recover(self, owner: PurchaseTransaction, data: dict[str, Any], payload: dict[str, Any]) -> None:
        expires_at = from_millis(data.get("expires_date_ms"))
        if expires_at is None:
            self.reconciler.set_status(owner.user_id, SubscriptionStatus.active)
        else:
            self.reconciler.set_status(owner.user_id, SubscriptionStatus.active, expires_at=expires_at)

