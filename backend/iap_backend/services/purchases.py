"""
购买处理服务

客户端购买完成后提交凭证（Apple receipt-data 或 Google purchase token），
本服务负责：
1. 查账本去重（已处理的交易直接返回当前权益，被拒绝过的交易永久拒绝）
2. 调用平台校验
3. 在同一个数据库事务中写入 valid 记录、发放权益、标记已处理

“僵尸交易”（账本中 valid 但权益未实际生效）会重新向平台校验，
以平台返回的最新到期时间补发权益，不复用记录里保存的旧值；
平台返回的到期时间已过时只更新账本，不重新激活订阅。
"""
from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import NoReturn

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from iap_backend.api.errors import (
    AppError,
    BadRequest,
    PersistenceFailed,
    PreviouslyRejected,
    ValidationFailed,
    not_configured,
)
from iap_backend.crud import get_profile
from iap_backend.enums import (
    Platform,
    ProductType,
    SubscriptionStatus,
    SubscriptionType,
    ValidationStatus,
)
from iap_backend.integrations.base import ReceiptVerifier, VerifiedPurchase
from iap_backend.models import Profile, PurchaseTransaction, as_utc, utc_now

from .catalog import ProductCatalog
from .entitlements import EntitlementReconciler
from .ledger import TransactionLedger

logger = logging.getLogger(__name__)

ALREADY_PROCESSED = "Transaction already processed"
SUBSCRIPTION_EXPIRED = "Subscription has expired"


@dataclass(frozen=True)
class PurchaseClaim:
    """客户端声称的一笔购买（尚未经平台确认）"""
    platform: Platform
    proof: str
    product_id: str
    transaction_id: str

    @classmethod
    def from_fields(
        cls,
        *,
        receipt_data: str | None,
        purchase_token: str | None,
        product_id: str | None,
        transaction_id: str | None,
        order_id: str | None = None,
    ) -> "PurchaseClaim":
        """根据提交的凭证字段推断平台：receiptData → Apple，purchaseToken → Google"""
        if receipt_data:
            platform, proof = Platform.apple, receipt_data
        elif purchase_token:
            platform, proof = Platform.google, purchase_token
        else:
            raise BadRequest("Missing receiptData or purchaseToken")
        tx_id = transaction_id or order_id
        if not product_id or not tx_id:
            raise BadRequest("Missing productId or transactionId")
        return cls(platform=platform, proof=proof, product_id=product_id, transaction_id=tx_id)


@dataclass(frozen=True)
class CreditsResult:
    new_total: int
    credits_added: int | None = None
    message: str | None = None
    success: bool = True


@dataclass(frozen=True)
class SubscriptionResult:
    subscription_type: SubscriptionType
    subscription_status: SubscriptionStatus
    expires_at: datetime | None
    message: str | None = None
    success: bool = True


def has_active_subscription(profile: Profile, now: datetime | None = None) -> bool:
    """订阅中或已关闭自动续费但尚未到期"""
    now = now or utc_now()
    expires_at = as_utc(profile.subscription_expires_at)
    return (
        profile.subscription_status in (SubscriptionStatus.active, SubscriptionStatus.cancelled)
        and expires_at is not None
        and expires_at > now
    )


class PurchaseProcessor:
    def __init__(
        self,
        session: Session,
        *,
        verifiers: Mapping[Platform, ReceiptVerifier | None],
        catalog: ProductCatalog,
    ) -> None:
        self.session = session
        self.verifiers = verifiers
        self.catalog = catalog
        self.ledger = TransactionLedger(session)
        self.reconciler = EntitlementReconciler(session)

    # ---- shared steps ----

    def _verifier_for(self, platform: Platform) -> ReceiptVerifier:
        verifier = self.verifiers.get(platform)
        if verifier is None:
            raise not_configured(f"{platform.value} receipt verification")
        return verifier

    def _verify(
        self,
        user_id: uuid.UUID,
        claim: PurchaseClaim,
        product_type: ProductType,
        *,
        original_transaction_id: str | None = None,
        record_rejection: bool = True,
    ) -> VerifiedPurchase:
        verifier = self._verifier_for(claim.platform)
        try:
            return verifier.verify(
                claim.proof,
                transaction_id=claim.transaction_id,
                product_id=claim.product_id,
                product_type=product_type,
                original_transaction_id=original_transaction_id,
            )
        except ValidationFailed as e:
            logger.info(
                f"Purchase rejected by {claim.platform.value}: {e.message}",
                extra={"user_id": str(user_id), "transaction_id": claim.transaction_id},
            )
            if record_rejection:
                self.ledger.record_invalid(
                    user_id=user_id,
                    platform=claim.platform,
                    platform_transaction_id=claim.transaction_id,
                    product_id=claim.product_id,
                    product_type=product_type,
                    receipt_data=claim.proof if claim.platform == Platform.apple else None,
                    purchase_token=claim.proof if claim.platform == Platform.google else None,
                    environment=e.environment,
                )
            raise

    def _new_record(
        self, user_id: uuid.UUID, claim: PurchaseClaim, product_type: ProductType, verified: VerifiedPurchase
    ) -> PurchaseTransaction:
        return PurchaseTransaction(
            user_id=user_id,
            platform=claim.platform,
            platform_transaction_id=verified.transaction_id,
            original_transaction_id=verified.original_transaction_id,
            product_id=verified.product_id,
            product_type=product_type,
            purchase_date=verified.purchase_date,
            quantity=verified.quantity,
            subscription_expires_at=verified.expires_at,
            subscription_auto_renew_status=verified.auto_renew,
            receipt_data=claim.proof if claim.platform == Platform.apple else None,
            purchase_token=claim.proof if claim.platform == Platform.google else None,
            environment=verified.environment,
            acknowledgement_state=verified.acknowledgement_state,
            validation_status=ValidationStatus.valid,
        )

    def _mark_processed(self, record: PurchaseTransaction) -> None:
        now = utc_now()
        record.validation_status = ValidationStatus.valid
        record.processed = True
        record.processed_at = now
        record.updated_at = now
        self.session.add(record)
        self.session.flush()

    def _rollback_and_raise(self, e: Exception, claim: PurchaseClaim) -> NoReturn:
        self.session.rollback()
        if isinstance(e, AppError):
            raise e
        logger.exception(
            "Failed to persist purchase",
            extra={"transaction_id": claim.transaction_id},
        )
        raise PersistenceFailed() from e

    def _profile(self, user_id: uuid.UUID) -> Profile:
        profile = get_profile(session=self.session, user_id=user_id)
        if profile is None:
            raise PersistenceFailed(f"Profile {user_id} not found")
        return profile

    @staticmethod
    def _ensure_not_rejected(record: PurchaseTransaction) -> None:
        if record.validation_status in (ValidationStatus.invalid, ValidationStatus.refunded):
            raise PreviouslyRejected(
                f"Transaction {record.platform_transaction_id} was previously {ValidationStatus(record.validation_status).value}"
            )

    # ---- credits ----

    def process_credits(self, user_id: uuid.UUID, claim: PurchaseClaim) -> CreditsResult:
        amount = self.catalog.credit_amount_for(claim.product_id)
        log_ctx = {
            "user_id": str(user_id),
            "transaction_id": claim.transaction_id,
            "product_id": claim.product_id,
        }
        logger.info("Processing credits purchase", extra=log_ctx)

        existing = self.ledger.lookup(claim.transaction_id)
        if existing is not None:
            self._ensure_not_rejected(existing)
            if existing.processed:
                return self._credits_replay(user_id)

        verified = self._verify(
            user_id, claim, ProductType.consumable, record_rejection=existing is None
        )
        credits_added = amount * verified.quantity

        try:
            if existing is None:
                record, created = self.ledger.upsert(
                    self._new_record(user_id, claim, ProductType.consumable, verified)
                )
                if not created:
                    self._ensure_not_rejected(record)
                    return self._credits_replay(user_id)
            else:
                # 未处理的记录：加锁后再次确认，防止并发补发
                record = self.ledger.lookup(claim.transaction_id, for_update=True)
                if record is None or record.processed:
                    self.session.rollback()
                    return self._credits_replay(user_id)
                logger.warning("Completing unprocessed credits transaction", extra=log_ctx)

            owner_id = record.user_id
            new_total = self.reconciler.apply_credits(owner_id, credits_added)
            self._mark_processed(record)
            self.session.commit()
        except (SQLAlchemyError, AppError) as e:
            self._rollback_and_raise(e, claim)

        logger.info(f"Credits purchase processed, +{credits_added}", extra={**log_ctx, "owner_id": str(owner_id)})
        if owner_id != user_id:
            # 权益发给账本记录的所属用户，调用方只看到自己的余额
            return self._credits_replay(user_id)
        return CreditsResult(new_total=new_total, credits_added=credits_added)

    def _credits_replay(self, user_id: uuid.UUID) -> CreditsResult:
        profile = self._profile(user_id)
        return CreditsResult(new_total=profile.room_credits, message=ALREADY_PROCESSED)

    # ---- subscriptions ----

    def process_subscription(self, user_id: uuid.UUID, claim: PurchaseClaim) -> SubscriptionResult:
        subscription_type = self.catalog.subscription_type_for(claim.product_id)
        log_ctx = {
            "user_id": str(user_id),
            "transaction_id": claim.transaction_id,
            "product_id": claim.product_id,
        }
        logger.info("Processing subscription purchase", extra=log_ctx)

        existing = self.ledger.lookup(claim.transaction_id)
        if existing is not None:
            self._ensure_not_rejected(existing)
            profile = self._profile(user_id)
            owned = existing.user_id == user_id
            if existing.processed and (not owned or has_active_subscription(profile)):
                return self._subscription_replay(profile)
            logger.warning("Re-verifying subscription with no active entitlement", extra=log_ctx)

        verified = self._verify(
            user_id,
            claim,
            ProductType.subscription,
            original_transaction_id=existing.original_transaction_id if existing else None,
            record_rejection=existing is None,
        )
        if verified.expires_at is None:
            raise ValidationFailed("Subscription expiry missing", environment=verified.environment)

        expired = as_utc(verified.expires_at) <= utc_now()
        try:
            if existing is None:
                record, created = self.ledger.upsert(
                    self._new_record(user_id, claim, ProductType.subscription, verified)
                )
                if not created:
                    self._ensure_not_rejected(record)
                    return self._subscription_replay(self._profile(user_id))
            else:
                record = self.ledger.lookup(claim.transaction_id, for_update=True)
                if record is None:
                    self.session.rollback()
                    return self._subscription_replay(self._profile(user_id))
                record.subscription_expires_at = verified.expires_at
                record.subscription_auto_renew_status = verified.auto_renew
                if verified.original_transaction_id:
                    record.original_transaction_id = verified.original_transaction_id

            owner_id = record.user_id
            # 已过期的订阅只更新账本，不重新激活
            if not expired:
                self.reconciler.apply_subscription(owner_id, subscription_type, verified.expires_at)
            self._mark_processed(record)
            self.session.commit()
        except (SQLAlchemyError, AppError) as e:
            self._rollback_and_raise(e, claim)

        if expired:
            logger.warning(
                f"Verified subscription already expired at {verified.expires_at.isoformat()}", extra=log_ctx
            )
            return self._subscription_replay(self._profile(user_id), message=SUBSCRIPTION_EXPIRED)
        logger.info("Subscription purchase processed", extra={**log_ctx, "owner_id": str(owner_id)})
        if owner_id != user_id:
            return self._subscription_replay(self._profile(user_id))
        return SubscriptionResult(
            subscription_type=subscription_type,
            subscription_status=SubscriptionStatus.active,
            expires_at=verified.expires_at,
        )

    def _subscription_replay(self, profile: Profile, message: str = ALREADY_PROCESSED) -> SubscriptionResult:
        return SubscriptionResult(
            subscription_type=SubscriptionType(profile.subscription_type),
            subscription_status=SubscriptionStatus(profile.subscription_status),
            expires_at=as_utc(profile.subscription_expires_at),
            message=message,
        )
