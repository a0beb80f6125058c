"""
交易账本服务

platform_transaction_id 上的唯一约束是唯一的“先写入者生效”裁决者：
并发插入同一笔交易时，后到者回滚并按幂等重放处理。
"""
from __future__ import annotations

import logging
import uuid

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from iap_backend.enums import Platform, ProductType, ValidationStatus
from iap_backend.models import PurchaseTransaction, utc_now

logger = logging.getLogger(__name__)

OWNERSHIP_STATUSES = (ValidationStatus.valid, ValidationStatus.refunded)


class TransactionLedger:
    def __init__(self, session: Session) -> None:
        self.session = session

    def lookup(self, platform_transaction_id: str, *, for_update: bool = False) -> PurchaseTransaction | None:
        stmt = select(PurchaseTransaction).where(
            PurchaseTransaction.platform_transaction_id == platform_transaction_id
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return self.session.exec(stmt).first()

    def latest_for_original(self, original_transaction_id: str) -> PurchaseTransaction | None:
        """
        同一订阅链中最新的一条记录，用于把服务器通知归属到用户

        只看平台确认过的记录（valid / refunded），invalid 记录不参与归属。
        """
        stmt = (
            select(PurchaseTransaction)
            .where(
                PurchaseTransaction.original_transaction_id == original_transaction_id,
                col(PurchaseTransaction.validation_status).in_(OWNERSHIP_STATUSES),
            )
            .order_by(
                col(PurchaseTransaction.purchase_date).desc().nulls_last(),
                col(PurchaseTransaction.created_at).desc(),
            )
        )
        return self.session.exec(stmt).first()

    def upsert(self, record: PurchaseTransaction) -> tuple[PurchaseTransaction, bool]:
        """
        插入记录（只 flush，不提交）

        Returns:
            (记录, 是否新建)。唯一约束冲突时回滚当前事务，返回已存在的记录和 False。
        """
        self.session.add(record)
        try:
            self.session.flush()
        except IntegrityError:
            self.session.rollback()
            existing = self.lookup(record.platform_transaction_id)
            if existing is None:
                raise
            logger.info(
                "Transaction already recorded by a concurrent request",
                extra={"transaction_id": record.platform_transaction_id},
            )
            return existing, False
        return record, True

    def record_invalid(
        self,
        *,
        user_id: uuid.UUID,
        platform: Platform,
        platform_transaction_id: str,
        product_id: str,
        product_type: ProductType,
        receipt_data: str | None = None,
        purchase_token: str | None = None,
        environment: str | None = None,
    ) -> PurchaseTransaction | None:
        """写入一条 invalid 记录并提交；该交易以后会被永久拒绝"""
        record = PurchaseTransaction(
            user_id=user_id,
            platform=platform,
            platform_transaction_id=platform_transaction_id,
            product_id=product_id,
            product_type=product_type,
            receipt_data=receipt_data,
            purchase_token=purchase_token,
            environment=environment,
            validation_status=ValidationStatus.invalid,
        )
        self.session.add(record)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            logger.warning(
                "Invalid transaction already recorded",
                extra={"transaction_id": platform_transaction_id},
            )
            return None
        self.session.refresh(record)
        return record

    def mark_refunded(self, platform_transaction_id: str) -> PurchaseTransaction | None:
        """把记录标记为 refunded（只 flush，由调用方提交）"""
        record = self.lookup(platform_transaction_id, for_update=True)
        if record is None:
            return None
        record.validation_status = ValidationStatus.refunded
        record.updated_at = utc_now()
        self.session.add(record)
        self.session.flush()
        return record
