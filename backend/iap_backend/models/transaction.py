"""
内购交易记录模型模块

定义交易账本（ledger）表，用于去重和审计。
"""
import uuid
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text, Uuid
from sqlmodel import Field, SQLModel

from iap_backend.enums import Platform, ProductType, ValidationStatus

from .base import utc_now


class PurchaseTransaction(SQLModel, table=True):
    """
    内购交易记录模型

    每个平台购买事件一条记录。platform_transaction_id 唯一，是幂等键：
    并发重复提交时由唯一约束决定“先写入者生效”。
    记录只追加、不删除；已处理（processed=True）的记录不会被撤回。

    字段说明：
    - id: 主键
    - user_id: 用户 ID（外键）
    - platform: 平台（apple/google）
    - platform_transaction_id: Apple transaction_id 或 Google orderId（唯一）
    - original_transaction_id: 订阅首购交易 ID，续订共享该值（用于通知归属用户）
    - product_id: 产品 ID
    - product_type: 产品类型（consumable/subscription）
    - purchase_date: 平台返回的购买时间
    - quantity: 购买数量
    - subscription_expires_at: 订阅到期时间（仅订阅，取自平台）
    - subscription_auto_renew_status: 是否自动续费（仅订阅）
    - receipt_data: Apple 收据原文（用于复核）
    - purchase_token: Google 购买令牌（用于复核）
    - environment: 平台环境（Production/Sandbox）
    - acknowledgement_state: Google 确认状态（0 未确认，1 已确认）
    - validation_status: 校验状态（pending/valid/invalid/refunded）
    - processed / processed_at: 权益是否已实际发放及时间
    """
    __tablename__ = "iap_transactions"

    id: uuid.UUID = Field(
        default_factory=uuid.uuid4,
        sa_column=Column(Uuid, primary_key=True),
    )
    user_id: uuid.UUID = Field(
        sa_column=Column(
            Uuid, ForeignKey("profiles.id", ondelete="CASCADE"), index=True, nullable=False
        )
    )
    platform: Platform = Field(sa_column=Column(String(16), nullable=False))

    platform_transaction_id: str = Field(
        sa_column=Column(String(128), unique=True, index=True, nullable=False)
    )
    original_transaction_id: str | None = Field(
        default=None, sa_column=Column(String(128), index=True, nullable=True)
    )

    product_id: str = Field(sa_column=Column(String(128), index=True, nullable=False))
    product_type: ProductType = Field(sa_column=Column(String(16), nullable=False))

    purchase_date: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    quantity: int = Field(default=1, sa_column=Column(Integer, nullable=False, default=1))

    subscription_expires_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    subscription_auto_renew_status: bool | None = Field(
        default=None, sa_column=Column(Boolean, nullable=True)
    )

    receipt_data: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    purchase_token: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    environment: str | None = Field(default=None, max_length=16)
    acknowledgement_state: int | None = Field(default=None)

    validation_status: ValidationStatus = Field(
        default=ValidationStatus.pending,
        sa_column=Column(String(16), nullable=False, default=ValidationStatus.pending.value),
    )
    processed: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))
    processed_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )

    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
