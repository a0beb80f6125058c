"""
用户资料模型模块

只包含本服务负责维护的权益字段（房间积分、订阅状态）。
"""
import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String, Uuid
from sqlmodel import Field, SQLModel

from iap_backend.enums import SubscriptionStatus, SubscriptionType

from .base import utc_now


class Profile(SQLModel, table=True):
    """
    用户资料（权益状态）模型

    id 与身份提供方的用户 ID（JWT sub）一致。
    权益字段只由 EntitlementReconciler 修改，且总是基于数据库中的最新值读改写。

    字段说明：
    - id: 主键，用户 UUID
    - email: 邮箱（可选）
    - room_credits: 房间积分余额（>= 0）
    - subscription_type: 订阅类型（none/monthly/annual）
    - subscription_status: 订阅状态（inactive/active/cancelled/...）
    - subscription_expires_at: 订阅到期时间，以平台返回为准
    - created_at: 创建时间
    - updated_at: 更新时间
    """
    __tablename__ = "profiles"
    __table_args__ = (CheckConstraint("room_credits >= 0", name="ck_profiles_room_credits_non_negative"),)

    id: uuid.UUID = Field(
        default_factory=uuid.uuid4,
        sa_column=Column(Uuid, primary_key=True),
    )
    email: str | None = Field(default=None, max_length=255)

    room_credits: int = Field(
        default=0, sa_column=Column(Integer, nullable=False, default=0)
    )
    subscription_type: SubscriptionType = Field(
        default=SubscriptionType.none,
        sa_column=Column(String(16), nullable=False, default=SubscriptionType.none.value),
    )
    subscription_status: SubscriptionStatus = Field(
        default=SubscriptionStatus.inactive,
        sa_column=Column(String(16), nullable=False, default=SubscriptionStatus.inactive.value),
    )
    subscription_expires_at: datetime | None = Field(
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
