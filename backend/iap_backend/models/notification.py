"""
平台服务器通知模型模块

记录收到的每一次平台通知（webhook），用于审计和问题排查。
"""
import uuid
from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, String, Uuid
from sqlmodel import Field, SQLModel

from iap_backend.enums import Platform

from .base import utc_now


class StoreNotification(SQLModel, table=True):
    """
    平台通知记录模型

    只追加。Apple V1 通知没有投递 ID，因此这里不做去重；
    续订记录的幂等由交易账本的唯一约束保证。

    字段说明：
    - id: 主键
    - platform: 平台
    - notification_type: 通知类型（如 "DID_RENEW"、"REFUND"）
    - original_transaction_id / transaction_id: 通知涉及的交易
    - environment: 平台环境
    - payload: 通知原文（已去除共享密钥）
    - received_at: 接收时间
    """
    __tablename__ = "store_notifications"

    id: uuid.UUID = Field(
        default_factory=uuid.uuid4,
        sa_column=Column(Uuid, primary_key=True),
    )
    platform: Platform = Field(sa_column=Column(String(16), nullable=False))
    notification_type: str = Field(sa_column=Column(String(64), index=True, nullable=False))
    original_transaction_id: str | None = Field(
        default=None, sa_column=Column(String(128), index=True, nullable=True)
    )
    transaction_id: str | None = Field(default=None, max_length=128)
    environment: str | None = Field(default=None, max_length=16)
    payload: dict | None = Field(default=None, sa_column=Column(JSON))
    received_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
