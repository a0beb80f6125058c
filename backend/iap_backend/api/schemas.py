"""
API 请求/响应数据模型（Schema）

定义所有 API 接口的请求和响应数据结构。
对外 JSON 字段统一使用 camelCase（如 receiptData、newTotal），
代码内部使用 snake_case，通过 alias_generator 自动转换。

请求模型的字段都是可选的：缺字段时由业务层抛出 BadRequest（400），
而不是 422 校验错误，与客户端约定的错误格式保持一致。
"""
from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from iap_backend.enums import SubscriptionStatus, SubscriptionType


class CamelModel(BaseModel):
    """camelCase 序列化基类，同时接受 snake_case 输入"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TokenPayload(BaseModel):
    """
    JWT Token 载荷模型

    sub 为身份提供方的用户 UUID。
    """
    sub: str | None = None
    email: str | None = None


# ============================================================
# 购买相关
# ============================================================


class PurchaseRequest(CamelModel):
    """
    购买凭证提交请求

    - Apple: receiptData + transactionId
    - Google: purchaseToken + orderId（也接受 transactionId）
    """
    receipt_data: str | None = None
    purchase_token: str | None = None
    product_id: str | None = None
    transaction_id: str | None = None
    order_id: str | None = None


class CreditsPurchaseResponse(CamelModel):
    """积分购买结果；重复提交时 creditsAdded 为空、message 为已处理提示"""
    success: bool = True
    credits_added: int | None = None
    new_total: int
    message: str | None = None


class SubscriptionPurchaseResponse(CamelModel):
    success: bool = True
    subscription_type: SubscriptionType
    subscription_status: SubscriptionStatus
    expires_at: datetime | None = None
    message: str | None = None


class SubscriptionStatusResponse(CamelModel):
    """当前用户权益快照"""
    subscribed: bool
    subscription_type: SubscriptionType
    subscription_status: SubscriptionStatus
    expires_at: datetime | None = None
    room_credits: int


class NotificationAck(CamelModel):
    received: bool = True
