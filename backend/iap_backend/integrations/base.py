"""
平台校验公共类型

各平台校验器返回统一的 VerifiedPurchase，调用方不关心平台差异。
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from iap_backend.enums import Platform, ProductType


@dataclass(frozen=True)
class VerifiedPurchase:
    """
    平台确认过的购买信息

    所有字段均取自平台响应，而非客户端提交的内容。
    """
    platform: Platform
    transaction_id: str  # 平台返回的交易 ID（Apple transaction_id / Google orderId）
    product_id: str
    purchase_date: datetime
    quantity: int = 1
    original_transaction_id: str | None = None  # 订阅链首购 ID
    expires_at: datetime | None = None  # 订阅到期时间（原样取自平台）
    auto_renew: bool | None = None
    environment: str = "Production"
    acknowledgement_state: int | None = None  # 仅 Google


class ReceiptVerifier(Protocol):
    def verify(
        self,
        proof: str,
        *,
        transaction_id: str,
        product_id: str,
        product_type: ProductType,
        original_transaction_id: str | None = None,
    ) -> VerifiedPurchase: ...
