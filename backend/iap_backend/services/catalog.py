"""
产品目录

根据产品 ID 决定发放的积分数量或订阅类型。
产品 ID 按子串匹配，例如 "com.linksmarttech.tossortaste.credit_pack" 命中 "credit_pack"。
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from iap_backend.api.errors import BadRequest
from iap_backend.enums import SubscriptionType


@dataclass(frozen=True)
class ProductCatalog:
    credit_products: Mapping[str, int] = field(default_factory=dict)
    subscription_products: Mapping[str, SubscriptionType] = field(default_factory=dict)

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> "ProductCatalog":
        credits = {str(k): int(v) for k, v in (cfg.get("credit_products") or {}).items()}
        subs = {
            str(k): SubscriptionType(v)
            for k, v in (cfg.get("subscription_products") or {}).items()
        }
        return cls(credit_products=credits, subscription_products=subs)

    def credit_amount_for(self, product_id: str) -> int:
        for key, amount in self.credit_products.items():
            if key in product_id:
                return amount
        raise BadRequest(f"Unknown credit product: {product_id}")

    def subscription_type_for(self, product_id: str) -> SubscriptionType:
        for key, sub_type in self.subscription_products.items():
            if key in product_id:
                return sub_type
        raise BadRequest(f"Unknown subscription product: {product_id}")
