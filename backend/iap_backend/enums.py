"""
枚举类型定义模块

定义应用中使用的所有枚举类型。
所有枚举都继承自 str 和 Enum，这样既可以用作字符串，又具有枚举的特性。
"""
from enum import Enum  # 枚举类型，用于定义固定的选项集合


class Platform(str, Enum):
    """
    购买平台枚举

    - apple: App Store（收据 receipt-data）
    - google: Google Play（purchase token）
    """
    apple = "apple"
    google = "google"


class ProductType(str, Enum):
    """
    产品类型枚举

    - consumable: 消耗型（房间积分，可重复购买）
    - subscription: 自动续期订阅（月度/年度）
    """
    consumable = "consumable"
    subscription = "subscription"


class ValidationStatus(str, Enum):
    """
    交易校验状态枚举

    - pending: 待校验
    - valid: 平台校验通过
    - invalid: 平台拒绝（或产品 ID 不一致），永久拒绝
    - refunded: 已退款（由服务器通知写入）
    """
    pending = "pending"
    valid = "valid"
    invalid = "invalid"
    refunded = "refunded"


class SubscriptionType(str, Enum):
    """
    订阅类型枚举
    """
    none = "none"
    monthly = "monthly"
    annual = "annual"


class SubscriptionStatus(str, Enum):
    """
    订阅状态枚举

    - inactive: 未订阅
    - active: 订阅中
    - cancelled: 已关闭自动续费（到期前仍可使用）
    - payment_failed: 续费扣款失败
    - refunded: 已退款（立即失效）
    - revoked: 已撤销（立即失效）
    """
    inactive = "inactive"
    active = "active"
    cancelled = "cancelled"
    payment_failed = "payment_failed"
    refunded = "refunded"
    revoked = "revoked"


class StoreEnvironment(str, Enum):
    """
    平台环境枚举（与 Apple 返回的 environment 字段取值一致）
    """
    production = "Production"
    sandbox = "Sandbox"
