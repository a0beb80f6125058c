"""
数据库模型定义模块

本模块使用 SQLModel 定义所有数据库表结构。

模型按功能拆分：
- profile.py: 用户权益状态（积分、订阅）
- transaction.py: 内购交易账本
- notification.py: 平台服务器通知记录
"""
from sqlmodel import SQLModel

from .base import as_utc, from_millis, utc_now
from .notification import StoreNotification
from .profile import Profile
from .transaction import PurchaseTransaction

__all__ = [
    "SQLModel",
    "utc_now",
    "as_utc",
    "from_millis",
    "Profile",
    "PurchaseTransaction",
    "StoreNotification",
]
