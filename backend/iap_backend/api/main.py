"""
API 路由聚合模块

路由模块说明：
- purchases: 内购凭证处理（积分、订阅）
- notifications: 平台服务器通知（Apple）
- subscription: 当前用户权益状态
- utils: 工具相关（健康检查等）
"""
from fastapi import APIRouter

from iap_backend.api.routes import (
    notifications,  # 服务器通知路由
    purchases,  # 购买路由
    subscription,  # 订阅状态路由
    utils,  # 工具路由
)

api_router = APIRouter()

api_router.include_router(purchases.router)  # /purchases/*
api_router.include_router(notifications.router)  # /notifications/*
api_router.include_router(subscription.router)  # /subscription/*
api_router.include_router(utils.router)  # /utils/*
