"""
JWT 工具模块

访问令牌由身份提供方签发（HS256，sub 为用户 UUID），后端只负责校验。
create_access_token 供内部工具和测试签发同格式的令牌。
"""
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

from iap_backend.core.config import settings

ALGORITHM = "HS256"


def create_access_token(subject: str | Any, expires_delta: timedelta) -> str:
    expire = datetime.now(timezone.utc) + expires_delta
    to_encode: dict[str, Any] = {"exp": expire, "sub": str(subject)}
    if settings.JWT_AUDIENCE:
        to_encode["aud"] = settings.JWT_AUDIENCE
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict[str, Any]:
    """
    校验并解析访问令牌

    Raises:
        jwt.InvalidTokenError: 签名错误、过期或 audience 不匹配
    """
    options = {} if settings.JWT_AUDIENCE else {"verify_aud": False}
    return jwt.decode(
        token,
        settings.SECRET_KEY,
        algorithms=[ALGORITHM],
        audience=settings.JWT_AUDIENCE,
        options=options,
    )
