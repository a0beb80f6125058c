"""
FastAPI 依赖注入模块

提供可复用的依赖项，用于路由处理函数中。

- get_db: 请求级数据库会话
- get_current_user: 校验身份提供方签发的 Bearer JWT，返回用户资料
- get_apple_verifier / get_google_verifier / get_catalog: 进程级单例服务对象，
  测试中通过 app.dependency_overrides 替换为假实现
"""
import logging
import uuid
from collections.abc import Generator
from functools import lru_cache
from typing import Annotated

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt.exceptions import InvalidTokenError
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from iap_backend import crud
from iap_backend.api.errors import Unauthenticated
from iap_backend.api.schemas import TokenPayload
from iap_backend.core import security
from iap_backend.core.config import settings
from iap_backend.core.db import engine
from iap_backend.integrations.apple_receipts import AppleReceiptVerifier
from iap_backend.integrations.google_play import GooglePlayVerifier
from iap_backend.models import Profile
from iap_backend.services.catalog import ProductCatalog
from iap_backend.services.config_service import get_config

logger = logging.getLogger(__name__)

# 缺少 Authorization 头时不让 HTTPBearer 自己返回 403，统一抛 Unauthenticated
reusable_bearer = HTTPBearer(auto_error=False)


def get_db() -> Generator[Session, None, None]:
    """获取数据库会话，请求结束后自动关闭"""
    with Session(engine) as session:
        yield session


SessionDep = Annotated[Session, Depends(get_db)]
TokenDep = Annotated[HTTPAuthorizationCredentials | None, Depends(reusable_bearer)]


def get_current_user(session: SessionDep, token: TokenDep) -> Profile:
    """
    获取当前用户资料（依赖注入）

    令牌由身份提供方签发，sub 为用户 UUID。
    令牌有效但资料行尚不存在时自动创建（积分 0、未订阅）。

    Raises:
        Unauthenticated: 缺少令牌、令牌无效或 sub 不是合法 UUID
    """
    if token is None or not token.credentials:
        raise Unauthenticated("Missing bearer token")
    try:
        payload = security.decode_access_token(token.credentials)
        token_data = TokenPayload(**payload)
    except (InvalidTokenError, ValidationError):
        raise Unauthenticated("Could not validate credentials")
    if not token_data.sub:
        raise Unauthenticated("Could not validate credentials")
    try:
        user_id = uuid.UUID(token_data.sub)
    except ValueError:
        raise Unauthenticated("Could not validate credentials")

    profile = crud.get_profile(session=session, user_id=user_id)
    if profile is None:
        try:
            profile = crud.create_profile(session=session, user_id=user_id, email=token_data.email)
        except IntegrityError:
            # 并发请求已创建
            session.rollback()
            profile = crud.get_profile(session=session, user_id=user_id)
            if profile is None:
                raise
        logger.info("Created profile for new user", extra={"user_id": str(user_id)})
    return profile


CurrentUser = Annotated[Profile, Depends(get_current_user)]


@lru_cache
def get_apple_verifier() -> AppleReceiptVerifier:
    return AppleReceiptVerifier(
        shared_secret=settings.APPLE_SHARED_SECRET,
        production_url=settings.APPLE_PRODUCTION_URL,
        sandbox_url=settings.APPLE_SANDBOX_URL,
        timeout=settings.PLATFORM_HTTP_TIMEOUT_SECONDS,
    )


@lru_cache
def get_google_verifier() -> GooglePlayVerifier:
    return GooglePlayVerifier(
        service_account_info=settings.google_service_account_info,
        package_name=settings.GOOGLE_PLAY_PACKAGE_NAME,
        token_url=settings.GOOGLE_TOKEN_URL,
        api_base=settings.GOOGLE_PLAY_API_BASE,
        timeout=settings.PLATFORM_HTTP_TIMEOUT_SECONDS,
    )


@lru_cache
def get_catalog() -> ProductCatalog:
    return ProductCatalog.from_config(get_config())


AppleVerifierDep = Annotated[AppleReceiptVerifier, Depends(get_apple_verifier)]
GoogleVerifierDep = Annotated[GooglePlayVerifier, Depends(get_google_verifier)]
CatalogDep = Annotated[ProductCatalog, Depends(get_catalog)]
