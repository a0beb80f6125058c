"""
应用配置模块

使用 Pydantic Settings 管理所有环境变量和配置。
配置从项目根目录的 .env 文件读取，支持类型验证和默认值。

配置分组：
- 基础配置：项目名、API 前缀、运行环境、日志级别
- 认证配置：JWT 密钥（与身份提供方共享）、audience
- 数据库配置：PostgreSQL 连接参数，或直接提供 DATABASE_URL
- Apple 配置：verifyReceipt 地址、共享密钥
- Google Play 配置：服务账号 JSON、包名、API 地址
"""
import json  # 解析服务账号 JSON
import secrets  # 用于生成安全的随机字符串
import warnings  # 用于发出警告
from typing import Annotated, Any, Literal  # 类型注解工具

from pydantic import (
    AnyUrl,  # URL 类型验证
    BeforeValidator,  # 字段验证前的转换器
    HttpUrl,  # HTTP URL 类型验证
    PostgresDsn,  # PostgreSQL 连接字符串验证
    computed_field,  # 计算字段装饰器
    model_validator,  # 模型验证器装饰器
)
from pydantic_settings import BaseSettings, SettingsConfigDict  # 配置管理
from typing_extensions import Self  # 用于类型注解中引用自身类型


def parse_cors(v: Any) -> list[str] | str:
    """
    解析 CORS 配置值

    支持两种格式：
    1. 逗号分隔的字符串："http://localhost:3000,http://localhost:3001"
    2. 列表格式：["http://localhost:3000", "http://localhost:3001"]

    Raises:
        ValueError: 当输入格式不正确时
    """
    if isinstance(v, str) and not v.startswith("["):
        return [i.strip() for i in v.split(",") if i.strip()]
    elif isinstance(v, list | str):
        return v
    raise ValueError(v)


class Settings(BaseSettings):
    """
    应用配置类

    配置来源优先级：
    1. 环境变量（最高优先级）
    2. .env 文件
    3. 代码中的默认值（最低优先级）
    """
    model_config = SettingsConfigDict(
        env_file="../.env",
        env_ignore_empty=True,  # 忽略空的环境变量
        extra="ignore",  # 忽略未定义的额外字段
    )
    API_V1_STR: str = "/api/v1"  # API 版本前缀
    PROJECT_NAME: str = "Toss or Taste IAP"
    ENVIRONMENT: Literal["local", "staging", "production"] = "local"
    LOG_LEVEL: str = "INFO"
    SENTRY_DSN: HttpUrl | None = None

    # 认证：与身份提供方（Supabase Auth）共享的 HS256 密钥
    SECRET_KEY: str = secrets.token_urlsafe(32)
    JWT_AUDIENCE: str | None = None  # 例如 "authenticated"；为空时不校验 aud

    BACKEND_CORS_ORIGINS: Annotated[
        list[AnyUrl] | str, BeforeValidator(parse_cors)
    ] = []

    @computed_field  # type: ignore[prop-decorator]
    @property
    def all_cors_origins(self) -> list[str]:
        """CORS 允许的源（去除尾部斜杠）"""
        return [str(origin).rstrip("/") for origin in self.BACKEND_CORS_ORIGINS]

    # 数据库
    DATABASE_URL: str | None = None  # 完整连接串，设置后优先于 POSTGRES_*
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DB: str = "app"

    @computed_field  # type: ignore[prop-decorator]
    @property
    def SQLALCHEMY_DATABASE_URI(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return str(
            PostgresDsn.build(
                scheme="postgresql+psycopg",
                username=self.POSTGRES_USER,
                password=self.POSTGRES_PASSWORD,
                host=self.POSTGRES_SERVER,
                port=self.POSTGRES_PORT,
                path=self.POSTGRES_DB,
            )
        )

    # Apple App Store（verifyReceipt）
    APPLE_SHARED_SECRET: str | None = None  # App 专用共享密钥，也用于校验服务器通知
    APPLE_PRODUCTION_URL: str = "https://buy.itunes.apple.com/verifyReceipt"
    APPLE_SANDBOX_URL: str = "https://sandbox.itunes.apple.com/verifyReceipt"

    # Google Play Developer API
    GOOGLE_SERVICE_ACCOUNT_JSON: str | None = None  # 服务账号 JSON 原文
    GOOGLE_PLAY_PACKAGE_NAME: str = "com.tossortaste.app"
    GOOGLE_TOKEN_URL: str = "https://oauth2.googleapis.com/token"
    GOOGLE_PLAY_API_BASE: str = "https://androidpublisher.googleapis.com/androidpublisher/v3"

    PLATFORM_HTTP_TIMEOUT_SECONDS: float = 10.0  # 调用平台接口的超时时间（秒）

    @property
    def google_service_account_info(self) -> dict[str, Any] | None:
        """解析后的 Google 服务账号信息，未配置时返回 None"""
        if not self.GOOGLE_SERVICE_ACCOUNT_JSON:
            return None
        return json.loads(self.GOOGLE_SERVICE_ACCOUNT_JSON)

    def _check_default_secret(self, var_name: str, value: str | None) -> None:
        """
        检查敏感配置是否使用了默认值 "changethis"

        本地环境只警告，其他环境直接报错。
        """
        if value == "changethis":
            message = (
                f'The value of {var_name} is "changethis", '
                "for security, please change it, at least for deployments."
            )
            if self.ENVIRONMENT == "local":
                warnings.warn(message, stacklevel=1)
            else:
                raise ValueError(message)

    @model_validator(mode="after")
    def _enforce_non_default_secrets(self) -> Self:
        self._check_default_secret("SECRET_KEY", self.SECRET_KEY)
        self._check_default_secret("POSTGRES_PASSWORD", self.POSTGRES_PASSWORD)
        self._check_default_secret("APPLE_SHARED_SECRET", self.APPLE_SHARED_SECRET)

        return self


# 创建全局配置实例，整个应用共享
settings = Settings()  # type: ignore
