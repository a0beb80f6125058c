"""
FastAPI 应用主入口

负责：
1. 配置日志
2. 创建 FastAPI 应用实例
3. 配置全局中间件（CORS、Sentry）
4. 注册全局异常处理器，统一错误响应格式 {"error": message, "code": code}
5. 注册 API 路由

运行方式：
    uvicorn iap_backend.main:app --reload  # 开发模式
    fastapi dev iap_backend/main.py  # 或使用 FastAPI CLI
"""
import logging

import sentry_sdk  # Sentry 错误监控
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.routing import APIRoute

from iap_backend.api.errors import AppError
from iap_backend.api.main import api_router
from iap_backend.core.config import settings

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def custom_generate_unique_id(route: APIRoute) -> str:
    """
    自定义 OpenAPI 操作 ID 生成函数

    格式：{tag}-{route_name}，例如 "purchases-purchase_credits"
    """
    return f"{route.tags[0]}-{route.name}"


# 仅在非本地环境初始化 Sentry
if settings.SENTRY_DSN and settings.ENVIRONMENT != "local":  # pragma: no cover
    sentry_sdk.init(dsn=str(settings.SENTRY_DSN), enable_tracing=True)

app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    generate_unique_id_function=custom_generate_unique_id,
)


@app.exception_handler(AppError)
async def app_error_handler(_: Request, exc: AppError) -> JSONResponse:
    """业务异常统一转换为 {"error", "code"}"""
    if exc.status_code >= 500:
        logger.error(f"Request failed: {exc.code} {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, "code": exc.code},
    )


@app.exception_handler(HTTPException)
async def http_error_handler(_: Request, exc: HTTPException) -> JSONResponse:
    """
    HTTP 异常处理器

    detail 为字符串时自动生成错误码（状态码 * 1000）。
    """
    if isinstance(exc.detail, dict) and {"code", "error"} <= set(exc.detail.keys()):
        content = {"error": exc.detail.get("error"), "code": exc.detail.get("code")}
    else:
        content = {"error": str(exc.detail), "code": exc.status_code * 1000}
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
    """请求体格式错误（非 JSON、字段类型错误等）"""
    return JSONResponse(
        status_code=422,
        content={
            "error": "Validation error",
            "code": 422000,
            "details": jsonable_errors(exc),
        },
    )


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, object]]:
    return [
        {"loc": list(err.get("loc", ())), "msg": str(err.get("msg", "")), "type": str(err.get("type", ""))}
        for err in exc.errors()
    ]


if settings.all_cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.all_cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

# 所有路由都添加 /api/v1 前缀
app.include_router(api_router, prefix=settings.API_V1_STR)
