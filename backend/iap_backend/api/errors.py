"""
自定义异常模块

定义应用特定的异常类，用于统一的错误处理。
所有业务异常都继承自 AppError，在 main.py 中有统一的异常处理器，
响应体格式为 {"error": message, "code": code}。
"""
from __future__ import annotations


class AppError(Exception):
    """
    应用自定义异常类

    包含：
    - code: 业务错误码（用于客户端区分不同错误）
    - message: 错误消息
    - status_code: HTTP 状态码

    使用示例：
        raise AppError(code=500002, message="Google Play is not configured", status_code=500)
    """

    def __init__(self, *, code: int, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code


class Unauthenticated(AppError):
    """缺少或无效的用户凭证"""

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(code=401001, message=message, status_code=401)


class BadRequest(AppError):
    """请求缺少必要字段或产品 ID 无法识别"""

    def __init__(self, message: str = "Bad request") -> None:
        super().__init__(code=400001, message=message, status_code=400)


class PreviouslyRejected(AppError):
    """该交易此前已被判定无效或已退款，永久拒绝"""

    def __init__(self, message: str = "Transaction was previously rejected") -> None:
        super().__init__(code=409001, message=message, status_code=409)


class ValidationFailed(AppError):
    """
    平台明确判定购买无效

    例如 Apple 返回非 0 状态码、交易在收据中找不到、产品不匹配、
    Google 购买状态不是已购买等。此类失败会在账本中留下 invalid 记录。
    """

    def __init__(self, message: str, *, environment: str | None = None) -> None:
        super().__init__(code=400101, message=message, status_code=400)
        self.environment = environment


class UpstreamUnavailable(AppError):
    """平台暂时不可用（网络错误、5xx、可重试状态码），客户端可稍后重试"""

    def __init__(self, message: str = "Store verification service unavailable") -> None:
        super().__init__(code=502001, message=message, status_code=502)


class PersistenceFailed(AppError):
    """数据库写入失败，事务已回滚，未发放任何权益"""

    def __init__(self, message: str = "Failed to persist purchase") -> None:
        super().__init__(code=500001, message=message, status_code=500)


def not_configured(what: str) -> AppError:
    """服务端配置缺失（如未配置 Google 服务账号）"""
    return AppError(code=500002, message=f"{what} is not configured", status_code=500)
