from __future__ import annotations

from typing import Any

from fastapi import APIRouter

from iap_backend.api.deps import CatalogDep, SessionDep
from iap_backend.api.schemas import NotificationAck
from iap_backend.core.config import settings
from iap_backend.services.notifications import AppleNotificationHandler

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.post("/apple", response_model=NotificationAck)
def apple_notification(
    session: SessionDep,
    catalog: CatalogDep,
    payload: dict[str, Any],
) -> NotificationAck:
    """Apple App Store 服务器通知（V1），不需要用户令牌"""
    handler = AppleNotificationHandler(
        session, catalog=catalog, shared_secret=settings.APPLE_SHARED_SECRET
    )
    handler.handle(payload)
    return NotificationAck(received=True)
