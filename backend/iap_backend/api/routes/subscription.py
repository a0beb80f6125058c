from __future__ import annotations

from fastapi import APIRouter

from iap_backend.api.deps import CurrentUser
from iap_backend.api.schemas import SubscriptionStatusResponse
from iap_backend.enums import SubscriptionStatus, SubscriptionType
from iap_backend.models import as_utc
from iap_backend.services.purchases import has_active_subscription

router = APIRouter(prefix="/subscription", tags=["subscription"])


@router.get("/status", response_model=SubscriptionStatusResponse)
def status(current_user: CurrentUser) -> SubscriptionStatusResponse:
    return SubscriptionStatusResponse(
        subscribed=has_active_subscription(current_user),
        subscription_type=SubscriptionType(current_user.subscription_type),
        subscription_status=SubscriptionStatus(current_user.subscription_status),
        expires_at=as_utc(current_user.subscription_expires_at),
        room_credits=current_user.room_credits,
    )
