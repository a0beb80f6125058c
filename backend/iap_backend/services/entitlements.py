"""
权益调和服务

所有权益变更都在加锁读取的最新 profile 行上做读改写，只 flush 不提交，
由调用方把账本写入和权益变更放在同一个事务里提交。
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime

from sqlmodel import Session

from iap_backend.api.errors import PersistenceFailed
from iap_backend.crud import get_profile
from iap_backend.enums import SubscriptionStatus, SubscriptionType
from iap_backend.models import Profile, utc_now

logger = logging.getLogger(__name__)

_UNSET = object()


class EntitlementReconciler:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _locked_profile(self, user_id: uuid.UUID) -> Profile:
        profile = get_profile(session=self.session, user_id=user_id, for_update=True)
        if profile is None:
            raise PersistenceFailed(f"Profile {user_id} not found")
        return profile

    def _save(self, profile: Profile) -> Profile:
        profile.updated_at = utc_now()
        self.session.add(profile)
        self.session.flush()
        return profile

    def apply_credits(self, user_id: uuid.UUID, amount: int) -> int:
        """增加房间积分，返回新的余额"""
        profile = self._locked_profile(user_id)
        profile.room_credits = (profile.room_credits or 0) + amount
        self._save(profile)
        logger.info(
            f"Added {amount} room credits",
            extra={"user_id": str(user_id), "new_total": profile.room_credits},
        )
        return profile.room_credits

    def apply_subscription(
        self, user_id: uuid.UUID, subscription_type: SubscriptionType, expires_at: datetime
    ) -> Profile:
        """开通/续期订阅，到期时间原样使用平台返回值"""
        profile = self._locked_profile(user_id)
        profile.subscription_type = subscription_type
        profile.subscription_status = SubscriptionStatus.active
        profile.subscription_expires_at = expires_at
        logger.info(
            f"Subscription {subscription_type.value} active until {expires_at.isoformat()}",
            extra={"user_id": str(user_id)},
        )
        return self._save(profile)

    def set_status(
        self,
        user_id: uuid.UUID,
        status: SubscriptionStatus,
        *,
        expires_at: datetime | None | object = _UNSET,
        subscription_type: SubscriptionType | None = None,
    ) -> Profile:
        """订阅生命周期状态变更；未传 expires_at 时保持原到期时间"""
        profile = self._locked_profile(user_id)
        profile.subscription_status = status
        if expires_at is not _UNSET:
            profile.subscription_expires_at = expires_at  # type: ignore[assignment]
        if subscription_type is not None:
            profile.subscription_type = subscription_type
        logger.info(f"Subscription status -> {status.value}", extra={"user_id": str(user_id)})
        return self._save(profile)
