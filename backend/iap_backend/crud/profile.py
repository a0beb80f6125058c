"""用户资料 CRUD 操作"""
import uuid

from sqlmodel import Session, select

from iap_backend.models import Profile


def get_profile(
    *, session: Session, user_id: uuid.UUID, for_update: bool = False
) -> Profile | None:
    """按用户 ID 获取资料，for_update=True 时加行锁（读改写前使用）"""
    stmt = select(Profile).where(Profile.id == user_id)
    if for_update:
        # 覆盖会话中已加载的旧值
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    return session.exec(stmt).first()


def create_profile(
    *, session: Session, user_id: uuid.UUID | None = None, email: str | None = None
) -> Profile:
    profile = Profile(email=email) if user_id is None else Profile(id=user_id, email=email)
    session.add(profile)
    session.commit()
    session.refresh(profile)
    return profile
