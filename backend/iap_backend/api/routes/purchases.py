"""
内购凭证处理路由

客户端完成原生购买后把凭证提交到这里，校验通过后发放权益。
平台由凭证字段推断：receiptData → Apple，purchaseToken → Google。
"""
from __future__ import annotations

from fastapi import APIRouter

from iap_backend.api.deps import (
    AppleVerifierDep,
    CatalogDep,
    CurrentUser,
    GoogleVerifierDep,
    SessionDep,
)
from iap_backend.api.schemas import (
    CreditsPurchaseResponse,
    PurchaseRequest,
    SubscriptionPurchaseResponse,
)
from iap_backend.enums import Platform
from iap_backend.services.purchases import PurchaseClaim, PurchaseProcessor

router = APIRouter(prefix="/purchases", tags=["purchases"])


def _claim(body: PurchaseRequest) -> PurchaseClaim:
    return PurchaseClaim.from_fields(
        receipt_data=body.receipt_data,
        purchase_token=body.purchase_token,
        product_id=body.product_id,
        transaction_id=body.transaction_id,
        order_id=body.order_id,
    )


@router.post("/credits", response_model=CreditsPurchaseResponse, response_model_exclude_none=True)
def purchase_credits(
    session: SessionDep,
    current_user: CurrentUser,
    body: PurchaseRequest,
    apple: AppleVerifierDep,
    google: GoogleVerifierDep,
    catalog: CatalogDep,
) -> CreditsPurchaseResponse:
    """
    处理房间积分（消耗型）购买

    请求路径: POST /api/v1/purchases/credits

    首次处理返回 {success, creditsAdded, newTotal}；
    同一交易重复提交返回 {success, message, newTotal}，不会重复发放。
    """
    processor = PurchaseProcessor(
        session, verifiers={Platform.apple: apple, Platform.google: google}, catalog=catalog
    )
    result = processor.process_credits(current_user.id, _claim(body))
    return CreditsPurchaseResponse(
        success=result.success,
        credits_added=result.credits_added,
        new_total=result.new_total,
        message=result.message,
    )


@router.post(
    "/subscription", response_model=SubscriptionPurchaseResponse, response_model_exclude_none=True
)
def purchase_subscription(
    session: SessionDep,
    current_user: CurrentUser,
    body: PurchaseRequest,
    apple: AppleVerifierDep,
    google: GoogleVerifierDep,
    catalog: CatalogDep,
) -> SubscriptionPurchaseResponse:
    """
    处理订阅购买

    请求路径: POST /api/v1/purchases/subscription

    到期时间以平台返回为准。
    """
    processor = PurchaseProcessor(
        session, verifiers={Platform.apple: apple, Platform.google: google}, catalog=catalog
    )
    result = processor.process_subscription(current_user.id, _claim(body))
    return SubscriptionPurchaseResponse(
        success=result.success,
        subscription_type=result.subscription_type,
        subscription_status=result.subscription_status,
        expires_at=result.expires_at,
        message=result.message,
    )
