from __future__ import annotations

from datetime import timedelta

from sqlmodel import select

from conftest import PREMIUM_ANNUAL, PREMIUM_MONTHLY, auth_headers, make_record, make_user, reload, to_ms, utc
from iap_backend.api.errors import ValidationFailed
from iap_backend.core.config import settings
from iap_backend.enums import SubscriptionStatus, SubscriptionType
from iap_backend.models import Profile, PurchaseTransaction, StoreNotification, as_utc, utc_now

WEBHOOK_URL = "/api/v1/notifications/apple"


def _subscriber(db, original_id: str = "O1", **profile_kw):
    profile_kw.setdefault("subscription_type", SubscriptionType.monthly)
    profile_kw.setdefault("subscription_status", SubscriptionStatus.active)
    profile_kw.setdefault("expires_at", utc(2025, 12, 1))
    user = make_user(db, **profile_kw)
    record = make_record(
        db,
        user,
        platform_transaction_id=original_id,
        original_transaction_id=original_id,
        subscription_expires_at=utc(2025, 12, 1),
        subscription_auto_renew_status=True,
        purchase_date=utc(2025, 11, 1),
    )
    return user, record


def _notification(notification_type: str, **info) -> dict:
    return {
        "notification_type": notification_type,
        "environment": "Production",
        "unified_receipt": {"latest_receipt_info": [info]},
    }


def test_renewal_extends_expiry_and_records_renewal(client, db):
    user, _ = _subscriber(db)
    new_expiry = utc(2026, 1, 1)
    payload = _notification(
        "DID_RENEW",
        transaction_id="T9",
        original_transaction_id="O1",
        product_id=PREMIUM_MONTHLY,
        purchase_date_ms=to_ms(utc(2025, 12, 1)),
        expires_date_ms=to_ms(new_expiry),
    )

    r = client.post(WEBHOOK_URL, json=payload)
    assert r.status_code == 200
    assert r.json() == {"received": True}

    profile = reload(db, Profile, user.id)
    assert profile.subscription_status == SubscriptionStatus.active
    assert as_utc(profile.subscription_expires_at) == new_expiry

    # Redelivery does not duplicate the renewal record and leaves the profile as is.
    r = client.post(WEBHOOK_URL, json=payload)
    assert r.status_code == 200
    assert r.json() == {"received": True}
    profile = reload(db, Profile, user.id)
    assert profile.subscription_status == SubscriptionStatus.active
    assert as_utc(profile.subscription_expires_at) == new_expiry
    assert len(db.exec(select(StoreNotification)).all()) == 2
    renewals = db.exec(
        select(PurchaseTransaction).where(PurchaseTransaction.platform_transaction_id == "T9")
    ).all()
    assert len(renewals) == 1
    assert renewals[0].user_id == user.id
    assert renewals[0].original_transaction_id == "O1"
    assert renewals[0].validation_status == "valid"
    assert renewals[0].processed is True


def test_renewal_picks_newest_receipt_entry_and_updates_type(client, db):
    user, _ = _subscriber(db, original_id="O-up")
    payload = {
        "notification_type": "INTERACTIVE_RENEWAL",
        "unified_receipt": {
            "latest_receipt_info": [
                {
                    "transaction_id": "T-old",
                    "original_transaction_id": "O-up",
                    "product_id": PREMIUM_MONTHLY,
                    "expires_date_ms": to_ms(utc(2025, 12, 1)),
                },
                {
                    "transaction_id": "T-new",
                    "original_transaction_id": "O-up",
                    "product_id": PREMIUM_ANNUAL,
                    "expires_date_ms": to_ms(utc(2026, 12, 1)),
                },
            ]
        },
    }

    assert client.post(WEBHOOK_URL, json=payload).status_code == 200
    profile = reload(db, Profile, user.id)
    assert profile.subscription_type == SubscriptionType.annual
    assert as_utc(profile.subscription_expires_at) == utc(2026, 12, 1)


def test_refund_marks_record_and_ends_access(client, db):
    user, _ = _subscriber(db, original_id="O2")
    make_record(
        db,
        user,
        platform_transaction_id="T2",
        original_transaction_id="O2",
        purchase_date=utc(2025, 11, 15),
    )
    before = utc_now()
    payload = {
        "notification_type": "REFUND",
        "data": {"transaction_id": "T2", "original_transaction_id": "O2", "product_id": PREMIUM_MONTHLY},
    }

    assert client.post(WEBHOOK_URL, json=payload).status_code == 200

    db.expire_all()
    record = db.exec(select(PurchaseTransaction).where(PurchaseTransaction.platform_transaction_id == "T2")).one()
    assert record.validation_status == "refunded"
    profile = db.get(Profile, user.id)
    assert profile.subscription_status == SubscriptionStatus.refunded
    expires = as_utc(profile.subscription_expires_at)
    assert before - timedelta(seconds=1) <= expires <= utc_now() + timedelta(seconds=1)


def test_auto_renew_off_then_on(client, db):
    user, record = _subscriber(db, original_id="O3")

    def change(flag: str) -> dict:
        payload = _notification(
            "DID_CHANGE_RENEWAL_STATUS",
            transaction_id="O3",
            original_transaction_id="O3",
            product_id=PREMIUM_MONTHLY,
        )
        payload["unified_receipt"]["pending_renewal_info"] = [
            {"original_transaction_id": "O3", "auto_renew_status": flag}
        ]
        return payload

    assert client.post(WEBHOOK_URL, json=change("0")).status_code == 200
    profile = reload(db, Profile, user.id)
    assert profile.subscription_status == SubscriptionStatus.cancelled
    # Access is kept until the existing expiry.
    assert as_utc(profile.subscription_expires_at) == utc(2025, 12, 1)
    assert db.get(PurchaseTransaction, record.id).subscription_auto_renew_status is False

    assert client.post(WEBHOOK_URL, json=change("1")).status_code == 200
    assert reload(db, Profile, user.id).subscription_status == SubscriptionStatus.active
    assert db.get(PurchaseTransaction, record.id).subscription_auto_renew_status is True


def test_cancel_without_renewal_info_uses_top_level_flag(client, db):
    user, _ = _subscriber(db, original_id="O-c")
    payload = _notification("CANCEL", transaction_id="O-c", original_transaction_id="O-c")
    payload["auto_renew_status"] = "false"

    assert client.post(WEBHOOK_URL, json=payload).status_code == 200
    assert reload(db, Profile, user.id).subscription_status == SubscriptionStatus.cancelled


def test_failed_renewal_revoke_and_recover(client, db):
    user, _ = _subscriber(db, original_id="O4")
    info = {"transaction_id": "O4", "original_transaction_id": "O4", "product_id": PREMIUM_MONTHLY}

    assert client.post(WEBHOOK_URL, json=_notification("DID_FAIL_TO_RENEW", **info)).status_code == 200
    assert reload(db, Profile, user.id).subscription_status == SubscriptionStatus.payment_failed

    recovered_expiry = utc(2026, 2, 1)
    r = client.post(
        WEBHOOK_URL, json=_notification("DID_RECOVER", expires_date_ms=to_ms(recovered_expiry), **info)
    )
    assert r.status_code == 200
    profile = reload(db, Profile, user.id)
    assert profile.subscription_status == SubscriptionStatus.active
    assert as_utc(profile.subscription_expires_at) == recovered_expiry

    assert client.post(WEBHOOK_URL, json=_notification("REVOKE", **info)).status_code == 200
    profile = reload(db, Profile, user.id)
    assert profile.subscription_status == SubscriptionStatus.revoked
    assert as_utc(profile.subscription_expires_at) <= utc_now()


def test_unknown_type_and_unknown_owner_are_acknowledged(client, db):
    user, _ = _subscriber(db, original_id="O5")

    r = client.post(
        WEBHOOK_URL,
        json=_notification("PRICE_INCREASE_CONSENT", transaction_id="O5", original_transaction_id="O5"),
    )
    assert r.status_code == 200
    assert r.json() == {"received": True}

    r = client.post(
        WEBHOOK_URL,
        json=_notification("DID_FAIL_TO_RENEW", transaction_id="X", original_transaction_id="NOBODY"),
    )
    assert r.status_code == 200

    r = client.post(WEBHOOK_URL, json={"notification_type": "DID_RENEW"})
    assert r.status_code == 200

    profile = reload(db, Profile, user.id)
    assert profile.subscription_status == SubscriptionStatus.active
    assert as_utc(profile.subscription_expires_at) == utc(2025, 12, 1)

    logged = db.exec(select(StoreNotification)).all()
    assert sorted(n.notification_type for n in logged) == [
        "DID_FAIL_TO_RENEW",
        "DID_RENEW",
        "PRICE_INCREASE_CONSENT",
    ]


def test_shared_secret_is_enforced_and_not_stored(client, db, monkeypatch):
    monkeypatch.setattr(settings, "APPLE_SHARED_SECRET", "s3cret")
    user, _ = _subscriber(db, original_id="O6")
    payload = _notification("DID_FAIL_TO_RENEW", transaction_id="O6", original_transaction_id="O6")

    r = client.post(WEBHOOK_URL, json={**payload, "password": "wrong"})
    assert r.status_code == 401
    assert r.json()["code"] == 401001
    assert reload(db, Profile, user.id).subscription_status == SubscriptionStatus.active

    r = client.post(WEBHOOK_URL, json={**payload, "password": "s3cret"})
    assert r.status_code == 200
    assert reload(db, Profile, user.id).subscription_status == SubscriptionStatus.payment_failed

    stored = db.exec(select(StoreNotification)).one()
    assert "password" not in stored.payload
    assert stored.original_transaction_id == "O6"


def test_rejected_claim_on_original_id_does_not_take_over_chain(client, db, use_apple):
    victim = make_user(db)
    make_record(
        db,
        victim,
        platform_transaction_id="R5",
        original_transaction_id="O1",
        purchase_date=utc(2025, 11, 1),
    )
    attacker = make_user(db)
    use_apple(ValidationFailed("Transaction not found in receipt"))

    r = client.post(
        "/api/v1/purchases/subscription",
        json={"receiptData": "junk", "productId": PREMIUM_MONTHLY, "transactionId": "O1"},
        headers=auth_headers(attacker),
    )
    assert r.status_code == 400
    db.expire_all()
    junk = db.exec(select(PurchaseTransaction).where(PurchaseTransaction.platform_transaction_id == "O1")).one()
    assert junk.validation_status == "invalid"
    assert junk.original_transaction_id is None

    payload = _notification(
        "DID_RENEW",
        transaction_id="R6",
        original_transaction_id="O1",
        product_id=PREMIUM_MONTHLY,
        expires_date_ms=to_ms(utc(2027, 1, 1)),
    )
    assert client.post(WEBHOOK_URL, json=payload).status_code == 200

    victim_profile = reload(db, Profile, victim.id)
    assert victim_profile.subscription_status == SubscriptionStatus.active
    assert as_utc(victim_profile.subscription_expires_at) == utc(2027, 1, 1)
    assert reload(db, Profile, attacker.id).subscription_status == SubscriptionStatus.inactive
    renewal = db.exec(select(PurchaseTransaction).where(PurchaseTransaction.platform_transaction_id == "R6")).one()
    assert renewal.user_id == victim.id
