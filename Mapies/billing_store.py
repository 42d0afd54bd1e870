"""
Firestore writes behind the billing flows: the subscription block on
``users/{uid}`` and the ``subscriptions/{stripeSubscriptionId}`` documents.

Every function logs what it wrote and lets Firestore errors propagate.
"""
import logging

from firebase_admin import firestore as fb_firestore

from Mapies.logging_utils import log_user_update, log_subscription_update
from Mapies.plans import limits_for_plan
from Mapies.utility_functions import drop_none, from_epoch


logger = logging.getLogger(__name__)


def _user_ref(db, user_id):
    return db.collection("users").document(user_id)


def _subscription_ref(db, subscription_id):
    return db.collection("subscriptions").document(subscription_id)


# -------------------------
# Users
# -------------------------
def get_user_by_stripe_customer_id(db, customer_id):
    try:
        docs = db.collection("users").where("stripeCustomerId", "==", customer_id).limit(1).get()
    except Exception:
        logger.exception("Error getting user by Stripe customer ID %s", customer_id)
        raise
    return docs[0].id if docs else None


def create_user_with_subscription(db, user_id, customer_id, email, plan='freemium'):
    """
    Links a Stripe customer to users/{uid}. Users that already have a plan
    keep it; createdAt is only written for new documents.
    """
    ref = _user_ref(db, user_id)
    try:
        snapshot = ref.get()
        existing = snapshot.to_dict() if snapshot.exists else None
        data = {
            "stripeCustomerId": customer_id,
            "email": email or None,
            "updatedAt": fb_firestore.SERVER_TIMESTAMP,
        }
        if existing is None:
            data["createdAt"] = fb_firestore.SERVER_TIMESTAMP
        if not ((existing or {}).get("subscription") or {}).get("plan"):
            data["subscription"] = {"plan": plan, "status": "active"}
            data["limits"] = limits_for_plan(plan)
        ref.set(drop_none(data), merge=True)
    except Exception:
        logger.exception("Error creating user %s", user_id)
        raise
    log_user_update(user_id, 'user_created', {'stripeCustomerId': customer_id, 'email': email})


def link_stripe_customer(db, user_id, customer_id):
    _user_ref(db, user_id).set({
        "stripeCustomerId": customer_id,
        "updatedAt": fb_firestore.SERVER_TIMESTAMP,
    }, merge=True)
    log_user_update(user_id, 'stripe_customer_linked', {'stripeCustomerId': customer_id})


def update_user_subscription(db, user_id, subscription=None, **fields):
    """
    Writes subscription.* fields (dotted, so untouched keys survive) and any
    top level fields such as limits, email or stripeCustomerId.
    """
    updates = {f"subscription.{k}": v for k, v in drop_none(subscription or {}).items()}
    updates.update(drop_none(fields))
    updates["updatedAt"] = fb_firestore.SERVER_TIMESTAMP
    try:
        _user_ref(db, user_id).update(updates)
    except Exception:
        logger.exception("Error updating user subscription for %s", user_id)
        raise
    log_user_update(user_id, 'subscription_updated', updates)


def set_user_plan(db, user_id, plan, status, **subscription):
    """Switches plan and rewrites the stored limits to match it."""
    subscription.update({"plan": plan, "status": status})
    update_user_subscription(db, user_id, subscription, limits=limits_for_plan(plan))


def get_user_subscription_data(db, user_id):
    doc = _user_ref(db, user_id).get()
    if not doc.exists:
        return None
    return doc.to_dict()


def update_last_payment_date(db, user_id, next_billing_date=None):
    update_user_subscription(db, user_id, {
        "lastPaymentDate": fb_firestore.SERVER_TIMESTAMP,
        "nextBillingDate": next_billing_date,
    })


def cancel_user_subscription(db, user_id):
    update_user_subscription(db, user_id, {
        "status": "canceled",
        "cancelAtPeriodEnd": True,
        "canceledAt": fb_firestore.SERVER_TIMESTAMP,
    })


def reactivate_user_subscription(db, user_id):
    update_user_subscription(db, user_id, {
        "status": "active",
        "cancelAtPeriodEnd": False,
        "canceledAt": fb_firestore.DELETE_FIELD,
    })


# -------------------------
# Subscription documents
# -------------------------
def create_subscription(db, data):
    subscription_id = data["stripeSubscriptionId"]
    clean = drop_none(data)
    clean["createdAt"] = fb_firestore.SERVER_TIMESTAMP
    clean["updatedAt"] = fb_firestore.SERVER_TIMESTAMP
    try:
        _subscription_ref(db, subscription_id).set(clean)
    except Exception:
        logger.exception("Error creating subscription %s", subscription_id)
        raise
    log_subscription_update(subscription_id, 'subscription_created', data)


def update_subscription(db, subscription_id, data):
    clean = drop_none(data)
    clean["updatedAt"] = fb_firestore.SERVER_TIMESTAMP
    try:
        _subscription_ref(db, subscription_id).update(clean)
    except Exception:
        logger.exception("Error updating subscription %s", subscription_id)
        raise
    log_subscription_update(subscription_id, 'subscription_updated', data)


def get_subscription_by_stripe_id(db, subscription_id):
    doc = _subscription_ref(db, subscription_id).get()
    if not doc.exists:
        return None
    return doc.to_dict()


def get_subscriptions_by_user_id(db, user_id):
    return [d.to_dict() for d in db.collection("subscriptions").where("userId", "==", user_id).stream()]


def cancel_subscription_doc(db, subscription_id):
    _subscription_ref(db, subscription_id).update({
        "status": "canceled",
        "cancelAtPeriodEnd": True,
        "canceledAt": fb_firestore.SERVER_TIMESTAMP,
        "updatedAt": fb_firestore.SERVER_TIMESTAMP,
    })
    log_subscription_update(subscription_id, 'subscription_canceled')


def end_subscription(db, subscription_id):
    _subscription_ref(db, subscription_id).update({
        "status": "canceled",
        "endedAt": fb_firestore.SERVER_TIMESTAMP,
        "updatedAt": fb_firestore.SERVER_TIMESTAMP,
    })
    log_subscription_update(subscription_id, 'subscription_ended')


def reactivate_subscription(db, subscription_id):
    _subscription_ref(db, subscription_id).update({
        "status": "active",
        "cancelAtPeriodEnd": False,
        "canceledAt": fb_firestore.DELETE_FIELD,
        "updatedAt": fb_firestore.SERVER_TIMESTAMP,
    })
    log_subscription_update(subscription_id, 'subscription_reactivated')


def update_subscription_period(db, subscription_id, period_start, period_end):
    _subscription_ref(db, subscription_id).update({
        "currentPeriodStart": from_epoch(period_start),
        "currentPeriodEnd": from_epoch(period_end),
        "updatedAt": fb_firestore.SERVER_TIMESTAMP,
    })
    log_subscription_update(subscription_id, 'period_updated', {
        'currentPeriodStart': period_start,
        'currentPeriodEnd': period_end,
    })
