"""
Stripe billing: webhook verification and dispatch, plus the calls the
dashboard makes (checkout, customer portal, cancel, sync, price list).

Stripe objects are turned into plain dicts before they are read so that
handlers work the same on webhook payloads and on API responses.
"""
import json
import time
import logging

import stripe
from firebase_admin import firestore as fb_firestore

from Mapies import billing_store
from Mapies.classes import WebhookProcessingResult
from Mapies.errors import MapiesError, InvalidArgument, NotFound
from Mapies.logging_utils import log_stripe_event, log_webhook_result
from Mapies.plans import tier_for_price_id
from Mapies.utility_functions import from_epoch


logger = logging.getLogger(__name__)

CHECKOUT_SUBSCRIPTION_DELAY = 2

# events we only record
LOGGED_EVENTS = {
    'checkout.session.expired',
    'billing_portal.session.created',
    'coupon.created',
    'coupon.updated',
    'coupon.deleted',
    'product.created',
    'product.updated',
    'product.deleted',
    'tax_rate.created',
    'tax_rate.updated',
}


def as_dict(obj):
    if obj is None:
        return {}
    if isinstance(obj, stripe.StripeObject):
        return json.loads(str(obj))
    return obj


def subscription_price_id(subscription):
    items = (subscription.get('items') or {}).get('data') or []
    if not items:
        return None
    return (items[0].get('price') or {}).get('id')


def subscription_period(subscription):
    """
    (start, end) epoch seconds. Newer API versions only carry the period on
    the subscription items.
    """
    start = subscription.get('current_period_start')
    end = subscription.get('current_period_end')
    if start is None or end is None:
        items = (subscription.get('items') or {}).get('data') or []
        if items:
            start = items[0].get('current_period_start', start)
            end = items[0].get('current_period_end', end)
    return start, end


def invoice_subscription_id(invoice):
    if invoice.get('subscription'):
        return invoice['subscription']
    details = (invoice.get('parent') or {}).get('subscription_details') or {}
    return details.get('subscription')


class BillingService:
    def __init__(self, db, secret_key='', webhook_secret='', price_ids=None, app_url='https://mapies.web.app', sleep=time.sleep):
        self.db = db
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.price_ids = price_ids or {}
        self.app_url = app_url.rstrip('/')
        self.sleep = sleep

        self.handlers = {
            'customer.created': self.handle_customer_created,
            'customer.updated': self.handle_customer_updated,
            'customer.deleted': self.handle_customer_deleted,
            'customer.subscription.created': self.handle_subscription_created,
            'customer.subscription.updated': self.handle_subscription_updated,
            'customer.subscription.deleted': self.handle_subscription_deleted,
            'invoice.payment_succeeded': self.handle_invoice_payment_succeeded,
            'invoice.payment_failed': self.handle_invoice_payment_failed,
            'invoice.upcoming': self.log_customer_event,
            'invoice.created': self.log_customer_event,
            'invoice.finalized': self.log_customer_event,
            'payment_intent.succeeded': self.log_customer_event,
            'payment_intent.payment_failed': self.log_customer_event,
            'checkout.session.completed': self.handle_checkout_session_completed,
        }

    @classmethod
    def from_config(cls, db, config, **kwargs):
        return cls(
            db,
            secret_key=config.get('STRIPE_SECRET_KEY', ''),
            webhook_secret=config.get('STRIPE_WEBHOOK_SECRET', ''),
            price_ids=config.get('STRIPE_PRICE_IDS', {}),
            app_url=config.get('APP_URL', 'https://mapies.web.app'),
            **kwargs
        )

    # -------------------------
    # Webhooks
    # -------------------------
    def construct_event(self, payload, signature):
        if not signature:
            raise InvalidArgument("Missing Stripe signature")
        try:
            event = as_dict(stripe.Webhook.construct_event(payload, signature, self.webhook_secret))
        except stripe.SignatureVerificationError as e:
            logger.warning("Webhook signature verification failed: %s", e)
            raise InvalidArgument("Invalid signature")
        except ValueError as e:
            raise InvalidArgument(f"Invalid payload: {e}")

        if not event.get('id') or not event.get('type') or not (event.get('data') or {}).get('object'):
            raise InvalidArgument("Invalid event structure")
        return event

    def handle_event(self, event):
        started = time.monotonic()
        event_id = event['id']
        event_type = event['type']
        obj = event['data']['object']
        log_stripe_event(event_type, event_id)

        user_id = subscription_id = None
        try:
            handler = self.handlers.get(event_type)
            if handler is not None:
                user_id, subscription_id = handler(obj) or (None, None)
            elif event_type in LOGGED_EVENTS:
                logger.info("Stripe event %s recorded (%s)", event_type, obj.get('id'))
            else:
                logger.info("Unhandled event type: %s", event_type)

            result = WebhookProcessingResult(True, event_id, event_type, user_id=user_id, subscription_id=subscription_id)
        except Exception as e:
            logger.exception("Error processing webhook %s (%s)", event_id, event_type)
            result = WebhookProcessingResult(False, event_id, event_type, user_id=user_id,
                                             subscription_id=subscription_id, error=str(e) or 'Unknown error')

        result.processing_time = int((time.monotonic() - started) * 1000)
        log_webhook_result(result)
        return result

    def _user_for_customer(self, customer_id):
        user_id = billing_store.get_user_by_stripe_customer_id(self.db, customer_id) if customer_id else None
        if not user_id:
            logger.warning("No user found for customer %s", customer_id)
        return user_id

    def _customer_email(self, customer_id):
        try:
            return as_dict(stripe.Customer.retrieve(customer_id, api_key=self.secret_key)).get('email')
        except stripe.StripeError as e:
            logger.warning("Failed to get customer email for %s: %s", customer_id, e)
            return None

    def handle_customer_created(self, customer):
        user_id = (customer.get('metadata') or {}).get('userId')
        if not user_id:
            logger.warning("No userId found in customer metadata for %s", customer['id'])
            return None, None
        billing_store.create_user_with_subscription(self.db, user_id, customer['id'], customer.get('email') or '')
        return user_id, None

    def handle_customer_updated(self, customer):
        user_id = self._user_for_customer(customer['id'])
        if not user_id:
            return None, None
        if customer.get('email'):
            billing_store.update_user_subscription(self.db, user_id, email=customer['email'])
        return user_id, None

    def handle_customer_deleted(self, customer):
        user_id = self._user_for_customer(customer['id'])
        if not user_id:
            return None, None

        active = as_dict(stripe.Subscription.list(customer=customer['id'], status='active', api_key=self.secret_key))
        for subscription in active.get('data') or []:
            stripe.Subscription.cancel(subscription['id'], api_key=self.secret_key)
            logger.info("Canceled subscription %s of deleted customer %s", subscription['id'], customer['id'])

        billing_store.set_user_plan(
            self.db, user_id, 'freemium', 'canceled',
            subscriptionId=fb_firestore.DELETE_FIELD,
            subscriptionEndDate=fb_firestore.DELETE_FIELD,
            nextBillingDate=fb_firestore.DELETE_FIELD,
            cancelAtPeriodEnd=False,
            canceledAt=fb_firestore.SERVER_TIMESTAMP,
        )
        return user_id, None

    def _subscription_fields(self, subscription):
        tier = tier_for_price_id(subscription_price_id(subscription), self.price_ids)
        start, end = subscription_period(subscription)
        fields = {
            'plan': tier,
            'status': subscription.get('status'),
            'subscriptionId': subscription['id'],
            'subscriptionStartDate': from_epoch(start),
            'subscriptionEndDate': from_epoch(end),
            'cancelAtPeriodEnd': bool(subscription.get('cancel_at_period_end')),
            'nextBillingDate': from_epoch(end),
        }
        document = {
            'stripeSubscriptionId': subscription['id'],
            'plan': tier,
            'status': subscription.get('status'),
            'currentPeriodStart': from_epoch(start),
            'currentPeriodEnd': from_epoch(end),
            'cancelAtPeriodEnd': bool(subscription.get('cancel_at_period_end')),
            'canceledAt': from_epoch(subscription.get('canceled_at')),
            'endedAt': from_epoch(subscription.get('ended_at')),
            'metadata': subscription.get('metadata') or {},
        }
        return tier, fields, document

    def handle_subscription_created(self, subscription):
        customer_id = subscription.get('customer')
        user_id = self._user_for_customer(customer_id)
        if not user_id:
            return None, subscription['id']

        tier, fields, document = self._subscription_fields(subscription)
        billing_store.set_user_plan(
            self.db, user_id, tier, fields.pop('status'),
            **{k: v for k, v in fields.items() if k != 'plan'}
        )
        billing_store.update_user_subscription(
            self.db, user_id,
            stripeCustomerId=customer_id,
            email=self._customer_email(customer_id),
        )
        billing_store.create_subscription(self.db, dict(document, userId=user_id))
        logger.info("Subscription %s created for user %s (%s)", subscription['id'], user_id, tier)
        return user_id, subscription['id']

    def handle_subscription_updated(self, subscription):
        user_id = self._user_for_customer(subscription.get('customer'))
        if not user_id:
            return None, subscription['id']

        tier, fields, document = self._subscription_fields(subscription)
        fields['canceledAt'] = from_epoch(subscription.get('canceled_at')) or fb_firestore.DELETE_FIELD
        billing_store.set_user_plan(
            self.db, user_id, tier, fields.pop('status'),
            **{k: v for k, v in fields.items() if k != 'plan'}
        )

        if billing_store.get_subscription_by_stripe_id(self.db, subscription['id']) is None:
            billing_store.create_subscription(self.db, dict(document, userId=user_id))
        else:
            # null timestamps from Stripe clear what an earlier cancellation wrote
            cleared = {k: fb_firestore.DELETE_FIELD for k in ('canceledAt', 'endedAt') if document[k] is None}
            billing_store.update_subscription(self.db, subscription['id'], dict(document, **cleared))
        logger.info("Subscription %s updated for user %s (%s)", subscription['id'], user_id, subscription.get('status'))
        return user_id, subscription['id']

    def handle_subscription_deleted(self, subscription):
        user_id = self._user_for_customer(subscription.get('customer'))
        if not user_id:
            return None, subscription['id']

        billing_store.set_user_plan(
            self.db, user_id, 'freemium', 'canceled',
            subscriptionId=fb_firestore.DELETE_FIELD,
            subscriptionEndDate=fb_firestore.DELETE_FIELD,
            nextBillingDate=fb_firestore.DELETE_FIELD,
            cancelAtPeriodEnd=False,
            canceledAt=from_epoch(subscription.get('ended_at')) or fb_firestore.SERVER_TIMESTAMP,
        )
        if billing_store.get_subscription_by_stripe_id(self.db, subscription['id']) is not None:
            billing_store.end_subscription(self.db, subscription['id'])
        logger.info("Subscription %s deleted for user %s", subscription['id'], user_id)
        return user_id, subscription['id']

    def handle_invoice_payment_succeeded(self, invoice):
        user_id = self._user_for_customer(invoice.get('customer'))
        if not user_id:
            return None, None

        subscription_id = invoice_subscription_id(invoice)
        updates = {'lastPaymentDate': from_epoch(invoice.get('created')) or fb_firestore.SERVER_TIMESTAMP}
        if subscription_id:
            subscription = as_dict(stripe.Subscription.retrieve(subscription_id, api_key=self.secret_key))
            updates['nextBillingDate'] = from_epoch(subscription_period(subscription)[1])
        billing_store.update_user_subscription(self.db, user_id, updates)
        logger.info("Payment succeeded for user %s (invoice %s, amount %s)", user_id, invoice.get('id'), invoice.get('amount_paid'))
        return user_id, subscription_id

    def handle_invoice_payment_failed(self, invoice):
        user_id = self._user_for_customer(invoice.get('customer'))
        if not user_id:
            return None, None
        billing_store.update_user_subscription(self.db, user_id, {'status': 'past_due'})
        logger.warning("Payment failed for user %s (invoice %s, amount %s)", user_id, invoice.get('id'), invoice.get('amount_due'))
        return user_id, invoice_subscription_id(invoice)

    def log_customer_event(self, obj):
        customer_id = obj.get('customer')
        if not customer_id:
            logger.warning("No customer ID on %s %s", obj.get('object'), obj.get('id'))
            return None, None
        user_id = self._user_for_customer(customer_id)
        if user_id:
            logger.info("%s %s for user %s (amount %s)", obj.get('object'), obj.get('id'), user_id,
                        obj.get('amount_due', obj.get('amount')))
        return user_id, None

    def handle_checkout_session_completed(self, session):
        user_id = (session.get('metadata') or {}).get('userId')
        if not user_id:
            logger.warning("No user ID in checkout session metadata %s", session.get('id'))
            return None, None

        subscription_id = session.get('subscription')
        if not subscription_id:
            logger.info("Checkout session %s completed for user %s", session.get('id'), user_id)
            return user_id, None

        if session.get('customer'):
            billing_store.link_stripe_customer(self.db, user_id, session['customer'])

        # the subscription is created asynchronously on Stripe's side
        self.sleep(CHECKOUT_SUBSCRIPTION_DELAY)
        subscription = as_dict(stripe.Subscription.retrieve(subscription_id, api_key=self.secret_key))
        self.handle_subscription_created(subscription)
        logger.info("Subscription %s created from checkout for user %s", subscription_id, user_id)
        return user_id, subscription_id

    # -------------------------
    # Dashboard calls
    # -------------------------
    def _get_or_create_customer(self, user_id, email):
        try:
            customers = as_dict(stripe.Customer.list(email=email, limit=1, api_key=self.secret_key))
            if customers.get('data'):
                return customers['data'][0]['id']
            customer = as_dict(stripe.Customer.create(email=email, metadata={'userId': user_id}, api_key=self.secret_key))
            logger.info("Created Stripe customer %s for user %s", customer['id'], user_id)
            return customer['id']
        except stripe.StripeError:
            logger.exception("Error managing Stripe customer for %s", user_id)
            raise MapiesError("Failed to manage customer")

    def create_checkout_session(self, user_id, email, price_id, success_url=None, cancel_url=None, trial_days=None, coupon_id=None):
        if not price_id or not user_id or not email:
            raise InvalidArgument("Missing required parameters")

        customer_id = self._get_or_create_customer(user_id, email)
        metadata = {'userId': user_id, 'userEmail': email}
        params = {
            'customer': customer_id,
            'payment_method_types': ['card'],
            'line_items': [{'price': price_id, 'quantity': 1}],
            'mode': 'subscription',
            'allow_promotion_codes': True,
            'success_url': success_url or f"{self.app_url}/dashboard?subscription=success",
            'cancel_url': cancel_url or f"{self.app_url}/dashboard?subscription=cancelled",
            'metadata': metadata,
            'subscription_data': {'metadata': dict(metadata)},
            'payment_method_options': {'card': {'request_three_d_secure': 'automatic'}},
        }
        if trial_days and int(trial_days) > 0:
            params['subscription_data']['trial_period_days'] = int(trial_days)
        if coupon_id:
            # Stripe rejects discounts together with allow_promotion_codes
            params.pop('allow_promotion_codes')
            params['discounts'] = [{'coupon': coupon_id}]

        try:
            session = as_dict(stripe.checkout.Session.create(api_key=self.secret_key, **params))
        except stripe.StripeError:
            logger.exception("Error creating checkout session for %s", user_id)
            raise MapiesError("Failed to create checkout session")
        logger.info("Checkout session %s created for user %s", session['id'], user_id)
        return {'sessionId': session['id'], 'url': session.get('url')}

    def create_portal_session(self, customer_id, return_url=None):
        if not customer_id:
            raise InvalidArgument("Customer ID is required")
        try:
            session = as_dict(stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url or f"{self.app_url}/dashboard",
                api_key=self.secret_key,
            ))
        except stripe.StripeError:
            logger.exception("Error creating customer portal session for %s", customer_id)
            raise MapiesError("Failed to create customer portal session")
        return {'url': session.get('url')}

    def cancel_subscription(self, user_id):
        user = billing_store.get_user_subscription_data(self.db, user_id)
        if user is None:
            raise NotFound("User document not found")

        customer_id = user.get('stripeCustomerId')
        active = []
        if customer_id:
            listing = as_dict(stripe.Subscription.list(customer=customer_id, status='active', limit=1, api_key=self.secret_key))
            active = listing.get('data') or []

        if not active:
            billing_store.set_user_plan(self.db, user_id, 'freemium', 'cancelled', cancelAtPeriodEnd=True)
            logger.info("No active Stripe subscription for %s, set plan to freemium", user_id)
            return {'success': True, 'message': 'Subscription cancelled'}

        subscription = as_dict(stripe.Subscription.modify(active[0]['id'], cancel_at_period_end=True, api_key=self.secret_key))
        period_end = from_epoch(subscription_period(subscription)[1])
        billing_store.update_user_subscription(self.db, user_id, {
            'plan': (user.get('subscription') or {}).get('plan') or 'freemium',
            'status': 'active',
            'cancelAtPeriodEnd': True,
            'subscriptionEndDate': period_end,
            'nextBillingDate': period_end,
        })
        logger.info("Subscription %s for %s set to cancel at %s", subscription['id'], user_id, period_end)
        return {
            'success': True,
            'message': 'Subscription cancelled',
            'periodEnd': period_end.isoformat() if period_end else None,
        }

    def sync_user_subscription(self, user_id):
        user = billing_store.get_user_subscription_data(self.db, user_id)
        if user is None:
            raise NotFound("User not found")
        customer_id = user.get('stripeCustomerId')
        if not customer_id:
            raise InvalidArgument("No Stripe customer ID found")

        listing = as_dict(stripe.Subscription.list(customer=customer_id, status='all', limit=1, api_key=self.secret_key))
        if not listing.get('data'):
            billing_store.set_user_plan(self.db, user_id, 'freemium', 'free')
            return {'success': True, 'plan': 'freemium', 'message': 'Set to freemium'}

        subscription = listing['data'][0]
        tier, fields, _ = self._subscription_fields(subscription)
        fields['canceledAt'] = from_epoch(subscription.get('canceled_at')) or fb_firestore.DELETE_FIELD
        billing_store.set_user_plan(
            self.db, user_id, tier, fields.pop('status'),
            **{k: v for k, v in fields.items() if k != 'plan'}
        )
        logger.info("Synced subscription %s for %s (%s)", subscription['id'], user_id, tier)
        return {'success': True, 'plan': tier, 'status': subscription.get('status'), 'subscriptionId': subscription['id']}

    def list_prices(self):
        listing = as_dict(stripe.Price.list(active=True, limit=100, expand=['data.product'], api_key=self.secret_key))
        prices = []
        for price in listing.get('data') or []:
            if not price.get('recurring'):
                continue
            product = price.get('product')
            prices.append({
                'id': price['id'],
                'nickname': price.get('nickname'),
                'unit_amount': price.get('unit_amount'),
                'currency': price.get('currency'),
                'recurring': price.get('recurring'),
                'product': product.get('name') if isinstance(product, dict) else product,
                'productId': product.get('id') if isinstance(product, dict) else product,
            })
        return {'prices': prices, 'count': len(prices)}
