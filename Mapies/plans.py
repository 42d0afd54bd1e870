"""
Subscription plans and the limits they put on a user.

The plan table is the single source of truth: user documents carry a flat
copy under ``limits`` (written by the billing webhooks) and that copy wins
field by field when present.
"""
import logging

from firebase_admin import firestore as fb_firestore

from Mapies.errors import PermissionDenied


logger = logging.getLogger(__name__)

PLAN_ORDER = ['freemium', 'starter', 'professional', 'enterprise']

SUBSCRIPTION_PLANS = {
    'freemium': {
        'limits': {'maxMarkersPerMap': 50, 'maxTotalMarkers': 50, 'maxMaps': 1, 'maxStorageMB': 10},
        'features': {
            'watermark': True,
            'bulkImport': False,
            'geocoding': False,
            'smartGrouping': False,
            'customIcons': False,
            'advancedAnalytics': False,
            'prioritySupport': False,
        },
        'customizationLevel': 'basic',
        'price': 0,
        'name': 'Freemium',
        'description': 'Perfect for getting started',
    },
    'starter': {
        'limits': {'maxMarkersPerMap': 500, 'maxTotalMarkers': 500, 'maxMaps': 3, 'maxStorageMB': 100},
        'features': {
            'watermark': False,
            'bulkImport': True,
            'geocoding': True,
            'smartGrouping': False,
            'customIcons': True,
            'advancedAnalytics': False,
            'prioritySupport': False,
        },
        'customizationLevel': 'premium',
        'price': 14,
        'name': 'Starter',
        'description': 'Great for small businesses',
        'trialDays': 14,
    },
    'professional': {
        'limits': {'maxMarkersPerMap': 1500, 'maxTotalMarkers': 1500, 'maxMaps': 5, 'maxStorageMB': 500},
        'features': {
            'watermark': False,
            'bulkImport': True,
            'geocoding': True,
            'smartGrouping': True,
            'customIcons': True,
            'advancedAnalytics': True,
            'prioritySupport': True,
        },
        'customizationLevel': 'premium',
        'price': 36,
        'name': 'Professional',
        'description': 'Most popular choice',
        'popular': True,
        'trialDays': 14,
    },
    'enterprise': {
        'limits': {'maxMarkersPerMap': 3000, 'maxTotalMarkers': 3000, 'maxMaps': 10, 'maxStorageMB': 2000},
        'features': {
            'watermark': False,
            'bulkImport': True,
            'geocoding': True,
            'smartGrouping': True,
            'customIcons': True,
            'advancedAnalytics': True,
            'prioritySupport': True,
        },
        'customizationLevel': 'premium',
        'price': 48,
        'name': 'Enterprise',
        'description': 'For large organizations',
        'trialDays': 14,
    },
}

# legacy price tiers still attached to old subscriptions
LEGACY_TIERS = {'pro': 'professional', 'premium': 'starter'}


def get_plan(plan_id):
    return SUBSCRIPTION_PLANS.get(plan_id) or SUBSCRIPTION_PLANS['freemium']


def limits_for_plan(plan_id):
    """Flat limits dict as stored on user documents."""
    plan = get_plan(plan_id)
    limits = dict(plan['limits'])
    limits.update(plan['features'])
    limits['customizationLevel'] = plan['customizationLevel']
    return limits


def plan_of(user_doc):
    user_doc = user_doc or {}
    return (user_doc.get('subscription') or {}).get('plan') or 'freemium'


def get_user_limits(user_doc):
    limits = limits_for_plan(plan_of(user_doc))
    stored = (user_doc or {}).get('limits') or {}
    for key in limits:
        if stored.get(key) is not None:
            limits[key] = stored[key]
    return limits


def can_user_perform_action(user_doc, action, current_count=None):
    limits = get_user_limits(user_doc)
    if action == 'addMarker':
        return current_count is None or current_count < limits['maxMarkersPerMap']
    if action == 'createMap':
        return current_count is None or current_count < limits['maxMaps']
    if action == 'useGeocoding':
        return bool(limits['geocoding'])
    if action == 'useBulkImport':
        return bool(limits['bulkImport'])
    if action == 'useSmartGrouping':
        return bool(limits['smartGrouping'])
    return False


def get_feature_access(user_doc):
    limits = get_user_limits(user_doc)
    return {
        'plan': plan_of(user_doc),
        'hasGeocoding': limits['geocoding'],
        'hasBulkImport': limits['bulkImport'],
        'hasSmartGrouping': limits['smartGrouping'],
        'showWatermark': limits['watermark'],
        'customizationLevel': limits['customizationLevel'],
        'maxMarkersPerMap': limits['maxMarkersPerMap'],
        'maxMaps': limits['maxMaps'],
        'maxTotalMarkers': limits['maxTotalMarkers'],
        'maxStorageMB': limits['maxStorageMB'],
    }


def get_recommended_upgrade(current_plan, feature):
    """
    First plan above current_plan that has the feature flag, or a higher
    value for a numeric limit such as maxMaps.
    """
    start = PLAN_ORDER.index(current_plan) + 1 if current_plan in PLAN_ORDER else 0
    current_limit = get_plan(current_plan)['limits'].get(feature)
    for plan_id in PLAN_ORDER[start:]:
        plan = SUBSCRIPTION_PLANS[plan_id]
        if current_limit is not None:
            if plan['limits'].get(feature, 0) > current_limit:
                return plan_id
        elif plan['features'].get(feature):
            return plan_id
    return 'enterprise'


ACTION_FEATURES = {
    'addMarker': 'maxMarkersPerMap',
    'createMap': 'maxMaps',
    'useGeocoding': 'geocoding',
    'useBulkImport': 'bulkImport',
    'useSmartGrouping': 'smartGrouping',
}


def require_action(user_doc, action, current_count=None, message=None):
    """Raises PermissionDenied carrying an upgrade hint when the plan forbids action."""
    if can_user_perform_action(user_doc, action, current_count):
        return
    plan = plan_of(user_doc)
    raise PermissionDenied(message or f"{action} not available on current plan", details={
        'currentPlan': plan,
        'recommendedPlan': get_recommended_upgrade(plan, ACTION_FEATURES.get(action, action)),
    })


def tier_for_price_id(price_id, price_ids):
    """
    Maps a Stripe price id to a plan id using the configured price ids.
    Unknown (or unconfigured) prices fall back to freemium.
    """
    if not price_id:
        return 'freemium'
    for tier in ['enterprise', 'professional', 'starter', 'freemium']:
        if price_ids.get(tier) and price_ids[tier] == price_id:
            return tier
    for legacy, tier in LEGACY_TIERS.items():
        if price_ids.get(legacy) and price_ids[legacy] == price_id:
            return tier
    logger.info("Price ID %s not configured, defaulting to freemium", price_id)
    return 'freemium'


def fix_user_limits(db):
    """
    Rewrites users' stored limits so they match their plan.
    Returns a summary dict; per-user failures are collected, not raised.
    """
    processed = 0
    fixed = 0
    errors = []
    for user_doc in db.collection('users').stream():
        processed += 1
        try:
            data = user_doc.to_dict() or {}
            correct = limits_for_plan(plan_of(data))
            stored = data.get('limits') or {}
            if any(stored.get(k) != v for k, v in correct.items()):
                user_doc.reference.update({
                    'limits': correct,
                    'updatedAt': fb_firestore.SERVER_TIMESTAMP,
                })
                fixed += 1
                logger.info("Fixed limits for user %s (%s)", user_doc.id, plan_of(data))
        except Exception as e:
            logger.exception("Failed to fix limits for user %s", user_doc.id)
            errors.append(f"{user_doc.id}: {e}")
    return {'usersProcessed': processed, 'usersFixed': fixed, 'errors': errors}
