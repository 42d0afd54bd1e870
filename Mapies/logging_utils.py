import json
import logging


logger = logging.getLogger('mapies')


def setup_logging(level=logging.INFO):
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )


def _dump(data):
    if data is None:
        return None
    return json.dumps(data, indent=2, default=str)


def log_stripe_event(event_type, event_id, data=None):
    logger.info("Processing Stripe event: %s (%s) %s", event_type, event_id, _dump(data) or '')


def log_webhook_result(result):
    log_data = result.to_dict()
    if result.success:
        logger.info("Webhook processed successfully: %s %s", result.event_type, log_data)
    else:
        logger.error("Webhook processing failed: %s %s", result.event_type, log_data)


def log_user_update(user_id, operation, data=None):
    logger.info("User update: %s user=%s %s", operation, user_id, _dump(data) or '')


def log_subscription_update(subscription_id, operation, data=None):
    logger.info("Subscription update: %s subscription=%s %s", operation, subscription_id, _dump(data) or '')
