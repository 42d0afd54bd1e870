import os
from pathlib import Path

from dotenv import load_dotenv

from Mapies.errors import ConfigError


env_path = Path(__file__).resolve().parent.parent / '.env'
load_dotenv(dotenv_path=env_path)


def _env_flag(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
    """Settings read from the environment (or the project .env file)."""

    SECRET_KEY = os.environ.get('FLASK_SECRET_KEY', 'dev-secret')
    FIREBASE_CREDENTIALS = os.environ.get('FIREBASE_CREDENTIALS', '')

    STRIPE_SECRET_KEY = os.environ.get('STRIPE_SECRET_KEY', '')
    STRIPE_WEBHOOK_SECRET = os.environ.get('STRIPE_WEBHOOK_SECRET', '')
    STRIPE_PRICE_IDS = {
        'freemium': os.environ.get('STRIPE_PRICE_ID_FREEMIUM', ''),
        'starter': os.environ.get('STRIPE_PRICE_ID_STARTER', ''),
        'professional': os.environ.get('STRIPE_PRICE_ID_PROFESSIONAL', ''),
        'enterprise': os.environ.get('STRIPE_PRICE_ID_ENTERPRISE', ''),
        # legacy tiers
        'premium': os.environ.get('STRIPE_PRICE_ID_PREMIUM', ''),
        'pro': os.environ.get('STRIPE_PRICE_ID_PRO', ''),
    }

    MAPBOX_ACCESS_TOKEN = os.environ.get('MAPBOX_ACCESS_TOKEN', '')
    NOMINATIM_USER_AGENT = os.environ.get('NOMINATIM_USER_AGENT', 'Mapies/1.0 (https://mapies.app)')
    GEOCODING_COUNTRY = os.environ.get('GEOCODING_COUNTRY', 'ca')

    APP_URL = os.environ.get('APP_URL', 'https://mapies.web.app')
    CSV_PROCESS_ASYNC = _env_flag('CSV_PROCESS_ASYNC', True)

    # /admin/* is disabled while unset
    ADMIN_TOKEN = os.environ.get('ADMIN_TOKEN', '')


REQUIRED_VARS = [
    'STRIPE_SECRET_KEY',
    'STRIPE_WEBHOOK_SECRET',
    'STRIPE_PRICE_ID_STARTER',
    'STRIPE_PRICE_ID_PROFESSIONAL',
    'STRIPE_PRICE_ID_ENTERPRISE',
]


def validate_config(environ=None):
    environ = os.environ if environ is None else environ
    missing = [name for name in REQUIRED_VARS if not environ.get(name)]
    if missing:
        raise ConfigError(f"Missing required environment variables: {', '.join(missing)}")
