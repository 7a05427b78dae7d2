"""
Configuration for the campaign pipeline.

These can be overridden via environment variables. Per-campaign send
policy (window, delays, daily limit) is stored on the campaign itself;
the values here are only the defaults for new campaigns.
"""

import os
from dotenv import load_dotenv

from mediacrm import config

load_dotenv()


def _get_bool(key: str, default: bool = False) -> bool:
    """Get a boolean from environment."""
    val = os.getenv(key, str(default)).lower()
    return val in ('true', '1', 'yes', 'on')


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


CAMPAIGN_DB_PATH = os.getenv(
    'CAMPAIGN_DB_PATH',
    os.path.join(config.DATA_DIR, "campaigns.db"),
)

CAMPAIGN_CONFIG = {
    # Delivery: 'resend' (HTTP API) or 'smtp'
    'MAIL_TRANSPORT': os.getenv('CAMPAIGN_MAIL_TRANSPORT', 'resend').lower(),

    # Reference timezone for send windows and daily limits
    'SEND_TIMEZONE': os.getenv('CAMPAIGN_SEND_TIMEZONE', 'America/New_York'),

    # Defaults for new campaigns
    'DEFAULT_WINDOW_START': _get_int('CAMPAIGN_WINDOW_START', 9),
    'DEFAULT_WINDOW_END': _get_int('CAMPAIGN_WINDOW_END', 17),
    'DEFAULT_MIN_DELAY_SECONDS': _get_int('CAMPAIGN_MIN_DELAY', 120),
    'DEFAULT_MAX_DELAY_SECONDS': _get_int('CAMPAIGN_MAX_DELAY', 300),
    'DEFAULT_DAILY_SEND_LIMIT': _get_int('CAMPAIGN_DAILY_LIMIT', 50),
    'DEFAULT_MAX_WORDS': _get_int('CAMPAIGN_MAX_WORDS', 100),

    # Generation batches
    'DEFAULT_GENERATION_BATCH': _get_int('CAMPAIGN_GENERATION_BATCH', 5),
    'MAX_GENERATION_BATCH': _get_int('CAMPAIGN_MAX_GENERATION_BATCH', 20),
    'GENERATION_DELAY_SECONDS': _get_float('CAMPAIGN_GENERATION_DELAY', 1.0),
    'GENERATION_POLL_SECONDS': _get_int('CAMPAIGN_GENERATION_POLL', 2),

    # Recipient snapshot inserts per statement
    'RECIPIENT_INSERT_CHUNK': _get_int('CAMPAIGN_INSERT_CHUNK', 500),

    # Single-driver lease per campaign
    'LEASE_TTL_SECONDS': _get_int('CAMPAIGN_LEASE_TTL', 900),

    # Driver loop pauses
    'ERROR_PAUSE_SECONDS': _get_int('CAMPAIGN_ERROR_PAUSE', 10),
    'MAX_SLEEP_SECONDS': _get_int('CAMPAIGN_MAX_SLEEP', 3600),

    # Dry run mode (render and log, never deliver)
    'DRY_RUN': _get_bool('CAMPAIGN_DRY_RUN', False),

    # Test mode - redirect all campaign mail to this address
    'TEST_RECIPIENT_OVERRIDE': os.getenv('CAMPAIGN_TEST_RECIPIENT', ''),
}


def validate_config() -> list[str]:
    """Validate configuration and return list of errors."""
    errors = []

    if not config.ANTHROPIC_API_KEY:
        errors.append("ANTHROPIC_API_KEY not set (generation disabled)")

    transport = CAMPAIGN_CONFIG['MAIL_TRANSPORT']
    if transport == 'resend':
        if not config.RESEND_API_KEY:
            errors.append("RESEND_API_KEY not set (sending disabled)")
    elif transport == 'smtp':
        if not config.SMTP_USER or not config.SMTP_PASSWORD:
            errors.append("SMTP_USER / SMTP_PASSWORD not set (sending disabled)")
    else:
        errors.append(f"Unknown CAMPAIGN_MAIL_TRANSPORT '{transport}' (use resend or smtp)")

    if CAMPAIGN_CONFIG['DEFAULT_WINDOW_START'] >= CAMPAIGN_CONFIG['DEFAULT_WINDOW_END']:
        errors.append("CAMPAIGN_WINDOW_START must be before CAMPAIGN_WINDOW_END")

    if CAMPAIGN_CONFIG['DEFAULT_MIN_DELAY_SECONDS'] > CAMPAIGN_CONFIG['DEFAULT_MAX_DELAY_SECONDS']:
        errors.append("CAMPAIGN_MIN_DELAY must not exceed CAMPAIGN_MAX_DELAY")

    return errors
