from django.conf import settings

DEFAULTS = {
    'TRIAL_DAYS': 14,
    'TRIAL_ENDING_SOON_DAYS': 3,
    'CURRENCY': 'USD',
    'INVOICE_PREFIX': 'PS',
}


def get_setting(name):
    """Read a value from ``settings.SUBSCRIPTIONS``, falling back to DEFAULTS."""
    return getattr(settings, 'SUBSCRIPTIONS', {}).get(name, DEFAULTS[name])
