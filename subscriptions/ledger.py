"""
Billing ledger.

Append-only history of billing events per organization. The lifecycle
writes to it; nothing reads it back to decide subscription state.
"""

import logging
import secrets

from django.utils import timezone

from .conf import get_setting
from .exceptions import ValidationError
from .models import BillingEvent

logger = logging.getLogger(__name__)

EventType = BillingEvent.EventType
EventStatus = BillingEvent.Status


def generate_invoice_number(now=None):
    """``PS-YYMM-NNNN`` with a random four digit sequence."""
    now = now or timezone.now()
    seq = 1000 + secrets.randbelow(9000)
    return f"{get_setting('INVOICE_PREFIX')}-{now:%y%m}-{seq}"


def append(organization, event_type, amount, description, status=EventStatus.SUCCEEDED,
           subscription=None, plan_id=None, currency=None, invoice=False, payment_method=None, now=None):
    if event_type not in EventType.values:
        raise ValidationError(
            f"'{event_type}' is not a billing event type.",
            details={'type': event_type, 'allowed': list(EventType.values)},
        )
    if status not in EventStatus.values:
        raise ValidationError(
            f"'{status}' is not a billing event status.",
            details={'status': status, 'allowed': list(EventStatus.values)},
        )
    if not isinstance(amount, int) or isinstance(amount, bool):
        raise ValidationError('Billing amounts are whole cents.', details={'amount': amount})
    if amount < 0:
        raise ValidationError(
            'Billing amounts are never negative; refunds are recorded as positive amounts.',
            details={'amount': amount},
        )
    if event_type == EventType.REFUND and amount == 0:
        raise ValidationError('A refund must have a positive amount.', details={'amount': amount})

    now = now or timezone.now()
    event = BillingEvent.objects.create(
        organization=organization,
        subscription=subscription,
        payment_method=payment_method,
        type=event_type,
        amount=amount,
        currency=currency or get_setting('CURRENCY'),
        status=status,
        description=description,
        plan_id=plan_id or '',
        invoice_number=generate_invoice_number(now) if invoice else '',
        created_at=now,
    )
    logger.debug("Ledger append for org %s: %s %s (%s)", organization.pk, event_type, amount, status)
    return event


def list_for(organization):
    """Billing history, newest first."""
    return list(BillingEvent.objects.filter(organization=organization).order_by('-created_at', '-pk'))
