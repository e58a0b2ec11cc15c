"""
Checkout orchestration.

The command surface the rest of the application talks to. Every call carries
an explicit ``BillingSession`` (who is asking, for which organization, in
which role); nothing is read from ambient request or global state.
"""

from dataclasses import dataclass

from django.db import transaction
from django.utils import timezone

from users.models import Membership

from . import entitlements, ledger, lifecycle
from .exceptions import Forbidden, ValidationError
from .models import PaymentMethod
from .plans import BillingInterval, list_plans


@dataclass(frozen=True)
class BillingSession:
    user: object
    organization: object
    role: str

    @classmethod
    def from_membership(cls, membership):
        return cls(user=membership.user, organization=membership.organization, role=membership.role)

    @property
    def is_admin(self):
        return self.role in Membership.BILLING_ADMIN_ROLES


def _as_int(value, field):
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"'{field}' must be a whole number.", details={field: value}) from None


def clean_payment_method(data, now=None):
    """Validate card fields supplied by a client. Returns the cleaned values."""
    if not isinstance(data, dict):
        raise ValidationError('Payment method details must be an object.')
    now = now or timezone.now()

    last4 = str(data.get('last4') or '')
    if len(last4) != 4 or not last4.isdigit():
        raise ValidationError("'last4' must be exactly four digits.", details={'last4': data.get('last4')})

    exp_month = _as_int(data.get('exp_month'), 'exp_month')
    if not 1 <= exp_month <= 12:
        raise ValidationError("'exp_month' must be between 1 and 12.", details={'exp_month': exp_month})

    exp_year = _as_int(data.get('exp_year'), 'exp_year')
    if not 1000 <= exp_year <= 9999:
        raise ValidationError("'exp_year' must be a four digit year.", details={'exp_year': exp_year})
    if (exp_year, exp_month) < (now.year, now.month):
        raise ValidationError('This card has expired.', details={'exp_month': exp_month, 'exp_year': exp_year})

    brand = str(data.get('brand') or 'Visa').strip()[:30]
    return {'brand': brand, 'last4': last4, 'exp_month': exp_month, 'exp_year': exp_year}


def upsert_payment_method(organization, data, now=None):
    """
    Store a new default payment method for the organization. The previous
    default is kept for history but no longer default. Nothing is charged.
    """
    cleaned = clean_payment_method(data, now=now)
    with transaction.atomic():
        type(organization).objects.select_for_update().only('pk').get(pk=organization.pk)
        PaymentMethod.objects.filter(organization=organization, is_default=True).update(is_default=False)
        return PaymentMethod.objects.create(organization=organization, is_default=True, **cleaned)


class CheckoutOrchestrator:
    """
    Turns user intents into lifecycle commands. Mutations require an admin
    session; reads are open to every member of the organization.
    """

    def __init__(self, session, now=None):
        self.session = session
        self.organization = session.organization
        self._now = now

    @property
    def now(self):
        return self._now or timezone.now()

    def _require_admin(self):
        if not self.session.is_admin:
            raise Forbidden(details={'role': self.session.role})

    # --- Reads ---

    def plans(self):
        return list_plans()

    def current_subscription(self):
        return lifecycle.get_current(self.organization, now=self.now)

    def billing_history(self):
        return ledger.list_for(self.organization)

    def payment_method(self):
        return PaymentMethod.objects.filter(organization=self.organization, is_default=True).first()

    def entitlements(self):
        now = self.now
        return entitlements.snapshot_for(lifecycle.get_current(self.organization, now=now), now=now)

    # --- Intents ---

    def subscribe(self, plan_id, billing_interval=BillingInterval.MONTH, payment_method=None, want_trial=False):
        self._require_admin()
        now = self.now
        with transaction.atomic():
            method = None
            if payment_method:
                method = upsert_payment_method(self.organization, payment_method, now=now)
            result = lifecycle.create(
                self.organization,
                plan_id,
                billing_interval=billing_interval,
                want_trial=want_trial,
                payment_method=method,
                strict_trial=True,
                now=now,
            )
        return result.subscription

    def switch_plan(self, plan_id=None, billing_interval=None):
        self._require_admin()
        return lifecycle.update(
            self.organization, plan_id=plan_id, billing_interval=billing_interval, now=self.now,
        ).subscription

    def cancel(self, immediate=False):
        self._require_admin()
        return lifecycle.cancel_subscription(self.organization, immediate=immediate, now=self.now).subscription

    def reactivate(self):
        self._require_admin()
        return lifecycle.reactivate_subscription(self.organization, now=self.now).subscription

    def update_payment_method(self, data):
        self._require_admin()
        with transaction.atomic():
            method = upsert_payment_method(self.organization, data, now=self.now)
            lifecycle.attach_payment_method(self.organization, method, now=self.now)
        return method

    def simulate_payment(self, outcome=ledger.EventStatus.SUCCEEDED):
        """Record a simulated recurring charge. Returns ``(event, subscription)``."""
        if outcome not in (ledger.EventStatus.SUCCEEDED, ledger.EventStatus.FAILED):
            raise ValidationError(
                "A simulated payment outcome is either 'succeeded' or 'failed'.",
                details={'outcome': outcome},
            )
        result = lifecycle.record_payment_outcome(
            self.organization, succeeded=outcome == ledger.EventStatus.SUCCEEDED, now=self.now,
        )
        return result.event, result.subscription
