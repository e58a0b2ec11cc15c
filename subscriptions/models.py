from django.core.exceptions import ValidationError as ModelValidationError
from django.db import models

from .exceptions import ImmutableEvent
from .plans import PLAN_CHOICES, BillingInterval, get_plan


class SubscriptionStatus(models.TextChoices):
    TRIALING = 'trialing', 'Trialing'
    ACTIVE = 'active', 'Active'
    PAST_DUE = 'past_due', 'Past due'
    CANCELED = 'canceled', 'Canceled'
    EXPIRED = 'expired', 'Expired'

    @property
    def is_terminal(self):
        return self in TERMINAL_STATUSES

    @property
    def is_entitled(self):
        return self in ENTITLED_STATUSES


TERMINAL_STATUSES = frozenset({SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED})
# Statuses that grant plan features and limits.
ENTITLED_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})
# Statuses in which a cancellation may be scheduled.
CANCELABLE_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING, SubscriptionStatus.PAST_DUE})


def _iso(value):
    return value.isoformat() if value else None


class PaymentMethod(models.Model):
    """A stored (tokenised) card. Storing a method never charges it."""
    organization = models.ForeignKey('users.Organization', on_delete=models.CASCADE, related_name='payment_methods')
    brand = models.CharField(max_length=30, default='Visa')
    last4 = models.CharField(max_length=4)
    exp_month = models.PositiveSmallIntegerField()
    exp_year = models.PositiveSmallIntegerField()
    is_default = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at', '-pk']
        constraints = [
            models.UniqueConstraint(
                fields=['organization'],
                condition=models.Q(is_default=True),
                name='one_default_payment_method_per_organization',
            ),
        ]

    def as_dict(self):
        return {
            'id': self.pk,
            'organization_id': self.organization_id,
            'type': 'card',
            'brand': self.brand,
            'last4': self.last4,
            'exp_month': self.exp_month,
            'exp_year': self.exp_year,
            'is_default': self.is_default,
            'created_at': _iso(self.created_at),
        }

    def __str__(self):
        return f"{self.brand} ending {self.last4}"


class Subscription(models.Model):
    organization = models.OneToOneField('users.Organization', on_delete=models.CASCADE, related_name='subscription')
    plan_id = models.CharField(max_length=20, choices=PLAN_CHOICES)
    status = models.CharField(max_length=10, choices=SubscriptionStatus.choices)
    billing_interval = models.CharField(max_length=5, choices=BillingInterval.choices, default=BillingInterval.MONTH)
    current_period_start = models.DateTimeField()
    current_period_end = models.DateTimeField()
    trial_end = models.DateTimeField(null=True, blank=True)
    cancel_at_period_end = models.BooleanField(default=False)
    canceled_at = models.DateTimeField(null=True, blank=True)
    # Amount charged for the current period, in cents.
    amount = models.PositiveIntegerField(default=0)
    currency = models.CharField(max_length=3, default='USD')
    payment_method = models.ForeignKey(PaymentMethod, on_delete=models.SET_NULL, null=True, blank=True, related_name='+')
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    @property
    def plan(self):
        return get_plan(self.plan_id)

    @property
    def status_variant(self):
        return SubscriptionStatus(self.status)

    @property
    def is_entitled(self):
        return self.status_variant.is_entitled

    @property
    def is_terminal(self):
        return self.status_variant.is_terminal

    def clean(self):
        errors = {}
        if self.current_period_start and self.current_period_end and self.current_period_end <= self.current_period_start:
            errors['current_period_end'] = 'The billing period must end after it starts.'
        if self.status == SubscriptionStatus.TRIALING and self.trial_end is None:
            errors['trial_end'] = 'A trialing subscription needs a trial end.'
        if self.status != SubscriptionStatus.TRIALING and self.trial_end is not None:
            errors['trial_end'] = 'Only trialing subscriptions carry a trial end.'
        if self.cancel_at_period_end and self.status not in CANCELABLE_STATUSES:
            errors['cancel_at_period_end'] = 'Only a live subscription can be scheduled to cancel.'
        if self.status == SubscriptionStatus.CANCELED and self.canceled_at is None:
            errors['canceled_at'] = 'A canceled subscription records when it was canceled.'
        if errors:
            raise ModelValidationError(errors)

    def as_dict(self):
        return {
            'id': self.pk,
            'organization_id': self.organization_id,
            'plan_id': self.plan_id,
            'status': self.status,
            'billing_interval': self.billing_interval,
            'current_period_start': _iso(self.current_period_start),
            'current_period_end': _iso(self.current_period_end),
            'trial_end': _iso(self.trial_end),
            'cancel_at_period_end': self.cancel_at_period_end,
            'canceled_at': _iso(self.canceled_at),
            'amount': self.amount,
            'currency': self.currency,
            'payment_method_id': self.payment_method_id,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }

    def __str__(self):
        return f"{self.organization.name} - {self.plan_id} ({self.status})"


class BillingEvent(models.Model):
    """
    One immutable entry of an organization's billing history. Amounts are
    stored as non-negative cents; a refund's sign is carried by its type.
    """
    class EventType(models.TextChoices):
        PAYMENT = 'payment', 'Payment'
        REFUND = 'refund', 'Refund'
        CREDIT = 'credit', 'Credit'
        PLAN_CHANGE = 'plan_change', 'Plan change'
        SUBSCRIPTION_CREATED = 'subscription_created', 'Subscription created'
        SUBSCRIPTION_CANCELED = 'subscription_canceled', 'Subscription canceled'
        TRIAL_STARTED = 'trial_started', 'Trial started'

    class Status(models.TextChoices):
        SUCCEEDED = 'succeeded', 'Succeeded'
        FAILED = 'failed', 'Failed'
        PENDING = 'pending', 'Pending'
        REFUNDED = 'refunded', 'Refunded'

    organization = models.ForeignKey('users.Organization', on_delete=models.PROTECT, related_name='billing_events')
    subscription = models.ForeignKey(Subscription, on_delete=models.PROTECT, null=True, blank=True, related_name='events')
    # The method the subscription pointed at when the event was recorded.
    payment_method = models.ForeignKey(PaymentMethod, on_delete=models.PROTECT, null=True, blank=True, related_name='billing_events')
    type = models.CharField(max_length=25, choices=EventType.choices)
    amount = models.PositiveIntegerField(default=0)
    currency = models.CharField(max_length=3, default='USD')
    status = models.CharField(max_length=10, choices=Status.choices, default=Status.SUCCEEDED)
    description = models.CharField(max_length=255)
    plan_id = models.CharField(max_length=20, choices=PLAN_CHOICES, blank=True, default='')
    invoice_number = models.CharField(max_length=20, blank=True, default='')
    created_at = models.DateTimeField()

    class Meta:
        ordering = ['-created_at', '-pk']
        indexes = [models.Index(fields=['organization', '-created_at'], name='billingevent_org_created_idx')]

    @property
    def signed_amount(self):
        if self.type == self.EventType.REFUND:
            return -self.amount
        return self.amount

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ImmutableEvent()
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ImmutableEvent()

    def as_dict(self):
        return {
            'id': self.pk,
            'organization_id': self.organization_id,
            'type': self.type,
            'amount': self.amount,
            'currency': self.currency,
            'status': self.status,
            'description': self.description,
            'plan_id': self.plan_id or None,
            'invoice_number': self.invoice_number or None,
            'payment_method_id': self.payment_method_id,
            'created_at': _iso(self.created_at),
        }

    def __str__(self):
        return f"{self.get_type_display()} {self.amount} {self.currency} ({self.status})"
