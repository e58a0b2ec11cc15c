"""
Subscription lifecycle.

Each organization owns at most one ``Subscription`` row. Commands read it
under a row lock on the organization (one writer per organization), apply a
transition to the in-memory record, save it and append the resulting ledger
events, all inside one transaction.

Transitions are plain functions: they validate the current status, mutate the
record and return the ledger entries to write. They never query anything,
which keeps the rules testable without a database.

No proration: changing plan or interval re-targets the amount but keeps the
current period as it is.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from django.db import transaction
from django.utils import timezone

from . import ledger, periods
from .conf import get_setting
from .exceptions import (
    AlreadySubscribed,
    NoActiveSubscription,
    NothingToReactivate,
    TrialNotAvailable,
    ValidationError,
)
from .models import (
    CANCELABLE_STATUSES,
    BillingEvent,
    Subscription,
    SubscriptionStatus,
)
from .plans import BillingInterval, get_plan

logger = logging.getLogger(__name__)

Status = SubscriptionStatus
EventType = BillingEvent.EventType
EventStatus = BillingEvent.Status

# Statuses each command may start from. Anything else is rejected.
TRANSITIONS = {
    'change_plan': CANCELABLE_STATUSES,
    'cancel': CANCELABLE_STATUSES,
    'record_payment': CANCELABLE_STATUSES,
    'reactivate': frozenset({Status.CANCELED, Status.EXPIRED}),
}


@dataclass(frozen=True)
class EventDraft:
    event_type: str
    amount: int
    description: str
    status: str = EventStatus.SUCCEEDED
    invoice: bool = False


@dataclass
class CommandResult:
    subscription: Subscription
    events: list

    @property
    def event(self) -> Optional[BillingEvent]:
        return self.events[-1] if self.events else None


def _require_live(subscription, command):
    if subscription is None:
        raise NoActiveSubscription('This organization has no subscription.')
    if subscription.status not in TRANSITIONS[command]:
        raise NoActiveSubscription(
            f"The subscription is {subscription.get_status_display().lower()}; "
            f"it has to be active, trialing or past due for this change.",
            details={'status': subscription.status},
        )


def _validate_interval(billing_interval):
    if billing_interval not in BillingInterval.values:
        raise ValidationError(
            f"'{billing_interval}' is not a valid billing interval.",
            details={'billing_interval': billing_interval, 'allowed': list(BillingInterval.values)},
        )


def _start_period(subscription, now):
    subscription.current_period_start = now
    subscription.current_period_end = periods.add_interval(now, subscription.billing_interval)


def _interval_label(billing_interval):
    return 'annual' if billing_interval == BillingInterval.YEAR else 'monthly'


# --- Transitions --------------------------------------------------------

def start(subscription, plan_id, billing_interval, trial, now):
    """Fresh subscription (or a new life for a terminal row)."""
    plan = get_plan(plan_id)
    price = plan.price_for(billing_interval)

    subscription.plan_id = plan.id
    subscription.billing_interval = billing_interval
    subscription.currency = plan.currency
    subscription.cancel_at_period_end = False
    subscription.canceled_at = None

    if trial:
        trial_end = periods.trial_end_from(now)
        subscription.status = Status.TRIALING
        subscription.trial_end = trial_end
        subscription.current_period_start = now
        subscription.current_period_end = trial_end
        subscription.amount = 0
        return [EventDraft(
            EventType.TRIAL_STARTED, 0,
            f"Started {get_setting('TRIAL_DAYS')}-day free trial of {plan.name} plan",
        )]

    subscription.status = Status.ACTIVE
    subscription.trial_end = None
    subscription.amount = price
    _start_period(subscription, now)
    return [
        EventDraft(
            EventType.SUBSCRIPTION_CREATED, price,
            f"Subscribed to {plan.name} plan ({_interval_label(billing_interval)})",
            invoice=True,
        ),
        EventDraft(
            EventType.PAYMENT, price,
            f"Payment for {plan.name} plan - {_interval_label(billing_interval)} billing",
            invoice=True,
        ),
    ]


def change_plan(subscription, plan_id=None, billing_interval=None):
    _require_live(subscription, 'change_plan')
    if plan_id is None and billing_interval is None:
        raise ValidationError('Choose a new plan or billing interval.')

    old_plan = subscription.plan
    new_plan = get_plan(plan_id) if plan_id is not None else old_plan
    new_interval = billing_interval or subscription.billing_interval
    price = new_plan.price_for(new_interval)

    subscription.plan_id = new_plan.id
    subscription.billing_interval = new_interval
    subscription.currency = new_plan.currency
    # A trial stays free until it converts.
    subscription.amount = 0 if subscription.status == Status.TRIALING else price
    # Switching plans keeps the subscription; drop any scheduled cancellation.
    subscription.cancel_at_period_end = False
    subscription.canceled_at = None

    if new_plan.rank > old_plan.rank:
        verb = 'Upgraded'
    elif new_plan.rank < old_plan.rank:
        verb = 'Downgraded'
    else:
        verb = 'Changed'
    description = f"{verb} from {old_plan.name} to {new_plan.name} plan ({_interval_label(new_interval)})"
    return [EventDraft(EventType.PLAN_CHANGE, subscription.amount, description, invoice=subscription.amount > 0)]


def cancel(subscription, immediate, now):
    _require_live(subscription, 'cancel')
    subscription.canceled_at = now
    if immediate:
        subscription.status = Status.CANCELED
        subscription.cancel_at_period_end = False
        subscription.trial_end = None
        description = f"{subscription.plan.name} plan canceled immediately"
    else:
        subscription.cancel_at_period_end = True
        description = f"{subscription.plan.name} plan set to cancel at end of billing period"
    return [EventDraft(EventType.SUBSCRIPTION_CANCELED, 0, description)]


def reactivate(subscription, now):
    if subscription is None:
        raise NothingToReactivate('This organization has never had a subscription.')

    if subscription.status in TRANSITIONS['reactivate']:
        plan = subscription.plan
        subscription.status = Status.ACTIVE
        subscription.trial_end = None
        subscription.cancel_at_period_end = False
        subscription.canceled_at = None
        subscription.amount = plan.price_for(subscription.billing_interval)
        _start_period(subscription, now)
        return [EventDraft(
            EventType.PAYMENT, subscription.amount,
            f"Renewal payment for {plan.name} plan", invoice=True,
        )]

    if subscription.cancel_at_period_end:
        subscription.cancel_at_period_end = False
        subscription.canceled_at = None
        return []

    raise NothingToReactivate(
        f"The subscription is {subscription.get_status_display().lower()} and not scheduled to cancel.",
        details={'status': subscription.status},
    )


def record_payment(subscription, succeeded, now):
    """
    Apply a payment outcome. Success settles a past due balance, converts a
    trial, or renews an active period; failure moves the subscription to
    past due.
    """
    _require_live(subscription, 'record_payment')
    plan = subscription.plan
    price = plan.price_for(subscription.billing_interval)

    if succeeded:
        was_trialing = subscription.status == Status.TRIALING
        subscription.status = Status.ACTIVE
        subscription.trial_end = None
        subscription.amount = price
        if was_trialing or not subscription.cancel_at_period_end:
            _start_period(subscription, now)
        return [EventDraft(
            EventType.PAYMENT, price,
            f"Recurring payment for {plan.name} plan", invoice=True,
        )]

    subscription.status = Status.PAST_DUE
    subscription.trial_end = None
    subscription.amount = price
    return [EventDraft(
        EventType.PAYMENT, price,
        f"Payment failed for {plan.name} plan", status=EventStatus.FAILED,
    )]


def settle(subscription, now):
    """
    Bring a lapsed period up to date: a scheduled cancellation completes,
    anything else entitled expires. Returns True when the record changed.
    """
    if subscription is None or not subscription.is_entitled:
        return False
    if subscription.current_period_end > now:
        return False
    if subscription.cancel_at_period_end:
        subscription.status = Status.CANCELED
        subscription.cancel_at_period_end = False
        subscription.canceled_at = subscription.canceled_at or now
    else:
        subscription.status = Status.EXPIRED
    subscription.trial_end = None
    return True


# --- Commands -------------------------------------------------------------

def _lock(organization, now):
    """
    Serialize writers for one organization and return its subscription,
    settled as of ``now`` so every command decides on the same status a read
    would report.
    """
    type(organization).objects.select_for_update().only('pk').get(pk=organization.pk)
    subscription = Subscription.objects.select_for_update().filter(organization=organization).first()
    if settle(subscription, now):
        subscription.full_clean()
        subscription.save()
        logger.info(
            "Subscription for org %s lapsed at %s: now %s",
            organization.pk, subscription.current_period_end.isoformat(), subscription.status,
        )
    return subscription


def _commit(subscription, drafts, now):
    subscription.full_clean()
    subscription.save()
    return [
        ledger.append(
            subscription.organization,
            draft.event_type,
            draft.amount,
            draft.description,
            status=draft.status,
            subscription=subscription,
            plan_id=subscription.plan_id,
            currency=subscription.currency,
            invoice=draft.invoice,
            payment_method=subscription.payment_method,
            now=now,
        )
        for draft in drafts
    ]


def has_ever_subscribed(organization):
    """Subscriptions are never deleted, so any row means a past subscription."""
    return Subscription.objects.filter(organization=organization).exists()


def get_current(organization, now=None):
    now = now or timezone.now()
    subscription = Subscription.objects.filter(organization=organization).first()
    if subscription is None or not subscription.is_entitled or subscription.current_period_end > now:
        return subscription

    with transaction.atomic():
        return _lock(organization, now)


def create(organization, plan_id, billing_interval=BillingInterval.MONTH, want_trial=False,
           payment_method=None, strict_trial=False, now=None):
    """
    Start a subscription. A trial is granted only to an organization that
    never had one; otherwise the request falls back to a paid start, or is
    rejected with TrialNotAvailable when ``strict_trial`` is set.
    """
    now = now or timezone.now()
    get_plan(plan_id)
    _validate_interval(billing_interval)

    with transaction.atomic():
        existing = _lock(organization, now)
        if existing is not None and not existing.is_terminal:
            raise AlreadySubscribed(
                f"This organization already has a {existing.plan.name} subscription "
                f"({existing.get_status_display().lower()}).",
                details={'status': existing.status, 'plan_id': existing.plan_id},
            )

        trial = bool(want_trial) and existing is None
        if want_trial and not trial and strict_trial:
            raise TrialNotAvailable()
        subscription = existing or Subscription(organization=organization)
        if payment_method is not None:
            subscription.payment_method = payment_method
        drafts = start(subscription, plan_id, billing_interval, trial, now)
        events = _commit(subscription, drafts, now)

    logger.info(
        "Created %s subscription for org %s: %s (%s)",
        subscription.status, organization.pk, subscription.plan_id, subscription.billing_interval,
    )
    return CommandResult(subscription, events)


def update(organization, plan_id=None, billing_interval=None, now=None):
    now = now or timezone.now()
    if plan_id is not None:
        get_plan(plan_id)
    if billing_interval is not None:
        _validate_interval(billing_interval)

    with transaction.atomic():
        subscription = _lock(organization, now)
        previous_plan_id = subscription.plan_id if subscription else None
        drafts = change_plan(subscription, plan_id=plan_id, billing_interval=billing_interval)
        events = _commit(subscription, drafts, now)

    logger.info(
        "Plan changed for org %s: %s -> %s (%s)",
        organization.pk, previous_plan_id, subscription.plan_id, subscription.billing_interval,
    )
    return CommandResult(subscription, events)


def cancel_subscription(organization, immediate=False, now=None):
    now = now or timezone.now()
    with transaction.atomic():
        subscription = _lock(organization, now)
        drafts = cancel(subscription, bool(immediate), now)
        events = _commit(subscription, drafts, now)

    logger.info("Subscription canceled for org %s (immediate=%s)", organization.pk, bool(immediate))
    return CommandResult(subscription, events)


def reactivate_subscription(organization, now=None):
    now = now or timezone.now()
    with transaction.atomic():
        subscription = _lock(organization, now)
        drafts = reactivate(subscription, now)
        events = _commit(subscription, drafts, now)

    logger.info("Subscription reactivated for org %s: %s", organization.pk, subscription.status)
    return CommandResult(subscription, events)


def record_payment_outcome(organization, succeeded, now=None):
    now = now or timezone.now()
    with transaction.atomic():
        subscription = _lock(organization, now)
        previous_status = subscription.status if subscription else None
        drafts = record_payment(subscription, bool(succeeded), now)
        events = _commit(subscription, drafts, now)

    log = logger.info if succeeded else logger.warning
    log(
        "Payment %s for org %s: %s -> %s",
        'succeeded' if succeeded else 'failed', organization.pk, previous_status, subscription.status,
    )
    return CommandResult(subscription, events)


def attach_payment_method(organization, payment_method, now=None):
    """Point the organization's subscription, if any, at a payment method."""
    now = now or timezone.now()
    with transaction.atomic():
        subscription = _lock(organization, now)
        if subscription is None:
            return None
        subscription.payment_method = payment_method
        subscription.save(update_fields=['payment_method', 'updated_at'])
    return subscription
