import json
from datetime import datetime, timedelta

from django.contrib.auth import get_user_model
from django.http import JsonResponse
from django.test import RequestFactory, SimpleTestCase, TestCase, override_settings
from django.urls import reverse
from django.utils import timezone

from users.models import Membership, Organization

from . import entitlements, ledger, lifecycle, periods
from .checkout import BillingSession, CheckoutOrchestrator, clean_payment_method
from .decorators import feature_required, plan_required
from .exceptions import (
    AlreadySubscribed,
    Forbidden,
    ImmutableEvent,
    NoActiveSubscription,
    NothingToReactivate,
    TrialNotAvailable,
    UnknownPlan,
    ValidationError,
)
from .models import BillingEvent, PaymentMethod, Subscription, SubscriptionStatus
from .plans import FEATURE_GATES, UNLIMITED, get_plan, list_plans, price_for

User = get_user_model()

NOW = timezone.make_aware(datetime(2025, 3, 10, 12, 0))


def make_org(name='Acme Builders', role=Membership.Role.ADMIN, username='admin'):
    user = User.objects.create_user(username=username, password='testpassword')
    organization = Organization.objects.create(name=name)
    Membership.objects.create(user=user, organization=organization, role=role)
    return user, organization


def card(**overrides):
    data = {'brand': 'Visa', 'last4': '4242', 'exp_month': 12, 'exp_year': NOW.year + 3}
    data.update(overrides)
    return data


class PlanCatalogTest(SimpleTestCase):
    def test_plans_are_listed_in_rank_order(self):
        self.assertEqual([plan.id for plan in list_plans()], ['starter', 'professional', 'enterprise'])
        self.assertEqual([plan.rank for plan in list_plans()], [1, 2, 3])

    def test_rank_is_strictly_increasing_with_price(self):
        plans = list_plans()
        for lower, higher in zip(plans, plans[1:]):
            self.assertLess(lower.price_monthly, higher.price_monthly)
            self.assertLess(lower.price_annual, higher.price_annual)

    def test_higher_tiers_include_all_lower_tier_features(self):
        plans = list_plans()
        for lower, higher in zip(plans, plans[1:]):
            self.assertTrue(lower.features <= higher.features)

    def test_unknown_plan(self):
        with self.assertRaises(UnknownPlan) as ctx:
            get_plan('platinum')
        self.assertEqual(ctx.exception.details, {'plan_id': 'platinum'})
        with self.assertRaises(UnknownPlan):
            get_plan(None)

    def test_price_for_interval(self):
        self.assertEqual(price_for('starter', 'month'), 2900)
        self.assertEqual(price_for('enterprise', 'year'), 199000)
        with self.assertRaises(ValidationError):
            price_for('starter', 'week')

    def test_enterprise_limits_are_unlimited(self):
        limits = get_plan('enterprise').limits
        self.assertEqual(limits.max_users, UNLIMITED)
        self.assertTrue(limits.is_unlimited('max_contacts'))
        self.assertFalse(limits.is_unlimited('max_storage_gb'))

    def test_as_dict(self):
        data = get_plan('professional').as_dict()
        self.assertEqual(data['priceMonthly'], 7900)
        self.assertEqual(data['limits'], {'maxUsers': 10, 'maxContacts': 5000, 'maxStorageGB': 25})
        self.assertIn('customer-portal', data['features'])


class BillingPeriodTest(SimpleTestCase):
    def test_days_until_rounds_up(self):
        self.assertEqual(periods.days_until(NOW + timedelta(days=2, hours=1), now=NOW), 3)
        self.assertEqual(periods.days_until(NOW + timedelta(days=14), now=NOW), 14)

    def test_days_until_is_never_negative(self):
        self.assertEqual(periods.days_until(NOW - timedelta(days=5), now=NOW), 0)
        self.assertEqual(periods.days_until(NOW, now=NOW), 0)

    def test_period_progress_is_clamped(self):
        start, end = NOW, NOW + timedelta(days=10)
        self.assertEqual(periods.period_progress(start, end, now=NOW - timedelta(days=1)), 0.0)
        self.assertEqual(periods.period_progress(start, end, now=NOW + timedelta(days=5)), 0.5)
        self.assertEqual(periods.period_progress(start, end, now=NOW + timedelta(days=30)), 1.0)

    def test_period_progress_with_empty_period(self):
        self.assertEqual(periods.period_progress(NOW, NOW, now=NOW), 1.0)

    def test_trial_ending_soon(self):
        self.assertTrue(periods.is_trial_ending_soon(NOW + timedelta(days=3), now=NOW))
        self.assertFalse(periods.is_trial_ending_soon(NOW + timedelta(days=4), now=NOW))
        self.assertTrue(periods.is_trial_ending_soon(NOW + timedelta(days=7), threshold_days=7, now=NOW))
        self.assertFalse(periods.is_trial_ending_soon(None, now=NOW))

    def test_add_interval_uses_calendar_months(self):
        jan31 = timezone.make_aware(datetime(2025, 1, 31, 9, 0))
        self.assertEqual(periods.add_interval(jan31, 'month'), timezone.make_aware(datetime(2025, 2, 28, 9, 0)))
        self.assertEqual(periods.add_interval(jan31, 'year'), timezone.make_aware(datetime(2026, 1, 31, 9, 0)))
        with self.assertRaises(ValidationError):
            periods.add_interval(jan31, 'fortnight')

    def test_trial_end_from(self):
        self.assertEqual(periods.trial_end_from(NOW), NOW + timedelta(days=14))


class EntitlementTest(SimpleTestCase):
    def test_gated_features_follow_min_plan(self):
        for plan_id in [None, 'starter', 'professional', 'enterprise']:
            for feature, min_plan in FEATURE_GATES.items():
                self.assertEqual(
                    entitlements.has_feature(plan_id, feature),
                    entitlements.meets_min_plan(plan_id, min_plan),
                )

    def test_ungated_features_are_always_available(self):
        for plan_id in [None, 'starter', 'enterprise']:
            self.assertTrue(entitlements.has_feature(plan_id, 'contacts'))

    def test_free_tier(self):
        self.assertFalse(entitlements.meets_min_plan(None, 'starter'))
        self.assertEqual(
            entitlements.limits_for(None).as_dict(),
            {'maxUsers': 1, 'maxContacts': 50, 'maxStorageGB': 0.1},
        )

    def test_professional_plan_features(self):
        self.assertTrue(entitlements.has_feature('professional', 'customer-portal'))
        self.assertFalse(entitlements.has_feature('professional', 'sso-saml'))
        self.assertTrue(entitlements.has_feature('enterprise', 'sso-saml'))

    def test_entitled_plan_id_by_status(self):
        subscription = Subscription(plan_id='professional')
        for status, expected in [
            ('active', 'professional'),
            ('trialing', 'professional'),
            ('past_due', None),
            ('canceled', None),
            ('expired', None),
        ]:
            subscription.status = status
            self.assertEqual(entitlements.entitled_plan_id(subscription), expected)
        self.assertIsNone(entitlements.entitled_plan_id(None))

    def test_scheduled_cancellation_keeps_entitlement(self):
        subscription = Subscription(plan_id='starter', status='active', cancel_at_period_end=True)
        self.assertEqual(entitlements.entitled_plan_id(subscription), 'starter')

    def test_snapshot_for_trial(self):
        subscription = Subscription(
            plan_id='starter', status='trialing',
            current_period_start=NOW, current_period_end=NOW + timedelta(days=14),
            trial_end=NOW + timedelta(days=14),
        )
        snapshot = entitlements.snapshot_for(subscription, now=NOW + timedelta(days=12))
        self.assertTrue(snapshot.is_trialing)
        self.assertTrue(snapshot.trial_ending_soon)
        self.assertEqual(snapshot.days_left, 2)
        self.assertTrue(snapshot.has_feature('basic-reports'))
        self.assertFalse(snapshot.has_feature('customer-portal'))

    def test_snapshot_for_free_tier(self):
        snapshot = entitlements.snapshot_for(None, now=NOW)
        self.assertFalse(snapshot.is_active)
        self.assertEqual(snapshot.features, frozenset())
        self.assertEqual(snapshot.as_dict()['limits']['maxContacts'], 50)


class TransitionTest(SimpleTestCase):
    """Transition rules on in-memory records, no database involved."""

    def active(self, **fields):
        values = dict(
            plan_id='starter', status='active', billing_interval='month', amount=2900,
            current_period_start=NOW, current_period_end=NOW + timedelta(days=31),
        )
        values.update(fields)
        return Subscription(**values)

    def test_start_trial(self):
        subscription = Subscription()
        drafts = lifecycle.start(subscription, 'starter', 'month', trial=True, now=NOW)
        self.assertEqual(subscription.status, SubscriptionStatus.TRIALING)
        self.assertEqual(subscription.amount, 0)
        self.assertEqual(subscription.trial_end, NOW + timedelta(days=14))
        self.assertEqual([d.event_type for d in drafts], ['trial_started'])

    def test_start_paid(self):
        subscription = Subscription()
        drafts = lifecycle.start(subscription, 'professional', 'year', trial=False, now=NOW)
        self.assertEqual(subscription.status, SubscriptionStatus.ACTIVE)
        self.assertEqual(subscription.amount, 79000)
        self.assertEqual(subscription.current_period_end, NOW.replace(year=NOW.year + 1))
        self.assertEqual([d.event_type for d in drafts], ['subscription_created', 'payment'])

    def test_change_plan_on_trial_stays_free(self):
        subscription = Subscription()
        lifecycle.start(subscription, 'starter', 'month', trial=True, now=NOW)
        drafts = lifecycle.change_plan(subscription, plan_id='enterprise')
        self.assertEqual(subscription.status, SubscriptionStatus.TRIALING)
        self.assertEqual(subscription.amount, 0)
        self.assertEqual(drafts[0].description, 'Upgraded from Starter to Enterprise plan (monthly)')

    def test_change_plan_requires_a_change(self):
        with self.assertRaises(ValidationError):
            lifecycle.change_plan(self.active())

    def test_downgrade_description(self):
        drafts = lifecycle.change_plan(self.active(plan_id='enterprise', amount=19900), plan_id='starter')
        self.assertTrue(drafts[0].description.startswith('Downgraded'))

    def test_terminal_states_reject_changes(self):
        for status in ('canceled', 'expired'):
            subscription = self.active(status=status, canceled_at=NOW)
            with self.assertRaises(NoActiveSubscription):
                lifecycle.change_plan(subscription, plan_id='professional')
            with self.assertRaises(NoActiveSubscription):
                lifecycle.cancel(subscription, immediate=True, now=NOW)
            with self.assertRaises(NoActiveSubscription):
                lifecycle.record_payment(subscription, succeeded=True, now=NOW)

    def test_reactivating_a_live_subscription_is_rejected(self):
        with self.assertRaises(NothingToReactivate):
            lifecycle.reactivate(self.active(), now=NOW)
        with self.assertRaises(NothingToReactivate):
            lifecycle.reactivate(self.active(status='trialing', amount=0, trial_end=NOW), now=NOW)

    def test_failed_payment_moves_to_past_due(self):
        subscription = self.active()
        drafts = lifecycle.record_payment(subscription, succeeded=False, now=NOW)
        self.assertEqual(subscription.status, SubscriptionStatus.PAST_DUE)
        self.assertEqual(drafts[0].status, 'failed')
        self.assertEqual(subscription.current_period_start, NOW)

    def test_settle_lapsed_period(self):
        later = NOW + timedelta(days=40)
        expiring = self.active()
        self.assertTrue(lifecycle.settle(expiring, later))
        self.assertEqual(expiring.status, SubscriptionStatus.EXPIRED)

        canceling = self.active(cancel_at_period_end=True, canceled_at=NOW)
        self.assertTrue(lifecycle.settle(canceling, later))
        self.assertEqual(canceling.status, SubscriptionStatus.CANCELED)
        self.assertFalse(canceling.cancel_at_period_end)

        self.assertFalse(lifecycle.settle(self.active(), NOW))
        self.assertFalse(lifecycle.settle(self.active(status='past_due'), later))


class BillingLedgerTest(TestCase):
    def setUp(self):
        self.user, self.organization = make_org()

    def test_append_and_list_newest_first(self):
        first = ledger.append(self.organization, 'payment', 2900, 'First', now=NOW)
        second = ledger.append(self.organization, 'credit', 500, 'Second', now=NOW + timedelta(days=1))
        third = ledger.append(self.organization, 'refund', 2900, 'Third', now=NOW + timedelta(days=1))
        self.assertEqual(ledger.list_for(self.organization), [third, second, first])

    def test_history_is_per_organization(self):
        _, other = make_org(name='Other', username='other')
        ledger.append(other, 'payment', 2900, 'Elsewhere', now=NOW)
        self.assertEqual(ledger.list_for(self.organization), [])

    def test_rejects_unknown_type_and_status(self):
        with self.assertRaises(ValidationError):
            ledger.append(self.organization, 'chargeback', 100, 'Nope')
        with self.assertRaises(ValidationError):
            ledger.append(self.organization, 'payment', 100, 'Nope', status='lost')

    def test_rejects_negative_amounts(self):
        with self.assertRaises(ValidationError):
            ledger.append(self.organization, 'payment', -100, 'Nope')
        with self.assertRaises(ValidationError):
            ledger.append(self.organization, 'refund', -100, 'Nope')
        with self.assertRaises(ValidationError):
            ledger.append(self.organization, 'refund', 0, 'Nope')
        with self.assertRaises(ValidationError):
            ledger.append(self.organization, 'payment', 29.0, 'Nope')

    def test_refund_is_a_deduction(self):
        event = ledger.append(self.organization, 'refund', 2900, 'Refund', now=NOW)
        self.assertEqual(event.amount, 2900)
        self.assertEqual(event.signed_amount, -2900)

    def test_invoice_number(self):
        event = ledger.append(self.organization, 'payment', 2900, 'Paid', invoice=True, now=NOW)
        self.assertRegex(event.invoice_number, r'^PS-2503-\d{4}$')
        plain = ledger.append(self.organization, 'credit', 100, 'Credit', now=NOW)
        self.assertEqual(plain.invoice_number, '')
        self.assertIsNone(plain.as_dict()['invoice_number'])

    def test_events_are_immutable(self):
        event = ledger.append(self.organization, 'payment', 2900, 'Paid', now=NOW)
        event.amount = 1
        with self.assertRaises(ImmutableEvent):
            event.save()
        with self.assertRaises(ImmutableEvent):
            event.delete()
        self.assertEqual(BillingEvent.objects.get(pk=event.pk).amount, 2900)


class SubscriptionLifecycleTest(TestCase):
    def setUp(self):
        self.user, self.organization = make_org()

    def events(self):
        return [event.type for event in ledger.list_for(self.organization)]

    def test_create_trial(self):
        result = lifecycle.create(self.organization, 'starter', 'month', want_trial=True, now=NOW)
        subscription = result.subscription
        self.assertEqual(subscription.status, 'trialing')
        self.assertEqual(subscription.amount, 0)
        self.assertEqual(subscription.trial_end, NOW + timedelta(days=14))
        self.assertEqual(self.events(), ['trial_started'])
        self.assertEqual(result.event.amount, 0)

    def test_create_paid(self):
        subscription = lifecycle.create(self.organization, 'professional', 'month', now=NOW).subscription
        self.assertEqual(subscription.status, 'active')
        self.assertEqual(subscription.amount, 7900)
        self.assertEqual(subscription.current_period_start, NOW)
        self.assertEqual(subscription.current_period_end, NOW + timedelta(days=31))
        self.assertIsNone(subscription.trial_end)
        self.assertEqual(sorted(self.events()), ['payment', 'subscription_created'])

    def test_create_twice_is_rejected(self):
        lifecycle.create(self.organization, 'starter', 'month', want_trial=True, now=NOW)
        with self.assertRaises(AlreadySubscribed):
            lifecycle.create(self.organization, 'starter', 'month', want_trial=True, now=NOW)
        self.assertEqual(Subscription.objects.filter(organization=self.organization).count(), 1)

    def test_create_validates_input(self):
        with self.assertRaises(UnknownPlan):
            lifecycle.create(self.organization, 'gold', 'month', now=NOW)
        with self.assertRaises(ValidationError):
            lifecycle.create(self.organization, 'starter', 'weekly', now=NOW)
        self.assertFalse(lifecycle.has_ever_subscribed(self.organization))

    def test_trial_is_granted_once_per_organization(self):
        lifecycle.create(self.organization, 'starter', 'month', now=NOW)
        lifecycle.cancel_subscription(self.organization, immediate=True, now=NOW)

        result = lifecycle.create(self.organization, 'starter', 'month', want_trial=True, now=NOW + timedelta(days=1))
        self.assertEqual(result.subscription.status, 'active')
        self.assertEqual(result.subscription.amount, 2900)
        self.assertNotIn('trial_started', self.events())

    def test_strict_trial_request_is_rejected(self):
        lifecycle.create(self.organization, 'starter', 'month', now=NOW)
        lifecycle.cancel_subscription(self.organization, immediate=True, now=NOW)
        with self.assertRaises(TrialNotAvailable):
            lifecycle.create(self.organization, 'starter', 'month', want_trial=True, strict_trial=True, now=NOW)

    def test_upgrade_keeps_the_period(self):
        original = lifecycle.create(self.organization, 'starter', 'month', now=NOW).subscription
        result = lifecycle.update(self.organization, plan_id='enterprise', now=NOW + timedelta(days=10))
        subscription = result.subscription
        self.assertEqual(subscription.plan_id, 'enterprise')
        self.assertEqual(subscription.amount, 19900)
        self.assertEqual(subscription.current_period_start, original.current_period_start)
        self.assertEqual(subscription.current_period_end, original.current_period_end)
        self.assertEqual(self.events().count('plan_change'), 1)
        self.assertEqual(result.event.type, 'plan_change')

    def test_interval_change_recomputes_amount(self):
        lifecycle.create(self.organization, 'professional', 'month', now=NOW)
        subscription = lifecycle.update(self.organization, billing_interval='year', now=NOW).subscription
        self.assertEqual(subscription.amount, 79000)
        self.assertEqual(subscription.current_period_end, NOW + timedelta(days=31))

    def test_update_without_subscription(self):
        with self.assertRaises(NoActiveSubscription):
            lifecycle.update(self.organization, plan_id='enterprise', now=NOW)

    def test_update_with_unknown_plan(self):
        lifecycle.create(self.organization, 'starter', 'month', now=NOW)
        with self.assertRaises(UnknownPlan):
            lifecycle.update(self.organization, plan_id='platinum', now=NOW)

    def test_scheduled_cancel_then_reactivate(self):
        lifecycle.create(self.organization, 'professional', 'year', now=NOW)
        canceled = lifecycle.cancel_subscription(self.organization, immediate=False, now=NOW + timedelta(days=3)).subscription
        self.assertEqual(canceled.status, 'active')
        self.assertTrue(canceled.cancel_at_period_end)
        self.assertEqual(canceled.canceled_at, NOW + timedelta(days=3))
        self.assertEqual(entitlements.entitled_plan_id(canceled), 'professional')

        subscription = lifecycle.reactivate_subscription(self.organization, now=NOW + timedelta(days=4)).subscription
        self.assertEqual(subscription.plan_id, 'professional')
        self.assertEqual(subscription.billing_interval, 'year')
        self.assertFalse(subscription.cancel_at_period_end)
        self.assertIsNone(subscription.canceled_at)
        self.assertEqual(subscription.current_period_start, NOW)

    def test_immediate_cancel_removes_entitlement(self):
        lifecycle.create(self.organization, 'enterprise', 'month', now=NOW)
        lifecycle.cancel_subscription(self.organization, immediate=True, now=NOW)

        subscription = lifecycle.get_current(self.organization, now=NOW)
        self.assertEqual(subscription.status, 'canceled')
        self.assertFalse(subscription.cancel_at_period_end)
        self.assertIsNotNone(subscription.canceled_at)
        plan_id = entitlements.entitled_plan_id(subscription)
        for feature in FEATURE_GATES:
            self.assertFalse(entitlements.has_feature(plan_id, feature))

    def test_cancel_twice_is_rejected(self):
        lifecycle.create(self.organization, 'starter', 'month', now=NOW)
        lifecycle.cancel_subscription(self.organization, immediate=True, now=NOW)
        with self.assertRaises(NoActiveSubscription):
            lifecycle.cancel_subscription(self.organization, immediate=True, now=NOW)

    def test_reactivate_canceled_starts_a_new_period(self):
        lifecycle.create(self.organization, 'starter', 'month', want_trial=True, now=NOW)
        lifecycle.cancel_subscription(self.organization, immediate=True, now=NOW)
        later = NOW + timedelta(days=60)

        result = lifecycle.reactivate_subscription(self.organization, now=later)
        subscription = result.subscription
        self.assertEqual(subscription.status, 'active')
        self.assertEqual(subscription.plan_id, 'starter')
        self.assertEqual(subscription.amount, 2900)
        self.assertEqual(subscription.current_period_start, later)
        self.assertEqual(subscription.current_period_end, periods.add_interval(later, 'month'))
        self.assertIsNone(subscription.trial_end)
        self.assertEqual(result.event.type, 'payment')

    def test_reactivate_without_subscription(self):
        with self.assertRaises(NothingToReactivate):
            lifecycle.reactivate_subscription(self.organization, now=NOW)

    def test_payment_outcomes(self):
        lifecycle.create(self.organization, 'starter', 'month', now=NOW)

        failed = lifecycle.record_payment_outcome(self.organization, succeeded=False, now=NOW + timedelta(days=30))
        self.assertEqual(failed.subscription.status, 'past_due')
        self.assertEqual(failed.event.status, 'failed')
        self.assertEqual(failed.event.invoice_number, '')

        paid = lifecycle.record_payment_outcome(self.organization, succeeded=True, now=NOW + timedelta(days=33))
        self.assertEqual(paid.subscription.status, 'active')
        self.assertEqual(paid.event.status, 'succeeded')
        self.assertEqual(paid.subscription.current_period_start, NOW + timedelta(days=33))

    def test_successful_payment_converts_a_trial(self):
        lifecycle.create(self.organization, 'professional', 'month', want_trial=True, now=NOW)
        result = lifecycle.record_payment_outcome(self.organization, succeeded=True, now=NOW + timedelta(days=13))
        self.assertEqual(result.subscription.status, 'active')
        self.assertEqual(result.subscription.amount, 7900)
        self.assertIsNone(result.subscription.trial_end)

    def test_payment_without_subscription(self):
        with self.assertRaises(NoActiveSubscription):
            lifecycle.record_payment_outcome(self.organization, succeeded=True, now=NOW)

    def test_get_current_expires_a_lapsed_period(self):
        lifecycle.create(self.organization, 'starter', 'month', now=NOW)
        self.assertEqual(lifecycle.get_current(self.organization, now=NOW + timedelta(days=5)).status, 'active')

        subscription = lifecycle.get_current(self.organization, now=NOW + timedelta(days=40))
        self.assertEqual(subscription.status, 'expired')
        self.assertEqual(Subscription.objects.get(pk=subscription.pk).status, 'expired')

        revived = lifecycle.reactivate_subscription(self.organization, now=NOW + timedelta(days=41)).subscription
        self.assertEqual(revived.status, 'active')

    def test_get_current_completes_a_scheduled_cancellation(self):
        lifecycle.create(self.organization, 'starter', 'month', now=NOW)
        lifecycle.cancel_subscription(self.organization, immediate=False, now=NOW)
        subscription = lifecycle.get_current(self.organization, now=NOW + timedelta(days=40))
        self.assertEqual(subscription.status, 'canceled')
        self.assertEqual(subscription.canceled_at, NOW)

    def test_get_current_without_subscription(self):
        self.assertIsNone(lifecycle.get_current(self.organization, now=NOW))

    def test_reactivate_after_a_lapsed_scheduled_cancel_starts_a_new_period(self):
        lifecycle.create(self.organization, 'starter', 'month', now=NOW)
        lifecycle.cancel_subscription(self.organization, immediate=False, now=NOW)
        later = NOW + timedelta(days=40)

        result = lifecycle.reactivate_subscription(self.organization, now=later)
        self.assertEqual(result.subscription.status, 'active')
        self.assertEqual(result.subscription.current_period_start, later)
        self.assertEqual(result.subscription.current_period_end, periods.add_interval(later, 'month'))
        self.assertEqual(result.event.type, 'payment')
        self.assertEqual(lifecycle.get_current(self.organization, now=later).status, 'active')

    def test_create_after_a_lapsed_period_starts_over(self):
        lifecycle.create(self.organization, 'starter', 'month', now=NOW)
        later = NOW + timedelta(days=40)

        subscription = lifecycle.create(self.organization, 'professional', 'month', want_trial=True, now=later).subscription
        self.assertEqual(subscription.status, 'active')
        self.assertEqual(subscription.plan_id, 'professional')
        self.assertEqual(subscription.current_period_start, later)
        self.assertEqual(Subscription.objects.filter(organization=self.organization).count(), 1)

    def test_commands_see_a_lapsed_period_as_expired(self):
        lifecycle.create(self.organization, 'starter', 'month', now=NOW)
        later = NOW + timedelta(days=40)
        with self.assertRaises(NoActiveSubscription):
            lifecycle.update(self.organization, plan_id='enterprise', now=later)
        with self.assertRaises(NoActiveSubscription):
            lifecycle.cancel_subscription(self.organization, immediate=True, now=later)
        with self.assertRaises(NoActiveSubscription):
            lifecycle.record_payment_outcome(self.organization, succeeded=True, now=later)
        self.assertEqual(lifecycle.get_current(self.organization, now=later).status, 'expired')


class CheckoutOrchestratorTest(TestCase):
    def setUp(self):
        self.user, self.organization = make_org()
        self.membership = Membership.objects.get(user=self.user)
        self.checkout = CheckoutOrchestrator(BillingSession.from_membership(self.membership), now=NOW)

    def member_checkout(self):
        member = User.objects.create_user(username='member', password='testpassword')
        membership = Membership.objects.create(user=member, organization=self.organization, role=Membership.Role.MEMBER)
        return CheckoutOrchestrator(BillingSession.from_membership(membership), now=NOW)

    def test_session_roles(self):
        self.assertTrue(self.checkout.session.is_admin)
        self.assertFalse(self.member_checkout().session.is_admin)

    def test_subscribe_with_payment_method(self):
        subscription = self.checkout.subscribe('professional', 'month', payment_method=card(last4='1881'))
        method = self.checkout.payment_method()
        self.assertEqual(method.last4, '1881')
        self.assertTrue(method.is_default)
        self.assertEqual(subscription.payment_method, method)
        self.assertEqual(subscription.status, 'active')
        for event in self.checkout.billing_history():
            self.assertEqual(event.payment_method, method)
            self.assertEqual(event.as_dict()['payment_method_id'], method.pk)

    def test_events_without_payment_method(self):
        self.checkout.subscribe('starter', want_trial=True)
        self.assertIsNone(self.checkout.billing_history()[0].payment_method)

    def test_failed_subscribe_stores_no_payment_method(self):
        self.checkout.subscribe('starter')
        with self.assertRaises(AlreadySubscribed):
            self.checkout.subscribe('starter', payment_method=card())
        self.assertFalse(PaymentMethod.objects.filter(organization=self.organization).exists())

    def test_members_cannot_change_billing(self):
        member = self.member_checkout()
        with self.assertRaises(Forbidden):
            member.subscribe('starter')
        self.checkout.subscribe('starter')
        for call in (
            lambda: member.switch_plan(plan_id='enterprise'),
            lambda: member.cancel(immediate=True),
            lambda: member.reactivate(),
            lambda: member.update_payment_method(card()),
        ):
            with self.assertRaises(Forbidden):
                call()
        self.assertEqual(member.current_subscription().plan_id, 'starter')
        self.assertEqual(len(member.billing_history()), 2)

    def test_second_trial_is_rejected(self):
        self.checkout.subscribe('starter', want_trial=True)
        self.checkout.cancel(immediate=True)
        with self.assertRaises(TrialNotAvailable):
            self.checkout.subscribe('starter', want_trial=True)

    def test_already_subscribed_takes_precedence_over_trial(self):
        self.checkout.subscribe('starter', want_trial=True)
        with self.assertRaises(AlreadySubscribed):
            self.checkout.subscribe('starter', want_trial=True)

    def test_switch_plan_without_subscription(self):
        with self.assertRaises(NoActiveSubscription):
            self.checkout.switch_plan(plan_id='professional')

    def test_update_payment_method_replaces_default(self):
        self.checkout.subscribe('starter', payment_method=card(last4='1111'))
        method = self.checkout.update_payment_method(card(last4='2222', brand='Mastercard'))

        self.assertEqual(PaymentMethod.objects.filter(organization=self.organization).count(), 2)
        self.assertEqual(PaymentMethod.objects.filter(organization=self.organization, is_default=True).count(), 1)
        self.assertEqual(self.checkout.payment_method(), method)
        self.assertEqual(Subscription.objects.get(organization=self.organization).payment_method, method)

    def test_storing_a_payment_method_charges_nothing(self):
        self.checkout.update_payment_method(card())
        self.assertEqual(self.checkout.billing_history(), [])
        self.assertIsNone(self.checkout.current_subscription())

    def test_simulate_payment(self):
        self.checkout.subscribe('starter')
        event, subscription = self.checkout.simulate_payment('failed')
        self.assertEqual(event.status, 'failed')
        self.assertEqual(subscription.status, 'past_due')
        with self.assertRaises(ValidationError):
            self.checkout.simulate_payment('maybe')

    def test_entitlements(self):
        self.assertFalse(self.checkout.entitlements().is_active)
        self.checkout.subscribe('professional', want_trial=True)
        snapshot = self.checkout.entitlements()
        self.assertTrue(snapshot.is_trialing)
        self.assertEqual(snapshot.days_left, 14)
        self.assertTrue(snapshot.has_feature('customer-portal'))


class PaymentMethodValidationTest(SimpleTestCase):
    def test_valid_card(self):
        self.assertEqual(
            clean_payment_method({'last4': 4242, 'exp_month': '7', 'exp_year': NOW.year + 1}, now=NOW),
            {'brand': 'Visa', 'last4': '4242', 'exp_month': 7, 'exp_year': NOW.year + 1},
        )

    def test_invalid_cards(self):
        for data in (
            card(last4='42'),
            card(last4='abcd'),
            card(exp_month=13),
            card(exp_month='soon'),
            card(exp_year=28),
            card(exp_year=NOW.year - 1),
            'visa',
        ):
            with self.assertRaises(ValidationError):
                clean_payment_method(data, now=NOW)


@override_settings(SECURE_SSL_REDIRECT=False)
class SubscriptionViewsTest(TestCase):
    def setUp(self):
        self.user, self.organization = make_org()
        self.client.force_login(self.user)

    def post(self, name, data=None, method='post'):
        return getattr(self.client, method)(
            reverse(f'subscriptions:{name}'),
            data=json.dumps(data or {}),
            content_type='application/json',
        )

    def test_plans_are_public(self):
        self.client.logout()
        response = self.client.get(reverse('subscriptions:plans'))
        self.assertEqual(response.status_code, 200)
        self.assertEqual([plan['id'] for plan in response.json()['plans']], ['starter', 'professional', 'enterprise'])

    def test_current_requires_login(self):
        self.client.logout()
        response = self.client.get(reverse('subscriptions:current'))
        self.assertEqual(response.status_code, 401)

    def test_current_requires_an_organization(self):
        loner = User.objects.create_user(username='loner', password='testpassword')
        self.client.force_login(loner)
        response = self.client.get(reverse('subscriptions:current'))
        self.assertEqual(response.status_code, 403)

    def test_current_without_subscription(self):
        response = self.client.get(reverse('subscriptions:current'))
        self.assertEqual(response.status_code, 200)
        self.assertIsNone(response.json()['subscription'])

    def test_create_trial(self):
        response = self.post('create', {'plan_id': 'starter', 'billing_interval': 'month', 'trial': True})
        self.assertEqual(response.status_code, 201)
        subscription = response.json()['subscription']
        self.assertEqual(subscription['status'], 'trialing')
        self.assertEqual(subscription['amount'], 0)
        self.assertIsNotNone(subscription['trial_end'])

        history = self.client.get(reverse('subscriptions:billing_history')).json()['events']
        self.assertEqual([event['type'] for event in history], ['trial_started'])

    def test_create_twice_conflicts(self):
        self.post('create', {'plan_id': 'starter'})
        response = self.post('create', {'plan_id': 'starter'})
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()['error'], 'already_subscribed')
        self.assertIn('already has', response.json()['message'])

    def test_create_with_unknown_plan(self):
        response = self.post('create', {'plan_id': 'platinum'})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['error'], 'unknown_plan')

    def test_invalid_json(self):
        response = self.client.post(reverse('subscriptions:create'), data='{not json', content_type='application/json')
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['error'], 'validation_error')

    def test_member_is_forbidden(self):
        member = User.objects.create_user(username='member', password='testpassword')
        Membership.objects.create(user=member, organization=self.organization, role=Membership.Role.MANAGER)
        self.client.force_login(member)
        response = self.post('create', {'plan_id': 'starter'})
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()['error'], 'forbidden')
        self.assertEqual(self.client.get(reverse('subscriptions:current')).status_code, 200)

    def test_update_cancel_reactivate(self):
        self.post('create', {'plan_id': 'starter'})

        response = self.post('update', {'plan_id': 'enterprise'}, method='put')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['subscription']['amount'], 19900)

        response = self.post('cancel', {'immediate': False})
        self.assertTrue(response.json()['subscription']['cancel_at_period_end'])

        response = self.post('reactivate')
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()['subscription']['cancel_at_period_end'])
        self.assertIsNone(response.json()['subscription']['canceled_at'])

    def test_update_without_subscription(self):
        response = self.post('update', {'plan_id': 'enterprise'}, method='put')
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()['error'], 'no_active_subscription')

    def test_reactivate_without_subscription(self):
        response = self.post('reactivate')
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()['error'], 'nothing_to_reactivate')

    def test_payment_method(self):
        self.assertIsNone(self.client.get(reverse('subscriptions:payment_method')).json()['payment_method'])
        response = self.post('payment_method', card(last4='4444'), method='put')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['payment_method']['last4'], '4444')
        self.assertEqual(self.client.get(reverse('subscriptions:payment_method')).json()['payment_method']['last4'], '4444')

    def test_simulate_payment(self):
        response = self.post('simulate_payment')
        self.assertEqual(response.status_code, 404)

        self.post('create', {'plan_id': 'professional', 'billing_interval': 'year'})
        response = self.post('simulate_payment', {'outcome': 'succeeded'})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['event']['type'], 'payment')
        self.assertEqual(response.json()['event']['amount'], 79000)
        self.assertEqual(response.json()['subscription']['status'], 'active')

    def test_entitlements(self):
        response = self.client.get(reverse('subscriptions:entitlements'))
        self.assertEqual(response.json()['entitlements']['limits'], {'maxUsers': 1, 'maxContacts': 50, 'maxStorageGB': 0.1})

        self.post('create', {'plan_id': 'professional'})
        data = self.client.get(reverse('subscriptions:entitlements')).json()['entitlements']
        self.assertEqual(data['plan_id'], 'professional')
        self.assertIn('customer-portal', data['features'])
        self.assertNotIn('sso-saml', data['features'])

    def test_wrong_method(self):
        self.assertEqual(self.client.get(reverse('subscriptions:create')).status_code, 405)


class GateDecoratorTest(TestCase):
    def setUp(self):
        self.factory = RequestFactory()
        self.user, self.organization = make_org()

        @feature_required('customer-portal')
        def portal(request):
            return JsonResponse({'ok': True})

        @plan_required('enterprise')
        def audit(request):
            return JsonResponse({'ok': True})

        self.portal = portal
        self.audit = audit

    def request(self):
        request = self.factory.get('/portal/')
        request.user = self.user
        return request

    def test_free_tier_is_blocked(self):
        response = self.portal(self.request())
        self.assertEqual(response.status_code, 403)
        self.assertEqual(json.loads(response.content)['error'], 'upgrade_required')

    def test_professional_plan(self):
        lifecycle.create(self.organization, 'professional', 'month')
        self.assertEqual(self.portal(self.request()).status_code, 200)
        self.assertEqual(self.audit(self.request()).status_code, 403)

    def test_unknown_min_plan(self):
        with self.assertRaises(UnknownPlan):
            plan_required('diamond')
