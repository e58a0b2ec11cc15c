"""
Entitlement resolution.

Maps a plan id (or the free tier, ``None``) to features and resource limits.
Everything here is a pure function of an already-fetched subscription
snapshot: no queries, no writes. Callers keep the snapshot fresh.
"""

from dataclasses import dataclass, field

from . import periods
from .plans import FEATURE_GATES, Limits, get_plan, rank_of

FREE_TIER_LIMITS = Limits(max_users=1, max_contacts=50, max_storage_gb=0.1)


def meets_min_plan(current_plan_id, min_plan_id):
    """False on the free tier; otherwise compares tier ranks."""
    if not current_plan_id:
        return False
    return rank_of(current_plan_id) >= rank_of(min_plan_id)


def has_feature(current_plan_id, feature):
    min_plan_id = FEATURE_GATES.get(feature)
    if min_plan_id is None:
        # Ungated features are available to everyone.
        return True
    return meets_min_plan(current_plan_id, min_plan_id)


def limits_for(current_plan_id):
    if not current_plan_id:
        return FREE_TIER_LIMITS
    return get_plan(current_plan_id).limits


def features_for(current_plan_id):
    if not current_plan_id:
        return frozenset()
    return get_plan(current_plan_id).features


def entitled_plan_id(subscription):
    """
    The plan id a subscription snapshot grants, or ``None`` for the free tier.
    Only active and trialing subscriptions are entitled; a subscription that
    is scheduled to cancel keeps its status, and so its entitlement, until
    the period ends.
    """
    if subscription is None or not subscription.is_entitled:
        return None
    return subscription.plan_id


@dataclass(frozen=True)
class EntitlementSnapshot:
    plan_id: object
    is_active: bool
    is_trialing: bool
    limits: Limits
    features: frozenset = field(default_factory=frozenset)
    days_left: int = 0
    period_progress: float = 0.0
    trial_ending_soon: bool = False
    cancel_at_period_end: bool = False

    def has_feature(self, feature):
        return has_feature(self.plan_id, feature)

    def meets_min_plan(self, min_plan_id):
        return meets_min_plan(self.plan_id, min_plan_id)

    def as_dict(self):
        return {
            'plan_id': self.plan_id,
            'is_active': self.is_active,
            'is_trialing': self.is_trialing,
            'limits': self.limits.as_dict(),
            'features': sorted(self.features),
            'days_left': self.days_left,
            'period_progress': self.period_progress,
            'trial_ending_soon': self.trial_ending_soon,
            'cancel_at_period_end': self.cancel_at_period_end,
        }


def snapshot_for(subscription, now=None):
    """Everything a billing widget needs to render, evaluated at ``now``."""
    plan_id = entitled_plan_id(subscription)
    if plan_id is None:
        return EntitlementSnapshot(
            plan_id=None,
            is_active=False,
            is_trialing=False,
            limits=FREE_TIER_LIMITS,
        )

    is_trialing = subscription.status == 'trialing'
    return EntitlementSnapshot(
        plan_id=plan_id,
        is_active=True,
        is_trialing=is_trialing,
        limits=limits_for(plan_id),
        features=features_for(plan_id),
        days_left=periods.days_until(subscription.current_period_end, now=now),
        period_progress=periods.period_progress(
            subscription.current_period_start, subscription.current_period_end, now=now,
        ),
        trial_ending_soon=is_trialing and periods.is_trial_ending_soon(subscription.trial_end, now=now),
        cancel_at_period_end=subscription.cancel_at_period_end,
    )
