"""
Plan catalog.

A static, versioned description of the purchasable tiers. Tier rank drives
every comparison elsewhere in the engine; plan ids are never compared as
strings. Prices are stored in cents.
"""

from dataclasses import dataclass, field

from django.db import models

from .exceptions import UnknownPlan, ValidationError

CATALOG_VERSION = '2025-01'

# Sentinel for "no limit" on a numeric resource.
UNLIMITED = -1


class BillingInterval(models.TextChoices):
    MONTH = 'month', 'Monthly'
    YEAR = 'year', 'Annual'


STARTER = 'starter'
PROFESSIONAL = 'professional'
ENTERPRISE = 'enterprise'

# Feature -> minimum plan id. Features not listed here are available on every
# plan, including the free tier.
FEATURE_GATES = {
    'email-integration': STARTER,
    'basic-reports': STARTER,

    'marketing-automation': PROFESSIONAL,
    'inventory-management': PROFESSIONAL,
    'document-management': PROFESSIONAL,
    'project-wizards': PROFESSIONAL,
    'advanced-reports': PROFESSIONAL,
    'customer-portal': PROFESSIONAL,

    'sso-saml': ENTERPRISE,
    'audit-log': ENTERPRISE,
    'api-access': ENTERPRISE,
    'custom-integrations': ENTERPRISE,
    'priority-support': ENTERPRISE,
}


@dataclass(frozen=True)
class Limits:
    max_users: int
    max_contacts: int
    max_storage_gb: float

    def is_unlimited(self, resource):
        return getattr(self, resource) == UNLIMITED

    def as_dict(self):
        return {
            'maxUsers': self.max_users,
            'maxContacts': self.max_contacts,
            'maxStorageGB': self.max_storage_gb,
        }


@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    rank: int
    price_monthly: int
    price_annual: int
    limits: Limits
    currency: str = 'USD'
    features: frozenset = field(default_factory=frozenset)
    highlights: tuple = ()

    def price_for(self, interval):
        if interval == BillingInterval.MONTH:
            return self.price_monthly
        if interval == BillingInterval.YEAR:
            return self.price_annual
        raise ValidationError(
            f"'{interval}' is not a valid billing interval.",
            details={'billing_interval': interval, 'allowed': list(BillingInterval.values)},
        )

    def as_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'rank': self.rank,
            'priceMonthly': self.price_monthly,
            'priceAnnual': self.price_annual,
            'currency': self.currency,
            'limits': self.limits.as_dict(),
            'features': sorted(self.features),
            'highlights': list(self.highlights),
        }


_RANKS = {STARTER: 1, PROFESSIONAL: 2, ENTERPRISE: 3}


def _features_up_to(rank):
    return frozenset(feature for feature, min_plan in FEATURE_GATES.items() if _RANKS[min_plan] <= rank)


def _plan(plan_id, name, price_monthly, price_annual, limits, highlights):
    rank = _RANKS[plan_id]
    return Plan(
        id=plan_id,
        name=name,
        rank=rank,
        price_monthly=price_monthly,
        price_annual=price_annual,
        limits=limits,
        features=_features_up_to(rank),
        highlights=tuple(highlights),
    )


_PLANS = {
    STARTER: _plan(
        STARTER, 'Starter', 2900, 29000,
        Limits(max_users=3, max_contacts=500, max_storage_gb=2),
        [
            'Core CRM (Contacts, Deals, Tasks)',
            'Up to 3 users',
            'Up to 500 contacts',
            'Email integration',
            'Basic reports',
            '2 GB storage',
            'Community support',
        ],
    ),
    PROFESSIONAL: _plan(
        PROFESSIONAL, 'Professional', 7900, 79000,
        Limits(max_users=10, max_contacts=5000, max_storage_gb=25),
        [
            'Everything in Starter',
            'Up to 10 users',
            'Up to 5,000 contacts',
            'Marketing automation',
            'Inventory management',
            'Document management',
            'Project Wizards (3D planners)',
            'Advanced reports & analytics',
            'Customer portal',
            '25 GB storage',
            'Email support',
        ],
    ),
    ENTERPRISE: _plan(
        ENTERPRISE, 'Enterprise', 19900, 199000,
        Limits(max_users=UNLIMITED, max_contacts=UNLIMITED, max_storage_gb=100),
        [
            'Everything in Professional',
            'Unlimited users',
            'Unlimited contacts',
            'Dedicated account manager',
            'Custom integrations',
            'SSO / SAML support',
            'Audit log',
            'Priority support (24/7)',
            'API access',
            '100 GB storage',
        ],
    ),
}

PLAN_CHOICES = [(plan.id, plan.name) for plan in sorted(_PLANS.values(), key=lambda p: p.rank)]


def get_plan(plan_id):
    try:
        return _PLANS[plan_id]
    except (KeyError, TypeError):
        raise UnknownPlan(plan_id) from None


def list_plans():
    """All plans in ascending rank order."""
    return sorted(_PLANS.values(), key=lambda plan: plan.rank)


def rank_of(plan_id):
    return get_plan(plan_id).rank


def price_for(plan_id, interval):
    return get_plan(plan_id).price_for(interval)
