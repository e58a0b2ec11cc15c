"""
Billing exceptions.

Every rejection the subscription engine produces is a business-rule decision
the organization admin needs to understand, so each error carries a stable
``code``, a human readable ``message`` and optional ``details``. Views turn
these into JSON responses using ``status_code``.
"""


class BillingError(Exception):
    """Base exception for all billing-related errors."""

    code = 'billing_error'
    status_code = 400
    default_message = 'The billing request could not be completed.'

    def __init__(self, message=None, details=None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self):
        """Convert exception to dictionary for API responses."""
        return {
            'error': self.code,
            'message': self.message,
            'details': self.details,
        }


class UnknownPlan(BillingError):
    code = 'unknown_plan'
    default_message = 'The requested plan does not exist.'

    def __init__(self, plan_id, message=None):
        self.plan_id = plan_id
        super().__init__(
            message or f"'{plan_id}' is not a valid plan.",
            details={'plan_id': plan_id},
        )


class AlreadySubscribed(BillingError):
    code = 'already_subscribed'
    status_code = 409
    default_message = 'This organization already has an active subscription.'


class NoActiveSubscription(BillingError):
    code = 'no_active_subscription'
    status_code = 404
    default_message = 'This organization has no active subscription.'


class NothingToReactivate(BillingError):
    code = 'nothing_to_reactivate'
    status_code = 404
    default_message = 'There is no canceled or scheduled-to-cancel subscription to reactivate.'


class Forbidden(BillingError):
    code = 'forbidden'
    status_code = 403
    default_message = 'Only organization admins can manage billing.'


class ValidationError(BillingError):
    code = 'validation_error'
    default_message = 'The billing request is malformed.'


class TrialNotAvailable(ValidationError):
    code = 'trial_not_available'
    default_message = 'Free trials are available once per organization, and this organization has already subscribed before.'


class ImmutableEvent(BillingError):
    code = 'immutable_event'
    status_code = 409
    default_message = 'Billing events cannot be changed or deleted once recorded.'
