from functools import wraps

from django.http import JsonResponse

from users.decorators import membership_required

from . import entitlements, lifecycle
from .plans import get_plan


def _upgrade_required(message, **details):
    return JsonResponse({'error': 'upgrade_required', 'message': message, 'details': details}, status=403)


def feature_required(feature):
    """
    Gate a view on a named feature of the organization's current plan. The
    entitlement snapshot is attached to the request as ``request.entitlements``.
    """
    def decorator(view_func):
        @membership_required
        @wraps(view_func)
        def _wrapped_view(request, *args, **kwargs):
            subscription = lifecycle.get_current(request.membership.organization)
            snapshot = entitlements.snapshot_for(subscription)
            if not snapshot.has_feature(feature):
                return _upgrade_required(
                    f"Your current plan does not include '{feature}'.",
                    feature=feature, plan_id=snapshot.plan_id,
                )
            request.entitlements = snapshot
            return view_func(request, *args, **kwargs)
        return _wrapped_view
    return decorator


def plan_required(min_plan_id):
    """Gate a view on a minimum plan tier."""
    min_plan = get_plan(min_plan_id)

    def decorator(view_func):
        @membership_required
        @wraps(view_func)
        def _wrapped_view(request, *args, **kwargs):
            subscription = lifecycle.get_current(request.membership.organization)
            snapshot = entitlements.snapshot_for(subscription)
            if not snapshot.meets_min_plan(min_plan.id):
                return _upgrade_required(
                    f"This requires the {min_plan.name} plan or higher.",
                    min_plan_id=min_plan.id, plan_id=snapshot.plan_id,
                )
            request.entitlements = snapshot
            return view_func(request, *args, **kwargs)
        return _wrapped_view
    return decorator
