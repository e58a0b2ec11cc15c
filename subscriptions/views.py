import json
import logging
from functools import wraps

from django.http import JsonResponse
from django.views.decorators.http import require_GET, require_http_methods, require_POST

from users.decorators import membership_required

from .checkout import BillingSession, CheckoutOrchestrator
from .exceptions import BillingError, ValidationError
from .plans import CATALOG_VERSION, BillingInterval, list_plans

logger = logging.getLogger(__name__)


def _json_body(request):
    if not request.body:
        return {}
    try:
        body = json.loads(request.body)
    except (ValueError, UnicodeDecodeError):
        raise ValidationError('The request body is not valid JSON.') from None
    if not isinstance(body, dict):
        raise ValidationError('The request body must be a JSON object.')
    return body


def billing_view(view_func):
    """
    Build the checkout orchestrator for the requesting member and translate
    billing rejections into JSON error responses.
    """
    @membership_required
    @wraps(view_func)
    def _wrapped_view(request, *args, **kwargs):
        checkout = CheckoutOrchestrator(BillingSession.from_membership(request.membership))
        try:
            return view_func(request, checkout, *args, **kwargs)
        except BillingError as e:
            logger.warning(
                "Billing request %s %s rejected for org %s: %s (%s)",
                request.method, request.path, request.membership.organization_id, e.code, e.message,
            )
            return JsonResponse(e.to_dict(), status=e.status_code)
    return _wrapped_view


@require_GET
def plans(request):
    return JsonResponse({
        'version': CATALOG_VERSION,
        'plans': [plan.as_dict() for plan in list_plans()],
    })


@require_GET
@billing_view
def current_subscription(request, checkout):
    subscription = checkout.current_subscription()
    return JsonResponse({'subscription': subscription.as_dict() if subscription else None})


@require_POST
@billing_view
def create_subscription(request, checkout):
    body = _json_body(request)
    subscription = checkout.subscribe(
        body.get('plan_id'),
        billing_interval=body.get('billing_interval') or BillingInterval.MONTH,
        payment_method=body.get('payment_method'),
        want_trial=body.get('trial') is True,
    )
    return JsonResponse({'subscription': subscription.as_dict()}, status=201)


@require_http_methods(['PUT', 'POST'])
@billing_view
def update_subscription(request, checkout):
    body = _json_body(request)
    subscription = checkout.switch_plan(
        plan_id=body.get('plan_id'),
        billing_interval=body.get('billing_interval'),
    )
    return JsonResponse({'subscription': subscription.as_dict()})


@require_POST
@billing_view
def cancel_subscription(request, checkout):
    body = _json_body(request)
    subscription = checkout.cancel(immediate=body.get('immediate') is True)
    return JsonResponse({'subscription': subscription.as_dict()})


@require_POST
@billing_view
def reactivate_subscription(request, checkout):
    subscription = checkout.reactivate()
    return JsonResponse({'subscription': subscription.as_dict()})


@require_GET
@billing_view
def billing_history(request, checkout):
    return JsonResponse({'events': [event.as_dict() for event in checkout.billing_history()]})


@require_http_methods(['GET', 'PUT'])
@billing_view
def payment_method(request, checkout):
    if request.method == 'PUT':
        method = checkout.update_payment_method(_json_body(request))
    else:
        method = checkout.payment_method()
    return JsonResponse({'payment_method': method.as_dict() if method else None})


@require_POST
@billing_view
def simulate_payment(request, checkout):
    body = _json_body(request)
    event, subscription = checkout.simulate_payment(outcome=body.get('outcome') or 'succeeded')
    return JsonResponse({'event': event.as_dict(), 'subscription': subscription.as_dict()})


@require_GET
@billing_view
def entitlements(request, checkout):
    return JsonResponse({'entitlements': checkout.entitlements().as_dict()})
