from functools import wraps
from django.http import JsonResponse
from .models import Membership


def membership_required(view_func):
    """
    Resolve the requesting user's organization membership and attach it to
    the request as ``request.membership``. Answers 401 for anonymous users
    and 403 for users that belong to no organization.
    """
    @wraps(view_func)
    def _wrapped_view(request, *args, **kwargs):
        if not request.user.is_authenticated:
            return JsonResponse({'error': 'unauthorized', 'message': 'Authentication required.'}, status=401)

        membership = (
            Membership.objects.select_related('organization', 'user')
            .filter(user=request.user)
            .order_by('pk')
            .first()
        )
        if membership is None:
            return JsonResponse(
                {'error': 'forbidden', 'message': 'You are not a member of any organization.'},
                status=403,
            )

        request.membership = membership
        return view_func(request, *args, **kwargs)
    return _wrapped_view
