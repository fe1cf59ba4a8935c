from __future__ import annotations

from collections.abc import Callable
from functools import wraps

from django.http import JsonResponse

VOTING_ADD_VOTER_TOKEN = "voting.add_votertoken"
VOTING_VIEW_VOTER_TOKEN = "voting.view_votertoken"
VOTING_DELETE_VOTER_TOKEN = "voting.delete_votertoken"
VOTING_VIEW_RESULTS = "voting.view_vote"


def json_permission_required(perm: str) -> Callable:
    """Like ``permission_required(raise_exception=True)`` but answers in JSON."""

    def decorator(view_func: Callable) -> Callable:
        @wraps(view_func)
        def _wrapped(request, *args, **kwargs):
            user = getattr(request, "user", None)
            if user is None or not user.is_authenticated:
                return JsonResponse({"ok": False, "error": "Authentication required."}, status=401)
            if not user.has_perm(perm):
                return JsonResponse({"ok": False, "error": "Permission denied."}, status=403)
            return view_func(request, *args, **kwargs)

        return _wrapped

    return decorator
