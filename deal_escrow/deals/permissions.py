from rest_framework.permissions import BasePermission
from .models import Deal


class IsPayer(BasePermission):
    message = "Only payer accounts can open deals."

    def has_permission(self, request, view):
        return request.user and request.user.user_type == 'payer'


class IsDealParticipant(BasePermission):
    """
    Deal parties and mediators only. Reads the deal from the `deal_id` URL kwarg.
    """

    def has_permission(self, request, view):
        deal_id = view.kwargs.get('deal_id')
        if not deal_id:
            return False
        try:
            deal = Deal.objects.get(id=deal_id)
        except Deal.DoesNotExist:
            return False

        user = request.user
        return deal.is_party(user) or user.is_mediator
