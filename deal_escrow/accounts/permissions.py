from rest_framework.permissions import BasePermission


class IsMediator(BasePermission):
    """
    Allows access only to staff users or members of the mediator group.
    """
    message = "Only an authorised mediator can perform this action."

    def has_permission(self, request, view):
        user = request.user
        if not user or not user.is_authenticated:
            return False
        return user.is_mediator


class IsDealParty(BasePermission):
    """
    Object-level check for anything that exposes a `deal` (or is one):
    the payer, the payee or a mediator may read it.
    """
    def has_object_permission(self, request, view, obj):
        deal = getattr(obj, 'deal', obj)
        user = request.user
        return user.id in (deal.payer_id, deal.payee_id) or user.is_mediator
