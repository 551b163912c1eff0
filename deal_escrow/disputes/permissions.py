from rest_framework.permissions import BasePermission

from .models import Dispute


class IsDisputeParticipantOrMediator(BasePermission):
    """
    Object-level check on a Dispute: deal parties and mediators pass.
    """
    def has_object_permission(self, request, view, obj: Dispute):
        user = request.user
        deal = obj.deal

        is_participant = user.id in (deal.payer_id, deal.payee_id)
        return is_participant or user.is_mediator


class IsDisputeOwner(BasePermission):
    """
    Allows access only to the user who opened the dispute.
    """
    message = "Only the user who opened the dispute can do this."

    def has_object_permission(self, request, view, obj: Dispute):
        return obj.raised_by_id == request.user.id
