from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework import status, permissions, generics
from rest_framework_simplejwt.authentication import JWTAuthentication
from django.db.models import Q
from django.shortcuts import get_object_or_404
from django_filters.rest_framework import DjangoFilterBackend

from .serializers import (
    PayoutRecordSerializer,
    PaymentMethodSerializer,
    PayoutMethodSerializer,
    SetPayoutMethodFlagsSerializer,
)
from .models import PayoutRecord, PaymentMethod, PayoutMethod


class PaymentMethodListCreateView(generics.ListCreateAPIView):
    serializer_class = PaymentMethodSerializer
    permission_classes = [permissions.IsAuthenticated]
    authentication_classes = [JWTAuthentication]
    pagination_class = None

    def get_queryset(self):
        return PaymentMethod.objects.filter(user=self.request.user).order_by('-is_default', '-created_at')


class PaymentMethodDetailView(APIView):
    permission_classes = [permissions.IsAuthenticated]
    authentication_classes = [JWTAuthentication]

    def delete(self, request, method_id):
        method = get_object_or_404(PaymentMethod, id=method_id, user=request.user)
        method.delete()
        return Response(status=status.HTTP_204_NO_CONTENT)


class PayoutMethodListCreateView(generics.ListCreateAPIView):
    serializer_class = PayoutMethodSerializer
    permission_classes = [permissions.IsAuthenticated]
    authentication_classes = [JWTAuthentication]
    pagination_class = None

    def get_queryset(self):
        return PayoutMethod.objects.filter(user=self.request.user).order_by('-is_default', '-created_at')


class PayoutMethodDetailView(APIView):
    permission_classes = [permissions.IsAuthenticated]
    authentication_classes = [JWTAuthentication]

    def patch(self, request, method_id):
        method = get_object_or_404(PayoutMethod, id=method_id, user=request.user)
        serializer = SetPayoutMethodFlagsSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        if serializer.validated_data.get('is_default'):
            PayoutMethod.objects.filter(user=request.user, is_default=True).exclude(id=method.id).update(is_default=False)
        for field, value in serializer.validated_data.items():
            setattr(method, field, value)
        method.save()
        return Response(PayoutMethodSerializer(method).data)

    def delete(self, request, method_id):
        # Deactivate only; ledger transfers reference the account.
        method = get_object_or_404(PayoutMethod, id=method_id, user=request.user)
        method.is_active = False
        method.is_default = False
        method.save(update_fields=['is_active', 'is_default', 'updated_at'])
        return Response(status=status.HTTP_204_NO_CONTENT)


class PayoutRecordListView(generics.ListAPIView):
    """Funding, release and refund records on the current user's deals."""
    serializer_class = PayoutRecordSerializer
    permission_classes = [permissions.IsAuthenticated]
    authentication_classes = [JWTAuthentication]
    filter_backends = [DjangoFilterBackend]
    filterset_fields = ['record_type', 'deal']

    def get_queryset(self):
        user = self.request.user
        return PayoutRecord.objects.filter(Q(deal__payer=user) | Q(deal__payee=user)).order_by('-timestamp', '-id')
