from rest_framework import generics, permissions, status, filters, views
from rest_framework.response import Response
from rest_framework_simplejwt.authentication import JWTAuthentication
from django.shortcuts import get_object_or_404
from django.db.models import Q
from django_filters.rest_framework import DjangoFilterBackend
from rest_framework.permissions import IsAuthenticated
from drf_yasg.utils import swagger_auto_schema
from drf_yasg import openapi

from . import serializers as my_serializers
from accounts.permissions import IsMediator
from deals.models import Deal
from .permissions import IsDisputeParticipantOrMediator, IsDisputeOwner
from .models import Dispute
from .services import DisputeEngine


def dispute_queryset():
    return Dispute.objects.select_related('deal', 'milestone', 'raised_by', 'resolved_by')


class CreateDisputeAPIView(views.APIView):
    """
    Allows the deal's payer or payee to open a dispute on the deal or one of
    its milestones. The URL must contain the deal_id.
    """
    permission_classes = [permissions.IsAuthenticated]
    authentication_classes = [JWTAuthentication]

    @swagger_auto_schema(
        operation_summary="Open a dispute on a deal or milestone",
        request_body=my_serializers.DisputeCreateSerializer,
        responses={
            201: my_serializers.DisputeDetailSerializer(),
            400: "Validation error",
            403: "Not a party to the deal",
            409: "Milestone cannot be disputed in its current state",
        }
    )
    def post(self, request, deal_id):
        deal = get_object_or_404(Deal, id=deal_id)
        serializer = my_serializers.DisputeCreateSerializer(data=request.data, context={'deal': deal})
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        milestone = None
        if data.get('milestone_id'):
            milestone = deal.milestones.get(id=data['milestone_id'])

        dispute = DisputeEngine().open(
            deal,
            request.user,
            category=data['category'],
            title=data['title'],
            description=data['description'],
            urgency=data['urgency'],
            milestone=milestone,
        )

        return Response({
            "detail": "Dispute created successfully.",
            "dispute": my_serializers.DisputeDetailSerializer(dispute).data
        }, status=status.HTTP_201_CREATED)


class ListDisputesAPIView(generics.ListAPIView):
    """
    List disputes.
    - Mediators see all disputes.
    - Payers/Payees see only disputes on their deals.
    """
    serializer_class = my_serializers.DisputeListSerializer
    permission_classes = [IsAuthenticated]
    authentication_classes = [JWTAuthentication]
    filter_backends = [filters.OrderingFilter, DjangoFilterBackend]
    filterset_fields = ['status', 'category', 'urgency']
    ordering_fields = ['created_at', 'updated_at', 'escalation_deadline']
    ordering = ['-updated_at']

    @swagger_auto_schema(
        operation_summary="List disputes with optional filtering",
        manual_parameters=[
            openapi.Parameter(
                'status',
                openapi.IN_QUERY,
                description="Filter disputes by status",
                type=openapi.TYPE_STRING
            ),
            openapi.Parameter(
                'category',
                openapi.IN_QUERY,
                description="Filter disputes by category",
                type=openapi.TYPE_STRING
            ),
            openapi.Parameter(
                'ordering',
                openapi.IN_QUERY,
                description="Order results by one of: created_at, updated_at, escalation_deadline",
                type=openapi.TYPE_STRING
            ),
        ],
        responses={200: my_serializers.DisputeListSerializer(many=True)}
    )
    def get(self, request, *args, **kwargs):
        return super().get(request, *args, **kwargs)

    def get_queryset(self):
        user = self.request.user
        if user.is_mediator:
            return dispute_queryset()

        return dispute_queryset().filter(
            Q(deal__payer=user) | Q(deal__payee=user)
        )


class RetrieveDisputeAPIView(generics.RetrieveAPIView):
    """
    Retrieve a single dispute with messages and timeline.
    Accessible only by the deal parties or mediators.
    """
    serializer_class = my_serializers.DisputeDetailSerializer
    permission_classes = [IsAuthenticated, IsDisputeParticipantOrMediator]
    authentication_classes = [JWTAuthentication]
    lookup_field = 'id'

    def get_queryset(self):
        return dispute_queryset().prefetch_related('messages__sender', 'timeline__actor')

    @swagger_auto_schema(
        operation_summary="Retrieve a dispute",
        responses={200: my_serializers.DisputeDetailSerializer(), 404: "Not found"}
    )
    def get(self, request, *args, **kwargs):
        return super().get(request, *args, **kwargs)


class DisputeMessageCreateAPIView(generics.GenericAPIView):
    serializer_class = my_serializers.DisputeMessageSerializer
    permission_classes = [IsAuthenticated, IsDisputeParticipantOrMediator]
    authentication_classes = [JWTAuthentication]
    lookup_field = 'id'

    def get_queryset(self):
        return dispute_queryset()

    @swagger_auto_schema(
        operation_summary="Add a message to a dispute",
        request_body=my_serializers.DisputeMessageSerializer,
        responses={201: my_serializers.DisputeMessageSerializer(), 400: "Validation error", 403: "Forbidden"}
    )
    def post(self, request, *args, **kwargs):
        dispute = self.get_object()
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        message = DisputeEngine().add_message(dispute, request.user, serializer.validated_data['message'])

        return Response(self.get_serializer(message).data, status=status.HTTP_201_CREATED)


class ResolveDisputeAPIView(generics.GenericAPIView):
    """
    Mediator resolution. Money outcomes are executed by the release engine
    before the response is returned.
    """
    serializer_class = my_serializers.DisputeResolveSerializer
    permission_classes = [IsAuthenticated, IsMediator]
    authentication_classes = [JWTAuthentication]
    lookup_field = 'id'

    def get_queryset(self):
        return dispute_queryset()

    @swagger_auto_schema(
        operation_summary="Resolve a dispute as mediator",
        request_body=my_serializers.DisputeResolveSerializer,
        responses={
            200: my_serializers.DisputeDetailSerializer(),
            400: "Validation error",
            409: "Dispute already resolved",
            502: "Payment gateway failed",
        }
    )
    def post(self, request, *args, **kwargs):
        dispute = self.get_object()
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        dispute, results = DisputeEngine().resolve(
            dispute,
            data['outcome'],
            request.user,
            amount=data.get('amount'),
            summary=data['summary'],
            notes=data['notes'],
        )

        return Response({
            "detail": "Dispute resolved.",
            "dispute": my_serializers.DisputeDetailSerializer(dispute).data,
            "settlements": results,
        }, status=status.HTTP_200_OK)


class MediatorUpdateDisputeStatusAPIView(generics.GenericAPIView):
    serializer_class = my_serializers.MediatorStatusSerializer
    permission_classes = [IsAuthenticated, IsMediator]
    authentication_classes = [JWTAuthentication]
    lookup_field = 'id'

    def get_queryset(self):
        return dispute_queryset()

    @swagger_auto_schema(
        operation_summary="Move a dispute to under review or mediation",
        request_body=my_serializers.MediatorStatusSerializer,
        responses={200: my_serializers.DisputeDetailSerializer(), 409: "Transition not allowed"}
    )
    def patch(self, request, *args, **kwargs):
        dispute = self.get_object()
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        dispute = DisputeEngine().update_status(
            dispute, request.user, serializer.validated_data['status'], notes=serializer.validated_data['notes'],
        )
        return Response(my_serializers.DisputeDetailSerializer(dispute).data)


class CancelDisputeAPIView(generics.GenericAPIView):
    """
    Allows the user who opened a dispute to withdraw it while it is still pending.
    """
    permission_classes = [IsAuthenticated, IsDisputeOwner]
    authentication_classes = [JWTAuthentication]
    lookup_field = 'id'

    def get_queryset(self):
        return dispute_queryset()

    @swagger_auto_schema(
        operation_summary="Cancel your own pending dispute",
        responses={200: my_serializers.DisputeDetailSerializer(), 403: "Forbidden", 409: "Not pending"}
    )
    def post(self, request, *args, **kwargs):
        dispute = DisputeEngine().cancel(self.get_object(), request.user)
        return Response({
            "detail": "Dispute cancelled.",
            "dispute": my_serializers.DisputeDetailSerializer(dispute).data
        }, status=status.HTTP_200_OK)
