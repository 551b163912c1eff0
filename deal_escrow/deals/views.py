from rest_framework import views as drf_views, generics, status, filters
from rest_framework.response import Response
from rest_framework_simplejwt.authentication import JWTAuthentication
from rest_framework.permissions import IsAuthenticated
from django.shortcuts import get_object_or_404
from django.db.models import Q
from django_filters.rest_framework import DjangoFilterBackend
from drf_yasg.utils import swagger_auto_schema
from drf_yasg import openapi

from . import serializers as my_serializers
from accounts.permissions import IsDealParty
from escrow.services import build_deal_summary
from .permissions import IsPayer, IsDealParticipant
from .models import Deal, Milestone
from .services import ReviewService
from .splits import calculate_split


def deals_for(user):
    queryset = Deal.objects.select_related('payer', 'payee')
    if user.is_mediator:
        return queryset
    return queryset.filter(Q(payer=user) | Q(payee=user))


class CreateDealAPIView(generics.CreateAPIView):
    serializer_class = my_serializers.CreateDealSerializer
    permission_classes = [IsAuthenticated, IsPayer]
    authentication_classes = [JWTAuthentication]

    def create(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        deal = serializer.save()

        return Response({
            'detail': "Deal created successfully.",
            'deal': my_serializers.DealSerializer(deal).data
        }, status=status.HTTP_201_CREATED)


class ListDealsAPIView(generics.ListAPIView):
    """
    Deals the current user pays or earns on. Mediators see every deal.
    """
    serializer_class = my_serializers.DealListSerializer
    permission_classes = [IsAuthenticated]
    authentication_classes = [JWTAuthentication]
    filter_backends = [filters.OrderingFilter, DjangoFilterBackend]
    filterset_fields = ['status', 'is_archived']
    ordering_fields = ['created_at', 'total_amount']
    ordering = ['-created_at']

    def get_queryset(self):
        return deals_for(self.request.user)


class RetrieveDealAPIView(generics.RetrieveAPIView):
    serializer_class = my_serializers.DealSerializer
    permission_classes = [IsAuthenticated, IsDealParty]
    authentication_classes = [JWTAuthentication]
    lookup_field = 'id'

    def get_queryset(self):
        return Deal.objects.select_related('payer', 'payee').prefetch_related(
            'milestones__deliverables', 'milestones__feedback',
        )


class SplitPreviewAPIView(drf_views.APIView):
    """
    Dry-run of the split calculator. Nothing is persisted.
    """
    permission_classes = [IsAuthenticated]
    authentication_classes = [JWTAuthentication]

    @swagger_auto_schema(
        operation_summary="Preview how a total splits into milestones",
        request_body=my_serializers.SplitPreviewSerializer,
        responses={200: openapi.Response(description="Ordered milestone portions"), 400: "Invalid split"}
    )
    def post(self, request):
        serializer = my_serializers.SplitPreviewSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        portions = calculate_split(
            data['total_amount'],
            data['template'],
            percentages=data.get('percentages'),
            count=data.get('count'),
            currency=data['currency'].upper(),
        )
        return Response({
            'template': data['template'],
            'total_amount': str(data['total_amount']),
            'currency': data['currency'].upper(),
            'milestones': [portion.as_dict() for portion in portions],
        }, status=status.HTTP_200_OK)


class DealMilestonesAPIView(generics.ListAPIView):
    """
    GET lists the deal's milestones in order; POST (payer only) derives the
    milestone structure from a split template.
    """
    serializer_class = my_serializers.MilestoneSerializer
    permission_classes = [IsAuthenticated, IsDealParticipant]
    authentication_classes = [JWTAuthentication]
    pagination_class = None

    def get_deal(self):
        return get_object_or_404(Deal, id=self.kwargs['deal_id'])

    def get_queryset(self):
        return Milestone.objects.filter(deal_id=self.kwargs['deal_id']).prefetch_related('deliverables', 'feedback')

    @swagger_auto_schema(
        operation_summary="Create the milestone structure for a deal",
        request_body=my_serializers.MilestoneStructureSerializer,
        responses={
            201: my_serializers.MilestoneSerializer(many=True),
            400: "Invalid split",
            403: "Only the payer can define milestones",
            409: "Deal already has milestones",
        }
    )
    def post(self, request, deal_id):
        deal = self.get_deal()
        serializer = my_serializers.MilestoneStructureSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        milestones = ReviewService().create_structure(
            deal,
            request.user,
            data['template'],
            percentages=data.get('percentages'),
            count=data.get('count'),
            details=data.get('milestones'),
        )

        return Response({
            'detail': "Milestones created.",
            'milestones': my_serializers.MilestoneSerializer(milestones, many=True).data
        }, status=status.HTTP_201_CREATED)


class MilestoneActionAPIView(drf_views.APIView):
    permission_classes = [IsAuthenticated]
    authentication_classes = [JWTAuthentication]

    def get_milestone(self, milestone_id):
        milestone = get_object_or_404(Milestone.objects.select_related('deal'), id=milestone_id)
        if not milestone.deal.is_party(self.request.user):
            self.permission_denied(self.request, message="You are not a party to this deal.")
        return milestone


class SubmitMilestoneAPIView(MilestoneActionAPIView):

    @swagger_auto_schema(
        operation_summary="Submit deliverables for a funded milestone",
        request_body=my_serializers.SubmitMilestoneSerializer,
        responses={200: my_serializers.MilestoneSerializer(), 409: "Already submitted or not funded"}
    )
    def post(self, request, id):
        milestone = self.get_milestone(id)
        serializer = my_serializers.SubmitMilestoneSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        milestone = ReviewService().submit(milestone, request.user, serializer.validated_data['deliverables'])

        return Response({
            'detail': "Deliverables submitted.",
            'milestone': my_serializers.MilestoneSerializer(milestone).data
        }, status=status.HTTP_200_OK)


class ApproveMilestoneAPIView(MilestoneActionAPIView):

    @swagger_auto_schema(
        operation_summary="Approve a submitted milestone",
        request_body=my_serializers.ApproveMilestoneSerializer,
        responses={200: my_serializers.MilestoneSerializer(), 409: "Milestone not submitted", 502: "Transfer failed"}
    )
    def post(self, request, id):
        milestone = self.get_milestone(id)
        serializer = my_serializers.ApproveMilestoneSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        milestone, release = ReviewService().approve(milestone, request.user, serializer.validated_data['feedback'])

        return Response({
            'detail': "Milestone approved.",
            'milestone': my_serializers.MilestoneSerializer(milestone).data,
            'release': release,
        }, status=status.HTTP_200_OK)


class RejectMilestoneAPIView(MilestoneActionAPIView):

    @swagger_auto_schema(
        operation_summary="Request revisions on a submitted milestone",
        request_body=my_serializers.RejectMilestoneSerializer,
        responses={200: my_serializers.MilestoneSerializer(), 400: "Feedback required"}
    )
    def post(self, request, id):
        milestone = self.get_milestone(id)
        serializer = my_serializers.RejectMilestoneSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        milestone = ReviewService().reject(milestone, request.user, serializer.validated_data['feedback'])

        return Response({
            'detail': "Revision requested.",
            'milestone': my_serializers.MilestoneSerializer(milestone).data
        }, status=status.HTTP_200_OK)


class DealSummaryAPIView(drf_views.APIView):
    permission_classes = [IsAuthenticated, IsDealParticipant]
    authentication_classes = [JWTAuthentication]

    @swagger_auto_schema(
        operation_summary="Milestones, escrow totals and release eligibility for a deal",
        responses={200: openapi.Response(description="Deal summary"), 403: "Forbidden"}
    )
    def get(self, request, deal_id):
        deal = get_object_or_404(Deal.objects.select_related('payer', 'payee'), id=deal_id)
        return Response(build_deal_summary(deal, request.user), status=status.HTTP_200_OK)
