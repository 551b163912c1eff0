from decimal import Decimal

from django.db.models import Q
from django.shortcuts import get_object_or_404
from django.utils import timezone
from rest_framework import generics, permissions, status, views
from rest_framework.response import Response
from rest_framework_simplejwt.authentication import JWTAuthentication
from drf_yasg.utils import swagger_auto_schema
from drf_yasg import openapi

from deals.models import Deal, Milestone
from deals.permissions import IsDealParticipant
from .models import LedgerEntry
from .serializers import (
	FundMilestoneSerializer,
	LedgerEntrySerializer,
)
from .services import MANUAL, FundingService, ReleaseEngine, escrow_totals


milestone_id_param = openapi.Parameter(
	'id',
	openapi.IN_PATH,
	description="Milestone ID",
	type=openapi.TYPE_INTEGER,
)


class FundMilestoneView(views.APIView):
	"""Charge the payer and hold the milestone amount in escrow."""

	permission_classes = [permissions.IsAuthenticated]
	authentication_classes = [JWTAuthentication]

	@swagger_auto_schema(
		operation_summary="Fund a milestone into escrow",
		manual_parameters=[milestone_id_param],
		request_body=FundMilestoneSerializer,
		responses={
			201: openapi.Response(description="Milestone funded"),
			400: "Validation error",
			403: "Only the payer can fund",
			409: "Milestone already funded",
			502: "Payment capture failed",
		}
	)
	def post(self, request, id):
		milestone = get_object_or_404(Milestone.objects.select_related("deal"), pk=id)

		serializer = FundMilestoneSerializer(data=request.data, context={"request": request})
		serializer.is_valid(raise_exception=True)

		result = FundingService().fund(milestone, serializer.validated_data["payment_method_id"], request.user)
		return Response(result, status=status.HTTP_201_CREATED)


class ReleaseMilestoneView(views.APIView):
	permission_classes = [permissions.IsAuthenticated]
	authentication_classes = [JWTAuthentication]

	@swagger_auto_schema(
		operation_summary="Release a milestone's escrowed funds to the payee",
		manual_parameters=[milestone_id_param],
		responses={
			200: openapi.Response(description="Released, or already released"),
			403: "Forbidden",
			404: "Not found",
			409: "Not eligible, not funded or refunded",
			502: "Transfer failed",
		}
	)
	def post(self, request, id):
		milestone = get_object_or_404(Milestone.objects.select_related("deal"), pk=id)

		if not milestone.deal.is_party(request.user):
			return Response(
				{"detail": "Only the deal payer or payee can release escrow funds."},
				status=status.HTTP_403_FORBIDDEN,
			)

		result = ReleaseEngine().release(milestone, MANUAL, request.user)
		return Response(result, status=status.HTTP_200_OK)


class DealLedgerView(generics.ListAPIView):
	"""Every ledger entry of a deal, oldest first, with escrow totals."""

	serializer_class = LedgerEntrySerializer
	permission_classes = [permissions.IsAuthenticated, IsDealParticipant]
	authentication_classes = [JWTAuthentication]
	pagination_class = None

	def get_queryset(self):
		return LedgerEntry.objects.filter(deal_id=self.kwargs["deal_id"]).select_related(
			"milestone",
		).prefetch_related("payout_records")

	@swagger_auto_schema(
		operation_summary="List the escrow ledger of a deal",
		responses={200: LedgerEntrySerializer(many=True), 403: "Forbidden"}
	)
	def get(self, request, *args, **kwargs):
		deal = get_object_or_404(Deal, pk=kwargs["deal_id"])
		queryset = self.get_queryset()
		totals = escrow_totals(queryset)
		return Response({
			"deal_id": deal.id,
			"currency": deal.currency,
			"totals": {key: str(value) for key, value in totals.items()},
			"entries": self.get_serializer(queryset, many=True).data,
		})


class AutoReleaseScheduleView(views.APIView):
	"""Upcoming and overdue automatic releases on the current user's deals."""

	permission_classes = [permissions.IsAuthenticated]
	authentication_classes = [JWTAuthentication]

	@swagger_auto_schema(
		operation_summary="Auto-release schedule for the current user",
		responses={200: openapi.Response(description="Scheduled releases")}
	)
	def get(self, request):
		now = timezone.now()
		user = request.user
		milestones = Milestone.objects.filter(
			Q(deal__payer=user) | Q(deal__payee=user),
			auto_release_at__isnull=False,
		).exclude(state__in=Milestone.CLOSED_STATES).select_related("deal").order_by("auto_release_at")

		schedule = []
		total = Decimal("0")
		for milestone in milestones:
			total += milestone.payable_amount
			schedule.append({
				"milestone_id": milestone.id,
				"deal_id": milestone.deal_id,
				"deal_title": milestone.deal.title,
				"milestone_title": milestone.title,
				"state": milestone.state,
				"amount": str(milestone.payable_amount),
				"currency": milestone.deal.currency,
				"auto_release_at": milestone.auto_release_at,
				"is_overdue": milestone.auto_release_at <= now,
				"is_disputed": milestone.dispute_flag,
				"role": milestone.deal.role_of(user),
			})

		return Response({
			"count": len(schedule),
			"overdue": sum(1 for item in schedule if item["is_overdue"]),
			"total_amount": str(total),
			"releases": schedule,
		})
