from django.urls import path

from . import views

urlpatterns = [
    path("milestones/<int:id>/fund/", views.FundMilestoneView.as_view(), name="milestone-fund"),
    path("milestones/<int:id>/release/", views.ReleaseMilestoneView.as_view(), name="milestone-release"),
    path("deals/<int:deal_id>/ledger/", views.DealLedgerView.as_view(), name="deal-ledger"),
    path("schedule/", views.AutoReleaseScheduleView.as_view(), name="auto-release-schedule"),
]
