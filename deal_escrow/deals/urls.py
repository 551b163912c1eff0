from django.urls import path

from . import views

urlpatterns = [
    path('', views.ListDealsAPIView.as_view(), name='deals-list'),
    path('create/', views.CreateDealAPIView.as_view(), name='deals-create'),
    path('splits/preview/', views.SplitPreviewAPIView.as_view(), name='splits-preview'),
    path('<int:id>/', views.RetrieveDealAPIView.as_view(), name='deals-detail'),
    path('<int:deal_id>/milestones/', views.DealMilestonesAPIView.as_view(), name='deal-milestones'),
    path('<int:deal_id>/summary/', views.DealSummaryAPIView.as_view(), name='deal-summary'),
    path('milestones/<int:id>/submit/', views.SubmitMilestoneAPIView.as_view(), name='milestone-submit'),
    path('milestones/<int:id>/approve/', views.ApproveMilestoneAPIView.as_view(), name='milestone-approve'),
    path('milestones/<int:id>/reject/', views.RejectMilestoneAPIView.as_view(), name='milestone-reject'),
]
