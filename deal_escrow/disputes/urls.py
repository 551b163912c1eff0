from django.urls import path

from . import views

urlpatterns = [
    path(
        'deals/<int:deal_id>/disputes/',
        views.CreateDisputeAPIView.as_view(),
        name='deal-disputes-create',
    ),
    path(
        'disputes/',
        views.ListDisputesAPIView.as_view(),
        name='disputes-list',
    ),
    path(
        'disputes/<int:id>/',
        views.RetrieveDisputeAPIView.as_view(),
        name='disputes-detail',
    ),
    path(
        'disputes/<int:id>/messages/',
        views.DisputeMessageCreateAPIView.as_view(),
        name='disputes-messages',
    ),
    path(
        'disputes/<int:id>/resolve/',
        views.ResolveDisputeAPIView.as_view(),
        name='disputes-resolve',
    ),
    path(
        'disputes/<int:id>/mediator/',
        views.MediatorUpdateDisputeStatusAPIView.as_view(),
        name='disputes-mediator-update',
    ),
    path(
        'disputes/<int:id>/cancel/',
        views.CancelDisputeAPIView.as_view(),
        name='disputes-cancel',
    ),
]
