from django.urls import path

from . import views

urlpatterns = [
    path('methods/', views.PaymentMethodListCreateView.as_view(), name='payment-methods'),
    path('methods/<int:method_id>/', views.PaymentMethodDetailView.as_view(), name='payment-method-detail'),
    path('payout-methods/', views.PayoutMethodListCreateView.as_view(), name='payout-methods'),
    path('payout-methods/<int:method_id>/', views.PayoutMethodDetailView.as_view(), name='payout-method-detail'),
    path('records/', views.PayoutRecordListView.as_view(), name='payout-records'),
]
