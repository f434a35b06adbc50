from django.urls import path, include
from rest_framework.routers import DefaultRouter
from .views import AdminTransactionViewSet, GatewayWebhookView, TransactionViewSet

router = DefaultRouter()
router.register(r"transactions", TransactionViewSet, basename="transaction")
router.register(r"admin/transactions", AdminTransactionViewSet, basename="admin-transaction")

urlpatterns = [
    path("api/payments/webhook/", GatewayWebhookView.as_view(), name="payment-webhook"),
    path("api/", include(router.urls)),
]
