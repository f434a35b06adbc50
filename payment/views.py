import logging
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView
from utils.constants import DeliveryMessage, PaymentMessage
from utils.permission_helpers import AdminOnlyPermissionMixin, IsBuyer, IsSeller
from utils.queryset_helpers import FilterableQuerysetMixin, PartyQuerysetMixin
from .models import Transaction
from .serializers import (
    CheckoutResultSerializer,
    CheckoutSerializer,
    ConfirmBookingSerializer,
    DeliveryUpdateSerializer,
    FailureSerializer,
    ManualVerifySerializer,
    RepresentativeSerializer,
    StatusUpdateSerializer,
    TransactionSerializer,
    VerifySerializer,
)
from .services import TransactionService

logger = logging.getLogger("payment")


def representative_response(items, summary):
    return Response(
        {
            "success": True,
            "summary": summary,
            "results": RepresentativeSerializer(items, many=True).data,
        },
        status=status.HTTP_200_OK,
    )


class TransactionViewSet(PartyQuerysetMixin, mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    """
    ViewSet for buyers and sellers acting on their own transactions.
    Every state change goes through TransactionService.
    """

    queryset = Transaction.objects.select_related("vehicle", "buyer", "seller")
    serializer_class = TransactionSerializer
    permission_classes = [IsAuthenticated]

    def get_service(self):
        return TransactionService()

    @action(detail=False, methods=["post"], url_path="checkout")
    def checkout(self, request):
        """
        Starts a purchase, booking or balance payment for a vehicle.
        """
        serializer = CheckoutSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = self.get_service().initiate_checkout(request.user, **serializer.validated_data)
        return Response(
            {"success": True, **CheckoutResultSerializer(result).data},
            status=status.HTTP_201_CREATED,
        )

    @action(detail=False, methods=["post"], url_path="verify")
    def verify(self, request):
        """
        Verifies a gateway payment after the buyer returns from checkout.
        A pending payment is reported with verified=false, not as an error.
        """
        serializer = VerifySerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        outcome = self.get_service().verify_payment(
            request.user,
            transaction_id=serializer.validated_data.get("transaction_id"),
            session_id=serializer.validated_data.get("session_id"),
        )
        return Response(
            {
                "success": True,
                "verified": outcome.verified,
                "message": outcome.message,
                "transaction": TransactionSerializer(outcome.transaction).data,
            },
            status=status.HTTP_200_OK,
        )

    @action(detail=True, methods=["post"], url_path="failed")
    def failed(self, request, pk=None):
        serializer = FailureSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        transaction = self.get_service().record_failure(request.user, pk, **serializer.validated_data)
        return Response(
            {
                "success": True,
                "message": PaymentMessage.FAILURE_RECORDED,
                "transaction": TransactionSerializer(transaction).data,
            },
            status=status.HTTP_200_OK,
        )

    @action(detail=True, methods=["post"], url_path="verify-manual")
    def verify_manual(self, request, pk=None):
        serializer = ManualVerifySerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        transaction = self.get_service().verify_manual(
            request.user, pk, serializer.validated_data.get("manual_reference")
        )
        return Response(
            {
                "success": True,
                "message": PaymentMessage.MANUAL_PAYMENT_VERIFIED,
                "transaction": TransactionSerializer(transaction).data,
            },
            status=status.HTTP_200_OK,
        )

    @action(detail=True, methods=["post"], url_path="confirm-booking")
    def confirm_booking(self, request, pk=None):
        """
        Seller confirms a UPI or cash payment was received.
        """
        serializer = ConfirmBookingSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        transaction = self.get_service().confirm_booking(
            request.user, pk, serializer.validated_data.get("reference")
        )
        return Response(
            {
                "success": True,
                "message": PaymentMessage.BOOKING_CONFIRMED,
                "transaction": TransactionSerializer(transaction).data,
            },
            status=status.HTTP_200_OK,
        )

    @action(detail=True, methods=["post"], url_path="confirm-collection")
    def confirm_collection(self, request, pk=None):
        transaction = self.get_service().confirm_collection(request.user, pk)
        return Response(
            {
                "success": True,
                "message": DeliveryMessage.COLLECTION_CONFIRMED,
                "transaction": TransactionSerializer(transaction).data,
            },
            status=status.HTTP_200_OK,
        )

    @action(detail=False, methods=["get"], url_path="my-purchases", permission_classes=[IsAuthenticated, IsBuyer])
    def my_purchases(self, request):
        """
        Buyer's purchases and bookings, one entry per vehicle.
        Supports ?classification=purchase|booking and ?tracking=true.
        """
        tracking = request.query_params.get("tracking", "").lower() in ("1", "true", "yes")
        items, summary = self.get_service().list_my_purchases(
            request.user,
            classification=request.query_params.get("classification"),
            tracking=tracking,
        )
        return representative_response(items, summary)

    @action(detail=False, methods=["get"], url_path="my-sales", permission_classes=[IsAuthenticated, IsSeller])
    def my_sales(self, request):
        items, summary = self.get_service().list_my_sales(
            request.user, classification=request.query_params.get("classification")
        )
        return representative_response(items, summary)

    @action(detail=False, methods=["get"], url_path="analytics/buyer", permission_classes=[IsAuthenticated, IsBuyer])
    def buyer_analytics(self, request):
        data = self.get_service().buyer_analytics(request.user)
        return Response({"success": True, **data}, status=status.HTTP_200_OK)

    @action(detail=False, methods=["get"], url_path="analytics/seller", permission_classes=[IsAuthenticated, IsSeller])
    def seller_analytics(self, request):
        data = self.get_service().seller_analytics(request.user)
        return Response({"success": True, **data}, status=status.HTTP_200_OK)


class AdminTransactionViewSet(
    AdminOnlyPermissionMixin,
    FilterableQuerysetMixin,
    mixins.ListModelMixin,
    mixins.RetrieveModelMixin,
    viewsets.GenericViewSet,
):
    """
    Administrator view over every transaction, with manual status and
    delivery updates. Supports ?status= filtering and pagination.
    """

    queryset = Transaction.objects.select_related("vehicle", "buyer", "seller").order_by("-created_at")
    serializer_class = TransactionSerializer
    filter_fields = ["status", "payment_type", "delivery_status"]

    def get_service(self):
        return TransactionService()

    @action(detail=True, methods=["put"], url_path="status")
    def update_status(self, request, pk=None):
        serializer = StatusUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        transaction = self.get_service().admin_update_status(
            request.user, pk, serializer.validated_data["status"]
        )
        return Response(
            {
                "success": True,
                "message": PaymentMessage.STATUS_UPDATED,
                "transaction": TransactionSerializer(transaction).data,
            },
            status=status.HTTP_200_OK,
        )

    @action(detail=True, methods=["put"], url_path="delivery")
    def update_delivery(self, request, pk=None):
        serializer = DeliveryUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        transaction = self.get_service().admin_update_delivery(
            request.user,
            pk,
            data["delivery_status"],
            estimated_ready_date=data.get("estimated_ready_date"),
            notes=data.get("notes"),
        )
        message = (
            DeliveryMessage.READY_FOR_COLLECTION
            if transaction.delivery_status == "ready_for_collection"
            else DeliveryMessage.DELIVERY_UPDATED
        )
        return Response(
            {
                "success": True,
                "message": message,
                "transaction": TransactionSerializer(transaction).data,
            },
            status=status.HTTP_200_OK,
        )


class GatewayWebhookView(APIView):
    """
    Receives signed payment gateway notifications. Authentication is the
    webhook signature, so no user credentials are expected.
    """

    authentication_classes = []
    permission_classes = [AllowAny]

    def post(self, request):
        signature = request.META.get("HTTP_STRIPE_SIGNATURE", "")
        event_type = TransactionService().handle_gateway_event(request.body, signature)
        return Response({"received": True, "type": event_type}, status=status.HTTP_200_OK)
