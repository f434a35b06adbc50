from datetime import datetime, timedelta, timezone as dt_timezone
from decimal import Decimal
from io import StringIO
from types import SimpleNamespace
from unittest import mock
import uuid
import stripe
from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.db import DatabaseError
from django.test import SimpleTestCase, TestCase, override_settings
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APITestCase
from accounts.models import Role
from exceptions.handlers import (
    GatewayUnavailableException,
    InconsistentStateException,
    InvalidInputException,
    InvalidStateTransitionException,
    InvalidStatusException,
    NotFoundException,
    PermissionDeniedException,
)
from utils.constants import Classification
from utils.delivery_helpers import DeliveryHelpers
from utils.payment_helpers import PaymentHelpers
from utils.transaction_reducer import (
    classify,
    daily_series,
    filter_by_classification,
    pick_representative,
    reduce_transactions,
    summarize,
)
from utils.transition_policy import NO_CHANGE, TransitionPolicy
from vehicles.models import Vehicle
from .gateway import CheckoutSession, StripeGateway, VerificationResult
from .models import Transaction
from .services import TransactionService
from .store import TransactionStore

User = get_user_model()

BASE_TIME = datetime(2024, 6, 1, 12, 0, tzinfo=dt_timezone.utc)


def row(vehicle_id="v1", status="payment_initiated", booking_amount=None, remaining_amount=None,
        amount="500000", minutes=0, pk=None, payment_shape="full_payment", delivery_status=None):
    """In-memory stand-in for a transaction row."""
    return SimpleNamespace(
        pk=pk or str(uuid.uuid4()),
        vehicle_id=vehicle_id,
        status=status,
        amount=Decimal(amount),
        booking_amount=None if booking_amount is None else Decimal(booking_amount),
        remaining_amount=None if remaining_amount is None else Decimal(remaining_amount),
        created_at=BASE_TIME + timedelta(minutes=minutes),
        payment_shape=payment_shape,
        delivery_status=delivery_status,
    )


class MarketplaceFixtures:
    """Shared users and vehicles for database-backed tests."""

    def create_fixtures(self):
        for name in ("admin", "buyer", "seller"):
            Role.objects.get_or_create(name=name)
        self.admin = User.objects.create_user(
            username="admin_user", email="admin@test.com", password="adminpass123", role="admin"
        )
        self.buyer = User.objects.create_user(
            username="buyer_user", email="buyer@test.com", password="buyerpass123", role="buyer"
        )
        self.other_buyer = User.objects.create_user(
            username="other_buyer", email="other@test.com", password="otherpass123", role="buyer"
        )
        self.seller = User.objects.create_user(
            username="seller_user", email="seller@test.com", password="sellerpass123",
            role="seller", mobile_number="9876543210",
        )
        self.vehicle = self.make_vehicle()

    def make_vehicle(self, price="500000.00", status="approved", seller=None):
        return Vehicle.objects.create(
            seller=seller or self.seller,
            make="Maruti",
            model="Swift",
            year=2021,
            price=Decimal(price),
            registration_number="KA01AB1234",
            status=status,
        )

    def make_transaction(self, status="payment_initiated", booking_amount=None, settles=None,
                         payment_type="full_card", vehicle=None, buyer=None, **extra):
        vehicle = vehicle or self.vehicle
        transaction = TransactionStore.create(
            vehicle, buyer or self.buyer, vehicle.seller, vehicle.price, payment_type,
            booking_amount=booking_amount, settles=settles, **extra
        )
        if status != "payment_initiated":
            Transaction.objects.filter(pk=transaction.pk).update(status=status)
            transaction.refresh_from_db()
        return transaction

    def mock_gateway(self):
        gateway = mock.Mock(spec=StripeGateway)
        gateway.create_checkout.return_value = CheckoutSession(
            "cs_test_123", "https://checkout.stripe.com/c/pay/cs_test_123"
        )
        gateway.verify.return_value = VerificationResult(False, False, None, "card", None)
        return gateway


# ---------- representative reducer ----------

class TransactionReducerTest(SimpleTestCase):
    """Test cases for collapsing transaction history to one row per vehicle."""

    def test_failed_and_initiated_returns_initiated_booking(self):
        """Test that a failed retry loses to the open checkout"""
        failed = row(status="payment_failed", minutes=5)
        initiated = row(status="payment_initiated", minutes=0)

        result = reduce_transactions([failed, initiated])

        self.assertEqual(len(result), 1)
        self.assertIs(result["v1"].transaction, initiated)
        self.assertEqual(result["v1"].classification, Classification.BOOKING)

    def test_vehicle_with_only_invalid_rows_is_dropped(self):
        """Test that failed, cancelled and refunded rows never surface"""
        rows = [
            row(vehicle_id="v1", status="payment_failed"),
            row(vehicle_id="v1", status="cancelled"),
            row(vehicle_id="v2", status="refunded"),
        ]
        self.assertEqual(reduce_transactions(rows), {})

    def test_balance_settlement_beats_booking(self):
        """Test that a settled balance row wins over the older booking token"""
        booking = row(status="payment_completed", booking_amount="50000", remaining_amount="450000",
                      payment_shape="booking_token", minutes=0)
        balance = row(status="completed", booking_amount="0", remaining_amount="0",
                      payment_shape="balance_settlement", minutes=10)

        result = reduce_transactions([booking, balance])

        self.assertIs(result["v1"].transaction, balance)
        self.assertEqual(result["v1"].classification, Classification.PURCHASE)

    def test_settled_row_beats_newer_open_checkout(self):
        """Test that settlement ranks above recency"""
        settled = row(status="payment_completed", remaining_amount="0", minutes=0)
        newer = row(status="payment_initiated", minutes=30)

        self.assertIs(reduce_transactions([newer, settled])["v1"].transaction, settled)

    def test_higher_booking_amount_wins_among_unsettled(self):
        """Test the booking amount tie-break"""
        small = row(booking_amount="10000", remaining_amount="490000", minutes=20)
        large = row(booking_amount="50000", remaining_amount="450000", minutes=0)

        self.assertIs(pick_representative([small, large]), large)

    def test_newest_wins_when_otherwise_equal(self):
        """Test the created_at tie-break"""
        old = row(minutes=0)
        new = row(minutes=1)
        self.assertIs(pick_representative([old, new]), new)

    def test_identical_rows_resolved_by_id_regardless_of_order(self):
        """Test that the ordering is total so the result is input-order independent"""
        first = row(pk="aaaa")
        second = row(pk="bbbb")

        self.assertIs(pick_representative([first, second]), second)
        self.assertIs(pick_representative([second, first]), second)

    def test_at_most_one_representative_per_vehicle(self):
        """Test that every vehicle appears once"""
        rows = [row(vehicle_id=f"v{i % 3}", minutes=i) for i in range(12)]
        result = reduce_transactions(rows)

        self.assertEqual(set(result), {"v0", "v1", "v2"})

    def test_pick_representative_does_not_filter(self):
        """Test that pick_representative alone keeps invalid candidates"""
        failed = row(status="payment_failed")
        self.assertIs(pick_representative([failed]), failed)
        self.assertIsNone(pick_representative([]))

    def test_classify(self):
        """Test purchase, booking and none classification"""
        self.assertEqual(classify(row(status="completed", remaining_amount=None)), Classification.PURCHASE)
        self.assertEqual(classify(row(status="payment_completed", remaining_amount="0")), Classification.PURCHASE)
        self.assertEqual(
            classify(row(status="payment_completed", booking_amount="5", remaining_amount="95", amount="100")),
            Classification.BOOKING,
        )
        self.assertEqual(classify(row(status="pending")), Classification.BOOKING)
        self.assertEqual(classify(row(status="payment_failed")), Classification.NONE)

    def test_summarize_counts_representatives_not_rows(self):
        """Test that retries do not inflate dashboard counts"""
        rows = [
            row(vehicle_id="v1", status="payment_failed"),
            row(vehicle_id="v1", status="completed", remaining_amount="0"),
            row(vehicle_id="v1", status="payment_initiated"),
            row(vehicle_id="v2", status="payment_initiated"),
            row(vehicle_id="v2", status="payment_initiated", minutes=3),
        ]
        summary = summarize(reduce_transactions(rows))

        self.assertEqual(summary["purchases"], 1)
        self.assertEqual(summary["active_bookings"], 1)
        self.assertEqual(summary["vehicles"], 2)
        self.assertEqual(summary["purchased_amount"], Decimal("500000"))

    def test_filter_by_classification(self):
        """Test filtering and newest-first ordering"""
        result = reduce_transactions([
            row(vehicle_id="v1", status="completed", remaining_amount="0", minutes=1),
            row(vehicle_id="v2", status="payment_initiated", minutes=2),
            row(vehicle_id="v3", status="completed", remaining_amount="0", minutes=3),
        ])
        purchases = filter_by_classification(result, Classification.PURCHASE)

        self.assertEqual([rep.transaction.vehicle_id for rep in purchases], ["v3", "v1"])
        self.assertEqual(len(filter_by_classification(result)), 3)

    def test_daily_series_counts_booking_and_balance_once(self):
        """Test that a vehicle paid in two rows is one sale on the chart"""
        rows = [
            row(vehicle_id="v1", status="payment_completed", booking_amount="50000",
                remaining_amount="450000", payment_shape="booking_token"),
            row(vehicle_id="v1", status="completed", booking_amount="0", remaining_amount="0",
                payment_shape="balance_settlement", minutes=10),
            row(vehicle_id="v2", status="payment_initiated", minutes=20),
        ]

        series = daily_series(reduce_transactions(rows), today=BASE_TIME.date())

        self.assertEqual(len(series), 7)
        self.assertEqual(series[-1], {"date": "2024-06-01", "count": 1, "total_amount": Decimal("500000")})
        self.assertEqual(sum(day["count"] for day in series), 1)

    def test_daily_series_zero_fills_and_skips_old_sales(self):
        old_sale = row(status="completed", remaining_amount="0")
        series = daily_series(reduce_transactions([old_sale]), days=3, today=BASE_TIME.date() + timedelta(days=5))

        self.assertEqual([day["date"] for day in series], ["2024-06-04", "2024-06-05", "2024-06-06"])
        self.assertTrue(all(day["count"] == 0 for day in series))


# ---------- transition policy ----------

class TransitionPolicyTest(SimpleTestCase):
    """Test cases for the pure status transition rules."""

    def test_unknown_status_rejected(self):
        """Test that statuses outside the enum raise InvalidStatus"""
        with self.assertRaises(InvalidStatusException):
            TransitionPolicy.apply_status_change(row(), "paid")

    def test_initial_booking_payment_keeps_vehicle_listed(self):
        """Test that a booking token confirmation only writes the status"""
        booking = row(booking_amount="50000", remaining_amount="450000", payment_shape="booking_token")

        change = TransitionPolicy.apply_status_change(booking, "payment_completed")

        self.assertEqual(change.transaction_patch, {"status": "payment_completed"})
        self.assertIsNone(change.vehicle_status)

    def test_full_payment_finalizes_sale(self):
        """Test that a full payment clears the balance and sells the vehicle"""
        now = BASE_TIME
        change = TransitionPolicy.apply_status_change(row(), "completed", now=now)

        self.assertEqual(change.vehicle_status, "sold")
        self.assertEqual(change.transaction_patch["remaining_amount"], Decimal("0"))
        self.assertEqual(change.transaction_patch["estimated_ready_date"], now + timedelta(days=7))
        self.assertEqual(change.transaction_patch["delivery_status"], "processing")

    def test_balance_settlement_finalizes_sale(self):
        """Test that an explicit balance settlement sells the vehicle"""
        balance = row(booking_amount="0", remaining_amount="0", payment_shape="balance_settlement")

        change = TransitionPolicy.apply_status_change(balance, "completed", now=BASE_TIME)

        self.assertEqual(change.vehicle_status, "sold")

    def test_existing_delivery_status_not_reset(self):
        """Test that finalization keeps a delivery state already entered"""
        existing = row(status="pending", delivery_status="inspection")

        change = TransitionPolicy.apply_status_change(existing, "payment_completed", now=BASE_TIME)

        self.assertNotIn("delivery_status", change.transaction_patch)

    def test_money_received_to_completed_is_status_only(self):
        """Test that side effects are not repeated for payment_completed -> completed"""
        paid = row(status="payment_completed", remaining_amount="0", delivery_status="processing")

        change = TransitionPolicy.apply_status_change(paid, "completed")

        self.assertEqual(change.transaction_patch, {"status": "completed"})
        self.assertIsNone(change.vehicle_status)

    def test_terminal_same_status_is_noop(self):
        """Test idempotence of terminal statuses"""
        for terminal in ("completed", "cancelled", "refunded"):
            self.assertEqual(TransitionPolicy.apply_status_change(row(status=terminal), terminal), NO_CHANGE)

    def test_terminal_different_status_rejected(self):
        """Test that terminal transactions never move again"""
        with self.assertRaises(InvalidStateTransitionException):
            TransitionPolicy.apply_status_change(row(status="cancelled"), "payment_completed")

    def test_failure_is_plain_status_write(self):
        """Test that non-money statuses have no side effects"""
        change = TransitionPolicy.apply_status_change(row(), "payment_failed")

        self.assertEqual(change.transaction_patch, {"status": "payment_failed"})
        self.assertIsNone(change.vehicle_status)

    def test_leaving_money_received_clears_delivery(self):
        """Test that delivery tracking is dropped when the money status is withdrawn"""
        paid = row(status="payment_completed", remaining_amount="0", delivery_status="processing")

        change = TransitionPolicy.apply_status_change(paid, "refunded")

        self.assertEqual(change.transaction_patch, {"status": "refunded", "delivery_status": None})


class DeliveryHelpersTest(SimpleTestCase):
    """Test cases for delivery progression patches."""

    def test_collection_requires_ready_for_collection(self):
        """Test that collecting early is rejected"""
        with self.assertRaises(InvalidStateTransitionException):
            DeliveryHelpers.collection_patch(row(status="completed", delivery_status="inspection"))

    def test_collection_sets_collected_at(self):
        """Test the collected patch"""
        patch = DeliveryHelpers.collection_patch(
            row(status="completed", delivery_status="ready_for_collection"), now=BASE_TIME
        )
        self.assertEqual(patch, {"delivery_status": "collected", "collected_at": BASE_TIME})

    def test_admin_patch_keeps_absent_fields(self):
        """Test that omitted date and notes are not overwritten"""
        paid = row(status="completed", remaining_amount="0", delivery_status="processing")
        patch = DeliveryHelpers.admin_delivery_patch(paid, "inspection")
        self.assertEqual(patch, {"delivery_status": "inspection"})

    def test_admin_patch_allows_backward_moves(self):
        """Test that administrators can correct a state backwards"""
        paid = row(status="completed", remaining_amount="0", delivery_status="documentation")
        patch = DeliveryHelpers.admin_delivery_patch(paid, "processing", notes="Re-inspect brakes")
        self.assertEqual(patch["delivery_status"], "processing")
        self.assertEqual(patch["delivery_notes"], "Re-inspect brakes")

    def test_admin_patch_rejects_unknown_state(self):
        """Test that unknown delivery states raise InvalidStatus"""
        paid = row(status="completed", remaining_amount="0")
        with self.assertRaises(InvalidStatusException):
            DeliveryHelpers.admin_delivery_patch(paid, "shipped")

    def test_admin_patch_requires_finalized_sale(self):
        """Test that unpaid and booking-only transactions cannot enter delivery"""
        with self.assertRaises(InvalidStateTransitionException):
            DeliveryHelpers.admin_delivery_patch(row(status="payment_initiated"), "processing")
        booking = row(status="payment_completed", booking_amount="5", remaining_amount="95", amount="100")
        with self.assertRaises(InvalidStateTransitionException):
            DeliveryHelpers.admin_delivery_patch(booking, "processing")


class PaymentHelpersTest(SimpleTestCase):
    """Test cases for payment references and amounts."""

    def test_booking_token_is_five_percent_rounded(self):
        self.assertEqual(PaymentHelpers.calculate_booking_token(Decimal("500000")), Decimal("25000"))
        self.assertEqual(PaymentHelpers.calculate_booking_token(Decimal("123450")), Decimal("6173"))

    def test_reference_format(self):
        reference = PaymentHelpers.generate_reference("CASH", "1a2b3c4d-5e6f")
        prefix, millis, suffix = reference.split("-")
        self.assertEqual(prefix, "CASH")
        self.assertTrue(millis.isdigit())
        self.assertEqual(suffix, "1A2B3C4D")

    @override_settings(UPI_ID="cars@upi", UPI_NAME="Cars Payments")
    def test_upi_link(self):
        link = PaymentHelpers.build_upi_link(Decimal("25000"), "Booking 2021 Maruti Swift", "BK-1-ABCD")
        self.assertTrue(link.startswith("upi://pay?pa=cars@upi&pn=Cars%20Payments&am=25000"))
        self.assertTrue(link.endswith("&tr=BK-1-ABCD"))

    @override_settings(UPI_ID="")
    def test_upi_link_requires_configuration(self):
        with self.assertRaises(GatewayUnavailableException):
            PaymentHelpers.build_upi_link(Decimal("1"), "note", "ref")


# ---------- store ----------

class TransactionStoreTest(MarketplaceFixtures, TestCase):
    """Test cases for transaction persistence."""

    def setUp(self):
        self.create_fixtures()

    def test_create_full_payment(self):
        """Test that a full payment has no booking split"""
        transaction = self.make_transaction()

        self.assertEqual(transaction.status, "payment_initiated")
        self.assertEqual(transaction.payment_shape, "full_payment")
        self.assertIsNone(transaction.booking_amount)
        self.assertIsNone(transaction.remaining_amount)

    def test_create_booking_token(self):
        """Test that the remaining balance is derived from the booking amount"""
        transaction = self.make_transaction(booking_amount=Decimal("50000"), payment_type="cash_booking")

        self.assertEqual(transaction.payment_shape, "booking_token")
        self.assertEqual(transaction.remaining_amount, Decimal("450000"))
        self.assertTrue(transaction.is_amount_balanced)

    def test_create_balance_settlement(self):
        """Test that balance rows are tagged explicitly"""
        booking = self.make_transaction(booking_amount=Decimal("50000"), status="payment_completed")
        balance = self.make_transaction(settles=booking)

        self.assertEqual(balance.payment_shape, "balance_settlement")
        self.assertEqual(balance.booking_amount, Decimal("0"))
        self.assertEqual(balance.remaining_amount, Decimal("0"))
        self.assertEqual(balance.amount_due_now, Decimal("450000"))

    def test_create_rejects_booking_not_below_amount(self):
        """Test booking amount bounds"""
        with self.assertRaises(InvalidInputException):
            self.make_transaction(booking_amount=Decimal("500000"))
        with self.assertRaises(InvalidInputException):
            self.make_transaction(booking_amount=Decimal("-1"))

    def test_create_rejects_zero_booking_amount(self):
        """Test that a zero token is not stored as a full payment"""
        with self.assertRaises(InvalidInputException):
            self.make_transaction(booking_amount=Decimal("0"), payment_type="cash_booking")
        self.assertFalse(Transaction.objects.exists())

    def test_get_missing_raises_not_found(self):
        """Test that unknown and malformed ids both raise NotFound"""
        with self.assertRaises(NotFoundException):
            TransactionStore.get(uuid.uuid4())
        with self.assertRaises(NotFoundException):
            TransactionStore.get("not-a-uuid")

    def test_lists_return_full_history_newest_first(self):
        """Test that no pre-aggregation happens in the store"""
        failed = self.make_transaction(status="payment_failed")
        Transaction.objects.filter(pk=failed.pk).update(created_at=timezone.now() - timedelta(days=1))
        current = self.make_transaction()

        self.assertEqual(list(TransactionStore.list_by_buyer(self.buyer)), [current, failed])
        self.assertEqual(list(TransactionStore.list_by_seller(self.seller)), [current, failed])
        self.assertEqual(list(TransactionStore.list_by_vehicle(self.vehicle)), [current, failed])

    def test_update_bumps_updated_at(self):
        """Test partial update"""
        transaction = self.make_transaction()
        before = transaction.updated_at

        TransactionStore.update(transaction, {"payment_reference": "REF-1"})
        transaction.refresh_from_db()

        self.assertEqual(transaction.payment_reference, "REF-1")
        self.assertGreaterEqual(transaction.updated_at, before)

    def test_update_rejects_money_change_on_terminal(self):
        """Test that terminal rows are never resurrected"""
        transaction = self.make_transaction(status="cancelled")
        with self.assertRaises(InvalidStateTransitionException):
            TransactionStore.update(transaction, {"status": "payment_initiated"})

    def test_delivery_fields_writable_on_completed_only(self):
        """Test delivery updates on terminal rows"""
        completed = self.make_transaction(status="completed")
        Transaction.objects.filter(pk=completed.pk).update(remaining_amount=0)
        completed.refresh_from_db()
        TransactionStore.update(completed, {"delivery_status": "inspection"})

        cancelled = self.make_transaction(status="cancelled", vehicle=self.make_vehicle())
        with self.assertRaises(InvalidStateTransitionException):
            TransactionStore.update(cancelled, {"delivery_notes": "x"})


# ---------- service ----------

class ApplyStatusTest(MarketplaceFixtures, TestCase):
    """Test cases for the atomic status change unit of work."""

    def setUp(self):
        self.create_fixtures()
        self.service = TransactionService(gateway=self.mock_gateway())

    def test_full_payment_sells_vehicle(self):
        """Test that a settled full payment marks the vehicle sold"""
        transaction = self.make_transaction()

        transaction = self.service.apply_status(transaction.id, "payment_completed")
        self.vehicle.refresh_from_db()

        self.assertEqual(self.vehicle.status, "sold")
        self.assertEqual(transaction.remaining_amount, Decimal("0"))
        self.assertEqual(transaction.delivery_status, "processing")
        self.assertIsNotNone(transaction.estimated_ready_date)
        self.assertTrue(transaction.is_amount_balanced)

    def test_booking_then_balance_scenario(self):
        """Test booking token confirmation followed by a balance settlement"""
        booking = self.make_transaction(booking_amount=Decimal("50000"), payment_type="cash_booking")

        booking = self.service.apply_status(booking.id, "payment_completed")
        self.vehicle.refresh_from_db()
        self.assertEqual(self.vehicle.status, "approved")
        self.assertEqual(booking.remaining_amount, Decimal("450000"))
        self.assertEqual(booking.booking_amount + booking.remaining_amount, booking.amount)
        items, _ = self.service.list_my_purchases(self.buyer)
        self.assertEqual(items[0].classification, Classification.BOOKING)

        balance = self.make_transaction(settles=booking)
        balance = self.service.apply_status(balance.id, "completed")
        self.vehicle.refresh_from_db()
        self.assertEqual(self.vehicle.status, "sold")
        self.assertIsNotNone(balance.estimated_ready_date)

        items, summary = self.service.list_my_purchases(self.buyer)
        self.assertEqual(len(items), 1)
        self.assertEqual(items[0].transaction.id, balance.id)
        self.assertEqual(items[0].classification, Classification.PURCHASE)
        self.assertEqual(summary["purchases"], 1)

    def test_same_terminal_status_twice_is_idempotent(self):
        """Test that re-applying completed leaves the same state"""
        transaction = self.make_transaction()
        first = self.service.apply_status(transaction.id, "completed")
        second = self.service.apply_status(transaction.id, "completed")

        self.assertEqual(first.status, second.status)
        self.assertEqual(first.estimated_ready_date, second.estimated_ready_date)
        self.assertEqual(first.updated_at, second.updated_at)

    def test_terminal_transaction_rejects_other_status(self):
        """Test that completed transactions cannot be cancelled"""
        transaction = self.make_transaction()
        self.service.apply_status(transaction.id, "completed")
        with self.assertRaises(InvalidStateTransitionException):
            self.service.apply_status(transaction.id, "cancelled")

    def test_database_error_rolls_back_both_rows(self):
        """Test that a failed vehicle write leaves the transaction untouched"""
        transaction = self.make_transaction()
        with mock.patch.object(Vehicle, "save", side_effect=DatabaseError("disk full")):
            with self.assertRaises(InconsistentStateException):
                self.service.apply_status(transaction.id, "payment_completed")

        transaction.refresh_from_db()
        self.vehicle.refresh_from_db()
        self.assertEqual(transaction.status, "payment_initiated")
        self.assertEqual(self.vehicle.status, "approved")

    def test_missing_vehicle_raises_not_found(self):
        """Test that nothing is committed when the vehicle is gone"""
        transaction = self.make_transaction()
        with mock.patch.object(
            TransactionService, "_lock_vehicle", side_effect=NotFoundException("Vehicle not found.")
        ):
            with self.assertRaises(NotFoundException):
                self.service.apply_status(transaction.id, "payment_completed")
        transaction.refresh_from_db()
        self.assertEqual(transaction.status, "payment_initiated")

    def test_settled_transactions_always_have_sold_vehicles(self):
        """Test that every fully settled row points to a sold vehicle"""
        for _ in range(3):
            vehicle = self.make_vehicle()
            transaction = self.make_transaction(vehicle=vehicle)
            self.service.apply_status(transaction.id, "payment_completed")

        for transaction in Transaction.objects.select_related("vehicle"):
            if transaction.is_fully_settled:
                self.assertEqual(transaction.vehicle.status, "sold")


class CheckoutServiceTest(MarketplaceFixtures, TestCase):
    """Test cases for starting purchases, bookings and balance payments."""

    def setUp(self):
        self.create_fixtures()
        self.gateway = self.mock_gateway()
        self.service = TransactionService(gateway=self.gateway)

    def test_full_card_checkout(self):
        """Test that the full price is charged through the gateway"""
        result = self.service.initiate_checkout(self.buyer, self.vehicle.id, "full_card")
        transaction = result["transaction"]

        self.assertEqual(result["checkout_url"], "https://checkout.stripe.com/c/pay/cs_test_123")
        self.assertEqual(transaction.gateway_session_id, "cs_test_123")
        self.assertEqual(transaction.payment_shape, "full_payment")
        self.gateway.create_checkout.assert_called_once()
        self.assertEqual(self.gateway.create_checkout.call_args[0][1], Decimal("500000.00"))

    def test_new_checkout_cancels_open_one(self):
        """Test that a second checkout expires the first session"""
        first = self.service.initiate_checkout(self.buyer, self.vehicle.id, "full_card")["transaction"]
        self.service.initiate_checkout(self.buyer, self.vehicle.id, "full_card")

        first.refresh_from_db()
        self.assertEqual(first.status, "cancelled")
        self.assertEqual(first.payment_error_description, "Session expired - new checkout created")

    def test_new_checkout_expires_old_gateway_session(self):
        """Test that the replaced session is closed at the gateway"""
        self.gateway.create_checkout.side_effect = [
            CheckoutSession("cs_old", "https://checkout.stripe.com/c/pay/cs_old"),
            CheckoutSession("cs_new", "https://checkout.stripe.com/c/pay/cs_new"),
        ]
        self.service.initiate_checkout(self.buyer, self.vehicle.id, "full_card")
        self.gateway.expire_checkout.assert_not_called()

        self.service.initiate_checkout(self.buyer, self.vehicle.id, "full_card")

        self.gateway.expire_checkout.assert_called_once_with("cs_old")

    def test_booking_token_rounding_to_zero_rejected(self):
        """Test that a price too small for a token cannot be booked"""
        cheap = self.make_vehicle(price="9.00")

        with self.assertRaises(InvalidInputException):
            self.service.initiate_checkout(self.buyer, cheap.id, "cash_booking")
        with self.assertRaises(InvalidInputException):
            self.service.initiate_checkout(self.buyer, cheap.id, "advance_upi", booking_method="card")

        self.assertFalse(Transaction.objects.filter(vehicle=cheap).exists())
        self.gateway.create_checkout.assert_not_called()

    def test_only_buyers_can_checkout(self):
        with self.assertRaises(PermissionDeniedException):
            self.service.initiate_checkout(self.seller, self.vehicle.id, "full_card")

    def test_missing_vehicle(self):
        with self.assertRaises(NotFoundException):
            self.service.initiate_checkout(self.buyer, uuid.uuid4(), "full_card")

    def test_unavailable_vehicle(self):
        """Test that unapproved or sold vehicles cannot be bought"""
        pending = self.make_vehicle(status="pending")
        with self.assertRaises(InvalidInputException):
            self.service.initiate_checkout(self.buyer, pending.id, "full_card")

    def test_own_vehicle(self):
        """Test that buyers cannot purchase their own listing"""
        own = self.make_vehicle(seller=self.buyer)
        with self.assertRaises(InvalidInputException):
            self.service.initiate_checkout(self.buyer, own.id, "full_card")

    def test_gateway_failure_marks_transaction_failed(self):
        """Test that a gateway outage is recorded and surfaced as unavailable"""
        self.gateway.create_checkout.side_effect = GatewayUnavailableException()

        with self.assertRaises(GatewayUnavailableException):
            self.service.initiate_checkout(self.buyer, self.vehicle.id, "full_card")

        transaction = Transaction.objects.get(buyer=self.buyer)
        self.assertEqual(transaction.status, "payment_failed")
        self.assertEqual(transaction.payment_error_code, "gateway_unavailable")

    def test_advance_booking_by_card(self):
        """Test that only the booking token goes through the gateway"""
        result = self.service.initiate_checkout(self.buyer, self.vehicle.id, "advance_upi", booking_method="card")
        transaction = result["transaction"]

        self.assertEqual(transaction.payment_shape, "booking_token")
        self.assertEqual(transaction.booking_amount, Decimal("25000"))
        self.assertEqual(transaction.remaining_amount, Decimal("475000"))
        self.assertEqual(self.gateway.create_checkout.call_args[0][1], Decimal("25000"))

    @override_settings(UPI_ID="cars@upi")
    def test_advance_booking_by_upi(self):
        """Test that UPI bookings return a deep link instead of a session"""
        result = self.service.initiate_checkout(self.buyer, self.vehicle.id, "advance_upi", booking_method="upi")

        self.assertTrue(result["upi_link"].startswith("upi://pay?pa=cars@upi"))
        self.assertTrue(result["reference"].startswith("BK-"))
        self.gateway.create_checkout.assert_not_called()

    def test_cash_booking(self):
        """Test that cash bookings wait for the seller"""
        result = self.service.initiate_checkout(self.buyer, self.vehicle.id, "cash_booking")

        self.assertTrue(result["reference"].startswith("CASH-"))
        self.assertEqual(result["seller_phone"], "9876543210")
        self.assertEqual(result["amount"], Decimal("25000"))
        self.gateway.create_checkout.assert_not_called()

    @override_settings(UPI_ID="cars@upi")
    def test_split_qr_charges_rest_by_card(self):
        """Test that the manual part is subtracted from the card charge"""
        result = self.service.initiate_checkout(
            self.buyer, self.vehicle.id, "split_qr",
            qr_amount=Decimal("100000"), cash_amount=Decimal("50000"),
        )
        transaction = result["transaction"]

        self.assertEqual(transaction.manual_amount, Decimal("150000"))
        self.assertEqual(transaction.payment_shape, "full_payment")
        self.assertEqual(self.gateway.create_checkout.call_args[0][1], Decimal("350000.00"))
        self.assertIsNotNone(result["upi_link"])

    def test_split_manual_amount_bounds(self):
        """Test that the manual part must be positive and below the price"""
        with self.assertRaises(InvalidInputException):
            self.service.initiate_checkout(self.buyer, self.vehicle.id, "split_cash", cash_amount=Decimal("0"))
        with self.assertRaises(InvalidInputException):
            self.service.initiate_checkout(
                self.buyer, self.vehicle.id, "split_cash", cash_amount=Decimal("500000")
            )

    def test_balance_payment_by_card(self):
        """Test that the balance is charged as a new settlement row"""
        booking = self.make_transaction(
            booking_amount=Decimal("50000"), status="payment_completed", payment_type="cash_booking"
        )

        result = self.service.initiate_checkout(
            self.buyer, self.vehicle.id, "full_card", previous_transaction_id=booking.id
        )
        balance = result["transaction"]

        self.assertEqual(balance.payment_shape, "balance_settlement")
        self.assertEqual(balance.settles_id, booking.id)
        self.assertEqual(result["amount"], Decimal("450000"))
        self.assertEqual(self.gateway.create_checkout.call_args[0][1], Decimal("450000"))

    def test_balance_payment_in_cash(self):
        booking = self.make_transaction(
            booking_amount=Decimal("50000"), status="payment_completed", payment_type="cash_booking"
        )
        result = self.service.initiate_checkout(
            self.buyer, self.vehicle.id, "cash_booking", previous_transaction_id=booking.id
        )
        self.assertTrue(result["reference"].startswith("CASH-BAL-"))
        self.gateway.create_checkout.assert_not_called()

    def test_balance_payment_validation(self):
        """Test balance payments against unpaid, foreign and settled bookings"""
        booking = self.make_transaction(
            booking_amount=Decimal("50000"), status="payment_completed", payment_type="cash_booking"
        )
        with self.assertRaises(InvalidInputException):
            self.service.initiate_checkout(
                self.buyer, self.vehicle.id, "advance_upi", previous_transaction_id=booking.id
            )
        with self.assertRaises(NotFoundException):
            self.service.initiate_checkout(
                self.other_buyer, self.vehicle.id, "full_card", previous_transaction_id=booking.id
            )

        unpaid = self.make_transaction(
            booking_amount=Decimal("50000"), payment_type="cash_booking", vehicle=self.make_vehicle()
        )
        with self.assertRaises(InvalidInputException):
            self.service.initiate_checkout(
                self.buyer, unpaid.vehicle_id, "full_card", previous_transaction_id=unpaid.id
            )

        balance = self.make_transaction(settles=booking)
        self.service.apply_status(balance.id, "completed")
        with self.assertRaises(InvalidInputException):
            self.service.initiate_checkout(
                self.buyer, self.vehicle.id, "cash_booking", previous_transaction_id=booking.id
            )


class VerificationServiceTest(MarketplaceFixtures, TestCase):
    """Test cases for verifying payments and recording gateway notifications."""

    def setUp(self):
        self.create_fixtures()
        self.gateway = self.mock_gateway()
        self.service = TransactionService(gateway=self.gateway)
        self.transaction = self.make_transaction(gateway_session_id="cs_test_123")

    def test_verify_success_completes_payment(self):
        self.gateway.verify.return_value = VerificationResult(True, False, Decimal("500000"), "card", "pi_1")

        outcome = self.service.verify_payment(self.buyer, transaction_id=self.transaction.id)
        self.vehicle.refresh_from_db()

        self.assertTrue(outcome.verified)
        self.assertEqual(outcome.transaction.status, "payment_completed")
        self.assertEqual(outcome.transaction.gateway_payment_id, "pi_1")
        self.assertEqual(self.vehicle.status, "sold")

    def test_verify_logs_amount_mismatch(self):
        """Test that a charge differing from the amount due is flagged"""
        self.gateway.verify.return_value = VerificationResult(True, False, Decimal("1000"), "card", "pi_1")

        with self.assertLogs("payment", level="ERROR") as logs:
            outcome = self.service.verify_payment(self.buyer, transaction_id=self.transaction.id)

        self.assertTrue(outcome.verified)
        self.assertIn("expected 500000", "\n".join(logs.output))

    def test_verify_after_admin_completed_it(self):
        """Test that a transaction closed during verification is reported, not rejected"""
        def complete_then_report_paid(session_id):
            Transaction.objects.filter(pk=self.transaction.pk).update(status="completed")
            return VerificationResult(True, False, Decimal("500000"), "card", "pi_1")

        self.gateway.verify.side_effect = complete_then_report_paid

        outcome = self.service.verify_payment(self.buyer, transaction_id=self.transaction.id)

        self.assertTrue(outcome.verified)
        self.assertEqual(outcome.transaction.status, "completed")

    def test_verify_after_admin_cancelled_it(self):
        def cancel_then_report_paid(session_id):
            Transaction.objects.filter(pk=self.transaction.pk).update(status="cancelled")
            return VerificationResult(True, False, Decimal("500000"), "card", "pi_1")

        self.gateway.verify.side_effect = cancel_then_report_paid

        outcome = self.service.verify_payment(self.buyer, transaction_id=self.transaction.id)

        self.assertFalse(outcome.verified)
        self.assertEqual(outcome.transaction.status, "cancelled")
        self.assertEqual(outcome.message, "Payment is still pending.")

    def test_verify_by_session_id(self):
        self.gateway.verify.return_value = VerificationResult(True, False, None, "card", "pi_1")
        outcome = self.service.verify_payment(self.buyer, session_id="cs_test_123")
        self.assertTrue(outcome.verified)

    def test_verify_pending_is_not_an_error(self):
        """Test that an unpaid session reports verified=False"""
        outcome = self.service.verify_payment(self.buyer, transaction_id=self.transaction.id)

        self.assertFalse(outcome.verified)
        self.assertEqual(outcome.transaction.status, "payment_initiated")

    def test_verify_expired_cancels(self):
        self.gateway.verify.return_value = VerificationResult(False, True, None, "", None)

        outcome = self.service.verify_payment(self.buyer, transaction_id=self.transaction.id)

        self.assertFalse(outcome.verified)
        self.assertEqual(outcome.transaction.status, "cancelled")
        self.assertEqual(outcome.transaction.payment_error_description, "Checkout session expired")

    def test_verify_already_paid_skips_gateway(self):
        self.service.apply_status(self.transaction.id, "payment_completed")

        outcome = self.service.verify_payment(self.buyer, transaction_id=self.transaction.id)

        self.assertTrue(outcome.verified)
        self.gateway.verify.assert_not_called()

    def test_verify_gateway_unavailable(self):
        self.gateway.verify.side_effect = GatewayUnavailableException()
        with self.assertRaises(GatewayUnavailableException):
            self.service.verify_payment(self.buyer, transaction_id=self.transaction.id)

    def test_verify_requires_id_and_buyer(self):
        with self.assertRaises(InvalidInputException):
            self.service.verify_payment(self.buyer)
        with self.assertRaises(PermissionDeniedException):
            self.service.verify_payment(self.other_buyer, transaction_id=self.transaction.id)

    def test_record_failure(self):
        transaction = self.service.record_failure(
            self.buyer, self.transaction.id, error_code="card_declined", error_description="Declined"
        )
        self.assertEqual(transaction.status, "payment_failed")
        self.assertEqual(transaction.payment_error_code, "card_declined")

    def test_record_failure_on_paid_transaction_rejected(self):
        """Test that a paid transaction cannot be downgraded by the client"""
        self.service.apply_status(self.transaction.id, "payment_completed")
        with self.assertRaises(InvalidStateTransitionException):
            self.service.record_failure(self.buyer, self.transaction.id)

    def test_webhook_completed_is_idempotent(self):
        """Test that repeated completion events apply once"""
        self.gateway.parse_event.return_value = {
            "type": "checkout.session.completed",
            "data": {"object": {"id": "cs_test_123", "payment_intent": "pi_9"}},
        }

        self.service.handle_gateway_event(b"{}", "sig")
        self.transaction.refresh_from_db()
        first_updated = self.transaction.updated_at
        self.service.handle_gateway_event(b"{}", "sig")
        self.transaction.refresh_from_db()

        self.assertEqual(self.transaction.status, "payment_completed")
        self.assertEqual(self.transaction.gateway_payment_id, "pi_9")
        self.assertEqual(self.transaction.updated_at, first_updated)

    def test_webhook_expired(self):
        self.gateway.parse_event.return_value = {
            "type": "checkout.session.expired",
            "data": {"object": {"id": "cs_test_123"}},
        }
        self.service.handle_gateway_event(b"{}", "sig")
        self.transaction.refresh_from_db()
        self.assertEqual(self.transaction.status, "cancelled")

    def test_webhook_payment_failed_found_by_metadata(self):
        self.gateway.parse_event.return_value = {
            "type": "payment_intent.payment_failed",
            "data": {"object": {
                "id": "pi_failed",
                "metadata": {"transaction_id": str(self.transaction.id)},
                "last_payment_error": {"code": "card_declined", "message": "Your card was declined."},
            }},
        }
        self.service.handle_gateway_event(b"{}", "sig")
        self.transaction.refresh_from_db()

        self.assertEqual(self.transaction.status, "payment_failed")
        self.assertEqual(self.transaction.payment_error_description, "Your card was declined.")

    def test_webhook_late_expiry_does_not_undo_payment(self):
        """Test that an expiry event after payment is ignored"""
        self.service.apply_status(self.transaction.id, "payment_completed")
        self.gateway.parse_event.return_value = {
            "type": "checkout.session.expired",
            "data": {"object": {"id": "cs_test_123"}},
        }
        self.service.handle_gateway_event(b"{}", "sig")
        self.transaction.refresh_from_db()
        self.assertEqual(self.transaction.status, "payment_completed")

    def test_webhook_payment_for_replaced_checkout_is_recorded(self):
        """Test that money captured on a cancelled checkout is kept for follow-up"""
        Transaction.objects.filter(pk=self.transaction.pk).update(status="cancelled")
        self.gateway.parse_event.return_value = {
            "type": "checkout.session.completed",
            "data": {"object": {"id": "cs_test_123", "payment_intent": "pi_late"}},
        }

        with self.assertLogs("payment", level="ERROR"):
            self.service.handle_gateway_event(b"{}", "sig")
        self.transaction.refresh_from_db()
        self.vehicle.refresh_from_db()

        self.assertEqual(self.transaction.status, "cancelled")
        self.assertEqual(self.transaction.gateway_payment_id, "pi_late")
        self.assertEqual(self.transaction.payment_error_code, "paid_after_cancel")
        self.assertEqual(self.vehicle.status, "approved")

    def test_webhook_unknown_session_acknowledged(self):
        self.gateway.parse_event.return_value = {
            "type": "checkout.session.completed",
            "data": {"object": {"id": "cs_unknown"}},
        }
        self.assertEqual(self.service.handle_gateway_event(b"{}", "sig"), "checkout.session.completed")


class ManualConfirmationServiceTest(MarketplaceFixtures, TestCase):
    """Test cases for seller confirmations and split payment verification."""

    def setUp(self):
        self.create_fixtures()
        self.service = TransactionService(gateway=self.mock_gateway())

    def test_seller_confirms_cash_booking(self):
        """Test that confirming a token keeps the vehicle listed"""
        booking = self.make_transaction(booking_amount=Decimal("25000"), payment_type="cash_booking")

        transaction = self.service.confirm_booking(self.seller, booking.id, reference="RCPT-1")
        self.vehicle.refresh_from_db()

        self.assertEqual(transaction.status, "payment_completed")
        self.assertEqual(transaction.remaining_amount, Decimal("475000"))
        self.assertEqual(transaction.payment_reference, "RCPT-1")
        self.assertEqual(self.vehicle.status, "approved")

    def test_seller_confirms_cash_balance(self):
        """Test that confirming a balance settlement sells the vehicle"""
        booking = self.make_transaction(
            booking_amount=Decimal("25000"), payment_type="cash_booking", status="payment_completed"
        )
        balance = self.make_transaction(settles=booking, payment_type="cash_booking")

        self.service.confirm_booking(self.seller, balance.id)
        self.vehicle.refresh_from_db()

        self.assertEqual(self.vehicle.status, "sold")

    def test_confirm_booking_twice_is_noop(self):
        booking = self.make_transaction(booking_amount=Decimal("25000"), payment_type="cash_booking")
        self.service.confirm_booking(self.seller, booking.id)
        transaction = self.service.confirm_booking(self.seller, booking.id)
        self.assertEqual(transaction.status, "payment_completed")

    def test_only_seller_confirms(self):
        booking = self.make_transaction(booking_amount=Decimal("25000"), payment_type="cash_booking")
        with self.assertRaises(PermissionDeniedException):
            self.service.confirm_booking(self.buyer, booking.id)

    def test_card_payments_cannot_be_confirmed_manually(self):
        transaction = self.make_transaction()
        with self.assertRaises(InvalidInputException):
            self.service.confirm_booking(self.seller, transaction.id)

    def test_verify_manual_split(self):
        """Test that the manual part is recorded without completing the sale"""
        split = self.make_transaction(payment_type="split_qr", manual_amount=Decimal("100000"))

        transaction = self.service.verify_manual(self.buyer, split.id, "UPI-777")

        self.assertEqual(transaction.status, "payment_initiated")
        self.assertEqual(transaction.payment_reference, "UPI-777")
        self.assertEqual(transaction.payment_method, "upi")

    def test_verify_manual_requires_split(self):
        transaction = self.make_transaction()
        with self.assertRaises(InvalidInputException):
            self.service.verify_manual(self.buyer, transaction.id)


class DeliveryServiceTest(MarketplaceFixtures, TestCase):
    """Test cases for delivery progression and collection."""

    def setUp(self):
        self.create_fixtures()
        self.service = TransactionService(gateway=self.mock_gateway())
        self.transaction = self.service.apply_status(self.make_transaction().id, "completed")

    def test_collection_before_ready_rejected(self):
        """Test confirm_collection at inspection"""
        self.service.admin_update_delivery(self.admin, self.transaction.id, "inspection")
        with self.assertRaises(InvalidStateTransitionException):
            self.service.confirm_collection(self.buyer, self.transaction.id)

    def test_collection_when_ready(self):
        """Test confirm_collection at ready_for_collection"""
        self.service.admin_update_delivery(self.admin, self.transaction.id, "ready_for_collection")

        transaction = self.service.confirm_collection(self.buyer, self.transaction.id)

        self.assertEqual(transaction.delivery_status, "collected")
        self.assertIsNotNone(transaction.collected_at)

    def test_only_buyer_collects(self):
        self.service.admin_update_delivery(self.admin, self.transaction.id, "ready_for_collection")
        with self.assertRaises(PermissionDeniedException):
            self.service.confirm_collection(self.other_buyer, self.transaction.id)

    def test_admin_delivery_keeps_absent_fields(self):
        """Test that omitted notes and date keep their values"""
        ready_date = self.transaction.estimated_ready_date
        self.service.admin_update_delivery(self.admin, self.transaction.id, "inspection", notes="Tyres replaced")

        transaction = self.service.admin_update_delivery(self.admin, self.transaction.id, "documentation")

        self.assertEqual(transaction.delivery_notes, "Tyres replaced")
        self.assertEqual(transaction.estimated_ready_date, ready_date)

    def test_non_admin_delivery_forbidden(self):
        with self.assertRaises(PermissionDeniedException):
            self.service.admin_update_delivery(self.buyer, self.transaction.id, "inspection")

    def test_delivery_requires_finalized_sale(self):
        unpaid = self.make_transaction(vehicle=self.make_vehicle())
        with self.assertRaises(InvalidStateTransitionException):
            self.service.admin_update_delivery(self.admin, unpaid.id, "processing")

    def test_admin_status_update(self):
        """Test administrator status overrides"""
        transaction = self.make_transaction(vehicle=self.make_vehicle())
        with self.assertRaises(PermissionDeniedException):
            self.service.admin_update_status(self.seller, transaction.id, "cancelled")
        with self.assertRaises(InvalidStatusException):
            self.service.admin_update_status(self.admin, transaction.id, "bogus")

        transaction = self.service.admin_update_status(self.admin, transaction.id, "cancelled")
        self.assertEqual(transaction.status, "cancelled")

    def test_tracking_lists_only_delivery_rows(self):
        """Test the delivery tracking view of purchases"""
        self.make_transaction(vehicle=self.make_vehicle())

        items, _ = self.service.list_my_purchases(self.buyer, tracking=True)

        self.assertEqual([rep.transaction.id for rep in items], [self.transaction.id])

    def test_invalid_classification_filter(self):
        with self.assertRaises(InvalidInputException):
            self.service.list_my_purchases(self.buyer, classification="everything")


# ---------- HTTP API ----------

class TransactionAPITest(MarketplaceFixtures, APITestCase):
    """Test cases for the transaction endpoints."""

    def setUp(self):
        self.create_fixtures()
        self.gateway = self.mock_gateway()
        patcher = mock.patch("payment.services.get_payment_gateway", return_value=self.gateway)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_requires_authentication(self):
        response = self.client.get("/api/transactions/my-purchases/")
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)
        self.assertFalse(response.data["success"])

    def test_checkout(self):
        self.client.force_authenticate(user=self.buyer)
        response = self.client.post(
            "/api/transactions/checkout/",
            {"vehicle_id": str(self.vehicle.id), "payment_type": "full_card"},
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data["session_id"], "cs_test_123")
        self.assertEqual(response.data["transaction"]["status"], "payment_initiated")

    def test_checkout_gateway_unavailable(self):
        self.gateway.create_checkout.side_effect = GatewayUnavailableException()
        self.client.force_authenticate(user=self.buyer)
        response = self.client.post(
            "/api/transactions/checkout/",
            {"vehicle_id": str(self.vehicle.id), "payment_type": "full_card"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_503_SERVICE_UNAVAILABLE)

    def test_checkout_invalid_payment_type(self):
        self.client.force_authenticate(user=self.buyer)
        response = self.client.post(
            "/api/transactions/checkout/",
            {"vehicle_id": str(self.vehicle.id), "payment_type": "bitcoin"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_verify_pending(self):
        """Test that a pending payment is a 200 with verified false"""
        transaction = self.make_transaction(gateway_session_id="cs_test_123")
        self.client.force_authenticate(user=self.buyer)

        response = self.client.post(
            "/api/transactions/verify/", {"transaction_id": str(transaction.id)}, format="json"
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertFalse(response.data["verified"])

    def test_retrieve_restricted_to_parties(self):
        transaction = self.make_transaction()

        self.client.force_authenticate(user=self.other_buyer)
        response = self.client.get(f"/api/transactions/{transaction.id}/")
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

        self.client.force_authenticate(user=self.seller)
        response = self.client.get(f"/api/transactions/{transaction.id}/")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["vehicle_name"], "2021 Maruti Swift")

    def test_transactions_cannot_be_edited_directly(self):
        """Test that money fields are never writable through the API"""
        transaction = self.make_transaction()
        self.client.force_authenticate(user=self.buyer)

        response = self.client.patch(
            f"/api/transactions/{transaction.id}/", {"amount": "1.00"}, format="json"
        )

        self.assertEqual(response.status_code, status.HTTP_405_METHOD_NOT_ALLOWED)
        self.assertFalse(response.data["success"])

    def test_my_purchases(self):
        """Test that purchases are reduced and filterable"""
        self.make_transaction(status="payment_failed")
        self.make_transaction()
        self.client.force_authenticate(user=self.buyer)

        response = self.client.get("/api/transactions/my-purchases/?classification=booking")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data["results"]), 1)
        self.assertEqual(response.data["results"][0]["classification"], "booking")
        self.assertEqual(response.data["summary"]["active_bookings"], 1)

    def test_my_purchases_forbidden_for_sellers(self):
        self.client.force_authenticate(user=self.seller)
        response = self.client.get("/api/transactions/my-purchases/")
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_my_sales(self):
        self.make_transaction()
        self.client.force_authenticate(user=self.seller)
        response = self.client.get("/api/transactions/my-sales/")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data["results"]), 1)

    def test_seller_analytics(self):
        """Test that a booking settled by a balance payment is one sale today"""
        service = TransactionService(gateway=self.gateway)
        booking = self.make_transaction(booking_amount=Decimal("25000"), payment_type="cash_booking")
        service.apply_status(booking.id, "payment_completed")
        balance = self.make_transaction(settles=booking, payment_type="cash_booking")
        service.apply_status(balance.id, "completed")

        self.client.force_authenticate(user=self.seller)
        response = self.client.get("/api/transactions/analytics/seller/")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["summary"]["purchases"], 1)
        self.assertEqual(len(response.data["chart_data"]), 7)
        self.assertEqual(response.data["chart_data"][-1]["count"], 1)
        self.assertEqual(response.data["chart_data"][-1]["total_amount"], Decimal("500000.00"))

    def test_buyer_analytics(self):
        self.client.force_authenticate(user=self.buyer)
        response = self.client.get("/api/transactions/analytics/buyer/")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["summary"]["vehicles"], 0)
        self.assertTrue(all(day["count"] == 0 for day in response.data["chart_data"]))

    def test_analytics_restricted_by_role(self):
        self.client.force_authenticate(user=self.buyer)
        self.assertEqual(
            self.client.get("/api/transactions/analytics/seller/").status_code, status.HTTP_403_FORBIDDEN
        )
        self.client.force_authenticate(user=self.seller)
        self.assertEqual(
            self.client.get("/api/transactions/analytics/buyer/").status_code, status.HTTP_403_FORBIDDEN
        )

    def test_confirm_collection_not_ready(self):
        transaction = TransactionService(gateway=self.gateway).apply_status(
            self.make_transaction().id, "completed"
        )
        self.client.force_authenticate(user=self.buyer)
        response = self.client.post(f"/api/transactions/{transaction.id}/confirm-collection/")
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)

    def test_confirm_booking_by_seller(self):
        booking = self.make_transaction(booking_amount=Decimal("25000"), payment_type="cash_booking")
        self.client.force_authenticate(user=self.seller)
        response = self.client.post(f"/api/transactions/{booking.id}/confirm-booking/", {}, format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["transaction"]["status"], "payment_completed")


class AdminTransactionAPITest(MarketplaceFixtures, APITestCase):
    """Test cases for the administrator endpoints."""

    def setUp(self):
        self.create_fixtures()

    def test_list_filters_by_status(self):
        self.make_transaction(status="payment_failed")
        self.make_transaction(vehicle=self.make_vehicle())
        self.client.force_authenticate(user=self.admin)

        response = self.client.get("/api/admin/transactions/?status=payment_failed")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["count"], 1)
        self.assertEqual(response.data["results"][0]["status"], "payment_failed")

    def test_list_forbidden_for_buyers(self):
        self.client.force_authenticate(user=self.buyer)
        response = self.client.get("/api/admin/transactions/")
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_status_update(self):
        transaction = self.make_transaction()
        self.client.force_authenticate(user=self.admin)

        response = self.client.put(
            f"/api/admin/transactions/{transaction.id}/status/", {"status": "completed"}, format="json"
        )
        self.vehicle.refresh_from_db()

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(self.vehicle.status, "sold")

    def test_status_update_invalid_and_terminal(self):
        transaction = self.make_transaction(status="cancelled")
        self.client.force_authenticate(user=self.admin)

        response = self.client.put(
            f"/api/admin/transactions/{transaction.id}/status/", {"status": "unknown"}, format="json"
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

        response = self.client.put(
            f"/api/admin/transactions/{transaction.id}/status/", {"status": "completed"}, format="json"
        )
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)

    def test_status_update_missing_transaction(self):
        self.client.force_authenticate(user=self.admin)
        response = self.client.put(
            f"/api/admin/transactions/{uuid.uuid4()}/status/", {"status": "completed"}, format="json"
        )
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_delivery_update(self):
        transaction = TransactionService().apply_status(self.make_transaction().id, "completed")
        self.client.force_authenticate(user=self.admin)

        response = self.client.put(
            f"/api/admin/transactions/{transaction.id}/delivery/",
            {"delivery_status": "ready_for_collection", "notes": "Bay 4"},
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["transaction"]["delivery_status"], "ready_for_collection")
        self.assertEqual(response.data["transaction"]["delivery_notes"], "Bay 4")

    def test_delivery_update_forbidden_for_buyer(self):
        transaction = TransactionService().apply_status(self.make_transaction().id, "completed")
        self.client.force_authenticate(user=self.buyer)
        response = self.client.put(
            f"/api/admin/transactions/{transaction.id}/delivery/",
            {"delivery_status": "inspection"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)


class StripeGatewayTest(SimpleTestCase):
    """Test cases for the Stripe adapter."""

    def setUp(self):
        self.gateway = StripeGateway(api_key="sk_test", webhook_secret="whsec_test")

    @mock.patch("payment.gateway.stripe.checkout.Session.expire")
    def test_expire_checkout(self, expire):
        self.assertTrue(self.gateway.expire_checkout("cs_old"))
        expire.assert_called_once_with("cs_old")

    @mock.patch("payment.gateway.stripe.checkout.Session.expire")
    def test_expire_checkout_failure_is_reported(self, expire):
        """Test that a session Stripe refuses to expire does not raise"""
        expire.side_effect = stripe.StripeError("Session already completed")

        with self.assertLogs("payment", level="ERROR"):
            self.assertFalse(self.gateway.expire_checkout("cs_old"))


class GatewayWebhookAPITest(MarketplaceFixtures, APITestCase):
    """Test cases for the gateway notification endpoint."""

    def setUp(self):
        self.create_fixtures()

    @mock.patch("payment.gateway.stripe.Webhook.construct_event")
    def test_completed_event(self, construct_event):
        transaction = self.make_transaction(gateway_session_id="cs_test_hook")
        construct_event.return_value = {
            "type": "checkout.session.completed",
            "data": {"object": {"id": "cs_test_hook", "payment_intent": "pi_hook"}},
        }

        response = self.client.post(
            "/api/payments/webhook/", data=b"{}", content_type="application/json",
            HTTP_STRIPE_SIGNATURE="t=1,v1=abc",
        )
        transaction.refresh_from_db()

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data["received"])
        self.assertEqual(transaction.status, "payment_completed")

    def test_missing_signature_rejected(self):
        response = self.client.post("/api/payments/webhook/", data=b"{}", content_type="application/json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)


class ReconcileTransactionsCommandTest(MarketplaceFixtures, TestCase):
    """Test cases for the reconcile_transactions management command."""

    def setUp(self):
        self.create_fixtures()

    def run_command(self, *args):
        out = StringIO()
        call_command("reconcile_transactions", *args, stdout=out)
        return out.getvalue()

    def test_consistent_data(self):
        TransactionService().apply_status(self.make_transaction().id, "completed")
        self.assertIn("All transactions are consistent", self.run_command())

    def test_reports_and_fixes_unsold_vehicle(self):
        transaction = self.make_transaction(status="payment_completed")
        Transaction.objects.filter(pk=transaction.pk).update(remaining_amount=0)

        output = self.run_command()
        self.vehicle.refresh_from_db()
        self.assertIn("is settled but vehicle", output)
        self.assertEqual(self.vehicle.status, "approved")

        self.run_command("--fix")
        self.vehicle.refresh_from_db()
        self.assertEqual(self.vehicle.status, "sold")

    def test_reports_orphaned_and_duplicate_sales(self):
        self.make_vehicle(status="sold")
        duplicated = self.make_vehicle()
        for buyer in (self.buyer, self.other_buyer):
            transaction = self.make_transaction(vehicle=duplicated, buyer=buyer)
            TransactionService().apply_status(transaction.id, "completed")

        output = self.run_command()

        self.assertIn("sold without a settled transaction", output)
        self.assertIn("has 2 settled transactions", output)

    def test_reports_payment_captured_after_cancel(self):
        transaction = self.make_transaction(
            status="cancelled",
            gateway_payment_id="pi_late",
            payment_error_code="paid_after_cancel",
        )

        output = self.run_command()

        self.assertIn(f"Transaction {transaction.id} is cancelled but captured payment pi_late", output)
        self.assertIn("1 problem(s) found", output)

    def test_failed_intent_on_cancelled_row_not_reported(self):
        self.make_transaction(status="cancelled", gateway_payment_id="pi_failed")
        self.assertIn("All transactions are consistent", self.run_command())
