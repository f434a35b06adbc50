import logging
from collections import namedtuple
from django.db import DatabaseError, transaction as db_transaction
from exceptions.handlers import (
    GatewayUnavailableException,
    InconsistentStateException,
    InvalidInputException,
    InvalidStateTransitionException,
    NotFoundException,
    PermissionDeniedException,
)
from utils.constants import (
    Classification,
    DeliveryMessage,
    GeneralMessage,
    PaymentMessage,
    TransactionState,
    VehicleMessage,
)
from utils.delivery_helpers import DeliveryHelpers
from utils.payment_helpers import PaymentHelpers
from utils.transaction_reducer import (
    daily_series,
    filter_by_classification,
    reduce_transactions,
    summarize,
)
from utils.transition_policy import TransitionPolicy, to_decimal
from utils.validators import CheckoutValidators, TransactionValidators
from .gateway import get_payment_gateway
from .models import Transaction
from .store import TransactionStore

logger = logging.getLogger("payment")

VerifyOutcome = namedtuple("VerifyOutcome", ["transaction", "verified", "message"])

CLASSIFICATIONS = {Classification.PURCHASE, Classification.BOOKING, Classification.NONE}


class TransactionService:
    """
    Entry point for every change to a transaction.

    Each public method is one unit of work: the transaction row is locked,
    then the vehicle row, the transition policy decides what changes, and
    both rows are written before the database transaction commits.
    """

    def __init__(self, gateway=None):
        self._gateway = gateway

    @property
    def gateway(self):
        if self._gateway is None:
            self._gateway = get_payment_gateway()
        return self._gateway

    # ---------- core state change ----------

    @staticmethod
    def _lock_vehicle(vehicle_id):
        from vehicles.models import Vehicle

        try:
            return Vehicle.objects.select_for_update().get(pk=vehicle_id)
        except Vehicle.DoesNotExist:
            raise NotFoundException(VehicleMessage.VEHICLE_NOT_FOUND)

    def apply_status(self, transaction_id, incoming_status, extra=None, now=None):
        """
        Moves a transaction to `incoming_status` and applies the vehicle
        side effect atomically.

        Args:
            transaction_id: Transaction to change
            incoming_status (str): Requested status
            extra (dict, optional): Additional fields written with the status,
                skipped when the change is a no-op
            now (datetime, optional): Clock override

        Returns:
            Transaction: The row after the change

        Raises:
            InvalidStatusException: Unknown status
            InvalidStateTransitionException: Transaction is terminal
            NotFoundException: Transaction or vehicle missing
            InconsistentStateException: Database failure, nothing committed
        """
        try:
            with db_transaction.atomic():
                transaction = TransactionStore.get_for_update(transaction_id)
                change = TransitionPolicy.apply_status_change(transaction, incoming_status, now=now)
                if not change.transaction_patch:
                    logger.info(f"Transaction {transaction.id} already {transaction.status}, nothing to do")
                    return transaction

                vehicle = None
                if change.vehicle_status:
                    vehicle = self._lock_vehicle(transaction.vehicle_id)

                patch = dict(change.transaction_patch)
                if extra:
                    patch.update(extra)
                previous_status = transaction.status
                TransactionStore.update(transaction, patch)

                if vehicle is not None:
                    vehicle.status = change.vehicle_status
                    vehicle.save(update_fields=["status", "updated_at"])
                    logger.info(f"Vehicle {vehicle.id} marked {vehicle.status}")
        except DatabaseError as e:
            logger.error(f"Status change of transaction {transaction_id} to {incoming_status} rolled back: {e}")
            raise InconsistentStateException()

        logger.info(f"Transaction {transaction.id}: {previous_status} -> {transaction.status}")
        return transaction

    def sync_vehicle_status(self, transaction_id):
        """
        Marks the vehicle of a fully settled transaction as sold.
        Used to repair rows written before the vehicle update landed.
        """
        try:
            with db_transaction.atomic():
                transaction = TransactionStore.get_for_update(transaction_id)
                if not transaction.is_fully_settled:
                    raise InvalidStateTransitionException(DeliveryMessage.NOT_FINALIZED)
                vehicle = self._lock_vehicle(transaction.vehicle_id)
                if vehicle.status != "sold":
                    vehicle.status = "sold"
                    vehicle.save(update_fields=["status", "updated_at"])
                    logger.info(f"Vehicle {vehicle.id} marked sold from transaction {transaction.id}")
        except DatabaseError as e:
            logger.error(f"Vehicle sync for transaction {transaction_id} rolled back: {e}")
            raise InconsistentStateException()
        return vehicle

    def _update_locked(self, transaction_id, build_patch):
        """
        Locks a transaction, builds a patch from it and writes it.
        `build_patch` may raise to abort without writing.
        """
        try:
            with db_transaction.atomic():
                transaction = TransactionStore.get_for_update(transaction_id)
                patch = build_patch(transaction)
                TransactionStore.update(transaction, patch)
        except DatabaseError as e:
            logger.error(f"Update of transaction {transaction_id} rolled back: {e}")
            raise InconsistentStateException()
        return transaction

    # ---------- checkout ----------

    def initiate_checkout(self, buyer, vehicle_id, payment_type, booking_method="card",
                          qr_amount=None, cash_amount=None, previous_transaction_id=None):
        """
        Starts a purchase, a booking or a balance payment for a vehicle.

        Returns:
            dict: The created transaction plus whatever the buyer needs to
                pay (checkout URL, UPI link, reference)
        """
        CheckoutValidators.validate_buyer(buyer)
        CheckoutValidators.validate_payment_type(payment_type)
        vehicle = CheckoutValidators.get_vehicle(vehicle_id)

        if previous_transaction_id:
            return self._initiate_balance_payment(buyer, vehicle, payment_type, previous_transaction_id)

        CheckoutValidators.validate_vehicle_purchasable(vehicle, buyer)

        if payment_type == "full_card":
            return self._checkout_full_card(buyer, vehicle)
        if payment_type == "advance_upi":
            CheckoutValidators.validate_booking_method(booking_method)
            return self._checkout_advance(buyer, vehicle, booking_method)
        if payment_type == "cash_booking":
            return self._checkout_cash_booking(buyer, vehicle)
        return self._checkout_split(buyer, vehicle, payment_type, qr_amount, cash_amount)

    def _expire_open_checkouts(self, buyer, vehicle):
        """
        Cancels the buyer's open checkouts for the vehicle.

        Returns:
            list: Gateway session ids of the cancelled rows
        """
        stale = Transaction.objects.select_for_update().filter(
            buyer=buyer, vehicle=vehicle, status="payment_initiated"
        )
        session_ids = []
        for transaction in stale:
            TransactionStore.update(transaction, {
                "status": "cancelled",
                "payment_error_description": PaymentMessage.SESSION_EXPIRED_NEW_CHECKOUT,
            })
            if transaction.gateway_session_id:
                session_ids.append(transaction.gateway_session_id)
            logger.info(f"Cancelled stale checkout {transaction.id} for vehicle {vehicle.id}")
        return session_ids

    def _create(self, buyer, vehicle, payment_type, **fields):
        amount = fields.pop("amount", vehicle.price)
        try:
            with db_transaction.atomic():
                stale_sessions = self._expire_open_checkouts(buyer, vehicle)
                transaction = TransactionStore.create(
                    vehicle, buyer, vehicle.seller, amount, payment_type, **fields
                )
        except DatabaseError as e:
            logger.error(f"Could not create transaction for vehicle {vehicle.id}: {e}")
            raise InconsistentStateException()

        # Gateway calls stay outside the database transaction.
        for session_id in stale_sessions:
            self.gateway.expire_checkout(session_id)
        return transaction

    def _open_checkout(self, transaction, amount, description):
        try:
            session = self.gateway.create_checkout(transaction, amount, description)
        except GatewayUnavailableException:
            self.apply_status(transaction.id, "payment_failed", extra={
                "payment_error_code": "gateway_unavailable",
                "payment_error_description": PaymentMessage.GATEWAY_UNAVAILABLE,
            })
            raise
        TransactionStore.update(transaction, {"gateway_session_id": session.session_id})
        return session

    @staticmethod
    def _result(transaction, amount_due, **fields):
        result = {
            "transaction": transaction,
            "payment_type": transaction.payment_type,
            "amount": amount_due,
            "remaining_amount": transaction.remaining_amount,
            "vehicle_name": transaction.vehicle.display_name,
        }
        result.update(fields)
        return result

    def _checkout_full_card(self, buyer, vehicle):
        transaction = self._create(buyer, vehicle, "full_card", payment_method="card")
        session = self._open_checkout(
            transaction, vehicle.price, f"Full payment - {vehicle.registration_number or 'N/A'}"
        )
        return self._result(
            transaction, vehicle.price,
            checkout_url=session.checkout_url, session_id=session.session_id,
        )

    def _checkout_advance(self, buyer, vehicle, booking_method):
        token = CheckoutValidators.validate_booking_token(
            PaymentHelpers.calculate_booking_token(vehicle.price), vehicle.price
        )
        reference = ""
        if booking_method == "upi":
            reference = PaymentHelpers.generate_reference("BK", vehicle.id, length=4)
            upi_link = PaymentHelpers.build_upi_link(token, f"Booking {vehicle.display_name}", reference)

        transaction = self._create(
            buyer, vehicle, "advance_upi",
            booking_amount=token, payment_method=booking_method, payment_reference=reference,
        )

        if booking_method == "card":
            session = self._open_checkout(
                transaction, token,
                f"Booking amount - pay remaining {transaction.remaining_amount} later",
            )
            return self._result(
                transaction, token, booking_method=booking_method,
                checkout_url=session.checkout_url, session_id=session.session_id,
            )
        if booking_method == "upi":
            return self._result(
                transaction, token, booking_method=booking_method,
                upi_link=upi_link, reference=reference,
            )
        return self._result(
            transaction, token, booking_method=booking_method,
            seller_name=vehicle.seller.get_full_name() or vehicle.seller.username,
            seller_phone=vehicle.seller.mobile_number,
        )

    def _checkout_cash_booking(self, buyer, vehicle):
        token = CheckoutValidators.validate_booking_token(
            PaymentHelpers.calculate_booking_token(vehicle.price), vehicle.price
        )
        reference = PaymentHelpers.generate_reference("CASH", vehicle.id)
        transaction = self._create(
            buyer, vehicle, "cash_booking",
            booking_amount=token, payment_method="cash", payment_reference=reference,
        )
        return self._result(
            transaction, token, reference=reference,
            seller_name=vehicle.seller.get_full_name() or vehicle.seller.username,
            seller_phone=vehicle.seller.mobile_number,
        )

    def _checkout_split(self, buyer, vehicle, payment_type, qr_amount, cash_amount):
        qr_part = to_decimal(qr_amount) if payment_type == "split_qr" else to_decimal(None)
        manual_amount = CheckoutValidators.validate_manual_amount(
            qr_part + to_decimal(cash_amount), vehicle.price
        )
        card_amount = vehicle.price - manual_amount
        prefix = "SPLIT-MIX" if payment_type == "split_qr" else "SPLIT-CASH"
        reference = PaymentHelpers.generate_reference(prefix, vehicle.id)
        upi_link = None
        if qr_part > 0:
            upi_link = PaymentHelpers.build_upi_link(qr_part, f"Payment {vehicle.display_name}", reference)

        transaction = self._create(
            buyer, vehicle, payment_type,
            manual_amount=manual_amount, payment_reference=reference,
        )
        session = self._open_checkout(
            transaction, card_amount, f"Balance payment: manual {manual_amount} + card"
        )
        return self._result(
            transaction, card_amount, manual_amount=manual_amount, reference=reference,
            upi_link=upi_link, checkout_url=session.checkout_url, session_id=session.session_id,
        )

    def _initiate_balance_payment(self, buyer, vehicle, payment_type, previous_transaction_id):
        try:
            previous = TransactionStore.get(previous_transaction_id)
        except NotFoundException:
            previous = None
        CheckoutValidators.validate_balance_source(previous, buyer, vehicle)
        CheckoutValidators.validate_balance_payment_type(payment_type)
        if previous.settlements.filter(status__in=TransactionState.MONEY_RECEIVED).exists():
            raise InvalidInputException(PaymentMessage.NO_REMAINING_BALANCE)

        balance = previous.remaining_amount
        if payment_type == "cash_booking":
            reference = PaymentHelpers.generate_reference("CASH-BAL", vehicle.id)
            transaction = self._create(
                buyer, vehicle, payment_type, amount=previous.amount, settles=previous,
                payment_method="cash", payment_reference=reference,
            )
            return self._result(
                transaction, balance, reference=reference,
                seller_name=vehicle.seller.get_full_name() or vehicle.seller.username,
                seller_phone=vehicle.seller.mobile_number,
            )

        transaction = self._create(
            buyer, vehicle, payment_type, amount=previous.amount, settles=previous,
            payment_method="card",
        )
        session = self._open_checkout(transaction, balance, "Balance payment")
        return self._result(
            transaction, balance,
            checkout_url=session.checkout_url, session_id=session.session_id,
        )

    # ---------- payment confirmation ----------

    def verify_payment(self, user, transaction_id=None, session_id=None):
        """
        Checks a gateway payment after the buyer returns from checkout.

        Returns:
            VerifyOutcome: verified is False while the gateway still reports
                the payment as pending, or when the session expired
        """
        if not transaction_id and not session_id:
            raise InvalidInputException(PaymentMessage.TRANSACTION_OR_SESSION_REQUIRED)

        if transaction_id:
            transaction = TransactionStore.get(transaction_id)
        else:
            transaction = TransactionStore.get_by_session(session_id)
        TransactionValidators.validate_is_buyer(transaction, user)

        if transaction.is_money_received:
            return VerifyOutcome(transaction, True, PaymentMessage.PAYMENT_VERIFIED)
        if transaction.status in TransactionState.TERMINAL:
            return VerifyOutcome(transaction, False, PaymentMessage.TERMINAL_TRANSACTION.format(status=transaction.status))

        gateway_session = transaction.gateway_session_id or session_id
        if not gateway_session:
            return VerifyOutcome(transaction, False, PaymentMessage.PAYMENT_PENDING)

        result = self.gateway.verify(gateway_session)
        try:
            if result.success:
                expected = to_decimal(transaction.amount_due_now)
                if result.amount is not None and result.amount != expected:
                    logger.error(
                        f"Gateway charged {result.amount} for transaction {transaction.id}, "
                        f"expected {expected}"
                    )
                transaction = self.apply_status(transaction.id, "payment_completed", extra={
                    "gateway_payment_id": result.payment_id,
                    "payment_method": result.method or "card",
                })
                return VerifyOutcome(transaction, True, PaymentMessage.PAYMENT_VERIFIED)
            if result.expired:
                transaction = self.apply_status(transaction.id, "cancelled", extra={
                    "payment_error_description": PaymentMessage.CHECKOUT_EXPIRED,
                })
                return VerifyOutcome(transaction, False, PaymentMessage.CHECKOUT_EXPIRED)
        except InvalidStateTransitionException:
            # Closed by someone else while the gateway was being asked.
            transaction = TransactionStore.get(transaction.id)
            logger.warning(
                f"Transaction {transaction.id} became {transaction.status} during verification"
            )
            if transaction.is_money_received:
                return VerifyOutcome(transaction, True, PaymentMessage.PAYMENT_VERIFIED)
            return VerifyOutcome(transaction, False, PaymentMessage.PAYMENT_PENDING)

        logger.info(f"Payment for transaction {transaction.id} still pending at gateway")
        return VerifyOutcome(transaction, False, PaymentMessage.PAYMENT_PENDING)

    def record_failure(self, user, transaction_id, error_code="", error_description=""):
        transaction = TransactionStore.get(transaction_id)
        TransactionValidators.validate_is_buyer(transaction, user)
        TransactionValidators.validate_awaiting_payment(transaction)
        return self.apply_status(transaction.id, "payment_failed", extra={
            "payment_error_code": error_code or "",
            "payment_error_description": error_description or PaymentMessage.PAYMENT_FAILED,
        })

    def verify_manual(self, user, transaction_id, manual_reference=None):
        """
        Records that the buyer paid the manual part of a split payment.
        The transaction stays open until the card part is verified.
        """
        def build_patch(transaction):
            TransactionValidators.validate_is_buyer(transaction, user)
            TransactionValidators.validate_split_payment(transaction)
            TransactionValidators.validate_awaiting_payment(transaction)
            return {
                "payment_reference": manual_reference or transaction.payment_reference,
                "payment_method": "upi" if transaction.payment_type == "split_qr" else "cash",
            }

        transaction = self._update_locked(transaction_id, build_patch)
        logger.info(f"Manual part of split payment {transaction.id} recorded")
        return transaction

    def confirm_booking(self, user, transaction_id, reference=None):
        """
        Seller confirms receipt of a UPI or cash payment.
        Confirming an already confirmed transaction returns it unchanged.
        """
        transaction = TransactionStore.get(transaction_id)
        TransactionValidators.validate_is_seller(transaction, user)
        TransactionValidators.validate_manually_confirmable(transaction)
        if transaction.is_money_received:
            return transaction
        TransactionValidators.validate_awaiting_payment(transaction)

        extra = {"payment_reference": reference} if reference else None
        transaction = self.apply_status(transaction.id, "payment_completed", extra=extra)
        logger.info(f"Seller {user.username} confirmed payment for transaction {transaction.id}")
        return transaction

    # ---------- gateway notifications ----------

    def handle_gateway_event(self, payload, signature):
        """
        Applies a signed gateway notification.

        Deliveries are at-least-once: repeats of an already applied event
        are no-ops, and events for unknown or closed transactions are
        logged and acknowledged.

        Returns:
            str: The event type
        """
        event = self.gateway.parse_event(payload, signature)
        event_type = event["type"]
        obj = event["data"]["object"]
        logger.info(f"Received gateway event {event_type}")

        if event_type == "checkout.session.completed":
            transaction = self._find_for_event(session_id=obj.get("id"))
            if transaction is not None and transaction.is_terminal and not transaction.is_money_received:
                self._record_late_payment(transaction, obj.get("payment_intent"))
            elif transaction is not None:
                self._apply_event_status(transaction, "payment_completed", {
                    "gateway_payment_id": obj.get("payment_intent"),
                    "payment_method": "card",
                })
        elif event_type == "checkout.session.expired":
            transaction = self._find_for_event(session_id=obj.get("id"))
            if transaction is not None and transaction.status in TransactionState.AWAITING_PAYMENT:
                self._apply_event_status(transaction, "cancelled", {
                    "payment_error_description": PaymentMessage.CHECKOUT_EXPIRED,
                })
        elif event_type == "payment_intent.payment_failed":
            metadata = obj.get("metadata") or {}
            transaction = self._find_for_event(
                payment_id=obj.get("id"), transaction_id=metadata.get("transaction_id")
            )
            if transaction is not None and transaction.status in TransactionState.AWAITING_PAYMENT:
                error = obj.get("last_payment_error") or {}
                self._apply_event_status(transaction, "payment_failed", {
                    "gateway_payment_id": obj.get("id"),
                    "payment_error_code": error.get("code") or "",
                    "payment_error_description": error.get("message") or PaymentMessage.PAYMENT_FAILED,
                })
        else:
            logger.info(f"Unhandled gateway event {event_type}")
        return event_type

    @staticmethod
    def _find_for_event(session_id=None, payment_id=None, transaction_id=None):
        transaction = None
        if session_id:
            transaction = Transaction.objects.filter(gateway_session_id=session_id).first()
        if transaction is None and payment_id:
            transaction = Transaction.objects.filter(gateway_payment_id=payment_id).first()
        if transaction is None and transaction_id:
            transaction = Transaction.objects.filter(pk=transaction_id).first()
        if transaction is None:
            logger.error(
                f"No transaction for gateway event (session={session_id}, payment={payment_id})"
            )
        return transaction

    def _record_late_payment(self, transaction, payment_id):
        """
        Keeps the payment id of money captured for a closed transaction.
        The row stays closed; reconcile_transactions reports it.
        """
        def build_patch(locked):
            if locked.is_money_received:
                return {}
            return {
                "gateway_payment_id": payment_id,
                "payment_error_code": "paid_after_cancel",
                "payment_error_description": PaymentMessage.PAID_AFTER_CANCEL,
            }

        transaction = self._update_locked(transaction.id, build_patch)
        logger.error(
            f"Payment {payment_id} captured for transaction {transaction.id} "
            f"which is already {transaction.status}"
        )
        return transaction

    def _apply_event_status(self, transaction, status, extra):
        try:
            self.apply_status(transaction.id, status, extra=extra)
        except InvalidStateTransitionException:
            logger.warning(
                f"Ignored {status} event for transaction {transaction.id} in {transaction.status}"
            )

    # ---------- delivery ----------

    def confirm_collection(self, user, transaction_id):
        def build_patch(transaction):
            TransactionValidators.validate_is_buyer(transaction, user)
            return DeliveryHelpers.collection_patch(transaction)

        transaction = self._update_locked(transaction_id, build_patch)
        logger.info(f"Buyer {user.username} collected vehicle {transaction.vehicle_id}")
        return transaction

    # ---------- administration ----------

    def admin_update_status(self, user, transaction_id, status):
        if not user.is_admin:
            raise PermissionDeniedException(GeneralMessage.PERMISSION_DENIED)
        transaction = self.apply_status(transaction_id, status)
        logger.info(f"Admin {user.username} set transaction {transaction.id} to {status}")
        return transaction

    def admin_update_delivery(self, user, transaction_id, delivery_status,
                              estimated_ready_date=None, notes=None):
        if not user.is_admin:
            raise PermissionDeniedException(DeliveryMessage.ADMIN_ONLY)

        def build_patch(transaction):
            return DeliveryHelpers.admin_delivery_patch(
                transaction, delivery_status, estimated_ready_date, notes
            )

        transaction = self._update_locked(transaction_id, build_patch)
        logger.info(f"Admin {user.username} set delivery of {transaction.id} to {delivery_status}")
        return transaction

    # ---------- read side ----------

    @staticmethod
    def _validate_classification(classification):
        if classification and classification not in CLASSIFICATIONS:
            raise InvalidInputException(GeneralMessage.INVALID_INPUT)

    def list_my_purchases(self, buyer, classification=None, tracking=False):
        """
        One representative per vehicle the buyer has paid for or booked.

        Args:
            buyer: Requesting buyer
            classification (str, optional): Keep only purchases or bookings
            tracking (bool): Keep only sales that have entered delivery

        Returns:
            tuple: (representatives newest first, summary counts)
        """
        self._validate_classification(classification)
        representatives = reduce_transactions(TransactionStore.list_by_buyer(buyer))
        items = filter_by_classification(representatives, classification)
        if tracking:
            items = [rep for rep in items if rep.transaction.delivery_status is not None]
        return items, summarize(representatives)

    def list_my_sales(self, seller, classification=None):
        self._validate_classification(classification)
        representatives = reduce_transactions(TransactionStore.list_by_seller(seller))
        return filter_by_classification(representatives, classification), summarize(representatives)

    def buyer_analytics(self, buyer, today=None):
        """
        All-time purchase totals plus a seven day spending chart.
        """
        representatives = reduce_transactions(TransactionStore.list_by_buyer(buyer))
        return {
            "summary": summarize(representatives),
            "chart_data": daily_series(representatives, today=today),
        }

    def seller_analytics(self, seller, today=None):
        representatives = reduce_transactions(TransactionStore.list_by_seller(seller))
        return {
            "summary": summarize(representatives),
            "chart_data": daily_series(representatives, today=today),
        }
