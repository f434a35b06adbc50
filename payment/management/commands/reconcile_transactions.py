import logging
from django.core.management.base import BaseCommand
from django.db.models import Count, Q
from exceptions.handlers import InconsistentStateException
from payment.models import Transaction
from payment.services import TransactionService
from utils.constants import TransactionState
from vehicles.models import Vehicle

logger = logging.getLogger("payment")


def fully_settled_transactions():
    return Transaction.objects.filter(
        Q(remaining_amount__isnull=True) | Q(remaining_amount__lte=0),
        status__in=TransactionState.MONEY_RECEIVED,
    )


class Command(BaseCommand):
    help = "Report transactions and vehicles whose sale state disagrees, optionally repairing unsold vehicles."

    def add_arguments(self, parser):
        parser.add_argument(
            "--fix",
            action="store_true",
            help="Mark the vehicle of every fully settled transaction as sold.",
        )

    def handle(self, *args, **options):
        fix = options["fix"]
        settled = fully_settled_transactions()
        problems = 0

        unsold = settled.exclude(vehicle__status="sold").select_related("vehicle")
        service = TransactionService()
        for transaction in unsold:
            problems += 1
            self.stdout.write(
                self.style.WARNING(
                    f"Transaction {transaction.id} is settled but vehicle {transaction.vehicle_id} "
                    f"is {transaction.vehicle.status}"
                )
            )
            if fix:
                try:
                    service.sync_vehicle_status(transaction.id)
                    self.stdout.write(self.style.SUCCESS(f"  vehicle {transaction.vehicle_id} marked sold"))
                except InconsistentStateException as e:
                    logger.error(f"Could not repair vehicle {transaction.vehicle_id}: {e}")
                    self.stdout.write(self.style.ERROR(f"  could not repair vehicle {transaction.vehicle_id}"))

        orphaned = Vehicle.objects.filter(status="sold").exclude(
            id__in=settled.values("vehicle_id")
        )
        for vehicle in orphaned:
            problems += 1
            self.stdout.write(
                self.style.WARNING(f"Vehicle {vehicle.id} is sold without a settled transaction")
            )

        duplicated = (
            settled.values("vehicle_id").annotate(settled_count=Count("id")).filter(settled_count__gt=1)
        )
        for row in duplicated:
            problems += 1
            self.stdout.write(
                self.style.ERROR(
                    f"Vehicle {row['vehicle_id']} has {row['settled_count']} settled transactions, "
                    f"resolve manually"
                )
            )

        # Failed intents also leave a payment id behind, so match the marker too.
        paid_after_close = Transaction.objects.filter(
            status__in=TransactionState.TERMINAL - TransactionState.MONEY_RECEIVED,
            payment_error_code="paid_after_cancel",
            gateway_payment_id__isnull=False,
        ).exclude(gateway_payment_id="")
        for transaction in paid_after_close:
            problems += 1
            self.stdout.write(
                self.style.ERROR(
                    f"Transaction {transaction.id} is {transaction.status} but captured payment "
                    f"{transaction.gateway_payment_id}, refund or reinstate manually"
                )
            )

        if problems:
            logger.warning(f"Reconciliation found {problems} problem(s)")
            self.stdout.write(self.style.WARNING(f"{problems} problem(s) found"))
        else:
            self.stdout.write(self.style.SUCCESS("All transactions are consistent"))
