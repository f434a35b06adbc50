import uuid
import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("vehicles", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Transaction",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("booking_amount", models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ("remaining_amount", models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ("manual_amount", models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("payment_initiated", "Payment Initiated"),
                            ("payment_completed", "Payment Completed"),
                            ("payment_failed", "Payment Failed"),
                            ("completed", "Completed"),
                            ("cancelled", "Cancelled"),
                            ("refunded", "Refunded"),
                        ],
                        default="pending",
                        max_length=20,
                    ),
                ),
                (
                    "payment_type",
                    models.CharField(
                        choices=[
                            ("full_card", "Full payment by card"),
                            ("advance_upi", "Advance booking"),
                            ("cash_booking", "Cash booking"),
                            ("split_qr", "UPI/QR + card"),
                            ("split_cash", "Cash + card"),
                        ],
                        default="full_card",
                        max_length=20,
                    ),
                ),
                (
                    "payment_shape",
                    models.CharField(
                        choices=[
                            ("full_payment", "Full payment"),
                            ("booking_token", "Booking token"),
                            ("balance_settlement", "Balance settlement"),
                        ],
                        default="full_payment",
                        max_length=20,
                    ),
                ),
                ("gateway_session_id", models.CharField(blank=True, db_index=True, max_length=255, null=True)),
                ("gateway_payment_id", models.CharField(blank=True, db_index=True, max_length=255, null=True)),
                ("payment_method", models.CharField(blank=True, max_length=30)),
                ("payment_reference", models.CharField(blank=True, max_length=100)),
                ("payment_error_code", models.CharField(blank=True, max_length=100)),
                ("payment_error_description", models.TextField(blank=True)),
                (
                    "delivery_status",
                    models.CharField(
                        blank=True,
                        choices=[
                            ("processing", "Processing"),
                            ("inspection", "Inspection"),
                            ("documentation", "Documentation"),
                            ("ready_for_collection", "Ready for collection"),
                            ("collected", "Collected"),
                        ],
                        max_length=30,
                        null=True,
                    ),
                ),
                ("estimated_ready_date", models.DateTimeField(blank=True, null=True)),
                ("delivery_notes", models.TextField(blank=True)),
                ("collected_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "buyer",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="purchases",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "seller",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="sales",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "settles",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="settlements",
                        to="payment.transaction",
                    ),
                ),
                (
                    "vehicle",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="transactions",
                        to="vehicles.vehicle",
                    ),
                ),
            ],
            options={
                "db_table": "transactions",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["vehicle", "created_at"], name="txn_vehicle_created_idx"),
                    models.Index(fields=["buyer", "status"], name="txn_buyer_status_idx"),
                    models.Index(fields=["seller", "status"], name="txn_seller_status_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=(
                            models.Q(delivery_status__isnull=True)
                            | models.Q(status__in=["completed", "payment_completed"])
                        ),
                        name="delivery_requires_money_received",
                    )
                ],
            },
        ),
    ]
