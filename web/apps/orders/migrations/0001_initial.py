import uuid

import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="OrderModel",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("product_id", models.CharField(max_length=64)),
                ("product_name", models.CharField(blank=True, default="", max_length=255)),
                ("product_unit_price", models.BigIntegerField(default=0)),
                ("seller_id", models.CharField(db_index=True, max_length=128)),
                ("buyer_id", models.CharField(db_index=True, max_length=128)),
                ("quantity", models.PositiveIntegerField()),
                ("total_amount", models.BigIntegerField()),
                ("shipping_address", models.JSONField(default=dict)),
                (
                    "order_status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("paid", "Paid"),
                            ("processing", "Processing"),
                            ("delivered", "Delivered"),
                            ("completed", "Completed"),
                            ("cancelled", "Cancelled"),
                        ],
                        default="pending",
                        max_length=16,
                    ),
                ),
                (
                    "payment_status",
                    models.CharField(
                        choices=[("pending", "Pending"), ("paid", "Paid"), ("failed", "Failed")],
                        default="pending",
                        max_length=16,
                    ),
                ),
                (
                    "shipping_status",
                    models.CharField(
                        choices=[("not_shipped", "Not Shipped"), ("delivered", "Delivered")],
                        default="not_shipped",
                        max_length=16,
                    ),
                ),
                ("transaction_id", models.CharField(blank=True, db_index=True, max_length=64, null=True)),
                ("payment_method", models.CharField(blank=True, max_length=16, null=True)),
                ("payment_correlation_id", models.CharField(blank=True, max_length=128, null=True)),
                ("payment_details", models.JSONField(blank=True, null=True)),
                ("cancelled_by", models.CharField(blank=True, max_length=16, null=True)),
                ("cancelled_at", models.DateTimeField(blank=True, null=True)),
                ("cancellation_reason", models.TextField(blank=True, null=True)),
                ("status_history", models.JSONField(default=list)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("paid_at", models.DateTimeField(blank=True, null=True)),
                ("seller_confirmed_at", models.DateTimeField(blank=True, null=True)),
                ("delivered_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("version", models.PositiveIntegerField(default=0)),
            ],
            options={
                "db_table": "orders",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["payment_method", "payment_correlation_id"], name="orders_payment_corr_idx"),
                    models.Index(fields=["payment_status", "created_at"], name="orders_payment_status_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="ReconciliationIssue",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("order_id", models.UUIDField(blank=True, db_index=True, null=True)),
                ("provider", models.CharField(blank=True, max_length=16, null=True)),
                (
                    "kind",
                    models.CharField(
                        choices=[
                            ("stock_update_failed", "Stock Update Failed"),
                            ("ledger_failed", "Ledger Failed"),
                            ("amount_mismatch", "Amount Mismatch"),
                            ("settlement_failed", "Settlement Failed"),
                        ],
                        max_length=32,
                    ),
                ),
                ("detail", models.TextField()),
                ("payload", models.JSONField(default=dict)),
                ("resolved", models.BooleanField(default=False)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "db_table": "reconciliation_issues",
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="IdempotencyKey",
            fields=[
                ("key", models.CharField(max_length=200, primary_key=True, serialize=False)),
                ("request_hash", models.CharField(max_length=64)),
                ("response_status", models.PositiveSmallIntegerField(default=0)),
                ("response_body", models.JSONField(default=dict)),
                ("order_ref", models.CharField(blank=True, max_length=64, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "db_table": "idempotency_keys",
            },
        ),
        migrations.CreateModel(
            name="PaymentTransaction",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("amount", models.BigIntegerField()),
                ("currency", models.CharField(default="VND", max_length=3)),
                ("payment_method", models.CharField(max_length=16)),
                ("payer_id", models.CharField(max_length=128)),
                ("payee_id", models.CharField(max_length=128)),
                ("external_transaction_id", models.CharField(blank=True, max_length=128, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "order",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="ledger_entry",
                        to="orders.ordermodel",
                    ),
                ),
            ],
            options={
                "db_table": "payment_transactions",
            },
        ),
    ]
