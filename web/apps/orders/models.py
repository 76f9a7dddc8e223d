import uuid
from django.db import models
from django.utils import timezone


class OrderModel(models.Model):
    # UUID PK exposed in the API
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    class Status(models.TextChoices):
        PENDING = "pending"
        PAID = "paid"
        PROCESSING = "processing"
        DELIVERED = "delivered"
        COMPLETED = "completed"
        CANCELLED = "cancelled"

    class PaymentStatus(models.TextChoices):
        PENDING = "pending"
        PAID = "paid"
        FAILED = "failed"
        REFUNDED = "refunded"

    class ShippingStatus(models.TextChoices):
        NOT_SHIPPED = "not_shipped"
        DELIVERED = "delivered"

    # Product snapshot taken at checkout
    product_id = models.CharField(max_length=64)
    product_name = models.CharField(max_length=255, blank=True, default="")
    product_unit_price = models.BigIntegerField(default=0)

    seller_id = models.CharField(max_length=128, db_index=True)
    buyer_id = models.CharField(max_length=128, db_index=True)
    quantity = models.PositiveIntegerField()
    total_amount = models.BigIntegerField()
    shipping_address = models.JSONField(default=dict)

    order_status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    payment_status = models.CharField(max_length=16, choices=PaymentStatus.choices, default=PaymentStatus.PENDING)
    shipping_status = models.CharField(
        max_length=16, choices=ShippingStatus.choices, default=ShippingStatus.NOT_SHIPPED
    )

    # Cart checkouts share one transaction id
    transaction_id = models.CharField(max_length=64, null=True, blank=True, db_index=True)
    payment_method = models.CharField(max_length=16, null=True, blank=True)
    payment_correlation_id = models.CharField(max_length=128, null=True, blank=True)
    payment_details = models.JSONField(null=True, blank=True)

    cancelled_by = models.CharField(max_length=16, null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancellation_reason = models.TextField(null=True, blank=True)

    status_history = models.JSONField(default=list)

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(default=timezone.now)
    paid_at = models.DateTimeField(null=True, blank=True)
    seller_confirmed_at = models.DateTimeField(null=True, blank=True)
    delivered_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    # Bumped on every write; see OrderRepository.update
    version = models.PositiveIntegerField(default=0)

    class Meta:
        db_table = "orders"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["payment_method", "payment_correlation_id"], name="orders_payment_corr_idx"),
            models.Index(fields=["payment_status", "created_at"], name="orders_payment_status_idx"),
        ]


class PaymentTransaction(models.Model):
    """Ledger row written once per settled order."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order = models.OneToOneField(OrderModel, on_delete=models.PROTECT, related_name="ledger_entry")
    amount = models.BigIntegerField()
    currency = models.CharField(max_length=3, default="VND")
    payment_method = models.CharField(max_length=16)
    payer_id = models.CharField(max_length=128)
    payee_id = models.CharField(max_length=128)
    external_transaction_id = models.CharField(max_length=128, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "payment_transactions"


class ReconciliationIssue(models.Model):
    """Dead-letter record for settlement steps that need a human."""

    class Kind(models.TextChoices):
        STOCK_UPDATE_FAILED = "stock_update_failed"
        LEDGER_FAILED = "ledger_failed"
        AMOUNT_MISMATCH = "amount_mismatch"
        SETTLEMENT_FAILED = "settlement_failed"
        PAID_AFTER_CANCEL = "paid_after_cancel"
        UNMATCHED_PAYMENT = "unmatched_payment"
        REFUND_UNALLOCATED = "refund_unallocated"

    order_id = models.UUIDField(null=True, blank=True, db_index=True)
    provider = models.CharField(max_length=16, null=True, blank=True)
    kind = models.CharField(max_length=32, choices=Kind.choices)
    detail = models.TextField()
    payload = models.JSONField(default=dict)
    resolved = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "reconciliation_issues"
        ordering = ["-created_at"]


class IdempotencyKey(models.Model):
    key = models.CharField(max_length=200, primary_key=True)
    request_hash = models.CharField(max_length=64)
    response_status = models.PositiveSmallIntegerField(default=0)
    response_body = models.JSONField(default=dict)
    order_ref = models.CharField(max_length=64, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "idempotency_keys"
