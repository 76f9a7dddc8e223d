from django.db import migrations, models


class Migration(migrations.Migration):
    dependencies = [
        ("orders", "0001_initial"),
    ]

    operations = [
        migrations.AlterField(
            model_name="ordermodel",
            name="payment_status",
            field=models.CharField(
                choices=[("pending", "Pending"), ("paid", "Paid"), ("failed", "Failed"), ("refunded", "Refunded")],
                default="pending",
                max_length=16,
            ),
        ),
        migrations.AlterField(
            model_name="reconciliationissue",
            name="kind",
            field=models.CharField(
                choices=[
                    ("stock_update_failed", "Stock Update Failed"),
                    ("ledger_failed", "Ledger Failed"),
                    ("amount_mismatch", "Amount Mismatch"),
                    ("settlement_failed", "Settlement Failed"),
                    ("paid_after_cancel", "Paid After Cancel"),
                    ("unmatched_payment", "Unmatched Payment"),
                    ("refund_unallocated", "Refund Unallocated"),
                ],
                max_length=32,
            ),
        ),
    ]
