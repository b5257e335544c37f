from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ("payments", "0001_initial"),
    ]

    operations = [
        migrations.AddField(
            model_name="installmentplan",
            name="down_payment",
            field=models.PositiveBigIntegerField(default=0),
        ),
        migrations.AddField(
            model_name="installmentplan",
            name="interest_rate",
            field=models.DecimalField(decimal_places=2, default=0, max_digits=5),
        ),
        migrations.AddField(
            model_name="installmentplan",
            name="grace_period_days",
            field=models.PositiveSmallIntegerField(default=3),
        ),
        migrations.AddField(
            model_name="installmentplan",
            name="late_fee",
            field=models.PositiveBigIntegerField(default=0),
        ),
        migrations.AddField(
            model_name="installmenttranche",
            name="late_fee",
            field=models.PositiveBigIntegerField(default=0),
        ),
        migrations.AlterField(
            model_name="installmenttranche",
            name="status",
            field=models.CharField(choices=[("pending", "Pending"), ("debiting", "Debiting"), ("paid", "Paid"), ("overdue", "Overdue"), ("missed", "Missed")], db_index=True, default="pending", max_length=16),
        ),
    ]
