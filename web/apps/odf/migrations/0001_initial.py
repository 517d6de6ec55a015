from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="SerialLock",
            fields=[
                ("serial_number", models.CharField(max_length=128, primary_key=True, serialize=False)),
                ("order_id", models.BigIntegerField(db_index=True)),
                ("article_code", models.CharField(max_length=64)),
                ("parent_article_code", models.CharField(blank=True, default="", max_length=64)),
                (
                    "kind",
                    models.CharField(
                        choices=[("article", "Article"), ("coupon", "Coupon")],
                        default="article",
                        max_length=16,
                    ),
                ),
                ("locked_at", models.DateTimeField()),
                ("expires_at", models.DateTimeField(db_index=True)),
            ],
            options={
                "db_table": "odf_serial_locks",
                "ordering": ["order_id", "locked_at", "serial_number"],
            },
        ),
    ]
