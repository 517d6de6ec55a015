from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ("odf", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="OrderClaim",
            fields=[
                ("order_id", models.BigIntegerField(primary_key=True, serialize=False)),
                ("claimed_at", models.DateTimeField()),
                ("expires_at", models.DateTimeField()),
            ],
            options={
                "db_table": "odf_order_claims",
            },
        ),
    ]
