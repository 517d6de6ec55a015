from django.db import models


class SerialLock(models.Model):
    """Exclusive, time-bounded claim of one order on one serial number.

    The serial number is the primary key, so the database itself enforces
    at most one lock row per serial; expired rows are swept or taken over.
    """

    class Kind(models.TextChoices):
        ARTICLE = "article"
        COUPON = "coupon"

    serial_number = models.CharField(max_length=128, primary_key=True)
    order_id = models.BigIntegerField(db_index=True)
    article_code = models.CharField(max_length=64)
    parent_article_code = models.CharField(max_length=64, blank=True, default="")
    kind = models.CharField(max_length=16, choices=Kind.choices, default=Kind.ARTICLE)
    locked_at = models.DateTimeField()
    expires_at = models.DateTimeField(db_index=True)

    class Meta:
        db_table = "odf_serial_locks"
        ordering = ["order_id", "locked_at", "serial_number"]

    def __str__(self):
        return f"{self.serial_number} -> {self.order_id}"


class OrderClaim(models.Model):
    """Exclusive right of one caller to create the remote order of an order.

    Inserted before the create request is sent and deleted right after; a
    claim left behind by a crashed worker is taken over once it expires.
    """

    order_id = models.BigIntegerField(primary_key=True)
    claimed_at = models.DateTimeField()
    expires_at = models.DateTimeField()

    class Meta:
        db_table = "odf_order_claims"

    def __str__(self):
        return f"claim {self.order_id}"
