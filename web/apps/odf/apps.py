from django.apps import AppConfig


class OdfConfig(AppConfig):
    name = "apps.odf"
    label = "odf"
    verbose_name = "ODF fulfillment"
    default_auto_field = "django.db.models.BigAutoField"
