from django.urls import path

from .views import (
    CheckStepView,
    ManufacturingOrdersView,
    ManufacturingStatusView,
    OrderDetailView,
    OrdersView,
    PasscodesView,
    ValidateOrderView,
)

app_name = "odf"

urlpatterns = [
    path("check", CheckStepView.as_view(), name="check"),
    path("validate", ValidateOrderView.as_view(), name="validate"),
    path("orders", OrdersView.as_view(), name="orders"),
    path("orders/<int:pcdid>", OrderDetailView.as_view(), name="order-detail"),
    path("passcodes", PasscodesView.as_view(), name="passcodes"),
    path("manufacturing-orders", ManufacturingOrdersView.as_view(), name="manufacturing-orders"),
    path("manufacturing-orders/<int:task_id>", ManufacturingStatusView.as_view(), name="manufacturing-status"),
]
