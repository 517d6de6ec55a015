from django.urls import include, path

urlpatterns = [
    path("api/odf/", include("apps.odf.urls")),
    path("api/monitoring/", include("apps.monitoring.urls")),
]
