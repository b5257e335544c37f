from django.contrib import admin
from django.urls import include, path

from payments import views as payment_views

urlpatterns = [
    path("admin/", admin.site.urls),
    path("payments/", include("payments.urls")),
    path("webhooks/<str:gateway_name>", payment_views.gateway_webhook_view, name="gateway_webhook"),
]
