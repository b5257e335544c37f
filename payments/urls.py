from django.urls import path
from . import views
app_name = "payments"
urlpatterns = [
    path("orders", views.create_order_view, name="create_order"),
    path("orders/<str:order_id>", views.order_status_view, name="order_status"),
    path("orders/<str:order_id>/refund", views.refund_view, name="refund"),
    path("plans", views.create_plan_view, name="create_plan"),
    path("plans/<int:plan_id>", views.plan_detail_view, name="plan_detail"),
    path("plans/<int:plan_id>/tranches/<int:sequence>/pay", views.pay_tranche_view, name="pay_tranche"),
    # same handler as /webhooks/<gateway_name>, under the app prefix
    path("webhooks/<str:gateway_name>", views.gateway_webhook_view, name="webhook"),
]
