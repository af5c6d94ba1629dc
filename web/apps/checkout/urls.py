from django.urls import path
from .views import OrdersPingView, CheckoutView, PaymentConfirmView, PaymentWebhookView
from .views import OrdersCollectionView, RetrieveOrderView
app_name = "checkout"

urlpatterns = [
    path("checkout/", CheckoutView.as_view(), name="checkout"),
    path("checkout/payments/confirm/", PaymentConfirmView.as_view(), name="payment-confirm"),
    path("checkout/webhooks/<slug:method>/", PaymentWebhookView.as_view(), name="payment-webhook"),
    path("orders/ping/", OrdersPingView.as_view(), name="ping"),
    path("orders/", OrdersCollectionView.as_view(), name="orders-collection"),
    path("orders/<uuid:oid>/", RetrieveOrderView.as_view(), name="orders-detail"),
]
