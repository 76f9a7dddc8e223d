from django.urls import path

from .views import (
    AdminActionView,
    BuyerActionView,
    BuyerOrdersView,
    CartCheckoutView,
    CheckoutView,
    PayView,
    ReconciliationIssuesView,
    RetrieveOrderView,
    SellerActionView,
    SellerSalesView,
    VerifyPaymentView,
)

app_name = "orders"

urlpatterns = [
    path("checkout", CheckoutView.as_view(), name="checkout"),
    path("checkout/cart", CartCheckoutView.as_view(), name="checkout-cart"),
    path("buyer/my-orders", BuyerOrdersView.as_view(), name="buyer-orders"),
    path("seller/my-sales", SellerSalesView.as_view(), name="seller-sales"),
    path("admin/reconciliation-issues", ReconciliationIssuesView.as_view(), name="reconciliation-issues"),
    path("<uuid:oid>", RetrieveOrderView.as_view(), name="orders-detail"),
    path("<uuid:oid>/seller/<str:action>", SellerActionView.as_view(), name="seller-action"),
    path("<uuid:oid>/buyer/<str:action>", BuyerActionView.as_view(), name="buyer-action"),
    path("<uuid:oid>/admin/<str:action>", AdminActionView.as_view(), name="admin-action"),
    path("<str:ref>/pay", PayView.as_view(), name="pay"),
    path("<str:ref>/verify-payment", VerifyPaymentView.as_view(), name="verify-payment"),
]
