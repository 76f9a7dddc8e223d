from django.urls import path

from .views import WebhookView

app_name = "payments"

urlpatterns = [
    path("<str:provider>/webhook", WebhookView.as_view(), name="webhook"),
]
