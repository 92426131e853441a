from django.urls import path
from .views import create_payment, payment_status, set_status


urlpatterns = [
	path("payment", create_payment),
	path("payment/<str:payment_id>", payment_status),
	path("payment/<str:payment_id>/status", set_status),
]
