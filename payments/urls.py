from django.urls import path
from . import views

app_name = 'payments'

urlpatterns = [
    path('api/donations', views.donations, name='donations'),
    path('api/donations/status', views.donation_status, name='donation_status'),
    path('api/mpesa/callback', views.mpesa_callback, name='callback'),
    path('api/mpesa/notification', views.mpesa_notification, name='notification'),
    path('api/mpesa/config-test', views.mpesa_config_test, name='config_test'),
    path('dashboard/donations/', views.donations_summary, name='donations_summary'),
]
